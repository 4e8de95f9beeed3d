"""Domain models for user identity records and their profile fields."""

from __future__ import annotations

import enum
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping, Optional, Sequence

from researchhub.settings import settings

RecordLike = Mapping[str, Any]


class IdentityRole(enum.Enum):
	SEED = "seed"
	LIVE = "live"
	UNKNOWN = "unknown"


def classify_identity(
	identity_key: Optional[str],
	*,
	seed_prefix: Optional[str] = None,
	live_prefix: Optional[str] = None,
) -> IdentityRole:
	"""Tell which identity provider issued ``identity_key``."""
	if not identity_key:
		return IdentityRole.UNKNOWN
	seed = seed_prefix if seed_prefix is not None else settings.identity_seed_prefix
	live = live_prefix if live_prefix is not None else settings.identity_live_prefix
	if seed and identity_key.startswith(seed):
		return IdentityRole.SEED
	if live and identity_key.startswith(live):
		return IdentityRole.LIVE
	return IdentityRole.UNKNOWN


class FieldKind(enum.Enum):
	SCALAR = "scalar"
	LIST = "list"
	MAP = "map"


@dataclass(frozen=True, slots=True)
class ProfileField:
	name: str
	kind: FieldKind


PROFILE_FIELDS: tuple[ProfileField, ...] = (
	ProfileField("bio", FieldKind.SCALAR),
	ProfileField("headline", FieldKind.SCALAR),
	ProfileField("city", FieldKind.SCALAR),
	ProfileField("location", FieldKind.SCALAR),
	ProfileField("profile_photo_url", FieldKind.SCALAR),
	ProfileField("cover_photo_url", FieldKind.SCALAR),
	ProfileField("skills", FieldKind.LIST),
	ProfileField("education", FieldKind.LIST),
	ProfileField("experience", FieldKind.LIST),
	ProfileField("featured_project_id", FieldKind.SCALAR),
	ProfileField("profile_links", FieldKind.MAP),
)

PROFILE_FIELD_NAMES: tuple[str, ...] = tuple(item.name for item in PROFILE_FIELDS)
JSON_COLUMNS: frozenset[str] = frozenset(
	item.name for item in PROFILE_FIELDS if item.kind is not FieldKind.SCALAR
)
ARCHIVE_COLUMNS: tuple[str, ...] = ("merged_into_id", "merged_into_identity_key", "archived_at", "is_archived")


def _decode_json(value: Any) -> Any:
	if isinstance(value, (bytes, bytearray, memoryview)):
		# Postgres JSONB columns can arrive as text, bytes, or memoryview objects.
		value = bytes(value).decode("utf-8")
	if isinstance(value, str):
		try:
			return json.loads(value)
		except json.JSONDecodeError:
			return None
	return value


def _coerce_json_to_list(value: Any) -> list[Any]:
	raw = _decode_json(value)
	if isinstance(raw, (list, tuple)):
		return list(raw)
	return []


def _coerce_json_to_dict(value: Any) -> Optional[dict[str, Any]]:
	raw = _decode_json(value)
	if isinstance(raw, Mapping):
		return dict(raw)
	return None


def _as_id(value: Any) -> Optional[str]:
	if value is None:
		return None
	return str(value)


@dataclass(slots=True)
class UserRecord:
	id: str
	identity_key: Optional[str]
	email: Optional[str]
	bio: Optional[str] = None
	headline: Optional[str] = None
	city: Optional[str] = None
	location: Optional[str] = None
	profile_photo_url: Optional[str] = None
	cover_photo_url: Optional[str] = None
	skills: list[Any] = field(default_factory=list)
	education: list[Any] = field(default_factory=list)
	experience: list[Any] = field(default_factory=list)
	featured_project_id: Optional[str] = None
	profile_links: Optional[dict[str, Any]] = None
	created_at: Optional[datetime] = None
	updated_at: Optional[datetime] = None
	merged_into_id: Optional[str] = None
	merged_into_identity_key: Optional[str] = None
	archived_at: Optional[datetime] = None
	is_archived: bool = False

	@property
	def role(self) -> IdentityRole:
		return classify_identity(self.identity_key)

	def profile(self) -> dict[str, Any]:
		return {name: getattr(self, name) for name in PROFILE_FIELD_NAMES}

	@classmethod
	def from_record(cls, record: RecordLike) -> "UserRecord":
		data = dict(record)
		return cls(
			id=str(data["id"]),
			identity_key=data.get("identity_key"),
			email=data.get("email"),
			bio=data.get("bio"),
			headline=data.get("headline"),
			city=data.get("city"),
			location=data.get("location"),
			profile_photo_url=data.get("profile_photo_url"),
			cover_photo_url=data.get("cover_photo_url"),
			skills=_coerce_json_to_list(data.get("skills")),
			education=_coerce_json_to_list(data.get("education")),
			experience=_coerce_json_to_list(data.get("experience")),
			featured_project_id=_as_id(data.get("featured_project_id")),
			profile_links=_coerce_json_to_dict(data.get("profile_links")),
			created_at=data.get("created_at"),
			updated_at=data.get("updated_at"),
			merged_into_id=_as_id(data.get("merged_into_id")),
			merged_into_identity_key=data.get("merged_into_identity_key"),
			archived_at=data.get("archived_at"),
			is_archived=bool(data.get("is_archived") or False),
		)


@dataclass(slots=True)
class DuplicateEmailGroup:
	email: str
	members: Sequence[UserRecord]

	@property
	def count(self) -> int:
		return len(self.members)


@dataclass(frozen=True, slots=True)
class MergePair:
	seed: UserRecord
	live: UserRecord


@dataclass(slots=True)
class MergeSummary:
	groups: int = 0
	merged: int = 0
	skipped: int = 0
	failed: int = 0
