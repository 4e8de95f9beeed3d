"""Merge seed (pre-auth placeholder) users into their live-provider counterparts.

Seed users were created before real sign-in existed. People who later signed up
with the same email ended up with two rows. This module folds the seed row's
profile into the live row and archives the seed row.

Field precedence, applied per field by its declared :class:`models.FieldKind`:

* lists are taken whole from the live row when non-empty, else from the seed row;
* maps start from the seed mapping and take every live key that has a value;
* scalars keep the live value unless it is ``None`` or ``""``.
"""

from __future__ import annotations

import copy
import dataclasses
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional, Sequence

from researchhub.domain.identity import models
from researchhub.domain.identity.report import MergeReporter
from researchhub.domain.identity.store import UpdateResult, UserStore, UserStoreError
from researchhub.obs import metrics as obs_metrics
from researchhub.obs.logging import mask_email

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
	return datetime.now(timezone.utc)


def _present(value: Any) -> bool:
	return value is not None and value != ""


def _as_list(value: Any) -> list[Any]:
	if isinstance(value, (list, tuple)):
		return copy.deepcopy(list(value))
	return []


def merge_field(kind: models.FieldKind, live_value: Any, legacy_value: Any) -> Any:
	"""Combine one profile field, live values winning whenever they are set."""
	if kind is models.FieldKind.LIST:
		live_items = _as_list(live_value)
		return live_items if live_items else _as_list(legacy_value)
	if kind is models.FieldKind.MAP and isinstance(live_value, Mapping) and isinstance(legacy_value, Mapping):
		merged = copy.deepcopy(dict(legacy_value))
		for key, value in live_value.items():
			if _present(value):
				merged[key] = copy.deepcopy(value)
		return merged
	if _present(live_value):
		return copy.deepcopy(live_value)
	return copy.deepcopy(legacy_value)


def _earliest(live_created: Optional[datetime], legacy_created: Optional[datetime]) -> Optional[datetime]:
	if legacy_created is None:
		return live_created
	if live_created is None or legacy_created < live_created:
		return legacy_created
	return live_created


def merge_profile(
	live: models.UserRecord,
	legacy: models.UserRecord,
	*,
	now: Optional[datetime] = None,
) -> models.UserRecord:
	"""Return a copy of ``live`` carrying the merged profile of both rows."""
	changes: dict[str, Any] = {
		field.name: merge_field(field.kind, getattr(live, field.name), getattr(legacy, field.name))
		for field in models.PROFILE_FIELDS
	}
	changes["created_at"] = _earliest(live.created_at, legacy.created_at)
	changes["updated_at"] = now or _utcnow()
	return dataclasses.replace(live, **changes)


def select_merge_pair(members: Sequence[models.UserRecord]) -> Optional[models.MergePair]:
	"""Pick the seed/live pair of a duplicate group, or ``None`` when ambiguous.

	Only groups made of exactly one seed row and exactly one live row are merged.
	"""
	seeds = [member for member in members if member.role is models.IdentityRole.SEED]
	lives = [member for member in members if member.role is models.IdentityRole.LIVE]
	if len(seeds) != 1 or len(lives) != 1 or len(members) != 2:
		return None
	return models.MergePair(seed=seeds[0], live=lives[0])


def merged_fields(merged: models.UserRecord) -> dict[str, Any]:
	fields = merged.profile()
	fields["created_at"] = merged.created_at
	fields["updated_at"] = merged.updated_at
	return fields


class IdentityMergeProcessor:
	"""One-shot reconciliation of duplicate identities sharing an email."""

	def __init__(
		self,
		store: UserStore,
		*,
		reporter: Optional[MergeReporter] = None,
		clock: Clock = _utcnow,
	) -> None:
		self._store = store
		self._reporter = reporter or MergeReporter()
		self._clock = clock

	async def find_duplicate_email_groups(self) -> Sequence[models.DuplicateEmailGroup]:
		groups = await self._store.duplicate_email_groups()
		return [group for group in groups if group.count > 1]

	async def apply_merge(
		self,
		live: models.UserRecord,
		legacy: models.UserRecord,
		merged: models.UserRecord,
	) -> tuple[UpdateResult, UpdateResult]:
		"""Write the merged profile onto ``live`` and archive ``legacy``."""
		live_result = await self._store.update_fields(live.id, merged_fields(merged))
		obs_metrics.inc_merge_write("live")
		self._reporter.live_updated(live_result.matched, live_result.modified)
		archive_result = await self._store.update_fields(
			legacy.id,
			{
				"merged_into_id": live.id,
				"merged_into_identity_key": live.identity_key,
				"archived_at": self._clock(),
				"is_archived": True,
			},
		)
		obs_metrics.inc_merge_write("legacy")
		self._reporter.seed_archived(archive_result.matched, archive_result.modified)
		return live_result, archive_result

	async def _process_group(self, group: models.DuplicateEmailGroup, summary: models.MergeSummary) -> None:
		self._reporter.group_started(group)
		pair = select_merge_pair(group.members)
		if pair is None:
			self._reporter.group_skipped(group)
			logger.info(
				"skipped ambiguous duplicate group",
				extra={"group": mask_email(group.email), "user_ids": [member.id for member in group.members]},
			)
			summary.skipped += 1
			obs_metrics.inc_merge_outcome("skipped")
			return

		self._reporter.pair_selected(pair)
		self._reporter.before(pair)
		merged = merge_profile(pair.live, pair.seed, now=self._clock())
		self._reporter.after(merged)
		try:
			await self.apply_merge(pair.live, pair.seed, merged)
		except UserStoreError as exc:
			logger.warning(
				"merge write failed for %s",
				mask_email(group.email),
				extra={"live_id": pair.live.id, "seed_id": pair.seed.id, "failed_id": exc.user_id, "reason": exc.reason},
			)
			self._reporter.group_failed(group.email, exc)
			summary.failed += 1
			obs_metrics.inc_merge_outcome("failed")
			return

		self._reporter.group_merged(group.email)
		logger.info(
			"merged seed user",
			extra={"group": mask_email(group.email), "live_id": pair.live.id, "seed_id": pair.seed.id},
		)
		summary.merged += 1
		obs_metrics.inc_merge_outcome("merged")

	async def run(self) -> models.MergeSummary:
		self._reporter.banner()
		groups = await self.find_duplicate_email_groups()
		self._reporter.duplicates_found(len(groups))
		summary = models.MergeSummary(groups=len(groups))
		for group in groups:
			await self._process_group(group, summary)
		self._reporter.summary(summary)
		logger.info(
			"seed user merge finished",
			extra={
				"groups": summary.groups,
				"merged": summary.merged,
				"skipped": summary.skipped,
				"failed": summary.failed,
			},
		)
		return summary
