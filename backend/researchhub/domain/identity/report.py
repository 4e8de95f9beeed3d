"""Operator-facing console output for the identity maintenance jobs."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Optional, Sequence

from researchhub.domain.identity import models

RULE_WIDTH = 80
URL_DISPLAY_MAX = 60
BIO_PREVIEW_LEN = 40

Emit = Callable[[str], None]


def redact_url(url: Any) -> Any:
	"""Shorten long URLs so snapshot lines stay readable."""
	if not url or not isinstance(url, str):
		return url
	if len(url) > URL_DISPLAY_MAX:
		return url[: URL_DISPLAY_MAX - 3] + "..."
	return url


def _stamp(value: Optional[datetime]) -> str:
	return value.isoformat() if value else "N/A"


def _count(items: Optional[Sequence[Any]]) -> str:
	return f"[{len(items)} items]" if items else "[]"


def snapshot_lines(user: models.UserRecord, label: str) -> list[str]:
	bio = f'"{user.bio[:BIO_PREVIEW_LEN]}..."' if user.bio else "null"
	return [
		f"   {label}:",
		f"       id:           {user.id}",
		f"       identityKey:  {user.identity_key}",
		f"       email:        {user.email}",
		f"       createdAt:    {_stamp(user.created_at)}",
		f"       updatedAt:    {_stamp(user.updated_at)}",
		f"       headline:     {user.headline or 'null'}",
		f"       bio:          {bio}",
		f"       profilePhoto: {redact_url(user.profile_photo_url) or 'null'}",
		f"       coverPhoto:   {redact_url(user.cover_photo_url) or 'null'}",
		f"       skills:       {_count(user.skills)}",
		f"       education:    {_count(user.education)}",
		f"       experience:   {_count(user.experience)}",
	]


class MergeReporter:
	"""Human-readable report of a seed user merge run."""

	def __init__(self, emit: Emit = print) -> None:
		self._emit = emit

	def _line(self, text: str = "") -> None:
		self._emit(text)

	def banner(self) -> None:
		self._line("=" * RULE_WIDTH)
		self._line("MERGE SEED USERS INTO LIVE USERS")
		self._line("=" * RULE_WIDTH)
		self._line()

	def duplicates_found(self, count: int) -> None:
		self._line(f"   Found {count} email(s) with duplicates")
		self._line()
		if count == 0:
			self._line("No duplicates to merge. Migration complete!")
			self._line()

	def group_started(self, group: models.DuplicateEmailGroup) -> None:
		self._line("-" * RULE_WIDTH)
		self._line(f"Processing email: {group.email}")
		self._line(f"   Found {group.count} user documents")

	def group_skipped(self, group: models.DuplicateEmailGroup) -> None:
		keys = ", ".join(str(member.identity_key) for member in group.members)
		self._line("   SKIPPED: No clear seed/live pair found")
		self._line(f"       IdentityKeys: {keys}")

	def pair_selected(self, pair: models.MergePair) -> None:
		self._line(f"   Seed user:  {pair.seed.identity_key} ({pair.seed.id})")
		self._line(f"   Live user:  {pair.live.identity_key} ({pair.live.id})")
		self._line()

	def before(self, pair: models.MergePair) -> None:
		self._line("   BEFORE:")
		for text in snapshot_lines(pair.seed, "Seed User"):
			self._line(text)
		self._line()
		for text in snapshot_lines(pair.live, "Live User (before merge)"):
			self._line(text)
		self._line()

	def after(self, merged: models.UserRecord) -> None:
		self._line("   AFTER MERGE:")
		for text in snapshot_lines(merged, "Live User (after merge)"):
			self._line(text)
		self._line()

	def live_updated(self, matched: int, modified: int) -> None:
		self._line(f"   Updated live user (matched: {matched}, modified: {modified})")

	def seed_archived(self, matched: int, modified: int) -> None:
		self._line(f"   Archived seed user (matched: {matched}, modified: {modified})")

	def group_merged(self, email: str) -> None:
		self._line(f"   Successfully merged {email}")
		self._line()

	def group_failed(self, email: str, error: Exception) -> None:
		self._line(f"   FAILED: {email}: {error}")
		self._line()

	def summary(self, result: models.MergeSummary) -> None:
		self._line("=" * RULE_WIDTH)
		self._line("MIGRATION SUMMARY:")
		self._line("=" * RULE_WIDTH)
		self._line(f"Total duplicate emails found: {result.groups}")
		self._line(f"Successfully merged:          {result.merged}")
		self._line(f"Skipped (no clear pair):      {result.skipped}")
		self._line(f"Failed writes:                {result.failed}")
		self._line("=" * RULE_WIDTH)
		self._line()
		if result.merged > 0:
			self._line("Profile data has been merged from seed users into live users.")
			self._line("   Seed users have been archived (not deleted).")
			self._line()
			self._line("Next steps:")
			self._line("   1. Run researchhub-identity-audit again to verify duplicates are resolved")
			self._line("   2. Test login and verify profile data is visible")
			self._line("   3. Archived seed users can then be removed manually if desired")
			self._line()
		if result.failed > 0:
			self._line("Some groups failed to write; re-run the merge once the store is healthy.")
			self._line()
