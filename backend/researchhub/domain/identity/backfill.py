"""Assign stable seed identity keys to users created before sign-in existed."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from researchhub.domain.identity import models
from researchhub.domain.identity.store import PostgresUserStore, UserStoreError
from researchhub.obs import metrics as obs_metrics
from researchhub.obs.logging import mask_email

logger = logging.getLogger(__name__)


def seed_identity_key(email: Optional[str], *, prefix: str) -> Optional[str]:
	"""Derive ``<prefix><local part>`` from an email, or ``None`` without one."""
	if not email or "@" not in email:
		return None
	local_part = email.split("@", 1)[0].strip()
	if not local_part:
		return None
	return f"{prefix}{local_part}"


@dataclass(slots=True)
class BackfillResult:
	candidates: int = 0
	updated: int = 0
	skipped_no_email: int = 0
	collisions: int = 0
	assignments: list[tuple[str, str]] = field(default_factory=list)


async def backfill_seed_identity_keys(
	store: PostgresUserStore,
	*,
	prefix: str,
	dry_run: bool = False,
) -> BackfillResult:
	users: list[models.UserRecord] = await store.users_without_identity_key()
	result = BackfillResult(candidates=len(users))
	for user in users:
		key = seed_identity_key(user.email, prefix=prefix)
		if key is None:
			result.skipped_no_email += 1
			continue
		result.assignments.append((user.id, key))
		if dry_run:
			continue
		try:
			assigned = await store.assign_identity_key(user.id, key)
		except UserStoreError as exc:
			# identity_key is unique; another row already holds this local part
			result.collisions += 1
			logger.warning(
				"seed identity key not assigned",
				extra={"user_id": user.id, "user": mask_email(user.email), "reason": exc.reason},
			)
			continue
		if assigned:
			result.updated += 1
			logger.info("assigned seed identity key", extra={"user_id": user.id, "user": mask_email(user.email)})
	obs_metrics.inc_identity_keys_backfilled(result.updated)
	return result
