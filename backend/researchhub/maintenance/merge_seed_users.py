"""Merge seed users into the live users that share their email.

One-time migration. For every email held by exactly one seed user and one live
user, the seed profile is folded into the live row and the seed row is
archived (``is_archived``/``merged_into_id``), never deleted.

Usage:
	researchhub-merge-seed-users
	python -m researchhub.maintenance.merge_seed_users

Point POSTGRES_URL / DATABASE_URL at the right database before running.
Re-running is safe: archived rows no longer take part in duplicate detection.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from uuid import uuid4

import asyncpg
from dotenv import load_dotenv

load_dotenv()

from researchhub import obs
from researchhub.domain.identity import models
from researchhub.domain.identity.merge import IdentityMergeProcessor
from researchhub.domain.identity.store import PostgresUserStore
from researchhub.infra import postgres
from researchhub.obs.logging import bind_context, reset_context

logger = logging.getLogger(__name__)


async def merge_seed_users() -> models.MergeSummary:
	async with postgres.pool_scope() as pool:
		processor = IdentityMergeProcessor(PostgresUserStore(pool))
		return await processor.run()


def main() -> int:
	obs.init()
	tokens = bind_context(job="merge_seed_users", run_id=uuid4().hex)
	try:
		asyncio.run(merge_seed_users())
	except (OSError, ConnectionError, asyncpg.PostgresError) as exc:
		logger.exception("seed user merge aborted")
		print(f"\nMIGRATION FAILED: could not talk to Postgres ({exc}).", file=sys.stderr)
		print("Ensure Postgres is running and POSTGRES_URL/DATABASE_URL is correct.", file=sys.stderr)
		return 1
	except Exception as exc:
		logger.exception("seed user merge aborted")
		print(f"\nMIGRATION FAILED: {exc}", file=sys.stderr)
		return 1
	finally:
		reset_context(tokens)
	return 0


if __name__ == "__main__":
	sys.exit(main())
