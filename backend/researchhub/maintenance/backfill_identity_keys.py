"""Give users without an identity key a stable seed key.

Rows created by the seed tasks predate sign-in and have no ``identity_key``.
They get ``<IDENTITY_SEED_PREFIX><email local part>`` so the merge job can
recognise them. Rows without an email are left alone.

Usage:
	researchhub-backfill-identity-keys --dry-run
	researchhub-backfill-identity-keys
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Optional
from uuid import uuid4

import asyncpg
from dotenv import load_dotenv

load_dotenv()

from researchhub import obs
from researchhub.domain.identity import backfill
from researchhub.domain.identity.store import PostgresUserStore
from researchhub.infra import postgres
from researchhub.obs.logging import bind_context, reset_context
from researchhub.settings import settings

logger = logging.getLogger(__name__)


def _parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
	p = argparse.ArgumentParser(description="Backfill seed identity keys")
	p.add_argument(
		"--dry-run",
		action="store_true",
		help="Print the keys that would be assigned without writing them",
	)
	return p.parse_args(argv)


async def run_backfill(args: argparse.Namespace) -> backfill.BackfillResult:
	async with postgres.pool_scope() as pool:
		result = await backfill.backfill_seed_identity_keys(
			PostgresUserStore(pool),
			prefix=settings.identity_seed_prefix,
			dry_run=args.dry_run,
		)
	print(f"Found {result.candidates} users without an identity key")
	for user_id, key in result.assignments[:25]:
		print(f"- {user_id} -> {key}")
	if len(result.assignments) > 25:
		print(f"... and {len(result.assignments) - 25} more")
	if result.skipped_no_email:
		print(f"Skipped {result.skipped_no_email} users without an email")
	if result.collisions:
		print(f"Skipped {result.collisions} users whose key is already taken (see log)")
	if args.dry_run:
		print("\nDry-run only. Re-run without --dry-run to write the keys.")
	else:
		print(f"Done. Updated {result.updated} users.")
	return result


def main(argv: Optional[list[str]] = None) -> int:
	args = _parse_args(argv)
	obs.init()
	tokens = bind_context(job="backfill_identity_keys", run_id=uuid4().hex)
	try:
		asyncio.run(run_backfill(args))
	except (OSError, ConnectionError, asyncpg.PostgresError) as exc:
		logger.exception("identity key backfill aborted")
		print(f"\nBACKFILL FAILED: could not talk to Postgres ({exc}).", file=sys.stderr)
		return 1
	except Exception as exc:
		logger.exception("identity key backfill aborted")
		print(f"\nBACKFILL FAILED: {exc}", file=sys.stderr)
		return 1
	finally:
		reset_context(tokens)
	return 0


if __name__ == "__main__":
	sys.exit(main())
