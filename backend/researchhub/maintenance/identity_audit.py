"""Print a fingerprint of user identity state.

Run before the seed user merge to see what will be touched, and again after it
to confirm duplicates are resolved.

Usage:
	researchhub-identity-audit
	researchhub-identity-audit --email someone@university.edu
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
from researchhub.domain.identity import identity_audit
from researchhub.domain.identity.store import PostgresUserStore
from researchhub.infra import postgres
from researchhub.obs.logging import bind_context, reset_context
from researchhub.settings import settings

logger = logging.getLogger(__name__)


def _parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
	p = argparse.ArgumentParser(description="Audit duplicate user identities")
	p.add_argument(
		"--email",
		default=settings.audit_target_email,
		help="Inspect every row for this email (default: AUDIT_TARGET_EMAIL)",
	)
	p.add_argument(
		"--limit",
		type=int,
		default=settings.audit_duplicate_limit,
		help="Max duplicate-email groups to list (default: %(default)s)",
	)
	return p.parse_args(argv)


async def run_audit(args: argparse.Namespace) -> identity_audit.IdentityAuditResult:
	async with postgres.pool_scope() as pool:
		result = await identity_audit.collect(
			PostgresUserStore(pool),
			dsn=settings.postgres_url,
			seed_prefix=settings.identity_seed_prefix,
			live_prefix=settings.identity_live_prefix,
			duplicate_limit=args.limit,
			target_email=args.email,
		)
	identity_audit.print_report(
		result,
		seed_prefix=settings.identity_seed_prefix,
		live_prefix=settings.identity_live_prefix,
	)
	return result


def main(argv: Optional[list[str]] = None) -> int:
	args = _parse_args(argv)
	obs.init()
	tokens = bind_context(job="identity_audit", run_id=uuid4().hex)
	try:
		asyncio.run(run_audit(args))
	except (OSError, ConnectionError, asyncpg.PostgresError) as exc:
		logger.exception("identity audit aborted")
		print(f"\nAUDIT FAILED: could not talk to Postgres ({exc}).", file=sys.stderr)
		return 1
	except Exception as exc:
		logger.exception("identity audit aborted")
		print(f"\nAUDIT FAILED: {exc}", file=sys.stderr)
		return 1
	finally:
		reset_context(tokens)
	return 0


if __name__ == "__main__":
	sys.exit(main())
