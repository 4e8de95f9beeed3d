"""Read-only fingerprint of user identity state, run before and after a merge."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Callable, Optional
from urllib.parse import urlparse

from researchhub.domain.identity import models
from researchhub.domain.identity.report import RULE_WIDTH, redact_url
from researchhub.domain.identity.store import DuplicateKeyCount, PostgresUserStore

_DSN_PASSWORD_RE = re.compile(r"//([^:/@]+):([^@]+)@")


def redact_dsn(dsn: Optional[str]) -> str:
	if not dsn:
		return "NOT_SET"
	return _DSN_PASSWORD_RE.sub(r"//\1:****@", dsn)


def dsn_host(dsn: Optional[str]) -> str:
	if not dsn:
		return "unknown"
	parsed = urlparse(dsn)
	host = parsed.hostname or "unknown"
	return f"{host}:{parsed.port}" if parsed.port else host


@dataclass(slots=True)
class TargetEmailStatus:
	email: str
	users: list[models.UserRecord] = field(default_factory=list)

	@property
	def active(self) -> list[models.UserRecord]:
		return [user for user in self.users if not user.is_archived]

	@property
	def label(self) -> str:
		if not self.users:
			return "NOT FOUND"
		if len(self.users) == 1:
			return "OK (single user)"
		if len(self.active) > 1:
			return f"DUPLICATE ({len(self.active)} active users)"
		return f"RESOLVED ({len(self.users) - len(self.active)} archived, {len(self.active)} active)"


@dataclass(slots=True)
class IdentityAuditResult:
	database: str
	host: str
	dsn: str
	duplicate_emails: list[DuplicateKeyCount]
	duplicate_identity_keys: list[DuplicateKeyCount]
	breakdown: dict[str, int]
	target: Optional[TargetEmailStatus] = None


async def collect(
	store: PostgresUserStore,
	*,
	dsn: Optional[str],
	seed_prefix: str,
	live_prefix: str,
	duplicate_limit: int,
	target_email: Optional[str] = None,
) -> IdentityAuditResult:
	target: Optional[TargetEmailStatus] = None
	if target_email:
		target = TargetEmailStatus(email=target_email, users=await store.users_by_email(target_email))
	return IdentityAuditResult(
		database=await store.database_name(),
		host=dsn_host(dsn),
		dsn=redact_dsn(dsn),
		duplicate_emails=await store.duplicate_counts("email", limit=duplicate_limit),
		duplicate_identity_keys=await store.duplicate_counts("identity_key"),
		breakdown=await store.identity_breakdown(seed_prefix=seed_prefix, live_prefix=live_prefix),
		target=target,
	)


def _target_lines(target: TargetEmailStatus) -> list[str]:
	lines = [f"AUDITING USER: {target.email}", "-" * RULE_WIDTH]
	if not target.users:
		lines.append("   No users found with this email")
		return lines
	lines.append(f"   Found {len(target.users)} user(s) with email: {target.email}")
	lines.append("")
	for index, user in enumerate(target.users, start=1):
		archived = " [ARCHIVED]" if user.is_archived else ""
		lines.append(f"   [{index}] User Document:{archived}")
		lines.append(f"       id:           {user.id}")
		lines.append(f"       identityKey:  {user.identity_key}")
		lines.append(f"       createdAt:    {user.created_at.isoformat() if user.created_at else 'N/A'}")
		if user.is_archived:
			lines.append(f"       archivedAt:   {user.archived_at.isoformat() if user.archived_at else 'N/A'}")
			lines.append(f"       mergedInto:   {user.merged_into_id or 'N/A'}")
		lines.append(f"       headline:     {user.headline or 'null'}")
		lines.append(f"       profilePhoto: {redact_url(user.profile_photo_url) or 'null'}")
		lines.append(f"       skills:       [{len(user.skills)} items]")
		lines.append("")
	if len(target.users) > 1:
		active = target.active
		if len(active) > 1:
			keys = ", ".join(str(user.identity_key) for user in active)
			lines.append(f"   DUPLICATE DETECTED: {len(active)} ACTIVE users share email {target.email}")
			lines.append(f"       Active IdentityKeys: {keys}")
		else:
			lines.append(
				f"   Duplicate resolved: {len(target.users) - len(active)} archived, {len(active)} active"
			)
		lines.append("")
	return lines


def _duplicate_lines(title: str, label: str, entries: list[DuplicateKeyCount], *, expect_none: bool) -> list[str]:
	lines = ["", title, "-" * RULE_WIDTH]
	if not entries:
		lines.append(f"   No duplicate {label}s found" + (" (as expected)" if expect_none else ""))
		return lines
	prefix = "UNEXPECTED: " if expect_none else ""
	lines.append(f"   {prefix}Found {len(entries)} {label}(s) with duplicates:")
	lines.append("")
	for index, entry in enumerate(entries, start=1):
		lines.append(f"   [{index}] {label}: {entry.key}")
		lines.append(f"       Count:        {entry.count}")
		lines.append(f"       IdentityKeys: {', '.join(str(key) for key in entry.identity_keys)}")
		lines.append(f"       Emails:       {', '.join(str(email) for email in entry.emails)}")
		lines.append(f"       UserIds:      {', '.join(entry.user_ids)}")
		lines.append("")
	return lines


def render(result: IdentityAuditResult, *, seed_prefix: str, live_prefix: str) -> list[str]:
	lines = ["=" * RULE_WIDTH, "IDENTITY AUDIT", "=" * RULE_WIDTH, ""]
	lines += [
		"DATABASE CONNECTION INFO:",
		f"   DSN:          {result.dsn}",
		f"   Host:         {result.host}",
		f"   Database:     {result.database}",
		"   Table:        users",
		"",
	]
	if result.target is not None:
		lines += _target_lines(result.target)
	lines += _duplicate_lines("SCANNING FOR ALL DUPLICATE EMAILS:", "email", result.duplicate_emails, expect_none=False)
	lines += _duplicate_lines(
		"SCANNING FOR DUPLICATE IDENTITY KEYS:", "identityKey", result.duplicate_identity_keys, expect_none=True
	)
	breakdown = result.breakdown
	lines += [
		"",
		"USER TYPE BREAKDOWN:",
		"-" * RULE_WIDTH,
		f"   Total users:        {breakdown['total']}",
		f"   Seed users:         {breakdown['seed']} (identityKey starts with \"{seed_prefix}\")",
		f"   Live users:         {breakdown['live']} (identityKey starts with \"{live_prefix}\")",
		f"   Other users:        {breakdown['other']}",
		"",
		"=" * RULE_WIDTH,
		"AUDIT SUMMARY:",
		"=" * RULE_WIDTH,
		f"Database:              {result.database} @ {result.host}",
		f"Total users:           {breakdown['total']}",
		f"Duplicate emails:      {len(result.duplicate_emails)}",
		f"Duplicate identityKeys: {len(result.duplicate_identity_keys)}",
	]
	if result.target is not None:
		lines.append(f"Target email status:   {result.target.label}")
	lines += ["=" * RULE_WIDTH, ""]
	return lines


def print_report(
	result: IdentityAuditResult,
	*,
	seed_prefix: str,
	live_prefix: str,
	emit: Callable[[str], None] = print,
) -> None:
	for line in render(result, seed_prefix=seed_prefix, live_prefix=live_prefix):
		emit(line)
