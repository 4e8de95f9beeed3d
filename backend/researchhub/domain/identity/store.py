"""User record persistence used by the identity maintenance jobs."""

from __future__ import annotations

import json
from dataclasses import dataclass
from itertools import groupby
from typing import Any, Mapping, Optional, Protocol, Sequence

import asyncpg

from researchhub.domain.identity import models

WRITABLE_COLUMNS: frozenset[str] = frozenset(
	(*models.PROFILE_FIELD_NAMES, "created_at", "updated_at", *models.ARCHIVE_COLUMNS)
)

_STORE_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, ConnectionError)


class UserStoreError(RuntimeError):
	"""Raised when the user store rejects or cannot perform a write."""

	def __init__(self, reason: str, *, user_id: Optional[str] = None):
		super().__init__(reason)
		self.reason = reason
		self.user_id = user_id


class UserRecordNotFound(UserStoreError):
	"""Raised when a targeted update matches no row."""


@dataclass(frozen=True, slots=True)
class UpdateResult:
	matched: int
	modified: int


@dataclass(frozen=True, slots=True)
class DuplicateKeyCount:
	key: Optional[str]
	count: int
	identity_keys: tuple[Optional[str], ...]
	emails: tuple[Optional[str], ...]
	user_ids: tuple[str, ...]


class UserStore(Protocol):
	async def duplicate_email_groups(self) -> Sequence[models.DuplicateEmailGroup]:
		...

	async def update_fields(self, user_id: str, fields: Mapping[str, Any]) -> UpdateResult:
		...


def _encode(column: str, value: Any) -> Any:
	if column in models.JSON_COLUMNS and value is not None:
		return json.dumps(value, default=str)
	return value


def _placeholder(column: str, index: int) -> str:
	if column in models.JSON_COLUMNS:
		return f"${index}::jsonb"
	return f"${index}"


def build_update_query(fields: Mapping[str, Any]) -> tuple[str, list[Any]]:
	"""Build a targeted update that reports matched and modified row counts."""
	if not fields:
		raise ValueError("no fields to update")
	unknown = sorted(set(fields) - WRITABLE_COLUMNS)
	if unknown:
		raise ValueError(f"columns not writable: {', '.join(unknown)}")
	columns = list(fields)
	params: list[Any] = []
	placeholders: list[str] = []
	for column in columns:
		params.append(_encode(column, fields[column]))
		placeholders.append(_placeholder(column, len(params) + 1))
	assignments = ", ".join(f"{column} = {ph}" for column, ph in zip(columns, placeholders))
	current = ", ".join(f"u.{column}" for column in columns)
	incoming = ", ".join(placeholders)
	query = f"""
	WITH target AS (
		SELECT id FROM users WHERE id = $1 FOR UPDATE
	), updated AS (
		UPDATE users u
		SET {assignments}
		FROM target t
		WHERE u.id = t.id AND ROW({current}) IS DISTINCT FROM ROW({incoming})
		RETURNING u.id
	)
	SELECT (SELECT COUNT(*) FROM target) AS matched, (SELECT COUNT(*) FROM updated) AS modified
	"""
	return query, params


class PostgresUserStore:
	"""asyncpg-backed access to the ``users`` table."""

	def __init__(self, pool: asyncpg.pool.Pool) -> None:
		self._pool = pool

	async def duplicate_email_groups(self) -> list[models.DuplicateEmailGroup]:
		async with self._pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				SELECT *
				FROM users
				WHERE COALESCE(is_archived, FALSE) = FALSE
				  AND email IN (
					SELECT email
					FROM users
					WHERE email IS NOT NULL AND COALESCE(is_archived, FALSE) = FALSE
					GROUP BY email
					HAVING COUNT(*) > 1
				  )
				ORDER BY email, created_at NULLS LAST, id
				"""
			)
		records = [models.UserRecord.from_record(row) for row in rows]
		return [
			models.DuplicateEmailGroup(email=email, members=list(members))
			for email, members in groupby(records, key=lambda record: record.email)
		]

	async def update_fields(self, user_id: str, fields: Mapping[str, Any]) -> UpdateResult:
		query, params = build_update_query(fields)
		try:
			async with self._pool.acquire() as conn:
				row = await conn.fetchrow(query, user_id, *params)
		except _STORE_ERRORS as exc:
			raise UserStoreError(f"update failed: {exc}", user_id=user_id) from exc
		result = UpdateResult(matched=int(row["matched"]), modified=int(row["modified"]))
		if result.matched == 0:
			raise UserRecordNotFound("user_not_found", user_id=user_id)
		return result

	async def users_by_email(self, email: str) -> list[models.UserRecord]:
		async with self._pool.acquire() as conn:
			rows = await conn.fetch(
				"SELECT * FROM users WHERE email = $1 ORDER BY created_at NULLS LAST, id",
				email,
			)
		return [models.UserRecord.from_record(row) for row in rows]

	async def duplicate_counts(self, column: str, *, limit: Optional[int] = None) -> list[DuplicateKeyCount]:
		"""Count raw duplicates (archived rows included) on ``email`` or ``identity_key``."""
		if column not in ("email", "identity_key"):
			raise ValueError(f"unsupported duplicate column: {column}")
		limit_sql = f"LIMIT {int(limit)}" if limit else ""
		async with self._pool.acquire() as conn:
			rows = await conn.fetch(
				f"""
				SELECT {column} AS key,
				       COUNT(*) AS count,
				       array_agg(identity_key ORDER BY created_at NULLS LAST, id) AS identity_keys,
				       array_agg(email ORDER BY created_at NULLS LAST, id) AS emails,
				       array_agg(id::text ORDER BY created_at NULLS LAST, id) AS user_ids
				FROM users
				WHERE {column} IS NOT NULL
				GROUP BY {column}
				HAVING COUNT(*) > 1
				ORDER BY COUNT(*) DESC, {column}
				{limit_sql}
				"""
			)
		return [
			DuplicateKeyCount(
				key=row["key"],
				count=int(row["count"]),
				identity_keys=tuple(row["identity_keys"] or ()),
				emails=tuple(row["emails"] or ()),
				user_ids=tuple(row["user_ids"] or ()),
			)
			for row in rows
		]

	async def identity_breakdown(self, *, seed_prefix: str, live_prefix: str) -> dict[str, int]:
		async with self._pool.acquire() as conn:
			row = await conn.fetchrow(
				"""
				SELECT COUNT(*) AS total,
				       COUNT(*) FILTER (WHERE left(identity_key, length($1)) = $1) AS seed,
				       COUNT(*) FILTER (WHERE left(identity_key, length($2)) = $2) AS live
				FROM users
				""",
				seed_prefix,
				live_prefix,
			)
		total = int(row["total"])
		seed = int(row["seed"])
		live = int(row["live"])
		return {"total": total, "seed": seed, "live": live, "other": total - seed - live}

	async def database_name(self) -> str:
		async with self._pool.acquire() as conn:
			return str(await conn.fetchval("SELECT current_database()"))

	async def users_without_identity_key(self) -> list[models.UserRecord]:
		async with self._pool.acquire() as conn:
			rows = await conn.fetch(
				"SELECT * FROM users WHERE identity_key IS NULL ORDER BY created_at NULLS LAST, id"
			)
		return [models.UserRecord.from_record(row) for row in rows]

	async def assign_identity_key(self, user_id: str, identity_key: str) -> bool:
		"""Set ``identity_key`` only if the row still has none."""
		try:
			async with self._pool.acquire() as conn:
				status = await conn.execute(
					"UPDATE users SET identity_key = $2 WHERE id = $1 AND identity_key IS NULL",
					user_id,
					identity_key,
				)
		except _STORE_ERRORS as exc:
			raise UserStoreError(f"identity key update failed: {exc}", user_id=user_id) from exc
		return status.endswith(" 1")
