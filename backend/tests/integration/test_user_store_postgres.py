from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Iterator
from uuid import UUID, uuid4

import asyncpg
import pytest
import pytest_asyncio

from researchhub.domain.identity.merge import IdentityMergeProcessor
from researchhub.domain.identity.report import MergeReporter
from researchhub.domain.identity.store import PostgresUserStore, UserRecordNotFound, UserStoreError
from researchhub.infra import postgres

pytestmark = pytest.mark.asyncio

MIGRATIONS_DIR = Path(__file__).resolve().parents[2] / "migrations"

MERGED_AT = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="module")
def postgres_container() -> Iterator["PostgresContainer"]:
    testcontainers = pytest.importorskip(
        "testcontainers.postgres",
        reason="testcontainers.postgres is required for integration tests",
    )
    PostgresContainer = testcontainers.PostgresContainer
    container = PostgresContainer("postgres:16-alpine")
    try:
        container.start()
    except Exception as exc:  # pragma: no cover - environment without docker
        pytest.skip(f"unable to start postgres container: {exc}")
    try:
        yield container
    finally:
        container.stop()


async def _run_migrations(pool: asyncpg.Pool) -> None:
    async with pool.acquire() as conn:
        await conn.execute("DROP SCHEMA IF EXISTS public CASCADE")
        await conn.execute("CREATE SCHEMA public")
        await conn.execute("GRANT ALL ON SCHEMA public TO PUBLIC")
        for path in sorted(MIGRATIONS_DIR.glob("*.sql")):
            await conn.execute(path.read_text(encoding="utf-8"))


@pytest_asyncio.fixture(scope="function")
async def postgres_pool(postgres_container) -> AsyncIterator[asyncpg.Pool]:
    url = postgres_container.get_connection_url().replace("postgresql+psycopg2", "postgresql")
    pool = await asyncpg.create_pool(dsn=url, min_size=1, max_size=4)
    await _run_migrations(pool)
    postgres.set_pool(pool)
    try:
        yield pool
    finally:
        postgres.set_pool(None)
        await pool.close()


async def _insert_user(pool: asyncpg.Pool, user_id: UUID, identity_key: str | None, email: str, **columns) -> None:
    columns = {"id": user_id, "identity_key": identity_key, "email": email, **columns}
    names = ", ".join(columns)
    values = []
    for idx, name in enumerate(columns, start=1):
        values.append(f"${idx}::jsonb" if name in ("skills", "education", "experience", "profile_links") else f"${idx}")
    params = [json.dumps(v) if isinstance(v, (list, dict)) else v for v in columns.values()]
    async with pool.acquire() as conn:
        await conn.execute(f"INSERT INTO users ({names}) VALUES ({', '.join(values)})", *params)


async def _fetch_user(pool: asyncpg.Pool, user_id: UUID) -> asyncpg.Record:
    async with pool.acquire() as conn:
        return await conn.fetchrow("SELECT * FROM users WHERE id = $1", user_id)


@pytest.mark.integration
async def test_merge_writes_uuid_and_jsonb_columns(postgres_pool):
    seed_id, live_id = uuid4(), uuid4()
    await _insert_user(
        postgres_pool,
        seed_id,
        "seed_clerk_ada",
        "ada@campus.edu",
        bio="Seed bio",
        skills=["ML", "Rust"],
        profile_links={"github": "gh/ada", "site": "ada.dev"},
        created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )
    await _insert_user(
        postgres_pool,
        live_id,
        "user_ada",
        "ada@campus.edu",
        profile_links={"github": "gh/ada-live"},
        created_at=datetime(2025, 2, 1, tzinfo=timezone.utc),
    )
    lines: list[str] = []
    processor = IdentityMergeProcessor(
        PostgresUserStore(postgres_pool), reporter=MergeReporter(emit=lines.append), clock=lambda: MERGED_AT
    )

    summary = await processor.run()

    assert (summary.groups, summary.merged, summary.failed) == (1, 1, 0)
    live = await _fetch_user(postgres_pool, live_id)
    assert live["bio"] == "Seed bio"
    assert json.loads(live["skills"]) == ["ML", "Rust"]
    assert json.loads(live["profile_links"]) == {"github": "gh/ada-live", "site": "ada.dev"}
    assert live["created_at"] == datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert live["updated_at"] == MERGED_AT
    seed = await _fetch_user(postgres_pool, seed_id)
    assert seed["merged_into_id"] == live_id
    assert seed["merged_into_identity_key"] == "user_ada"
    assert seed["is_archived"] is True
    assert seed["archived_at"] == MERGED_AT

    second = await processor.run()
    assert (second.groups, second.merged) == (0, 0)


@pytest.mark.integration
async def test_update_fields_counts_matched_and_modified(postgres_pool):
    user_id, other_id = uuid4(), uuid4()
    await _insert_user(postgres_pool, user_id, "seed_clerk_bo", "bo@campus.edu", skills=["Go"])
    store = PostgresUserStore(postgres_pool)
    fields = {
        "skills": ["Go", "SQL"],
        "profile_links": None,
        "merged_into_id": str(other_id),
        "is_archived": True,
        "archived_at": MERGED_AT,
    }

    first = await store.update_fields(str(user_id), fields)
    repeat = await store.update_fields(str(user_id), fields)

    assert (first.matched, first.modified) == (1, 1)
    assert (repeat.matched, repeat.modified) == (1, 0)
    row = await _fetch_user(postgres_pool, user_id)
    assert json.loads(row["skills"]) == ["Go", "SQL"]
    assert row["merged_into_id"] == other_id
    with pytest.raises(UserRecordNotFound):
        await store.update_fields(str(uuid4()), {"is_archived": True})


@pytest.mark.integration
async def test_assign_identity_key_rejects_taken_key(postgres_pool):
    first_id, second_id = uuid4(), uuid4()
    await _insert_user(postgres_pool, first_id, None, "jdoe@a.edu")
    await _insert_user(postgres_pool, second_id, None, "jdoe@b.edu")
    store = PostgresUserStore(postgres_pool)

    assert await store.assign_identity_key(str(first_id), "seed_clerk_jdoe") is True
    assert await store.assign_identity_key(str(first_id), "seed_clerk_other") is False
    with pytest.raises(UserStoreError):
        await store.assign_identity_key(str(second_id), "seed_clerk_jdoe")
