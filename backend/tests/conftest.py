import copy
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Mapping

import pytest

# Ensure backend package is importable when tests run from repo root
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from prometheus_client import REGISTRY

from researchhub.domain.identity import models
from researchhub.domain.identity.store import UpdateResult, UserRecordNotFound, UserStoreError
from researchhub.infra import postgres
from researchhub.settings import settings


FIXED_NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class InMemoryUserStore:
    """Dict-backed stand-in for the users table."""

    def __init__(self, records: Iterable[models.UserRecord] = ()) -> None:
        self.rows: dict[str, models.UserRecord] = {record.id: record for record in records}
        self.writes: list[tuple[str, dict[str, Any]]] = []
        self.fail_ids: set[str] = set()
        self.group_query_error: Exception | None = None

    def add(self, *records: models.UserRecord) -> "InMemoryUserStore":
        for record in records:
            self.rows[record.id] = record
        return self

    async def duplicate_email_groups(self) -> list[models.DuplicateEmailGroup]:
        if self.group_query_error is not None:
            raise self.group_query_error
        by_email: dict[str, list[models.UserRecord]] = {}
        for record in self.rows.values():
            if record.is_archived or not record.email:
                continue
            by_email.setdefault(record.email, []).append(copy.deepcopy(record))
        return [
            models.DuplicateEmailGroup(email=email, members=members)
            for email, members in by_email.items()
            if len(members) > 1
        ]

    async def update_fields(self, user_id: str, fields: Mapping[str, Any]) -> UpdateResult:
        self.writes.append((user_id, dict(fields)))
        if user_id in self.fail_ids:
            raise UserStoreError("store unavailable", user_id=user_id)
        row = self.rows.get(user_id)
        if row is None:
            raise UserRecordNotFound("user_not_found", user_id=user_id)
        modified = any(getattr(row, key) != value for key, value in fields.items())
        for key, value in fields.items():
            setattr(row, key, copy.deepcopy(value))
        return UpdateResult(matched=1, modified=int(modified))


def make_record(user_id: str, identity_key: str | None, email: str | None = "a@x.edu", **fields: Any) -> models.UserRecord:
    return models.UserRecord(id=user_id, identity_key=identity_key, email=email, **fields)


@pytest.fixture
def user_store():
    return InMemoryUserStore()


@pytest.fixture
def record_factory():
    return make_record


@pytest.fixture
def fixed_now():
    return FIXED_NOW


@pytest.fixture
def metric_value():
    def _read(name: str, **labels: str) -> float:
        return REGISTRY.get_sample_value(name, labels) or 0.0

    return _read


@pytest.fixture(autouse=True)
def reset_pool():
    postgres.set_pool(None)
    try:
        yield
    finally:
        postgres.set_pool(None)


@pytest.fixture(autouse=True)
def force_identity_prefixes():
    """Pin identity prefixes so local .env files do not leak into tests."""
    original_seed = settings.identity_seed_prefix
    original_live = settings.identity_live_prefix
    settings.identity_seed_prefix = "seed_clerk_"
    settings.identity_live_prefix = "user_"
    try:
        yield
    finally:
        settings.identity_seed_prefix = original_seed
        settings.identity_live_prefix = original_live
