import pytest

from researchhub.domain.identity import backfill
from researchhub.domain.identity.store import UserStoreError


class BackfillStore:
    def __init__(self, users, taken=()):
        self.users = users
        self.taken = set(taken)
        self.assigned: list[tuple[str, str]] = []

    async def users_without_identity_key(self):
        return self.users

    async def assign_identity_key(self, user_id, identity_key):
        if user_id in self.taken:
            return False
        self.assigned.append((user_id, identity_key))
        return True


@pytest.mark.parametrize(
    "email,expected",
    [
        ("jane.doe@mcgill.ca", "seed_clerk_jane.doe"),
        ("x@y.edu", "seed_clerk_x"),
        ("", None),
        (None, None),
        ("not-an-email", None),
        ("@nolocal.edu", None),
    ],
)
def test_seed_identity_key(email, expected):
    assert backfill.seed_identity_key(email, prefix="seed_clerk_") == expected


@pytest.mark.asyncio
async def test_backfill_assigns_keys(record_factory, metric_value):
    store = BackfillStore(
        [
            record_factory("1", None, email="jane@x.edu"),
            record_factory("2", None, email=None),
            record_factory("3", None, email="omar@x.edu"),
        ],
        taken={"3"},
    )
    before = metric_value("researchhub_identity_keys_backfilled_total")

    result = await backfill.backfill_seed_identity_keys(store, prefix="seed_clerk_")

    assert result.candidates == 3
    assert result.updated == 1
    assert result.skipped_no_email == 1
    assert store.assigned == [("1", "seed_clerk_jane")]
    assert result.assignments == [("1", "seed_clerk_jane"), ("3", "seed_clerk_omar")]
    assert metric_value("researchhub_identity_keys_backfilled_total") == before + 1


class UniqueKeyStore(BackfillStore):
    """Rejects a key another row already holds, like the unique index on identity_key."""

    async def assign_identity_key(self, user_id, identity_key):
        if any(key == identity_key for _, key in self.assigned):
            raise UserStoreError(
                'duplicate key value violates unique constraint "idx_users_identity_key"', user_id=user_id
            )
        return await super().assign_identity_key(user_id, identity_key)


@pytest.mark.asyncio
async def test_backfill_continues_past_key_collision(record_factory, metric_value):
    store = UniqueKeyStore(
        [
            record_factory("1", None, email="jdoe@a.edu"),
            record_factory("2", None, email="jdoe@b.edu"),
            record_factory("3", None, email="other@a.edu"),
        ]
    )
    before = metric_value("researchhub_identity_keys_backfilled_total")

    result = await backfill.backfill_seed_identity_keys(store, prefix="seed_clerk_")

    assert [user_id for user_id, _ in store.assigned] == ["1", "3"]
    assert result.updated == 2
    assert result.collisions == 1
    assert metric_value("researchhub_identity_keys_backfilled_total") == before + 2


@pytest.mark.asyncio
async def test_backfill_dry_run_writes_nothing(record_factory):
    store = BackfillStore([record_factory("1", None, email="jane@x.edu")])

    result = await backfill.backfill_seed_identity_keys(store, prefix="seed_clerk_", dry_run=True)

    assert result.updated == 0
    assert result.assignments == [("1", "seed_clerk_jane")]
    assert store.assigned == []
