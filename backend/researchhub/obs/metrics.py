"""Central registry for Prometheus metrics used by the maintenance jobs."""

from __future__ import annotations

from prometheus_client import Counter

IDENTITY_MERGE_GROUPS = Counter(
	"researchhub_identity_merge_groups_total",
	"Duplicate-email groups processed by the seed user merge",
	["outcome"],
)

IDENTITY_MERGE_WRITES = Counter(
	"researchhub_identity_merge_writes_total",
	"Targeted user row updates issued by the seed user merge",
	["target"],
)

IDENTITY_KEYS_BACKFILLED = Counter(
	"researchhub_identity_keys_backfilled_total",
	"Seed identity keys assigned to users without one",
)


def inc_merge_outcome(outcome: str) -> None:
	IDENTITY_MERGE_GROUPS.labels(outcome=outcome).inc()


def inc_merge_write(target: str) -> None:
	IDENTITY_MERGE_WRITES.labels(target=target).inc()


def inc_identity_keys_backfilled(count: int = 1) -> None:
	if count > 0:
		IDENTITY_KEYS_BACKFILLED.inc(count)
