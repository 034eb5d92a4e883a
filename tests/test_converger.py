"""Unit tests for the Converger driver."""

import pytest

from dns_rr.cache import ZoneCache
from dns_rr.endpoint import AliasIntent, AliasTarget, RecordIntent
from dns_rr.engine import Converger
from dns_rr.errors import CancellationToken, OperationCancelled, ProviderCallError
from dns_rr.providers import ChangeAction, InMemoryProvider, RecordSet, RecordSetCursor

ZONE_ID = "Z0123456789ABCDEFGHIJ"
ZONE_NAME = "example.com"
CACHE_KEY = "default/primary"


def a_intent(rdata: str = "192.0.2.1", **kwargs) -> RecordIntent:
    return RecordIntent(record_class="A", ttl=300, rdata=rdata, **kwargs)


def a_record_set(name: str, value: str, **kwargs) -> RecordSet:
    return RecordSet(name=name, type="A", ttl=300, records=(value,), **kwargs)


def create_converger(*record_sets: RecordSet, cached: bool = True):
    provider = InMemoryProvider(zones={ZONE_ID: list(record_sets)})
    cache = ZoneCache()
    if cached:
        cache.replace(CACHE_KEY, provider.all_record_sets(ZONE_ID))
        provider.list_calls.clear()
    return Converger(provider, cache=cache, cache_key=CACHE_KEY), provider, cache


# =============================================================================
# Apply
# =============================================================================


def test_creates_missing_records_in_one_batch() -> None:
    converger, provider, _ = create_converger()

    changes = converger.converge(ZONE_ID, ZONE_NAME, ["www", "app"], a_intent())

    assert [c.action for c in changes] == [ChangeAction.CREATE, ChangeAction.CREATE]
    assert len(provider.apply_calls) == 1
    assert provider.apply_calls[0] == (ZONE_ID, changes)
    assert {r.name for r in provider.record_sets(ZONE_ID)} == {
        "www.example.com.",
        "app.example.com.",
    }


def test_upserts_drifted_record() -> None:
    converger, provider, _ = create_converger(a_record_set("test.example.com.", "198.51.100.1"))

    changes = converger.converge(ZONE_ID, ZONE_NAME, ["test"], a_intent())

    assert [c.action for c in changes] == [ChangeAction.UPSERT]
    assert provider.record_sets(ZONE_ID) == [a_record_set("test.example.com.", "192.0.2.1")]


def test_converged_zone_makes_no_provider_call() -> None:
    converger, provider, _ = create_converger(a_record_set("test.example.com.", "192.0.2.1"))

    changes = converger.converge(ZONE_ID, ZONE_NAME, ["test"], a_intent())

    assert changes == []
    assert provider.apply_calls == []
    assert provider.list_calls == []


def test_second_run_against_fresh_snapshot_is_noop() -> None:
    converger, provider, cache = create_converger()
    converger.converge(ZONE_ID, ZONE_NAME, ["www"], a_intent())

    cache.replace(CACHE_KEY, provider.all_record_sets(ZONE_ID))
    changes = converger.converge(ZONE_ID, ZONE_NAME, ["www"], a_intent())

    assert changes == []
    assert len(provider.apply_calls) == 1


def test_weighted_record_matches_only_its_identifier() -> None:
    converger, provider, _ = create_converger(
        a_record_set("www.example.com.", "192.0.2.1", set_identifier="weighted-record", weight=10),
        a_record_set("www.example.com.", "192.0.2.9", set_identifier="other", weight=90),
    )

    changes = converger.converge(
        ZONE_ID, ZONE_NAME, ["www"], a_intent(weight=10, id="weighted-record")
    )

    assert changes == []
    assert provider.apply_calls == []


def test_alias_without_zone_id_targets_own_zone() -> None:
    converger, provider, _ = create_converger(a_record_set("test.example.com.", "198.51.100.1"))
    intent = RecordIntent(
        record_class="A",
        is_alias=True,
        alias_target=AliasIntent(record="target.example.com.", evaluate_target_health=True),
    )

    changes = converger.converge(ZONE_ID, ZONE_NAME, ["test"], intent)

    assert [c.action for c in changes] == [ChangeAction.UPSERT]
    assert changes[0].record_set == RecordSet(
        name="test.example.com.",
        type="A",
        alias_target=AliasTarget("target.example.com.", ZONE_ID, True),
    )


def test_provider_failure_carries_zone_id() -> None:
    converger, provider, _ = create_converger()
    provider.failing_zones.add(ZONE_ID)

    with pytest.raises(ProviderCallError) as excinfo:
        converger.converge(ZONE_ID, ZONE_NAME, ["www"], a_intent())

    assert excinfo.value.zone_id == ZONE_ID
    assert ZONE_ID in str(excinfo.value)
    assert len(provider.apply_calls) == 1


def test_cancelled_token_aborts_before_submit() -> None:
    converger, provider, _ = create_converger()
    cancel = CancellationToken()
    cancel.cancel()

    with pytest.raises(OperationCancelled):
        converger.converge(ZONE_ID, ZONE_NAME, ["www"], a_intent(), cancel=cancel)

    assert provider.apply_calls == []


# =============================================================================
# Dry Run
# =============================================================================


def test_dry_run_makes_no_mutation_calls() -> None:
    converger, provider, _ = create_converger(a_record_set("app.example.com.", "198.51.100.1"))

    changes = converger.converge(
        ZONE_ID, ZONE_NAME, ["www", "app", "api"], a_intent(dry_run=True)
    )

    assert len(changes) == 3
    assert provider.apply_calls == []
    assert provider.record_sets(ZONE_ID) == [a_record_set("app.example.com.", "198.51.100.1")]


def test_dry_run_ignores_provider_failures_on_submit() -> None:
    converger, provider, _ = create_converger()
    provider.failing_zones.add(ZONE_ID)

    changes = converger.converge(ZONE_ID, ZONE_NAME, ["www"], a_intent(dry_run=True))

    assert len(changes) == 1


# =============================================================================
# Actual Lookup
# =============================================================================


def test_reads_cached_snapshot_not_provider() -> None:
    converger, provider, cache = create_converger(a_record_set("www.example.com.", "192.0.2.1"))
    provider.put_record_set(ZONE_ID, a_record_set("www.example.com.", "203.0.113.5"))

    changes = converger.converge(ZONE_ID, ZONE_NAME, ["www"], a_intent())

    # Stale snapshot still says converged.
    assert changes == []
    assert provider.list_calls == []


def test_falls_back_to_scoped_listing_without_snapshot() -> None:
    converger, provider, _ = create_converger(
        a_record_set("app.example.com.", "192.0.2.1"),
        a_record_set("www.example.com.", "198.51.100.1"),
        cached=False,
    )

    changes = converger.converge(ZONE_ID, ZONE_NAME, ["www", "app"], a_intent())

    assert [(c.action, c.record_set.name) for c in changes] == [
        (ChangeAction.UPSERT, "www.example.com.")
    ]
    assert provider.list_calls == [
        (ZONE_ID, RecordSetCursor(name="www.example.com.")),
        (ZONE_ID, RecordSetCursor(name="app.example.com.")),
    ]


def test_converger_without_cache_lists_provider() -> None:
    provider = InMemoryProvider(zones={ZONE_ID: []})
    converger = Converger(provider)

    changes = converger.converge(ZONE_ID, ZONE_NAME, ["www"], a_intent())

    assert [c.action for c in changes] == [ChangeAction.CREATE]
    assert provider.list_calls == [(ZONE_ID, RecordSetCursor(name="www.example.com."))]


def test_alias_target_case_does_not_cause_upsert() -> None:
    converger, provider, _ = create_converger(
        RecordSet(
            name="test.example.com.",
            type="A",
            alias_target=AliasTarget("target.example.com.", ZONE_ID, False),
        )
    )
    intent = RecordIntent(
        record_class="A",
        is_alias=True,
        alias_target=AliasIntent(record="Target.Example.com"),
    )

    assert converger.converge(ZONE_ID, ZONE_NAME, ["test"], intent) == []
    assert provider.apply_calls == []
