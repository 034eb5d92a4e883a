"""Convergence engine: record resolution, diffing and change-batch submission."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from dns_rr.cache import ZoneCache
from dns_rr.endpoint import Endpoint, RecordIntent, build_fqdn
from dns_rr.errors import CancellationToken
from dns_rr.providers import (
    Change,
    ChangeAction,
    DNSProvider,
    RecordSet,
    RecordSetCursor,
)

logger = logging.getLogger(__name__)

# =============================================================================
# Diff Engine
# =============================================================================


def change_record_set(desired: Endpoint) -> RecordSet:
    """Provider record set for a desired endpoint.

    Alias endpoints carry only the alias target; value endpoints carry TTL and
    a single value. A weight adds the set identifier and weight to either.
    """
    if desired.is_alias:
        record_set = RecordSet(
            name=desired.dns_name,
            type=desired.record_class,
            alias_target=desired.alias_target,
        )
    else:
        record_set = RecordSet(
            name=desired.dns_name,
            type=desired.record_class,
            ttl=desired.ttl,
            records=(desired.rdata,),
        )
    if desired.weight is not None:
        record_set = replace(record_set, set_identifier=desired.id, weight=desired.weight)
    return record_set


def diff(
    owners: Sequence[str],
    zone_name: str,
    desired: Endpoint,
    actual_by_owner: Mapping[str, Endpoint],
) -> List[Change]:
    """Changes needed to converge each owner's record, in owner order.

    Owners without an actual endpoint get CREATE, owners whose actual endpoint
    differs get UPSERT. Records of owners no longer declared are left alone.
    """
    changes: List[Change] = []
    for owner in owners:
        wanted = desired.for_owner(owner, zone_name)
        record_set = change_record_set(wanted)

        actual = actual_by_owner.get(owner)
        if actual is None:
            changes.append(Change(ChangeAction.CREATE, record_set))
        elif actual != wanted:
            changes.append(Change(ChangeAction.UPSERT, record_set))
    return changes


# =============================================================================
# Record Resolution
# =============================================================================


def _endpoint_from_record_set(record_set: RecordSet, owner: str, fqdn: str) -> Endpoint:
    if record_set.alias_target is not None:
        return Endpoint(
            dns_name=fqdn,
            record_class=record_set.type,
            id=record_set.set_identifier or "",
            weight=record_set.weight,
            is_alias=True,
            alias_target=replace(
                record_set.alias_target, dns_name=record_set.alias_target.dns_name.lower()
            ),
            resource_owner=owner,
        )
    # Multi-value record sets are summarized by their first value.
    return Endpoint(
        dns_name=fqdn,
        record_class=record_set.type,
        rdata=record_set.records[0] if record_set.records else "",
        ttl=record_set.ttl or 0,
        id=record_set.set_identifier or "",
        weight=record_set.weight,
        resource_owner=owner,
    )


def resolve_endpoint(
    record_sets: Iterable[RecordSet],
    owner: str,
    zone_name: str,
    record_class: str,
    set_id: Optional[str] = None,
) -> Optional[Endpoint]:
    """Find the actual endpoint for one owner in provider-ordered record sets.

    Scanning stops at the first entry past the owner's name. With `set_id`,
    only the record set carrying that set identifier matches.
    """
    fqdn = build_fqdn(owner, zone_name)
    seen_name = False
    for record_set in record_sets:
        if record_set.name.lower() != fqdn.lower():
            if seen_name:
                break
            continue
        seen_name = True
        if record_set.type != record_class:
            continue
        if set_id and record_set.set_identifier != set_id:
            continue
        return _endpoint_from_record_set(record_set, owner, fqdn)
    return None


def resolve_endpoints(
    record_sets: Sequence[RecordSet],
    owners: Sequence[str],
    zone_name: str,
    record_class: str,
    set_id: Optional[str] = None,
) -> Dict[str, Endpoint]:
    endpoints: Dict[str, Endpoint] = {}
    for owner in owners:
        endpoint = resolve_endpoint(record_sets, owner, zone_name, record_class, set_id)
        if endpoint is not None:
            endpoints[owner] = endpoint
    return endpoints


# =============================================================================
# Convergence Driver
# =============================================================================


class Converger:
    """Converges one intent across an owner group in a provider zone."""

    def __init__(
        self,
        provider: DNSProvider,
        cache: Optional[ZoneCache] = None,
        cache_key: Optional[str] = None,
    ):
        self.provider = provider
        self.cache = cache
        self.cache_key = cache_key

    def actual_endpoints(
        self,
        zone_id: str,
        zone_name: str,
        owners: Sequence[str],
        record_class: str,
        set_id: Optional[str] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> Dict[str, Endpoint]:
        """Resolve actual endpoints from the cache, or by scoped listing without one."""
        snapshot = None
        if self.cache is not None and self.cache_key is not None:
            snapshot = self.cache.get(self.cache_key)
        if snapshot is not None:
            return resolve_endpoints(snapshot, owners, zone_name, record_class, set_id)

        if self.cache is not None:
            logger.debug(f"No cached snapshot for {self.cache_key}; listing zone {zone_id}")
        endpoints: Dict[str, Endpoint] = {}
        for owner in owners:
            start = RecordSetCursor(name=build_fqdn(owner, zone_name))
            page = self.provider.list_record_sets(zone_id, start, cancel)
            endpoint = resolve_endpoint(page.record_sets, owner, zone_name, record_class, set_id)
            if endpoint is not None:
                endpoints[owner] = endpoint
        return endpoints

    def converge(
        self,
        zone_id: str,
        zone_name: str,
        owners: Sequence[str],
        intent: RecordIntent,
        cancel: Optional[CancellationToken] = None,
    ) -> List[Change]:
        """Bring the owners' records in line with `intent`.

        Returns the computed changes. At most one change batch is submitted;
        in dry-run mode none is. Provider failures raise ProviderCallError.
        """
        desired = intent.desired_endpoint()
        if desired.is_alias and not desired.alias_target.hosted_zone_id:
            desired = replace(
                desired, alias_target=replace(desired.alias_target, hosted_zone_id=zone_id)
            )

        actual = self.actual_endpoints(
            zone_id, zone_name, owners, desired.record_class, intent.id, cancel
        )
        changes = diff(owners, zone_name, desired, actual)

        if intent.dry_run:
            for change in changes:
                logger.warning(
                    f"[dry-run] {change.action.value} {change.record_set.name} "
                    f"{change.record_set.type} in zone {zone_id}"
                )
            return changes

        if not changes:
            logger.debug(f"Zone {zone_id}: {len(owners)} owner(s) already converged")
            return changes

        self.provider.apply_change_batch(zone_id, changes, cancel)
        logger.info(
            f"Zone {zone_id}: applied {len(changes)} change(s) "
            f"({', '.join(f'{c.action.value} {c.record_set.name}' for c in changes)})"
        )
        return changes
