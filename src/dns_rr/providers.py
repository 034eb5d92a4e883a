"""DNS provider capability: record set listing and atomic change batches.

Supported DNS Providers:
    - route53: AWS Route53 via boto3
    - cloudflare: Cloudflare v4 API via requests
    - memory: in-memory fake with Route53-like ordering and paging
"""

from __future__ import annotations

import itertools
import logging
import re
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

import boto3
import requests
from botocore.exceptions import BotoCoreError, ClientError

from dns_rr.endpoint import AliasTarget
from dns_rr.errors import (
    CancellationToken,
    ConfigurationError,
    ProviderCallError,
    check_cancelled,
)

logger = logging.getLogger(__name__)

# =============================================================================
# Enums
# =============================================================================


class ChangeAction(Enum):
    """Change batch actions. DELETE is never produced."""

    CREATE = "CREATE"
    UPSERT = "UPSERT"


# =============================================================================
# Data Classes
# =============================================================================


_ROUTE53_ESCAPE = re.compile(r"\\(\d{3})")


def _decode_route53_name(name: str) -> str:
    """Undo Route53's octal escapes, e.g. "\\052.example.com." -> "*.example.com."."""
    return _ROUTE53_ESCAPE.sub(lambda m: chr(int(m.group(1), 8)), name)


@dataclass(frozen=True)
class RecordSet:
    """Provider-neutral record set, shaped after Route53's ResourceRecordSet."""

    name: str
    type: str
    ttl: Optional[int] = None
    records: Tuple[str, ...] = ()
    alias_target: Optional[AliasTarget] = None
    set_identifier: Optional[str] = None
    weight: Optional[int] = None

    @classmethod
    def from_route53(cls, data: Dict[str, Any]) -> "RecordSet":
        alias = data.get("AliasTarget")
        return cls(
            name=_decode_route53_name(data["Name"]),
            type=data["Type"],
            ttl=data.get("TTL"),
            records=tuple(r["Value"] for r in data.get("ResourceRecords") or []),
            alias_target=(
                AliasTarget(
                    dns_name=_decode_route53_name(alias.get("DNSName", "")),
                    hosted_zone_id=alias.get("HostedZoneId", ""),
                    evaluate_target_health=bool(alias.get("EvaluateTargetHealth", False)),
                )
                if alias
                else None
            ),
            set_identifier=data.get("SetIdentifier"),
            weight=data.get("Weight"),
        )

    def to_route53(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"Name": self.name, "Type": self.type}
        if self.alias_target is not None:
            data["AliasTarget"] = {
                "DNSName": self.alias_target.dns_name,
                "HostedZoneId": self.alias_target.hosted_zone_id,
                "EvaluateTargetHealth": self.alias_target.evaluate_target_health,
            }
        if self.ttl is not None:
            data["TTL"] = self.ttl
        if self.records:
            data["ResourceRecords"] = [{"Value": value} for value in self.records]
        if self.set_identifier is not None:
            data["SetIdentifier"] = self.set_identifier
        if self.weight is not None:
            data["Weight"] = self.weight
        return data


@dataclass(frozen=True)
class Change:
    """One entry of a change batch."""

    action: ChangeAction
    record_set: RecordSet

    def to_route53(self) -> Dict[str, Any]:
        return {"Action": self.action.value, "ResourceRecordSet": self.record_set.to_route53()}


@dataclass(frozen=True)
class RecordSetCursor:
    """Listing position: name/type/identifier triple, or an opaque page token."""

    name: Optional[str] = None
    type: Optional[str] = None
    identifier: Optional[str] = None
    token: Optional[str] = None


@dataclass(frozen=True)
class RecordSetPage:
    record_sets: Tuple[RecordSet, ...] = ()
    next_cursor: Optional[RecordSetCursor] = None
    is_truncated: bool = False


# =============================================================================
# DNS Provider Interface
# =============================================================================


class DNSProvider(ABC):
    """Abstract base class for DNS providers."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the provider name for logging."""
        pass

    @abstractmethod
    def list_record_sets(
        self,
        zone_id: str,
        start: Optional[RecordSetCursor] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> RecordSetPage:
        """List one page of record sets, starting at `start` when given."""
        pass

    @abstractmethod
    def apply_change_batch(
        self,
        zone_id: str,
        changes: List[Change],
        cancel: Optional[CancellationToken] = None,
    ) -> Optional[str]:
        """Submit all changes as one atomic batch. Returns a change id if any."""
        pass

    def all_record_sets(
        self, zone_id: str, cancel: Optional[CancellationToken] = None
    ) -> List[RecordSet]:
        """Page through every record set in the zone."""
        result: List[RecordSet] = []
        start: Optional[RecordSetCursor] = None
        while True:
            check_cancelled(cancel, f"listing zone {zone_id}")
            page = self.list_record_sets(zone_id, start, cancel)
            result.extend(page.record_sets)
            if not page.is_truncated:
                return result
            if page.next_cursor is None:
                raise ProviderCallError(
                    f"truncated listing without a cursor for zone {zone_id}", zone_id
                )
            start = page.next_cursor


# =============================================================================
# Route53
# =============================================================================


class Route53Provider(DNSProvider):
    """AWS Route53 provider implementation."""

    def __init__(
        self,
        region: str = "",
        access_key_id: str = "",
        secret_access_key: str = "",
        client: Any = None,
    ):
        if client is None:
            if not region:
                raise ConfigurationError("route53 provider requires region")
            kwargs: Dict[str, Any] = {"region_name": region}
            if access_key_id and secret_access_key:
                kwargs["aws_access_key_id"] = access_key_id
                kwargs["aws_secret_access_key"] = secret_access_key
            client = boto3.client("route53", **kwargs)
        self._client = client

    @property
    def name(self) -> str:
        return "Route53"

    def list_record_sets(
        self,
        zone_id: str,
        start: Optional[RecordSetCursor] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> RecordSetPage:
        check_cancelled(cancel, f"listing zone {zone_id}")
        params: Dict[str, Any] = {"HostedZoneId": zone_id}
        if start is not None and start.name:
            params["StartRecordName"] = start.name
            if start.type:
                params["StartRecordType"] = start.type
            if start.identifier:
                params["StartRecordIdentifier"] = start.identifier

        try:
            output = self._client.list_resource_record_sets(**params)
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Failed to list record sets from {self.name} zone {zone_id}: {e}")
            raise ProviderCallError(
                f"failed to list resource record sets for zone {zone_id}: {e}", zone_id
            ) from e

        is_truncated = bool(output.get("IsTruncated"))
        next_cursor = None
        if is_truncated:
            next_cursor = RecordSetCursor(
                name=output.get("NextRecordName"),
                type=output.get("NextRecordType"),
                identifier=output.get("NextRecordIdentifier"),
            )
        return RecordSetPage(
            record_sets=tuple(RecordSet.from_route53(r) for r in output["ResourceRecordSets"]),
            next_cursor=next_cursor,
            is_truncated=is_truncated,
        )

    def apply_change_batch(
        self,
        zone_id: str,
        changes: List[Change],
        cancel: Optional[CancellationToken] = None,
    ) -> Optional[str]:
        check_cancelled(cancel, f"changing zone {zone_id}")
        try:
            output = self._client.change_resource_record_sets(
                HostedZoneId=zone_id,
                ChangeBatch={"Changes": [c.to_route53() for c in changes]},
            )
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Failed to change record sets in {self.name} zone {zone_id}: {e}")
            raise ProviderCallError(
                f"failed to change resource record sets for zone {zone_id}: {e}", zone_id
            ) from e

        change_id = output["ChangeInfo"]["Id"]
        logger.info(f"Submitted {len(changes)} change(s) to {self.name} zone {zone_id}: {change_id}")
        return change_id


# =============================================================================
# Cloudflare
# =============================================================================


CLOUDFLARE_API_URL = "https://api.cloudflare.com/client/v4"
# Cloudflare reads ttl=1 as "automatic"; it maps to ttl 0 here.
CLOUDFLARE_AUTO_TTL = 1


def _cloudflare_value(record: Dict[str, Any]) -> str:
    """Render a Cloudflare record as a Route53-style value string."""
    record_type = record.get("type")
    if record_type == "MX":
        return f"{record.get('priority', 0)} {record.get('content', '')}"
    if record_type == "SRV" and isinstance(record.get("data"), dict):
        data = record["data"]
        return (
            f"{data.get('priority', 0)} {data.get('weight', 0)} "
            f"{data.get('port', 0)} {data.get('target', '')}"
        )
    return str(record.get("content", ""))


def _cloudflare_ttl(ttl: Any) -> Optional[int]:
    if ttl is None:
        return None
    ttl = int(ttl)
    return 0 if ttl == CLOUDFLARE_AUTO_TTL else ttl


def _cloudflare_body(record_set: RecordSet, zone_id: str) -> Dict[str, Any]:
    if record_set.ttl == CLOUDFLARE_AUTO_TTL:
        raise ProviderCallError(
            f"ttl {CLOUDFLARE_AUTO_TTL} for {record_set.name} {record_set.type} is reserved "
            f"for automatic TTL in zone {zone_id}; use 0",
            zone_id,
        )
    body: Dict[str, Any] = {
        "name": record_set.name.rstrip("."),
        "type": record_set.type,
        "ttl": record_set.ttl or CLOUDFLARE_AUTO_TTL,
    }
    value = record_set.records[0] if record_set.records else ""
    try:
        if record_set.type == "MX":
            priority, content = value.split(None, 1)
            body["priority"] = int(priority)
            body["content"] = content
        elif record_set.type == "SRV":
            priority, weight, port, target = value.split()
            body["data"] = {
                "priority": int(priority),
                "weight": int(weight),
                "port": int(port),
                "target": target,
            }
        else:
            body["content"] = value
    except ValueError as e:
        raise ProviderCallError(
            f"malformed {record_set.type} value {value!r} for {record_set.name} "
            f"in zone {zone_id}: {e}",
            zone_id,
        ) from e
    return body


class CloudflareProvider(DNSProvider):
    """Cloudflare provider implementation.

    Listing pages by page number, carried in the cursor token. A cursor with a
    name narrows the listing to that exact name. Upserts resolve the existing
    record id by name and type before submitting the batch.
    """

    def __init__(
        self,
        api_token: str,
        url: str = CLOUDFLARE_API_URL,
        page_size: int = 100,
        timeout_seconds: float = 10.0,
    ):
        self._url = url.rstrip("/")
        self._page_size = page_size
        self._timeout = timeout_seconds
        self._session = requests.Session()
        self._session.headers.update({"Authorization": f"Bearer {api_token}"})

    @property
    def name(self) -> str:
        return "Cloudflare"

    def _records_url(self, zone_id: str) -> str:
        return f"{self._url}/zones/{zone_id}/dns_records"

    def _get_records(self, zone_id: str, params: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = self._session.get(
                self._records_url(zone_id), params=params, timeout=self._timeout
            )
            response.raise_for_status()
            data = response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.error(f"Failed to list records from {self.name} zone {zone_id}: {e}")
            raise ProviderCallError(
                f"failed to list dns records for zone {zone_id}: {e}", zone_id
            ) from e
        if not data.get("success", False):
            raise ProviderCallError(
                f"failed to list dns records for zone {zone_id}: {data.get('errors')}", zone_id
            )
        return data

    def list_record_sets(
        self,
        zone_id: str,
        start: Optional[RecordSetCursor] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> RecordSetPage:
        check_cancelled(cancel, f"listing zone {zone_id}")
        page = int(start.token) if start is not None and start.token else 1
        params: Dict[str, Any] = {
            "page": page,
            "per_page": self._page_size,
            "order": "name",
            "direction": "asc",
        }
        if start is not None and start.name:
            params["name"] = start.name.rstrip(".")

        data = self._get_records(zone_id, params)

        grouped: Dict[Tuple[str, str], List[Dict[str, Any]]] = {}
        for record in data.get("result") or []:
            if not isinstance(record, dict) or "name" not in record or "type" not in record:
                logger.warning(f"Skipping malformed record: {record}")
                continue
            key = (record["name"].rstrip(".") + ".", record["type"])
            grouped.setdefault(key, []).append(record)

        record_sets = tuple(
            RecordSet(
                name=name,
                type=record_type,
                ttl=_cloudflare_ttl(records[0].get("ttl")),
                records=tuple(_cloudflare_value(r) for r in records),
            )
            for (name, record_type), records in grouped.items()
        )

        total_pages = int((data.get("result_info") or {}).get("total_pages") or 1)
        is_truncated = page < total_pages
        next_cursor = None
        if is_truncated:
            next_cursor = RecordSetCursor(
                name=start.name if start is not None else None, token=str(page + 1)
            )
        return RecordSetPage(
            record_sets=record_sets, next_cursor=next_cursor, is_truncated=is_truncated
        )

    def _find_record_id(self, zone_id: str, record_set: RecordSet) -> Optional[str]:
        data = self._get_records(
            zone_id, {"name": record_set.name.rstrip("."), "type": record_set.type}
        )
        for record in data.get("result") or []:
            if isinstance(record, dict) and record.get("id"):
                return str(record["id"])
        return None

    def apply_change_batch(
        self,
        zone_id: str,
        changes: List[Change],
        cancel: Optional[CancellationToken] = None,
    ) -> Optional[str]:
        posts: List[Dict[str, Any]] = []
        puts: List[Dict[str, Any]] = []
        for change in changes:
            record_set = change.record_set
            if record_set.alias_target is not None or record_set.weight is not None:
                raise ProviderCallError(
                    f"{self.name} does not support alias or weighted record sets "
                    f"({record_set.name} {record_set.type}) in zone {zone_id}",
                    zone_id,
                )
            body = _cloudflare_body(record_set, zone_id)
            if change.action is ChangeAction.UPSERT:
                check_cancelled(cancel, f"changing zone {zone_id}")
                record_id = self._find_record_id(zone_id, record_set)
                if record_id:
                    puts.append({"id": record_id, **body})
                    continue
            posts.append(body)

        payload: Dict[str, Any] = {}
        if puts:
            payload["puts"] = puts
        if posts:
            payload["posts"] = posts

        check_cancelled(cancel, f"changing zone {zone_id}")
        try:
            response = self._session.post(
                f"{self._records_url(zone_id)}/batch", json=payload, timeout=self._timeout
            )
            response.raise_for_status()
            data = response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.error(f"Failed to apply batch to {self.name} zone {zone_id}: {e}")
            raise ProviderCallError(
                f"failed to apply dns record batch for zone {zone_id}: {e}", zone_id
            ) from e
        if not data.get("success", False):
            raise ProviderCallError(
                f"failed to apply dns record batch for zone {zone_id}: {data.get('errors')}",
                zone_id,
            )

        logger.info(
            f"Submitted {len(changes)} change(s) to {self.name} zone {zone_id} "
            f"({len(posts)} created, {len(puts)} replaced)"
        )
        return None


# =============================================================================
# In-Memory
# =============================================================================


def _order_key(
    name: str, record_type: Optional[str] = None, identifier: Optional[str] = None
) -> Tuple[Tuple[str, ...], str, str]:
    """Route53 ordering: labels reversed, then type, then set identifier."""
    labels = tuple(reversed(name.rstrip(".").lower().split(".")))
    return labels, record_type or "", identifier or ""


def _record_set_key(record_set: RecordSet) -> Tuple[Tuple[str, ...], str, str]:
    return _order_key(record_set.name, record_set.type, record_set.set_identifier)


class InMemoryProvider(DNSProvider):
    """In-memory provider with call tracking, used for tests and dry setups."""

    def __init__(
        self,
        zones: Optional[Dict[str, Iterable[RecordSet]]] = None,
        page_size: int = 100,
    ):
        self._lock = threading.Lock()
        self._zones: Dict[str, List[RecordSet]] = {
            zone_id: sorted(record_sets, key=_record_set_key)
            for zone_id, record_sets in (zones or {}).items()
        }
        self._page_size = page_size
        self._change_ids = itertools.count(1)
        self.failing_zones: Set[str] = set()
        self.list_calls: List[Tuple[str, Optional[RecordSetCursor]]] = []
        self.apply_calls: List[Tuple[str, List[Change]]] = []

    @property
    def name(self) -> str:
        return "InMemory"

    def record_sets(self, zone_id: str) -> List[RecordSet]:
        with self._lock:
            return list(self._zones.get(zone_id, []))

    def _check_zone(self, zone_id: str) -> None:
        if zone_id in self.failing_zones:
            raise ProviderCallError(f"zone {zone_id} unavailable", zone_id)
        if zone_id not in self._zones:
            raise ProviderCallError(f"no such hosted zone {zone_id}", zone_id)

    def list_record_sets(
        self,
        zone_id: str,
        start: Optional[RecordSetCursor] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> RecordSetPage:
        check_cancelled(cancel, f"listing zone {zone_id}")
        self.list_calls.append((zone_id, start))
        with self._lock:
            self._check_zone(zone_id)
            record_sets = list(self._zones[zone_id])

        index = 0
        if start is not None and start.name:
            begin = _order_key(start.name, start.type, start.identifier)
            while index < len(record_sets) and _record_set_key(record_sets[index]) < begin:
                index += 1

        page = record_sets[index : index + self._page_size]
        rest = record_sets[index + self._page_size :]
        next_cursor = None
        if rest:
            next_cursor = RecordSetCursor(
                name=rest[0].name, type=rest[0].type, identifier=rest[0].set_identifier
            )
        return RecordSetPage(
            record_sets=tuple(page), next_cursor=next_cursor, is_truncated=bool(rest)
        )

    def apply_change_batch(
        self,
        zone_id: str,
        changes: List[Change],
        cancel: Optional[CancellationToken] = None,
    ) -> Optional[str]:
        check_cancelled(cancel, f"changing zone {zone_id}")
        self.apply_calls.append((zone_id, list(changes)))
        with self._lock:
            self._check_zone(zone_id)
            staged = {_record_set_key(r): r for r in self._zones[zone_id]}
            for change in changes:
                key = _record_set_key(change.record_set)
                if change.action is ChangeAction.CREATE and key in staged:
                    raise ProviderCallError(
                        f"record set {change.record_set.name} {change.record_set.type} "
                        f"already exists in zone {zone_id}",
                        zone_id,
                    )
                staged[key] = change.record_set
            self._zones[zone_id] = sorted(staged.values(), key=_record_set_key)
        return f"C{next(self._change_ids)}"

    def put_record_set(self, zone_id: str, record_set: RecordSet) -> None:
        """Seed or overwrite a record set without going through a change batch."""
        with self._lock:
            staged = {_record_set_key(r): r for r in self._zones.setdefault(zone_id, [])}
            staged[_record_set_key(record_set)] = record_set
            self._zones[zone_id] = sorted(staged.values(), key=_record_set_key)
