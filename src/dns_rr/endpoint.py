"""Endpoint model: one DNS record's desired or observed state.

An endpoint is either alias-shaped (alias target set, rdata/ttl left empty)
or value-shaped (rdata/ttl set, alias target left empty). Building alias
endpoints with empty rdata/ttl keeps dataclass equality structural.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Optional

from dns_rr.errors import ConfigurationError

# =============================================================================
# Constants
# =============================================================================

RECORD_CLASSES = ("A", "NS", "AAAA", "MX", "CNAME", "SRV", "TXT")
MAX_TTL = 2**31 - 1
MAX_WEIGHT = 255

# Leading integer fields of structured rdata: MX "10 mail.example.com",
# SRV "10 5 443 target.example.com".
RDATA_INT_FIELDS = {"MX": 1, "SRV": 3}


# =============================================================================
# FQDN Helpers
# =============================================================================


def ensure_trailing_dot(name: str) -> str:
    return name if name.endswith(".") else name + "."


def build_fqdn(owner: str, zone_name: str) -> str:
    """Join owner and zone into a dot-terminated FQDN.

    Idempotent on the trailing dot: "example.com" and "example.com." give the
    same result.
    """
    return ensure_trailing_dot(f"{owner}.{zone_name}")


def _check_rdata_shape(record_class: str, rdata: str) -> None:
    int_fields = RDATA_INT_FIELDS[record_class]
    parts = rdata.split()
    if len(parts) != int_fields + 1 or not all(p.isdigit() for p in parts[:int_fields]):
        raise ConfigurationError(
            f"{record_class} rdata must have {int_fields} integer field(s) "
            f"followed by a target, got {rdata!r}"
        )


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class AliasTarget:
    """Alias target of an endpoint."""

    dns_name: str = ""
    hosted_zone_id: str = ""
    evaluate_target_health: bool = False


@dataclass(frozen=True)
class Endpoint:
    """Represents one DNS record, desired or observed."""

    dns_name: str
    record_class: str
    rdata: str = ""
    ttl: int = 0
    id: str = ""
    weight: Optional[int] = None
    is_alias: bool = False
    alias_target: AliasTarget = field(default_factory=AliasTarget)
    # bookkeeping only, never compared
    resource_owner: str = field(default="", compare=False)

    def for_owner(self, owner: str, zone_name: str) -> "Endpoint":
        """Copy of this endpoint stamped with the owner's FQDN."""
        return replace(self, dns_name=build_fqdn(owner, zone_name), resource_owner=owner)


@dataclass(frozen=True)
class AliasIntent:
    record: str
    evaluate_target_health: bool = False
    hosted_zone_id: str = ""


@dataclass(frozen=True)
class RecordIntent:
    """Declared record intent, as consumed from the resource definition layer."""

    record_class: str
    ttl: int = 0
    rdata: str = ""
    weight: Optional[int] = None
    id: Optional[str] = None
    is_alias: bool = False
    alias_target: Optional[AliasIntent] = None
    dry_run: bool = False

    def validate(self) -> None:
        """Raise ConfigurationError if the intent breaks a schema rule."""
        if self.record_class not in RECORD_CLASSES:
            raise ConfigurationError(
                f"Unsupported record class '{self.record_class}'. "
                f"Supported: {', '.join(RECORD_CLASSES)}"
            )
        if not 0 <= self.ttl <= MAX_TTL:
            raise ConfigurationError(f"ttl must be within [0, {MAX_TTL}], got {self.ttl}")
        if self.weight is not None:
            if not 0 <= self.weight <= MAX_WEIGHT:
                raise ConfigurationError(
                    f"weight must be within [0, {MAX_WEIGHT}], got {self.weight}"
                )
            if not self.id:
                raise ConfigurationError("weighted records require an id")
        if self.is_alias:
            if self.alias_target is None or not self.alias_target.record:
                raise ConfigurationError("alias records require alias_target.record")
            if self.rdata:
                raise ConfigurationError("rdata and alias_target are mutually exclusive")
        elif not self.rdata:
            raise ConfigurationError("non-alias records require rdata")
        elif self.record_class in RDATA_INT_FIELDS:
            _check_rdata_shape(self.record_class, self.rdata)

    def desired_endpoint(self) -> Endpoint:
        """Build the desired-endpoint template (no dns_name or owner yet)."""
        if self.is_alias and self.alias_target is not None:
            return Endpoint(
                dns_name="",
                record_class=self.record_class,
                id=self.id or "",
                weight=self.weight,
                is_alias=True,
                alias_target=AliasTarget(
                    dns_name=ensure_trailing_dot(self.alias_target.record.lower()),
                    hosted_zone_id=self.alias_target.hosted_zone_id,
                    evaluate_target_health=self.alias_target.evaluate_target_health,
                ),
            )
        return Endpoint(
            dns_name="",
            record_class=self.record_class,
            rdata=self.rdata,
            ttl=self.ttl,
            id=self.id or "",
            weight=self.weight,
        )
