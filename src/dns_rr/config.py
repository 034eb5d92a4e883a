"""Configuration loading and credential resolution.

Config files are YAML documents with `providers`, `owners` and `records`
lists. A config path may be a single file or a directory of `*.yaml` files
(`*.template` files are ignored), merged in file-name order. Example:

    providers:
      - name: primary
        type: route53
        hosted_zone_id: Z0123456789ABCDEFGHIJ
        hosted_zone_name: example.com
        region: us-east-1
        auth:
          secret_ref:
            access_key_id: {name: aws-creds, key: access-key-id}
            secret_access_key: {name: aws-creds, key: secret-access-key}
    owners:
      - name: web
        names: [www, app]
    records:
      - name: web-a
        owner_ref: web
        provider_ref: primary
        class: A
        ttl: 300
        rdata: 192.0.2.1

Secrets are read from files laid out like a mounted Kubernetes secret:
`<secrets_path>/<namespace>/<secret name>/<key>`, falling back to
`<secrets_path>/<secret name>/<key>`.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from dns_rr.cache import cache_key
from dns_rr.endpoint import AliasIntent, RecordIntent
from dns_rr.errors import ConfigurationError, CredentialResolutionError
from dns_rr.providers import (
    CLOUDFLARE_API_URL,
    CloudflareProvider,
    DNSProvider,
    InMemoryProvider,
    Route53Provider,
)

logger = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "default"
PROVIDER_TYPES = ("route53", "cloudflare", "memory")

# =============================================================================
# File Watching Utilities
# =============================================================================


def get_config_file_mtime(config_path: str) -> float:
    """Get modification time of config file, returns 0 if file doesn't exist."""
    try:
        return os.path.getmtime(config_path) if os.path.exists(config_path) else 0.0
    except OSError:
        return 0.0


def find_config_files(config_path: str) -> List[str]:
    """Find all .yaml config files in directory or return single file.

    Args:
        config_path: Path to config file or directory

    Returns:
        List of config file paths (excluding .template files)
    """
    path = Path(config_path)

    if path.is_file():
        return [str(path)]

    if path.is_dir():
        yaml_files = sorted(path.glob("*.yaml"))
        return [str(f) for f in yaml_files if not f.name.endswith(".template")]

    return []


def get_config_files_mtimes(config_files: List[str]) -> Dict[str, float]:
    """Get modification times for all config files."""
    return {f: get_config_file_mtime(f) for f in config_files}


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class SecretKeySelector:
    """Reference to one key of a named secret."""

    name: str
    key: str
    namespace: Optional[str] = None


@dataclass(frozen=True)
class ProviderConfig:
    """A configured provider instance bound to one zone."""

    name: str
    type: str
    zone_id: str
    zone_name: str
    namespace: str = DEFAULT_NAMESPACE
    region: str = ""
    url: str = ""
    access_key_id_ref: Optional[SecretKeySelector] = None
    secret_access_key_ref: Optional[SecretKeySelector] = None
    api_token_ref: Optional[SecretKeySelector] = None

    @property
    def key(self) -> str:
        return cache_key(self.namespace, self.name)


@dataclass(frozen=True)
class OwnerConfig:
    """A named group of owner names converged together under one zone."""

    name: str
    names: Tuple[str, ...]
    namespace: str = DEFAULT_NAMESPACE


@dataclass(frozen=True)
class RecordConfig:
    """A declared record: an intent applied to an owner group via a provider."""

    name: str
    owner_ref: str
    provider_ref: str
    intent: RecordIntent
    namespace: str = DEFAULT_NAMESPACE

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass
class Config:
    providers: List[ProviderConfig] = field(default_factory=list)
    owners: List[OwnerConfig] = field(default_factory=list)
    records: List[RecordConfig] = field(default_factory=list)

    def provider(self, namespace: str, name: str) -> Optional[ProviderConfig]:
        for provider in self.providers:
            if provider.namespace == namespace and provider.name == name:
                return provider
        return None

    def owner(self, namespace: str, name: str) -> Optional[OwnerConfig]:
        for owner in self.owners:
            if owner.namespace == namespace and owner.name == name:
                return owner
        return None


# =============================================================================
# Parsing
# =============================================================================


def _parse_bool(value: Any, *, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _parse_optional_int(value: Any, label: str) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{label} must be an integer, got {value!r}")


def _parse_selector(value: Any) -> Optional[SecretKeySelector]:
    if not isinstance(value, dict):
        return None
    name = str(value.get("name") or "").strip()
    key = str(value.get("key") or "").strip()
    if not name or not key:
        return None
    namespace = str(value.get("namespace") or "").strip() or None
    return SecretKeySelector(name=name, key=key, namespace=namespace)


def parse_provider(item: Dict[str, Any]) -> ProviderConfig:
    name = str(item.get("name") or "").strip()
    provider_type = str(item.get("type") or "route53").strip().lower()
    zone_id = str(item.get("hosted_zone_id") or item.get("zone_id") or "").strip()
    zone_name = str(item.get("hosted_zone_name") or item.get("zone_name") or "").strip()
    if not name:
        raise ConfigurationError("provider entry requires a name")
    if provider_type not in PROVIDER_TYPES:
        raise ConfigurationError(
            f"Unsupported provider type '{provider_type}' for provider '{name}'. "
            f"Supported: {', '.join(PROVIDER_TYPES)}"
        )
    if not zone_id or not zone_name:
        raise ConfigurationError(f"provider '{name}' requires hosted_zone_id and hosted_zone_name")

    auth = item.get("auth") or {}
    secret_ref = auth.get("secret_ref") if isinstance(auth, dict) else None
    secret_ref = secret_ref if isinstance(secret_ref, dict) else {}

    return ProviderConfig(
        name=name,
        type=provider_type,
        zone_id=zone_id,
        zone_name=zone_name,
        namespace=str(item.get("namespace") or DEFAULT_NAMESPACE).strip(),
        region=str(item.get("region") or "").strip(),
        url=str(item.get("url") or "").strip(),
        access_key_id_ref=_parse_selector(secret_ref.get("access_key_id")),
        secret_access_key_ref=_parse_selector(secret_ref.get("secret_access_key")),
        api_token_ref=_parse_selector(secret_ref.get("api_token")),
    )


def parse_owner(item: Dict[str, Any]) -> OwnerConfig:
    name = str(item.get("name") or "").strip()
    if not name:
        raise ConfigurationError("owner entry requires a name")
    names = item.get("names") or []
    if not isinstance(names, list):
        raise ConfigurationError(f"owner '{name}' names must be a list")
    return OwnerConfig(
        name=name,
        names=tuple(str(n).strip() for n in names if str(n).strip()),
        namespace=str(item.get("namespace") or DEFAULT_NAMESPACE).strip(),
    )


def parse_intent(item: Dict[str, Any]) -> RecordIntent:
    """Build and validate a RecordIntent from a record entry."""
    alias = item.get("alias_target")
    alias_target = None
    if isinstance(alias, dict):
        alias_target = AliasIntent(
            record=str(alias.get("record") or "").strip(),
            evaluate_target_health=_parse_bool(alias.get("evaluate_target_health"), default=False),
            hosted_zone_id=str(alias.get("hosted_zone_id") or "").strip(),
        )
    record_id = item.get("id")
    ttl = _parse_optional_int(item.get("ttl"), "ttl")
    if ttl is None:
        raise ConfigurationError("ttl is required")

    intent = RecordIntent(
        record_class=str(item.get("class") or "").strip().upper(),
        ttl=ttl,
        rdata=str(item.get("rdata") or "").strip(),
        weight=_parse_optional_int(item.get("weight"), "weight"),
        id=str(record_id).strip() if record_id is not None else None,
        is_alias=_parse_bool(item.get("is_alias"), default=False),
        alias_target=alias_target,
        dry_run=_parse_bool(item.get("dry_run"), default=False),
    )
    intent.validate()
    return intent


def parse_record(item: Dict[str, Any]) -> RecordConfig:
    name = str(item.get("name") or "").strip()
    owner_ref = str(item.get("owner_ref") or "").strip()
    provider_ref = str(item.get("provider_ref") or "").strip()
    if not name or not owner_ref or not provider_ref:
        raise ConfigurationError("record entry requires name, owner_ref and provider_ref")
    try:
        intent = parse_intent(item)
    except ConfigurationError as e:
        raise ConfigurationError(f"record '{name}': {e}") from e
    return RecordConfig(
        name=name,
        owner_ref=owner_ref,
        provider_ref=provider_ref,
        intent=intent,
        namespace=str(item.get("namespace") or DEFAULT_NAMESPACE).strip(),
    )


def load_config(config_path: str) -> Config:
    """Load and merge every config file under `config_path`.

    Unreadable files raise ConfigurationError; malformed entries are logged
    and skipped.
    """
    config = Config()
    config_files = find_config_files(config_path)
    if not config_files:
        raise ConfigurationError(f"No config files found at {config_path}")

    sections = (
        ("providers", parse_provider, config.providers),
        ("owners", parse_owner, config.owners),
        ("records", parse_record, config.records),
    )
    for config_file in config_files:
        try:
            with open(config_file, "r") as f:
                config_data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Failed to load config from {config_file}: {e}") from e

        if not config_data:
            logger.warning(f"Config file {config_file} is empty")
            continue
        if not isinstance(config_data, dict):
            raise ConfigurationError(f"Config file {config_file} must contain a mapping")

        for section, parse, target in sections:
            items = config_data.get(section) or []
            if not isinstance(items, list):
                logger.warning(f"Config file {config_file}: '{section}' must be a list")
                continue
            for item in items:
                if not isinstance(item, dict):
                    logger.debug(f"Skipping non-dict {section} entry: {item}")
                    continue
                try:
                    target.append(parse(item))
                except ConfigurationError as e:
                    logger.error(f"Config file {config_file}: skipping {section} entry: {e}")

    logger.info(
        f"Loaded {len(config.providers)} provider(s), {len(config.owners)} owner(s), "
        f"{len(config.records)} record(s) from {len(config_files)} config file(s)"
    )
    return config


# =============================================================================
# Credentials and Provider Construction
# =============================================================================


def resolve_secret(
    selector: SecretKeySelector, default_namespace: str, secrets_path: str, label: str
) -> str:
    """Read one secret value from the mounted secrets directory."""
    namespace = selector.namespace or default_namespace
    root = Path(secrets_path)
    candidates = [root / namespace / selector.name / selector.key, root / selector.name / selector.key]
    for candidate in candidates:
        if candidate.is_file():
            try:
                value = candidate.read_text("utf-8").strip()
            except OSError as e:
                raise CredentialResolutionError(f"failed to get {label}: {e}") from e
            if not value:
                raise CredentialResolutionError(f"missing {label}")
            return value
    raise CredentialResolutionError(
        f"failed to get {label}: secret {namespace}/{selector.name} has no key '{selector.key}'"
    )


def build_provider(provider_config: ProviderConfig, secrets_path: str) -> DNSProvider:
    """Construct the provider client for a configured instance.

    Raises ConfigurationError or CredentialResolutionError before any client
    is created when settings or secrets are missing.
    """
    namespace = provider_config.namespace

    if provider_config.type == "route53":
        if not provider_config.region:
            raise ConfigurationError(
                f"route53 provider '{provider_config.key}' requires region"
            )
        access_key_id = secret_access_key = ""
        if provider_config.access_key_id_ref or provider_config.secret_access_key_ref:
            if not provider_config.access_key_id_ref:
                raise CredentialResolutionError("missing access key id")
            if not provider_config.secret_access_key_ref:
                raise CredentialResolutionError("missing secret access key")
            access_key_id = resolve_secret(
                provider_config.access_key_id_ref, namespace, secrets_path, "access key id"
            )
            secret_access_key = resolve_secret(
                provider_config.secret_access_key_ref, namespace, secrets_path, "secret access key"
            )
        return Route53Provider(
            region=provider_config.region,
            access_key_id=access_key_id,
            secret_access_key=secret_access_key,
        )

    if provider_config.type == "cloudflare":
        if not provider_config.api_token_ref:
            raise CredentialResolutionError(
                f"cloudflare provider '{provider_config.key}' requires auth.secret_ref.api_token"
            )
        api_token = resolve_secret(provider_config.api_token_ref, namespace, secrets_path, "api token")
        return CloudflareProvider(api_token=api_token, url=provider_config.url or CLOUDFLARE_API_URL)

    if provider_config.type == "memory":
        return InMemoryProvider(zones={provider_config.zone_id: []})

    raise ConfigurationError(
        f"Unsupported provider type '{provider_config.type}'. Supported: {', '.join(PROVIDER_TYPES)}"
    )
