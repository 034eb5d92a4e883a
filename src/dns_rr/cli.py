#!/usr/bin/env python3
"""dns-rr - DNS record convergence

Converges declared DNS record intents toward the live state of a zone hosted
by a cloud DNS provider. Each record names an owner group (a list of short
names) and a provider instance (one zone). Every owner name gets one record,
and changes go out as a single atomic batch per record.

Supported DNS Providers:
    - route53: AWS Route53
    - cloudflare: Cloudflare (no alias or weighted records)
    - memory: in-memory fake, for local experiments

Environment variables:

    Configuration:
        DNS_RR_CONFIG_PATH      YAML config file, or directory of *.yaml files
                                (default: /config/dns-rr.yaml)
        SECRETS_PATH            Root of mounted secret files, laid out as
                                <root>/<namespace>/<secret>/<key>
                                (default: /var/run/secrets/dns-rr)

    Runtime:
        SYNC_MODE                       "once" or "watch" (default: watch)
        REQUEUE_INTERVAL_SECONDS        Re-converge every record this often in
                                        watch mode (default: 600)
        CACHE_REFRESH_INTERVAL_SECONDS  Zone cache refresh interval (default: 300)
        RECONCILE_WORKERS               Records converged concurrently (default: 4)
        DRY_RUN                         Force dry-run for every record (default: false)
        LOG_LEVEL                       DEBUG, INFO, WARNING, ERROR (default: INFO)

Records no longer declared are not deleted from the zone.
"""

from __future__ import annotations

import logging
import os
import sys
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from pathlib import Path
from typing import Dict, List, Optional

from dns_rr.cache import CachedZone, ZoneCache, ZoneCacheRefresher
from dns_rr.config import (
    Config,
    RecordConfig,
    _parse_bool,
    build_provider,
    find_config_files,
    get_config_files_mtimes,
    load_config,
)
from dns_rr.engine import Converger
from dns_rr.errors import (
    CancellationToken,
    ConfigurationError,
    CredentialResolutionError,
    DNSRRError,
    OperationCancelled,
)
from dns_rr.providers import Change, DNSProvider

# =============================================================================
# Configuration
# =============================================================================

CONFIG_PATH = os.getenv("DNS_RR_CONFIG_PATH", "/config/dns-rr.yaml")
SECRETS_PATH = os.getenv("SECRETS_PATH", "/var/run/secrets/dns-rr")

SYNC_MODE = os.getenv("SYNC_MODE", "watch")
REQUEUE_INTERVAL_SECONDS = int(os.getenv("REQUEUE_INTERVAL_SECONDS", "600"))
CACHE_REFRESH_INTERVAL_SECONDS = int(os.getenv("CACHE_REFRESH_INTERVAL_SECONDS", "300"))
RECONCILE_WORKERS = int(os.getenv("RECONCILE_WORKERS", "4"))
DRY_RUN = _parse_bool(os.getenv("DRY_RUN"), default=False)
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# =============================================================================
# Logging Setup
# =============================================================================

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# =============================================================================
# Reconciler
# =============================================================================


class Reconciler:
    """Runs one convergence per declared record against its provider zone."""

    def __init__(
        self,
        *,
        config: Config,
        providers: Dict[str, DNSProvider],
        cache: ZoneCache,
        force_dry_run: bool = False,
        workers: int = 1,
    ):
        self.config = config
        self.providers = providers
        self.cache = cache
        self.force_dry_run = force_dry_run
        self.workers = max(1, workers)

    def cached_zones(self) -> List[CachedZone]:
        return [
            CachedZone(key=p.key, provider=self.providers[p.key], zone_id=p.zone_id)
            for p in self.config.providers
            if p.key in self.providers
        ]

    def reconcile(
        self, record: RecordConfig, cancel: Optional[CancellationToken] = None
    ) -> List[Change]:
        """Converge one record. Missing owner or provider references are skipped."""
        owner = self.config.owner(record.namespace, record.owner_ref)
        if owner is None:
            logger.warning(f"Record '{record.key}': owner '{record.owner_ref}' not found, skipping")
            return []
        provider_config = self.config.provider(record.namespace, record.provider_ref)
        if provider_config is None or provider_config.key not in self.providers:
            logger.warning(
                f"Record '{record.key}': provider '{record.provider_ref}' not found, skipping"
            )
            return []

        intent = record.intent
        if self.force_dry_run and not intent.dry_run:
            intent = replace(intent, dry_run=True)

        converger = Converger(
            self.providers[provider_config.key], cache=self.cache, cache_key=provider_config.key
        )
        return converger.converge(
            provider_config.zone_id, provider_config.zone_name, owner.names, intent, cancel
        )

    def _reconcile_logged(
        self, record: RecordConfig, cancel: Optional[CancellationToken]
    ) -> bool:
        try:
            self.reconcile(record, cancel)
            return True
        except OperationCancelled:
            raise
        except DNSRRError as e:
            logger.error(f"Failed to converge record '{record.key}': {e}")
            return False

    def reconcile_all(self, cancel: Optional[CancellationToken] = None) -> Dict[str, bool]:
        """Converge every declared record; returns success per record key."""
        records = list(self.config.records)
        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            outcomes = list(pool.map(lambda r: self._reconcile_logged(r, cancel), records))
        results = {record.key: ok for record, ok in zip(records, outcomes)}

        failed = sorted(key for key, ok in results.items() if not ok)
        if failed:
            logger.warning(
                f"Converged {len(results) - len(failed)}/{len(results)} record(s); "
                f"failed: {', '.join(failed)}"
            )
        else:
            logger.info(f"Converged {len(results)} record(s)")
        return results


def create_reconciler(
    config: Config,
    secrets_path: str,
    cache: ZoneCache,
    *,
    force_dry_run: bool = False,
    workers: int = 1,
) -> Reconciler:
    """Build provider clients for every configured instance.

    Configuration and credential errors propagate, so nothing converges with
    a half-built set of clients.
    """
    providers: Dict[str, DNSProvider] = {}
    for provider_config in config.providers:
        providers[provider_config.key] = build_provider(provider_config, secrets_path)
        logger.info(
            f"Provider '{provider_config.key}': {provider_config.type} "
            f"zone {provider_config.zone_name} ({provider_config.zone_id})"
        )
    return Reconciler(
        config=config,
        providers=providers,
        cache=cache,
        force_dry_run=force_dry_run,
        workers=workers,
    )


# =============================================================================
# Main
# =============================================================================


def _reload(cache: ZoneCache) -> tuple[Reconciler, ZoneCacheRefresher]:
    config = load_config(CONFIG_PATH)
    reconciler = create_reconciler(
        config, SECRETS_PATH, cache, force_dry_run=DRY_RUN, workers=RECONCILE_WORKERS
    )
    refresher = ZoneCacheRefresher(
        cache, reconciler.cached_zones(), interval_seconds=CACHE_REFRESH_INTERVAL_SECONDS
    )
    return reconciler, refresher


def main():
    """Main entry point."""
    logger.info(f"dns-rr: config {CONFIG_PATH}, sync mode {SYNC_MODE}")

    if SYNC_MODE not in ("once", "watch"):
        logger.error(f"Invalid SYNC_MODE: {SYNC_MODE}. Use 'once' or 'watch'")
        sys.exit(1)

    cache = ZoneCache()
    try:
        reconciler, refresher = _reload(cache)
    except (ConfigurationError, CredentialResolutionError) as e:
        logger.error(f"Configuration validation failed: {e}")
        sys.exit(1)

    if DRY_RUN:
        logger.warning("DRY_RUN enabled: no changes will be submitted")

    try:
        if SYNC_MODE == "once":
            refresher.refresh_once()
            results = reconciler.reconcile_all()
            if not all(results.values()):
                sys.exit(1)
            return

        logger.info(f"Requeue interval: {REQUEUE_INTERVAL_SECONDS}s")
        refresher.start()

        config_files = find_config_files(CONFIG_PATH)
        last_config_mtimes = get_config_files_mtimes(config_files)

        while True:
            reconciler.reconcile_all()
            time.sleep(max(5, REQUEUE_INTERVAL_SECONDS))

            current_config_files = find_config_files(CONFIG_PATH)
            current_mtimes = get_config_files_mtimes(current_config_files)
            if set(current_config_files) == set(config_files) and current_mtimes == last_config_mtimes:
                continue

            changed = sorted(
                set(current_config_files) ^ set(config_files)
                | {f for f in current_config_files if current_mtimes.get(f) != last_config_mtimes.get(f)}
            )
            logger.info(f"Config change detected in: {', '.join(Path(f).name for f in changed)}")
            config_files = current_config_files
            last_config_mtimes = current_mtimes

            try:
                new_reconciler, new_refresher = _reload(cache)
            except DNSRRError as e:
                logger.error(f"Failed to reload configuration: {e}")
                logger.warning("Continuing with previous configuration")
                continue

            refresher.stop()
            reconciler, refresher = new_reconciler, new_refresher
            refresher.start()
            logger.info(f"Reloaded {len(reconciler.config.records)} record(s)")

    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)
    finally:
        refresher.stop()
        cache.close()


if __name__ == "__main__":
    main()
