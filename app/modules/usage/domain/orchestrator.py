"""
Progressive fetch protocol.

Three independent, idempotent calls let a dashboard render incrementally:

1. hot cache lookup; on a miss, zone counts per account (cheapest query)
2. live current-month core traffic with the per-zone breakdown
3. every enabled SKU with history; the result is written to the hot cache

A live, complete hot entry at phase 1 ends the protocol. No state is kept
between calls beyond the account ids and the phase number. Fan-outs here are
unbounded; the fetcher caps analytics requests in flight.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timezone
from functools import partial
from typing import Optional

import structlog

from app.modules.usage.domain.aggregator import aggregate
from app.modules.usage.domain.cache_manager import CacheManager, accounts_key
from app.modules.usage.domain.fetcher import AccountFetcher, FetchDepth
from app.modules.usage.domain.models import (
    CORE_SKU_ID,
    AggregatedSnapshot,
    PhaseResult,
    UsageBundle,
    UsagePeriodRecord,
)
from app.modules.usage.domain.monitoring import MonitoringConfig
from app.modules.usage.domain.periods import UsageWindow
from app.modules.usage.domain.skus import get_sku
from app.shared.core.async_utils import gather_settled
from app.shared.core.exceptions import (
    CacheIncompleteError,
    CacheWriteError,
    ConfigurationError,
)

logger = structlog.get_logger()

PHASES = (1, 2, 3)


def normalize_account_ids(account_ids: Iterable[str]) -> list[str]:
    """Sorted unique ids; empty input is a configuration error."""
    return accounts_key(account_ids).split(",")


class ProgressiveFetchOrchestrator:
    def __init__(
        self,
        fetcher: AccountFetcher,
        cache: CacheManager,
        *,
        history_months: int = 12,
    ) -> None:
        self.fetcher = fetcher
        self.cache = cache
        self.history_months = history_months

    async def fetch(
        self,
        account_ids: Iterable[str],
        phase: int,
        config: MonitoringConfig,
        *,
        now: Optional[datetime] = None,
    ) -> PhaseResult:
        ids = normalize_account_ids(account_ids)
        if phase not in PHASES:
            raise ConfigurationError(
                f"Unknown phase {phase}; expected one of {PHASES}",
                code="invalid_phase",
                status_code=400,
            )
        now = now or datetime.now(timezone.utc)
        logger.info("progressive_fetch_started", phase=phase, accounts=len(ids))

        if phase == 1:
            return await self._phase_one(ids, config, now)
        if phase == 2:
            return await self._phase_two(ids, config, now)
        return await self._phase_three(ids, config, now)

    async def _phase_one(
        self, ids: list[str], config: MonitoringConfig, now: datetime
    ) -> PhaseResult:
        entry = await self.cache.get_hot(ids, now=now)
        if entry is not None:
            try:
                self.cache.ensure_complete(entry, config)
            except CacheIncompleteError as exc:
                logger.info(
                    "hot_cache_incomplete",
                    key=entry.key,
                    missing_skus=exc.missing_skus,
                )
            else:
                age_ms = entry.age_ms(now)
                logger.info("hot_cache_served", key=entry.key, cache_age_ms=age_ms)
                return PhaseResult(
                    phase=1,
                    kind="cached",
                    cache_age_ms=age_ms,
                    data=entry.data,
                    failed_accounts=entry.data.failed_accounts,
                )

        counts, failures = await gather_settled(
            {account_id: partial(self.fetcher.zone_count, account_id) for account_id in ids},
            log_event="zone_count_fetch_failed",
        )
        return PhaseResult(
            phase=1,
            kind="zoneCount",
            core_zone_counts={
                account_id: counts[account_id] for account_id in ids if account_id in counts
            },
            failed_accounts=sorted(failures),
        )

    async def _phase_two(
        self, ids: list[str], config: MonitoringConfig, now: datetime
    ) -> PhaseResult:
        window = UsageWindow.for_date(now, self.history_months)
        core = await self._fetch_sku(ids, CORE_SKU_ID, config, window, FetchDepth.CURRENT)
        return PhaseResult(
            phase=2,
            kind="core",
            core=core,
            failed_accounts=core.failed_accounts,
        )

    async def _phase_three(
        self, ids: list[str], config: MonitoringConfig, now: datetime
    ) -> PhaseResult:
        bundle, cache_written = await self._build_and_store(ids, config, now)
        return PhaseResult(
            phase=3,
            kind="complete",
            data=bundle,
            failed_accounts=bundle.failed_accounts,
            cache_written=cache_written,
        )

    async def build_bundle(
        self,
        account_ids: Iterable[str],
        config: MonitoringConfig,
        *,
        now: Optional[datetime] = None,
    ) -> UsageBundle:
        """Every enabled SKU for every account, with history, aggregated."""
        ids = normalize_account_ids(account_ids)
        now = now or datetime.now(timezone.utc)
        window = UsageWindow.for_date(now, self.history_months)

        snapshots, failures = await gather_settled(
            {
                sku_id: partial(self._fetch_sku, ids, sku_id, config, window, FetchDepth.FULL)
                for sku_id in config.enabled_sku_ids()
            },
            log_event="sku_aggregation_failed",
        )
        for sku_id, exc in failures.items():
            logger.error("sku_snapshot_missing", sku_id=sku_id, error=str(exc))

        failed_accounts = sorted(
            {
                account_id
                for snapshot in snapshots.values()
                for account_id in snapshot.failed_accounts
            }
        )
        bundle = UsageBundle(
            account_ids=ids,
            core_metrics=snapshots.get(CORE_SKU_ID),
            sku_snapshots={k: v for k, v in snapshots.items() if k != CORE_SKU_ID},
            generated_at=now,
            failed_accounts=failed_accounts,
        )
        logger.info(
            "usage_bundle_built",
            accounts=len(ids),
            skus=sorted(snapshots),
            failed_accounts=failed_accounts,
        )
        return bundle

    async def latest_bundle(
        self,
        account_ids: Iterable[str],
        config: MonitoringConfig,
        *,
        now: Optional[datetime] = None,
    ) -> UsageBundle:
        """Complete hot entry if there is one, otherwise a fresh bundle."""
        ids = normalize_account_ids(account_ids)
        now = now or datetime.now(timezone.utc)
        entry = await self.cache.get_hot(ids, now=now)
        if entry is not None and not self.cache.missing_skus(entry.data, config):
            return entry.data
        bundle, _ = await self._build_and_store(ids, config, now)
        return bundle

    async def _build_and_store(
        self, ids: list[str], config: MonitoringConfig, now: datetime
    ) -> tuple[UsageBundle, bool]:
        """Build a bundle and write it hot. A failed write still returns the bundle."""
        bundle = await self.build_bundle(ids, config, now=now)
        try:
            await self.cache.put_hot(ids, bundle, now=now)
        except CacheWriteError as exc:
            logger.warning("hot_cache_write_failed", key=exc.key, error=exc.message)
            return bundle, False
        return bundle, True

    async def _fetch_sku(
        self,
        ids: list[str],
        sku_id: str,
        config: MonitoringConfig,
        window: UsageWindow,
        depth: FetchDepth,
    ) -> AggregatedSnapshot:
        sku = get_sku(sku_id)
        sku_config = config.sku_config(sku_id)
        records, failures = await gather_settled(
            {
                account_id: partial(
                    self.fetcher.fetch_sku_for_account,
                    account_id,
                    sku,
                    sku_config,
                    window,
                    depth,
                )
                for account_id in ids
            },
            log_event="upstream_fetch_failed",
        )
        per_account: list[tuple[str, Optional[UsagePeriodRecord]]] = [
            (account_id, records[account_id]) for account_id in ids if account_id in records
        ]
        return aggregate(sku, per_account, failed_accounts=failures)
