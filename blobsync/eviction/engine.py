"""Keeps the content store under its size budget."""

import asyncio
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from blobsync.content_store.models import ContentEntry
from blobsync.content_store.store import ContentStore
from blobsync.core.config import GIB, EvictionPolicy, SettingsProvider
from blobsync.core.errors import IoFailureError
from blobsync.core.logging import get_logger
from blobsync.core.timestamps import utcnow
from blobsync.eviction.policies import rank_for_eviction
from blobsync.ledger import UsageLedger

logger = get_logger("blobsync.eviction")


@dataclass
class EvictionReport:
    """Outcome of one trim."""

    policy: EvictionPolicy
    budget_bytes: int
    removed: list[str] = field(default_factory=list)
    freed_bytes: int = 0
    deferred: list[str] = field(default_factory=list)
    skipped: bool = False

    @property
    def evicted(self) -> int:
        return len(self.removed)


class EvictionEngine:
    """Removes entries in policy order until the store fits its budget.

    Runs after commits that push the store over budget, on a periodic sweep
    and on operator request. Entries open for reading or mid-write are never
    deleted; they are reported as deferred and retried by the next sweep.
    """

    def __init__(
        self,
        store: ContentStore,
        settings: SettingsProvider,
        ledger: Optional[UsageLedger] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.ledger = ledger
        self._settings = settings
        self._clock = clock or utcnow
        self._sweep_lock = threading.Lock()

    def attach(self) -> None:
        """Trim automatically whenever a commit pushes the store over budget."""
        self.store.add_commit_listener(self._on_commit)

    def _on_commit(self, entry: ContentEntry) -> None:
        if self.store.total_size_bytes() > self._settings().budget_bytes:
            logger.debug("over_budget_after_commit", hash=entry.hash)
            self.trim()

    def clear_to_gib(self, gib: float) -> EvictionReport:
        """Operator request: shrink the cache to ``gib`` GiB."""
        return self.trim(budget_bytes=int(gib * GIB))

    def trim(
        self,
        budget_bytes: Optional[int] = None,
        policy: Optional[EvictionPolicy] = None,
    ) -> EvictionReport:
        """Evict entries until the store is within budget.

        Args:
            budget_bytes: Target size; the configured budget when omitted.
                Zero or negative evicts everything that is not in use.
            policy: Override for the configured policy

        Returns:
            Report of what was removed and deferred
        """
        config = self._settings()
        budget = max(0, config.budget_bytes if budget_bytes is None else budget_bytes)
        active_policy = policy or config.eviction_policy
        report = EvictionReport(policy=active_policy, budget_bytes=budget)

        if not self._sweep_lock.acquire(blocking=False):
            logger.debug("eviction_sweep_already_running")
            report.skipped = True
            return report

        try:
            if self.store.total_size_bytes() <= budget:
                return report

            usage = {}
            if self.ledger is not None and (
                active_policy is EvictionPolicy.FREQUENCY or config.recency_ledger_fallback
            ):
                usage = self.ledger.aggregated_usage()

            ranked = rank_for_eviction(
                self.store.enumerate(),
                active_policy,
                usage,
                now=self._clock(),
                max_age=config.max_age,
                ledger_fallback=config.recency_ledger_fallback,
            )

            for entry in ranked:
                if self.store.total_size_bytes() <= budget:
                    break
                try:
                    freed = self.store.remove(entry.hash, skip_if_in_use=True)
                except IoFailureError as e:
                    logger.warning("eviction_remove_failed", hash=entry.hash, error=str(e))
                    report.deferred.append(entry.hash)
                    continue

                if freed is None:
                    report.deferred.append(entry.hash)
                    continue
                report.removed.append(entry.hash)
                report.freed_bytes += freed
        finally:
            self._sweep_lock.release()

        logger.info(
            "eviction_sweep_finished",
            policy=active_policy.value,
            budget_bytes=budget,
            evicted=report.evicted,
            freed_bytes=report.freed_bytes,
            deferred=len(report.deferred),
            total_size_bytes=self.store.total_size_bytes(),
        )
        return report

    async def run_periodic(self, interval: float, stop: Optional[asyncio.Event] = None) -> None:
        """Trim every ``interval`` seconds until ``stop`` is set or cancelled."""
        stop = stop or asyncio.Event()
        while not stop.is_set():
            try:
                await asyncio.to_thread(self.trim)
            except Exception:
                logger.exception("periodic_eviction_failed")
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue
