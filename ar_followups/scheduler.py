"""
AR Follow-up Automation -- Scheduler

Runs the periodic jobs of one worker process on an APScheduler
``BlockingScheduler``:

    tick               every scan_interval_seconds
                       1. release claims abandoned by crashed workers
                       2. scan for due candidates
                       3. dispatch them
    credential-sweep   every credential_sweep_interval_seconds
    ledger-purge       every purge_interval_seconds (daily by default)

Any number of processes may run these jobs against the same database;
the ledger's claim keeps them from sending the same reminder twice.
A job that raises is logged and the scheduler carries on.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from apscheduler.schedulers.base import BaseScheduler
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .clock import Clock, SystemClock
from .config import FollowUpConfig
from .dispatcher import BatchResult, DispatchWorker
from .ledger import FollowUpLedger, PurgeResult
from .refresher import CredentialRefresher, SweepResult
from .scanner import DueWindowScanner

logger = logging.getLogger(__name__)

TICK_JOB_ID = "follow-up-tick"
SWEEP_JOB_ID = "credential-sweep"
PURGE_JOB_ID = "ledger-purge"


@dataclass
class TickResult:
    started_at: datetime
    released: int = 0
    candidates: int = 0
    batch: BatchResult = field(default_factory=BatchResult)
    errors: list[str] = field(default_factory=list)


class FollowUpScheduler:
    """Periodic driver for the scanner, dispatcher, credential sweep and purge."""

    def __init__(
        self,
        scanner: DueWindowScanner,
        worker: DispatchWorker,
        ledger: FollowUpLedger,
        refresher: Optional[CredentialRefresher] = None,
        config: Optional[FollowUpConfig] = None,
        clock: Optional[Clock] = None,
    ):
        self.scanner = scanner
        self.worker = worker
        self.ledger = ledger
        self.refresher = refresher
        self.config = config or FollowUpConfig()
        self.clock = clock or SystemClock()
        self.ticks = 0
        self._scheduler: Optional[BaseScheduler] = None
        self._max_ticks: Optional[int] = None

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def tick(self) -> TickResult:
        now = self.clock.now()
        result = TickResult(started_at=now)

        released = self._run_job("release-stale-claims", result.errors, lambda: self.ledger.release_stale_claims(
            now, self.config.dispatch.claim_timeout,
        ))
        result.released = released or 0

        candidates = self._run_job("scan", result.errors, lambda: self.scanner.scan(
            now=now, limit=self.config.scheduler.batch_limit,
        )) or []
        result.candidates = len(candidates)

        if candidates:
            batch = self._run_job("dispatch", result.errors, lambda: self.worker.run_batch(candidates))
            if batch is not None:
                result.batch = batch

        logger.info(
            "Tick at %s: released=%d candidates=%d %s",
            now.isoformat(timespec="seconds"), result.released, result.candidates, result.batch.summary(),
        )
        return result

    def sweep_credentials(self) -> Optional[SweepResult]:
        """Refresh credentials nearing expiry; None without a refresher or on failure."""
        if self.refresher is None:
            return None
        return self._run_job(SWEEP_JOB_ID, [], lambda: self.refresher.sweep(self.clock.now()))

    def purge_ledger(self) -> Optional[PurgeResult]:
        """Apply the retention policy to finished ledger rows."""
        retention = self.config.retention
        return self._run_job(PURGE_JOB_ID, [], lambda: self.ledger.purge(
            self.clock.now(), retention.keep_success, retention.keep_failed, self.candidate_horizon(),
        ))

    def candidate_horizon(self) -> Optional[timedelta]:
        """How long after ``scheduled_at`` the scanner may still produce a pair.

        First attempts stop at the catch-up window, retries at
        ``max_retry_age``.  Without a catch-up bound there is no horizon.
        """
        catch_up = self.config.dispatch.catch_up_window
        if catch_up is None:
            return None
        return max(catch_up, self.config.retry.max_retry_age)

    # ------------------------------------------------------------------
    # APScheduler wiring
    # ------------------------------------------------------------------

    def configure(self, scheduler: BaseScheduler) -> BaseScheduler:
        """Register the periodic jobs on ``scheduler``; each first runs immediately."""
        settings = self.config.scheduler
        first_run = datetime.now(timezone.utc)
        scheduler.add_job(
            self._scheduled_tick,
            IntervalTrigger(seconds=settings.scan_interval_seconds),
            id=TICK_JOB_ID,
            name="Scan and dispatch due follow-ups",
            replace_existing=True,
            next_run_time=first_run,
            max_instances=1,
            coalesce=True,
        )
        if self.refresher is not None:
            scheduler.add_job(
                self.sweep_credentials,
                IntervalTrigger(seconds=settings.credential_sweep_interval_seconds),
                id=SWEEP_JOB_ID,
                name="Refresh credentials nearing expiry",
                replace_existing=True,
                next_run_time=first_run,
                max_instances=1,
                coalesce=True,
            )
        scheduler.add_job(
            self.purge_ledger,
            IntervalTrigger(seconds=settings.purge_interval_seconds),
            id=PURGE_JOB_ID,
            name="Purge expired ledger rows",
            replace_existing=True,
            next_run_time=first_run,
            max_instances=1,
            coalesce=True,
        )
        return scheduler

    def run_forever(self, max_ticks: Optional[int] = None) -> int:
        """Block running the periodic jobs until interrupted.  Returns ticks run.

        With ``max_ticks`` the scheduler shuts itself down after that many
        ticks.
        """
        self.ticks = 0
        self._max_ticks = max_ticks
        self._scheduler = self.configure(BlockingScheduler(timezone=timezone.utc))
        logger.info(
            "Scheduler started (interval %ds, worker %s)",
            self.config.scheduler.scan_interval_seconds, self.worker.worker_id,
        )
        try:
            self._scheduler.start()
        except (KeyboardInterrupt, SystemExit):
            self.stop()
            raise
        finally:
            logger.info("Scheduler stopped after %d ticks", self.ticks)
        return self.ticks

    def stop(self) -> None:
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)

    def _scheduled_tick(self) -> TickResult:
        result = self.tick()
        self.ticks += 1
        if self._max_ticks is not None and self.ticks >= self._max_ticks:
            self.stop()
        return result

    def _run_job(self, name: str, errors: list[str], job: Callable):
        try:
            return job()
        except Exception as exc:
            logger.exception("Scheduled job %s failed", name)
            errors.append(f"{name}: {exc}")
            return None
