"""Periodic live-capture scheduler.

Every cycle fetches the tracked accounts and pushes one capture job per account
through the task queue. Results feed the consecutive-failure tracker (which
escalates repeat misses into deep checks) and the audit trail that the policy
engine mines on the next evaluation.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from concurrent.futures import CancelledError
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from models import generate_screenshot_path

from .capture import CaptureResult
from .config import AppConfig
from .failure_tracker import ConsecutiveFailureTracker
from .persistence import CaptureStore, CaptureStoreError, utcnow
from .policy import CapturePolicy, MinedFailureStats, OverrideConfig, derive_policy, load_overrides, mine_failure_stats
from .records import AccountRef, AuditStatus, SchedulerAuditRecord, ScreenshotArtifact
from .storage import ObjectStorage, StorageWriteError
from .task_queue import TaskQueue, TaskQueueStats

LOGGER = logging.getLogger(__name__)


class CaptureFunction(Protocol):
    def __call__(
        self,
        username: str,
        max_retries: int | None = None,
        *,
        policy: CapturePolicy | None = None,
        country: str | None = None,
    ) -> CaptureResult:
        ...


@dataclass(slots=True, frozen=True)
class SleepWindow:
    """Local hours ``[start_hour, end_hour)`` during which no checks run."""

    start_hour: int = 2
    end_hour: int = 7

    def contains(self, moment: datetime) -> bool:
        hour = moment.hour
        if self.start_hour <= self.end_hour:
            return self.start_hour <= hour < self.end_hour
        return hour >= self.start_hour or hour < self.end_hour

    def next_wake(self, moment: datetime) -> Optional[datetime]:
        if not self.contains(moment):
            return None
        wake = moment.replace(hour=self.end_hour, minute=0, second=0, microsecond=0)
        if wake <= moment:
            wake += timedelta(days=1)
        return wake


@dataclass(slots=True)
class AccountOutcome:
    username: str
    status: AuditStatus
    deep_check: bool = False
    max_retries: int = 0
    screenshot_id: Optional[str] = None
    error: Optional[str] = None
    duration_ms: int = 0

    @property
    def captured(self) -> bool:
        return self.status == AuditStatus.CAPTURED


@dataclass(slots=True)
class CycleSummary:
    accounts: int = 0
    captured: int = 0
    not_live: int = 0
    errors: int = 0
    outcomes: list[AccountOutcome] = field(default_factory=list)
    queue_stats: Optional[TaskQueueStats] = None
    # Accounts whose next check runs with the deep-check policy.
    escalated: list[str] = field(default_factory=list)

    def record(self, outcome: AccountOutcome) -> None:
        self.outcomes.append(outcome)
        if outcome.status == AuditStatus.CAPTURED:
            self.captured += 1
        elif outcome.status == AuditStatus.NOT_LIVE:
            self.not_live += 1
        else:
            self.errors += 1

    def as_dict(self) -> dict[str, int]:
        return {
            "accounts": self.accounts,
            "captured": self.captured,
            "not_live": self.not_live,
            "errors": self.errors,
        }


class LiveCaptureScheduler:
    """Drive capture cycles over all tracked accounts."""

    def __init__(
        self,
        store: CaptureStore,
        object_storage: ObjectStorage,
        capture: CaptureFunction,
        *,
        config: AppConfig | None = None,
        queue: TaskQueue | None = None,
        tracker: ConsecutiveFailureTracker | None = None,
        clock: Callable[[], datetime] = datetime.now,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
        rng: random.Random | None = None,
        overrides_loader=load_overrides,
    ) -> None:
        self._config = config or AppConfig()
        self._store = store
        self._object_storage = object_storage
        self._capture = capture
        self._queue = queue or TaskQueue(self._config.scheduler.max_concurrent)
        self._tracker = tracker or ConsecutiveFailureTracker()
        self._clock = clock
        self._sleep = sleep
        self._monotonic = monotonic
        self._rng = rng or random.Random()
        self._overrides_loader = overrides_loader
        scheduler_config = self._config.scheduler
        self.sleep_window = SleepWindow(scheduler_config.sleep_start_hour, scheduler_config.sleep_end_hour)
        self._stop_event = threading.Event()
        self._cycle_thread: Optional[threading.Thread] = None

    @property
    def queue(self) -> TaskQueue:
        return self._queue

    @property
    def tracker(self) -> ConsecutiveFailureTracker:
        return self._tracker

    def now(self) -> datetime:
        return self._clock()

    def resolve_policy(self, account: AccountRef) -> CapturePolicy:
        policy_config = self._config.policy
        overrides: OverrideConfig = self._overrides_loader(policy_config.overrides_path)
        try:
            records = self._store.recent_audit_records(policy_config.stats_window)
            stats = mine_failure_stats(records, self._store.account_countries())
        except CaptureStoreError as exc:
            LOGGER.warning("Failure history unavailable for %s; using baseline policy: %s", account.username, exc)
            stats = MinedFailureStats()
        return derive_policy(account.username, account.country, stats, overrides, policy_config.baseline)

    def _write_audit(self, record: SchedulerAuditRecord) -> None:
        try:
            self._store.insert_audit_record(record)
        except CaptureStoreError as exc:
            LOGGER.error("Failed to log scheduler task for %s: %s", record.username, exc)

    def _elapsed_ms(self, started: float) -> int:
        return int((self._monotonic() - started) * 1000)

    def _persist_screenshot(self, account: AccountRef, artifact: ScreenshotArtifact) -> str:
        epoch_ms = int(self._clock().timestamp() * 1000)
        path = generate_screenshot_path(artifact.username, epoch_ms)
        LOGGER.debug("Uploading to storage: %s, size: %d", path, artifact.size)
        public_url = self._object_storage.upload(path, artifact.data)
        try:
            return self._store.insert_screenshot(
                username=artifact.username,
                storage_path=path,
                public_url=public_url,
                captured_at=artifact.captured_at,
                country=account.country,
                account_id=account.account_id,
                size_bytes=artifact.size,
                capture_method=artifact.capture_method,
            )
        except CaptureStoreError:
            try:
                self._object_storage.remove([path])
            except StorageWriteError as exc:
                LOGGER.warning("Orphaned object %s could not be removed: %s", path, exc)
            raise

    def process_account(self, account: AccountRef) -> AccountOutcome:
        """Run one capture cycle for ``account`` and record the outcome."""

        username = account.username
        started = self._monotonic()
        self._write_audit(SchedulerAuditRecord(username, AuditStatus.CHECKING, f"Starting check for {username}"))
        LOGGER.info("Checking account: %s", username)

        capture_config = self._config.capture
        streak = self._tracker.get(username)
        deep_check = streak >= self._config.scheduler.deep_check_threshold
        max_retries = capture_config.deep_check_max_retries if deep_check else capture_config.default_max_retries
        if deep_check:
            LOGGER.info("Deep check triggered for %s (not live for %d cycles)", username, streak)

        outcome = AccountOutcome(username=username, status=AuditStatus.ERROR, deep_check=deep_check, max_retries=max_retries)
        try:
            policy = self.resolve_policy(account)
            if deep_check:
                policy = policy.for_deep_check(
                    min_wait_loops=capture_config.deep_check_wait_loops,
                    min_renderable_timeout_ms=capture_config.deep_check_renderable_timeout_ms,
                )
            result = self._capture(username, max_retries, policy=policy, country=account.country)
        except Exception as exc:
            LOGGER.exception("Error processing %s", username)
            self._tracker.increment(username)
            outcome.error = str(exc)
            outcome.duration_ms = self._elapsed_ms(started)
            self._write_audit(
                SchedulerAuditRecord(
                    username,
                    AuditStatus.ERROR,
                    f"Error processing {username}",
                    error=outcome.error,
                    duration_ms=outcome.duration_ms,
                )
            )
            return outcome

        diagnostics = result.diagnostics
        details = {
            "policy": policy.as_dict(),
            "capture": diagnostics.as_dict(),
            "deepCheck": deep_check,
            "maxRetries": max_retries,
            "attempts": result.attempts,
        }
        counters = {
            "black_warnings": diagnostics.black_frames,
            "render_timeouts": diagnostics.render_timeouts,
            "recovered_captures": diagnostics.recovered_captures,
        }

        if result.live and result.buffer:
            self._tracker.reset(username)
            artifact = ScreenshotArtifact(
                username=username,
                data=result.buffer,
                captured_at=utcnow(),
                capture_method=diagnostics.capture_method,
            )
            try:
                outcome.screenshot_id = self._persist_screenshot(account, artifact)
            except (StorageWriteError, CaptureStoreError) as exc:
                outcome.error = str(exc)
                outcome.duration_ms = self._elapsed_ms(started)
                LOGGER.error("Upload error for %s: %s", username, exc)
                self._write_audit(
                    SchedulerAuditRecord(
                        username,
                        AuditStatus.ERROR,
                        f"Upload failed for {username}",
                        error=outcome.error,
                        duration_ms=outcome.duration_ms,
                        details=details,
                        **counters,
                    )
                )
                return outcome

            outcome.status = AuditStatus.CAPTURED
            outcome.duration_ms = self._elapsed_ms(started)
            self._write_audit(
                SchedulerAuditRecord(
                    username,
                    AuditStatus.CAPTURED,
                    f"Captured and uploaded screenshot for {username}",
                    screenshot_id=outcome.screenshot_id,
                    duration_ms=outcome.duration_ms,
                    details=details,
                    **counters,
                )
            )
            LOGGER.info("Captured screenshot for %s (%dms)", username, outcome.duration_ms)
            return outcome

        streak = self._tracker.increment(username)
        outcome.status = AuditStatus.NOT_LIVE
        outcome.error = result.error
        outcome.duration_ms = self._elapsed_ms(started)
        if result.live:
            message = "Live but no usable screenshot"
        elif result.error:
            message = f"Not live ({result.error})"
        else:
            message = "Not live"
        self._write_audit(
            SchedulerAuditRecord(
                username,
                AuditStatus.NOT_LIVE,
                message,
                error=result.error,
                duration_ms=outcome.duration_ms,
                details=details,
                **counters,
            )
        )
        LOGGER.info("%s: %s (streak: %d)", message, username, streak)
        return outcome

    def _process_with_jitter(self, account: AccountRef) -> AccountOutcome:
        scheduler_config = self._config.scheduler
        # Spread browser launches so consecutive sessions do not pile up on resources.
        self._sleep(self._rng.uniform(scheduler_config.jitter_min_seconds, scheduler_config.jitter_max_seconds))
        return self.process_account(account)

    def run_once(self) -> Optional[CycleSummary]:
        """Check every account once; returns None when the cycle was skipped."""

        now = self._clock()
        if self.sleep_window.contains(now):
            LOGGER.info(
                "Sleep mode active (local time %02d:%02d). Active hours: %02d:00-%02d:00.",
                now.hour,
                now.minute,
                self.sleep_window.end_hour,
                self.sleep_window.start_hour,
            )
            return None

        try:
            accounts = self._store.list_accounts()
        except CaptureStoreError as exc:
            LOGGER.error("Failed to fetch accounts: %s", exc)
            return None

        summary = CycleSummary(accounts=len(accounts))
        if not accounts:
            LOGGER.info("No accounts to check")
            return summary

        LOGGER.info("Starting check cycle for %d accounts at %02d:%02d", len(accounts), now.hour, now.minute)
        futures = [
            (account, self._queue.submit(self._process_with_jitter, (account,), self._config.scheduler.task_max_retries))
            for account in accounts
        ]
        for account, future in futures:
            try:
                summary.record(future.result())
            except CancelledError:
                LOGGER.info("Check for %s cancelled by shutdown", account.username)
            except Exception as exc:
                LOGGER.error("Error during batch processing for %s: %s", account.username, exc)
                summary.record(AccountOutcome(username=account.username, status=AuditStatus.ERROR, error=str(exc)))

        self._queue.drain()
        summary.queue_stats = self._queue.stats()
        threshold = self._config.scheduler.deep_check_threshold
        summary.escalated = sorted(
            username for username, streak in self._tracker.snapshot().items() if streak >= threshold
        )
        LOGGER.info(
            "Check cycle completed (captured=%d, not_live=%d, errors=%d; "
            "queue total=%d completed=%d failed=%d pending=%d; deep checks due=%d)",
            summary.captured,
            summary.not_live,
            summary.errors,
            summary.queue_stats.total,
            summary.queue_stats.completed,
            summary.queue_stats.failed,
            summary.queue_stats.pending,
            len(summary.escalated),
        )
        return summary

    def prune_screenshots(self, days_to_keep: int | None = None) -> int:
        """Delete screenshots captured more than ``days_to_keep`` days ago."""

        days = days_to_keep or self._config.scheduler.retention_days
        cutoff = utcnow() - timedelta(days=days)
        LOGGER.info("Cleaning up screenshots older than %d days (before %s)", days, cutoff.isoformat())
        try:
            expired = self._store.delete_screenshots_older_than(cutoff)
        except CaptureStoreError as exc:
            LOGGER.error("Cleanup failed: %s", exc)
            return 0

        if not expired:
            LOGGER.info("No old screenshots to clean up")
            return 0

        paths = [item.storage_path for item in expired if item.storage_path]
        if paths:
            try:
                removed = self._object_storage.remove(paths)
            except StorageWriteError as exc:
                LOGGER.warning("Failed to remove some files from storage: %s", exc)
            else:
                LOGGER.info("Removed %d files from storage", removed)

        LOGGER.info("Deleted %d screenshot records", len(expired))
        return len(expired)

    def _safe_run_once(self) -> None:
        try:
            self.run_once()
        except Exception:
            LOGGER.exception("Scheduled check failed")

    def _trigger_cycle(self) -> None:
        if self._cycle_thread is not None and self._cycle_thread.is_alive():
            LOGGER.warning(
                "Previous check cycle still running (%d tasks pending); skipping this tick",
                self._queue.stats().pending,
            )
            return
        self._cycle_thread = threading.Thread(target=self._safe_run_once, name="capture-cycle", daemon=True)
        self._cycle_thread.start()

    def _trigger_cleanup(self) -> None:
        LOGGER.info("Running daily cleanup...")
        try:
            self.prune_screenshots()
        except Exception:
            LOGGER.exception("Cleanup task failed")

    def next_cleanup_after(self, moment: datetime) -> datetime:
        target = moment.replace(hour=self._config.scheduler.cleanup_hour, minute=0, second=0, microsecond=0)
        if target <= moment:
            target += timedelta(days=1)
        return target

    def run_forever(self) -> None:
        """Run a cycle now and then every interval, plus daily pruning, until ``stop()``."""

        scheduler_config = self._config.scheduler
        interval = scheduler_config.interval_minutes * 60
        LOGGER.info(
            "Scheduler starting (every %d minutes, max concurrent %d, active hours %02d:00-%02d:00)",
            scheduler_config.interval_minutes,
            self._queue.max_concurrent,
            self.sleep_window.end_hour,
            self.sleep_window.start_hour,
        )
        next_cycle = self._monotonic()
        next_cleanup = self.next_cleanup_after(self._clock())
        while not self._stop_event.is_set():
            if self._monotonic() >= next_cycle:
                self._trigger_cycle()
                next_cycle += interval
            now = self._clock()
            if now >= next_cleanup:
                self._trigger_cleanup()
                next_cleanup = self.next_cleanup_after(now)
            wait_seconds = min(
                next_cycle - self._monotonic(),
                (next_cleanup - self._clock()).total_seconds(),
            )
            self._stop_event.wait(max(1.0, wait_seconds))

        if self._cycle_thread is not None:
            self._cycle_thread.join()
        LOGGER.info("Scheduler stopped")

    def stop(self) -> None:
        self._stop_event.set()


__all__ = [
    "AccountOutcome",
    "CycleSummary",
    "LiveCaptureScheduler",
    "SleepWindow",
]
