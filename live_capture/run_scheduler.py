"""Command-line entrypoint for the live capture scheduler."""

from __future__ import annotations

import argparse
import logging
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from models import Base

from .capture import LiveCaptureMachine
from .config import AppConfig
from .persistence import CaptureStore, CaptureStoreError
from .playwright_support import PlaywrightBrowserDriver
from .scheduler import LiveCaptureScheduler
from .storage import ObjectStorage, build_object_storage

LOGGER = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


@dataclass(slots=True)
class SchedulerRuntime:
    config: AppConfig
    store: CaptureStore
    object_storage: ObjectStorage
    machine: LiveCaptureMachine
    scheduler: LiveCaptureScheduler

    def close(self) -> None:
        self.scheduler.queue.shutdown(wait=False)
        self.object_storage.close()


def build_runtime(config: AppConfig) -> SchedulerRuntime:
    """Wire the database, object storage, browser driver and scheduler together."""

    if not config.db_url:
        raise ValueError("A database URL is required (set DATABASE_URL or pass --db-url)")

    engine = create_engine(config.db_url, pool_pre_ping=True)
    Base.metadata.create_all(engine)
    store = CaptureStore(sessionmaker(bind=engine))
    object_storage = build_object_storage(config.object_storage)
    machine = LiveCaptureMachine(
        PlaywrightBrowserDriver(config.browser),
        config.capture,
        baseline=config.policy.baseline,
    )
    scheduler = LiveCaptureScheduler(
        store,
        object_storage,
        machine.check_live_and_capture,
        config=config,
    )
    return SchedulerRuntime(
        config=config,
        store=store,
        object_storage=object_storage,
        machine=machine,
        scheduler=scheduler,
    )


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Detect live streams and capture screenshots on a schedule")
    parser.add_argument("--db-url", type=str, default=None, help="SQLAlchemy database URL (defaults to DATABASE_URL)")
    parser.add_argument(
        "--overrides-file",
        type=Path,
        default=None,
        help="Path to the capture strategy override JSON file",
    )
    parser.add_argument("--max-concurrent", type=int, default=None, help="Maximum simultaneous browser sessions")
    parser.add_argument("--headed", action="store_true", help="Run the browser with a visible window")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--once", action="store_true", help="Run a single check cycle and exit")
    mode.add_argument("--status", action="store_true", help="Report scheduler window and storage counts")
    mode.add_argument("--prune", action="store_true", help="Delete screenshots past the retention window and exit")
    mode.add_argument("--check", metavar="USERNAME", help="Check one account without persisting the result")
    mode.add_argument("--add-account", metavar="USERNAME", help="Start tracking an account and exit")
    parser.add_argument("--output", type=Path, default=None, help="Write the --check capture to this PNG path")
    parser.add_argument("--country", type=str, default=None, help="Country code stored with --add-account")
    return parser


def _apply_args(config: AppConfig, args: argparse.Namespace) -> AppConfig:
    if args.db_url:
        config.db_url = args.db_url
    if args.overrides_file is not None:
        config.policy.overrides_path = args.overrides_file
    if args.max_concurrent is not None:
        if args.max_concurrent < 1:
            raise ValueError("--max-concurrent must be at least 1")
        config.scheduler.max_concurrent = args.max_concurrent
    if args.headed:
        config.browser.headless = False
    return config


def _report_status(runtime: SchedulerRuntime) -> None:
    scheduler = runtime.scheduler
    now = scheduler.now()
    wake = scheduler.sleep_window.next_wake(now)
    if wake is None:
        LOGGER.info("Status: ACTIVE at %02d:%02d (checks every %d minutes)", now.hour, now.minute, runtime.config.scheduler.interval_minutes)
    else:
        LOGGER.info("Status: SLEEPING at %02d:%02d, resuming at %s", now.hour, now.minute, wake.strftime("%Y-%m-%d %H:%M"))
    LOGGER.info(
        "Tracked accounts: %d; stored screenshots: %d",
        len(runtime.store.list_accounts()),
        runtime.store.count_screenshots(),
    )


def _debug_check(runtime: SchedulerRuntime, username: str, output: Path | None) -> int:
    result = runtime.machine.check_live_and_capture(username)
    LOGGER.info(
        "Check result for %s: live=%s bytes=%d error=%s diagnostics=%s",
        username,
        result.live,
        len(result.buffer or b""),
        result.error,
        result.diagnostics.as_dict(),
    )
    if output is not None and result.buffer:
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_bytes(result.buffer)
        LOGGER.info("Capture written to %s", output)
    return 0


def _add_account(runtime: SchedulerRuntime, username: str, country: str | None) -> int:
    try:
        account = runtime.store.add_account(username, country)
    except (ValueError, CaptureStoreError) as exc:
        LOGGER.error("Failed to add account %s: %s", username, exc)
        return 1
    LOGGER.info("Tracking %s (country=%s, id=%s)", account.username, account.country or "-", account.account_id)
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    if args.output is not None and not args.check:
        parser.error("--output requires --check")
    if args.country is not None and not args.add_account:
        parser.error("--country requires --add-account")

    try:
        config = _apply_args(AppConfig.from_env(), args)
        configure_logging(config.log_level)
        runtime = build_runtime(config)
    except Exception:
        configure_logging()
        LOGGER.exception("Failed to start live capture scheduler")
        return 1

    try:
        if args.status:
            _report_status(runtime)
            return 0
        if args.check:
            return _debug_check(runtime, args.check, args.output)
        if args.add_account:
            return _add_account(runtime, args.add_account, args.country)
        if args.prune:
            runtime.scheduler.prune_screenshots()
            return 0
        if args.once:
            LOGGER.info("Scheduler worker started")
            runtime.scheduler.run_once()
            LOGGER.info("Scheduler worker finished")
            return 0

        def _handle_signal(signum, _frame) -> None:
            LOGGER.info("Received signal %s; stopping scheduler", signum)
            runtime.scheduler.stop()

        signal.signal(signal.SIGINT, _handle_signal)
        signal.signal(signal.SIGTERM, _handle_signal)
        runtime.scheduler.run_forever()
        return 0
    finally:
        runtime.close()


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    raise SystemExit(main())
