"""Celery tasks that run capture cycles and retention pruning."""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any, Optional

from celery import Task

from .celery_app import celery_app
from .config import AppConfig
from .run_scheduler import SchedulerRuntime, build_runtime

LOGGER = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def _runtime() -> SchedulerRuntime:
    # One runtime per worker process; the failure tracker lives on it.
    return build_runtime(AppConfig.from_env())


@celery_app.task(name="live_capture.run_cycle", bind=True)
def run_cycle_task(self: Task) -> dict[str, Any]:
    summary = _runtime().scheduler.run_once()
    if summary is None:
        LOGGER.info("Capture cycle skipped")
        return {"status": "skipped"}
    return {"status": "ok", **summary.as_dict()}


@celery_app.task(name="live_capture.prune_screenshots", bind=True)
def prune_screenshots_task(self: Task, days_to_keep: Optional[int] = None) -> dict[str, Any]:
    deleted = _runtime().scheduler.prune_screenshots(days_to_keep)
    LOGGER.info("Retention pruning removed %d screenshots", deleted)
    return {"status": "ok", "deleted": deleted}


__all__ = ["run_cycle_task", "prune_screenshots_task"]
