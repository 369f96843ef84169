"""Celery application setup for worker/beat deployments of the scheduler."""

from __future__ import annotations

from typing import Optional

from celery import Celery
from celery.schedules import crontab

from .config import CeleryConfig

BEAT_SCHEDULE = {
    "live-capture-cycle": {
        "task": "live_capture.run_cycle",
        "schedule": crontab(minute="*/20"),
    },
    "live-capture-prune": {
        "task": "live_capture.prune_screenshots",
        "schedule": crontab(hour=3, minute=0),
    },
}


def create_celery_app(config: Optional[CeleryConfig] = None) -> Celery:
    """Instantiate the Celery app; settings default to the process environment."""

    config = config or CeleryConfig.from_env()
    app = Celery(
        "live_capture",
        broker=config.broker_url,
        backend=config.result_backend,
        include=["live_capture.tasks"],
    )
    app.conf.update(
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        task_always_eager=config.always_eager,
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        # One browser-heavy cycle per worker process at a time.
        worker_prefetch_multiplier=1,
        broker_connection_retry_on_startup=True,
        beat_schedule=BEAT_SCHEDULE,
    )
    return app


celery_app = create_celery_app()


__all__ = ["BEAT_SCHEDULE", "celery_app", "create_celery_app"]
