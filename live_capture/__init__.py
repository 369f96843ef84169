"""Adaptive live-stream detection and screenshot capture."""

from .capture import CaptureResult, LiveCaptureMachine
from .policy import CapturePolicy, derive_policy
from .scheduler import LiveCaptureScheduler
from .task_queue import TaskQueue

__all__ = [
    "CapturePolicy",
    "CaptureResult",
    "LiveCaptureMachine",
    "LiveCaptureScheduler",
    "TaskQueue",
    "derive_policy",
]
