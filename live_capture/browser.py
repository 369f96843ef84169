"""Browser-automation capabilities consumed by the capture state machine."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Protocol

from .config import BrowserConfig


class NavigationError(RuntimeError):
    """Raised when the target page cannot be reached."""


class NavigationTimeout(NavigationError):
    """Raised when navigation exceeded its timeout; the page may still be usable."""


class BrowserLaunchError(NavigationError):
    """Raised when a browser session cannot be started."""


@dataclass(slots=True, frozen=True)
class Region:
    x: float
    y: float
    width: float
    height: float

    def as_clip(self) -> dict[str, float]:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}


class BrowserSession(Protocol):
    """One isolated browser session bound to a single page."""

    @property
    def url(self) -> str:
        ...

    def navigate(self, url: str, timeout_ms: int) -> None:
        ...

    def evaluate(self, script: str, arg: Any = None) -> Any:
        ...

    def wait_for_function(self, script: str, timeout_ms: int) -> bool:
        ...

    def screenshot(self, region: Optional[Region] = None) -> bytes:
        ...

    def move_mouse(self, x: float, y: float) -> None:
        ...

    def wait(self, ms: int) -> None:
        ...

    def close(self) -> None:
        ...


class BrowserDriver(Protocol):
    def launch_session(self, options: Optional[BrowserConfig] = None) -> BrowserSession:
        ...


__all__ = [
    "BrowserDriver",
    "BrowserLaunchError",
    "BrowserSession",
    "NavigationError",
    "NavigationTimeout",
    "Region",
]
