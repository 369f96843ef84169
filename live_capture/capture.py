"""Live detection and still capture for a single account.

Each attempt drives one fresh browser session through a small state machine::

    NAVIGATING -> DETECTING_LIVE -> NOT_LIVE
                                 -> WAITING_FOR_STREAM -> CHECKING_RENDERABLE
                                    -> CAPTURING -> CAPTURED | CAPTURE_FAILED

Navigation errors end the attempt in FAILED and the outer loop starts a new
session after a linear backoff. Sessions are always closed, whatever the outcome.
"""

from __future__ import annotations

import base64
import logging
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional, Sequence

from .browser import BrowserDriver, BrowserSession, NavigationError, NavigationTimeout, Region
from .config import BrowserConfig, CaptureConfig
from .detection import LIVE_PREDICATES, LivePredicate, detect_live
from .policy import CapturePolicy, MinedFailureStats, OverrideConfig, PolicyBaseline, derive_policy
from .records import normalize_username

LOGGER = logging.getLogger(__name__)

RENDERABLE_STREAM_SCRIPT = """() => {
  const v = document.querySelector('video');
  return !!v && v.readyState >= 3;
}"""

MEDIA_INFO_SCRIPT = """() => {
  const containers = Array.from(document.querySelectorAll('div')).filter(
    el => el.clientWidth >= 300 && el.clientHeight >= 300 && el.offsetParent !== null
  );
  return {
    videoCount: document.querySelectorAll('video').length,
    largeContainers: containers.length,
    viewport: { width: window.innerWidth, height: window.innerHeight },
  };
}"""

SCROLL_SCRIPT = "() => window.scrollBy(0, 10)"

REMOVE_OVERLAYS_SCRIPT = """() => {
  const texts = ['Log in to TikTok', 'Try another browser', 'Sign in', 'Continue to watch'];
  document.querySelectorAll('div, section, dialog, [role="dialog"]').forEach(n => {
    const txt = (n.innerText || '').slice(0, 200);
    if (texts.some(t => txt.includes(t))) n.remove();
  });
  document.querySelectorAll('.modal, .overlay, .MuiModal-root, [data-e2e*="login"], [data-testid*="login"]')
    .forEach(el => el.remove());
  document.querySelectorAll('button').forEach(b => {
    const label = (b.innerText || '').toLowerCase().trim();
    if (label.includes('close') || label === '×' || label === 'x' || label.includes('cancel')) b.click();
  });
}"""

VIDEO_FRAME_SCRIPT = """() => {
  const v = document.querySelector('video');
  if (!v) return null;
  const w = v.videoWidth || v.clientWidth;
  const h = v.videoHeight || v.clientHeight;
  if (w <= 0 || h <= 0) return null;
  const canvas = document.createElement('canvas');
  canvas.width = w;
  canvas.height = h;
  const ctx = canvas.getContext('2d');
  try {
    ctx.fillStyle = 'black';
    ctx.fillRect(0, 0, w, h);
    ctx.drawImage(v, 0, 0, w, h);
    return canvas.toDataURL('image/png');
  } catch (err) {
    return null;
  }
}"""

LARGEST_REGION_SCRIPT = """(minSize) => {
  const candidates = Array.from(document.querySelectorAll('div')).filter(el =>
    el.clientWidth >= minSize && el.clientHeight >= minSize && el.offsetParent !== null
  );
  candidates.sort((a, b) => (b.clientWidth * b.clientHeight) - (a.clientWidth * a.clientHeight));
  if (!candidates.length) return null;
  const el = candidates[0];
  const rect = el.getBoundingClientRect();
  return {
    x: Math.max(0, rect.x),
    y: Math.max(0, rect.y),
    width: Math.min(el.clientWidth, window.innerWidth - rect.x),
    height: Math.min(el.clientHeight, window.innerHeight - rect.y),
  };
}"""


class CaptureState(str, Enum):
    NAVIGATING = "navigating"
    DETECTING_LIVE = "detecting_live"
    NOT_LIVE = "not_live"
    WAITING_FOR_STREAM = "waiting_for_stream"
    CHECKING_RENDERABLE = "checking_renderable"
    CAPTURING = "capturing"
    CAPTURED = "captured"
    CAPTURE_FAILED = "capture_failed"
    FAILED = "failed"


TERMINAL_STATES = frozenset(
    {CaptureState.NOT_LIVE, CaptureState.CAPTURED, CaptureState.CAPTURE_FAILED, CaptureState.FAILED}
)


@dataclass(slots=True)
class CaptureDiagnostics:
    """Counters and traces collected across all attempts of one check."""

    detection: list[tuple[str, bool]] = field(default_factory=list)
    states: list[str] = field(default_factory=list)
    black_frames: int = 0
    render_timeouts: int = 0
    recovered_captures: int = 0
    capture_method: Optional[str] = None
    live_method: Optional[str] = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "detection": [list(item) for item in self.detection],
            "states": list(self.states),
            "blackFrames": self.black_frames,
            "renderTimeouts": self.render_timeouts,
            "recoveredCaptures": self.recovered_captures,
            "captureMethod": self.capture_method,
            "liveMethod": self.live_method,
        }


@dataclass(slots=True)
class CaptureResult:
    live: bool
    buffer: Optional[bytes] = None
    error: Optional[str] = None
    attempts: int = 0
    diagnostics: CaptureDiagnostics = field(default_factory=CaptureDiagnostics)


@dataclass(slots=True)
class _AttemptContext:
    username: str
    policy: CapturePolicy
    session: BrowserSession
    diagnostics: CaptureDiagnostics
    buffer: Optional[bytes] = None


def is_likely_black_frame(buffer: Optional[bytes], min_bytes: int) -> bool:
    """Frames too small to hold real video content are treated as black/blank."""

    return not buffer or len(buffer) < min_bytes


def looks_like_live_page(url: str) -> bool:
    return "/live" in (url or "")


def _decode_data_url(data_url: Any) -> Optional[bytes]:
    if not isinstance(data_url, str) or not data_url.startswith("data:image"):
        return None
    _, _, encoded = data_url.partition(",")
    if not encoded:
        return None
    return base64.b64decode(encoded)


class LiveCaptureMachine:
    """Check one account for a live stream and capture a representative frame."""

    def __init__(
        self,
        driver: BrowserDriver,
        config: CaptureConfig | None = None,
        *,
        browser_config: BrowserConfig | None = None,
        baseline: PolicyBaseline | None = None,
        predicates: Sequence[LivePredicate] = LIVE_PREDICATES,
        sleep: Callable[[float], None] = time.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self._driver = driver
        self._config = config or CaptureConfig()
        self._browser_config = browser_config
        self._baseline = baseline or PolicyBaseline()
        self._predicates = tuple(predicates)
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._handlers: dict[CaptureState, Callable[[_AttemptContext], CaptureState]] = {
            CaptureState.NAVIGATING: self._navigate,
            CaptureState.DETECTING_LIVE: self._detect_live,
            CaptureState.WAITING_FOR_STREAM: self._wait_for_stream,
            CaptureState.CHECKING_RENDERABLE: self._check_renderable,
            CaptureState.CAPTURING: self._capture_with_retry,
        }

    def check_live_and_capture(
        self,
        username: str,
        max_retries: int | None = None,
        *,
        policy: CapturePolicy | None = None,
        country: str | None = None,
    ) -> CaptureResult:
        """Run up to ``max_retries`` sessions; never raises."""

        clean_username = normalize_username(username)
        max_retries = max(1, max_retries or self._config.default_max_retries)
        if policy is None:
            policy = derive_policy(clean_username, country, MinedFailureStats(), OverrideConfig(), self._baseline)
            if max_retries > self._config.default_max_retries:
                policy = policy.for_deep_check(
                    min_wait_loops=self._config.deep_check_wait_loops,
                    min_renderable_timeout_ms=self._config.deep_check_renderable_timeout_ms,
                )

        LOGGER.info(
            "Starting live check for %s (country=%s, minScreenshotBytes=%d, captureAttempts=%d, streamWaitLoops=%d)",
            clean_username,
            country,
            policy.min_screenshot_bytes,
            policy.capture_attempts,
            policy.stream_wait_loops,
        )

        diagnostics = CaptureDiagnostics()
        last_error: Optional[str] = None
        for attempt in range(1, max_retries + 1):
            session: Optional[BrowserSession] = None
            try:
                LOGGER.debug("Attempt %d/%d - launching browser for %s", attempt, max_retries, clean_username)
                session = self._driver.launch_session(self._browser_config)
                context = _AttemptContext(clean_username, policy, session, diagnostics)
                state = self._run(context)
                if state == CaptureState.NOT_LIVE:
                    LOGGER.info("Not live: %s", clean_username)
                    return CaptureResult(live=False, attempts=attempt, diagnostics=diagnostics)
                return CaptureResult(live=True, buffer=context.buffer, attempts=attempt, diagnostics=diagnostics)
            except Exception as exc:
                last_error = str(exc) or exc.__class__.__name__
                diagnostics.states.append(CaptureState.FAILED.value)
                LOGGER.warning("Attempt %d/%d failed for %s: %s", attempt, max_retries, clean_username, last_error)
            finally:
                if session is not None:
                    try:
                        session.close()
                    except Exception as exc:
                        LOGGER.debug("Ignoring error while closing session for %s: %s", clean_username, exc)

            if attempt < max_retries:
                wait_ms = self._config.retry_backoff_ms * attempt
                LOGGER.debug("Waiting %dms before retry for %s", wait_ms, clean_username)
                self._sleep(wait_ms / 1000.0)

        LOGGER.error("Failed to check %s after %d attempts: %s", clean_username, max_retries, last_error)
        return CaptureResult(
            live=False,
            error=last_error or "Unknown error after retries",
            attempts=max_retries,
            diagnostics=diagnostics,
        )

    def _run(self, context: _AttemptContext) -> CaptureState:
        state = CaptureState.NAVIGATING
        while state not in TERMINAL_STATES:
            context.diagnostics.states.append(state.value)
            state = self._handlers[state](context)
        context.diagnostics.states.append(state.value)
        return state

    def _navigate(self, context: _AttemptContext) -> CaptureState:
        url = self._config.live_url(context.username)
        LOGGER.debug("Navigating to %s", url)
        try:
            context.session.navigate(url, self._config.navigation_timeout_ms)
        except NavigationTimeout as exc:
            LOGGER.warning("Navigation warning for %s: %s", context.username, exc)
            if not looks_like_live_page(context.session.url):
                raise NavigationError(f"Failed to navigate to {url}: {exc}") from exc
        context.session.wait(self._config.settle_ms)
        return CaptureState.DETECTING_LIVE

    def _detect_live(self, context: _AttemptContext) -> CaptureState:
        detection = detect_live(context.session, context.username, self._predicates)
        context.diagnostics.detection = detection.trace
        if not detection.live:
            return CaptureState.NOT_LIVE
        context.diagnostics.live_method = detection.method
        LOGGER.info("Live detected for %s via %s", context.username, detection.method)
        return CaptureState.WAITING_FOR_STREAM

    def _wait_for_stream(self, context: _AttemptContext) -> CaptureState:
        loops = context.policy.stream_wait_loops
        poll_ms = self._config.stream_poll_ms
        total_seconds = loops * poll_ms / 1000.0
        for loop in range(loops):
            LOGGER.debug(
                "Waiting for stream of %s (%.0fs / %.0fs)",
                context.username,
                (loop + 1) * poll_ms / 1000.0,
                total_seconds,
            )
            # Live players often only initialise media after some user activity.
            try:
                context.session.move_mouse(100 + self._rng.random() * 500, 100 + self._rng.random() * 500)
                if loop % 3 == 0:
                    context.session.evaluate(SCROLL_SCRIPT)
            except Exception as exc:
                LOGGER.debug("Synthetic interaction failed for %s: %s", context.username, exc)
            context.session.wait(poll_ms)

        try:
            LOGGER.debug("Page media status for %s: %s", context.username, context.session.evaluate(MEDIA_INFO_SCRIPT))
        except Exception as exc:
            LOGGER.debug("Media status unavailable for %s: %s", context.username, exc)
        return CaptureState.CHECKING_RENDERABLE

    def _check_renderable(self, context: _AttemptContext) -> CaptureState:
        timeout_ms = context.policy.renderable_timeout_ms
        if not context.session.wait_for_function(RENDERABLE_STREAM_SCRIPT, timeout_ms):
            context.diagnostics.render_timeouts += 1
            LOGGER.warning("Stream not confirmed renderable for %s within %dms", context.username, timeout_ms)
            LOGGER.warning("Proceeding with capture fallback for %s", context.username)
        return CaptureState.CAPTURING

    def _capture_with_retry(self, context: _AttemptContext) -> CaptureState:
        attempts = context.policy.capture_attempts
        min_bytes = context.policy.min_screenshot_bytes
        for attempt in range(1, attempts + 1):
            buffer, method = self._capture_frame(context)
            if buffer is None:
                LOGGER.warning("Screenshot attempt %d returned nothing for %s", attempt, context.username)
                continue

            if not is_likely_black_frame(buffer, min_bytes):
                if attempt > 1:
                    context.diagnostics.recovered_captures += 1
                    LOGGER.info(
                        "Recovered non-black screenshot on attempt %d/%d for %s",
                        attempt,
                        attempts,
                        context.username,
                    )
                context.buffer = buffer
                context.diagnostics.capture_method = method
                return CaptureState.CAPTURED

            context.diagnostics.black_frames += 1
            LOGGER.warning("Likely black screen for %s (size: %d < %d)", context.username, len(buffer), min_bytes)
            if attempt < attempts:
                LOGGER.info("Retrying capture for %s (attempt %d/%d)", context.username, attempt, attempts)
                context.session.wait(self._config.capture_retry_delay_ms)

        return CaptureState.CAPTURE_FAILED

    def _capture_frame(self, context: _AttemptContext) -> tuple[Optional[bytes], Optional[str]]:
        session = context.session
        username = context.username
        try:
            session.evaluate(REMOVE_OVERLAYS_SCRIPT)
            session.wait(self._config.overlay_settle_ms)
        except Exception as exc:
            LOGGER.debug("Overlay removal failed for %s: %s", username, exc)

        try:
            buffer = _decode_data_url(session.evaluate(VIDEO_FRAME_SCRIPT))
            if buffer:
                LOGGER.info("Video frame extraction succeeded for %s (%d bytes)", username, len(buffer))
                return buffer, "video_frame"
        except Exception as exc:
            LOGGER.debug("Video frame extraction skipped for %s: %s", username, exc)

        min_size = self._config.min_region_size
        try:
            box = session.evaluate(LARGEST_REGION_SCRIPT, min_size)
            if box and box.get("width", 0) > min_size and box.get("height", 0) > min_size:
                region = Region(x=box["x"], y=box["y"], width=box["width"], height=box["height"])
                buffer = session.screenshot(region)
                LOGGER.info(
                    "Region screenshot succeeded for %s (%d bytes, %dx%d)",
                    username,
                    len(buffer),
                    region.width,
                    region.height,
                )
                return buffer, "largest_region"
        except Exception as exc:
            LOGGER.debug("Region screenshot failed for %s: %s", username, exc)

        try:
            buffer = session.screenshot()
        except Exception as exc:
            LOGGER.error("Failed to capture screenshot for %s: %s", username, exc)
            return None, None
        LOGGER.info("Viewport screenshot captured for %s (%d bytes)", username, len(buffer))
        return buffer, "viewport"


__all__ = [
    "CaptureDiagnostics",
    "CaptureResult",
    "CaptureState",
    "LiveCaptureMachine",
    "is_likely_black_frame",
    "looks_like_live_page",
]
