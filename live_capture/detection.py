"""Page-structure heuristics that decide whether an account is streaming."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Sequence

from .browser import BrowserSession

LOGGER = logging.getLogger(__name__)

VISIBLE_VIDEO_SCRIPT = """() => {
  const videos = Array.from(document.querySelectorAll('video'));
  return videos.some(v => v.offsetParent !== null);
}"""

VISIBLE_CANVAS_SCRIPT = """() => {
  const canvases = Array.from(document.querySelectorAll('canvas'));
  return canvases.some(c => c.offsetParent !== null);
}"""

LIVE_INDICATOR_SCRIPT = """() => {
  const text = document.body ? document.body.innerText : '';
  const hasLiveText = /live|streaming|正在直播|go live/i.test(text);
  const hasLiveElement = document.querySelector('[data-testid*="live"], [class*="live"], [class*="Live"]') !== null;
  return hasLiveText || hasLiveElement;
}"""

STREAM_IFRAME_SCRIPT = """() => {
  return Array.from(document.querySelectorAll('iframe'))
    .some(i => (i.src || '').includes('stream') || (i.src || '').includes('live'));
}"""


@dataclass(slots=True, frozen=True)
class LivePredicate:
    name: str
    script: str

    def check(self, session: BrowserSession) -> bool:
        return bool(session.evaluate(self.script))


LIVE_PREDICATES: tuple[LivePredicate, ...] = (
    LivePredicate("video", VISIBLE_VIDEO_SCRIPT),
    LivePredicate("canvas", VISIBLE_CANVAS_SCRIPT),
    LivePredicate("live_indicator", LIVE_INDICATOR_SCRIPT),
    LivePredicate("stream_iframe", STREAM_IFRAME_SCRIPT),
)


@dataclass(slots=True)
class DetectionResult:
    live: bool
    method: str | None = None
    trace: list[tuple[str, bool]] = field(default_factory=list)


def detect_live(
    session: BrowserSession,
    username: str,
    predicates: Sequence[LivePredicate] = LIVE_PREDICATES,
) -> DetectionResult:
    """Evaluate predicates in order and stop at the first positive one.

    A predicate whose evaluation fails counts as negative; ambiguity resolves to not live.
    """

    result = DetectionResult(live=False)
    for index, predicate in enumerate(predicates, start=1):
        try:
            matched = predicate.check(session)
        except Exception as exc:
            LOGGER.debug("Method %d (%s) failed for %s: %s", index, predicate.name, username, exc)
            matched = False
        result.trace.append((predicate.name, matched))
        LOGGER.debug("Method %d (%s): %s for %s", index, predicate.name, matched, username)
        if matched:
            result.live = True
            result.method = predicate.name
            return result

    LOGGER.debug("No live indicators found for %s", username)
    return result


__all__ = ["DetectionResult", "LIVE_PREDICATES", "LivePredicate", "detect_live"]
