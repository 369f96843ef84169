"""Adaptive capture policy derived from failure history and operator overrides."""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional

from .records import SchedulerAuditRecord, normalize_username

LOGGER = logging.getLogger(__name__)

DEFAULT_COUNTRY = "DEFAULT"

MIN_SCREENSHOT_BYTES_RANGE = (15000, 90000)
STREAM_WAIT_LOOPS_RANGE = (10, 45)
CAPTURE_ATTEMPTS_RANGE = (2, 6)
RENDERABLE_MS_PER_WAIT_LOOP = 2500

# Override file keys mapped onto policy fields.
_OVERRIDE_FIELDS = {
    "minScreenshotBytes": "min_screenshot_bytes",
    "streamWaitLoops": "stream_wait_loops",
    "captureAttempts": "capture_attempts",
}


class ConfigParseError(ValueError):
    """Raised when the capture strategy override file is malformed."""


@dataclass(slots=True)
class FailureCounts:
    black_warnings: int = 0
    render_timeouts: int = 0
    recovered_captures: int = 0

    def add(self, record: SchedulerAuditRecord) -> None:
        self.black_warnings += record.black_warnings
        self.render_timeouts += record.render_timeouts
        self.recovered_captures += record.recovered_captures

    def as_dict(self) -> dict[str, int]:
        return {
            "blackWarnings": self.black_warnings,
            "renderTimeouts": self.render_timeouts,
            "recoveredCaptures": self.recovered_captures,
        }


@dataclass(slots=True)
class MinedFailureStats:
    by_username: dict[str, FailureCounts] = field(default_factory=dict)
    by_country: dict[str, FailureCounts] = field(default_factory=dict)

    def for_username(self, username: str) -> FailureCounts:
        return self.by_username.get(normalize_username(username)) or FailureCounts()

    def for_country(self, country: Optional[str]) -> FailureCounts:
        return self.by_country.get(country or DEFAULT_COUNTRY) or FailureCounts()


@dataclass(slots=True)
class OverrideConfig:
    by_country: dict[str, dict[str, Any]] = field(default_factory=dict)
    by_username: dict[str, dict[str, Any]] = field(default_factory=dict)

    def country_override(self, country: Optional[str]) -> Optional[Mapping[str, Any]]:
        if not country:
            return None
        return self.by_country.get(country) or self.by_country.get(country.upper())

    def username_override(self, username: str) -> Optional[Mapping[str, Any]]:
        return self.by_username.get(username)


@dataclass(slots=True, frozen=True)
class PolicyBaseline:
    min_screenshot_bytes: int = 28000
    stream_wait_loops: int = 20
    capture_attempts: int = 3


@dataclass(slots=True, frozen=True)
class CapturePolicy:
    """Resolved thresholds for one capture cycle of one account."""

    min_screenshot_bytes: int
    stream_wait_loops: int
    capture_attempts: int
    renderable_timeout_ms: int
    reason: Mapping[str, Any] = field(default_factory=dict, compare=False)

    def for_deep_check(self, *, min_wait_loops: int, min_renderable_timeout_ms: int) -> "CapturePolicy":
        """Return a copy with stream and renderable waits widened for a deep check."""

        wait_loops = _clamp(max(self.stream_wait_loops, min_wait_loops), *STREAM_WAIT_LOOPS_RANGE)
        reason = dict(self.reason)
        reason["deepCheck"] = True
        return replace(
            self,
            stream_wait_loops=wait_loops,
            renderable_timeout_ms=max(self.renderable_timeout_ms, min_renderable_timeout_ms),
            reason=reason,
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "minScreenshotBytes": self.min_screenshot_bytes,
            "streamWaitLoops": self.stream_wait_loops,
            "captureAttempts": self.capture_attempts,
            "renderableTimeoutMs": self.renderable_timeout_ms,
            "reason": dict(self.reason),
        }


def _clamp(value: float, low: int, high: int) -> int:
    return int(max(low, min(high, value)))


def _bounded(value: float, low: int, high: int) -> float:
    return max(low, min(high, value))


def _finite_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        number = float(value)
    except OverflowError:
        return None
    if not math.isfinite(number):
        return None
    return value


def _apply_override(values: dict[str, float], override: Optional[Mapping[str, Any]]) -> bool:
    if not override:
        return False
    for key, attr in _OVERRIDE_FIELDS.items():
        number = _finite_number(override.get(key))
        if number is not None:
            values[attr] = number
    return True


def derive_policy(
    username: str,
    country: Optional[str],
    stats: MinedFailureStats,
    overrides: OverrideConfig,
    baseline: PolicyBaseline | None = None,
) -> CapturePolicy:
    """Map failure statistics and overrides onto concrete capture thresholds.

    Scores weight the account's own history twice as heavily as its country's.
    Computed values are replaced (not adjusted) by a country override and then
    by a username override, and the result is always clamped to the allowed ranges.
    """

    baseline = baseline or PolicyBaseline()
    user_stats = stats.for_username(username)
    country_stats = stats.for_country(country)

    black_score = user_stats.black_warnings * 2 + country_stats.black_warnings
    timeout_score = user_stats.render_timeouts * 2 + country_stats.render_timeouts

    values: dict[str, float] = {
        "min_screenshot_bytes": baseline.min_screenshot_bytes,
        "stream_wait_loops": baseline.stream_wait_loops,
        "capture_attempts": baseline.capture_attempts,
    }
    if black_score >= 3:
        values["min_screenshot_bytes"] += 8000
    if black_score >= 8:
        values["min_screenshot_bytes"] += 12000
    if timeout_score >= 2:
        values["stream_wait_loops"] += 6
    if timeout_score >= 6:
        values["stream_wait_loops"] += 8
    if black_score >= 5 or timeout_score >= 4:
        values["capture_attempts"] += 1

    has_country_override = _apply_override(values, overrides.country_override(country))
    has_user_override = _apply_override(values, overrides.username_override(username))

    # Fractional overrides: byte floors and wait loops round up, attempts round down.
    wait_loops = _bounded(values["stream_wait_loops"], *STREAM_WAIT_LOOPS_RANGE)

    return CapturePolicy(
        min_screenshot_bytes=math.ceil(_bounded(values["min_screenshot_bytes"], *MIN_SCREENSHOT_BYTES_RANGE)),
        stream_wait_loops=math.ceil(wait_loops),
        capture_attempts=math.floor(_bounded(values["capture_attempts"], *CAPTURE_ATTEMPTS_RANGE)),
        renderable_timeout_ms=round(wait_loops * RENDERABLE_MS_PER_WAIT_LOOP),
        reason={
            "country": country or None,
            "userStats": user_stats.as_dict(),
            "countryStats": country_stats.as_dict(),
            "blackScore": black_score,
            "timeoutScore": timeout_score,
            "hasCountryOverride": has_country_override,
            "hasUserOverride": has_user_override,
        },
    )


def mine_failure_stats(
    records: Iterable[SchedulerAuditRecord],
    account_countries: Mapping[str, Optional[str]],
) -> MinedFailureStats:
    """Aggregate per-cycle failure counters into username and country totals."""

    stats = MinedFailureStats()
    for record in records:
        username = normalize_username(record.username)
        if not username:
            continue
        stats.by_username.setdefault(username, FailureCounts()).add(record)
        country = account_countries.get(username) or DEFAULT_COUNTRY
        stats.by_country.setdefault(country, FailureCounts()).add(record)
    return stats


def parse_overrides(payload: Any) -> OverrideConfig:
    if not isinstance(payload, Mapping):
        raise ConfigParseError("Override file must contain a JSON object")

    sections: dict[str, dict[str, dict[str, Any]]] = {}
    for key in ("byCountry", "byUsername"):
        section = payload.get(key) or {}
        if not isinstance(section, Mapping):
            raise ConfigParseError(f"'{key}' must be an object")
        cleaned: dict[str, dict[str, Any]] = {}
        for name, override in section.items():
            if not isinstance(override, Mapping):
                raise ConfigParseError(f"'{key}.{name}' must be an object")
            cleaned[str(name)] = dict(override)
        sections[key] = cleaned
    return OverrideConfig(by_country=sections["byCountry"], by_username=sections["byUsername"])


def load_overrides(path: Path) -> OverrideConfig:
    """Read the override file; a missing or malformed file yields empty overrides."""

    if not path.exists():
        return OverrideConfig()
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
        return parse_overrides(payload)
    except (OSError, ValueError) as exc:
        # json.JSONDecodeError and ConfigParseError are both ValueErrors.
        LOGGER.warning("Failed to parse capture strategy override file %s: %s", path, exc)
        return OverrideConfig()


__all__ = [
    "CapturePolicy",
    "ConfigParseError",
    "DEFAULT_COUNTRY",
    "FailureCounts",
    "MinedFailureStats",
    "OverrideConfig",
    "PolicyBaseline",
    "derive_policy",
    "load_overrides",
    "mine_failure_stats",
    "parse_overrides",
]
