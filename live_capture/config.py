"""Configuration utilities shared by the scheduler, workers and entry points."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from .policy import PolicyBaseline

LOGGER = logging.getLogger(__name__)

DEFAULT_OVERRIDES_FILE = Path("config/capture-strategy.overrides.json")
DEFAULT_STORAGE_ROOT = Path("storage")
DEFAULT_LIVE_URL_TEMPLATE = "https://www.tiktok.com/@{username}/live"
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
DEFAULT_LAUNCH_ARGS = (
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--enable-gpu",
    "--enable-gpu-compositing",
    "--enable-features=WebRTC",
    "--disable-extensions",
    "--disable-default-apps",
    "--no-first-run",
    "--no-default-browser-check",
    "--disable-blink-features=AutomationControlled",
)


def _env_bool(env: Mapping[str, str], name: str, default: bool = False) -> bool:
    value = env.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    value = env.get(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        LOGGER.warning("Invalid integer %r for %s; using default %d", value, name, default)
        return default


def _env_path(env: Mapping[str, str], name: str) -> Optional[Path]:
    value = env.get(name)
    if value is None or not value.strip():
        return None
    return Path(value.strip()).expanduser()


def _env_str(env: Mapping[str, str], name: str) -> Optional[str]:
    value = env.get(name)
    if value is None:
        return None
    cleaned = value.strip()
    return cleaned or None


@dataclass(slots=True)
class BrowserConfig:
    headless: bool = True
    user_data_dir: Optional[Path] = None
    executable_path: Optional[Path] = None
    viewport_width: int = 1280
    viewport_height: int = 720
    user_agent: str = DEFAULT_USER_AGENT
    accept_language: str = "en-US,en;q=0.9"
    locale: str = "en-US"
    launch_args: tuple[str, ...] = DEFAULT_LAUNCH_ARGS

    def extra_headers(self) -> dict[str, str]:
        return {
            "Accept-Language": self.accept_language,
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
        }


@dataclass(slots=True)
class CaptureConfig:
    live_url_template: str = DEFAULT_LIVE_URL_TEMPLATE
    navigation_timeout_ms: int = 45000
    settle_ms: int = 3000
    stream_poll_ms: int = 2000
    capture_retry_delay_ms: int = 2000
    retry_backoff_ms: int = 3000
    overlay_settle_ms: int = 200
    min_region_size: int = 300
    default_max_retries: int = 3
    deep_check_max_retries: int = 5
    deep_check_wait_loops: int = 30
    deep_check_renderable_timeout_ms: int = 70000

    def live_url(self, username: str) -> str:
        return self.live_url_template.format(username=username)


@dataclass(slots=True)
class PolicyConfig:
    baseline: PolicyBaseline = field(default_factory=PolicyBaseline)
    overrides_path: Path = DEFAULT_OVERRIDES_FILE
    stats_window: int = 500


@dataclass(slots=True)
class SchedulerConfig:
    interval_minutes: int = 20
    sleep_start_hour: int = 2
    sleep_end_hour: int = 7
    max_concurrent: int = 1
    task_max_retries: int = 2
    jitter_min_seconds: float = 5.0
    jitter_max_seconds: float = 10.0
    deep_check_threshold: int = 2
    retention_days: int = 20
    cleanup_hour: int = 3


@dataclass(slots=True)
class ObjectStorageConfig:
    backend: str = "local"
    root: Path = DEFAULT_STORAGE_ROOT
    public_base_url: Optional[str] = None
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None
    bucket: str = "screenshots"
    timeout: float = 30.0


def _prefixed_url(db_url: Optional[str], prefix: str) -> Optional[str]:
    if not db_url:
        return None
    return db_url if db_url.startswith(prefix) else prefix + db_url


@dataclass(slots=True)
class CeleryConfig:
    broker_url: str = "memory://"
    result_backend: str = "cache+memory://"
    always_eager: bool = False

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "CeleryConfig":
        """Explicit URLs win; otherwise the broker and result store share DATABASE_URL."""

        env = os.environ if env is None else env
        db_url = _env_str(env, "DATABASE_URL")
        defaults = cls()
        return cls(
            broker_url=_env_str(env, "LIVE_CAPTURE_CELERY_BROKER_URL")
            or _prefixed_url(db_url, "sqla+")
            or defaults.broker_url,
            result_backend=_env_str(env, "LIVE_CAPTURE_CELERY_RESULT_BACKEND")
            or _prefixed_url(db_url, "db+")
            or defaults.result_backend,
            always_eager=_env_bool(env, "LIVE_CAPTURE_CELERY_TASK_ALWAYS_EAGER", False),
        )


@dataclass(slots=True)
class AppConfig:
    db_url: Optional[str] = None
    log_level: str = "INFO"
    browser: BrowserConfig = field(default_factory=BrowserConfig)
    capture: CaptureConfig = field(default_factory=CaptureConfig)
    policy: PolicyConfig = field(default_factory=PolicyConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    object_storage: ObjectStorageConfig = field(default_factory=ObjectStorageConfig)

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "AppConfig":
        """Build configuration from environment variables, falling back to defaults."""

        env = os.environ if env is None else env
        defaults = PolicyBaseline()
        baseline = PolicyBaseline(
            min_screenshot_bytes=_env_int(env, "MIN_SCREENSHOT_BYTES", defaults.min_screenshot_bytes),
            stream_wait_loops=_env_int(env, "STREAM_WAIT_LOOPS", defaults.stream_wait_loops),
            capture_attempts=_env_int(env, "CAPTURE_ATTEMPTS", defaults.capture_attempts),
        )
        policy = PolicyConfig(
            baseline=baseline,
            overrides_path=_env_path(env, "CAPTURE_STRATEGY_FILE") or DEFAULT_OVERRIDES_FILE,
            stats_window=max(0, _env_int(env, "POLICY_STATS_WINDOW", PolicyConfig().stats_window)),
        )

        browser = BrowserConfig(
            headless=_env_bool(env, "HEADLESS", True),
            user_data_dir=_env_path(env, "BROWSER_USER_DATA_DIR"),
            executable_path=_env_path(env, "CHROME_PATH"),
        )

        capture = CaptureConfig()
        live_url_template = _env_str(env, "LIVE_URL_TEMPLATE")
        if live_url_template:
            if "{username}" not in live_url_template:
                raise ValueError("LIVE_URL_TEMPLATE must contain a '{username}' placeholder")
            capture.live_url_template = live_url_template

        scheduler = SchedulerConfig(
            max_concurrent=max(1, _env_int(env, "SCHEDULER_MAX_CONCURRENT", SchedulerConfig().max_concurrent)),
            retention_days=max(1, _env_int(env, "SCREENSHOT_RETENTION_DAYS", SchedulerConfig().retention_days)),
        )

        backend = (_env_str(env, "OBJECT_STORAGE_BACKEND") or "local").lower()
        if backend not in {"local", "supabase"}:
            raise ValueError(f"Unsupported OBJECT_STORAGE_BACKEND {backend!r}")
        object_storage = ObjectStorageConfig(
            backend=backend,
            root=_env_path(env, "STORAGE_ROOT") or DEFAULT_STORAGE_ROOT,
            public_base_url=_env_str(env, "STORAGE_PUBLIC_BASE_URL"),
            supabase_url=_env_str(env, "SUPABASE_URL"),
            supabase_key=_env_str(env, "SUPABASE_SERVICE_ROLE_KEY"),
            bucket=_env_str(env, "SUPABASE_BUCKET") or ObjectStorageConfig().bucket,
        )

        return cls(
            db_url=_env_str(env, "DATABASE_URL"),
            log_level=(_env_str(env, "LOG_LEVEL") or "INFO").upper(),
            browser=browser,
            capture=capture,
            policy=policy,
            scheduler=scheduler,
            object_storage=object_storage,
        )


__all__ = [
    "AppConfig",
    "BrowserConfig",
    "CaptureConfig",
    "CeleryConfig",
    "ObjectStorageConfig",
    "PolicyConfig",
    "SchedulerConfig",
]
