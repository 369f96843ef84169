"""Playwright-backed browser sessions for live page capture."""

from __future__ import annotations

import logging
import shutil
import tempfile
from pathlib import Path
from typing import Any, Optional

from .browser import BrowserLaunchError, NavigationError, NavigationTimeout, Region
from .config import BrowserConfig

LOGGER = logging.getLogger(__name__)

STEALTH_INIT_SCRIPT = """
Object.defineProperty(navigator, 'webdriver', { get: () => false });
window.chrome = window.chrome || { runtime: {} };
Object.defineProperty(navigator, 'languages', { get: () => ['en-US', 'en'] });
Object.defineProperty(navigator, 'plugins', { get: () => [1, 2, 3] });
"""


def _copy_profile(source: Path) -> Optional[Path]:
    """Copy a logged-in profile so concurrent sessions never share a profile lock."""

    target = Path(tempfile.mkdtemp(prefix="live_capture_profile_"))
    try:
        shutil.copytree(source, target, dirs_exist_ok=True)
    except (OSError, shutil.Error) as exc:
        LOGGER.warning("Failed to copy browser profile %s, using it in place: %s", source, exc)
        shutil.rmtree(target, ignore_errors=True)
        return None
    LOGGER.debug("Using temporary user data dir %s", target)
    return target


class PlaywrightSession:
    """A single Chromium page plus everything that has to be torn down with it."""

    def __init__(self, playwright, browser, context, page, timeout_error_cls, error_cls, temp_profile: Optional[Path]) -> None:
        self._playwright = playwright
        self._browser = browser
        self._context = context
        self._page = page
        self._timeout_error_cls = timeout_error_cls
        self._error_cls = error_cls
        self._temp_profile = temp_profile

    @property
    def url(self) -> str:
        return self._page.url

    def navigate(self, url: str, timeout_ms: int) -> None:
        try:
            self._page.goto(url, wait_until="networkidle", timeout=timeout_ms)
        except self._timeout_error_cls as exc:
            raise NavigationTimeout(f"Timed out while loading {url}") from exc
        except self._error_cls as exc:
            raise NavigationError(f"Failed to navigate to {url}: {exc}") from exc

    def evaluate(self, script: str, arg: Any = None) -> Any:
        return self._page.evaluate(script, arg)

    def wait_for_function(self, script: str, timeout_ms: int) -> bool:
        try:
            self._page.wait_for_function(script, timeout=timeout_ms)
        except self._timeout_error_cls:
            return False
        return True

    def screenshot(self, region: Optional[Region] = None) -> bytes:
        if region is None:
            return self._page.screenshot(full_page=False)
        return self._page.screenshot(clip=region.as_clip())

    def move_mouse(self, x: float, y: float) -> None:
        self._page.mouse.move(x, y)

    def wait(self, ms: int) -> None:
        self._page.wait_for_timeout(ms)

    def _close_quietly(self, target: Any) -> None:
        if target is None:
            return
        try:
            target.close()
        except self._error_cls as exc:
            LOGGER.debug("Ignoring error while closing browser: %s", exc)

    def close(self) -> None:
        try:
            self._close_quietly(self._context)
            self._close_quietly(self._browser)
        finally:
            if self._playwright is not None:
                self._playwright.stop()
            if self._temp_profile is not None:
                shutil.rmtree(self._temp_profile, ignore_errors=True)
            self._context = None
            self._browser = None
            self._playwright = None
            self._temp_profile = None


class PlaywrightBrowserDriver:
    """Launch a fresh Chromium session per capture attempt."""

    def __init__(self, config: BrowserConfig | None = None) -> None:
        self._config = config or BrowserConfig()

    def launch_session(self, options: Optional[BrowserConfig] = None) -> PlaywrightSession:
        config = options or self._config
        try:
            from playwright.sync_api import Error as PlaywrightError
            from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
            from playwright.sync_api import sync_playwright
        except ImportError as exc:  # pragma: no cover - optional dependency
            raise BrowserLaunchError(
                "Playwright is not installed. Install it with `pip install playwright` and run `playwright install`."
            ) from exc

        context_options: dict[str, Any] = {
            "viewport": {"width": config.viewport_width, "height": config.viewport_height},
            "user_agent": config.user_agent,
            "locale": config.locale,
            "extra_http_headers": config.extra_headers(),
        }
        launch_options: dict[str, Any] = {
            "headless": config.headless,
            "args": list(config.launch_args),
        }
        if config.executable_path is not None:
            if config.executable_path.exists():
                launch_options["executable_path"] = str(config.executable_path)
            else:
                LOGGER.warning("Chrome executable %s not found; using bundled Chromium", config.executable_path)

        playwright = sync_playwright().start()
        browser = None
        context = None
        temp_profile: Optional[Path] = None
        try:
            user_data_dir = config.user_data_dir
            if user_data_dir is not None and not user_data_dir.exists():
                LOGGER.warning("User data dir not found, skipping: %s", user_data_dir)
                user_data_dir = None

            if user_data_dir is not None:
                temp_profile = _copy_profile(user_data_dir.resolve())
                profile_dir = temp_profile or user_data_dir
                context = playwright.chromium.launch_persistent_context(
                    str(profile_dir), **launch_options, **context_options
                )
                page = context.pages[0] if context.pages else context.new_page()
            else:
                browser = playwright.chromium.launch(**launch_options)
                context = browser.new_context(**context_options)
                page = context.new_page()

            context.add_init_script(STEALTH_INIT_SCRIPT)
        except PlaywrightError as exc:
            PlaywrightSession(playwright, browser, context, None, PlaywrightTimeoutError, PlaywrightError, temp_profile).close()
            raise BrowserLaunchError(f"Failed to launch browser: {exc}") from exc

        return PlaywrightSession(
            playwright,
            browser,
            context,
            page,
            PlaywrightTimeoutError,
            PlaywrightError,
            temp_profile,
        )


__all__ = ["PlaywrightBrowserDriver", "PlaywrightSession", "STEALTH_INIT_SCRIPT"]
