import unittest
from pathlib import Path
from tempfile import TemporaryDirectory
from unittest.mock import MagicMock, patch

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

from live_capture.browser import BrowserLaunchError, NavigationError, NavigationTimeout, Region
from live_capture.config import BrowserConfig
from live_capture.playwright_support import STEALTH_INIT_SCRIPT, PlaywrightBrowserDriver, PlaywrightSession


def _session(page: MagicMock, temp_profile: Path | None = None) -> tuple[PlaywrightSession, MagicMock, MagicMock, MagicMock]:
    playwright = MagicMock()
    browser = MagicMock()
    context = MagicMock()
    session = PlaywrightSession(
        playwright, browser, context, page, PlaywrightTimeoutError, PlaywrightError, temp_profile
    )
    return session, playwright, browser, context


class PlaywrightSessionTestCase(unittest.TestCase):
    def test_navigation_errors_are_translated(self) -> None:
        page = MagicMock()
        session, *_ = _session(page)

        page.goto.side_effect = PlaywrightTimeoutError("Timeout 45000ms exceeded")
        with self.assertRaises(NavigationTimeout):
            session.navigate("https://www.tiktok.com/@alice/live", 45000)

        page.goto.side_effect = PlaywrightError("net::ERR_NAME_NOT_RESOLVED")
        with self.assertRaises(NavigationError) as ctx:
            session.navigate("https://www.tiktok.com/@alice/live", 45000)
        self.assertNotIsInstance(ctx.exception, NavigationTimeout)

    def test_wait_for_function_reports_timeout_as_false(self) -> None:
        page = MagicMock()
        session, *_ = _session(page)

        self.assertTrue(session.wait_for_function("() => true", 1000))
        page.wait_for_function.side_effect = PlaywrightTimeoutError("Timeout")
        self.assertFalse(session.wait_for_function("() => false", 1000))

    def test_region_screenshot_uses_clip(self) -> None:
        page = MagicMock()
        page.screenshot.return_value = b"png"
        session, *_ = _session(page)

        self.assertEqual(session.screenshot(Region(1, 2, 300, 400)), b"png")
        page.screenshot.assert_called_once_with(clip={"x": 1, "y": 2, "width": 300, "height": 400})

    def test_close_tears_everything_down(self) -> None:
        with TemporaryDirectory() as tmpdir:
            profile = Path(tmpdir) / "profile"
            profile.mkdir()
            session, playwright, browser, context = _session(MagicMock(), profile)
            context.close.side_effect = PlaywrightError("already closed")

            session.close()
            session.close()

            self.assertFalse(profile.exists())
        context.close.assert_called_once_with()
        browser.close.assert_called_once_with()
        playwright.stop.assert_called_once_with()


class PlaywrightBrowserDriverTestCase(unittest.TestCase):
    @patch("playwright.sync_api.sync_playwright")
    def test_launch_without_profile(self, sync_playwright: MagicMock) -> None:
        playwright = sync_playwright.return_value.start.return_value
        browser = playwright.chromium.launch.return_value
        context = browser.new_context.return_value

        session = PlaywrightBrowserDriver(BrowserConfig(headless=False)).launch_session()

        self.assertIsInstance(session, PlaywrightSession)
        launch_kwargs = playwright.chromium.launch.call_args.kwargs
        self.assertFalse(launch_kwargs["headless"])
        self.assertIn("--disable-blink-features=AutomationControlled", launch_kwargs["args"])
        context.add_init_script.assert_called_once_with(STEALTH_INIT_SCRIPT)

    @patch("playwright.sync_api.sync_playwright")
    def test_launch_failure_raises_and_stops_playwright(self, sync_playwright: MagicMock) -> None:
        playwright = sync_playwright.return_value.start.return_value
        playwright.chromium.launch.side_effect = PlaywrightError("Executable doesn't exist")

        with self.assertRaises(BrowserLaunchError):
            PlaywrightBrowserDriver().launch_session()

        playwright.stop.assert_called_once_with()


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
