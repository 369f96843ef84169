import unittest
from pathlib import Path

from live_capture.config import AppConfig, CeleryConfig


class AppConfigFromEnvTestCase(unittest.TestCase):
    def test_defaults(self) -> None:
        config = AppConfig.from_env({})

        self.assertIsNone(config.db_url)
        self.assertEqual(config.policy.baseline.min_screenshot_bytes, 28000)
        self.assertEqual(config.policy.baseline.stream_wait_loops, 20)
        self.assertEqual(config.policy.baseline.capture_attempts, 3)
        self.assertEqual(config.policy.overrides_path, Path("config/capture-strategy.overrides.json"))
        self.assertEqual(config.scheduler.max_concurrent, 1)
        self.assertEqual(config.scheduler.retention_days, 20)
        self.assertTrue(config.browser.headless)
        self.assertEqual(config.object_storage.backend, "local")
        self.assertEqual(config.capture.live_url("alice"), "https://www.tiktok.com/@alice/live")

    def test_reads_environment(self) -> None:
        config = AppConfig.from_env(
            {
                "DATABASE_URL": "postgresql://capture@db/capture",
                "MIN_SCREENSHOT_BYTES": "32000",
                "STREAM_WAIT_LOOPS": "not-a-number",
                "CAPTURE_STRATEGY_FILE": "/etc/capture/overrides.json",
                "SCHEDULER_MAX_CONCURRENT": "0",
                "HEADLESS": "false",
                "OBJECT_STORAGE_BACKEND": "Supabase",
                "SUPABASE_URL": "https://proj.supabase.co",
                "SUPABASE_SERVICE_ROLE_KEY": "key",
            }
        )

        self.assertEqual(config.db_url, "postgresql://capture@db/capture")
        self.assertEqual(config.policy.baseline.min_screenshot_bytes, 32000)
        self.assertEqual(config.policy.baseline.stream_wait_loops, 20)
        self.assertEqual(config.policy.overrides_path, Path("/etc/capture/overrides.json"))
        self.assertEqual(config.scheduler.max_concurrent, 1)
        self.assertFalse(config.browser.headless)
        self.assertEqual(config.object_storage.backend, "supabase")
        self.assertEqual(config.object_storage.bucket, "screenshots")

    def test_celery_urls_derive_from_database_url(self) -> None:
        config = CeleryConfig.from_env({"DATABASE_URL": "postgresql://capture@db/capture"})

        self.assertEqual(config.broker_url, "sqla+postgresql://capture@db/capture")
        self.assertEqual(config.result_backend, "db+postgresql://capture@db/capture")
        self.assertFalse(config.always_eager)

    def test_celery_explicit_urls_and_memory_defaults(self) -> None:
        config = CeleryConfig.from_env(
            {
                "DATABASE_URL": "sqlite:///capture.db",
                "LIVE_CAPTURE_CELERY_BROKER_URL": "redis://cache:6379/0",
                "LIVE_CAPTURE_CELERY_TASK_ALWAYS_EAGER": "yes",
            }
        )
        self.assertEqual(config.broker_url, "redis://cache:6379/0")
        self.assertEqual(config.result_backend, "db+sqlite:///capture.db")
        self.assertTrue(config.always_eager)

        defaults = CeleryConfig.from_env({})
        self.assertEqual((defaults.broker_url, defaults.result_backend), ("memory://", "cache+memory://"))

    def test_rejects_unknown_backend_and_bad_template(self) -> None:
        with self.assertRaises(ValueError):
            AppConfig.from_env({"OBJECT_STORAGE_BACKEND": "s3"})
        with self.assertRaises(ValueError):
            AppConfig.from_env({"LIVE_URL_TEMPLATE": "https://example.com/live"})


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
