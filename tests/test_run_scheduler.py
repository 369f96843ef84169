import os
import unittest
from pathlib import Path
from tempfile import TemporaryDirectory
from unittest.mock import MagicMock, patch

from live_capture.capture import CaptureResult
from live_capture.config import AppConfig
from live_capture.records import AccountRef
from live_capture.run_scheduler import build_runtime, main


class MainTestCase(unittest.TestCase):
    @patch("live_capture.run_scheduler.configure_logging")
    @patch("live_capture.run_scheduler.build_runtime")
    def test_once_runs_single_cycle(self, build_runtime_mock: MagicMock, _logging: MagicMock) -> None:
        runtime = build_runtime_mock.return_value

        with patch.dict(os.environ, {"DATABASE_URL": "sqlite://"}, clear=True):
            exit_code = main(["--once", "--max-concurrent", "2"])

        self.assertEqual(exit_code, 0)
        runtime.scheduler.run_once.assert_called_once_with()
        runtime.scheduler.run_forever.assert_not_called()
        runtime.close.assert_called_once_with()
        config = build_runtime_mock.call_args.args[0]
        self.assertEqual(config.scheduler.max_concurrent, 2)

    @patch("live_capture.run_scheduler.configure_logging")
    @patch("live_capture.run_scheduler.build_runtime", side_effect=RuntimeError("db down"))
    def test_startup_failure_returns_one(self, _build: MagicMock, _logging: MagicMock) -> None:
        with patch.dict(os.environ, {"DATABASE_URL": "sqlite://"}, clear=True):
            self.assertEqual(main(["--once"]), 1)

    @patch("live_capture.run_scheduler.configure_logging")
    def test_missing_database_url_returns_one(self, _logging: MagicMock) -> None:
        with patch.dict(os.environ, {}, clear=True):
            self.assertEqual(main(["--once"]), 1)

    @patch("live_capture.run_scheduler.configure_logging")
    @patch("live_capture.run_scheduler.build_runtime")
    def test_check_writes_capture(self, build_runtime_mock: MagicMock, _logging: MagicMock) -> None:
        runtime = build_runtime_mock.return_value
        runtime.machine.check_live_and_capture.return_value = CaptureResult(live=True, buffer=b"png", attempts=1)

        with TemporaryDirectory() as tmpdir, patch.dict(os.environ, {"DATABASE_URL": "sqlite://"}, clear=True):
            output = Path(tmpdir) / "out" / "alice.png"
            exit_code = main(["--check", "alice", "--output", str(output)])
            written = output.read_bytes()

        self.assertEqual(exit_code, 0)
        self.assertEqual(written, b"png")
        runtime.machine.check_live_and_capture.assert_called_once_with("alice")

    @patch("live_capture.run_scheduler.configure_logging")
    @patch("live_capture.run_scheduler.build_runtime")
    def test_prune_mode(self, build_runtime_mock: MagicMock, _logging: MagicMock) -> None:
        runtime = build_runtime_mock.return_value

        with patch.dict(os.environ, {"DATABASE_URL": "sqlite://"}, clear=True):
            self.assertEqual(main(["--prune"]), 0)

        runtime.scheduler.prune_screenshots.assert_called_once_with()

    @patch("live_capture.run_scheduler.configure_logging")
    @patch("live_capture.run_scheduler.build_runtime")
    def test_add_account_mode(self, build_runtime_mock: MagicMock, _logging: MagicMock) -> None:
        runtime = build_runtime_mock.return_value
        runtime.store.add_account.return_value = AccountRef("alice", "US", "acct-1")

        with patch.dict(os.environ, {"DATABASE_URL": "sqlite://"}, clear=True):
            self.assertEqual(main(["--add-account", "@alice", "--country", "us"]), 0)

        runtime.store.add_account.assert_called_once_with("@alice", "us")
        runtime.scheduler.run_once.assert_not_called()
        runtime.close.assert_called_once_with()

    @patch("live_capture.run_scheduler.configure_logging")
    @patch("live_capture.run_scheduler.build_runtime")
    def test_add_account_rejects_blank_username(self, build_runtime_mock: MagicMock, _logging: MagicMock) -> None:
        build_runtime_mock.return_value.store.add_account.side_effect = ValueError("username is required")

        with patch.dict(os.environ, {"DATABASE_URL": "sqlite://"}, clear=True):
            self.assertEqual(main(["--add-account", "@"]), 1)

    def test_country_requires_add_account(self) -> None:
        with patch("sys.stderr"), self.assertRaises(SystemExit):
            main(["--once", "--country", "us"])


class BuildRuntimeTestCase(unittest.TestCase):
    def test_wires_sqlite_runtime(self) -> None:
        with TemporaryDirectory() as tmpdir:
            config = AppConfig(db_url=f"sqlite:///{Path(tmpdir) / 'capture.db'}")
            config.object_storage.root = Path(tmpdir) / "objects"
            runtime = build_runtime(config)
            try:
                runtime.store.add_account("alice", "US")
                self.assertEqual([account.username for account in runtime.store.list_accounts()], ["alice"])
                self.assertEqual(runtime.store.count_screenshots(), 0)
            finally:
                runtime.close()


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
