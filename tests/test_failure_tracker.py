import threading
import unittest

from live_capture.failure_tracker import ConsecutiveFailureTracker


class ConsecutiveFailureTrackerTestCase(unittest.TestCase):
    def test_increment_and_reset(self) -> None:
        tracker = ConsecutiveFailureTracker()

        self.assertEqual(tracker.get("alice"), 0)
        self.assertEqual(tracker.increment("alice"), 1)
        self.assertEqual(tracker.increment("alice"), 2)
        tracker.reset("alice")
        self.assertEqual(tracker.get("alice"), 0)
        self.assertEqual(tracker.snapshot(), {"alice": 0})

    def test_concurrent_increments_are_not_lost(self) -> None:
        tracker = ConsecutiveFailureTracker()

        def bump() -> None:
            for _ in range(200):
                tracker.increment("bob")

        threads = [threading.Thread(target=bump) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(tracker.get("bob"), 800)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
