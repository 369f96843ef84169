import unittest

from live_capture.detection import (
    LIVE_INDICATOR_SCRIPT,
    LIVE_PREDICATES,
    STREAM_IFRAME_SCRIPT,
    VISIBLE_CANVAS_SCRIPT,
    VISIBLE_VIDEO_SCRIPT,
    detect_live,
)


class ScriptedSession:
    def __init__(self, answers: dict) -> None:
        self.answers = answers
        self.evaluated: list[str] = []

    def evaluate(self, script, arg=None):
        self.evaluated.append(script)
        answer = self.answers.get(script, False)
        if isinstance(answer, Exception):
            raise answer
        return answer


class DetectLiveTestCase(unittest.TestCase):
    def test_stops_at_first_positive_predicate(self) -> None:
        session = ScriptedSession({VISIBLE_CANVAS_SCRIPT: True, LIVE_INDICATOR_SCRIPT: True})

        result = detect_live(session, "alice")

        self.assertTrue(result.live)
        self.assertEqual(result.method, "canvas")
        self.assertEqual(result.trace, [("video", False), ("canvas", True)])
        self.assertEqual(session.evaluated, [VISIBLE_VIDEO_SCRIPT, VISIBLE_CANVAS_SCRIPT])

    def test_evaluation_errors_count_as_negative(self) -> None:
        session = ScriptedSession({VISIBLE_VIDEO_SCRIPT: RuntimeError("detached"), STREAM_IFRAME_SCRIPT: True})

        result = detect_live(session, "alice")

        self.assertTrue(result.live)
        self.assertEqual(result.method, "stream_iframe")
        self.assertEqual([name for name, _ in result.trace], [predicate.name for predicate in LIVE_PREDICATES])

    def test_no_indicators_means_not_live(self) -> None:
        result = detect_live(ScriptedSession({}), "alice")

        self.assertFalse(result.live)
        self.assertIsNone(result.method)
        self.assertEqual(len(result.trace), 4)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
