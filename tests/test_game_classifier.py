import logging
import unittest

from agents.game_agent.classifier import ErrorKind, FailureClassifier, Verdict
from agents.game_agent.guard import GuardExhaustedError, OperationTimeoutError


FATAL_MESSAGES = [
    "Browser disconnected unexpectedly",
    "Page crashed!",
    "JavaScript heap out of memory",
    "Cannot launch browser: chromium missing",
    "Target page, context or browser has been closed",
]

MINOR_MESSAGES = [
    "waiting for selector '#play' failed",
    "Element not found: .choice",
    "Timeout 30000ms exceeded.",
    "navigation failed because of redirect loop",
    "Navigating frame was detached",
    "net::ERR_NAME_NOT_RESOLVED at https://example.invalid",
]


class FailureClassifierTests(unittest.TestCase):
    def _build(self, continue_on_minor: bool = True) -> FailureClassifier:
        return FailureClassifier(continue_on_minor, logging.getLogger("tests.game.classifier"))

    def test_fatal_messages_abort_even_when_minor_errors_continue(self) -> None:
        classifier = self._build(continue_on_minor=True)
        for message in FATAL_MESSAGES:
            with self.subTest(message=message):
                self.assertEqual(classifier.classify(RuntimeError(message)), Verdict.ABORT)
                self.assertEqual(classifier.kind_of(RuntimeError(message)), ErrorKind.FATAL)

    def test_minor_messages_continue(self) -> None:
        classifier = self._build(continue_on_minor=True)
        for message in MINOR_MESSAGES:
            with self.subTest(message=message):
                self.assertEqual(classifier.classify(RuntimeError(message)), Verdict.CONTINUE)

    def test_minor_messages_abort_when_continuing_disabled(self) -> None:
        classifier = self._build(continue_on_minor=False)
        for message in MINOR_MESSAGES:
            with self.subTest(message=message):
                self.assertEqual(classifier.classify(RuntimeError(message)), Verdict.ABORT)

    def test_unrecognized_messages_abort(self) -> None:
        classifier = self._build(continue_on_minor=True)
        for message in ("KeyError: 'score'", "something odd happened", ""):
            with self.subTest(message=message):
                self.assertEqual(classifier.classify(RuntimeError(message)), Verdict.ABORT)
                self.assertEqual(classifier.kind_of(RuntimeError(message)), ErrorKind.UNCLASSIFIED)

    def test_fatal_wins_when_message_matches_both_sets(self) -> None:
        classifier = self._build()
        error = RuntimeError("Navigation failed: page crashed during timeout")
        self.assertEqual(classifier.kind_of(error), ErrorKind.FATAL)
        self.assertEqual(classifier.classify(error), Verdict.ABORT)

    def test_guard_timeout_is_recoverable(self) -> None:
        classifier = self._build()
        error = OperationTimeoutError(500, "Advance scenario 2")
        self.assertEqual(classifier.kind_of(error), ErrorKind.TIMEOUT)
        self.assertEqual(classifier.classify(error), Verdict.CONTINUE)

    def test_exhausted_guard_error_keeps_original_message(self) -> None:
        classifier = self._build()
        fatal = GuardExhaustedError("Navigate to game", 3, RuntimeError("Browser disconnected"))
        minor = GuardExhaustedError("Navigate to game", 3, RuntimeError("net::ERR_TIMED_OUT"))
        self.assertEqual(classifier.classify(fatal), Verdict.ABORT)
        self.assertEqual(classifier.classify(minor), Verdict.CONTINUE)

    def test_fatal_decision_emits_error_record(self) -> None:
        classifier = self._build()
        with self.assertLogs("tests.game.classifier", level="ERROR") as logs:
            classifier.classify(RuntimeError("Page crashed"))
        self.assertTrue(any("Fatal error detected" in line for line in logs.output))


if __name__ == "__main__":
    unittest.main()
