import asyncio
import logging
import unittest

from agents.game_agent.classifier import FailureClassifier
from agents.game_agent.config import ErrorHandlingSettings
from agents.game_agent.guard import (
    ExecutionGuard,
    GuardExhaustedError,
    OperationTimeoutError,
    OutcomeStatus,
    race_timeout,
)


class _Flaky:
    def __init__(self, failures: int, message: str = "element not found", value: str = "done") -> None:
        self.failures = failures
        self.message = message
        self.value = value
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError(self.message)
        return self.value


class _SleepRecorder:
    def __init__(self) -> None:
        self.delays = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class ExecutionGuardTests(unittest.IsolatedAsyncioTestCase):
    def _build_guard(self, max_retries: int = 2, timeout_ms: int = 1_000, continue_on_minor: bool = True):
        settings = ErrorHandlingSettings(
            max_retries=max_retries,
            retry_delay=250,
            timeout_actions=timeout_ms,
            continue_on_minor_errors=continue_on_minor,
        )
        logger = logging.getLogger("tests.game.guard")
        sleep = _SleepRecorder()
        guard = ExecutionGuard(settings, logger, FailureClassifier(continue_on_minor, logger), sleep=sleep)
        return guard, sleep

    async def test_succeeds_on_last_allowed_attempt(self) -> None:
        for retries in (0, 1, 3):
            with self.subTest(retries=retries):
                guard, sleep = self._build_guard(max_retries=retries)
                op = _Flaky(failures=retries)
                self.assertEqual(await guard.guard(op, "Flaky step"), "done")
                self.assertEqual(op.calls, retries + 1)
                self.assertEqual(len(sleep.delays), retries)

    async def test_exhausted_after_exactly_retries_plus_one_attempts(self) -> None:
        for retries in (0, 2, 4):
            with self.subTest(retries=retries):
                guard, sleep = self._build_guard(max_retries=retries)
                op = _Flaky(failures=100, message="waiting for selector #start")
                with self.assertRaises(GuardExhaustedError) as ctx:
                    await guard.guard(op, "Click start")
                self.assertEqual(op.calls, retries + 1)
                self.assertEqual(ctx.exception.attempts, retries + 1)
                self.assertEqual(ctx.exception.context, "Click start")
                self.assertIn("waiting for selector #start", str(ctx.exception))
                self.assertIsInstance(ctx.exception.__cause__, RuntimeError)
                # No wait after the final attempt.
                self.assertEqual(sleep.delays, [0.25] * retries)

    async def test_explicit_zero_retries_overrides_configured_default(self) -> None:
        guard, _ = self._build_guard(max_retries=5)
        op = _Flaky(failures=1)
        with self.assertRaises(GuardExhaustedError):
            await guard.guard(op, "Single shot", max_retries=0)
        self.assertEqual(op.calls, 1)

    async def test_logs_one_record_per_attempt(self) -> None:
        guard, _ = self._build_guard(max_retries=2)
        with self.assertLogs("tests.game.guard", level="INFO") as logs:
            await guard.guard(_Flaky(failures=1), "Navigate")
        attempts = [line for line in logs.output if "Navigate - Attempt" in line]
        self.assertEqual(len(attempts), 2)
        self.assertTrue(any("succeeded on attempt 2/3" in line for line in logs.output))

    async def test_slow_operation_times_out_with_context(self) -> None:
        guard, _ = self._build_guard(max_retries=0, timeout_ms=20)

        async def slow():
            await asyncio.sleep(0.3)
            return "late"

        with self.assertRaises(GuardExhaustedError) as ctx:
            await guard.guard(slow, "Load page")
        self.assertIsInstance(ctx.exception.last_error, OperationTimeoutError)
        self.assertIn("timed out after 20ms: Load page", str(ctx.exception))

    async def test_race_timeout_abandons_loser_without_cancelling(self) -> None:
        finished = asyncio.Event()

        async def slow():
            await asyncio.sleep(0.05)
            finished.set()
            return "late"

        with self.assertRaises(OperationTimeoutError):
            await race_timeout(slow, 5, "slow op")
        await asyncio.wait_for(finished.wait(), timeout=1.0)
        self.assertTrue(finished.is_set())

    async def test_abandoned_failure_is_logged_on_callers_logger(self) -> None:
        logger = logging.getLogger("tests.game.guard.abandoned")

        async def late_failure():
            await asyncio.sleep(0.02)
            raise RuntimeError("late boom")

        with self.assertLogs(logger, level="DEBUG") as logs:
            with self.assertRaises(OperationTimeoutError):
                await race_timeout(late_failure, 5, "slow step", logger=logger)
            await asyncio.sleep(0.1)
        self.assertTrue(any("slow step" in line and "late boom" in line for line in logs.output))

    async def test_race_timeout_returns_fast_result(self) -> None:
        async def fast():
            return 42

        self.assertEqual(await race_timeout(fast, 1_000, "fast op"), 42)

    async def test_execute_reports_success(self) -> None:
        guard, _ = self._build_guard()
        outcome = await guard.execute(_Flaky(failures=0, value="page"), "Navigate")
        self.assertTrue(outcome.ok)
        self.assertEqual(outcome.value, "page")

    async def test_execute_recovers_from_minor_error_and_calls_hook(self) -> None:
        guard, _ = self._build_guard(max_retries=1)
        seen = []

        async def hook(error, context):
            seen.append((type(error).__name__, context))

        outcome = await guard.execute(_Flaky(failures=10, message="net::ERR_CONNECTION_RESET"), "Advance", on_failure=hook)
        self.assertEqual(outcome.status, OutcomeStatus.RECOVERED)
        self.assertEqual(seen, [("GuardExhaustedError", "Advance")])

    async def test_execute_aborts_on_fatal_error(self) -> None:
        guard, _ = self._build_guard(max_retries=1)
        outcome = await guard.execute(_Flaky(failures=10, message="Browser disconnected"), "Advance")
        self.assertEqual(outcome.status, OutcomeStatus.FATAL)
        self.assertIn("Browser disconnected", str(outcome.error))

    async def test_execute_aborts_on_minor_error_when_continuing_disabled(self) -> None:
        guard, _ = self._build_guard(max_retries=0, continue_on_minor=False)
        outcome = await guard.execute(_Flaky(failures=1, message="element not found"), "Advance")
        self.assertEqual(outcome.status, OutcomeStatus.FATAL)

    async def test_failing_hook_does_not_mask_outcome(self) -> None:
        guard, _ = self._build_guard(max_retries=0)

        async def broken_hook(error, context):
            raise OSError("disk full")

        outcome = await guard.execute(_Flaky(failures=1, message="timed out"), "Advance", on_failure=broken_hook)
        self.assertEqual(outcome.status, OutcomeStatus.RECOVERED)


if __name__ == "__main__":
    unittest.main()
