import asyncio
import functools
import logging
import traceback
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from agents.game_agent.classifier import FailureClassifier, Verdict
from agents.game_agent.config import ErrorHandlingSettings


_logger = logging.getLogger("agent_runner.game_agent.guard")

Operation = Callable[[], Awaitable[Any]]
FailureHook = Callable[[BaseException, str], Awaitable[None]]


class OperationTimeoutError(RuntimeError):
    def __init__(self, timeout_ms: int, context: str) -> None:
        super().__init__(f"Operation timed out after {timeout_ms}ms: {context}")
        self.timeout_ms = timeout_ms
        self.context = context


class GuardExhaustedError(RuntimeError):
    """Last error of a guarded step, annotated with its context and attempt count."""

    def __init__(self, context: str, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"{context} failed after {attempts} attempts: {last_error}")
        self.context = context
        self.attempts = attempts
        self.last_error = last_error


class OutcomeStatus(str, Enum):
    SUCCESS = "success"
    RECOVERED = "recovered"
    FATAL = "fatal"


@dataclass(frozen=True)
class AttemptOutcome:
    status: OutcomeStatus
    value: Any = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.status is OutcomeStatus.SUCCESS

    @classmethod
    def success(cls, value: Any) -> "AttemptOutcome":
        return cls(OutcomeStatus.SUCCESS, value=value)

    @classmethod
    def recovered(cls, error: BaseException) -> "AttemptOutcome":
        return cls(OutcomeStatus.RECOVERED, error=error)

    @classmethod
    def fatal(cls, error: BaseException) -> "AttemptOutcome":
        return cls(OutcomeStatus.FATAL, error=error)


def _drain_abandoned(logger: logging.Logger, context: str, task: "asyncio.Future[Any]") -> None:
    # Retrieve the late result so asyncio does not report it as never retrieved.
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug("Abandoned operation settled with error (%s): %s", context, exc)


async def race_timeout(
    operation: Operation,
    timeout_ms: int,
    context: str = "",
    logger: Optional[logging.Logger] = None,
) -> Any:
    """Race ``operation`` against a timer; the loser is abandoned, not cancelled."""
    task = asyncio.ensure_future(operation())
    done, _ = await asyncio.wait({task}, timeout=max(0, timeout_ms) / 1000.0)
    if task in done:
        return task.result()
    task.add_done_callback(functools.partial(_drain_abandoned, logger or _logger, context))
    raise OperationTimeoutError(timeout_ms, context)


class ExecutionGuard:
    """Timeout race plus fixed-delay retries around a single fallible step."""

    def __init__(
        self,
        settings: ErrorHandlingSettings,
        logger: logging.Logger,
        classifier: Optional[FailureClassifier] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.settings = settings
        self.logger = logger
        self.classifier = classifier or FailureClassifier(settings.continue_on_minor_errors, logger)
        self._sleep = sleep

    async def guard(self, operation: Operation, context: str = "", max_retries: Optional[int] = None) -> Any:
        retries = self.settings.max_retries if max_retries is None else max(0, int(max_retries))
        total = retries + 1
        last_error: Optional[BaseException] = None

        for attempt in range(1, total + 1):
            self.logger.info("%s - Attempt %s/%s", context, attempt, total)
            try:
                result = await race_timeout(operation, self.settings.timeout_actions, context, logger=self.logger)
            except Exception as err:
                last_error = err
                self.logger.warning(
                    "%s failed on attempt %s/%s: %s",
                    context,
                    attempt,
                    total,
                    err,
                )
                if attempt < total:
                    self.logger.info("Waiting %sms before retry...", self.settings.retry_delay)
                    await self._sleep(self.settings.retry_delay / 1000.0)
                continue
            self.logger.info("%s succeeded on attempt %s/%s", context, attempt, total)
            return result

        self.logger.error("%s failed after %s attempts: %s", context, total, last_error)
        raise GuardExhaustedError(context, total, last_error) from last_error

    async def execute(
        self,
        operation: Operation,
        context: str = "",
        max_retries: Optional[int] = None,
        on_failure: Optional[FailureHook] = None,
    ) -> AttemptOutcome:
        try:
            value = await self.guard(operation, context, max_retries=max_retries)
        except Exception as err:
            self.logger.error(
                "Error in %s | message=%s, timestamp=%s\n%s",
                context,
                err,
                datetime.now().isoformat(),
                "".join(traceback.format_exception(type(err), err, err.__traceback__)).rstrip(),
            )
            if on_failure is not None:
                try:
                    await on_failure(err, context)
                except Exception:
                    self.logger.exception("Failure hook raised for %s", context)
            if self.classifier.classify(err) is Verdict.CONTINUE:
                return AttemptOutcome.recovered(err)
            return AttemptOutcome.fatal(err)
        return AttemptOutcome.success(value)
