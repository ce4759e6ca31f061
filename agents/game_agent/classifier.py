import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional, Sequence


class Verdict(str, Enum):
    CONTINUE = "continue"
    ABORT = "abort"


class ErrorKind(str, Enum):
    TIMEOUT = "timeout"
    MINOR = "minor"
    FATAL = "fatal"
    UNCLASSIFIED = "unclassified"


@dataclass(frozen=True)
class ClassificationRule:
    pattern: "re.Pattern[str]"
    kind: ErrorKind

    def matches(self, message: str) -> bool:
        return bool(self.pattern.search(message))


def _rules(kind: ErrorKind, patterns: Iterable[str]) -> list:
    return [ClassificationRule(re.compile(p, re.IGNORECASE), kind) for p in patterns]


FATAL_RULES = _rules(
    ErrorKind.FATAL,
    (
        r"browser disconnected",
        r"page crashed",
        r"out of memory",
        r"cannot launch browser",
        r"target page, context or browser has been closed",
    ),
)

TIMEOUT_RULES = _rules(ErrorKind.TIMEOUT, (r"timeout", r"timed out"))

MINOR_RULES = _rules(
    ErrorKind.MINOR,
    (
        r"waiting for selector",
        r"element not found",
        r"navigation failed",
        r"navigating frame was detached",
        r"net::err_",
    ),
)

# First match wins; fatal rules must stay ahead of everything else.
DEFAULT_RULES: Sequence[ClassificationRule] = (*FATAL_RULES, *TIMEOUT_RULES, *MINOR_RULES)


class FailureClassifier:
    """Decide from an error's message whether the run may go on past a failed step."""

    def __init__(
        self,
        continue_on_minor_errors: bool,
        logger: logging.Logger,
        rules: Optional[Sequence[ClassificationRule]] = None,
    ) -> None:
        self.continue_on_minor_errors = continue_on_minor_errors
        self.logger = logger
        self.rules = tuple(rules if rules is not None else DEFAULT_RULES)

    @staticmethod
    def _message(error: BaseException) -> str:
        return str(error) or type(error).__name__

    def kind_of(self, error: BaseException) -> ErrorKind:
        message = self._message(error)
        for rule in self.rules:
            if rule.matches(message):
                return rule.kind
        return ErrorKind.UNCLASSIFIED

    def classify(self, error: BaseException) -> Verdict:
        message = self._message(error)
        kind = self.kind_of(error)

        if kind is ErrorKind.FATAL:
            self.logger.error("Fatal error detected, cannot continue: %s", message)
            return Verdict.ABORT

        if not self.continue_on_minor_errors:
            self.logger.warning("Continuing on minor errors is disabled; stopping: %s", message)
            return Verdict.ABORT

        if kind in (ErrorKind.MINOR, ErrorKind.TIMEOUT):
            self.logger.warning("Minor error detected (%s), attempting to continue: %s", kind.value, message)
            return Verdict.CONTINUE

        self.logger.warning("Unknown error type, stopping execution for safety: %s", message)
        return Verdict.ABORT
