import asyncio
import logging
import random
import traceback
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from agents.game_agent.browser import PlaywrightResource, sanitize_url_for_log
from agents.game_agent.classifier import FailureClassifier
from agents.game_agent.config import ChoiceSettings, RunConfig
from agents.game_agent.guard import AttemptOutcome, ExecutionGuard, OutcomeStatus, race_timeout
from agents.game_agent.recorder import EvidenceRecorder, now_id


ACTIVE_MARKERS = ("game started", "scenario", "choice available")

ResourceFactory = Callable[..., Any]
Sleep = Callable[[float], Awaitable[None]]


class RunPhase(str, Enum):
    INIT = "init"
    CONNECTED = "connected"
    NAVIGATED = "navigated"
    STARTED = "started"
    ITERATING = "iterating"
    FINALIZING = "finalizing"
    DONE = "done"


class RunAborted(RuntimeError):
    """A step failed in a way the run cannot continue past."""


@dataclass(frozen=True)
class ActivityEvent:
    timestamp: str
    message: str
    source: str


@dataclass
class RunState:
    scenario_count: int = 0
    choice_index: int = 0
    events: List[ActivityEvent] = field(default_factory=list)
    session_active: bool = False
    phase: RunPhase = RunPhase.INIT
    directions: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class RunResult:
    ok: bool
    run_id: str
    verified_rounds: int = 0
    scenarios_played: int = 0
    phase: str = RunPhase.INIT.value
    error: str = ""
    activity_count: int = 0
    directions: Tuple[str, ...] = ()
    log_file: str = ""
    screenshot_dir: str = ""

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["directions"] = list(self.directions)
        return data


class ChoiceStrategy:
    def __init__(self, settings: ChoiceSettings, rng: Optional[random.Random] = None) -> None:
        self.settings = settings
        self._rng = rng or random.Random()

    def choose(self, index: int) -> str:
        strategy = self.settings.strategy
        if strategy == "random":
            return "left" if self._rng.random() < 0.5 else "right"
        if strategy == "pattern":
            pattern = self.settings.pattern
            return pattern[index % len(pattern)]
        if strategy in ("left", "right"):
            return strategy
        return "left"


def log_safe_summary(config: RunConfig) -> Dict[str, Any]:
    """Config dump for the run log header, without query strings or the webhook URL."""
    summary = config.summary()
    summary["game"]["url"] = sanitize_url_for_log(config.game.url)
    if config.notifications.final_webhook_url:
        summary["notifications"]["finalWebhookUrl"] = "***"
    return summary


def choice_point(direction: str, width: int, height: int) -> Tuple[float, float]:
    x = width * (0.25 if direction == "left" else 0.75)
    return x, height / 2


class SessionRunner:
    """One complete game run: connect, navigate, start, play rounds, finalize."""

    def __init__(
        self,
        config: RunConfig,
        logger: logging.Logger,
        base_dir: Path = Path("."),
        run_id: Optional[str] = None,
        resource_factory: Optional[ResourceFactory] = None,
        recorder: Optional[EvidenceRecorder] = None,
        sleep: Sleep = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.config = config
        self.logger = logger
        self.run_id = run_id or now_id()
        self.state = RunState()
        self.recorder = recorder or EvidenceRecorder(
            config.logging,
            logger,
            base_dir=base_dir,
            run_id=self.run_id,
            config_summary=log_safe_summary(config),
        )
        self.classifier = FailureClassifier(config.error_handling.continue_on_minor_errors, logger)
        self.guard = ExecutionGuard(config.error_handling, logger, classifier=self.classifier, sleep=sleep)
        self.choices = ChoiceStrategy(config.choices, rng=rng)
        self.resource = None
        self.verified_rounds = 0
        self._resource_factory = resource_factory or PlaywrightResource
        self._sleep = sleep

    def _debug(self, message: str, **meta: Any) -> None:
        suffix = " | " + ", ".join(f"{k}={v}" for k, v in meta.items()) if meta else ""
        self.logger.debug("[DEBUG][game_agent] %s%s", message, suffix)

    def _enter(self, phase: RunPhase) -> None:
        self.state.phase = phase
        self._debug("Phase transition", phase=phase.value, run_id=self.run_id)

    async def _wait_ms(self, ms: int) -> None:
        if ms > 0:
            await self._sleep(ms / 1000.0)

    def _on_console(self, entry: Dict[str, Any]) -> None:
        self.recorder.observe_console(entry)
        text = str(entry.get("text", ""))
        lowered = text.lower()
        if any(keyword.lower() in lowered for keyword in self.config.game.activity_keywords):
            self.state.events.append(
                ActivityEvent(timestamp=entry.get("timestamp") or datetime.now().isoformat(), message=text, source="console")
            )
            self.logger.info("Game activity detected: %s", text)
        if any(marker in lowered for marker in ACTIVE_MARKERS):
            if not self.state.session_active:
                self.logger.info("Game active state detected")
            self.state.session_active = True

    def _on_response(self, entry: Dict[str, Any]) -> None:
        self.recorder.observe_network(entry)
        if self.config.game.count_network_activity:
            url = sanitize_url_for_log(str(entry.get("url", "")))
            self.state.events.append(
                ActivityEvent(
                    timestamp=entry.get("timestamp") or datetime.now().isoformat(),
                    message=f"{entry.get('method', '')} {url} {entry.get('status', '')}".strip(),
                    source="network",
                )
            )

    def _on_page_error(self, entry: Dict[str, Any]) -> None:
        self.recorder.record("error", "Page error occurred", {"error": entry.get("error", "")})

    async def _snap(self, label: str, description: str = "") -> None:
        await self.recorder.capture_visual(self.resource, label, description)

    async def _error_snapshot(self, error: BaseException, context: str) -> None:
        if not self.config.error_handling.take_screenshot_on_error:
            return
        await self.recorder.capture_visual(
            self.resource,
            f"error-{now_id()}-{context}",
            f"Error screenshot: {context}",
            with_html=True,
        )

    async def _connect(self) -> None:
        try:
            self.resource = self._resource_factory(
                self.config.browser,
                self.logger.getChild("browser"),
                on_console=self._on_console,
                on_response=self._on_response,
                on_page_error=self._on_page_error,
            )
            await self.resource.connect()
        except Exception as err:
            self.recorder.record("error", "Failed to initialize browser", {"error": str(err)})
            raise RunAborted(f"Cannot launch browser: {err}") from err
        self._enter(RunPhase.CONNECTED)

    async def _navigate(self) -> None:
        url = self.config.game.url

        async def load() -> bool:
            await self.resource.navigate(url, self.config.browser.timeout)
            return True

        outcome = await self.guard.execute(load, "Navigate to game", on_failure=self._error_snapshot)
        if not outcome.ok:
            raise RunAborted(f"Failed to navigate to game: {outcome.error}") from outcome.error
        await self._snap("01-game-loaded", "Initial game page load")
        self.logger.info("Successfully navigated to game")
        self._enter(RunPhase.NAVIGATED)

    async def _start_game(self) -> None:
        self.logger.info("Starting game by clicking screen...")
        try:
            await self._wait_ms(self.config.game.start_wait_ms)
            await self._snap("02a-before-start", "Before starting game")
            await race_timeout(
                self.resource.generic_interact,
                self.config.error_handling.timeout_actions,
                "Start game",
                logger=self.logger,
            )
            await self._wait_ms(self.config.game.choice_settle_ms)
            await self._snap("02b-after-click", "After clicking to start")
            self.logger.info("Game click completed, ready to proceed")
        except Exception as err:
            self.logger.warning("Minor issue during start, continuing anyway: %s", err)
            await self._snap("02c-error-start", "Error during start")
        self._enter(RunPhase.STARTED)

    async def _interact(self, operation, context: str) -> AttemptOutcome:
        outcome = await self.guard.execute(operation, context, on_failure=self._error_snapshot)
        if outcome.status is OutcomeStatus.FATAL:
            raise RunAborted(f"{context} aborted the run: {outcome.error}") from outcome.error
        if outcome.status is OutcomeStatus.RECOVERED:
            self.logger.warning("%s did not complete; continuing with the round", context)
        return outcome

    async def _play_scenarios(self) -> int:
        self._enter(RunPhase.ITERATING)
        self.logger.info("Beginning scenario gameplay (max_scenarios=%s)", self.config.game.max_scenarios)
        viewport = self.config.browser.viewport

        for index in range(self.config.game.max_scenarios):
            self.state.scenario_count = index + 1
            n = self.state.scenario_count
            before = len(self.state.events)
            self.logger.info("Attempting to play scenario %s", n)
            await self._snap(f"03a-scenario-{n}-start", f"Scenario {n} initial state")

            await self._interact(self.resource.generic_interact, f"Advance scenario {n}")
            await self._wait_ms(self.config.game.advance_settle_ms)
            await self._snap(f"03b-scenario-{n}-ready", f"Scenario {n} ready for choice")

            direction = self.choices.choose(self.state.choice_index)
            self.state.directions.append(direction)
            x, y = choice_point(direction, viewport.width, viewport.height)
            self.logger.info("Making %s choice for scenario %s at (%s, %s)", direction, n, x, y)

            async def click_side(x: float = x, y: float = y) -> None:
                await self.resource.directional_interact(x, y)

            await self._interact(click_side, f"{direction.capitalize()} choice for scenario {n}")
            await self._wait_ms(self.config.game.choice_settle_ms)
            await self._snap(f"04-choice-{n}-result", f"After {direction} choice result")

            if len(self.state.events) > before:
                self.verified_rounds += 1
                self.logger.info("Scenario %s appears successful - activity detected", n)
            else:
                self.logger.warning("Scenario %s may not have registered - no new activity", n)

            self.state.choice_index += 1
            await self._wait_ms(self.config.game.round_pause_ms)

        self.logger.info(
            "Completed %s interactions, %s appeared successful",
            self.state.scenario_count,
            self.verified_rounds,
        )
        return self.verified_rounds

    async def _finalize(self) -> None:
        self._enter(RunPhase.FINALIZING)
        try:
            if self.resource is not None and self.state.scenario_count > 0:
                await self._snap("05-game-final", "Final game state")
            if self.state.events:
                self.recorder.record(
                    "info",
                    "Game statistics collected",
                    {"totalStats": len(self.state.events), "stats": [asdict(e) for e in self.state.events]},
                )
            else:
                self.logger.warning("No game activity was collected from the page")
            if self.resource is not None:
                try:
                    await self.resource.release()
                except Exception:
                    self.logger.exception("Error during browser cleanup")
        finally:
            self.recorder.flush()
            self._enter(RunPhase.DONE)

    async def run(self) -> RunResult:
        self.recorder.open()
        self.logger.info("Start run_id=%s url=%s", self.run_id, sanitize_url_for_log(self.config.game.url))
        ok = False
        error_text = ""
        reached = RunPhase.INIT
        try:
            await self._connect()
            await self._navigate()
            await self._start_game()
            await self._play_scenarios()
            ok = True
            self.logger.info("Game completed successfully! Played %s scenarios", self.state.scenario_count)
        except Exception as err:
            error_text = str(err)
            self.recorder.record(
                "error",
                "Game play failed",
                {
                    "message": error_text,
                    "stack": traceback.format_exc(),
                    "timestamp": datetime.now().isoformat(),
                    "phase": self.state.phase.value,
                },
            )
        finally:
            reached = self.state.phase
            await self._finalize()

        return RunResult(
            ok=ok,
            run_id=self.run_id,
            verified_rounds=self.verified_rounds,
            scenarios_played=self.state.scenario_count,
            phase=reached.value,
            error=error_text,
            activity_count=len(self.state.events),
            directions=tuple(self.state.directions),
            log_file=str(self.recorder.log_file),
            screenshot_dir=str(self.recorder.screenshot_dir),
        )
