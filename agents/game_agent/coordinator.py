import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Set

import schedule

from agents.game_agent.config import RunConfig
from agents.game_agent.recorder import now_id
from agents.game_agent.runner import RunResult


RunnerFn = Callable[[str], Awaitable[RunResult]]
ResultHook = Callable[[RunResult], Awaitable[None]]


class DailyScheduler:
    """Daily HH:MM triggers on a private ``schedule.Scheduler``."""

    def __init__(self, scheduler: Optional[schedule.Scheduler] = None) -> None:
        self._scheduler = scheduler or schedule.Scheduler()

    def register(self, time_spec: str, callback: Callable[[], Any]) -> schedule.Job:
        return self._scheduler.every().day.at(time_spec).do(callback)

    def cancel(self, job: schedule.Job) -> None:
        self._scheduler.cancel_job(job)

    def run_pending(self) -> None:
        self._scheduler.run_pending()

    def next_run(self) -> Optional[datetime]:
        return self._scheduler.next_run

    @property
    def jobs(self) -> list:
        return list(self._scheduler.jobs)


@dataclass
class CoordinatorState:
    enabled: bool
    is_running: bool = False
    job: Optional[schedule.Job] = None
    current_run_id: str = ""
    last_result: Optional[RunResult] = None
    last_started_at: str = ""
    skipped_triggers: int = 0
    tasks: Set["asyncio.Task[Any]"] = field(default_factory=set)


class RunCoordinator:
    """Single-flight gate in front of the session runner, on a schedule or on demand."""

    def __init__(
        self,
        config: RunConfig,
        runner: RunnerFn,
        logger: logging.Logger,
        scheduler: Optional[DailyScheduler] = None,
        on_started: Optional[Callable[[str], Awaitable[None]]] = None,
        on_finished: Optional[ResultHook] = None,
        on_skipped: Optional[Callable[[str], Awaitable[None]]] = None,
    ) -> None:
        self.config = config
        self.logger = logger
        self.scheduler = scheduler or DailyScheduler()
        self.state = CoordinatorState(enabled=config.schedule.enabled)
        self._runner = runner
        self._on_started = on_started
        self._on_finished = on_finished
        self._on_skipped = on_skipped
        self._stopped: Optional[asyncio.Event] = None

    def start(self) -> bool:
        if not self.state.enabled:
            self.logger.info("Scheduling is disabled in configuration")
            return False
        if self.state.job is not None:
            self.logger.info("Scheduler already started for %s", self.config.schedule.daily_run_time)
            return True
        daily_time = self.config.schedule.daily_run_time
        self.state.job = self.scheduler.register(daily_time, self._on_trigger)
        self.logger.info("Daily schedule registered at %s (next run: %s)", daily_time, self.scheduler.next_run())
        return True

    def stop(self) -> None:
        if self.state.job is not None:
            self.scheduler.cancel(self.state.job)
            self.state.job = None
            self.logger.info("Scheduler stopped")
        if self._stopped is not None:
            self._stopped.set()

    def _on_trigger(self) -> None:
        self.logger.info("Scheduled game run starting...")
        task = asyncio.get_running_loop().create_task(self.run_once(trigger="schedule"))
        self.state.tasks.add(task)
        task.add_done_callback(self.state.tasks.discard)

    async def _notify(self, hook, *args) -> None:
        if hook is None:
            return
        try:
            await hook(*args)
        except Exception:
            self.logger.exception("Run notification hook failed")

    async def run_once(self, trigger: str = "manual") -> Optional[RunResult]:
        if self.state.is_running:
            self.state.skipped_triggers += 1
            self.logger.info(
                "Game is already running (run_id=%s), skipping %s trigger",
                self.state.current_run_id,
                trigger,
            )
            await self._notify(self._on_skipped, trigger)
            return None

        self.state.is_running = True
        run_id = f"{trigger}-{now_id()}"
        self.state.current_run_id = run_id
        self.state.last_started_at = datetime.now().isoformat()
        try:
            await self._notify(self._on_started, run_id)
            self.logger.info("Starting game player run_id=%s trigger=%s", run_id, trigger)
            try:
                result = await self._runner(run_id)
            except Exception as err:
                self.logger.exception("Error during game execution run_id=%s", run_id)
                result = RunResult(ok=False, run_id=run_id, error=str(err))
            if result.ok:
                self.logger.info("Game completed successfully run_id=%s", run_id)
            else:
                self.logger.warning("Game completed with errors run_id=%s: %s", run_id, result.error)
            self.state.last_result = result
            await self._notify(self._on_finished, result)
            return result
        finally:
            self.state.is_running = False
            self.state.current_run_id = ""

    async def serve_forever(self, poll_interval: float = 1.0) -> None:
        self._stopped = asyncio.Event()
        if not self.start():
            return
        try:
            while not self._stopped.is_set():
                self.scheduler.run_pending()
                try:
                    await asyncio.wait_for(self._stopped.wait(), timeout=poll_interval)
                except asyncio.TimeoutError:
                    continue
        finally:
            self.stop()
            if self.state.tasks:
                self.logger.info("Waiting for %s in-flight run(s) to finish", len(self.state.tasks))
                await asyncio.gather(*list(self.state.tasks), return_exceptions=True)

    def get_status(self) -> Dict[str, Any]:
        next_run = self.scheduler.next_run() if self.state.job is not None else None
        last = self.state.last_result
        return {
            "scheduled": self.state.enabled,
            "started": self.state.job is not None,
            "daily_time": self.config.schedule.daily_run_time,
            "is_running": self.state.is_running,
            "current_run_id": self.state.current_run_id,
            "next_run": next_run.isoformat() if next_run else None,
            "last_started_at": self.state.last_started_at,
            "skipped_triggers": self.state.skipped_triggers,
            "last_result": last.as_dict() if last is not None else None,
        }
