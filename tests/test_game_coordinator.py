import asyncio
import logging
import unittest
from datetime import datetime, timedelta

from agents.game_agent.config import RunConfig
from agents.game_agent.coordinator import DailyScheduler, RunCoordinator
from agents.game_agent.runner import RunResult


def _config(enabled: bool = True, daily_time: str = "09:00") -> RunConfig:
    return RunConfig.model_validate({"schedule": {"enabled": enabled, "dailyRunTime": daily_time}})


class _BlockingRunner:
    """Runner that stays in flight until ``release`` is set."""

    def __init__(self) -> None:
        self.release = asyncio.Event()
        self.entered = asyncio.Event()
        self.run_ids = []

    async def __call__(self, run_id: str) -> RunResult:
        self.run_ids.append(run_id)
        self.entered.set()
        await self.release.wait()
        return RunResult(ok=True, run_id=run_id, verified_rounds=2, scenarios_played=2)


class RunCoordinatorTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.logger = logging.getLogger("tests.game.coordinator")

    def _build(self, runner, enabled: bool = True, **hooks) -> RunCoordinator:
        return RunCoordinator(_config(enabled=enabled), runner, self.logger, scheduler=DailyScheduler(), **hooks)

    async def test_disabled_schedule_registers_nothing(self) -> None:
        coordinator = self._build(_BlockingRunner(), enabled=False)
        self.assertFalse(coordinator.start())
        self.assertEqual(coordinator.scheduler.jobs, [])
        self.assertIsNone(coordinator.get_status()["next_run"])

    async def test_start_is_idempotent_and_stop_cancels_job(self) -> None:
        coordinator = self._build(_BlockingRunner())
        self.assertTrue(coordinator.start())
        self.assertTrue(coordinator.start())
        self.assertEqual(len(coordinator.scheduler.jobs), 1)
        self.assertIsNotNone(coordinator.get_status()["next_run"])

        coordinator.stop()
        self.assertEqual(coordinator.scheduler.jobs, [])
        self.assertFalse(coordinator.get_status()["started"])

    async def test_manual_trigger_during_active_run_is_dropped(self) -> None:
        runner = _BlockingRunner()
        coordinator = self._build(runner)

        first = asyncio.create_task(coordinator.run_once(trigger="manual"))
        await runner.entered.wait()
        self.assertTrue(coordinator.state.is_running)

        second = await coordinator.run_once(trigger="http")
        self.assertIsNone(second)
        self.assertEqual(coordinator.state.skipped_triggers, 1)

        runner.release.set()
        result = await first
        self.assertTrue(result.ok)
        self.assertEqual(len(runner.run_ids), 1)
        self.assertTrue(runner.run_ids[0].startswith("manual-"))
        self.assertFalse(coordinator.state.is_running)
        self.assertEqual(coordinator.get_status()["last_result"]["verified_rounds"], 2)

    async def test_overlapping_schedule_triggers_start_one_run(self) -> None:
        runner = _BlockingRunner()
        coordinator = self._build(runner)
        self.assertTrue(coordinator.start())
        job = coordinator.state.job

        job.next_run = datetime.now() - timedelta(minutes=1)
        coordinator.scheduler.run_pending()
        job.next_run = datetime.now() - timedelta(minutes=1)
        coordinator.scheduler.run_pending()

        tasks = list(coordinator.state.tasks)
        self.assertEqual(len(tasks), 2)
        await runner.entered.wait()
        runner.release.set()
        results = await asyncio.gather(*tasks)

        self.assertEqual(len(runner.run_ids), 1)
        self.assertTrue(runner.run_ids[0].startswith("schedule-"))
        self.assertEqual(sum(1 for item in results if item is None), 1)
        self.assertEqual(coordinator.state.skipped_triggers, 1)
        coordinator.stop()

    async def test_runner_exception_becomes_failed_result_and_clears_flag(self) -> None:
        async def broken(run_id: str) -> RunResult:
            raise RuntimeError("browser exploded")

        coordinator = self._build(broken)
        result = await coordinator.run_once()
        self.assertFalse(result.ok)
        self.assertIn("browser exploded", result.error)
        self.assertFalse(coordinator.state.is_running)

        # A later trigger is accepted again.
        again = await coordinator.run_once()
        self.assertIsNotNone(again)

    async def test_hooks_receive_lifecycle_and_failures_are_tolerated(self) -> None:
        seen = []

        async def on_started(run_id: str) -> None:
            seen.append(("started", run_id))

        async def on_finished(result: RunResult) -> None:
            seen.append(("finished", result.run_id))
            raise OSError("webhook down")

        async def quick(run_id: str) -> RunResult:
            return RunResult(ok=True, run_id=run_id)

        coordinator = self._build(quick, on_started=on_started, on_finished=on_finished)
        result = await coordinator.run_once(trigger="manual")
        self.assertTrue(result.ok)
        self.assertEqual([kind for kind, _ in seen], ["started", "finished"])
        self.assertEqual(seen[0][1], seen[1][1])

    async def test_serve_forever_stops_on_request(self) -> None:
        coordinator = self._build(_BlockingRunner())
        task = asyncio.create_task(coordinator.serve_forever(poll_interval=0.01))
        await asyncio.sleep(0.05)
        self.assertTrue(coordinator.get_status()["started"])
        coordinator.stop()
        await asyncio.wait_for(task, timeout=1.0)
        self.assertEqual(coordinator.scheduler.jobs, [])

    async def test_serve_forever_returns_when_disabled(self) -> None:
        coordinator = self._build(_BlockingRunner(), enabled=False)
        await asyncio.wait_for(coordinator.serve_forever(poll_interval=0.01), timeout=1.0)
        self.assertEqual(coordinator.scheduler.jobs, [])


if __name__ == "__main__":
    unittest.main()
