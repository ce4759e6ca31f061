import json
import logging
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx

from agents.game_agent.browser import PlaywrightResource, sanitize_url_for_log
from agents.game_agent.config import RunConfig
from agents.game_agent.coordinator import DailyScheduler, RunCoordinator
from agents.game_agent.runner import ResourceFactory, RunResult, SessionRunner


AGENT_NAME = "game_agent"
JOB_NAME = "game_flow"


class GameAgentService:
    """Scheduled browser-game runs with persisted run history."""

    def __init__(
        self,
        config: RunConfig,
        base_dir: Path,
        logger: logging.Logger,
        resource_factory: Optional[ResourceFactory] = None,
        scheduler: Optional[DailyScheduler] = None,
    ) -> None:
        self.config = config
        self.base_dir = Path(base_dir)
        self.data_dir = self.base_dir / "data"
        self.logs_dir = self.base_dir / "logs"
        self.screenshots_dir = self.base_dir / "screenshots"
        self.logger = logger
        self.runtime_state_path = self.data_dir / "runtime_state.json"
        self.runtime_events_path = self.data_dir / "runtime_events.jsonl"
        self._events_retention_days = config.logging.retain_logs
        self._last_runtime_events_prune_day = ""
        self._resource_factory = resource_factory or PlaywrightResource
        self._runtime_state: Dict[str, Any] = self._load_runtime_state()
        self.coordinator = RunCoordinator(
            config,
            runner=self._run_session,
            logger=logger,
            scheduler=scheduler,
            on_started=self._handle_started,
            on_finished=self._handle_finished,
            on_skipped=self._handle_skipped,
        )
        self._debug("Service initialized", phase=self._runtime_state.get("phase", "idle"))

    def _debug(self, message: str, **meta: Any) -> None:
        suffix = " | " + ", ".join(f"{k}={v}" for k, v in meta.items()) if meta else ""
        self.logger.debug("[DEBUG][%s] %s%s", AGENT_NAME, message, suffix)

    @staticmethod
    def _default_runtime_state() -> Dict[str, Any]:
        return {
            "phase": "idle",
            "message": "No run yet",
            "run_id": "",
            "job": JOB_NAME,
            "updated_at": datetime.now().isoformat(),
            "ok": None,
        }

    def _load_runtime_state(self) -> Dict[str, Any]:
        if not self.runtime_state_path.exists():
            return self._default_runtime_state()
        try:
            data = json.loads(self.runtime_state_path.read_text(encoding="utf-8"))
            if isinstance(data, dict):
                return {**self._default_runtime_state(), **data}
        except Exception:
            self.logger.exception("Failed to read persisted runtime state")
        return self._default_runtime_state()

    def _set_runtime_state(self, phase: str, message: str, **meta: Any) -> None:
        self._runtime_state = {
            "phase": phase,
            "message": message,
            "job": JOB_NAME,
            "updated_at": datetime.now().isoformat(),
            **meta,
        }
        try:
            self.runtime_state_path.parent.mkdir(parents=True, exist_ok=True)
            self.runtime_state_path.write_text(
                json.dumps(self._runtime_state, ensure_ascii=False, indent=2),
                encoding="utf-8",
            )
        except Exception:
            self.logger.exception("Failed to persist runtime state")

    def _append_runtime_event(self, event: str, **meta: Any) -> None:
        item = {
            "ts": datetime.now().isoformat(),
            "event": event,
            "run_id": meta.get("run_id"),
            "job": JOB_NAME,
            "meta": meta,
        }
        try:
            self.runtime_events_path.parent.mkdir(parents=True, exist_ok=True)
            with self.runtime_events_path.open("a", encoding="utf-8") as fh:
                fh.write(json.dumps(item, ensure_ascii=False, default=str) + "\n")
            self._maybe_prune_runtime_events()
        except Exception:
            self.logger.exception("Failed to store runtime event")

    def _maybe_prune_runtime_events(self) -> None:
        today = date.today().isoformat()
        if self._last_runtime_events_prune_day == today:
            return
        self._prune_runtime_events(retention_days=self._events_retention_days)
        self._last_runtime_events_prune_day = today

    def _prune_runtime_events(self, retention_days: int = 30) -> None:
        if not self.runtime_events_path.exists():
            return
        try:
            cutoff = datetime.now() - timedelta(days=max(1, int(retention_days)))
            kept: List[str] = []
            removed = 0
            for line in self.runtime_events_path.read_text(encoding="utf-8").splitlines():
                if not line.strip():
                    continue
                try:
                    ts = datetime.fromisoformat(str(json.loads(line).get("ts", "")))
                except (ValueError, TypeError, AttributeError):
                    kept.append(line)
                    continue
                if ts < cutoff:
                    removed += 1
                else:
                    kept.append(line)
            if removed <= 0:
                return
            payload = "\n".join(kept)
            self.runtime_events_path.write_text(payload + "\n" if payload else "", encoding="utf-8")
            self.logger.info("Runtime events pruned: removed=%s retained=%s", removed, len(kept))
        except Exception:
            self.logger.exception("Failed to prune runtime events")

    def get_runtime_events(self, limit: int = 200, day: str = "") -> Dict[str, Any]:
        if not self.runtime_events_path.exists():
            return {"ok": True, "count": 0, "items": []}
        try:
            lines = self.runtime_events_path.read_text(encoding="utf-8").splitlines()
        except Exception:
            self.logger.exception("Failed to read runtime events")
            return {"ok": False, "count": 0, "items": []}

        items: List[Dict[str, Any]] = []
        day_prefix = (day or "").strip()
        for line in lines:
            if not line.strip():
                continue
            try:
                item = json.loads(line)
            except ValueError:
                continue
            if day_prefix and not str(item.get("ts", "")).startswith(day_prefix):
                continue
            items.append(item)

        items = items[-max(1, min(limit, 1000)):]
        return {"ok": True, "count": len(items), "items": items}

    async def _run_session(self, run_id: str) -> RunResult:
        runner = SessionRunner(
            self.config,
            self.logger,
            base_dir=self.base_dir,
            run_id=run_id,
            resource_factory=self._resource_factory,
        )
        return await runner.run()

    async def _handle_started(self, run_id: str) -> None:
        self._set_runtime_state("running", "Game run in progress", run_id=run_id, ok=None)
        self._append_runtime_event("run_started", run_id=run_id)

    async def _handle_finished(self, result: RunResult) -> None:
        message = "Game run completed" if result.ok else f"Game run failed: {result.error or 'unknown'}"
        self._set_runtime_state(
            "completed" if result.ok else "failed",
            message,
            run_id=result.run_id,
            ok=result.ok,
            verified_rounds=result.verified_rounds,
            scenarios_played=result.scenarios_played,
            error=result.error,
        )
        self._append_runtime_event("run_finished", **result.as_dict())
        await self.send_final(result)

    async def _handle_skipped(self, trigger: str) -> None:
        self._append_runtime_event(
            "run_skipped",
            trigger=trigger,
            active_run_id=self.coordinator.state.current_run_id,
        )

    async def send_final(self, result: RunResult) -> None:
        url = self.config.notifications.final_webhook_url
        if not url:
            self.logger.info("Webhook skipped: URL not configured")
            return
        payload = {
            "ok": result.ok,
            "job": JOB_NAME,
            "run_id": result.run_id,
            "message": f"[{JOB_NAME}] {'OK' if result.ok else 'ERROR'}",
            "ts": datetime.now().isoformat(),
            "meta": result.as_dict(),
        }
        sanitized_url = sanitize_url_for_log(url)
        self._debug("Sending webhook", url=sanitized_url)
        try:
            async with httpx.AsyncClient(timeout=15) as client:
                await client.post(url, json=payload)
            self._debug("Webhook sent", url=sanitized_url)
        except Exception:
            self.logger.exception("Webhook send failed")

    def list_jobs(self) -> Dict[str, Any]:
        return {JOB_NAME: self.run_manual}

    async def run_manual(self, trigger: str = "manual") -> Dict[str, Any]:
        result = await self.coordinator.run_once(trigger=trigger)
        if result is None:
            return {
                "ok": False,
                "skipped": True,
                "job": JOB_NAME,
                "error": f"There is already an active run for {JOB_NAME}",
                "active_run_id": self.coordinator.state.current_run_id,
            }
        return {"skipped": False, "job": JOB_NAME, **result.as_dict()}

    def recent_log_files(self, limit: int = 5) -> List[Dict[str, str]]:
        if not self.logs_dir.exists():
            return []
        files = sorted(self.logs_dir.glob("*.log"))[-max(1, limit):]
        return [
            {"name": path.name, "modified": datetime.fromtimestamp(path.stat().st_mtime).date().isoformat()}
            for path in files
        ]

    def get_status(self) -> Dict[str, Any]:
        cfg = self.config
        return {
            "job": JOB_NAME,
            "game_url": sanitize_url_for_log(cfg.game.url),
            "daily_run_time": cfg.schedule.daily_run_time,
            "scheduling_enabled": cfg.schedule.enabled,
            "headless": cfg.browser.headless,
            "max_scenarios": cfg.game.max_scenarios,
            "choice_strategy": cfg.choices.strategy,
            "logging": {
                "screenshot_quality": cfg.logging.screenshot_quality,
                "capture_network": cfg.logging.capture_network,
                "capture_console": cfg.logging.capture_console,
                "retain_logs_days": cfg.logging.retain_logs,
            },
            "directories": {
                "logs": str(self.logs_dir),
                "screenshots": str(self.screenshots_dir),
                "data": str(self.data_dir),
            },
            "runtime": dict(self._runtime_state),
            "scheduler": self.coordinator.get_status(),
            "recent_logs": self.recent_log_files(),
        }

    async def check_environment(self, browser_smoke: bool = True) -> Dict[str, Any]:
        """Create working directories and optionally smoke-test the browser."""
        checks: List[Dict[str, Any]] = []
        for directory in (self.logs_dir, self.screenshots_dir, self.data_dir):
            existed = directory.exists()
            try:
                directory.mkdir(parents=True, exist_ok=True)
                checks.append({"check": f"directory {directory.name}", "ok": True, "created": not existed})
            except OSError as err:
                checks.append({"check": f"directory {directory.name}", "ok": False, "error": str(err)})

        checks.append({"check": "game url configured", "ok": bool(self.config.game.url)})

        if browser_smoke:
            resource = self._resource_factory(self.config.browser, self.logger.getChild("browser"))
            try:
                await resource.connect()
                checks.append({"check": "browser launch", "ok": True})
                if self.config.game.url:
                    await resource.navigate(self.config.game.url, self.config.browser.timeout)
                    checks.append({"check": "game navigation", "ok": True})
            except Exception as err:
                self.logger.exception("Browser smoke test failed")
                checks.append({"check": "browser smoke test", "ok": False, "error": str(err)})
            finally:
                await resource.release()

        return {"ok": all(item["ok"] for item in checks), "checks": checks}
