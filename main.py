import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import List, Optional

import uvicorn
from fastapi import FastAPI

from agents.game_agent.config import ConfigError, load_run_config, resolve_config_path
from agents.game_agent.service import GameAgentService
from routers.game_agent import create_game_router


logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger("agent_runner")

BASE_DIR = Path(os.getenv("GAME_AGENT_HOME", ".")).resolve()


def _setting(name: str, default: str = "") -> str:
    return os.getenv(name.upper(), default)


def create_app(service: GameAgentService, job_secret: str = "", run_scheduler: bool = True) -> FastAPI:
    """FastAPI app exposing the game router; the scheduler lives in the app lifespan."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        task = None
        if run_scheduler and service.config.schedule.enabled:
            task = asyncio.create_task(service.coordinator.serve_forever())
        try:
            yield
        finally:
            if task is not None:
                service.coordinator.stop()
                await task

    app = FastAPI(title="Game Agent Runner", lifespan=lifespan)
    app.include_router(create_game_router(service, job_secret=job_secret))
    return app


def _print_status(service: GameAgentService, config_path: Path) -> None:
    status = service.get_status()
    print("Game Agent Runner - Status")
    print("==========================")
    print(f"Config file: {config_path}")
    print(json.dumps({k: v for k, v in status.items() if k != "recent_logs"}, indent=2, default=str))
    recent = status["recent_logs"]
    if recent:
        print("Recent log files:")
        for item in recent:
            print(f"- {item['name']} ({item['modified']})")
    else:
        print("No log files found yet.")


async def _run_manual(service: GameAgentService) -> int:
    logger.info("Running game manually...")
    result = await service.run_manual()
    if result.get("ok"):
        logger.info("Manual game run completed successfully (verified rounds: %s)", result.get("verified_rounds"))
        return 0
    logger.error("Manual game run completed with errors: %s", result.get("error", "unknown"))
    return 1


async def _run_scheduler(service: GameAgentService) -> int:
    if not service.config.schedule.enabled:
        logger.warning(
            "Scheduling is disabled in configuration. Set schedule.enabled to true or run with --manual"
        )
        return 0

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, service.coordinator.stop)
        except (NotImplementedError, RuntimeError):
            pass

    logger.info("Scheduler starting; daily run at %s. Press Ctrl+C to stop", service.config.schedule.daily_run_time)
    await service.coordinator.serve_forever()
    logger.info("Scheduler stopped")
    return 0


async def _run_check(service: GameAgentService, browser_smoke: bool) -> int:
    report = await service.check_environment(browser_smoke=browser_smoke)
    for item in report["checks"]:
        mark = "OK " if item["ok"] else "ERR"
        detail = f" ({item['error']})" if item.get("error") else ""
        print(f"[{mark}] {item['check']}{detail}")
    return 0 if report["ok"] else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="game-agent",
        description="Automated browser game player. Without flags, starts the daily scheduler.",
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("-m", "--manual", action="store_true", help="run the game once now")
    mode.add_argument("-s", "--status", action="store_true", help="show status and configuration")
    mode.add_argument("--check", action="store_true", help="check directories, config and browser launch")
    mode.add_argument("--serve", action="store_true", help="serve the HTTP control API plus the scheduler")
    parser.add_argument("-c", "--config", default=None, help="path to config.json")
    parser.add_argument("--no-browser", action="store_true", help="skip the browser smoke test in --check")
    parser.add_argument("--host", default=_setting("host", "0.0.0.0"))
    parser.add_argument("--port", type=int, default=int(_setting("port", "8099")))
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    config_path = resolve_config_path(args.config)
    try:
        config = load_run_config(config_path)
    except ConfigError as err:
        logger.error("Failed to load configuration: %s", err)
        return 1

    service = GameAgentService(config, base_dir=BASE_DIR, logger=logging.getLogger("agent_runner.game_agent"))

    if args.status:
        _print_status(service, config_path)
        return 0
    if args.manual:
        return asyncio.run(_run_manual(service))
    if args.check:
        return asyncio.run(_run_check(service, browser_smoke=not args.no_browser))
    if args.serve:
        uvicorn.run(create_app(service, job_secret=_setting("job_secret")), host=args.host, port=args.port)
        return 0
    return asyncio.run(_run_scheduler(service))


if __name__ == "__main__":
    sys.exit(main())
