import json
import logging
import time
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

from agents.game_agent.browser import sanitize_url_for_log
from agents.game_agent.config import LoggingSettings


LOG_FORMAT = "[%(asctime)s] %(levelname)s: %(message)s"


def now_id() -> str:
    return time.strftime("%Y%m%d-%H%M%S")


def _safe_label(label: str) -> str:
    cleaned = "".join(ch if (ch.isalnum() or ch in {"-", "_"}) else "_" for ch in str(label or "capture"))
    return cleaned.strip("_") or "capture"


class EvidenceRecorder:
    """Per-run evidence: log file, screenshots, network and console captures."""

    def __init__(
        self,
        settings: LoggingSettings,
        logger: logging.Logger,
        base_dir: Path,
        run_id: Optional[str] = None,
        config_summary: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.settings = settings
        self.logger = logger
        self.run_id = run_id or now_id()
        self.log_dir = Path(base_dir) / "logs"
        self.screenshot_dir = Path(base_dir) / "screenshots" / self.run_id
        self.log_file = self.log_dir / f"{self.run_id}.log"
        self.network_log = self.log_dir / f"{self.run_id}-network.json"
        self.console_log = self.log_dir / f"{self.run_id}-console.json"
        self.network_data: List[Dict[str, Any]] = []
        self.console_data: List[Dict[str, Any]] = []
        self.screenshots: List[Path] = []
        self._config_summary = config_summary or {}
        self._handler: Optional[logging.FileHandler] = None
        self._flushed = False

    def open(self) -> None:
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            self.screenshot_dir.mkdir(parents=True, exist_ok=True)
            header = (
                f"=== Game Agent Runner - Run {self.run_id} ===\n"
                f"Started: {datetime.now().isoformat()}\n"
                f"Configuration: {json.dumps(self._config_summary, ensure_ascii=False, indent=2)}\n"
                "========================================\n\n"
            )
            self.log_file.write_text(header, encoding="utf-8")
            handler = logging.FileHandler(self.log_file, mode="a", encoding="utf-8")
            handler.setFormatter(logging.Formatter(LOG_FORMAT))
            self.logger.addHandler(handler)
            self._handler = handler
        except Exception:
            self.logger.exception("Could not open run log for run_id=%s", self.run_id)

    def record(self, level: str, message: str, data: Optional[Dict[str, Any]] = None) -> None:
        levelno = logging.getLevelName(str(level).upper())
        if not isinstance(levelno, int):
            levelno = logging.INFO
        if data:
            try:
                payload = json.dumps(data, ensure_ascii=False, indent=2, default=str)
            except Exception:
                payload = repr(data)
            self.logger.log(levelno, "%s\nData: %s", message, payload)
        else:
            self.logger.log(levelno, "%s", message)

    def observe_network(self, entry: Dict[str, Any]) -> None:
        if not self.settings.capture_network:
            return
        self.network_data.append(entry)
        self.logger.info(
            "Network request: %s %s - %s",
            entry.get("method", ""),
            sanitize_url_for_log(str(entry.get("url", ""))),
            entry.get("status", ""),
        )

    def observe_console(self, entry: Dict[str, Any]) -> None:
        if not self.settings.capture_console:
            return
        self.console_data.append(entry)
        self.logger.info("Console %s: %s", entry.get("type", "log"), entry.get("text", ""))

    async def capture_visual(self, resource, label: str, description: str = "", with_html: bool = False) -> Optional[Path]:
        if resource is None:
            return None
        quality = self.settings.screenshot_quality
        suffix = ".png" if quality >= 100 else ".jpg"
        path = self.screenshot_dir / f"{_safe_label(label)}{suffix}"
        try:
            self.screenshot_dir.mkdir(parents=True, exist_ok=True)
            await resource.screenshot(path, quality=None if suffix == ".png" else quality)
            if with_html:
                html = await resource.content()
                path.with_suffix(".html").write_text(html, encoding="utf-8")
            self.screenshots.append(path)
            self.record("info", f"Screenshot captured: {label}", {"path": str(path), "description": description})
            return path
        except Exception as err:
            self.record("error", f"Failed to capture screenshot: {label}", {"error": str(err)})
            return None

    def flush(self) -> None:
        if self._flushed:
            return
        self._flushed = True
        try:
            if self.settings.capture_network and self.network_data:
                self.network_log.write_text(
                    json.dumps(self.network_data, ensure_ascii=False, indent=2, default=str),
                    encoding="utf-8",
                )
                self.logger.info("Network data saved: %s requests", len(self.network_data))
            if self.settings.capture_console and self.console_data:
                self.console_log.write_text(
                    json.dumps(self.console_data, ensure_ascii=False, indent=2, default=str),
                    encoding="utf-8",
                )
                self.logger.info("Console data saved: %s messages", len(self.console_data))
            self.cleanup_old_logs()
        except Exception:
            self.logger.exception("Error finalizing evidence for run_id=%s", self.run_id)
        finally:
            self._close_handler()

    def _close_handler(self) -> None:
        handler = self._handler
        if handler is None:
            return
        self._handler = None
        self.logger.removeHandler(handler)
        handler.close()
        try:
            with self.log_file.open("a", encoding="utf-8") as fh:
                fh.write(f"\n========================================\nCompleted: {datetime.now().isoformat()}\n")
        except Exception:
            self.logger.exception("Could not write run log footer")

    def cleanup_old_logs(self) -> int:
        if not self.log_dir.exists():
            return 0
        cutoff = datetime.now() - timedelta(days=max(1, int(self.settings.retain_logs)))
        removed = 0
        for path in self.log_dir.glob("*.log"):
            if path == self.log_file:
                continue
            try:
                if datetime.fromtimestamp(path.stat().st_mtime) < cutoff:
                    path.unlink()
                    removed += 1
                    self.logger.info("Cleaned up old log file: %s", path.name)
            except Exception:
                self.logger.exception("Error cleaning up old log %s", path)
        return removed
