import asyncio
import logging
import subprocess
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlsplit, urlunsplit

from playwright.async_api import async_playwright

from agents.game_agent.config import BrowserSettings


EventListener = Callable[[Dict[str, Any]], None]

LAUNCH_ARGS = ["--no-sandbox", "--disable-setuid-sandbox"]


def sanitize_url_for_log(raw_url: str) -> str:
    if not raw_url:
        return raw_url
    try:
        parts = urlsplit(raw_url)
        return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))
    except Exception:
        return raw_url


class PlaywrightResource:
    """Live Chromium page owned by exactly one session run."""

    def __init__(
        self,
        settings: BrowserSettings,
        logger: logging.Logger,
        on_console: Optional[EventListener] = None,
        on_response: Optional[EventListener] = None,
        on_page_error: Optional[EventListener] = None,
    ) -> None:
        self.settings = settings
        self.logger = logger
        self.on_console = on_console
        self.on_response = on_response
        self.on_page_error = on_page_error
        self._playwright = None
        self._browser = None
        self._context = None
        self.page = None

    @staticmethod
    def _is_missing_executable_error(error: Exception) -> bool:
        return "Executable doesn't exist" in str(error)

    async def _install_chromium(self) -> bool:
        command = [sys.executable, "-m", "playwright", "install", "chromium"]
        self.logger.warning("Chromium not found; attempting automatic install")
        try:
            await asyncio.to_thread(
                subprocess.run,
                command,
                check=True,
                timeout=900,
                text=True,
                capture_output=True,
            )
            self.logger.info("Automatic Chromium install completed")
            return True
        except Exception:
            self.logger.exception("Could not install Chromium at runtime")
            return False

    async def _launch(self):
        chromium = self._playwright.chromium
        try:
            return await chromium.launch(headless=self.settings.headless, args=LAUNCH_ARGS)
        except Exception as err:
            if not self._is_missing_executable_error(err):
                raise
            if not await self._install_chromium():
                raise
            return await chromium.launch(headless=self.settings.headless, args=LAUNCH_ARGS)

    async def connect(self) -> "PlaywrightResource":
        self.logger.info("Initializing browser (headless=%s)...", self.settings.headless)
        self._playwright = await async_playwright().start()
        self._browser = await self._launch()
        viewport = self.settings.viewport
        self._context = await self._browser.new_context(
            viewport={"width": viewport.width, "height": viewport.height}
        )
        self.page = await self._context.new_page()
        self.page.on("console", self._handle_console)
        self.page.on("response", self._handle_response)
        self.page.on("pageerror", self._handle_page_error)
        self.logger.info("Browser initialized successfully")
        return self

    def _emit(self, listener: Optional[EventListener], entry: Dict[str, Any]) -> None:
        if listener is None:
            return
        try:
            listener(entry)
        except Exception:
            self.logger.exception("Page event listener failed")

    def _handle_console(self, msg) -> None:
        self._emit(
            self.on_console,
            {
                "timestamp": datetime.now().isoformat(),
                "type": msg.type,
                "text": msg.text,
                "location": msg.location,
            },
        )

    def _handle_response(self, response) -> None:
        self._emit(
            self.on_response,
            {
                "timestamp": datetime.now().isoformat(),
                "url": response.url,
                "status": response.status,
                "statusText": response.status_text,
                "headers": response.headers,
                "method": response.request.method,
            },
        )

    def _handle_page_error(self, error) -> None:
        self._emit(
            self.on_page_error,
            {"timestamp": datetime.now().isoformat(), "error": str(error)},
        )

    def _require_page(self):
        if self.page is None:
            raise RuntimeError("Browser disconnected: no active page")
        return self.page

    async def navigate(self, url: str, timeout_ms: int) -> None:
        if not url:
            raise RuntimeError("Missing game.url in configuration")
        self.logger.info("Navigating to game: %s", sanitize_url_for_log(url))
        await self._require_page().goto(url, wait_until="domcontentloaded", timeout=timeout_ms)

    async def generic_interact(self) -> None:
        await self._require_page().click("body", timeout=self.settings.timeout)

    async def directional_interact(self, x: float, y: float) -> None:
        await self._require_page().mouse.click(x, y)

    async def screenshot(self, path: Path, quality: Optional[int] = None) -> None:
        kwargs: Dict[str, Any] = {"path": str(path), "full_page": True}
        if quality is not None:
            kwargs["type"] = "jpeg"
            kwargs["quality"] = quality
        await self._require_page().screenshot(**kwargs)

    async def content(self) -> str:
        return await self._require_page().content()

    async def release(self) -> None:
        for label, closer in (
            ("page", self.page.close if self.page is not None else None),
            ("context", self._context.close if self._context is not None else None),
            ("browser", self._browser.close if self._browser is not None else None),
            ("playwright", self._playwright.stop if self._playwright is not None else None),
        ):
            if closer is None:
                continue
            try:
                await closer()
            except Exception:
                self.logger.exception("Error closing Playwright %s", label)
        self.page = None
        self._context = None
        self._browser = None
        self._playwright = None
        self.logger.info("Browser cleanup completed")
