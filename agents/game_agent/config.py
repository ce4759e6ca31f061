import json
import os
import re
from pathlib import Path
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel


DEFAULT_CONFIG_PATH = Path("config") / "config.json"

DEFAULT_ACTIVITY_KEYWORDS = [
    "stats",
    "score",
    "choice",
    "scenario",
    "result",
    "victim",
    "loaded",
    "ready",
    "start",
    "click",
    "game",
    "play",
    "database",
]

_DAILY_TIME_RE = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")


class ConfigError(RuntimeError):
    """Raised when the configuration file is missing, unreadable or invalid."""


class _Section(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class GameSettings(_Section):
    url: str = ""
    max_scenarios: int = Field(default=10, ge=0)
    start_wait_ms: int = Field(default=5_000, ge=0)
    advance_settle_ms: int = Field(default=8_000, ge=0)
    choice_settle_ms: int = Field(default=3_000, ge=0)
    round_pause_ms: int = Field(default=2_000, ge=0)
    activity_keywords: List[str] = Field(default_factory=lambda: list(DEFAULT_ACTIVITY_KEYWORDS))
    count_network_activity: bool = False


class Viewport(_Section):
    width: int = Field(default=1280, gt=0)
    height: int = Field(default=720, gt=0)


class BrowserSettings(_Section):
    headless: bool = True
    viewport: Viewport = Field(default_factory=Viewport)
    timeout: int = Field(default=30_000, gt=0)


class ChoiceSettings(_Section):
    strategy: Literal["random", "pattern", "left", "right"] = "pattern"
    pattern: List[Literal["left", "right"]] = Field(default_factory=lambda: ["left", "right"])

    @model_validator(mode="after")
    def _pattern_required(self):
        if self.strategy == "pattern" and not self.pattern:
            raise ValueError("choices.pattern must not be empty when strategy is 'pattern'")
        return self


class ScheduleSettings(_Section):
    daily_run_time: str = "09:00"
    enabled: bool = True

    @field_validator("daily_run_time")
    @classmethod
    def _valid_time(cls, value: str) -> str:
        match = _DAILY_TIME_RE.match(str(value).strip())
        if not match:
            raise ValueError("dailyRunTime must use HH:MM (24-hour)")
        return f"{int(match.group(1)):02d}:{match.group(2)}"


class ErrorHandlingSettings(_Section):
    max_retries: int = Field(default=3, ge=0)
    retry_delay: int = Field(default=2_000, ge=0)
    timeout_actions: int = Field(default=30_000, gt=0)
    continue_on_minor_errors: bool = True
    take_screenshot_on_error: bool = True


class LoggingSettings(_Section):
    screenshot_quality: int = Field(default=80, ge=1, le=100)
    capture_network: bool = True
    capture_console: bool = True
    retain_logs: int = Field(default=30, ge=1)


class NotificationSettings(_Section):
    final_webhook_url: str = ""


class RunConfig(_Section):
    """Immutable configuration shared by every component of a run."""

    game: GameSettings = Field(default_factory=GameSettings)
    browser: BrowserSettings = Field(default_factory=BrowserSettings)
    choices: ChoiceSettings = Field(default_factory=ChoiceSettings)
    schedule: ScheduleSettings = Field(default_factory=ScheduleSettings)
    error_handling: ErrorHandlingSettings = Field(default_factory=ErrorHandlingSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)

    def summary(self) -> dict:
        return self.model_dump(by_alias=True)


def resolve_config_path(explicit: Optional[Union[str, Path]] = None) -> Path:
    """Explicit path first, then GAME_AGENT_CONFIG, then config/config.json."""
    if explicit:
        return Path(explicit)
    env_path = os.getenv("GAME_AGENT_CONFIG", "").strip()
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_PATH


def _apply_env_overrides(raw: dict) -> dict:
    # ENV wins over the file, same priority as the add-on settings.
    overrides = {
        ("game", "url"): os.getenv("GAME_URL"),
        ("notifications", "finalWebhookUrl"): os.getenv("FINAL_WEBHOOK_URL"),
    }
    for (section, key), value in overrides.items():
        if value is None or not value.strip():
            continue
        block = dict(raw.get(section) or {})
        block[key] = value.strip()
        raw[section] = block
    return raw


def load_run_config(path: Optional[Union[str, Path]] = None) -> RunConfig:
    config_path = resolve_config_path(path)
    if not config_path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")
    try:
        raw = json.loads(config_path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise ConfigError(f"Failed to read configuration {config_path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigError(f"Configuration root must be an object: {config_path}")
    try:
        return RunConfig.model_validate(_apply_env_overrides(raw))
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration {config_path}: {exc}") from exc
