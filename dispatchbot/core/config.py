import json
import logging
import math
import re

from pydantic_settings import BaseSettings
from pydantic import ConfigDict, field_validator
from typing import List, Optional

PLAN_DURATION_KEYS = ("7", "15", "30")
DEFAULT_PLAN_DURATIONS = (7, 15, 30)

_SEPARATOR_RE = re.compile(r"[:=]")


def _parse_plan_duration_value(key: str, value) -> float:
    if isinstance(value, bool):
        raise ValueError(f"PLAN_DURATIONS value for {key} must be a finite number")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        trimmed = value.strip()
        if not trimmed:
            raise ValueError(f"PLAN_DURATIONS value for {key} cannot be empty")
        try:
            numeric = float(trimmed)
        except ValueError:
            raise ValueError(f"PLAN_DURATIONS value for {key} must be a finite number")
    else:
        raise ValueError(f"PLAN_DURATIONS value for {key} must be a finite number")

    if not math.isfinite(numeric):
        raise ValueError(f"PLAN_DURATIONS value for {key} must be a finite number")
    if numeric <= 0:
        raise ValueError(f"PLAN_DURATIONS value for {key} must be greater than zero")
    return float(round(numeric))


def _check_key(key: str) -> str:
    candidate = str(key).strip()
    if candidate not in PLAN_DURATION_KEYS:
        raise ValueError(f"Unsupported plan key in PLAN_DURATIONS: {key}")
    return candidate


def parse_plan_durations(raw: Optional[str]) -> List[float]:
    """Parse PLAN_DURATIONS into a vector ordered as 7, 15, 30.

    Accepts a JSON array (positional), a JSON object keyed by plan, a plain
    comma-separated list (positional) or a ``key:value`` / ``key=value`` list.
    Missing entries keep their defaults.
    """
    overrides = {}
    trimmed = (raw or "").strip()
    if not trimmed:
        return [float(v) for v in DEFAULT_PLAN_DURATIONS]

    if trimmed.startswith("{") or trimmed.startswith("["):
        try:
            parsed = json.loads(trimmed)
        except json.JSONDecodeError:
            raise ValueError("PLAN_DURATIONS must be valid JSON or a comma-separated list")

        if isinstance(parsed, list):
            if len(parsed) > len(PLAN_DURATION_KEYS):
                raise ValueError("PLAN_DURATIONS cannot define more durations than available plans")
            for key, value in zip(PLAN_DURATION_KEYS, parsed):
                overrides[key] = _parse_plan_duration_value(key, value)
        elif isinstance(parsed, dict):
            for key, value in parsed.items():
                candidate = _check_key(key)
                overrides[candidate] = _parse_plan_duration_value(candidate, value)
        else:
            raise ValueError("PLAN_DURATIONS JSON payload must be an object or array")
    else:
        entries = [entry.strip() for entry in trimmed.split(",") if entry.strip()]
        sequential = all(":" not in entry and "=" not in entry for entry in entries)
        if sequential:
            if len(entries) > len(PLAN_DURATION_KEYS):
                raise ValueError("PLAN_DURATIONS cannot define more durations than available plans")
            for key, value in zip(PLAN_DURATION_KEYS, entries):
                overrides[key] = _parse_plan_duration_value(key, value)
        else:
            for entry in entries:
                separator = _SEPARATOR_RE.search(entry)
                if separator is None:
                    raise ValueError(
                        "PLAN_DURATIONS entries must use key:value pairs or be plain numbers"
                    )
                candidate = _check_key(entry[:separator.start()])
                overrides[candidate] = _parse_plan_duration_value(candidate, entry[separator.end():])

    return [
        overrides.get(key, float(default))
        for key, default in zip(PLAN_DURATION_KEYS, DEFAULT_PLAN_DURATIONS)
    ]


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False
    LOG_LEVEL: str = "INFO"

    # Database & Cache
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None
    REDIS_URL: Optional[str] = None  # unset disables backlog, reminders and access cache
    REDIS_KEY_PREFIX: str = "session:"

    # Reminder worker
    REMINDER_QUEUE_NAME: str = "executor-plan-reminders"
    REMINDER_JOB_TIMEOUT_SECONDS: int = 60

    # Telegram
    TELEGRAM_BOT_TOKEN: Optional[str] = None
    TELEGRAM_API_BASE: str = "https://api.telegram.org"
    TELEGRAM_TIMEOUT_SECONDS: float = 10.0

    # Executor plans
    TIMEZONE: str = "Asia/Almaty"
    TRIAL_DAYS: float = 2
    PLAN_DURATIONS: str = ""  # JSON array/object, "10,20,30" or "7:10,30:45"
    ACCESS_CACHE_TTL_SECONDS: int = 600

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("PLAN_DURATIONS")
    @classmethod
    def _validate_plan_durations(cls, value: str) -> str:
        parse_plan_durations(value)
        return value

    @property
    def plan_durations(self) -> List[float]:
        return parse_plan_durations(self.PLAN_DURATIONS)


settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("dispatchbot")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "TELEGRAM_BOT_TOKEN",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    if not getattr(cfg, "REDIS_URL", None):
        log.warning("REDIS_URL is not configured; executor plan reminders and the mutation backlog are disabled")

    return True
