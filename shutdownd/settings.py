from __future__ import annotations

import math
import re

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from . import __version__
from .action import DEFAULT_SHUTDOWN_CMD

DEFAULT_ARM_EXPR = "!online && powerType == 1"
DEFAULT_DISARM_EXPR = "online && powerType == 1"

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_UNIT_SEC = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: str | float | int) -> float:
    """
    Seconds from a number or a duration string like '90s', '3m', '1h30m'.
    """
    if isinstance(value, (int, float)):
        return float(value)
    text = value.strip()
    try:
        seconds = float(text)
    except ValueError:
        pass
    else:
        if not math.isfinite(seconds):
            raise ValueError(f"invalid duration {value!r}")
        return seconds
    pos = 0
    total = 0.0
    for m in _DURATION_PART.finditer(text):
        if m.start() != pos:
            break
        total += float(m.group(1)) * _UNIT_SEC[m.group(2)]
        pos = m.end()
    if pos == 0 or pos != len(text):
        raise ValueError(f"invalid duration {value!r}")
    return total


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="SHUTDOWND_",
        env_file=".env",
        extra="ignore",
    )

    # ─────────────────────────────────────────────
    # Service identity
    # ─────────────────────────────────────────────
    SERVICE_NAME: str = Field(default="shutdownd")
    SERVICE_VERSION: str = Field(default=__version__)

    # ─────────────────────────────────────────────
    # Bus
    # ─────────────────────────────────────────────
    BUS_URL: str = Field(default="", description="Redis URL of the bus server")
    TOPIC: str = Field(default="", description="Channel carrying power alarm messages")
    RECONNECT_DELAY_SEC: float = Field(default=5.0)

    # ─────────────────────────────────────────────
    # Policy
    # ─────────────────────────────────────────────
    RECOVERY_PERIOD_SEC: float = Field(
        default=180.0,
        description="Time to wait after power is lost before shutting down",
    )
    ARM_EXPR: str = Field(default=DEFAULT_ARM_EXPR)
    DISARM_EXPR: str = Field(default=DEFAULT_DISARM_EXPR)
    STRICT: bool = Field(default=False, description="Exit on invalid messages or unexpected topics")
    VALIDATE_SCOPE: bool = Field(default=False)

    # ─────────────────────────────────────────────
    # Shutdown behavior
    # ─────────────────────────────────────────────
    SHUTDOWN_CMD: str = Field(default=DEFAULT_SHUTDOWN_CMD)
    DRY_RUN: bool = Field(default=False)

    DEBUG: bool = Field(default=False)

    @field_validator("RECOVERY_PERIOD_SEC", mode="before")
    @classmethod
    def _parse_recovery(cls, v):
        if isinstance(v, str):
            return parse_duration(v)
        return v

    @field_validator("RECOVERY_PERIOD_SEC", "RECONNECT_DELAY_SEC")
    @classmethod
    def _ensure_positive(cls, v: float) -> float:
        if not math.isfinite(v) or v <= 0:
            raise ValueError("Interval must be positive and finite")
        return v
