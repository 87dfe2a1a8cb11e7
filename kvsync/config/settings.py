"""
kvsync Configuration Settings

This module contains the configuration consumed by the coordination
primitives: where the store lives, how large the connection pool may grow,
and how reconnects back off.

Durations for the retry policy are given as short strings ("1s", "1m")
and converted with duration_ms().
"""

import os
import re
from dataclasses import dataclass
from typing import Optional, Union

_DURATION_PATTERN = re.compile(r"^([+-]?)(\d+)([smhdw])$")

_TIMEFRAME_MS = {
    "s": 1000,
    "m": 60 * 1000,
    "h": 60 * 60 * 1000,
    "d": 24 * 60 * 60 * 1000,
    "w": 7 * 24 * 60 * 60 * 1000,
}


def duration_ms(value: Union[str, int, float]) -> int:
    """
    Convert a short duration string into milliseconds.

    Args:
        value: A string such as "500s", "1m", "-2h", or a number that is
               already in milliseconds

    Returns:
        The duration in milliseconds

    Raises:
        ValueError: If the string is not understood

    Examples:
        >>> duration_ms("1s")
        1000
        >>> duration_ms("2w")
        1209600000
    """
    if isinstance(value, (int, float)):
        return int(value)

    match = _DURATION_PATTERN.match(value.strip())
    if not match:
        raise ValueError(f"time string of '{value}' is not understood")

    sign, count, timeframe = match.groups()
    total = int(count) * _TIMEFRAME_MS[timeframe]
    return -total if sign == "-" else total


def _optional_env(name: str) -> Optional[str]:
    value = os.environ.get(name)
    return value if value else None


@dataclass
class Settings:
    """Coordination configuration settings."""

    # Store connection settings
    REDIS_HOST: str = os.environ.get("KVSYNC_REDIS_HOST", "localhost")
    REDIS_PORT: int = int(os.environ.get("KVSYNC_REDIS_PORT", "6379"))
    REDIS_PASSWORD: Optional[str] = _optional_env("KVSYNC_REDIS_PASSWORD")
    REDIS_DB: int = int(os.environ.get("KVSYNC_REDIS_DB", "0"))
    SOCKET_TIMEOUT: float = 5.0  # Seconds
    HEALTH_CHECK_INTERVAL: int = 30  # Seconds

    # Pool settings
    POOL_SIZE: int = int(os.environ.get("KVSYNC_POOL_SIZE", "10"))

    # Reconnect settings
    RETRY_MAX_ATTEMPTS: int = int(os.environ.get("KVSYNC_RETRY_MAX_ATTEMPTS", "10"))
    RETRY_BASE_SLEEP_TIME: str = os.environ.get("KVSYNC_RETRY_BASE_SLEEP_TIME", "1s")
    RETRY_MAX_SLEEP_TIME: str = os.environ.get("KVSYNC_RETRY_MAX_SLEEP_TIME", "1m")

    # Lock settings
    LOCK_TIMEOUT_MS: int = 10000
    LOCK_RETRY_SLEEP_MS: int = 500

    # Cron settings
    CRON_TICK_INTERVAL: float = 1.0  # Seconds between scheduler ticks
    CRON_LOCK_TTL_MS: int = 45000  # Must outlast one minute-resolution run

    # Logging settings
    DEBUG: bool = os.environ.get("KVSYNC_DEBUG", "false").lower() == "true"
    LOG_LEVEL: str = os.environ.get("KVSYNC_LOG_LEVEL", "INFO")

    @property
    def retry_base_sleep_seconds(self) -> float:
        return duration_ms(self.RETRY_BASE_SLEEP_TIME) / 1000

    @property
    def retry_max_sleep_seconds(self) -> float:
        return duration_ms(self.RETRY_MAX_SLEEP_TIME) / 1000


# Global settings instance
settings = Settings()
