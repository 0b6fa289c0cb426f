"""Configuration management for the key pool service."""

import logging
import os
from dataclasses import dataclass
from datetime import tzinfo
from typing import cast
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv


@dataclass
class Config:
    """Application configuration loaded from environment variables."""

    data_file: str = "data/api_keys.json"
    port: int = 8000
    host: str = "0.0.0.0"
    default_max_usage: int = 100
    reset_timezone: str = "UTC"
    legacy_service_name: str = "default"
    legacy_service_host: str = ""
    log_level: str = "INFO"

    def __post_init__(self):
        if self.default_max_usage < 1:
            raise ValueError("DEFAULT_MAX_USAGE must be a positive integer")
        try:
            ZoneInfo(self.reset_timezone)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(
                f"RESET_TIMEZONE '{self.reset_timezone}' is not a known timezone"
            ) from exc
        self.log_level = self.log_level.upper()
        if not isinstance(logging.getLevelName(self.log_level), int):
            raise ValueError(f"LOG_LEVEL '{self.log_level}' is not a logging level")

    @property
    def tz(self) -> tzinfo:
        return cast(tzinfo, ZoneInfo(self.reset_timezone))


def load_config(use_dotenv: bool = True) -> Config:
    """Load configuration from environment variables.

    Args:
        use_dotenv: Read a ``.env`` file into the environment first

    Returns:
        Config: Configured application settings

    Raises:
        ValueError: If environment variables are missing or invalid
    """
    if use_dotenv:
        load_dotenv()

    return Config(
        data_file=os.getenv("KEYPOOL_DATA_FILE", "data/api_keys.json"),
        port=int(os.getenv("PORT", "8000")),
        host=os.getenv("HOST", "0.0.0.0"),
        default_max_usage=int(os.getenv("DEFAULT_MAX_USAGE", "100")),
        reset_timezone=os.getenv("RESET_TIMEZONE", "UTC"),
        legacy_service_name=os.getenv("LEGACY_SERVICE_NAME", "default"),
        legacy_service_host=os.getenv("LEGACY_SERVICE_HOST", ""),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )
