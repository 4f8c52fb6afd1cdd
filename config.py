# config.py
"""Service configuration, read once at startup from the environment (and ``.env``)."""

import os
from typing import List, Tuple

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator


class Settings(BaseModel):
    host: str = "0.0.0.0"
    port: int = Field(default=4000, gt=0, lt=65536)
    poll_interval_ms: int = Field(default=3000, gt=0)
    default_symbols: Tuple[str, ...] = ("AAPL",)
    # Drop price state for symbols nobody has watched for this many ticks (0 = never)
    evict_after_ticks: int = Field(default=100, ge=0)
    cors_origins: List[str] = ["*"]
    log_level: str = "INFO"

    @field_validator("default_symbols", mode="before")
    @classmethod
    def _split_symbols(cls, value):
        if isinstance(value, str):
            value = value.split(",")
        return tuple(s.strip().upper() for s in value if s and s.strip())

    @field_validator("cors_origins", mode="before")
    @classmethod
    def _split_origins(cls, value):
        if isinstance(value, str):
            value = value.split(",")
        return [o.strip() for o in value if o and o.strip()]

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper()

    @property
    def poll_interval_s(self) -> float:
        return self.poll_interval_ms / 1000.0

    @classmethod
    def from_env(cls, load_dotenv_file: bool = True) -> "Settings":
        """Build settings from environment variables, falling back to field defaults."""
        if load_dotenv_file:
            load_dotenv()
        env_map = {
            "host": "HOST",
            "port": "PORT",
            "poll_interval_ms": "POLL_INTERVAL_MS",
            "default_symbols": "DEFAULT_SYMBOLS",
            "evict_after_ticks": "EVICT_AFTER_TICKS",
            "cors_origins": "CORS_ORIGINS",
            "log_level": "LOG_LEVEL",
        }
        values = {field: os.environ[var] for field, var in env_map.items() if os.environ.get(var)}
        return cls(**values)
