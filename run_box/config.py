from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

DEFAULT_CWD = "/workspace"
DEFAULT_TIMEOUT_MS = 300_000
MAX_OUTPUT_BYTES = 10_485_760  # 10 MiB
SHUTDOWN_GRACE_MS = 5_000
DEFAULT_PORT = 3100
DEFAULT_HOST = "127.0.0.1"


def _positive_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    try:
        value = int(raw)
    except ValueError:
        return default
    if value <= 0:
        raise ValueError(f"Invalid {name}: {raw} (must be a positive integer)")
    return value


@dataclass(frozen=True)
class Config:
    default_cwd: str = DEFAULT_CWD
    default_timeout_ms: int = DEFAULT_TIMEOUT_MS
    max_output_bytes: int = MAX_OUTPUT_BYTES
    shutdown_grace_ms: int = SHUTDOWN_GRACE_MS
    port: int = DEFAULT_PORT
    host: str = DEFAULT_HOST
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if not 1 <= self.port <= 65535:
            raise ValueError(f"Invalid PORT: {self.port} (must be integer 1-65535)")
        if not isinstance(logging.getLevelName(self.log_level), int):
            raise ValueError(f"Invalid LOG_LEVEL: {self.log_level}")

    @classmethod
    def from_env(cls, env_path: str | Path | None = None) -> Config:
        """Build a config from the process environment.

        A ``.env`` file is loaded first (without overriding variables that
        are already set).  Empty or non-numeric values fall back to the
        defaults; numeric values out of range raise ValueError.
        """
        load_dotenv(env_path)

        return cls(
            default_cwd=os.getenv("DEFAULT_CWD") or DEFAULT_CWD,
            default_timeout_ms=_positive_int("DEFAULT_TIMEOUT_MS", DEFAULT_TIMEOUT_MS),
            max_output_bytes=_positive_int("MAX_OUTPUT_BYTES", MAX_OUTPUT_BYTES),
            shutdown_grace_ms=_positive_int("SHUTDOWN_GRACE_MS", SHUTDOWN_GRACE_MS),
            port=_positive_int("PORT", DEFAULT_PORT),
            host=os.getenv("HOST") or DEFAULT_HOST,
            log_level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
        )
