from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/123.0.0.0 Safari/537.36"
)
DEFAULT_FETCH_TIMEOUT = 10.0
DEFAULT_COMPRESSION_LEVEL = 6


@dataclass(frozen=True)
class Settings:
    fetch_timeout: float = DEFAULT_FETCH_TIMEOUT
    user_agent: str = USER_AGENT
    compression_level: int = DEFAULT_COMPRESSION_LEVEL


def read_env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    if value not in {None, ""}:
        return value

    # Secrets-style deployments hand over a path in NAME_FILE instead.
    file_var = os.getenv(f"{name}_FILE")
    if not file_var:
        return default
    try:
        content = Path(file_var).read_text(encoding="utf-8")
    except OSError:
        return default
    return content.rstrip("\r\n")


def _env_float(name: str, default: float) -> float:
    raw = read_env(name)
    if raw is None:
        return default
    try:
        value = float(raw.strip())
    except ValueError:
        return default
    return value if value > 0 else default


def _env_int(name: str, default: int, *, minimum: int, maximum: int) -> int:
    raw = read_env(name)
    if raw is None:
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        return default
    if value < minimum or value > maximum:
        return default
    return value


def load_settings() -> Settings:
    return Settings(
        fetch_timeout=_env_float("LLEPUB_FETCH_TIMEOUT", DEFAULT_FETCH_TIMEOUT),
        user_agent=(read_env("LLEPUB_USER_AGENT") or USER_AGENT).strip() or USER_AGENT,
        compression_level=_env_int(
            "LLEPUB_COMPRESSION_LEVEL",
            DEFAULT_COMPRESSION_LEVEL,
            minimum=0,
            maximum=9,
        ),
    )
