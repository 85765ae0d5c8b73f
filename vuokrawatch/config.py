"""Environment-driven configuration."""

from __future__ import annotations

import datetime as dt
import os
from dataclasses import dataclass
from pathlib import Path

from .store import resolve_state_path

DEFAULT_DATA_DIR = "data"
DEFAULT_FORM_FILE = "form_data.txt"
DEFAULT_INTERVAL_MINUTES = 15


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


@dataclass
class WatcherConfig:
    data_dir: Path
    form_file: Path
    max_pages: int = 0
    interval: dt.timedelta = dt.timedelta(minutes=DEFAULT_INTERVAL_MINUTES)

    @classmethod
    def from_env(cls) -> "WatcherConfig":
        interval_minutes = _env_int("VUOKRAWATCH_INTERVAL_MINUTES",
                                    DEFAULT_INTERVAL_MINUTES)
        if interval_minutes <= 0:
            raise ValueError("VUOKRAWATCH_INTERVAL_MINUTES must be positive")
        return cls(
            data_dir=Path(os.getenv("VUOKRAWATCH_DATA_DIR", DEFAULT_DATA_DIR)),
            form_file=Path(
                os.getenv("VUOKRAWATCH_FORM_FILE", DEFAULT_FORM_FILE)),
            max_pages=_env_int("VUOKRAWATCH_MAX_PAGES", 0),
            interval=dt.timedelta(minutes=interval_minutes),
        )

    @property
    def state_path(self) -> Path:
        return resolve_state_path(self.data_dir)
