"""Runtime settings.

Resolved from the environment. ``load_environment()`` reads a ``.env``
file first (python-dotenv) without overriding variables that are
already set.

Variables:
    BALLOTBOX_DATA_DIR          directory holding the event log (default: data/)
    BALLOTBOX_EVENT_LOG         event log file name (default: events.jsonl)
    BALLOTBOX_DEFAULT_DURATION  voting window in minutes (default: 60)
    BALLOTBOX_LOG_LEVEL         logging level name (default: WARNING)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Mapping, Optional

from dotenv import find_dotenv, load_dotenv

DEFAULT_DATA_DIR = Path("data")
DEFAULT_EVENT_LOG = "events.jsonl"
DEFAULT_DURATION_MINUTES = 60


@dataclass(frozen=True)
class Settings:
    data_dir: Path = DEFAULT_DATA_DIR
    event_log_name: str = DEFAULT_EVENT_LOG
    default_duration_minutes: int = DEFAULT_DURATION_MINUTES
    log_level: str = "WARNING"

    def __post_init__(self) -> None:
        if self.default_duration_minutes <= 0:
            raise ValueError(
                f"Default duration must be positive, got {self.default_duration_minutes}"
            )
        if not isinstance(logging.getLevelName(self.log_level.upper()), int):
            raise ValueError(f"Unknown log level: {self.log_level}")

    @property
    def event_log_path(self) -> Path:
        return self.data_dir / self.event_log_name

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> Settings:
        """Build settings from environment variables (os.environ by default)."""
        env = os.environ if environ is None else environ
        duration = env.get("BALLOTBOX_DEFAULT_DURATION", "").strip()
        try:
            minutes = int(duration) if duration else DEFAULT_DURATION_MINUTES
        except ValueError as e:
            raise ValueError(
                f"BALLOTBOX_DEFAULT_DURATION must be an integer, got {duration!r}"
            ) from e
        return cls(
            data_dir=Path(env.get("BALLOTBOX_DATA_DIR") or DEFAULT_DATA_DIR),
            event_log_name=env.get("BALLOTBOX_EVENT_LOG") or DEFAULT_EVENT_LOG,
            default_duration_minutes=minutes,
            log_level=(env.get("BALLOTBOX_LOG_LEVEL") or "WARNING").upper(),
        )

    def with_data_dir(self, data_dir: Optional[Path]) -> Settings:
        if data_dir is None:
            return self
        return replace(self, data_dir=data_dir)


def load_environment(env_file: Optional[Path] = None) -> Settings:
    """Load a .env file (if any) into os.environ, then resolve settings."""
    if env_file is not None:
        load_dotenv(env_file)
    else:
        load_dotenv(find_dotenv(usecwd=True))
    return Settings.from_env()
