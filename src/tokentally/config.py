import os
from dataclasses import dataclass, field
from pathlib import Path

from tokentally.loader import default_projects_dir
from tokentally.models import DEFAULT_TOKEN_LIMIT, DEFAULT_WINDOW_HOURS


def _projects_dir_from_env() -> "Path":
    value = os.environ.get("TOKENTALLY_PROJECTS_DIR", "")
    if value:
        return Path(value).expanduser()
    return default_projects_dir()


@dataclass
class Config:
    # root holding one directory of session logs per project
    projects_dir: "Path" = field(default_factory=default_projects_dir)
    # periodic refresh interval in seconds, 0 disables the timer
    refresh_interval: "int" = 10
    window_hours: "float" = DEFAULT_WINDOW_HOURS
    # estimated token ceiling of one window, only used for the
    # usage percentage
    token_limit: "int" = DEFAULT_TOKEN_LIMIT
    debounce_seconds: "float" = 0.5
    watch_poll_interval: "float" = 1.0
    # listen_address: format ":9185" or
    # "0.0.0.0:9185", empty disables the exporter
    listen_address: "str" = ":9185"
    log_level: "str" = "info"
    log_format: "str" = "console"

    @classmethod
    def from_env(cls) -> "Config":
        return cls(projects_dir=_projects_dir_from_env())

    def validate(self) -> "None":
        """
        raises ValueError on settings the engine cannot run with.
        """
        if self.refresh_interval < 0:
            raise ValueError("refresh interval must not be negative")
        if self.window_hours <= 0:
            raise ValueError("window hours must be positive")
        if self.token_limit <= 0:
            raise ValueError("token limit must be positive")
        if self.debounce_seconds < 0 or self.watch_poll_interval <= 0:
            raise ValueError("watch timings must be positive")
