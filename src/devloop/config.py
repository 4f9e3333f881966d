"""Runtime settings resolved from the environment."""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path

from pydantic import BaseModel

HOME_ENV = "DEVLOOP_HOME"
LOG_LEVEL_ENV = "DEVLOOP_LOG_LEVEL"
WATCH_INTERVAL_ENV = "DEVLOOP_WATCH_INTERVAL"


class Settings(BaseModel):
    """Settings shared by the CLI and the core managers."""

    home: Path | None = None
    log_level: str = "INFO"
    watch_interval: float = 1.0
    github_base_url: str = "https://github.com"
    http_timeout: float = 60.0

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        env = os.environ if environ is None else environ
        values: dict[str, object] = {}
        if env.get(HOME_ENV):
            values["home"] = Path(env[HOME_ENV]).expanduser()
        if env.get(LOG_LEVEL_ENV):
            values["log_level"] = env[LOG_LEVEL_ENV].upper()
        if env.get(WATCH_INTERVAL_ENV):
            values["watch_interval"] = float(env[WATCH_INTERVAL_ENV])
        return cls.model_validate(values)

    def resolve_dest(self, repo: str, dest: str | Path | None = None) -> Path:
        """Return the absolute install destination for ``repo``."""
        if dest:
            return Path(dest).expanduser().resolve()
        base = self.home if self.home is not None else Path.cwd()
        return (base / repo.rstrip("/").rsplit("/", 1)[-1]).resolve()
