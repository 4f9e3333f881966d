"""Project domain models."""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import BaseModel, Field, field_validator, model_validator

from devloop.errors import PathSafetyError

STATE_FILENAME = ".devloop.yml"
DEFAULT_LIVE_RELOAD_PORT = 35729
DEFAULT_VERSION = "master"

DEFAULT_BACKEND_EXTENSIONS = [".go", ".mod", ".yml", ".yaml", ".toml", ".tml", ".ini", ".proto"]
DEFAULT_FRONTEND_EXTENSIONS = [
    ".html",
    ".htm",
    ".svelte",
    ".js",
    ".ts",
    ".jsx",
    ".tsx",
    ".css",
    ".scss",
    ".less",
    ".json",
    ".proto",
]
DEFAULT_IGNORE = [".git", "node_modules"]


class WatchConfig(BaseModel):
    """Which changes trigger a frontend rebuild or a backend restart."""

    disable: bool = False
    backend_extensions: list[str] = Field(default_factory=lambda: list(DEFAULT_BACKEND_EXTENSIONS))
    frontend_extensions: list[str] = Field(
        default_factory=lambda: list(DEFAULT_FRONTEND_EXTENSIONS)
    )
    ignore: list[str] = Field(default_factory=lambda: list(DEFAULT_IGNORE))

    @field_validator("backend_extensions", "frontend_extensions")
    @classmethod
    def _dotted(cls, value: list[str]) -> list[str]:
        return [ext if ext.startswith(".") else f".{ext}" for ext in value]


class LiveReloadConfig(BaseModel):
    """Browser live reload listener settings."""

    disable: bool = False
    port: int = DEFAULT_LIVE_RELOAD_PORT


class Project(BaseModel):
    """Installed project metadata persisted between invocations."""

    name: str = ""
    repo: str
    version: str = DEFAULT_VERSION
    dest: str = ""
    module: str = ""
    replacements: dict[str, str] = Field(default_factory=dict, exclude=True)

    disable_inline_commands: bool = False
    disable_npm_install: bool = False
    npm_build_script: str = "build"

    watch: WatchConfig = Field(default_factory=WatchConfig)
    live_reload: LiveReloadConfig = Field(default_factory=LiveReloadConfig)

    # Relative to dest. Install and build ledgers scope uninstall and clean.
    files: list[str] = Field(default_factory=list)
    build_files: list[str] = Field(default_factory=list)
    # Manifest path relative to dest -> md5 of its last installed content.
    manifest_md5: dict[str, str] = Field(default_factory=dict)

    running: bool = False

    @field_validator("version")
    @classmethod
    def _normalize_version(cls, value: str) -> str:
        value = value.strip().split(" ")[0] if value.strip() else ""
        if not value or value == "latest":
            return DEFAULT_VERSION
        return value

    @field_validator("manifest_md5", mode="before")
    @classmethod
    def _drop_shared_digest(cls, value: object) -> object:
        # Older state files kept one digest for every manifest.
        if isinstance(value, str):
            return {}
        return value

    @field_validator("dest")
    @classmethod
    def _normalize_dest(cls, value: str) -> str:
        if not value:
            return value
        return Path(value).expanduser().resolve().as_posix()

    @model_validator(mode="after")
    def _apply_defaults(self) -> Project:
        if not self.name:
            self.name = self.repo.rstrip("/").rsplit("/", 1)[-1]
        if self.watch.disable:
            self.live_reload.disable = True
        return self

    @property
    def root(self) -> Path:
        return Path(self.dest)

    @property
    def binary_name(self) -> str:
        """Base name of the compiled backend executable."""
        return self.root.name

    def rel(self, path: str | Path) -> str:
        """Return ``path`` relative to dest in slash form, or "" if outside."""
        try:
            return Path(path).resolve().relative_to(self.root).as_posix()
        except ValueError:
            return ""

    def resolve(self, rel_path: str) -> Path:
        """Join a ledger path onto dest; raises ``PathSafetyError`` on escape.

        The last component is not resolved, so a ledger entry that is a symlink
        names the link itself and never its target.
        """
        root = self.root.resolve()
        candidate = Path(os.path.normpath(root / rel_path))
        if root not in candidate.parents:
            msg = f"Path escapes project root: {rel_path}"
            raise PathSafetyError(msg)
        parent = candidate.parent.resolve()
        if parent != root and root not in parent.parents:
            msg = f"Path escapes project root through a link: {rel_path}"
            raise PathSafetyError(msg)
        return parent / candidate.name
