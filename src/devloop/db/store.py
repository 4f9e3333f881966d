"""YAML persistence for project state files."""

from __future__ import annotations

import os
import threading
from pathlib import Path

import yaml

from devloop.errors import DevloopError, NotFoundError
from devloop.models.project import STATE_FILENAME, Project


class ProjectStore:
    """Load and save the per-project state file.

    Saves go through one lock and replace the file in one step, so readers
    never observe a partially written state.
    """

    def __init__(self, filename: str = STATE_FILENAME) -> None:
        self._filename = filename
        self._lock = threading.Lock()

    @property
    def filename(self) -> str:
        return self._filename

    def path_for(self, project: Project) -> Path:
        return project.root / self._filename

    def exists(self, path: Path) -> bool:
        try:
            self._state_path(path)
        except NotFoundError:
            return False
        return True

    def load(self, path: Path) -> Project:
        state_path = self._state_path(path)
        with self._lock:
            content = state_path.read_text(encoding="utf-8")
        data = yaml.safe_load(content) or {}
        if not isinstance(data, dict):
            msg = f"State file is not a mapping: {state_path}"
            raise DevloopError(msg)
        data["dest"] = state_path.parent.as_posix()
        return Project.model_validate(data)

    def save(self, project: Project) -> Path:
        state_path = self.path_for(project)
        payload = yaml.safe_dump(
            project.model_dump(mode="json"),
            sort_keys=False,
            default_flow_style=False,
        )
        with self._lock:
            state_path.parent.mkdir(parents=True, exist_ok=True)
            partial = state_path.with_name(f"{state_path.name}.tmp")
            partial.write_text(payload, encoding="utf-8")
            os.replace(partial, state_path)
        return state_path

    def delete(self, project: Project) -> None:
        with self._lock:
            self.path_for(project).unlink(missing_ok=True)

    def _state_path(self, path: Path) -> Path:
        project_path = path.expanduser().resolve()
        if not project_path.exists():
            msg = f"Project path does not exist: {project_path}"
            raise NotFoundError(msg)
        if not project_path.is_dir():
            if project_path.name == self._filename:
                return project_path
            project_path = project_path.parent
        state_path = project_path / self._filename
        if not state_path.exists():
            msg = f"Project file does not exist: {state_path}"
            raise NotFoundError(msg)
        return state_path
