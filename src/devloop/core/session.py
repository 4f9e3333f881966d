"""Shared, lock-guarded access to one loaded project."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager

from devloop.db.store import ProjectStore
from devloop.models.project import Project


class ProjectSession:
    """Single writer for a project's ledgers, running flag and state file.

    The watcher callback thread and rerun worker threads mutate the same
    project; every read-modify-write goes through ``lock``.
    """

    def __init__(self, project: Project, store: ProjectStore) -> None:
        self.project = project
        self.store = store
        self.lock = threading.RLock()
        self.rebuild_lock = threading.Lock()

    def add_build_file(self, rel_path: str) -> bool:
        if not rel_path:
            return False
        with self.lock:
            if rel_path in self.project.build_files:
                return False
            self.project.build_files.append(rel_path)
            return True

    def remove_build_file(self, rel_path: str) -> bool:
        with self.lock:
            if rel_path not in self.project.build_files:
                return False
            self.project.build_files.remove(rel_path)
            return True

    def add_file(self, rel_path: str) -> None:
        with self.lock:
            if rel_path not in self.project.files:
                self.project.files.append(rel_path)

    def build_files(self) -> list[str]:
        with self.lock:
            return list(self.project.build_files)

    def set_manifest_md5(self, rel_path: str, digest: str) -> bool:
        """Record ``digest`` for the manifest at ``rel_path``.

        Returns True when it differs from the digest stored for that manifest.
        """
        with self.lock:
            if self.project.manifest_md5.get(rel_path) == digest:
                return False
            self.project.manifest_md5[rel_path] = digest
            return True

    def set_running(self, running: bool) -> None:
        with self.lock:
            self.project.running = running
            self.save()

    def save(self) -> None:
        with self.lock:
            self.store.save(self.project)

    @contextmanager
    def rebuilding(self) -> Iterator[None]:
        """Serialize concurrent reruns of this project."""
        with self.rebuild_lock:
            yield
