"""Project lifecycle management: install, run, clean and uninstall."""

from __future__ import annotations

import logging
import shutil
import signal
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO

from devloop.config import Settings
from devloop.core.backend import BackendSupervisor
from devloop.core.builder import Builder
from devloop.core.installer import ArchiveInstaller
from devloop.core.livereload import LiveReloadNotifier
from devloop.core.process_runner import ProcessRunner, format_executable
from devloop.core.rerun import RerunLoop
from devloop.core.session import ProjectSession
from devloop.core.watcher import FileWatcher
from devloop.db.store import ProjectStore
from devloop.errors import DevloopError
from devloop.models.project import Project

logger = logging.getLogger(__name__)

# Generated next to the sources by the toolchains; removed on uninstall if present.
GENERATED_LEFTOVERS = ("go.sum", "package-lock.json")


@dataclass(slots=True)
class InstallInput:
    """Input payload for project installation."""

    repo: str
    version: str = ""
    dest: Path | None = None
    module: str = ""
    replacements: dict[str, str] = field(default_factory=dict)


class ProjectManager:
    """Drive an installed project through its lifecycle."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        store: ProjectStore | None = None,
        installer: ArchiveInstaller | None = None,
        runner_factory: Callable[[], ProcessRunner] = ProcessRunner,
    ) -> None:
        self._settings = settings if settings is not None else Settings()
        self._store = store if store is not None else ProjectStore()
        self._installer = installer or ArchiveInstaller(
            base_url=self._settings.github_base_url,
            timeout=self._settings.http_timeout,
        )
        self._runner_factory = runner_factory
        self._stop_callbacks: list[Callable[[], None]] = []
        self._stop_lock = threading.Lock()

    @property
    def store(self) -> ProjectStore:
        return self._store

    def install(self, payload: InstallInput) -> Project:
        project = Project(
            repo=payload.repo,
            version=payload.version,
            dest=self._settings.resolve_dest(payload.repo, payload.dest).as_posix(),
            module=payload.module,
            replacements=dict(payload.replacements),
        )
        data = self._installer.download(project)
        session = ProjectSession(project, self._store)
        try:
            self._installer.extract(project, data, session.add_file)
            session.save()
        except (DevloopError, OSError):
            logger.warning("install of %s failed, removing installed files", project.repo)
            try:
                self._uninstall(session)
            except (DevloopError, OSError) as cleanup_exc:
                logger.error("rollback of %s failed: %s", project.dest, cleanup_exc)
            raise
        logger.info("installed %s@%s into %s", project.repo, project.version, project.dest)
        return project

    def run(
        self,
        path: Path,
        *,
        stdout: IO[str] | None = None,
        stderr: IO[str] | None = None,
    ) -> None:
        """Build, start and, unless disabled, watch the project until stopped.

        The backend, the live reload listener and the watch loop run side by
        side; one finishing does not cancel the others. The first error raised
        by any of them is re-raised once all are done.
        """
        project = self._store.load(path)
        session = ProjectSession(project, self._store)
        runner = self._runner_factory()
        builder = Builder(runner, watch_interval=self._settings.watch_interval)
        watching = not project.watch.disable
        backend = BackendSupervisor(
            project, runner, restartable=watching, stdout=stdout, stderr=stderr
        )
        notifier = LiveReloadNotifier(project.live_reload)
        watcher: FileWatcher | None = None
        loop: RerunLoop | None = None

        builder.build(session)
        backend.start()
        session.set_running(True)

        errors: list[BaseException] = []
        errors_lock = threading.Lock()

        def guarded(target: Callable[[], object]) -> Callable[[], None]:
            def wrapper() -> None:
                try:
                    target()
                except Exception as exc:  # noqa: BLE001
                    with errors_lock:
                        errors.append(exc)
                    logger.debug("%s failed: %s", getattr(target, "__name__", target), exc)

            return wrapper

        def stop() -> None:
            backend.stop()
            runner.kill_helpers()
            if watcher is not None:
                watcher.close()
            notifier.shutdown()

        try:
            targets: list[Callable[[], object]] = [backend.supervise]
            if watching:
                watcher = FileWatcher(interval=self._settings.watch_interval)
                watcher.add_filter(_ledger_filter(session))
                watcher.watch(project.root)
                loop = RerunLoop(session, watcher, builder, runner, notifier, backend.restart)
                targets.extend([notifier.listen_and_serve, loop.run_loop])

            threads = [
                threading.Thread(target=guarded(target), name=f"devloop-{index}", daemon=True)
                for index, target in enumerate(targets)
            ]
            with self._stop_on_signals(stop):
                for thread in threads:
                    thread.start()
                for thread in threads:
                    while thread.is_alive():
                        thread.join(timeout=0.5)
        finally:
            stop()
            if loop is not None:
                loop.join(timeout=5)
            session.set_running(False)

        if errors:
            raise errors[0]

    def stop(self) -> None:
        """Stop a ``run`` in progress from another thread."""
        with self._stop_lock:
            callbacks = list(self._stop_callbacks)
        for callback in callbacks:
            callback()

    def clean(self, path: Path) -> Project:
        project = self._store.load(path)
        self._clean(ProjectSession(project, self._store))
        return project

    def uninstall(self, path: Path) -> None:
        project = self._store.load(path)
        self._uninstall(ProjectSession(project, self._store))

    def _clean(self, session: ProjectSession) -> None:
        project = session.project
        try:
            for name in session.build_files():
                _remove(project.resolve(name))
                session.remove_build_file(name)
            logger.info("cleaned build files of %s", project.name)
        finally:
            session.save()

    def _uninstall(self, session: ProjectSession) -> None:
        self._clean(session)
        project = session.project
        root = project.root
        with session.lock:
            names = list(reversed(project.files))
        for name in names:
            _remove(project.resolve(name))
            with session.lock:
                project.files.remove(name)

        for leftover in (*GENERATED_LEFTOVERS, format_executable(project.binary_name)):
            try:
                _remove(root / leftover)
            except OSError as exc:
                logger.debug("could not remove %s: %s", leftover, exc)

        self._store.delete(project)
        logger.info("uninstalled %s from %s", project.name, root)

    @contextmanager
    def _stop_on_signals(self, stop: Callable[[], None]) -> Iterator[None]:
        with self._stop_lock:
            self._stop_callbacks.append(stop)
        previous: dict[int, object] = {}
        if threading.current_thread() is threading.main_thread():

            def handler(signum: int, _frame: object) -> None:
                logger.info("received %s, stopping", signal.Signals(signum).name)
                stop()

            for signum in (signal.SIGINT, signal.SIGTERM):
                previous[signum] = signal.signal(signum, handler)
        try:
            yield
        finally:
            for signum, old in previous.items():
                signal.signal(signum, old)  # type: ignore[arg-type]
            with self._stop_lock:
                self._stop_callbacks.remove(stop)


def _ledger_filter(session: ProjectSession) -> Callable[[Path], bool]:
    """Skip directories produced by builds or listed in ``watch.ignore``."""
    project = session.project

    def allowed(directory: Path) -> bool:
        name = project.rel(directory)
        if not name or name == ".":
            return True
        for prefix in (*project.watch.ignore, *session.build_files()):
            prefix = prefix.strip("/")
            if prefix and (name == prefix or name.startswith(f"{prefix}/")):
                return False
        return True

    return allowed


def _remove(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    elif path.exists() or path.is_symlink():
        path.unlink()
