"""Turn watcher batches into frontend rebuilds and backend restarts."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path

from devloop.core.builder import Builder
from devloop.core.livereload import LiveReloadNotifier
from devloop.core.process_runner import ProcessRunner
from devloop.core.session import ProjectSession
from devloop.core.watcher import FileWatcher
from devloop.errors import DevloopError
from devloop.models.events import WatchEvent
from devloop.models.project import WatchConfig

logger = logging.getLogger(__name__)

# Above this many events a batch is treated as a bulk operation (e.g. a
# dependency install) and everything is rebuilt without looking at names.
BULK_EVENT_THRESHOLD = 20

# Editor and linker leftovers that are neither frontend nor backend.
QUIET_EXTENSIONS = frozenset({".exe", ".exe~", ".tmp", ".swp", ".swx", ".log"})


@dataclass(slots=True, frozen=True)
class Classification:
    """Which halves of the project a batch of changes affects."""

    frontend: bool = False
    backend: bool = False

    @property
    def any(self) -> bool:
        return self.frontend or self.backend

    def describe(self) -> str:
        parts = []
        if self.frontend:
            parts.append("frontend")
        if self.backend:
            parts.append("backend")
        return " + ".join(parts) or "nothing"


def _is_ignored(name: str, prefixes: Iterable[str]) -> bool:
    for prefix in prefixes:
        prefix = prefix.strip("/")
        if prefix and (name == prefix or name.startswith(f"{prefix}/")):
            return True
    return False


def classify(
    batch: Sequence[WatchEvent],
    config: WatchConfig,
    *,
    root: Path | None = None,
    state_filename: str = "",
    ignore: Iterable[str] = (),
) -> Classification:
    if len(batch) > BULK_EVENT_THRESHOLD:
        return Classification(frontend=True, backend=True)

    prefixes = [*config.ignore, *ignore]
    frontend_exts = set(config.frontend_extensions)
    backend_exts = set(config.backend_extensions)
    frontend = backend = False

    for event in batch:
        name = event.path
        if root is not None:
            try:
                name = Path(event.path).relative_to(root).as_posix()
            except ValueError:
                continue
        if state_filename and name == state_filename:
            continue
        if _is_ignored(name, prefixes):
            continue
        ext = event.ext
        if not ext or ext in QUIET_EXTENSIONS:
            continue

        matched = False
        if ext in frontend_exts:
            frontend = matched = True
        if ext in backend_exts:
            backend = matched = True
        if not matched:
            logger.warning(
                "unexpected file %s (%s) changed, it is neither a frontend nor a backend file",
                name,
                event.op.value,
            )

    return Classification(frontend=frontend, backend=backend)


class RerunLoop:
    """Consume watcher batches and rebuild or restart what they affect.

    Each rerun runs on its own worker thread so the loop keeps draining the
    watcher. Reruns of one project are serialized by the session's rebuild
    lock, and each pauses the watcher while it mutates the tree.
    """

    def __init__(
        self,
        session: ProjectSession,
        watcher: FileWatcher,
        builder: Builder,
        runner: ProcessRunner,
        notifier: LiveReloadNotifier,
        restart_backend: Callable[[], None],
    ) -> None:
        self._session = session
        self._watcher = watcher
        self._builder = builder
        self._runner = runner
        self._notifier = notifier
        self._restart_backend = restart_backend
        self._workers: list[threading.Thread] = []
        self._workers_lock = threading.Lock()

    def classify(self, batch: Sequence[WatchEvent]) -> Classification:
        project = self._session.project
        return classify(
            batch,
            project.watch,
            root=project.root,
            state_filename=self._session.store.filename,
            ignore=self._session.build_files(),
        )

    def run_loop(self) -> None:
        """Run until the watcher is closed."""
        for batch in self._watcher.batches():
            classification = self.classify(batch)
            if classification.any:
                self.dispatch(classification)
        logger.debug("watch loop finished")

    def dispatch(self, classification: Classification) -> threading.Thread:
        worker = threading.Thread(
            target=self.rerun,
            args=(classification,),
            name="devloop-rerun",
            daemon=True,
        )
        with self._workers_lock:
            self._workers = [thread for thread in self._workers if thread.is_alive()]
            self._workers.append(worker)
        worker.start()
        return worker

    def join(self, timeout: float | None = None) -> None:
        with self._workers_lock:
            workers = list(self._workers)
        for worker in workers:
            worker.join(timeout)

    def rerun(self, classification: Classification) -> bool:
        """Rebuild and/or restart; failures are logged, never raised."""
        with self._session.rebuilding(), self._watcher.paused():
            logger.info("change detected [%s]", classification.describe())
            try:
                if classification.frontend:
                    killed = self._runner.kill_helpers()
                    if killed:
                        logger.debug("cancelled %d running build commands", killed)
                    self._builder.build(self._session)
                if classification.backend:
                    self._restart_backend()
            except (DevloopError, OSError) as exc:
                logger.error("rerun failed:\n%s", exc)
                return False
            self._notifier.send_reload_signal()
            return True
