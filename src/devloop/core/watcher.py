"""Recursive filesystem watcher that emits events in timed batches."""

from __future__ import annotations

import logging
import os
import queue
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path

from watchdog.events import (
    DirCreatedEvent,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver, ObservedWatch

from devloop.errors import WatcherFailureError
from devloop.models.events import ChangeOp, WatchEvent

logger = logging.getLogger(__name__)

type DirFilter = Callable[[Path], bool]

# Dependency caches are never watched.
EXCLUDED_DIR_NAMES = frozenset({"node_modules", ".git"})

_OPS = {
    "created": ChangeOp.CREATE,
    "modified": ChangeOp.WRITE,
    "deleted": ChangeOp.REMOVE,
}

_CLOSED = object()


def _content_stamp(result: os.stat_result) -> tuple[int, int]:
    return result.st_size, result.st_mtime_ns


class _Handler(FileSystemEventHandler):
    def __init__(self, watcher: FileWatcher) -> None:
        self._watcher = watcher

    def on_any_event(self, event: FileSystemEvent) -> None:
        self._watcher._on_event(event)


class FileWatcher:
    """Watch a directory tree and deliver changes as batches.

    Events are buffered and moved to the consumer queue once per ``interval``.
    While paused the buffer is dropped instead, so a rebuild's own writes do not
    trigger another rebuild.
    """

    def __init__(
        self,
        *,
        interval: float = 1.0,
        follow_new_dirs: bool = True,
        observer_factory: Callable[[], BaseObserver] = Observer,
    ) -> None:
        self._interval = interval
        self._follow_new_dirs = follow_new_dirs
        self._filters: list[DirFilter] = []
        self._buffer: list[WatchEvent] = []
        self._buffer_lock = threading.Lock()
        self._batches: queue.Queue[list[WatchEvent] | object] = queue.Queue()
        self._paused = False
        self._paused_lock = threading.Lock()
        self._closed = threading.Event()
        self._watches: dict[str, ObservedWatch] = {}
        # Last known content stamp per file, to tell writes from attribute changes.
        self._stamps: dict[str, tuple[int, int]] = {}
        self._stamps_lock = threading.Lock()
        self._handler = _Handler(self)
        try:
            self._observer = observer_factory()
        except OSError as exc:
            msg = f"watcher: {exc}"
            raise WatcherFailureError(msg) from exc
        self._ticker = threading.Thread(target=self._tick, name="devloop-watch-ticker", daemon=True)
        self._started = False

    @property
    def dirs(self) -> list[str]:
        return list(self._watches)

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def add_filter(self, predicate: DirFilter) -> None:
        """Only directories for which every filter returns True are watched."""
        self._filters.append(predicate)

    def watch(self, root: Path) -> None:
        """Register every allowed directory under ``root`` and start watching."""
        root = root.resolve()
        if not root.is_dir():
            msg = f"watcher: {root}: not a directory"
            raise WatcherFailureError(msg)
        for directory in self._walk(root):
            self._schedule(directory)
        if not self._started:
            try:
                self._observer.start()
            except OSError as exc:
                msg = f"watcher: {root}: {exc}"
                raise WatcherFailureError(msg) from exc
            self._ticker.start()
            self._started = True

    def pause(self) -> bool:
        with self._paused_lock:
            if self._paused:
                return False
            self._paused = True
            return True

    def resume(self) -> bool:
        """Resume emission; events recorded while paused are discarded."""
        with self._paused_lock:
            if not self._paused:
                return False
            with self._buffer_lock:
                self._buffer.clear()
            self._paused = False
            return True

    @property
    def is_paused(self) -> bool:
        with self._paused_lock:
            return self._paused

    @contextmanager
    def paused(self) -> Iterator[None]:
        changed = self.pause()
        try:
            yield
        finally:
            if changed:
                self.resume()

    def batches(self) -> Iterator[list[WatchEvent]]:
        """Yield event batches until ``close``; buffered events are flushed first."""
        while True:
            item = self._batches.get()
            if item is _CLOSED:
                return
            yield item  # type: ignore[misc]

    def next_batch(self, timeout: float | None = None) -> list[WatchEvent] | None:
        """Return the next batch, or None on timeout or after close."""
        try:
            item = self._batches.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _CLOSED:
            self._batches.put(_CLOSED)
            return None
        return item  # type: ignore[return-value]

    def flush(self) -> None:
        """Emit the buffered events now, unless paused."""
        with self._buffer_lock:
            events, self._buffer = self._buffer, []
        if not events:
            return
        if self.is_paused:
            logger.debug("watcher paused, dropping %d events", len(events))
            return
        self._batches.put(events)

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        if self._started:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._ticker.join(timeout=self._interval + 1)
        with self._buffer_lock:
            events, self._buffer = self._buffer, []
        if events:
            self._batches.put(events)
        self._batches.put(_CLOSED)

    def __enter__(self) -> FileWatcher:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _tick(self) -> None:
        while not self._closed.wait(self._interval):
            self.flush()

    def _allowed(self, directory: Path) -> bool:
        if directory.name in EXCLUDED_DIR_NAMES:
            return False
        return all(predicate(directory) for predicate in self._filters)

    def _walk(self, root: Path) -> Iterator[Path]:
        if not self._allowed(root):
            return
        yield root
        for current, dirnames, _ in os.walk(root):
            kept = []
            for name in sorted(dirnames):
                path = Path(current) / name
                if self._allowed(path):
                    kept.append(name)
                    yield path
            dirnames[:] = kept

    def _schedule(self, directory: Path) -> None:
        key = directory.as_posix()
        if key in self._watches:
            return
        self._record_stamps(directory)
        try:
            self._watches[key] = self._observer.schedule(
                self._handler, str(directory), recursive=False
            )
        except OSError as exc:
            msg = f"watcher: {directory}: {exc}"
            raise WatcherFailureError(msg) from exc

    def _unschedule(self, directory: str) -> None:
        watch = self._watches.pop(directory, None)
        if watch is None:
            return
        try:
            self._observer.unschedule(watch)
        except (KeyError, OSError):
            logger.debug("watch for %s already gone", directory)

    def _on_event(self, event: FileSystemEvent) -> None:
        if self._closed.is_set():
            return
        src = Path(os.fsdecode(event.src_path)).as_posix()
        events: list[WatchEvent] = []
        if event.event_type == "moved":
            dest = Path(os.fsdecode(event.dest_path)).as_posix()
            events.append(WatchEvent(path=src, op=ChangeOp.RENAME))
            events.append(WatchEvent(path=dest, op=ChangeOp.CREATE))
            if event.is_directory:
                self._unschedule(src)
                self._register_new_dir(Path(dest))
            else:
                self._forget_stamp(src)
                self._content_changed(dest)
        else:
            op = _OPS.get(event.event_type)
            if op is None:
                # opened/closed notifications carry no content change.
                return
            if event.is_directory:
                if op is ChangeOp.WRITE:
                    return
            elif op is ChangeOp.WRITE:
                if not self._content_changed(src):
                    # chmod, chown and other attribute-only changes.
                    return
            elif op is ChangeOp.CREATE:
                self._content_changed(src)
            else:
                self._forget_stamp(src)
            events.append(WatchEvent(path=src, op=op))
            if isinstance(event, DirCreatedEvent):
                self._register_new_dir(Path(src))
            elif event.is_directory and op is ChangeOp.REMOVE:
                self._unschedule(src)
        with self._buffer_lock:
            self._buffer.extend(events)

    def _record_stamps(self, directory: Path) -> None:
        stamps: dict[str, tuple[int, int]] = {}
        try:
            with os.scandir(directory) as entries:
                for entry in entries:
                    try:
                        if entry.is_file(follow_symlinks=False):
                            stamps[Path(entry.path).as_posix()] = _content_stamp(
                                entry.stat(follow_symlinks=False)
                            )
                    except OSError:
                        continue
        except OSError as exc:
            logger.debug("could not stat files in %s: %s", directory, exc)
            return
        with self._stamps_lock:
            self._stamps.update(stamps)

    def _content_changed(self, path: str) -> bool:
        """Update the stamp of ``path``; False when size and mtime are unchanged."""
        try:
            stamp = _content_stamp(os.stat(path, follow_symlinks=False))
        except OSError:
            self._forget_stamp(path)
            return True
        with self._stamps_lock:
            if self._stamps.get(path) == stamp:
                return False
            self._stamps[path] = stamp
            return True

    def _forget_stamp(self, path: str) -> None:
        with self._stamps_lock:
            self._stamps.pop(path, None)

    def _register_new_dir(self, directory: Path) -> None:
        if not self._follow_new_dirs or not self._started or not directory.is_dir():
            return
        try:
            for path in self._walk(directory):
                self._schedule(path)
        except WatcherFailureError:
            logger.warning("could not watch new directory %s", directory)
