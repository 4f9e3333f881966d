from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import pytest

from devloop.core.rerun import BULK_EVENT_THRESHOLD, Classification, RerunLoop, classify
from devloop.core.session import ProjectSession
from devloop.db.store import ProjectStore
from devloop.errors import ToolFailureError
from devloop.models.events import ChangeOp, WatchEvent
from devloop.models.project import STATE_FILENAME, Project, WatchConfig


def _event(root: Path, name: str, op: ChangeOp = ChangeOp.WRITE) -> WatchEvent:
    return WatchEvent(path=(root / name).as_posix(), op=op)


@pytest.mark.parametrize(
    ("names", "expected"),
    [
        (["app.go"], Classification(backend=True)),
        (["styles.css"], Classification(frontend=True)),
        (["app.go", "styles.css"], Classification(frontend=True, backend=True)),
        ([STATE_FILENAME], Classification()),
        (["foo"], Classification()),
        (["app.exe~"], Classification()),
    ],
)
def test_classify(tmp_path: Path, names: list[str], expected: Classification) -> None:
    batch = [_event(tmp_path, name) for name in names]
    assert classify(batch, WatchConfig(), root=tmp_path, state_filename=STATE_FILENAME) == expected


def test_classify_warns_on_unknown_extension(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    with caplog.at_level(logging.WARNING, logger="devloop.core.rerun"):
        result = classify([_event(tmp_path, "notes.xyz")], WatchConfig(), root=tmp_path)

    assert result.any is False
    assert "notes.xyz" in caplog.text


def test_bulk_batches_rebuild_everything(tmp_path: Path) -> None:
    batch = [_event(tmp_path, f"file{index}.xyz") for index in range(BULK_EVENT_THRESHOLD + 5)]
    assert classify(batch, WatchConfig(), root=tmp_path) == Classification(
        frontend=True, backend=True
    )


def test_classify_skips_ignored_prefixes(tmp_path: Path) -> None:
    batch = [
        _event(tmp_path, "app/build/bundle.js"),
        _event(tmp_path, "node_modules/x/index.js"),
        _event(tmp_path, "bindata.go"),
    ]
    result = classify(batch, WatchConfig(), root=tmp_path, ignore=["app/build", "bindata.go"])
    assert result == Classification()


class _FakeWatcher:
    def __init__(self, batches: list[list[WatchEvent]] | None = None) -> None:
        self._batches = batches or []
        self.pauses = 0
        self.paused_now = False

    @contextmanager
    def paused(self) -> Iterator[None]:
        self.pauses += 1
        self.paused_now = True
        try:
            yield
        finally:
            self.paused_now = False

    def batches(self):  # type: ignore[no-untyped-def]
        yield from self._batches


class _FakeBuilder:
    def __init__(self, watcher: _FakeWatcher, fail: bool = False) -> None:
        self.builds = 0
        self._watcher = watcher
        self._fail = fail
        self.paused_during_build = False

    def build(self, session: ProjectSession) -> None:
        del session
        self.builds += 1
        self.paused_during_build = self._watcher.paused_now
        if self._fail:
            raise ToolFailureError("npm ERR!\n")


class _FakeRunner:
    def __init__(self) -> None:
        self.helper_kills = 0

    def kill_helpers(self) -> int:
        self.helper_kills += 1
        return 0


class _FakeNotifier:
    def __init__(self) -> None:
        self.signals = 0

    def send_reload_signal(self) -> None:
        self.signals += 1


def _loop(tmp_path: Path, watcher: _FakeWatcher, *, fail: bool = False):  # type: ignore[no-untyped-def]
    session = ProjectSession(Project(repo="a/demo", dest=str(tmp_path)), ProjectStore())
    builder = _FakeBuilder(watcher, fail=fail)
    runner = _FakeRunner()
    notifier = _FakeNotifier()
    restarts: list[int] = []
    loop = RerunLoop(
        session,
        watcher,  # type: ignore[arg-type]
        builder,  # type: ignore[arg-type]
        runner,  # type: ignore[arg-type]
        notifier,  # type: ignore[arg-type]
        lambda: restarts.append(1),
    )
    return loop, builder, runner, notifier, restarts


def test_frontend_rerun_rebuilds_while_paused(tmp_path: Path) -> None:
    watcher = _FakeWatcher()
    loop, builder, runner, notifier, restarts = _loop(tmp_path, watcher)

    assert loop.rerun(Classification(frontend=True)) is True

    assert builder.builds == 1
    assert builder.paused_during_build is True
    assert runner.helper_kills == 1
    assert restarts == []
    assert notifier.signals == 1
    assert watcher.pauses == 1


def test_backend_rerun_restarts(tmp_path: Path) -> None:
    loop, builder, _, notifier, restarts = _loop(tmp_path, _FakeWatcher())

    assert loop.rerun(Classification(backend=True)) is True

    assert builder.builds == 0
    assert restarts == [1]
    assert notifier.signals == 1


def test_failed_rerun_is_logged_and_not_signalled(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    loop, _, _, notifier, restarts = _loop(tmp_path, _FakeWatcher(), fail=True)

    with caplog.at_level(logging.ERROR, logger="devloop.core.rerun"):
        assert loop.rerun(Classification(frontend=True, backend=True)) is False

    assert notifier.signals == 0
    assert restarts == []
    assert "npm ERR!" in caplog.text


def test_run_loop_dispatches_until_watcher_closes(tmp_path: Path) -> None:
    root = tmp_path.resolve()
    watcher = _FakeWatcher(
        [
            [_event(root, "main.go")],
            [_event(root, STATE_FILENAME)],
        ]
    )
    loop, _, _, notifier, restarts = _loop(tmp_path, watcher)

    loop.run_loop()
    loop.join(timeout=5)

    assert restarts == [1]
    assert notifier.signals == 1
