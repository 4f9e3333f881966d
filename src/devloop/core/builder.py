"""Build strategy selection and execution for an installed project."""

from __future__ import annotations

import hashlib
import json
import logging
import shutil
import sys
import threading
from collections.abc import Callable
from pathlib import Path

from devloop.core.inline_parser import ParseResult, parse_dir
from devloop.core.process_runner import ProcessRunner
from devloop.core.session import ProjectSession
from devloop.core.watcher import FileWatcher
from devloop.errors import ToolFailureError
from devloop.models.events import ChangeOp, WatchEvent

logger = logging.getLogger(__name__)

ACTION_BUILD = "build"
ACTION_RUN = "run"
MANIFEST_NAME = "package.json"
DEPENDENCY_CACHE = "node_modules"
BUNDLER = "go-bindata"
BUNDLE_OUTPUT = "bindata.go"

type WatcherFactory = Callable[[], FileWatcher]


def script_extension() -> str:
    return ".bat" if sys.platform == "win32" else ".sh"


def action_command(root: Path, action: str) -> list[str] | None:
    """Return the command for a native script or makefile target, if any.

    ``<action>.sh``/``<action>.bat`` wins over a ``Makefile``/``Makefile.win``.
    """
    if not root.is_dir():
        return None

    script = root / f"{action}{script_extension()}"
    if script.exists():
        return [str(script)]

    makefile = root / "Makefile"
    if not makefile.exists():
        makefile = root / "Makefile.win"
    if makefile.exists():
        make = shutil.which("make") or shutil.which("nmake")
        if make:
            return [make, action]
    return None


def find_manifests(root: Path) -> list[Path]:
    """Every package manifest under ``root`` outside dependency caches, shallowest first."""
    manifests = [
        path
        for path in root.rglob(MANIFEST_NAME)
        if path.is_file() and DEPENDENCY_CACHE not in path.relative_to(root).parts
        and ".git" not in path.relative_to(root).parts
    ]
    return sorted(manifests, key=lambda path: (len(path.relative_to(root).parts), path.as_posix()))


class Builder:
    """Choose and run a project's build strategy.

    Paths created while building are appended to the build ledger and paths
    removed are dropped from it, so ``clean`` knows what to delete.
    """

    def __init__(
        self,
        runner: ProcessRunner,
        *,
        watcher_factory: WatcherFactory | None = None,
        watch_interval: float = 1.0,
    ) -> None:
        self._runner = runner
        self._watcher_factory = watcher_factory or (
            lambda: FileWatcher(interval=watch_interval, follow_new_dirs=False)
        )

    def build(self, session: ProjectSession) -> None:
        watcher = self._watcher_factory()
        watcher.watch(session.project.root)
        tracker = threading.Thread(
            target=self._track_until_closed,
            args=(session, watcher),
            name="devloop-build-ledger",
            daemon=True,
        )
        tracker.start()
        try:
            self._run_strategies(session)
        finally:
            watcher.close()
            tracker.join()
            session.save()

    def _run_strategies(self, session: ProjectSession) -> None:
        project = session.project
        root = project.root

        command = action_command(root, ACTION_BUILD)
        if command is not None:
            logger.info("building %s with %s", project.name, " ".join(command))
            self._runner.run_to_completion(command, root)
            return

        self._build_manifests(session)

        if project.disable_inline_commands:
            return
        self._run_inline(session, parse_dir(root))

    def _build_manifests(self, session: ProjectSession) -> None:
        project = session.project
        manifests = find_manifests(project.root)
        if not manifests:
            return

        npm = shutil.which("npm")
        if npm is None:
            msg = f"project <{project.name}> requires nodejs to be installed"
            raise ToolFailureError(msg)

        for manifest in manifests:
            directory = manifest.parent
            content = manifest.read_bytes()

            if not project.disable_npm_install:
                changed = session.set_manifest_md5(
                    project.rel(manifest), hashlib.md5(content).hexdigest()
                )
                if changed or not (directory / DEPENDENCY_CACHE).exists():
                    logger.info("installing dependencies in %s", directory)
                    self._runner.run_to_completion([npm, "install"], directory)

            script = project.npm_build_script
            if not script:
                continue
            try:
                scripts = json.loads(content).get("scripts") or {}
            except (json.JSONDecodeError, AttributeError) as exc:
                msg = f"{ACTION_BUILD}: {MANIFEST_NAME}: {exc}"
                raise ToolFailureError(msg) from exc
            if script in scripts:
                logger.info("running npm script %s in %s", script, directory)
                self._runner.run_to_completion([npm, "run", script], directory)

    def _run_inline(self, session: ProjectSession, parsed: ParseResult) -> None:
        root = session.project.root
        delegated: set[str] = set()

        for command in parsed.commands:
            work_dir = root / command.dir if command.dir else root
            if not work_dir.is_dir():
                work_dir = root
            if command.name == BUNDLER:
                for asset_dir in parsed.asset_dirs:
                    if asset_dir.should_generate and _bundle_arg(asset_dir.dir) in command.args:
                        delegated.add(asset_dir.dir)
            logger.info("running inline command: %s", " ".join(command.argv))
            try:
                self._runner.run_to_completion(command.argv, work_dir)
            except ToolFailureError as exc:
                msg = f"command <{command.name}> failed:\n{exc.output}"
                raise ToolFailureError(msg, command=exc.command, returncode=exc.returncode) from exc

        targets = [
            _bundle_arg(asset_dir.dir)
            for asset_dir in parsed.asset_dirs
            if asset_dir.should_generate and asset_dir.dir not in delegated
        ]
        if targets:
            logger.info("bundling assets: %s", ", ".join(targets))
            self._runner.run_to_completion([BUNDLER, "-o", BUNDLE_OUTPUT, *targets], root)

    @staticmethod
    def _track_until_closed(session: ProjectSession, watcher: FileWatcher) -> None:
        for batch in watcher.batches():
            Builder._track(session, batch)

    @staticmethod
    def _track(session: ProjectSession, batch: list[WatchEvent]) -> None:
        project = session.project
        for event in batch:
            name = project.rel(event.path)
            if not name or name.startswith(session.store.filename):
                continue
            if event.op is ChangeOp.CREATE:
                session.add_build_file(name)
            elif event.op in (ChangeOp.REMOVE, ChangeOp.RENAME):
                session.remove_build_file(name)


def _bundle_arg(directory: str) -> str:
    return directory.replace("\\", "/").rstrip("/") + "/..."
