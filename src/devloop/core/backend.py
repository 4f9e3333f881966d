"""Supervise the project's long-running backend process."""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import IO

from devloop.core.builder import ACTION_RUN, action_command
from devloop.core.process_runner import ProcessHandle, ProcessRunner, format_executable
from devloop.errors import ToolFailureError
from devloop.models.project import Project

logger = logging.getLogger(__name__)

# Captured backend output included when it exits on its own.
OUTPUT_TAIL_LINES = 20


def compile_command(binary_name: str) -> list[str]:
    return ["go", "build", "-o", format_executable(binary_name), "."]


class BackendSupervisor:
    """Start, restart and stop the backend, and wait for it in ``supervise``.

    A restart replaces the current process; ``supervise`` keeps waiting on the
    replacement instead of returning. When ``restartable`` is False an exit on
    its own ends supervision.
    """

    def __init__(
        self,
        project: Project,
        runner: ProcessRunner,
        *,
        restartable: bool = True,
        stdout: IO[str] | None = None,
        stderr: IO[str] | None = None,
    ) -> None:
        self._project = project
        self._runner = runner
        self._restartable = restartable
        self._stdout = stdout
        self._stderr = stderr
        self._handle: ProcessHandle | None = None
        self._generation = 0
        self._stopped = False
        self._condition = threading.Condition()
        self._restart_lock = threading.Lock()

    @property
    def handle(self) -> ProcessHandle | None:
        with self._condition:
            return self._handle

    @property
    def stopped(self) -> bool:
        with self._condition:
            return self._stopped

    def start(self) -> ProcessHandle:
        """Compile if needed and start the backend."""
        handle = self._launch(self._project.root)
        with self._condition:
            if self._stopped:
                self._runner.kill(handle)
                return handle
            self._handle = handle
            self._generation += 1
            self._condition.notify_all()
        logger.info("backend started (pid %s)", handle.pid)
        return handle

    def restart(self) -> ProcessHandle:
        with self._restart_lock:
            self._runner.kill(self.handle)
            return self.start()

    def stop(self) -> None:
        with self._condition:
            self._stopped = True
            handle = self._handle
            self._condition.notify_all()
        self._runner.kill(handle)

    def supervise(self) -> int:
        """Block until the backend is stopped, or exits for good.

        Raises ``ToolFailureError`` when a non-restartable backend exits with a
        non-zero status without being stopped.
        """
        while True:
            with self._condition:
                while self._handle is None and not self._stopped:
                    self._condition.wait()
                handle = self._handle
                if handle is None:
                    return 0
                generation = self._generation
            returncode = self._runner.wait(handle)

            with self._condition:
                if self._stopped:
                    return returncode
                if self._generation != generation:
                    continue
                tail = self._output_tail()
                logger.warning("backend exited with status %s%s", returncode, tail)
                if not self._restartable:
                    if returncode != 0:
                        msg = f"backend exited with status {returncode}{tail}"
                        raise ToolFailureError(msg, returncode=returncode)
                    return returncode
                # Wait for a rerun to bring it back, or for stop.
                while self._generation == generation and not self._stopped:
                    self._condition.wait()
                if self._stopped:
                    return returncode

    def _output_tail(self) -> str:
        if self._stdout is not None:
            return ""
        lines = self._runner.logs(limit=OUTPUT_TAIL_LINES)
        if not lines:
            return ""
        return ":\n" + "\n".join(lines)

    def _launch(self, root: Path) -> ProcessHandle:
        command = action_command(root, ACTION_RUN)
        if command is not None:
            return self._runner.start(root, command, stdout=self._stdout, stderr=self._stderr)
        name = self._project.binary_name
        self._runner.run_to_completion(compile_command(name), root)
        return self._runner.start_executable(root, name, stdout=self._stdout, stderr=self._stderr)
