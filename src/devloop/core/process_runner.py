"""Child process lifecycle: process groups, supervision and group-wide kill."""

from __future__ import annotations

import errno
import logging
import os
import shutil
import signal
import subprocess
import sys
import threading
from collections import deque
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Protocol

from devloop.errors import ToolFailureError

logger = logging.getLogger(__name__)

IS_WINDOWS = sys.platform == "win32"

# Helper executables fetched on demand the first time they are missing.
HELPER_FETCH_COMMANDS: dict[str, tuple[str, ...]] = {
    "go-bindata": ("go", "install", "github.com/go-bindata/go-bindata/...@latest"),
}


@dataclass(slots=True)
class ProcessHandle:
    """A started child process and the group it leads."""

    process: subprocess.Popen[str]
    command: tuple[str, ...]
    work_dir: Path
    reader: threading.Thread | None = field(default=None, repr=False)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> int | None:
        return self.process.poll()

    @property
    def running(self) -> bool:
        return self.process.poll() is None


class ProcessKiller(Protocol):
    def popen_options(self) -> dict[str, object]: ...

    def kill(self, process: subprocess.Popen[str]) -> None: ...


class PosixKiller:
    """Signal the whole process group led by the child."""

    def popen_options(self) -> dict[str, object]:
        return {"start_new_session": True}

    def kill(self, process: subprocess.Popen[str]) -> None:
        # The group id is the leader's pid and outlives the leader itself.
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            return
        except PermissionError:
            if process.poll() is None:
                process.kill()


class WindowsKiller:
    """Terminate the process tree with taskkill."""

    def popen_options(self) -> dict[str, object]:
        return {"creationflags": getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0)}

    def kill(self, process: subprocess.Popen[str]) -> None:
        subprocess.run(
            ["TASKKILL", "/T", "/F", "/PID", str(process.pid)],
            check=False,
            capture_output=True,
            text=True,
        )


def default_killer() -> ProcessKiller:
    return WindowsKiller() if IS_WINDOWS else PosixKiller()


def format_executable(name: str) -> str:
    """Append the platform's executable suffix to ``name``."""
    if IS_WINDOWS and not name.endswith(".exe"):
        return f"{name}.exe"
    return name


def is_inside_container() -> bool:
    return Path("/.dockerenv").exists()


class ProcessRunner:
    """Start, supervise and kill child processes.

    Every child leads its own process group so ``kill`` takes its descendants
    down with it. Short-lived helpers started through ``run_to_completion`` are
    tracked until they exit so a rebuild can cancel them with ``kill_helpers``.
    """

    def __init__(
        self,
        *,
        killer: ProcessKiller | None = None,
        max_log_lines: int = 1000,
        helper_fetch_commands: dict[str, tuple[str, ...]] | None = None,
    ) -> None:
        self._killer = killer if killer is not None else default_killer()
        self._logs: deque[str] = deque(maxlen=max_log_lines)
        self._logs_lock = threading.Lock()
        self._helpers: dict[int, ProcessHandle] = {}
        self._helpers_lock = threading.Lock()
        self._helper_fetch_commands = (
            dict(HELPER_FETCH_COMMANDS) if helper_fetch_commands is None else helper_fetch_commands
        )

    def start(
        self,
        work_dir: Path,
        command: Sequence[str],
        *,
        stdout: IO[str] | None = None,
        stderr: IO[str] | None = None,
        stdin: IO[str] | int | None = None,
    ) -> ProcessHandle:
        """Start ``command`` detached into its own process group.

        Without ``stdout`` the combined output is captured into the log buffer.
        """
        capture = stdout is None
        process = subprocess.Popen(
            list(command),
            cwd=work_dir,
            stdin=stdin,
            stdout=subprocess.PIPE if capture else stdout,
            stderr=subprocess.STDOUT if capture else (stderr if stderr is not None else stdout),
            text=True,
            bufsize=1,
            **self._killer.popen_options(),
        )
        handle = ProcessHandle(process=process, command=tuple(command), work_dir=work_dir)
        if capture:
            handle.reader = self._start_reader(process)
        logger.debug("started %s (pid %s) in %s", " ".join(command), process.pid, work_dir)
        return handle

    def start_executable(
        self,
        work_dir: Path,
        name: str,
        *,
        stdout: IO[str] | None = None,
        stderr: IO[str] | None = None,
    ) -> ProcessHandle:
        """Start the compiled project binary ``name`` located in ``work_dir``."""
        binary = format_executable(name)
        if is_inside_container() and not IS_WINDOWS:
            try:
                return self._start_with_terminal(work_dir, binary, stdout=stdout, stderr=stderr)
            except PermissionError:
                logger.debug("terminal allocation not permitted, starting %s directly", binary)
            except OSError as exc:
                if exc.errno != errno.EPERM:
                    raise
                logger.debug("terminal allocation not permitted, starting %s directly", binary)
        return self.start(work_dir, [str(work_dir / binary)], stdout=stdout, stderr=stderr)

    def run_to_completion(self, command: Sequence[str], work_dir: Path) -> str:
        """Run ``command`` and return its combined output.

        A non-zero exit raises ``ToolFailureError`` whose message is exactly the
        captured output. A missing helper listed in ``HELPER_FETCH_COMMANDS`` is
        fetched once and the command retried once.
        """
        name = command[0]
        fetch = self._helper_fetch_commands.get(name)
        if fetch is not None and shutil.which(name) is None:
            logger.info("%s not found, fetching it with %s", name, " ".join(fetch))
            self._run(fetch, work_dir)
        return self._run(command, work_dir)

    def wait(self, handle: ProcessHandle) -> int:
        returncode = handle.process.wait()
        if handle.reader is not None and handle.reader.is_alive():
            handle.reader.join(timeout=1.0)
        return returncode

    def kill(self, handle: ProcessHandle | None) -> None:
        """Forcefully kill ``handle`` and every process in its group."""
        if handle is None:
            return
        self._killer.kill(handle.process)
        try:
            handle.process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            logger.warning("process %s did not exit after kill", handle.pid)
        with self._helpers_lock:
            self._helpers.pop(handle.pid, None)

    def kill_helpers(self) -> int:
        """Kill every build helper still running; returns how many were killed."""
        with self._helpers_lock:
            handles = list(self._helpers.values())
            self._helpers.clear()
        for handle in handles:
            self.kill(handle)
        return len(handles)

    def running_helpers(self) -> list[ProcessHandle]:
        with self._helpers_lock:
            return [handle for handle in self._helpers.values() if handle.running]

    def logs(self, *, limit: int | None = None) -> list[str]:
        """Return the captured output lines, the last ``limit`` of them if given."""
        with self._logs_lock:
            entries = list(self._logs)
        if limit is not None and limit > 0:
            return entries[-limit:]
        return entries

    def _run(self, command: Sequence[str], work_dir: Path) -> str:
        try:
            process = subprocess.Popen(
                list(command),
                cwd=work_dir,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                **self._killer.popen_options(),
            )
        except FileNotFoundError as exc:
            raise ToolFailureError(
                f"{command[0]}: executable not found",
                command=" ".join(command),
            ) from exc
        handle = ProcessHandle(process=process, command=tuple(command), work_dir=work_dir)
        with self._helpers_lock:
            self._helpers[process.pid] = handle
        try:
            output, _ = process.communicate()
        finally:
            with self._helpers_lock:
                self._helpers.pop(process.pid, None)
        output = output or ""
        if process.returncode != 0:
            raise ToolFailureError(
                output,
                command=" ".join(command),
                returncode=process.returncode,
            )
        return output

    def _start_with_terminal(
        self,
        work_dir: Path,
        binary: str,
        *,
        stdout: IO[str] | None,
        stderr: IO[str] | None,
    ) -> ProcessHandle:
        import pty

        primary, secondary = pty.openpty()
        try:
            return self.start(
                work_dir,
                ["/bin/sh", "-c", f"./{binary}"],
                stdout=stdout,
                stderr=stderr,
                stdin=secondary,  # type: ignore[arg-type]
            )
        finally:
            os.close(secondary)
            os.close(primary)

    def _start_reader(self, process: subprocess.Popen[str]) -> threading.Thread:
        reader = threading.Thread(
            target=self._drain_output,
            args=(process,),
            daemon=True,
        )
        reader.start()
        return reader

    def _drain_output(self, process: subprocess.Popen[str]) -> None:
        stream = process.stdout
        if stream is None:
            return
        try:
            for line in stream:
                with self._logs_lock:
                    self._logs.append(line.rstrip("\n"))
        finally:
            stream.close()
