"""Error taxonomy for devloop operations."""

from __future__ import annotations


class DevloopError(Exception):
    """Base class for every error surfaced by the core."""


class NotFoundError(DevloopError):
    """Project directory or state file is missing."""


class InvalidArchiveError(DevloopError):
    """Downloaded archive is empty or has an unexpected layout."""


class UnsupportedProjectError(DevloopError):
    """Archive does not contain a recognized module descriptor."""


class ToolFailureError(DevloopError):
    """An external tool exited with a non-zero status.

    The message is exactly the tool's captured output.
    """

    def __init__(self, output: str, *, command: str | None = None, returncode: int | None = None):
        super().__init__(output)
        self.output = output
        self.command = command
        self.returncode = returncode


class PathSafetyError(DevloopError, ValueError):
    """A path would resolve outside of the project destination."""


class WatcherFailureError(DevloopError):
    """The file watcher could not be initialized."""


class DownloadError(DevloopError):
    """The project archive could not be fetched."""
