"""Filesystem change events emitted by the watcher."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import PurePosixPath


class ChangeOp(str, Enum):
    """Kinds of filesystem changes forwarded to consumers."""

    CREATE = "create"
    WRITE = "write"
    REMOVE = "remove"
    RENAME = "rename"


@dataclass(slots=True, frozen=True)
class WatchEvent:
    """One filesystem change, with an absolute slash-separated path."""

    path: str
    op: ChangeOp

    @property
    def ext(self) -> str:
        """Extension including the dot, or "" for names without one."""
        name = PurePosixPath(self.path).name
        idx = name.rfind(".")
        if idx > 0 and idx < len(name) - 1:
            return name[idx:]
        return ""
