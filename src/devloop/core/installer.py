"""Download a repository archive and unpack it into a project destination."""

from __future__ import annotations

import io
import logging
import re
import stat
import zipfile
from collections.abc import Callable
from pathlib import PurePosixPath

import httpx

from devloop.errors import (
    DownloadError,
    InvalidArchiveError,
    PathSafetyError,
    UnsupportedProjectError,
)
from devloop.models.project import Project

logger = logging.getLogger(__name__)

MODULE_DESCRIPTOR = "go.mod"
GITHUB_HOST = "github.com/"

_MODULE_LINE = re.compile(r"^\s*module\s+(?P<path>\"[^\"]+\"|`[^`]+`|\S+)", re.MULTILINE)


def module_path(descriptor: str) -> str:
    """Return the module path declared in a ``go.mod`` file, or ""."""
    for line in descriptor.splitlines():
        line = line.split("//", 1)[0]
        match = _MODULE_LINE.match(line)
        if match:
            return match.group("path").strip("\"`")
    return ""


def archive_url(base_url: str, repo: str, version: str) -> str:
    return f"{base_url.rstrip('/')}/{repo.strip('/')}/archive/{version}.zip"


class ArchiveInstaller:
    """Fetch ``<repo>/archive/<version>.zip`` and extract it under dest.

    Every extracted path is recorded through ``on_path`` so uninstall can
    remove exactly what was installed.
    """

    def __init__(
        self,
        *,
        base_url: str = "https://github.com",
        timeout: float = 60.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._base_url = base_url
        self._timeout = timeout
        self._transport = transport

    def download(self, project: Project) -> bytes:
        url = archive_url(self._base_url, project.repo, project.version)
        logger.info("downloading %s", url)
        try:
            with httpx.Client(
                timeout=self._timeout,
                follow_redirects=True,
                transport=self._transport,
            ) as client:
                response = client.get(url)
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            msg = f"resource not available <{url}>: {exc.response.status_code}"
            raise DownloadError(msg) from exc
        except httpx.HTTPError as exc:
            msg = f"download {url}: {exc}"
            raise DownloadError(msg) from exc
        return response.content

    def extract(
        self,
        project: Project,
        data: bytes,
        on_path: Callable[[str], None] | None = None,
    ) -> list[str]:
        """Unpack ``data`` into ``project.dest`` and return the recorded paths.

        The module path is rewritten when ``project.module`` differs from the
        archive's, and ``project.replacements`` are applied to every file.
        """
        try:
            archive = zipfile.ZipFile(io.BytesIO(data))
        except zipfile.BadZipFile as exc:
            msg = f"invalid zip: {exc}"
            raise InvalidArchiveError(msg) from exc

        with archive:
            entries = archive.infolist()
            if not entries:
                msg = "empty zip"
                raise InvalidArchiveError(msg)

            first = entries[0]
            if not first.is_dir():
                msg = f"expected a root folder but got <{first.filename}>"
                raise InvalidArchiveError(msg)
            base = project.repo.rstrip("/").rsplit("/", 1)[-1]
            if base not in first.filename:
                msg = (
                    f"expected root folder to match the repository name <{base}> "
                    f"but got <{first.filename}>"
                )
                raise InvalidArchiveError(msg)
            prefix = first.filename if first.filename.endswith("/") else f"{first.filename}/"

            old_module = self._remote_module(archive, prefix)
            if not old_module:
                msg = (
                    f"project <{project.name}> version <{project.version}> is not a go module, "
                    "please try other version"
                )
                raise UnsupportedProjectError(msg)
            if not project.module:
                project.module = old_module

            rewrite = _Rewriter(project, old_module)
            root = project.root
            root.mkdir(parents=True, exist_ok=True)
            recorded: list[str] = []

            for entry in entries:
                if not entry.filename.startswith(prefix):
                    msg = f"Path escapes project root: {entry.filename}"
                    raise PathSafetyError(msg)
                name = entry.filename[len(prefix) :].rstrip("/")
                if not name:
                    continue
                target = project.resolve(str(PurePosixPath(name)))

                if entry.is_dir():
                    target.mkdir(parents=True, exist_ok=True)
                else:
                    target.parent.mkdir(parents=True, exist_ok=True)
                    contents = rewrite(archive.read(entry))
                    target.write_bytes(contents)
                    mode = stat.S_IMODE(entry.external_attr >> 16)
                    if mode:
                        target.chmod(mode)

                recorded.append(name)
                if on_path is not None:
                    on_path(name)

        logger.info("installed %d paths into %s", len(recorded), root)
        return recorded

    @staticmethod
    def _remote_module(archive: zipfile.ZipFile, prefix: str) -> str:
        descriptor = f"{prefix}{MODULE_DESCRIPTOR}"
        # Names are sorted, so the descriptor is more likely near the end.
        for entry in reversed(archive.infolist()):
            if entry.filename == descriptor:
                return module_path(archive.read(entry).decode("utf-8", errors="replace"))
        return ""


class _Rewriter:
    """Apply the module rename and raw replacements to file contents."""

    def __init__(self, project: Project, old_module: str) -> None:
        self._project = project
        self._old = old_module.encode()
        self._new = project.module.encode()

    def __call__(self, contents: bytes) -> bytes:
        replace_module = self._old != self._new
        replacements = self._project.replacements
        if not replace_module and not replacements:
            return contents

        if replace_module:
            contents = contents.replace(self._old, self._new)
        for old, new in replacements.items():
            if not replace_module and f"{GITHUB_HOST}{old}" == self._project.module:
                # A user/repo replacement renames the module as well.
                self._new = f"{GITHUB_HOST}{new}".encode()
                self._project.module = self._new.decode()
                contents = contents.replace(self._old, self._new)
                replace_module = True
            contents = contents.replace(old.encode(), new.encode())
        return contents
