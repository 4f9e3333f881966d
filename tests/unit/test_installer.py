from __future__ import annotations

import io
import zipfile
from pathlib import Path

import httpx
import pytest

from devloop.core.installer import ArchiveInstaller, archive_url, module_path
from devloop.errors import (
    DownloadError,
    InvalidArchiveError,
    PathSafetyError,
    UnsupportedProjectError,
)
from devloop.models.project import Project


def _zip(entries: list[tuple[str, str | None]]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for name, content in entries:
            if content is None:
                archive.writestr(zipfile.ZipInfo(name), "")
            else:
                archive.writestr(name, content)
    return buffer.getvalue()


GO_MOD = "module github.com/kataras/demo\n\ngo 1.21\n"
MAIN_GO = 'package main\n\nimport "github.com/kataras/demo/routes"\n'


def _archive(*extra: tuple[str, str | None]) -> bytes:
    return _zip(
        [
            ("demo-master/", None),
            ("demo-master/routes/", None),
            ("demo-master/routes/routes.go", "package routes\n"),
            ("demo-master/main.go", MAIN_GO),
            *extra,
            ("demo-master/go.mod", GO_MOD),
        ]
    )


def _project(tmp_path: Path, **fields: object) -> Project:
    return Project(repo="kataras/demo", dest=str(tmp_path / "demo"), **fields)


def test_module_path() -> None:
    assert module_path(GO_MOD) == "github.com/kataras/demo"
    assert module_path('// header\nmodule "example.com/x" // trailing\n') == "example.com/x"
    assert module_path("go 1.21\n") == ""


def test_archive_url() -> None:
    assert (
        archive_url("https://github.com/", "kataras/iris", "v12")
        == "https://github.com/kataras/iris/archive/v12.zip"
    )


def test_extract_records_ledger_and_keeps_module(tmp_path: Path) -> None:
    project = _project(tmp_path)
    seen: list[str] = []

    recorded = ArchiveInstaller().extract(project, _archive(), seen.append)

    assert recorded == seen == ["routes", "routes/routes.go", "main.go", "go.mod"]
    assert project.module == "github.com/kataras/demo"
    assert (project.root / "main.go").read_text(encoding="utf-8") == MAIN_GO


def test_extract_renames_module(tmp_path: Path) -> None:
    project = _project(tmp_path, module="example.com/mine")

    ArchiveInstaller().extract(project, _archive())

    assert (project.root / "go.mod").read_text(encoding="utf-8").startswith(
        "module example.com/mine\n"
    )
    assert '"example.com/mine/routes"' in (project.root / "main.go").read_text(encoding="utf-8")


def test_owner_repo_replacement_renames_module(tmp_path: Path) -> None:
    project = _project(tmp_path, replacements={"kataras/demo": "me/app"})

    ArchiveInstaller().extract(project, _archive())

    assert project.module == "github.com/me/app"
    assert '"github.com/me/app/routes"' in (project.root / "main.go").read_text(encoding="utf-8")


@pytest.mark.parametrize(
    "data",
    [
        _zip([]),
        _zip([("demo-master/main.go", MAIN_GO)]),
        _zip([("other-master/", None), ("other-master/go.mod", GO_MOD)]),
        b"not a zip",
    ],
)
def test_extract_rejects_bad_layout(tmp_path: Path, data: bytes) -> None:
    with pytest.raises(InvalidArchiveError):
        ArchiveInstaller().extract(_project(tmp_path), data)


def test_extract_requires_module_descriptor(tmp_path: Path) -> None:
    data = _zip([("demo-master/", None), ("demo-master/main.go", MAIN_GO)])
    with pytest.raises(UnsupportedProjectError, match="is not a go module"):
        ArchiveInstaller().extract(_project(tmp_path), data)


def test_extract_rejects_escaping_entries(tmp_path: Path) -> None:
    data = _archive(("demo-master/../../evil.txt", "owned"))

    with pytest.raises(PathSafetyError):
        ArchiveInstaller().extract(_project(tmp_path), data)

    assert not (tmp_path / "evil.txt").exists()
    assert not (tmp_path.parent / "evil.txt").exists()


def test_download_uses_archive_url(tmp_path: Path) -> None:
    requested: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requested.append(str(request.url))
        return httpx.Response(200, content=b"zip-bytes")

    installer = ArchiveInstaller(
        base_url="https://example.test",
        transport=httpx.MockTransport(handler),
    )
    assert installer.download(_project(tmp_path, version="v1.2.0")) == b"zip-bytes"
    assert requested == ["https://example.test/kataras/demo/archive/v1.2.0.zip"]


def test_download_reports_missing_version(tmp_path: Path) -> None:
    installer = ArchiveInstaller(
        transport=httpx.MockTransport(lambda request: httpx.Response(404)),
    )
    with pytest.raises(DownloadError, match="404"):
        installer.download(_project(tmp_path))
