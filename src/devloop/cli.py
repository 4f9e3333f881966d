"""Command line entrypoint."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from pydantic import ValidationError

from devloop.config import Settings
from devloop.core.project_manager import InstallInput, ProjectManager
from devloop.errors import DevloopError
from devloop.log_util import configure_logging


def parse_repo(value: str) -> tuple[str, str]:
    """Split ``owner/repo@version`` into its repository and version."""
    repo, _, version = value.partition("@")
    return repo, version


def parse_replacements(values: list[str]) -> dict[str, str]:
    replacements: dict[str, str] = {}
    for value in values:
        old, sep, new = value.partition("=")
        if not sep or not old:
            msg = f"invalid replacement <{value}>, expected old=new"
            raise argparse.ArgumentTypeError(msg)
        replacements[old] = new
    return replacements


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="devloop",
        description="Install, build, run and live reload Go web projects",
    )
    parser.add_argument("--log-level", default=None, help="Logging level (default: INFO)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    install = subparsers.add_parser("install", help="Download and unpack a repository")
    install.add_argument("repo", help="Repository as owner/name, optionally @version")
    install.add_argument("dest", nargs="?", default=None, help="Destination directory")
    install.add_argument("--module", default="", help="Rename the Go module on install")
    install.add_argument(
        "--replace",
        action="append",
        default=[],
        metavar="OLD=NEW",
        help="Raw text replacement applied to every file (repeat for multiple)",
    )

    for name, help_text in (
        ("run", "Build, start and watch a project"),
        ("clean", "Remove files created by builds"),
        ("uninstall", "Remove every installed and built file"),
    ):
        command = subparsers.add_parser(name, help=help_text)
        command.add_argument("path", nargs="?", default=".", help="Project directory")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    settings = Settings.from_env()
    configure_logging(args.log_level or settings.log_level)
    manager = ProjectManager(settings)

    try:
        if args.command == "install":
            repo, version = parse_repo(args.repo)
            try:
                replacements = parse_replacements(args.replace)
            except argparse.ArgumentTypeError as exc:
                parser.error(str(exc))
            project = manager.install(
                InstallInput(
                    repo=repo,
                    version=version,
                    dest=Path(args.dest) if args.dest else None,
                    module=args.module,
                    replacements=replacements,
                )
            )
            sys.stdout.write(f"{project.dest}\n")
            return 0

        path = Path(args.path)
        if args.command == "run":
            manager.run(path, stdout=sys.stdout, stderr=sys.stderr)
        elif args.command == "clean":
            manager.clean(path)
        elif args.command == "uninstall":
            manager.uninstall(path)
        else:
            raise ValueError(f"Unsupported command: {args.command}")
    except (DevloopError, ValidationError, OSError) as exc:
        sys.stderr.write(f"{exc}\n")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
