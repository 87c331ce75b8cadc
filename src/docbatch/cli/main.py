from __future__ import annotations

import argparse
import logging
from pathlib import Path

from rich.console import Console

from docbatch.cli.commands import (
    control_cmd,
    init_cmd,
    notifications_cmd,
    status_cmd,
    submit_cmd,
    web_cmd,
)
from docbatch.cli.context import CLIContext
from docbatch.core.config import load_paths
from docbatch.core.errors import DocbatchError
from docbatch.core.logging import configure_logging

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="docbatch",
        description="Batch document processing engine",
    )
    parser.add_argument(
        "--project-root",
        type=Path,
        default=Path.cwd(),
        help="Project root to use for .docbatch data (default: current working directory)",
    )
    parser.add_argument("-v", "--verbose", action="count", default=0)

    subparsers = parser.add_subparsers(dest="command", required=True)
    init_cmd.register(subparsers)
    submit_cmd.register(subparsers)
    status_cmd.register(subparsers)
    control_cmd.register(subparsers)
    notifications_cmd.register(subparsers)
    web_cmd.register(subparsers)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    configure_logging(args.verbose)
    console = Console()

    paths = load_paths(args.project_root)
    ctx = CLIContext(paths=paths, console=console)

    handler = getattr(args, "handler", None)
    if handler is None:
        parser.print_help()
        return 2

    try:
        return handler(args, ctx)
    except DocbatchError as exc:
        logger.error(str(exc))
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
