from __future__ import annotations

import logging

from rich.logging import RichHandler

_LEVELS = {0: logging.WARNING, 1: logging.INFO}


def configure_logging(verbosity: int = 0) -> None:
    """Install a rich console handler on the root logger.

    ``verbosity`` follows the CLI ``-v`` count: 0 warnings, 1 info, 2+ debug.
    """
    level = _LEVELS.get(max(0, int(verbosity)), logging.DEBUG)
    logging.basicConfig(
        level=level,
        format="%(name)s: %(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
        force=True,
    )
