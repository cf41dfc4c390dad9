"""Console logging for the CLI."""

from __future__ import annotations

import logging
import sys


class _ThirdPartyNoiseFilter(logging.Filter):
    """Keep jobtasks records; let other libraries through only at ERROR+."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.name.startswith("jobtasks"):
            return True
        return record.levelno >= logging.ERROR


def setup_logging(level: str = "WARNING") -> None:
    """Configure the root logger unless the host application already did."""

    root = logging.getLogger()
    if root.handlers:
        return

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ),
    )
    handler.addFilter(_ThirdPartyNoiseFilter())
    root.addHandler(handler)
    root.setLevel(level.upper())
