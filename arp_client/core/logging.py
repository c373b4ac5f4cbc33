from __future__ import annotations

import logging
import sys
from typing import TextIO

from arp_client.core.logger import configure_structlog

NOISY_LOGGERS = ("httpx", "httpcore", "asyncio")


def configure_logging(level: str = "INFO", stream: TextIO | None = None) -> None:
    """Route structured logs to stderr so stdout stays free for the transcript."""
    log_level = getattr(logging, str(level or "INFO").upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=stream or sys.stderr,
        level=log_level,
        force=True,
    )
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))
    configure_structlog()
