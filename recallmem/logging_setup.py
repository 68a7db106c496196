from __future__ import annotations

import logging
import sys


def configure_logging(level: str = "INFO") -> None:
    # stderr only: stdout carries the stdio JSON-RPC stream.
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
