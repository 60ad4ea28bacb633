from __future__ import annotations
import logging
import sys


def setup_logging(debug: bool = False) -> logging.Logger:
    """Console logging for the adapter process; safe to call more than once."""
    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG if debug else logging.INFO)

    formatter = logging.Formatter(
        fmt="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    if not any(isinstance(h, logging.StreamHandler) and h.stream is sys.stdout for h in logger.handlers):
        console = logging.StreamHandler(sys.stdout)
        console.setFormatter(formatter)
        logger.addHandler(console)

    # the client logs every request at INFO
    logging.getLogger("elastic_transport").setLevel(logging.DEBUG if debug else logging.WARNING)
    return logger
