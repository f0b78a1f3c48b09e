from __future__ import annotations

import logging
import sys

_HANDLER_NAME = "tes_api.console"


def configure_logging(level: str | int = logging.INFO) -> None:
    """Attach one stderr handler to the `tes_api` logger tree.

    Safe to call more than once (the app factory calls it per app instance).
    """
    logger = logging.getLogger("tes_api")
    logger.setLevel(level if isinstance(level, int) else level.upper())

    if any(handler.get_name() == _HANDLER_NAME for handler in logger.handlers):
        return

    handler = logging.StreamHandler(sys.stderr)
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    logger.addHandler(handler)
