from __future__ import annotations

import logging

from tes_api.logging_setup import configure_logging


def test_configure_logging_installs_one_handler() -> None:
    logger = logging.getLogger("tes_api")

    configure_logging("debug")
    configure_logging(logging.WARNING)

    named = [handler for handler in logger.handlers if handler.get_name() == "tes_api.console"]
    assert len(named) == 1
    assert logger.level == logging.WARNING
