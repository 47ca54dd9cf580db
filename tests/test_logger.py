from __future__ import annotations

import logging

from reassignment.utils.logger import get_logger


def test_get_logger_names_module_and_quiets_client_libraries() -> None:
    logger = get_logger("reassignment.services.reassignment_service")

    assert logger.name == "reassignment.services.reassignment_service"
    assert logging.getLogger("httpx").level == logging.WARNING
    assert logging.getLogger("uvicorn.access").level == logging.WARNING
