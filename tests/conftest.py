from __future__ import annotations

from typing import Any

import pytest
from loguru import logger


@pytest.fixture()
def events() -> list[tuple[Any, ...]]:
    return []


@pytest.fixture()
def log_messages():
    """Formatted loguru messages emitted during the test."""
    messages: list[str] = []
    handler_id = logger.add(lambda message: messages.append(str(message).rstrip("\n")), format="{message}")
    yield messages
    logger.remove(handler_id)
