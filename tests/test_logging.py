from __future__ import annotations

import io
import logging

import pytest

from runic_market.logging import configure_logging, fmt_fields, get_logger


def test_get_logger_names() -> None:
    assert get_logger().name == "runic_market"
    assert get_logger("auction").name == "runic_market.auction"
    assert get_logger("runic_market.store").name == "runic_market.store"


def test_configure_logging_replaces_its_own_handler() -> None:
    first, second = io.StringIO(), io.StringIO()
    configure_logging("debug", handler=logging.StreamHandler(first), format_string="%(message)s")
    configure_logging("INFO", handler=logging.StreamHandler(second), format_string="%(message)s")

    get_logger("test").info("hello %s", fmt_fields(task_id="T1", agent_id=None, score=1.5))

    assert first.getvalue() == ""
    assert second.getvalue().strip() == "hello task_id=T1 score=1.5"


def test_unknown_level_rejected() -> None:
    with pytest.raises(ValueError):
        configure_logging("LOUD", handler=logging.StreamHandler(io.StringIO()))
