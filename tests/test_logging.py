"""
Tests for structured logging output.
"""
import json
import logging
from typing import Any

import pytest
import structlog

from storefront.config import Settings
from storefront.monitoring.logging import setup_logging


def last_record(capsys: Any) -> dict:
    lines = [line for line in capsys.readouterr().out.splitlines() if line.strip()]
    return json.loads(lines[-1])


class TestSetupLogging:
    """Log lines are rendered as a single flat JSON object."""

    @pytest.mark.unit
    def test_structlog_event_rendered_once(self, test_settings: Settings, capsys: Any) -> None:
        setup_logging(test_settings)

        structlog.get_logger("storefront.orders").warning("order_paid", order_id="ORD-42")

        record = last_record(capsys)
        assert record["message"] == "order_paid"
        assert record["level"] == "WARNING"
        assert record["logger"] == "storefront.orders"
        assert record["order_id"] == "ORD-42"
        assert record["app_name"] == test_settings.app_name
        assert record["@timestamp"]

    @pytest.mark.unit
    def test_stdlib_records_share_the_shape(self, test_settings: Settings, capsys: Any) -> None:
        setup_logging(test_settings)

        logging.getLogger("uvicorn.error").warning("server shutting down")

        record = last_record(capsys)
        assert record["message"] == "server shutting down"
        assert record["level"] == "WARNING"
        assert record["logger"] == "uvicorn.error"
        assert record["@timestamp"]
