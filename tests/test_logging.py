"""
Tests for structured logging
"""

import json
import logging

from remit_engine.logging_config import JSONFormatter, log_action, setup_logging


class TestJSONFormatter:
    """Test JSON log output"""

    def test_structured_fields(self):
        logger = logging.getLogger("remit_engine.test_formatter")
        records = []

        class Collect(logging.Handler):
            def emit(self, record):
                records.append(record)

        handler = Collect()
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)
        try:
            log_action(
                logger, "info", "Transfer denied by monthly cap",
                customer_id="cust-1", action="cap_check",
                extra={"requested": "300"}
            )
        finally:
            logger.removeHandler(handler)

        entry = json.loads(JSONFormatter().format(records[0]))

        assert entry["level"] == "INFO"
        assert entry["message"] == "Transfer denied by monthly cap"
        assert entry["customer_id"] == "cust-1"
        assert entry["action"] == "cap_check"
        assert entry["extra"] == {"requested": "300"}
        assert "actor_id" not in entry

    def test_setup_logging(self):
        logger = setup_logging("DEBUG", logger_name="remit_engine.test_setup")
        setup_logging("DEBUG", logger_name="remit_engine.test_setup")

        assert logger.level == logging.DEBUG
        assert len(logger.handlers) == 1
        assert isinstance(logger.handlers[0].formatter, JSONFormatter)
        assert not logger.propagate
