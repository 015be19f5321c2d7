"""
Tests for configuration and structured logging
"""

import json
import logging

import pytest

from loan_engine.config import LoanEngineConfig, get_config, reload_config
from loan_engine.logging_config import JSONFormatter, get_logger, log_action, setup_logging


class ListHandler(logging.Handler):
    """Collects records for assertions"""

    def __init__(self):
        super().__init__()
        self.records = []

    def emit(self, record):
        self.records.append(record)


class TestConfig:
    """Test environment-driven configuration"""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("LOAN_ENGINE_FORECLOSURE_DAY_COUNT", raising=False)
        config = LoanEngineConfig(_env_file=None)
        assert config.foreclosure_day_count == 30
        assert config.reminder_windows_days == [7, 3, 1]
        assert config.default_currency == "INR"

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("LOAN_ENGINE_API_PORT", "9100")
        monkeypatch.setenv("LOAN_ENGINE_STORAGE_BACKEND", "memory")
        monkeypatch.setenv("LOAN_ENGINE_REMINDER_WINDOWS_DAYS", "[5, 2]")

        config = LoanEngineConfig(_env_file=None)
        assert config.api_port == 9100
        assert config.storage_backend == "memory"
        assert config.reminder_windows_days == [5, 2]

    def test_reload_config(self, monkeypatch):
        monkeypatch.setenv("LOAN_ENGINE_LOG_LEVEL", "DEBUG")
        reloaded = reload_config()
        assert reloaded.log_level == "DEBUG"
        assert get_config() is reloaded

        monkeypatch.delenv("LOAN_ENGINE_LOG_LEVEL")
        reload_config()


class TestStructuredLogging:
    """Test JSON log formatting and action logging"""

    def test_json_formatter_fields(self):
        record = logging.LogRecord(
            name="loan_engine.loans", level=logging.INFO, pathname=__file__, lineno=1,
            msg="Loan foreclosed", args=(), exc_info=None
        )
        record.loan_id = "loan-1"
        record.action = "foreclose"

        entry = json.loads(JSONFormatter().format(record))
        assert entry["level"] == "INFO"
        assert entry["logger"] == "loan_engine.loans"
        assert entry["message"] == "Loan foreclosed"
        assert entry["loan_id"] == "loan-1"
        assert entry["action"] == "foreclose"
        assert "resource" not in entry

    def test_get_logger_namespace(self):
        assert get_logger("loans").name == "loan_engine.loans"
        assert get_logger("loan_engine.summary").name == "loan_engine.summary"
        assert get_logger().name == "loan_engine"

    def test_log_action_attaches_structured_fields(self):
        logger = logging.getLogger("loan_engine.test_actions")
        handler = ListHandler()
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)
        try:
            log_action(logger, "info", "Part-payment applied", loan_id="loan-1",
                       action="apply_part_payment", extra={"interest_saved": "1234.56"})
        finally:
            logger.removeHandler(handler)

        record = handler.records[0]
        assert record.loan_id == "loan-1"
        assert record.action == "apply_part_payment"
        assert record.extra == {"interest_saved": "1234.56"}

    def test_setup_logging(self, tmp_path):
        log_file = tmp_path / "engine.log"
        logger = setup_logging("WARNING", "json", logger_name="loan_engine.test_setup",
                               log_file=str(log_file))
        try:
            logger.info("ignored")
            logger.warning("kept")
            for handler in logger.handlers:
                handler.flush()

            lines = log_file.read_text().splitlines()
            assert len(lines) == 1
            assert json.loads(lines[0])["message"] == "kept"
        finally:
            for handler in logger.handlers[:]:
                handler.close()
                logger.removeHandler(handler)
