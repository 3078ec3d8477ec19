"""
Test suite for configuration and structured logging
"""

import json
import logging

from gold_lending import config as config_module
from gold_lending.config import LendingConfig, get_config, reload_config
from gold_lending.logging_config import JSONFormatter, setup_logging, get_logger, log_action


class TestLendingConfig:
    """Test environment-based configuration"""

    def test_defaults(self):
        config = LendingConfig()

        assert config.api_port == 8095
        assert config.default_threshold_days == 90
        assert config.default_penalty_type == "PERCENTAGE"
        assert config.overdue_sweep_interval_seconds == 86400
        assert config.enable_audit_logging is True

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("GOLDLEND_API_PORT", "9000")
        monkeypatch.setenv("GOLDLEND_DEFAULT_THRESHOLD_DAYS", "60")
        monkeypatch.setenv("goldlend_database_url", "memory://")

        config = LendingConfig()

        assert config.api_port == 9000
        assert config.default_threshold_days == 60
        assert config.database_url == "memory://"

    def test_reload_config(self, monkeypatch):
        original = get_config()
        monkeypatch.setenv("GOLDLEND_LOG_LEVEL", "DEBUG")
        try:
            reloaded = reload_config()
            assert reloaded.log_level == "DEBUG"
            assert get_config() is reloaded
        finally:
            config_module.config = original


class TestJSONFormatter:
    """Test structured log output"""

    def _record(self, **extra):
        record = logging.LogRecord(
            name="gold_lending.payments", level=logging.INFO, pathname=__file__, lineno=1,
            msg="Payment %s recorded", args=("RCP1",), exc_info=None
        )
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_fields(self):
        output = json.loads(JSONFormatter().format(self._record(
            action="record_payment", resource="payment", loan_id="L1",
            extra={"amount": "8884.88"}
        )))

        assert output['level'] == "INFO"
        assert output['logger'] == "gold_lending.payments"
        assert output['message'] == "Payment RCP1 recorded"
        assert output['action'] == "record_payment"
        assert output['loan_id'] == "L1"
        assert output['extra'] == {"amount": "8884.88"}
        assert 'timestamp' in output

    def test_missing_fields_are_dropped(self):
        output = json.loads(JSONFormatter().format(self._record()))
        assert 'action' not in output
        assert 'user_id' not in output

    def test_exception_is_included(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            import sys
            record = self._record()
            record.exc_info = sys.exc_info()

        output = json.loads(JSONFormatter().format(record))
        assert "RuntimeError: boom" in output['exception']


class TestSetupLogging:
    """Test logger configuration"""

    def test_json_handler(self):
        logger = setup_logging(level="DEBUG", logger_name="gold_lending_test_json")

        assert logger.level == logging.DEBUG
        assert len(logger.handlers) == 1
        assert isinstance(logger.handlers[0].formatter, JSONFormatter)
        assert logger.propagate is False

    def test_text_handler_replaces_existing(self):
        setup_logging(logger_name="gold_lending_test_text")
        logger = setup_logging(logger_name="gold_lending_test_text", log_format="text")

        assert len(logger.handlers) == 1
        assert not isinstance(logger.handlers[0].formatter, JSONFormatter)

    def test_get_logger(self):
        assert get_logger("gold_lending.loans") is logging.getLogger("gold_lending.loans")

    def test_log_action_attaches_fields(self, caplog):
        logger = logging.getLogger("gold_lending_test_actions")
        caplog.set_level(logging.INFO, logger="gold_lending_test_actions")

        log_action(logger, "warning", "Loan defaulted", action="mark_defaulted",
                   resource="loan", loan_id="L1", user_id="system", extra={"days_overdue": 90})

        record = caplog.records[-1]
        assert record.levelno == logging.WARNING
        assert record.action == "mark_defaulted"
        assert record.loan_id == "L1"
        assert record.user_id == "system"
        assert record.extra == {"days_overdue": 90}
