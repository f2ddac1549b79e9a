"""
Tests for configuration loading and structured logging
"""

import json
import logging
import sys

import pytest
from decimal import Decimal
from unittest.mock import Mock

from lending_core.config import LendingConfig, get_config, reload_config
from lending_core.logging_config import JSONFormatter, get_logger, log_action, setup_logging
from lending_core.storage import InMemoryStorage, SQLiteStorage
from lending_core.system import LendingSystem


class TestLendingConfig:
    """Settings defaults and environment overrides"""

    def test_defaults(self):
        config = LendingConfig()

        assert config.database_path == ":memory:"
        assert config.payment_interval_days == 30
        assert config.receipt_prefix == "REC"
        assert config.loan_prefix == "LN"
        assert config.id_padding == 3
        assert config.enable_audit_logging
        assert config.rate_policy().canonical_rates == (Decimal('20'), Decimal('15'), Decimal('12'), Decimal('10'))

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("LENDING_PAYMENT_INTERVAL_DAYS", "14")
        monkeypatch.setenv("LENDING_RECEIPT_PREFIX", "RCPT")
        monkeypatch.setenv("LENDING_RATE_TIERS", '{"<1000000": 18, ">=1000000": 14}')

        config = LendingConfig()

        assert config.payment_interval_days == 14
        assert config.receipt_prefix == "RCPT"
        policy = config.rate_policy()
        assert policy.rate_for(500000) == Decimal('18')
        assert policy.rate_for(1000000) == Decimal('14')

    @pytest.mark.parametrize("tiers", [
        {},
        {"<500000": 20, "600000-900000": 15, ">=900000": 10},
        {"<500000": 20, "500000-2000000": 15},
        {"<500000": -1, ">=500000": 10},
    ])
    def test_invalid_rate_table_rejected(self, tiers):
        with pytest.raises(ValueError):
            LendingConfig(rate_tiers=tiers)

    @pytest.mark.parametrize("field", ["payment_interval_days", "id_padding"])
    def test_positive_integers(self, field):
        with pytest.raises(ValueError):
            LendingConfig(**{field: 0})

    def test_log_format(self):
        assert LendingConfig(log_format="TEXT").log_format == "text"
        with pytest.raises(ValueError):
            LendingConfig(log_format="xml")

    def test_config_drives_system(self, tmp_path, monkeypatch):
        monkeypatch.setattr("lending_core.system.setup_logging", Mock())
        config = LendingConfig(
            receipt_prefix="R", loan_prefix="L", id_padding=5,
            payment_interval_days=7, database_path=str(tmp_path / "lending.db"),
        )
        system = LendingSystem.from_config(config)
        try:
            assert isinstance(system.storage, SQLiteStorage)
            borrower = system.register_borrower("Ruth", "Nambi", "0701234567")
            application = system.submit_application(600000, 3, "Poultry", borrower_id=borrower.id)
            loan = system.approve_application(application.id).loan
            receipt = system.record_payment(loan.id, 1000).repayment.receipt_number
        finally:
            system.close()

        assert loan.loan_number == "L00001"
        assert receipt == "R00001"

    def test_memory_path_selects_in_memory_engine(self):
        system = LendingSystem(config=LendingConfig())
        assert isinstance(system.storage, InMemoryStorage)

    def test_from_config_applies_logging_settings(self, monkeypatch):
        configure = Mock()
        monkeypatch.setattr("lending_core.system.setup_logging", configure)

        system = LendingSystem.from_config(LendingConfig(log_level="DEBUG", log_format="text"))
        system.close()

        configure.assert_called_once_with("DEBUG", "text")

    def test_reload_config_reads_environment(self, monkeypatch):
        monkeypatch.setenv("LENDING_LOAN_PREFIX", "MF")
        try:
            reloaded = reload_config()
            assert reloaded.loan_prefix == "MF"
            assert get_config() is reloaded
        finally:
            monkeypatch.undo()
            reload_config()

        assert get_config().loan_prefix == LendingConfig().loan_prefix


class TestStructuredLogging:
    """JSON formatter and action logging"""

    def test_json_formatter(self):
        record = logging.makeLogRecord({
            "name": "lending_core.payments",
            "levelname": "INFO",
            "msg": "Payment %s recorded",
            "args": ("REC001",),
            "action": "record_payment",
            "resource": "loan:abc",
        })

        entry = json.loads(JSONFormatter().format(record))

        assert entry["message"] == "Payment REC001 recorded"
        assert entry["logger"] == "lending_core.payments"
        assert entry["action"] == "record_payment"
        assert entry["resource"] == "loan:abc"
        assert "correlation_id" not in entry
        assert "timestamp" in entry

    def test_json_formatter_includes_exception(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = logging.makeLogRecord({"msg": "failed", "exc_info": sys.exc_info()})

        entry = json.loads(JSONFormatter().format(record))
        assert "RuntimeError: boom" in entry["exception"]

    def test_setup_logging_json_output(self, capsys):
        logger = setup_logging("DEBUG", "json", logger_name="lending_test_json")
        log_action(logger, "warning", "Overpayment on LN001", action="record_payment",
                   resource="loan:1", correlation_id="req-9", extra={"unapplied_amount": "916904"})

        line = capsys.readouterr().err.strip().splitlines()[-1]
        entry = json.loads(line)
        assert entry["level"] == "WARNING"
        assert entry["correlation_id"] == "req-9"
        assert entry["extra"] == {"unapplied_amount": "916904"}

    def test_setup_logging_replaces_handlers(self):
        setup_logging("INFO", "text", logger_name="lending_test_text")
        logger = setup_logging("ERROR", "text", logger_name="lending_test_text")

        assert len(logger.handlers) == 1
        assert logger.level == logging.ERROR
        assert not isinstance(logger.handlers[0].formatter, JSONFormatter)

    def test_setup_logging_rejects_unknown_values(self):
        with pytest.raises(ValueError):
            setup_logging("LOUD", logger_name="lending_test_bad")
        with pytest.raises(ValueError):
            setup_logging("INFO", "yaml", logger_name="lending_test_bad")

    def test_get_logger_nests_under_package(self):
        assert get_logger("payments").name == "lending_core.payments"
        assert get_logger("lending_core.audit").name == "lending_core.audit"
        assert get_logger().name == "lending_core"

    def test_log_action_fields_on_record(self, caplog):
        logger = get_logger("tests")
        with caplog.at_level(logging.INFO, logger="lending_core"):
            log_action(logger, "info", "Loan LN001 disbursed", action="disburse_loan",
                       resource="loan:1")

        record = caplog.records[-1]
        assert record.action == "disburse_loan"
        assert record.resource == "loan:1"
        assert record.getMessage() == "Loan LN001 disbursed"
