"""Tests for structured logging, operation context and performance timing."""

import json
import logging
import sys

import pytest

from src.logging_config.config import LogFormat, LoggingConfig, LogLevel
from src.logging_config.context import (
    LogContext,
    get_actor_id,
    get_approval_request_id,
    get_context_dict,
    get_operation,
)
from src.logging_config.performance import PerformanceTimer, log_performance
from src.logging_config.setup import (
    ConsoleFormatter,
    StructuredFormatter,
    configure_logging,
    get_logger,
)


def _record(msg="test", level=logging.INFO, name="test", lineno=1, exc_info=None):
    return logging.LogRecord(
        name=name, level=level, pathname="test.py",
        lineno=lineno, msg=msg, args=(), exc_info=exc_info,
    )


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


class TestLoggingConfig:
    """Tests for logging configuration dataclasses."""

    def test_default_config_values(self):
        config = LoggingConfig()
        assert config.level == LogLevel.INFO
        assert config.format == LogFormat.JSON
        assert config.include_caller is True
        assert config.slow_threshold_ms == 250.0
        assert config.service_name == "approvals"

    def test_from_settings(self):
        class FakeSettings:
            log_level = "debug"
            log_format = "CONSOLE"
            service_name = "tender-approvals"

        config = LoggingConfig.from_settings(FakeSettings())
        assert config.level == LogLevel.DEBUG
        assert config.format == LogFormat.CONSOLE
        assert config.service_name == "tender-approvals"

    def test_log_format_enum_values(self):
        assert LogFormat.JSON.value == "json"
        assert LogFormat.CONSOLE.value == "console"


class TestLogContext:
    """Tests for operation context binding."""

    def test_context_sets_values(self):
        with LogContext(operation="decide", approval_request_id="r1", actor_id="u1"):
            assert get_operation() == "decide"
            assert get_approval_request_id() == "r1"
            assert get_actor_id() == "u1"
        assert get_operation() == ""
        assert get_approval_request_id() == ""
        assert get_actor_id() == ""

    def test_context_dict(self):
        with LogContext(operation="submit", actor_id="u1", org_id="acme"):
            ctx = get_context_dict()
            assert ctx == {"actor_id": "u1", "operation": "submit", "org_id": "acme"}

    def test_context_dict_empty_outside(self):
        assert get_context_dict() == {}

    def test_nested_contexts_restore_outer(self):
        with LogContext(operation="outer", approval_request_id="r1", org_id="acme"):
            with LogContext(operation="inner", step=2):
                assert get_operation() == "inner"
                assert get_context_dict()["org_id"] == "acme"
                assert get_context_dict()["step"] == 2
            assert get_operation() == "outer"
            assert "step" not in get_context_dict()

    def test_bind_extra_context(self):
        with LogContext(operation="decide") as ctx:
            ctx.bind(approval_request_id="r9", verdict="pending")
            d = get_context_dict()
            assert d["approval_request_id"] == "r9"
            assert d["verdict"] == "pending"
        assert get_context_dict() == {}

    def test_context_resets_on_exception(self):
        with pytest.raises(RuntimeError):
            with LogContext(operation="cancel"):
                raise RuntimeError("boom")
        assert get_operation() == ""


class TestStructuredFormatter:
    """Tests for JSON structured log formatting."""

    def test_formats_as_json(self):
        parsed = json.loads(StructuredFormatter().format(_record("hello world")))
        assert parsed["message"] == "hello world"
        assert parsed["level"] == "INFO"
        assert parsed["logger"] == "test"
        assert "timestamp" in parsed

    def test_includes_service_name(self):
        parsed = json.loads(StructuredFormatter(service_name="svc").format(_record()))
        assert parsed["service"] == "svc"

    def test_caller_info_toggle(self):
        with_caller = json.loads(StructuredFormatter(include_caller=True).format(_record(lineno=42)))
        without = json.loads(StructuredFormatter(include_caller=False).format(_record(lineno=42)))
        assert with_caller["line"] == 42
        assert "line" not in without

    def test_includes_operation_context(self):
        with LogContext(operation="decide", approval_request_id="r1", actor_id="u1"):
            parsed = json.loads(StructuredFormatter().format(_record()))
        assert parsed["approval_request_id"] == "r1"
        assert parsed["actor_id"] == "u1"
        assert parsed["operation"] == "decide"

    def test_formats_exception(self):
        try:
            raise ValueError("bad input")
        except ValueError:
            record = _record("failed", level=logging.ERROR, exc_info=sys.exc_info())
        parsed = json.loads(StructuredFormatter().format(record))
        assert parsed["exception"]["type"] == "ValueError"
        assert "bad input" in parsed["exception"]["message"]

    def test_includes_extra_fields(self):
        record = _record()
        record.duration_ms = 12.5
        record.verdict = "satisfied"
        parsed = json.loads(StructuredFormatter().format(record))
        assert parsed["duration_ms"] == 12.5
        assert parsed["verdict"] == "satisfied"


class TestConsoleFormatter:
    """Tests for coloured console log formatting."""

    def test_formats_readable_output(self):
        output = ConsoleFormatter().format(_record("hello", name="src.approvals.lifecycle"))
        assert "src.approvals.lifecycle" in output
        assert "hello" in output

    def test_includes_context_info(self):
        with LogContext(approval_request_id="abc"):
            output = ConsoleFormatter().format(_record())
        assert "approval_request_id=abc" in output

    def test_has_color_codes(self):
        output = ConsoleFormatter().format(_record(level=logging.ERROR))
        assert "\033[31m" in output


class TestConfigureLogging:
    """Tests for the configure_logging setup function."""

    def test_json_format(self, restore_root_logger):
        configure_logging(LoggingConfig(format=LogFormat.JSON))
        assert len(restore_root_logger.handlers) == 1
        assert isinstance(restore_root_logger.handlers[0].formatter, StructuredFormatter)

    def test_console_format(self, restore_root_logger):
        configure_logging(LoggingConfig(format=LogFormat.CONSOLE))
        assert isinstance(restore_root_logger.handlers[0].formatter, ConsoleFormatter)

    def test_sets_log_level(self, restore_root_logger):
        configure_logging(LoggingConfig(level=LogLevel.DEBUG))
        assert restore_root_logger.level == logging.DEBUG

    def test_quiets_sqlalchemy(self, restore_root_logger):
        configure_logging()
        assert logging.getLogger("sqlalchemy.engine").level >= logging.WARNING

    def test_env_var_override_level(self, restore_root_logger, monkeypatch):
        monkeypatch.setenv("APPROVALS_LOG_LEVEL", "debug")
        effective = configure_logging(LoggingConfig(level=LogLevel.ERROR))
        assert effective.level == LogLevel.DEBUG
        assert restore_root_logger.level == logging.DEBUG

    def test_env_var_override_format(self, restore_root_logger, monkeypatch):
        monkeypatch.setenv("APPROVALS_LOG_FORMAT", "CONSOLE")
        configure_logging(LoggingConfig(format=LogFormat.JSON))
        assert isinstance(restore_root_logger.handlers[0].formatter, ConsoleFormatter)

    def test_invalid_env_value_ignored(self, restore_root_logger, monkeypatch):
        monkeypatch.setenv("APPROVALS_LOG_LEVEL", "LOUD")
        effective = configure_logging(LoggingConfig(level=LogLevel.WARNING))
        assert effective.level == LogLevel.WARNING

    def test_get_logger_returns_logger(self):
        logger = get_logger("src.approvals.engine")
        assert isinstance(logger, logging.Logger)
        assert logger.name == "src.approvals.engine"


class TestPerformanceLogging:
    """Tests for performance timing decorator and context manager."""

    def test_returns_value_and_preserves_name(self):
        @log_performance(threshold_ms=10000)
        def evaluate():
            """Evaluate a step."""
            return 42

        assert evaluate() == 42
        assert evaluate.__name__ == "evaluate"
        assert evaluate.__doc__ == "Evaluate a step."

    def test_slow_call_logs_warning(self, caplog):
        @log_performance(threshold_ms=0, logger_name="perf.test")
        def work():
            return None

        with caplog.at_level(logging.DEBUG, logger="perf.test"):
            work()
        assert any(r.levelno == logging.WARNING and "Slow operation" in r.getMessage()
                   for r in caplog.records)

    def test_unexpected_failure_logs_error_and_reraises(self, caplog):
        @log_performance(logger_name="perf.test")
        def broken():
            raise KeyError("x")

        with caplog.at_level(logging.DEBUG, logger="perf.test"):
            with pytest.raises(KeyError):
                broken()
        assert any(r.levelno == logging.ERROR for r in caplog.records)

    def test_expected_failure_logs_info(self, caplog):
        @log_performance(logger_name="perf.test", expected=(ValueError,))
        def rejected():
            raise ValueError("caller error")

        with caplog.at_level(logging.DEBUG, logger="perf.test"):
            with pytest.raises(ValueError):
                rejected()
        levels = [r.levelno for r in caplog.records if r.name == "perf.test"]
        assert levels == [logging.INFO]

    def test_performance_timer(self):
        with PerformanceTimer("evaluate_and_transition", threshold_ms=10000) as timer:
            sum(range(100))
        assert timer.duration_ms >= 0
        assert timer.operation_name == "evaluate_and_transition"
