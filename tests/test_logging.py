import json
import logging

import pytest

from sqlflight.utils.custom_logging import (
    CustomFormatter,
    LoggingContext,
    context_record_factory,
    setup_logging,
)


def make_record(message: str = "fetched") -> logging.LogRecord:
    return logging.getLogRecordFactory()("sqlflight.test", logging.INFO, __file__, 10, message, (), None)


class TestLoggingContext:
    def test_nested_context(self):
        with LoggingContext(statement="q1"):
            with LoggingContext(endpoint=2):
                assert dict(LoggingContext.get_current_context()) == {"statement": "q1", "endpoint": 2}
            assert dict(LoggingContext.get_current_context()) == {"statement": "q1"}
        assert dict(LoggingContext.get_current_context()) == {}

    def test_context_is_read_only(self):
        with pytest.raises(TypeError):
            LoggingContext.get_current_context()["endpoint"] = 1


class TestCustomFormatter:
    def test_default_format_appends_context(self):
        with LoggingContext(endpoint=3):
            text = CustomFormatter("default").format(make_record())
        assert text.endswith("fetched - endpoint=3")

    def test_key_value_format(self):
        with LoggingContext(endpoint=0):
            text = CustomFormatter("key_value").format(make_record())
        assert "level=INFO" in text
        assert "message=fetched" in text
        assert text.endswith("endpoint=0")

    def test_json_format(self):
        with LoggingContext(endpoint=1):
            payload = json.loads(CustomFormatter("json").format(make_record()))
        assert payload["message"] == "fetched"
        assert payload["extra"] == {"endpoint": 1}

    def test_context_is_captured_when_the_record_is_created(self):
        with LoggingContext(statement="q7", endpoint=4):
            record = context_record_factory("sqlflight.test", logging.INFO, __file__, 10, "fetched", (), None)

        text = CustomFormatter("default").format(record)

        assert text.endswith("fetched - statement=q7 endpoint=4")
        assert json.loads(CustomFormatter("json").format(record))["extra"] == {"statement": "q7", "endpoint": 4}

    def test_no_context_leaves_message_bare(self):
        assert CustomFormatter("default").format(make_record()).endswith(" - INFO - fetched")


class TestSetupLogging:
    @pytest.fixture(autouse=True)
    def restore_root_logger(self):
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        yield
        for handler in root.handlers:
            if handler not in handlers:
                handler.close()
        root.handlers[:] = handlers
        root.setLevel(level)

    def test_stream_handler_with_level(self):
        setup_logging(log_level="debug", log_format="json")

        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert isinstance(root.handlers[0].formatter, CustomFormatter)
        assert root.handlers[0].formatter.format_type == "json"

    def test_yaml_config_file_with_placeholders(self, tmp_path):
        log_file = tmp_path / "logs" / "client.log"
        config_file = tmp_path / "logging.yaml"
        config_file.write_text(
            """
version: 1
disable_existing_loggers: false
handlers:
  file:
    class: logging.FileHandler
    filename: ${LOG_FILE_NAME}
    level: ${CONSOLE_LOG_LEVEL}
root:
  level: ${CONSOLE_LOG_LEVEL}
  handlers: [file]
"""
        )

        setup_logging(log_level="warning", log_config_file=str(config_file), log_file=str(log_file))
        logging.getLogger("sqlflight.test").warning("written to file")
        for handler in logging.getLogger().handlers:
            handler.flush()

        assert logging.getLogger().level == logging.WARNING
        assert "written to file" in log_file.read_text()
