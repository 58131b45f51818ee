"""
Logging setup with per-task context.

`LoggingContext` binds key/value pairs (statement, endpoint index, ...) to the current task.
Records capture the bound pairs when they are created, so a record formatted later or on
another thread still reports the context it was logged in.
"""

import contextvars
import json
import logging
import logging.config
import sys
from contextlib import ContextDecorator
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Literal, Mapping, Optional

import yaml

from sqlflight.config import logging_settings

FormatType = Literal["key_value", "json", "default"]

_EMPTY: Mapping[str, Any] = MappingProxyType({})
_bound_context: contextvars.ContextVar[Mapping[str, Any]] = contextvars.ContextVar(
    "sqlflight_log_context", default=_EMPTY
)


class LoggingContext(ContextDecorator):
    """Binds key/value pairs to every record logged inside the block. Nested blocks merge."""

    def __init__(self, **pairs: Any):
        self.pairs = pairs
        self._tokens: List[contextvars.Token] = []

    def __enter__(self) -> "LoggingContext":
        merged = {**_bound_context.get(), **self.pairs}
        self._tokens.append(_bound_context.set(MappingProxyType(merged)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        _bound_context.reset(self._tokens.pop())

    @classmethod
    def get_current_context(cls) -> Mapping[str, Any]:
        return _bound_context.get()


_default_record_factory = logging.getLogRecordFactory()


def context_record_factory(*args, **kwargs) -> logging.LogRecord:
    record = _default_record_factory(*args, **kwargs)
    record.log_context = LoggingContext.get_current_context()
    return record


_TEXT_FORMATS: Dict[str, str] = {
    "default": "%(asctime)s - %(module)s:%(lineno)d - %(name)s - %(levelname)s - %(message)s%(context_suffix)s",
    "key_value": (
        "timestamp=%(asctime)s name=%(name)s module=%(module)s level=%(levelname)s "
        "message=%(message)s lineno=%(lineno)d%(context_suffix)s"
    ),
}


class CustomFormatter(logging.Formatter):
    """Renders records as plain text, key=value pairs or one JSON object per line."""

    def __init__(self, format_type: FormatType = "default", datefmt: Optional[str] = None):
        super().__init__(fmt=_TEXT_FORMATS.get(format_type), datefmt=datefmt)
        self.format_type = format_type

    @staticmethod
    def _context_of(record: logging.LogRecord) -> Mapping[str, Any]:
        # Records built without context_record_factory fall back to the caller's context.
        context = getattr(record, "log_context", None)
        return LoggingContext.get_current_context() if context is None else context

    def format(self, record: logging.LogRecord) -> str:
        context = self._context_of(record)
        if self.format_type == "json":
            return self._format_json(record, context)

        pairs = " ".join(f"{key}={value}" for key, value in context.items())
        record.context_suffix = f" - {pairs}" if pairs else ""
        return super().format(record)

    def _format_json(self, record: logging.LogRecord, context: Mapping[str, Any]) -> str:
        payload: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "name": record.name,
            "level": record.levelname,
            "message": record.getMessage(),
            "module": record.module,
            "lineno": record.lineno,
            "extra": dict(context),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def _apply_yaml_config(config_file: str, substitutions: Mapping[str, str]) -> None:
    text = Path(config_file).read_text()
    for name, value in substitutions.items():
        text = text.replace("${" + name + "}", value)
    logging.config.dictConfig(yaml.safe_load(text))


def setup_logging(
    log_level: Optional[str] = None,
    log_format: Optional[FormatType] = None,
    log_config_file: Optional[str] = None,
    log_file: Optional[str] = None,
):
    """
    Configure the root logger.

    Arguments fall back to `logging_settings` (SQLFLIGHT_LOGGING_* environment variables).
    When a YAML dictConfig file is given it wins over the other arguments; `${LOG_FILE_NAME}`
    and `${CONSOLE_LOG_LEVEL}` placeholders inside it are substituted.
    """
    logging.setLogRecordFactory(context_record_factory)

    level = (log_level or logging_settings.log_level).upper()
    config_file = log_config_file or logging_settings.log_config_file

    if not config_file:
        handler = logging.StreamHandler(stream=sys.stderr)
        handler.setFormatter(CustomFormatter(log_format or logging_settings.log_format))  # type: ignore[arg-type]
        logging.basicConfig(handlers=[handler], level=level, force=True)
        return

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
    _apply_yaml_config(config_file, {"LOG_FILE_NAME": log_file or "sqlflight.log", "CONSOLE_LOG_LEVEL": level})
