# tests/common/test_logger.py
"""
Unit тесты для модуля логирования (src/common/logger.py).
"""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from src.common.constants import TypeMsg
from src.common.logger import (
    ColoredFormatter,
    DateBasedRotatingFileHandler,
    JsonFormatter,
    _get_caller_info,
    _loggers,
    get_logger,
    log_debug,
    log_error,
    log_info,
    log_warning,
    setup_logging,
)


def make_record(level: int = logging.INFO, msg: str = "Заявка создана", **extra_data) -> logging.LogRecord:
    record = logging.LogRecord(
        name="dispatch",
        level=level,
        pathname="engine.py",
        lineno=42,
        msg=msg,
        args=(),
        exc_info=None,
    )
    record.module = "engine"
    record.funcName = "create_request"
    if extra_data:
        record.extra_data = extra_data
    return record


class TestJsonFormatter:
    """Тесты для JsonFormatter."""

    def test_format_basic_record(self) -> None:
        data = json.loads(JsonFormatter().format(make_record()))

        assert data["level"] == "INFO"
        assert data["message"] == "Заявка создана"
        assert data["module"] == "engine"
        assert data["function"] == "create_request"
        assert data["line"] == 42
        assert data["timestamp"].endswith("Z")

    def test_domain_fields_in_extra(self) -> None:
        """Проверяет, что доменные поля попадают в JSON целиком."""
        record = make_record(request_id="R1", seq=3, mechanic_id="M1")

        data = json.loads(JsonFormatter().format(record))

        assert data["extra"] == {"request_id": "R1", "seq": 3, "mechanic_id": "M1"}

    def test_format_with_exception(self) -> None:
        record = make_record(level=logging.ERROR, msg="Журнал недоступен")
        try:
            raise ConnectionError("reset")
        except ConnectionError:
            record.exc_info = sys.exc_info()

        data = json.loads(JsonFormatter().format(record))

        assert "ConnectionError: reset" in data["exception"]


class TestColoredFormatter:
    """Тесты для ColoredFormatter."""

    def test_format_basic_record(self) -> None:
        result = ColoredFormatter().format(make_record(level=logging.WARNING))

        assert "[WARNING]" in result
        assert "Заявка создана" in result

    def test_context_suffix(self) -> None:
        """Проверяет компактный суффикс с request_id и seq."""
        record = make_record(request_id="R1", seq=7, unrelated="x")

        result = ColoredFormatter().format(record)

        assert "request_id=R1, seq=7" in result
        assert "unrelated" not in result

    def test_caller_info(self) -> None:
        record = make_record(
            caller_function="accept",
            caller_module="src.core.dispatch.dispatcher",
            caller_file="dispatcher.py",
            caller_line=120,
        )

        result = ColoredFormatter().format(record)

        assert "src.core.dispatch.dispatcher.accept() dispatcher.py:120" in result


class TestRotatingFileHandler:
    """Тесты ротации лог-файлов."""

    def test_rollover_archives_file(self, tmp_path: Path) -> None:
        handler = DateBasedRotatingFileHandler(log_dir=str(tmp_path / "logs"), max_bytes=1024, logger_name="dispatch")
        handler.emit(make_record())

        handler.doRollover()
        handler.close()

        archived = [p.name for p in (tmp_path / "logs").iterdir() if p.name != "dispatch.log"]
        assert len(archived) == 1
        assert archived[0].startswith("dispatch_")


class TestGetLogger:
    """Тесты для функции get_logger."""

    def setup_method(self) -> None:
        _loggers.pop("test_dispatch_logger", None)
        logging.getLogger("test_dispatch_logger").handlers.clear()

    def test_returns_cached_logger(self) -> None:
        first = get_logger("test_dispatch_logger")

        assert get_logger("test_dispatch_logger") is first
        assert first.propagate is False

    def test_json_format_from_settings(self) -> None:
        with patch(
            "src.common.logger._read_logging_settings",
            return_value=("DEBUG", "json", False, "logs/app.log", 1024),
        ):
            logger = get_logger("test_dispatch_logger")

        console = [h for h in logger.handlers if type(h) is logging.StreamHandler]
        assert logger.level == logging.DEBUG
        assert len(console) == 1
        assert isinstance(console[0].formatter, JsonFormatter)
        logger.handlers.clear()


class TestSetupLogging:
    def test_third_party_levels(self) -> None:
        with patch("src.common.logger._LOGGING_INITIALIZED", False):
            setup_logging()

        assert logging.getLogger("aio_pika").level == logging.WARNING
        assert logging.getLogger("asyncpg").level == logging.WARNING


class TestGetCallerInfo:
    def test_contains_caller_data(self) -> None:
        def dispatch_tick():
            return _get_caller_info()

        info = dispatch_tick()

        assert info["caller_function"] == "test_contains_caller_data"
        assert info["caller_file"] == "test_logger.py"


class TestLogFunctions:
    """Тесты асинхронных функций логирования."""

    @pytest.mark.asyncio
    async def test_log_info_levels(self) -> None:
        with patch.object(logging.Logger, "debug") as mock_debug:
            await log_info("Тик", type_msg=TypeMsg.DEBUG)
            mock_debug.assert_called_once()

        with patch.object(logging.Logger, "critical") as mock_critical:
            await log_info("Сбой", type_msg=TypeMsg.CRITICAL)
            mock_critical.assert_called_once()

    @pytest.mark.asyncio
    async def test_extra_is_merged_with_caller(self) -> None:
        with patch.object(logging.Logger, "info") as mock_info:
            await log_info("Заявка создана", extra={"request_id": "R1"})

        extra_data = mock_info.call_args.kwargs["extra"]["extra_data"]
        assert extra_data["request_id"] == "R1"
        assert extra_data["caller_function"] == "test_extra_is_merged_with_caller"

    @pytest.mark.asyncio
    async def test_shortcuts(self) -> None:
        with patch.object(logging.Logger, "debug") as mock_debug:
            await log_debug("debug")
        with patch.object(logging.Logger, "warning") as mock_warning:
            await log_warning("warning", extra={"mechanic_id": "M1"})

        mock_debug.assert_called_once()
        assert mock_warning.call_args.kwargs["extra"]["extra_data"]["mechanic_id"] == "M1"

    @pytest.mark.asyncio
    async def test_log_error_with_exc_info(self) -> None:
        with patch.object(logging.Logger, "error") as mock_error:
            await log_error("Ошибка", exc_info=True)

        assert mock_error.call_args.kwargs["exc_info"] is True

    @pytest.mark.asyncio
    async def test_custom_logger_name(self) -> None:
        mock_logger = MagicMock()
        with patch("src.common.logger.get_logger", return_value=mock_logger) as mock_get_logger:
            await log_info("worker", logger_name="ticker")

        mock_get_logger.assert_called_once_with("ticker")
        mock_logger.info.assert_called_once()
