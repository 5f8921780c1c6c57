"""Tests for logging helpers."""

import builtins
import logging
from uuid import uuid4

import pytest
import structlog
from structlog.dev import ConsoleRenderer
from structlog.processors import JSONRenderer

from bookkeeping import logger as logger_module
from bookkeeping.utils.exceptions import PersistenceError


def test_build_otlp_logs_endpoint_adds_suffix() -> None:
    assert logger_module._build_otlp_logs_endpoint("http://collector:4318") == "http://collector:4318/v1/logs"
    assert logger_module._build_otlp_logs_endpoint("http://collector:4318/v1/logs/") == "http://collector:4318/v1/logs"


def test_select_renderer_follows_debug_flag(monkeypatch) -> None:
    monkeypatch.setattr(logger_module.settings, "debug", True)
    assert isinstance(logger_module._select_renderer(), ConsoleRenderer)

    monkeypatch.setattr(logger_module.settings, "debug", False)
    assert isinstance(logger_module._select_renderer(), JSONRenderer)


def test_configure_otel_logging_missing_dependency_warns(monkeypatch, caplog) -> None:
    monkeypatch.setattr(logger_module.settings, "otel_exporter_otlp_endpoint", "http://collector:4318")
    original_import = builtins.__import__

    def blocked_import(name, globals=None, locals=None, fromlist=(), level=0):
        if name.startswith("opentelemetry"):
            raise ImportError("opentelemetry not installed")
        return original_import(name, globals, locals, fromlist, level)

    monkeypatch.setattr(builtins, "__import__", blocked_import)

    with caplog.at_level(logging.WARNING):
        logger_module._configure_otel_logging()

    assert "opentelemetry is not installed" in caplog.text


def test_log_timing_reports_duration(caplog) -> None:
    with caplog.at_level(logging.INFO):
        with logger_module.log_timing("rank_candidates", candidates=3) as timing:
            timing["ranked"] = 2

    assert timing["duration_ms"] >= 0
    assert "rank_candidates completed" in caplog.text


async def test_async_log_timing_reports_on_error(caplog) -> None:
    with caplog.at_level(logging.INFO):
        with pytest.raises(RuntimeError):
            async with logger_module.async_log_timing("persist_chunk", chunk=1):
                raise RuntimeError("boom")

    assert "persist_chunk completed" in caplog.text


def test_log_external_api_rejects_sync_functions() -> None:
    with pytest.raises(TypeError):

        @logger_module.log_external_api("openrouter")
        def call() -> None:
            return None


async def test_log_external_api_logs_failures(caplog) -> None:
    @logger_module.log_external_api("openrouter")
    async def call() -> None:
        raise ValueError("bad gateway")

    with caplog.at_level(logging.INFO):
        with pytest.raises(ValueError):
            await call()

    assert "External API call to openrouter failed" in caplog.text


def test_log_exception_includes_error_type(caplog) -> None:
    log = logger_module.get_logger("tests")

    with caplog.at_level(logging.WARNING):
        logger_module.log_exception(
            log, KeyError("missing"), "Lookup failed", level="warning", include_traceback=False
        )

    assert "Lookup failed" in caplog.text
    assert "KeyError" in caplog.text


def test_bind_ledger_context_scopes_identifiers() -> None:
    business_id = uuid4()

    with logger_module.bind_ledger_context(business_id=business_id, document_id=None):
        bound = structlog.contextvars.get_contextvars()

    assert bound == {"business_id": str(business_id)}
    assert "business_id" not in structlog.contextvars.get_contextvars()


def test_log_exception_adds_error_code(caplog) -> None:
    log = logger_module.get_logger("tests")

    with caplog.at_level(logging.ERROR):
        logger_module.log_exception(log, PersistenceError("chunk write failed"), "Chunk persistence failed")

    assert "persistence" in caplog.text
