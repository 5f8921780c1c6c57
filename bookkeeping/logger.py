"""Structured logging for the bookkeeping engine.

Everything goes through structlog rendered by the stdlib ``ProcessorFormatter``,
so third-party loggers (SQLAlchemy, httpx) share the same output. Records are
JSON unless ``DEBUG`` is set. When ``OTEL_EXPORTER_OTLP_ENDPOINT`` is configured
and the ``otel`` extra is installed, records are also shipped over OTLP/HTTP.

Business and document identifiers are carried in contextvars via
:func:`bind_ledger_context`, so every line written while an import or a document
is being processed is tagged without threading a bound logger around.
"""

import inspect
import logging
import sys
import time
from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import asynccontextmanager, contextmanager
from functools import wraps
from typing import Any, ParamSpec, TypeVar
from uuid import UUID

import structlog
from structlog.stdlib import BoundLogger
from structlog.types import EventDict, Processor, WrappedLogger

from bookkeeping.config import parse_key_value_pairs, settings

P = ParamSpec("P")
T = TypeVar("T")

OTLP_LOGS_PATH = "/v1/logs"


def _add_service(_: WrappedLogger, __: str, event_dict: EventDict) -> EventDict:
    event_dict.setdefault("service", settings.otel_service_name)
    return event_dict


def _shared_processors() -> list[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        _add_service,
        structlog.processors.format_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
    ]


def _select_renderer() -> Processor:
    return structlog.dev.ConsoleRenderer() if settings.debug else structlog.processors.JSONRenderer()


def _build_otlp_logs_endpoint(endpoint: str) -> str:
    base = endpoint.rstrip("/")
    return base if base.endswith(OTLP_LOGS_PATH) else base + OTLP_LOGS_PATH


def _otel_resource_attributes() -> dict[str, str]:
    attributes = {"service.name": settings.otel_service_name}
    attributes.update(parse_key_value_pairs(settings.otel_resource_attributes))
    return attributes


def _configure_otel_logging() -> None:
    endpoint = settings.otel_exporter_otlp_endpoint
    if not endpoint:
        return

    try:
        from opentelemetry._logs import set_logger_provider
        from opentelemetry.exporter.otlp.proto.http._log_exporter import OTLPLogExporter
        from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
        from opentelemetry.sdk._logs.export import BatchLogRecordProcessor
        from opentelemetry.sdk.resources import Resource
    except ImportError:
        logging.getLogger(__name__).warning(
            "OTEL endpoint %s configured but opentelemetry is not installed (pip install .[otel])",
            endpoint,
        )
        return

    provider = LoggerProvider(resource=Resource.create(_otel_resource_attributes()))
    provider.add_log_record_processor(
        BatchLogRecordProcessor(OTLPLogExporter(endpoint=_build_otlp_logs_endpoint(endpoint)))
    )
    set_logger_provider(provider)
    logging.getLogger().addHandler(LoggingHandler(level=logging.INFO, logger_provider=provider))


def configure_logging() -> None:
    """Route structlog and stdlib logging through one formatter."""
    shared = _shared_processors()

    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(processor=_select_renderer(), foreign_pre_chain=shared)
    )
    logging.basicConfig(handlers=[handler], level=logging.DEBUG if settings.debug else logging.INFO)

    _configure_otel_logging()


def get_logger(name: str | None = None) -> BoundLogger:
    return structlog.get_logger(name)


@contextmanager
def bind_ledger_context(**ids: UUID | str | None) -> Iterator[None]:
    """Tag every log line in the block with the given ledger identifiers.

    ``None`` values are dropped. UUIDs are stringified so JSON output stays flat.
    """
    bound = {key: str(value) for key, value in ids.items() if value is not None}
    with structlog.contextvars.bound_contextvars(**bound):
        yield


# Timing


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


class _Stopwatch:
    """Collects extra fields during a timed block and logs them once it ends."""

    def __init__(self, operation: str, logger: BoundLogger | None, level: str, context: dict[str, Any]):
        self.operation = operation
        self.log = logger or get_logger(__name__)
        self.level = level
        self.context = context
        self.fields: dict[str, Any] = {}
        self.started = time.perf_counter()

    def finish(self) -> None:
        duration_ms = _elapsed_ms(self.started)
        extra = {key: value for key, value in self.fields.items() if key != "duration_ms"}
        self.fields["duration_ms"] = duration_ms
        emit = getattr(self.log, self.level, self.log.info)
        emit(
            f"{self.operation} completed",
            operation=self.operation,
            duration_ms=duration_ms,
            **self.context,
            **extra,
        )


@contextmanager
def log_timing(
    operation: str,
    logger: BoundLogger | None = None,
    level: str = "info",
    **context: Any,
) -> Iterator[dict[str, Any]]:
    """Log how long a block took.

    The yielded dict can be filled with result fields (for example the number of
    ranked candidates); it gains ``duration_ms`` once the block exits.

        with log_timing("rank_candidates", candidates=len(rows)) as timing:
            timing["ranked"] = len(find_matches(extracted, rows))
    """
    watch = _Stopwatch(operation, logger, level, context)
    try:
        yield watch.fields
    finally:
        watch.finish()


@asynccontextmanager
async def async_log_timing(
    operation: str,
    logger: BoundLogger | None = None,
    level: str = "info",
    **context: Any,
) -> AsyncIterator[dict[str, Any]]:
    """Async twin of :func:`log_timing`, used around chunk persistence."""
    watch = _Stopwatch(operation, logger, level, context)
    try:
        yield watch.fields
    finally:
        watch.finish()


def log_external_api(
    service: str,
    *,
    logger: BoundLogger | None = None,
) -> Callable[[Callable[P, T]], Callable[P, T]]:
    """Log duration and outcome of an outbound call made by a coroutine."""

    def decorator(func: Callable[P, T]) -> Callable[P, T]:
        if not inspect.iscoroutinefunction(func):
            raise TypeError("log_external_api only decorates coroutine functions")
        log = logger or get_logger(func.__module__)
        call_fields = {"service": service, "function": func.__name__}

        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            started = time.perf_counter()
            try:
                result = await func(*args, **kwargs)  # type: ignore[misc]
            except Exception as exc:
                log.error(
                    f"External API call to {service} failed",
                    duration_ms=_elapsed_ms(started),
                    success=False,
                    error=str(exc),
                    error_type=type(exc).__name__,
                    **call_fields,
                )
                raise
            log.info(
                f"External API call to {service}",
                duration_ms=_elapsed_ms(started),
                success=True,
                **call_fields,
            )
            return result

        return wrapper  # type: ignore[return-value]

    return decorator


# Exceptions


def log_exception(
    logger: BoundLogger,
    exc: BaseException,
    context: str,
    *,
    level: str = "error",
    include_traceback: bool = True,
    **extra: Any,
) -> None:
    """Log ``exc`` under the message ``context`` with its type and module.

        except PersistenceError as exc:
            log_exception(logger, exc, "Chunk persistence failed", chunk=2)

    Error codes from :class:`~bookkeeping.utils.exceptions.BookkeepingError`
    are included when present.
    """
    fields: dict[str, Any] = {
        "error": str(exc),
        "error_type": type(exc).__name__,
        "error_module": type(exc).__module__,
        **extra,
    }
    code = getattr(exc, "code", None)
    if isinstance(code, str):
        fields.setdefault("error_code", code)
    if include_traceback:
        fields["exc_info"] = exc

    emit = getattr(logger, level, logger.error)
    emit(context, **fields)
