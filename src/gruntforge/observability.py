"""Structured logging and tracing for the orchestrator.

Log lines are single JSON objects carrying the active run id and pipeline
stage. Spans go to an OTLP/HTTP collector when an endpoint is configured and
are no-ops otherwise.
"""
from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, replace
import json
import logging
import sys
from threading import Lock
from typing import Iterator

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

ROOT_LOGGER = 'gruntforge'


@dataclass(frozen=True)
class _LogContext:
    run_id: str | None = None
    stage: str | None = None


_context: ContextVar[_LogContext] = ContextVar('gruntforge_log_context', default=_LogContext())


def set_run_context(run_id: str | None = None, stage: str | None = None) -> None:
    _context.set(_LogContext(run_id=run_id, stage=stage))


def set_stage(stage: str | None) -> None:
    _context.set(replace(_context.get(), stage=stage))


@contextmanager
def run_scope(run_id: str, *, stage: str | None = None) -> Iterator[None]:
    """Bind ``run_id`` to every log line emitted inside the block."""
    token = _context.set(_LogContext(run_id=run_id, stage=stage))
    try:
        yield
    finally:
        _context.reset(token)


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        context = _context.get()
        payload: dict = {
            'ts': self.formatTime(record, self.datefmt),
            'level': record.levelname,
            'logger': record.name,
            'msg': record.getMessage(),
        }
        for key, value in (
            ('run_id', getattr(record, 'run_id', None) or context.run_id),
            ('stage', getattr(record, 'stage', None) or context.stage),
        ):
            if value:
                payload[key] = value
        if record.exc_info and record.exc_info[1] is not None:
            payload['exc'] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


_configured = False
_configured_otlp_endpoint: str | None = None
_configure_lock = Lock()


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def get_tracer(name: str):
    return trace.get_tracer(name)


def _install_json_handler(level: str) -> None:
    root = logging.getLogger(ROOT_LOGGER)
    if not any(isinstance(getattr(handler, 'formatter', None), _JsonFormatter) for handler in root.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(_JsonFormatter())
        root.addHandler(handler)
    root.setLevel(getattr(logging, str(level or 'INFO').upper(), logging.INFO))


def _install_tracing(service_name: str, endpoint: str) -> None:
    provider = TracerProvider(resource=Resource.create({'service.name': service_name}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)


def configure_observability(*, service_name: str, otlp_endpoint: str | None, level: str = 'INFO') -> None:
    """Idempotent: one JSON handler per process and one tracer provider per endpoint."""
    global _configured
    global _configured_otlp_endpoint
    endpoint = str(otlp_endpoint or '').strip()
    with _configure_lock:
        if not _configured:
            _install_json_handler(level)
            _configured = True
        if not endpoint or endpoint == _configured_otlp_endpoint:
            return
        _install_tracing(service_name, endpoint)
        _configured_otlp_endpoint = endpoint
    get_logger('gruntforge.observability').info('tracing_enabled endpoint=%s', endpoint)
