from __future__ import annotations

import logging

from gruntforge.adapters import CliReasoningService
from gruntforge.api import create_app
from gruntforge.config import Settings, load_settings
from gruntforge.coordination import RedisCoordinationReader
from gruntforge.db import Database, SqlRunRepository
from gruntforge.monitor import HttpHealthProbe
from gruntforge.observability import configure_observability
from gruntforge.presentation import UvicornServiceHost
from gruntforge.repository import InMemoryRunRepository
from gruntforge.runtime import DockerComposeRuntime
from gruntforge.service import OrchestratorService
from gruntforge.validation import ScriptedValidationHarness
from gruntforge.workspace import WorkspaceLifecycleManager

_log = logging.getLogger(__name__)


def build_service(settings: Settings) -> OrchestratorService:
    settings.artifact_root.mkdir(parents=True, exist_ok=True)
    try:
        db = Database(settings.database_url)
        db.create_schema()
        repo = SqlRunRepository(db)
    except Exception:
        _log.exception('database bootstrap failed; falling back to in-memory repository')
        repo = InMemoryRunRepository()

    reasoning = CliReasoningService(
        command=settings.reasoning_command,
        default_capability=settings.reasoning_capability,
        dry_run=settings.dry_run,
        timeout_retries=settings.reasoning_timeout_retries,
    )
    return OrchestratorService(
        repository=repo,
        workspace=WorkspaceLifecycleManager(settings.artifact_root),
        reasoning=reasoning,
        runtime=DockerComposeRuntime(command=settings.compose_command),
        harness=ScriptedValidationHarness(timeout_seconds=settings.validation_timeout_seconds),
        host=UvicornServiceHost(),
        health_probe=HttpHealthProbe(timeout_seconds=settings.health_timeout_seconds),
        coordination_factory=lambda: RedisCoordinationReader(settings.redis_url),
        worker_budget=settings.worker_budget,
        base_port=settings.base_port,
        winner_port=settings.winner_port,
        reasoning_capability=settings.reasoning_capability,
        reasoning_timeout_seconds=settings.reasoning_timeout_seconds,
        monitor_interval_seconds=settings.monitor_interval_seconds,
        monitor_concurrency=settings.monitor_concurrency,
        readiness_timeout_seconds=settings.readiness_timeout_seconds,
        readiness_poll_seconds=settings.readiness_poll_seconds,
        validation_concurrency=settings.validation_concurrency,
        assessment_backend=settings.assessment_backend,
        rank_by_validation=settings.rank_by_validation,
        worker_command=settings.worker_command,
        worker_build_context=settings.worker_build_context,
    )


def build_app():
    settings = load_settings()
    configure_observability(
        service_name=settings.service_name,
        otlp_endpoint=settings.otel_endpoint,
        level=settings.log_level,
    )
    service = build_service(settings)
    app = create_app(service=service)
    app.add_event_handler('shutdown', service.shutdown)
    return app


app = build_app()
