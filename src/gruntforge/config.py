from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path


@dataclass(frozen=True)
class Settings:
    database_url: str
    artifact_root: Path
    service_name: str
    otel_endpoint: str | None
    log_level: str
    dry_run: bool
    reasoning_command: str
    reasoning_capability: str
    reasoning_timeout_seconds: int
    reasoning_timeout_retries: int
    worker_budget: int
    base_port: int
    winner_port: int
    health_timeout_seconds: float
    monitor_interval_seconds: float
    monitor_concurrency: int
    readiness_timeout_seconds: float
    readiness_poll_seconds: float
    validation_concurrency: int
    validation_timeout_seconds: int
    assessment_backend: str
    rank_by_validation: bool
    redis_url: str
    compose_command: str
    worker_command: str
    worker_build_context: Path | None


def _env_int(name: str, default: int, *, minimum: int = 1) -> int:
    raw = (os.getenv(name, '') or '').strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_float(name: str, default: float, *, minimum: float = 0.0) -> float:
    raw = (os.getenv(name, '') or '').strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_flag(name: str) -> bool:
    return (os.getenv(name, '') or '').strip().lower() in {'1', 'true', 'yes', 'on'}


def load_settings() -> Settings:
    artifact_root = Path(os.getenv('GRUNTS_ARTIFACT_ROOT', '.zenode/tools/zn-grunts')).resolve()
    database_url = os.getenv(
        'GRUNTS_DATABASE_URL',
        f'sqlite:///{(artifact_root / "grunts.db").as_posix()}',
    )
    service_name = os.getenv('GRUNTS_SERVICE_NAME', 'gruntforge')
    otel_endpoint = os.getenv('GRUNTS_OTEL_EXPORTER_OTLP_ENDPOINT')
    reasoning_command = os.getenv(
        'GRUNTS_REASONING_COMMAND',
        'claude -p --dangerously-skip-permissions --strict-mcp-config',
    )
    reasoning_capability = str(os.getenv('GRUNTS_REASONING_CAPABILITY', '') or '').strip()
    # Worker runs default to 2 workers, matching the minimal run shape.
    worker_budget = _env_int('GRUNTS_WORKER_BUDGET', 2, minimum=1)
    assessment_backend = str(os.getenv('GRUNTS_ASSESSMENT_BACKEND', 'langgraph') or 'langgraph').strip().lower()
    if assessment_backend not in {'langgraph', 'classic'}:
        assessment_backend = 'langgraph'
    worker_build_context = str(os.getenv('GRUNTS_WORKER_BUILD_CONTEXT', '') or '').strip()
    return Settings(
        database_url=database_url,
        artifact_root=artifact_root,
        service_name=service_name,
        otel_endpoint=otel_endpoint,
        log_level=str(os.getenv('GRUNTS_LOG_LEVEL', 'INFO') or 'INFO').strip().upper(),
        dry_run=_env_flag('GRUNTS_DRY_RUN'),
        rank_by_validation=_env_flag('GRUNTS_RANK_BY_VALIDATION'),
        reasoning_command=reasoning_command,
        reasoning_capability=reasoning_capability,
        reasoning_timeout_seconds=_env_int('GRUNTS_REASONING_TIMEOUT_SECONDS', 600, minimum=10),
        reasoning_timeout_retries=_env_int('GRUNTS_REASONING_TIMEOUT_RETRIES', 1, minimum=0),
        worker_budget=worker_budget,
        base_port=_env_int('GRUNTS_BASE_PORT', 3031, minimum=1024),
        winner_port=_env_int('GRUNTS_WINNER_PORT', 4000, minimum=1024),
        health_timeout_seconds=_env_float('GRUNTS_HEALTH_TIMEOUT_SECONDS', 5.0, minimum=0.1),
        monitor_interval_seconds=_env_float('GRUNTS_MONITOR_INTERVAL_SECONDS', 5.0, minimum=0.1),
        monitor_concurrency=_env_int('GRUNTS_MONITOR_CONCURRENCY', 4, minimum=1),
        readiness_timeout_seconds=_env_float('GRUNTS_READINESS_TIMEOUT_SECONDS', 30.0, minimum=1.0),
        readiness_poll_seconds=_env_float('GRUNTS_READINESS_POLL_SECONDS', 1.0, minimum=0.05),
        validation_concurrency=_env_int('GRUNTS_VALIDATION_CONCURRENCY', 3, minimum=1),
        validation_timeout_seconds=_env_int('GRUNTS_VALIDATION_TIMEOUT_SECONDS', 120, minimum=5),
        assessment_backend=assessment_backend,
        redis_url=os.getenv('GRUNTS_REDIS_URL', 'redis://localhost:6379/0'),
        compose_command=os.getenv('GRUNTS_COMPOSE_COMMAND', 'docker compose'),
        worker_command=str(os.getenv('GRUNTS_WORKER_COMMAND', '') or '').strip(),
        worker_build_context=Path(worker_build_context).resolve() if worker_build_context else None,
    )
