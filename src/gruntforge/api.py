from __future__ import annotations

import logging

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from gruntforge import __version__
from gruntforge.domain.errors import ConfigurationError
from gruntforge.domain.models import DEFAULT_TECHNOLOGIES, Task
from gruntforge.service import OrchestratorService
from gruntforge.tiers import describe_tiers

_log = logging.getLogger(__name__)


class CreateRunRequest(BaseModel):
    prompt: str = Field(min_length=1)
    tier: str = Field(default='medium', min_length=1, max_length=32)
    max_execution_seconds: int = Field(default=14400, ge=1)
    partial_assessment_interval_seconds: int = Field(default=1800, ge=1)
    technologies: list[str] = Field(default_factory=lambda: list(DEFAULT_TECHNOLOGIES), min_length=1)
    background: bool = Field(default=True)


class RunResponse(BaseModel):
    run_id: str
    prompt: str
    tier: str
    max_execution_seconds: int
    partial_assessment_interval_seconds: int
    technologies: list[str]
    worker_budget: int
    status: str
    reason: str | None
    winner: str | None
    summary: str | None
    created_at: str
    updated_at: str


class EventResponse(BaseModel):
    seq: int
    run_id: str
    type: str
    payload: dict
    created_at: str


class AppState:
    def __init__(self, service: OrchestratorService):
        self.service = service


def create_app(*, service: OrchestratorService) -> FastAPI:
    app = FastAPI(title='gruntforge api', version=__version__)
    app.state.container = AppState(service=service)

    def _field_from_loc(loc: tuple | list | None) -> str | None:
        parts = [str(part) for part in (loc or ()) if not isinstance(part, int)]
        if parts and parts[0] in {'body', 'query', 'path', 'header', 'cookie'}:
            parts = parts[1:]
        return '.'.join(parts) or None

    def _error_payload(*, message: str, field: str | None = None, code: str = 'validation_error') -> dict:
        payload: dict[str, str] = {
            'code': code,
            'message': message,
        }
        if field:
            payload['field'] = field
        return payload

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation_error(request: Request, exc: RequestValidationError):  # noqa: ARG001
        details = exc.errors()
        if details:
            first = details[0]
            message = str(first.get('msg') or 'invalid request body')
            field = _field_from_loc(first.get('loc'))
        else:
            message = 'invalid request body'
            field = None
        return JSONResponse(status_code=400, content=_error_payload(message=message, field=field))

    @app.exception_handler(ConfigurationError)
    async def handle_configuration_error(request: Request, exc: ConfigurationError):  # noqa: ARG001
        return JSONResponse(
            status_code=400,
            content=_error_payload(message=exc.message, field=exc.field, code=exc.code),
        )

    def get_service() -> OrchestratorService:
        return app.state.container.service

    def _start_run_worker(run_id: str) -> None:
        service = get_service()
        try:
            service.start_run(run_id)
        except Exception as exc:
            reason_text = str(exc).strip() or exc.__class__.__name__
            _log.exception('background run failed run_id=%s reason=%s', run_id, reason_text)
            try:
                service.mark_failed(run_id, reason=f'background_error: {reason_text}')
            except Exception:
                _log.exception('background run failed to mark run as failed run_id=%s', run_id)

    @app.get('/healthz')
    def healthz() -> dict[str, str]:
        return {'status': 'ok'}

    @app.get('/api/tiers')
    def list_tiers() -> list[dict]:
        return describe_tiers()

    @app.post('/api/runs', status_code=201)
    def create_run(
        payload: CreateRunRequest,
        background_tasks: BackgroundTasks,
        service: OrchestratorService = Depends(get_service),
    ) -> dict:
        row = service.create_run(
            Task(
                prompt=payload.prompt,
                tier=payload.tier,
                max_execution_seconds=payload.max_execution_seconds,
                partial_assessment_interval_seconds=payload.partial_assessment_interval_seconds,
                technologies=tuple(payload.technologies),
            )
        )
        if payload.background:
            background_tasks.add_task(_start_run_worker, row['run_id'])
            return {'run': RunResponse(**row).model_dump(), 'outcome': None}
        outcome = service.start_run(row['run_id'])
        current = service.get_run(row['run_id'])
        assert current is not None
        return {'run': RunResponse(**current).model_dump(), 'outcome': outcome.to_dict()}

    @app.get('/api/runs', response_model=list[RunResponse])
    def list_runs(
        service: OrchestratorService = Depends(get_service),
        limit: int = Query(default=100, ge=1, le=500),
    ) -> list[RunResponse]:
        return [RunResponse(**row) for row in service.list_runs(limit=limit)]

    @app.get('/api/runs/{run_id}', response_model=RunResponse)
    def get_run(run_id: str, service: OrchestratorService = Depends(get_service)) -> RunResponse:
        row = service.get_run(run_id)
        if row is None:
            raise HTTPException(status_code=404, detail='run not found')
        return RunResponse(**row)

    @app.get('/api/runs/{run_id}/events', response_model=list[EventResponse])
    def list_events(run_id: str, service: OrchestratorService = Depends(get_service)) -> list[EventResponse]:
        try:
            rows = service.list_events(run_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='run not found') from exc
        return [EventResponse(**row) for row in rows]

    return app
