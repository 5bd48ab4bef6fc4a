from __future__ import annotations

from pathlib import Path

from fastapi.testclient import TestClient

from gruntforge.adapters.base import ReasoningResult
from gruntforge.api import create_app
from gruntforge.domain.models import AssessmentReport, WorkerInstance
from gruntforge.repository import InMemoryRunRepository
from gruntforge.runtime import NullContainerRuntime, ServiceState
from gruntforge.service import OrchestratorService
from gruntforge.workspace import WorkspaceLifecycleManager


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += seconds


class QuietReasoning:
    def run(self, prompt: str, *, capability=None, timeout_seconds: float = 600) -> ReasoningResult:
        return ReasoningResult(ok=True, output='Both builds work.', error=None, duration_seconds=0.0)


class ReadyRuntime:
    def deploy(self, compose_file: Path) -> None:
        return None

    def status(self, compose_file: Path) -> list[ServiceState]:
        return [ServiceState(name, 'running') for name in ('worker1', 'worker2', 'redis')]

    def teardown(self, compose_file: Path) -> None:
        return None


class CompletingProbe:
    def fetch(self, worker):
        return {'status': 'completed', 'currentPhase': 'assessment'}


class FlatHarness:
    def validate(self, worker: WorkerInstance, workspace: Path) -> AssessmentReport:
        score = 80.0 if worker.worker_id == 'worker1' else 40.0
        return AssessmentReport.create(worker.worker_id, code_quality=score, performance=score, browser=score, api=score)


class NullHost:
    def serve(self, name: str, app, port: int) -> str:
        return f'http://localhost:{port}'

    def stop_all(self) -> None:
        return None


def build_client(tmp_path: Path, *, runtime=None) -> TestClient:
    clock = FakeClock()
    service = OrchestratorService(
        repository=InMemoryRunRepository(),
        workspace=WorkspaceLifecycleManager(tmp_path),
        reasoning=QuietReasoning(),
        runtime=runtime or ReadyRuntime(),
        harness=FlatHarness(),
        host=NullHost(),
        health_probe=CompletingProbe(),
        clock=clock,
        sleep=clock.sleep,
    )
    return TestClient(create_app(service=service))


def _payload(**overrides) -> dict:
    payload = {
        'prompt': 'Build a unit converter',
        'tier': 'ultralight',
        'max_execution_seconds': 120,
        'partial_assessment_interval_seconds': 60,
        'background': False,
    }
    payload.update(overrides)
    return payload


def test_healthz_and_tiers(tmp_path: Path):
    client = build_client(tmp_path)
    assert client.get('/healthz').json() == {'status': 'ok'}
    tiers = client.get('/api/tiers').json()
    assert [item['tier'] for item in tiers] == ['ultralight', 'light', 'medium', 'high']


def test_create_run_rejects_empty_prompt_with_field(tmp_path: Path):
    client = build_client(tmp_path)
    resp = client.post('/api/runs', json=_payload(prompt=''))
    assert resp.status_code == 400
    body = resp.json()
    assert body['code'] == 'validation_error'
    assert body['field'] == 'prompt'


def test_create_run_rejects_unknown_tier_with_field(tmp_path: Path):
    client = build_client(tmp_path)
    resp = client.post('/api/runs', json=_payload(tier='gigantic'))
    assert resp.status_code == 400
    assert resp.json()['field'] == 'tier'
    assert client.get('/api/runs').json() == []


def test_create_run_in_foreground_returns_outcome(tmp_path: Path):
    client = build_client(tmp_path)
    resp = client.post('/api/runs', json=_payload())
    assert resp.status_code == 201
    body = resp.json()
    assert body['run']['status'] == 'completed'
    assert body['run']['winner'] == 'worker1'
    assert body['outcome']['synthesis']['winner_reason'] == 'default'

    run_id = body['run']['run_id']
    assert client.get(f'/api/runs/{run_id}').json()['worker_budget'] == 2
    assert [item['run_id'] for item in client.get('/api/runs', params={'limit': 5}).json()] == [run_id]
    events = client.get(f'/api/runs/{run_id}/events').json()
    assert events[0]['type'] == 'run_started'
    assert events[-1]['type'] == 'run_completed'


def test_create_run_in_background_queues_and_finishes(tmp_path: Path):
    client = build_client(tmp_path, runtime=NullContainerRuntime())
    resp = client.post('/api/runs', json=_payload(background=True))
    assert resp.status_code == 201
    body = resp.json()
    assert body['outcome'] is None
    assert body['run']['status'] == 'queued'

    row = client.get(f"/api/runs/{body['run']['run_id']}").json()
    assert row['status'] == 'deployment_failed'
    assert row['reason'].startswith('deployment failed')


def test_missing_run_returns_404(tmp_path: Path):
    client = build_client(tmp_path)
    assert client.get('/api/runs/run-missing').status_code == 404
    resp = client.get('/api/runs/run-missing/events')
    assert resp.status_code == 404
    assert resp.json()['detail'] == 'run not found'
