from __future__ import annotations

from pathlib import Path

import pytest

from fastapi.testclient import TestClient

from gruntforge.adapters.base import NullReasoningService, ReasoningResult
from gruntforge.domain.errors import ConfigurationError
from gruntforge.domain.models import AssessmentReport, Task, WorkerInstance
from gruntforge.repository import InMemoryRunRepository
from gruntforge.runtime import NullContainerRuntime, ServiceState
from gruntforge.service import OrchestratorService
from gruntforge.workspace import WorkspaceLifecycleManager

TASK = Task(prompt='Build a pomodoro timer', tier='light', max_execution_seconds=60, partial_assessment_interval_seconds=30)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += seconds


class EchoReasoning:
    def __init__(self, text: str):
        self.text = text
        self.calls = 0

    def run(self, prompt: str, *, capability=None, timeout_seconds: float = 600) -> ReasoningResult:
        self.calls += 1
        return ReasoningResult(ok=True, output=self.text, error=None, duration_seconds=0.1)


class ReadyRuntime:
    def __init__(self):
        self.teardowns = 0

    def deploy(self, compose_file: Path) -> None:
        return None

    def status(self, compose_file: Path) -> list[ServiceState]:
        return [ServiceState(name, 'running') for name in ('worker1', 'worker2', 'redis')]

    def teardown(self, compose_file: Path) -> None:
        self.teardowns += 1


class CompletingProbe:
    def fetch(self, worker):
        return {'status': 'completed', 'currentPhase': 'assessment', 'progress': 100}


class ScoreHarness:
    def __init__(self, scores: dict[str, float] | None = None):
        self.scores = scores or {'worker1': 50.0, 'worker2': 90.0}
        self.calls: list[str] = []

    def validate(self, worker: WorkerInstance, workspace: Path) -> AssessmentReport:
        self.calls.append(worker.worker_id)
        score = self.scores.get(worker.worker_id, 0.0)
        return AssessmentReport.create(worker.worker_id, code_quality=score, performance=score, browser=score, api=score)


class RecordingHost:
    def __init__(self):
        self.served: dict[str, int] = {}
        self.apps: dict = {}
        self.stopped = False

    def serve(self, name: str, app, port: int) -> str:
        self.served[name] = port
        self.apps[name] = app
        return f'http://localhost:{port}'

    def stop_all(self) -> None:
        self.stopped = True


class ExplodingRuntime(ReadyRuntime):
    def status(self, compose_file: Path) -> list[ServiceState]:
        raise ValueError('unexpected status payload')


def _service(tmp_path: Path, **overrides) -> OrchestratorService:
    clock = FakeClock()
    params = {
        'repository': InMemoryRunRepository(),
        'workspace': WorkspaceLifecycleManager(tmp_path),
        'reasoning': EchoReasoning('Solid work from both workers.'),
        'runtime': ReadyRuntime(),
        'harness': ScoreHarness(),
        'host': RecordingHost(),
        'health_probe': CompletingProbe(),
        'readiness_timeout_seconds': 5,
        'clock': clock,
        'sleep': clock.sleep,
    }
    params.update(overrides)
    return OrchestratorService(**params)


def test_create_run_records_queued_run_sized_by_budget(tmp_path: Path):
    service = _service(tmp_path, worker_budget=3)
    row = service.create_run(Task(prompt='Build a chess clock', tier='ultralight'))
    assert row['status'] == 'queued'
    assert row['worker_budget'] == 2
    assert service.get_run(row['run_id']) is not None


def test_create_run_rejects_invalid_task(tmp_path: Path):
    service = _service(tmp_path)
    with pytest.raises(ConfigurationError) as excinfo:
        service.create_run(Task(prompt='   ', tier='light'))
    assert excinfo.value.field == 'prompt'
    with pytest.raises(ConfigurationError):
        service.create_run(Task(prompt='Build a clock', tier='colossal'))
    assert service.list_runs() == []


def test_create_run_rejects_port_collision(tmp_path: Path):
    service = _service(tmp_path, base_port=3999)
    with pytest.raises(ConfigurationError) as excinfo:
        service.create_run(TASK)
    assert excinfo.value.field == 'winner_port'


def test_run_completes_and_ranks_by_validation_when_enabled(tmp_path: Path):
    host = RecordingHost()
    service = _service(tmp_path, host=host, rank_by_validation=True)

    outcome = service.run(TASK)

    assert outcome.status == 'completed'
    assert outcome.synthesis is not None
    assert outcome.synthesis.winner == 'worker2'
    assert outcome.synthesis.winner_reason == 'validation'
    assert host.served == {'worker1': 3031, 'worker2': 3032, 'winner': 4000, 'discussion': 3033}
    row = service.get_run(outcome.run_id)
    assert row['status'] == 'completed'
    assert row['winner'] == 'worker2'
    assert row['summary'].startswith(f'Run {outcome.run_id}: completed')
    types = [item['type'] for item in service.list_events(outcome.run_id)]
    assert types[0] == 'run_started'
    assert types[-1] == 'run_completed'
    assert 'winner_selected' in types


def test_failing_reasoning_degrades_but_still_completes(tmp_path: Path):
    reasoning = NullReasoningService()
    service = _service(tmp_path, reasoning=reasoning)

    outcome = service.run(TASK)

    assert outcome.status == 'degraded'
    assert outcome.decomposition is not None
    assert outcome.decomposition.source == 'fallback'
    assert outcome.synthesis.winner == 'worker1'
    assert outcome.synthesis.winner_reason == 'default'
    assert reasoning.calls == 5
    assert '[synthesis unavailable: reasoning_service_unavailable]' in outcome.synthesis.narrative


def test_deployment_failure_skips_assessment(tmp_path: Path):
    runtime = NullContainerRuntime()
    harness = ScoreHarness()
    service = _service(tmp_path, runtime=runtime, harness=harness)

    outcome = service.run(TASK)

    assert outcome.status == 'deployment_failed'
    assert outcome.result.error == 'deployment failed: container runtime unavailable'
    assert harness.calls == []
    assert runtime.teardown_calls == 1
    assert service.get_run(outcome.run_id)['reason'] == outcome.result.error


def test_unexpected_error_marks_run_failed(tmp_path: Path):
    service = _service(tmp_path, runtime=ExplodingRuntime())

    outcome = service.run(TASK)

    assert outcome.status == 'failed'
    assert 'ValueError' in str(outcome.result.error)
    assert service.get_run(outcome.run_id)['status'] == 'failed'


def test_start_run_unknown_id_raises(tmp_path: Path):
    with pytest.raises(KeyError):
        _service(tmp_path).start_run('run-missing')


def test_mark_failed_and_shutdown(tmp_path: Path):
    host = RecordingHost()
    service = _service(tmp_path, host=host)
    row = service.create_run(TASK)

    updated = service.mark_failed(row['run_id'], reason='background_error: boom')
    service.shutdown()

    assert updated['status'] == 'failed'
    assert updated['reason'] == 'background_error: boom'
    assert service.list_events(row['run_id'])[-1]['payload']['status'] == 'failed'
    assert host.stopped is True


def test_outcome_to_dict_is_serialisable(tmp_path: Path):
    outcome = _service(tmp_path).run(TASK)
    payload = outcome.to_dict()
    assert payload['status'] == 'completed'
    assert payload['hosting_ports']['winner'] == 4000
    assert set(payload['reports']) == {'worker1', 'worker2'}
    assert payload['synthesis']['winner'] == 'worker1'
    assert payload['synthesis']['winner_reason'] == 'default'


class LiveRuntime(ReadyRuntime):
    def __init__(self):
        super().__init__()
        self.alive = False

    def deploy(self, compose_file: Path) -> None:
        self.alive = True

    def teardown(self, compose_file: Path) -> None:
        super().teardown(compose_file)
        self.alive = False


class LivenessHarness(ScoreHarness):
    def __init__(self, runtime: LiveRuntime):
        super().__init__()
        self.runtime = runtime
        self.alive_during: list[bool] = []

    def validate(self, worker: WorkerInstance, workspace: Path) -> AssessmentReport:
        self.alive_during.append(self.runtime.alive)
        return super().validate(worker, workspace)


class LivenessHost(RecordingHost):
    def __init__(self, runtime: LiveRuntime):
        super().__init__()
        self.runtime = runtime
        self.alive_during: list[bool] = []

    def serve(self, name: str, app, port: int) -> str:
        self.alive_during.append(self.runtime.alive)
        return super().serve(name, app, port)


def test_validation_runs_against_live_workers_and_publication_after_teardown(tmp_path: Path):
    runtime = LiveRuntime()
    harness = LivenessHarness(runtime)
    host = LivenessHost(runtime)
    service = _service(tmp_path, runtime=runtime, harness=harness, host=host)

    outcome = service.run(TASK)

    assert outcome.status == 'completed'
    assert harness.alive_during == [True, True]
    assert runtime.teardowns == 1
    assert host.alive_during == [False, False, False, False]


class SignalCoordination:
    def __init__(self):
        self.closed = False

    def read_signals(self, worker_ids):
        return {worker_id: {'phase': 'assessment', 'progress': '100'} for worker_id in worker_ids}

    def close(self) -> None:
        self.closed = True


def test_coordination_signals_reach_status_payload_and_reader_is_closed(tmp_path: Path):
    readers: list[SignalCoordination] = []

    def coordination_factory() -> SignalCoordination:
        readers.append(SignalCoordination())
        return readers[-1]

    host = RecordingHost()
    service = _service(tmp_path, host=host, coordination_factory=coordination_factory)

    outcome = service.run(TASK)

    expected = {'worker1': {'phase': 'assessment', 'progress': '100'}, 'worker2': {'phase': 'assessment', 'progress': '100'}}
    assert outcome.result.signals == expected
    assert [reader.closed for reader in readers] == [True]
    status = TestClient(host.apps['discussion']).get('/api/status').json()
    assert status['signals'] == expected
    ticks = [item for item in service.list_events(outcome.run_id) if item['type'] == 'monitor_tick']
    assert ticks[-1]['payload']['signals'] == expected
