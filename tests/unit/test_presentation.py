from __future__ import annotations

from pathlib import Path

from fastapi.testclient import TestClient

from gruntforge.decomposer import TaskDecomposer, assign_ports
from gruntforge.domain.models import AssessmentReport, EvaluationSynthesis, RunResult, Task, WorkerInstance
from gruntforge.presentation import (
    Presenter,
    PublishedEndpoint,
    discussion_app,
    format_summary,
    render_discussion,
    static_site,
)

TASK = Task(prompt='Build a <b>todo</b> list', tier='ultralight')
IDS = ['worker1', 'worker2']


class RecordingHost:
    def __init__(self, *, fail: set[str] | None = None):
        self.fail = set(fail or ())
        self.served: dict[str, int] = {}
        self.stopped = False

    def serve(self, name: str, app, port: int) -> str:
        if name in self.fail:
            raise RuntimeError(f'port {port} in use')
        self.served[name] = port
        return f'http://localhost:{port}'

    def stop_all(self) -> None:
        self.stopped = True


def _result() -> RunResult:
    return RunResult(
        execution_seconds=42.0,
        containers={
            worker_id: WorkerInstance(
                worker_id=worker_id,
                name=f'grunt-{worker_id}',
                model='phi3:mini',
                specialization='General coding',
                port=3031 + index,
            )
            for index, worker_id in enumerate(IDS)
        },
    )


def _synthesis() -> EvaluationSynthesis:
    return EvaluationSynthesis(
        winner='worker2',
        improvements=('Add persistence',),
        hosting_plan=assign_ports(IDS),
        narrative='worker2 is better',
        winner_reason='synthesis',
        stage_outputs={'analysis': 'ok', 'debug': '[debug unavailable: timeout]'},
    )


def _workspaces(tmp_path: Path) -> dict[str, Path]:
    paths = {}
    for worker_id in IDS:
        path = tmp_path / worker_id
        path.mkdir()
        (path / 'index.html').write_text(f'<h1>{worker_id}</h1>', encoding='utf-8')
        paths[worker_id] = path
    return paths


def test_publish_candidates_and_winner_use_assigned_ports(tmp_path: Path):
    host = RecordingHost()
    events: list = []
    presenter = Presenter(host=host, events=lambda event_type, payload: events.append((event_type, payload)))
    workspaces = _workspaces(tmp_path)

    endpoints = presenter.publish_candidates(_result(), workspaces)
    winner = presenter.publish_winner(_synthesis(), workspaces, port=4000)

    assert [item.port for item in endpoints] == [3031, 3032]
    assert all(item.ok for item in endpoints)
    assert winner.url == 'http://localhost:4000'
    assert host.served == {'worker1': 3031, 'worker2': 3032, 'winner': 4000}
    assert events[-1][1]['source'] == 'worker2'


def test_publish_failure_is_recorded_and_others_continue(tmp_path: Path):
    host = RecordingHost(fail={'worker1'})
    presenter = Presenter(host=host)

    endpoints = presenter.publish_candidates(_result(), _workspaces(tmp_path))

    assert endpoints[0].ok is False
    assert 'in use' in str(endpoints[0].error)
    assert endpoints[1].ok is True


def test_publish_winner_without_workspace_is_recorded(tmp_path: Path):
    endpoint = Presenter(host=RecordingHost()).publish_winner(_synthesis(), {}, port=4000)
    assert endpoint.ok is False
    assert endpoint.error == 'no workspace for worker2'


def test_static_site_serves_workspace_index(tmp_path: Path):
    workspaces = _workspaces(tmp_path)
    client = TestClient(static_site(workspaces['worker1'], title='worker1'))
    resp = client.get('/')
    assert resp.status_code == 200
    assert '<h1>worker1</h1>' in resp.text


def test_discussion_app_serves_page_and_status():
    client = TestClient(discussion_app('<html>page</html>', lambda: {'winner': 'worker2'}))
    assert client.get('/').text == '<html>page</html>'
    assert client.get('/api/status').json() == {'winner': 'worker2'}


def test_render_discussion_escapes_and_marks_winner():
    decomposition = TaskDecomposer.fallback(TASK, IDS, ports=assign_ports(IDS))
    reports = {key: AssessmentReport.create(key, code_quality=80, performance=60, browser=100, api=40) for key in IDS}
    endpoints = [PublishedEndpoint(name='winner', port=4000, url='http://localhost:4000', ok=True)]

    page = render_discussion(
        run_id='run-1',
        decomposition=decomposition,
        result=_result(),
        reports=reports,
        synthesis=_synthesis(),
        endpoints=endpoints,
    )

    assert '&lt;b&gt;todo&lt;/b&gt;' in page
    assert '<tr class="winner"><td>worker2</td>' in page
    assert '70.0' in page
    assert 'http://localhost:4000' in page
    assert '<li>Add persistence</li>' in page


def test_format_summary_lists_workers_scores_and_degraded_stages(tmp_path: Path):
    reports = {'worker1': AssessmentReport.create('worker1', code_quality=80, performance=60, browser=100, api=40)}
    endpoints = [PublishedEndpoint(name='worker2', port=3032, url=None, ok=False, error='port in use')]

    text = format_summary(
        run_id='run-1',
        status='degraded',
        result=_result(),
        reports=reports,
        synthesis=_synthesis(),
        endpoints=endpoints,
        artifact_root=tmp_path,
    )

    assert text.startswith('Run run-1: degraded')
    assert 'overall=70.0' in text
    assert 'Winner: worker2 (synthesis)' in text
    assert 'Degraded stages: debug' in text
    assert 'unavailable (port in use)' in text
    assert f'Artifacts: {tmp_path}' in text
