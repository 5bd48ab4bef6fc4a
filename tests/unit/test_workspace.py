from __future__ import annotations

import json
from pathlib import Path

import pytest

from gruntforge.workspace import RESULT_DIRS, WorkspaceLifecycleManager


def test_open_creates_run_tree(tmp_path: Path):
    ws = WorkspaceLifecycleManager(tmp_path).open('run-abc')
    assert ws.root == (tmp_path / 'runs' / 'run-abc').resolve()
    assert ws.task_dir.is_dir()
    for name in RESULT_DIRS:
        assert (ws.results_dir / name).is_dir()
    assert ws.events_jsonl.exists()
    assert ws.summary_md.read_text(encoding='utf-8').startswith('# Summary run-abc')
    assert ws.worker_dir('worker1') == ws.task_dir / 'worker1'


def test_reset_removes_previous_outputs_and_keeps_results_reports(tmp_path: Path):
    manager = WorkspaceLifecycleManager(tmp_path)
    ws = manager.open('run-1')
    stale = ws.worker_dir('worker1')
    stale.mkdir(parents=True)
    (stale / 'index.html').write_text('old', encoding='utf-8')
    (ws.workspace_dir / 'src').mkdir()
    (ws.workspace_dir / 'worker-output.log').write_text('x', encoding='utf-8')
    (ws.results_dir / 'execution-logs' / 'old.json').write_text('{}', encoding='utf-8')
    (ws.results_dir / 'quality-reports' / 'keep.json').write_text('{}', encoding='utf-8')

    removed = manager.reset('run-1')

    assert stale in removed
    assert not stale.exists()
    assert not (ws.workspace_dir / 'src').exists()
    assert not (ws.workspace_dir / 'worker-output.log').exists()
    assert (ws.results_dir / 'execution-logs').is_dir()
    assert not (ws.results_dir / 'execution-logs' / 'old.json').exists()
    assert (ws.results_dir / 'quality-reports' / 'keep.json').exists()
    assert ws.task_dir.is_dir()


def test_reset_of_fresh_run_removes_nothing(tmp_path: Path):
    assert WorkspaceLifecycleManager(tmp_path).reset('run-new') == []


def test_events_round_trip_through_jsonl(tmp_path: Path):
    manager = WorkspaceLifecycleManager(tmp_path)
    manager.append_event('run-1', {'type': 'run_started', 'payload': {'tier': 'light'}})
    manager.append_event('run-1', {'type': 'run_completed', 'payload': {}})
    lines = manager.open('run-1').events_jsonl.read_text(encoding='utf-8').splitlines()
    events = [json.loads(line) for line in lines]
    assert [item['type'] for item in events] == ['run_started', 'run_completed']
    assert 'ts' in events[0]


def test_write_artifact_json_only_into_known_categories(tmp_path: Path):
    manager = WorkspaceLifecycleManager(tmp_path)
    path = manager.write_artifact_json('run-1', category='quality-reports', name='worker1', payload={'score': 70})
    assert path.name == 'worker1.json'
    assert json.loads(path.read_text(encoding='utf-8')) == {'score': 70}
    with pytest.raises(ValueError):
        manager.write_artifact_json('run-1', category='secrets', name='x', payload={})


def test_summary_and_discussion_files(tmp_path: Path):
    manager = WorkspaceLifecycleManager(tmp_path)
    summary = manager.write_summary('run-1', 'Run run-1: completed')
    page = manager.write_discussion('run-1', '<html></html>')
    assert 'Run run-1: completed' in summary.read_text(encoding='utf-8')
    assert page.read_text(encoding='utf-8') == '<html></html>'


@pytest.mark.parametrize('run_id', ['', '../escape', '..'])
def test_run_id_cannot_escape_runs_root(tmp_path: Path, run_id: str):
    with pytest.raises(ValueError):
        WorkspaceLifecycleManager(tmp_path).open(run_id)

