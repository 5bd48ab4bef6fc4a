from __future__ import annotations

from pathlib import Path

import pytest

from gruntforge.db import Database, SqlRunRepository
from gruntforge.domain.events import EventType
from gruntforge.repository import InMemoryRunRepository, RunCreateRecord

RECORD = RunCreateRecord(
    prompt='Build a snake game',
    tier='light',
    max_execution_seconds=3600,
    partial_assessment_interval_seconds=600,
    technologies=['javascript', 'css'],
    worker_budget=2,
)


def _sql_repo(tmp_path: Path) -> SqlRunRepository:
    db = Database(f'sqlite:///{(tmp_path / "runs.db").as_posix()}')
    db.create_schema()
    return SqlRunRepository(db)


@pytest.fixture(params=['memory', 'sql'])
def repo(request, tmp_path: Path):
    if request.param == 'memory':
        return InMemoryRunRepository()
    return _sql_repo(tmp_path)


def test_create_and_get_run(repo):
    row = repo.create_run(RECORD, run_id='run-fixed')
    assert row['run_id'] == 'run-fixed'
    assert row['status'] == 'queued'
    fetched = repo.get_run('run-fixed')
    assert fetched is not None
    assert fetched['technologies'] == ['javascript', 'css']
    assert fetched['worker_budget'] == 2
    assert repo.get_run('missing') is None


def test_generated_run_ids_are_unique(repo):
    first = repo.create_run(RECORD)
    second = repo.create_run(RECORD)
    assert first['run_id'].startswith('run-')
    assert first['run_id'] != second['run_id']
    assert len(repo.list_runs(limit=10)) == 2
    assert len(repo.list_runs(limit=1)) == 1


def test_update_run_sets_outcome(repo):
    repo.create_run(RECORD, run_id='run-1')
    row = repo.update_run('run-1', status='completed', winner='worker2', summary='done')
    assert row['status'] == 'completed'
    assert row['winner'] == 'worker2'
    row = repo.update_run('run-1', status='failed', reason='boom')
    assert row['winner'] == 'worker2'
    assert row['reason'] == 'boom'
    with pytest.raises(KeyError):
        repo.update_run('missing', status='failed')


def test_events_are_sequenced_per_run(repo):
    repo.create_run(RECORD, run_id='run-1')
    repo.append_event('run-1', event_type=EventType.RUN_STARTED, payload={'tier': 'light'})
    repo.append_event('run-1', event_type='Winner_Selected', payload={'winner': 'worker1'})
    events = repo.list_events('run-1')
    assert [item['seq'] for item in events] == [1, 2]
    assert [item['type'] for item in events] == ['run_started', 'winner_selected']
    assert events[1]['payload'] == {'winner': 'worker1'}


def test_events_for_unknown_run_raise(repo):
    with pytest.raises(KeyError):
        repo.append_event('missing', event_type='run_started', payload={})
    with pytest.raises(KeyError):
        repo.list_events('missing')


def test_sql_timestamps_are_utc_iso(tmp_path: Path):
    row = _sql_repo(tmp_path).create_run(RECORD)
    assert row['created_at'].endswith('+00:00')


def test_update_run_rejects_unknown_status(repo):
    repo.create_run(RECORD, run_id='run-1')
    with pytest.raises(ValueError):
        repo.update_run('run-1', status='exploded')
    assert repo.update_run('run-1', status=' Deployment_Failed ')['status'] == 'deployment_failed'
