from __future__ import annotations

import json
from pathlib import Path
import subprocess

import pytest

from gruntforge.domain.errors import DeploymentFailure, TeardownFailure
from gruntforge.runtime import DockerComposeRuntime, NullContainerRuntime, parse_compose_ps, project_name


def test_project_name_is_derived_from_run_directory():
    assert project_name(Path('/tmp/runs/Run_ABC 1/docker-compose.json')) == 'grunts-run_abc-1'


def test_parse_compose_ps_json_array():
    output = json.dumps(
        [
            {'Service': 'worker1', 'State': 'running', 'ID': 'abc', 'ExitCode': 0},
            {'Service': 'redis', 'State': 'running', 'Health': 'healthy'},
        ]
    )
    states = parse_compose_ps(output)
    assert [item.service for item in states] == ['worker1', 'redis']
    assert states[0].container_id == 'abc'
    assert states[1].health == 'healthy'
    assert all(item.running for item in states)


def test_parse_compose_ps_ndjson_skips_bad_lines():
    output = '\n'.join(
        [
            json.dumps({'Service': 'worker1', 'State': 'exited', 'ExitCode': 1}),
            'not json',
            json.dumps({'Service': 'worker2', 'State': 'exited', 'ExitCode': '0'}),
        ]
    )
    states = parse_compose_ps(output)
    assert [(item.service, item.exit_code) for item in states] == [('worker1', 1), ('worker2', 0)]
    assert not states[0].running


def test_parse_compose_ps_empty():
    assert parse_compose_ps('') == []


def test_missing_runtime_binary_is_deployment_failure(tmp_path: Path):
    runtime = DockerComposeRuntime(command='this_binary_should_not_exist_12345 compose')
    with pytest.raises(DeploymentFailure):
        runtime.deploy(tmp_path / 'docker-compose.json')
    with pytest.raises(TeardownFailure):
        runtime.teardown(tmp_path / 'docker-compose.json')


def test_compose_commands_and_failure_mapping(tmp_path: Path, monkeypatch):
    calls: list[list[str]] = []

    def fake_run(argv, **kwargs):
        calls.append(list(argv))
        if 'up' in argv:
            return subprocess.CompletedProcess(args=argv, returncode=1, stdout='', stderr='image pull failed')
        return subprocess.CompletedProcess(args=argv, returncode=0, stdout='[]', stderr='')

    monkeypatch.setattr('gruntforge.runtime.shutil.which', lambda name: f'/usr/bin/{name}')
    monkeypatch.setattr('gruntforge.runtime.subprocess.run', fake_run)
    runtime = DockerComposeRuntime(command='docker compose')
    compose_file = tmp_path / 'run-1' / 'docker-compose.json'

    with pytest.raises(DeploymentFailure, match='image pull failed'):
        runtime.deploy(compose_file)
    assert runtime.status(compose_file) == []
    runtime.teardown(compose_file)

    assert calls[0][-3:] == ['up', '-d', '--build']
    assert calls[1][-4:] == ['ps', '--all', '--format', 'json']
    assert calls[2][-3:] == ['down', '-v', '--remove-orphans']
    assert '-p' in calls[0] and 'grunts-run-1' in calls[0]


def test_compose_timeout_is_deployment_failure(tmp_path: Path, monkeypatch):
    def fake_run(argv, **kwargs):
        raise subprocess.TimeoutExpired(cmd=argv, timeout=1)

    monkeypatch.setattr('gruntforge.runtime.shutil.which', lambda name: f'/usr/bin/{name}')
    monkeypatch.setattr('gruntforge.runtime.subprocess.run', fake_run)
    with pytest.raises(DeploymentFailure, match='timed out'):
        DockerComposeRuntime().deploy(tmp_path / 'docker-compose.json')


def test_null_runtime_always_fails_deploy_and_counts_teardown(tmp_path: Path):
    runtime = NullContainerRuntime('no docker')
    with pytest.raises(DeploymentFailure, match='no docker'):
        runtime.deploy(tmp_path / 'docker-compose.json')
    assert runtime.status(tmp_path / 'docker-compose.json') == []
    runtime.teardown(tmp_path / 'docker-compose.json')
    assert runtime.teardown_calls == 1
