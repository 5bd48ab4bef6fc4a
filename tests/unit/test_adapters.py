from __future__ import annotations

from pathlib import Path
import subprocess

import pytest

from gruntforge.adapters import (
    CliReasoningService,
    NullReasoningService,
    detect_provider,
    final_codex_message,
    has_model_flag,
    is_provider_limit_output,
    profile_for,
)


def test_detect_provider_strips_path_and_windows_suffix():
    assert detect_provider('/usr/local/bin/claude -p') == 'claude'
    assert detect_provider('codex.exe exec') == 'codex'
    assert detect_provider('') == ''


def test_has_model_flag_recognizes_long_short_and_inline_forms():
    assert has_model_flag(['claude', '--model', 'x'])
    assert has_model_flag(['codex', '-m', 'x'])
    assert has_model_flag(['claude', '--model=x'])
    assert not has_model_flag(['claude', '-p'])


def test_provider_limit_output_detection():
    assert is_provider_limit_output("You've hit your limit, resets 2pm")
    assert is_provider_limit_output('RESOURCE_EXHAUSTED: quota')
    assert not is_provider_limit_output('analysis complete')


def test_profile_for_known_and_unknown_providers():
    assert profile_for('claude').model_flag == '--model'
    assert profile_for('codex').clean_output is final_codex_message
    unknown = profile_for('Aider')
    assert unknown.name == 'aider'
    assert unknown.build_argv('aider --yes', capability='local-model') == ['aider', '--yes', '-m', 'local-model']
    assert unknown.build_argv('aider --model=x', capability='y') == ['aider', '--model=x']


def test_final_codex_message_keeps_last_agent_message_only():
    raw = 'OpenAI Codex v1\nsome banner\ncodex\nFinal answer here\ntokens used: 120\n'
    assert final_codex_message(raw) == 'Final answer here'
    assert final_codex_message('plain reply\nOpenAI Codex v2\nbanner') == 'plain reply'
    assert final_codex_message('  just text  ') == 'just text'


def test_null_reasoning_service_counts_calls_and_fails():
    service = NullReasoningService('offline')
    result = service.run('hello')
    assert result.ok is False
    assert result.error == 'offline'
    assert service.calls == 1


def test_cli_reasoning_dry_run_returns_simulated_output(tmp_path: Path):
    service = CliReasoningService(command='claude -p', cwd=tmp_path, dry_run=True)
    result = service.run('hello')
    assert result.ok is True
    assert 'dry-run' in result.output


def test_cli_reasoning_reports_command_not_found(tmp_path: Path):
    service = CliReasoningService(command='this_binary_should_not_exist_12345 -p', cwd=tmp_path)
    result = service.run('hello', timeout_seconds=5)
    assert result.ok is False
    assert 'command_not_found' in str(result.error)


def test_cli_reasoning_retries_once_on_timeout_with_clipped_prompt(tmp_path: Path, monkeypatch):
    calls = {'n': 0, 'inputs': []}

    def fake_run(*args, **kwargs):
        calls['n'] += 1
        calls['inputs'].append(kwargs.get('input', ''))
        if calls['n'] == 1:
            raise subprocess.TimeoutExpired(cmd='claude', timeout=1)
        return subprocess.CompletedProcess(args=['claude'], returncode=0, stdout='decomposed', stderr='')

    monkeypatch.setattr('gruntforge.adapters.runner.subprocess.run', fake_run)
    monkeypatch.setattr('gruntforge.adapters.runner.time.sleep', lambda seconds: None)
    service = CliReasoningService(command='claude -p', cwd=tmp_path, timeout_retries=1)
    result = service.run('A' * 5000, timeout_seconds=1)

    assert result.ok is True
    assert result.output == 'decomposed'
    assert calls['n'] == 2
    assert len(calls['inputs'][1]) < len(calls['inputs'][0])


def test_retry_clipping_shrinks_stage_outputs_and_keeps_instructions():
    prompt = (
        'ANALYSIS RESULTS:\n' + 'a' * 5000 + '\n\n'
        'DEBUG FINDINGS:\n' + 'b' * 3000 + '\n\n'
        'Provide:\n1. WINNER SELECTION: name exactly one worker id (worker1, worker2) as the winner.'
    )
    clipped = CliReasoningService._clip_prompt_for_retry(prompt)

    assert len(clipped) < 4100
    assert clipped.endswith('name exactly one worker id (worker1, worker2) as the winner.')
    assert clipped.startswith('ANALYSIS RESULTS:\naaa')
    assert 'DEBUG FINDINGS:\nbbb' in clipped
    assert '[clipped ' in clipped


def test_cli_reasoning_returns_timeout_failure_after_retries(tmp_path: Path, monkeypatch):
    calls = {'n': 0}

    def fake_run(*args, **kwargs):
        calls['n'] += 1
        raise subprocess.TimeoutExpired(cmd='claude', timeout=1)

    monkeypatch.setattr('gruntforge.adapters.runner.subprocess.run', fake_run)
    monkeypatch.setattr('gruntforge.adapters.runner.time.sleep', lambda seconds: None)
    service = CliReasoningService(command='claude -p', cwd=tmp_path, timeout_retries=1)
    result = service.run('hello', timeout_seconds=1)

    assert result.ok is False
    assert 'command_timeout provider=claude' in str(result.error)
    assert calls['n'] == 2


def test_cli_reasoning_maps_quota_message_to_provider_limit(tmp_path: Path, monkeypatch):
    def fake_run(*args, **kwargs):
        return subprocess.CompletedProcess(args=['claude'], returncode=0, stdout='usage limit reached', stderr='')

    monkeypatch.setattr('gruntforge.adapters.runner.subprocess.run', fake_run)
    result = CliReasoningService(command='claude -p', cwd=tmp_path).run('hello', timeout_seconds=1)
    assert result.ok is False
    assert 'provider_limit provider=claude' in str(result.error)


def test_cli_reasoning_nonzero_exit_is_failure(tmp_path: Path, monkeypatch):
    def fake_run(*args, **kwargs):
        return subprocess.CompletedProcess(args=['claude'], returncode=2, stdout='', stderr='boom')

    monkeypatch.setattr('gruntforge.adapters.runner.subprocess.run', fake_run)
    result = CliReasoningService(command='claude -p', cwd=tmp_path).run('hello', timeout_seconds=1)
    assert result.ok is False
    assert 'returncode=2' in str(result.error)


@pytest.mark.parametrize(
    ('base_command', 'capability', 'expected_flag'),
    [
        ('claude -p', 'claude-sonnet-4-5', '--model'),
        ('codex exec', 'gpt-5-codex', '-m'),
        ('gemini -p', 'gemini-2.5-pro', '-m'),
    ],
)
def test_cli_reasoning_appends_model_flag_per_provider(
    tmp_path: Path,
    monkeypatch,
    base_command: str,
    capability: str,
    expected_flag: str,
):
    captured = {'argv': None}

    def fake_run(argv, **kwargs):
        captured['argv'] = list(argv)
        return subprocess.CompletedProcess(args=argv, returncode=0, stdout='ok', stderr='')

    monkeypatch.setattr('gruntforge.adapters.runner.subprocess.run', fake_run)
    CliReasoningService(command=base_command, cwd=tmp_path).run('hello', capability=capability, timeout_seconds=1)

    assert captured['argv'] is not None
    assert expected_flag in captured['argv']
    assert capability in captured['argv']


def test_compute_attempt_timeout_does_not_exceed_remaining_budget():
    value = CliReasoningService._compute_attempt_timeout_seconds(remaining_budget=0.2, attempts_left=2)
    assert 0 < value <= 0.2
