from __future__ import annotations

import json
import re
import shlex
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from gruntforge.domain.errors import DeploymentFailure, TeardownFailure
from gruntforge.observability import get_logger

_log = get_logger('gruntforge.runtime')


@dataclass(frozen=True)
class ServiceState:
    service: str
    state: str
    exit_code: int | None = None
    container_id: str | None = None
    health: str | None = None

    @property
    def running(self) -> bool:
        text = self.state.lower()
        return text == 'running' or text.startswith('up')


class ContainerRuntime(Protocol):
    def deploy(self, compose_file: Path) -> None:
        ...

    def status(self, compose_file: Path) -> list[ServiceState]:
        ...

    def teardown(self, compose_file: Path) -> None:
        ...


def project_name(compose_file: Path) -> str:
    raw = Path(compose_file).parent.name.lower()
    cleaned = re.sub(r'[^a-z0-9_-]+', '-', raw).strip('-_')
    return f'grunts-{cleaned or "run"}'


def parse_compose_ps(output: str) -> list[ServiceState]:
    """Parse ``compose ps --format json``: a JSON array or one object per line."""
    text = str(output or '').strip()
    if not text:
        return []
    rows: list = []
    try:
        parsed = json.loads(text)
        rows = parsed if isinstance(parsed, list) else [parsed]
    except ValueError:
        for line in text.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                rows.append(json.loads(line))
            except ValueError:
                _log.warning('compose_ps_line_unreadable line=%s', line[:200])
    states: list[ServiceState] = []
    for row in rows:
        if not isinstance(row, dict):
            continue
        service = str(row.get('Service') or row.get('Name') or '').strip()
        if not service:
            continue
        exit_code = row.get('ExitCode')
        try:
            exit_code = int(exit_code) if exit_code is not None else None
        except (TypeError, ValueError):
            exit_code = None
        states.append(
            ServiceState(
                service=service,
                state=str(row.get('State') or row.get('Status') or 'unknown').strip(),
                exit_code=exit_code,
                container_id=str(row.get('ID') or '').strip() or None,
                health=str(row.get('Health') or '').strip() or None,
            )
        )
    return states


class DockerComposeRuntime:
    def __init__(
        self,
        *,
        command: str = 'docker compose',
        deploy_timeout_seconds: float = 900,
        status_timeout_seconds: float = 30,
        teardown_timeout_seconds: float = 180,
    ):
        self.argv = shlex.split(str(command or '').strip() or 'docker compose')
        self.deploy_timeout_seconds = float(deploy_timeout_seconds)
        self.status_timeout_seconds = float(status_timeout_seconds)
        self.teardown_timeout_seconds = float(teardown_timeout_seconds)

    def deploy(self, compose_file: Path) -> None:
        completed = self._invoke(compose_file, ['up', '-d', '--build'], timeout=self.deploy_timeout_seconds)
        if completed.returncode != 0:
            raise DeploymentFailure(
                f'compose up failed returncode={completed.returncode}: {self._tail(completed.stderr)}'
            )
        _log.info('compose_up project=%s', project_name(compose_file))

    def status(self, compose_file: Path) -> list[ServiceState]:
        completed = self._invoke(compose_file, ['ps', '--all', '--format', 'json'], timeout=self.status_timeout_seconds)
        if completed.returncode != 0:
            raise DeploymentFailure(f'compose ps failed: {self._tail(completed.stderr)}')
        return parse_compose_ps(completed.stdout)

    def teardown(self, compose_file: Path) -> None:
        try:
            completed = self._invoke(
                compose_file,
                ['down', '-v', '--remove-orphans'],
                timeout=self.teardown_timeout_seconds,
            )
        except DeploymentFailure as exc:
            raise TeardownFailure(str(exc)) from exc
        if completed.returncode != 0:
            raise TeardownFailure(f'compose down failed: {self._tail(completed.stderr)}')
        _log.info('compose_down project=%s', project_name(compose_file))

    def _invoke(self, compose_file: Path, args: list[str], *, timeout: float) -> subprocess.CompletedProcess:
        executable = shutil.which(self.argv[0]) if self.argv else None
        if not executable:
            raise DeploymentFailure(f'container runtime not installed: {" ".join(self.argv)}')
        argv = [executable, *self.argv[1:], '-f', str(compose_file), '-p', project_name(compose_file), *args]
        try:
            return subprocess.run(
                argv,
                capture_output=True,
                text=True,
                encoding='utf-8',
                errors='replace',
                cwd=str(Path(compose_file).parent),
                timeout=timeout,
            )
        except FileNotFoundError as exc:
            raise DeploymentFailure(f'container runtime not installed: {exc}') from exc
        except subprocess.TimeoutExpired as exc:
            raise DeploymentFailure(f'{args[0]} timed out after {timeout}s') from exc

    @staticmethod
    def _tail(text: str | None, limit: int = 400) -> str:
        value = str(text or '').strip()
        return value[-limit:]


class NullContainerRuntime:
    """Stands in when no container runtime is installed; deployment always fails."""

    def __init__(self, reason: str = 'container runtime unavailable'):
        self.reason = reason
        self.teardown_calls = 0

    def deploy(self, compose_file: Path) -> None:
        raise DeploymentFailure(self.reason)

    def status(self, compose_file: Path) -> list[ServiceState]:
        return []

    def teardown(self, compose_file: Path) -> None:
        self.teardown_calls += 1
