from __future__ import annotations

from dataclasses import dataclass
import html
from pathlib import Path
import threading
import time
from typing import Callable, Protocol

from fastapi import FastAPI
from fastapi.responses import HTMLResponse
from fastapi.staticfiles import StaticFiles
from uvicorn import Config, Server

from gruntforge.domain.events import EventType
from gruntforge.domain.models import AssessmentReport, Decomposition, EvaluationSynthesis, RunResult
from gruntforge.observability import get_logger

_log = get_logger('gruntforge.presentation')


@dataclass(frozen=True)
class PublishedEndpoint:
    name: str
    port: int
    url: str | None
    ok: bool
    error: str | None = None

    def to_dict(self) -> dict:
        return {'name': self.name, 'port': self.port, 'url': self.url, 'ok': self.ok, 'error': self.error}


class ServiceHost(Protocol):
    def serve(self, name: str, app, port: int) -> str:
        ...

    def stop_all(self) -> None:
        ...


class UvicornServiceHost:
    """Runs each published app under its own uvicorn server in a daemon thread."""

    def __init__(
        self,
        *,
        bind_host: str = '0.0.0.0',
        public_host: str = 'localhost',
        startup_timeout_seconds: float = 5.0,
    ):
        self.bind_host = bind_host
        self.public_host = public_host
        self.startup_timeout_seconds = float(startup_timeout_seconds)
        self._servers: dict[str, tuple[Server, threading.Thread]] = {}
        self._lock = threading.Lock()

    def serve(self, name: str, app, port: int) -> str:
        self.stop(name)
        server = Server(Config(app=app, host=self.bind_host, port=int(port), log_level='warning'))
        thread = threading.Thread(target=server.run, name=f'grunts-host-{name}', daemon=True)
        thread.start()
        deadline = time.monotonic() + self.startup_timeout_seconds
        while not server.started:
            if not thread.is_alive():
                raise RuntimeError(f'{name} could not bind port {port}')
            if time.monotonic() >= deadline:
                server.should_exit = True
                raise RuntimeError(f'{name} did not start on port {port} within {self.startup_timeout_seconds}s')
            time.sleep(0.05)
        with self._lock:
            self._servers[name] = (server, thread)
        url = f'http://{self.public_host}:{port}'
        _log.info('service_published name=%s url=%s', name, url)
        return url

    def stop(self, name: str) -> None:
        with self._lock:
            entry = self._servers.pop(name, None)
        if entry is None:
            return
        server, thread = entry
        server.should_exit = True
        thread.join(timeout=self.startup_timeout_seconds)

    def stop_all(self) -> None:
        with self._lock:
            names = list(self._servers)
        for name in names:
            self.stop(name)


def static_site(directory: Path, *, title: str) -> FastAPI:
    app = FastAPI(title=title)
    app.mount('/', StaticFiles(directory=str(directory), html=True, check_dir=False), name='site')
    return app


def discussion_app(page: str, status: Callable[[], dict]) -> FastAPI:
    app = FastAPI(title='Grunts discussion')

    @app.get('/', response_class=HTMLResponse)
    def index() -> HTMLResponse:
        return HTMLResponse(page)

    @app.get('/api/status')
    def api_status() -> dict:
        return status()

    return app


def render_discussion(
    *,
    run_id: str,
    decomposition: Decomposition,
    result: RunResult,
    reports: dict[str, AssessmentReport],
    synthesis: EvaluationSynthesis | None,
    endpoints: list[PublishedEndpoint],
) -> str:
    esc = html.escape
    links = {item.name: item.url for item in endpoints if item.ok and item.url}
    rows: list[str] = []
    for worker_id, worker in result.containers.items():
        report = reports.get(worker_id)
        score = f'{report.overall:.1f}' if report else '-'
        weighted = f'{report.weighted_score:.1f}' if report else '-'
        link = links.get(worker_id)
        anchor = f'<a href="{esc(link)}">{esc(link)}</a>' if link else 'not published'
        css = ' class="winner"' if synthesis and synthesis.winner == worker_id else ''
        rows.append(
            f'<tr{css}><td>{esc(worker_id)}</td><td>{esc(worker.model)}</td><td>{esc(worker.specialization)}</td>'
            f'<td>{esc(worker.status.value)}</td><td>{score}</td><td>{weighted}</td><td>{anchor}</td></tr>'
        )
    improvements = ''.join(f'<li>{esc(item)}</li>' for item in (synthesis.improvements if synthesis else ()))
    winner_line = 'No winner selected'
    if synthesis:
        winner_link = links.get('winner')
        winner_line = f'Winner: <strong>{esc(synthesis.winner)}</strong> ({esc(synthesis.winner_reason)})'
        if winner_link:
            winner_line += f' at <a href="{esc(winner_link)}">{esc(winner_link)}</a>'
    narrative = esc(synthesis.narrative if synthesis else '')
    error = f'<p class="error">{esc(result.error)}</p>' if result.error else ''
    return f"""<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>Grunts run {esc(run_id)}</title>
<style>
body {{ font-family: sans-serif; margin: 2rem; }}
table {{ border-collapse: collapse; width: 100%; }}
td, th {{ border: 1px solid #ccc; padding: .4rem; text-align: left; }}
.winner {{ border-left: 4px solid #2ea043; background: #f0fff4; }}
.error {{ color: #b00020; }}
pre {{ white-space: pre-wrap; }}
@media (max-width: 640px) {{ body {{ margin: .5rem; }} }}
</style>
</head>
<body>
<h1>Grunts run {esc(run_id)}</h1>
<p>{esc(decomposition.main_task)}</p>
{error}
<p>{winner_line}</p>
<table>
<thead><tr><th>Worker</th><th>Model</th><th>Specialization</th><th>Status</th><th>Overall</th><th>Weighted</th><th>Link</th></tr></thead>
<tbody>
{''.join(rows)}
</tbody>
</table>
<h2>Improvements</h2>
<ul>{improvements}</ul>
<h2>Synthesis</h2>
<pre>{narrative}</pre>
</body>
</html>
"""


class Presenter:
    def __init__(self, *, host: ServiceHost, events: Callable[[str, dict], None] | None = None):
        self.host = host
        self.events = events or (lambda event_type, payload: None)

    def publish_candidates(self, result: RunResult, workspaces: dict[str, Path]) -> list[PublishedEndpoint]:
        """Publish each worker's workspace on its own port; one failure never blocks the rest."""
        endpoints: list[PublishedEndpoint] = []
        for worker_id, worker in result.containers.items():
            directory = workspaces.get(worker_id)
            endpoints.append(self._publish(worker_id, directory, worker.port))
        return endpoints

    def publish_winner(self, synthesis: EvaluationSynthesis, workspaces: dict[str, Path], *, port: int) -> PublishedEndpoint:
        return self._publish('winner', workspaces.get(synthesis.winner), port, source=synthesis.winner)

    def publish_discussion(self, page: str, status: Callable[[], dict], *, port: int) -> PublishedEndpoint:
        try:
            url = self.host.serve('discussion', discussion_app(page, status), port)
        except Exception as exc:
            _log.warning('discussion_publish_failed port=%s error=%s', port, exc)
            self.events(EventType.CANDIDATE_PUBLISH_FAILED.value, {'name': 'discussion', 'port': port, 'error': str(exc)})
            return PublishedEndpoint(name='discussion', port=port, url=None, ok=False, error=str(exc))
        self.events(EventType.DISCUSSION_PUBLISHED.value, {'port': port, 'url': url})
        return PublishedEndpoint(name='discussion', port=port, url=url, ok=True)

    def _publish(self, name: str, directory: Path | None, port: int, *, source: str | None = None) -> PublishedEndpoint:
        if directory is None:
            error = f'no workspace for {source or name}'
            self.events(EventType.CANDIDATE_PUBLISH_FAILED.value, {'name': name, 'port': port, 'error': error})
            return PublishedEndpoint(name=name, port=port, url=None, ok=False, error=error)
        try:
            url = self.host.serve(name, static_site(directory, title=f'Grunts {name}'), port)
        except Exception as exc:
            _log.warning('candidate_publish_failed name=%s port=%s error=%s', name, port, exc)
            self.events(EventType.CANDIDATE_PUBLISH_FAILED.value, {'name': name, 'port': port, 'error': str(exc)})
            return PublishedEndpoint(name=name, port=port, url=None, ok=False, error=str(exc))
        self.events(EventType.CANDIDATE_PUBLISHED.value, {'name': name, 'port': port, 'url': url, 'source': source or name})
        return PublishedEndpoint(name=name, port=port, url=url, ok=True)


def format_summary(
    *,
    run_id: str,
    status: str,
    result: RunResult,
    reports: dict[str, AssessmentReport],
    synthesis: EvaluationSynthesis | None,
    endpoints: list[PublishedEndpoint],
    artifact_root: Path,
) -> str:
    lines = [f'Run {run_id}: {status}', f'Execution time: {result.execution_seconds:.1f}s']
    if result.error:
        lines.append(f'Error: {result.error}')
    if result.containers:
        lines.append('')
        lines.append('Workers:')
        for worker_id, worker in result.containers.items():
            metrics = worker.metrics
            line = (
                f'- {worker_id} ({worker.model}, {worker.specialization}) port={worker.port} '
                f'status={worker.status.value} phase={worker.phase.value} '
                f'lines=+{metrics.lines_added}/-{metrics.lines_deleted} '
                f'tests={metrics.tests_passed}/{metrics.tests_failed}'
            )
            report = reports.get(worker_id)
            if report:
                line += (
                    f' scores: quality={report.code_quality:.0f} performance={report.performance:.0f} '
                    f'browser={report.browser:.0f} api={report.api:.0f} overall={report.overall:.1f}'
                )
            lines.append(line)
    if synthesis:
        lines.append('')
        lines.append(f'Winner: {synthesis.winner} ({synthesis.winner_reason})')
        degraded = [stage for stage, text in synthesis.stage_outputs.items() if text.startswith(f'[{stage} unavailable')]
        if degraded:
            lines.append(f'Degraded stages: {", ".join(degraded)}')
        if synthesis.improvements:
            lines.append('Improvements:')
            lines.extend(f'- {item}' for item in synthesis.improvements)
    if endpoints:
        lines.append('')
        lines.append('Endpoints:')
        for item in endpoints:
            target = item.url if item.ok else f'unavailable ({item.error})'
            lines.append(f'- {item.name} :{item.port} {target}')
    lines.append('')
    lines.append(f'Artifacts: {artifact_root}')
    return '\n'.join(lines)
