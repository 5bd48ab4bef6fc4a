"""Container entrypoint for one competing worker.

Generates a build for ``TASK_PROMPT`` with ``MODEL`` into the workspace,
mirrors its progress into the coordination store and serves the workspace
together with a ``/health`` payload on ``PORT``.
"""

from __future__ import annotations

from datetime import datetime, timezone
import logging
import os
from pathlib import Path
import re
import shlex
import subprocess
import threading

from fastapi import FastAPI
from fastapi.staticfiles import StaticFiles
import httpx
import redis
from redis.exceptions import RedisError
import uvicorn

_log = logging.getLogger('gruntforge.worker')

WORKSPACE = Path(os.getenv('WORKSPACE_PATH', '/workspace'))
WORKER_ID = os.getenv('WORKER_ID', 'worker1')
MODEL = os.getenv('MODEL', '')
SPECIALIZATION = os.getenv('SPECIALIZATION', '')
TASK_PROMPT = os.getenv('TASK_PROMPT', '')
GENERATION_COMMAND = os.getenv('GENERATION_COMMAND', '').strip()
OLLAMA_URL = os.getenv('OLLAMA_URL', 'http://host.docker.internal:11434').rstrip('/')
REDIS_URL = os.getenv('REDIS_URL', '')
PORT = int(os.getenv('PORT', '3000'))
GENERATION_TIMEOUT = float(os.getenv('GENERATION_TIMEOUT_SECONDS', '3600'))

_FENCE = re.compile(r'```(?:html)?[ \t]*\n(.*?)```', re.DOTALL | re.IGNORECASE)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')


class WorkerState:
    """Progress reported on /health and written to ``grunts:worker:<id>``."""

    def __init__(self, store: redis.Redis | None):
        self._lock = threading.Lock()
        self._store = store
        self._values = {
            'workerId': WORKER_ID,
            'model': MODEL,
            'specialization': SPECIALIZATION,
            'status': 'starting',
            'currentPhase': 'analysis',
            'progress': 0,
            'linesAdded': 0,
            'testsPassedCount': 0,
            'testsFailedCount': 0,
            'lastActivity': _now(),
            'error': '',
        }

    def update(self, **changes) -> None:
        with self._lock:
            self._values.update(changes)
            self._values['lastActivity'] = _now()
            mapping = {key: str(value) for key, value in self._values.items()}
        if self._store is None:
            return
        try:
            self._store.hset(f'grunts:worker:{WORKER_ID}', mapping=mapping)
        except RedisError as exc:
            _log.warning('coordination_write_failed worker=%s error=%s', WORKER_ID, exc)

    def snapshot(self) -> dict:
        with self._lock:
            return dict(self._values)


def _extract_page(text: str) -> str:
    match = _FENCE.search(text or '')
    return (match.group(1) if match else text or '').strip()


def _build_prompt() -> str:
    return (
        f'You are a {SPECIALIZATION or "web development"} specialist.\n'
        'Produce a complete single-file web page (HTML with inline CSS and JavaScript) '
        'that implements the task below. Reply with the page only.\n\n'
        f'Task: {TASK_PROMPT}\n'
    )


def _generate(prompt: str) -> str:
    if GENERATION_COMMAND:
        env = dict(os.environ, MODEL=MODEL, TASK_PROMPT=TASK_PROMPT)
        completed = subprocess.run(
            shlex.split(GENERATION_COMMAND),
            input=prompt,
            capture_output=True,
            text=True,
            cwd=WORKSPACE,
            env=env,
            timeout=GENERATION_TIMEOUT,
        )
        if completed.returncode != 0:
            detail = (completed.stderr or completed.stdout or '').strip().splitlines()
            raise RuntimeError(f'generation command exited {completed.returncode}: {detail[-1] if detail else ""}')
        return completed.stdout
    response = httpx.post(
        f'{OLLAMA_URL}/api/generate',
        json={'model': MODEL, 'prompt': prompt, 'stream': False},
        timeout=GENERATION_TIMEOUT,
    )
    response.raise_for_status()
    return str(response.json().get('response') or '')


def run_task(state: WorkerState) -> None:
    state.update(status='running', currentPhase='analysis', progress=10)
    try:
        prompt = _build_prompt()
        state.update(currentPhase='coding', progress=30)
        output = _generate(prompt)
        index = WORKSPACE / 'index.html'
        # A command may write its own files; stdout only fills a missing page.
        if not index.exists():
            page = _extract_page(output)
            if page:
                index.write_text(page + '\n', encoding='utf-8')
        state.update(currentPhase='testing', progress=70)
        files = [path for path in WORKSPACE.rglob('*') if path.is_file()]
        lines = 0
        for path in files:
            try:
                lines += len(path.read_text(encoding='utf-8').splitlines())
            except (OSError, UnicodeDecodeError):
                continue
        passed = 1 if index.exists() else 0
        state.update(
            currentPhase='assessment',
            progress=100,
            linesAdded=lines,
            testsPassedCount=passed,
            testsFailedCount=1 - passed,
            status='completed' if passed else 'failed',
        )
        _log.info('worker_completed worker=%s files=%d lines=%d', WORKER_ID, len(files), lines)
    except (httpx.HTTPError, subprocess.SubprocessError, OSError, RuntimeError, ValueError) as exc:
        _log.error('worker_failed worker=%s error=%s', WORKER_ID, exc)
        state.update(status='failed', error=str(exc)[:500])


def create_app(state: WorkerState) -> FastAPI:
    app = FastAPI(title=f'gruntforge {WORKER_ID}')

    @app.get('/health')
    def health() -> dict:
        return state.snapshot()

    @app.on_event('startup')
    def start() -> None:
        threading.Thread(target=run_task, args=(state,), name=f'{WORKER_ID}-task', daemon=True).start()

    app.mount('/', StaticFiles(directory=str(WORKSPACE), html=True), name='workspace')
    return app


def main() -> None:
    logging.basicConfig(level=logging.INFO, format='%(asctime)s %(levelname)s %(name)s %(message)s')
    WORKSPACE.mkdir(parents=True, exist_ok=True)
    store = redis.Redis.from_url(REDIS_URL, decode_responses=True) if REDIS_URL else None
    state = WorkerState(store)
    state.update()
    uvicorn.run(create_app(state), host='0.0.0.0', port=PORT, log_level='warning')


if __name__ == '__main__':
    main()
