"""Scripted validation of each candidate.

Four independent checks, each normalized to 0..100: static code quality of
the worker's workspace, a small load sample against its port, a headless
browser pass over its root page, and HTTP endpoint checks. Checks share no
mutable state, so workers can be validated concurrently.
"""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
import json
from pathlib import Path
import re
import shlex
import statistics
import subprocess
import time
from typing import Callable, Protocol

import httpx
from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import sync_playwright

from gruntforge.domain.errors import WorkerFailure
from gruntforge.domain.models import DEFAULT_WEIGHTS, AssessmentReport, CategoryWeights, WorkerInstance
from gruntforge.observability import get_logger

_log = get_logger('gruntforge.validation')

SOURCE_SUFFIXES = {'.js', '.mjs', '.cjs', '.jsx', '.ts', '.tsx', '.html', '.css', '.vue', '.svelte'}
SKIP_DIRS = {'node_modules', '.git', 'dist', 'build', 'coverage'}


class ValidationHarness(Protocol):
    def validate(self, worker: WorkerInstance, workspace: Path) -> AssessmentReport:
        ...


@dataclass(frozen=True)
class CheckResult:
    score: float
    finding: str


@dataclass(frozen=True)
class ApiCheck:
    method: str
    path: str
    expected: tuple[int, ...]
    data: dict | None = None


DEFAULT_API_CHECKS = (
    ApiCheck('GET', '/', (200,)),
    ApiCheck('GET', '/health', (200,)),
    ApiCheck('GET', '/api/health', (200, 404)),
    ApiCheck('GET', '/api/status', (200, 404)),
    ApiCheck('POST', '/api/data', (200, 201, 404, 405), {'test': 'api-validation'}),
    ApiCheck('GET', '/favicon.ico', (200, 204, 404)),
)


def _iter_sources(workspace: Path, *, limit: int = 400) -> list[Path]:
    found: list[Path] = []
    if not workspace.is_dir():
        return found
    for path in sorted(workspace.rglob('*')):
        if any(part in SKIP_DIRS for part in path.relative_to(workspace).parts):
            continue
        if path.is_file() and path.suffix.lower() in SOURCE_SUFFIXES:
            found.append(path)
            if len(found) >= limit:
                break
    return found


def static_quality(workspace: Path) -> CheckResult:
    """Heuristic quality score when no linter command is configured."""
    sources = _iter_sources(Path(workspace))
    if not sources:
        return CheckResult(0.0, 'no source files')
    total_lines = 0
    long_lines = 0
    debug_calls = 0
    markers = 0
    for path in sources:
        try:
            text = path.read_text(encoding='utf-8', errors='replace')
        except OSError:
            continue
        lines = text.splitlines()
        total_lines += len(lines)
        long_lines += sum(1 for line in lines if len(line) > 120)
        debug_calls += len(re.findall(r'\bconsole\.log\(|\bdebugger\b', text))
        markers += len(re.findall(r'\b(?:TODO|FIXME|XXX)\b', text))
    names = {path.name.lower() for path in Path(workspace).iterdir()} if Path(workspace).is_dir() else set()
    has_tests = any(re.search(r'(\.test\.|\.spec\.|__tests__)', str(path)) for path in sources)
    score = 60.0
    score += 10.0 if 'package.json' in names else 0.0
    score += 10.0 if 'readme.md' in names else 0.0
    score += 15.0 if has_tests else 0.0
    score += 5.0 if any(path.suffix in {'.ts', '.tsx'} for path in sources) else 0.0
    score -= min(20.0, long_lines * 0.5)
    score -= min(15.0, debug_calls * 1.0)
    score -= min(10.0, markers * 1.0)
    finding = (
        f'files={len(sources)} lines={total_lines} tests={"yes" if has_tests else "no"} '
        f'long_lines={long_lines} debug_calls={debug_calls} markers={markers}'
    )
    return CheckResult(max(0.0, min(100.0, score)), finding)


def parse_script_score(output: str) -> float | None:
    """Read a score from a script's last JSON line: ``score``, ``percentage`` or ``scores.percentage``."""
    for line in reversed(str(output or '').strip().splitlines()):
        line = line.strip()
        if not line.startswith('{'):
            continue
        try:
            payload = json.loads(line)
        except ValueError:
            continue
        if not isinstance(payload, dict):
            continue
        for candidate in (payload.get('score'), payload.get('percentage'), (payload.get('scores') or {}).get('percentage')):
            if candidate is None:
                continue
            try:
                return float(candidate)
            except (TypeError, ValueError):
                continue
    return None


_PAGE_SCRIPT = """() => {
  const all = (selector) => Array.from(document.querySelectorAll(selector));
  const inputs = all('input:not([type=hidden]), select, textarea');
  const labelled = inputs.filter((el) =>
    el.getAttribute('aria-label') || el.getAttribute('aria-labelledby') || el.closest('label') ||
    (el.id && document.querySelector('label[for="' + CSS.escape(el.id) + '"]')));
  const images = all('img');
  const body = document.body;
  return {
    lang: Boolean((document.documentElement.getAttribute('lang') || '').trim()),
    title: (document.title || '').trim(),
    interactive: all('button, a[href], input, select, textarea, canvas, [role=button], [onclick]').length,
    text_length: body ? body.innerText.trim().length : 0,
    images: images.length,
    images_with_alt: images.filter((img) => (img.getAttribute('alt') || '').trim()).length,
    inputs: inputs.length,
    labelled_inputs: labelled.length,
    viewport_meta: Boolean(document.querySelector('meta[name=viewport]')),
    overflow: document.documentElement.scrollWidth > window.innerWidth + 1,
    visible: body ? body.getBoundingClientRect().height > 0 : false,
  };
}"""


@dataclass(frozen=True)
class PageSnapshot:
    """What a rendered page looked like at desktop size and at a phone viewport."""

    status: int
    console_errors: tuple[str, ...] = ()
    title: str = ''
    lang: bool = False
    interactive: int = 0
    text_length: int = 0
    images: int = 0
    images_with_alt: int = 0
    inputs: int = 0
    labelled_inputs: int = 0
    viewport_meta: bool = False
    mobile_overflow: bool = False
    mobile_visible: bool = False


class BrowserProbe(Protocol):
    def snapshot(self, url: str) -> PageSnapshot:
        ...


class PlaywrightBrowserProbe:
    """Renders a page in headless Chromium and runs the page checks in it.

    Scripts run, so a page built client-side is judged on what it renders and
    a script that throws shows up as a console error.
    """

    DESKTOP = {'width': 1280, 'height': 800}
    MOBILE = {'width': 375, 'height': 667}

    def __init__(self, *, timeout_seconds: float = 15.0, browser_name: str = 'chromium'):
        self.timeout_seconds = max(1.0, float(timeout_seconds))
        self.browser_name = browser_name

    def snapshot(self, url: str) -> PageSnapshot:
        errors: list[str] = []

        def on_console(message) -> None:
            if message.type == 'error':
                errors.append(message.text)

        def on_page_error(exc) -> None:
            errors.append(str(exc))

        with sync_playwright() as playwright:
            browser = getattr(playwright, self.browser_name).launch(headless=True)
            try:
                page = browser.new_page(viewport=self.DESKTOP)
                page.set_default_timeout(self.timeout_seconds * 1000)
                page.on('console', on_console)
                page.on('pageerror', on_page_error)
                response = page.goto(url, wait_until='load')
                desktop = page.evaluate(_PAGE_SCRIPT)
                page.set_viewport_size(self.MOBILE)
                mobile = page.evaluate(_PAGE_SCRIPT)
            finally:
                browser.close()
        return PageSnapshot(
            status=response.status if response is not None else 0,
            console_errors=tuple(errors),
            title=str(desktop.get('title') or ''),
            lang=bool(desktop.get('lang')),
            interactive=int(desktop.get('interactive') or 0),
            text_length=int(desktop.get('text_length') or 0),
            images=int(desktop.get('images') or 0),
            images_with_alt=int(desktop.get('images_with_alt') or 0),
            inputs=int(desktop.get('inputs') or 0),
            labelled_inputs=int(desktop.get('labelled_inputs') or 0),
            viewport_meta=bool(desktop.get('viewport_meta')),
            mobile_overflow=bool(mobile.get('overflow')),
            mobile_visible=bool(mobile.get('visible')),
        )


def score_page(snapshot: PageSnapshot) -> CheckResult:
    """Functional, accessibility and responsive checks, one third each."""
    functional = [
        snapshot.status < 400,
        not snapshot.console_errors,
        snapshot.interactive > 0 or snapshot.text_length > 0,
    ]
    accessibility = [
        snapshot.lang,
        bool(snapshot.title.strip()),
        snapshot.images == snapshot.images_with_alt,
        snapshot.inputs == snapshot.labelled_inputs,
    ]
    responsive = [
        snapshot.viewport_meta,
        not snapshot.mobile_overflow,
        snapshot.mobile_visible,
    ]
    parts = [
        sum(functional) / len(functional),
        sum(accessibility) / len(accessibility),
        sum(responsive) / len(responsive),
    ]
    score = round(sum(parts) / len(parts) * 100, 1)
    finding = (
        f'functional={sum(functional)}/{len(functional)} '
        f'accessibility={sum(accessibility)}/{len(accessibility)} '
        f'responsive={sum(responsive)}/{len(responsive)}'
    )
    if snapshot.console_errors:
        finding += f' console_errors={len(snapshot.console_errors)} first={snapshot.console_errors[0][:120]}'
    return CheckResult(score, finding)


def latency_score(latencies_ms: list[float], *, attempts: int) -> CheckResult:
    if attempts <= 0 or not latencies_ms:
        return CheckResult(0.0, 'no successful requests')
    success_ratio = len(latencies_ms) / attempts
    median = statistics.median(latencies_ms)
    # Full credit up to 200ms, falling linearly to 20% at 2s.
    if median <= 200:
        speed = 1.0
    elif median >= 2000:
        speed = 0.2
    else:
        speed = 1.0 - 0.8 * (median - 200) / 1800
    score = round(success_ratio * speed * 100, 1)
    return CheckResult(score, f'ok={len(latencies_ms)}/{attempts} median_ms={median:.1f}')


class ScriptedValidationHarness:
    def __init__(
        self,
        *,
        host: str = '127.0.0.1',
        timeout_seconds: float = 10.0,
        load_samples: int = 10,
        quality_command: str | None = None,
        weights: CategoryWeights = DEFAULT_WEIGHTS,
        api_checks: tuple[ApiCheck, ...] = DEFAULT_API_CHECKS,
        browser: BrowserProbe | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.host = host
        self.timeout_seconds = float(timeout_seconds)
        self.browser = browser or PlaywrightBrowserProbe(timeout_seconds=self.timeout_seconds)
        self.load_samples = max(1, int(load_samples))
        self.quality_command = str(quality_command or '').strip() or None
        self.weights = weights
        self.api_checks = tuple(api_checks)
        self.transport = transport

    def validate(self, worker: WorkerInstance, workspace: Path) -> AssessmentReport:
        base_url = f'http://{self.host}:{worker.port}'
        errors: list[str] = []
        with httpx.Client(base_url=base_url, timeout=self.timeout_seconds, transport=self.transport) as client:
            quality = self._guard('code_quality', errors, lambda: self.check_quality(worker, Path(workspace)))
            performance = self._guard('performance', errors, lambda: self.check_performance(client))
            browser = self._guard('browser', errors, lambda: self.check_browser(f'{base_url}/'))
            api = self._guard('api', errors, lambda: self.check_api(client))
        return AssessmentReport.create(
            worker.worker_id,
            code_quality=quality.score,
            performance=performance.score,
            browser=browser.score,
            api=api.score,
            findings={
                'code_quality': quality.finding,
                'performance': performance.finding,
                'browser': browser.finding,
                'api': api.finding,
            },
            errors=errors,
            weights=self.weights,
        )

    def check_quality(self, worker: WorkerInstance, workspace: Path) -> CheckResult:
        if not self.quality_command:
            return static_quality(workspace)
        argv = [*shlex.split(self.quality_command), worker.worker_id]
        try:
            completed = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                encoding='utf-8',
                errors='replace',
                cwd=str(workspace),
                timeout=self.timeout_seconds * 6,
            )
        except FileNotFoundError:
            _log.warning('quality_command_missing command=%s; using static checks', self.quality_command)
            return static_quality(workspace)
        except subprocess.TimeoutExpired:
            return CheckResult(0.0, 'quality script timed out')
        score = parse_script_score(completed.stdout)
        if score is None:
            return CheckResult(0.0, f'quality script returned no score (returncode={completed.returncode})')
        return CheckResult(score, f'quality script score={score:.1f}')

    def check_performance(self, client: httpx.Client) -> CheckResult:
        latencies: list[float] = []
        for _ in range(self.load_samples):
            started = time.perf_counter()
            try:
                response = client.get('/')
            except httpx.HTTPError:
                continue
            if response.status_code < 400:
                latencies.append((time.perf_counter() - started) * 1000)
        return latency_score(latencies, attempts=self.load_samples)

    def check_browser(self, url: str) -> CheckResult:
        try:
            snapshot = self.browser.snapshot(url)
        except PlaywrightError as exc:
            first_line = (str(exc).strip().splitlines() or [exc.__class__.__name__])[0]
            return CheckResult(0.0, f'browser check failed: {first_line[:160]}')
        if snapshot.status >= 400 or snapshot.status == 0:
            return CheckResult(0.0, f'root page status={snapshot.status}')
        return score_page(snapshot)

    def check_api(self, client: httpx.Client) -> CheckResult:
        passed = 0
        failed: list[str] = []
        for check in self.api_checks:
            try:
                response = client.request(check.method, check.path, json=check.data)
            except httpx.HTTPError:
                failed.append(f'{check.method} {check.path}: unreachable')
                continue
            if response.status_code in check.expected:
                passed += 1
            else:
                failed.append(f'{check.method} {check.path}: {response.status_code}')
        total = len(self.api_checks)
        score = round(passed / total * 100, 1) if total else 0.0
        finding = f'passed={passed}/{total}'
        if failed:
            finding += ' failed=' + '; '.join(failed[:5])
        return CheckResult(score, finding)

    @staticmethod
    def _guard(category: str, errors: list[str], check: Callable[[], CheckResult]) -> CheckResult:
        try:
            return check()
        except Exception as exc:
            _log.warning('validation_check_failed category=%s error=%s', category, exc)
            errors.append(f'{category}: {exc}')
            return CheckResult(0.0, f'{category} check failed')


def validate_all(
    harness: ValidationHarness,
    workers: list[WorkerInstance],
    workspaces: dict[str, Path],
    *,
    concurrency: int = 3,
) -> dict[str, AssessmentReport]:
    """Validate every worker on a bounded pool; a failing harness call yields zero scores."""
    if not workers:
        return {}

    def run_one(worker: WorkerInstance) -> AssessmentReport:
        try:
            workspace = workspaces.get(worker.worker_id)
            if workspace is None:
                raise WorkerFailure(worker.worker_id, 'no workspace assigned')
            return harness.validate(worker, workspace)
        except Exception as exc:
            _log.warning('validation_failed worker=%s error=%s', worker.worker_id, exc)
            return AssessmentReport.empty(worker.worker_id, reason=f'validation failed: {exc}')

    with ThreadPoolExecutor(max_workers=max(1, min(int(concurrency), len(workers)))) as pool:
        futures = {item.worker_id: pool.submit(run_one, item) for item in workers}
        return {worker_id: future.result() for worker_id, future in futures.items()}
