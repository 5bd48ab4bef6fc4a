from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from pathlib import Path
from typing import Protocol

import httpx

from gruntforge.coordination import CoordinationReader, NullCoordinationReader
from gruntforge.domain.models import (
    RunContext,
    WorkerInstance,
    WorkerMetrics,
    WorkerStatus,
    parse_phase,
    parse_status,
)
from gruntforge.observability import get_logger, get_tracer
from gruntforge.runtime import ContainerRuntime, ServiceState

_log = get_logger('gruntforge.monitor')


class HealthProbe(Protocol):
    def fetch(self, worker: WorkerInstance) -> dict | None:
        ...


class HttpHealthProbe:
    """GET ``http://<host>:<port>/health`` with a per-request timeout.

    Workers answer either ``{"worker": {...}}`` or the worker fields at the
    top level. Any transport error, non-2xx answer or non-object body means
    "unreachable" and yields ``None``.
    """

    def __init__(
        self,
        *,
        host: str = '127.0.0.1',
        timeout_seconds: float = 5.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.host = host
        self.timeout_seconds = float(timeout_seconds)
        self.transport = transport

    def fetch(self, worker: WorkerInstance) -> dict | None:
        url = f'http://{self.host}:{worker.port}/health'
        try:
            with httpx.Client(timeout=self.timeout_seconds, transport=self.transport) as client:
                response = client.get(url)
            if response.status_code >= 400:
                return None
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            _log.debug('health_unreachable worker=%s url=%s error=%s', worker.worker_id, url, exc)
            return None
        if not isinstance(payload, dict):
            return None
        nested = payload.get('worker')
        if isinstance(nested, dict):
            return nested
        return payload


def status_from_runtime(state: ServiceState | None) -> WorkerStatus:
    if state is None:
        return WorkerStatus.STARTING
    text = state.state.strip().lower()
    if text == 'running' or text.startswith('up'):
        return WorkerStatus.RUNNING
    if text.startswith('exited'):
        if state.exit_code == 0 or text.startswith('exited (0)'):
            return WorkerStatus.COMPLETED
        return WorkerStatus.FAILED
    if text == 'dead':
        return WorkerStatus.FAILED
    return WorkerStatus.STARTING


def _parse_timestamp(value) -> datetime | None:
    text = str(value or '').strip()
    if not text:
        return None
    try:
        return datetime.fromisoformat(text.replace('Z', '+00:00'))
    except ValueError:
        return None


def apply_health(worker: WorkerInstance, payload: dict, *, container_id: str | None = None) -> WorkerInstance:
    """A reachable worker is at least running; its payload overrides metrics and phase."""
    reported = parse_status(payload.get('status'))
    if reported is None or reported == WorkerStatus.STARTING:
        reported = WorkerStatus.RUNNING
    phase = parse_phase(payload.get('currentPhase') or payload.get('phase'))
    return worker.observe(
        status=reported,
        phase=phase,
        metrics=WorkerMetrics.from_payload(payload),
        last_activity=_parse_timestamp(payload.get('lastActivity') or payload.get('last_activity')),
        container_id=container_id,
    )


class ExecutionMonitor:
    def __init__(
        self,
        *,
        runtime: ContainerRuntime,
        compose_file: Path,
        probe: HealthProbe,
        coordination: CoordinationReader | None = None,
        concurrency: int = 4,
    ):
        self.runtime = runtime
        self.compose_file = Path(compose_file)
        self.probe = probe
        self.coordination = coordination or NullCoordinationReader()
        self.concurrency = max(1, int(concurrency))
        self._tracer = get_tracer('gruntforge.monitor')

    def tick(self, context: RunContext, now: float) -> RunContext:
        """Observe every worker once and return the updated context.

        All probes finish (or time out) before this returns, so no worker is
        left with a stale status from an earlier tick.
        """
        with self._tracer.start_as_current_span(
            'monitor.tick',
            attributes={'run.id': context.run_id, 'tick': context.ticks + 1},
        ):
            states = self._runtime_states()
            pending = [item for item in context.workers.values() if not item.status.is_terminal]
            payloads: dict[str, dict | None] = {}
            if pending:
                with ThreadPoolExecutor(max_workers=min(self.concurrency, len(pending))) as pool:
                    futures = {item.worker_id: pool.submit(self._safe_fetch, item) for item in pending}
                    for worker_id, future in futures.items():
                        payloads[worker_id] = future.result()

            updated: dict[str, WorkerInstance] = {}
            for worker_id, worker in context.workers.items():
                if worker.status.is_terminal:
                    updated[worker_id] = worker
                    continue
                state = states.get(worker_id)
                container_id = state.container_id if state else None
                payload = payloads.get(worker_id)
                if payload is not None:
                    observed = apply_health(worker, payload, container_id=container_id)
                else:
                    observed = worker.observe(status=status_from_runtime(state), container_id=container_id)
                if observed.status != worker.status:
                    _log.info(
                        'worker_status_changed worker=%s from=%s to=%s',
                        worker_id,
                        worker.status.value,
                        observed.status.value,
                    )
                updated[worker_id] = observed

            signals = self._read_signals(list(context.workers))
            next_context = context.with_workers(updated, now=now, ticks=context.ticks + 1, signals=signals)
            if next_context.deadline_elapsed and not next_context.all_terminal:
                return self.finalize(next_context)
            return next_context

    def finalize(self, context: RunContext) -> RunContext:
        """Force every non-terminal worker to ``timeout`` at the deadline."""
        updated: dict[str, WorkerInstance] = {}
        for worker_id, worker in context.workers.items():
            if worker.status.is_terminal:
                updated[worker_id] = worker
                continue
            updated[worker_id] = worker.with_status(WorkerStatus.TIMEOUT)
            _log.warning('worker_timeout worker=%s elapsed=%.1fs', worker_id, context.elapsed_seconds)
        return context.with_workers(updated, deadline_reached=True)

    def close(self) -> None:
        try:
            self.coordination.close()
        except Exception as exc:
            _log.warning('coordination_close_failed error=%s', exc)

    def _runtime_states(self) -> dict[str, ServiceState]:
        try:
            states = self.runtime.status(self.compose_file)
        except Exception as exc:
            _log.warning('runtime_status_failed error=%s', exc)
            return {}
        return {item.service: item for item in states}

    def _safe_fetch(self, worker: WorkerInstance) -> dict | None:
        try:
            return self.probe.fetch(worker)
        except Exception as exc:
            _log.warning('health_probe_error worker=%s error=%s', worker.worker_id, exc)
            return None

    def _read_signals(self, worker_ids: list[str]) -> dict[str, dict[str, str]]:
        try:
            return self.coordination.read_signals(worker_ids)
        except Exception as exc:
            _log.warning('coordination_signals_failed error=%s', exc)
            return {}
