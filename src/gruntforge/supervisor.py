from __future__ import annotations

from contextlib import contextmanager
from typing import Callable, Iterator
import time

from gruntforge.domain.errors import DeploymentFailure, DeploymentTimeout, TeardownFailure
from gruntforge.domain.events import EventType
from gruntforge.domain.models import (
    Decomposition,
    ProvisionPlan,
    RunContext,
    RunResult,
    Task,
    WorkerInstance,
    WorkerStatus,
)
from gruntforge.monitor import ExecutionMonitor
from gruntforge.observability import get_logger, get_tracer, set_stage
from gruntforge.runtime import ContainerRuntime, ServiceState
from gruntforge.workspace import WorkspaceLifecycleManager

_log = get_logger('gruntforge.supervisor')

EventSink = Callable[[str, dict], None]


def _noop_sink(event_type: str, payload: dict) -> None:
    return None


def _reported_signals(signals: dict[str, dict[str, str]]) -> dict[str, dict[str, str]]:
    return {worker_id: dict(values) for worker_id, values in signals.items() if values}


def initial_workers(plan: ProvisionPlan) -> dict[str, WorkerInstance]:
    return {
        item.worker_id: WorkerInstance(
            worker_id=item.worker_id,
            name=item.name,
            model=item.model,
            specialization=item.specialization,
            port=item.port,
        )
        for item in plan.workers
    }


class RunSupervisor:
    """Reset, deploy, wait for readiness, monitor, and always tear down.

    Time is read from ``clock`` and waits go through ``sleep``; tests pass a
    fake clock so the monitor loop runs without real delays.
    """

    def __init__(
        self,
        *,
        workspace: WorkspaceLifecycleManager,
        runtime: ContainerRuntime,
        monitor_factory: Callable[[ProvisionPlan], ExecutionMonitor],
        monitor_interval_seconds: float = 5.0,
        readiness_timeout_seconds: float = 30.0,
        readiness_poll_seconds: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        events: EventSink | None = None,
    ):
        self.workspace = workspace
        self.runtime = runtime
        self.monitor_factory = monitor_factory
        self.monitor_interval_seconds = max(0.0, float(monitor_interval_seconds))
        self.readiness_timeout_seconds = max(0.0, float(readiness_timeout_seconds))
        self.readiness_poll_seconds = max(0.01, float(readiness_poll_seconds))
        self.clock = clock
        self.sleep = sleep
        self.events = events or _noop_sink
        self._tracer = get_tracer('gruntforge.supervisor')

    def reset_workspace(self, run_id: str, plan: ProvisionPlan) -> None:
        removed = self.workspace.reset(run_id)
        for item in plan.workers:
            item.workspace.mkdir(parents=True, exist_ok=True)
        self.events(EventType.WORKSPACE_RESET.value, {'removed': len(removed)})

    def supervise(
        self,
        *,
        run_id: str,
        task: Task,
        decomposition: Decomposition,
        plan: ProvisionPlan,
        on_monitored: Callable[[RunResult, RunContext], None] | None = None,
    ) -> tuple[RunResult, RunContext | None]:
        """Run the deployment to completion and tear it down.

        ``on_monitored`` is called with the final result while the workers
        are still deployed, so anything that needs their ports (validation)
        runs before teardown. It is not called when deployment fails.
        """
        started = self.clock()
        set_stage('supervise')
        self.reset_workspace(run_id, plan)
        workers = initial_workers(plan)
        with self._tracer.start_as_current_span('supervisor.run', attributes={'run.id': run_id}):
            with self._deployment(plan):
                try:
                    self.events(EventType.DEPLOYMENT_STARTED.value, {'compose_file': str(plan.compose_file)})
                    self.runtime.deploy(plan.compose_file)
                except DeploymentFailure as exc:
                    return self._deployment_failed(started, f'deployment failed: {exc}'), None
                except Exception as exc:
                    _log.error('deployment_error run_id=%s error=%s', run_id, exc, exc_info=True)
                    return self._deployment_failed(started, f'deployment failed: {exc}'), None

                try:
                    self.wait_until_ready(plan)
                except DeploymentTimeout as exc:
                    failed = {key: value.with_status(WorkerStatus.FAILED) for key, value in workers.items()}
                    reason = f'deployment timeout: {exc}'
                    self.events(EventType.DEPLOYMENT_FAILED.value, {'error': reason})
                    _log.error('deployment_timeout run_id=%s error=%s', run_id, exc)
                    return RunResult(execution_seconds=self.clock() - started, containers=failed, error=reason), None

                self.events(EventType.WORKERS_READY.value, {'workers': plan.worker_ids})
                context = RunContext(
                    run_id=run_id,
                    task=task,
                    decomposition=decomposition,
                    workers=workers,
                    started_at=started,
                    now=self.clock(),
                )
                monitor = self.monitor_factory(plan)
                try:
                    context = self.monitor_loop(context, monitor)
                finally:
                    monitor.close()
                result = RunResult(
                    execution_seconds=context.elapsed_seconds,
                    containers=dict(context.workers),
                    error=None,
                    signals=_reported_signals(context.signals),
                )
                if on_monitored is not None:
                    on_monitored(result, context)
        return result, context

    def wait_until_ready(self, plan: ProvisionPlan) -> list[ServiceState]:
        """Poll until every worker and the coordination store report running."""
        expected = set(plan.worker_ids) | {plan.coordination.service_name}
        deadline = self.clock() + self.readiness_timeout_seconds
        seen: set[str] = set()
        while True:
            try:
                states = self.runtime.status(plan.compose_file)
            except DeploymentFailure as exc:
                _log.warning('readiness_status_failed error=%s', exc)
                states = []
            seen = {item.service for item in states if item.running}
            if expected <= seen:
                return states
            if self.clock() >= deadline:
                missing = ', '.join(sorted(expected - seen))
                raise DeploymentTimeout(f'not running after {self.readiness_timeout_seconds}s: {missing}')
            self.sleep(self.readiness_poll_seconds)

    def monitor_loop(self, context: RunContext, monitor: ExecutionMonitor) -> RunContext:
        set_stage('monitor')
        deadline = context.started_at + float(context.task.max_execution_seconds)
        while True:
            previous = context.workers
            context = monitor.tick(context, self.clock())
            self._emit_changes(previous, context.workers)
            self.events(
                EventType.MONITOR_TICK.value,
                {
                    'tick': context.ticks,
                    'elapsed_seconds': round(context.elapsed_seconds, 3),
                    'signals': _reported_signals(context.signals),
                },
            )
            if context.deadline_reached:
                self.events(EventType.DEADLINE_REACHED.value, {'elapsed_seconds': round(context.elapsed_seconds, 3)})
                return context
            if context.all_terminal:
                return context
            remaining = deadline - self.clock()
            if remaining <= 0:
                continue
            self.sleep(min(self.monitor_interval_seconds, remaining))

    @contextmanager
    def _deployment(self, plan: ProvisionPlan) -> Iterator[None]:
        try:
            yield
        finally:
            self.teardown(plan)

    def teardown(self, plan: ProvisionPlan) -> bool:
        set_stage('teardown')
        try:
            self.runtime.teardown(plan.compose_file)
        except TeardownFailure as exc:
            _log.error('teardown_failed compose=%s error=%s', plan.compose_file, exc)
            self.events(EventType.TEARDOWN_FAILED.value, {'error': str(exc)})
            return False
        except Exception as exc:
            _log.error('teardown_failed compose=%s error=%s', plan.compose_file, exc, exc_info=True)
            self.events(EventType.TEARDOWN_FAILED.value, {'error': str(exc)})
            return False
        self.events(EventType.TEARDOWN_COMPLETED.value, {'compose_file': str(plan.compose_file)})
        return True

    def _deployment_failed(self, started: float, reason: str) -> RunResult:
        _log.error('deployment_failed reason=%s', reason)
        self.events(EventType.DEPLOYMENT_FAILED.value, {'error': reason})
        return RunResult(execution_seconds=self.clock() - started, containers={}, error=reason)

    def _emit_changes(self, previous: dict[str, WorkerInstance], current: dict[str, WorkerInstance]) -> None:
        for worker_id, worker in current.items():
            before = previous.get(worker_id)
            if before is not None and before.status != worker.status:
                self.events(
                    EventType.WORKER_STATUS_CHANGED.value,
                    {'worker_id': worker_id, 'from': before.status.value, 'to': worker.status.value},
                )
