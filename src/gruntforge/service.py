from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
import time
from typing import Callable

from gruntforge.adapters.base import ReasoningService
from gruntforge.assessment import AssessmentPipeline
from gruntforge.capabilities import CapabilityVerifier
from gruntforge.coordination import CoordinationReader, NullCoordinationReader
from gruntforge.decomposer import TaskDecomposer, assign_ports
from gruntforge.domain.events import EventType
from gruntforge.domain.models import (
    AssessmentReport,
    Decomposition,
    EvaluationSynthesis,
    ProvisionPlan,
    RunResult,
    Task,
    validate_task,
)
from gruntforge.monitor import ExecutionMonitor, HealthProbe, HttpHealthProbe
from gruntforge.observability import get_logger, run_scope, set_stage
from gruntforge.presentation import Presenter, PublishedEndpoint, ServiceHost, format_summary, render_discussion
from gruntforge.prompting import PromptLibrary
from gruntforge.provisioner import WorkerProvisioner, worker_ids_for
from gruntforge.repository import RunCreateRecord, RunRepository
from gruntforge.runtime import ContainerRuntime
from gruntforge.supervisor import RunSupervisor
from gruntforge.tiers import get_tier_specs
from gruntforge.validation import ValidationHarness
from gruntforge.workspace import WorkspaceLifecycleManager

_log = get_logger('gruntforge.service')


@dataclass(frozen=True)
class RunOutcome:
    run_id: str
    status: str
    result: RunResult
    decomposition: Decomposition | None = None
    reports: dict[str, AssessmentReport] = field(default_factory=dict)
    synthesis: EvaluationSynthesis | None = None
    endpoints: tuple[PublishedEndpoint, ...] = ()
    summary: str = ''

    def to_dict(self) -> dict:
        return {
            'run_id': self.run_id,
            'status': self.status,
            'result': self.result.to_dict(),
            'decomposition_source': self.decomposition.source if self.decomposition else None,
            'hosting_ports': dict(self.decomposition.hosting_ports) if self.decomposition else {},
            'reports': {key: value.to_dict() for key, value in self.reports.items()},
            'synthesis': self.synthesis.to_dict() if self.synthesis else None,
            'endpoints': [item.to_dict() for item in self.endpoints],
            'summary': self.summary,
        }


class OrchestratorService:
    """End-to-end run: decompose, verify, provision, supervise, assess, publish.

    Only ``ConfigurationError`` escapes ``run``; every other failure ends up
    in the returned ``RunOutcome``.
    """

    def __init__(
        self,
        *,
        repository: RunRepository,
        workspace: WorkspaceLifecycleManager,
        reasoning: ReasoningService,
        runtime: ContainerRuntime,
        harness: ValidationHarness,
        host: ServiceHost,
        verifier: CapabilityVerifier | None = None,
        health_probe: HealthProbe | None = None,
        coordination_factory: Callable[[], CoordinationReader] | None = None,
        prompts: PromptLibrary | None = None,
        worker_budget: int = 2,
        base_port: int = 3031,
        winner_port: int = 4000,
        reasoning_capability: str | None = None,
        reasoning_timeout_seconds: float = 600,
        monitor_interval_seconds: float = 5.0,
        monitor_concurrency: int = 4,
        readiness_timeout_seconds: float = 30.0,
        readiness_poll_seconds: float = 1.0,
        validation_concurrency: int = 3,
        assessment_backend: str = 'langgraph',
        rank_by_validation: bool = False,
        worker_command: str = '',
        worker_build_context: Path | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.repository = repository
        self.workspace = workspace
        self.reasoning = reasoning
        self.runtime = runtime
        self.harness = harness
        self.host = host
        self.verifier = verifier or CapabilityVerifier()
        self.health_probe = health_probe or HttpHealthProbe()
        self.coordination_factory = coordination_factory or NullCoordinationReader
        self.prompts = prompts or PromptLibrary()
        self.worker_budget = max(1, int(worker_budget))
        self.base_port = int(base_port)
        self.winner_port = int(winner_port)
        self.reasoning_capability = str(reasoning_capability or '').strip() or None
        self.reasoning_timeout_seconds = float(reasoning_timeout_seconds)
        self.monitor_interval_seconds = float(monitor_interval_seconds)
        self.monitor_concurrency = max(1, int(monitor_concurrency))
        self.readiness_timeout_seconds = float(readiness_timeout_seconds)
        self.readiness_poll_seconds = float(readiness_poll_seconds)
        self.validation_concurrency = max(1, int(validation_concurrency))
        self.assessment_backend = assessment_backend
        self.rank_by_validation = bool(rank_by_validation)
        self.worker_command = str(worker_command or '').strip()
        self.worker_build_context = worker_build_context
        self.clock = clock
        self.sleep = sleep

    def create_run(self, task: Task) -> dict:
        """Validate and record a run without starting it. Raises ConfigurationError."""
        task = validate_task(task)
        specs = get_tier_specs(task.tier)
        worker_ids = worker_ids_for(min(self.worker_budget, len(specs)))
        assign_ports(worker_ids, base_port=self.base_port, winner_port=self.winner_port)
        row = self.repository.create_run(
            RunCreateRecord(
                prompt=task.prompt,
                tier=task.tier,
                max_execution_seconds=task.max_execution_seconds,
                partial_assessment_interval_seconds=task.partial_assessment_interval_seconds,
                technologies=list(task.technologies),
                worker_budget=len(worker_ids),
            )
        )
        _log.info('run_created run_id=%s tier=%s workers=%d', row['run_id'], task.tier, len(worker_ids))
        return row

    def run(self, task: Task) -> RunOutcome:
        row = self.create_run(task)
        return self.start_run(row['run_id'])

    def start_run(self, run_id: str) -> RunOutcome:
        row = self.repository.get_run(run_id)
        if row is None:
            raise KeyError(run_id)
        task = validate_task(
            Task(
                prompt=row['prompt'],
                tier=row['tier'],
                max_execution_seconds=row['max_execution_seconds'],
                partial_assessment_interval_seconds=row['partial_assessment_interval_seconds'],
                technologies=tuple(row['technologies']),
            )
        )
        with run_scope(run_id, stage='start'):
            self.repository.update_run(run_id, status='running')
            emit = self._event_sink(run_id)
            emit(EventType.RUN_STARTED.value, {'tier': task.tier, 'prompt': task.prompt})
            try:
                return self._execute(run_id, task, worker_count=int(row['worker_budget']), emit=emit)
            except Exception as exc:
                _log.exception('run_failed run_id=%s', run_id)
                result = RunResult(execution_seconds=0.0, containers={}, error=f'{exc.__class__.__name__}: {exc}')
                return self._finish(run_id, status='failed', result=result, emit=emit)

    def list_runs(self, *, limit: int = 100) -> list[dict]:
        return self.repository.list_runs(limit=limit)

    def get_run(self, run_id: str) -> dict | None:
        return self.repository.get_run(run_id)

    def list_events(self, run_id: str) -> list[dict]:
        return self.repository.list_events(run_id)

    def mark_failed(self, run_id: str, *, reason: str) -> dict:
        row = self.repository.update_run(run_id, status='failed', reason=reason)
        self._event_sink(run_id)(EventType.RUN_COMPLETED.value, {'status': 'failed', 'reason': reason})
        return row

    def shutdown(self) -> None:
        self.host.stop_all()

    def _execute(self, run_id: str, task: Task, *, worker_count: int, emit) -> RunOutcome:
        ws = self.workspace.open(run_id)
        specs = get_tier_specs(task.tier)[:worker_count]
        worker_ids = worker_ids_for(len(specs))

        set_stage('decompose')
        decomposer = TaskDecomposer(
            reasoning=self.reasoning,
            prompts=self.prompts,
            capability=self.reasoning_capability,
            timeout_seconds=self.reasoning_timeout_seconds,
            base_port=self.base_port,
            winner_port=self.winner_port,
        )
        decomposition = decomposer.decompose(task, worker_ids)
        emit(
            EventType.DECOMPOSITION_READY.value if decomposition.source == 'reasoning' else EventType.DECOMPOSITION_FALLBACK.value,
            {'complexity': decomposition.estimated_complexity, 'hosting_ports': decomposition.hosting_ports},
        )

        set_stage('verify')
        verified = self.verifier.verify_all(specs)
        for worker_id, item in zip(worker_ids, verified):
            emit(
                EventType.CAPABILITY_RESOLVED.value,
                {
                    'worker_id': worker_id,
                    'requested': item.spec.model,
                    'model': item.model,
                    'specialization': item.specialization,
                    'resolution': item.resolution,
                },
            )

        set_stage('provision')
        provisioner = WorkerProvisioner(
            worker_budget=worker_count,
            worker_command=self.worker_command,
            build_context=self.worker_build_context,
        )
        plan = provisioner.provision(task=task, verified=verified, decomposition=decomposition, workspace=ws)
        emit(
            EventType.PROVISIONED.value,
            {'workers': {item.worker_id: item.port for item in plan.workers}, 'compose_file': str(plan.compose_file)},
        )

        workspaces = {item.worker_id: item.workspace for item in plan.workers}
        pipeline = AssessmentPipeline(
            reasoning=self.reasoning,
            harness=self.harness,
            prompts=self.prompts,
            capability=self.reasoning_capability,
            timeout_seconds=self.reasoning_timeout_seconds,
            validation_concurrency=self.validation_concurrency,
            backend=self.assessment_backend,
            rank_by_validation=self.rank_by_validation,
            events=emit,
        )
        validated: dict[str, dict[str, AssessmentReport]] = {}

        def validate_live(monitored: RunResult, context) -> None:
            validated['reports'] = pipeline.validate(monitored, workspaces)

        supervisor = RunSupervisor(
            workspace=self.workspace,
            runtime=self.runtime,
            monitor_factory=self._monitor_factory,
            monitor_interval_seconds=self.monitor_interval_seconds,
            readiness_timeout_seconds=self.readiness_timeout_seconds,
            readiness_poll_seconds=self.readiness_poll_seconds,
            clock=self.clock,
            sleep=self.sleep,
            events=emit,
        )
        result, _ = supervisor.supervise(
            run_id=run_id,
            task=task,
            decomposition=decomposition,
            plan=plan,
            on_monitored=validate_live,
        )
        self.workspace.write_artifact_json(run_id, category='execution-logs', name='run-result', payload=result.to_dict())
        if result.error:
            return self._finish(run_id, status='deployment_failed', result=result, emit=emit, decomposition=decomposition)

        reports, synthesis = pipeline.assess(
            task=task,
            result=result,
            decomposition=decomposition,
            workspaces=workspaces,
            reports=validated['reports'],
        )
        for worker_id, report in reports.items():
            self.workspace.write_artifact_json(run_id, category='quality-reports', name=worker_id, payload=report.to_dict())
        self.workspace.write_artifact_json(run_id, category='quality-reports', name='synthesis', payload=synthesis.to_dict())

        set_stage('publish')
        endpoints = self._publish(run_id, decomposition, result, reports, synthesis, workspaces, emit)
        degraded = synthesis.degraded or any(not item.ok for item in endpoints)
        return self._finish(
            run_id,
            status='degraded' if degraded else 'completed',
            result=result,
            emit=emit,
            decomposition=decomposition,
            reports=reports,
            synthesis=synthesis,
            endpoints=endpoints,
        )

    def _publish(
        self,
        run_id: str,
        decomposition: Decomposition,
        result: RunResult,
        reports: dict[str, AssessmentReport],
        synthesis: EvaluationSynthesis,
        workspaces: dict[str, Path],
        emit,
    ) -> list[PublishedEndpoint]:
        presenter = Presenter(host=self.host, events=emit)
        endpoints = presenter.publish_candidates(result, workspaces)
        endpoints.append(presenter.publish_winner(synthesis, workspaces, port=decomposition.winner_port))
        page = render_discussion(
            run_id=run_id,
            decomposition=decomposition,
            result=result,
            reports=reports,
            synthesis=synthesis,
            endpoints=endpoints,
        )
        self.workspace.write_discussion(run_id, page)
        status_payload = {
            'run_id': run_id,
            'winner': synthesis.winner,
            'workers': {key: value.to_dict() for key, value in result.containers.items()},
            'signals': {key: dict(value) for key, value in result.signals.items()},
            'reports': {key: value.to_dict() for key, value in reports.items()},
            'endpoints': [item.to_dict() for item in endpoints],
        }
        endpoints.append(presenter.publish_discussion(page, lambda: status_payload, port=decomposition.discussion_port))
        return endpoints

    def _finish(
        self,
        run_id: str,
        *,
        status: str,
        result: RunResult,
        emit,
        decomposition: Decomposition | None = None,
        reports: dict[str, AssessmentReport] | None = None,
        synthesis: EvaluationSynthesis | None = None,
        endpoints: list[PublishedEndpoint] | None = None,
    ) -> RunOutcome:
        set_stage('summary')
        reports = dict(reports or {})
        endpoints = list(endpoints or [])
        ws = self.workspace.open(run_id)
        if decomposition is not None and not ws.discussion_html.exists():
            self.workspace.write_discussion(
                run_id,
                render_discussion(
                    run_id=run_id,
                    decomposition=decomposition,
                    result=result,
                    reports=reports,
                    synthesis=synthesis,
                    endpoints=endpoints,
                ),
            )
        summary = format_summary(
            run_id=run_id,
            status=status,
            result=result,
            reports=reports,
            synthesis=synthesis,
            endpoints=endpoints,
            artifact_root=ws.root,
        )
        self.workspace.write_summary(run_id, summary)
        self.repository.update_run(
            run_id,
            status=status,
            reason=result.error,
            winner=synthesis.winner if synthesis else None,
            summary=summary,
        )
        emit(EventType.RUN_COMPLETED.value, {'status': status, 'winner': synthesis.winner if synthesis else None})
        _log.info('run_finished run_id=%s status=%s', run_id, status)
        return RunOutcome(
            run_id=run_id,
            status=status,
            result=result,
            decomposition=decomposition,
            reports=reports,
            synthesis=synthesis,
            endpoints=tuple(endpoints),
            summary=summary,
        )

    def _monitor_factory(self, plan: ProvisionPlan) -> ExecutionMonitor:
        return ExecutionMonitor(
            runtime=self.runtime,
            compose_file=plan.compose_file,
            probe=self.health_probe,
            coordination=self.coordination_factory(),
            concurrency=self.monitor_concurrency,
        )

    def _event_sink(self, run_id: str) -> Callable[[str, dict], None]:
        def emit(event_type: str, payload: dict) -> None:
            event = {'type': event_type, 'payload': payload}
            try:
                self.workspace.append_event(run_id, event)
            except OSError as exc:
                _log.warning('event_log_write_failed run_id=%s error=%s', run_id, exc)
            try:
                self.repository.append_event(run_id, event_type=event_type, payload=payload)
            except Exception as exc:
                _log.warning('event_record_failed run_id=%s type=%s error=%s', run_id, event_type, exc)

        return emit
