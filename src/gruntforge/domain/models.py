from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from pathlib import Path

from gruntforge.domain.errors import ConfigurationError

TIER_NAMES = ('ultralight', 'light', 'medium', 'high')
DEFAULT_TECHNOLOGIES = ('javascript', 'typescript', 'nodejs', 'dom', 'css')


class WorkerStatus(str, Enum):
    STARTING = 'starting'
    RUNNING = 'running'
    COMPLETED = 'completed'
    FAILED = 'failed'
    TIMEOUT = 'timeout'

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES


_TERMINAL_STATUSES = frozenset({WorkerStatus.COMPLETED, WorkerStatus.FAILED, WorkerStatus.TIMEOUT})

_ALLOWED_TRANSITIONS: dict[WorkerStatus, set[WorkerStatus]] = {
    WorkerStatus.STARTING: {
        WorkerStatus.RUNNING,
        WorkerStatus.COMPLETED,
        WorkerStatus.FAILED,
        WorkerStatus.TIMEOUT,
    },
    WorkerStatus.RUNNING: {
        WorkerStatus.COMPLETED,
        WorkerStatus.FAILED,
        WorkerStatus.TIMEOUT,
    },
    WorkerStatus.COMPLETED: set(),
    WorkerStatus.FAILED: set(),
    WorkerStatus.TIMEOUT: set(),
}


def can_transition(current: WorkerStatus, target: WorkerStatus) -> bool:
    return target in _ALLOWED_TRANSITIONS[current]


class WorkerPhase(str, Enum):
    ANALYSIS = 'analysis'
    CODING = 'coding'
    TESTING = 'testing'
    ASSESSMENT = 'assessment'

    @property
    def rank(self) -> int:
        return _PHASE_ORDER.index(self)


_PHASE_ORDER = (WorkerPhase.ANALYSIS, WorkerPhase.CODING, WorkerPhase.TESTING, WorkerPhase.ASSESSMENT)


_STATUS_ALIASES = {'ok': WorkerStatus.RUNNING, 'healthy': WorkerStatus.RUNNING}


def parse_status(value) -> WorkerStatus | None:
    text = str(value or '').strip().lower()
    if text in _STATUS_ALIASES:
        return _STATUS_ALIASES[text]
    try:
        return WorkerStatus(text)
    except ValueError:
        return None


def parse_phase(value) -> WorkerPhase | None:
    text = str(value or '').strip().lower()
    try:
        return WorkerPhase(text)
    except ValueError:
        return None


@dataclass(frozen=True)
class Task:
    prompt: str
    tier: str = 'medium'
    max_execution_seconds: int = 14400
    partial_assessment_interval_seconds: int = 1800
    technologies: tuple[str, ...] = DEFAULT_TECHNOLOGIES


def validate_task(task: Task) -> Task:
    """Reject malformed input before anything is provisioned."""
    if not str(task.prompt or '').strip():
        raise ConfigurationError('prompt cannot be empty', field='prompt')
    if str(task.tier or '').strip().lower() not in TIER_NAMES:
        raise ConfigurationError(f'unknown tier: {task.tier}', field='tier')
    try:
        budget = int(task.max_execution_seconds)
        interval = int(task.partial_assessment_interval_seconds)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError('time budgets must be integers', field='max_execution_seconds') from exc
    if budget <= 0:
        raise ConfigurationError('max_execution_seconds must be positive', field='max_execution_seconds')
    if interval <= 0:
        raise ConfigurationError(
            'partial_assessment_interval_seconds must be positive',
            field='partial_assessment_interval_seconds',
        )
    technologies = tuple(str(item).strip() for item in (task.technologies or ()) if str(item).strip())
    if not technologies:
        raise ConfigurationError('technologies cannot be empty', field='technologies')
    return Task(
        prompt=str(task.prompt).strip(),
        tier=str(task.tier).strip().lower(),
        max_execution_seconds=budget,
        partial_assessment_interval_seconds=interval,
        technologies=technologies,
    )


@dataclass(frozen=True)
class Subtask:
    id: str
    description: str
    tests: tuple[str, ...]
    assigned_workers: tuple[str, ...]
    scaffolding: dict[str, str]
    evaluation_criteria: dict[str, str]


@dataclass(frozen=True)
class Decomposition:
    main_task: str
    technologies: tuple[str, ...]
    subtasks: tuple[Subtask, ...]
    hosting_ports: dict[str, int]
    estimated_complexity: str
    recommended_approach: str
    analysis: str = ''
    source: str = 'reasoning'

    @property
    def worker_ports(self) -> dict[str, int]:
        return {key: value for key, value in self.hosting_ports.items() if key not in {'discussion', 'winner'}}

    @property
    def discussion_port(self) -> int:
        return int(self.hosting_ports['discussion'])

    @property
    def winner_port(self) -> int:
        return int(self.hosting_ports['winner'])


@dataclass(frozen=True)
class WorkerSpec:
    name: str
    model: str
    specialization: str
    memory: str
    fallback_model: str


@dataclass(frozen=True)
class VerifiedWorker:
    spec: WorkerSpec
    model: str
    specialization: str
    resolution: str


@dataclass(frozen=True)
class WorkerMetrics:
    lines_added: int = 0
    lines_deleted: int = 0
    tests_passed: int = 0
    tests_failed: int = 0
    partial_assessments: int = 0

    @classmethod
    def from_payload(cls, payload: dict) -> WorkerMetrics:
        def pick(*keys: str) -> int:
            for key in keys:
                if key in payload:
                    try:
                        return max(0, int(payload.get(key) or 0))
                    except (TypeError, ValueError):
                        return 0
            return 0

        return cls(
            lines_added=pick('linesAdded', 'lines_added', 'linesGenerated'),
            lines_deleted=pick('linesDeleted', 'lines_deleted'),
            tests_passed=pick('testsPassedCount', 'tests_passed'),
            tests_failed=pick('testsFailedCount', 'tests_failed'),
            partial_assessments=pick('partialAssessments', 'partial_assessments'),
        )

    def to_dict(self) -> dict[str, int]:
        return {
            'lines_added': self.lines_added,
            'lines_deleted': self.lines_deleted,
            'tests_passed': self.tests_passed,
            'tests_failed': self.tests_failed,
            'partial_assessments': self.partial_assessments,
        }


@dataclass(frozen=True)
class WorkerInstance:
    worker_id: str
    name: str
    model: str
    specialization: str
    port: int
    status: WorkerStatus = WorkerStatus.STARTING
    phase: WorkerPhase = WorkerPhase.ANALYSIS
    metrics: WorkerMetrics = field(default_factory=WorkerMetrics)
    last_activity: datetime | None = None
    container_id: str | None = None

    def with_status(self, target: WorkerStatus) -> WorkerInstance:
        if target == self.status or not can_transition(self.status, target):
            return self
        return replace(self, status=target)

    def observe(
        self,
        *,
        status: WorkerStatus | None = None,
        phase: WorkerPhase | None = None,
        metrics: WorkerMetrics | None = None,
        last_activity: datetime | None = None,
        container_id: str | None = None,
    ) -> WorkerInstance:
        """Apply one observation, keeping status and phase monotonic."""
        updated = self
        if status is not None:
            updated = updated.with_status(status)
        if phase is not None and phase.rank > updated.phase.rank:
            updated = replace(updated, phase=phase)
        if metrics is not None:
            updated = replace(updated, metrics=metrics)
        if last_activity is not None:
            updated = replace(updated, last_activity=last_activity)
        if container_id:
            updated = replace(updated, container_id=container_id)
        return updated

    def to_dict(self) -> dict:
        return {
            'worker_id': self.worker_id,
            'name': self.name,
            'model': self.model,
            'specialization': self.specialization,
            'port': self.port,
            'status': self.status.value,
            'phase': self.phase.value,
            'metrics': self.metrics.to_dict(),
            'last_activity': self.last_activity.isoformat() if self.last_activity else None,
            'container_id': self.container_id,
        }


@dataclass(frozen=True)
class WorkerDescriptor:
    worker_id: str
    name: str
    model: str
    specialization: str
    memory: str
    port: int
    workspace: Path
    environment: dict[str, str]


@dataclass(frozen=True)
class CoordinationStoreDescriptor:
    service_name: str
    image: str
    port: int
    url: str


@dataclass(frozen=True)
class ProvisionPlan:
    workers: tuple[WorkerDescriptor, ...]
    coordination: CoordinationStoreDescriptor
    compose_file: Path

    @property
    def worker_ids(self) -> list[str]:
        return [item.worker_id for item in self.workers]


@dataclass(frozen=True)
class RunContext:
    run_id: str
    task: Task
    decomposition: Decomposition
    workers: dict[str, WorkerInstance]
    started_at: float
    now: float
    ticks: int = 0
    signals: dict[str, dict[str, str]] = field(default_factory=dict)
    deadline_reached: bool = False

    @property
    def elapsed_seconds(self) -> float:
        return max(0.0, self.now - self.started_at)

    @property
    def all_terminal(self) -> bool:
        return bool(self.workers) and all(item.status.is_terminal for item in self.workers.values())

    @property
    def deadline_elapsed(self) -> bool:
        return self.elapsed_seconds >= float(self.task.max_execution_seconds)

    def with_workers(self, workers: dict[str, WorkerInstance], **changes) -> RunContext:
        return replace(self, workers=dict(workers), **changes)


@dataclass(frozen=True)
class RunResult:
    execution_seconds: float
    containers: dict[str, WorkerInstance]
    error: str | None = None
    signals: dict[str, dict[str, str]] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict:
        return {
            'execution_seconds': round(float(self.execution_seconds), 3),
            'containers': {key: value.to_dict() for key, value in self.containers.items()},
            'error': self.error,
            'signals': {key: dict(value) for key, value in self.signals.items()},
        }


@dataclass(frozen=True)
class CategoryWeights:
    code_quality: float = 0.30
    performance: float = 0.25
    browser: float = 0.25
    api: float = 0.20

    def combine(self, *, code_quality: float, performance: float, browser: float, api: float) -> float:
        total = self.code_quality + self.performance + self.browser + self.api
        if total <= 0:
            return 0.0
        weighted = (
            code_quality * self.code_quality
            + performance * self.performance
            + browser * self.browser
            + api * self.api
        )
        return weighted / total


DEFAULT_WEIGHTS = CategoryWeights()


def clamp_score(value) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if number != number:
        return 0.0
    return max(0.0, min(100.0, number))


@dataclass(frozen=True)
class AssessmentReport:
    worker_id: str
    code_quality: float
    performance: float
    browser: float
    api: float
    overall: float
    weighted_score: float
    findings: dict[str, str] = field(default_factory=dict)
    errors: tuple[str, ...] = ()

    @classmethod
    def create(
        cls,
        worker_id: str,
        *,
        code_quality,
        performance,
        browser,
        api,
        findings: dict[str, str] | None = None,
        errors: list[str] | tuple[str, ...] | None = None,
        weights: CategoryWeights = DEFAULT_WEIGHTS,
    ) -> AssessmentReport:
        quality_score = clamp_score(code_quality)
        performance_score = clamp_score(performance)
        browser_score = clamp_score(browser)
        api_score = clamp_score(api)
        overall = (quality_score + performance_score + browser_score + api_score) / 4
        weighted = weights.combine(
            code_quality=quality_score,
            performance=performance_score,
            browser=browser_score,
            api=api_score,
        )
        return cls(
            worker_id=worker_id,
            code_quality=quality_score,
            performance=performance_score,
            browser=browser_score,
            api=api_score,
            overall=overall,
            weighted_score=weighted,
            findings=dict(findings or {}),
            errors=tuple(errors or ()),
        )

    @classmethod
    def empty(cls, worker_id: str, *, reason: str) -> AssessmentReport:
        return cls.create(worker_id, code_quality=0, performance=0, browser=0, api=0, errors=[reason])

    def with_findings(self, stage: str, text: str) -> AssessmentReport:
        merged = dict(self.findings)
        merged[stage] = text
        return replace(self, findings=merged)

    def to_dict(self) -> dict:
        return {
            'worker_id': self.worker_id,
            'scores': {
                'code_quality': self.code_quality,
                'performance': self.performance,
                'browser': self.browser,
                'api': self.api,
                'overall': self.overall,
                'weighted': round(self.weighted_score, 2),
            },
            'findings': dict(self.findings),
            'errors': list(self.errors),
        }


@dataclass(frozen=True)
class EvaluationSynthesis:
    winner: str
    improvements: tuple[str, ...]
    hosting_plan: dict[str, int]
    narrative: str
    winner_reason: str = 'default'
    stage_outputs: dict[str, str] = field(default_factory=dict)
    degraded: bool = False

    def to_dict(self) -> dict:
        return {
            'winner': self.winner,
            'winner_reason': self.winner_reason,
            'improvements': list(self.improvements),
            'hosting_plan': dict(self.hosting_plan),
            'narrative': self.narrative,
            'stage_outputs': dict(self.stage_outputs),
            'degraded': self.degraded,
        }