from gruntforge.domain.errors import (
    AssessmentStageFailure,
    CapabilityUnavailable,
    ConfigurationError,
    DeploymentFailure,
    DeploymentTimeout,
    TeardownFailure,
    WorkerFailure,
)
from gruntforge.domain.events import EventType, normalize_event_type
from gruntforge.domain.models import (
    AssessmentReport,
    CategoryWeights,
    Decomposition,
    EvaluationSynthesis,
    RunContext,
    RunResult,
    Subtask,
    Task,
    WorkerInstance,
    WorkerMetrics,
    WorkerPhase,
    WorkerSpec,
    WorkerStatus,
    can_transition,
    validate_task,
)

__all__ = [
    'AssessmentReport',
    'AssessmentStageFailure',
    'CapabilityUnavailable',
    'CategoryWeights',
    'ConfigurationError',
    'Decomposition',
    'DeploymentFailure',
    'DeploymentTimeout',
    'EvaluationSynthesis',
    'EventType',
    'RunContext',
    'RunResult',
    'Subtask',
    'Task',
    'TeardownFailure',
    'WorkerFailure',
    'WorkerInstance',
    'WorkerMetrics',
    'WorkerPhase',
    'WorkerSpec',
    'WorkerStatus',
    'can_transition',
    'normalize_event_type',
    'validate_task',
]
