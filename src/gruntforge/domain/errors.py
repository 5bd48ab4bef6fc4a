from __future__ import annotations


class GruntsError(Exception):
    pass


class ConfigurationError(GruntsError, ValueError):
    def __init__(self, message: str, *, field: str | None = None, code: str = 'configuration_error'):
        super().__init__(message)
        self.message = message
        self.field = field
        self.code = code


class CapabilityUnavailable(GruntsError):
    def __init__(self, model: str):
        super().__init__(f'capability unavailable: {model}')
        self.model = model


class DeploymentFailure(GruntsError):
    pass


class DeploymentTimeout(DeploymentFailure):
    pass


class WorkerFailure(GruntsError):
    def __init__(self, worker_id: str, reason: str):
        super().__init__(f'worker {worker_id} failed: {reason}')
        self.worker_id = worker_id
        self.reason = reason


class AssessmentStageFailure(GruntsError):
    def __init__(self, stage: str, reason: str):
        super().__init__(f'{stage} failed: {reason}')
        self.stage = stage
        self.reason = reason


class TeardownFailure(GruntsError):
    pass


__all__ = [
    'AssessmentStageFailure',
    'CapabilityUnavailable',
    'ConfigurationError',
    'DeploymentFailure',
    'DeploymentTimeout',
    'GruntsError',
    'TeardownFailure',
    'WorkerFailure',
]
