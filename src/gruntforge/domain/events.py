from __future__ import annotations

from enum import Enum


class EventType(str, Enum):
    ASSESSMENT_STAGE_COMPLETED = 'assessment_stage_completed'
    ASSESSMENT_STAGE_FAILED = 'assessment_stage_failed'
    CANDIDATE_PUBLISH_FAILED = 'candidate_publish_failed'
    CANDIDATE_PUBLISHED = 'candidate_published'
    CAPABILITY_RESOLVED = 'capability_resolved'
    DEADLINE_REACHED = 'deadline_reached'
    DECOMPOSITION_FALLBACK = 'decomposition_fallback'
    DECOMPOSITION_READY = 'decomposition_ready'
    DEPLOYMENT_FAILED = 'deployment_failed'
    DEPLOYMENT_STARTED = 'deployment_started'
    DISCUSSION_PUBLISHED = 'discussion_published'
    MONITOR_TICK = 'monitor_tick'
    PROVISIONED = 'provisioned'
    RUN_COMPLETED = 'run_completed'
    RUN_STARTED = 'run_started'
    TEARDOWN_COMPLETED = 'teardown_completed'
    TEARDOWN_FAILED = 'teardown_failed'
    VALIDATION_COMPLETED = 'validation_completed'
    WINNER_SELECTED = 'winner_selected'
    WORKER_STATUS_CHANGED = 'worker_status_changed'
    WORKERS_READY = 'workers_ready'
    WORKSPACE_RESET = 'workspace_reset'


def normalize_event_type(value: str | EventType) -> str:
    if isinstance(value, EventType):
        return value.value
    text = str(value or '').strip().lower()
    if not text:
        raise ValueError('event_type is required')
    return text

