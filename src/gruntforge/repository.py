from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Protocol
from uuid import uuid4

from gruntforge.domain.events import EventType, normalize_event_type

RUN_STATUSES = ('queued', 'running', 'completed', 'degraded', 'deployment_failed', 'failed')


def normalize_run_status(value: str) -> str:
    text = str(value or '').strip().lower()
    if text not in RUN_STATUSES:
        raise ValueError(f'unknown run status: {value}')
    return text


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_run_id() -> str:
    return f'run-{uuid4().hex[:12]}'


@dataclass(frozen=True)
class RunCreateRecord:
    prompt: str
    tier: str
    max_execution_seconds: int
    partial_assessment_interval_seconds: int
    technologies: list[str]
    worker_budget: int


class RunRepository(Protocol):
    def create_run(self, record: RunCreateRecord, *, run_id: str | None = None) -> dict:
        ...

    def list_runs(self, *, limit: int = 100) -> list[dict]:
        ...

    def get_run(self, run_id: str) -> dict | None:
        ...

    def update_run(
        self,
        run_id: str,
        *,
        status: str,
        reason: str | None = None,
        winner: str | None = None,
        summary: str | None = None,
    ) -> dict:
        ...

    def append_event(self, run_id: str, *, event_type: str | EventType, payload: dict) -> dict:
        ...

    def list_events(self, run_id: str) -> list[dict]:
        ...


class InMemoryRunRepository:
    def __init__(self):
        self.items: dict[str, dict] = {}
        self.events: dict[str, list[dict]] = {}
        self._lock = Lock()

    def create_run(self, record: RunCreateRecord, *, run_id: str | None = None) -> dict:
        run_id = str(run_id or '').strip() or new_run_id()
        now = _utc_now_iso()
        row = {
            'run_id': run_id,
            'prompt': record.prompt,
            'tier': record.tier,
            'max_execution_seconds': int(record.max_execution_seconds),
            'partial_assessment_interval_seconds': int(record.partial_assessment_interval_seconds),
            'technologies': [str(item) for item in record.technologies],
            'worker_budget': int(record.worker_budget),
            'status': 'queued',
            'reason': None,
            'winner': None,
            'summary': None,
            'created_at': now,
            'updated_at': now,
        }
        with self._lock:
            self.items[run_id] = row
            self.events[run_id] = []
        return dict(row)

    def list_runs(self, *, limit: int = 100) -> list[dict]:
        rows = list(self.items.values())
        rows.sort(key=lambda r: r.get('created_at', ''), reverse=True)
        return [dict(r) for r in rows[:limit]]

    def get_run(self, run_id: str) -> dict | None:
        row = self.items.get(run_id)
        return dict(row) if row else None

    def update_run(
        self,
        run_id: str,
        *,
        status: str,
        reason: str | None = None,
        winner: str | None = None,
        summary: str | None = None,
    ) -> dict:
        with self._lock:
            if run_id not in self.items:
                raise KeyError(run_id)
            row = self.items[run_id]
            row['status'] = normalize_run_status(status)
            row['reason'] = reason
            if winner is not None:
                row['winner'] = winner
            if summary is not None:
                row['summary'] = summary
            row['updated_at'] = _utc_now_iso()
            return dict(row)

    def append_event(self, run_id: str, *, event_type: str | EventType, payload: dict) -> dict:
        with self._lock:
            if run_id not in self.items:
                raise KeyError(run_id)
            event = {
                'seq': len(self.events[run_id]) + 1,
                'run_id': run_id,
                'type': normalize_event_type(event_type),
                'payload': dict(payload),
                'created_at': _utc_now_iso(),
            }
            self.events[run_id].append(event)
            return dict(event)

    def list_events(self, run_id: str) -> list[dict]:
        if run_id not in self.items:
            raise KeyError(run_id)
        return [dict(e) for e in self.events.get(run_id, [])]
