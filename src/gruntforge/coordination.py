from __future__ import annotations

from typing import Protocol

import redis
from redis.exceptions import RedisError

from gruntforge.observability import get_logger

_log = get_logger('gruntforge.coordination')

KEY_PREFIX = 'grunts'


def worker_key(worker_id: str) -> str:
    return f'{KEY_PREFIX}:worker:{worker_id}'


class CoordinationReader(Protocol):
    def read_signals(self, worker_ids: list[str]) -> dict[str, dict[str, str]]:
        ...

    def close(self) -> None:
        ...


class RedisCoordinationReader:
    """Read-only view of the worker-owned hashes in the coordination store.

    The orchestrator never writes ``grunts:worker:*`` keys; workers own them.
    Any store error yields an empty mapping for the affected worker.
    """

    def __init__(self, url: str, *, socket_timeout: float = 2.0, client: redis.Redis | None = None):
        self.url = url
        self._client = client or redis.Redis.from_url(
            url,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
            decode_responses=True,
        )

    def read_signals(self, worker_ids: list[str]) -> dict[str, dict[str, str]]:
        signals: dict[str, dict[str, str]] = {}
        for worker_id in worker_ids:
            try:
                raw = self._client.hgetall(worker_key(worker_id)) or {}
            except RedisError as exc:
                _log.debug('coordination_read_failed worker=%s error=%s', worker_id, exc)
                raw = {}
            signals[worker_id] = {self._text(key): self._text(value) for key, value in raw.items()}
        return signals

    def close(self) -> None:
        try:
            self._client.close()
        except RedisError:
            _log.debug('coordination_close_failed url=%s', self.url)

    @staticmethod
    def _text(value) -> str:
        if isinstance(value, bytes):
            return value.decode('utf-8', errors='replace')
        return str(value)


class NullCoordinationReader:
    def read_signals(self, worker_ids: list[str]) -> dict[str, dict[str, str]]:
        return {worker_id: {} for worker_id in worker_ids}

    def close(self) -> None:
        return None
