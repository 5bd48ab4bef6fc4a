from __future__ import annotations

from dataclasses import dataclass
import shlex
from typing import Protocol


@dataclass(frozen=True)
class ReasoningResult:
    ok: bool
    output: str
    error: str | None
    duration_seconds: float

    @classmethod
    def failure(cls, reason: str, *, duration_seconds: float = 0.0) -> ReasoningResult:
        text = str(reason or '').strip() or 'reasoning_runtime_error'
        return cls(ok=False, output='', error=text, duration_seconds=max(0.0, float(duration_seconds)))


class ReasoningService(Protocol):
    def run(self, prompt: str, *, capability: str | None = None, timeout_seconds: float = 600) -> ReasoningResult:
        ...


LIMIT_PATTERNS = (
    'hit your limit',
    'usage limit',
    'rate limit',
    'ratelimitexceeded',
    'resource_exhausted',
    'quota exceeded',
    'insufficient_quota',
)


def has_model_flag(argv: list[str]) -> bool:
    for token in argv:
        text = str(token).strip()
        if text in {'--model', '-m'}:
            return True
        if text.startswith('--model='):
            return True
    return False


def detect_provider(command: str) -> str:
    try:
        argv = shlex.split(str(command or ''), posix=False)
    except ValueError:
        argv = str(command or '').split()
    if not argv:
        return ''
    head = str(argv[0]).replace('\\', '/').rsplit('/', 1)[-1].lower()
    for suffix in ('.exe', '.cmd', '.bat'):
        if head.endswith(suffix):
            head = head[: -len(suffix)]
    return head


def is_provider_limit_output(output: str) -> bool:
    text = (output or '').strip().lower()
    if not text:
        return False
    return any(pattern in text for pattern in LIMIT_PATTERNS)


class NullReasoningService:
    """Reasoning service for environments without one: every call fails."""

    def __init__(self, reason: str = 'reasoning_service_unavailable'):
        self.reason = reason
        self.calls = 0

    def run(self, prompt: str, *, capability: str | None = None, timeout_seconds: float = 600) -> ReasoningResult:
        self.calls += 1
        return ReasoningResult.failure(self.reason)


__all__ = [
    'LIMIT_PATTERNS',
    'NullReasoningService',
    'ReasoningResult',
    'ReasoningService',
    'detect_provider',
    'has_model_flag',
    'is_provider_limit_output',
]
