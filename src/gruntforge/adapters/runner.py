from __future__ import annotations

from pathlib import Path
import random
import shutil
import subprocess
import time

from gruntforge.adapters.base import ReasoningResult, detect_provider, is_provider_limit_output
from gruntforge.adapters.providers import profile_for
from gruntforge.observability import get_logger

_log = get_logger('gruntforge.adapters.runner')

_MIN_ATTEMPT_TIMEOUT_SECONDS = 0.05
_RETRY_PROMPT_CHARS = 4000
_RETRY_BLOCK_FLOOR = 200
_DRY_RUN_OUTPUT = (
    '[dry-run reasoning]\n'
    'The task is of medium complexity and can be delivered as one subtask.\n'
    'Both implementations were reviewed; no implementation is clearly superior.\n'
    'Improvements:\n'
    '- Improve test coverage\n'
    '- Enhance error handling\n'
)


class CliReasoningService:
    """Reasoning service backed by a provider CLI that reads the prompt on stdin."""

    def __init__(
        self,
        *,
        command: str,
        cwd: Path | None = None,
        default_capability: str | None = None,
        dry_run: bool = False,
        timeout_retries: int = 1,
    ):
        self.command = str(command or '').strip()
        self.provider = detect_provider(self.command)
        self.profile = profile_for(self.provider)
        self.cwd = Path(cwd) if cwd is not None else Path.cwd()
        self.default_capability = str(default_capability or '').strip() or None
        self.dry_run = dry_run
        self.timeout_retries = max(0, int(timeout_retries))

    def run(self, prompt: str, *, capability: str | None = None, timeout_seconds: float = 600) -> ReasoningResult:
        if self.dry_run:
            return ReasoningResult(ok=True, output=_DRY_RUN_OUTPUT, error=None, duration_seconds=0.01)
        if not self.command:
            return ReasoningResult.failure('command_not_configured')

        argv = self.profile.build_argv(self.command, capability=capability or self.default_capability)
        argv = self._resolve_executable(argv)
        effective_command = ' '.join(str(value) for value in argv)
        attempts = self.timeout_retries + 1
        current_prompt = prompt
        started = time.monotonic()
        deadline = started + max(0.05, float(timeout_seconds))
        completed = None
        attempts_made = 0

        for attempt in range(1, attempts + 1):
            remaining_budget = max(0.0, deadline - time.monotonic())
            if remaining_budget <= 0:
                break
            attempt_timeout = self._compute_attempt_timeout_seconds(
                remaining_budget=remaining_budget,
                attempts_left=attempts - attempt + 1,
            )
            if attempt_timeout <= 0:
                break
            attempts_made += 1
            try:
                completed = subprocess.run(
                    argv,
                    input=current_prompt,
                    capture_output=True,
                    text=True,
                    encoding='utf-8',
                    errors='replace',
                    cwd=str(self.cwd),
                    timeout=attempt_timeout,
                )
                break
            except FileNotFoundError:
                return ReasoningResult.failure(
                    f'command_not_found provider={self.provider} command={effective_command}',
                    duration_seconds=time.monotonic() - started,
                )
            except subprocess.TimeoutExpired:
                _log.warning('reasoning_timeout provider=%s attempt=%d', self.provider, attempt)
                if attempt >= attempts:
                    break
                current_prompt = self._clip_prompt_for_retry(current_prompt)
                if not self._sleep_before_retry(attempt=attempt, deadline=deadline):
                    break

        elapsed = time.monotonic() - started
        if completed is None:
            return ReasoningResult.failure(
                f'command_timeout provider={self.provider} timeout_seconds={timeout_seconds} '
                f'attempts={attempts} attempts_made={attempts_made}',
                duration_seconds=elapsed,
            )

        output = (completed.stdout or '').strip()
        if completed.returncode != 0:
            stderr = (completed.stderr or '').strip()
            output = '\n'.join([part for part in [output, stderr] if part]).strip()
        if is_provider_limit_output(output):
            return ReasoningResult.failure(f'provider_limit provider={self.provider}', duration_seconds=elapsed)
        if completed.returncode != 0:
            return ReasoningResult.failure(
                f'command_failed provider={self.provider} returncode={completed.returncode}',
                duration_seconds=elapsed,
            )
        normalized = self.profile.clean_output(output)
        if not normalized:
            return ReasoningResult.failure(f'empty_output provider={self.provider}', duration_seconds=elapsed)
        _log.debug('reasoning_completed provider=%s duration=%.2fs', self.provider, elapsed)
        return ReasoningResult(ok=True, output=normalized, error=None, duration_seconds=elapsed)

    @staticmethod
    def _compute_attempt_timeout_seconds(*, remaining_budget: float, attempts_left: int) -> float:
        budget = max(0.0, float(remaining_budget))
        left = max(1, int(attempts_left))
        if budget <= 0:
            return 0.0
        requested = max(min(_MIN_ATTEMPT_TIMEOUT_SECONDS, budget), budget / left)
        return min(budget, requested)

    @staticmethod
    def _sleep_before_retry(*, attempt: int, deadline: float) -> bool:
        remaining = max(0.0, deadline - time.monotonic())
        if remaining <= 0:
            return False
        pause_cap = max(0.0, remaining - min(_MIN_ATTEMPT_TIMEOUT_SECONDS, remaining))
        if pause_cap > 0:
            backoff = min(0.75, min(0.5, 0.15 * max(1, attempt)) + random.uniform(0.0, 0.1))
            time.sleep(min(pause_cap, backoff))
        return deadline - time.monotonic() > 0

    @staticmethod
    def _clip_prompt_for_retry(prompt: str) -> str:
        text = prompt or ''
        if len(text) <= _RETRY_PROMPT_CHARS:
            return text
        blocks = text.split('\n\n')
        overflow = len(text) - _RETRY_PROMPT_CHARS
        # Longest blocks are the embedded stage outputs; instruction blocks stay whole.
        for index in sorted(range(len(blocks)), key=lambda item: len(blocks[item]), reverse=True):
            spare = len(blocks[index]) - _RETRY_BLOCK_FLOOR
            if overflow <= 0 or spare <= 0:
                break
            cut = min(spare, overflow)
            blocks[index] = blocks[index][: len(blocks[index]) - cut] + f' [clipped {cut} chars]'
            overflow -= cut
        clipped = '\n\n'.join(blocks)
        if overflow > 0:
            half = _RETRY_PROMPT_CHARS // 2
            clipped = clipped[:half] + f'\n\n[retry prompt clipped: {len(clipped) - 2 * half} chars removed]\n\n' + clipped[-half:]
        return clipped

    @staticmethod
    def _resolve_executable(argv: list[str]) -> list[str]:
        if not argv:
            return argv
        resolved = shutil.which(str(argv[0]).strip())
        if not resolved:
            return argv
        patched = list(argv)
        patched[0] = resolved
        return patched


__all__ = ['CliReasoningService']
