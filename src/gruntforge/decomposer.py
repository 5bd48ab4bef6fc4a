from __future__ import annotations

from gruntforge.adapters.base import ReasoningService
from gruntforge.domain.errors import ConfigurationError
from gruntforge.domain.models import Decomposition, Subtask, Task
from gruntforge.extraction import (
    extract_approach,
    extract_complexity,
    extract_evaluation_criteria,
    extract_scaffolding,
    extract_test_specs,
)
from gruntforge.observability import get_logger
from gruntforge.prompting import PromptLibrary

_log = get_logger('gruntforge.decomposer')

FALLBACK_TESTS = (
    'Basic functionality tests',
    'Component integration tests',
    'User interaction tests',
    'Performance validation',
)
FALLBACK_SCAFFOLDING = {
    'framework': 'React with TypeScript',
    'build_tool': 'Vite',
    'testing': 'Vitest + Puppeteer',
}
FALLBACK_EVALUATION_CRITERIA = {
    'code_quality': 'Lint clean, typed',
    'test_coverage': 'All generated tests pass',
    'performance': 'Responsive under load',
    'accessibility': 'Basic WCAG checks',
}
FALLBACK_APPROACH = 'Start with MVP, iterate based on tests'


def assign_ports(worker_ids: list[str], *, base_port: int = 3031, winner_port: int = 4000) -> dict[str, int]:
    """One port per worker from ``base_port`` up, then the discussion port, then the winner port."""
    if not worker_ids:
        raise ConfigurationError('at least one worker is required', field='worker_budget')
    ports: dict[str, int] = {}
    for index, worker_id in enumerate(worker_ids):
        ports[worker_id] = int(base_port) + index
    ports['discussion'] = int(base_port) + len(worker_ids)
    if int(winner_port) in ports.values():
        raise ConfigurationError(
            f'winner port {winner_port} collides with a worker or discussion port',
            field='winner_port',
        )
    ports['winner'] = int(winner_port)
    return ports


class TaskDecomposer:
    def __init__(
        self,
        *,
        reasoning: ReasoningService,
        prompts: PromptLibrary | None = None,
        capability: str | None = None,
        timeout_seconds: float = 600,
        base_port: int = 3031,
        winner_port: int = 4000,
    ):
        self.reasoning = reasoning
        self.prompts = prompts or PromptLibrary()
        self.capability = capability
        self.timeout_seconds = timeout_seconds
        self.base_port = base_port
        self.winner_port = winner_port

    def decompose(self, task: Task, worker_ids: list[str]) -> Decomposition:
        ports = assign_ports(worker_ids, base_port=self.base_port, winner_port=self.winner_port)
        prompt = self.prompts.render(
            'decomposition.txt',
            prompt=task.prompt,
            technologies=', '.join(task.technologies),
            worker_count=len(worker_ids),
            worker_ports=', '.join(str(ports[item]) for item in worker_ids),
            discussion_port=ports['discussion'],
            winner_port=ports['winner'],
        )
        try:
            result = self.reasoning.run(prompt, capability=self.capability, timeout_seconds=self.timeout_seconds)
        except Exception as exc:
            _log.error('decomposition_call_failed error=%s', exc, exc_info=True)
            return self.fallback(task, worker_ids, ports=ports)
        content = str(result.output or '').strip() if result.ok else ''
        if not content:
            _log.warning('decomposition_fallback reason=%s', result.error or 'empty_response')
            return self.fallback(task, worker_ids, ports=ports)
        _log.info('decomposition_ready source=reasoning chars=%d', len(content))
        return self.parse(content, task, worker_ids, ports=ports)

    @staticmethod
    def parse(content: str, task: Task, worker_ids: list[str], *, ports: dict[str, int]) -> Decomposition:
        subtask = Subtask(
            id='task1',
            description=f'Implement: {task.prompt}',
            tests=tuple(extract_test_specs(content)),
            assigned_workers=tuple(worker_ids),
            scaffolding=extract_scaffolding(content),
            evaluation_criteria=extract_evaluation_criteria(content),
        )
        return Decomposition(
            main_task=task.prompt,
            technologies=tuple(task.technologies),
            subtasks=(subtask,),
            hosting_ports=dict(ports),
            estimated_complexity=extract_complexity(content),
            recommended_approach=extract_approach(content),
            analysis=content,
            source='reasoning',
        )

    @staticmethod
    def fallback(task: Task, worker_ids: list[str], *, ports: dict[str, int]) -> Decomposition:
        subtask = Subtask(
            id='task1',
            description=f'Implement core functionality for: {task.prompt}',
            tests=FALLBACK_TESTS,
            assigned_workers=tuple(worker_ids),
            scaffolding=dict(FALLBACK_SCAFFOLDING),
            evaluation_criteria=dict(FALLBACK_EVALUATION_CRITERIA),
        )
        return Decomposition(
            main_task=task.prompt,
            technologies=tuple(task.technologies),
            subtasks=(subtask,),
            hosting_ports=dict(ports),
            estimated_complexity='medium',
            recommended_approach=FALLBACK_APPROACH,
            analysis='',
            source='fallback',
        )
