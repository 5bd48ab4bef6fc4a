from __future__ import annotations

from pathlib import Path
from typing import Callable, TypedDict

from langgraph.graph import END, StateGraph

from gruntforge.adapters.base import ReasoningService
from gruntforge.domain.errors import AssessmentStageFailure
from gruntforge.domain.events import EventType
from gruntforge.domain.models import (
    AssessmentReport,
    Decomposition,
    EvaluationSynthesis,
    RunResult,
    Task,
    WorkerInstance,
)
from gruntforge.extraction import extract_hosting_plan, extract_improvements, extract_winner
from gruntforge.observability import get_logger, get_tracer, set_stage
from gruntforge.prompting import PromptLibrary, clip_text
from gruntforge.validation import ValidationHarness, validate_all

_log = get_logger('gruntforge.assessment')

STAGES = ('analysis', 'debug', 'review', 'synthesis')


def placeholder(stage: str, reason: str) -> str:
    return f'[{stage} unavailable: {reason}]'


def select_winner(
    synthesis_text: str | None,
    worker_ids: list[str],
    reports: dict[str, AssessmentReport],
    *,
    rank_by_validation: bool = False,
) -> tuple[str, str]:
    """Return ``(winner, reason)``; the winner is always one of ``worker_ids``.

    A single worker claimed superior in the synthesis text wins. Otherwise the
    first worker wins, unless ``rank_by_validation`` is set and one worker holds
    a strictly highest weighted validation score.
    """
    if not worker_ids:
        raise ValueError('worker_ids cannot be empty')
    if synthesis_text:
        named = extract_winner(synthesis_text, worker_ids)
        if named in worker_ids:
            return named, 'synthesis'
    scored = [(reports[item].weighted_score, item) for item in worker_ids if item in reports]
    if rank_by_validation and scored:
        best = max(score for score, _ in scored)
        leaders = [item for score, item in scored if score == best]
        if len(leaders) == 1 and best > 0:
            return leaders[0], 'validation'
    return worker_ids[0], 'default'


def worker_table(workers: dict[str, WorkerInstance]) -> str:
    lines = ['worker | model | specialization | status | phase | lines +/- | tests pass/fail']
    for worker_id, item in workers.items():
        metrics = item.metrics
        lines.append(
            f'{worker_id} | {item.model} | {item.specialization} | {item.status.value} | {item.phase.value} | '
            f'+{metrics.lines_added}/-{metrics.lines_deleted} | {metrics.tests_passed}/{metrics.tests_failed}'
        )
    return '\n'.join(lines)


def validation_table(reports: dict[str, AssessmentReport]) -> str:
    lines = ['worker | quality | performance | browser | api | overall | weighted']
    for worker_id, report in reports.items():
        lines.append(
            f'{worker_id} | {report.code_quality:.0f} | {report.performance:.0f} | {report.browser:.0f} | '
            f'{report.api:.0f} | {report.overall:.1f} | {report.weighted_score:.1f}'
        )
    return '\n'.join(lines)


def failure_table(reports: dict[str, AssessmentReport]) -> str:
    lines: list[str] = []
    for worker_id, report in reports.items():
        for error in report.errors:
            lines.append(f'- {worker_id}: {error}')
        for category, finding in report.findings.items():
            if 'failed' in finding or 'unreachable' in finding:
                lines.append(f'- {worker_id} [{category}]: {finding}')
    return '\n'.join(lines) or '- none reported'


class _AssessmentState(TypedDict, total=False):
    task: Task
    result: RunResult
    decomposition: Decomposition
    reports: dict[str, AssessmentReport]
    outputs: dict[str, str]
    failures: dict[str, str]


class AssessmentPipeline:
    """Validation followed by four sequential reasoning stages.

    A failed stage is replaced by a labelled placeholder and the pipeline
    carries on; the synthesis always names a provisioned worker.
    """

    def __init__(
        self,
        *,
        reasoning: ReasoningService,
        harness: ValidationHarness,
        prompts: PromptLibrary | None = None,
        capability: str | None = None,
        timeout_seconds: float = 600,
        validation_concurrency: int = 3,
        backend: str = 'langgraph',
        rank_by_validation: bool = False,
        events: Callable[[str, dict], None] | None = None,
    ):
        self.reasoning = reasoning
        self.harness = harness
        self.prompts = prompts or PromptLibrary()
        self.capability = capability
        self.timeout_seconds = timeout_seconds
        self.validation_concurrency = max(1, int(validation_concurrency))
        self.backend = 'classic' if str(backend or '').strip().lower() == 'classic' else 'langgraph'
        self.rank_by_validation = bool(rank_by_validation)
        self.events = events or (lambda event_type, payload: None)
        self._graph = None
        self._tracer = get_tracer('gruntforge.assessment')

    def validate(self, result: RunResult, workspaces: dict[str, Path]) -> dict[str, AssessmentReport]:
        """Score every worker through the harness; needs the workers' ports to be live."""
        set_stage('validation')
        workers = list(result.containers.values())
        with self._tracer.start_as_current_span('assessment.validation', attributes={'workers': len(workers)}):
            reports = validate_all(self.harness, workers, workspaces, concurrency=self.validation_concurrency)
        self.events(
            EventType.VALIDATION_COMPLETED.value,
            {key: round(value.weighted_score, 2) for key, value in reports.items()},
        )
        return reports

    def assess(
        self,
        *,
        task: Task,
        result: RunResult,
        decomposition: Decomposition,
        workspaces: dict[str, Path],
        reports: dict[str, AssessmentReport] | None = None,
    ) -> tuple[dict[str, AssessmentReport], EvaluationSynthesis]:
        if reports is None:
            reports = self.validate(result, workspaces)

        state: _AssessmentState = {
            'task': task,
            'result': result,
            'decomposition': decomposition,
            'reports': reports,
            'outputs': {},
            'failures': {},
        }
        if self.backend == 'langgraph':
            state = self._get_graph().invoke(state)
        else:
            for stage in STAGES:
                state = {**state, **self._run_stage(stage, state)}

        outputs = dict(state.get('outputs') or {})
        failures = dict(state.get('failures') or {})
        reports = {
            worker_id: report.with_findings('analysis', outputs.get('analysis', ''))
            .with_findings('debug', outputs.get('debug', ''))
            .with_findings('review', outputs.get('review', ''))
            for worker_id, report in reports.items()
        }
        synthesis = self._synthesize(result, decomposition, reports, outputs, failures)
        self.events(
            EventType.WINNER_SELECTED.value,
            {'winner': synthesis.winner, 'reason': synthesis.winner_reason, 'degraded': synthesis.degraded},
        )
        return reports, synthesis

    def _synthesize(
        self,
        result: RunResult,
        decomposition: Decomposition,
        reports: dict[str, AssessmentReport],
        outputs: dict[str, str],
        failures: dict[str, str],
    ) -> EvaluationSynthesis:
        worker_ids = list(result.containers)
        synthesis_text = '' if 'synthesis' in failures else outputs.get('synthesis', '')
        winner, reason = select_winner(synthesis_text, worker_ids, reports, rank_by_validation=self.rank_by_validation)
        _log.info('winner_selected winner=%s reason=%s', winner, reason)
        return EvaluationSynthesis(
            winner=winner,
            improvements=tuple(extract_improvements(synthesis_text)),
            hosting_plan=extract_hosting_plan(synthesis_text, decomposition.hosting_ports),
            narrative=outputs.get('synthesis', ''),
            winner_reason=reason,
            stage_outputs=outputs,
            degraded=bool(failures),
        )

    def _get_graph(self):
        if self._graph is not None:
            return self._graph
        graph = StateGraph(_AssessmentState)
        for stage in STAGES:
            graph.add_node(stage, self._node(stage))
        graph.set_entry_point(STAGES[0])
        for current, following in zip(STAGES, STAGES[1:]):
            graph.add_edge(current, following)
        graph.add_edge(STAGES[-1], END)
        self._graph = graph.compile()
        return self._graph

    def _node(self, stage: str):
        def run(state: _AssessmentState) -> dict:
            return self._run_stage(stage, state)

        run.__name__ = f'{stage}_node'
        return run

    def _run_stage(self, stage: str, state: _AssessmentState) -> dict:
        outputs = dict(state.get('outputs') or {})
        failures = dict(state.get('failures') or {})
        set_stage(stage)
        with self._tracer.start_as_current_span(f'assessment.{stage}'):
            try:
                outputs[stage] = self._call(stage, self._prompt(stage, state, outputs))
                self.events(EventType.ASSESSMENT_STAGE_COMPLETED.value, {'stage': stage, 'chars': len(outputs[stage])})
            except AssessmentStageFailure as exc:
                _log.warning('assessment_stage_failed stage=%s reason=%s', stage, exc.reason)
                outputs[stage] = placeholder(stage, exc.reason)
                failures[stage] = exc.reason
                self.events(EventType.ASSESSMENT_STAGE_FAILED.value, {'stage': stage, 'reason': exc.reason})
        return {'outputs': outputs, 'failures': failures}

    def _call(self, stage: str, prompt: str) -> str:
        try:
            response = self.reasoning.run(prompt, capability=self.capability, timeout_seconds=self.timeout_seconds)
        except Exception as exc:
            raise AssessmentStageFailure(stage, f'{exc.__class__.__name__}: {exc}') from exc
        if not response.ok:
            raise AssessmentStageFailure(stage, response.error or 'reasoning_error')
        text = str(response.output or '').strip()
        if not text:
            raise AssessmentStageFailure(stage, 'empty_response')
        return text

    def _prompt(self, stage: str, state: _AssessmentState, outputs: dict[str, str]) -> str:
        result = state['result']
        reports = state.get('reports') or {}
        worker_ids = ', '.join(result.containers)
        if stage == 'analysis':
            return self.prompts.render(
                'analysis.txt',
                task=state['task'].prompt,
                worker_table=worker_table(result.containers),
                validation_table=validation_table(reports),
            )
        if stage == 'debug':
            return self.prompts.render(
                'debug.txt',
                analysis=clip_text(outputs.get('analysis', '')),
                failure_table=failure_table(reports),
            )
        if stage == 'review':
            return self.prompts.render('review.txt', worker_ids=worker_ids, debug=clip_text(outputs.get('debug', '')))
        ports = state['decomposition'].hosting_ports
        return self.prompts.render(
            'synthesis.txt',
            analysis=clip_text(outputs.get('analysis', ''), max_chars=3000),
            debug=clip_text(outputs.get('debug', ''), max_chars=3000),
            review=clip_text(outputs.get('review', ''), max_chars=3000),
            validation_table=validation_table(reports),
            metrics=worker_table(result.containers),
            worker_ids=worker_ids,
            hosting_ports=', '.join(f'{key}={value}' for key, value in ports.items()),
        )
