from __future__ import annotations

from typing import Callable, Iterable

from gruntforge.domain.errors import CapabilityUnavailable
from gruntforge.domain.models import VerifiedWorker, WorkerSpec
from gruntforge.observability import get_logger

_log = get_logger('gruntforge.capabilities')

BASELINE_MODEL = 'llama3.2:1b'
BASELINE_SPECIALIZATION = 'basic'

KNOWN_MODELS = frozenset(
    {
        'phi3:mini',
        'llama3.2:1b',
        'codegemma:2b',
        'qwen2.5-coder:7b',
        'codellama:7b',
        'deepseek-coder:6.7b',
        'starcoder2:7b',
        'qwen2.5-coder:14b',
        'codellama:13b',
        'deepseek-coder:33b',
        'starcoder2:15b',
        'mistral:7b-instruct',
        'llama3.1:8b',
        'qwen2.5-coder:32b',
        'codellama:34b',
        'deepseek-coder:67b',
        'llama3.1:70b',
        'mixtral:8x7b',
        'starcoder2:34b',
    }
)


class CapabilityVerifier:
    """Resolve each worker spec to a model that can actually be deployed.

    The chain is primary model, then the spec's fallback model, then the
    baseline model with the specialization relabelled ``basic``. Probe
    errors count as "unavailable"; ``verify`` never raises.
    """

    def __init__(
        self,
        *,
        available: Iterable[str] | Callable[[str], bool] | None = None,
        baseline_model: str = BASELINE_MODEL,
    ):
        if available is None:
            available = KNOWN_MODELS
        if callable(available):
            self._probe = available
        else:
            known = frozenset(str(item).strip() for item in available if str(item).strip())
            self._probe = lambda model: model in known
        self.baseline_model = str(baseline_model or BASELINE_MODEL).strip() or BASELINE_MODEL

    def verify(self, spec: WorkerSpec) -> VerifiedWorker:
        try:
            self._require(spec.model)
            _log.info('capability_verified worker=%s model=%s', spec.name, spec.model)
            return VerifiedWorker(spec=spec, model=spec.model, specialization=spec.specialization, resolution='primary')
        except CapabilityUnavailable:
            pass
        try:
            self._require(spec.fallback_model)
            _log.warning('capability_fallback worker=%s model=%s fallback=%s', spec.name, spec.model, spec.fallback_model)
            return VerifiedWorker(
                spec=spec,
                model=spec.fallback_model,
                specialization=spec.specialization,
                resolution='fallback',
            )
        except CapabilityUnavailable:
            pass
        _log.error(
            'capability_baseline worker=%s model=%s fallback=%s baseline=%s',
            spec.name,
            spec.model,
            spec.fallback_model,
            self.baseline_model,
        )
        return VerifiedWorker(
            spec=spec,
            model=self.baseline_model,
            specialization=BASELINE_SPECIALIZATION,
            resolution='baseline',
        )

    def verify_all(self, specs: Iterable[WorkerSpec]) -> list[VerifiedWorker]:
        return [self.verify(spec) for spec in specs]

    def _require(self, model: str) -> None:
        name = str(model or '').strip()
        if not name:
            raise CapabilityUnavailable(name)
        try:
            available = bool(self._probe(name))
        except Exception:
            _log.warning('capability_probe_error model=%s', name, exc_info=True)
            available = False
        if not available:
            raise CapabilityUnavailable(name)
