from __future__ import annotations

from gruntforge.adapters.base import (
    LIMIT_PATTERNS,
    NullReasoningService,
    ReasoningResult,
    ReasoningService,
    detect_provider,
    has_model_flag,
    is_provider_limit_output,
)
from gruntforge.adapters.providers import PROVIDER_PROFILES, ProviderProfile, final_codex_message, profile_for
from gruntforge.adapters.runner import CliReasoningService

__all__ = [
    'CliReasoningService',
    'LIMIT_PATTERNS',
    'NullReasoningService',
    'PROVIDER_PROFILES',
    'ProviderProfile',
    'ReasoningResult',
    'ReasoningService',
    'detect_provider',
    'final_codex_message',
    'has_model_flag',
    'is_provider_limit_output',
    'profile_for',
]
