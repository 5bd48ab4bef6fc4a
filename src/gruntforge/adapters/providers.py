from __future__ import annotations

from dataclasses import dataclass
import shlex
from typing import Callable

from gruntforge.adapters.base import has_model_flag


def plain_output(output: str) -> str:
    return str(output or '').strip()


def final_codex_message(output: str) -> str:
    """Keep only the agent's last message from ``codex exec`` transcripts."""
    lines = str(output or '').replace('\r\n', '\n').split('\n')
    speaker = [index for index, line in enumerate(lines) if line.strip() == 'codex']
    if speaker:
        body: list[str] = []
        for line in lines[speaker[-1] + 1:]:
            if line.strip().startswith('tokens used'):
                break
            body.append(line)
        message = '\n'.join(body).strip()
        if message:
            return message
    for index, line in enumerate(lines):
        if index and line.startswith('OpenAI Codex v'):
            head = '\n'.join(lines[:index]).strip()
            if head:
                return head
            break
    return plain_output(output)


@dataclass(frozen=True)
class ProviderProfile:
    name: str
    model_flag: str = '-m'
    clean_output: Callable[[str], str] = plain_output

    def build_argv(self, command: str, *, capability: str | None = None) -> list[str]:
        argv = shlex.split(command, posix=False)
        model = str(capability or '').strip()
        if model and self.model_flag and not has_model_flag(argv):
            argv += [self.model_flag, model]
        return argv


PROVIDER_PROFILES: dict[str, ProviderProfile] = {
    'claude': ProviderProfile('claude', model_flag='--model'),
    'codex': ProviderProfile('codex', clean_output=final_codex_message),
    'gemini': ProviderProfile('gemini'),
}


def profile_for(provider: str) -> ProviderProfile:
    key = str(provider or '').strip().lower()
    return PROVIDER_PROFILES.get(key) or ProviderProfile(key)


__all__ = ['PROVIDER_PROFILES', 'ProviderProfile', 'final_codex_message', 'plain_output', 'profile_for']
