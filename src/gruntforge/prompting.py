from __future__ import annotations

from pathlib import Path
from string import Template
from threading import Lock

PROMPT_DIR = Path(__file__).resolve().parent / 'prompts'


class PromptLibrary:
    """``$placeholder`` templates for the reasoning stages, read once per name.

    Unknown placeholders are left in place; ``None`` renders as an empty string.
    """

    def __init__(self, template_dir: Path = PROMPT_DIR):
        self.template_dir = Path(template_dir).resolve(strict=False)
        self._templates: dict[str, Template] = {}
        self._lock = Lock()

    def names(self) -> list[str]:
        return sorted(path.name for path in self.template_dir.glob('*.txt'))

    def template(self, name: str) -> Template:
        key = str(name or '').strip()
        if not key:
            raise ValueError('prompt name is required')
        if Path(key).name != key:
            raise ValueError(f'invalid prompt name: {name}')
        with self._lock:
            cached = self._templates.get(key)
            if cached is None:
                cached = Template((self.template_dir / key).read_text(encoding='utf-8'))
                self._templates[key] = cached
        return cached

    def render(self, name: str, **fields: object) -> str:
        values = {key: '' if value is None else str(value) for key, value in fields.items()}
        return self.template(name).safe_substitute(values)


def clip_text(text: str, *, max_chars: int = 6000) -> str:
    source = text or ''
    if len(source) <= max_chars:
        return source
    return f'{source[:max_chars]}\n...[truncated {len(source) - max_chars} chars]'
