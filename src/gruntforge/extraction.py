"""Best-effort extraction from free-text reasoning output.

Every function here is intentionally lossy: reasoning output is unstructured
text, so each extractor looks for a few keywords and falls back to a fixed,
documented default when nothing matches. None of them raise.
"""
from __future__ import annotations

import re

DEFAULT_COMPLEXITY = 'medium'
DEFAULT_APPROACH = 'MVP-first with iterative enhancement based on test feedback'

DEFAULT_TEST_SPECS = (
    'Unit tests for core functionality',
    'Integration tests for component interaction',
    'E2E tests using a headless browser',
    'Performance and load testing',
    'Error handling and edge cases',
    'Accessibility and UX validation',
)

DEFAULT_SCAFFOLDING = {
    'framework': 'React with TypeScript',
    'build_tool': 'Vite',
    'testing': 'Vitest + Puppeteer',
    'styling': 'CSS Modules + Tailwind',
    'deployment': 'Express dev server',
}

DEFAULT_EVALUATION_CRITERIA = {
    'code_quality': 'ESLint + TypeScript strict mode',
    'test_coverage': 'Minimum 80% coverage',
    'performance': 'Lighthouse score > 90',
    'accessibility': 'WCAG 2.1 compliance',
}

DEFAULT_IMPROVEMENTS = (
    'Enhance error handling',
    'Improve test coverage',
    'Optimize performance',
    'Add accessibility features',
)

WINNER_KEYWORDS = ('winner', 'superior', 'better', 'best', 'stronger')

_FRAMEWORKS = (
    ('react', 'React with TypeScript'),
    ('vue', 'Vue with TypeScript'),
    ('angular', 'Angular'),
    ('svelte', 'Svelte'),
    ('phaser', 'Phaser with TypeScript'),
)
_BULLET_RE = re.compile(r'^\s*(?:[-*•]|\d+[.)])\s+(.+?)\s*$')
_SENTENCE_SPLIT_RE = re.compile(r'(?<=[.!?])\s+|\n+')


def extract_complexity(content: str) -> str:
    """Return ``high``, ``low`` or ``medium``; ``medium`` when no keyword is present."""
    text = str(content or '').lower()
    if 'complex' in text or 'advanced' in text:
        return 'high'
    if 'simple' in text or 'basic' in text:
        return 'low'
    return DEFAULT_COMPLEXITY


def extract_approach(content: str) -> str:
    """Return the first line starting with ``approach:``; the fixed MVP-first approach otherwise."""
    for line in str(content or '').splitlines():
        match = re.match(r'^\s*(?:recommended\s+)?approach\s*:\s*(.+)$', line, re.IGNORECASE)
        if match and match.group(1).strip():
            return match.group(1).strip()
    return DEFAULT_APPROACH


def extract_test_specs(content: str, *, limit: int = 8) -> list[str]:
    """Return bullet lines that mention tests; the canned category list when there are none."""
    found: list[str] = []
    for line in str(content or '').splitlines():
        match = _BULLET_RE.match(line)
        if not match:
            continue
        item = match.group(1).strip()
        if 'test' in item.lower() and item not in found:
            found.append(item)
        if len(found) >= limit:
            break
    return found or list(DEFAULT_TEST_SPECS)


def extract_scaffolding(content: str) -> dict[str, str]:
    scaffolding = dict(DEFAULT_SCAFFOLDING)
    text = str(content or '').lower()
    for keyword, framework in _FRAMEWORKS:
        if keyword in text:
            scaffolding['framework'] = framework
            break
    return scaffolding


def extract_evaluation_criteria(content: str) -> dict[str, str]:
    _ = content
    return dict(DEFAULT_EVALUATION_CRITERIA)


def _mentions(sentence: str, worker_id: str) -> int:
    match = re.search(rf'(?<![A-Za-z0-9_-]){re.escape(worker_id)}(?![A-Za-z0-9_])', sentence, re.IGNORECASE)
    return match.start() if match else -1


def extract_winner(content: str, worker_ids: list[str]) -> str | None:
    """Name the winner when exactly one worker is claimed superior.

    A claim is a sentence holding a superiority keyword. The claimed winner
    is the worker named closest before the first keyword ("compared with
    worker1, worker2 is better"), or the first one named after it when none
    precedes it ("the best build is worker2"). Returns ``None`` when no
    sentence qualifies or when different sentences claim different workers.
    """
    ids = [str(item) for item in worker_ids if str(item).strip()]
    if not ids:
        return None
    claimed: set[str] = set()
    for sentence in _SENTENCE_SPLIT_RE.split(str(content or '')):
        lowered = sentence.lower()
        hits = [lowered.find(keyword) for keyword in WINNER_KEYWORDS if keyword in lowered]
        if not hits:
            continue
        keyword_at = min(hits)
        positions: list[tuple[int, str]] = []
        for worker_id in ids:
            pos = _mentions(sentence, worker_id)
            if pos >= 0:
                positions.append((pos, worker_id))
        if not positions:
            continue
        before = [item for item in positions if item[0] < keyword_at]
        claimed.add(max(before)[1] if before else min(positions)[1])
    if len(claimed) == 1:
        return next(iter(claimed))
    return None
    claimed: set[str] = set()
    for sentence in _SENTENCE_SPLIT_RE.split(str(content or '')):
        lowered = sentence.lower()
        if not any(keyword in lowered for keyword in WINNER_KEYWORDS):
            continue
        positions: list[tuple[int, str]] = []
        for worker_id in ids:
            pos = _mentions(sentence, worker_id)
            if pos >= 0:
                positions.append((pos, worker_id))
        if not positions:
            continue
        positions.sort()
        claimed.add(positions[0][1])
    if len(claimed) == 1:
        return next(iter(claimed))
    return None


def extract_improvements(content: str, *, limit: int = 10) -> list[str]:
    """Return bullets under an ``improvement`` heading; the canned list otherwise.

    Empty content yields an empty list, so a failed synthesis never invents
    improvements.
    """
    text = str(content or '')
    if not text.strip():
        return []
    items: list[str] = []
    in_section = False
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        bullet = _BULLET_RE.match(line)
        item = bullet.group(1).strip() if bullet else ''
        if not bullet or item.endswith(':') or item.isupper() or item.split(':', 1)[0].isupper():
            in_section = 'improve' in stripped.lower()
            continue
        if in_section and item not in items:
            items.append(item)
            if len(items) >= limit:
                break
    return items or list(DEFAULT_IMPROVEMENTS)


def extract_hosting_plan(content: str, known_ports: dict[str, int]) -> dict[str, int]:
    """Return the already-assigned port map; text never overrides assigned ports."""
    _ = content
    return {str(key): int(value) for key, value in known_ports.items()}
