from __future__ import annotations

from gruntforge.domain.errors import ConfigurationError
from gruntforge.domain.models import TIER_NAMES, WorkerSpec

# Memory envelope per tier: 8GB / 24GB / 48GB / 96GB.
TIER_MEMORY = {
    'ultralight': '8G',
    'light': '24G',
    'medium': '48G',
    'high': '96G',
}

TIER_CATALOG: dict[str, tuple[WorkerSpec, ...]] = {
    'ultralight': (
        WorkerSpec('grunt-phi3-mini', 'phi3:mini', 'General coding', '4G', 'llama3.2:1b'),
        WorkerSpec('grunt-codegemma', 'codegemma:2b', 'Web development', '3G', 'phi3:mini'),
    ),
    'light': (
        WorkerSpec('grunt-qwen-7b', 'qwen2.5-coder:7b', 'JavaScript/TypeScript', '8G', 'codellama:7b'),
        WorkerSpec('grunt-codellama-7b', 'codellama:7b', 'DOM/CSS frameworks', '8G', 'qwen2.5-coder:7b'),
        WorkerSpec('grunt-deepseek', 'deepseek-coder:6.7b', 'Node.js/API development', '7G', 'codellama:7b'),
        WorkerSpec('grunt-starcoder', 'starcoder2:7b', 'Testing/optimization', '8G', 'qwen2.5-coder:7b'),
    ),
    'medium': (
        WorkerSpec('grunt-qwen-14b', 'qwen2.5-coder:14b', 'JavaScript/TypeScript/Node.js', '20G', 'qwen2.5-coder:7b'),
        WorkerSpec('grunt-codellama-13b', 'codellama:13b', 'React/Vue/Angular frameworks', '18G', 'codellama:7b'),
        WorkerSpec('grunt-deepseek-33b', 'deepseek-coder:33b', 'Performance optimization', '25G', 'deepseek-coder:6.7b'),
        WorkerSpec('grunt-starcoder-15b', 'starcoder2:15b', 'Testing/CI/CD', '22G', 'starcoder2:7b'),
        WorkerSpec('grunt-mistral-7b', 'mistral:7b-instruct', 'CSS/Design systems', '8G', 'llama3.1:8b'),
        WorkerSpec('grunt-llama-8b', 'llama3.1:8b', 'Documentation/APIs', '10G', 'mistral:7b-instruct'),
    ),
    'high': (
        WorkerSpec('grunt-qwen-32b', 'qwen2.5-coder:32b', 'Enterprise JavaScript', '40G', 'qwen2.5-coder:14b'),
        WorkerSpec('grunt-codellama-34b', 'codellama:34b', 'Complex framework development', '45G', 'codellama:13b'),
        WorkerSpec('grunt-deepseek-67b', 'deepseek-coder:67b', 'Architecture/optimization', '60G', 'deepseek-coder:33b'),
        WorkerSpec('grunt-llama-70b', 'llama3.1:70b', 'Research/planning', '70G', 'llama3.1:8b'),
        WorkerSpec('grunt-mixtral-8x7b', 'mixtral:8x7b', 'Multi-language support', '50G', 'mistral:7b-instruct'),
        WorkerSpec('grunt-starcoder-34b', 'starcoder2:34b', 'Advanced testing/QA', '45G', 'starcoder2:15b'),
    ),
}


def normalize_tier(value: str | None) -> str:
    text = str(value or '').strip().lower()
    if text not in TIER_NAMES:
        raise ConfigurationError(f'unknown tier: {value}', field='tier')
    return text


def get_tier_specs(tier: str) -> list[WorkerSpec]:
    return list(TIER_CATALOG[normalize_tier(tier)])


def describe_tiers() -> list[dict]:
    return [
        {
            'tier': name,
            'memory': TIER_MEMORY[name],
            'workers': [
                {
                    'name': spec.name,
                    'model': spec.model,
                    'specialization': spec.specialization,
                    'memory': spec.memory,
                    'fallback_model': spec.fallback_model,
                }
                for spec in TIER_CATALOG[name]
            ],
        }
        for name in TIER_NAMES
    ]
