from __future__ import annotations

import pytest

from gruntforge.capabilities import BASELINE_MODEL, BASELINE_SPECIALIZATION, CapabilityVerifier
from gruntforge.domain.errors import ConfigurationError
from gruntforge.domain.models import WorkerSpec
from gruntforge.tiers import TIER_CATALOG, describe_tiers, get_tier_specs

SPEC = WorkerSpec('grunt-qwen-7b', 'qwen2.5-coder:7b', 'JavaScript/TypeScript', '8G', 'codellama:7b')


def test_tier_sizes():
    assert len(get_tier_specs('ultralight')) == 2
    assert len(get_tier_specs('light')) == 4
    assert len(get_tier_specs('medium')) == 6
    assert len(get_tier_specs('high')) == 6


def test_unknown_tier_is_configuration_error():
    with pytest.raises(ConfigurationError):
        get_tier_specs('enormous')


def test_describe_tiers_lists_every_worker():
    described = {item['tier']: item for item in describe_tiers()}
    assert described['light']['memory'] == '24G'
    assert [w['name'] for w in described['medium']['workers']] == [s.name for s in TIER_CATALOG['medium']]


def test_verify_prefers_primary_model():
    verified = CapabilityVerifier().verify(SPEC)
    assert verified.model == 'qwen2.5-coder:7b'
    assert verified.resolution == 'primary'


def test_verify_uses_fallback_when_primary_missing():
    verified = CapabilityVerifier(available={'codellama:7b'}).verify(SPEC)
    assert verified.model == 'codellama:7b'
    assert verified.specialization == 'JavaScript/TypeScript'
    assert verified.resolution == 'fallback'


def test_verify_falls_back_to_baseline_when_nothing_is_available():
    verified = CapabilityVerifier(available=set()).verify(SPEC)
    assert verified.model == BASELINE_MODEL
    assert verified.specialization == BASELINE_SPECIALIZATION
    assert verified.resolution == 'baseline'


def test_probe_errors_count_as_unavailable():
    def probe(model: str) -> bool:
        raise RuntimeError('registry offline')

    verified = CapabilityVerifier(available=probe).verify(SPEC)
    assert verified.model == BASELINE_MODEL


def test_verify_all_keeps_order():
    specs = get_tier_specs('light')
    verified = CapabilityVerifier(available=set()).verify_all(specs)
    assert [item.spec.name for item in verified] == [spec.name for spec in specs]
