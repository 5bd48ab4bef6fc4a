from __future__ import annotations

from gruntforge.extraction import (
    DEFAULT_IMPROVEMENTS,
    DEFAULT_SCAFFOLDING,
    DEFAULT_TEST_SPECS,
    extract_complexity,
    extract_hosting_plan,
    extract_improvements,
    extract_scaffolding,
    extract_test_specs,
    extract_winner,
)

IDS = ['worker1', 'worker2']


def test_complexity_keywords():
    assert extract_complexity('An advanced realtime system') == 'high'
    assert extract_complexity('A simple static page') == 'low'
    assert extract_complexity('A page') == 'medium'


def test_test_specs_default_when_no_bullets():
    assert extract_test_specs('no bullets here') == list(DEFAULT_TEST_SPECS)


def test_scaffolding_picks_first_framework_keyword():
    assert extract_scaffolding('We will use Svelte and vite')['framework'] == 'Svelte'
    assert extract_scaffolding('plain js') == DEFAULT_SCAFFOLDING


def test_winner_named_in_superiority_sentence():
    text = 'Both ran. worker2 is clearly superior to worker1 on tests.'
    assert extract_winner(text, IDS) == 'worker2'


def test_winner_is_the_subject_of_a_comparative_sentence():
    assert extract_winner('Compared with worker1, worker2 is clearly superior in every category.', IDS) == 'worker2'
    assert extract_winner('Unlike worker2, worker1 is the stronger build.', IDS) == 'worker1'
    assert extract_winner('The best build is worker2, not worker1.', IDS) == 'worker2'


def test_winner_none_without_keyword():
    assert extract_winner('worker1 and worker2 both finished.', IDS) is None


def test_winner_none_when_claims_conflict():
    text = 'worker1 is better at styling.\nworker2 is the best at tests.'
    assert extract_winner(text, IDS) is None


def test_winner_does_not_match_longer_ids():
    assert extract_winner('worker10 is the winner.', IDS) is None


def test_improvements_from_heading_section():
    text = 'Summary\nImprovements:\n- Add keyboard shortcuts\n- Cache board state\nRisks:\n- none'
    assert extract_improvements(text) == ['Add keyboard shortcuts', 'Cache board state']


def test_improvements_default_list_and_empty_for_empty_text():
    assert extract_improvements('Nothing structured here.') == list(DEFAULT_IMPROVEMENTS)
    assert extract_improvements('') == []


def test_hosting_plan_never_overrides_assigned_ports():
    ports = {'worker1': 3031, 'discussion': 3032, 'winner': 4000}
    assert extract_hosting_plan('host the winner on 8080', ports) == ports
