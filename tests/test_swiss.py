"""Tests for Swiss pairing and standings order."""
from types import SimpleNamespace

from tourney.services.standings import rank_participants
from tourney.services.swiss import SwissEntry, pair_key, pair_round, standings_order


def _pairs(plan):
    return [(p.player1_id, p.player2_id) for p in plan.pairings]


def test_standings_order_points_then_wins_then_seed():
    entries = [
        SwissEntry(1, 3, 1, 1, 0),
        SwissEntry(2, 6, 2, 4, 0),
        SwissEntry(3, 3, 1, 2, 0),
        SwissEntry(4, 3, 0, 3, 1),
    ]
    assert [e.user_id for e in standings_order(entries)] == [2, 1, 3, 4]


def test_pairs_within_score_groups():
    entries = [
        SwissEntry(1, 6, 2, 1, 0),
        SwissEntry(2, 6, 2, 2, 0),
        SwissEntry(3, 3, 1, 3, 0),
        SwissEntry(4, 0, 0, 4, 0),
    ]
    plan = pair_round(entries, set(), 3)
    assert plan.round_number == 3
    assert _pairs(plan) == [(1, 2), (3, 4)]


def test_skips_previous_opponent():
    entries = [
        SwissEntry(1, 6, 2, 1, 0),
        SwissEntry(2, 6, 2, 2, 0),
        SwissEntry(3, 3, 1, 3, 0),
        SwissEntry(4, 0, 0, 4, 0),
    ]
    plan = pair_round(entries, {pair_key(2, 1)}, 3)
    assert _pairs(plan) == [(1, 3), (2, 4)]


def test_backtracks_when_greedy_strands_a_rematch():
    entries = [SwissEntry(uid, 3, 1, uid, 0) for uid in (1, 2, 3, 4)]
    plan = pair_round(entries, {pair_key(3, 4)}, 2)
    assert _pairs(plan) == [(1, 3), (2, 4)]


def test_bye_goes_to_lowest_without_previous_bye():
    entries = [
        SwissEntry(1, 9, 3, 1, 0),
        SwissEntry(2, 6, 2, 2, 0),
        SwissEntry(3, 3, 1, 3, 0),
        SwissEntry(4, 0, 0, 4, 0),
        SwissEntry(5, 0, 0, 5, 1),
    ]
    plan = pair_round(entries, set(), 4)
    assert plan.byes == [4]
    assert _pairs(plan) == [(1, 2), (3, 5)]


def test_returns_none_when_everyone_has_met():
    entries = [SwissEntry(1, 3, 1, 1, 0), SwissEntry(2, 0, 0, 2, 0)]
    assert pair_round(entries, {pair_key(1, 2)}, 2) is None


def _row(user_id, seed, status='eliminated', points=0, wins=0, losses=0, current_round=1):
    return SimpleNamespace(
        user_id=user_id, seed=seed, status=status, points=points,
        wins=wins, losses=losses, current_round=current_round,
    )


def test_elimination_ranking_puts_champion_first_despite_points():
    champion = _row(1, 1, status='active', points=6, wins=2, current_round=4)
    runner_up = _row(2, 2, points=9, wins=3, losses=1, current_round=3)
    early = _row(3, 3, points=0, losses=1, current_round=1)
    ranked = rank_participants('single_elimination', [early, runner_up, champion], champion_id=1)
    assert [row.user_id for row in ranked] == [1, 2, 3]


def test_points_ranking_sinks_disqualified_and_keeps_seed_on_ties():
    rows = [
        _row(1, 1, status='disqualified', points=12, wins=4),
        _row(2, 3, status='active', points=6, wins=2),
        _row(3, 2, status='active', points=6, wins=2),
        _row(4, 4, status='active', points=9, wins=3),
    ]
    ranked = rank_participants('round_robin', rows)
    assert [row.user_id for row in ranked] == [4, 3, 2, 1]
