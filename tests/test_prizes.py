"""Tests for prize parsing, pool limits and payout delivery."""
import pytest
from tourney.app import db
from tourney.errors import ValidationError
from tourney.models import Payout, TournamentParticipant
from tourney.services.prizes import (
    deliver_pending_payouts,
    parse_prizes,
    prize_pool_for,
    validate_against_pool,
)


def test_prize_pool_is_floored():
    assert prize_pool_for(100, 8, 0.9) == 720
    assert prize_pool_for(33, 3, 0.9) == 89
    assert prize_pool_for(0, 64, 0.9) == 0


def test_parse_prizes_orders_by_position_and_fills_descriptions():
    prizes = parse_prizes([
        {'position': 2, 'reward_type': 'item', 'reward_item_id': 'neon_skin'},
        {'position': 1, 'reward_type': 'coins', 'reward_amount': '300'},
        {'position': 3, 'reward_type': 'crate_key', 'reward_item_id': 'gold_crate'},
    ])
    assert [p.position for p in prizes] == [1, 2, 3]
    assert prizes[0].reward_amount == 300
    assert prizes[0].description == '300 coins'
    assert prizes[2].reward_amount == 1


@pytest.mark.parametrize('raw', [
    [{'position': 1, 'reward_type': 'coins'}],
    [{'position': 0, 'reward_type': 'coins', 'reward_amount': 10}],
    [{'position': 1, 'reward_type': 'gold', 'reward_amount': 10}],
    [{'position': 1, 'reward_type': 'badge'}],
    [
        {'position': 1, 'reward_type': 'coins', 'reward_amount': 10},
        {'position': 1, 'reward_type': 'gems', 'reward_amount': 5},
    ],
    {'position': 1},
])
def test_parse_prizes_rejects_bad_input(raw):
    with pytest.raises(ValidationError):
        parse_prizes(raw)


def test_validate_against_pool_counts_only_currency():
    prizes = parse_prizes([
        {'position': 1, 'reward_type': 'coins', 'reward_amount': 500},
        {'position': 2, 'reward_type': 'gems', 'reward_amount': 220},
        {'position': 3, 'reward_type': 'badge', 'reward_item_id': 'podium'},
    ])
    validate_against_pool(prizes, 720)
    with pytest.raises(ValidationError) as excinfo:
        validate_against_pool(prizes, 719)
    assert excinfo.value.details == {'prize_total': 720, 'prize_pool': 719}


def _prize_tournament(make_tournament):
    return make_tournament(
        max_participants=4,
        entry_fee=100,
        prizes=[
            {'position': 1, 'reward_type': 'coins', 'reward_amount': 300},
            {'position': 2, 'reward_type': 'item', 'reward_item_id': 'neon_skin'},
            {'position': 3, 'reward_type': 'badge', 'reward_item_id': 'podium'},
        ],
    )


def test_completion_delivers_every_prize(make_tournament, fill_tournament, play_out, collaborators):
    tournament = _prize_tournament(make_tournament)
    assert tournament.prize_pool == 360
    fill_tournament(tournament.id, 4)

    play_out(tournament.id)

    by_position = {
        row.position: row.user_id
        for row in TournamentParticipant.query.filter_by(tournament_id=tournament.id).all()
    }
    assert (by_position[1], 300, 'coins') in collaborators.ledger.credits
    assert collaborators.inventory.items == [(by_position[2], 'neon_skin', 1)]
    assert collaborators.badges.granted == [(by_position[3], 'podium')]
    payouts = Payout.query.filter_by(tournament_id=tournament.id).all()
    assert len(payouts) == 3
    assert {p.status for p in payouts} == {'delivered'}
    assert 'tournament_completed' in collaborators.notifier.event_names()


def test_failed_payout_stays_pending_and_is_retried(make_tournament, fill_tournament, play_out, collaborators):
    tournament = _prize_tournament(make_tournament)
    fill_tournament(tournament.id, 4)
    collaborators.ledger.fail_credits = 1

    finished = play_out(tournament.id)

    assert finished.status == 'completed'
    coin_payout = Payout.query.filter_by(tournament_id=tournament.id, reward_type='coins').one()
    assert coin_payout.status == 'pending'
    assert coin_payout.attempts == 1
    assert coin_payout.last_error == 'ledger offline'

    summary = deliver_pending_payouts(tournament_id=tournament.id)

    assert summary == {'attempted': 1, 'delivered': 1, 'failed': 0}
    db.session.refresh(coin_payout)
    assert coin_payout.status == 'delivered'
    assert coin_payout.attempts == 2
    assert coin_payout.last_error is None


def test_payout_retries_stop_at_max_attempts(make_tournament, fill_tournament, play_out, collaborators):
    tournament = _prize_tournament(make_tournament)
    fill_tournament(tournament.id, 4)
    collaborators.ledger.fail_credits = 100

    play_out(tournament.id)
    for _ in range(5):
        deliver_pending_payouts(tournament_id=tournament.id)

    coin_payout = Payout.query.filter_by(tournament_id=tournament.id, reward_type='coins').one()
    assert coin_payout.status == 'pending'
    assert coin_payout.attempts == 3
    assert deliver_pending_payouts(tournament_id=tournament.id)['attempted'] == 0
