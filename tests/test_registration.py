"""Tests for registration, slot claims and the auto-start on the last seat."""
import threading
from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError
from tourney.app import create_app, db
from tourney.errors import CapacityError, FundsError, NotFoundError, StateConflictError
from tourney.models import Payout, Tournament, TournamentMatch, TournamentParticipant, TournamentRound
from tourney.services import lifecycle, registration
from tourney.services.registration import claim_slot, register
from tourney.time_utils import utcnow_naive


def test_register_debits_entry_fee_and_opens_registration(make_tournament, collaborators):
    tournament = make_tournament(entry_fee=50, max_participants=4)
    result, error = lifecycle.register_for_tournament(tournament.id, 201)

    assert error is None
    assert result['filled'] is False
    assert result['started'] is False
    assert result['participant'].seed == 1
    assert result['participant'].status == 'registered'
    assert collaborators.ledger.debits == [(201, 50, 'coins')]
    assert collaborators.ledger.balance(201) == 10_000 - 50

    refreshed = db.session.get(Tournament, tournament.id)
    assert refreshed.status == 'registration'
    assert refreshed.current_participants == 1


def test_register_unknown_tournament(app):
    result, error = register(999, 1)
    assert result is None
    assert isinstance(error, NotFoundError)


def test_duplicate_registration_rejected_without_second_debit(make_tournament, collaborators):
    tournament = make_tournament(entry_fee=25)
    _, first_error = lifecycle.register_for_tournament(tournament.id, 301)
    _, second_error = lifecycle.register_for_tournament(tournament.id, 301)

    assert first_error is None
    assert isinstance(second_error, StateConflictError)
    assert len(collaborators.ledger.debits) == 1
    assert db.session.get(Tournament, tournament.id).current_participants == 1


def test_insufficient_funds_leaves_no_participant(make_tournament, collaborators):
    tournament = make_tournament(entry_fee=500)
    collaborators.ledger.set_balance(401, 100)

    result, error = lifecycle.register_for_tournament(tournament.id, 401)

    assert result is None
    assert isinstance(error, FundsError)
    assert error.status_code == 402
    assert TournamentParticipant.query.filter_by(tournament_id=tournament.id).count() == 0
    refreshed = db.session.get(Tournament, tournament.id)
    assert refreshed.current_participants == 0
    assert refreshed.status == 'upcoming'
    assert collaborators.ledger.balance(401) == 100


def test_full_tournament_rejects_with_capacity_error(make_tournament):
    tournament = make_tournament(max_participants=4)
    tournament.status = 'registration'
    tournament.current_participants = 4
    db.session.commit()

    result, error = register(tournament.id, 501)
    assert result is None
    assert isinstance(error, CapacityError)
    assert error.to_dict()['code'] == 'capacity'


def test_claim_slot_last_seat_goes_to_one_caller(make_tournament):
    tournament = make_tournament(max_participants=2)
    tournament.current_participants = 1
    db.session.commit()

    assert claim_slot(tournament.id) == 2
    assert claim_slot(tournament.id) is None
    db.session.commit()
    assert db.session.get(Tournament, tournament.id).current_participants == 2


def test_registration_closed_after_cancel(make_tournament):
    tournament = make_tournament()
    _, cancel_error = lifecycle.cancel_tournament(tournament.id)
    assert cancel_error is None

    result, error = lifecycle.register_for_tournament(tournament.id, 601)
    assert result is None
    assert isinstance(error, StateConflictError)


def test_last_registration_starts_tournament_once(make_tournament, fill_tournament, collaborators):
    tournament = make_tournament(max_participants=4)
    results = fill_tournament(tournament.id, 4)

    assert [r['filled'] for r in results] == [False, False, False, True]
    assert [r['started'] for r in results] == [False, False, False, True]

    refreshed = db.session.get(Tournament, tournament.id)
    assert refreshed.status == 'in_progress'
    assert refreshed.current_round == 1
    assert refreshed.total_rounds == 2
    assert TournamentRound.query.filter_by(tournament_id=tournament.id).count() == 1
    assert TournamentMatch.query.filter_by(tournament_id=tournament.id).count() == 2
    statuses = {row.status for row in refreshed.participants}
    assert statuses == {'active'}
    assert collaborators.notifier.event_names().count('tournament_started') == 1

    _, again = lifecycle.start_tournament(tournament.id)
    assert isinstance(again, StateConflictError)
    assert TournamentMatch.query.filter_by(tournament_id=tournament.id).count() == 2


def test_registration_after_start_is_closed(make_tournament, fill_tournament):
    tournament = make_tournament(max_participants=2)
    fill_tournament(tournament.id, 2)

    result, error = lifecycle.register_for_tournament(tournament.id, 999)
    assert result is None
    assert isinstance(error, StateConflictError)


def test_open_registration_transitions(make_tournament):
    tournament = make_tournament()
    opened, error = lifecycle.open_registration(tournament.id)
    assert error is None
    assert opened.status == 'registration'

    again, error = lifecycle.open_registration(tournament.id)
    assert error is None
    assert again.status == 'registration'

    lifecycle.cancel_tournament(tournament.id)
    _, error = lifecycle.open_registration(tournament.id)
    assert isinstance(error, StateConflictError)


def _fail_next_commit(monkeypatch):
    original = db.session.commit
    calls = []

    def commit():
        calls.append(1)
        if len(calls) == 1:
            raise OperationalError('COMMIT', {}, Exception('disk I/O error'))
        return original()

    monkeypatch.setattr(db.session, 'commit', commit)


def test_failed_commit_credits_entry_fee_back(make_tournament, collaborators, monkeypatch):
    tournament = make_tournament(entry_fee=40, max_participants=4)
    _fail_next_commit(monkeypatch)

    with pytest.raises(OperationalError):
        register(tournament.id, 701)

    assert collaborators.ledger.debits == [(701, 40, 'coins')]
    assert collaborators.ledger.credits == [(701, 40, 'coins')]
    assert collaborators.ledger.balance(701) == 10_000
    assert TournamentParticipant.query.filter_by(tournament_id=tournament.id).count() == 0
    assert db.session.get(Tournament, tournament.id).current_participants == 0
    assert Payout.query.count() == 0


def test_queued_entry_reversal_does_not_block_cancellation(make_tournament, collaborators, monkeypatch):
    tournament = make_tournament(entry_fee=40, max_participants=4)
    collaborators.ledger.fail_credits = 1
    _fail_next_commit(monkeypatch)

    with pytest.raises(OperationalError):
        register(tournament.id, 701)

    reversal = Payout.query.filter_by(tournament_id=tournament.id, user_id=701).one()
    assert reversal.purpose == 'entry_reversal'
    assert reversal.status == 'pending'
    assert reversal.last_error == 'ledger offline'

    result, error = register(tournament.id, 701)
    assert error is None
    assert result['participant'].user_id == 701

    cancelled, error = lifecycle.cancel_tournament(tournament.id)

    assert error is None
    assert cancelled.status == 'cancelled'
    rows = Payout.query.filter_by(tournament_id=tournament.id, user_id=701).all()
    assert sorted(row.purpose for row in rows) == ['entry_reversal', 'refund']
    assert {row.status for row in rows} == {'delivered'}
    assert collaborators.ledger.balance(701) == 10_000


@pytest.fixture
def file_app(tmp_path, monkeypatch, collaborators):
    """App on a file-backed SQLite database so threads get their own connections."""
    from tourney.config import TestingConfig
    monkeypatch.setattr(TestingConfig, 'SQLALCHEMY_DATABASE_URI', f'sqlite:///{tmp_path / "tourney.db"}')
    app = create_app('testing', collaborators=collaborators)
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


def test_concurrent_registrations_for_last_seat(file_app, collaborators, monkeypatch):
    with file_app.app_context():
        tournament, error = lifecycle.create_tournament({
            'name': 'Last Seat Cup',
            'format': 'single_elimination',
            'game_type': 'sweeper',
            'start_time': (utcnow_naive() + timedelta(hours=1)).isoformat(),
            'max_participants': 2,
            'entry_fee': 20,
            'prizes': [],
        }, created_by=1)
        assert error is None
        tournament_id = tournament.id
        _, error = lifecycle.register_for_tournament(tournament_id, 101)
        assert error is None
        db.session.remove()

    barrier = threading.Barrier(2, timeout=10)
    original_claim = registration.claim_slot

    def claim_together(tid):
        barrier.wait()
        return original_claim(tid)

    monkeypatch.setattr(registration, 'claim_slot', claim_together)

    outcomes = {}

    def attempt(user_id):
        with file_app.app_context():
            try:
                outcomes[user_id] = lifecycle.register_for_tournament(tournament_id, user_id)
            finally:
                db.session.remove()

    threads = [threading.Thread(target=attempt, args=(user_id,)) for user_id in (102, 103)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert sorted(outcomes) == [102, 103]
    succeeded = [result for result, error in outcomes.values() if error is None]
    failed = [error for result, error in outcomes.values() if error is not None]
    assert len(succeeded) == 1
    assert succeeded[0]['started'] is True
    assert len(failed) == 1
    assert isinstance(failed[0], CapacityError)

    with file_app.app_context():
        refreshed = db.session.get(Tournament, tournament_id)
        assert refreshed.current_participants == refreshed.max_participants == 2
        assert refreshed.status == 'in_progress'
        assert TournamentParticipant.query.filter_by(tournament_id=tournament_id).count() == 2
        assert TournamentMatch.query.filter_by(tournament_id=tournament_id).count() == 1
    assert collaborators.notifier.event_names().count('tournament_started') == 1
    assert len(collaborators.ledger.debits) == 2
