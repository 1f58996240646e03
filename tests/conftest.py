import random
from datetime import timedelta

import pytest
from tourney.app import create_app, db
from tourney.auth_utils import generate_token
from tourney.services.collaborators import Collaborators, TransferResult
from tourney.time_utils import utcnow_naive


class FakeLedger:
    """In-memory coin/gem balances."""

    def __init__(self, default_balance=10_000):
        self.default_balance = default_balance
        self.balances = {}
        self.debits = []
        self.credits = []
        self.fail_credits = 0

    def balance(self, user_id, currency='coins'):
        return self.balances.get((user_id, currency), self.default_balance)

    def set_balance(self, user_id, amount, currency='coins'):
        self.balances[(user_id, currency)] = amount

    def debit(self, user_id, amount, currency='coins'):
        current = self.balance(user_id, currency)
        if current < amount:
            return TransferResult(False, 'insufficient_funds')
        self.balances[(user_id, currency)] = current - amount
        self.debits.append((user_id, amount, currency))
        return TransferResult(True, None)

    def credit(self, user_id, amount, currency='coins'):
        if self.fail_credits:
            self.fail_credits -= 1
            return TransferResult(False, 'ledger offline')
        self.balances[(user_id, currency)] = self.balance(user_id, currency) + amount
        self.credits.append((user_id, amount, currency))
        return TransferResult(True, None)


class FakeInventory:
    def __init__(self):
        self.items = []
        self.crate_keys = []

    def grant_item(self, user_id, item_id, qty=1):
        self.items.append((user_id, item_id, qty))
        return TransferResult(True, None)

    def grant_crate_key(self, user_id, crate_id, qty=1):
        self.crate_keys.append((user_id, crate_id, qty))
        return TransferResult(True, None)


class FakeBadges:
    def __init__(self):
        self.granted = []

    def grant_badge(self, user_id, badge_id):
        self.granted.append((user_id, badge_id))
        return TransferResult(True, None)


class FakeNotifier:
    def __init__(self):
        self.user_messages = []
        self.events = []

    def notify_user(self, user_id, message):
        self.user_messages.append((user_id, message))

    def notify_global(self, event, payload):
        self.events.append((event, payload))

    def event_names(self):
        return [name for name, _ in self.events]


@pytest.fixture
def collaborators():
    return Collaborators(
        ledger=FakeLedger(),
        inventory=FakeInventory(),
        badges=FakeBadges(),
        notifier=FakeNotifier(),
    )


@pytest.fixture
def app(collaborators):
    app = create_app('testing', collaborators=collaborators)
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth_headers(app):
    """Build auth headers for an arbitrary user id."""
    def _headers(user_id, is_admin=False):
        token = generate_token(user_id, is_admin=is_admin)
        return {'Authorization': f'Bearer {token}', 'Content-Type': 'application/json'}
    return _headers


@pytest.fixture
def make_tournament(app):
    """Create a tournament through the service layer."""
    from tourney.services.lifecycle import create_tournament

    def _make(**overrides):
        data = {
            'name': 'Friday Crash Cup',
            'format': 'single_elimination',
            'game_type': 'crash',
            'start_time': (utcnow_naive() + timedelta(hours=2)).isoformat(),
            'max_participants': 8,
            'entry_fee': 0,
            'prizes': [],
        }
        created_by = overrides.pop('created_by', 1)
        data.update(overrides)
        tournament, error = create_tournament(data, created_by)
        assert error is None, error and error.to_dict()
        return tournament
    return _make


@pytest.fixture
def fill_tournament(app):
    """Register users 101, 102, ... until ``count`` seats are taken."""
    from tourney.services.lifecycle import register_for_tournament

    def _fill(tournament_id, count, first_user_id=101, seed=7):
        results = []
        for offset in range(count):
            result, error = register_for_tournament(
                tournament_id,
                first_user_id + offset,
                rng=random.Random(seed),
            )
            assert error is None, error and error.to_dict()
            results.append(result)
        return results
    return _fill


@pytest.fixture
def play_out(app):
    """Record results until the tournament leaves in_progress.

    ``pick_winner(match)`` chooses the winner; defaults to player1.
    """
    from tourney.models import Tournament, TournamentMatch
    from tourney.services.lifecycle import record_match_result

    def _play(tournament_id, pick_winner=None, max_rounds=64):
        pick_winner = pick_winner or (lambda match: match.player1_id)
        for _ in range(max_rounds):
            tournament = db.session.get(Tournament, tournament_id)
            if tournament.status != 'in_progress':
                return tournament
            pending = TournamentMatch.query.filter(
                TournamentMatch.tournament_id == tournament_id,
                TournamentMatch.status.in_(('pending', 'in_progress')),
            ).order_by(TournamentMatch.round.asc(), TournamentMatch.match_number.asc()).all()
            assert pending, 'tournament in progress without playable matches'
            for match in pending:
                _, error = record_match_result(match.id, pick_winner(match), 10, 4)
                assert error is None, error and error.to_dict()
        raise AssertionError('tournament did not finish')
    return _play
