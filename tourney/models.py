import json
from tourney.app import db
from tourney.time_utils import utcnow_naive, isoformat_or_none


def _safe_json(raw_value, fallback=None):
    if fallback is None:
        fallback = {}
    if not raw_value:
        return fallback
    try:
        return json.loads(raw_value)
    except (TypeError, ValueError):
        return fallback


class Tournament(db.Model):
    """Wagered tournament over one of the arcade mini-games."""
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default='')
    tournament_format = db.Column(db.String(40), nullable=False, default='single_elimination')
    # single_elimination, double_elimination, round_robin, swiss
    game_type = db.Column(db.String(20), nullable=False, default='mixed')
    # crash, coinflip, plinko, sweeper, mixed
    status = db.Column(db.String(20), nullable=False, default='upcoming')
    # upcoming, registration, in_progress, completed, cancelled
    start_time = db.Column(db.DateTime, nullable=False)
    end_time = db.Column(db.DateTime, nullable=True)
    max_participants = db.Column(db.Integer, nullable=False, default=16)
    current_participants = db.Column(db.Integer, nullable=False, default=0)
    entry_fee = db.Column(db.Integer, nullable=False, default=0)
    prize_pool = db.Column(db.Integer, nullable=False, default=0)
    prizes_json = db.Column(db.Text, default='[]')
    rules_json = db.Column(db.Text, default='[]')
    created_by = db.Column(db.Integer, nullable=False)
    current_round = db.Column(db.Integer, nullable=False, default=0)
    total_rounds = db.Column(db.Integer, nullable=True)
    started_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=lambda: utcnow_naive())
    updated_at = db.Column(
        db.DateTime,
        default=lambda: utcnow_naive(),
        onupdate=lambda: utcnow_naive(),
    )

    __table_args__ = (
        db.CheckConstraint(
            'current_participants <= max_participants',
            name='ck_tournament_capacity',
        ),
        db.Index('ix_tournament_status_start', 'status', 'start_time'),
    )

    participants = db.relationship(
        'TournamentParticipant',
        backref='tournament',
        cascade='all, delete-orphan',
        order_by='TournamentParticipant.seed',
    )

    @property
    def prizes(self):
        return _safe_json(self.prizes_json, fallback=[])

    @property
    def rules(self):
        return _safe_json(self.rules_json, fallback=[])

    def to_dict(self, include_participants=False):
        data = {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'format': self.tournament_format,
            'game_type': self.game_type,
            'status': self.status,
            'start_time': isoformat_or_none(self.start_time),
            'end_time': isoformat_or_none(self.end_time),
            'max_participants': self.max_participants,
            'current_participants': self.current_participants,
            'entry_fee': self.entry_fee,
            'prize_pool': self.prize_pool,
            'prizes': self.prizes,
            'rules': self.rules,
            'created_by': self.created_by,
            'current_round': self.current_round,
            'total_rounds': self.total_rounds,
            'started_at': isoformat_or_none(self.started_at),
            'cancelled_at': isoformat_or_none(self.cancelled_at),
            'created_at': isoformat_or_none(self.created_at),
            'updated_at': isoformat_or_none(self.updated_at),
        }
        if include_participants:
            data['participants'] = [p.to_dict() for p in self.participants]
        return data


class TournamentParticipant(db.Model):
    """Registration row and running stats for one user in one tournament."""
    id = db.Column(db.Integer, primary_key=True)
    tournament_id = db.Column(db.Integer, db.ForeignKey('tournament.id'), nullable=False)
    user_id = db.Column(db.Integer, nullable=False)
    seed = db.Column(db.Integer, nullable=True)
    current_round = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(20), nullable=False, default='registered')
    # registered, active, eliminated, winner, disqualified
    points = db.Column(db.Integer, nullable=False, default=0)
    wins = db.Column(db.Integer, nullable=False, default=0)
    losses = db.Column(db.Integer, nullable=False, default=0)
    byes = db.Column(db.Integer, nullable=False, default=0)
    position = db.Column(db.Integer, nullable=True)
    registered_at = db.Column(db.DateTime, default=lambda: utcnow_naive())

    __table_args__ = (
        db.UniqueConstraint('tournament_id', 'user_id', name='uq_tournament_participant_unique'),
        db.Index('ix_tournament_participant_tournament_status', 'tournament_id', 'status'),
        db.Index('ix_tournament_participant_user', 'user_id'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'tournament_id': self.tournament_id,
            'user_id': self.user_id,
            'seed': self.seed,
            'current_round': self.current_round,
            'status': self.status,
            'points': self.points,
            'wins': self.wins,
            'losses': self.losses,
            'byes': self.byes,
            'position': self.position,
            'registered_at': isoformat_or_none(self.registered_at),
        }


class TournamentMatch(db.Model):
    """One head-to-head game inside a tournament round."""
    id = db.Column(db.Integer, primary_key=True)
    tournament_id = db.Column(db.Integer, db.ForeignKey('tournament.id'), nullable=False)
    round = db.Column(db.Integer, nullable=False)
    match_number = db.Column(db.Integer, nullable=False)
    bracket = db.Column(db.String(20), nullable=False, default='winners')
    # winners, losers, grand_final
    player1_id = db.Column(db.Integer, nullable=False)
    player2_id = db.Column(db.Integer, nullable=False)
    winner_id = db.Column(db.Integer, nullable=True)
    score1 = db.Column(db.Integer, nullable=True)
    score2 = db.Column(db.Integer, nullable=True)
    status = db.Column(db.String(20), nullable=False, default='pending')
    # pending, in_progress, completed, cancelled
    scheduled_time = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=lambda: utcnow_naive())

    __table_args__ = (
        db.UniqueConstraint(
            'tournament_id', 'round', 'match_number',
            name='uq_tournament_match_round_number',
        ),
        db.Index('ix_tournament_match_tournament_round_status', 'tournament_id', 'round', 'status'),
    )

    tournament = db.relationship('Tournament', backref='matches')

    @property
    def loser_id(self):
        if self.winner_id is None:
            return None
        return self.player2_id if self.winner_id == self.player1_id else self.player1_id

    def involves(self, user_id):
        return user_id in (self.player1_id, self.player2_id)

    def to_dict(self):
        return {
            'id': self.id,
            'tournament_id': self.tournament_id,
            'round': self.round,
            'match_number': self.match_number,
            'bracket': self.bracket,
            'player1_id': self.player1_id,
            'player2_id': self.player2_id,
            'winner_id': self.winner_id,
            'loser_id': self.loser_id,
            'score1': self.score1,
            'score2': self.score2,
            'status': self.status,
            'scheduled_time': isoformat_or_none(self.scheduled_time),
            'completed_at': isoformat_or_none(self.completed_at),
            'created_at': isoformat_or_none(self.created_at),
        }


class TournamentRound(db.Model):
    """Round-status marker; closing it is what makes advancement exactly-once."""
    id = db.Column(db.Integer, primary_key=True)
    tournament_id = db.Column(db.Integer, db.ForeignKey('tournament.id'), nullable=False)
    round_number = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(20), nullable=False, default='open')  # open, closed
    opened_at = db.Column(db.DateTime, default=lambda: utcnow_naive())
    closed_at = db.Column(db.DateTime, nullable=True)

    __table_args__ = (
        db.UniqueConstraint('tournament_id', 'round_number', name='uq_tournament_round_unique'),
    )

    def to_dict(self):
        return {
            'tournament_id': self.tournament_id,
            'round_number': self.round_number,
            'status': self.status,
            'opened_at': isoformat_or_none(self.opened_at),
            'closed_at': isoformat_or_none(self.closed_at),
        }


class Payout(db.Model):
    """Queued prize or refund transfer, delivered after commit and retried until it lands."""
    id = db.Column(db.Integer, primary_key=True)
    tournament_id = db.Column(db.Integer, db.ForeignKey('tournament.id'), nullable=False)
    user_id = db.Column(db.Integer, nullable=False)
    purpose = db.Column(db.String(20), nullable=False, default='prize')  # prize, refund, entry_reversal
    position = db.Column(db.Integer, nullable=True)
    reward_type = db.Column(db.String(20), nullable=False)
    reward_amount = db.Column(db.Integer, nullable=True)
    reward_item_id = db.Column(db.String(120), nullable=True)
    description = db.Column(db.String(300), default='')
    status = db.Column(db.String(20), nullable=False, default='pending')  # pending, delivered
    attempts = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.String(500), nullable=True)
    created_at = db.Column(db.DateTime, default=lambda: utcnow_naive())
    delivered_at = db.Column(db.DateTime, nullable=True)

    __table_args__ = (
        db.UniqueConstraint('tournament_id', 'user_id', 'purpose', name='uq_payout_unique'),
        db.Index('ix_payout_status_created', 'status', 'created_at'),
        db.Index('ix_payout_status_attempts', 'status', 'attempts'),
    )

    tournament = db.relationship('Tournament', backref='payouts')

    def to_dict(self):
        return {
            'id': self.id,
            'tournament_id': self.tournament_id,
            'user_id': self.user_id,
            'purpose': self.purpose,
            'position': self.position,
            'reward_type': self.reward_type,
            'reward_amount': self.reward_amount,
            'reward_item_id': self.reward_item_id,
            'description': self.description,
            'status': self.status,
            'attempts': self.attempts,
            'last_error': self.last_error,
            'created_at': isoformat_or_none(self.created_at),
            'delivered_at': isoformat_or_none(self.delivered_at),
        }
