"""Recording mini-game outcomes against tournament matches."""
import logging

from flask import current_app
from sqlalchemy import update

from tourney.app import db
from tourney.errors import (
    ConcurrencyConflictError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from tourney.models import TournamentMatch, TournamentParticipant
from tourney.services.advancement import advance_if_round_complete
from tourney.services.brackets import BRACKET_GRAND_FINAL, DOUBLE_ELIMINATION, SINGLE_ELIMINATION
from tourney.time_utils import utcnow_naive

logger = logging.getLogger(__name__)

_FINAL_MATCH_STATUSES = {'completed', 'cancelled'}


def _coerce_score(raw_value, label):
    if raw_value is None:
        return None
    if isinstance(raw_value, bool):
        raise ValidationError(f'{label} must be an integer')
    try:
        value = int(raw_value)
    except (TypeError, ValueError):
        raise ValidationError(f'{label} must be an integer') from None
    if value < 0:
        raise ValidationError(f'{label} must be non-negative')
    if value > current_app.config.get('MAX_SCORE', 1_000_000):
        raise ValidationError(f'{label} is too large')
    return value


def _loser_eliminated(tournament_format, match, loser):
    if tournament_format == SINGLE_ELIMINATION:
        return True
    if tournament_format == DOUBLE_ELIMINATION:
        return match.bracket == BRACKET_GRAND_FINAL or (loser.losses or 0) + 1 >= 2
    return False


def start_match(match_id):
    """Mark a pending match as being played. Returns ``(match, error)``."""
    match = db.session.get(TournamentMatch, match_id)
    if match is None:
        return None, NotFoundError('Match not found')
    if match.status != 'pending':
        return None, StateConflictError(f'Match is {match.status}, not pending')
    if match.tournament.status != 'in_progress':
        return None, StateConflictError('Tournament is not in progress')

    result = db.session.execute(
        update(TournamentMatch)
        .where(TournamentMatch.id == match_id, TournamentMatch.status == 'pending')
        .values(status='in_progress')
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.session.rollback()
        return None, ConcurrencyConflictError('Match was started concurrently')
    db.session.commit()
    db.session.refresh(match)
    return match, None


def record_result(match_id, winner_id, score1=None, score2=None):
    """Record a finished match and run the round-completion check.

    The completion itself is a compare-and-swap on the match status and is
    committed before the round check, so whichever completion commits last
    always sees every sibling settled. Returns ``(payload, error)``.
    """
    match = db.session.get(TournamentMatch, match_id)
    if match is None:
        return None, NotFoundError('Match not found')
    if match.status in _FINAL_MATCH_STATUSES:
        return None, StateConflictError(
            f'Match is already {match.status}',
            match_status=match.status,
        )
    tournament = match.tournament
    if tournament.status != 'in_progress':
        return None, StateConflictError('Tournament is not in progress')

    try:
        winner_id = int(winner_id)
    except (TypeError, ValueError):
        return None, ValidationError('winner_id must be one of the match players')
    if winner_id not in (match.player1_id, match.player2_id):
        return None, ValidationError('winner_id must be one of the match players')
    try:
        score1 = _coerce_score(score1, 'score1')
        score2 = _coerce_score(score2, 'score2')
    except ValidationError as exc:
        return None, exc
    loser_id = match.player2_id if winner_id == match.player1_id else match.player1_id

    try:
        claimed = db.session.execute(
            update(TournamentMatch)
            .where(
                TournamentMatch.id == match.id,
                TournamentMatch.status.in_(('pending', 'in_progress')),
            )
            .values(
                winner_id=winner_id,
                score1=score1,
                score2=score2,
                status='completed',
                completed_at=utcnow_naive(),
            )
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            db.session.rollback()
            return None, ConcurrencyConflictError('Match result was already recorded')

        winner = TournamentParticipant.query.filter_by(
            tournament_id=tournament.id, user_id=winner_id,
        ).first()
        loser = TournamentParticipant.query.filter_by(
            tournament_id=tournament.id, user_id=loser_id,
        ).first()
        loser_out = loser is not None and _loser_eliminated(tournament.tournament_format, match, loser)

        win_points = current_app.config.get('MATCH_WIN_POINTS', 3)
        TournamentParticipant.query.filter_by(
            tournament_id=tournament.id, user_id=winner_id,
        ).update({
            'wins': TournamentParticipant.wins + 1,
            'points': TournamentParticipant.points + win_points,
            'current_round': match.round + 1,
        }, synchronize_session=False)
        loser_values = {'losses': TournamentParticipant.losses + 1}
        if loser_out:
            loser_values['status'] = 'eliminated'
        TournamentParticipant.query.filter_by(
            tournament_id=tournament.id, user_id=loser_id,
        ).update(loser_values, synchronize_session=False)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    db.session.expire_all()
    logger.info(
        'Recorded result: winner %s over %s', winner_id, loser_id,
        extra={'tournament_id': tournament.id, 'match_id': match.id, 'round_number': match.round},
    )
    if winner is None or loser is None:
        logger.warning(
            'Match player missing a participant row',
            extra={'tournament_id': tournament.id, 'match_id': match.id},
        )

    outcome, advance_error = advance_if_round_complete(tournament.id, match.round)
    payload = {
        'match': db.session.get(TournamentMatch, match.id),
        'advancement': outcome,
        'advancement_skipped': advance_error is not None,
    }
    return payload, None
