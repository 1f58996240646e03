"""Tournament lifecycle: creation, registration window, start, cancel, queries.

Status machine::

    upcoming -> registration -> in_progress -> completed
    upcoming | registration -> cancelled

Every status move is a conditional UPDATE on the current status, so two
processes racing on the same transition produce one winner and one
``ConcurrencyConflictError``.
"""
import json
import logging
from datetime import timedelta

from flask import current_app
from sqlalchemy import update

from tourney.app import db
from tourney.errors import (
    ConcurrencyConflictError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from tourney.models import Tournament, TournamentMatch, TournamentParticipant, TournamentRound
from tourney.services import brackets, registration, results
from tourney.services.advancement import announce_round, open_round
from tourney.services.collaborators import notify_global, notify_user
from tourney.services.prizes import (
    deliver_pending_payouts,
    parse_prizes,
    prize_pool_for,
    queue_refunds,
    validate_against_pool,
)
from tourney.services.standings import standings_payload
from tourney.time_utils import parse_iso_datetime, utcnow_naive

logger = logging.getLogger(__name__)

ALLOWED_GAME_TYPES = ('crash', 'coinflip', 'plinko', 'sweeper', 'mixed')
ALLOWED_TOURNAMENT_STATUSES = ('upcoming', 'registration', 'in_progress', 'completed', 'cancelled')
ACTIVE_STATUSES = ('upcoming', 'registration', 'in_progress')
PRE_START_STATUSES = ('upcoming', 'registration')

_MAX_LIMIT = 100
_MIN_LIMIT = 1


def _transition(tournament_id, from_statuses, **values):
    result = db.session.execute(
        update(Tournament)
        .where(Tournament.id == tournament_id, Tournament.status.in_(from_statuses))
        .values(updated_at=utcnow_naive(), **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _parse_rules(raw_rules):
    if raw_rules is None:
        return []
    if not isinstance(raw_rules, list):
        raise ValidationError('rules must be a list of strings')
    return [str(rule).strip()[:500] for rule in raw_rules if str(rule or '').strip()]


def _parse_int(data, key, default):
    raw = data.get(key, default)
    if isinstance(raw, bool):
        raise ValidationError(f'{key} must be an integer')
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ValidationError(f'{key} must be an integer') from None


def _build_tournament(data, created_by):
    name = str(data.get('name') or '').strip()
    if not name:
        raise ValidationError('Tournament name required')
    description = str(data.get('description') or '').strip()[:4000]

    tournament_format = str(data.get('format') or data.get('type') or brackets.SINGLE_ELIMINATION).strip().lower()
    if tournament_format not in brackets.ALLOWED_TOURNAMENT_FORMATS:
        raise ValidationError('Invalid tournament format')
    game_type = str(data.get('game_type') or 'mixed').strip().lower()
    if game_type not in ALLOWED_GAME_TYPES:
        raise ValidationError('Invalid game_type')

    start_time = parse_iso_datetime(data.get('start_time'))
    if not start_time:
        raise ValidationError('start_time must be a valid ISO datetime')
    if start_time <= utcnow_naive():
        raise ValidationError('start_time must be in the future')

    max_participants = _parse_int(data, 'max_participants', 16)
    upper = current_app.config.get('MAX_TOURNAMENT_PARTICIPANTS', 256)
    if max_participants < 2 or max_participants > upper:
        raise ValidationError(f'max_participants must be between 2 and {upper}')
    entry_fee = _parse_int(data, 'entry_fee', 0)
    if entry_fee < 0:
        raise ValidationError('entry_fee must be non-negative')

    prizes = parse_prizes(data.get('prizes'))
    prize_pool = prize_pool_for(
        entry_fee,
        max_participants,
        current_app.config.get('PRIZE_POOL_PAYOUT_RATIO', 0.9),
    )
    validate_against_pool(prizes, prize_pool)
    if any(prize.position > max_participants for prize in prizes):
        raise ValidationError('Prize positions cannot exceed max_participants')

    return Tournament(
        name=name[:200],
        description=description,
        tournament_format=tournament_format,
        game_type=game_type,
        status='upcoming',
        start_time=start_time,
        max_participants=max_participants,
        current_participants=0,
        entry_fee=entry_fee,
        prize_pool=prize_pool,
        prizes_json=json.dumps([prize.to_dict() for prize in prizes]),
        rules_json=json.dumps(_parse_rules(data.get('rules'))),
        created_by=created_by,
    )


def create_tournament(data, created_by):
    """Validate ``data`` and insert a new upcoming tournament. Returns ``(tournament, error)``."""
    if not isinstance(data, dict):
        return None, ValidationError('Invalid JSON payload')
    try:
        tournament = _build_tournament(data, created_by)
    except ValidationError as exc:
        return None, exc

    db.session.add(tournament)
    db.session.commit()
    logger.info('Created %s tournament', tournament.tournament_format, extra={'tournament_id': tournament.id})
    notify_global('tournament_created', {
        'tournament_id': tournament.id,
        'name': tournament.name,
        'message': f'New tournament "{tournament.name}" is now open for registration!',
    })
    return tournament, None


def get_tournament(tournament_id):
    tournament = db.session.get(Tournament, tournament_id)
    if tournament is None:
        return None, NotFoundError('Tournament not found')
    return tournament, None


def open_registration(tournament_id):
    tournament, error = get_tournament(tournament_id)
    if error:
        return None, error
    if tournament.status == 'registration':
        return tournament, None
    if not _transition(tournament.id, ('upcoming',), status='registration'):
        db.session.rollback()
        db.session.refresh(tournament)
        return None, StateConflictError('Registration can only be opened for an upcoming tournament')
    db.session.commit()
    db.session.refresh(tournament)
    return tournament, None


def start_tournament(tournament_id, rng=None):
    """Build round one and move the tournament to in_progress.

    The status swap happens first so late registrations are locked out; if
    the bracket cannot be built the whole transaction rolls back and the
    status is untouched. Returns ``(tournament, error)``.
    """
    tournament, error = get_tournament(tournament_id)
    if error:
        return None, error
    if tournament.status not in PRE_START_STATUSES:
        return None, StateConflictError('Tournament cannot be started', status=tournament.status)

    try:
        if not _transition(tournament.id, PRE_START_STATUSES, status='in_progress', started_at=utcnow_naive()):
            db.session.rollback()
            return None, ConcurrencyConflictError('Tournament was already started or cancelled')

        entrants = TournamentParticipant.query.filter_by(
            tournament_id=tournament.id,
            status='registered',
        ).all()
        try:
            plan = brackets.generate(tournament.tournament_format, entrants, rng=rng)
        except ValidationError as exc:
            db.session.rollback()
            return None, exc

        for participant in entrants:
            participant.status = 'active'
            participant.current_round = 1

        db.session.refresh(tournament)
        count = len(entrants)
        if tournament.tournament_format == brackets.SINGLE_ELIMINATION:
            tournament.total_rounds = brackets.single_elimination_rounds(count)
        elif tournament.tournament_format == brackets.SWISS:
            tournament.total_rounds = brackets.swiss_round_count(count)
        elif tournament.tournament_format == brackets.ROUND_ROBIN:
            tournament.total_rounds = 1
        open_round(tournament, plan, award_bye_win=tournament.tournament_format == brackets.SWISS)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        'Started with %s participants', count,
        extra={'tournament_id': tournament.id},
    )
    for participant in entrants:
        notify_user(participant.user_id, f'The tournament "{tournament.name}" has begun!')
    notify_global('tournament_started', {
        'tournament_id': tournament.id,
        'name': tournament.name,
        'participants': count,
    })
    announce_round(tournament, plan)
    return tournament, None


def register_for_tournament(tournament_id, user_id, rng=None):
    """Register and, for the registration that fills the last slot, start the tournament."""
    result, error = registration.register(tournament_id, user_id)
    if error:
        return None, error
    result['started'] = False
    if result['filled']:
        _, start_error = start_tournament(tournament_id, rng=rng)
        if start_error is None:
            result['started'] = True
        elif not isinstance(start_error, ConcurrencyConflictError):
            logger.warning(
                'Auto-start after final registration failed: %s', start_error.message,
                extra={'tournament_id': tournament_id},
            )
    return result, None


def record_match_result(match_id, winner_id, score1=None, score2=None):
    return results.record_result(match_id, winner_id, score1, score2)


def cancel_tournament(tournament_id):
    """Cancel a tournament that has not started and refund entry fees."""
    tournament, error = get_tournament(tournament_id)
    if error:
        return None, error
    try:
        if not _transition(tournament.id, PRE_START_STATUSES, status='cancelled', cancelled_at=utcnow_naive()):
            db.session.rollback()
            db.session.refresh(tournament)
            return None, StateConflictError(
                'Only tournaments that have not started can be cancelled',
                status=tournament.status,
            )
        db.session.refresh(tournament)
        refunds = queue_refunds(tournament)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info('Cancelled; %s refunds queued', len(refunds), extra={'tournament_id': tournament.id})
    deliver_pending_payouts(tournament_id=tournament.id)
    for participant in tournament.participants:
        notify_user(participant.user_id, f'Tournament "{tournament.name}" was cancelled.')
    notify_global('tournament_cancelled', {'tournament_id': tournament.id, 'name': tournament.name})
    return tournament, None


def _clamp_limit(limit, default):
    try:
        limit = int(limit)
    except (TypeError, ValueError):
        limit = default
    return max(_MIN_LIMIT, min(limit or default, _MAX_LIMIT))


def get_active_tournaments(status=None, tournament_format=None, limit=50):
    statuses = ACTIVE_STATUSES
    if status:
        if status not in ALLOWED_TOURNAMENT_STATUSES:
            return None, ValidationError('Invalid status filter')
        statuses = (status,)
    query = Tournament.query.filter(Tournament.status.in_(statuses))
    if tournament_format:
        if tournament_format not in brackets.ALLOWED_TOURNAMENT_FORMATS:
            return None, ValidationError('Invalid format filter')
        query = query.filter(Tournament.tournament_format == tournament_format)
    tournaments = query.order_by(
        Tournament.start_time.asc(),
        Tournament.id.asc(),
    ).limit(_clamp_limit(limit, 50)).all()
    return tournaments, None


def get_tournament_history(user_id, limit=30):
    rows = db.session.query(TournamentParticipant, Tournament).join(
        Tournament, Tournament.id == TournamentParticipant.tournament_id,
    ).filter(
        TournamentParticipant.user_id == user_id,
    ).order_by(
        TournamentParticipant.registered_at.desc(),
        TournamentParticipant.id.desc(),
    ).limit(_clamp_limit(limit, 30)).all()
    history = []
    for participant, tournament in rows:
        history.append({
            'tournament': tournament.to_dict(),
            'participation': participant.to_dict(),
        })
    return history


def start_due_tournaments(now=None, grace=timedelta(0)):
    """Start every pre-start tournament whose start_time has passed.

    Entry point for the external scheduler; replaces in-process timers.
    """
    now = now or utcnow_naive()
    due_ids = [
        row.id for row in Tournament.query.filter(
            Tournament.status.in_(PRE_START_STATUSES),
            Tournament.start_time <= now - grace,
        ).order_by(Tournament.start_time.asc()).all()
    ]
    summary = {'due': len(due_ids), 'started': [], 'skipped': {}}
    for tournament_id in due_ids:
        _, error = start_tournament(tournament_id)
        if error is None:
            summary['started'].append(tournament_id)
            continue
        summary['skipped'][tournament_id] = error.message
        if not isinstance(error, ConcurrencyConflictError):
            logger.warning('Scheduled start skipped: %s', error.message, extra={'tournament_id': tournament_id})
    return summary


def bracket_state_for_tournament(tournament_id):
    matches = TournamentMatch.query.filter(
        TournamentMatch.tournament_id == tournament_id,
    ).order_by(
        TournamentMatch.round.asc(),
        TournamentMatch.match_number.asc(),
    ).all()
    markers = {
        row.round_number: row.status
        for row in TournamentRound.query.filter_by(tournament_id=tournament_id).all()
    }
    grouped = {}
    for match in matches:
        grouped.setdefault(match.round, []).append(match.to_dict())
    rounds = []
    for rnd in sorted(grouped):
        rounds.append({
            'round': rnd,
            'status': markers.get(rnd, 'open'),
            'matches': grouped[rnd],
        })
    return {
        'rounds': rounds,
        'total_matches': len(matches),
    }


def serialize_tournament(tournament, *, include_participants=True, include_bracket=True):
    data = tournament.to_dict(include_participants=include_participants)
    if include_bracket:
        data['bracket'] = bracket_state_for_tournament(tournament.id)
    if include_participants:
        data['standings'] = standings_payload(tournament)
    return data
