"""Tournament sign-up: slot claim, entry-fee debit and participant row.

Order of operations inside one transaction: claim a slot with a conditional
increment, insert the participant, debit the fee, commit. A failed debit
rolls the claim and the row back; a failed commit after a successful debit
is compensated with a credit. The caller that fills the last slot starts
the tournament, and the start itself is a status compare-and-swap.
"""
import logging

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from tourney.app import db
from tourney.errors import CapacityError, FundsError, NotFoundError, StateConflictError
from tourney.models import Payout, Tournament, TournamentParticipant
from tourney.services.collaborators import get_collaborators, notify_user

logger = logging.getLogger(__name__)

REGISTRATION_OPEN_STATUSES = ('upcoming', 'registration')
# Kept apart from cancellation refunds, which are keyed on the same (tournament, user).
ENTRY_REVERSAL = 'entry_reversal'


def _participant_for_user(tournament_id, user_id):
    return TournamentParticipant.query.filter_by(
        tournament_id=tournament_id,
        user_id=user_id,
    ).first()


def claim_slot(tournament_id):
    """Atomically take one seat. Returns the new participant count, or None when full/closed."""
    result = db.session.execute(
        update(Tournament)
        .where(
            Tournament.id == tournament_id,
            Tournament.status.in_(REGISTRATION_OPEN_STATUSES),
            Tournament.current_participants < Tournament.max_participants,
        )
        .values(
            current_participants=Tournament.current_participants + 1,
            status='registration',
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return None
    return db.session.query(Tournament.current_participants).filter(
        Tournament.id == tournament_id,
    ).scalar()


def _closed_error(tournament):
    """Why a slot claim lost: the last seat went to someone else, or registration closed."""
    if (
        tournament.status not in REGISTRATION_OPEN_STATUSES
        and tournament.current_participants < tournament.max_participants
    ):
        return StateConflictError('Tournament registration is closed', status=tournament.status)
    return CapacityError('Tournament is full', max_participants=tournament.max_participants)


def _refund_after_failed_commit(tournament, user_id):
    ledger = get_collaborators().ledger
    result = ledger.credit(user_id, tournament.entry_fee)
    if result.ok:
        return
    logger.error(
        'Entry fee compensation failed (%s); queueing refund', result.reason,
        extra={'tournament_id': tournament.id, 'user_id': user_id},
    )
    try:
        db.session.add(Payout(
            tournament_id=tournament.id,
            user_id=user_id,
            purpose=ENTRY_REVERSAL,
            reward_type='coins',
            reward_amount=tournament.entry_fee,
            description=f'Entry fee reversal for "{tournament.name}"',
            last_error=str(result.reason or '')[:500],
        ))
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception(
            'Could not queue entry fee refund',
            extra={'tournament_id': tournament.id, 'user_id': user_id},
        )


def register(tournament_id, user_id):
    """Register ``user_id``. Returns ``(result, error)``.

    ``result`` is ``{'participant': row, 'filled': bool}``; ``filled`` is True
    for the one registration that took the last slot.
    """
    tournament = db.session.get(Tournament, tournament_id)
    if tournament is None:
        return None, NotFoundError('Tournament not found')
    if tournament.status not in REGISTRATION_OPEN_STATUSES:
        return None, StateConflictError('Tournament registration is closed', status=tournament.status)
    if tournament.current_participants >= tournament.max_participants:
        return None, CapacityError('Tournament is full', max_participants=tournament.max_participants)
    if _participant_for_user(tournament.id, user_id):
        return None, StateConflictError('Already registered for this tournament')

    entry_fee = int(tournament.entry_fee or 0)
    debited = False
    try:
        seat = claim_slot(tournament.id)
        if seat is None:
            db.session.rollback()
            db.session.refresh(tournament)
            return None, _closed_error(tournament)

        participant = TournamentParticipant(
            tournament_id=tournament.id,
            user_id=user_id,
            seed=seat,
            current_round=0,
            status='registered',
        )
        db.session.add(participant)
        db.session.flush()

        if entry_fee > 0:
            debit = get_collaborators().ledger.debit(user_id, entry_fee)
            if not debit.ok:
                db.session.rollback()
                return None, FundsError(
                    'Insufficient coins for entry fee',
                    entry_fee=entry_fee,
                    reason=debit.reason,
                )
            debited = True
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        if debited:
            _refund_after_failed_commit(tournament, user_id)
        return None, StateConflictError('Already registered for this tournament')
    except Exception:
        db.session.rollback()
        if debited:
            _refund_after_failed_commit(tournament, user_id)
        raise

    db.session.refresh(tournament)
    filled = seat >= tournament.max_participants
    logger.info(
        'Registered seat %s/%s', seat, tournament.max_participants,
        extra={'tournament_id': tournament.id, 'user_id': user_id},
    )
    notify_user(user_id, f'You are registered for "{tournament.name}".')
    return {'participant': participant, 'filled': filled}, None
