"""Round progression: next-round construction and completion detection.

A round is advanced by whoever manages to flip its ``TournamentRound``
marker from ``open`` to ``closed``. The flip is a conditional UPDATE executed
in the same transaction that writes the next round (or the final standings),
so concurrent "last match" completions across processes produce exactly one
advancement and a failed advancement leaves the marker open.
"""
import logging

from flask import current_app
from sqlalchemy import func, update

from tourney.app import db
from tourney.errors import ConcurrencyConflictError
from tourney.models import Tournament, TournamentMatch, TournamentParticipant, TournamentRound
from tourney.services.brackets import (
    BRACKET_GRAND_FINAL,
    BRACKET_LOSERS,
    BRACKET_WINNERS,
    DOUBLE_ELIMINATION,
    Pairing,
    ROUND_ROBIN,
    RoundPlan,
    SINGLE_ELIMINATION,
    SWISS,
    pair_sequentially,
)
from tourney.services.collaborators import notify_global, notify_user
from tourney.services.prizes import announce_completion, deliver_pending_payouts, finalize_tournament
from tourney.services.swiss import SwissEntry, pair_round, played_pairs_from_matches
from tourney.time_utils import utcnow_naive

logger = logging.getLogger(__name__)

UNSETTLED_MATCH_STATUSES = ('pending', 'in_progress')


def open_round(tournament, plan, award_bye_win=False):
    """Persist ``plan`` as the tournament's next round. Does not commit."""
    db.session.add(TournamentRound(
        tournament_id=tournament.id,
        round_number=plan.round_number,
        status='open',
    ))
    participants = {
        row.user_id: row
        for row in TournamentParticipant.query.filter_by(tournament_id=tournament.id).all()
    }
    for pairing in plan.pairings:
        db.session.add(TournamentMatch(
            tournament_id=tournament.id,
            round=plan.round_number,
            match_number=pairing.match_number,
            bracket=pairing.bracket,
            player1_id=pairing.player1_id,
            player2_id=pairing.player2_id,
            status='pending',
        ))
        for user_id in (pairing.player1_id, pairing.player2_id):
            participants[user_id].current_round = plan.round_number

    win_points = current_app.config.get('MATCH_WIN_POINTS', 3)
    for user_id in plan.byes:
        participant = participants[user_id]
        participant.current_round = plan.round_number + 1
        participant.byes = (participant.byes or 0) + 1
        if award_bye_win:
            participant.wins = (participant.wins or 0) + 1
            participant.points = (participant.points or 0) + win_points

    tournament.current_round = plan.round_number
    logger.info(
        'Opened round with %s matches and %s byes',
        plan.match_count, len(plan.byes),
        extra={'tournament_id': tournament.id, 'round_number': plan.round_number},
    )


def round_is_settled(tournament_id, round_number):
    unsettled = db.session.query(func.count(TournamentMatch.id)).filter(
        TournamentMatch.tournament_id == tournament_id,
        TournamentMatch.round == round_number,
        TournamentMatch.status.in_(UNSETTLED_MATCH_STATUSES),
    ).scalar()
    return not unsettled


def close_round(tournament_id, round_number):
    """Compare-and-swap the round marker. True only for the single caller that closed it."""
    result = db.session.execute(
        update(TournamentRound)
        .where(
            TournamentRound.tournament_id == tournament_id,
            TournamentRound.round_number == round_number,
            TournamentRound.status == 'open',
        )
        .values(status='closed', closed_at=utcnow_naive())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _round_matches(tournament_id, round_number):
    return TournamentMatch.query.filter_by(
        tournament_id=tournament_id,
        round=round_number,
    ).order_by(TournamentMatch.match_number.asc()).all()


def _active_participants(tournament_id):
    return TournamentParticipant.query.filter_by(
        tournament_id=tournament_id,
        status='active',
    ).all()


def _carry_order(participants, closed_matches):
    """Order by when each participant's result was recorded, sitting-out participants last.

    With an odd count the trailing participant sits out, so the last one
    among those with the fewest byes so far is moved to the end.
    """
    recorded = sorted(
        closed_matches,
        key=lambda match: (match.completed_at is None, match.completed_at or 0, match.match_number),
    )
    slot = {}
    for position, match in enumerate(recorded):
        for user_id in (match.winner_id, match.loser_id):
            if user_id is not None:
                slot.setdefault(user_id, position)
    ordered = sorted(
        participants,
        key=lambda row: (row.user_id not in slot, slot.get(row.user_id, 0), row.seed or 0, row.user_id),
    )
    if len(ordered) % 2 == 1:
        fewest = min(row.byes or 0 for row in ordered)
        sitter = next(row for row in reversed(ordered) if (row.byes or 0) == fewest)
        ordered.remove(sitter)
        ordered.append(sitter)
    return ordered


def _advance_single_elimination(tournament, round_number, closed_matches):
    survivors = _carry_order(_active_participants(tournament.id), closed_matches)
    if len(survivors) <= 1:
        champion_id = survivors[0].user_id if survivors else None
        return None, champion_id
    plan = pair_sequentially([row.user_id for row in survivors], round_number=round_number + 1)
    return plan, None


def _advance_double_elimination(tournament, round_number, closed_matches):
    grand_final = next((m for m in closed_matches if m.bracket == BRACKET_GRAND_FINAL), None)
    if grand_final is not None and grand_final.winner_id is not None:
        return None, grand_final.winner_id

    alive = _active_participants(tournament.id)
    if len(alive) <= 1:
        return None, (alive[0].user_id if alive else None)

    winners_pool = _carry_order([row for row in alive if not row.losses], closed_matches)
    losers_pool = _carry_order([row for row in alive if row.losses], closed_matches)
    next_round = round_number + 1

    if len(winners_pool) == 1 and len(losers_pool) == 1:
        plan = RoundPlan(round_number=next_round)
        plan.pairings.append(Pairing(
            match_number=1,
            player1_id=winners_pool[0].user_id,
            player2_id=losers_pool[0].user_id,
            bracket=BRACKET_GRAND_FINAL,
        ))
        return plan, None

    winners_plan = pair_sequentially(
        [row.user_id for row in winners_pool],
        round_number=next_round,
        bracket=BRACKET_WINNERS,
    )
    losers_plan = pair_sequentially(
        [row.user_id for row in losers_pool],
        round_number=next_round,
        bracket=BRACKET_LOSERS,
        first_match_number=winners_plan.match_count + 1,
    )
    plan = RoundPlan(
        round_number=next_round,
        pairings=winners_plan.pairings + losers_plan.pairings,
        byes=winners_plan.byes + losers_plan.byes,
    )
    return plan, None


def _advance_swiss(tournament, round_number):
    if round_number >= (tournament.total_rounds or 0):
        return None, None
    active = _active_participants(tournament.id)
    entries = [
        SwissEntry(row.user_id, row.points or 0, row.wins or 0, row.seed, row.byes or 0)
        for row in active
    ]
    history = TournamentMatch.query.filter_by(tournament_id=tournament.id).all()
    plan = pair_round(entries, played_pairs_from_matches(history), round_number + 1)
    if plan is None:
        logger.warning(
            'No rematch-free Swiss pairing left; completing early',
            extra={'tournament_id': tournament.id, 'round_number': round_number},
        )
    return plan, None


def advance_round(tournament, round_number):
    """Close ``round_number`` and build what comes next. Does not commit.

    Returns ``(outcome, error)`` where outcome is ``{'action': 'next_round' |
    'completed', ...}``. Losing the close race yields a
    ``ConcurrencyConflictError``: another caller already advanced.
    """
    if not close_round(tournament.id, round_number):
        return None, ConcurrencyConflictError(
            f'Round {round_number} was already advanced',
            round_number=round_number,
        )

    closed_matches = _round_matches(tournament.id, round_number)
    fmt = tournament.tournament_format
    plan = None
    champion_id = None
    if fmt == SINGLE_ELIMINATION:
        plan, champion_id = _advance_single_elimination(tournament, round_number, closed_matches)
    elif fmt == DOUBLE_ELIMINATION:
        plan, champion_id = _advance_double_elimination(tournament, round_number, closed_matches)
    elif fmt == SWISS:
        plan, champion_id = _advance_swiss(tournament, round_number)
    elif fmt == ROUND_ROBIN:
        plan = None

    if plan is not None:
        open_round(tournament, plan, award_bye_win=(fmt == SWISS))
        return {'action': 'next_round', 'round_number': plan.round_number, 'plan': plan}, None

    payouts = finalize_tournament(tournament, champion_id=champion_id)
    return {'action': 'completed', 'round_number': round_number, 'payouts': payouts}, None


def advance_if_round_complete(tournament_id, round_number):
    """Round-completion check run after a match result has been committed.

    Returns ``(outcome, error)``; ``(None, None)`` means the round still has
    unsettled matches or the tournament is no longer running.
    """
    tournament = db.session.get(Tournament, tournament_id)
    if tournament is None or tournament.status != 'in_progress':
        return None, None
    if not round_is_settled(tournament_id, round_number):
        return None, None

    try:
        outcome, error = advance_round(tournament, round_number)
        if error:
            db.session.rollback()
            logger.info(
                'Round advancement already handled elsewhere',
                extra={'tournament_id': tournament_id, 'round_number': round_number},
            )
            return None, error
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    if outcome['action'] == 'next_round':
        announce_round(tournament, outcome['plan'])
    else:
        deliver_pending_payouts(tournament_id=tournament.id)
        announce_completion(tournament)
    return outcome, None


def announce_round(tournament, plan):
    for pairing in plan.pairings:
        for user_id in (pairing.player1_id, pairing.player2_id):
            notify_user(
                user_id,
                f'Your round {plan.round_number} match in "{tournament.name}" is ready.',
            )
    for user_id in plan.byes:
        notify_user(user_id, f'You have a bye in round {plan.round_number} of "{tournament.name}".')
    notify_global('tournament_round_started', {
        'tournament_id': tournament.id,
        'round': plan.round_number,
        'matches': plan.match_count,
    })
