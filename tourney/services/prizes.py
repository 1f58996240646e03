"""Prize configuration, final placement and payout delivery.

Finalizing a tournament and queueing its payouts happen in one transaction,
so completion is immediately consistent. Delivery to the wallet service
happens afterwards and may lag: a failed transfer stays ``pending`` and is
picked up again by :func:`deliver_pending_payouts`.
"""
import logging
import math
from dataclasses import dataclass
from decimal import Decimal

from flask import current_app
from sqlalchemy import update

from tourney.app import db
from tourney.errors import ValidationError
from tourney.models import Payout, TournamentParticipant
from tourney.services.collaborators import get_collaborators, notify_global, notify_user
from tourney.services.standings import rank_participants
from tourney.time_utils import utcnow_naive

logger = logging.getLogger(__name__)

CURRENCY_REWARDS = ('coins', 'gems')
INVENTORY_REWARDS = ('item', 'crate_key')
ALLOWED_REWARD_TYPES = CURRENCY_REWARDS + INVENTORY_REWARDS + ('badge',)


@dataclass(frozen=True)
class Prize:
    position: int
    reward_type: str
    reward_amount: int = None
    reward_item_id: str = None
    description: str = ''

    def to_dict(self):
        return {
            'position': self.position,
            'reward_type': self.reward_type,
            'reward_amount': self.reward_amount,
            'reward_item_id': self.reward_item_id,
            'description': self.description,
        }


def _parse_prize(raw):
    if not isinstance(raw, dict):
        raise ValidationError('Each prize must be an object')
    try:
        position = int(raw.get('position'))
    except (TypeError, ValueError):
        raise ValidationError('Prize position must be an integer') from None
    if position < 1:
        raise ValidationError('Prize position must be 1 or greater')

    reward_type = str(raw.get('reward_type') or '').strip().lower()
    if reward_type not in ALLOWED_REWARD_TYPES:
        raise ValidationError(f'Invalid reward_type for position {position}')

    amount = raw.get('reward_amount')
    if amount is not None:
        try:
            amount = int(amount)
        except (TypeError, ValueError):
            raise ValidationError(f'reward_amount for position {position} must be an integer') from None
        if amount < 0:
            raise ValidationError(f'reward_amount for position {position} must be non-negative')
    item_id = str(raw.get('reward_item_id') or '').strip() or None
    description = str(raw.get('description') or raw.get('reward_description') or '').strip()[:300]

    if reward_type in CURRENCY_REWARDS and not amount:
        raise ValidationError(f'{reward_type} prize for position {position} needs a reward_amount')
    if reward_type in INVENTORY_REWARDS + ('badge',) and not item_id:
        raise ValidationError(f'{reward_type} prize for position {position} needs a reward_item_id')
    if reward_type == 'crate_key' and amount is None:
        amount = 1
    if not description:
        description = f'{amount} {reward_type}' if reward_type in CURRENCY_REWARDS else reward_type.replace('_', ' ')

    return Prize(
        position=position,
        reward_type=reward_type,
        reward_amount=amount,
        reward_item_id=item_id,
        description=description,
    )


def parse_prizes(raw_prizes):
    """Validate a prize list and return it ordered by position."""
    if raw_prizes is None:
        return []
    if not isinstance(raw_prizes, list):
        raise ValidationError('prizes must be a list')
    prizes = [_parse_prize(raw) for raw in raw_prizes]
    positions = [prize.position for prize in prizes]
    if len(set(positions)) != len(positions):
        raise ValidationError('Each prize position may only appear once')
    return sorted(prizes, key=lambda prize: prize.position)


def prize_pool_for(entry_fee, max_participants, payout_ratio):
    gross = Decimal(int(entry_fee)) * Decimal(int(max_participants)) * Decimal(str(payout_ratio))
    return int(math.floor(gross))


def currency_total(prizes):
    return sum(prize.reward_amount or 0 for prize in prizes if prize.reward_type in CURRENCY_REWARDS)


def validate_against_pool(prizes, prize_pool):
    total = currency_total(prizes)
    if total > prize_pool:
        raise ValidationError(
            'Total prize value exceeds prize pool',
            prize_total=total,
            prize_pool=prize_pool,
        )


def finalize_tournament(tournament, champion_id=None):
    """Assign positions, queue prize payouts and mark the tournament completed.

    Runs inside the caller's transaction and does not commit.
    """
    participants = TournamentParticipant.query.filter_by(tournament_id=tournament.id).all()
    ranked = rank_participants(tournament.tournament_format, participants, champion_id=champion_id)
    prizes_by_position = {prize.position: prize for prize in parse_prizes(tournament.prizes)}

    queued = []
    paid_total = 0
    for position, participant in enumerate(ranked, start=1):
        participant.position = position
        if participant.status != 'disqualified':
            participant.status = 'winner' if position == 1 else 'eliminated'

        prize = prizes_by_position.get(position)
        if prize is None or participant.status == 'disqualified':
            continue
        if prize.reward_type in CURRENCY_REWARDS:
            if paid_total + (prize.reward_amount or 0) > tournament.prize_pool:
                logger.error(
                    'Skipping prize for position %s: would exceed prize pool',
                    position,
                    extra={'tournament_id': tournament.id},
                )
                continue
            paid_total += prize.reward_amount or 0
        payout = Payout(
            tournament_id=tournament.id,
            user_id=participant.user_id,
            purpose='prize',
            position=position,
            reward_type=prize.reward_type,
            reward_amount=prize.reward_amount,
            reward_item_id=prize.reward_item_id,
            description=prize.description,
        )
        db.session.add(payout)
        queued.append(payout)

    tournament.status = 'completed'
    tournament.end_time = utcnow_naive()
    logger.info(
        'Tournament completed with %s ranked participants and %s payouts queued',
        len(ranked), len(queued),
        extra={'tournament_id': tournament.id},
    )
    return queued


def queue_refunds(tournament):
    """Queue an entry-fee refund for everyone still registered. Does not commit."""
    if not tournament.entry_fee:
        return []
    queued = []
    for participant in tournament.participants:
        if participant.status != 'registered':
            continue
        payout = Payout(
            tournament_id=tournament.id,
            user_id=participant.user_id,
            purpose='refund',
            reward_type='coins',
            reward_amount=tournament.entry_fee,
            description=f'Entry fee refund for "{tournament.name}"',
        )
        db.session.add(payout)
        queued.append(payout)
    return queued


def _transfer(payout, collaborators):
    if payout.reward_type in CURRENCY_REWARDS:
        return collaborators.ledger.credit(payout.user_id, payout.reward_amount, currency=payout.reward_type)
    if payout.reward_type == 'item':
        return collaborators.inventory.grant_item(payout.user_id, payout.reward_item_id, 1)
    if payout.reward_type == 'crate_key':
        return collaborators.inventory.grant_crate_key(
            payout.user_id, payout.reward_item_id, payout.reward_amount or 1,
        )
    return collaborators.badges.grant_badge(payout.user_id, payout.reward_item_id)


def _claim(payout):
    """Take the delivery slot for ``payout`` so two workers never send it twice."""
    result = db.session.execute(
        update(Payout)
        .where(
            Payout.id == payout.id,
            Payout.status == 'pending',
            Payout.attempts == payout.attempts,
        )
        .values(attempts=Payout.attempts + 1)
    )
    db.session.commit()
    return result.rowcount == 1


def deliver_payout(payout, collaborators=None):
    """Attempt one transfer. Returns True when the payout is delivered."""
    collaborators = collaborators or get_collaborators()
    if payout.status != 'pending':
        return payout.status == 'delivered'
    if not _claim(payout):
        return False
    db.session.refresh(payout)

    try:
        result = _transfer(payout, collaborators)
    except Exception as exc:
        logger.exception('Payout %s raised during transfer', payout.id, extra={'user_id': payout.user_id})
        payout.last_error = str(exc)[:500]
        db.session.commit()
        return False

    if not result.ok:
        logger.warning(
            'Payout %s failed (attempt %s): %s', payout.id, payout.attempts, result.reason,
            extra={'tournament_id': payout.tournament_id, 'user_id': payout.user_id},
        )
        payout.last_error = str(result.reason or 'transfer failed')[:500]
        db.session.commit()
        return False

    payout.status = 'delivered'
    payout.delivered_at = utcnow_naive()
    payout.last_error = None
    db.session.commit()

    if payout.purpose == 'prize':
        notify_user(payout.user_id, f'Tournament prize! You won {payout.description}.')
    else:
        notify_user(payout.user_id, f'{payout.description}: {payout.reward_amount} coins returned.')
    return True


def deliver_pending_payouts(tournament_id=None, limit=200):
    """Retry every pending payout still under the attempt limit."""
    max_attempts = current_app.config.get('PAYOUT_MAX_ATTEMPTS', 10)
    query = Payout.query.filter(
        Payout.status == 'pending',
        Payout.attempts < max_attempts,
    )
    if tournament_id is not None:
        query = query.filter(Payout.tournament_id == tournament_id)
    pending = query.order_by(Payout.created_at.asc(), Payout.id.asc()).limit(limit).all()

    summary = {'attempted': 0, 'delivered': 0, 'failed': 0}
    collaborators = get_collaborators()
    for payout in pending:
        summary['attempted'] += 1
        if deliver_payout(payout, collaborators):
            summary['delivered'] += 1
        else:
            summary['failed'] += 1
    if summary['attempted']:
        logger.info('Payout run: %s', summary)
    return summary


def announce_completion(tournament):
    champion = next(
        (row for row in tournament.participants if row.position == 1),
        None,
    )
    if champion is not None:
        notify_user(champion.user_id, f'You won the tournament "{tournament.name}"!')
    notify_global('tournament_completed', {
        'tournament_id': tournament.id,
        'name': tournament.name,
        'winner_id': champion.user_id if champion else None,
        'prize_pool': tournament.prize_pool,
    })
