"""Round-one bracket construction for every tournament format.

Everything here is pure: functions take participant rows (anything with
``user_id`` and ``seed``) and return a :class:`RoundPlan`; persisting the plan
is the caller's job.
"""
import math
import random
from dataclasses import dataclass, field

from tourney.errors import ValidationError

SINGLE_ELIMINATION = 'single_elimination'
DOUBLE_ELIMINATION = 'double_elimination'
ROUND_ROBIN = 'round_robin'
SWISS = 'swiss'
ALLOWED_TOURNAMENT_FORMATS = (SINGLE_ELIMINATION, DOUBLE_ELIMINATION, ROUND_ROBIN, SWISS)
ELIMINATION_FORMATS = {SINGLE_ELIMINATION, DOUBLE_ELIMINATION}

BRACKET_WINNERS = 'winners'
BRACKET_LOSERS = 'losers'
BRACKET_GRAND_FINAL = 'grand_final'


@dataclass(frozen=True)
class Pairing:
    match_number: int
    player1_id: int
    player2_id: int
    bracket: str = BRACKET_WINNERS


@dataclass
class RoundPlan:
    """Matches to create for one round plus the participants sitting it out."""
    round_number: int
    pairings: list = field(default_factory=list)
    byes: list = field(default_factory=list)

    @property
    def match_count(self):
        return len(self.pairings)


def single_elimination_rounds(participant_count):
    if participant_count < 2:
        return 0
    return int(math.ceil(math.log2(participant_count)))


def swiss_round_count(participant_count):
    """Fixed Swiss length: ceil(log2(n)) * 2, capped so no pairing has to repeat."""
    if participant_count < 2:
        return 0
    rounds = int(math.ceil(math.log2(participant_count))) * 2
    # With an odd roster every round has a bye, so n rounds still fit.
    distinct_opponent_limit = participant_count - 1 if participant_count % 2 == 0 else participant_count
    return min(rounds, distinct_opponent_limit)


def pair_sequentially(user_ids, round_number=1, bracket=BRACKET_WINNERS, first_match_number=1):
    """Pair 1v2, 3v4, ...; an odd trailing participant gets the bye."""
    plan = RoundPlan(round_number=round_number)
    match_number = first_match_number
    for idx in range(0, len(user_ids) - 1, 2):
        plan.pairings.append(Pairing(
            match_number=match_number,
            player1_id=user_ids[idx],
            player2_id=user_ids[idx + 1],
            bracket=bracket,
        ))
        match_number += 1
    if len(user_ids) % 2 == 1:
        plan.byes.append(user_ids[-1])
    return plan


def _by_seed(participants):
    return sorted(participants, key=lambda row: (row.seed is None, row.seed or 0, row.user_id))


def _single_elimination(participants, rng):
    user_ids = [row.user_id for row in _by_seed(participants)]
    rng.shuffle(user_ids)
    return pair_sequentially(user_ids)


def _round_robin(participants):
    user_ids = [row.user_id for row in _by_seed(participants)]
    plan = RoundPlan(round_number=1)
    for i in range(len(user_ids)):
        for j in range(i + 1, len(user_ids)):
            plan.pairings.append(Pairing(
                match_number=len(plan.pairings) + 1,
                player1_id=user_ids[i],
                player2_id=user_ids[j],
            ))
    return plan


def _swiss_first_round(participants):
    return pair_sequentially([row.user_id for row in _by_seed(participants)])


def generate(tournament_format, participants, rng=None):
    """Build the round-1 plan for ``tournament_format``.

    Raises ``ValidationError`` for an unknown format or fewer than two
    participants; nothing should be persisted in that case.
    """
    if tournament_format not in ALLOWED_TOURNAMENT_FORMATS:
        raise ValidationError(f'Unsupported tournament format: {tournament_format}')
    participants = list(participants or [])
    if len(participants) < 2:
        raise ValidationError(
            'At least 2 participants are required to build a bracket',
            participant_count=len(participants),
        )

    if tournament_format in ELIMINATION_FORMATS:
        # Double elimination starts identical; the losers bracket fills lazily.
        return _single_elimination(participants, rng or random.SystemRandom())
    if tournament_format == ROUND_ROBIN:
        return _round_robin(participants)
    return _swiss_first_round(participants)
