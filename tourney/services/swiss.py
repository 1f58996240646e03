"""Swiss pairing for rounds after the first.

Pairing rule: sort by (points desc, wins desc, seed asc) and pair each
highest unpaired participant with the nearest legal opponent. "Nearest" is
the smallest absolute point difference, ties broken by standing order, so
inside one score group this is plain sequential pairing (1v2, 3v4). An
opponent is legal when the two have never met in this tournament, in either
player order. A depth-first search backs out of greedy choices that would
strand the last participants with a rematch.
"""
from collections import namedtuple

from tourney.services.brackets import Pairing, RoundPlan

SwissEntry = namedtuple('SwissEntry', ['user_id', 'points', 'wins', 'seed', 'byes'])

_SEARCH_BUDGET = 50000


class _Budget:
    def __init__(self, steps):
        self.remaining = steps

    def spend(self):
        self.remaining -= 1
        return self.remaining >= 0


def standings_order(entries):
    return sorted(
        entries,
        key=lambda e: (-e.points, -e.wins, e.seed if e.seed is not None else 0, e.user_id),
    )


def pair_key(user_a, user_b):
    return frozenset((user_a, user_b))


def played_pairs_from_matches(matches):
    return {pair_key(m.player1_id, m.player2_id) for m in matches}


def _pair_all(ordered, played, budget):
    if not ordered:
        return []
    if not budget.spend():
        return None
    first, rest = ordered[0], ordered[1:]
    candidates = sorted(
        range(len(rest)),
        key=lambda idx: (abs(first.points - rest[idx].points), idx),
    )
    for idx in candidates:
        opponent = rest[idx]
        if pair_key(first.user_id, opponent.user_id) in played:
            continue
        tail = _pair_all(rest[:idx] + rest[idx + 1:], played, budget)
        if tail is not None:
            return [(first, opponent)] + tail
    return None


def _bye_candidates(ordered):
    from_bottom = list(reversed(ordered))
    fresh = [entry for entry in from_bottom if not entry.byes]
    repeat = [entry for entry in from_bottom if entry.byes]
    return fresh + repeat


def pair_round(entries, played, round_number):
    """Return a rematch-free :class:`RoundPlan`, or None if none exists."""
    ordered = standings_order(entries)
    if len(ordered) < 2:
        return None
    budget = _Budget(_SEARCH_BUDGET)

    bye_entry = None
    pairs = None
    if len(ordered) % 2 == 0:
        pairs = _pair_all(ordered, played, budget)
    else:
        for candidate in _bye_candidates(ordered):
            remaining = [entry for entry in ordered if entry.user_id != candidate.user_id]
            pairs = _pair_all(remaining, played, budget)
            if pairs is not None:
                bye_entry = candidate
                break
            if budget.remaining <= 0:
                break
    if pairs is None:
        return None

    plan = RoundPlan(round_number=round_number)
    for match_number, (first, second) in enumerate(pairs, start=1):
        plan.pairings.append(Pairing(
            match_number=match_number,
            player1_id=first.user_id,
            player2_id=second.user_id,
        ))
    if bye_entry is not None:
        plan.byes.append(bye_entry.user_id)
    return plan
