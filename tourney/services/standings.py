"""Final and running standings."""
from tourney.services.brackets import ELIMINATION_FORMATS


def _seed_order(participants):
    return sorted(participants, key=lambda row: (row.seed is None, row.seed or 0, row.user_id))


def rank_participants(tournament_format, participants, champion_id=None):
    """Order participants best-first.

    Points desc, wins desc, losses asc; Python's sort is stable so unresolved
    ties keep seed order. Elimination formats rank by how far a participant
    got first (champion, then the round reached), because a bye can leave the
    champion with fewer wins than the runner-up. Disqualified rows sink.
    """
    ordered = _seed_order(participants)
    if tournament_format in ELIMINATION_FORMATS:
        return sorted(ordered, key=lambda row: (
            row.status == 'disqualified',
            row.user_id != champion_id if champion_id is not None else row.status != 'winner',
            -(row.current_round or 0),
            -(row.points or 0),
            -(row.wins or 0),
            row.losses or 0,
        ))
    return sorted(ordered, key=lambda row: (
        row.status == 'disqualified',
        -(row.points or 0),
        -(row.wins or 0),
        row.losses or 0,
    ))


def standings_payload(tournament):
    ranked = rank_participants(tournament.tournament_format, tournament.participants)
    rows = []
    for rank, participant in enumerate(ranked, start=1):
        data = participant.to_dict()
        data['rank'] = participant.position or rank
        rows.append(data)
    return rows
