"""Match routes used by the game service to report outcomes."""
from flask import Blueprint, request, jsonify
from tourney.app import db
from tourney.auth_utils import admin_required
from tourney.errors import NotFoundError, ValidationError
from tourney.models import TournamentMatch
from tourney.services import lifecycle
from tourney.services.results import start_match

matches_bp = Blueprint('matches', __name__)


def _error_response(error):
    return jsonify(error.to_dict()), error.status_code


@matches_bp.route('/<int:match_id>', methods=['GET'])
def get_match(match_id):
    match = db.session.get(TournamentMatch, match_id)
    if match is None:
        return _error_response(NotFoundError('Match not found'))
    data = match.to_dict()
    data['tournament_status'] = match.tournament.status
    return jsonify({'match': data})


@matches_bp.route('/<int:match_id>/start', methods=['POST'])
@admin_required
def begin_match(match_id):
    match, error = start_match(match_id)
    if error:
        return _error_response(error)
    return jsonify({'match': match.to_dict()})


@matches_bp.route('/<int:match_id>/result', methods=['POST'])
@admin_required
def submit_result(match_id):
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return _error_response(ValidationError('Invalid JSON payload'))
    if data.get('winner_id') is None:
        return _error_response(ValidationError('winner_id is required'))

    payload, error = lifecycle.record_match_result(
        match_id,
        data.get('winner_id'),
        data.get('score1'),
        data.get('score2'),
    )
    if error:
        return _error_response(error)

    advancement = payload['advancement']
    summary = None
    if advancement:
        summary = {
            'action': advancement['action'],
            'round_number': advancement['round_number'],
        }
        if advancement['action'] == 'completed':
            summary['payouts'] = [row.to_dict() for row in advancement['payouts']]
    tournament = payload['match'].tournament
    return jsonify({
        'match': payload['match'].to_dict(),
        'advancement': summary,
        'tournament': tournament.to_dict(),
    })
