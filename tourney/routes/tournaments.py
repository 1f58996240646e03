"""Tournament routes: listing, creation, registration and lifecycle actions."""
from flask import Blueprint, request, jsonify
from tourney.auth_utils import admin_required, login_required
from tourney.errors import ForbiddenError, TournamentError, ValidationError
from tourney.services import lifecycle
from tourney.services.standings import standings_payload

tournaments_bp = Blueprint('tournaments', __name__)


def _error_response(error):
    return jsonify(error.to_dict()), error.status_code


def _can_manage(tournament):
    if getattr(request, 'current_user_is_admin', False):
        return True
    return int(tournament.created_by) == int(request.current_user_id)


def _managed_tournament(tournament_id):
    tournament, error = lifecycle.get_tournament(tournament_id)
    if error:
        return None, error
    if not _can_manage(tournament):
        return None, ForbiddenError('Only the tournament creator or an admin can do that')
    return tournament, None


@tournaments_bp.route('', methods=['GET'])
def get_tournaments():
    tournaments, error = lifecycle.get_active_tournaments(
        status=str(request.args.get('status') or '').strip().lower() or None,
        tournament_format=str(request.args.get('format') or '').strip().lower() or None,
        limit=request.args.get('limit', 50),
    )
    if error:
        return _error_response(error)
    return jsonify({'tournaments': [row.to_dict() for row in tournaments]})


@tournaments_bp.route('', methods=['POST'])
@admin_required
def create_tournament():
    data = request.get_json(silent=True)
    tournament, error = lifecycle.create_tournament(data, request.current_user_id)
    if error:
        return _error_response(error)
    return jsonify({'tournament': tournament.to_dict()}), 201


@tournaments_bp.route('/history', methods=['GET'])
@login_required
def get_history():
    user_id = request.current_user_id
    raw_user_id = request.args.get('user_id')
    if raw_user_id is not None:
        try:
            user_id = int(raw_user_id)
        except (TypeError, ValueError):
            return _error_response(ValidationError('user_id must be an integer'))
    history = lifecycle.get_tournament_history(user_id, limit=request.args.get('limit', 30))
    return jsonify({'user_id': user_id, 'history': history})


@tournaments_bp.route('/<int:tournament_id>', methods=['GET'])
def get_tournament(tournament_id):
    tournament, error = lifecycle.get_tournament(tournament_id)
    if error:
        return _error_response(error)
    return jsonify({'tournament': lifecycle.serialize_tournament(tournament)})


@tournaments_bp.route('/<int:tournament_id>/standings', methods=['GET'])
def get_standings(tournament_id):
    tournament, error = lifecycle.get_tournament(tournament_id)
    if error:
        return _error_response(error)
    return jsonify({
        'tournament_id': tournament.id,
        'status': tournament.status,
        'current_round': tournament.current_round,
        'standings': standings_payload(tournament),
    })


@tournaments_bp.route('/<int:tournament_id>/open', methods=['POST'])
@login_required
def open_registration(tournament_id):
    _, error = _managed_tournament(tournament_id)
    if error:
        return _error_response(error)
    tournament, error = lifecycle.open_registration(tournament_id)
    if error:
        return _error_response(error)
    return jsonify({'tournament': tournament.to_dict()})


@tournaments_bp.route('/<int:tournament_id>/register', methods=['POST'])
@login_required
def register(tournament_id):
    result, error = lifecycle.register_for_tournament(tournament_id, request.current_user_id)
    if error:
        return _error_response(error)
    tournament, _ = lifecycle.get_tournament(tournament_id)
    return jsonify({
        'participant': result['participant'].to_dict(),
        'tournament': tournament.to_dict() if tournament else None,
        'started': result['started'],
    }), 201


@tournaments_bp.route('/<int:tournament_id>/start', methods=['POST'])
@login_required
def start(tournament_id):
    _, error = _managed_tournament(tournament_id)
    if error:
        return _error_response(error)
    tournament, error = lifecycle.start_tournament(tournament_id)
    if error:
        return _error_response(error)
    return jsonify({'tournament': lifecycle.serialize_tournament(tournament)})


@tournaments_bp.route('/<int:tournament_id>/cancel', methods=['POST'])
@login_required
def cancel(tournament_id):
    _, error = _managed_tournament(tournament_id)
    if error:
        return _error_response(error)
    tournament, error = lifecycle.cancel_tournament(tournament_id)
    if error:
        return _error_response(error)
    return jsonify({
        'tournament': tournament.to_dict(),
        'refunds': [row.to_dict() for row in tournament.payouts if row.purpose == 'refund'],
    })


@tournaments_bp.errorhandler(TournamentError)
def _handle_tournament_error(error):
    return _error_response(error)
