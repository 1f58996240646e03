"""Socket.IO room membership for private tournament notifications."""
import re

from flask import request
from flask_socketio import emit, join_room, leave_room

from tourney.app import socketio
from tourney.auth_utils import _decode_claims_from_token
from tourney.services.collaborators import user_room

_ROOM_PATTERN = re.compile(r'^user_(\d+)$')


def _authorize_socket_join(room, token):
    claims, error = _decode_claims_from_token(token)
    if error:
        return None, error

    room_match = _ROOM_PATTERN.match(room)
    if not room_match:
        return None, 'Invalid room'
    if int(room_match.group(1)) != claims['user_id']:
        return None, 'Forbidden room'
    return claims, None


@socketio.on('join')
def on_join(data):
    payload = data if isinstance(data, dict) else {}
    token = payload.get('token') or request.args.get('token') or ''
    room = str(payload.get('room') or '').strip()
    if not room:
        claims, _ = _decode_claims_from_token(token)
        room = user_room(claims['user_id']) if claims else ''
    _, error = _authorize_socket_join(room, token)
    if error:
        emit('status', {'error': error})
        return

    join_room(room)
    emit('status', {'message': f'Joined {room}'})


@socketio.on('leave')
def on_leave(data):
    payload = data if isinstance(data, dict) else {}
    room = str(payload.get('room') or '').strip()
    if room:
        leave_room(room)
