import hashlib
import hmac
from functools import wraps
from flask import request, jsonify, current_app
import jwt


def generate_token(user_id, is_admin=False):
    """Generate a JWT token for a user.

    Accounts live in the platform's identity service; the token carries the
    user id and admin flag so this service never looks users up itself.
    """
    from datetime import datetime, timedelta, timezone
    payload = {
        'user_id': user_id,
        'is_admin': bool(is_admin),
        'exp': datetime.now(timezone.utc) + timedelta(
            hours=current_app.config.get('JWT_EXPIRATION_HOURS', 24)
        ),
    }
    return jwt.encode(payload, current_app.config['SECRET_KEY'], algorithm='HS256')


def _normalize_bearer_token(raw_token):
    token = str(raw_token or '').strip()
    if token.startswith('Bearer '):
        token = token.split(' ', 1)[1].strip()
    return token


def _decode_claims_from_token(token):
    normalized = _normalize_bearer_token(token)
    if not normalized:
        return None, 'Authentication required'
    try:
        payload = jwt.decode(
            normalized, current_app.config['SECRET_KEY'], algorithms=['HS256']
        )
    except jwt.ExpiredSignatureError:
        return None, 'Token expired'
    except jwt.InvalidTokenError:
        return None, 'Invalid token'
    try:
        user_id = int(payload['user_id'])
    except (KeyError, TypeError, ValueError):
        return None, 'Invalid token'
    return {'user_id': user_id, 'is_admin': bool(payload.get('is_admin'))}, None


def csrf_token_for_bearer(token):
    """Build deterministic CSRF token tied to bearer token."""
    normalized = _normalize_bearer_token(token)
    if not normalized:
        return ''
    secret = str(current_app.config.get('SECRET_KEY') or '')
    if not secret:
        return ''
    return hmac.new(
        secret.encode('utf-8'),
        normalized.encode('utf-8'),
        hashlib.sha256,
    ).hexdigest()


def csrf_token_matches(token, candidate):
    expected = csrf_token_for_bearer(token)
    provided = str(candidate or '').strip()
    if not expected or not provided:
        return False
    return hmac.compare_digest(expected, provided)


def login_required(f):
    """Decorator to require authentication on a route."""
    @wraps(f)
    def decorated(*args, **kwargs):
        auth_header = request.headers.get('Authorization', '')
        claims, error = _decode_claims_from_token(auth_header)
        if error:
            return jsonify({'error': error, 'code': 'unauthorized'}), 401
        request.current_user_id = claims['user_id']
        request.current_user_is_admin = claims['is_admin']
        return f(*args, **kwargs)
    return decorated


def admin_required(f):
    """Decorator to require an authenticated admin user on a route."""
    @wraps(f)
    @login_required
    def decorated(*args, **kwargs):
        if not getattr(request, 'current_user_is_admin', False):
            return jsonify({'error': 'Admin access required', 'code': 'forbidden'}), 403
        return f(*args, **kwargs)
    return decorated
