from flask import Flask, request, jsonify
from flask_sqlalchemy import SQLAlchemy
from flask_socketio import SocketIO
from flask_cors import CORS
from tourney.config import config
from tourney.logging_config import setup_logging

db = SQLAlchemy()
socketio = SocketIO()


def _parse_allowed_origins(raw_origins):
    if not raw_origins:
        return '*'

    if isinstance(raw_origins, (list, tuple, set)):
        cleaned = [origin for origin in raw_origins if origin]
        return cleaned or '*'

    raw_text = str(raw_origins).strip()
    if not raw_text or raw_text == '*':
        return '*'

    origins = [origin.strip() for origin in raw_text.split(',') if origin.strip()]
    return origins or '*'


def create_app(config_name='development', collaborators=None):
    app = Flask(__name__)
    app.config.from_object(config[config_name])
    setup_logging(app.config.get('LOG_LEVEL', 'INFO'))

    allowed_origins = _parse_allowed_origins(app.config.get('CORS_ALLOWED_ORIGINS', '*'))
    if str(config_name).strip().lower() == 'production':
        secret_key = str(app.config.get('SECRET_KEY') or '').strip()
        if not secret_key or secret_key == 'dev-secret-key-change-in-prod':
            raise RuntimeError('SECRET_KEY must be set to a non-default value in production')
        if allowed_origins == '*':
            raise RuntimeError('CORS_ALLOWED_ORIGINS must be explicitly set in production')
        if not str(app.config.get('WALLET_SERVICE_TOKEN') or '').strip():
            raise RuntimeError('WALLET_SERVICE_TOKEN must be set in production')

    # Socket handlers must be declared before init_app builds the server.
    from tourney.routes import notifications  # noqa: F401

    db.init_app(app)
    socketio.init_app(
        app,
        cors_allowed_origins=allowed_origins,
        async_mode=app.config.get('SOCKETIO_ASYNC_MODE', 'threading'),
    )
    CORS(app, resources={r'/api/*': {'origins': allowed_origins}})

    from tourney.services.collaborators import EXTENSION_KEY, build_default_collaborators
    app.extensions[EXTENSION_KEY] = collaborators or build_default_collaborators(app, socketio)

    @app.before_request
    def _enforce_origin_for_mutating_api_requests():
        if request.method in {'GET', 'HEAD', 'OPTIONS'}:
            return None
        if not request.path.startswith('/api/'):
            return None

        origin = str(request.headers.get('Origin') or '').strip()
        if not origin:
            return None

        configured_origins = _parse_allowed_origins(
            app.config.get('CORS_ALLOWED_ORIGINS', '*')
        )
        if configured_origins != '*' and origin not in configured_origins:
            return jsonify({'error': 'Invalid request origin', 'code': 'forbidden'}), 403

        auth_header = str(request.headers.get('Authorization') or '').strip()
        if not auth_header:
            return None

        csrf_header = request.headers.get('X-CSRF-Token')
        from tourney.auth_utils import csrf_token_matches
        if not csrf_token_matches(auth_header, csrf_header):
            return jsonify({'error': 'Invalid CSRF token', 'code': 'forbidden'}), 403
        return None

    from tourney.routes.tournaments import tournaments_bp
    from tourney.routes.matches import matches_bp

    app.register_blueprint(tournaments_bp, url_prefix='/api/tournaments')
    app.register_blueprint(matches_bp, url_prefix='/api/matches')

    @app.route('/api/health')
    def health():
        return jsonify({'status': 'ok'})

    with app.app_context():
        from tourney import models  # noqa: F401
        db.create_all()

    return app
