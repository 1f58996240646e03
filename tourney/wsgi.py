"""WSGI entrypoint used by Render/Gunicorn."""
import os

from tourney.app import create_app
from tourney.services.prizes import deliver_pending_payouts


def _env_bool(name, default=False):
    raw = os.environ.get(name)
    if raw is None:
        return default
    return str(raw).strip().lower() in {'1', 'true', 'yes', 'on'}


config_name = os.environ.get('FLASK_ENV', 'production')
app = create_app(config_name)

if _env_bool('RETRY_PAYOUTS_ON_BOOT', False):
    with app.app_context():
        summary = deliver_pending_payouts()
        print(
            f'Payout retry on boot: attempted={summary["attempted"]} '
            f'delivered={summary["delivered"]} failed={summary["failed"]}'
        )
