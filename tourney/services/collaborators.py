"""Adapters for the services the tournament engine talks to but does not own.

Ledger, inventory and badges live behind the wallet service HTTP API.
Notifications go out over Socket.IO. ``create_app`` stores a
:class:`Collaborators` bundle on the app so tests can swap in fakes.
"""
import logging
from collections import namedtuple

import requests
from flask import current_app

from tourney.time_utils import utcnow_naive

logger = logging.getLogger(__name__)

TransferResult = namedtuple('TransferResult', ['ok', 'reason'])
Collaborators = namedtuple('Collaborators', ['ledger', 'inventory', 'badges', 'notifier'])

EXTENSION_KEY = 'tourney.collaborators'


def user_room(user_id):
    return f'user_{user_id}'


class _WalletServiceClient:
    def __init__(self, base_url, token='', timeout=5.0, session=None):
        self.base_url = str(base_url or '').rstrip('/')
        self.token = token
        self.timeout = timeout
        self.session = session or requests.Session()

    def _post(self, path, payload):
        headers = {'Content-Type': 'application/json'}
        if self.token:
            headers['Authorization'] = f'Bearer {self.token}'
        try:
            response = self.session.post(
                f'{self.base_url}{path}',
                json=payload,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            return TransferResult(False, f'wallet service unreachable: {exc}')

        if response.ok:
            return TransferResult(True, None)
        try:
            body = response.json()
        except ValueError:
            body = {}
        reason = body.get('code') or body.get('error') or f'HTTP {response.status_code}'
        return TransferResult(False, str(reason))


class HttpLedger(_WalletServiceClient):
    def debit(self, user_id, amount, currency='coins'):
        return self._post('/api/ledger/debit', {
            'user_id': user_id, 'amount': amount, 'currency': currency,
            'source': 'tournament',
        })

    def credit(self, user_id, amount, currency='coins'):
        return self._post('/api/ledger/credit', {
            'user_id': user_id, 'amount': amount, 'currency': currency,
            'source': 'tournament',
        })


class HttpInventory(_WalletServiceClient):
    def grant_item(self, user_id, item_id, qty=1):
        return self._post('/api/inventory/items', {
            'user_id': user_id, 'item_id': item_id, 'quantity': qty,
            'acquired_from': 'tournament_prize',
        })

    def grant_crate_key(self, user_id, crate_id, qty=1):
        return self._post('/api/inventory/crate-keys', {
            'user_id': user_id, 'crate_id': crate_id, 'quantity': qty,
        })


class HttpBadgeService(_WalletServiceClient):
    def grant_badge(self, user_id, badge_id):
        return self._post('/api/badges', {'user_id': user_id, 'badge_id': badge_id})


class SocketIONotifier:
    def __init__(self, socketio):
        self.socketio = socketio

    def notify_user(self, user_id, message):
        self.socketio.emit('tournament_notification', {
            'user_id': user_id,
            'message': message,
            'sent_at': utcnow_naive().isoformat(),
        }, to=user_room(user_id))

    def notify_global(self, event, payload):
        self.socketio.emit('tournament_update', {
            'event': event,
            'payload': payload,
            'sent_at': utcnow_naive().isoformat(),
        })


def build_default_collaborators(app, socketio):
    client_kwargs = {
        'base_url': app.config.get('WALLET_SERVICE_URL'),
        'token': app.config.get('WALLET_SERVICE_TOKEN', ''),
        'timeout': app.config.get('WALLET_SERVICE_TIMEOUT', 5.0),
    }
    return Collaborators(
        ledger=HttpLedger(**client_kwargs),
        inventory=HttpInventory(**client_kwargs),
        badges=HttpBadgeService(**client_kwargs),
        notifier=SocketIONotifier(socketio),
    )


def get_collaborators():
    return current_app.extensions[EXTENSION_KEY]


def notify_user(user_id, message):
    """Best-effort: delivery problems are logged and never reach the caller."""
    if not current_app.config.get('NOTIFICATIONS_ENABLED', True):
        return
    try:
        get_collaborators().notifier.notify_user(user_id, message)
    except Exception:
        logger.warning('User notification failed', exc_info=True, extra={'user_id': user_id})


def notify_global(event, payload):
    if not current_app.config.get('NOTIFICATIONS_ENABLED', True):
        return
    try:
        get_collaborators().notifier.notify_global(event, payload)
    except Exception:
        logger.warning('Global notification %s failed', event, exc_info=True)
