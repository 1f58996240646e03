"""Logging setup shared by the web app and the scheduled job runner."""
import logging
import sys
from datetime import datetime

_TOURNAMENT_FIELDS = ('tournament_id', 'round_number', 'match_id', 'user_id')


class HumanReadableFormatter(logging.Formatter):
    """Single-line console format with tournament context when present."""

    def format(self, record):
        prefix_parts = []
        for key in _TOURNAMENT_FIELDS:
            if hasattr(record, key):
                prefix_parts.append(f'{key}={getattr(record, key)}')
        prefix = ' '.join(prefix_parts)
        if prefix:
            prefix = f'[{prefix}] '

        timestamp = datetime.fromtimestamp(record.created).strftime('%Y-%m-%d %H:%M:%S')
        line = f'{timestamp} | {record.levelname:<8} | {record.name} | {prefix}{record.getMessage()}'
        if record.exc_info:
            line = f'{line}\n{self.formatException(record.exc_info)}'
        return line


def setup_logging(level='INFO'):
    """Attach a console handler to the ``tourney`` logger tree.

    Safe to call more than once: the previous handler is replaced.
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(HumanReadableFormatter())

    package_logger = logging.getLogger('tourney')
    package_logger.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    package_logger.handlers.clear()
    package_logger.addHandler(handler)

    # Keep request/engine chatter out of tournament logs
    logging.getLogger('urllib3').setLevel(logging.WARNING)
    logging.getLogger('engineio').setLevel(logging.WARNING)
    logging.getLogger('socketio').setLevel(logging.WARNING)
