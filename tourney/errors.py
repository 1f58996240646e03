"""Typed tournament errors.

Service functions return these as the second element of a ``(result, error)``
tuple for expected conditions (full tournament, duplicate registration, ...).
Pure helpers raise them and the service boundary converts. Unexpected
persistence failures are not wrapped and propagate as ``SQLAlchemyError``.
"""


class TournamentError(Exception):
    status_code = 400
    code = 'tournament_error'

    def __init__(self, message='', **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self):
        data = {'error': self.message, 'code': self.code}
        data.update(self.details)
        return data


class ValidationError(TournamentError):
    status_code = 400
    code = 'validation_error'


class NotFoundError(TournamentError):
    status_code = 404
    code = 'not_found'


class StateConflictError(TournamentError):
    """Operation is not valid for the current tournament or match status."""
    status_code = 409
    code = 'state_conflict'


class CapacityError(TournamentError):
    status_code = 409
    code = 'capacity'


class FundsError(TournamentError):
    status_code = 402
    code = 'insufficient_funds'


class ConcurrencyConflictError(TournamentError):
    """Lost an atomic transition race. The winner already handled it; do not retry."""
    status_code = 409
    code = 'concurrency_conflict'


class ForbiddenError(TournamentError):
    status_code = 403
    code = 'forbidden'
