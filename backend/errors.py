"""
Error kinds raised by the pickup logistics core.

All of them are local, recoverable conditions: the service layer raises
them before writing anything and the API layer turns them into HTTP
responses. None should take the process down.
"""


class PickupError(Exception):
    """Base class for core errors."""
    status_code = 400


class ValidationError(PickupError):
    """Malformed input: negative capacity, unknown session, bad polygon..."""
    status_code = 422


class ConflictError(PickupError):
    """Persisted state no longer matches what the caller expected."""
    status_code = 409


class NotFoundError(PickupError):
    """Referenced booking, driver, session or zone does not exist."""
    status_code = 404


class LockedError(PickupError):
    """Mutation attempted on a date/session that is past its cutoff."""
    status_code = 423
