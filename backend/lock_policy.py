"""
Lock policy for class sessions.

Decides whether a date/session can still be changed (new bookings,
cancellations, capacity edits) given the current wall-clock time.
Once kitchen prep has started for a session, its slot is frozen.

The predicate is pure so it can be evaluated both by calling surfaces
(to disable actions) and again at the write boundary via assert_unlocked.
"""
import logging
from datetime import date, datetime

from errors import LockedError

logger = logging.getLogger(__name__)


def get_cutoff_hour(session) -> int:
    """
    Get the lock cutoff hour for a session.

    Stored sessions always carry a cutoff. An object without one gets 24,
    meaning it only locks once its day is in the past.

    Args:
        session: A ClassSession (or any object with a cutoff_hour attribute)

    Returns:
        Local hour (0-24) from which same-day changes are locked
    """
    cutoff = getattr(session, "cutoff_hour", None)
    return 24 if cutoff is None else cutoff


def is_locked(target_date: date, session, now: datetime) -> bool:
    """
    Check whether a date/session is locked for mutations.

    Args:
        target_date: The class date
        session: The class session (provides cutoff_hour)
        now: Current local time

    Returns:
        True if changes are no longer allowed

    Examples:
        - Any date before today: locked
        - Any date after today: open
        - Today at 11:00, morning session (cutoff 10): locked
        - Today at 11:00, evening session (cutoff 17): open
    """
    today = now.date()
    if target_date < today:
        return True
    if target_date > today:
        return False
    return now.hour >= get_cutoff_hour(session)


def assert_unlocked(target_date: date, session, now: datetime) -> None:
    """Raise LockedError if the date/session can no longer be changed."""
    if is_locked(target_date, session, now):
        logger.warning(
            f"Rejected change to locked session {getattr(session, 'id', session)} on {target_date}"
        )
        raise LockedError(
            f"Session {getattr(session, 'id', session)} on {target_date.isoformat()} is locked"
        )
