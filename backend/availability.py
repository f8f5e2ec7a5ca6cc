"""
Availability engine for class sessions.

Computes, for every (date, session), how many seats are booked, the
effective capacity after day overrides, and whether the session is
OPEN, FULL or CLOSED. Multi-day views fetch bookings and overrides for the
whole visible range in a fixed number of queries rather than one per day.

Also hosts the override triggers (upsert, quick close, bulk apply), which
are plain keyed upserts against the day override table.
"""
import logging
from datetime import date, datetime, timedelta
from typing import Iterable, Optional

from sqlalchemy import func
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from config import get_settings, local_now
from db_models import Booking, BookingStatus, ClassSession, DayOverride
from errors import ValidationError
from lock_policy import assert_unlocked, is_locked
from models import DayAvailability, OverrideInfo, SessionStats, SessionStatusType

logger = logging.getLogger(__name__)

# Days shown by the month calendar (6 weeks)
CALENDAR_GRID_DAYS = 42

# Longest range a single availability request may cover
MAX_RANGE_DAYS = 366


# ============== REFERENCE DATA ==============

def get_sessions(db: Session) -> list[ClassSession]:
    """All class sessions in display order."""
    return db.query(ClassSession).order_by(
        ClassSession.display_order, ClassSession.id
    ).all()


def get_session(db: Session, session_id: str, for_update: bool = False) -> ClassSession:
    """
    Get a session by id, rejecting unknown ids.

    With for_update the session row stays locked until the transaction
    ends, serialising seat checks for that session.
    """
    query = db.query(ClassSession).filter(ClassSession.id == session_id)
    if for_update:
        query = query.with_for_update()
    session = query.first()
    if not session:
        raise ValidationError(f"Unknown session id: {session_id}")
    return session


# ============== CAPACITY COMPUTATION ==============

def compute_session_stats(
    session: ClassSession,
    booked: int,
    override: Optional[DayOverride],
    locked: bool,
) -> SessionStats:
    """
    Capacity picture for one session on one day.

    Args:
        session: The class session (base capacity)
        booked: Sum of pax over active bookings
        override: The day override, if any
        locked: Result of the lock policy for this date/session

    Returns:
        SessionStats with remaining = max(0, capacity - booked)
    """
    base_capacity = session.max_capacity
    if base_capacity is None:
        base_capacity = get_settings().default_session_capacity

    if override is not None and override.custom_capacity is not None and not override.is_closed:
        capacity = override.custom_capacity
    else:
        capacity = base_capacity

    override_info = None
    if override is not None:
        override_info = OverrideInfo(
            is_closed=override.is_closed,
            custom_capacity=override.custom_capacity,
            closure_reason=override.closure_reason,
        )

    if override is not None and override.is_closed:
        return SessionStats(
            session_id=session.id,
            booked=booked,
            capacity=capacity,
            remaining=0,
            status=SessionStatusType.CLOSED,
            is_locked=locked,
            closure_reason=override.closure_reason,
            override=override_info,
        )

    remaining = max(0, capacity - booked)
    status = SessionStatusType.FULL if booked >= capacity else SessionStatusType.OPEN

    return SessionStats(
        session_id=session.id,
        booked=booked,
        capacity=capacity,
        remaining=remaining,
        status=status,
        is_locked=locked,
        override=override_info,
    )


def _booked_pax_by_day(db: Session, start_date: date, end_date: date) -> dict:
    """(date, session_id) -> active pax, for the whole range in one query."""
    rows = db.query(
        Booking.booking_date,
        Booking.session_id,
        func.coalesce(func.sum(Booking.pax_count), 0),
    ).filter(
        Booking.booking_date >= start_date,
        Booking.booking_date <= end_date,
        Booking.status != BookingStatus.CANCELLED,
    ).group_by(Booking.booking_date, Booking.session_id).all()

    return {(row[0], row[1]): int(row[2]) for row in rows}


def _overrides_by_day(db: Session, start_date: date, end_date: date) -> dict:
    """(date, session_id) -> DayOverride, for the whole range in one query."""
    overrides = db.query(DayOverride).filter(
        DayOverride.date >= start_date,
        DayOverride.date <= end_date,
    ).all()
    return {(o.date, o.session_id): o for o in overrides}


def get_range_availability(
    db: Session,
    start_date: date,
    end_date: date,
    now: datetime = None,
) -> list[DayAvailability]:
    """
    Availability for every day in [start_date, end_date].

    Issues three queries regardless of the range length: sessions,
    aggregated bookings, overrides.
    """
    if end_date < start_date:
        raise ValidationError("end_date must not be before start_date")
    if (end_date - start_date).days + 1 > MAX_RANGE_DAYS:
        raise ValidationError(f"Range is limited to {MAX_RANGE_DAYS} days")

    now = now or local_now()
    sessions = get_sessions(db)
    booked = _booked_pax_by_day(db, start_date, end_date)
    overrides = _overrides_by_day(db, start_date, end_date)

    days = []
    for offset in range((end_date - start_date).days + 1):
        current = start_date + timedelta(days=offset)
        stats = {}
        for session in sessions:
            stats[session.id] = compute_session_stats(
                session,
                booked.get((current, session.id), 0),
                overrides.get((current, session.id)),
                is_locked(current, session, now),
            )
        days.append(DayAvailability(
            date=current,
            sessions=stats,
            has_bookings=any(s.booked > 0 for s in stats.values()),
        ))

    return days


def get_day_availability(db: Session, target_date: date, now: datetime = None) -> dict[str, SessionStats]:
    """Session id -> stats for a single day."""
    return get_range_availability(db, target_date, target_date, now)[0].sessions


def calendar_grid(year: int, month: int) -> list[date]:
    """
    The 42 days shown for a month: six weeks starting on the Sunday on or
    before the 1st.
    """
    if not 1 <= month <= 12:
        raise ValidationError(f"Invalid month: {month}")
    try:
        first = date(year, month, 1)
        # weekday(): Monday=0 ... Sunday=6
        start = first - timedelta(days=(first.weekday() + 1) % 7)
        return [start + timedelta(days=i) for i in range(CALENDAR_GRID_DAYS)]
    except (ValueError, OverflowError):
        raise ValidationError(f"No calendar grid for {year}-{month:02d}")


def get_month_availability(db: Session, year: int, month: int, now: datetime = None) -> list[DayAvailability]:
    """Availability for the full calendar grid of a month."""
    grid = calendar_grid(year, month)
    return get_range_availability(db, grid[0], grid[-1], now)


def get_booked_pax(db: Session, target_date: date, session_id: str) -> int:
    """Active pax booked for one session on one day."""
    total = db.query(func.coalesce(func.sum(Booking.pax_count), 0)).filter(
        Booking.booking_date == target_date,
        Booking.session_id == session_id,
        Booking.status != BookingStatus.CANCELLED,
    ).scalar()
    return int(total or 0)


def get_override(db: Session, target_date: date, session_id: str) -> Optional[DayOverride]:
    return db.query(DayOverride).filter(
        DayOverride.date == target_date,
        DayOverride.session_id == session_id,
    ).first()


# ============== OVERRIDE OPERATIONS ==============

def _override_values(
    target_date: date,
    session_id: str,
    is_closed: bool,
    custom_capacity: Optional[int],
    closure_reason: Optional[str],
) -> dict:
    """Normalise override fields: closed rows carry no capacity, open rows no reason."""
    if custom_capacity is not None and custom_capacity < 0:
        raise ValidationError("custom_capacity must not be negative")

    return {
        "date": target_date,
        "session_id": session_id,
        "is_closed": bool(is_closed),
        "custom_capacity": None if is_closed else custom_capacity,
        "closure_reason": (closure_reason or None) if is_closed else None,
    }


def _upsert_override_row(db: Session, values: dict) -> None:
    """
    Insert or update the override keyed on (date, session_id) without
    committing. Uses the database's native upsert where available so two
    concurrent writers never hit a duplicate-key error.
    """
    dialect = db.get_bind().dialect.name

    if dialect in ("postgresql", "sqlite"):
        insert = pg_insert if dialect == "postgresql" else sqlite_insert
        stmt = insert(DayOverride).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["date", "session_id"],
            set_={
                "is_closed": stmt.excluded.is_closed,
                "custom_capacity": stmt.excluded.custom_capacity,
                "closure_reason": stmt.excluded.closure_reason,
                "updated_at": func.now(),
            },
        )
        db.execute(stmt)
        return

    existing = db.query(DayOverride).filter(
        DayOverride.date == values["date"],
        DayOverride.session_id == values["session_id"],
    ).with_for_update().first()
    if existing:
        existing.is_closed = values["is_closed"]
        existing.custom_capacity = values["custom_capacity"]
        existing.closure_reason = values["closure_reason"]
    else:
        db.add(DayOverride(**values))
    db.flush()


def upsert_override(
    db: Session,
    target_date: date,
    session_id: str,
    is_closed: bool = False,
    custom_capacity: Optional[int] = None,
    closure_reason: Optional[str] = None,
    now: datetime = None,
) -> DayOverride:
    """
    Create or replace the override for one session on one day.

    Applying the same override twice yields the same single row.

    Raises:
        ValidationError: unknown session or negative capacity
        LockedError: the session is past its cutoff
    """
    now = now or local_now()
    session = get_session(db, session_id)
    values = _override_values(target_date, session_id, is_closed, custom_capacity, closure_reason)
    assert_unlocked(target_date, session, now)

    try:
        _upsert_override_row(db, values)
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(
        f"Override saved for {session_id} on {target_date}: "
        f"closed={values['is_closed']} capacity={values['custom_capacity']}"
    )
    db.expire_all()
    return get_override(db, target_date, session_id)


def quick_close_day(
    db: Session,
    target_date: date,
    reason: Optional[str] = None,
    now: datetime = None,
) -> list[DayOverride]:
    """
    Close every session on a date in a single transaction.

    Bookings are left untouched; only override rows are written. If any
    session is locked, nothing is written.
    """
    now = now or local_now()
    sessions = get_sessions(db)
    if not sessions:
        raise ValidationError("No class sessions are configured")

    for session in sessions:
        assert_unlocked(target_date, session, now)

    try:
        for session in sessions:
            _upsert_override_row(
                db, _override_values(target_date, session.id, True, None, reason)
            )
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(f"Closed all sessions on {target_date} (reason: {reason})")
    db.expire_all()
    return db.query(DayOverride).filter(DayOverride.date == target_date).order_by(
        DayOverride.session_id
    ).all()


def bulk_upsert_overrides(
    db: Session,
    dates: Iterable[date],
    session_ids: Optional[list[str]] = None,
    is_closed: bool = False,
    closure_reason: Optional[str] = None,
    extra_seats: int = 0,
    now: datetime = None,
) -> list[DayOverride]:
    """
    Apply one override to many dates at once.

    Days that already hold bookings are rejected as a whole: bulk edits are
    meant for empty days. For open overrides each day's capacity becomes
    its current effective capacity plus extra_seats.

    Args:
        dates: Dates to update
        session_ids: Sessions to apply to (None = all sessions)
        is_closed: Close the sessions instead of setting capacity
        closure_reason: Reason shown for closed sessions
        extra_seats: Seats added to (or removed from) the current capacity
    """
    now = now or local_now()
    dates = sorted(set(dates))
    if not dates:
        raise ValidationError("No dates selected")

    if session_ids:
        sessions = [get_session(db, session_id) for session_id in session_ids]
    else:
        sessions = get_sessions(db)

    busy = db.query(Booking.booking_date).filter(
        Booking.booking_date.in_(dates),
        Booking.status != BookingStatus.CANCELLED,
    ).distinct().all()
    if busy:
        busy_dates = ", ".join(sorted(row[0].isoformat() for row in busy))
        raise ValidationError(f"Dates with bookings cannot be bulk edited: {busy_dates}")

    existing = {
        (o.date, o.session_id): o
        for o in db.query(DayOverride).filter(DayOverride.date.in_(dates)).all()
    }

    payloads = []
    for day in dates:
        for session in sessions:
            assert_unlocked(day, session, now)
            capacity = None
            if not is_closed:
                current = compute_session_stats(session, 0, existing.get((day, session.id)), False)
                capacity = current.capacity + extra_seats
                if capacity < 0:
                    raise ValidationError(
                        f"Capacity for {session.id} on {day} would become negative"
                    )
            payloads.append(_override_values(day, session.id, is_closed, capacity, closure_reason))

    try:
        for values in payloads:
            _upsert_override_row(db, values)
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(f"Bulk override applied to {len(dates)} dates x {len(sessions)} sessions")
    db.expire_all()
    return db.query(DayOverride).filter(
        DayOverride.date.in_(dates),
        DayOverride.session_id.in_([s.id for s in sessions]),
    ).order_by(DayOverride.date, DayOverride.session_id).all()
