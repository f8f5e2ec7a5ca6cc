"""
Driver dispatch state machine.

Every stop (an active booking) moves through a fixed sequence:

    waiting -> driver_en_route -> driver_arrived -> on_board -> dropped_off

Transitions are conditional writes guarded by the state the caller last
saw, so two actors working from the same stale read cannot both apply a
transition. When a guest boards, the next waiting stop of the same session
is dispatched to the same driver in the same transaction (chain reaction).
"""
import logging
from datetime import date, datetime
from typing import Optional

from sqlalchemy import and_, case, func, not_, or_
from sqlalchemy.orm import Session

from availability import get_session
from config import local_now
from db_models import Booking, BookingStatus, DispatchEvent, TransportStatus
from db_service import get_booking_by_id, require_driver
from errors import ConflictError, NotFoundError, ValidationError
from models import RoutePhase, RouteSummary

logger = logging.getLogger(__name__)


TRANSPORT_SEQUENCE = [
    TransportStatus.WAITING,
    TransportStatus.DRIVER_EN_ROUTE,
    TransportStatus.DRIVER_ARRIVED,
    TransportStatus.ON_BOARD,
    TransportStatus.DROPPED_OFF,
]

NEXT_STATUS = {
    TransportStatus.WAITING: TransportStatus.DRIVER_EN_ROUTE,
    TransportStatus.DRIVER_EN_ROUTE: TransportStatus.DRIVER_ARRIVED,
    TransportStatus.DRIVER_ARRIVED: TransportStatus.ON_BOARD,
    TransportStatus.ON_BOARD: TransportStatus.DROPPED_OFF,
    TransportStatus.DROPPED_OFF: None,
}

PICKUP_PHASE_STATUSES = {
    TransportStatus.WAITING,
    TransportStatus.DRIVER_EN_ROUTE,
    TransportStatus.DRIVER_ARRIVED,
}


def status_rank(status: TransportStatus) -> int:
    return TRANSPORT_SEQUENCE.index(status)


def parse_status(value) -> TransportStatus:
    """Accept a TransportStatus or its string value."""
    if isinstance(value, TransportStatus):
        return value
    try:
        return TransportStatus(value)
    except ValueError:
        raise ValidationError(f"Unknown transport status: {value!r}")


def stop_order_key(booking: Booking) -> tuple:
    """
    Route position of a stop: route_order, then creation time, then id.
    Tied route_order values therefore still have a deterministic successor.
    """
    created = booking.created_at.timestamp() if booking.created_at else 0.0
    return (booking.route_order, created, booking.id)


def _claimable_by(driver_id: str):
    """Stops nobody owns yet, or already owned by this driver."""
    return or_(Booking.assigned_driver_id.is_(None), Booking.assigned_driver_id == driver_id)


def _record_event(
    db: Session,
    booking_id: int,
    from_status: TransportStatus,
    to_status: TransportStatus,
    driver_id: Optional[str],
    is_automatic: bool = False,
) -> None:
    db.add(DispatchEvent(
        booking_id=booking_id,
        from_status=from_status,
        to_status=to_status,
        driver_id=driver_id,
        is_automatic=is_automatic,
    ))


def _no_op(booking: Booking) -> dict:
    return {
        "booking": booking,
        "changed": False,
        "previous_status": booking.transport_status,
        "side_effects": [],
        "chained_booking": None,
    }


def _check_owner(booking: Booking, driver_id: str) -> None:
    if booking.assigned_driver_id and booking.assigned_driver_id != driver_id:
        logger.warning(
            f"Driver {driver_id} tried to move {booking.reference} owned by {booking.assigned_driver_id}"
        )
        raise ConflictError(
            f"Booking {booking.reference} is assigned to another driver"
        )


def _dispatch_next_stop(db: Session, boarded: Booking, driver_id: str) -> Optional[Booking]:
    """
    Chain reaction: claim the next waiting stop after `boarded` for the
    same driver and move it to driver_en_route. Runs inside the caller's
    transaction; a candidate claimed concurrently is skipped.
    """
    candidates = db.query(Booking).filter(
        Booking.booking_date == boarded.booking_date,
        Booking.session_id == boarded.session_id,
        Booking.status == BookingStatus.ACTIVE,
        Booking.transport_status == TransportStatus.WAITING,
        Booking.id != boarded.id,
        _claimable_by(driver_id),
    ).order_by(
        Booking.route_order, Booking.created_at, Booking.id
    ).with_for_update().all()

    boarded_key = stop_order_key(boarded)
    for candidate in sorted(candidates, key=stop_order_key):
        if stop_order_key(candidate) <= boarded_key:
            continue

        claimed = db.query(Booking).filter(
            Booking.id == candidate.id,
            Booking.status == BookingStatus.ACTIVE,
            Booking.transport_status == TransportStatus.WAITING,
            _claimable_by(driver_id),
        ).update({
            Booking.transport_status: TransportStatus.DRIVER_EN_ROUTE,
            Booking.assigned_driver_id: driver_id,
        }, synchronize_session=False)

        if claimed:
            _record_event(
                db, candidate.id, TransportStatus.WAITING,
                TransportStatus.DRIVER_EN_ROUTE, driver_id, is_automatic=True,
            )
            logger.info(f"Chain dispatch: {candidate.reference} now en route with driver {driver_id}")
            return candidate

    return None


def _advance_booking(
    db: Session,
    booking: Booking,
    driver_id: str,
    expected: TransportStatus,
    now: datetime,
) -> dict:
    """Apply one transition without committing. See advance()."""
    if booking.status == BookingStatus.CANCELLED:
        raise ConflictError(f"Booking {booking.reference} has been cancelled")
    _check_owner(booking, driver_id)

    current = booking.transport_status
    if status_rank(current) > status_rank(expected):
        return _no_op(booking)
    if status_rank(current) < status_rank(expected):
        raise ConflictError(
            f"Booking {booking.reference} is {current.value}, not {expected.value}"
        )

    target = NEXT_STATUS[expected]
    if target is None:
        return _no_op(booking)

    values = {
        Booking.transport_status: target,
        Booking.assigned_driver_id: driver_id,
    }
    side_effects = []
    if booking.assigned_driver_id is None:
        side_effects.append({"kind": "claimed", "booking_id": booking.id})
    if target == TransportStatus.ON_BOARD:
        values[Booking.actual_pickup_time] = now
        side_effects.append({"kind": "pickup_time_set", "booking_id": booking.id})
    elif target == TransportStatus.DROPPED_OFF:
        values[Booking.actual_dropoff_time] = now
        side_effects.append({"kind": "dropoff_time_set", "booking_id": booking.id})

    updated = db.query(Booking).filter(
        Booking.id == booking.id,
        Booking.status == BookingStatus.ACTIVE,
        Booking.transport_status == expected,
        _claimable_by(driver_id),
    ).update(values, synchronize_session=False)

    if not updated:
        # Lost the race: look at what the other actor wrote
        db.rollback()
        db.refresh(booking)
        if booking.status == BookingStatus.CANCELLED:
            raise ConflictError(f"Booking {booking.reference} has been cancelled")
        _check_owner(booking, driver_id)
        if status_rank(booking.transport_status) > status_rank(expected):
            return _no_op(booking)
        raise ConflictError(
            f"Booking {booking.reference} is {booking.transport_status.value}, not {expected.value}"
        )

    _record_event(db, booking.id, expected, target, driver_id)
    logger.info(f"Booking {booking.reference}: {expected.value} -> {target.value} (driver {driver_id})")

    chained = None
    if target == TransportStatus.ON_BOARD:
        chained = _dispatch_next_stop(db, booking, driver_id)
        if chained is not None:
            side_effects.append({"kind": "chain_dispatch", "booking_id": chained.id})

    return {
        "booking": booking,
        "changed": True,
        "previous_status": expected,
        "side_effects": side_effects,
        "chained_booking": chained,
    }


def _commit_result(db: Session, result: dict) -> dict:
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(result["booking"])
    if result["chained_booking"] is not None:
        db.refresh(result["chained_booking"])
    return result


def advance(
    db: Session,
    booking_id: int,
    driver_id: str,
    expected_from,
    now: datetime = None,
) -> dict:
    """
    Move a stop one step forward.

    Args:
        db: Database session
        booking_id: The stop to move
        driver_id: Driver performing the action (claims the stop if unowned)
        expected_from: The status the caller believes the stop is in
        now: Timestamp used for actual pickup/drop-off times

    Returns:
        dict with 'booking', 'changed' (False when the stop was already at
        or past the target), 'previous_status', 'side_effects' and
        'chained_booking' (stop dispatched by the chain reaction, if any)

    Raises:
        NotFoundError: unknown booking or driver
        ValidationError: unknown status name
        ConflictError: stop is behind expected_from, cancelled, or owned
            by another driver
    """
    now = now or local_now()
    expected = parse_status(expected_from)
    require_driver(db, driver_id)

    booking = get_booking_by_id(db, booking_id)
    if not booking:
        raise NotFoundError(f"Booking {booking_id} not found")

    result = _advance_booking(db, booking, driver_id, expected, now)
    if not result["changed"]:
        db.rollback()
        return result
    return _commit_result(db, result)


def _phase_filter(query, phase: RoutePhase):
    pickup_statuses = list(PICKUP_PHASE_STATUSES)
    on_board_for_dropoff = and_(
        Booking.transport_status == TransportStatus.ON_BOARD,
        Booking.requires_dropoff.is_(True),
    )
    if phase == RoutePhase.PICKUP:
        return query.filter(Booking.transport_status.in_(pickup_statuses))
    if phase == RoutePhase.DROPOFF:
        return query.filter(on_board_for_dropoff)
    return query.filter(
        Booking.transport_status.notin_(pickup_statuses),
        not_(on_board_for_dropoff),
    )


def list_stops(
    db: Session,
    target_date: date,
    session_id: str,
    driver_id: str = None,
    phase: Optional[RoutePhase] = None,
) -> list[Booking]:
    """
    Active stops of a session, optionally for one driver or one route phase.

    Pickup order is route_order, then requested pickup time. Drop-off
    stops are grouped by drop-off location so guests going to the same
    hotel are listed together.
    """
    get_session(db, session_id)

    query = db.query(Booking).filter(
        Booking.booking_date == target_date,
        Booking.session_id == session_id,
        Booking.status == BookingStatus.ACTIVE,
    )
    if driver_id:
        query = query.filter(Booking.assigned_driver_id == driver_id)
    if phase is not None:
        query = _phase_filter(query, phase)

    if phase == RoutePhase.DROPOFF:
        return query.order_by(
            func.coalesce(Booking.dropoff_hotel, Booking.hotel_name, ""),
            Booking.route_order,
            Booking.id,
        ).all()

    return query.order_by(
        Booking.route_order,
        Booking.pickup_time.is_(None),
        Booking.pickup_time,
        Booking.created_at,
        Booking.id,
    ).all()


def route_summary(stops: list[Booking]) -> RouteSummary:
    """
    Phase and pax progress of a list of stops.

    Guests on board who need no drop-off do not keep the route in the
    DROPOFF phase.
    """
    if any(s.transport_status in PICKUP_PHASE_STATUSES for s in stops):
        phase = RoutePhase.PICKUP
    elif any(s.transport_status == TransportStatus.ON_BOARD and s.requires_dropoff for s in stops):
        phase = RoutePhase.DROPOFF
    else:
        phase = RoutePhase.COMPLETE

    completed = [
        s for s in stops
        if s.transport_status in (TransportStatus.ON_BOARD, TransportStatus.DROPPED_OFF)
    ]
    return RouteSummary(
        phase=phase,
        total_stops=len(stops),
        total_pax=sum(s.pax_count or 0 for s in stops),
        completed_pax=sum(s.pax_count or 0 for s in completed),
    )


def start_route(
    db: Session,
    target_date: date,
    session_id: str,
    driver_id: str,
    now: datetime = None,
) -> dict:
    """
    Dispatch the first waiting stop of a session to a driver.

    Raises:
        NotFoundError: no waiting stop this driver can take
    """
    now = now or local_now()
    get_session(db, session_id)
    require_driver(db, driver_id)

    first = db.query(Booking).filter(
        Booking.booking_date == target_date,
        Booking.session_id == session_id,
        Booking.status == BookingStatus.ACTIVE,
        Booking.transport_status == TransportStatus.WAITING,
        _claimable_by(driver_id),
    ).order_by(Booking.route_order, Booking.created_at, Booking.id).first()

    if not first:
        raise NotFoundError(f"Nothing to start for {session_id} on {target_date.isoformat()}")

    result = _advance_booking(db, first, driver_id, TransportStatus.WAITING, now)
    if not result["changed"]:
        db.rollback()
        return result
    logger.info(f"Route started for {session_id} on {target_date} by driver {driver_id}")
    return _commit_result(db, result)


def arrive_destination(
    db: Session,
    target_date: date,
    session_id: str,
    driver_id: str = None,
    now: datetime = None,
) -> list[int]:
    """
    Drop off every on-board guest of a session in one transaction.

    Does not trigger chain reactions: remaining stops are already dispatched.

    Returns:
        Ids of the stops moved to dropped_off
    """
    now = now or local_now()
    get_session(db, session_id)

    query = db.query(Booking).filter(
        Booking.booking_date == target_date,
        Booking.session_id == session_id,
        Booking.status == BookingStatus.ACTIVE,
        Booking.transport_status == TransportStatus.ON_BOARD,
    )
    if driver_id:
        query = query.filter(Booking.assigned_driver_id == driver_id)
    on_board = query.order_by(Booking.id).with_for_update().all()

    if not on_board:
        db.rollback()
        return []

    ids = [stop.id for stop in on_board]
    try:
        updated = db.query(Booking).filter(
            Booking.id.in_(ids),
            Booking.transport_status == TransportStatus.ON_BOARD,
        ).update({
            Booking.transport_status: TransportStatus.DROPPED_OFF,
            Booking.actual_dropoff_time: now,
        }, synchronize_session=False)

        if updated != len(ids):
            raise ConflictError("Stops changed while arriving, reload and retry")

        for stop in on_board:
            _record_event(
                db, stop.id, TransportStatus.ON_BOARD, TransportStatus.DROPPED_OFF,
                stop.assigned_driver_id, is_automatic=True,
            )
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(f"Arrived at destination: {len(ids)} stops dropped off for {session_id} on {target_date}")
    return ids


def assign_driver(
    db: Session,
    booking_id: int,
    driver_id: str = None,
    route_order: int = None,
    unassign: bool = False,
) -> Booking:
    """
    Manager assignment of a stop to a driver and/or a route position.

    Ownership can only change while the stop is still waiting.

    Raises:
        NotFoundError: unknown booking or driver
        ValidationError: nothing to change, negative order, cancelled booking
        ConflictError: stop already dispatched
    """
    booking = get_booking_by_id(db, booking_id)
    if not booking:
        raise NotFoundError(f"Booking {booking_id} not found")
    if booking.status == BookingStatus.CANCELLED:
        raise ValidationError("Cannot assign a cancelled booking")

    values = {}
    changes_owner = unassign or driver_id is not None
    if unassign:
        values[Booking.assigned_driver_id] = None
    elif driver_id is not None:
        require_driver(db, driver_id)
        values[Booking.assigned_driver_id] = driver_id

    if route_order is not None:
        if route_order < 0:
            raise ValidationError("route_order must not be negative")
        values[Booking.route_order] = route_order

    if not values:
        raise ValidationError("Nothing to update")

    query = db.query(Booking).filter(
        Booking.id == booking_id,
        Booking.status == BookingStatus.ACTIVE,
    )
    if changes_owner:
        query = query.filter(Booking.transport_status == TransportStatus.WAITING)

    if not query.update(values, synchronize_session=False):
        db.rollback()
        raise ConflictError(f"Booking {booking.reference} is already dispatched")

    db.commit()
    db.refresh(booking)
    logger.info(
        f"Booking {booking.reference} assigned to {booking.assigned_driver_id} "
        f"at route position {booking.route_order}"
    )
    return booking


def upcoming_sessions(db: Session, today: date, limit: int = 10) -> list[dict]:
    """
    Next sessions that have active bookings, with how many stops still
    lack a driver.
    """
    unassigned = func.sum(case((Booking.assigned_driver_id.is_(None), 1), else_=0))
    rows = db.query(
        Booking.booking_date,
        Booking.session_id,
        func.sum(Booking.pax_count),
        func.count(Booking.id),
        unassigned,
    ).filter(
        Booking.booking_date >= today,
        Booking.status == BookingStatus.ACTIVE,
    ).group_by(
        Booking.booking_date, Booking.session_id
    ).order_by(
        Booking.booking_date, Booking.session_id
    ).limit(limit).all()

    return [
        {
            "date": row[0],
            "session_id": row[1],
            "total_pax": int(row[2] or 0),
            "stop_count": int(row[3] or 0),
            "unassigned_count": int(row[4] or 0),
        }
        for row in rows
    ]
