"""
Database service layer for bookings, zones, drivers and reference data.
"""
import logging
import random
import string
from datetime import date, time, datetime
from typing import Optional, List

from sqlalchemy.orm import Session

from availability import get_booked_pax, get_override, get_session, compute_session_stats
from config import get_settings, local_now
from db_models import (
    Booking, BookingStatus, ClassSession, Driver, PickupZone, TransportStatus,
)
from errors import ConflictError, NotFoundError, ValidationError
from lock_policy import assert_unlocked, is_locked
from models import SessionStatusType
from zone_resolver import load_zones_geojson, resolve_zone, validate_polygon

logger = logging.getLogger(__name__)


# Sessions created on an empty database
DEFAULT_SESSIONS = [
    {"id": "morning_class", "name": "Morning Class", "cutoff_hour": 10, "display_order": 0},
    {"id": "evening_class", "name": "Evening Class", "cutoff_hour": 17, "display_order": 1},
]


def generate_booking_reference() -> str:
    """Generate a unique booking reference like BK-ABC12345."""
    chars = ''.join(random.choices(string.ascii_uppercase, k=3))
    nums = ''.join(random.choices(string.digits, k=5))
    return f"BK-{chars}{nums}"


# ============== REFERENCE DATA ==============

def seed_sessions(db: Session, capacity: int = None) -> int:
    """Insert the default sessions if the table is empty. Returns rows added."""
    if db.query(ClassSession).count():
        return 0
    capacity = capacity if capacity is not None else get_settings().default_session_capacity
    for values in DEFAULT_SESSIONS:
        db.add(ClassSession(max_capacity=capacity, **values))
    db.commit()
    logger.info(f"Seeded {len(DEFAULT_SESSIONS)} class sessions")
    return len(DEFAULT_SESSIONS)


# ============== ZONE OPERATIONS ==============

def get_zones(db: Session) -> List[PickupZone]:
    """All pickup zones in resolution priority order."""
    return db.query(PickupZone).order_by(PickupZone.display_order, PickupZone.id).all()


def get_zone_by_id(db: Session, zone_id: str) -> Optional[PickupZone]:
    return db.query(PickupZone).filter(PickupZone.id == zone_id).first()


def upsert_zone(
    db: Session,
    zone_id: str,
    name: str,
    polygon: list,
    display_order: int = 0,
    color_code: str = None,
    description: str = None,
    morning_pickup_time: time = None,
    morning_pickup_end: time = None,
    evening_pickup_time: time = None,
    evening_pickup_end: time = None,
) -> tuple[PickupZone, bool]:
    """
    Create a zone or replace an existing one with the same id.

    Returns:
        tuple: (PickupZone, is_new)
    """
    ring = validate_polygon(polygon)

    zone = get_zone_by_id(db, zone_id)
    is_new = zone is None
    if is_new:
        zone = PickupZone(id=zone_id)
        db.add(zone)

    zone.name = name
    zone.polygon = ring
    zone.display_order = display_order
    zone.color_code = color_code
    zone.description = description
    zone.morning_pickup_time = morning_pickup_time
    zone.morning_pickup_end = morning_pickup_end
    zone.evening_pickup_time = evening_pickup_time
    zone.evening_pickup_end = evening_pickup_end

    db.commit()
    db.refresh(zone)
    return zone, is_new


def import_zones_from_geojson(db: Session, path) -> int:
    """Upsert every Polygon feature of a GeoJSON file. Returns zones written."""
    zones = load_zones_geojson(path)
    for values in zones:
        upsert_zone(db, zone_id=values.pop("id"), **values)
    logger.info(f"Imported {len(zones)} pickup zones from {path}")
    return len(zones)


def resolve_zone_for_point(db: Session, lat: float, lng: float) -> Optional[PickupZone]:
    """Resolve a coordinate against the stored zone set."""
    zones = get_zones(db)
    if not zones:
        raise NotFoundError("No pickup zones are configured")
    zone_id = resolve_zone(lat, lng, zones)
    if zone_id is None:
        return None
    return next(z for z in zones if z.id == zone_id)


# ============== DRIVER OPERATIONS ==============

def get_driver_by_id(db: Session, driver_id: str) -> Optional[Driver]:
    return db.query(Driver).filter(Driver.id == driver_id).first()


def get_active_drivers(db: Session) -> List[Driver]:
    return db.query(Driver).filter(Driver.is_active.is_(True)).order_by(Driver.full_name).all()


def create_driver(db: Session, driver_id: str, full_name: str, phone_number: str = None) -> Driver:
    """Register a driver. Raises ConflictError if the id is taken."""
    if get_driver_by_id(db, driver_id):
        raise ConflictError(f"Driver {driver_id} already exists")
    driver = Driver(id=driver_id, full_name=full_name, phone_number=phone_number, is_active=True)
    db.add(driver)
    db.commit()
    db.refresh(driver)
    logger.info(f"Driver {driver_id} registered")
    return driver


def require_driver(db: Session, driver_id: str) -> Driver:
    """Get an active driver or raise NotFoundError."""
    driver = get_driver_by_id(db, driver_id)
    if not driver or not driver.is_active:
        raise NotFoundError(f"Driver {driver_id} not found")
    return driver


# ============== BOOKING OPERATIONS ==============

def get_booking_by_id(db: Session, booking_id: int) -> Optional[Booking]:
    """Get booking by ID."""
    return db.query(Booking).filter(Booking.id == booking_id).first()


def get_booking_by_reference(db: Session, reference: str) -> Optional[Booking]:
    """Get booking by reference."""
    return db.query(Booking).filter(Booking.reference == reference).first()


def create_booking(
    db: Session,
    booking_date: date,
    session_id: str,
    pax_count: int,
    guest_name: str = None,
    phone_number: str = None,
    customer_note: str = None,
    hotel_name: str = None,
    latitude: float = None,
    longitude: float = None,
    pickup_time: time = None,
    requires_dropoff: bool = True,
    dropoff_hotel: str = None,
    now: datetime = None,
) -> Booking:
    """
    Book seats in a session.

    Re-checks the lock policy and remaining capacity at the write boundary
    and resolves the pickup zone when coordinates are given. The session
    row is locked for the duration of the check, and the seats are counted
    again after the insert is flushed, so two concurrent requests can never
    both take the last seats.

    Raises:
        ValidationError: bad pax, unknown session, closed or full session
        LockedError: the session is past its cutoff
    """
    now = now or local_now()
    if pax_count is None or pax_count <= 0:
        raise ValidationError("pax_count must be a positive integer")

    session = get_session(db, session_id, for_update=True)
    assert_unlocked(booking_date, session, now)

    stats = compute_session_stats(
        session,
        get_booked_pax(db, booking_date, session_id),
        get_override(db, booking_date, session_id),
        is_locked(booking_date, session, now),
    )
    if stats.status == SessionStatusType.CLOSED:
        raise ValidationError(
            f"Session {session_id} on {booking_date.isoformat()} is closed"
            + (f": {stats.closure_reason}" if stats.closure_reason else "")
        )
    if pax_count > stats.remaining:
        raise ValidationError(
            f"Only {stats.remaining} seats left for {session_id} on {booking_date.isoformat()}"
        )

    zone_id = None
    if latitude is not None and longitude is not None:
        zone_id = resolve_zone(latitude, longitude, get_zones(db))

    # Generate unique reference
    reference = generate_booking_reference()
    while get_booking_by_reference(db, reference):
        reference = generate_booking_reference()

    booking = Booking(
        reference=reference,
        booking_date=booking_date,
        session_id=session_id,
        pax_count=pax_count,
        status=BookingStatus.ACTIVE,
        guest_name=guest_name,
        phone_number=phone_number,
        customer_note=customer_note,
        hotel_name=hotel_name,
        latitude=latitude,
        longitude=longitude,
        pickup_zone_id=zone_id,
        pickup_time=pickup_time,
        requires_dropoff=requires_dropoff,
        dropoff_hotel=dropoff_hotel if requires_dropoff else None,
        transport_status=TransportStatus.WAITING,
    )
    try:
        db.add(booking)
        db.flush()
        booked = get_booked_pax(db, booking_date, session_id)
        if booked > stats.capacity:
            logger.warning(
                f"Rejected {pax_count} pax for {session_id} on {booking_date}: "
                f"{booked} booked against capacity {stats.capacity}"
            )
            raise ValidationError(
                f"Session {session_id} on {booking_date.isoformat()} filled up before the booking was saved"
            )
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(booking)

    logger.info(f"Booking {booking.reference}: {pax_count} pax, {session_id} on {booking_date} (zone {zone_id})")
    return booking


def cancel_booking(db: Session, booking_id: int, now: datetime = None) -> Booking:
    """
    Cancel a booking so it stops counting toward capacity and dispatch.

    Raises:
        NotFoundError: no such booking
        ValidationError: already cancelled
        ConflictError: pickup already started
        LockedError: the session is past its cutoff
    """
    now = now or local_now()
    booking = get_booking_by_id(db, booking_id)
    if not booking:
        raise NotFoundError(f"Booking {booking_id} not found")

    if booking.status == BookingStatus.CANCELLED:
        raise ValidationError("Booking is already cancelled")

    assert_unlocked(booking.booking_date, booking.session, now)

    updated = db.query(Booking).filter(
        Booking.id == booking_id,
        Booking.status == BookingStatus.ACTIVE,
        Booking.transport_status == TransportStatus.WAITING,
    ).update({Booking.status: BookingStatus.CANCELLED}, synchronize_session=False)

    if not updated:
        db.rollback()
        raise ConflictError(f"Booking {booking.reference} changed before it could be cancelled")

    db.commit()
    db.refresh(booking)
    logger.info(f"Booking {booking.reference} cancelled")
    return booking
