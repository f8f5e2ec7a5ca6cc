"""
SQLAlchemy database models for the pickup logistics core.
"""
from sqlalchemy import (
    Column, Integer, String, DateTime, Date, Time, Float,
    ForeignKey, Enum, Boolean, Text, UniqueConstraint, CheckConstraint
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from database import Base
import enum
import json


# Route position given to stops nobody has ordered yet
DEFAULT_ROUTE_ORDER = 99


class BookingStatus(enum.Enum):
    """Lifecycle status of a booking."""
    ACTIVE = "active"
    CANCELLED = "cancelled"       # Never counts toward capacity or dispatch


class TransportStatus(enum.Enum):
    """Pickup progress of a single stop, in route order."""
    WAITING = "waiting"
    DRIVER_EN_ROUTE = "driver_en_route"
    DRIVER_ARRIVED = "driver_arrived"
    ON_BOARD = "on_board"
    DROPPED_OFF = "dropped_off"   # Terminal


class ClassSession(Base):
    """Recurring class time-slot (reference data)."""
    __tablename__ = "class_sessions"

    id = Column(String(50), primary_key=True)  # e.g. "morning_class"
    name = Column(String(100), nullable=False)
    max_capacity = Column(Integer, nullable=False, default=12)

    # Local hour at which same-day changes lock (kitchen prep starts)
    cutoff_hour = Column(Integer, nullable=False)

    display_order = Column(Integer, default=0, nullable=False)

    __table_args__ = (
        CheckConstraint('max_capacity >= 0', name='check_session_capacity_positive'),
        CheckConstraint('cutoff_hour >= 0 AND cutoff_hour <= 24', name='check_cutoff_hour_range'),
    )

    def __repr__(self):
        return f"<ClassSession {self.id} ({self.max_capacity} seats, cutoff {self.cutoff_hour}:00)>"


class DayOverride(Base):
    """Per-date, per-session exception to base capacity, or a closure."""
    __tablename__ = "class_calendar_overrides"

    id = Column(Integer, primary_key=True, index=True)
    date = Column(Date, nullable=False, index=True)
    session_id = Column(String(50), ForeignKey("class_sessions.id"), nullable=False)

    is_closed = Column(Boolean, default=False, nullable=False)
    custom_capacity = Column(Integer, nullable=True)
    closure_reason = Column(Text, nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    session = relationship("ClassSession")

    __table_args__ = (
        UniqueConstraint('date', 'session_id', name='uq_override_date_session'),
        CheckConstraint('custom_capacity IS NULL OR custom_capacity >= 0', name='check_custom_capacity_positive'),
    )

    def __repr__(self):
        state = "closed" if self.is_closed else f"capacity={self.custom_capacity}"
        return f"<DayOverride {self.date} {self.session_id} {state}>"


class PickupZone(Base):
    """Geographic polygon grouping pickup locations for driver routing."""
    __tablename__ = "pickup_zones"

    id = Column(String(50), primary_key=True)  # e.g. "azure"
    name = Column(String(100), nullable=False)
    color_code = Column(String(20))
    description = Column(Text)

    # JSON ring of [lng, lat] vertices
    polygon_json = Column(Text, nullable=False)

    # Resolution priority - lower wins when polygons overlap
    display_order = Column(Integer, default=0, nullable=False)

    # Guest-facing pickup windows (guidance only)
    morning_pickup_time = Column(Time)
    morning_pickup_end = Column(Time)
    evening_pickup_time = Column(Time)
    evening_pickup_end = Column(Time)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    @property
    def polygon(self):
        """Vertex ring as a list of [lng, lat] pairs."""
        return json.loads(self.polygon_json) if self.polygon_json else []

    @polygon.setter
    def polygon(self, ring):
        self.polygon_json = json.dumps([[float(v[0]), float(v[1])] for v in ring])

    def __repr__(self):
        return f"<PickupZone {self.id} (priority {self.display_order})>"


class Driver(Base):
    """Driver running pickup routes. No capacity limits are modelled."""
    __tablename__ = "drivers"

    id = Column(String(50), primary_key=True)
    full_name = Column(String(200), nullable=False)
    phone_number = Column(String(30))
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    def __repr__(self):
        return f"<Driver {self.full_name} ({self.id})>"


class Booking(Base):
    """A guest's seat in a class session plus their pickup stop."""
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True, index=True)
    reference = Column(String(20), unique=True, nullable=False, index=True)

    booking_date = Column(Date, nullable=False, index=True)
    session_id = Column(String(50), ForeignKey("class_sessions.id"), nullable=False, index=True)
    pax_count = Column(Integer, nullable=False)
    status = Column(Enum(BookingStatus), default=BookingStatus.ACTIVE, nullable=False)

    # Guest contact
    guest_name = Column(String(200))
    phone_number = Column(String(30))
    customer_note = Column(Text)

    # Pickup location
    hotel_name = Column(String(255))
    latitude = Column(Float)
    longitude = Column(Float)
    pickup_zone_id = Column(String(50), ForeignKey("pickup_zones.id"), nullable=True)
    pickup_time = Column(Time)  # Requested pickup time
    route_order = Column(Integer, default=DEFAULT_ROUTE_ORDER, nullable=False)

    # Drop-off after class (defaults to the pickup hotel)
    requires_dropoff = Column(Boolean, default=True, nullable=False)
    dropoff_hotel = Column(String(255))

    # Dispatch
    assigned_driver_id = Column(String(50), ForeignKey("drivers.id"), nullable=True, index=True)
    transport_status = Column(
        Enum(TransportStatus), default=TransportStatus.WAITING, nullable=False
    )
    actual_pickup_time = Column(DateTime(timezone=True))
    actual_dropoff_time = Column(DateTime(timezone=True))

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    session = relationship("ClassSession")
    zone = relationship("PickupZone")
    driver = relationship("Driver")

    __table_args__ = (
        CheckConstraint('pax_count > 0', name='check_pax_positive'),
    )

    def __repr__(self):
        return f"<Booking {self.reference} - {self.status.value}/{self.transport_status.value}>"


class DispatchEvent(Base):
    """Audit trail of applied transport status transitions."""
    __tablename__ = "dispatch_events"

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False, index=True)

    from_status = Column(Enum(TransportStatus), nullable=False)
    to_status = Column(Enum(TransportStatus), nullable=False)
    driver_id = Column(String(50))

    # True for chain-reaction dispatches and bulk drop-offs
    is_automatic = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    booking = relationship("Booking")

    def __repr__(self):
        return f"<DispatchEvent {self.booking_id}: {self.from_status.value} -> {self.to_status.value}>"
