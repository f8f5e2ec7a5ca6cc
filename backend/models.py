"""
Request/response models for the pickup logistics API.
"""
from datetime import date, time, datetime
from typing import Optional, Literal
from pydantic import BaseModel, Field, field_validator
from enum import Enum


class SessionStatusType(str, Enum):
    """Bookability of a session on a given day."""
    OPEN = "OPEN"
    FULL = "FULL"
    CLOSED = "CLOSED"


class RoutePhase(str, Enum):
    """What a driver's route is currently doing."""
    PICKUP = "PICKUP"
    DROPOFF = "DROPOFF"
    COMPLETE = "COMPLETE"


class OverrideInfo(BaseModel):
    """A stored day override as shown alongside session stats."""
    is_closed: bool
    custom_capacity: Optional[int] = None
    closure_reason: Optional[str] = None


class SessionStats(BaseModel):
    """Capacity picture for one session on one day."""
    session_id: str
    booked: int
    capacity: int
    remaining: int
    status: SessionStatusType
    is_locked: bool
    closure_reason: Optional[str] = None
    override: Optional[OverrideInfo] = None


class DayAvailability(BaseModel):
    """All sessions for one day."""
    date: date
    sessions: dict[str, SessionStats]
    has_bookings: bool


class RangeAvailabilityResponse(BaseModel):
    start_date: date
    end_date: date
    days: list[DayAvailability]


class ClassSessionResponse(BaseModel):
    id: str
    name: str
    max_capacity: int
    cutoff_hour: int

    class Config:
        from_attributes = True


class OverrideRequest(BaseModel):
    """Upsert a day override for one session."""
    is_closed: bool = False
    custom_capacity: Optional[int] = None
    closure_reason: Optional[str] = None


class QuickCloseRequest(BaseModel):
    reason: Optional[str] = None


class BulkOverrideRequest(BaseModel):
    """Apply the same override to many dates at once."""
    dates: list[date] = Field(min_length=1)
    session_scope: str = "all"  # "all" or a session id
    is_closed: bool = False
    closure_reason: Optional[str] = None
    extra_seats: int = 0  # Added to each day's current capacity when open


class OverrideResponse(BaseModel):
    date: date
    session_id: str
    is_closed: bool
    custom_capacity: Optional[int] = None
    closure_reason: Optional[str] = None

    class Config:
        from_attributes = True


class ZoneResolveRequest(BaseModel):
    """Either coordinates or a Google Maps link."""
    lat: Optional[float] = Field(default=None, ge=-90, le=90)
    lng: Optional[float] = Field(default=None, ge=-180, le=180)
    map_link: Optional[str] = None


class ZoneResolveResponse(BaseModel):
    lat: float
    lng: float
    zone_id: Optional[str] = None
    zone_name: Optional[str] = None


class PickupZoneResponse(BaseModel):
    id: str
    name: str
    color_code: Optional[str] = None
    display_order: int
    polygon: list[list[float]]
    morning_pickup_time: Optional[time] = None
    morning_pickup_end: Optional[time] = None
    evening_pickup_time: Optional[time] = None
    evening_pickup_end: Optional[time] = None

    class Config:
        from_attributes = True


class BookingRequest(BaseModel):
    """Request to book seats in a class session."""
    booking_date: date
    session_id: str
    pax_count: int = Field(gt=0)
    guest_name: Optional[str] = None
    phone_number: Optional[str] = None
    customer_note: Optional[str] = None
    hotel_name: Optional[str] = None
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    pickup_time: Optional[time] = None
    requires_dropoff: bool = True
    dropoff_hotel: Optional[str] = None

    @field_validator('pickup_time', mode='before')
    @classmethod
    def parse_time(cls, v):
        if v is None or isinstance(v, time):
            return v
        if isinstance(v, str):
            parts = v.split(':')
            return time(int(parts[0]), int(parts[1]))
        return v


class StopResponse(BaseModel):
    """A booking as seen from the dispatch side."""
    id: int
    reference: str
    booking_date: date
    session_id: str
    pax_count: int
    status: str
    guest_name: Optional[str] = None
    hotel_name: Optional[str] = None
    pickup_zone_id: Optional[str] = None
    pickup_time: Optional[time] = None
    route_order: int
    requires_dropoff: bool = True
    dropoff_hotel: Optional[str] = None
    assigned_driver_id: Optional[str] = None
    transport_status: str
    actual_pickup_time: Optional[datetime] = None
    actual_dropoff_time: Optional[datetime] = None

    class Config:
        from_attributes = True

    @field_validator('status', 'transport_status', mode='before')
    @classmethod
    def enum_value(cls, v):
        return getattr(v, "value", v)


class BookingResponse(BaseModel):
    success: bool
    message: str
    booking: Optional[StopResponse] = None


class RouteSummary(BaseModel):
    phase: RoutePhase
    total_stops: int
    total_pax: int
    completed_pax: int


class StopsResponse(BaseModel):
    date: date
    session_id: str
    driver_id: Optional[str] = None
    poll_interval_seconds: int
    summary: RouteSummary
    stops: list[StopResponse]


TransportStatusName = Literal[
    "waiting", "driver_en_route", "driver_arrived", "on_board", "dropped_off"
]


class AdvanceRequest(BaseModel):
    """Move a stop one step forward, guarded by the state the caller saw."""
    driver_id: str
    expected_from: TransportStatusName


class SideEffect(BaseModel):
    kind: str  # "claimed", "pickup_time_set", "dropoff_time_set", "chain_dispatch"
    booking_id: int


class AdvanceResponse(BaseModel):
    changed: bool
    previous_status: str
    booking: StopResponse
    side_effects: list[SideEffect] = []
    chained_booking: Optional[StopResponse] = None


class StartRouteRequest(BaseModel):
    driver_id: str


class ArriveDestinationResponse(BaseModel):
    dropped_off: int
    booking_ids: list[int]


class AssignmentRequest(BaseModel):
    """Manager assignment of a stop to a driver and/or a route position."""
    driver_id: Optional[str] = None
    route_order: Optional[int] = Field(default=None, ge=0)
    unassign: bool = False


class DriverRequest(BaseModel):
    id: str = Field(min_length=1, max_length=50)
    full_name: str = Field(min_length=1)
    phone_number: Optional[str] = None


class DriverResponse(BaseModel):
    id: str
    full_name: str
    is_active: bool

    class Config:
        from_attributes = True


class UpcomingSession(BaseModel):
    date: date
    session_id: str
    total_pax: int
    stop_count: int
    unassigned_count: int
