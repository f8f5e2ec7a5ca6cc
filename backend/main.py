"""
FastAPI application for the cooking school pickup logistics core.

Provides REST API endpoints for the booking site, the admin calendar and
the driver console to:
- Read session availability per day, range or calendar month
- Manage day overrides (capacity changes, closures, bulk edits)
- Resolve pickup zones from coordinates or map links
- Create and cancel bookings
- Run pickup routes (advance stops, start route, arrive at school)
- Assign stops to drivers
"""
import logging
from datetime import date
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, Depends
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from models import (
    AdvanceRequest,
    AdvanceResponse,
    ArriveDestinationResponse,
    AssignmentRequest,
    BookingRequest,
    BookingResponse,
    BulkOverrideRequest,
    ClassSessionResponse,
    DayAvailability,
    DriverRequest,
    DriverResponse,
    OverrideRequest,
    OverrideResponse,
    PickupZoneResponse,
    QuickCloseRequest,
    RangeAvailabilityResponse,
    RoutePhase,
    SideEffect,
    StartRouteRequest,
    StopResponse,
    StopsResponse,
    UpcomingSession,
    ZoneResolveRequest,
    ZoneResolveResponse,
)
from config import get_settings, local_now
from database import get_db, init_db, SessionLocal
from errors import PickupError
from zone_resolver import extract_gps
import availability
import db_service
import dispatch

logger = logging.getLogger(__name__)


# Initialize FastAPI app
app = FastAPI(
    title="Pickup Logistics API",
    description="Class capacity, pickup zones and driver dispatch for a cooking school",
    version="1.0.0",
)

settings = get_settings()

# Configure CORS for frontend access
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173",  # Vite dev server
        "http://localhost:3000",
        settings.frontend_url,
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Zones shipped with the service, used when no GeoJSON path is configured
DEFAULT_ZONES_PATH = Path(__file__).parent / "data" / "pickup_zones.geojson"


def seed_reference_data():
    """Insert default sessions and pickup zones into an empty database."""
    db = SessionLocal()
    try:
        db_service.seed_sessions(db)
        if not db_service.get_zones(db):
            path = Path(settings.zones_geojson_path) if settings.zones_geojson_path else DEFAULT_ZONES_PATH
            if path.exists():
                db_service.import_zones_from_geojson(db, path)
            else:
                logger.warning(f"Zone file {path} not found, zone resolution disabled")
    finally:
        db.close()


@app.on_event("startup")
async def startup_event():
    """Initialize database and reference data on startup."""
    init_db()
    if settings.seed_reference_data:
        seed_reference_data()


def raise_http(e: PickupError):
    """Turn a core error into the matching HTTP response."""
    raise HTTPException(status_code=e.status_code, detail=str(e))


def stop_response(booking) -> Optional[StopResponse]:
    if booking is None:
        return None
    return StopResponse.model_validate(booking)


def advance_response(result: dict) -> AdvanceResponse:
    return AdvanceResponse(
        changed=result["changed"],
        previous_status=result["previous_status"].value,
        booking=stop_response(result["booking"]),
        side_effects=[SideEffect(**s) for s in result["side_effects"]],
        chained_booking=stop_response(result["chained_booking"]),
    )


# API Endpoints

@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "healthy", "service": "Pickup Logistics API"}


@app.get("/api/sessions", response_model=list[ClassSessionResponse])
async def list_sessions(db: Session = Depends(get_db)):
    """Class sessions in display order."""
    return availability.get_sessions(db)


# ============== AVAILABILITY ==============

@app.get("/api/availability/month/{year}/{month}", response_model=RangeAvailabilityResponse)
async def get_month_availability(year: int, month: int, db: Session = Depends(get_db)):
    """
    Availability for the 6-week calendar grid of a month.

    The grid starts on the Sunday on or before the 1st and always has 42 days.
    """
    try:
        days = availability.get_month_availability(db, year, month)
    except PickupError as e:
        raise_http(e)
    return RangeAvailabilityResponse(start_date=days[0].date, end_date=days[-1].date, days=days)


@app.get("/api/availability/{target_date}", response_model=DayAvailability)
async def get_day_availability(target_date: date, db: Session = Depends(get_db)):
    """Booked, capacity, remaining and status for every session on a day."""
    try:
        return availability.get_range_availability(db, target_date, target_date)[0]
    except PickupError as e:
        raise_http(e)


@app.get("/api/availability", response_model=RangeAvailabilityResponse)
async def get_range_availability(
    start_date: date = Query(..., description="First day (inclusive)"),
    end_date: date = Query(..., description="Last day (inclusive)"),
    db: Session = Depends(get_db),
):
    """Availability for every day in a date range."""
    try:
        days = availability.get_range_availability(db, start_date, end_date)
    except PickupError as e:
        raise_http(e)
    return RangeAvailabilityResponse(start_date=start_date, end_date=end_date, days=days)


# ============== OVERRIDES (ADMIN) ==============

@app.put("/api/admin/overrides/{target_date}/{session_id}", response_model=OverrideResponse)
async def upsert_override(
    target_date: date,
    session_id: str,
    request: OverrideRequest,
    db: Session = Depends(get_db),
):
    """
    Admin endpoint: Set capacity or close one session on one day.

    Saving the same override twice leaves a single row.
    """
    try:
        return availability.upsert_override(
            db,
            target_date,
            session_id,
            is_closed=request.is_closed,
            custom_capacity=request.custom_capacity,
            closure_reason=request.closure_reason,
        )
    except PickupError as e:
        raise_http(e)


@app.post("/api/admin/overrides/{target_date}/close", response_model=list[OverrideResponse])
async def quick_close_day(
    target_date: date,
    request: QuickCloseRequest,
    db: Session = Depends(get_db),
):
    """
    Admin endpoint: Close every session on a day.

    Existing bookings are not touched.
    """
    try:
        return availability.quick_close_day(db, target_date, request.reason)
    except PickupError as e:
        raise_http(e)


@app.post("/api/admin/overrides/bulk", response_model=list[OverrideResponse])
async def bulk_overrides(request: BulkOverrideRequest, db: Session = Depends(get_db)):
    """
    Admin endpoint: Apply one override to many dates.

    Days that already have bookings are rejected.
    """
    session_ids = None if request.session_scope == "all" else [request.session_scope]
    try:
        return availability.bulk_upsert_overrides(
            db,
            request.dates,
            session_ids=session_ids,
            is_closed=request.is_closed,
            closure_reason=request.closure_reason,
            extra_seats=request.extra_seats,
        )
    except PickupError as e:
        raise_http(e)


# ============== PICKUP ZONES ==============

@app.get("/api/zones", response_model=list[PickupZoneResponse])
async def list_zones(db: Session = Depends(get_db)):
    """Pickup zones in resolution priority order."""
    return db_service.get_zones(db)


@app.post("/api/zones/resolve", response_model=ZoneResolveResponse)
async def resolve_zone(request: ZoneResolveRequest, db: Session = Depends(get_db)):
    """
    Resolve a pickup zone from coordinates or a Google Maps link.

    zone_id is null when the point is outside every zone.
    """
    lat, lng = request.lat, request.lng
    if request.map_link:
        coords = extract_gps(request.map_link)
        if coords is None:
            raise HTTPException(status_code=422, detail="No coordinates found in map link")
        lat, lng = coords

    if lat is None or lng is None:
        raise HTTPException(status_code=422, detail="Provide lat and lng or a map link")

    try:
        zone = db_service.resolve_zone_for_point(db, lat, lng)
    except PickupError as e:
        raise_http(e)

    return ZoneResolveResponse(
        lat=lat,
        lng=lng,
        zone_id=zone.id if zone else None,
        zone_name=zone.name if zone else None,
    )


# ============== BOOKINGS ==============

@app.post("/api/bookings", response_model=BookingResponse)
async def create_booking(request: BookingRequest, db: Session = Depends(get_db)):
    """
    Create a new booking.

    This will:
    1. Reject locked, closed or full sessions
    2. Resolve the pickup zone from the coordinates, if given
    3. Return the stored booking
    """
    try:
        booking = db_service.create_booking(
            db,
            booking_date=request.booking_date,
            session_id=request.session_id,
            pax_count=request.pax_count,
            guest_name=request.guest_name,
            phone_number=request.phone_number,
            customer_note=request.customer_note,
            hotel_name=request.hotel_name,
            latitude=request.latitude,
            longitude=request.longitude,
            pickup_time=request.pickup_time,
            requires_dropoff=request.requires_dropoff,
            dropoff_hotel=request.dropoff_hotel,
        )
    except PickupError as e:
        raise_http(e)

    return BookingResponse(
        success=True,
        message="Booking confirmed successfully",
        booking=stop_response(booking),
    )


@app.post("/api/bookings/{booking_id}/cancel", response_model=BookingResponse)
async def cancel_booking(booking_id: int, db: Session = Depends(get_db)):
    """
    Cancel a booking.

    Releases its seats. Only possible before the session locks and while
    the pickup has not started.
    """
    try:
        booking = db_service.cancel_booking(db, booking_id)
    except PickupError as e:
        raise_http(e)

    return BookingResponse(
        success=True,
        message=f"Booking {booking.reference} has been cancelled",
        booking=stop_response(booking),
    )


# ============== DRIVERS ==============

@app.get("/api/drivers", response_model=list[DriverResponse])
async def list_drivers(db: Session = Depends(get_db)):
    """Active drivers."""
    return db_service.get_active_drivers(db)


@app.post("/api/admin/drivers", response_model=DriverResponse)
async def create_driver(request: DriverRequest, db: Session = Depends(get_db)):
    """Admin endpoint: Register a driver."""
    try:
        return db_service.create_driver(db, request.id, request.full_name, request.phone_number)
    except PickupError as e:
        raise_http(e)


# ============== DISPATCH (DRIVER CONSOLE) ==============

@app.get("/api/dispatch/{target_date}/{session_id}/stops", response_model=StopsResponse)
async def list_stops(
    target_date: date,
    session_id: str,
    driver_id: Optional[str] = Query(None, description="Only stops assigned to this driver"),
    phase: Optional[RoutePhase] = Query(None, description="Only stops in this route phase"),
    db: Session = Depends(get_db),
):
    """
    Stops of a session with a route summary.

    The summary always covers every stop in scope; phase only narrows the
    list (DROPOFF lists on-board guests grouped by drop-off hotel).
    The console polls this endpoint every poll_interval_seconds.
    """
    try:
        stops = dispatch.list_stops(db, target_date, session_id, driver_id)
        listed = dispatch.list_stops(db, target_date, session_id, driver_id, phase) if phase else stops
    except PickupError as e:
        raise_http(e)

    return StopsResponse(
        date=target_date,
        session_id=session_id,
        driver_id=driver_id,
        poll_interval_seconds=settings.driver_poll_interval_seconds,
        summary=dispatch.route_summary(stops),
        stops=[stop_response(s) for s in listed],
    )


@app.post("/api/dispatch/bookings/{booking_id}/advance", response_model=AdvanceResponse)
async def advance_stop(booking_id: int, request: AdvanceRequest, db: Session = Depends(get_db)):
    """
    Move a stop one step forward.

    expected_from must be the status the console last displayed. Repeating
    a request that already applied returns changed=false.
    """
    try:
        result = dispatch.advance(db, booking_id, request.driver_id, request.expected_from)
    except PickupError as e:
        raise_http(e)
    return advance_response(result)


@app.post("/api/dispatch/{target_date}/{session_id}/start-route", response_model=AdvanceResponse)
async def start_route(
    target_date: date,
    session_id: str,
    request: StartRouteRequest,
    db: Session = Depends(get_db),
):
    """Send the driver to the first waiting stop of the session."""
    try:
        result = dispatch.start_route(db, target_date, session_id, request.driver_id)
    except PickupError as e:
        raise_http(e)
    return advance_response(result)


@app.post("/api/dispatch/{target_date}/{session_id}/arrive", response_model=ArriveDestinationResponse)
async def arrive_destination(
    target_date: date,
    session_id: str,
    driver_id: Optional[str] = Query(None, description="Only this driver's guests"),
    db: Session = Depends(get_db),
):
    """Drop off every guest currently on board."""
    try:
        booking_ids = dispatch.arrive_destination(db, target_date, session_id, driver_id=driver_id)
    except PickupError as e:
        raise_http(e)
    return ArriveDestinationResponse(dropped_off=len(booking_ids), booking_ids=booking_ids)


# ============== DISPATCH (MANAGER) ==============

@app.patch("/api/admin/bookings/{booking_id}/assignment", response_model=StopResponse)
async def assign_booking(booking_id: int, request: AssignmentRequest, db: Session = Depends(get_db)):
    """
    Admin endpoint: Assign a stop to a driver and/or set its route position.

    Set unassign=true to release a waiting stop back to the pool.
    """
    if request.unassign and request.driver_id:
        raise HTTPException(status_code=422, detail="Use either driver_id or unassign, not both")
    try:
        booking = dispatch.assign_driver(
            db,
            booking_id,
            driver_id=request.driver_id,
            route_order=request.route_order,
            unassign=request.unassign,
        )
    except PickupError as e:
        raise_http(e)
    return stop_response(booking)


@app.get("/api/admin/dispatch/upcoming", response_model=list[UpcomingSession])
async def upcoming_sessions(
    limit: int = Query(10, ge=1, le=50),
    db: Session = Depends(get_db),
):
    """Admin endpoint: Next sessions with bookings and their unassigned stop count."""
    return dispatch.upcoming_sessions(db, local_now().date(), limit=limit)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)

