"""
Integration tests for the HTTP API.

Run against the isolated in-memory database from conftest.py. Class dates
are picked a month ahead of the real clock so the lock policy never
interferes; locked cases use a past date.
"""
from datetime import timedelta

import pytest

from config import local_now


FUTURE = local_now().date() + timedelta(days=30)
PAST = local_now().date() - timedelta(days=1)


async def book(client, pax_count=2, session_id="morning_class", booking_date=FUTURE, **extra):
    payload = {
        "booking_date": booking_date.isoformat(),
        "session_id": session_id,
        "pax_count": pax_count,
        **extra,
    }
    return await client.post("/api/bookings", json=payload)


class TestHealthAndReferenceData:

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_sessions(self, client):
        response = await client.get("/api/sessions")
        assert response.status_code == 200
        data = response.json()
        assert [s["id"] for s in data] == ["morning_class", "evening_class"]
        assert data[0]["max_capacity"] == 12
        assert data[0]["cutoff_hour"] == 10

    @pytest.mark.asyncio
    async def test_zones_in_priority_order(self, client):
        response = await client.get("/api/zones")
        assert response.status_code == 200
        assert [z["id"] for z in response.json()] == ["azure", "pink", "green", "yellow"]


# =============================================================================
# Availability
# =============================================================================

class TestAvailabilityEndpoints:

    @pytest.mark.asyncio
    async def test_day_reflects_bookings(self, client):
        await book(client, pax_count=5)

        response = await client.get(f"/api/availability/{FUTURE.isoformat()}")
        assert response.status_code == 200
        data = response.json()
        assert data["has_bookings"] is True
        morning = data["sessions"]["morning_class"]
        assert morning["booked"] == 5
        assert morning["remaining"] == 7
        assert morning["status"] == "OPEN"
        assert morning["is_locked"] is False

    @pytest.mark.asyncio
    async def test_range(self, client):
        end = FUTURE + timedelta(days=6)
        response = await client.get(
            "/api/availability",
            params={"start_date": FUTURE.isoformat(), "end_date": end.isoformat()},
        )
        assert response.status_code == 200
        assert len(response.json()["days"]) == 7

    @pytest.mark.asyncio
    async def test_range_reversed(self, client):
        response = await client.get(
            "/api/availability",
            params={"start_date": FUTURE.isoformat(), "end_date": PAST.isoformat()},
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_month_grid(self, client):
        response = await client.get(f"/api/availability/month/{FUTURE.year}/{FUTURE.month}")
        assert response.status_code == 200
        data = response.json()
        assert len(data["days"]) == 42

    @pytest.mark.asyncio
    async def test_invalid_month(self, client):
        response = await client.get("/api/availability/month/2026/13")
        assert response.status_code == 422

    @pytest.mark.asyncio
    @pytest.mark.parametrize("year,month", [(0, 1), (9999, 12)])
    async def test_year_outside_calendar_range(self, client, year, month):
        response = await client.get(f"/api/availability/month/{year}/{month}")
        assert response.status_code == 422


# =============================================================================
# Overrides
# =============================================================================

class TestOverrideEndpoints:

    @pytest.mark.asyncio
    async def test_upsert_is_idempotent(self, client):
        url = f"/api/admin/overrides/{FUTURE.isoformat()}/morning_class"
        first = await client.put(url, json={"custom_capacity": 5})
        second = await client.put(url, json={"custom_capacity": 5})
        assert first.status_code == 200
        assert second.status_code == 200
        assert second.json()["custom_capacity"] == 5

        await book(client, pax_count=5)
        day = (await client.get(f"/api/availability/{FUTURE.isoformat()}")).json()
        assert day["sessions"]["morning_class"]["status"] == "FULL"

    @pytest.mark.asyncio
    async def test_upsert_unknown_session(self, client):
        response = await client.put(
            f"/api/admin/overrides/{FUTURE.isoformat()}/lunch_class", json={"is_closed": True}
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_upsert_negative_capacity(self, client):
        response = await client.put(
            f"/api/admin/overrides/{FUTURE.isoformat()}/morning_class", json={"custom_capacity": -3}
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_upsert_past_day_locked(self, client):
        response = await client.put(
            f"/api/admin/overrides/{PAST.isoformat()}/evening_class", json={"custom_capacity": 3}
        )
        assert response.status_code == 423

    @pytest.mark.asyncio
    async def test_quick_close_blocks_new_bookings(self, client):
        await book(client, pax_count=2)

        response = await client.post(
            f"/api/admin/overrides/{FUTURE.isoformat()}/close", json={"reason": "Loy Krathong"}
        )
        assert response.status_code == 200
        rows = response.json()
        assert len(rows) == 2
        assert all(r["is_closed"] for r in rows)

        day = (await client.get(f"/api/availability/{FUTURE.isoformat()}")).json()
        assert day["sessions"]["morning_class"]["booked"] == 2
        assert day["sessions"]["evening_class"]["status"] == "CLOSED"

        response = await book(client, pax_count=1, session_id="evening_class")
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_bulk(self, client):
        dates = [(FUTURE + timedelta(days=i)).isoformat() for i in range(3)]
        response = await client.post(
            "/api/admin/overrides/bulk",
            json={"dates": dates, "session_scope": "evening_class", "extra_seats": 4},
        )
        assert response.status_code == 200
        rows = response.json()
        assert len(rows) == 3
        assert all(r["custom_capacity"] == 16 for r in rows)

    @pytest.mark.asyncio
    async def test_bulk_rejects_booked_days(self, client):
        await book(client)
        response = await client.post(
            "/api/admin/overrides/bulk",
            json={"dates": [FUTURE.isoformat()], "is_closed": True},
        )
        assert response.status_code == 422
        assert FUTURE.isoformat() in response.json()["detail"]


# =============================================================================
# Zones
# =============================================================================

class TestZoneResolveEndpoint:

    @pytest.mark.asyncio
    async def test_coordinates(self, client):
        response = await client.post("/api/zones/resolve", json={"lat": 18.79, "lng": 98.99})
        assert response.status_code == 200
        data = response.json()
        assert data["zone_id"] == "azure"
        assert data["zone_name"] == "Old City"

    @pytest.mark.asyncio
    async def test_map_link(self, client):
        link = "https://www.google.com/maps/place/Maya/@18.8020,98.9675,17z"
        response = await client.post("/api/zones/resolve", json={"map_link": link})
        assert response.status_code == 200
        data = response.json()
        assert data["lat"] == 18.802
        assert data["zone_id"] == "pink"

    @pytest.mark.asyncio
    async def test_outside_all_zones(self, client):
        response = await client.post("/api/zones/resolve", json={"lat": 13.75, "lng": 100.5})
        assert response.status_code == 200
        assert response.json()["zone_id"] is None

    @pytest.mark.asyncio
    async def test_link_without_coordinates(self, client):
        response = await client.post("/api/zones/resolve", json={"map_link": "https://maps.app.goo.gl/xyz"})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_nothing_given(self, client):
        response = await client.post("/api/zones/resolve", json={})
        assert response.status_code == 422


# =============================================================================
# Bookings
# =============================================================================

class TestBookingEndpoints:

    @pytest.mark.asyncio
    async def test_create(self, client):
        response = await book(
            client,
            pax_count=3,
            guest_name="Marta Rossi",
            hotel_name="Art Mai Gallery Hotel",
            latitude=18.7985,
            longitude=98.9680,
            pickup_time="08:20",
        )
        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        booking = data["booking"]
        assert booking["pickup_zone_id"] == "pink"
        assert booking["transport_status"] == "waiting"
        assert booking["status"] == "active"
        assert booking["pickup_time"] == "08:20:00"
        assert booking["requires_dropoff"] is True
        assert booking["dropoff_hotel"] is None

    @pytest.mark.asyncio
    async def test_create_with_dropoff_details(self, client):
        response = await book(client, hotel_name="Zest Hotel", dropoff_hotel="Old City Night Market")
        assert response.json()["booking"]["dropoff_hotel"] == "Old City Night Market"

        response = await book(client, requires_dropoff=False, dropoff_hotel="Ignored")
        booking = response.json()["booking"]
        assert booking["requires_dropoff"] is False
        assert booking["dropoff_hotel"] is None

    @pytest.mark.asyncio
    async def test_zero_pax(self, client):
        response = await book(client, pax_count=0)
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_full_session(self, client):
        assert (await book(client, pax_count=12)).status_code == 200
        response = await book(client, pax_count=1)
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_past_day_locked(self, client):
        response = await book(client, booking_date=PAST)
        assert response.status_code == 423

    @pytest.mark.asyncio
    async def test_cancel(self, client):
        booking_id = (await book(client, pax_count=4)).json()["booking"]["id"]

        response = await client.post(f"/api/bookings/{booking_id}/cancel")
        assert response.status_code == 200
        assert response.json()["booking"]["status"] == "cancelled"

        day = (await client.get(f"/api/availability/{FUTURE.isoformat()}")).json()
        assert day["sessions"]["morning_class"]["booked"] == 0

        again = await client.post(f"/api/bookings/{booking_id}/cancel")
        assert again.status_code == 422

    @pytest.mark.asyncio
    async def test_cancel_unknown(self, client):
        response = await client.post("/api/bookings/9999/cancel")
        assert response.status_code == 404


# =============================================================================
# Drivers and dispatch
# =============================================================================

class TestDispatchEndpoints:

    @pytest.mark.asyncio
    async def test_drivers(self, client):
        response = await client.get("/api/drivers")
        assert response.status_code == 200
        assert {d["id"] for d in response.json()} == {"drv-1", "drv-2"}

        created = await client.post("/api/admin/drivers", json={"id": "drv-3", "full_name": "Kanya"})
        assert created.status_code == 200
        duplicate = await client.post("/api/admin/drivers", json={"id": "drv-3", "full_name": "Kanya"})
        assert duplicate.status_code == 409

    @pytest.mark.asyncio
    async def test_route_with_chain_reaction(self, client):
        first = (await book(client, pax_count=2)).json()["booking"]["id"]
        second = (await book(client, pax_count=3)).json()["booking"]["id"]
        await client.patch(f"/api/admin/bookings/{first}/assignment", json={"route_order": 1})
        await client.patch(f"/api/admin/bookings/{second}/assignment", json={"route_order": 2})

        base = f"/api/dispatch/{FUTURE.isoformat()}/morning_class"
        started = await client.post(f"{base}/start-route", json={"driver_id": "drv-1"})
        assert started.status_code == 200
        assert started.json()["booking"]["id"] == first
        assert started.json()["booking"]["transport_status"] == "driver_en_route"

        url = f"/api/dispatch/bookings/{first}/advance"
        arrived = await client.post(url, json={"driver_id": "drv-1", "expected_from": "driver_en_route"})
        assert arrived.json()["changed"] is True

        boarded = await client.post(url, json={"driver_id": "drv-1", "expected_from": "driver_arrived"})
        data = boarded.json()
        assert data["booking"]["transport_status"] == "on_board"
        assert data["booking"]["actual_pickup_time"] is not None
        assert data["chained_booking"]["id"] == second
        assert data["chained_booking"]["transport_status"] == "driver_en_route"
        assert {"kind": "chain_dispatch", "booking_id": second} in data["side_effects"]

        retry = await client.post(url, json={"driver_id": "drv-1", "expected_from": "driver_arrived"})
        assert retry.status_code == 200
        assert retry.json()["changed"] is False

        stops = await client.get(f"{base}/stops", params={"driver_id": "drv-1"})
        assert stops.status_code == 200
        stops_data = stops.json()
        assert stops_data["poll_interval_seconds"] == 30
        assert [s["id"] for s in stops_data["stops"]] == [first, second]
        assert stops_data["summary"]["phase"] == "PICKUP"
        assert stops_data["summary"]["completed_pax"] == 2

        dropped = await client.post(f"{base}/arrive")
        assert dropped.json() == {"dropped_off": 1, "booking_ids": [first]}

    @pytest.mark.asyncio
    async def test_dropoff_phase_listing(self, client):
        """After boarding, the drop-off list is grouped by drop-off hotel."""
        ids = []
        for order, extra in enumerate([
            {"hotel_name": "Zest Hotel", "dropoff_hotel": "Yaang Come Village"},
            {"hotel_name": "Baan Orapin"},
            {"hotel_name": "Akyra Manor", "requires_dropoff": False},
        ], start=1):
            booking_id = (await book(client, **extra)).json()["booking"]["id"]
            await client.patch(f"/api/admin/bookings/{booking_id}/assignment", json={"route_order": order})
            ids.append(booking_id)

        base = f"/api/dispatch/{FUTURE.isoformat()}/morning_class"
        await client.post(f"{base}/start-route", json={"driver_id": "drv-1"})
        for booking_id in ids:
            url = f"/api/dispatch/bookings/{booking_id}/advance"
            await client.post(url, json={"driver_id": "drv-1", "expected_from": "driver_en_route"})
            boarded = await client.post(url, json={"driver_id": "drv-1", "expected_from": "driver_arrived"})
            assert boarded.json()["booking"]["transport_status"] == "on_board"

        dropoff = (await client.get(f"{base}/stops", params={"phase": "DROPOFF"})).json()
        assert dropoff["summary"]["phase"] == "DROPOFF"
        assert dropoff["summary"]["total_stops"] == 3
        assert [s["id"] for s in dropoff["stops"]] == [ids[1], ids[0]]

        pickup = (await client.get(f"{base}/stops", params={"phase": "PICKUP"})).json()
        assert pickup["stops"] == []

        response = await client.get(f"{base}/stops", params={"phase": "LUNCH"})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_other_driver_conflict(self, client):
        booking_id = (await book(client)).json()["booking"]["id"]
        url = f"/api/dispatch/bookings/{booking_id}/advance"
        await client.post(url, json={"driver_id": "drv-1", "expected_from": "waiting"})

        response = await client.post(url, json={"driver_id": "drv-2", "expected_from": "driver_en_route"})
        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_invalid_status_name(self, client):
        booking_id = (await book(client)).json()["booking"]["id"]
        response = await client.post(
            f"/api/dispatch/bookings/{booking_id}/advance",
            json={"driver_id": "drv-1", "expected_from": "flying"},
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_start_route_nothing_waiting(self, client):
        response = await client.post(
            f"/api/dispatch/{FUTURE.isoformat()}/evening_class/start-route", json={"driver_id": "drv-1"}
        )
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_stops_unknown_session(self, client):
        response = await client.get(f"/api/dispatch/{FUTURE.isoformat()}/lunch_class/stops")
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_assignment(self, client):
        booking_id = (await book(client)).json()["booking"]["id"]
        url = f"/api/admin/bookings/{booking_id}/assignment"

        response = await client.patch(url, json={"driver_id": "drv-2", "route_order": 3})
        assert response.status_code == 200
        assert response.json()["assigned_driver_id"] == "drv-2"
        assert response.json()["route_order"] == 3

        both = await client.patch(url, json={"driver_id": "drv-1", "unassign": True})
        assert both.status_code == 422

        released = await client.patch(url, json={"unassign": True})
        assert released.json()["assigned_driver_id"] is None

    @pytest.mark.asyncio
    async def test_upcoming(self, client):
        await book(client, pax_count=2)
        await book(client, pax_count=1, session_id="evening_class")

        response = await client.get("/api/admin/dispatch/upcoming")
        assert response.status_code == 200
        rows = response.json()
        assert len(rows) == 2
        assert all(r["date"] == FUTURE.isoformat() for r in rows)
        assert sum(r["total_pax"] for r in rows) == 3
        assert all(r["unassigned_count"] == 1 for r in rows)
