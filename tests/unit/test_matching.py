"""
Matching engine tests. Time is driven by ManualClock, so every search round and
accept window runs exactly when the test advances the clock.
"""
import asyncio
from datetime import timedelta
from decimal import Decimal

import httpx
import pytest

from ridematch.dispatch import build_in_memory_engine
from ridematch.domain import DriverCandidate, Location, RideStatus
from ridematch.errors import (
    InvalidPromoCodeError,
    InvalidTransitionError,
    RideRequestNotFoundError,
    StaleRequestError,
)
from ridematch.schemas.schemas import GeofenceEventType
from ridematch.services.availability import InMemoryAvailabilityIndex, _rank
from ridematch.services.clock import settle
from ridematch.services.geo import haversine_km
from ridematch.services.notifier import WebhookNotifier

M_PER_DEG_LAT = 111194.92664


def north_of(loc: Location, meters: float) -> tuple[float, float]:
    return loc.lat + meters / M_PER_DEG_LAT, loc.lng


async def put_driver(engine, driver_id, near: Location, meters: float, **kwargs):
    lat, lng = north_of(near, meters)
    await engine.set_driver_online(driver_id, True, lat=lat, lng=lng, **kwargs)


async def request_ride(engine, pickup, drop, passenger_id="passenger-1", **kwargs):
    ride = await engine.create_request(passenger_id, pickup, drop, **kwargs)
    await settle()
    return ride


class RacyIndex(InMemoryAvailabilityIndex):
    """Reports claimed drivers as free, like a replica that lags the claim writes."""

    async def query_nearby(self, center, radius_km, exclude=(), vehicle_class=None, limit=10):
        found = []
        for snap in self._drivers.values():
            if not snap.online or snap.driver_id in set(exclude):
                continue
            distance = haversine_km(center.lat, center.lng, snap.lat, snap.lng)
            if distance <= radius_km:
                found.append(DriverCandidate(snap.driver_id, distance, snap.rating, snap.lat, snap.lng))
        return _rank(found, limit)


class FailingIndex(InMemoryAvailabilityIndex):
    """Nearby queries fail the first `failures` times, like a cache that is briefly unreachable."""

    def __init__(self, clock, failures, **kwargs):
        super().__init__(clock, **kwargs)
        self.failures = failures

    async def query_nearby(self, *args, **kwargs):
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("availability index unreachable")
        return await super().query_nearby(*args, **kwargs)


@pytest.mark.asyncio
class TestCreateRequest:
    async def test_priced_and_searching(self, engine, pickup, drop, clock):
        ride = await engine.create_request("passenger-1", pickup, drop, vehicle_class="auto")
        estimate = await engine.estimate_fare(pickup, drop, "auto")

        assert ride.status == RideStatus.searching
        assert ride.fare == estimate.estimated_price
        assert ride.search_radius_km == 5.0
        assert ride.search_started_at == clock.now()
        assert ride.discount_amount == Decimal("0.00")

    async def test_promo_applied(self, engine, pickup, drop):
        ride = await engine.create_request("passenger-1", pickup, drop, promo_code="save20")
        expected = min(ride.fare * Decimal("0.2"), Decimal("50")).quantize(Decimal("0.01"))
        assert ride.promo_code == "SAVE20"
        assert ride.discount_amount == expected
        assert ride.final_fare == ride.fare - expected

    async def test_invalid_promo_rejects_request(self, engine, pickup, drop):
        with pytest.raises(InvalidPromoCodeError):
            await engine.create_request("passenger-1", pickup, drop, promo_code="BOGUS")
        assert engine._search_tasks == {}

    async def test_surge_from_demand_signal(self, settings, clock, notifier, pickup, drop):
        engine = build_in_memory_engine(settings, clock=clock, notifier=notifier, demand_factor=2.4)
        try:
            estimate = await engine.estimate_fare(pickup, drop, "car")
            assert estimate.surge_multiplier == 2.4
            assert estimate.surge_reason == "Very High Demand"
        finally:
            await engine.shutdown()

    async def test_validate_promo_code(self, engine):
        result = await engine.validate_promo_code("SAVE20", "passenger-1", Decimal("179.00"), "car")
        assert result.valid
        assert result.discount == Decimal("35.80")


@pytest.mark.asyncio
class TestSearch:
    async def test_nearest_driver_matched(self, engine, pickup, drop, notifier):
        await put_driver(engine, "far", pickup, 2500)
        await put_driver(engine, "near", pickup, 1200)

        ride = await request_ride(engine, pickup, drop)
        ride = await engine.get_request(ride.id)

        assert ride.status == RideStatus.matched
        assert ride.matched_driver_id == "near"
        assert "New Ride Request" in notifier.titles_for("near")
        assert "Driver Found" in notifier.titles_for("passenger-1")
        assert (await engine.index.get("near")).claimed_request_id == ride.id

    async def test_vehicle_class_respected(self, engine, pickup, drop):
        await put_driver(engine, "bike-1", pickup, 300, vehicle_class="bike")
        await put_driver(engine, "car-1", pickup, 3000, vehicle_class="car")

        ride = await request_ride(engine, pickup, drop, vehicle_class="car")
        assert (await engine.get_request(ride.id)).matched_driver_id == "car-1"

    async def test_one_driver_two_requests(self, engine, pickup, drop):
        await put_driver(engine, "d1", pickup, 1000)

        first = await engine.create_request("passenger-1", pickup, drop)
        second = await engine.create_request("passenger-2", pickup, drop)
        await settle()

        rides = [await engine.get_request(first.id), await engine.get_request(second.id)]
        assert sorted(r.status.value for r in rides) == ["matched", "searching"]
        assert [r.matched_driver_id for r in rides if r.matched_driver_id] == ["d1"]

    async def test_lost_claim_moves_to_next_candidate(self, settings, clock, notifier, pickup, drop):
        engine = build_in_memory_engine(settings, clock=clock, notifier=notifier)
        engine.index = RacyIndex(clock, location_ttl_seconds=3600)
        try:
            await put_driver(engine, "d1", pickup, 800)
            await put_driver(engine, "d2", pickup, 1600)

            first = await engine.create_request("passenger-1", pickup, drop)
            second = await engine.create_request("passenger-2", pickup, drop)
            await settle()

            a = await engine.get_request(first.id)
            b = await engine.get_request(second.id)
            assert {a.matched_driver_id, b.matched_driver_id} == {"d1", "d2"}
            assert a.status == b.status == RideStatus.matched
        finally:
            await engine.shutdown()

    async def test_radius_grows_until_driver_in_range(self, engine, pickup, drop, clock):
        ride = await request_ride(engine, pickup, drop)
        assert (await engine.get_request(ride.id)).search_radius_km == 7.0

        await put_driver(engine, "d1", pickup, 8000)
        await clock.advance(10)
        assert (await engine.get_request(ride.id)).search_radius_km == 9.0

        await clock.advance(10)
        ride = await engine.get_request(ride.id)
        assert ride.search_radius_km == 9.0
        assert ride.status == RideStatus.matched
        assert ride.matched_driver_id == "d1"

    async def test_radius_never_exceeds_max(self, engine, pickup, drop, clock):
        ride = await request_ride(engine, pickup, drop)
        await clock.advance(200)
        ride = await engine.get_request(ride.id)
        assert ride.search_radius_km == 20.0
        assert ride.status == RideStatus.searching

    async def test_expires_at_ceiling(self, engine, pickup, drop, clock, notifier):
        ride = await request_ride(engine, pickup, drop)

        await clock.advance(290)
        assert (await engine.get_request(ride.id)).status == RideStatus.searching

        await clock.advance(10)
        ride = await engine.get_request(ride.id)
        assert ride.status == RideStatus.expired
        assert ride.expired_at == clock.now()
        assert ride.matched_driver_id is None
        assert notifier.titles_for("passenger-1") == ["No Drivers Available"]
        assert not engine.is_searching(ride.id)

    async def test_offline_driver_not_matched(self, engine, pickup, drop):
        await put_driver(engine, "d1", pickup, 500)
        await engine.set_driver_online("d1", False)
        ride = await request_ride(engine, pickup, drop)
        assert (await engine.get_request(ride.id)).status == RideStatus.searching


@pytest.mark.asyncio
class TestSearchFailures:
    async def test_failed_round_is_retried(self, settings, clock, notifier, pickup, drop):
        engine = build_in_memory_engine(settings, clock=clock, notifier=notifier)
        engine.index = FailingIndex(clock, failures=1, location_ttl_seconds=3600)
        try:
            await put_driver(engine, "d1", pickup, 200)
            ride = await request_ride(engine, pickup, drop)
            assert (await engine.get_request(ride.id)).status == RideStatus.searching
            assert engine.is_searching(ride.id)

            await clock.advance(10)
            ride = await engine.get_request(ride.id)
            assert ride.status == RideStatus.matched
            assert ride.matched_driver_id == "d1"
        finally:
            await engine.shutdown()

    async def test_request_given_up_after_repeated_failures(self, settings, clock, notifier, pickup, drop):
        engine = build_in_memory_engine(settings, clock=clock, notifier=notifier)
        engine.index = FailingIndex(clock, failures=100, location_ttl_seconds=3600)
        try:
            await put_driver(engine, "d1", pickup, 200)
            ride = await request_ride(engine, pickup, drop)

            # waits between attempts double: 10s, then 20s
            await clock.advance(10)
            assert (await engine.get_request(ride.id)).status == RideStatus.searching

            await clock.advance(20)
            ride = await engine.get_request(ride.id)
            assert ride.status == RideStatus.cancelled
            assert ride.cancelled_by == "system"
            assert ride.cancel_reason == "Search failed: ConnectionError"
            assert notifier.titles_for("passenger-1") == ["Ride Request Failed"]
            assert not engine.is_searching(ride.id)
        finally:
            await engine.shutdown()


@pytest.mark.asyncio
class TestScheduledRequest:
    async def test_search_opens_before_pickup_time(self, engine, pickup, drop, clock):
        ride = await request_ride(engine, pickup, drop, scheduled_time=clock.now() + timedelta(minutes=30))
        assert ride.status == RideStatus.pending
        assert ride.search_started_at is None

        # search opens 10 minutes ahead of the scheduled time
        await clock.advance(1199)
        assert (await engine.get_request(ride.id)).status == RideStatus.pending

        await put_driver(engine, "d1", pickup, 1000)
        await clock.advance(1)
        ride = await engine.get_request(ride.id)
        assert ride.status == RideStatus.matched
        assert ride.search_started_at == clock.now()

    async def test_past_schedule_searches_now(self, engine, pickup, drop, clock):
        ride = await request_ride(engine, pickup, drop, scheduled_time=clock.now() - timedelta(minutes=5))
        assert ride.status == RideStatus.searching
        assert ride.scheduled_time is None

    async def test_naive_time_is_utc(self, engine, pickup, drop, clock):
        naive = (clock.now() + timedelta(hours=2)).replace(tzinfo=None)
        ride = await request_ride(engine, pickup, drop, scheduled_time=naive)
        assert ride.scheduled_time == clock.now() + timedelta(hours=2)

    async def test_cancel_while_pending(self, engine, pickup, drop, clock):
        ride = await request_ride(engine, pickup, drop, scheduled_time=clock.now() + timedelta(hours=1))
        await engine.cancel_request(ride.id, "plans changed")
        await settle()
        assert not engine.is_searching(ride.id)
        assert (await engine.get_request(ride.id)).status == RideStatus.cancelled


@pytest.mark.asyncio
class TestDriverResponse:
    async def test_accept(self, engine, pickup, drop, clock, notifier):
        await put_driver(engine, "d1", pickup, 1100)
        ride = await request_ride(engine, pickup, drop)

        ride = await engine.accept_request(ride.id, "d1")
        assert ride.status == RideStatus.accepted
        assert ride.accepted_at == clock.now()
        accepted = [p for uid, t, _, p in notifier.sent if t == "Driver Accepted"]
        # 1.1 km at 30 km/h, rounded up
        assert accepted[0]["eta_minutes"] == 3

        # accept window and claim expiry no longer apply
        await clock.advance(120)
        assert (await engine.get_request(ride.id)).status == RideStatus.accepted
        assert (await engine.index.get("d1")).claimed_request_id == ride.id

    async def test_accept_with_lapsed_claim(self, engine, pickup, drop):
        await put_driver(engine, "d1", pickup, 1000)
        ride = await request_ride(engine, pickup, drop)
        await engine.index.release("d1", ride.id)

        with pytest.raises(InvalidTransitionError):
            await engine.accept_request(ride.id, "d1")
        ride = await engine.get_request(ride.id)
        assert ride.status == RideStatus.matched
        assert ride.accepted_at is None

    async def test_accept_by_wrong_driver(self, engine, pickup, drop):
        await put_driver(engine, "d1", pickup, 1000)
        ride = await request_ride(engine, pickup, drop)
        with pytest.raises(InvalidTransitionError):
            await engine.accept_request(ride.id, "d2")
        assert (await engine.get_request(ride.id)).status == RideStatus.matched

    async def test_reject_passes_to_next_driver(self, engine, pickup, drop):
        await put_driver(engine, "d1", pickup, 1000)
        await put_driver(engine, "d2", pickup, 2000)
        ride = await request_ride(engine, pickup, drop)

        ride = await engine.reject_request(ride.id, "d1")
        assert ride.status == RideStatus.searching
        await settle()

        ride = await engine.get_request(ride.id)
        assert ride.matched_driver_id == "d2"
        assert ride.rejected_driver_ids == ["d1"]
        assert (await engine.index.get("d1")).claimed_request_id is None

    async def test_accept_window_lapse(self, engine, pickup, drop, clock, notifier):
        await put_driver(engine, "d1", pickup, 1000)
        await put_driver(engine, "d2", pickup, 2000)
        ride = await request_ride(engine, pickup, drop)

        await clock.advance(29)
        assert (await engine.get_request(ride.id)).matched_driver_id == "d1"

        await clock.advance(1)
        ride = await engine.get_request(ride.id)
        assert ride.status == RideStatus.matched
        assert ride.matched_driver_id == "d2"
        assert ride.rejected_driver_ids == ["d1"]
        assert ride.search_radius_km == 5.0
        assert "Ride Offer Expired" in notifier.titles_for("d1")

    async def test_rejected_driver_not_offered_again(self, engine, pickup, drop):
        await put_driver(engine, "d1", pickup, 1000)
        ride = await request_ride(engine, pickup, drop)
        await engine.reject_request(ride.id, "d1")
        await settle()

        ride = await engine.get_request(ride.id)
        assert ride.status == RideStatus.searching
        assert ride.matched_driver_id is None

    async def test_full_trip(self, engine, pickup, drop, notifier):
        await put_driver(engine, "d1", pickup, 1000)
        ride = await request_ride(engine, pickup, drop)
        await engine.accept_request(ride.id, "d1")
        await engine.start_trip(ride.id, "d1")
        ride = await engine.complete_request(ride.id, "d1")

        assert ride.status == RideStatus.completed
        assert (await engine.index.get("d1")).claimed_request_id is None
        assert notifier.titles_for("passenger-1")[-1] == "Trip Completed"

    async def test_start_before_accept(self, engine, pickup, drop):
        await put_driver(engine, "d1", pickup, 1000)
        ride = await request_ride(engine, pickup, drop)
        with pytest.raises(InvalidTransitionError):
            await engine.start_trip(ride.id, "d1")


@pytest.mark.asyncio
class TestCancel:
    async def test_cancel_matched_releases_driver(self, engine, pickup, drop, notifier):
        await put_driver(engine, "d1", pickup, 1000)
        ride = await request_ride(engine, pickup, drop)

        ride = await engine.cancel_request(ride.id, "  found another ride ")
        assert ride.status == RideStatus.cancelled
        assert ride.cancel_reason == "found another ride"
        assert ride.cancelled_by == "passenger"
        assert ride.matched_driver_id is None
        assert (await engine.index.get("d1")).claimed_request_id is None
        assert "Ride Cancelled" in notifier.titles_for("d1")

    async def test_cancel_stops_search(self, engine, pickup, drop, clock):
        ride = await request_ride(engine, pickup, drop)
        await engine.cancel_request(ride.id, "too slow")
        await settle()
        assert not engine.is_searching(ride.id)

        await put_driver(engine, "d1", pickup, 500)
        await clock.advance(60)
        ride = await engine.get_request(ride.id)
        assert ride.status == RideStatus.cancelled
        assert ride.search_radius_km == 7.0

    async def test_driver_cancel_notifies_passenger(self, engine, pickup, drop, notifier):
        await put_driver(engine, "d1", pickup, 1000)
        ride = await request_ride(engine, pickup, drop)
        await engine.accept_request(ride.id, "d1")

        ride = await engine.cancel_request(ride.id, "vehicle trouble", cancelled_by="driver")
        assert ride.cancelled_by == "driver"
        assert notifier.titles_for("passenger-1")[-1] == "Ride Cancelled"

    async def test_reason_required(self, engine, pickup, drop):
        ride = await request_ride(engine, pickup, drop)
        with pytest.raises(ValueError):
            await engine.cancel_request(ride.id, "   ")

    async def test_cancel_completed_is_stale(self, engine, pickup, drop):
        await put_driver(engine, "d1", pickup, 1000)
        ride = await request_ride(engine, pickup, drop)
        await engine.accept_request(ride.id, "d1")
        await engine.start_trip(ride.id, "d1")
        completed = await engine.complete_request(ride.id, "d1")

        with pytest.raises(StaleRequestError):
            await engine.cancel_request(ride.id, "too late")
        assert await engine.get_request(ride.id) == completed

    async def test_cancel_in_progress_rejected(self, engine, pickup, drop):
        await put_driver(engine, "d1", pickup, 1000)
        ride = await request_ride(engine, pickup, drop)
        await engine.accept_request(ride.id, "d1")
        await engine.start_trip(ride.id, "d1")
        with pytest.raises(InvalidTransitionError):
            await engine.cancel_request(ride.id, "changed my mind")

    async def test_cancel_races_accept(self, engine, pickup, drop):
        await put_driver(engine, "d1", pickup, 1000)
        ride = await request_ride(engine, pickup, drop)

        results = await asyncio.gather(
            engine.cancel_request(ride.id, "changed my mind"),
            engine.accept_request(ride.id, "d1"),
            return_exceptions=True,
        )
        errors = [r for r in results if isinstance(r, Exception)]
        assert len(errors) == 1
        assert isinstance(errors[0], InvalidTransitionError)
        assert (await engine.get_request(ride.id)).status in (RideStatus.cancelled, RideStatus.accepted)


@pytest.mark.asyncio
class TestSubscriptions:
    async def test_every_change_is_published(self, engine, pickup, drop):
        await put_driver(engine, "d1", pickup, 1000)
        ride = await engine.create_request("passenger-1", pickup, drop)
        seen = []
        await engine.subscribe_to_request(ride.id, lambda update: seen.append(update.status))
        await settle()

        await engine.accept_request(ride.id, "d1")
        await engine.start_trip(ride.id, "d1")
        await engine.complete_request(ride.id, "d1")

        assert seen == [RideStatus.matched, RideStatus.accepted, RideStatus.in_progress, RideStatus.completed]
        assert engine.events.subscriber_count(ride.id) == 0

    async def test_radius_growth_is_published(self, engine, pickup, drop, clock):
        ride = await engine.create_request("passenger-1", pickup, drop)
        radii = []
        await engine.subscribe_to_request(ride.id, lambda update: radii.append(update.search_radius_km))
        await settle()
        await clock.advance(10)
        assert radii == [7.0, 9.0]

    async def test_unknown_request(self, engine):
        with pytest.raises(RideRequestNotFoundError):
            await engine.subscribe_to_request("missing", lambda update: None)


@pytest.mark.asyncio
class TestGeofenceFlow:
    async def test_pickup_and_drop_events(self, engine, pickup, drop, notifier):
        await put_driver(engine, "d1", pickup, 1000)
        ride = await request_ride(engine, pickup, drop)
        await engine.accept_request(ride.id, "d1")

        emitted = []
        for meters in (600, 400, 30, 20):
            emitted += await engine.report_driver_position("d1", ride.id, *north_of(pickup, meters))
        await engine.start_trip(ride.id, "d1")
        for meters in (450, 10):
            emitted += await engine.report_driver_position("d1", ride.id, *north_of(drop, meters))

        assert [e.type for e in emitted] == [
            GeofenceEventType.near_pickup,
            GeofenceEventType.arrived_pickup,
            GeofenceEventType.near_drop,
            GeofenceEventType.arrived_drop,
        ]
        titles = notifier.titles_for("passenger-1")
        assert titles.count("Driver Nearby") == 1
        assert titles.count("Driver Arrived!") == 1

    async def test_positions_before_accept_are_not_monitored(self, engine, pickup, drop):
        await put_driver(engine, "d1", pickup, 1000)
        ride = await request_ride(engine, pickup, drop)
        assert await engine.report_driver_position("d1", ride.id, *north_of(pickup, 10)) == []

    async def test_other_driver_ignored(self, engine, pickup, drop):
        await put_driver(engine, "d1", pickup, 1000)
        await put_driver(engine, "d2", pickup, 3000)
        ride = await request_ride(engine, pickup, drop)
        await engine.accept_request(ride.id, "d1")
        assert await engine.report_driver_position("d2", ride.id, *north_of(pickup, 10)) == []

    async def test_position_updates_index(self, engine, pickup):
        await put_driver(engine, "d1", pickup, 1000)
        lat, lng = north_of(pickup, 200)
        assert await engine.report_driver_position("d1", None, lat, lng, heading=180.0) == []
        snapshot = await engine.index.get("d1")
        assert snapshot.lat == lat
        assert snapshot.heading == 180.0


@pytest.mark.asyncio
class TestActiveRequest:
    async def test_none_without_requests(self, engine):
        assert await engine.get_active_request("passenger-1") is None

    async def test_newest_open_request(self, engine, pickup, drop):
        first = await request_ride(engine, pickup, drop)
        await engine.cancel_request(first.id, "wrong pickup")
        second = await request_ride(engine, pickup, drop)
        await request_ride(engine, pickup, drop, passenger_id="passenger-2")

        active = await engine.get_active_request("passenger-1")
        assert active.id == second.id
        assert active.status == RideStatus.searching

    async def test_follows_request_until_trip_starts(self, engine, pickup, drop):
        await put_driver(engine, "d1", pickup, 1000)
        ride = await request_ride(engine, pickup, drop)
        assert (await engine.get_active_request("passenger-1")).status == RideStatus.matched

        await engine.accept_request(ride.id, "d1")
        assert (await engine.get_active_request("passenger-1")).status == RideStatus.accepted

        await engine.start_trip(ride.id, "d1")
        assert await engine.get_active_request("passenger-1") is None


@pytest.mark.asyncio
class TestEngineResources:
    async def test_locks_released_after_lifecycle(self, engine, pickup, drop):
        await put_driver(engine, "d1", pickup, 1000)
        ride = await request_ride(engine, pickup, drop)
        await engine.accept_request(ride.id, "d1")
        await engine.start_trip(ride.id, "d1")
        await engine.complete_request(ride.id, "d1")
        assert engine._locks == {}
        assert engine._lock_users == {}

    async def test_failed_calls_leave_no_lock(self, engine, pickup, drop):
        ride = await request_ride(engine, pickup, drop)
        await engine.cancel_request(ride.id, "plans changed")

        with pytest.raises(StaleRequestError):
            await engine.cancel_request(ride.id, "again")
        with pytest.raises(RideRequestNotFoundError):
            await engine.accept_request("no-such-request", "d1")
        assert engine._locks == {}
        assert engine._lock_users == {}

    async def test_shutdown_closes_push_client(self, settings, clock):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(202)))
        notifier = WebhookNotifier("http://push.test/v1/notify", client=client, backoff_base=0)
        engine = build_in_memory_engine(settings, clock=clock, notifier=notifier)

        await engine.shutdown()
        assert client.is_closed
