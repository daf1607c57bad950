"""
Driver-passenger matching engine.

Flow:
  1. create_request prices the ride and stores it as searching (pending if scheduled)
  2. A search loop queries the availability index for the nearest free drivers
  3. Each candidate is claimed with a compare-and-swap; a lost claim moves on to the next
  4. The winning claim moves the request to matched and opens the accept window
  5. No candidate: grow the radius; at max radius past the search ceiling -> expired
  6. Reject / accept-window lapse release the claim and resume searching
  7. A round that raises is retried with doubling waits; repeated failures cancel the request

Every transition runs under the request's own lock, so concurrent callers are
serialized and the loser sees InvalidTransitionError.
"""
import asyncio
import copy
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from ridematch.config import Settings
from ridematch.domain import DriverCandidate, Location, RideRequest, RideStatus, VehicleClass
from ridematch.errors import ClaimConflictError, InvalidTransitionError, NoDriverAvailableError
from ridematch.schemas.schemas import FareEstimate, GeofenceEvent, PromoCodeValidation
from ridematch.services.availability import DriverAvailabilityIndex
from ridematch.services.clock import Clock
from ridematch.services.events import RequestEventBus, UpdateCallback
from ridematch.services.geo import eta_whole_minutes, haversine_km
from ridematch.services.geofence import GeofenceMonitor, TripLeg
from ridematch.services.notifier import Notifier
from ridematch.services.pricing import DemandSignal, FareEstimator
from ridematch.services.promo import PromoValidator
from ridematch.services.repository import RideRequestRepository
from ridematch.services.state_machine import ensure_mutable, transition

logger = logging.getLogger(__name__)

SEARCHABLE = (RideStatus.pending, RideStatus.searching)


class _Round(Enum):
    matched = "matched"
    stopped = "stopped"
    retry = "retry"


class MatchingEngine:
    def __init__(
        self,
        repository: RideRequestRepository,
        index: DriverAvailabilityIndex,
        promo_validator: PromoValidator,
        fare_estimator: FareEstimator,
        demand_signal: DemandSignal,
        notifier: Notifier,
        clock: Clock,
        settings: Settings,
        events: RequestEventBus | None = None,
    ):
        self.repository = repository
        self.index = index
        self.promo_validator = promo_validator
        self.fare_estimator = fare_estimator
        self.demand_signal = demand_signal
        self.notifier = notifier
        self.clock = clock
        self.settings = settings
        self.events = events or RequestEventBus()
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._search_tasks: dict[str, asyncio.Task] = {}
        self._accept_timers: dict[str, asyncio.Task] = {}
        self._monitors: dict[str, GeofenceMonitor] = {}

    # ------------------------------------------------------------------
    # Pricing / promos
    # ------------------------------------------------------------------

    async def estimate_fare(self, pickup: Location, drop: Location, vehicle_class: str) -> FareEstimate:
        factor = await self.demand_signal.demand_factor(pickup, vehicle_class)
        return self.fare_estimator.estimate_route(pickup, drop, vehicle_class, factor)

    async def validate_promo_code(
        self, code: str, user_id: str, fare: Decimal, vehicle_class: str
    ) -> PromoCodeValidation:
        return await self.promo_validator.validate(code, user_id, fare, vehicle_class)

    # ------------------------------------------------------------------
    # Passenger operations
    # ------------------------------------------------------------------

    async def create_request(
        self,
        passenger_id: str,
        pickup: Location,
        drop: Location,
        vehicle_class: str = VehicleClass.car,
        scheduled_time: Optional[datetime] = None,
        promo_code: Optional[str] = None,
    ) -> RideRequest:
        vehicle_class = VehicleClass(vehicle_class)
        now = self.clock.now()
        if scheduled_time is not None:
            if scheduled_time.tzinfo is None:
                scheduled_time = scheduled_time.replace(tzinfo=timezone.utc)
            if scheduled_time <= now:
                scheduled_time = None

        estimate = await self.estimate_fare(pickup, drop, vehicle_class.value)
        discount = Decimal("0.00")
        if promo_code:
            validation = await self.promo_validator.require(
                promo_code, passenger_id, estimate.estimated_price, vehicle_class.value
            )
            discount = validation.discount
            promo_code = validation.code

        ride = RideRequest(
            passenger_id=passenger_id,
            pickup=pickup,
            drop=drop,
            vehicle_class=vehicle_class,
            status=RideStatus.pending if scheduled_time else RideStatus.searching,
            fare=estimate.estimated_price,
            discount_amount=discount,
            promo_code=promo_code,
            surge_multiplier=estimate.surge_multiplier,
            distance_km=estimate.distance_km,
            duration_min=estimate.duration_min,
            search_radius_km=self.settings.search_radius_min_km,
            search_started_at=None if scheduled_time else now,
            scheduled_time=scheduled_time,
            created_at=now,
            updated_at=now,
        )
        await self.repository.add(ride)
        logger.info(
            "Created ride request=%s passenger=%s class=%s fare=%s status=%s",
            ride.id, passenger_id, vehicle_class.value, ride.fare, ride.status.value,
        )
        await self.events.publish(ride)
        self._start_search(ride.id)
        return copy.deepcopy(ride)

    async def get_request(self, request_id: str) -> RideRequest:
        return await self.repository.get(request_id)

    async def get_active_request(self, passenger_id: str) -> Optional[RideRequest]:
        """Newest request of the passenger that is searching, matched or accepted."""
        return await self.repository.get_active_for_passenger(passenger_id)

    async def subscribe_to_request(self, request_id: str, on_update: UpdateCallback):
        """Returns an unsubscribe callable. Raises RideRequestNotFoundError for unknown ids."""
        await self.repository.get(request_id)
        return self.events.subscribe(request_id, on_update)

    async def cancel_request(self, request_id: str, reason: str, cancelled_by: str = "passenger") -> RideRequest:
        if not reason or not reason.strip():
            raise ValueError("A cancellation reason is required")

        async with self._locked(request_id):
            ride = await self.repository.get(request_id)
            ensure_mutable(ride)
            driver_id = ride.matched_driver_id
            transition(ride, RideStatus.cancelled, self.clock.now())
            ride.cancel_reason = reason.strip()
            ride.cancelled_by = cancelled_by
            await self.repository.save(ride)
            await self.events.publish(ride)
            self._stop_background(request_id)
            if driver_id:
                await self.index.release(driver_id, request_id)
            self._finalize(request_id)

        logger.info("Ride request %s cancelled by %s: %s", request_id, cancelled_by, ride.cancel_reason)
        if driver_id and cancelled_by != "driver":
            await self._notify(driver_id, "Ride Cancelled", "The passenger cancelled this ride", ride,
                               reason=ride.cancel_reason)
        elif cancelled_by == "driver":
            await self._notify(ride.passenger_id, "Ride Cancelled", "Your driver cancelled this ride", ride,
                               reason=ride.cancel_reason)
        return ride

    # ------------------------------------------------------------------
    # Driver operations
    # ------------------------------------------------------------------

    async def set_driver_online(
        self,
        driver_id: str,
        online: bool,
        vehicle_class: str = VehicleClass.car,
        rating: float = 5.0,
        lat: Optional[float] = None,
        lng: Optional[float] = None,
    ) -> None:
        await self.index.set_online(driver_id, online, VehicleClass(vehicle_class).value, rating, lat, lng)

    async def accept_request(self, request_id: str, driver_id: str) -> RideRequest:
        async with self._locked(request_id):
            ride = await self.repository.get(request_id)
            self._ensure_assigned(ride, driver_id, RideStatus.accepted)
            if ride.status == RideStatus.matched and not await self.index.confirm(driver_id, request_id):
                raise InvalidTransitionError(
                    ride.id, ride.status.value, RideStatus.accepted.value, f"claim of driver {driver_id} has lapsed"
                )
            transition(ride, RideStatus.accepted, self.clock.now())
            await self.repository.save(ride)
            await self.events.publish(ride)
            self._cancel_accept_timer(request_id)
            self._attach_monitor(ride)

        logger.info("Driver %s accepted ride request %s", driver_id, request_id)
        snapshot = await self.index.get(driver_id)
        eta = None
        if snapshot is not None:
            distance = haversine_km(snapshot.lat, snapshot.lng, ride.pickup.lat, ride.pickup.lng)
            eta = eta_whole_minutes(distance, self.settings.assumed_average_speed_kmh)
        await self._notify(ride.passenger_id, "Driver Accepted", "Your driver is on the way", ride,
                           eta_minutes=eta)
        return ride

    async def reject_request(self, request_id: str, driver_id: str) -> RideRequest:
        async with self._locked(request_id):
            ride = await self.repository.get(request_id)
            self._ensure_assigned(ride, driver_id, RideStatus.searching)
            await self._return_to_search(ride, driver_id)
            self._cancel_accept_timer(request_id)

        logger.info("Driver %s rejected ride request %s", driver_id, request_id)
        self._start_search(request_id)
        return ride

    async def start_trip(self, request_id: str, driver_id: str) -> RideRequest:
        async with self._locked(request_id):
            ride = await self.repository.get(request_id)
            self._ensure_assigned(ride, driver_id, RideStatus.in_progress)
            transition(ride, RideStatus.in_progress, self.clock.now())
            await self.repository.save(ride)
            await self.events.publish(ride)

        logger.info("Trip started for ride request %s", request_id)
        await self._notify(ride.passenger_id, "Trip Started", "Enjoy your ride", ride)
        return ride

    async def complete_request(self, request_id: str, driver_id: str) -> RideRequest:
        async with self._locked(request_id):
            ride = await self.repository.get(request_id)
            self._ensure_assigned(ride, driver_id, RideStatus.completed)
            transition(ride, RideStatus.completed, self.clock.now())
            await self.repository.save(ride)
            await self.events.publish(ride)
            await self.index.release(driver_id, request_id)
            self._stop_background(request_id)
            self._finalize(request_id)

        logger.info("Ride request %s completed", request_id)
        await self._notify(ride.passenger_id, "Trip Completed", f"Fare due: ₹{ride.final_fare:.2f}", ride)
        return ride

    async def report_driver_position(
        self,
        driver_id: str,
        request_id: Optional[str],
        lat: float,
        lng: float,
        heading: Optional[float] = None,
        speed: Optional[float] = None,
    ) -> list[GeofenceEvent]:
        await self.index.update_position(driver_id, lat, lng, heading, speed)
        if request_id is None:
            return []
        monitor = self._monitors.get(request_id)
        if monitor is None:
            return []

        ride = await self.repository.get(request_id)
        if ride.matched_driver_id != driver_id:
            logger.warning("Ignoring position from driver %s for ride request %s", driver_id, request_id)
            return []
        if ride.status == RideStatus.accepted:
            leg = TripLeg.to_pickup
        elif ride.status == RideStatus.in_progress:
            leg = TripLeg.to_drop
        else:
            return []

        events = monitor.process(lat, lng, leg)
        for event in events:
            await self._notify(ride.passenger_id, event.title, event.message, ride,
                               event=event.type.value, distance_m=event.distance_m,
                               eta_minutes=event.eta_minutes)
        return events

    # ------------------------------------------------------------------
    # Search loop
    # ------------------------------------------------------------------

    def is_searching(self, request_id: str) -> bool:
        task = self._search_tasks.get(request_id)
        return task is not None and not task.done()

    def _start_search(self, request_id: str) -> None:
        if self.is_searching(request_id):
            return
        task = asyncio.create_task(self._search_loop(request_id), name=f"search:{request_id}")
        self._search_tasks[request_id] = task
        task.add_done_callback(lambda t, rid=request_id: self._search_done(rid, t))

    def _search_done(self, request_id: str, task: asyncio.Task) -> None:
        if self._search_tasks.get(request_id) is task:
            del self._search_tasks[request_id]
        if not task.cancelled() and task.exception() is not None:
            logger.error("Search loop for ride request %s failed", request_id, exc_info=task.exception())

    async def _search_loop(self, request_id: str) -> None:
        failures = 0
        try:
            while True:
                try:
                    outcome = await self._search_step(request_id)
                except NoDriverAvailableError:
                    raise
                except Exception as exc:
                    failures += 1
                    logger.exception("Search round %d for ride request %s failed", failures, request_id)
                    if failures >= self.settings.search_failure_max_attempts:
                        await self._abandon_search(request_id, f"Search failed: {type(exc).__name__}")
                        return
                    await self.clock.sleep(self.settings.search_round_interval_seconds * 2 ** (failures - 1))
                    continue
                failures = 0
                if outcome is not _Round.retry:
                    return
                await self.clock.sleep(self.settings.search_round_interval_seconds)
        except NoDriverAvailableError as exc:
            logger.warning("%s", exc)
            ride = await self.repository.get(request_id)
            await self._notify(ride.passenger_id, "No Drivers Available",
                               "We couldn't find a driver nearby. Please try again.", ride)

    async def _search_step(self, request_id: str) -> _Round:
        ride = await self.repository.get(request_id)
        if ride.status == RideStatus.pending:
            await self._wait_for_schedule(ride)
            if not await self._open_search(request_id):
                return _Round.stopped
        return await self._run_search_round(request_id)

    async def _abandon_search(self, request_id: str, reason: str) -> None:
        """Storage or index kept failing: end the request instead of leaving it searching."""
        async with self._locked(request_id):
            ride = await self.repository.get(request_id)
            if ride.status not in SEARCHABLE:
                return
            transition(ride, RideStatus.cancelled, self.clock.now())
            ride.cancel_reason = reason
            ride.cancelled_by = "system"
            await self.repository.save(ride)
            await self.events.publish(ride)
            self._cancel_accept_timer(request_id)
            self._finalize(request_id)

        logger.error("Ride request %s abandoned: %s", request_id, reason)
        await self._notify(ride.passenger_id, "Ride Request Failed",
                           "Something went wrong while finding your driver. Please try again.", ride,
                           reason=reason)

    async def _wait_for_schedule(self, ride: RideRequest) -> None:
        opens_at = ride.scheduled_time.timestamp() - self.settings.scheduled_search_lead_seconds
        delay = opens_at - self.clock.now().timestamp()
        if delay > 0:
            logger.info("Ride request %s scheduled; searching in %.0fs", ride.id, delay)
            await self.clock.sleep(delay)

    async def _open_search(self, request_id: str) -> bool:
        async with self._locked(request_id):
            ride = await self.repository.get(request_id)
            if ride.status != RideStatus.pending:
                return False
            transition(ride, RideStatus.searching, self.clock.now())
            await self.repository.save(ride)
            await self.events.publish(ride)
        return True

    async def _run_search_round(self, request_id: str) -> _Round:
        ride = await self.repository.get(request_id)
        if ride.status not in SEARCHABLE:
            return _Round.stopped

        candidates = await self.index.query_nearby(
            ride.pickup,
            ride.search_radius_km,
            exclude=ride.rejected_driver_ids,
            vehicle_class=ride.vehicle_class.value,
            limit=self.settings.candidate_limit,
        )
        for candidate in candidates:
            try:
                outcome = await self._try_claim(request_id, candidate)
            except ClaimConflictError as exc:
                logger.debug("%s", exc)
                continue
            return outcome

        return await self._after_empty_round(request_id)

    async def _try_claim(self, request_id: str, candidate: DriverCandidate) -> _Round:
        if not await self.index.claim(candidate.driver_id, request_id):
            raise ClaimConflictError(candidate.driver_id, request_id)

        committed = False
        try:
            async with self._locked(request_id):
                ride = await self.repository.get(request_id)
                if ride.status not in SEARCHABLE:
                    return _Round.stopped
                transition(ride, RideStatus.matched, self.clock.now(), driver_id=candidate.driver_id)
                await self.repository.save(ride)
                committed = True
                await self.events.publish(ride)
                self._start_accept_timer(request_id, candidate.driver_id)
        finally:
            if not committed:
                await self.index.release(candidate.driver_id, request_id)

        logger.info(
            "Matched ride request=%s to driver=%s (%.2f km)", request_id, candidate.driver_id, candidate.distance_km
        )
        await self._notify(candidate.driver_id, "New Ride Request",
                           f"Pickup {candidate.distance_km:.1f} km away", ride,
                           accept_within_seconds=self.settings.accept_window_seconds)
        await self._notify(ride.passenger_id, "Driver Found", "Waiting for the driver to confirm", ride)
        return _Round.matched

    async def _after_empty_round(self, request_id: str) -> _Round:
        async with self._locked(request_id):
            ride = await self.repository.get(request_id)
            if ride.status != RideStatus.searching:
                return _Round.stopped
            now = self.clock.now()
            max_radius = self.settings.search_radius_max_km
            if ride.search_radius_km < max_radius:
                ride.search_radius_km = min(ride.search_radius_km + self.settings.search_radius_increment_km, max_radius)
                ride.updated_at = now
                await self.repository.save(ride)
                await self.events.publish(ride)
                logger.info("Ride request %s: radius expanded to %.1f km", request_id, ride.search_radius_km)
                return _Round.retry

            elapsed = (now - ride.search_started_at).total_seconds()
            if elapsed < self.settings.max_search_seconds:
                return _Round.retry

            transition(ride, RideStatus.expired, now)
            await self.repository.save(ride)
            await self.events.publish(ride)
            self._cancel_accept_timer(request_id)
            self._finalize(request_id)
        raise NoDriverAvailableError(request_id, ride.search_radius_km, elapsed)

    # ------------------------------------------------------------------
    # Accept window
    # ------------------------------------------------------------------

    def _start_accept_timer(self, request_id: str, driver_id: str) -> None:
        self._cancel_accept_timer(request_id)
        self._accept_timers[request_id] = asyncio.create_task(
            self._accept_window(request_id, driver_id), name=f"accept:{request_id}"
        )

    def _cancel_accept_timer(self, request_id: str) -> None:
        task = self._accept_timers.pop(request_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _accept_window(self, request_id: str, driver_id: str) -> None:
        await self.clock.sleep(self.settings.accept_window_seconds)
        async with self._locked(request_id):
            ride = await self.repository.get(request_id)
            if ride.status != RideStatus.matched or ride.matched_driver_id != driver_id:
                return
            if self._accept_timers.get(request_id) is asyncio.current_task():
                del self._accept_timers[request_id]
            await self._return_to_search(ride, driver_id)

        logger.info("Driver %s did not answer ride request %s in time", driver_id, request_id)
        await self._notify(driver_id, "Ride Offer Expired", "The ride request was passed to another driver", ride)
        self._start_search(request_id)

    async def _return_to_search(self, ride: RideRequest, driver_id: str) -> None:
        """matched -> searching. Radius and search clock are kept. Caller holds the lock."""
        transition(ride, RideStatus.searching, self.clock.now())
        if driver_id not in ride.rejected_driver_ids:
            ride.rejected_driver_ids.append(driver_id)
        await self.repository.save(ride)
        await self.events.publish(ride)
        await self.index.release(driver_id, ride.id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _ensure_assigned(self, ride: RideRequest, driver_id: str, target: RideStatus) -> None:
        ensure_mutable(ride)
        if ride.matched_driver_id != driver_id:
            raise InvalidTransitionError(
                ride.id, ride.status.value, target.value, f"driver {driver_id} is not assigned to this request"
            )

    def _attach_monitor(self, ride: RideRequest) -> None:
        monitor = GeofenceMonitor(
            nearby_threshold_m=self.settings.nearby_threshold_m,
            arrived_threshold_m=self.settings.arrived_threshold_m,
            average_speed_kmh=self.settings.assumed_average_speed_kmh,
        )
        monitor.attach(ride.id, ride.pickup, ride.drop)
        self._monitors[ride.id] = monitor

    def _stop_background(self, request_id: str) -> None:
        task = self._search_tasks.pop(request_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        self._cancel_accept_timer(request_id)
        self._monitors.pop(request_id, None)

    def _finalize(self, request_id: str) -> None:
        """Request reached a final state: nothing will publish for it again."""
        self._monitors.pop(request_id, None)
        self.events.drop(request_id)

    @asynccontextmanager
    async def _locked(self, request_id: str):
        """
        Hold the request's lock. The lock lives only while someone holds or
        waits on it, so unknown or finished ids leave nothing behind.
        """
        lock = self._locks.setdefault(request_id, asyncio.Lock())
        self._lock_users[request_id] = self._lock_users.get(request_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[request_id] -= 1
            if not self._lock_users[request_id]:
                del self._lock_users[request_id]
                del self._locks[request_id]

    async def _notify(self, user_id: str, title: str, message: str, ride: RideRequest, **extra) -> None:
        payload = {"ride_request_id": ride.id, "status": ride.status.value, **extra}
        try:
            await self.notifier.notify(user_id, title, message, payload)
        except Exception:
            logger.exception("Notification to %s failed for ride request %s", user_id, ride.id)

    async def shutdown(self) -> None:
        tasks = [*self._search_tasks.values(), *self._accept_timers.values()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._search_tasks.clear()
        self._accept_timers.clear()
        await self.notifier.aclose()
