"""
Driver availability index: last known position of every driver plus the
claim field that keeps two ride requests from matching the same driver.

claim() is a compare-and-swap: it succeeds only when no live claim exists.
"""
import logging
import threading
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Iterable, Optional, Protocol

import redis.asyncio as aioredis

from ridematch.domain import DriverCandidate, DriverSnapshot, Location, VehicleClass
from ridematch.redis_client import (
    CONFIRM_CLAIM_SCRIPT,
    RELEASE_CLAIM_SCRIPT,
    claim_key,
    driver_key,
    geo_add_driver,
    geo_nearby_drivers,
    geo_remove_driver,
)
from ridematch.services.clock import Clock
from ridematch.services.geo import haversine_km

logger = logging.getLogger(__name__)


class DriverAvailabilityIndex(Protocol):
    async def update_position(
        self,
        driver_id: str,
        lat: float,
        lng: float,
        heading: Optional[float] = None,
        speed: Optional[float] = None,
    ) -> None:
        ...

    async def set_online(
        self,
        driver_id: str,
        online: bool,
        vehicle_class: str = "car",
        rating: float = 5.0,
        lat: Optional[float] = None,
        lng: Optional[float] = None,
    ) -> None:
        ...

    async def query_nearby(
        self,
        center: Location,
        radius_km: float,
        exclude: Iterable[str] = (),
        vehicle_class: Optional[str] = None,
        limit: int = 10,
    ) -> list[DriverCandidate]:
        ...

    async def claim(self, driver_id: str, request_id: str) -> bool:
        ...

    async def confirm(self, driver_id: str, request_id: str) -> bool:
        ...

    async def release(self, driver_id: str, request_id: Optional[str] = None) -> bool:
        ...

    async def get(self, driver_id: str) -> Optional[DriverSnapshot]:
        ...


def _rank(candidates: list[DriverCandidate], limit: int) -> list[DriverCandidate]:
    # nearest first, higher rating wins a tie
    return sorted(candidates, key=lambda c: (round(c.distance_km, 6), -c.rating, c.driver_id))[:limit]


class InMemoryAvailabilityIndex:
    """Linear scan over the fleet; every read-modify-write happens under one lock."""

    def __init__(self, clock: Clock, location_ttl_seconds: float = 30.0, claim_ttl_seconds: float = 60.0):
        self.clock = clock
        self.location_ttl = timedelta(seconds=location_ttl_seconds)
        self.claim_ttl = timedelta(seconds=claim_ttl_seconds)
        self._drivers: dict[str, DriverSnapshot] = {}
        self._lock = threading.Lock()

    def _claim_live(self, snap: DriverSnapshot, now: datetime) -> bool:
        if snap.claimed_request_id is None:
            return False
        return snap.claim_expires_at is None or snap.claim_expires_at > now

    async def update_position(self, driver_id, lat, lng, heading=None, speed=None) -> None:
        now = self.clock.now()
        with self._lock:
            snap = self._drivers.get(driver_id)
            if snap is None:
                self._drivers[driver_id] = DriverSnapshot(
                    driver_id=driver_id, lat=lat, lng=lng, heading=heading, speed=speed,
                    updated_at=now, online=False,
                )
                return
            snap.lat, snap.lng, snap.updated_at = lat, lng, now
            if heading is not None:
                snap.heading = heading
            if speed is not None:
                snap.speed = speed

    async def set_online(self, driver_id, online, vehicle_class="car", rating=5.0, lat=None, lng=None) -> None:
        now = self.clock.now()
        vehicle_class = VehicleClass(vehicle_class)
        with self._lock:
            snap = self._drivers.get(driver_id)
            if snap is None:
                if lat is None or lng is None:
                    raise ValueError(f"driver {driver_id} has no known position")
                snap = DriverSnapshot(driver_id=driver_id, lat=lat, lng=lng, updated_at=now)
                self._drivers[driver_id] = snap
            elif lat is not None and lng is not None:
                snap.lat, snap.lng, snap.updated_at = lat, lng, now
            snap.online = online
            snap.vehicle_class = vehicle_class
            snap.rating = rating
        logger.info("Driver %s is now %s", driver_id, "online" if online else "offline")

    async def query_nearby(self, center, radius_km, exclude=(), vehicle_class=None, limit=10) -> list[DriverCandidate]:
        now = self.clock.now()
        excluded = set(exclude)
        wanted = VehicleClass(vehicle_class) if vehicle_class else None
        found: list[DriverCandidate] = []
        with self._lock:
            for snap in self._drivers.values():
                if not snap.online or snap.driver_id in excluded:
                    continue
                if wanted is not None and snap.vehicle_class != wanted:
                    continue
                if now - snap.updated_at > self.location_ttl:
                    continue
                if self._claim_live(snap, now):
                    continue
                distance = haversine_km(center.lat, center.lng, snap.lat, snap.lng)
                if distance <= radius_km:
                    found.append(DriverCandidate(snap.driver_id, distance, snap.rating, snap.lat, snap.lng))
        return _rank(found, limit)

    async def claim(self, driver_id: str, request_id: str) -> bool:
        now = self.clock.now()
        with self._lock:
            snap = self._drivers.get(driver_id)
            if snap is None or not snap.online or self._claim_live(snap, now):
                return False
            snap.claimed_request_id = request_id
            snap.claim_expires_at = now + self.claim_ttl
            return True

    async def confirm(self, driver_id: str, request_id: str) -> bool:
        now = self.clock.now()
        with self._lock:
            snap = self._drivers.get(driver_id)
            if snap is None or snap.claimed_request_id != request_id or not self._claim_live(snap, now):
                return False
            snap.claim_expires_at = None
            return True

    async def release(self, driver_id: str, request_id: Optional[str] = None) -> bool:
        with self._lock:
            snap = self._drivers.get(driver_id)
            if snap is None or snap.claimed_request_id is None:
                return False
            if request_id is not None and snap.claimed_request_id != request_id:
                return False
            snap.claimed_request_id = None
            snap.claim_expires_at = None
            return True

    async def get(self, driver_id: str) -> Optional[DriverSnapshot]:
        with self._lock:
            snap = self._drivers.get(driver_id)
            return replace(snap) if snap else None


class RedisAvailabilityIndex:
    """
    Keys used:
      drivers:geo:{vehicle_class}  - GEO set of online drivers
      driver:{id}                  - hash: lat, lng, heading, speed, vehicle_class, rating, online, updated_at
      driver:{id}:claim            - request id holding the driver (SET NX PX)
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        clock: Clock,
        location_ttl_seconds: float = 30.0,
        claim_ttl_seconds: float = 60.0,
    ):
        self.redis = redis
        self.clock = clock
        self.location_ttl_seconds = location_ttl_seconds
        self.claim_ttl_ms = int(claim_ttl_seconds * 1000)

    async def update_position(self, driver_id, lat, lng, heading=None, speed=None) -> None:
        mapping = {"lat": lat, "lng": lng, "updated_at": self.clock.now().timestamp()}
        if heading is not None:
            mapping["heading"] = heading
        if speed is not None:
            mapping["speed"] = speed
        await self.redis.hset(driver_key(driver_id), mapping=mapping)
        vehicle_class, online = await self.redis.hmget(driver_key(driver_id), ["vehicle_class", "online"])
        if vehicle_class and online == "1":
            await geo_add_driver(self.redis, vehicle_class, driver_id, lat, lng)

    async def set_online(self, driver_id, online, vehicle_class="car", rating=5.0, lat=None, lng=None) -> None:
        vehicle_class = VehicleClass(vehicle_class).value
        mapping = {"vehicle_class": vehicle_class, "rating": rating, "online": "1" if online else "0"}
        if lat is not None and lng is not None:
            mapping.update(lat=lat, lng=lng, updated_at=self.clock.now().timestamp())
        await self.redis.hset(driver_key(driver_id), mapping=mapping)

        for other in VehicleClass:
            if not online or other.value != vehicle_class:
                await geo_remove_driver(self.redis, other.value, driver_id)
        if online:
            cur_lat, cur_lng = await self.redis.hmget(driver_key(driver_id), ["lat", "lng"])
            if cur_lat is None or cur_lng is None:
                raise ValueError(f"driver {driver_id} has no known position")
            await geo_add_driver(self.redis, vehicle_class, driver_id, float(cur_lat), float(cur_lng))
        logger.info("Driver %s is now %s", driver_id, "online" if online else "offline")

    async def query_nearby(self, center, radius_km, exclude=(), vehicle_class=None, limit=10) -> list[DriverCandidate]:
        excluded = set(exclude)
        classes = [VehicleClass(vehicle_class).value] if vehicle_class else [v.value for v in VehicleClass]
        now_ts = self.clock.now().timestamp()
        found: list[DriverCandidate] = []
        for vc in classes:
            hits = await geo_nearby_drivers(self.redis, vc, center.lat, center.lng, radius_km, count=limit * 3)
            for driver_id, distance in hits:
                if driver_id in excluded:
                    continue
                lat, lng, rating, online, updated_at = await self.redis.hmget(
                    driver_key(driver_id), ["lat", "lng", "rating", "online", "updated_at"]
                )
                if online != "1" or updated_at is None:
                    continue
                if now_ts - float(updated_at) > self.location_ttl_seconds:
                    continue
                if await self.redis.exists(claim_key(driver_id)):
                    continue
                found.append(DriverCandidate(driver_id, distance, float(rating or 5.0), float(lat), float(lng)))
        return _rank(found, limit)

    async def claim(self, driver_id: str, request_id: str) -> bool:
        acquired = await self.redis.set(claim_key(driver_id), request_id, nx=True, px=self.claim_ttl_ms)
        return bool(acquired)

    async def confirm(self, driver_id: str, request_id: str) -> bool:
        return bool(await self.redis.eval(CONFIRM_CLAIM_SCRIPT, 1, claim_key(driver_id), request_id))

    async def release(self, driver_id: str, request_id: Optional[str] = None) -> bool:
        if request_id is None:
            return bool(await self.redis.delete(claim_key(driver_id)))
        return bool(await self.redis.eval(RELEASE_CLAIM_SCRIPT, 1, claim_key(driver_id), request_id))

    async def get(self, driver_id: str) -> Optional[DriverSnapshot]:
        data = await self.redis.hgetall(driver_key(driver_id))
        if not data or "lat" not in data:
            return None
        claimed = await self.redis.get(claim_key(driver_id))
        updated_at = datetime.fromtimestamp(float(data.get("updated_at", 0)), tz=self.clock.now().tzinfo)
        return DriverSnapshot(
            driver_id=driver_id,
            lat=float(data["lat"]),
            lng=float(data["lng"]),
            heading=float(data["heading"]) if "heading" in data else None,
            speed=float(data["speed"]) if "speed" in data else None,
            vehicle_class=VehicleClass(data.get("vehicle_class", "car")),
            rating=float(data.get("rating", 5.0)),
            online=data.get("online") == "1",
            updated_at=updated_at,
            claimed_request_id=claimed,
        )
