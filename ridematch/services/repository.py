"""
Persistence boundary for ride requests and promo codes.

Repositories hand out copies: a caller never mutates stored state without save().
Storage failures propagate to the caller unchanged.
"""
import copy
import threading
from decimal import Decimal
from typing import Optional, Protocol

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ridematch.domain import ACTIVE_STATUSES, DiscountType, Location, PromoCode, RideRequest, RideStatus, VehicleClass
from ridematch.errors import RideRequestNotFoundError
from ridematch.models.promo import PromoCodeRecord, PromoRedemptionRecord
from ridematch.models.ride_request import RideRequestRecord


class RideRequestRepository(Protocol):
    async def add(self, ride: RideRequest) -> RideRequest:
        ...

    async def get(self, request_id: str) -> RideRequest:
        ...

    async def save(self, ride: RideRequest) -> RideRequest:
        ...

    async def get_active_for_passenger(self, passenger_id: str) -> Optional[RideRequest]:
        ...


class PromoRepository(Protocol):
    async def get_by_code(self, code: str) -> Optional[PromoCode]:
        ...

    async def count_user_redemptions(self, promo_code_id: str, user_id: str) -> int:
        ...


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------

class InMemoryRideRequestRepository:
    def __init__(self):
        self._rows: dict[str, RideRequest] = {}
        self._lock = threading.Lock()

    async def add(self, ride: RideRequest) -> RideRequest:
        with self._lock:
            self._rows[ride.id] = copy.deepcopy(ride)
        return ride

    async def get(self, request_id: str) -> RideRequest:
        with self._lock:
            row = self._rows.get(request_id)
            if row is None:
                raise RideRequestNotFoundError(request_id)
            return copy.deepcopy(row)

    async def save(self, ride: RideRequest) -> RideRequest:
        with self._lock:
            if ride.id not in self._rows:
                raise RideRequestNotFoundError(ride.id)
            self._rows[ride.id] = copy.deepcopy(ride)
        return ride

    async def get_active_for_passenger(self, passenger_id: str) -> Optional[RideRequest]:
        newest = None
        with self._lock:
            # insertion order breaks created_at ties in favour of the later request
            for row in self._rows.values():
                if row.passenger_id != passenger_id or row.status not in ACTIVE_STATUSES:
                    continue
                if newest is None or row.created_at >= newest.created_at:
                    newest = row
            return copy.deepcopy(newest) if newest else None


class InMemoryPromoRepository:
    def __init__(self, codes: list[PromoCode] | None = None):
        self._codes: dict[str, PromoCode] = {}
        self._redemptions: dict[tuple[str, str], int] = {}
        for promo in codes or []:
            self.put(promo)

    def put(self, promo: PromoCode) -> None:
        self._codes[promo.code.upper()] = promo

    def record_redemption(self, promo_code_id: str, user_id: str) -> None:
        """Test/seed helper standing in for booking confirmation."""
        key = (promo_code_id, user_id)
        self._redemptions[key] = self._redemptions.get(key, 0) + 1
        for promo in self._codes.values():
            if promo.id == promo_code_id:
                promo.current_uses += 1

    async def get_by_code(self, code: str) -> Optional[PromoCode]:
        promo = self._codes.get(code.strip().upper())
        return copy.deepcopy(promo) if promo else None

    async def count_user_redemptions(self, promo_code_id: str, user_id: str) -> int:
        return self._redemptions.get((promo_code_id, user_id), 0)


# ---------------------------------------------------------------------------
# SQLAlchemy
# ---------------------------------------------------------------------------

def ride_to_record(ride: RideRequest, record: RideRequestRecord | None = None) -> RideRequestRecord:
    record = record or RideRequestRecord(id=ride.id)
    record.passenger_id = ride.passenger_id
    record.matched_driver_id = ride.matched_driver_id
    record.pickup_lat, record.pickup_lng, record.pickup_address = ride.pickup.lat, ride.pickup.lng, ride.pickup.address
    record.drop_lat, record.drop_lng, record.drop_address = ride.drop.lat, ride.drop.lng, ride.drop.address
    record.vehicle_class = ride.vehicle_class.value
    record.status = ride.status.value
    record.fare = ride.fare
    record.discount_amount = ride.discount_amount
    record.promo_code = ride.promo_code
    record.surge_multiplier = ride.surge_multiplier
    record.distance_km = ride.distance_km
    record.duration_min = ride.duration_min
    record.search_radius_km = ride.search_radius_km
    record.search_started_at = ride.search_started_at
    record.scheduled_time = ride.scheduled_time
    record.rejected_driver_ids = list(ride.rejected_driver_ids)
    record.cancel_reason = ride.cancel_reason
    record.cancelled_by = ride.cancelled_by
    record.matched_at = ride.matched_at
    record.accepted_at = ride.accepted_at
    record.started_at = ride.started_at
    record.completed_at = ride.completed_at
    record.cancelled_at = ride.cancelled_at
    record.expired_at = ride.expired_at
    record.created_at = ride.created_at
    record.updated_at = ride.updated_at
    return record


def record_to_ride(record: RideRequestRecord) -> RideRequest:
    return RideRequest(
        id=record.id,
        passenger_id=record.passenger_id,
        pickup=Location(record.pickup_lat, record.pickup_lng, record.pickup_address or ""),
        drop=Location(record.drop_lat, record.drop_lng, record.drop_address or ""),
        vehicle_class=VehicleClass(record.vehicle_class),
        status=RideStatus(record.status),
        fare=Decimal(record.fare),
        discount_amount=Decimal(record.discount_amount),
        promo_code=record.promo_code,
        surge_multiplier=float(record.surge_multiplier),
        distance_km=record.distance_km,
        duration_min=record.duration_min,
        search_radius_km=record.search_radius_km,
        search_started_at=record.search_started_at,
        scheduled_time=record.scheduled_time,
        matched_driver_id=record.matched_driver_id,
        rejected_driver_ids=list(record.rejected_driver_ids or []),
        cancel_reason=record.cancel_reason,
        cancelled_by=record.cancelled_by,
        matched_at=record.matched_at,
        accepted_at=record.accepted_at,
        started_at=record.started_at,
        completed_at=record.completed_at,
        cancelled_at=record.cancelled_at,
        expired_at=record.expired_at,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


def record_to_promo(record: PromoCodeRecord) -> PromoCode:
    return PromoCode(
        id=record.id,
        code=record.code,
        discount_type=DiscountType(record.discount_type),
        discount_value=Decimal(record.discount_value),
        max_discount=Decimal(record.max_discount) if record.max_discount is not None else None,
        min_fare=Decimal(record.min_fare),
        max_uses=record.max_uses,
        current_uses=record.current_uses,
        per_user_limit=record.per_user_limit,
        valid_from=record.valid_from,
        valid_until=record.valid_until,
        is_active=record.is_active,
        vehicle_classes=list(record.vehicle_classes or []),
    )


class SqlAlchemyRideRequestRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def add(self, ride: RideRequest) -> RideRequest:
        async with self.session_factory() as db:
            db.add(ride_to_record(ride))
            await db.commit()
        return ride

    async def get(self, request_id: str) -> RideRequest:
        async with self.session_factory() as db:
            record = await db.get(RideRequestRecord, request_id)
            if record is None:
                raise RideRequestNotFoundError(request_id)
            return record_to_ride(record)

    async def save(self, ride: RideRequest) -> RideRequest:
        # single writer per request: the engine's per-request lock serializes saves
        async with self.session_factory() as db:
            record = await db.get(RideRequestRecord, ride.id)
            if record is None:
                raise RideRequestNotFoundError(ride.id)
            ride_to_record(ride, record)
            await db.commit()
        return ride

    async def get_active_for_passenger(self, passenger_id: str) -> Optional[RideRequest]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(RideRequestRecord)
                .where(
                    RideRequestRecord.passenger_id == passenger_id,
                    RideRequestRecord.status.in_([s.value for s in ACTIVE_STATUSES]),
                )
                .order_by(RideRequestRecord.created_at.desc())
                .limit(1)
            )
            record = result.scalar_one_or_none()
            return record_to_ride(record) if record else None


class SqlAlchemyPromoRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get_by_code(self, code: str) -> Optional[PromoCode]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(PromoCodeRecord).where(PromoCodeRecord.code == code.strip().upper())
            )
            record = result.scalar_one_or_none()
            return record_to_promo(record) if record else None

    async def count_user_redemptions(self, promo_code_id: str, user_id: str) -> int:
        async with self.session_factory() as db:
            result = await db.execute(
                select(func.count(PromoRedemptionRecord.id)).where(
                    PromoRedemptionRecord.promo_code_id == promo_code_id,
                    PromoRedemptionRecord.user_id == user_id,
                )
            )
            return int(result.scalar_one())
