"""
Fare estimation and the demand signal that feeds the surge multiplier.
"""
import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Protocol

import redis.asyncio as aioredis

from ridematch.domain import Location, VehicleClass
from ridematch.schemas.schemas import FareEstimate
from ridematch.services.geo import estimate_eta_minutes, haversine_km

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Vehicle class rates (INR)
# ---------------------------------------------------------------------------
BASE_FEE: dict[str, Decimal] = {"bike": Decimal("20"), "auto": Decimal("30"), "car": Decimal("50")}
RATE_PER_KM: dict[str, Decimal] = {"bike": Decimal("8"), "auto": Decimal("12"), "car": Decimal("15")}
RATE_PER_MIN: dict[str, Decimal] = {"bike": Decimal("1"), "auto": Decimal("1.5"), "car": Decimal("2")}

CENT = Decimal("0.01")


def _to_dec(value: float | Decimal) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def clamp_surge(demand_factor: float, max_surge: float) -> float:
    return min(max(demand_factor, 1.0), max_surge)


def surge_reason_for(multiplier: float) -> str | None:
    if multiplier >= 2.0:
        return "Very High Demand"
    if multiplier > 1.0:
        return "High Demand"
    return None


# ---------------------------------------------------------------------------
# Fare calculation
# ---------------------------------------------------------------------------

def calculate_fare(
    vehicle_class: str,
    distance_km: float,
    duration_min: float,
    surge_multiplier: float,
) -> FareEstimate:
    """
    estimated = round2((base + distance_charge + time_charge) * surge)
    Components are rounded first so the estimate never falls below their sum.
    """
    vehicle_class = VehicleClass(vehicle_class).value
    if distance_km < 0 or duration_min < 0:
        raise ValueError("distance and duration must be non-negative")

    base = _to_dec(BASE_FEE[vehicle_class])
    distance_charge = _to_dec(Decimal(str(distance_km)) * RATE_PER_KM[vehicle_class])
    time_charge = _to_dec(Decimal(str(duration_min)) * RATE_PER_MIN[vehicle_class])
    subtotal = base + distance_charge + time_charge
    total = _to_dec(subtotal * Decimal(str(surge_multiplier)))

    return FareEstimate(
        vehicle_class=vehicle_class,
        distance_km=distance_km,
        duration_min=duration_min,
        base_price=base,
        distance_charge=distance_charge,
        time_charge=time_charge,
        surge_multiplier=surge_multiplier,
        surge_reason=surge_reason_for(surge_multiplier),
        estimated_price=total,
    )


def estimate_fare_range(estimate: FareEstimate) -> dict:
    """Min/max window (+-10%) shown while the passenger is choosing a class."""
    total_f = float(estimate.estimated_price)
    return {
        "min": round(total_f * 0.9, 2),
        "max": round(total_f * 1.1, 2),
        "currency": estimate.currency,
    }


class FareEstimator:
    def __init__(self, max_surge: float, average_speed_kmh: float):
        self.max_surge = max_surge
        self.average_speed_kmh = average_speed_kmh

    def estimate(
        self,
        vehicle_class: str,
        distance_km: float,
        duration_min: float,
        demand_factor: float = 1.0,
    ) -> FareEstimate:
        surge = clamp_surge(demand_factor, self.max_surge)
        return calculate_fare(vehicle_class, distance_km, duration_min, surge)

    def estimate_route(
        self,
        pickup: Location,
        drop: Location,
        vehicle_class: str,
        demand_factor: float = 1.0,
    ) -> FareEstimate:
        distance_km = round(haversine_km(pickup.lat, pickup.lng, drop.lat, drop.lng), 3)
        duration_min = round(estimate_eta_minutes(distance_km, self.average_speed_kmh), 1)
        return self.estimate(vehicle_class, distance_km, duration_min, demand_factor)


# ---------------------------------------------------------------------------
# Demand signal
# ---------------------------------------------------------------------------

class DemandSignal(Protocol):
    async def demand_factor(self, pickup: Location, vehicle_class: str) -> float:
        ...


class StaticDemandSignal:
    def __init__(self, factor: float = 1.0):
        self.factor = factor

    async def demand_factor(self, pickup: Location, vehicle_class: str) -> float:
        return self.factor


class RedisDemandSignal:
    """
    Reads the demand factor an external pricing job publishes per vehicle class.

    Keys used:
      surge:demand_factor:{vehicle_class}  - float >= 1.0, absent means no surge
    """

    def __init__(self, redis: aioredis.Redis, default: float = 1.0):
        self.redis = redis
        self.default = default

    async def demand_factor(self, pickup: Location, vehicle_class: str) -> float:
        raw = await self.redis.get(f"surge:demand_factor:{VehicleClass(vehicle_class).value}")
        if raw is None:
            return self.default
        try:
            return float(raw)
        except (TypeError, ValueError):
            logger.warning("Ignoring malformed demand factor %r for %s", raw, vehicle_class)
            return self.default
