"""
Domain entities shared by the engine, the repositories and the HTTP layer.
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional


class RideStatus(str, Enum):
    pending = "pending"
    searching = "searching"
    matched = "matched"
    accepted = "accepted"
    in_progress = "in_progress"
    completed = "completed"
    cancelled = "cancelled"
    expired = "expired"


TERMINAL_STATUSES = frozenset({RideStatus.completed, RideStatus.cancelled, RideStatus.expired})
DRIVER_BOUND_STATUSES = frozenset({RideStatus.matched, RideStatus.accepted, RideStatus.in_progress})
# What a passenger sees as their current ride while it is still being arranged
ACTIVE_STATUSES = frozenset({RideStatus.searching, RideStatus.matched, RideStatus.accepted})


class VehicleClass(str, Enum):
    bike = "bike"
    auto = "auto"
    car = "car"


@dataclass(frozen=True)
class Location:
    lat: float
    lng: float
    address: str = ""


@dataclass
class RideRequest:
    passenger_id: str
    pickup: Location
    drop: Location
    created_at: datetime
    vehicle_class: VehicleClass = VehicleClass.car
    status: RideStatus = RideStatus.searching
    fare: Decimal = Decimal("0.00")
    discount_amount: Decimal = Decimal("0.00")
    promo_code: Optional[str] = None
    surge_multiplier: float = 1.0
    distance_km: float = 0.0
    duration_min: float = 0.0
    search_radius_km: float = 0.0
    search_started_at: Optional[datetime] = None
    scheduled_time: Optional[datetime] = None
    matched_driver_id: Optional[str] = None
    rejected_driver_ids: list[str] = field(default_factory=list)
    cancel_reason: Optional[str] = None
    cancelled_by: Optional[str] = None
    matched_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def final_fare(self) -> Decimal:
        return self.fare - self.discount_amount


@dataclass
class DriverSnapshot:
    """Last known state of one driver. Written last-write-wins by position reports."""
    driver_id: str
    lat: float
    lng: float
    updated_at: datetime
    heading: Optional[float] = None
    speed: Optional[float] = None
    vehicle_class: VehicleClass = VehicleClass.car
    rating: float = 5.0
    online: bool = True
    claimed_request_id: Optional[str] = None
    claim_expires_at: Optional[datetime] = None


@dataclass(frozen=True)
class DriverCandidate:
    driver_id: str
    distance_km: float
    rating: float
    lat: float
    lng: float


class DiscountType(str, Enum):
    percentage = "percentage"
    fixed = "fixed"


@dataclass
class PromoCode:
    code: str
    discount_type: DiscountType
    discount_value: Decimal
    valid_from: datetime
    valid_until: datetime
    min_fare: Decimal = Decimal("0")
    max_discount: Optional[Decimal] = None
    max_uses: Optional[int] = None
    current_uses: int = 0
    per_user_limit: int = 1
    is_active: bool = True
    vehicle_classes: list[str] = field(default_factory=list)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
