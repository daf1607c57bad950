from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, field_validator

from ridematch.domain import RideRequest, RideStatus, VehicleClass


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class DriverStatusEnum(str, Enum):
    offline = "offline"
    online = "online"


class GeofenceEventType(str, Enum):
    near_pickup = "near_pickup"
    arrived_pickup = "arrived_pickup"
    near_drop = "near_drop"
    arrived_drop = "arrived_drop"


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------

class FareEstimate(BaseModel):
    vehicle_class: VehicleClass
    distance_km: float
    duration_min: float
    base_price: Decimal
    distance_charge: Decimal
    time_charge: Decimal
    surge_multiplier: float
    surge_reason: Optional[str] = None
    estimated_price: Decimal
    currency: str = "INR"

    model_config = {"frozen": True}


class PromoCodeValidation(BaseModel):
    code: str
    valid: bool
    discount: Decimal = Decimal("0.00")
    message: str

    model_config = {"frozen": True}


class GeofenceEvent(BaseModel):
    request_id: str
    type: GeofenceEventType
    distance_m: float
    eta_minutes: int
    title: str
    message: str

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Ride request schemas
# ---------------------------------------------------------------------------

class LocationIn(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    address: str = ""


class RideCreateRequest(BaseModel):
    pickup: LocationIn
    drop: LocationIn
    vehicle_class: VehicleClass = VehicleClass.car
    scheduled_time: Optional[datetime] = None
    promo_code: Optional[str] = Field(default=None, max_length=50)


class RideCancelRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)

    @field_validator("reason")
    @classmethod
    def reason_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("reason must not be blank")
        return v.strip()


class LocationOut(BaseModel):
    lat: float
    lng: float
    address: str


class RideRequestResponse(BaseModel):
    id: str
    passenger_id: str
    status: RideStatus
    vehicle_class: VehicleClass
    pickup: LocationOut
    drop: LocationOut
    fare: Decimal
    discount_amount: Decimal
    promo_code: Optional[str] = None
    surge_multiplier: float
    distance_km: float
    duration_min: float
    search_radius_km: float
    scheduled_time: Optional[datetime] = None
    matched_driver_id: Optional[str] = None
    cancel_reason: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, ride: RideRequest) -> "RideRequestResponse":
        return cls(
            id=ride.id,
            passenger_id=ride.passenger_id,
            status=ride.status,
            vehicle_class=ride.vehicle_class,
            pickup=LocationOut(lat=ride.pickup.lat, lng=ride.pickup.lng, address=ride.pickup.address),
            drop=LocationOut(lat=ride.drop.lat, lng=ride.drop.lng, address=ride.drop.address),
            fare=ride.fare,
            discount_amount=ride.discount_amount,
            promo_code=ride.promo_code,
            surge_multiplier=ride.surge_multiplier,
            distance_km=round(ride.distance_km, 3),
            duration_min=round(ride.duration_min, 1),
            search_radius_km=ride.search_radius_km,
            scheduled_time=ride.scheduled_time,
            matched_driver_id=ride.matched_driver_id,
            cancel_reason=ride.cancel_reason,
            created_at=ride.created_at,
            updated_at=ride.updated_at,
        )


# ---------------------------------------------------------------------------
# Driver schemas
# ---------------------------------------------------------------------------

class DriverStatusRequest(BaseModel):
    status: DriverStatusEnum
    vehicle_class: VehicleClass = VehicleClass.car
    rating: float = Field(default=5.0, ge=0, le=5)
    lat: Optional[float] = Field(default=None, ge=-90, le=90)
    lng: Optional[float] = Field(default=None, ge=-180, le=180)


class DriverStatusResponse(BaseModel):
    id: str
    status: DriverStatusEnum


class LocationUpdateRequest(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    ride_id: Optional[str] = None
    heading: Optional[float] = Field(default=None, ge=0, lt=360)
    speed: Optional[float] = Field(default=None, ge=0)


class DriverRideAction(BaseModel):
    ride_id: str


# ---------------------------------------------------------------------------
# Fare / promo schemas
# ---------------------------------------------------------------------------

class FareEstimateRequest(BaseModel):
    pickup: LocationIn
    drop: LocationIn
    vehicle_class: VehicleClass = VehicleClass.car


class FareRange(BaseModel):
    min: float
    max: float
    currency: str = "INR"


class FareEstimateResponse(BaseModel):
    estimate: FareEstimate
    range: FareRange


class PromoValidateRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=50)
    fare: Decimal = Field(..., ge=0)
    vehicle_class: VehicleClass = VehicleClass.car
