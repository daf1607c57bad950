"""
Fares router: POST /v1/fares/estimate, POST /v1/promos/validate
"""
from fastapi import APIRouter, Depends

from ridematch.dispatch import get_engine
from ridematch.domain import Location
from ridematch.middleware.auth import get_current_passenger
from ridematch.schemas.schemas import (
    FareEstimateRequest,
    FareEstimateResponse,
    FareRange,
    PromoCodeValidation,
    PromoValidateRequest,
)
from ridematch.services.matching import MatchingEngine
from ridematch.services.pricing import estimate_fare_range

router = APIRouter(prefix="/v1", tags=["Fares"])


@router.post("/fares/estimate", response_model=FareEstimateResponse)
async def estimate_fare(
    payload: FareEstimateRequest,
    engine: MatchingEngine = Depends(get_engine),
):
    estimate = await engine.estimate_fare(
        Location(payload.pickup.lat, payload.pickup.lng, payload.pickup.address),
        Location(payload.drop.lat, payload.drop.lng, payload.drop.address),
        payload.vehicle_class.value,
    )
    return FareEstimateResponse(estimate=estimate, range=FareRange(**estimate_fare_range(estimate)))


@router.post("/promos/validate", response_model=PromoCodeValidation)
async def validate_promo(
    payload: PromoValidateRequest,
    engine: MatchingEngine = Depends(get_engine),
    passenger_id: str = Depends(get_current_passenger),
):
    return await engine.validate_promo_code(payload.code, passenger_id, payload.fare, payload.vehicle_class.value)
