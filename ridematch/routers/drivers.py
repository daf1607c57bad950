"""
Drivers router: PATCH /v1/drivers/{id}/status, POST /v1/drivers/{id}/location,
                POST /v1/drivers/{id}/accept | reject | start | complete | cancel
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, status

from ridematch.dispatch import get_engine
from ridematch.middleware.auth import get_current_driver
from ridematch.schemas.schemas import (
    DriverRideAction,
    DriverStatusEnum,
    DriverStatusRequest,
    DriverStatusResponse,
    GeofenceEvent,
    LocationUpdateRequest,
    RideCancelRequest,
    RideRequestResponse,
)
from ridematch.services.matching import MatchingEngine

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1/drivers", tags=["Drivers"])


@router.patch("/{driver_id}/status", response_model=DriverStatusResponse)
async def update_driver_status(
    driver_id: str,
    payload: DriverStatusRequest,
    engine: MatchingEngine = Depends(get_engine),
    _: str = Depends(get_current_driver),
):
    """Toggle driver online/offline. Going online needs a position unless one was reported before."""
    try:
        await engine.set_driver_online(
            driver_id,
            payload.status == DriverStatusEnum.online,
            vehicle_class=payload.vehicle_class,
            rating=payload.rating,
            lat=payload.lat,
            lng=payload.lng,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return DriverStatusResponse(id=driver_id, status=payload.status)


@router.post("/{driver_id}/location", response_model=list[GeofenceEvent])
async def update_location(
    driver_id: str,
    payload: LocationUpdateRequest,
    engine: MatchingEngine = Depends(get_engine),
    _: str = Depends(get_current_driver),
):
    """
    High-frequency endpoint. Updates the availability index and, when the
    driver is serving `ride_id`, runs the pickup/drop geofences.
    Returns the geofence events this sample triggered.
    """
    return await engine.report_driver_position(
        driver_id, payload.ride_id, payload.lat, payload.lng, payload.heading, payload.speed
    )


@router.post("/{driver_id}/accept", response_model=RideRequestResponse)
async def accept_ride(
    driver_id: str,
    payload: DriverRideAction,
    engine: MatchingEngine = Depends(get_engine),
    _: str = Depends(get_current_driver),
):
    ride = await engine.accept_request(payload.ride_id, driver_id)
    return RideRequestResponse.from_domain(ride)


@router.post("/{driver_id}/reject", response_model=RideRequestResponse)
async def reject_ride(
    driver_id: str,
    payload: DriverRideAction,
    engine: MatchingEngine = Depends(get_engine),
    _: str = Depends(get_current_driver),
):
    ride = await engine.reject_request(payload.ride_id, driver_id)
    return RideRequestResponse.from_domain(ride)


@router.post("/{driver_id}/start", response_model=RideRequestResponse)
async def start_trip(
    driver_id: str,
    payload: DriverRideAction,
    engine: MatchingEngine = Depends(get_engine),
    _: str = Depends(get_current_driver),
):
    ride = await engine.start_trip(payload.ride_id, driver_id)
    return RideRequestResponse.from_domain(ride)


@router.post("/{driver_id}/complete", response_model=RideRequestResponse)
async def complete_trip(
    driver_id: str,
    payload: DriverRideAction,
    engine: MatchingEngine = Depends(get_engine),
    _: str = Depends(get_current_driver),
):
    ride = await engine.complete_request(payload.ride_id, driver_id)
    return RideRequestResponse.from_domain(ride)


@router.post("/{driver_id}/rides/{ride_id}/cancel", response_model=RideRequestResponse)
async def driver_cancel_ride(
    driver_id: str,
    ride_id: str,
    payload: RideCancelRequest,
    engine: MatchingEngine = Depends(get_engine),
    _: str = Depends(get_current_driver),
):
    ride = await engine.get_request(ride_id)
    if ride.matched_driver_id != driver_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Ride request not found")
    ride = await engine.cancel_request(ride_id, payload.reason, cancelled_by="driver")
    return RideRequestResponse.from_domain(ride)
