"""
Rides router: POST /v1/rides, GET /v1/rides/active, GET /v1/rides/{id},
              POST /v1/rides/{id}/cancel,
              WS /v1/rides/{id}/events
"""
import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect, status

from ridematch.dispatch import get_engine
from ridematch.domain import Location, RideRequest
from ridematch.errors import RideRequestNotFoundError
from ridematch.middleware.auth import get_current_passenger, websocket_subject
from ridematch.schemas.schemas import RideCancelRequest, RideCreateRequest, RideRequestResponse
from ridematch.services.matching import MatchingEngine

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1/rides", tags=["Rides"])


async def _load_own_ride(engine: MatchingEngine, ride_id: str, passenger_id: str) -> RideRequest:
    ride = await engine.get_request(ride_id)
    if ride.passenger_id != passenger_id:
        # do not leak other passengers' requests
        raise HTTPException(status_code=404, detail="Ride request not found")
    return ride


@router.post("", status_code=status.HTTP_201_CREATED, response_model=RideRequestResponse)
async def create_ride(
    payload: RideCreateRequest,
    engine: MatchingEngine = Depends(get_engine),
    passenger_id: str = Depends(get_current_passenger),
):
    ride = await engine.create_request(
        passenger_id=passenger_id,
        pickup=Location(payload.pickup.lat, payload.pickup.lng, payload.pickup.address),
        drop=Location(payload.drop.lat, payload.drop.lng, payload.drop.address),
        vehicle_class=payload.vehicle_class,
        scheduled_time=payload.scheduled_time,
        promo_code=payload.promo_code,
    )
    return RideRequestResponse.from_domain(ride)


@router.get("/active", response_model=Optional[RideRequestResponse])
async def get_active_ride(
    engine: MatchingEngine = Depends(get_engine),
    passenger_id: str = Depends(get_current_passenger),
):
    """The passenger's newest searching, matched or accepted request, or null."""
    ride = await engine.get_active_request(passenger_id)
    return RideRequestResponse.from_domain(ride) if ride else None


@router.get("/{ride_id}", response_model=RideRequestResponse)
async def get_ride(
    ride_id: str,
    engine: MatchingEngine = Depends(get_engine),
    passenger_id: str = Depends(get_current_passenger),
):
    ride = await _load_own_ride(engine, ride_id, passenger_id)
    return RideRequestResponse.from_domain(ride)


@router.post("/{ride_id}/cancel", response_model=RideRequestResponse)
async def cancel_ride(
    ride_id: str,
    payload: RideCancelRequest,
    engine: MatchingEngine = Depends(get_engine),
    passenger_id: str = Depends(get_current_passenger),
):
    await _load_own_ride(engine, ride_id, passenger_id)
    ride = await engine.cancel_request(ride_id, payload.reason, cancelled_by="passenger")
    return RideRequestResponse.from_domain(ride)


@router.websocket("/{ride_id}/events")
async def ride_events(websocket: WebSocket, ride_id: str):
    """Pushes the ride request every time it changes, starting with its current state."""
    engine: MatchingEngine = websocket.app.state.engine
    passenger_id = websocket_subject(websocket)
    if passenger_id is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    try:
        await _load_own_ride(engine, ride_id, passenger_id)
    except (RideRequestNotFoundError, HTTPException):
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    queue: asyncio.Queue[RideRequest] = asyncio.Queue()
    unsubscribe = await engine.subscribe_to_request(ride_id, queue.put_nowait)
    try:
        # read after subscribing so no change between the two is lost
        ride = await engine.get_request(ride_id)
        await websocket.send_json(RideRequestResponse.from_domain(ride).model_dump(mode="json"))
        while not ride.is_terminal:
            ride = await queue.get()
            await websocket.send_json(RideRequestResponse.from_domain(ride).model_dump(mode="json"))
        await websocket.close()
    except WebSocketDisconnect:
        logger.info("Ride event stream for %s closed by client", ride_id)
    finally:
        unsubscribe()
