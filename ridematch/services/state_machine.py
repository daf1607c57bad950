"""
Ride request lifecycle graph.

    pending            -> searching, matched, cancelled
    searching          -> matched, expired, cancelled
    matched            -> accepted, searching, cancelled
    accepted           -> in_progress, cancelled
    in_progress        -> completed
    completed / cancelled / expired are final
"""
from datetime import datetime

from ridematch.domain import RideRequest, RideStatus, TERMINAL_STATUSES
from ridematch.errors import InvalidTransitionError, StaleRequestError

VALID_TRANSITIONS: dict[RideStatus, frozenset[RideStatus]] = {
    RideStatus.pending: frozenset({RideStatus.searching, RideStatus.matched, RideStatus.cancelled}),
    RideStatus.searching: frozenset({RideStatus.matched, RideStatus.expired, RideStatus.cancelled}),
    RideStatus.matched: frozenset({RideStatus.accepted, RideStatus.searching, RideStatus.cancelled}),
    RideStatus.accepted: frozenset({RideStatus.in_progress, RideStatus.cancelled}),
    RideStatus.in_progress: frozenset({RideStatus.completed}),
    RideStatus.completed: frozenset(),
    RideStatus.cancelled: frozenset(),
    RideStatus.expired: frozenset(),
}

_TIMESTAMP_FIELD = {
    RideStatus.matched: "matched_at",
    RideStatus.accepted: "accepted_at",
    RideStatus.in_progress: "started_at",
    RideStatus.completed: "completed_at",
    RideStatus.cancelled: "cancelled_at",
    RideStatus.expired: "expired_at",
}


def is_valid_transition(current: RideStatus, target: RideStatus) -> bool:
    return target in VALID_TRANSITIONS.get(current, frozenset())


def ensure_mutable(ride: RideRequest) -> None:
    if ride.status in TERMINAL_STATUSES:
        raise StaleRequestError(ride.id, ride.status.value)


def transition(
    ride: RideRequest,
    target: RideStatus,
    at: datetime,
    *,
    driver_id: str | None = None,
) -> RideRequest:
    """
    Move `ride` to `target` in place, keeping matched_driver_id consistent with
    the new status. `driver_id` is required when entering matched.
    """
    ensure_mutable(ride)
    if not is_valid_transition(ride.status, target):
        raise InvalidTransitionError(ride.id, ride.status.value, target.value)

    if target == RideStatus.matched:
        if not driver_id:
            raise InvalidTransitionError(ride.id, ride.status.value, target.value, "driver id required")
        ride.matched_driver_id = driver_id
    elif target in (RideStatus.searching, RideStatus.cancelled, RideStatus.expired, RideStatus.completed):
        ride.matched_driver_id = None

    if target == RideStatus.searching and ride.search_started_at is None:
        ride.search_started_at = at

    ts_field = _TIMESTAMP_FIELD.get(target)
    if ts_field:
        setattr(ride, ts_field, at)
    ride.status = target
    ride.updated_at = at
    return ride
