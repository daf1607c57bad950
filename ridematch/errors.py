"""Errors raised by the dispatch engine."""


class DispatchError(Exception):
    """Base class for every error the dispatch engine raises."""
    pass


class RideRequestNotFoundError(DispatchError):
    """Raised when a ride request id is unknown to the repository."""

    def __init__(self, request_id: str):
        super().__init__(f"Ride request {request_id} not found")
        self.request_id = request_id


class InvalidTransitionError(DispatchError):
    """Raised when a status change is not an edge of the lifecycle graph."""

    def __init__(self, request_id: str, current: str, target: str, detail: str = ""):
        message = f"Ride request {request_id} cannot move from {current} to {target}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.request_id = request_id
        self.current = current
        self.target = target


class StaleRequestError(InvalidTransitionError):
    """Raised on any mutation of a request that already reached a terminal state."""

    def __init__(self, request_id: str, current: str, target: str = "any"):
        super().__init__(request_id, current, target, detail="request is already final")


class NoDriverAvailableError(DispatchError):
    """Search ceiling reached without a match; the request ends as expired."""

    def __init__(self, request_id: str, radius_km: float, elapsed_seconds: float):
        super().__init__(
            f"No driver found for ride request {request_id} within {radius_km:g} km "
            f"after {elapsed_seconds:.0f}s"
        )
        self.request_id = request_id
        self.radius_km = radius_km
        self.elapsed_seconds = elapsed_seconds


class ClaimConflictError(DispatchError):
    """A candidate was claimed by another request first. Handled inside the engine."""

    def __init__(self, driver_id: str, request_id: str):
        super().__init__(f"Driver {driver_id} is no longer available for ride request {request_id}")
        self.driver_id = driver_id
        self.request_id = request_id


class InvalidPromoCodeError(DispatchError):
    """Raised when a promo code supplied with a ride request fails validation."""

    def __init__(self, code: str, reason: str):
        super().__init__(reason)
        self.code = code
        self.reason = reason
