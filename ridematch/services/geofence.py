"""
Pickup / drop geofences for one active ride request.

Each threshold fires once per attachment. Entering the arrived band also
marks the matching "nearby" flag, so nearby is never reported after arrival.
"""
from dataclasses import dataclass
from enum import Enum

from ridematch.domain import Location
from ridematch.schemas.schemas import GeofenceEvent, GeofenceEventType
from ridematch.services.geo import eta_whole_minutes, format_distance, haversine_m


class TripLeg(str, Enum):
    to_pickup = "to_pickup"
    to_drop = "to_drop"


@dataclass
class GeofenceFlags:
    near_pickup: bool = False
    arrived_pickup: bool = False
    near_drop: bool = False
    arrived_drop: bool = False


class GeofenceMonitor:
    def __init__(
        self,
        nearby_threshold_m: float = 500.0,
        arrived_threshold_m: float = 50.0,
        average_speed_kmh: float = 30.0,
    ):
        self.nearby_threshold_m = nearby_threshold_m
        self.arrived_threshold_m = arrived_threshold_m
        self.average_speed_kmh = average_speed_kmh
        self.request_id: str | None = None
        self.pickup: Location | None = None
        self.drop: Location | None = None
        self.flags = GeofenceFlags()
        self.last_pickup_distance_m: float | None = None
        self.last_drop_distance_m: float | None = None

    def attach(self, request_id: str, pickup: Location, drop: Location) -> None:
        self.request_id = request_id
        self.pickup = pickup
        self.drop = drop
        self.flags = GeofenceFlags()
        self.last_pickup_distance_m = None
        self.last_drop_distance_m = None

    def process(self, lat: float, lng: float, leg: TripLeg = TripLeg.to_pickup) -> list[GeofenceEvent]:
        if self.request_id is None:
            raise RuntimeError("GeofenceMonitor is not attached to a ride request")

        self.last_pickup_distance_m = haversine_m(lat, lng, self.pickup.lat, self.pickup.lng)
        self.last_drop_distance_m = haversine_m(lat, lng, self.drop.lat, self.drop.lng)

        if leg == TripLeg.to_pickup:
            return self._evaluate_pickup(self.last_pickup_distance_m)
        return self._evaluate_drop(self.last_drop_distance_m)

    def _evaluate_pickup(self, distance_m: float) -> list[GeofenceEvent]:
        flags = self.flags
        if distance_m <= self.arrived_threshold_m and not flags.arrived_pickup:
            flags.arrived_pickup = flags.near_pickup = True
            return [self._event(
                GeofenceEventType.arrived_pickup, distance_m,
                "Driver Arrived!", "Your driver has arrived at the pickup location",
            )]
        if distance_m <= self.nearby_threshold_m and not flags.near_pickup:
            flags.near_pickup = True
            return [self._event(
                GeofenceEventType.near_pickup, distance_m,
                "Driver Nearby", f"Driver is {format_distance(distance_m)} away from pickup",
            )]
        return []

    def _evaluate_drop(self, distance_m: float) -> list[GeofenceEvent]:
        flags = self.flags
        if distance_m <= self.arrived_threshold_m and not flags.arrived_drop:
            flags.arrived_drop = flags.near_drop = True
            return [self._event(
                GeofenceEventType.arrived_drop, distance_m,
                "Destination Reached!", "You have arrived at your destination",
            )]
        if distance_m <= self.nearby_threshold_m and not flags.near_drop:
            flags.near_drop = True
            return [self._event(
                GeofenceEventType.near_drop, distance_m,
                "Approaching Destination", f"{format_distance(distance_m)} away from drop location",
            )]
        return []

    def _event(self, kind: GeofenceEventType, distance_m: float, title: str, message: str) -> GeofenceEvent:
        return GeofenceEvent(
            request_id=self.request_id,
            type=kind,
            distance_m=round(distance_m, 1),
            eta_minutes=eta_whole_minutes(distance_m / 1000, self.average_speed_kmh),
            title=title,
            message=message,
        )
