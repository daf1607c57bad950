from ridematch.models.ride_request import RideRequestRecord
from ridematch.models.promo import PromoCodeRecord, PromoRedemptionRecord

__all__ = ["RideRequestRecord", "PromoCodeRecord", "PromoRedemptionRecord"]
