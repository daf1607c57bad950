"""
Promo code eligibility.

Checks run in a fixed order and stop at the first failure. Validation is
read-only: redemption counters are bumped by booking confirmation, so calling
validate() repeatedly never consumes a use.
"""
import logging
from decimal import Decimal, ROUND_HALF_UP

from ridematch.domain import DiscountType, PromoCode
from ridematch.errors import InvalidPromoCodeError
from ridematch.schemas.schemas import PromoCodeValidation
from ridematch.services.clock import Clock
from ridematch.services.repository import PromoRepository

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def calculate_discount(promo: PromoCode, fare: Decimal) -> Decimal:
    if promo.discount_type == DiscountType.percentage:
        discount = fare * promo.discount_value / Decimal(100)
        if promo.max_discount is not None:
            discount = min(discount, promo.max_discount)
    else:
        discount = promo.discount_value
    discount = min(max(discount, Decimal("0")), fare)
    return discount.quantize(CENT, rounding=ROUND_HALF_UP)


class PromoValidator:
    def __init__(self, repository: PromoRepository, clock: Clock):
        self.repository = repository
        self.clock = clock

    async def validate(self, code: str, user_id: str, fare: Decimal, vehicle_class: str) -> PromoCodeValidation:
        code = code.strip().upper()
        fare = Decimal(str(fare))

        promo = await self.repository.get_by_code(code)
        if promo is None or not promo.is_active:
            return self._reject(code, "Invalid promo code")

        now = self.clock.now()
        if now < promo.valid_from:
            return self._reject(code, "Promo code is not active yet")
        if now > promo.valid_until:
            return self._reject(code, "Promo code has expired")

        if promo.max_uses is not None and promo.current_uses >= promo.max_uses:
            return self._reject(code, "Promo code usage limit reached")

        used = await self.repository.count_user_redemptions(promo.id, user_id)
        if used >= promo.per_user_limit:
            return self._reject(code, "You have already used this promo code")

        if fare < promo.min_fare:
            return self._reject(code, f"Minimum fare for this code is ₹{promo.min_fare:.2f}")

        if promo.vehicle_classes and str(getattr(vehicle_class, "value", vehicle_class)) not in promo.vehicle_classes:
            return self._reject(code, "Promo code not applicable for this vehicle type")

        discount = calculate_discount(promo, fare)
        return PromoCodeValidation(code=code, valid=True, discount=discount, message=f"You saved ₹{discount:.2f}!")

    async def require(self, code: str, user_id: str, fare: Decimal, vehicle_class: str) -> PromoCodeValidation:
        """Like validate() but raises InvalidPromoCodeError on failure."""
        result = await self.validate(code, user_id, fare, vehicle_class)
        if not result.valid:
            raise InvalidPromoCodeError(result.code, result.message)
        return result

    @staticmethod
    def _reject(code: str, message: str) -> PromoCodeValidation:
        logger.info("Promo code %s rejected: %s", code, message)
        return PromoCodeValidation(code=code, valid=False, discount=Decimal("0.00"), message=message)
