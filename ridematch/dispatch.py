"""
Builds the MatchingEngine and its collaborators for the configured backend.
"""
import logging

from fastapi import Request

from ridematch.config import Settings
from ridematch.services.availability import InMemoryAvailabilityIndex, RedisAvailabilityIndex
from ridematch.services.clock import Clock, SystemClock
from ridematch.services.matching import MatchingEngine
from ridematch.services.notifier import LoggingNotifier, Notifier, WebhookNotifier
from ridematch.services.pricing import FareEstimator, RedisDemandSignal, StaticDemandSignal
from ridematch.services.promo import PromoValidator
from ridematch.services.repository import (
    InMemoryPromoRepository,
    InMemoryRideRequestRepository,
    SqlAlchemyPromoRepository,
    SqlAlchemyRideRequestRepository,
)

logger = logging.getLogger(__name__)


def build_notifier(settings: Settings) -> Notifier:
    if settings.notification_webhook_url:
        return WebhookNotifier(
            settings.notification_webhook_url,
            timeout_seconds=settings.notification_timeout_seconds,
            max_attempts=settings.notification_max_attempts,
        )
    return LoggingNotifier()


def build_in_memory_engine(
    settings: Settings,
    clock: Clock | None = None,
    notifier: Notifier | None = None,
    promo_repository: InMemoryPromoRepository | None = None,
    demand_factor: float | None = None,
) -> MatchingEngine:
    clock = clock or SystemClock()
    return MatchingEngine(
        repository=InMemoryRideRequestRepository(),
        index=InMemoryAvailabilityIndex(
            clock,
            location_ttl_seconds=settings.driver_location_ttl_seconds,
            claim_ttl_seconds=settings.claim_ttl_seconds,
        ),
        promo_validator=PromoValidator(promo_repository or InMemoryPromoRepository(), clock),
        fare_estimator=FareEstimator(settings.max_surge_multiplier, settings.assumed_average_speed_kmh),
        demand_signal=StaticDemandSignal(
            settings.default_demand_factor if demand_factor is None else demand_factor
        ),
        notifier=notifier or build_notifier(settings),
        clock=clock,
        settings=settings,
    )


async def build_engine(settings: Settings) -> MatchingEngine:
    if settings.storage_backend == "memory":
        logger.info("Using in-memory dispatch backends")
        return build_in_memory_engine(settings)

    from ridematch.database import AsyncSessionLocal
    from ridematch.redis_client import get_redis

    redis = await get_redis()
    clock = SystemClock()
    logger.info("Using Postgres + Redis dispatch backends")
    return MatchingEngine(
        repository=SqlAlchemyRideRequestRepository(AsyncSessionLocal),
        index=RedisAvailabilityIndex(
            redis,
            clock,
            location_ttl_seconds=settings.driver_location_ttl_seconds,
            claim_ttl_seconds=settings.claim_ttl_seconds,
        ),
        promo_validator=PromoValidator(SqlAlchemyPromoRepository(AsyncSessionLocal), clock),
        fare_estimator=FareEstimator(settings.max_surge_multiplier, settings.assumed_average_speed_kmh),
        demand_signal=RedisDemandSignal(redis, default=settings.default_demand_factor),
        notifier=build_notifier(settings),
        clock=clock,
        settings=settings,
    )


def get_engine(request: Request) -> MatchingEngine:
    return request.app.state.engine
