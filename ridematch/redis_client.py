import redis.asyncio as aioredis
from ridematch.config import get_settings

settings = get_settings()

_redis_pool: aioredis.Redis | None = None


async def get_redis() -> aioredis.Redis:
    global _redis_pool
    if _redis_pool is None:
        _redis_pool = aioredis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=100,
        )
    return _redis_pool


async def close_redis() -> None:
    global _redis_pool
    if _redis_pool:
        await _redis_pool.aclose()
        _redis_pool = None


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------

def geo_key(vehicle_class: str) -> str:
    return f"drivers:geo:{vehicle_class}"


def driver_key(driver_id: str) -> str:
    return f"driver:{driver_id}"


def claim_key(driver_id: str) -> str:
    return f"driver:{driver_id}:claim"


# Compare-and-delete / compare-and-persist: only the holder may touch its claim.
RELEASE_CLAIM_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""

CONFIRM_CLAIM_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('persist', KEYS[1]) + 1
end
return 0
"""


# ---------------------------------------------------------------------------
# GEO helpers
# ---------------------------------------------------------------------------

async def geo_add_driver(redis: aioredis.Redis, vehicle_class: str, driver_id: str, lat: float, lng: float) -> None:
    """Add / update driver position in the geospatial index."""
    await redis.geoadd(geo_key(vehicle_class), [lng, lat, driver_id])


async def geo_remove_driver(redis: aioredis.Redis, vehicle_class: str, driver_id: str) -> None:
    await redis.zrem(geo_key(vehicle_class), driver_id)


async def geo_nearby_drivers(
    redis: aioredis.Redis,
    vehicle_class: str,
    lat: float,
    lng: float,
    radius_km: float,
    count: int = 30,
) -> list[tuple[str, float]]:
    """Return up to `count` (driver_id, distance_km) pairs nearest to the given coordinates."""
    results = await redis.geosearch(
        geo_key(vehicle_class),
        longitude=lng,
        latitude=lat,
        radius=radius_km,
        unit="km",
        sort="ASC",
        count=count,
        withdist=True,
    )
    return [(member, float(dist)) for member, dist in results]
