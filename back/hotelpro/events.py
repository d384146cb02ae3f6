import json
import logging

import redis

from .settings import settings

logger = logging.getLogger(__name__)

# Redis client for pub/sub
redis_client: redis.Redis | None = None


def get_redis() -> redis.Redis | None:
    global redis_client
    if redis_client is None:
        try:
            client = redis.from_url(settings.redis_url)
            client.ping()
            redis_client = client
        except redis.RedisError as e:
            logger.warning(f"Redis unavailable: {e}")
            redis_client = None
    return redis_client


def publish_event(client_id: int, data: dict, table_id: int | None = None) -> None:
    """Publish a realtime update for dashboards and customer screens.

    Publishes to both:
    - orders:client:{client_id} - staff dashboards (all tenant orders)
    - orders:table:{table_id} - customers at that table, if table_id provided
    """
    r = get_redis()
    if r is None:
        return
    try:
        payload = json.dumps(data, default=str)
        r.publish(f"orders:client:{client_id}", payload)
        if table_id is not None:
            r.publish(f"orders:table:{table_id}", payload)
    except redis.RedisError as e:
        logger.warning(f"Failed to publish event {data.get('type')}: {e}")
