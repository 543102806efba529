# storefront/core/redis.py
import redis.asyncio as redis
from storefront.core.config import settings

# decode_responses=True so queue ids and payloads come back as str
redis_client = redis.Redis.from_url(settings.REDIS_URL, decode_responses=True)
