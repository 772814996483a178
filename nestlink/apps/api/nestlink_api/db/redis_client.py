"""Redis client configuration."""

import os
from urllib.parse import urlparse

import redis


def build_redis_client() -> redis.Redis:
    """Build a Redis client from the environment.

    - REDIS_URL (e.g., redis://host:6379/0 or rediss://...), default
      redis://localhost:6379/0 for local development
    - REDIS_PASSWORD: applied only if the URL carries no password

    The client is created by the application lifespan and closed on shutdown.
    """
    redis_url = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    redis_password = os.getenv("REDIS_PASSWORD")

    parsed = urlparse(redis_url)

    kwargs = {
        "decode_responses": True,
        "socket_connect_timeout": 5,
        "socket_timeout": 5,
        "health_check_interval": 30,
    }

    if not parsed.password and redis_password:
        kwargs["password"] = redis_password

    return redis.from_url(redis_url, **kwargs)
