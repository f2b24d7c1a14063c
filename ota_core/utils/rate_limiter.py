"""
Inbound Rate Limiter Configuration

slowapi limiter for the webhook ingress. Uses Redis storage when
REDIS_URL is set (multiple instances), in-memory otherwise.
"""

import logging
import os

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from ..config import settings

logger = logging.getLogger(__name__)


def get_real_client_ip(request: Request) -> str:
    """Get real client IP behind reverse proxy"""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    return get_remote_address(request)


def webhook_key(request: Request) -> str:
    """Inbound limit is tracked per channel route and caller"""
    channel_id = request.path_params.get("channel_id", "unknown")
    return f"{channel_id}:{get_real_client_ip(request)}"


def webhook_rate_limit() -> str:
    return settings.webhook_rate_limit


def create_limiter() -> Limiter:
    """Create the limiter with Redis storage if configured"""
    redis_url = os.getenv("REDIS_URL")
    if redis_url:
        logger.info("Using Redis storage for inbound rate limiting")
        return Limiter(key_func=get_real_client_ip, storage_uri=redis_url)

    logger.info("Using in-memory rate limiter storage")
    return Limiter(key_func=get_real_client_ip)


# Global rate limiter instance
limiter = create_limiter()
