"""
Inbound OTA webhooks (FAST PATH)

POST /webhooks/channels/{channel_id}

Flow: size guard -> verify -> store -> publish -> 200 {ok, correlationId}.
Amendment decisions and outbound fan-out happen on the bus, never inside
the request.
"""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from ..errors import PayloadTooLarge
from ..services.payload_store import WireRequest
from ..utils.dependencies import get_services
from ..utils.logging_config import correlation_id_var
from ..utils.rate_limiter import get_real_client_ip, limiter, webhook_key, webhook_rate_limit

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


async def read_limited_body(request: Request, max_bytes: int) -> bytes:
    """Read the body, refusing it as soon as it grows past max_bytes"""
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > max_bytes:
        raise PayloadTooLarge(f"Body of {declared} bytes exceeds {max_bytes}")

    chunks = []
    size = 0
    async for chunk in request.stream():
        size += len(chunk)
        if size > max_bytes:
            raise PayloadTooLarge(f"Body exceeds {max_bytes} bytes")
        chunks.append(chunk)
    return b"".join(chunks)


@router.post("/channels/{channel_id}")
@limiter.limit(webhook_rate_limit, key_func=webhook_key)
async def receive_channel_webhook(request: Request, channel_id: str, services=Depends(get_services)):
    """
    Receive a webhook from an OTA.

    Responses:
    - 200 {ok, correlationId} (also for duplicates, with the original correlation id)
    - 400 invalid body, 401 signature failure, 404 unknown channel
    - 413 oversize, 429 inbound rate limit, 503 bus back-pressure (OTA retries)
    """
    pipeline = services.inbound
    try:
        body = await read_limited_body(request, pipeline.max_body_bytes)
    except PayloadTooLarge:
        if services.monitor:
            services.monitor.record_inbound(channel_id, "too_large")
        raise

    wire = WireRequest(
        method=request.method,
        url=str(request.url),
        headers=dict(request.headers),
        body=body,
        path=request.url.path,
        query=dict(request.query_params),
        content_type=request.headers.get("content-type"),
    )
    result = await pipeline.handle(
        channel_id,
        wire,
        ip_address=get_real_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    correlation_id_var.set(result.correlation_id)
    return JSONResponse(content=result.response(), headers={"X-Correlation-Id": result.correlation_id})
