"""
Channel Adapter base

An adapter is the per-channel plug-in used by the dispatcher and the inbound
pipeline. It provides:
- applies_to(event): which bus events it sends
- serialize(event, config) -> WireRequest (method, url, headers, body)
- parse_response(response) -> ParsedResponse {ok, retryable, hint}
- rate-limit profile, auth injection and idempotency-key derivation
- the inbound signature header name
"""

import base64
import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Set, Tuple

from ...config import settings
from ...errors import ValidationError
from ...models.channel_configuration import ChannelConfiguration
from ...schemas.events import KIND_TO_OPERATION
from ..payload_store import WireRequest, WireResponse

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = {408, 425, 429}


@dataclass(frozen=True)
class RateLimitProfile:
    requests_per_second: float
    burst: int


@dataclass
class ParsedResponse:
    ok: bool
    retryable: bool
    hint: Optional[float] = None
    auth_failed: bool = False
    error_code: Optional[str] = None
    message: Optional[str] = None


class ChannelAdapter:
    """Base adapter; subclasses set the class attributes and build_body()"""

    name: str = ""
    signature_header: str = ""
    default_base_url: str = ""
    default_rate_limit = RateLimitProfile(requests_per_second=5.0, burst=10)
    supports_idempotency: bool = True
    idempotency_header: str = "Idempotency-Key"
    auth_style: str = "bearer"  # bearer | basic | api_key
    api_key_header: str = "X-Api-Key"
    timeout_seconds: float = 30.0

    # event kind -> (method, path template)
    endpoints: Dict[str, Tuple[str, str]] = {}

    @property
    def supported_kinds(self) -> Set[str]:
        return set(self.endpoints)

    @property
    def originator(self) -> str:
        """Originator tag for events caused by this channel"""
        return f"channel:{self.name}"

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def applies_to(self, event) -> bool:
        if event.kind not in self.endpoints:
            return False
        # No echo back to the channel the change came from
        if event.originator == self.originator:
            return False
        data = event.data
        if not getattr(data, "notify_channels", True):
            return False
        target = getattr(data, "channel", None)
        if target and target != self.name:
            return False
        return True

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def rate_limit_profile(self, config: Optional[ChannelConfiguration] = None) -> RateLimitProfile:
        if config is not None and config.requests_per_second:
            return RateLimitProfile(config.requests_per_second, config.burst or self.default_rate_limit.burst)
        override = settings.channel_rate_limits.get(self.name)
        if override:
            return RateLimitProfile(
                float(override.get("requests_per_second", self.default_rate_limit.requests_per_second)),
                int(override.get("burst", self.default_rate_limit.burst)),
            )
        return self.default_rate_limit

    def deadline_seconds(self, config: Optional[ChannelConfiguration] = None) -> float:
        if config is not None and config.deadline_seconds:
            return config.deadline_seconds
        return settings.dispatch_deadline_seconds

    def idempotency_key(self, event) -> str:
        return hashlib.sha256(f"{event.id}:{self.name}".encode("utf-8")).hexdigest()

    def operation_for(self, event) -> str:
        return KIND_TO_OPERATION[event.kind]

    def serialize(self, event, config: ChannelConfiguration) -> WireRequest:
        method, template = self._endpoint(event.kind, config)
        data = event.data
        path = template.format(**self.path_params(data, config))
        base_url = (config.base_url or self.default_base_url).rstrip("/")
        url = path if path.startswith("http") else f"{base_url}{path}"

        body = self.build_body(event.kind, data, config)
        encoded = json.dumps(body, separators=(",", ":"), default=str).encode("utf-8")

        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "X-Correlation-Id": event.correlation_id,
        }
        if config.language:
            headers["Accept-Language"] = config.language
        self.inject_auth(headers, config)
        if self.supports_idempotency and method in ("POST", "PUT"):
            headers[self.idempotency_header] = self.idempotency_key(event)

        return WireRequest(method=method, url=url, headers=headers, body=encoded, path=path,
                           content_type="application/json")

    def _endpoint(self, kind: str, config: ChannelConfiguration) -> Tuple[str, str]:
        method, template = self.endpoints[kind]
        override = (config.endpoint_overrides or {}).get(kind)
        if isinstance(override, dict):
            return override.get("method", method), override.get("path", template)
        if isinstance(override, str):
            return method, override
        return method, template

    def path_params(self, data, config: ChannelConfiguration) -> Dict[str, Any]:
        return {
            "hotel": config.external_hotel_id or data.hotel_id,
            "room_type": getattr(data, "room_type", None) or "",
            "reservation": getattr(data, "channel_reservation_id", None) or getattr(data, "booking_id", None) or "",
            "amendment": getattr(data, "channel_amendment_id", None) or "",
        }

    def build_body(self, kind: str, data, config: ChannelConfiguration) -> Dict[str, Any]:
        raise NotImplementedError

    def inject_auth(self, headers: Dict[str, str], config: ChannelConfiguration):
        credentials = config.credentials or {}
        if self.auth_style == "basic":
            username, password = credentials.get("username"), credentials.get("password")
            if not username or not password:
                raise ValidationError(f"{self.name}: username/password credentials missing", code="credentials_missing")
            token = base64.b64encode(f"{username}:{password}".encode("utf-8")).decode("ascii")
            headers["Authorization"] = f"Basic {token}"
        elif self.auth_style == "api_key":
            api_key = credentials.get("api_key")
            if not api_key:
                raise ValidationError(f"{self.name}: api_key credential missing", code="credentials_missing")
            headers[self.api_key_header] = api_key
        else:
            token = credentials.get("access_token")
            if not token:
                raise ValidationError(f"{self.name}: access_token credential missing", code="credentials_missing")
            headers["Authorization"] = f"Bearer {token}"

    def parse_response(self, response: WireResponse) -> ParsedResponse:
        status = response.status
        if status is None:
            return ParsedResponse(ok=False, retryable=True, error_code="network_error", message=response.error)

        hint = _retry_after(response.headers)
        if 200 <= status < 300:
            envelope_error = self.envelope_error(response)
            if envelope_error:
                code, retryable = envelope_error
                return ParsedResponse(ok=False, retryable=retryable, error_code=code, message=code)
            return ParsedResponse(ok=True, retryable=False)
        if status in RETRYABLE_STATUSES or status >= 500:
            return ParsedResponse(ok=False, retryable=True, hint=hint, error_code=f"http_{status}")
        return ParsedResponse(
            ok=False,
            retryable=False,
            auth_failed=status in (401, 403),
            error_code=f"http_{status}",
            message=_short_body(response.body),
        )

    def envelope_error(self, response: WireResponse) -> Optional[Tuple[str, bool]]:
        """(error_code, retryable) when a 2xx body still reports failure"""
        body = _json(response.body)
        if isinstance(body, dict):
            if body.get("success") is False:
                return str(body.get("error_code") or "rejected"), False
            errors = body.get("errors")
            if errors:
                return "rejected", False
        return None

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def inbound_event_id(self, data: Dict[str, Any]) -> Optional[str]:
        """Channel-side unique id of a webhook delivery, used for dedup"""
        for key in ("event_id", "notification_id", "message_id", "id"):
            value = data.get(key)
            if value:
                return str(value)
        return None

    def __repr__(self):
        return f"<{type(self).__name__} {self.name}>"


def _retry_after(headers) -> Optional[float]:
    for key, value in (headers or {}).items():
        if key.lower() == "retry-after":
            try:
                return float(value)
            except (TypeError, ValueError):
                return None
    return None


def _json(body: bytes) -> Any:
    if not body:
        return None
    try:
        return json.loads(body)
    except (ValueError, UnicodeDecodeError):
        return None


def _short_body(body: bytes, limit: int = 300) -> Optional[str]:
    if not body:
        return None
    return body[:limit].decode("utf-8", errors="replace")
