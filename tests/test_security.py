"""
اختبارات الأمان
Security utility tests

Tests cover:
1. Webhook HMAC signatures (hex, sha256= prefix, base64)
2. Header and payload redaction before persistence
3. Admin JWT encode / decode
4. Structured JSON log lines carry the correlation id
5. Security headers on every response
"""

import base64
import hashlib
import hmac
import json
import logging
from datetime import timedelta

from ota_core.utils.logging_config import JSONFormatter, clear_request_context, set_request_context
from ota_core.utils.sanitization import (
    REDACTED,
    is_sensitive_header,
    sanitize_headers,
    sanitize_payload,
    unredacted_sensitive_headers,
)
from ota_core.utils.security import (
    compute_signature,
    content_hash,
    create_access_token,
    decode_token,
    verify_signature,
)

BODY = b'{"event":"booking.modified","booking_id":"B-7"}'


class TestSignatures:
    """التحقق من توقيع الـ webhook"""

    def test_hex_digest(self):
        assert verify_signature(BODY, "s3cret", compute_signature(BODY, "s3cret"))

    def test_prefixed_and_upper_case(self):
        signature = "sha256=" + compute_signature(BODY, "s3cret").upper()
        assert verify_signature(BODY, "s3cret", signature)

    def test_base64_digest(self):
        digest = hmac.new(b"s3cret", BODY, hashlib.sha256).digest()
        assert verify_signature(BODY, "s3cret", base64.b64encode(digest).decode())

    def test_rejects_wrong_secret_or_body(self):
        signature = compute_signature(BODY, "s3cret")
        assert not verify_signature(BODY, "other", signature)
        assert not verify_signature(BODY + b" ", "s3cret", signature)

    def test_missing_values(self):
        assert not verify_signature(BODY, "s3cret", None)
        assert not verify_signature(BODY, "", compute_signature(BODY, ""))

    def test_content_hash_is_sha256(self):
        assert content_hash(BODY) == hashlib.sha256(BODY).hexdigest()


class TestRedaction:
    """تعقيم الترويسات والبيانات"""

    def test_sensitive_headers(self):
        for name in ("Authorization", "Cookie", "X-Api-Key", "X-Expedia-Signature", "X-Client-Secret"):
            assert is_sensitive_header(name), name
        assert not is_sensitive_header("Content-Type")

    def test_sanitize_headers(self):
        clean = sanitize_headers({
            "Authorization": "Bearer abc",
            "X-Booking-Signature": "deadbeef",
            "Content-Type": "application/json",
        })
        assert clean == {
            "authorization": REDACTED,
            "x-booking-signature": REDACTED,
            "content-type": "application/json",
        }
        assert list(unredacted_sensitive_headers(clean)) == []
        assert list(unredacted_sensitive_headers({"authorization": "Bearer abc"})) == ["authorization"]

    def test_sanitize_payload(self):
        data = {
            "guest": {"name": "Sara", "card_number": "4111111111111111", "CVV": "123"},
            "credentials": [{"password": "p"}, {"user": "u"}],
        }
        clean = sanitize_payload(data)
        assert clean["guest"] == {"name": "Sara", "card_number": REDACTED, "CVV": REDACTED}
        assert clean["credentials"] == [{"password": REDACTED}, {"user": "u"}]
        assert data["guest"]["CVV"] == "123"


class TestTokens:
    """JWT للوحة التحكم"""

    def test_round_trip(self):
        token = create_access_token({"sub": "ops-1", "role": "auditor"})
        payload = decode_token(token)
        assert payload["sub"] == "ops-1"
        assert payload["role"] == "auditor"
        assert payload["type"] == "access"

    def test_expired(self):
        token = create_access_token({"sub": "ops-1"}, expires_delta=timedelta(seconds=-1))
        assert decode_token(token) is None

    def test_tampered(self):
        token = create_access_token({"sub": "ops-1", "role": "front_desk"})
        header, payload, signature = token.split(".")
        assert decode_token(f"{header}.{payload}.{signature[::-1]}") is None


class TestStructuredLogging:
    """JSON log lines"""

    def test_correlation_id_from_context(self):
        set_request_context("req-1", "corr-1")
        try:
            record = logging.LogRecord("ota_core.test", logging.INFO, __file__, 1, "sent %s", ("ok",), None)
            line = json.loads(JSONFormatter().format(record))
        finally:
            clear_request_context()

        assert line["message"] == "sent ok"
        assert line["request_id"] == "req-1"
        assert line["correlation_id"] == "corr-1"

    def test_record_extras(self):
        record = logging.LogRecord("ota_core.test", logging.WARNING, __file__, 1, "slow", (), None)
        record.channel = "agoda"
        record.duration_ms = 812.5
        line = json.loads(JSONFormatter().format(record))
        assert line["channel"] == "agoda"
        assert line["duration_ms"] == 812.5
        assert "correlation_id" not in line


class TestSecurityHeaders:
    """Middleware"""

    def test_headers_present(self, client):
        response = client.get("/health", headers={"X-Request-ID": "abc123"})
        assert response.status_code == 200
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Request-ID"] == "abc123"
