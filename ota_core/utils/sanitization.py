"""
تعقيم البيانات قبل الحفظ
Sanitization Utilities

Redacts credentials from headers and payload fragments before anything is
persisted or logged:
1. Sensitive HTTP headers (auth, cookies, api keys, signatures)
2. Sensitive keys inside JSON payloads (card data, passwords, tokens)
"""

from typing import Any, Dict, Iterable, Mapping, Optional

REDACTED = "[REDACTED]"

# Exact header names (lower-case) that are always redacted
SENSITIVE_HEADERS = {
    "authorization",
    "proxy-authorization",
    "cookie",
    "set-cookie",
    "x-api-key",
    "api-key",
    "user-api-key",
    "x-auth-token",
}

# Any header containing one of these fragments is redacted too
SENSITIVE_HEADER_FRAGMENTS = ("secret", "token", "password", "signature", "apikey")

SENSITIVE_PAYLOAD_KEYS = {
    "api_key", "apikey", "password", "secret", "token", "access_token",
    "refresh_token", "card_number", "cardnumber", "cvv", "cvc", "pan",
    "card_cvv", "security_code",
}


def is_sensitive_header(name: str) -> bool:
    """Check whether a header name carries credentials"""
    lowered = name.lower()
    if lowered in SENSITIVE_HEADERS:
        return True
    return any(fragment in lowered for fragment in SENSITIVE_HEADER_FRAGMENTS)


def sanitize_headers(headers: Optional[Mapping[str, str]]) -> Dict[str, str]:
    """
    Return a copy of the headers with sensitive values replaced.

    Header names are kept (lower-cased) so audits can still see that a
    signature or auth header was present.
    """
    if not headers:
        return {}
    clean = {}
    for name, value in headers.items():
        key = name.lower()
        clean[key] = REDACTED if is_sensitive_header(key) else str(value)
    return clean


def unredacted_sensitive_headers(headers: Optional[Mapping[str, str]]) -> Iterable[str]:
    """Names of sensitive headers whose value is NOT redacted"""
    for name, value in (headers or {}).items():
        if is_sensitive_header(name) and value != REDACTED:
            yield name


def sanitize_payload(data: Any) -> Any:
    """Recursively redact sensitive keys inside a JSON-like structure"""
    if isinstance(data, dict):
        clean = {}
        for key, value in data.items():
            if str(key).lower() in SENSITIVE_PAYLOAD_KEYS:
                clean[key] = REDACTED
            else:
                clean[key] = sanitize_payload(value)
        return clean
    if isinstance(data, list):
        return [sanitize_payload(item) for item in data]
    return data
