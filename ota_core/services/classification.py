"""
Payload Classification

Decision table over headers + body, first match wins:
1. card numbers (brand prefix + Luhn) or payment keys -> restricted
2. guest email, phone or government id -> confidential
3. rate / inventory keys only -> internal
4. anything else -> public
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Iterator, Mapping, Optional, Tuple

from ..models.payload import DataLevel

PAYMENT_KEYS = {
    "payment_method", "paymentmethod", "card_number", "cardnumber", "cvv", "cvc",
    "card_cvv", "card_holder", "cardholder", "card_expiry", "expiry_date",
    "virtual_card", "vcc", "iban",
}

PII_KEYS = {
    "email", "guest_email", "phone", "guest_phone", "mobile", "telephone",
    "passport", "passport_number", "national_id", "government_id", "id_number",
    "identity_number", "ssn", "date_of_birth", "dob",
}

RATE_INVENTORY_KEYS = {
    "rate", "rates", "price", "prices", "amount", "currency", "rate_plan",
    "availability", "available", "inventory", "allotment", "stop_sell",
    "min_stay", "max_stay", "closed_to_arrival", "closed_to_departure",
    "restrictions",
}

# Visa, Mastercard (51-55, 22-27), Amex, Discover; 13-19 digits with optional separators
_CARD_RE = re.compile(r"(?<!\d)(?:4|5[1-5]|2[2-7]|3[47]|6(?:011|5))(?:[ -]?\d){11,17}(?!\d)")
_EMAIL_RE = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
_PHONE_RE = re.compile(r"\+\d[\d\s().-]{7,16}\d")


@dataclass(frozen=True)
class Classification:
    contains_pii: bool
    contains_payment_data: bool
    data_level: str


def luhn_valid(digits: str) -> bool:
    total = 0
    for index, char in enumerate(reversed(digits)):
        value = int(char)
        if index % 2 == 1:
            value *= 2
            if value > 9:
                value -= 9
        total += value
    return total % 10 == 0


def contains_card_number(text: str) -> bool:
    for match in _CARD_RE.finditer(text):
        digits = re.sub(r"[ -]", "", match.group(0))
        if 13 <= len(digits) <= 19 and luhn_valid(digits):
            return True
    return False


def _normalize_key(key: Any) -> str:
    # guestEmail -> guest_email
    return re.sub(r"(?<!^)(?=[A-Z])", "_", str(key)).lower().replace("-", "_")


def _walk(data: Any) -> Iterator[Tuple[Optional[str], Any]]:
    """Yield (normalized key, scalar value) pairs of a JSON-like structure"""
    if isinstance(data, dict):
        for key, value in data.items():
            if isinstance(value, (dict, list)):
                yield _normalize_key(key), None
                yield from _walk(value)
            else:
                yield _normalize_key(key), value
    elif isinstance(data, list):
        for item in data:
            yield from _walk(item)
    else:
        yield None, data


def parse_json_body(body: bytes) -> Optional[Any]:
    if not body:
        return None
    try:
        return json.loads(body)
    except (ValueError, UnicodeDecodeError):
        return None


def classify(body: bytes, headers: Optional[Mapping[str, str]] = None,
             parsed: Optional[Any] = None) -> Classification:
    """Classify a wire message. `parsed` may carry an already decoded JSON body."""
    data = parsed if parsed is not None else parse_json_body(body)

    keys = set()
    strings = []
    if data is not None:
        for key, value in _walk(data):
            if key:
                keys.add(key)
            if isinstance(value, str):
                strings.append(value)
    else:
        strings.append(body.decode("utf-8", errors="replace") if body else "")
    strings.extend(str(v) for v in (headers or {}).values())
    text = "\n".join(strings)

    has_payment = bool(keys & PAYMENT_KEYS) or contains_card_number(text)
    has_pii = bool(keys & PII_KEYS) or bool(_EMAIL_RE.search(text)) or bool(_PHONE_RE.search(text))

    if has_payment:
        level = DataLevel.RESTRICTED.value
    elif has_pii:
        level = DataLevel.CONFIDENTIAL.value
    elif keys & RATE_INVENTORY_KEYS:
        level = DataLevel.INTERNAL.value
    else:
        level = DataLevel.PUBLIC.value

    return Classification(contains_pii=has_pii, contains_payment_data=has_payment, data_level=level)
