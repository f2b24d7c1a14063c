"""
Clock & id generation.

All timestamps stored by the core are naive UTC, matching the DateTime
columns. `monotonic()` is used for anything that waits (backoff, deadlines,
token buckets) so wall-clock jumps never shorten a delay.
"""

import secrets
import string
import time
import uuid
from datetime import datetime, timezone

_ALPHABET = string.ascii_uppercase + string.digits


class SystemClock:
    """Wall clock + monotonic clock"""

    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)

    def monotonic(self) -> float:
        return time.monotonic()


class IdGenerator:
    """Generates event, correlation, payload and amendment ids"""

    def __init__(self, clock: SystemClock):
        self.clock = clock

    def event_id(self) -> str:
        return str(uuid.uuid4())

    def correlation_id(self) -> str:
        return str(uuid.uuid4())

    def payload_id(self, direction: str, channel: str) -> str:
        """e.g. IN_EXP_1741950000123_K3F9QZ"""
        epoch_ms = int(self.clock.now().replace(tzinfo=timezone.utc).timestamp() * 1000)
        suffix = "".join(secrets.choice(_ALPHABET) for _ in range(6))
        return f"{direction[:2]}_{channel[:3]}_{epoch_ms}_{suffix}".upper()

    def amendment_id(self) -> str:
        suffix = "".join(secrets.choice(_ALPHABET) for _ in range(8))
        return f"AMD-{self.clock.now():%Y%m%d}-{suffix}"
