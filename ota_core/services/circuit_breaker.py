"""
Circuit Breaker per (hotel, channel)

closed -> open after N consecutive retryable failures (or one credential
rejection); open -> half_open once the cool-off elapses, letting exactly one
probe through; the probe's outcome closes or re-opens the circuit.

State lives in-process; all transitions happen on the event loop thread
without awaiting, so each one is atomic.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class _Circuit:
    state: CircuitState = CircuitState.CLOSED
    consecutive_failures: int = 0
    opened_at: Optional[float] = None
    probe_in_flight: bool = False
    last_failure: Optional[str] = None
    total_failures: int = 0
    total_successes: int = 0
    times_opened: int = 0


class CircuitBreakerRegistry:
    """
    Args:
        clock: provides monotonic()
        failure_threshold: consecutive failures that open the circuit
        cool_off_seconds: how long an open circuit parks traffic
        on_open: callback(hotel_id, channel, reason) when a circuit opens
    """

    def __init__(self, clock, failure_threshold: int = 5, cool_off_seconds: float = 60.0,
                 probe_wait_seconds: float = 1.0,
                 on_open: Optional[Callable[[str, str, str], None]] = None):
        self.clock = clock
        self.failure_threshold = failure_threshold
        self.cool_off_seconds = cool_off_seconds
        self.probe_wait_seconds = probe_wait_seconds
        self.on_open = on_open
        self._circuits: Dict[Tuple[str, str], _Circuit] = {}

    def _get(self, hotel_id: str, channel: str) -> _Circuit:
        key = (hotel_id or "", channel)
        circuit = self._circuits.get(key)
        if circuit is None:
            circuit = self._circuits[key] = _Circuit()
        return circuit

    def before_call(self, hotel_id: str, channel: str) -> Optional[float]:
        """
        Ask permission to call (hotel, channel).

        Returns None when the call may proceed (possibly as the half-open
        probe), otherwise the number of seconds to park the event.
        """
        circuit = self._get(hotel_id, channel)
        if circuit.state == CircuitState.CLOSED:
            return None

        if circuit.state == CircuitState.OPEN:
            remaining = circuit.opened_at + self.cool_off_seconds - self.clock.monotonic()
            if remaining > 0:
                return remaining
            circuit.state = CircuitState.HALF_OPEN
            circuit.probe_in_flight = True
            logger.info(f"Circuit half-open for {hotel_id}/{channel}, sending probe")
            return None

        # half-open: only one probe at a time
        if circuit.probe_in_flight:
            return self.probe_wait_seconds
        circuit.probe_in_flight = True
        return None

    def record_success(self, hotel_id: str, channel: str):
        circuit = self._get(hotel_id, channel)
        if circuit.state != CircuitState.CLOSED:
            logger.info(f"Circuit closed for {hotel_id}/{channel}")
        circuit.state = CircuitState.CLOSED
        circuit.consecutive_failures = 0
        circuit.probe_in_flight = False
        circuit.opened_at = None
        circuit.total_successes += 1

    def record_failure(self, hotel_id: str, channel: str, reason: str, force_open: bool = False):
        circuit = self._get(hotel_id, channel)
        circuit.consecutive_failures += 1
        circuit.total_failures += 1
        circuit.last_failure = reason

        if circuit.state == CircuitState.HALF_OPEN:
            circuit.probe_in_flight = False
            self._open(hotel_id, channel, circuit, f"probe failed: {reason}")
        elif circuit.state == CircuitState.CLOSED and (
            force_open or circuit.consecutive_failures >= self.failure_threshold
        ):
            self._open(hotel_id, channel, circuit, reason)

    def release_probe(self, hotel_id: str, channel: str):
        """The probe slot was taken but no call was made"""
        circuit = self._get(hotel_id, channel)
        circuit.probe_in_flight = False

    def _open(self, hotel_id: str, channel: str, circuit: _Circuit, reason: str):
        circuit.state = CircuitState.OPEN
        circuit.opened_at = self.clock.monotonic()
        circuit.times_opened += 1
        logger.warning(
            f"Circuit OPEN for {hotel_id}/{channel} after {circuit.consecutive_failures} failures: {reason}"
        )
        if self.on_open:
            self.on_open(hotel_id, channel, reason)

    def state(self, hotel_id: str, channel: str) -> str:
        return self._get(hotel_id, channel).state.value

    def snapshot(self) -> List[Dict]:
        now = self.clock.monotonic()
        result = []
        for (hotel_id, channel), circuit in self._circuits.items():
            retry_in = None
            if circuit.state == CircuitState.OPEN and circuit.opened_at is not None:
                retry_in = max(0.0, circuit.opened_at + self.cool_off_seconds - now)
            result.append({
                "hotelId": hotel_id,
                "channel": channel,
                "state": circuit.state.value,
                "consecutiveFailures": circuit.consecutive_failures,
                "lastFailure": circuit.last_failure,
                "retryInSeconds": retry_in,
                "timesOpened": circuit.times_opened,
            })
        return result
