"""
Channel Monitoring

Per (hotel, channel) health for the integration core:
- publish rate, send success / failure by category, p50/p95/p99 latency
- bus queue depth, circuit state, amendments by state
- real-time status snapshot, per-minute time series (last 24h) and
  Prometheus exposition
- threshold alerts: sync failure rate and p95 latency
"""

import csv
import io
import logging
from collections import OrderedDict, defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from ..config import settings
from ..models.integration_alert import AlertSeverity, AlertType
from ..utils.metrics import MetricsRegistry, format_prometheus_metrics, http_metrics, percentile

logger = logging.getLogger(__name__)

CIRCUIT_STATE_VALUE = {"closed": 0, "half_open": 1, "open": 2}

# Send outcome categories
SUCCESS = "success"
RETRYABLE = "retryable"
PERMANENT = "permanent"
AUTH = "auth"
NETWORK = "network"
PARKED = "parked"


class ChannelMonitor:
    def __init__(self, clock, alerts=None, bus=None, circuits=None,
                 retention_minutes: Optional[int] = None,
                 failure_rate_threshold: Optional[float] = None,
                 p95_threshold_ms: Optional[float] = None,
                 min_samples: int = 10):
        self.clock = clock
        self.alerts = alerts
        self.bus = bus
        self.circuits = circuits
        self.retention_minutes = retention_minutes or settings.metrics_retention_minutes
        self.failure_rate_threshold = failure_rate_threshold or settings.alert_sync_failure_rate
        self.p95_threshold_ms = p95_threshold_ms or settings.alert_p95_latency_ms
        self.min_samples = min_samples

        self.registry = MetricsRegistry()
        self.events_published = self.registry.counter(
            "ota_events_published_total", "Events published on the bus", labels=("hotel_id", "kind")
        )
        self.outbound_requests = self.registry.counter(
            "ota_outbound_requests_total", "Outbound channel calls by outcome",
            labels=("hotel_id", "channel", "outcome"),
        )
        self.outbound_latency = self.registry.summary(
            "ota_outbound_latency_ms", "Outbound call latency in milliseconds", labels=("hotel_id", "channel")
        )
        self.inbound_requests = self.registry.counter(
            "ota_inbound_requests_total", "Inbound webhooks by result", labels=("channel", "result")
        )
        self.amendments = self.registry.counter(
            "ota_amendments_total", "Amendments entering each state", labels=("state",)
        )
        self.dead_letters = self.registry.counter(
            "ota_dead_letters_total", "Deliveries moved to the dead-letter queue", labels=("subscription",)
        )
        self.queue_depth = self.registry.gauge(
            "ota_bus_queue_depth", "Queued deliveries per subscription", labels=("subscription",)
        )
        self.circuit_state = self.registry.gauge(
            "ota_circuit_state", "Circuit state (0 closed, 1 half-open, 2 open)", labels=("hotel_id", "channel")
        )

        # minute -> (hotel, channel) -> counters
        self._series: "OrderedDict[datetime, Dict[tuple, Dict[str, Any]]]" = OrderedDict()

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record_publish(self, event):
        self.events_published.inc(hotel_id=event.hotel_id or "", kind=event.kind)
        bucket = self._bucket(event.hotel_id or "", "bus")
        bucket["published"] += 1

    def record_send(self, hotel_id: str, channel: str, outcome: str, latency_ms: Optional[float] = None):
        self.outbound_requests.inc(hotel_id=hotel_id or "", channel=channel, outcome=outcome)
        bucket = self._bucket(hotel_id or "", channel)
        bucket[outcome] += 1
        if latency_ms is not None and outcome != PARKED:
            self.outbound_latency.observe(latency_ms, hotel_id=hotel_id or "", channel=channel)
            bucket["latencies"].append(latency_ms)

    def record_inbound(self, channel: str, result: str):
        self.inbound_requests.inc(channel=channel, result=result)

    def record_amendment(self, state: str):
        self.amendments.inc(state=state)

    def record_dead_letter(self, subscription: str):
        self.dead_letters.inc(subscription=subscription)

    def _bucket(self, hotel_id: str, channel: str) -> Dict[str, Any]:
        minute = self.clock.now().replace(second=0, microsecond=0)
        per_minute = self._series.get(minute)
        if per_minute is None:
            per_minute = self._series[minute] = {}
            self._prune(minute)
        key = (hotel_id, channel)
        if key not in per_minute:
            per_minute[key] = defaultdict(int, latencies=[])
        return per_minute[key]

    def _prune(self, now_minute: datetime):
        cutoff = now_minute - timedelta(minutes=self.retention_minutes)
        while self._series:
            oldest = next(iter(self._series))
            if oldest >= cutoff:
                break
            self._series.popitem(last=False)

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def refresh_gauges(self):
        if self.bus is not None:
            for subscription in self.bus.subscriptions:
                self.queue_depth.set(subscription.depth, subscription=subscription.name)
        if self.circuits is not None:
            for circuit in self.circuits.snapshot():
                self.circuit_state.set(
                    CIRCUIT_STATE_VALUE[circuit["state"]], hotel_id=circuit["hotelId"], channel=circuit["channel"]
                )

    def channel_stats(self) -> List[Dict[str, Any]]:
        totals: Dict[tuple, Dict[str, float]] = defaultdict(lambda: defaultdict(float))
        for (hotel_id, channel, outcome), value in self.outbound_requests.get_all().items():
            totals[(hotel_id, channel)][outcome] += value

        circuits = {}
        if self.circuits is not None:
            circuits = {(c["hotelId"], c["channel"]): c for c in self.circuits.snapshot()}

        stats = []
        for (hotel_id, channel), outcomes in sorted(totals.items()):
            attempted = sum(v for k, v in outcomes.items() if k != PARKED)
            failures = attempted - outcomes.get(SUCCESS, 0)
            stats.append({
                "hotelId": hotel_id,
                "channel": channel,
                "sent": int(attempted),
                "success": int(outcomes.get(SUCCESS, 0)),
                "failures": {k: int(v) for k, v in outcomes.items() if k not in (SUCCESS, PARKED)},
                "parked": int(outcomes.get(PARKED, 0)),
                "successRate": round(outcomes.get(SUCCESS, 0) / attempted, 4) if attempted else None,
                "failureRate": round(failures / attempted, 4) if attempted else None,
                "latencyMs": self.outbound_latency.quantiles(hotel_id=hotel_id, channel=channel),
                "circuitState": circuits.get((hotel_id, channel), {}).get("state", "closed"),
            })
        return stats

    def status(self) -> Dict[str, Any]:
        """Real-time snapshot"""
        self.refresh_gauges()
        return {
            "timestamp": self.clock.now().isoformat(),
            "bus": {
                "running": bool(self.bus and self.bus.is_running),
                "queueDepth": {name: value for (name,), value in self.queue_depth.get_all().items()},
                "published": {
                    f"{hotel}/{kind}" if hotel else kind: int(value)
                    for (hotel, kind), value in self.events_published.get_all().items()
                },
                "deadLetters": {name: int(value) for (name,), value in self.dead_letters.get_all().items()},
            },
            "channels": self.channel_stats(),
            "circuits": self.circuits.snapshot() if self.circuits is not None else [],
            "inbound": {
                f"{channel}/{result}": int(value)
                for (channel, result), value in self.inbound_requests.get_all().items()
            },
            "amendmentsByState": {state: int(value) for (state,), value in self.amendments.get_all().items()},
        }

    def export(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Per-minute time series rows"""
        rows = []
        for minute, per_key in self._series.items():
            if start and minute < start:
                continue
            if end and minute > end:
                continue
            for (hotel_id, channel), bucket in per_key.items():
                latencies = bucket.get("latencies", [])
                rows.append({
                    "minute": minute.isoformat(),
                    "hotelId": hotel_id,
                    "channel": channel,
                    "published": bucket.get("published", 0),
                    "success": bucket.get(SUCCESS, 0),
                    "retryable": bucket.get(RETRYABLE, 0),
                    "permanent": bucket.get(PERMANENT, 0),
                    "auth": bucket.get(AUTH, 0),
                    "network": bucket.get(NETWORK, 0),
                    "parked": bucket.get(PARKED, 0),
                    "p50Ms": percentile(latencies, 0.5),
                    "p95Ms": percentile(latencies, 0.95),
                    "p99Ms": percentile(latencies, 0.99),
                })
        return rows

    def export_csv(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> str:
        rows = self.export(start, end)
        output = io.StringIO()
        fields = ["minute", "hotelId", "channel", "published", "success", "retryable", "permanent",
                  "auth", "network", "parked", "p50Ms", "p95Ms", "p99Ms"]
        writer = csv.DictWriter(output, fieldnames=fields)
        writer.writeheader()
        writer.writerows(rows)
        return output.getvalue()

    def prometheus(self) -> str:
        self.refresh_gauges()
        return format_prometheus_metrics(self.registry, http_metrics)

    # ------------------------------------------------------------------
    # Thresholds
    # ------------------------------------------------------------------

    def evaluate_alerts(self, window_minutes: int = 15) -> List[Dict[str, Any]]:
        """Raise alerts for channels above the failure-rate or latency thresholds"""
        since = self.clock.now().replace(second=0, microsecond=0) - timedelta(minutes=window_minutes)
        aggregated: Dict[tuple, Dict[str, Any]] = defaultdict(lambda: defaultdict(int, latencies=[]))
        for minute, per_key in self._series.items():
            if minute < since:
                continue
            for key, bucket in per_key.items():
                if key[1] == "bus":
                    continue
                target = aggregated[key]
                for name, value in bucket.items():
                    if name == "latencies":
                        target["latencies"].extend(value)
                    else:
                        target[name] += value

        raised = []
        for (hotel_id, channel), bucket in aggregated.items():
            attempted = sum(bucket.get(k, 0) for k in (SUCCESS, RETRYABLE, PERMANENT, AUTH, NETWORK))
            if attempted < self.min_samples:
                continue
            failure_rate = 1 - bucket.get(SUCCESS, 0) / attempted
            if failure_rate > self.failure_rate_threshold:
                raised.append(self._alert(
                    AlertType.SYNC_FAILURE_RATE, hotel_id, channel,
                    f"{channel} failure rate {failure_rate:.0%} over {window_minutes}m",
                    {"failureRate": round(failure_rate, 4), "attempted": attempted},
                ))
            p95 = percentile(bucket["latencies"], 0.95)
            if p95 is not None and p95 > self.p95_threshold_ms:
                raised.append(self._alert(
                    AlertType.HIGH_LATENCY, hotel_id, channel,
                    f"{channel} p95 latency {p95:.0f}ms over {window_minutes}m",
                    {"p95Ms": p95},
                ))
        return raised

    def _alert(self, alert_type: AlertType, hotel_id: str, channel: str, message: str,
               details: Dict[str, Any]) -> Dict[str, Any]:
        if self.alerts:
            self.alerts.raise_alert(alert_type, message, severity=AlertSeverity.HIGH,
                                    channel=channel, hotel_id=hotel_id or None, details=details)
        return {"type": alert_type.value, "hotelId": hotel_id, "channel": channel, **details}
