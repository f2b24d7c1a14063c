# Services package
from .event_bus import EventBus, Event, Subscription
from .payload_store import PayloadStore, PayloadQuery, WireRequest, WireResponse, PayloadMetadata
from .classification import Classification, classify
from .inbound_pipeline import InboundPipeline, InboundResult
from .dispatcher import Dispatcher
from .circuit_breaker import CircuitBreakerRegistry, CircuitState
from .rate_limiter import RateLimiterRegistry, TokenBucket
from .booking_locks import BookingLocks, BookingLockTimeout
from .amendment_engine import AmendmentEngine
from .reconciliation import ReconciliationEngine
from .payload_audit import PayloadAuditor
from .retention import RetentionService
from .monitoring import ChannelMonitor
from .alerts import AlertService
from .scheduler import MaintenanceScheduler
