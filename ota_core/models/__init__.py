# Models package
from .payload import (
    OTAPayload,
    PayloadDirection,
    Channel,
    ProcessingStatus,
    DataLevel,
    BusinessOperation,
    Priority,
    PROCESSING_STATUS_RANK,
    DATA_LEVEL_RANK,
)
from .bus import BusEvent, BusDelivery, DeadLetterEvent, EventKind, DeliveryStatus
from .amendment import (
    Amendment,
    AmendmentType,
    AmendmentState,
    BookingStatusTransition,
    TransitionSource,
    AMENDMENT_TRANSITIONS,
    TERMINAL_AMENDMENT_STATES,
)
from .channel_configuration import ChannelConfiguration, TenantRetentionPolicy, StopSellWindow
from .integration_alert import IntegrationAlert, AlertType, AlertSeverity, AlertStatus
from .audit_log import AuditLog, ActivityType, EntityType
