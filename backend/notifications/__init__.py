"""
Notifications package - reliable multi-channel alert delivery

Submodules:
- models: Channels, attempts, records and results
- payloads: Tagged payload types per notification kind
- channels: ChannelBackend contract and error taxonomy
- reliability: DeliveryReliabilityManager retry/quorum loop
- statistics: Delivery telemetry counters
- expo_push: Expo push client and push-backed channel backend
- messages: Alert text templates and bounded message generation
- snooze: Station-count snooze planning
- service: MongoDB history persistence
"""

from .models import (
    AttemptOutcome,
    DeliveryAttempt,
    DeliveryChannel,
    DeliveryConfig,
    DeliveryRecord,
    DeliveryResult,
    DeliveryStatus,
)
from .payloads import ArrivalPayload, SnoozePayload, TransferPayload, payload_from_data
from .channels import (
    ChannelUnavailableError,
    InvalidConfigurationError,
    OutgoingNotification,
    PermissionDeniedError,
    TransientChannelError,
)
from .reliability import DeliveryInProgressError, DeliveryReliabilityManager
from .statistics import DeliveryStatistics
from .expo_push import ExpoChannelBackend, ExpoPushClient
from .service import NotificationHistoryService

__all__ = [
    "AttemptOutcome",
    "DeliveryAttempt",
    "DeliveryChannel",
    "DeliveryConfig",
    "DeliveryRecord",
    "DeliveryResult",
    "DeliveryStatus",
    "ArrivalPayload",
    "SnoozePayload",
    "TransferPayload",
    "payload_from_data",
    "ChannelUnavailableError",
    "InvalidConfigurationError",
    "OutgoingNotification",
    "PermissionDeniedError",
    "TransientChannelError",
    "DeliveryInProgressError",
    "DeliveryReliabilityManager",
    "DeliveryStatistics",
    "ExpoChannelBackend",
    "ExpoPushClient",
    "NotificationHistoryService",
]
