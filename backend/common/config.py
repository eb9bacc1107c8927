"""
Alarm settings.

All tuning knobs are plain scalars read from ALARM_* environment
variables (the server loads backend/.env first via python-dotenv).
"""

import os
from dataclasses import dataclass, field
from typing import FrozenSet, Mapping, Optional, Tuple

from decision.models import OperatingMode
from fallback.models import FallbackStrategy
from notifications.messages import MessageStyle
from notifications.models import DeliveryChannel, DeliveryConfig, parse_channels


@dataclass(frozen=True)
class AlarmSettings:
    lead_time_seconds: float = 300.0
    notify_radius_meters: float = 500.0
    low_accuracy_threshold_meters: float = 50.0
    outage_threshold_seconds: float = 30.0
    deviation_threshold_seconds: float = 180.0

    max_retry_attempts: int = 5
    retry_delays_seconds: Tuple[float, ...] = (1.0, 3.0, 10.0, 30.0, 60.0)
    delivery_timeout_seconds: float = 30.0
    required_channels: FrozenSet[DeliveryChannel] = field(
        default_factory=lambda: frozenset({DeliveryChannel.SYSTEM_NOTIFICATION})
    )
    fallback_channels: Tuple[DeliveryChannel, ...] = (
        DeliveryChannel.LOCAL_SOUND,
        DeliveryChannel.HAPTIC,
        DeliveryChannel.VISUAL_BANNER,
        DeliveryChannel.BADGE,
    )

    decision_interval_seconds: float = 10.0
    fallback_poll_interval_seconds: float = 5.0
    position_freshness_seconds: float = 15.0
    fallback_accuracy_bound_meters: float = 100.0
    auto_recovery_enabled: bool = True
    preferred_mode: OperatingMode = OperatingMode.HYBRID
    preferred_fallback_strategy: Optional[FallbackStrategy] = None

    message_timeout_seconds: float = 3.0
    message_style: MessageStyle = MessageStyle.HEALING
    availability_cache_seconds: float = 60.0
    record_retention_hours: float = 24.0

    def __post_init__(self):
        positive = {
            "lead_time_seconds": self.lead_time_seconds,
            "notify_radius_meters": self.notify_radius_meters,
            "low_accuracy_threshold_meters": self.low_accuracy_threshold_meters,
            "outage_threshold_seconds": self.outage_threshold_seconds,
            "deviation_threshold_seconds": self.deviation_threshold_seconds,
            "delivery_timeout_seconds": self.delivery_timeout_seconds,
            "decision_interval_seconds": self.decision_interval_seconds,
            "fallback_poll_interval_seconds": self.fallback_poll_interval_seconds,
            "position_freshness_seconds": self.position_freshness_seconds,
            "fallback_accuracy_bound_meters": self.fallback_accuracy_bound_meters,
            "message_timeout_seconds": self.message_timeout_seconds,
        }
        for name, value in positive.items():
            if value <= 0:
                raise ValueError(f"{name} must be positive, got {value}")
        if self.availability_cache_seconds < 0 or self.record_retention_hours < 0:
            raise ValueError("cache and retention windows must be >= 0")
        if self.preferred_mode == OperatingMode.DEGRADED:
            raise ValueError("preferred_mode cannot be degraded")
        if self.preferred_fallback_strategy == FallbackStrategy.MANUAL_CONFIRMATION:
            raise ValueError("preferred_fallback_strategy cannot be manual_confirmation")
        # Validates channels, retries and delays
        self.delivery_config()

    def delivery_config(self) -> DeliveryConfig:
        return DeliveryConfig(
            required_channels=frozenset(self.required_channels),
            fallback_channels=tuple(self.fallback_channels),
            max_retry_attempts=self.max_retry_attempts,
            retry_delays_seconds=tuple(self.retry_delays_seconds),
            timeout_seconds=self.delivery_timeout_seconds,
        )


def _bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value: {value!r}")


def load_settings(env: Optional[Mapping[str, str]] = None) -> AlarmSettings:
    """
    Build AlarmSettings from ALARM_* variables, falling back to defaults.

    Raises:
        ValueError: On unparseable or out-of-range values
    """
    env = os.environ if env is None else env
    defaults = AlarmSettings()

    def num(name: str, default: float) -> float:
        raw = env.get(name)
        return float(raw) if raw not in (None, "") else default

    def text(name: str) -> Optional[str]:
        raw = env.get(name)
        return raw.strip() if raw and raw.strip() else None

    required = env.get("ALARM_REQUIRED_CHANNELS")
    fallback = env.get("ALARM_FALLBACK_CHANNELS")
    delays = text("ALARM_RETRY_DELAYS_SECONDS")
    strategy = text("ALARM_PREFERRED_FALLBACK_STRATEGY")
    mode = text("ALARM_PREFERRED_MODE")
    style = text("ALARM_MESSAGE_STYLE")
    auto_recovery = text("ALARM_AUTO_RECOVERY")

    return AlarmSettings(
        lead_time_seconds=num("ALARM_LEAD_TIME_SECONDS", defaults.lead_time_seconds),
        notify_radius_meters=num("ALARM_NOTIFY_RADIUS_METERS", defaults.notify_radius_meters),
        low_accuracy_threshold_meters=num(
            "ALARM_LOW_ACCURACY_THRESHOLD_METERS", defaults.low_accuracy_threshold_meters
        ),
        outage_threshold_seconds=num("ALARM_OUTAGE_THRESHOLD_SECONDS", defaults.outage_threshold_seconds),
        deviation_threshold_seconds=num(
            "ALARM_DEVIATION_THRESHOLD_SECONDS", defaults.deviation_threshold_seconds
        ),
        max_retry_attempts=int(num("ALARM_MAX_RETRY_ATTEMPTS", defaults.max_retry_attempts)),
        retry_delays_seconds=(
            tuple(float(d) for d in delays.split(",") if d.strip())
            if delays
            else defaults.retry_delays_seconds
        ),
        delivery_timeout_seconds=num("ALARM_DELIVERY_TIMEOUT_SECONDS", defaults.delivery_timeout_seconds),
        required_channels=(
            frozenset(parse_channels(required.split(",")))
            if required is not None
            else defaults.required_channels
        ),
        fallback_channels=(
            tuple(parse_channels(fallback.split(",")))
            if fallback is not None
            else defaults.fallback_channels
        ),
        decision_interval_seconds=num("ALARM_DECISION_INTERVAL_SECONDS", defaults.decision_interval_seconds),
        fallback_poll_interval_seconds=num(
            "ALARM_FALLBACK_POLL_INTERVAL_SECONDS", defaults.fallback_poll_interval_seconds
        ),
        position_freshness_seconds=num(
            "ALARM_POSITION_FRESHNESS_SECONDS", defaults.position_freshness_seconds
        ),
        fallback_accuracy_bound_meters=num(
            "ALARM_FALLBACK_ACCURACY_BOUND_METERS", defaults.fallback_accuracy_bound_meters
        ),
        auto_recovery_enabled=_bool(auto_recovery) if auto_recovery else defaults.auto_recovery_enabled,
        preferred_mode=OperatingMode(mode.lower()) if mode else defaults.preferred_mode,
        preferred_fallback_strategy=FallbackStrategy(strategy.lower()) if strategy else None,
        message_timeout_seconds=num("ALARM_MESSAGE_TIMEOUT_SECONDS", defaults.message_timeout_seconds),
        message_style=MessageStyle(style.lower()) if style else defaults.message_style,
        availability_cache_seconds=num(
            "ALARM_AVAILABILITY_CACHE_SECONDS", defaults.availability_cache_seconds
        ),
        record_retention_hours=num("ALARM_RECORD_RETENTION_HOURS", defaults.record_retention_hours),
    )
