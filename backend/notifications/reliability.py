"""
Delivery Reliability Manager

Turns one notify decision into a multi-channel delivery outcome:

1. Channels (required + fallback) are tried one at a time by descending priority.
2. Unavailable channels are recorded and skipped without retry.
3. Failing channels are retried with progressive backoff, except for
   permission-denied and invalid-configuration failures.
4. After each channel the required-channel quorum is re-checked; delivery
   stops as soon as it is met.
5. A hard deadline, measured from record creation, turns any unfinished
   delivery into a Timeout that keeps the channels already delivered.
"""

import asyncio
import logging
import time
from dataclasses import replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple

from common.clock import Clock

from .channels import (
    ChannelBackend,
    ChannelUnavailableError,
    InvalidConfigurationError,
    OutgoingNotification,
    PermissionDeniedError,
)
from .models import (
    AttemptOutcome,
    DeliveryAttempt,
    DeliveryChannel,
    DeliveryConfig,
    DeliveryRecord,
    DeliveryResult,
    DeliveryStatus,
)
from .payloads import NotificationPayload
from .statistics import DeliveryTelemetry

logger = logging.getLogger(__name__)


class DeliveryInProgressError(Exception):
    """deliver() was called for a notification id that is still being delivered."""

    def __init__(self, notification_id: str):
        super().__init__(f"Delivery already in progress for {notification_id}")
        self.notification_id = notification_id


class _ChannelOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    ABANDONED = "abandoned"


class DeliveryReliabilityManager:
    """Owns DeliveryRecords and drives the per-channel retry loop."""

    def __init__(
        self,
        backend: ChannelBackend,
        clock: Clock,
        telemetry: Optional[DeliveryTelemetry] = None,
        *,
        default_config: Optional[DeliveryConfig] = None,
        availability_cache_seconds: float = 60.0,
        retention_hours: float = 24.0,
    ):
        self.backend = backend
        self.clock = clock
        self.telemetry = telemetry
        self.default_config = default_config or DeliveryConfig.default()
        self.availability_cache_seconds = availability_cache_seconds
        self.retention_hours = retention_hours

        self._records: Dict[str, DeliveryRecord] = {}
        self._active: Set[str] = set()
        self._availability: Dict[DeliveryChannel, Tuple[bool, datetime]] = {}

    # ==================== Public API ====================

    async def deliver(
        self,
        notification_id: str,
        title: str,
        body: str,
        config: Optional[DeliveryConfig] = None,
        payload: Optional[NotificationPayload] = None,
        critical: bool = False,
    ) -> DeliveryResult:
        """
        Deliver one notification and return its terminal result.

        Raises:
            DeliveryInProgressError: If notification_id is already being delivered
        """
        if notification_id in self._active:
            raise DeliveryInProgressError(notification_id)

        config = config or self.default_config
        notification = OutgoingNotification(
            notification_id=notification_id,
            title=title,
            body=body,
            payload=payload,
            critical=critical,
        )
        record = DeliveryRecord(
            notification_id=notification_id,
            created_at=self.clock.now(),
            required_channels=config.required_channels,
            fallback_channels=config.fallback_channels,
            title=title,
            body=body,
        )
        self._records[notification_id] = record
        self._active.add(notification_id)
        deadline = record.created_at + timedelta(seconds=config.timeout_seconds)

        logger.info(
            f"Delivering {notification_id} via "
            f"{[c.value for c in config.ordered_channels()]} (timeout {config.timeout_seconds}s)"
        )
        try:
            result = await self._run(notification, config, deadline)
        except asyncio.CancelledError:
            self._finish(notification_id, config, abandoned=True)
            logger.warning(f"Delivery {notification_id} cancelled")
            raise
        finally:
            self._active.discard(notification_id)
        return result

    async def deliver_critical(
        self,
        notification_id: str,
        title: str,
        body: str,
        payload: Optional[NotificationPayload] = None,
    ) -> DeliveryResult:
        return await self.deliver(
            notification_id, title, body, DeliveryConfig.critical(), payload, critical=True
        )

    async def is_channel_available(self, channel: DeliveryChannel) -> bool:
        """Backend availability check, cached per channel."""
        now = self.clock.now()
        cached = self._availability.get(channel)
        if cached is not None:
            available, checked_at = cached
            if (now - checked_at).total_seconds() < self.availability_cache_seconds:
                return available
        try:
            available = bool(await self.backend.is_available(channel))
        except Exception as e:
            logger.warning(f"Availability check failed for {channel.value}: {e}")
            available = False
        self._availability[channel] = (available, now)
        return available

    def invalidate_availability(self, channel: Optional[DeliveryChannel] = None) -> None:
        if channel is None:
            self._availability.clear()
        else:
            self._availability.pop(channel, None)

    def abandon_all(self) -> List[str]:
        """Stop retrying every in-flight delivery; successes already achieved stand."""
        abandoned = []
        for notification_id in list(self._active):
            record = self._records.get(notification_id)
            if record is not None and not record.completed:
                self._records[notification_id] = replace(record, abandoned=True)
                abandoned.append(notification_id)
        if abandoned:
            logger.info(f"Abandoned in-flight deliveries: {abandoned}")
        return abandoned

    def get_record(self, notification_id: str) -> Optional[DeliveryRecord]:
        return self._records.get(notification_id)

    def records(self) -> List[DeliveryRecord]:
        return sorted(self._records.values(), key=lambda r: r.created_at)

    def is_active(self, notification_id: str) -> bool:
        return notification_id in self._active

    def cleanup_old_records(self, older_than_hours: Optional[float] = None) -> int:
        """Drop completed records older than the retention window."""
        hours = self.retention_hours if older_than_hours is None else older_than_hours
        cutoff = self.clock.now() - timedelta(hours=hours)
        stale = [
            nid
            for nid, record in self._records.items()
            if record.created_at < cutoff and nid not in self._active
        ]
        for nid in stale:
            del self._records[nid]
        if stale:
            logger.info(f"Cleaned up {len(stale)} delivery records older than {hours}h")
        return len(stale)

    # ==================== Delivery loop ====================

    async def _run(
        self,
        notification: OutgoingNotification,
        config: DeliveryConfig,
        deadline: datetime,
    ) -> DeliveryResult:
        nid = notification.notification_id
        successful: List[DeliveryChannel] = []

        for channel in config.ordered_channels():
            if self._is_abandoned(nid):
                return self._finish(nid, config, abandoned=True)
            if self._remaining(deadline) <= 0:
                return self._finish(nid, config, status=DeliveryStatus.TIMEOUT)

            attempted_at = self.clock.now()
            started = time.perf_counter()
            try:
                available = await asyncio.wait_for(
                    self.is_channel_available(channel), timeout=self._remaining(deadline)
                )
            except asyncio.TimeoutError:
                self._record_failure(
                    nid, channel, AttemptOutcome.FAILURE, started, attempted_at, 0, "availability check timed out"
                )
                return self._finish(nid, config, status=DeliveryStatus.TIMEOUT)

            if not available:
                self._record_attempt(
                    nid,
                    DeliveryAttempt(
                        channel=channel,
                        outcome=AttemptOutcome.UNAVAILABLE,
                        duration_ms=0.0,
                        retry_index=0,
                        attempted_at=self.clock.now(),
                        reason="channel unavailable",
                    ),
                )
                continue

            outcome = await self._attempt_channel(channel, notification, config, deadline)
            if outcome == _ChannelOutcome.SUCCEEDED:
                successful.append(channel)
            elif outcome == _ChannelOutcome.TIMED_OUT:
                return self._finish(nid, config, status=DeliveryStatus.TIMEOUT)
            elif outcome == _ChannelOutcome.ABANDONED:
                return self._finish(nid, config, abandoned=True)

            if config.quorum_met(successful):
                return self._finish(nid, config, status=DeliveryStatus.SUCCESS)

        return self._finish(nid, config)

    async def _attempt_channel(
        self,
        channel: DeliveryChannel,
        notification: OutgoingNotification,
        config: DeliveryConfig,
        deadline: datetime,
    ) -> _ChannelOutcome:
        nid = notification.notification_id

        for retry_index in range(config.max_retry_attempts):
            if retry_index > 0:
                remaining = self._remaining(deadline)
                if remaining <= 0:
                    return _ChannelOutcome.TIMED_OUT
                delay = config.retry_delay(retry_index)
                logger.info(
                    f"Retrying {channel.value} for {nid} "
                    f"(attempt {retry_index + 1}/{config.max_retry_attempts}) in {delay}s"
                )
                await self.clock.sleep(min(delay, remaining))
                if self._is_abandoned(nid):
                    return _ChannelOutcome.ABANDONED

            remaining = self._remaining(deadline)
            if remaining <= 0:
                return _ChannelOutcome.TIMED_OUT

            attempted_at = self.clock.now()
            started = time.perf_counter()
            try:
                await asyncio.wait_for(self.backend.send(channel, notification), timeout=remaining)
            except asyncio.TimeoutError:
                self._record_failure(nid, channel, AttemptOutcome.FAILURE, started, attempted_at, retry_index, "timed out")
                return _ChannelOutcome.TIMED_OUT
            except PermissionDeniedError as e:
                self._record_failure(nid, channel, AttemptOutcome.PERMISSION_DENIED, started, attempted_at, retry_index, str(e))
                self.invalidate_availability(channel)
                return _ChannelOutcome.FAILED
            except InvalidConfigurationError as e:
                self._record_failure(nid, channel, AttemptOutcome.FAILURE, started, attempted_at, retry_index, f"invalid configuration: {e}")
                return _ChannelOutcome.FAILED
            except ChannelUnavailableError as e:
                self._record_failure(nid, channel, AttemptOutcome.UNAVAILABLE, started, attempted_at, retry_index, str(e))
                self._availability[channel] = (False, self.clock.now())
                return _ChannelOutcome.FAILED
            except Exception as e:
                self._record_failure(nid, channel, AttemptOutcome.FAILURE, started, attempted_at, retry_index, str(e) or type(e).__name__)
                continue

            self._record_attempt(
                nid,
                DeliveryAttempt(
                    channel=channel,
                    outcome=AttemptOutcome.SUCCESS,
                    duration_ms=(time.perf_counter() - started) * 1000,
                    retry_index=retry_index,
                    attempted_at=attempted_at,
                ),
            )
            return _ChannelOutcome.SUCCEEDED

        logger.warning(f"{channel.value} exhausted {config.max_retry_attempts} attempts for {nid}")
        return _ChannelOutcome.FAILED

    # ==================== Bookkeeping ====================

    def _remaining(self, deadline: datetime) -> float:
        return (deadline - self.clock.now()).total_seconds()

    def _is_abandoned(self, notification_id: str) -> bool:
        record = self._records.get(notification_id)
        return record is not None and record.abandoned

    def _record_failure(
        self,
        notification_id: str,
        channel: DeliveryChannel,
        outcome: AttemptOutcome,
        started: float,
        attempted_at: datetime,
        retry_index: int,
        reason: str,
    ) -> None:
        self._record_attempt(
            notification_id,
            DeliveryAttempt(
                channel=channel,
                outcome=outcome,
                duration_ms=(time.perf_counter() - started) * 1000,
                retry_index=retry_index,
                attempted_at=attempted_at,
                reason=reason,
            ),
        )

    def _record_attempt(self, notification_id: str, attempt: DeliveryAttempt) -> None:
        self._records[notification_id] = self._records[notification_id].with_attempt(attempt)
        if self.telemetry is not None:
            self.telemetry.record_attempt(attempt)

    def _finish(
        self,
        notification_id: str,
        config: DeliveryConfig,
        status: Optional[DeliveryStatus] = None,
        abandoned: bool = False,
    ) -> DeliveryResult:
        record = self._records[notification_id]
        successful = record.successful_channels
        if status is None:
            if config.quorum_met(successful):
                status = DeliveryStatus.SUCCESS
            elif successful:
                status = DeliveryStatus.PARTIAL_SUCCESS
            else:
                status = DeliveryStatus.FAILURE

        result = DeliveryResult(
            notification_id=notification_id,
            status=status,
            successful_channels=tuple(successful),
            failed_channels=tuple(record.failed_channels),
            total_attempts=record.total_attempts,
            abandoned=abandoned or record.abandoned,
            error=_result_error(status, abandoned or record.abandoned),
        )
        record = replace(record, completed=True, abandoned=result.abandoned, final_result=result)
        self._records[notification_id] = record
        self._log_result(result, record)
        if self.telemetry is not None:
            self.telemetry.record_result(result, record)
        return result

    def _log_result(self, result: DeliveryResult, record: DeliveryRecord) -> None:
        channels = [c.value for c in result.successful_channels]
        nid = result.notification_id
        if result.abandoned:
            logger.info(f"Delivery {nid} abandoned with {channels} delivered: {record.history_text()}")
        elif result.status == DeliveryStatus.SUCCESS:
            logger.info(f"Delivery {nid} succeeded via {channels} ({result.total_attempts} attempts)")
        elif result.status == DeliveryStatus.PARTIAL_SUCCESS:
            logger.warning(
                f"Delivery {nid} partially succeeded via {channels}, "
                f"failed {[c.value for c in result.failed_channels]}: {record.history_text()}"
            )
        elif result.status == DeliveryStatus.TIMEOUT:
            logger.error(f"Delivery {nid} timed out with {channels} delivered: {record.history_text()}")
        else:
            logger.error(f"Delivery {nid} failed on every channel: {record.history_text()}")


def _result_error(status: DeliveryStatus, abandoned: bool) -> Optional[str]:
    if status != DeliveryStatus.FAILURE:
        return None
    return "Delivery abandoned" if abandoned else "All channels failed"
