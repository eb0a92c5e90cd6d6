"""Notification dispatcher - fans due users out to their devices."""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime

from platewise.db.models import DeliveryRecord, DueUser, EventName
from platewise.db.repository import Repository
from platewise.engine.ledger import track_event_background
from platewise.engine.personalization import resolve_context_batch
from platewise.engine.push import PreparedNotification, PushTransport, SendResult
from platewise.engine.templates import TemplateTable, render_template
from platewise.utils.constants import CONTEXT_BATCH_SIZE, PUSH_BATCH_SIZE
from platewise.utils.time_utils import utcnow

logger = logging.getLogger(__name__)

# Fixed namespace so notification ids are reproducible across processes
NOTIFICATION_NAMESPACE = uuid.UUID("6f1c2a4e-8b1d-4c57-9a53-3f0e7d2b9c10")


def notification_id_for(notification_type: str, user_id: str, window_key: str, device_id: str) -> str:
    """Deterministic notification id for one (type, user, window, device)."""
    return str(
        uuid.uuid5(NOTIFICATION_NAMESPACE, f"{notification_type}_{user_id}_{window_key}_{device_id}")
    )


@dataclass
class DispatchSummary:
    """Aggregate result of one dispatch run."""

    records: list[DeliveryRecord] = field(default_factory=list)
    sent: int = 0
    failed: int = 0
    users_without_devices: int = 0


@dataclass(frozen=True)
class _Attempt:
    payload: PreparedNotification
    timezone: str
    platform: str


class Dispatcher:
    """Render, send and log notifications for users whose schedule advanced."""

    def __init__(
        self,
        repo: Repository,
        transport: PushTransport,
        templates: TemplateTable,
        send_timeout: float = 10.0,
        push_batch_size: int = PUSH_BATCH_SIZE,
        context_batch_size: int = CONTEXT_BATCH_SIZE,
    ):
        self.repo = repo
        self.transport = transport
        self.templates = templates
        self.send_timeout = send_timeout
        self.push_batch_size = push_batch_size
        self.context_batch_size = context_batch_size

    async def dispatch(self, due_users: list[DueUser], now: datetime | None = None) -> DispatchSummary:
        """Send every due type to every active device of each user.

        Each attempt is independent: a failed device does not block the
        others, and every attempt yields one delivery record.
        """
        if now is None:
            now = utcnow()

        summary = DispatchSummary()
        if not due_users:
            return summary

        user_ids = [u.user_id for u in due_users]
        devices = await self.repo.get_active_devices(user_ids, now)
        contexts = await resolve_context_batch(
            self.repo,
            [(u.user_id, u.timezone) for u in due_users],
            now,
            batch_size=self.context_batch_size,
        )

        attempts: list[_Attempt] = []
        for user in due_users:
            user_devices = devices.get(user.user_id, [])
            if not user_devices:
                logger.info(f"User {user.user_id} has no active devices, skipping")
                summary.users_without_devices += 1
                continue

            context = contexts[user.user_id]
            for notification_type in user.notification_types:
                try:
                    template = self.templates.for_type(notification_type)
                except KeyError:
                    logger.warning(f"No template for {notification_type!r}, skipping")
                    continue
                title, body = render_template(template, context)

                for device in user_devices:
                    payload = PreparedNotification(
                        push_token=device.push_token,
                        title=title,
                        body=body,
                        notification_id=notification_id_for(
                            notification_type, user.user_id, user.window_key, device.device_id
                        ),
                        link=template.link,
                        device_id=device.device_id,
                        user_id=user.user_id,
                        notification_type=notification_type,
                    )
                    attempts.append(_Attempt(payload, user.timezone, device.platform))

        if not attempts:
            logger.info("No payloads to send (users have no active devices)")
            return summary

        for i in range(0, len(attempts), self.push_batch_size):
            batch = attempts[i:i + self.push_batch_size]
            results = await asyncio.gather(*(self._send(a.payload) for a in batch))
            for attempt, result in zip(batch, results):
                record = await self._record(attempt, result, now)
                summary.records.append(record)
                if result.success:
                    summary.sent += 1
                else:
                    summary.failed += 1

        logger.info(f"Dispatch complete: {summary.sent} success, {summary.failed} failed")
        return summary

    async def _send(self, payload: PreparedNotification) -> SendResult:
        try:
            return await asyncio.wait_for(self.transport.send(payload), self.send_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Push send timed out for device {payload.device_id}")
            return SendResult(success=False, error="timeout")
        except Exception as e:
            logger.warning(f"Push send raised for device {payload.device_id}: {e}")
            return SendResult(success=False, error=str(e) or type(e).__name__)

    async def _record(self, attempt: _Attempt, result: SendResult, now: datetime) -> DeliveryRecord:
        """Log the attempt. Logging failures never reach the delivery path."""
        payload = attempt.payload
        record = DeliveryRecord(
            notification_id=payload.notification_id,
            device_id=payload.device_id,
            user_id=payload.user_id,
            notification_type=payload.notification_type,  # type: ignore[arg-type]
            title=payload.title,
            body=payload.body,
            link=payload.link,
            delivery_status="success" if result.success else "failed",
            error_message=result.error,
            sent_at=now,
        )

        try:
            if not await self.repo.log_delivery(record):
                logger.info(f"Delivery {record.notification_id} already logged for this window")
        except Exception as e:
            logger.error(f"Failed to log delivery {record.notification_id}: {e}")

        metadata = {
            "notification_id": record.notification_id,
            "notification_type": record.notification_type.upper(),
            "delivery_status": record.delivery_status,
            "device_id": record.device_id,
        }
        if record.error_message:
            metadata["error_message"] = record.error_message
        # Keyed by notification id so a repeated window collides in the ledger too
        track_event_background(
            self.repo,
            event_id=record.notification_id,
            event_name=EventName.NOTIFICATION_DELIVERED,
            user_id=record.user_id,
            timezone=attempt.timezone,
            platform=attempt.platform,
            metadata=metadata,
            timestamp=now,
        )
        return record
