"""Data models."""

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Literal

from platewise.utils.constants import NotificationPref, NotificationType


Platform = Literal["ios", "android"]
DeliveryStatus = Literal["success", "failed"]
TrackStatus = Literal["created", "duplicate"]


class EventName(str, Enum):
    """All trackable user behaviors."""

    DEVICE_REGISTERED = "DEVICE_REGISTERED"
    WEIGHT_LOGGED = "WEIGHT_LOGGED"
    FOOD_ANALYZED = "FOOD_ANALYZED"
    NOTIFICATION_DELIVERED = "NOTIFICATION_DELIVERED"
    NOTIFICATION_RECEIVED = "NOTIFICATION_RECEIVED"
    NOTIFICATION_OPENED = "NOTIFICATION_OPENED"
    INTENT_CAPTURED = "INTENT_CAPTURED"
    INTENT_CLOSED = "INTENT_CLOSED"


class WorkflowStatus(str, Enum):
    """Workflow status. EXPIRED is computed, never persisted."""

    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    EXPIRED = "EXPIRED"


@dataclass
class Event:
    """Immutable behavioral event, keyed by the client-supplied id."""

    event_id: str
    user_id: str
    event_name: EventName
    event_timestamp_utc: datetime
    event_local_date: date
    ingested_at: datetime
    timezone: str
    session_id: str
    platform: Platform
    metadata: dict[str, Any]
    schema_version: int
    metadata_version: int


@dataclass
class UserState:
    """Per-user behavioral and scheduling state."""

    user_id: str
    timezone: str
    current_streak: int = 0
    last_log_date: date | None = None
    total_logs: int = 0
    display_name: str | None = None
    last_active_at: datetime | None = None
    notification_prefs: dict[str, NotificationPref] | None = None  # None = never set
    next_notification_utc: datetime | None = None
    next_notification_types: list[NotificationType] = field(default_factory=list)
    last_notification_window: str | None = None


@dataclass
class TrackEventResult:
    """Outcome of an idempotent event write."""

    status: TrackStatus
    event_id: str


@dataclass
class Device:
    """A registered push target owned by a user."""

    device_id: str
    user_id: str
    push_token: str
    platform: Platform
    created_at: datetime
    last_seen_at: datetime


@dataclass
class DueUser:
    """A user whose schedule was advanced and who is now eligible for fan-out."""

    user_id: str
    timezone: str
    notification_types: list[NotificationType]
    window_key: str


@dataclass
class DeliveryRecord:
    """Append-only audit trail of a push attempt."""

    notification_id: str
    device_id: str
    user_id: str
    notification_type: NotificationType
    title: str
    body: str
    link: str | None
    delivery_status: DeliveryStatus
    sent_at: datetime
    error_message: str | None = None


@dataclass
class Workflow:
    """Short-lived deferred deep-link token."""

    id: str
    type: str
    status: WorkflowStatus  # persisted: ACTIVE or COMPLETED
    payload: dict[str, Any]
    created_at: datetime
    expires_at: datetime
    user_id: str | None = None
    campaign_id: str | None = None
    completed_at: datetime | None = None
    max_resolves: int | None = None
    click_count: int = 0
    resolve_count: int = 0
    last_resolved_at: datetime | None = None
