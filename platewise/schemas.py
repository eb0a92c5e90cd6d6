"""Validation schemas for event metadata, workflow payloads and request bodies."""

from datetime import datetime
from types import MappingProxyType
from typing import Any, Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from platewise.db.models import EventName
from platewise.utils.constants import (
    ALLOWED_MINUTES,
    DEFAULT_TTL_HOURS,
    MAX_TTL_HOURS,
    MAX_WEIGHT,
    MIN_TTL_HOURS,
    MIN_WEIGHT,
    NOTIFICATION_TYPES,
    WORKFLOW_TYPES,
)
from platewise.utils.errors import InvalidRequestError
from platewise.utils.time_utils import is_valid_timezone


# Event metadata, one model per event kind

class DeviceRegisteredMetadata(BaseModel):
    timezone: str = Field(min_length=1)
    platform: Literal["ios", "android"]
    app_version: Optional[str] = None
    device_id: Optional[str] = None


class WeightLoggedMetadata(BaseModel):
    weight_value: float = Field(gt=0)
    unit: Literal["kg", "lbs"] = "kg"
    source: Literal["manual", "auto"] = "manual"


class FoodAnalyzedMetadata(BaseModel):
    success: bool
    food_detected: bool
    credits_remaining: int = Field(ge=0)
    latency_ms: int = Field(ge=0)


class NotificationDeliveredMetadata(BaseModel):
    notification_id: UUID
    notification_type: str = Field(min_length=1)
    delivery_status: Literal["success", "failed"]
    error_message: Optional[str] = None
    device_id: Optional[str] = None


class NotificationReceivedMetadata(BaseModel):
    notification_id: UUID
    received_at: datetime


class NotificationOpenedMetadata(BaseModel):
    notification_id: UUID
    opened_at: datetime


class IntentCapturedMetadata(BaseModel):
    intent_type: str = Field(min_length=1)
    expected_duration: int = Field(ge=0)  # minutes


class IntentClosedMetadata(BaseModel):
    intent_type: str = Field(min_length=1)
    outcome: Literal["completed", "abandoned", "expired"]
    actual_duration: int = Field(ge=0)  # minutes
    expected_duration: int = Field(ge=0)  # minutes


EventMetadata = Union[
    DeviceRegisteredMetadata,
    WeightLoggedMetadata,
    FoodAnalyzedMetadata,
    NotificationDeliveredMetadata,
    NotificationReceivedMetadata,
    NotificationOpenedMetadata,
    IntentCapturedMetadata,
    IntentClosedMetadata,
]

METADATA_MODELS: "MappingProxyType[EventName, type[BaseModel]]" = MappingProxyType({
    EventName.DEVICE_REGISTERED: DeviceRegisteredMetadata,
    EventName.WEIGHT_LOGGED: WeightLoggedMetadata,
    EventName.FOOD_ANALYZED: FoodAnalyzedMetadata,
    EventName.NOTIFICATION_DELIVERED: NotificationDeliveredMetadata,
    EventName.NOTIFICATION_RECEIVED: NotificationReceivedMetadata,
    EventName.NOTIFICATION_OPENED: NotificationOpenedMetadata,
    EventName.INTENT_CAPTURED: IntentCapturedMetadata,
    EventName.INTENT_CLOSED: IntentClosedMetadata,
})

if set(METADATA_MODELS) != set(EventName):
    raise RuntimeError("every EventName needs a metadata model")


def format_validation_error(error: ValidationError, prefix: str = "") -> str:
    """Flatten pydantic errors into "path: message, ..." form."""
    parts = []
    for e in error.errors():
        path = ".".join(str(p) for p in e["loc"])
        parts.append(f"{prefix}{path}: {e['msg']}")
    return ", ".join(parts)


def validate_metadata(event_name: EventName, metadata: dict[str, Any]) -> EventMetadata:
    """Validate metadata against the kind's schema.

    Raises:
        InvalidRequestError: if the metadata does not match
    """
    model = METADATA_MODELS[event_name]
    try:
        return model.model_validate(metadata)
    except ValidationError as e:
        raise InvalidRequestError(
            f"Invalid metadata for {event_name.value}: {format_validation_error(e, 'metadata.')}"
        ) from e


# Workflow payloads

class LogWeightPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    suggested_weight: Optional[float] = Field(
        default=None, alias="suggestedWeight", ge=MIN_WEIGHT, le=MAX_WEIGHT
    )
    source: Optional[str] = None


WORKFLOW_PAYLOADS: "MappingProxyType[str, type[BaseModel]]" = MappingProxyType({
    "LOG_WEIGHT": LogWeightPayload,
})


# Request bodies

class EventRequest(BaseModel):
    event_id: UUID = Field(alias="eventId")
    event_name: EventName = Field(alias="eventName")
    timestamp: datetime
    timezone: str = Field(min_length=1)
    session_id: UUID = Field(alias="sessionId")
    platform: Literal["ios", "android"]
    metadata: dict[str, Any]

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        if not is_valid_timezone(value):
            raise ValueError("must be a valid IANA timezone")
        return value

    @field_validator("timestamp")
    @classmethod
    def require_offset(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            raise ValueError("must include a UTC offset")
        return value


class PreferenceUpdateRequest(BaseModel):
    type: Literal[NOTIFICATION_TYPES]  # type: ignore[valid-type]
    enabled: bool
    hour: Optional[int] = Field(default=None, ge=0, le=23)
    minute: Optional[int] = None
    timezone: Optional[str] = None

    @field_validator("minute")
    @classmethod
    def validate_minute(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and value not in ALLOWED_MINUTES:
            raise ValueError(f"must be one of {', '.join(str(m) for m in ALLOWED_MINUTES)}")
        return value

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not is_valid_timezone(value):
            raise ValueError("must be a valid IANA timezone")
        return value

    @model_validator(mode="after")
    def hour_and_minute_together(self) -> "PreferenceUpdateRequest":
        if (self.hour is None) != (self.minute is None):
            raise ValueError("hour and minute must be provided together")
        return self


class CreateWorkflowRequest(BaseModel):
    type: Literal[WORKFLOW_TYPES]  # type: ignore[valid-type]
    payload: Optional[dict[str, Any]] = None
    expires_in_hours: int = Field(
        default=DEFAULT_TTL_HOURS, alias="expiresInHours", ge=MIN_TTL_HOURS, le=MAX_TTL_HOURS
    )
    campaign_id: Optional[str] = Field(default=None, alias="campaignId", max_length=128)
    max_resolves: Optional[int] = Field(default=None, alias="maxResolves", gt=0)
