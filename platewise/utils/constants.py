"""Constants and default values."""

from dataclasses import dataclass
from types import MappingProxyType
from typing import Literal


NotificationType = Literal["weight", "breakfast", "lunch", "snacks", "dinner"]

# Evaluation order for schedule computation
NOTIFICATION_TYPES: tuple[NotificationType, ...] = (
    "weight",
    "breakfast",
    "lunch",
    "snacks",
    "dinner",
)


@dataclass(frozen=True)
class NotificationPref:
    """A single notification type preference (local wall-clock time)."""

    enabled: bool
    hour: int
    minute: int


# Default preferences for users that never customized their schedule
NOTIFICATION_DEFAULTS = MappingProxyType({
    "weight": NotificationPref(True, 7, 30),
    "breakfast": NotificationPref(True, 8, 30),
    "lunch": NotificationPref(True, 13, 0),
    "snacks": NotificationPref(True, 17, 0),
    "dinner": NotificationPref(True, 20, 30),
})

# Preference minutes must sit on the driver grid
ALLOWED_MINUTES = (0, 10, 20, 30, 40, 50)

# Driver cadence / schedule window width
DEFAULT_WINDOW_MINUTES = 10

# Limits
DEVICE_ACTIVE_DAYS = 30
PUSH_BATCH_SIZE = 500
CONTEXT_BATCH_SIZE = 50
TRANSACTION_MAX_ATTEMPTS = 5

# Personalization fallbacks
DEFAULT_DISPLAY_NAME = "Friend"

# Default timezone
DEFAULT_TIMEZONE = "UTC"

# Events
ROOT_SCHEMA_VERSION = 1
METADATA_VERSION = 1
SERVER_SESSION_ID = "server-generated"

# Workflows
WORKFLOW_ID_PREFIX = "WF_"
WORKFLOW_ID_PATTERN = r"^WF_[0-9A-HJKMNP-TV-Z]{26}$"
WORKFLOW_TYPES = ("LOG_WEIGHT",)
MIN_TTL_HOURS = 1
MAX_TTL_HOURS = 72
DEFAULT_TTL_HOURS = 48
MIN_WEIGHT = 20
MAX_WEIGHT = 300
