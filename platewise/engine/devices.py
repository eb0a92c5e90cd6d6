"""Device registration."""

from datetime import datetime

from platewise.db.models import EventName
from platewise.db.repository import Repository
from platewise.engine.ledger import track_event_background
from platewise.utils.errors import InvalidRequestError
from platewise.utils.time_utils import is_valid_timezone, utcnow


async def register_device(
    repo: Repository,
    user_id: str,
    device_id: str,
    push_token: str,
    platform: str,
    timezone: str | None = None,
    now: datetime | None = None,
) -> None:
    """Claim a device for the user and record the registration."""
    if platform not in ("ios", "android"):
        raise InvalidRequestError("platform must be 'ios' or 'android'")
    if not device_id or not push_token:
        raise InvalidRequestError("deviceId and pushToken are required")
    if now is None:
        now = utcnow()

    await repo.upsert_device(user_id, device_id, push_token, platform, now)

    if timezone and is_valid_timezone(timezone):
        track_event_background(
            repo,
            event_name=EventName.DEVICE_REGISTERED,
            user_id=user_id,
            timezone=timezone,
            platform=platform,
            metadata={"timezone": timezone, "platform": platform, "device_id": device_id},
            timestamp=now,
        )
