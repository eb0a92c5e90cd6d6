"""Request handlers for the HTTP layer.

Routing and auth live outside this package. Each handler takes the
verified user id (where the route is authenticated) and the raw JSON body,
and returns (status_code, response_body).
"""

import logging
from typing import Any

from pydantic import ValidationError

from platewise.config import Config
from platewise.db.repository import Repository
from platewise.engine import ledger, scheduling, workflow
from platewise.schemas import (
    CreateWorkflowRequest,
    EventRequest,
    PreferenceUpdateRequest,
    format_validation_error,
)
from platewise.utils.error_handler import error_response
from platewise.utils.errors import InvalidRequestError
from platewise.utils.time_utils import to_db

logger = logging.getLogger(__name__)


def _parse(model, body: Any):
    if not isinstance(body, dict):
        raise InvalidRequestError("Request body must be a JSON object")
    try:
        return model.model_validate(body)
    except ValidationError as e:
        raise InvalidRequestError(format_validation_error(e)) from e


async def ingest_event(repo: Repository, user_id: str, body: Any) -> tuple[int, dict]:
    """POST /events - duplicates are a success too."""
    try:
        request = _parse(EventRequest, body)
        logger.info(f"Processing event {request.event_id} ({request.event_name.value}) for {user_id}")
        result = await ledger.track_event(
            repo,
            event_id=str(request.event_id),
            event_name=request.event_name,
            user_id=user_id,
            timestamp=request.timestamp,
            timezone=request.timezone,
            session_id=str(request.session_id),
            platform=request.platform,
            metadata=request.metadata,
        )
        return 200, {"success": True, "status": result.status, "eventId": result.event_id}
    except Exception as e:
        return error_response(e)


async def update_notification_preferences(
    repo: Repository, user_id: str, body: Any
) -> tuple[int, dict]:
    """PATCH /users/notification-preferences"""
    try:
        request = _parse(PreferenceUpdateRequest, body)
        await scheduling.update_preference(
            repo,
            user_id,
            request.type,
            request.enabled,
            hour=request.hour,
            minute=request.minute,
            timezone=request.timezone,
            default_timezone=Config.DEFAULT_TIMEZONE,
        )
        return 200, {"success": True, "message": f"{request.type} notification preference updated"}
    except Exception as e:
        return error_response(e)


async def create_workflow(repo: Repository, user_id: str | None, body: Any) -> tuple[int, dict]:
    """POST /workflows"""
    try:
        request = _parse(CreateWorkflowRequest, body)
        workflow_id, deep_link_url = await workflow.create_workflow(
            repo,
            request.type,
            payload=request.payload,
            expires_in_hours=request.expires_in_hours,
            campaign_id=request.campaign_id,
            max_resolves=request.max_resolves,
            user_id=user_id,
            link_base_url=Config.DEEP_LINK_BASE_URL,
        )
        return 200, {"success": True, "workflowId": workflow_id, "deepLinkUrl": deep_link_url}
    except Exception as e:
        return error_response(e)


async def resolve_workflow(repo: Repository, workflow_id: str) -> tuple[int, dict]:
    """GET /workflows/{id} - public."""
    try:
        resolved = await workflow.resolve_workflow(repo, workflow_id)
        return 200, {
            "success": True,
            "type": resolved.type,
            "status": resolved.status.value,
            "payload": resolved.payload,
            "expiresAt": to_db(resolved.expires_at),
        }
    except Exception as e:
        return error_response(e)


async def complete_workflow(repo: Repository, workflow_id: str) -> tuple[int, dict]:
    """POST /workflows/{id}/complete - public, idempotent."""
    try:
        status = await workflow.complete_workflow(repo, workflow_id)
        return 200, {"success": True, "status": status.value}
    except Exception as e:
        return error_response(e)
