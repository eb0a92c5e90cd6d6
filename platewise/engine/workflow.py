"""Deferred deep-link workflows: create, resolve, complete."""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import aiosqlite
from pydantic import ValidationError
from ulid import ULID

from platewise.db.models import Workflow, WorkflowStatus
from platewise.db.repository import Repository
from platewise.schemas import WORKFLOW_PAYLOADS, format_validation_error
from platewise.utils.constants import (
    DEFAULT_TTL_HOURS,
    MAX_TTL_HOURS,
    MIN_TTL_HOURS,
    WORKFLOW_ID_PATTERN,
    WORKFLOW_ID_PREFIX,
    WORKFLOW_TYPES,
)
from platewise.utils.errors import ConflictError, InvalidRequestError, NotFoundError
from platewise.utils.time_utils import to_db, utcnow

logger = logging.getLogger(__name__)

WORKFLOW_ID_RE = re.compile(WORKFLOW_ID_PATTERN)


@dataclass
class ResolvedWorkflow:
    type: str
    status: WorkflowStatus
    payload: dict[str, Any]
    expires_at: datetime


def _log_workflow_event(event: str, **fields: Any) -> None:
    details = " ".join(f"{k}={v}" for k, v in fields.items() if v is not None)
    logger.info(f"{event} {details}".rstrip())


def validate_workflow_id(workflow_id: str) -> None:
    """Reject malformed ids before any store access."""
    if not isinstance(workflow_id, str) or not WORKFLOW_ID_RE.fullmatch(workflow_id):
        _log_workflow_event("workflow_invalid_id", provided_id=repr(workflow_id)[:64])
        raise InvalidRequestError("Invalid workflow ID format", "INVALID_WORKFLOW_ID")


def validate_workflow_type(workflow_type: str) -> None:
    if workflow_type not in WORKFLOW_TYPES:
        raise InvalidRequestError(
            f"Invalid workflow type. Allowed: {', '.join(WORKFLOW_TYPES)}",
            "INVALID_WORKFLOW_TYPE",
        )


def validate_ttl(hours: int) -> None:
    if not MIN_TTL_HOURS <= hours <= MAX_TTL_HOURS:
        raise InvalidRequestError(
            f"TTL must be between {MIN_TTL_HOURS} and {MAX_TTL_HOURS} hours", "INVALID_TTL"
        )


def validate_payload(workflow_type: str, payload: dict[str, Any] | None) -> dict[str, Any]:
    """Check the payload's bounds for its type and return the stored form."""
    model = WORKFLOW_PAYLOADS[workflow_type]
    try:
        validated = model.model_validate(payload or {})
    except ValidationError as e:
        raise InvalidRequestError(format_validation_error(e, "payload."), "INVALID_PAYLOAD") from e
    return validated.model_dump(by_alias=True, exclude_none=True)


def generate_workflow_id() -> str:
    """Time-sortable workflow id (prefixed ULID)."""
    return f"{WORKFLOW_ID_PREFIX}{ULID()}"


def effective_status(workflow: Workflow, now: datetime) -> WorkflowStatus:
    """Status as seen at now. EXPIRED is derived, never stored."""
    if workflow.status == WorkflowStatus.COMPLETED:
        return WorkflowStatus.COMPLETED
    if now > workflow.expires_at:
        return WorkflowStatus.EXPIRED
    return WorkflowStatus.ACTIVE


async def create_workflow(
    repo: Repository,
    workflow_type: str,
    payload: dict[str, Any] | None = None,
    expires_in_hours: int = DEFAULT_TTL_HOURS,
    campaign_id: str | None = None,
    max_resolves: int | None = None,
    user_id: str | None = None,
    link_base_url: str = "https://platewise.app",
    now: datetime | None = None,
) -> tuple[str, str]:
    """Create an ACTIVE workflow with a fixed expiry.

    Returns:
        (workflow id, deep link URL)
    """
    validate_workflow_type(workflow_type)
    validate_ttl(expires_in_hours)
    if max_resolves is not None and max_resolves < 1:
        raise InvalidRequestError("maxResolves must be positive", "INVALID_MAX_RESOLVES")
    stored_payload = validate_payload(workflow_type, payload)

    if now is None:
        now = utcnow()
    workflow = Workflow(
        id=generate_workflow_id(),
        type=workflow_type,
        status=WorkflowStatus.ACTIVE,
        payload=stored_payload,
        user_id=user_id,
        campaign_id=campaign_id,
        created_at=now,
        expires_at=now + timedelta(hours=expires_in_hours),
        max_resolves=max_resolves,
    )
    await repo.create_workflow(workflow)

    deep_link_url = f"{link_base_url.rstrip('/')}/wf/{workflow.id}"
    _log_workflow_event(
        "workflow_created",
        workflow_id=workflow.id,
        type=workflow_type,
        campaign_id=campaign_id,
        expires_at=to_db(workflow.expires_at),
    )
    return workflow.id, deep_link_url


async def resolve_workflow(
    repo: Repository, workflow_id: str, now: datetime | None = None
) -> ResolvedWorkflow:
    """Look up a workflow and count the resolve.

    The counter is bumped whatever the effective status is; persisted
    status is never touched here.

    Raises:
        InvalidRequestError: malformed id
        NotFoundError: unknown id
    """
    validate_workflow_id(workflow_id)
    if now is None:
        now = utcnow()

    workflow = await repo.get_workflow(workflow_id)
    if workflow is None:
        raise NotFoundError("Workflow not found", "WORKFLOW_NOT_FOUND")

    status = effective_status(workflow, now)
    await repo.record_workflow_resolve(workflow_id, now)

    if status == WorkflowStatus.EXPIRED:
        _log_workflow_event(
            "workflow_expired_access", workflow_id=workflow_id, expires_at=to_db(workflow.expires_at)
        )
    else:
        _log_workflow_event(
            "workflow_resolved",
            workflow_id=workflow_id,
            status=status.value,
            resolve_count=workflow.resolve_count + 1,
        )

    return ResolvedWorkflow(
        type=workflow.type,
        status=status,
        payload=workflow.payload,
        expires_at=workflow.expires_at,
    )


async def complete_workflow(
    repo: Repository, workflow_id: str, now: datetime | None = None
) -> WorkflowStatus:
    """Move an ACTIVE workflow to COMPLETED.

    Already COMPLETED is a successful no-op. EXPIRED is the one forbidden
    transition.

    Raises:
        InvalidRequestError: malformed id
        NotFoundError: unknown id
        ConflictError: the workflow has expired
    """
    validate_workflow_id(workflow_id)

    async def apply(conn: aiosqlite.Connection) -> None:
        current = now or utcnow()
        workflow = await repo.get_workflow(workflow_id, conn)
        if workflow is None:
            raise NotFoundError("Workflow not found", "WORKFLOW_NOT_FOUND")

        status = effective_status(workflow, current)
        if status == WorkflowStatus.COMPLETED:
            _log_workflow_event(
                "workflow_completed",
                workflow_id=workflow_id,
                completed_at=to_db(workflow.completed_at) if workflow.completed_at else "unknown",
                repeat=True,
            )
            return

        if status == WorkflowStatus.EXPIRED:
            _log_workflow_event(
                "workflow_illegal_transition", workflow_id=workflow_id, current_status="EXPIRED"
            )
            raise ConflictError("Cannot complete expired workflow", "WORKFLOW_EXPIRED")

        await repo.mark_workflow_completed(workflow_id, current, conn)
        _log_workflow_event("workflow_completed", workflow_id=workflow_id, completed_at=to_db(current))

    await repo.run_in_transaction(apply)
    return WorkflowStatus.COMPLETED
