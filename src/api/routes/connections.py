"""
Client-facing connection endpoints.

A client asks a coach to connect, enters the invite code the coach's
approval produced, and controls what the coach may see. Either side
can disconnect.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, status
from pydantic import BaseModel, Field

from ...core.coaching.models import SharingSettings
from ..dependencies import (
    ConnectionManagerDep,
    CurrentUserId,
    ReminderChannelDep,
    SharingGateDep,
)
from .coaches import (
    ConnectionResponse,
    ReminderListResponse,
    ReminderResponse,
    connection_response,
    reminder_response,
)

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Request/Response Models
# ---------------------------------------------------------------------------

class ConnectionRequestBody(BaseModel):
    """Ask the coach registered under this email to connect."""
    coach_email: str = Field(
        description="Email on the coach's account",
        min_length=3,
        max_length=320,
    )


class VerifyCodeRequest(BaseModel):
    """
    Enter an invite code.

    connection_id is optional. Without it the code is matched against
    every connection of the caller that is waiting on a code.
    """
    code: str = Field(description="6-character invite code", min_length=1, max_length=32)
    connection_id: UUID | None = Field(None, description="Connection the code belongs to")


class MyConnectionResponse(BaseModel):
    connection: ConnectionResponse | None = Field(
        None,
        description="Most recent open connection, or null",
    )


class SharingSettingsResponse(BaseModel):
    share_meals_auto: bool = Field(description="Coach can read meals")
    share_weight_auto: bool = Field(description="Coach can read weigh-ins")


class UpdateSharingRequest(BaseModel):
    """Omitted toggles are left unchanged."""
    share_meals_auto: bool | None = None
    share_weight_auto: bool | None = None


def sharing_response(settings: SharingSettings) -> SharingSettingsResponse:
    return SharingSettingsResponse(
        share_meals_auto=settings.share_meals_auto,
        share_weight_auto=settings.share_weight_auto,
    )


# ---------------------------------------------------------------------------
# Connection lifecycle
# ---------------------------------------------------------------------------

@router.post(
    "/requests",
    response_model=ConnectionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Request a coach",
    responses={
        404: {"description": "No coach with that email"},
        409: {"description": "Already connected or requested"},
    },
)
async def request_connection(
    request: ConnectionRequestBody,
    user_id: CurrentUserId,
    manager: ConnectionManagerDep,
) -> ConnectionResponse:
    connection = manager.create_request(user_id, request.coach_email)
    return connection_response(connection)


@router.post(
    "/verify",
    response_model=ConnectionResponse,
    summary="Enter an invite code",
    description="Activates the connection. Codes are single-use and expire after 48 hours.",
    responses={400: {"description": "Invalid or expired code"}},
)
async def verify_code(
    request: VerifyCodeRequest,
    user_id: CurrentUserId,
    manager: ConnectionManagerDep,
) -> ConnectionResponse:
    if request.connection_id is not None:
        connection = manager.verify_code(request.connection_id, request.code, client_id=user_id)
    else:
        connection = manager.verify_client_code(user_id, request.code)
    return connection_response(connection)


@router.get(
    "/me",
    response_model=MyConnectionResponse,
    summary="Get my coach connection",
)
async def get_my_connection(
    user_id: CurrentUserId,
    manager: ConnectionManagerDep,
) -> MyConnectionResponse:
    connection = manager.get_client_connection(user_id)
    return MyConnectionResponse(
        connection=connection_response(connection) if connection else None,
    )


@router.post(
    "/{connection_id}/disconnect",
    response_model=ConnectionResponse,
    summary="Disconnect",
    description="Either the client or the coach can end an active connection",
)
async def disconnect(
    connection_id: UUID,
    user_id: CurrentUserId,
    manager: ConnectionManagerDep,
) -> ConnectionResponse:
    return connection_response(manager.disconnect(connection_id, user_id))


# ---------------------------------------------------------------------------
# Sharing
# ---------------------------------------------------------------------------

@router.get(
    "/me/sharing",
    response_model=SharingSettingsResponse,
    summary="Get my sharing settings",
    description="Both toggles start off",
)
async def get_sharing(
    user_id: CurrentUserId,
    gate: SharingGateDep,
) -> SharingSettingsResponse:
    return sharing_response(gate.get_sharing_settings(user_id))


@router.patch(
    "/me/sharing",
    response_model=SharingSettingsResponse,
    summary="Change my sharing settings",
)
async def update_sharing(
    request: UpdateSharingRequest,
    user_id: CurrentUserId,
    gate: SharingGateDep,
) -> SharingSettingsResponse:
    settings = gate.update_sharing_settings(
        user_id,
        share_meals_auto=request.share_meals_auto,
        share_weight_auto=request.share_weight_auto,
    )
    return sharing_response(settings)


# ---------------------------------------------------------------------------
# Reminders
# ---------------------------------------------------------------------------

@router.get(
    "/me/reminders",
    response_model=ReminderListResponse,
    summary="My pending reminders",
)
async def list_my_reminders(
    user_id: CurrentUserId,
    reminders: ReminderChannelDep,
) -> ReminderListResponse:
    pending = reminders.list_pending_reminders(user_id)
    return ReminderListResponse(
        reminders=[reminder_response(r) for r in pending],
        total=len(pending),
    )


@router.post(
    "/me/reminders/{reminder_id}/complete",
    response_model=ReminderResponse,
    summary="Mark a reminder done",
)
async def complete_reminder(
    reminder_id: UUID,
    user_id: CurrentUserId,
    reminders: ReminderChannelDep,
) -> ReminderResponse:
    return reminder_response(reminders.complete_reminder(reminder_id, user_id))
