"""
Coach-facing API endpoints.

Everything under /coaches/me acts on the coach account owned by the
calling user. Covers the plan and capacity, incoming requests, invites,
and the gated reads of a connected client's meals and weights.

Invite codes are emailed after the response is sent (BackgroundTasks),
so a slow or failing mail relay never blocks or fails an approval.
"""

import logging
from datetime import datetime, timedelta, timezone
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Query, status
from pydantic import BaseModel, Field

from ...core.coaching.lifecycle import Approval
from ...core.coaching.models import (
    CapacitySnapshot,
    Coach,
    Connection,
    ConnectionStatus,
    MealRecord,
    ReminderKind,
    ReminderRequest,
    SubscriptionTier,
    WeightEntry,
    utc_now,
)
from ..dependencies import (
    ConnectionManagerDep,
    CurrentCoach,
    CurrentUserId,
    ReminderChannelDep,
    SharingGateDep,
)

logger = logging.getLogger(__name__)

router = APIRouter()

DEFAULT_HISTORY_DAYS = 30


# ---------------------------------------------------------------------------
# Request/Response Models
# ---------------------------------------------------------------------------

class RegisterCoachRequest(BaseModel):
    """Turn the calling user's profile into a coach account."""
    subscription_tier: SubscriptionTier = Field(
        SubscriptionTier.STARTER,
        description="Plan to start on",
    )


class UpdatePlanRequest(BaseModel):
    """Change plan and/or purchased overflow seats. Omitted fields are unchanged."""
    subscription_tier: SubscriptionTier | None = Field(None, description="New plan")
    extra_client_count: int | None = Field(
        None,
        description="Overflow seats on top of the plan",
        ge=0,
    )


class CoachResponse(BaseModel):
    """A coach account."""
    coach_id: UUID = Field(description="Coach identifier")
    owner_profile_id: str = Field(description="Profile that owns this account")
    subscription_tier: SubscriptionTier = Field(description="Current plan")
    extra_client_count: int = Field(description="Purchased overflow seats")
    created_at: datetime = Field(description="When the account was created")


class CapacityResponse(BaseModel):
    """Seat accounting for the coach."""
    subscription_tier: SubscriptionTier
    base_limit: int = Field(description="Seats included in the plan")
    extra_client_count: int = Field(description="Purchased overflow seats")
    total_capacity: int = Field(description="base_limit + extra_client_count")
    active_count: int = Field(description="Clients currently connected")
    remaining_seats: int = Field(description="Seats still free (never negative)")
    is_full: bool = Field(description="No seat left for another approval")
    is_over_capacity: bool = Field(description="More active clients than seats")
    requires_overflow: bool = Field(description="Plan seats used up, overflow in use")
    utilization: float = Field(description="Fraction of seats used, 0 to 1")


class ConnectionResponse(BaseModel):
    """A coach-client connection."""
    connection_id: UUID
    coach_id: UUID
    client_id: str
    status: ConnectionStatus
    initiated_by: str
    created_at: datetime
    connected_at: datetime | None = None
    disconnected_at: datetime | None = None


class ConnectionListResponse(BaseModel):
    connections: list[ConnectionResponse]
    total: int


class InviteClientRequest(BaseModel):
    """Invite a client by the email on their profile."""
    client_email: str = Field(description="Client's account email", min_length=3, max_length=320)


class ApprovalResponse(BaseModel):
    """
    Result of an approval or invite.

    The code is returned to the coach as well as emailed to the client,
    so it can be shared by other means if the email does not arrive.
    """
    connection: ConnectionResponse
    invite_code: str = Field(description="6-character code for the client")
    expires_at: datetime = Field(description="When the code stops working")


class MealResponse(BaseModel):
    meal_id: UUID
    logged_at: datetime
    name: str
    calories: float
    protein_g: float
    carbs_g: float
    fat_g: float


class MealListResponse(BaseModel):
    meals: list[MealResponse]
    total: int


class WeightResponse(BaseModel):
    entry_id: UUID
    recorded_at: datetime
    weight: float
    unit: str


class WeightListResponse(BaseModel):
    weights: list[WeightResponse]
    total: int


class ActivityResponse(BaseModel):
    """When the client last logged a meal. Null if hidden or never."""
    client_id: str
    last_meal_at: datetime | None = None


class SendReminderRequest(BaseModel):
    kind: ReminderKind = Field(description="What the client should log")
    message: str | None = Field(None, description="Optional note from the coach")


class ReminderResponse(BaseModel):
    reminder_id: UUID
    client_id: str
    kind: ReminderKind
    status: str
    message: str | None = None
    created_at: datetime
    completed_at: datetime | None = None


class ReminderListResponse(BaseModel):
    reminders: list[ReminderResponse]
    total: int


# ---------------------------------------------------------------------------
# Conversions
# ---------------------------------------------------------------------------

def coach_response(coach: Coach) -> CoachResponse:
    return CoachResponse(
        coach_id=coach.id,
        owner_profile_id=coach.owner_profile_id,
        subscription_tier=coach.subscription_tier,
        extra_client_count=coach.extra_client_count,
        created_at=coach.created_at,
    )


def capacity_response(snapshot: CapacitySnapshot) -> CapacityResponse:
    return CapacityResponse(
        subscription_tier=snapshot.tier,
        base_limit=snapshot.base_limit,
        extra_client_count=snapshot.extra_client_count,
        total_capacity=snapshot.total_capacity,
        active_count=snapshot.active_count,
        remaining_seats=snapshot.remaining_seats,
        is_full=snapshot.is_full,
        is_over_capacity=snapshot.is_over_capacity,
        requires_overflow=snapshot.requires_overflow,
        utilization=snapshot.utilization,
    )


def connection_response(connection: Connection) -> ConnectionResponse:
    return ConnectionResponse(
        connection_id=connection.id,
        coach_id=connection.coach_id,
        client_id=connection.client_id,
        status=connection.status,
        initiated_by=connection.initiated_by.value,
        created_at=connection.created_at,
        connected_at=connection.connected_at,
        disconnected_at=connection.disconnected_at,
    )


def approval_response(approval: Approval) -> ApprovalResponse:
    return ApprovalResponse(
        connection=connection_response(approval.connection),
        invite_code=approval.invite.code,
        expires_at=approval.invite.expires_at,
    )


def meal_response(meal: MealRecord) -> MealResponse:
    return MealResponse(
        meal_id=meal.id,
        logged_at=meal.logged_at,
        name=meal.name,
        calories=meal.calories,
        protein_g=meal.protein_g,
        carbs_g=meal.carbs_g,
        fat_g=meal.fat_g,
    )


def weight_response(entry: WeightEntry) -> WeightResponse:
    return WeightResponse(
        entry_id=entry.id,
        recorded_at=entry.recorded_at,
        weight=entry.weight,
        unit=entry.unit,
    )


def reminder_response(reminder: ReminderRequest) -> ReminderResponse:
    return ReminderResponse(
        reminder_id=reminder.id,
        client_id=reminder.client_id,
        kind=reminder.kind,
        status=reminder.status.value,
        message=reminder.message,
        created_at=reminder.created_at,
        completed_at=reminder.completed_at,
    )


def _history_range(
    start: datetime | None,
    end: datetime | None,
) -> tuple[datetime, datetime]:
    end = _as_utc(end) if end else utc_now()
    start = _as_utc(start) if start else end - timedelta(days=DEFAULT_HISTORY_DAYS)
    return start, end


def _as_utc(value: datetime) -> datetime:
    # Query strings without an offset are taken as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Account and plan
# ---------------------------------------------------------------------------

@router.post(
    "",
    response_model=CoachResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Become a coach",
    description="Create a coach account for the calling user's profile",
)
async def register_coach(
    request: RegisterCoachRequest,
    user_id: CurrentUserId,
    manager: ConnectionManagerDep,
) -> CoachResponse:
    coach = manager.register_coach(user_id, tier=request.subscription_tier)
    return coach_response(coach)


@router.get(
    "/me",
    response_model=CoachResponse,
    summary="Get my coach account",
)
async def get_my_coach(coach: CurrentCoach) -> CoachResponse:
    return coach_response(coach)


@router.patch(
    "/me/plan",
    response_model=CapacityResponse,
    summary="Change plan or overflow seats",
    description="Returns the capacity after the change",
)
async def update_plan(
    request: UpdatePlanRequest,
    coach: CurrentCoach,
    manager: ConnectionManagerDep,
) -> CapacityResponse:
    """
    Update the plan and/or overflow seats.

    Lowering capacity below the number of active clients is allowed.
    Nobody is disconnected; the coach is simply over capacity until
    seats are added back or clients leave.
    """
    if request.subscription_tier is not None:
        manager.change_tier(coach.id, request.subscription_tier)
    if request.extra_client_count is not None:
        manager.set_extra_clients(coach.id, request.extra_client_count)
    return capacity_response(manager.capacity(coach.id))


@router.get(
    "/me/capacity",
    response_model=CapacityResponse,
    summary="Get seat usage",
)
async def get_capacity(
    coach: CurrentCoach,
    manager: ConnectionManagerDep,
) -> CapacityResponse:
    return capacity_response(manager.capacity(coach.id))


# ---------------------------------------------------------------------------
# Clients and requests
# ---------------------------------------------------------------------------

@router.get(
    "/me/clients",
    response_model=ConnectionListResponse,
    summary="List my clients",
    description="Connections in any status unless filtered",
)
async def list_clients(
    coach: CurrentCoach,
    manager: ConnectionManagerDep,
    status_filter: list[ConnectionStatus] | None = Query(None, alias="status"),
) -> ConnectionListResponse:
    connections = manager.list_clients(coach.id, status_filter)
    return ConnectionListResponse(
        connections=[connection_response(c) for c in connections],
        total=len(connections),
    )


@router.get(
    "/me/requests",
    response_model=ConnectionListResponse,
    summary="List pending requests",
)
async def list_requests(
    coach: CurrentCoach,
    manager: ConnectionManagerDep,
) -> ConnectionListResponse:
    connections = manager.list_pending_requests(coach.id)
    return ConnectionListResponse(
        connections=[connection_response(c) for c in connections],
        total=len(connections),
    )


@router.post(
    "/me/invites",
    response_model=ApprovalResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Invite a client",
    description="Create an approved connection and email the client a code",
)
async def invite_client(
    request: InviteClientRequest,
    background_tasks: BackgroundTasks,
    coach: CurrentCoach,
    manager: ConnectionManagerDep,
) -> ApprovalResponse:
    approval = manager.invite_client(coach.id, request.client_email, notify=False)
    background_tasks.add_task(manager.deliver_code, approval.delivery)
    return approval_response(approval)


@router.post(
    "/me/requests/{connection_id}/approve",
    response_model=ApprovalResponse,
    summary="Approve a request",
    description="Issue an invite code. Approving again re-issues the code.",
    responses={409: {"description": "Wrong status or no free seats"}},
)
async def approve_request(
    connection_id: UUID,
    background_tasks: BackgroundTasks,
    coach: CurrentCoach,
    manager: ConnectionManagerDep,
) -> ApprovalResponse:
    approval = manager.approve(connection_id, coach_id=coach.id, notify=False)
    background_tasks.add_task(manager.deliver_code, approval.delivery)
    return approval_response(approval)


@router.post(
    "/me/requests/{connection_id}/decline",
    response_model=ConnectionResponse,
    summary="Decline a request",
)
async def decline_request(
    connection_id: UUID,
    coach: CurrentCoach,
    manager: ConnectionManagerDep,
) -> ConnectionResponse:
    return connection_response(manager.decline(connection_id, coach_id=coach.id))


# ---------------------------------------------------------------------------
# Gated client data
# ---------------------------------------------------------------------------

@router.get(
    "/me/clients/{client_id}/meals",
    response_model=MealListResponse,
    summary="Read a client's meals",
    description="Empty unless the connection is active and the client shares meals",
)
async def get_client_meals(
    client_id: str,
    coach: CurrentCoach,
    gate: SharingGateDep,
    start: datetime | None = Query(None, description="Range start (default: 30 days ago)"),
    end: datetime | None = Query(None, description="Range end (default: now)"),
) -> MealListResponse:
    start, end = _history_range(start, end)
    meals = gate.get_client_meals(coach.id, client_id, start, end)
    return MealListResponse(meals=[meal_response(m) for m in meals], total=len(meals))


@router.get(
    "/me/clients/{client_id}/weights",
    response_model=WeightListResponse,
    summary="Read a client's weigh-ins",
    description="Empty unless the connection is active and the client shares weight",
)
async def get_client_weights(
    client_id: str,
    coach: CurrentCoach,
    gate: SharingGateDep,
    start: datetime | None = Query(None, description="Range start (default: 30 days ago)"),
    end: datetime | None = Query(None, description="Range end (default: now)"),
) -> WeightListResponse:
    start, end = _history_range(start, end)
    entries = gate.get_client_weights(coach.id, client_id, start, end)
    return WeightListResponse(
        weights=[weight_response(w) for w in entries],
        total=len(entries),
    )


@router.get(
    "/me/clients/{client_id}/activity",
    response_model=ActivityResponse,
    summary="When did the client last log a meal",
)
async def get_client_activity(
    client_id: str,
    coach: CurrentCoach,
    gate: SharingGateDep,
) -> ActivityResponse:
    return ActivityResponse(
        client_id=client_id,
        last_meal_at=gate.get_client_last_activity(coach.id, client_id),
    )


# ---------------------------------------------------------------------------
# Reminders
# ---------------------------------------------------------------------------

@router.post(
    "/me/clients/{client_id}/reminders",
    response_model=ReminderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Remind a client to log",
)
async def send_reminder(
    client_id: str,
    request: SendReminderRequest,
    coach: CurrentCoach,
    reminders: ReminderChannelDep,
) -> ReminderResponse:
    reminder = reminders.send_reminder(
        coach.id,
        client_id,
        request.kind,
        message=request.message,
    )
    return reminder_response(reminder)


@router.get(
    "/me/clients/{client_id}/reminders",
    response_model=ReminderListResponse,
    summary="Reminders I sent this client",
)
async def list_sent_reminders(
    client_id: str,
    coach: CurrentCoach,
    reminders: ReminderChannelDep,
) -> ReminderListResponse:
    sent = reminders.list_sent_reminders(coach.id, client_id)
    return ReminderListResponse(
        reminders=[reminder_response(r) for r in sent],
        total=len(sent),
    )
