"""
Coaching lead endpoints.

Any user can ask to be matched with a coach (at most once per throttle
window). Listing and triaging leads is restricted to admin users.
"""

import logging
from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Query, status
from pydantic import BaseModel, Field

from ...core.coaching.models import (
    BestTime,
    CoachingLead,
    ContactMethod,
    LeadGoal,
    LeadStatus,
    WeightRange,
)
from ..dependencies import AdminUserId, CurrentUserId, LeadIntakeDep

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Request/Response Models
# ---------------------------------------------------------------------------

class SubmitLeadRequest(BaseModel):
    goal: LeadGoal = Field(description="What the user wants to achieve")
    weight_range: WeightRange = Field(description="How many pounds")
    contact_preference: list[ContactMethod] = Field(
        description="How the user would like to be contacted",
        min_length=1,
    )
    best_time: BestTime = Field(description="Best time of day to reach them")
    message: str | None = Field(None, description="Anything else", max_length=2000)


class UpdateLeadRequest(BaseModel):
    status: LeadStatus


class LeadResponse(BaseModel):
    lead_id: UUID
    user_id: str
    goal: LeadGoal
    weight_range: WeightRange
    contact_preference: list[ContactMethod]
    best_time: BestTime
    message: str | None = None
    status: LeadStatus
    created_at: datetime


class LeadListResponse(BaseModel):
    leads: list[LeadResponse]
    total: int


def lead_response(lead: CoachingLead) -> LeadResponse:
    return LeadResponse(
        lead_id=lead.id,
        user_id=lead.user_id,
        goal=lead.goal,
        weight_range=lead.weight_range,
        contact_preference=sorted(lead.contact_preference, key=lambda m: m.value),
        best_time=lead.best_time,
        message=lead.message,
        status=lead.status,
        created_at=lead.created_at,
    )


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post(
    "",
    response_model=LeadResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Ask to be matched with a coach",
    responses={429: {"description": "Already submitted within the last 24 hours"}},
)
async def submit_lead(
    request: SubmitLeadRequest,
    background_tasks: BackgroundTasks,
    user_id: CurrentUserId,
    intake: LeadIntakeDep,
) -> LeadResponse:
    lead = intake.submit_lead(
        user_id,
        goal=request.goal,
        weight_range=request.weight_range,
        contact_preference=request.contact_preference,
        best_time=request.best_time,
        message=request.message,
        notify=False,
    )

    # Built now: the directory lookup needs this request's connection
    notification = intake.build_notification(lead)
    if notification is not None:
        background_tasks.add_task(intake.send_notification, notification)

    return lead_response(lead)


@router.get(
    "",
    response_model=LeadListResponse,
    summary="List coaching leads",
    description="Admin only. Newest first.",
)
async def list_leads(
    admin_id: AdminUserId,
    intake: LeadIntakeDep,
    status_filter: LeadStatus | None = Query(None, alias="status"),
) -> LeadListResponse:
    leads = intake.list_leads(status_filter)
    return LeadListResponse(leads=[lead_response(lead) for lead in leads], total=len(leads))


@router.patch(
    "/{lead_id}",
    response_model=LeadResponse,
    summary="Update a lead's status",
    description="Admin only",
)
async def update_lead(
    lead_id: UUID,
    request: UpdateLeadRequest,
    admin_id: AdminUserId,
    intake: LeadIntakeDep,
) -> LeadResponse:
    lead = intake.update_lead_status(lead_id, request.status)
    logger.info(
        "Lead triaged",
        extra={"lead_id": str(lead_id), "admin_id": admin_id}
    )
    return lead_response(lead)
