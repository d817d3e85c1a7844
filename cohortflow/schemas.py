"""Pydantic request/response schemas for the cohortflow API."""
from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

ParticipantType = Literal["juror", "startup"]
SelectionStatus = Literal["pending", "selected", "rejected", "under_review"]


class RoundOut(BaseModel):
    id: int
    name: str
    status: str
    started_at: str | None = None
    completed_at: str | None = None


class RoundCheckOut(BaseModel):
    round: str
    can_complete: bool
    reason: str = ""
    selection_counts: dict[str, int] = {}


class ParticipantCreate(BaseModel):
    participant_type: ParticipantType
    name: str
    email: str
    organization: str = ""
    user_id: str | None = None

    @field_validator("email")
    @classmethod
    def email_must_look_valid(cls, v: str) -> str:
        v = v.strip()
        if "@" not in v:
            raise ValueError("email must contain '@'")
        return v


class ParticipantOut(BaseModel):
    id: int
    participant_type: str
    name: str
    email: str
    organization: str
    user_id: str | None = None
    round_statuses: dict[str, str] = {}


class RoundStatusUpdate(BaseModel):
    status: SelectionStatus


class WorkflowEventIn(BaseModel):
    participant_id: int
    participant_type: ParticipantType
    event_type: str
    event_data: dict[str, Any] = {}


class DispatchOut(BaseModel):
    attempt_id: int
    status: str
    communication_id: int | None = None
    duplicate: bool = False
    error: str | None = None


class WorkflowEventOut(BaseModel):
    workflow_id: int
    applied: bool
    current_stage: str
    stage_status: str
    attempt_id: int | None = None
    dispatch: DispatchOut | None = None
    reason: str = ""


class StageOut(BaseModel):
    stage: str
    title: str
    status: str


class WorkflowProgressOut(BaseModel):
    workflow_id: int | None = None
    participant_id: int
    participant_type: str
    current_stage: str | None = None
    stage_status: str | None = None
    stage_entered_at: str | None = None
    next_action_due: str | None = None
    stages: list[StageOut]
    percent_complete: float
    can_retry: bool


class RetryOut(BaseModel):
    attempt_id: int | None = None
    dispatch: DispatchOut | None = None


class SweepOut(BaseModel):
    examined: int
    sent: int
    duplicates: int
    failed: int
    skipped: int
    deferred: int = 0
    lost_claims: int
    errors: int
    attempt_ids: list[int] = []


class AttemptOut(BaseModel):
    id: int
    workflow_id: int
    stage: str
    attempt_number: int
    attempt_status: str = Field(description="pending, sent, failed, or skipped when the attempt ended without a send")
    scheduled_at: str | None = None
    attempted_at: str | None = None
    error_message: str | None = None
    communication_id: int | None = None


class MessageOut(BaseModel):
    id: int
    recipient_address: str
    recipient_type: str
    recipient_id: int | None = None
    template_category: str
    subject: str
    status: str
    content_hash: str
    error_message: str | None = None
    created_at: str | None = None
    sent_at: str | None = None
    delivered_at: str | None = None
    opened_at: str | None = None
    clicked_at: str | None = None
    bounced_at: str | None = None


class DeliveryWebhookData(BaseModel):
    email_id: str
    reason: str | None = None


class DeliveryWebhookIn(BaseModel):
    type: str
    created_at: str | None = None
    data: DeliveryWebhookData
