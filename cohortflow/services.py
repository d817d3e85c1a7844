"""Shared business logic for the cohortflow API, MCP server and CLI."""
from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from cohortflow.config import Settings, get_settings
from cohortflow.delivery import DeliveryProvider, provider_from_settings
from cohortflow.dispatch import Dispatcher
from cohortflow.models import (
    PARTICIPANT_TYPES, CommunicationAttempt, CommunicationWorkflow, EmailCommunication,
    Participant, ParticipantRoundStatus, Round,
)
from cohortflow.orchestrator import Orchestrator
from cohortflow.rounds import RoundTransition
from cohortflow.scoring import CompatibilityScorer
from cohortflow.utils import isoformat

log = logging.getLogger(__name__)

PARTICIPANT_FIELDS = ("name", "email", "organization", "user_id")


def build_orchestrator(
    settings: Settings | None = None,
    provider: DeliveryProvider | None = None,
    scorer: CompatibilityScorer | None = None,
) -> Orchestrator:
    settings = settings or get_settings()
    dispatcher = Dispatcher(provider or provider_from_settings(settings), settings=settings)
    return Orchestrator(dispatcher, scorer=scorer or CompatibilityScorer(), settings=settings)


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def round_summary(rnd: Round) -> dict[str, Any]:
    return {
        "id": rnd.id, "name": rnd.name, "status": rnd.status,
        "started_at": isoformat(rnd.started_at), "completed_at": isoformat(rnd.completed_at),
    }


def transition_summary(result: RoundTransition) -> dict[str, Any]:
    return {
        "ok": result.ok, "reason": result.reason,
        "round": round_summary(result.round) if result.round else None,
    }


def participant_summary(p: Participant) -> dict[str, Any]:
    return {
        "id": p.id, "participant_type": p.participant_type, "name": p.name, "email": p.email,
        "organization": p.organization, "user_id": p.user_id,
        "round_statuses": {s.round.name: s.status for s in p.round_statuses},
    }


def workflow_summary(wf: CommunicationWorkflow) -> dict[str, Any]:
    return {
        "id": wf.id, "participant_id": wf.participant_id, "participant_type": wf.participant_type,
        "current_stage": wf.current_stage, "stage_status": wf.stage_status,
        "stage_data": wf.stage_data, "stage_entered_at": isoformat(wf.stage_entered_at),
        "next_action_due": isoformat(wf.next_action_due),
    }


def attempt_summary(a: CommunicationAttempt) -> dict[str, Any]:
    return {
        "id": a.id, "workflow_id": a.workflow_id, "stage": a.stage,
        "attempt_number": a.attempt_number, "attempt_status": a.attempt_status,
        "scheduled_at": isoformat(a.scheduled_at), "attempted_at": isoformat(a.attempted_at),
        "error_message": a.error_message, "communication_id": a.communication_id,
    }


def message_summary(m: EmailCommunication) -> dict[str, Any]:
    return {
        "id": m.id, "recipient_address": m.recipient_address, "recipient_type": m.recipient_type,
        "recipient_id": m.recipient_id, "template_category": m.template_category,
        "subject": m.subject, "status": m.status, "content_hash": m.content_hash,
        "error_message": m.error_message, "created_at": isoformat(m.created_at),
        "sent_at": isoformat(m.sent_at), "delivered_at": isoformat(m.delivered_at),
        "opened_at": isoformat(m.opened_at), "clicked_at": isoformat(m.clicked_at),
        "bounced_at": isoformat(m.bounced_at),
    }


# ---------------------------------------------------------------------------
# Queries and mutations
# ---------------------------------------------------------------------------


def create_participant(session: Session, participant_type: str, **fields: Any) -> Participant:
    """Create a participant (caller must commit)."""
    if participant_type not in PARTICIPANT_TYPES:
        raise ValueError(f"Invalid participant type: {participant_type!r}")
    participant = Participant(
        participant_type=participant_type,
        **{k: v for k, v in fields.items() if k in PARTICIPANT_FIELDS and v is not None},
    )
    session.add(participant)
    session.flush()
    return participant


def list_participants(session: Session, participant_type: str | None = None) -> list[dict[str, Any]]:
    query = select(Participant).order_by(Participant.id)
    if participant_type:
        query = query.where(Participant.participant_type == participant_type)
    return [participant_summary(p) for p in session.execute(query).scalars().all()]


def list_attempts(
    session: Session, workflow_id: int | None = None, status: str | None = None, limit: int = 100,
) -> list[dict[str, Any]]:
    query = select(CommunicationAttempt).order_by(CommunicationAttempt.id.desc()).limit(limit)
    if workflow_id is not None:
        query = query.where(CommunicationAttempt.workflow_id == workflow_id)
    if status:
        query = query.where(CommunicationAttempt.attempt_status == status)
    return [attempt_summary(a) for a in session.execute(query).scalars().all()]


def list_messages(
    session: Session, recipient_id: int | None = None, recipient_type: str | None = None, limit: int = 100,
) -> list[dict[str, Any]]:
    query = select(EmailCommunication).order_by(EmailCommunication.id.desc()).limit(limit)
    if recipient_id is not None:
        query = query.where(EmailCommunication.recipient_id == recipient_id)
    if recipient_type:
        query = query.where(EmailCommunication.recipient_type == recipient_type)
    return [message_summary(m) for m in session.execute(query).scalars().all()]


def selection_counts(session: Session, round_name: str) -> dict[str, int]:
    rows = session.execute(
        select(ParticipantRoundStatus.status)
        .join(Round, Round.id == ParticipantRoundStatus.round_id)
        .where(Round.name == round_name)
    ).scalars().all()
    counts: dict[str, int] = {}
    for status in rows:
        counts[status] = counts.get(status, 0) + 1
    return counts
