from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Boolean, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from cohortflow.utils import json_parse, utcnow

ROUND_ORDER = ("screening", "pitching")
ROUND_STATUSES = ("pending", "active", "completed")
PARTICIPANT_TYPES = ("juror", "startup")
SELECTION_STATUSES = ("pending", "selected", "rejected", "under_review")
STAGE_STATUSES = ("pending", "in_progress", "completed", "failed")
ATTEMPT_STATUSES = ("pending", "sent", "failed", "skipped")
MESSAGE_STATUSES = (
    "pending", "sent", "failed", "delivered", "opened", "clicked", "bounced", "complained",
)


class Base(DeclarativeBase):
    pass


class Round(Base):
    __tablename__ = "rounds"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)  # screening | pitching
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending | active | completed
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    statuses: Mapped[list[ParticipantRoundStatus]] = relationship(
        "ParticipantRoundStatus", back_populates="round",
    )


class Participant(Base):
    __tablename__ = "participants"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    participant_type: Mapped[str] = mapped_column(String(20), nullable=False)  # juror | startup
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    email: Mapped[str] = mapped_column(String(300), nullable=False)
    organization: Mapped[str] = mapped_column(String(300), default="")
    user_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    round_statuses: Mapped[list[ParticipantRoundStatus]] = relationship(
        "ParticipantRoundStatus", back_populates="participant", cascade="all, delete-orphan",
    )

    def template_fields(self) -> dict[str, str]:
        """Variables a message template may reference for this participant."""
        return {
            "participant_name": self.name,
            "participant_email": self.email,
            "participant_type": self.participant_type,
            "organization": self.organization,
        }


class ParticipantRoundStatus(Base):
    __tablename__ = "participant_round_statuses"
    __table_args__ = (UniqueConstraint("participant_id", "round_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    participant_id: Mapped[int] = mapped_column(Integer, ForeignKey("participants.id"), nullable=False)
    round_id: Mapped[int] = mapped_column(Integer, ForeignKey("rounds.id"), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending | selected | rejected | under_review
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    participant: Mapped[Participant] = relationship("Participant", back_populates="round_statuses")
    round: Mapped[Round] = relationship("Round", back_populates="statuses")


class CommunicationWorkflow(Base):
    __tablename__ = "communication_workflows"
    __table_args__ = (UniqueConstraint("participant_id", "participant_type"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    participant_id: Mapped[int] = mapped_column(Integer, nullable=False)
    participant_type: Mapped[str] = mapped_column(String(20), nullable=False)
    current_stage: Mapped[str] = mapped_column(String(50), nullable=False)
    stage_status: Mapped[str] = mapped_column(String(20), default="pending")  # pending | in_progress | completed | failed
    stage_data_json: Mapped[str] = mapped_column(Text, default="{}")
    stage_entered_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    next_action_due: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    # Bumped on every write; conditional updates match on it.
    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    attempts: Mapped[list[CommunicationAttempt]] = relationship(
        "CommunicationAttempt", back_populates="workflow", order_by="CommunicationAttempt.id",
    )

    @property
    def stage_data(self) -> dict:
        return json_parse(self.stage_data_json, {})


class WorkflowTriggerRule(Base):
    __tablename__ = "workflow_trigger_rules"
    __table_args__ = (UniqueConstraint("stage", "participant_type"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    stage: Mapped[str] = mapped_column(String(50), nullable=False)
    participant_type: Mapped[str] = mapped_column(String(20), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    delay_hours: Mapped[float] = mapped_column(Float, default=0)
    email_template_category: Mapped[str] = mapped_column(String(100), nullable=False)
    # None falls back to Settings.dedup_window_hours
    dedup_window_hours: Mapped[float | None] = mapped_column(Float, nullable=True)


class EmailTemplate(Base):
    __tablename__ = "email_templates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    name: Mapped[str] = mapped_column(String(200), default="")
    subject_template: Mapped[str] = mapped_column(Text, nullable=False)
    body_template: Mapped[str] = mapped_column(Text, nullable=False)
    variables_json: Mapped[str] = mapped_column(Text, default="[]")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class CommunicationAttempt(Base):
    __tablename__ = "communication_attempts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workflow_id: Mapped[int] = mapped_column(Integer, ForeignKey("communication_workflows.id"), nullable=False)
    stage: Mapped[str] = mapped_column(String(50), nullable=False)
    attempt_number: Mapped[int] = mapped_column(Integer, default=1)
    attempt_status: Mapped[str] = mapped_column(String(20), default="pending")  # pending | sent | failed | skipped
    scheduled_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    attempted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    communication_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("email_communications.id"), nullable=True,
    )

    workflow: Mapped[CommunicationWorkflow] = relationship("CommunicationWorkflow", back_populates="attempts")


class EmailCommunication(Base):
    __tablename__ = "email_communications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    template_category: Mapped[str] = mapped_column(String(100), default="")
    recipient_address: Mapped[str] = mapped_column(String(300), nullable=False)
    recipient_type: Mapped[str] = mapped_column(String(20), nullable=False)
    recipient_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    subject: Mapped[str] = mapped_column(Text, default="")
    body: Mapped[str] = mapped_column(Text, default="")
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), default="pending")
    provider_message_id: Mapped[str | None] = mapped_column(String(200), nullable=True, index=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    opened_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    clicked_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    bounced_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    events: Mapped[list[EmailDeliveryEvent]] = relationship(
        "EmailDeliveryEvent", back_populates="communication", cascade="all, delete-orphan",
    )


class DedupClaim(Base):
    """One row per (content hash, recipient): the insert-or-conflict dedup gate."""

    __tablename__ = "dedup_claims"
    __table_args__ = (UniqueConstraint("content_hash", "recipient_address"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    recipient_address: Mapped[str] = mapped_column(String(300), nullable=False)
    communication_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    claimed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class EmailDeliveryEvent(Base):
    __tablename__ = "email_delivery_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    communication_id: Mapped[int] = mapped_column(Integer, ForeignKey("email_communications.id"), nullable=False)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    provider_event_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    payload_json: Mapped[str] = mapped_column(Text, default="{}")

    communication: Mapped[EmailCommunication] = relationship("EmailCommunication", back_populates="events")
