"""Dispatch layer: render, fingerprint, deduplicate, deliver, record.

The dedup gate is an insert-or-detect-conflict on ``dedup_claims`` keyed by
(content hash, recipient). Whoever inserts (or takes over a claim older than
the window, or one whose send failed) owns the send. Everyone else either
records a duplicate of the delivered message or, while the owner's send is
still in flight, leaves the attempt pending for the sweep. The claim is
committed before the provider call so concurrent dispatchers see it.
"""
from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from cohortflow.config import Settings, get_settings
from cohortflow.db import insert_ignore
from cohortflow.delivery import DeliveryError, DeliveryProvider
from cohortflow.models import (
    CommunicationAttempt, CommunicationWorkflow, DedupClaim, EmailCommunication,
    EmailDeliveryEvent, Participant, WorkflowTriggerRule,
)
from cohortflow.templates import TemplateProvider, render
from cohortflow.utils import utcnow

log = logging.getLogger(__name__)

# Message statuses meaning the provider accepted the send.
ACCEPTED_STATUSES = ("sent", "delivered", "opened", "clicked", "bounced", "complained")


def content_hash(recipient: str, subject: str, body: str) -> str:
    return hashlib.sha256(f"{recipient}:{subject}:{body}".encode("utf-8")).hexdigest()


def active_rule(session: Session, stage: str, participant_type: str) -> WorkflowTriggerRule | None:
    return session.execute(
        select(WorkflowTriggerRule).where(
            WorkflowTriggerRule.stage == stage,
            WorkflowTriggerRule.participant_type == participant_type,
            WorkflowTriggerRule.is_active.is_(True),
        )
    ).scalars().first()


@dataclass
class DispatchOutcome:
    attempt_id: int
    status: str  # sent | failed | skipped | pending (deferred)
    communication_id: int | None = None
    duplicate: bool = False
    error: str | None = None


@dataclass
class _Claim:
    owned: bool
    claim_id: int
    communication_id: int | None = None
    in_flight: bool = False


class Dispatcher:
    def __init__(
        self,
        provider: DeliveryProvider,
        templates: TemplateProvider | None = None,
        settings: Settings | None = None,
    ):
        self.provider = provider
        self.templates = templates or TemplateProvider()
        self.settings = settings or get_settings()

    async def dispatch(self, session: Session, attempt: CommunicationAttempt) -> DispatchOutcome:
        """Execute one claimed attempt. Commits its own writes."""
        workflow = session.get(CommunicationWorkflow, attempt.workflow_id, populate_existing=True)
        if workflow is None:
            return self._finish(session, attempt, None, "failed", error="Workflow not found")

        stage = workflow.current_stage
        if attempt.stage != stage:
            log.info(
                "Attempt %s was scheduled for %s but workflow %s is now at %s",
                attempt.id, attempt.stage, workflow.id, stage,
            )
            return self._finish(
                session, attempt, workflow, "skipped", error=f"Workflow moved on to {stage}",
            )

        rule = active_rule(session, stage, workflow.participant_type)
        if rule is None:
            log.info(
                "No active trigger rule for stage %s and participant type %s",
                stage, workflow.participant_type,
            )
            return self._finish(session, attempt, workflow, "skipped", error="No active trigger rule")

        participant = session.get(Participant, workflow.participant_id)
        if participant is None:
            return self._finish(
                session, attempt, workflow, "failed",
                error=f"{workflow.participant_type} {workflow.participant_id} not found",
            )

        template = self.templates.get_template(session, rule.email_template_category)
        if template is None:
            return self._finish(
                session, attempt, workflow, "failed",
                error=f"No template for category {rule.email_template_category}",
            )

        variables = {**participant.template_fields(), **workflow.stage_data}
        subject = render(template.subject_template, variables)
        body = render(template.body_template, variables)
        recipient = participant.email
        chash = content_hash(recipient, subject, body)

        now = utcnow()
        window_hours = rule.dedup_window_hours
        if window_hours is None:
            window_hours = self.settings.dedup_window_hours
        claim = self._claim(session, chash, recipient, now, timedelta(hours=window_hours))
        if not claim.owned:
            if claim.in_flight:
                return self._defer(session, attempt, claim.communication_id)
            log.info("Duplicate message to %s suppressed (message %s)", recipient, claim.communication_id)
            outcome = self._finish(
                session, attempt, workflow, "sent", communication_id=claim.communication_id,
            )
            outcome.duplicate = True
            return outcome

        comm = EmailCommunication(
            template_category=rule.email_template_category,
            recipient_address=recipient,
            recipient_type=workflow.participant_type,
            recipient_id=participant.id,
            subject=subject,
            body=body,
            content_hash=chash,
            status="pending",
            created_at=now,
        )
        session.add(comm)
        session.flush()
        session.execute(
            update(DedupClaim).where(DedupClaim.id == claim.claim_id).values(communication_id=comm.id)
        )
        session.commit()

        try:
            receipt = await self.provider.send(recipient, subject, body)
        except Exception as exc:
            if not isinstance(exc, DeliveryError):
                log.exception("Unexpected delivery provider error for message %s", comm.id)
            error = str(exc) or exc.__class__.__name__
            comm.status = "failed"
            comm.error_message = error
            # Release the claim so a manual retry is not treated as a duplicate.
            session.execute(delete(DedupClaim).where(
                DedupClaim.id == claim.claim_id, DedupClaim.communication_id == comm.id,
            ))
            log.warning("Delivery of message %s to %s failed: %s", comm.id, recipient, error)
            return self._finish(session, attempt, workflow, "failed", communication_id=comm.id, error=error)

        sent_at = utcnow()
        comm.status = "sent"
        comm.sent_at = sent_at
        comm.provider_message_id = receipt.id
        session.add(EmailDeliveryEvent(
            communication_id=comm.id, event_type="sent", provider_event_id=receipt.id, occurred_at=sent_at,
        ))
        log.info("Message %s sent to %s (provider id %s)", comm.id, recipient, receipt.id)
        return self._finish(session, attempt, workflow, "sent", communication_id=comm.id)

    # ------------------------------------------------------------------

    def _claim(
        self, session: Session, chash: str, recipient: str, now: datetime, window: timedelta,
    ) -> _Claim:
        values = {"content_hash": chash, "recipient_address": recipient, "claimed_at": now}
        inserted = insert_ignore(session, DedupClaim, values, ["content_hash", "recipient_address"])
        claim = session.execute(
            select(DedupClaim)
            .where(DedupClaim.content_hash == chash, DedupClaim.recipient_address == recipient)
            .execution_options(populate_existing=True)
        ).scalars().one()
        if inserted:
            return _Claim(True, claim.id)
        if claim.claimed_at >= now - window:
            status = self._claimed_status(session, claim)
            if status in ACCEPTED_STATUSES:
                return _Claim(False, claim.id, claim.communication_id)
            if status != "failed":
                return _Claim(False, claim.id, claim.communication_id, in_flight=True)

        # Expired claim, or one whose send failed: take it over only if nobody else did first.
        taken = session.execute(
            update(DedupClaim)
            .where(DedupClaim.id == claim.id, DedupClaim.claimed_at == claim.claimed_at)
            .values(claimed_at=now, communication_id=None)
            .execution_options(synchronize_session=False)
        ).rowcount == 1
        if taken:
            return _Claim(True, claim.id)
        session.refresh(claim)
        return _Claim(False, claim.id, claim.communication_id, in_flight=True)

    @staticmethod
    def _claimed_status(session: Session, claim: DedupClaim) -> str | None:
        if claim.communication_id is None:
            return None
        return session.execute(
            select(EmailCommunication.status).where(EmailCommunication.id == claim.communication_id)
        ).scalar()

    def _defer(self, session: Session, attempt: CommunicationAttempt, communication_id: int | None) -> DispatchOutcome:
        """Leave the attempt pending and unclaimed while another send of the same message is in flight."""
        session.execute(
            update(CommunicationAttempt)
            .where(CommunicationAttempt.id == attempt.id, CommunicationAttempt.attempt_status == "pending")
            .values(claimed_at=None)
        )
        session.commit()
        session.refresh(attempt)
        log.info("Attempt %s deferred: identical message %s is still being sent", attempt.id, communication_id)
        return DispatchOutcome(attempt.id, "pending", communication_id)

    def _finish(
        self,
        session: Session,
        attempt: CommunicationAttempt,
        workflow: CommunicationWorkflow | None,
        status: str,
        communication_id: int | None = None,
        error: str | None = None,
    ) -> DispatchOutcome:
        """Move the attempt to a terminal status and mirror it onto the stage."""
        session.execute(
            update(CommunicationAttempt)
            .where(CommunicationAttempt.id == attempt.id, CommunicationAttempt.attempt_status == "pending")
            .values(
                attempt_status=status,
                attempted_at=utcnow(),
                error_message=error if status != "sent" else None,
                communication_id=communication_id,
            )
        )
        if workflow is not None:
            # failed surfaces on the stage; sent clears an earlier failure or a retry;
            # skipped only releases a retry that is in progress.
            if status == "failed":
                target, from_statuses = "failed", ("pending", "in_progress", "completed")
            elif status == "sent":
                target, from_statuses = "pending", ("failed", "in_progress")
            else:
                target, from_statuses = "pending", ("in_progress",)
            session.execute(
                update(CommunicationWorkflow)
                .where(
                    CommunicationWorkflow.id == workflow.id,
                    CommunicationWorkflow.current_stage == attempt.stage,
                    CommunicationWorkflow.stage_status.in_(from_statuses),
                )
                .values(stage_status=target, version=CommunicationWorkflow.version + 1)
                .execution_options(synchronize_session=False)
            )
        session.commit()
        session.refresh(attempt)
        if workflow is not None:
            session.refresh(workflow)
        return DispatchOutcome(attempt.id, status, communication_id, error=error if status != "sent" else None)
