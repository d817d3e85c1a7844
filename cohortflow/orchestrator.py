"""Communication workflow orchestrator.

Every entry point takes a fresh ``Session``; nothing is cached between
calls, so the same orchestrator can serve API requests, MCP tools and cron
sweeps. Coordination happens in the database:

- workflows are created with an insert-or-ignore on (participant_id, participant_type)
- stage updates are compare-and-swap on ``version``
- attempts are claimed with a conditional update before dispatch
"""
from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from cohortflow.config import Settings, get_settings
from cohortflow.db import insert_ignore
from cohortflow.dispatch import DispatchOutcome, Dispatcher, active_rule
from cohortflow.models import CommunicationAttempt, CommunicationWorkflow, Participant
from cohortflow.scoring import CompatibilityScorer
from cohortflow.stages import (
    StageTransition, first_stage, load_transition_table, stage_index, stage_progress, stage_sequence,
)
from cohortflow.utils import utcnow

log = logging.getLogger(__name__)


class WorkflowConflictError(Exception):
    """A workflow kept changing underneath a conditional update."""


@dataclass
class EventResult:
    workflow_id: int
    applied: bool
    current_stage: str
    stage_status: str
    attempt_id: int | None = None
    dispatch: DispatchOutcome | None = None
    reason: str = ""


@dataclass
class RetryResult:
    ok: bool
    reason: str = ""
    attempt_id: int | None = None
    dispatch: DispatchOutcome | None = None


@dataclass
class SweepReport:
    examined: int = 0
    sent: int = 0
    duplicates: int = 0
    failed: int = 0
    skipped: int = 0
    deferred: int = 0
    lost_claims: int = 0
    errors: int = 0
    attempt_ids: list[int] = field(default_factory=list)

    def record(self, outcome: DispatchOutcome) -> None:
        self.attempt_ids.append(outcome.attempt_id)
        if outcome.status == "sent":
            if outcome.duplicate:
                self.duplicates += 1
            else:
                self.sent += 1
        elif outcome.status == "failed":
            self.failed += 1
        elif outcome.status == "pending":
            self.deferred += 1
        else:
            self.skipped += 1


class Orchestrator:
    def __init__(
        self,
        dispatcher: Dispatcher,
        transitions: Mapping[str, StageTransition] | None = None,
        scorer: CompatibilityScorer | None = None,
        settings: Settings | None = None,
    ):
        self.dispatcher = dispatcher
        self.settings = settings or get_settings()
        self.transitions = dict(transitions) if transitions is not None else load_transition_table(self.settings)
        self.scorer = scorer

    # ------------------------------------------------------------------
    # Workflows
    # ------------------------------------------------------------------

    def get_workflow(
        self, session: Session, participant_id: int, participant_type: str,
    ) -> CommunicationWorkflow | None:
        return session.execute(
            select(CommunicationWorkflow).where(
                CommunicationWorkflow.participant_id == participant_id,
                CommunicationWorkflow.participant_type == participant_type,
            )
            .execution_options(populate_existing=True)
        ).scalars().first()

    def ensure_workflow(
        self, session: Session, participant_id: int, participant_type: str,
    ) -> CommunicationWorkflow:
        """Load the participant's workflow, creating it at the first stage if absent."""
        stage_sequence(participant_type)
        now = utcnow()
        created = insert_ignore(session, CommunicationWorkflow, {
            "participant_id": participant_id,
            "participant_type": participant_type,
            "current_stage": first_stage(participant_type),
            "stage_status": "pending",
            "stage_data_json": "{}",
            "stage_entered_at": now,
            "next_action_due": now,
            "version": 0,
            "created_at": now,
        }, ["participant_id", "participant_type"])
        if created:
            session.commit()
            log.info("Created workflow for %s %s", participant_type, participant_id)
        workflow = self.get_workflow(session, participant_id, participant_type)
        if workflow is None:
            raise RuntimeError(f"Workflow for {participant_type} {participant_id} vanished after upsert")
        return workflow

    def workflow_progress(self, session: Session, participant_id: int, participant_type: str) -> dict[str, Any]:
        workflow = self.get_workflow(session, participant_id, participant_type)
        progress = stage_progress(workflow, participant_type)
        progress["workflow_id"] = workflow.id if workflow else None
        progress["participant_id"] = participant_id
        return progress

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def handle_event(
        self,
        session: Session,
        participant_id: int,
        participant_type: str,
        event_type: str,
        event_data: dict[str, Any] | None = None,
    ) -> EventResult:
        event_data = dict(event_data or {})
        workflow = self.ensure_workflow(session, participant_id, participant_type)

        def _noop(reason: str) -> EventResult:
            log.info("Event %s for %s %s ignored: %s", event_type, participant_type, participant_id, reason)
            return EventResult(workflow.id, False, workflow.current_stage, workflow.stage_status, reason=reason)

        transition = self.transitions.get(event_type)
        if transition is None:
            return _noop("no stage transition for this event")
        target_idx = stage_index(participant_type, transition.next_stage)
        if target_idx < 0:
            return _noop(f"stage {transition.next_stage} is not part of the {participant_type} sequence")

        if transition.score_compatibility and self.scorer is not None:
            participant = session.get(Participant, participant_id)
            if participant is not None:
                event_data.update(await self.scorer.score(participant, event_data))

        for _ in range(self.settings.max_update_retries):
            if stage_index(participant_type, workflow.current_stage) > target_idx and not transition.allow_regression:
                return _noop(f"would move back from {workflow.current_stage} to {transition.next_stage}")

            now = utcnow()
            delay_hours = transition.delay_hours
            if transition.should_dispatch:
                rule = active_rule(session, transition.next_stage, participant_type)
                if rule is not None:
                    delay_hours += rule.delay_hours or 0
            due = now + timedelta(hours=delay_hours)
            merged = {**workflow.stage_data, **event_data}

            swapped = session.execute(
                update(CommunicationWorkflow)
                .where(CommunicationWorkflow.id == workflow.id, CommunicationWorkflow.version == workflow.version)
                .values(
                    current_stage=transition.next_stage,
                    stage_status="pending",
                    stage_data_json=json.dumps(merged, default=str),
                    stage_entered_at=now,
                    next_action_due=due,
                    version=workflow.version + 1,
                )
                .execution_options(synchronize_session=False)
            ).rowcount == 1
            if swapped:
                break
            session.rollback()
            session.refresh(workflow)
        else:
            raise WorkflowConflictError(
                f"Workflow {workflow.id} changed concurrently {self.settings.max_update_retries} times"
            )

        attempt = None
        if transition.should_dispatch:
            attempt = CommunicationAttempt(
                workflow_id=workflow.id,
                stage=transition.next_stage,
                attempt_number=1,
                attempt_status="pending",
                scheduled_at=due,
            )
            session.add(attempt)
        session.commit()
        session.refresh(workflow)
        log.info(
            "Workflow %s moved to %s on %s (dispatch=%s, delay=%sh)",
            workflow.id, workflow.current_stage, event_type, transition.should_dispatch, delay_hours,
        )

        outcome = None
        if attempt is not None and delay_hours == 0:
            outcome = await self._run_attempt(session, attempt.id, now)
            session.refresh(workflow)
        return EventResult(
            workflow.id, True, workflow.current_stage, workflow.stage_status,
            attempt_id=attempt.id if attempt else None, dispatch=outcome,
        )

    # ------------------------------------------------------------------
    # Attempts
    # ------------------------------------------------------------------

    def _claim_attempt(self, session: Session, attempt_id: int, now: datetime) -> bool:
        stale = now - timedelta(minutes=self.settings.claim_timeout_minutes)
        claimed = session.execute(
            update(CommunicationAttempt)
            .where(
                CommunicationAttempt.id == attempt_id,
                CommunicationAttempt.attempt_status == "pending",
                or_(CommunicationAttempt.claimed_at.is_(None), CommunicationAttempt.claimed_at < stale),
            )
            .values(claimed_at=now)
            .execution_options(synchronize_session=False)
        ).rowcount == 1
        session.commit()
        return claimed

    async def _run_attempt(self, session: Session, attempt_id: int, now: datetime) -> DispatchOutcome | None:
        if not self._claim_attempt(session, attempt_id, now):
            log.info("Attempt %s already claimed elsewhere", attempt_id)
            return None
        attempt = session.get(CommunicationAttempt, attempt_id, populate_existing=True)
        return await self.dispatcher.dispatch(session, attempt)

    async def sweep(self, session: Session, limit: int | None = None, now: datetime | None = None) -> SweepReport:
        """Dispatch up to *limit* due pending attempts, oldest first.

        A failure on one attempt is logged and counted; the rest of the batch
        still runs.
        """
        now = now or utcnow()
        limit = limit or self.settings.sweep_batch_size
        stale = now - timedelta(minutes=self.settings.claim_timeout_minutes)
        attempt_ids = session.execute(
            select(CommunicationAttempt.id)
            .where(
                CommunicationAttempt.attempt_status == "pending",
                CommunicationAttempt.scheduled_at <= now,
                or_(CommunicationAttempt.claimed_at.is_(None), CommunicationAttempt.claimed_at < stale),
            )
            .order_by(CommunicationAttempt.scheduled_at, CommunicationAttempt.id)
            .limit(limit)
        ).scalars().all()

        report = SweepReport(examined=len(attempt_ids))
        for attempt_id in attempt_ids:
            try:
                outcome = await self._run_attempt(session, attempt_id, now)
            except Exception:
                log.exception("Sweep failed for attempt %s", attempt_id)
                session.rollback()
                report.errors += 1
                continue
            if outcome is None:
                report.lost_claims += 1
            else:
                report.record(outcome)
        if attempt_ids:
            log.info(
                "Sweep processed %d attempts: %d sent, %d duplicates, %d failed, %d skipped, %d deferred, %d errors",
                report.examined, report.sent, report.duplicates, report.failed, report.skipped, report.deferred, report.errors,
            )
        return report

    async def retry_communication(self, session: Session, workflow_id: int) -> RetryResult:
        """Operator retry: a new attempt for a failed stage, dispatched immediately."""
        workflow = session.get(CommunicationWorkflow, workflow_id, populate_existing=True)
        if workflow is None:
            return RetryResult(False, f"Workflow {workflow_id} not found")
        if workflow.stage_status != "failed":
            return RetryResult(False, f"Only failed stages can be retried (stage is {workflow.stage_status})")

        last = session.execute(
            select(func.max(CommunicationAttempt.attempt_number)).where(
                CommunicationAttempt.workflow_id == workflow.id,
                CommunicationAttempt.stage == workflow.current_stage,
            )
        ).scalar() or 0
        marked = session.execute(
            update(CommunicationWorkflow)
            .where(
                CommunicationWorkflow.id == workflow.id,
                CommunicationWorkflow.version == workflow.version,
                CommunicationWorkflow.stage_status == "failed",
            )
            .values(stage_status="in_progress", version=workflow.version + 1)
            .execution_options(synchronize_session=False)
        ).rowcount == 1
        if not marked:
            session.rollback()
            return RetryResult(False, "Workflow changed while retrying; reload and try again")

        now = utcnow()
        attempt = CommunicationAttempt(
            workflow_id=workflow.id,
            stage=workflow.current_stage,
            attempt_number=last + 1,
            attempt_status="pending",
            scheduled_at=now,
        )
        session.add(attempt)
        session.commit()
        log.info("Retrying workflow %s stage %s (attempt %d)", workflow.id, attempt.stage, attempt.attempt_number)
        try:
            outcome = await self._run_attempt(session, attempt.id, now)
        except Exception as exc:
            session.rollback()
            self._abandon_retry(session, workflow.id, attempt.id, str(exc) or exc.__class__.__name__)
            raise
        return RetryResult(True, attempt_id=attempt.id, dispatch=outcome)

    def _abandon_retry(self, session: Session, workflow_id: int, attempt_id: int, error: str) -> None:
        """Fail the retry attempt and hand the stage back to the operator."""
        log.error("Retry of workflow %s failed before completing: %s", workflow_id, error)
        session.execute(
            update(CommunicationAttempt)
            .where(CommunicationAttempt.id == attempt_id, CommunicationAttempt.attempt_status == "pending")
            .values(attempt_status="failed", attempted_at=utcnow(), error_message=error)
            .execution_options(synchronize_session=False)
        )
        session.execute(
            update(CommunicationWorkflow)
            .where(CommunicationWorkflow.id == workflow_id, CommunicationWorkflow.stage_status == "in_progress")
            .values(stage_status="failed", version=CommunicationWorkflow.version + 1)
            .execution_options(synchronize_session=False)
        )
        session.commit()
