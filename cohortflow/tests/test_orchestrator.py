"""Tests for the communication workflow orchestrator."""
from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy import create_engine, event, func, select, update
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from cohortflow.config import Settings
from cohortflow.db import seed_defaults
from cohortflow.delivery import DeliveryError, DeliveryReceipt
from cohortflow.dispatch import Dispatcher
from cohortflow.models import (
    Base, CommunicationAttempt, CommunicationWorkflow, EmailCommunication, Participant,
    WorkflowTriggerRule,
)
from cohortflow.orchestrator import Orchestrator, WorkflowConflictError
from cohortflow.scoring import CompatibilityScorer, LLMCallError
from cohortflow.stages import StageTransition, load_transition_table
from cohortflow.utils import utcnow


class FakeProvider:
    def __init__(self, fail_times: int = 0):
        self.calls: list[tuple[str, str, str]] = []
        self.fail_times = fail_times

    async def send(self, to, subject, html):
        self.calls.append((to, subject, html))
        if len(self.calls) <= self.fail_times:
            raise DeliveryError("provider unavailable")
        return DeliveryReceipt(id=f"msg-{len(self.calls)}")


class FakeScorer:
    async def score(self, participant, event_data):
        return {"compatibility_score": 7.5, "compatibility_reasoning": "Strong sector overlap"}


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def engine():
    """Shared in-memory database so a second session sees the same rows."""
    eng = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def session(factory):
    sess = factory()
    seed_defaults(sess, Settings())
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def provider():
    return FakeProvider()


@pytest.fixture()
def orchestrator(provider):
    settings = Settings()
    return Orchestrator(Dispatcher(provider, settings=settings), scorer=FakeScorer(), settings=settings)


def _participant(session, ptype="juror", name="Dana Juror", email="dana@example.com"):
    p = Participant(participant_type=ptype, name=name, email=email, organization="Acme Ventures")
    session.add(p)
    session.commit()
    return p


def _attempts(session, workflow_id):
    return session.execute(
        select(CommunicationAttempt)
        .where(CommunicationAttempt.workflow_id == workflow_id)
        .order_by(CommunicationAttempt.id)
        .execution_options(populate_existing=True)
    ).scalars().all()


def _message_count(session):
    return session.execute(select(func.count(EmailCommunication.id))).scalar()


# ---------------------------------------------------------------------------
# Workflow creation
# ---------------------------------------------------------------------------


class TestEnsureWorkflow:
    def test_creates_at_first_stage(self, session, orchestrator):
        juror = _participant(session)
        wf = orchestrator.ensure_workflow(session, juror.id, "juror")
        assert wf.current_stage == "juror_onboarding"
        assert wf.stage_status == "pending"
        assert wf.version == 0

    def test_is_unique_per_participant(self, session, orchestrator):
        juror = _participant(session)
        first = orchestrator.ensure_workflow(session, juror.id, "juror")
        second = orchestrator.ensure_workflow(session, juror.id, "juror")
        assert first.id == second.id
        assert session.execute(select(func.count(CommunicationWorkflow.id))).scalar() == 1

    def test_startup_starts_at_screening_results(self, session, orchestrator):
        startup = _participant(session, "startup", "Rocket Inc", "hello@rocket.io")
        wf = orchestrator.ensure_workflow(session, startup.id, "startup")
        assert wf.current_stage == "screening_results"

    def test_unknown_participant_type(self, session, orchestrator):
        with pytest.raises(ValueError, match="Unknown participant type"):
            orchestrator.ensure_workflow(session, 1, "mentor")


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class TestHandleEvent:
    @pytest.mark.asyncio
    async def test_assignments_created_dispatches_once(self, session, orchestrator, provider):
        juror = _participant(session)

        result = await orchestrator.handle_event(
            session, juror.id, "juror", "assignments_created", {"startup_names": ["Rocket"]},
        )

        assert result.applied
        assert result.current_stage == "assignment_notification"
        assert result.stage_status == "pending"
        assert result.dispatch is not None
        assert result.dispatch.status == "sent"
        assert len(provider.calls) == 1
        to, subject, body = provider.calls[0]
        assert to == "dana@example.com"
        assert subject == "New startups assigned for evaluation"
        assert "Dear Dana Juror" in body

        attempts = _attempts(session, result.workflow_id)
        assert [a.attempt_status for a in attempts] == ["sent"]
        assert attempts[0].stage == "assignment_notification"
        msg = session.get(EmailCommunication, attempts[0].communication_id)
        assert msg.status == "sent"
        assert msg.provider_message_id == "msg-1"
        assert _message_count(session) == 1

    @pytest.mark.asyncio
    async def test_stage_data_is_merged_with_score(self, session, orchestrator):
        juror = _participant(session)
        await orchestrator.handle_event(session, juror.id, "juror", "juror_created", {"cohort": "2026"})
        await orchestrator.handle_event(session, juror.id, "juror", "assignments_created", {"batch": 3})

        wf = orchestrator.get_workflow(session, juror.id, "juror")
        assert wf.stage_data["cohort"] == "2026"
        assert wf.stage_data["batch"] == 3
        assert wf.stage_data["compatibility_score"] == 7.5

    @pytest.mark.asyncio
    async def test_scorer_failure_degrades_to_none(self, session, provider):
        settings = Settings()
        client = MagicMock()
        client.call = AsyncMock(side_effect=LLMCallError("no credentials"))
        orch = Orchestrator(
            Dispatcher(provider, settings=settings), scorer=CompatibilityScorer(client), settings=settings,
        )
        juror = _participant(session)

        result = await orch.handle_event(session, juror.id, "juror", "assignments_created")

        assert result.applied
        assert result.dispatch.status == "sent"
        wf = orch.get_workflow(session, juror.id, "juror")
        assert wf.stage_data["compatibility_score"] is None

    @pytest.mark.asyncio
    async def test_scorer_non_object_reply_does_not_block_transition(self, session, provider):
        settings = Settings()
        client = MagicMock()
        client.call = AsyncMock(return_value=[7])
        orch = Orchestrator(
            Dispatcher(provider, settings=settings), scorer=CompatibilityScorer(client), settings=settings,
        )
        juror = _participant(session)

        result = await orch.handle_event(session, juror.id, "juror", "assignments_created")

        assert result.applied
        assert result.current_stage == "assignment_notification"
        assert result.dispatch.status == "sent"
        wf = orch.get_workflow(session, juror.id, "juror")
        assert wf.stage_data["compatibility_score"] is None

    @pytest.mark.asyncio
    async def test_unknown_event_is_noop(self, session, orchestrator, provider):
        juror = _participant(session)
        result = await orchestrator.handle_event(session, juror.id, "juror", "coffee_break")
        assert not result.applied
        assert result.current_stage == "juror_onboarding"
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_startup_ignores_juror_only_stage(self, session, orchestrator, provider):
        startup = _participant(session, "startup", "Rocket Inc", "hello@rocket.io")
        result = await orchestrator.handle_event(session, startup.id, "startup", "assignments_created")
        assert not result.applied
        assert result.current_stage == "screening_results"
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_stage_never_moves_backwards(self, session, orchestrator, provider):
        juror = _participant(session)
        await orchestrator.handle_event(session, juror.id, "juror", "evaluation_overdue")
        calls = len(provider.calls)

        result = await orchestrator.handle_event(session, juror.id, "juror", "assignments_created")

        assert not result.applied
        assert result.current_stage == "evaluation_reminders"
        assert len(provider.calls) == calls

    @pytest.mark.asyncio
    async def test_screening_reopened_may_regress(self, session, orchestrator, provider):
        juror = _participant(session)
        await orchestrator.handle_event(session, juror.id, "juror", "screening_completed")

        result = await orchestrator.handle_event(session, juror.id, "juror", "screening_reopened")

        assert result.applied
        assert result.current_stage == "assignment_notification"
        assert result.attempt_id is None
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_non_dispatching_transition_creates_no_attempt(self, session, orchestrator):
        juror = _participant(session)
        result = await orchestrator.handle_event(session, juror.id, "juror", "juror_signup_completed")
        assert result.applied
        assert result.attempt_id is None
        assert _attempts(session, result.workflow_id) == []

    @pytest.mark.asyncio
    async def test_version_increments_per_transition(self, session, orchestrator):
        juror = _participant(session)
        await orchestrator.handle_event(session, juror.id, "juror", "juror_signup_completed")
        await orchestrator.handle_event(session, juror.id, "juror", "screening_completed")
        wf = orchestrator.get_workflow(session, juror.id, "juror")
        assert wf.version == 2

    @pytest.mark.asyncio
    async def test_delayed_rule_leaves_attempt_for_sweep(self, session, orchestrator, provider):
        startup = _participant(session, "startup", "Rocket Inc", "hello@rocket.io")
        before = utcnow()

        result = await orchestrator.handle_event(session, startup.id, "startup", "pitch_not_scheduled")

        assert result.applied
        assert result.current_stage == "pitch_reminders"
        assert result.dispatch is None
        assert provider.calls == []
        attempt = session.get(CommunicationAttempt, result.attempt_id)
        assert attempt.attempt_status == "pending"
        assert attempt.scheduled_at >= before + timedelta(hours=24)

        report = await orchestrator.sweep(session, now=utcnow() + timedelta(hours=25))
        assert report.sent == 1
        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_stage_without_rule_is_skipped(self, session, provider):
        settings = Settings()
        transitions = load_transition_table(settings)
        transitions["results_published"] = StageTransition("screening_results", should_dispatch=True)
        orch = Orchestrator(Dispatcher(provider, settings=settings), transitions=transitions, settings=settings)
        startup = _participant(session, "startup", "Rocket Inc", "hello@rocket.io")

        result = await orch.handle_event(session, startup.id, "startup", "results_published")

        assert result.dispatch.status == "skipped"
        assert result.stage_status == "pending"
        assert provider.calls == []


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------


class TestRetry:
    @pytest.mark.asyncio
    async def test_failed_send_then_retry(self, session):
        provider = FakeProvider(fail_times=1)
        settings = Settings()
        orch = Orchestrator(Dispatcher(provider, settings=settings), settings=settings)
        juror = _participant(session)

        result = await orch.handle_event(session, juror.id, "juror", "juror_created")

        assert result.dispatch.status == "failed"
        assert result.stage_status == "failed"
        progress = orch.workflow_progress(session, juror.id, "juror")
        assert progress["can_retry"]

        retry = await orch.retry_communication(session, result.workflow_id)

        assert retry.ok
        assert retry.dispatch.status == "sent"
        assert not retry.dispatch.duplicate
        attempts = _attempts(session, result.workflow_id)
        assert [(a.attempt_number, a.attempt_status) for a in attempts] == [(1, "failed"), (2, "sent")]
        wf = orch.get_workflow(session, juror.id, "juror")
        assert wf.stage_status == "pending"
        assert len(provider.calls) == 2

        statuses = sorted(m.status for m in session.execute(select(EmailCommunication)).scalars())
        assert statuses == ["failed", "sent"]

    @pytest.mark.asyncio
    async def test_retry_requires_failed_stage(self, session, orchestrator):
        juror = _participant(session)
        result = await orchestrator.handle_event(session, juror.id, "juror", "juror_created")
        retry = await orchestrator.retry_communication(session, result.workflow_id)
        assert not retry.ok
        assert "Only failed stages" in retry.reason

    @pytest.mark.asyncio
    async def test_retry_unknown_workflow(self, session, orchestrator):
        retry = await orchestrator.retry_communication(session, 404)
        assert not retry.ok
        assert "not found" in retry.reason

    @pytest.mark.asyncio
    async def test_retry_without_rule_releases_stage(self, session):
        provider = FakeProvider(fail_times=1)
        settings = Settings()
        orch = Orchestrator(Dispatcher(provider, settings=settings), settings=settings)
        juror = _participant(session)
        result = await orch.handle_event(session, juror.id, "juror", "juror_created")
        assert result.stage_status == "failed"

        session.execute(
            update(WorkflowTriggerRule)
            .where(WorkflowTriggerRule.stage == "juror_onboarding")
            .values(is_active=False)
        )
        session.commit()

        retry = await orch.retry_communication(session, result.workflow_id)

        assert retry.ok
        assert retry.dispatch.status == "skipped"
        wf = orch.get_workflow(session, juror.id, "juror")
        assert wf.stage_status == "pending"
        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_retry_error_hands_stage_back(self, session):
        provider = FakeProvider(fail_times=1)
        settings = Settings()
        orch = Orchestrator(Dispatcher(provider, settings=settings), settings=settings)
        juror = _participant(session)
        result = await orch.handle_event(session, juror.id, "juror", "juror_created")

        with patch.object(Dispatcher, "dispatch", AsyncMock(side_effect=RuntimeError("template store offline"))):
            with pytest.raises(RuntimeError, match="template store offline"):
                await orch.retry_communication(session, result.workflow_id)

        wf = orch.get_workflow(session, juror.id, "juror")
        assert wf.stage_status == "failed"
        assert orch.workflow_progress(session, juror.id, "juror")["can_retry"]
        attempts = _attempts(session, result.workflow_id)
        assert [a.attempt_status for a in attempts] == ["failed", "failed"]
        assert attempts[1].error_message == "template store offline"

        retry = await orch.retry_communication(session, result.workflow_id)

        assert retry.ok
        assert retry.dispatch.status == "sent"
        assert [a.attempt_number for a in _attempts(session, result.workflow_id)] == [1, 2, 3]


class TestProgress:
    @pytest.mark.asyncio
    async def test_derived_stage_statuses(self, session, orchestrator):
        juror = _participant(session)
        await orchestrator.handle_event(session, juror.id, "juror", "evaluation_overdue")

        progress = orchestrator.workflow_progress(session, juror.id, "juror")

        statuses = [s["status"] for s in progress["stages"]]
        assert statuses[:3] == ["completed", "completed", "pending"]
        assert progress["current_stage"] == "evaluation_reminders"
        assert progress["percent_complete"] == round(100 * 2 / 7, 1)
        assert not progress["can_retry"]

    def test_no_workflow(self, session, orchestrator):
        progress = orchestrator.workflow_progress(session, 99, "startup")
        assert progress["workflow_id"] is None
        assert progress["current_stage"] is None
        assert all(s["status"] == "pending" for s in progress["stages"])


# ---------------------------------------------------------------------------
# Concurrent updates
# ---------------------------------------------------------------------------


class InterferingScorer:
    """Edits the workflow from another session while the event is being scored."""

    def __init__(self, factory):
        self.factory = factory

    async def score(self, participant, event_data):
        other = self.factory()
        try:
            other.execute(
                update(CommunicationWorkflow)
                .where(CommunicationWorkflow.participant_id == participant.id)
                .values(stage_data_json='{"note": "edited elsewhere"}', version=CommunicationWorkflow.version + 1)
            )
            other.commit()
        finally:
            other.close()
        return {"compatibility_score": 6.0}


class TestConcurrentUpdates:
    @pytest.mark.asyncio
    async def test_lost_swap_reloads_and_retries(self, factory, session, provider):
        settings = Settings()
        orch = Orchestrator(
            Dispatcher(provider, settings=settings), scorer=InterferingScorer(factory), settings=settings,
        )
        juror = _participant(session)
        orch.ensure_workflow(session, juror.id, "juror")

        result = await orch.handle_event(session, juror.id, "juror", "assignments_created")

        assert result.applied
        assert result.current_stage == "assignment_notification"
        wf = orch.get_workflow(session, juror.id, "juror")
        # 0 -> 1 by the other session, 1 -> 2 by the event
        assert wf.version == 2
        assert wf.stage_data["note"] == "edited elsewhere"
        assert wf.stage_data["compatibility_score"] == 6.0
        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_repeated_conflicts_raise(self, engine, session, orchestrator, provider):
        juror = _participant(session)
        orchestrator.ensure_workflow(session, juror.id, "juror")
        swaps = []

        def bump_version_first(conn, cursor, statement, parameters, context, executemany):
            if statement.startswith("UPDATE communication_workflows") and "current_stage" in statement:
                swaps.append(statement)
                cursor.execute("UPDATE communication_workflows SET version = version + 1")

        event.listen(engine, "before_cursor_execute", bump_version_first)
        try:
            with pytest.raises(WorkflowConflictError, match="changed concurrently 3 times"):
                await orchestrator.handle_event(session, juror.id, "juror", "evaluation_overdue")
        finally:
            event.remove(engine, "before_cursor_execute", bump_version_first)

        assert len(swaps) == 3
        wf = orchestrator.get_workflow(session, juror.id, "juror")
        assert wf.current_stage == "juror_onboarding"
        assert _attempts(session, wf.id) == []
        assert provider.calls == []
