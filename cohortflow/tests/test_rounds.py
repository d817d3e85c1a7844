"""Tests for the round lifecycle controller."""
from __future__ import annotations

from datetime import datetime

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker

from cohortflow.config import Settings
from cohortflow.db import seed_defaults
from cohortflow.models import Base, Participant, ParticipantRoundStatus, Round
from cohortflow.rounds import (
    REOPEN_NOT_LATEST,
    activate_round,
    can_reopen,
    complete_round,
    most_recently_completed,
    next_round_name,
    reopen_round,
    round_completion_check,
    set_participant_status,
)

T1 = datetime(2026, 3, 1, 12, 0)
T2 = datetime(2026, 5, 1, 12, 0)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def engine():
    eng = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def session(engine):
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    sess = factory()
    seed_defaults(sess, Settings())
    try:
        yield sess
    finally:
        sess.close()


def _round(session: Session, name: str) -> Round:
    return session.execute(select(Round).where(Round.name == name)).scalars().one()


def _startup(session: Session, name: str) -> Participant:
    p = Participant(participant_type="startup", name=name, email=f"{name.lower()}@example.com")
    session.add(p)
    session.flush()
    return p


def _set_round(session: Session, name: str, status: str, started=None, completed=None) -> Round:
    rnd = _round(session, name)
    rnd.status = status
    rnd.started_at = started
    rnd.completed_at = completed
    session.commit()
    return rnd


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


class TestPureHelpers:
    def test_next_round_name(self):
        assert next_round_name("screening") == "pitching"
        assert next_round_name("pitching") is None
        assert next_round_name("finals") is None

    def test_most_recently_completed_picks_latest_timestamp(self):
        rounds = [
            Round(name="screening", status="completed", completed_at=T1),
            Round(name="pitching", status="completed", completed_at=T2),
        ]
        assert most_recently_completed(rounds).name == "pitching"

    def test_most_recently_completed_ignores_active_rounds(self):
        rounds = [
            Round(name="screening", status="completed", completed_at=T1),
            Round(name="pitching", status="active", completed_at=None),
        ]
        assert most_recently_completed(rounds).name == "screening"
        assert most_recently_completed([]) is None

    def test_can_reopen_rejects_older_round(self):
        rounds = [
            Round(name="screening", status="completed", completed_at=T1),
            Round(name="pitching", status="completed", completed_at=T2),
        ]
        check = can_reopen("screening", rounds)
        assert not check.can_complete
        assert check.reason == REOPEN_NOT_LATEST
        assert can_reopen("pitching", rounds).can_complete

    def test_can_reopen_requires_completed(self):
        rounds = [Round(name="screening", status="active")]
        assert not can_reopen("screening", rounds).can_complete
        assert "Unknown round" in can_reopen("finals", rounds).reason


# ---------------------------------------------------------------------------
# Activate / complete
# ---------------------------------------------------------------------------


class TestActivateAndComplete:
    def test_seeded_rounds_are_pending(self, session):
        assert _round(session, "screening").status == "pending"
        assert _round(session, "pitching").status == "pending"

    def test_activate_pending_round(self, session):
        result = activate_round(session, "screening")
        assert result.ok
        assert result.round.status == "active"
        assert result.round.started_at is not None

    def test_activate_twice_is_rejected(self, session):
        activate_round(session, "screening")
        result = activate_round(session, "screening")
        assert not result.ok
        assert "only pending rounds" in result.reason

    def test_complete_screening_without_selection_is_rejected(self, session):
        _set_round(session, "screening", "active", started=T1)
        startup = _startup(session, "Acme")
        set_participant_status(session, startup.id, "screening", "rejected")
        session.commit()

        result = complete_round(session, "screening")

        assert not result.ok
        assert result.reason == "No startups selected for pitching round"
        session.expire_all()
        rnd = _round(session, "screening")
        assert rnd.status == "active"
        assert rnd.completed_at is None

    def test_complete_screening_with_selection(self, session):
        _set_round(session, "screening", "active", started=T1)
        startup = _startup(session, "Acme")
        set_participant_status(session, startup.id, "screening", "selected")
        session.commit()

        result = complete_round(session, "screening", now=T2)

        assert result.ok
        assert result.round.status == "completed"
        assert result.round.completed_at == T2
        # Completing does not activate the next round
        assert _round(session, "pitching").status == "pending"

    def test_selection_in_other_round_does_not_count(self, session):
        _set_round(session, "screening", "active", started=T1)
        startup = _startup(session, "Acme")
        set_participant_status(session, startup.id, "pitching", "selected")
        session.commit()
        assert not round_completion_check(session, "screening").can_complete

    def test_complete_pending_round_is_rejected(self, session):
        result = complete_round(session, "pitching")
        assert not result.ok
        assert "only active rounds" in result.reason

    def test_complete_pitching_has_no_extra_requirement(self, session):
        _set_round(session, "pitching", "active", started=T1)
        assert complete_round(session, "pitching").ok

    def test_unknown_round(self, session):
        assert complete_round(session, "finals").reason == "Unknown round: finals"


# ---------------------------------------------------------------------------
# Reopen
# ---------------------------------------------------------------------------


class TestReopen:
    def test_only_most_recently_completed_round_can_be_reopened(self, session):
        _set_round(session, "screening", "completed", started=T1, completed=T1)
        _set_round(session, "pitching", "completed", started=T1, completed=T2)

        rejected = reopen_round(session, "screening")
        assert not rejected.ok
        assert rejected.reason == REOPEN_NOT_LATEST
        session.expire_all()
        assert _round(session, "screening").status == "completed"

        result = reopen_round(session, "pitching")
        assert result.ok
        session.expire_all()
        pitching = _round(session, "pitching")
        assert pitching.status == "active"
        assert pitching.completed_at is None

    def test_reopen_active_round_is_rejected(self, session):
        _set_round(session, "screening", "active", started=T1)
        result = reopen_round(session, "screening")
        assert not result.ok
        assert "not completed" in result.reason

    def test_reopen_screening_cascades(self, session):
        _set_round(session, "screening", "completed", started=T1, completed=T1)
        _set_round(session, "pitching", "active", started=T2)
        a, b, c, d = (_startup(session, n) for n in ("A", "B", "C", "D"))
        set_participant_status(session, a.id, "screening", "selected")
        set_participant_status(session, b.id, "screening", "rejected")
        set_participant_status(session, c.id, "screening", "under_review")
        set_participant_status(session, d.id, "pitching", "selected")
        session.commit()

        result = reopen_round(session, "screening")

        assert result.ok
        session.expire_all()
        statuses = {
            (row.participant_id, row.round.name): row.status
            for row in session.execute(select(ParticipantRoundStatus)).scalars().all()
        }
        assert statuses[(a.id, "screening")] == "pending"
        assert statuses[(b.id, "screening")] == "pending"
        assert statuses[(c.id, "screening")] == "under_review"
        # Revert is platform-wide, not scoped to the reopened round
        assert statuses[(d.id, "pitching")] == "pending"

        screening = _round(session, "screening")
        pitching = _round(session, "pitching")
        assert screening.status == "active"
        assert screening.completed_at is None
        assert pitching.status == "pending"
        assert pitching.started_at is None

    def test_reopen_pitching_keeps_selections(self, session):
        _set_round(session, "pitching", "completed", started=T1, completed=T2)
        a = _startup(session, "A")
        set_participant_status(session, a.id, "screening", "selected")
        session.commit()

        assert reopen_round(session, "pitching").ok
        session.expire_all()
        row = session.execute(select(ParticipantRoundStatus)).scalars().one()
        assert row.status == "selected"


class TestParticipantStatus:
    def test_upsert_updates_existing_row(self, session):
        a = _startup(session, "A")
        set_participant_status(session, a.id, "screening", "under_review")
        set_participant_status(session, a.id, "screening", "selected")
        session.commit()
        rows = session.execute(select(ParticipantRoundStatus)).scalars().all()
        assert len(rows) == 1
        assert rows[0].status == "selected"

    def test_invalid_status(self, session):
        a = _startup(session, "A")
        with pytest.raises(ValueError, match="Invalid selection status"):
            set_participant_status(session, a.id, "screening", "winner")

    def test_unknown_participant(self, session):
        with pytest.raises(ValueError, match="not found"):
            set_participant_status(session, 999, "screening", "selected")
