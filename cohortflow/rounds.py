"""Round lifecycle: activate, complete and reopen program rounds.

States move ``pending -> active -> completed`` with one reverse edge,
``completed -> active`` (reopen). Validation failures come back as a
:class:`RoundTransition` carrying a human-readable reason and leave the
database untouched. Each successful transition commits exactly once.
"""
from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from cohortflow.models import ROUND_ORDER, SELECTION_STATUSES, Participant, ParticipantRoundStatus, Round
from cohortflow.utils import utcnow

log = logging.getLogger(__name__)

REOPEN_NOT_LATEST = "only the most recently completed round can be reopened"


@dataclass
class RoundTransition:
    ok: bool
    round: Round | None = None
    reason: str = ""


@dataclass
class CompletionCheck:
    can_complete: bool
    reason: str = ""


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def next_round_name(name: str) -> str | None:
    if name not in ROUND_ORDER:
        return None
    idx = ROUND_ORDER.index(name)
    return ROUND_ORDER[idx + 1] if idx + 1 < len(ROUND_ORDER) else None


def most_recently_completed(rounds: Iterable[Round]) -> Round | None:
    completed = [r for r in rounds if r.status == "completed" and r.completed_at is not None]
    if not completed:
        return None
    return max(completed, key=lambda r: r.completed_at)


def can_reopen(name: str, rounds: Iterable[Round]) -> CompletionCheck:
    rounds = list(rounds)
    target = next((r for r in rounds if r.name == name), None)
    if target is None:
        return CompletionCheck(False, f"Unknown round: {name}")
    if target.status != "completed":
        return CompletionCheck(False, f"Round {name} is not completed")
    latest = most_recently_completed(rounds)
    if latest is None or latest.name != name:
        return CompletionCheck(False, REOPEN_NOT_LATEST)
    return CompletionCheck(True)


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def get_round(session: Session, name: str) -> Round | None:
    return session.execute(select(Round).where(Round.name == name)).scalars().first()


def list_rounds(session: Session) -> list[Round]:
    rounds = session.execute(select(Round)).scalars().all()
    order = {name: i for i, name in enumerate(ROUND_ORDER)}
    return sorted(rounds, key=lambda r: order.get(r.name, len(order)))


def completed_rounds_latest_first(session: Session) -> list[Round]:
    return list(session.execute(
        select(Round)
        .where(Round.status == "completed", Round.completed_at.is_not(None))
        .order_by(Round.completed_at.desc())
    ).scalars().all())


def round_completion_check(session: Session, name: str) -> CompletionCheck:
    rnd = get_round(session, name)
    if rnd is None:
        return CompletionCheck(False, f"Unknown round: {name}")
    if name == "screening":
        selected = session.execute(
            select(func.count(ParticipantRoundStatus.id)).where(
                ParticipantRoundStatus.round_id == rnd.id,
                ParticipantRoundStatus.status == "selected",
            )
        ).scalar() or 0
        if selected == 0:
            return CompletionCheck(False, "No startups selected for pitching round")
        return CompletionCheck(True)
    if name == "pitching":
        return CompletionCheck(True)
    return CompletionCheck(False, f"No completion rule for round: {name}")


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


def _commit(session: Session) -> None:
    try:
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        raise


def activate_round(session: Session, name: str, now: datetime | None = None) -> RoundTransition:
    rnd = get_round(session, name)
    if rnd is None:
        return RoundTransition(False, reason=f"Unknown round: {name}")
    if rnd.status != "pending":
        return RoundTransition(False, rnd, f"Round {name} is {rnd.status}, only pending rounds can be activated")
    rnd.status = "active"
    rnd.started_at = now or utcnow()
    _commit(session)
    log.info("Round %s activated", name)
    return RoundTransition(True, rnd)


def complete_round(session: Session, name: str, now: datetime | None = None) -> RoundTransition:
    """Complete an active round after its completion predicate passes.

    The next round is deliberately left alone; rounds may overlap.
    """
    rnd = get_round(session, name)
    if rnd is None:
        return RoundTransition(False, reason=f"Unknown round: {name}")
    if rnd.status != "active":
        return RoundTransition(False, rnd, f"Round {name} is {rnd.status}, only active rounds can be completed")
    check = round_completion_check(session, name)
    if not check.can_complete:
        log.info("Round %s cannot be completed: %s", name, check.reason)
        return RoundTransition(False, rnd, check.reason)
    rnd.status = "completed"
    rnd.completed_at = now or utcnow()
    _commit(session)
    log.info("Round %s completed", name)
    return RoundTransition(True, rnd)


def reopen_round(session: Session, name: str) -> RoundTransition:
    """Reopen the most recently completed round.

    Reopening screening reverts every selected/rejected participant status to
    pending, platform-wide. The round after *name* is forced back to pending
    whatever its progress.
    """
    rnd = get_round(session, name)
    if rnd is None:
        return RoundTransition(False, reason=f"Unknown round: {name}")
    candidates = {r.id: r for r in (rnd, *completed_rounds_latest_first(session))}
    check = can_reopen(name, candidates.values())
    if not check.can_complete:
        log.info("Round %s cannot be reopened: %s", name, check.reason)
        return RoundTransition(False, rnd, check.reason)

    rnd.status = "active"
    rnd.completed_at = None
    if name == "screening":
        reverted = session.execute(
            update(ParticipantRoundStatus)
            .where(ParticipantRoundStatus.status.in_(("selected", "rejected")))
            .values(status="pending", updated_at=utcnow())
        ).rowcount
        log.info("Reopening screening reverted %d participant statuses", reverted)
    following = next_round_name(name)
    if following is not None:
        session.execute(
            update(Round)
            .where(Round.name == following)
            .values(status="pending", started_at=None, completed_at=None)
        )
    _commit(session)
    log.info("Round %s reopened", name)
    return RoundTransition(True, rnd)


def set_participant_status(
    session: Session, participant_id: int, round_name: str, status: str,
) -> ParticipantRoundStatus:
    """Record a selection decision for a participant in a round (caller must commit)."""
    if status not in SELECTION_STATUSES:
        raise ValueError(f"Invalid selection status: {status!r}")
    rnd = get_round(session, round_name)
    if rnd is None:
        raise ValueError(f"Unknown round: {round_name}")
    if session.get(Participant, participant_id) is None:
        raise ValueError(f"Participant {participant_id} not found")
    row = session.execute(
        select(ParticipantRoundStatus).where(
            ParticipantRoundStatus.participant_id == participant_id,
            ParticipantRoundStatus.round_id == rnd.id,
        )
    ).scalars().first()
    if row is None:
        row = ParticipantRoundStatus(participant_id=participant_id, round_id=rnd.id, status=status)
        session.add(row)
    else:
        row.status = status
    session.flush()
    return row
