from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from functools import lru_cache
from typing import Generator

from fastapi import Depends, FastAPI, HTTPException, Query
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from cohortflow import rounds, services
from cohortflow.db import get_session, init_db
from cohortflow.delivery import record_delivery_event
from cohortflow.models import Participant
from cohortflow.orchestrator import Orchestrator, WorkflowConflictError
from cohortflow.schemas import (
    AttemptOut,
    DeliveryWebhookIn,
    MessageOut,
    ParticipantCreate,
    ParticipantOut,
    RetryOut,
    RoundCheckOut,
    RoundOut,
    RoundStatusUpdate,
    SweepOut,
    WorkflowEventIn,
    WorkflowEventOut,
    WorkflowProgressOut,
)

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="Cohortflow",
    version="0.1.0",
    description=(
        "Round lifecycle and participant communication workflows for a multi-round "
        "evaluation program. Rejected operator actions return 409 with the reason as detail."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Rounds", "description": "Activate, complete and reopen program rounds."},
        {"name": "Participants", "description": "Jurors and startups, and their per-round selection status."},
        {"name": "Workflows", "description": "Communication workflow events, progress and retries."},
        {"name": "Communications", "description": "Dispatch attempts, messages and delivery webhooks."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@lru_cache(maxsize=1)
def get_orchestrator() -> Orchestrator:
    return services.build_orchestrator()


def _transition_or_409(result: rounds.RoundTransition) -> dict:
    if not result.ok:
        raise HTTPException(409, result.reason)
    return services.round_summary(result.round)


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(UTC).replace(tzinfo=None)
    return parsed


# ---------------------------------------------------------------------------
# Routes: Rounds
# ---------------------------------------------------------------------------


@app.get("/api/rounds", response_model=list[RoundOut], tags=["Rounds"], summary="List rounds in program order")
async def list_rounds(session: Session = Depends(db_session)):
    return [services.round_summary(r) for r in rounds.list_rounds(session)]


@app.get("/api/rounds/{name}/check", response_model=RoundCheckOut,
         tags=["Rounds"], summary="Evaluate a round's completion requirements without changing it")
async def check_round(name: str, session: Session = Depends(db_session)):
    if rounds.get_round(session, name) is None:
        raise HTTPException(404, "Round not found")
    check = rounds.round_completion_check(session, name)
    return {
        "round": name, "can_complete": check.can_complete, "reason": check.reason,
        "selection_counts": services.selection_counts(session, name),
    }


@app.post("/api/rounds/{name}/activate", response_model=RoundOut, tags=["Rounds"], summary="Activate a pending round")
async def activate_round(name: str, session: Session = Depends(db_session)):
    return _transition_or_409(rounds.activate_round(session, name))


@app.post("/api/rounds/{name}/complete", response_model=RoundOut,
          tags=["Rounds"], summary="Complete an active round (does not activate the next round)")
async def complete_round(name: str, session: Session = Depends(db_session)):
    return _transition_or_409(rounds.complete_round(session, name))


@app.post("/api/rounds/{name}/reopen", response_model=RoundOut,
          tags=["Rounds"], summary="Reopen the most recently completed round")
async def reopen_round(name: str, session: Session = Depends(db_session)):
    return _transition_or_409(rounds.reopen_round(session, name))


# ---------------------------------------------------------------------------
# Routes: Participants
# ---------------------------------------------------------------------------


@app.get("/api/participants", response_model=list[ParticipantOut],
         tags=["Participants"], summary="List participants")
async def list_participants(
    participant_type: str | None = Query(None, description="juror or startup"),
    session: Session = Depends(db_session),
):
    return services.list_participants(session, participant_type)


@app.post("/api/participants", response_model=ParticipantOut, status_code=201,
          tags=["Participants"], summary="Create a juror or startup")
async def create_participant(body: ParticipantCreate, session: Session = Depends(db_session)):
    participant = services.create_participant(session, **body.model_dump())
    session.commit()
    return services.participant_summary(participant)


@app.put("/api/participants/{participant_id}/rounds/{round_name}", response_model=ParticipantOut,
         tags=["Participants"], summary="Set a participant's selection status for a round")
async def set_round_status(
    participant_id: int, round_name: str, body: RoundStatusUpdate, session: Session = Depends(db_session),
):
    try:
        rounds.set_participant_status(session, participant_id, round_name, body.status)
        session.commit()
    except ValueError as exc:
        raise HTTPException(404, str(exc)) from exc
    except IntegrityError as exc:
        session.rollback()
        raise HTTPException(409, "Status changed concurrently, retry") from exc
    participant = session.get(Participant, participant_id, populate_existing=True)
    return services.participant_summary(participant)


# ---------------------------------------------------------------------------
# Routes: Workflows
# ---------------------------------------------------------------------------


@app.post("/api/workflows/events", response_model=WorkflowEventOut,
          tags=["Workflows"], summary="Apply an application event to a participant's workflow")
async def workflow_event(
    body: WorkflowEventIn,
    session: Session = Depends(db_session),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    try:
        result = await orchestrator.handle_event(
            session, body.participant_id, body.participant_type, body.event_type, body.event_data,
        )
    except WorkflowConflictError as exc:
        raise HTTPException(409, str(exc)) from exc
    return result


@app.get("/api/workflows/{participant_type}/{participant_id}", response_model=WorkflowProgressOut,
         tags=["Workflows"], summary="Stage-by-stage communication progress for a participant")
async def workflow_progress(
    participant_type: str,
    participant_id: int,
    session: Session = Depends(db_session),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    try:
        return orchestrator.workflow_progress(session, participant_id, participant_type)
    except ValueError as exc:
        raise HTTPException(404, str(exc)) from exc


@app.post("/api/workflows/{workflow_id}/retry", response_model=RetryOut,
          tags=["Workflows"], summary="Retry the failed communication of a workflow's current stage")
async def retry_workflow(
    workflow_id: int,
    session: Session = Depends(db_session),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    result = await orchestrator.retry_communication(session, workflow_id)
    if not result.ok:
        raise HTTPException(409, result.reason)
    return {"attempt_id": result.attempt_id, "dispatch": result.dispatch}


# ---------------------------------------------------------------------------
# Routes: Communications
# ---------------------------------------------------------------------------


@app.post("/api/sweep", response_model=SweepOut,
          tags=["Communications"], summary="Dispatch due pending attempts (bounded batch)")
async def sweep(
    limit: int | None = Query(None, ge=1, le=100),
    session: Session = Depends(db_session),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    return await orchestrator.sweep(session, limit=limit)


@app.get("/api/attempts", response_model=list[AttemptOut],
         tags=["Communications"], summary="List dispatch attempts, newest first")
async def list_attempts(
    workflow_id: int | None = Query(None),
    status: str | None = Query(None, description="pending, sent, failed or skipped (ended without a send)"),
    limit: int = Query(100, ge=1, le=500),
    session: Session = Depends(db_session),
):
    return services.list_attempts(session, workflow_id=workflow_id, status=status, limit=limit)


@app.get("/api/messages", response_model=list[MessageOut],
         tags=["Communications"], summary="List sent and pending messages, newest first")
async def list_messages(
    recipient_id: int | None = Query(None),
    recipient_type: str | None = Query(None),
    limit: int = Query(100, ge=1, le=500),
    session: Session = Depends(db_session),
):
    return services.list_messages(session, recipient_id=recipient_id, recipient_type=recipient_type, limit=limit)


@app.post("/api/webhooks/delivery", tags=["Communications"], summary="Receive delivery provider webhook events")
async def delivery_webhook(body: DeliveryWebhookIn, session: Session = Depends(db_session)):
    comm = record_delivery_event(
        session, body.data.email_id, body.type,
        occurred_at=_parse_timestamp(body.created_at), payload=body.model_dump(),
    )
    if comm is None:
        return {"ok": False, "message": "Event ignored"}
    session.commit()
    return {"ok": True, "communication_id": comm.id, "status": comm.status}


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    uvicorn.run("cohortflow.app:app", host="127.0.0.1", port=8001, reload=True)


if __name__ == "__main__":
    main()
