from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, contextmanager
from dataclasses import asdict
from functools import lru_cache

from mcp.server.fastmcp import FastMCP

from cohortflow import rounds, services
from cohortflow.db import get_session, init_db
from cohortflow.orchestrator import Orchestrator, WorkflowConflictError

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def cohortflow_lifespan(server: FastMCP) -> AsyncIterator[None]:
    init_db()
    yield


mcp = FastMCP(
    "Cohortflow",
    instructions=(
        "Cohortflow runs the evaluation program's rounds and participant communications. "
        "Start with list_rounds() for the program state, then workflow_progress() for a "
        "participant. Rejected actions return {'ok': false, 'reason': ...}."
    ),
    lifespan=cohortflow_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@contextmanager
def _session():
    session = get_session()
    try:
        yield session
    finally:
        session.close()


@lru_cache(maxsize=1)
def _orchestrator() -> Orchestrator:
    return services.build_orchestrator()


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("cohortflow://overview")
def cohortflow_overview() -> str:
    """Overview of rounds, workflow stages and operator actions."""
    from cohortflow.stages import STAGE_SEQUENCES

    return json.dumps({
        "system": "Cohortflow: round lifecycle and communication workflows",
        "rounds": "screening -> pitching. Each round moves pending -> active -> completed; "
                  "only the most recently completed round can be reopened.",
        "stages": {k: list(v) for k, v in STAGE_SEQUENCES.items()},
        "operator_actions": [
            "complete_round(name)", "reopen_round(name)", "retry_communication(workflow_id)",
        ],
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools: Rounds
# ---------------------------------------------------------------------------


@mcp.tool()
def list_rounds() -> list[dict]:
    """List program rounds with status and timestamps."""
    with _session() as session:
        return [services.round_summary(r) for r in rounds.list_rounds(session)]


@mcp.tool()
def activate_round(name: str) -> dict:
    """Activate a pending round (screening or pitching)."""
    with _session() as session:
        return services.transition_summary(rounds.activate_round(session, name))


@mcp.tool()
def complete_round(name: str) -> dict:
    """Complete an active round. Screening needs at least one selected startup."""
    with _session() as session:
        return services.transition_summary(rounds.complete_round(session, name))


@mcp.tool()
def reopen_round(name: str) -> dict:
    """Reopen the most recently completed round. Reopening screening resets selections."""
    with _session() as session:
        return services.transition_summary(rounds.reopen_round(session, name))


# ---------------------------------------------------------------------------
# Tools: Workflows
# ---------------------------------------------------------------------------


@mcp.tool()
async def trigger_event(
    participant_id: int, participant_type: str, event_type: str, event_data: dict | None = None,
) -> dict:
    """Apply an application event (e.g. assignments_created) to a participant's workflow."""
    with _session() as session:
        try:
            result = await _orchestrator().handle_event(
                session, participant_id, participant_type, event_type, event_data,
            )
        except (ValueError, WorkflowConflictError) as exc:
            return {"error": str(exc)}
        return asdict(result)


@mcp.tool()
def workflow_progress(participant_id: int, participant_type: str) -> dict:
    """Stage-by-stage communication progress for a juror or startup."""
    with _session() as session:
        try:
            return _orchestrator().workflow_progress(session, participant_id, participant_type)
        except ValueError as exc:
            return {"error": str(exc)}


@mcp.tool()
async def retry_communication(workflow_id: int) -> dict:
    """Retry the failed communication for a workflow's current stage."""
    with _session() as session:
        result = await _orchestrator().retry_communication(session, workflow_id)
        return asdict(result)


@mcp.tool()
async def run_sweep(limit: int = 10) -> dict:
    """Dispatch due pending attempts, oldest first (max 100 per call)."""
    with _session() as session:
        report = await _orchestrator().sweep(session, limit=max(1, min(limit, 100)))
        return asdict(report)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the Cohortflow MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
