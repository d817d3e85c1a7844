"""Stage sequences, the event->stage transition table, and the progress view."""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from cohortflow.config import Settings, get_settings
from cohortflow.models import CommunicationWorkflow
from cohortflow.utils import isoformat

STAGE_SEQUENCES: dict[str, tuple[str, ...]] = {
    "juror": (
        "juror_onboarding",
        "assignment_notification",
        "evaluation_reminders",
        "screening_results",
        "pitching_assignment",
        "pitch_reminders",
        "final_results",
    ),
    "startup": (
        "screening_results",
        "pitching_assignment",
        "pitch_reminders",
        "final_results",
    ),
}

STAGE_TITLES = {
    "juror_onboarding": "Juror Onboarding",
    "assignment_notification": "Assignment Notification",
    "evaluation_reminders": "Evaluation Reminders",
    "screening_results": "Screening Results",
    "pitching_assignment": "Pitching Assignment",
    "pitch_reminders": "Pitch Reminders",
    "final_results": "Final Results",
}


@dataclass(frozen=True)
class StageTransition:
    next_stage: str
    should_dispatch: bool = False
    delay_hours: float = 0
    allow_regression: bool = False
    score_compatibility: bool = False

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> StageTransition:
        return cls(
            next_stage=str(data["next_stage"]),
            should_dispatch=bool(data.get("should_dispatch", False)),
            delay_hours=float(data.get("delay_hours", 0) or 0),
            allow_regression=bool(data.get("allow_regression", False)),
            score_compatibility=bool(data.get("score_compatibility", False)),
        )


TransitionTable = Mapping[str, StageTransition]


def load_transition_table(settings: Settings | None = None) -> dict[str, StageTransition]:
    """Read the ``transitions`` mapping from the workflow config file."""
    raw = (settings or get_settings()).load_workflow_config().get("transitions", {})
    if not isinstance(raw, dict):
        raise ValueError("workflow config: 'transitions' must be a mapping")
    return {event: StageTransition.from_dict(entry) for event, entry in raw.items()}


def stage_sequence(participant_type: str) -> tuple[str, ...]:
    try:
        return STAGE_SEQUENCES[participant_type]
    except KeyError:
        raise ValueError(f"Unknown participant type: {participant_type!r}") from None


def first_stage(participant_type: str) -> str:
    return stage_sequence(participant_type)[0]


def stage_index(participant_type: str, stage: str) -> int:
    """Position of *stage* in the participant's sequence, or -1 if absent."""
    seq = stage_sequence(participant_type)
    return seq.index(stage) if stage in seq else -1


def stage_progress(workflow: CommunicationWorkflow | None, participant_type: str) -> dict[str, Any]:
    """Derived read-only view of a participant's communication lifecycle."""
    seq = stage_sequence(participant_type)
    current = stage_index(participant_type, workflow.current_stage) if workflow else -1
    stages = []
    for idx, stage in enumerate(seq):
        if workflow is None or idx > current:
            status = "pending"
        elif idx < current:
            status = "completed"
        else:
            status = workflow.stage_status
        stages.append({"stage": stage, "title": STAGE_TITLES.get(stage, stage), "status": status})
    completed = sum(1 for s in stages if s["status"] == "completed")
    return {
        "participant_type": participant_type,
        "current_stage": workflow.current_stage if workflow else None,
        "stage_status": workflow.stage_status if workflow else None,
        "stage_entered_at": isoformat(workflow.stage_entered_at) if workflow else None,
        "next_action_due": isoformat(workflow.next_action_due) if workflow else None,
        "stages": stages,
        "percent_complete": round(100 * completed / len(seq), 1),
        "can_retry": bool(workflow and workflow.stage_status == "failed"),
    }
