"""Template provider: category lookup and ``{{var}}`` substitution."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from cohortflow.models import EmailTemplate
from cohortflow.utils import json_parse

log = logging.getLogger(__name__)

_PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z0-9_]+)\s*\}\}")

# Used when no active template exists for a category: {category: (subject, body)}
DEFAULT_TEMPLATES: dict[str, tuple[str, str]] = {
    "juror_invitation": (
        "You're invited to join the evaluation jury",
        "<p>Dear {{participant_name}},</p>"
        "<p>You have been invited to evaluate startups in this year's program. "
        "Please complete your signup to get started.</p>",
    ),
    "assignment-notification": (
        "New startups assigned for evaluation",
        "<p>Dear {{participant_name}},</p>"
        "<p>New startups have been assigned to you for evaluation. "
        "Please log in to review them.</p>",
    ),
    "juror-reminder": (
        "Reminder: evaluations pending",
        "<p>Dear {{participant_name}},</p>"
        "<p>You still have evaluations to complete. Please submit them before the deadline.</p>",
    ),
    "pitch-scheduling": (
        "Schedule your pitch session",
        "<p>Dear {{participant_name}},</p>"
        "<p>Please book a slot for your pitch session using the scheduling link provided.</p>",
    ),
    "screening-results": (
        "Screening round results",
        "<p>Dear {{participant_name}},</p><p>The screening round has concluded.</p>",
    ),
    "pitching-results": (
        "Final results",
        "<p>Dear {{participant_name}},</p><p>The pitching round has concluded.</p>",
    ),
}


@dataclass
class Template:
    category: str
    subject_template: str
    body_template: str
    variables: list[str] = field(default_factory=list)


def render(text: str, variables: dict[str, Any]) -> str:
    """Replace ``{{name}}`` placeholders. Unknown placeholders are left as-is."""
    def _sub(match: re.Match) -> str:
        key = match.group(1)
        if key not in variables or variables[key] is None:
            return match.group(0)
        return str(variables[key])

    return _PLACEHOLDER_RE.sub(_sub, text)


def placeholders(text: str) -> list[str]:
    return sorted(set(_PLACEHOLDER_RE.findall(text)))


class TemplateProvider:
    """Newest active DB template for a category, else the built-in default."""

    def __init__(self, defaults: dict[str, tuple[str, str]] | None = None):
        self.defaults = DEFAULT_TEMPLATES if defaults is None else defaults

    def get_template(self, session: Session, category: str) -> Template | None:
        row = session.execute(
            select(EmailTemplate)
            .where(EmailTemplate.category == category, EmailTemplate.is_active.is_(True))
            .order_by(EmailTemplate.created_at.desc(), EmailTemplate.id.desc())
            .limit(1)
        ).scalars().first()
        if row is not None:
            variables = json_parse(row.variables_json, []) or placeholders(row.subject_template + row.body_template)
            return Template(category, row.subject_template, row.body_template, variables)
        if category in self.defaults:
            log.info("No active template for %s, using built-in default", category)
            subject, body = self.defaults[category]
            return Template(category, subject, body, placeholders(subject + body))
        return None
