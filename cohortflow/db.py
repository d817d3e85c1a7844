from __future__ import annotations

import json
import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator

from sqlalchemy import create_engine, func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session, sessionmaker

from cohortflow.config import Settings, get_settings
from cohortflow.models import ROUND_ORDER, Base, EmailTemplate, Round, WorkflowTriggerRule

log = logging.getLogger(__name__)

_lock = threading.Lock()
_engine = None
_SessionLocal = None


def init_db(db_path: str | Path | None = None, settings: Settings | None = None) -> None:
    global _engine, _SessionLocal
    settings = settings or get_settings()
    with _lock:
        if _engine is not None:
            _engine.dispose()
        if db_path is None:
            settings.ensure_directories()
            db_path = settings.database_path
        db_path = Path(db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        _engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})
        Base.metadata.create_all(_engine)
        _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
    with session_scope() as session:
        seed_defaults(session, settings)


def get_session() -> Session:
    with _lock:
        if _SessionLocal is None:
            raise RuntimeError("init_db() has not been called")
        factory = _SessionLocal
    return factory()  # type: ignore[misc]


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """Context manager providing a transactional session scope.

    Usage (MCP server, CLI, sweeps)::

        with session_scope() as session:
            ...
    """
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def session_generator() -> Generator[Session, None, None]:
    """Generator-based session suitable for FastAPI ``Depends()``."""
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def insert_ignore(session: Session, model, values: dict[str, Any], conflict_columns: list[str]) -> bool:
    """INSERT ... ON CONFLICT DO NOTHING. Returns True when a row was inserted."""
    dialect = session.get_bind().dialect.name
    if dialect == "sqlite":
        stmt = sqlite.insert(model)
    elif dialect == "postgresql":
        stmt = postgresql.insert(model)
    else:
        raise RuntimeError(f"insert_ignore is not supported on {dialect!r}")
    stmt = stmt.values(**values).on_conflict_do_nothing(index_elements=conflict_columns)
    result = session.execute(stmt)
    return result.rowcount == 1


# ---------------------------------------------------------------------------
# Seeding
# ---------------------------------------------------------------------------


def seed_defaults(session: Session, settings: Settings | None = None) -> None:
    """Seed rounds, trigger rules and default templates if their tables are empty."""
    from cohortflow.templates import DEFAULT_TEMPLATES

    settings = settings or get_settings()
    for name in ROUND_ORDER:
        insert_ignore(session, Round, {"name": name, "status": "pending"}, ["name"])

    if not session.execute(select(func.count(WorkflowTriggerRule.id))).scalar():
        rules = settings.load_workflow_config().get("trigger_rules", [])
        for rule in rules:
            session.add(WorkflowTriggerRule(
                stage=rule["stage"],
                participant_type=rule["participant_type"],
                email_template_category=rule["email_template_category"],
                is_active=rule.get("is_active", True),
                delay_hours=rule.get("delay_hours", 0),
                dedup_window_hours=rule.get("dedup_window_hours"),
            ))
        log.info("Seeded %d workflow trigger rules", len(rules))

    if not session.execute(select(func.count(EmailTemplate.id))).scalar():
        for category, (subject, body) in DEFAULT_TEMPLATES.items():
            session.add(EmailTemplate(
                category=category, name=category.replace("-", " ").replace("_", " ").title(),
                subject_template=subject, body_template=body, variables_json=json.dumps([]),
            ))
    session.commit()
