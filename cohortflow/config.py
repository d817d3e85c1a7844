from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

PACKAGE_DIR = Path(__file__).parent


def _env(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def _env_float(name: str, default: float) -> float:
    raw = _env(name)
    return float(raw) if raw else default


def _env_int(name: str, default: int) -> int:
    raw = _env(name)
    return int(raw) if raw else default


def _env_bool(name: str) -> bool:
    return _env(name).lower() in {"1", "true", "yes", "on"}


class Settings(BaseModel):
    database_path: Path = Field(
        default_factory=lambda: Path(_env("COHORTFLOW_DB_PATH") or PACKAGE_DIR / "data" / "cohortflow.db")
    )
    workflow_config_file: Path = Field(
        default_factory=lambda: Path(_env("COHORTFLOW_WORKFLOW_CONFIG") or PACKAGE_DIR / "workflow.yaml")
    )

    dedup_window_hours: float = Field(default_factory=lambda: _env_float("COHORTFLOW_DEDUP_WINDOW_HOURS", 24.0))
    sweep_batch_size: int = Field(default_factory=lambda: _env_int("COHORTFLOW_SWEEP_BATCH_SIZE", 10))
    claim_timeout_minutes: float = Field(
        default_factory=lambda: _env_float("COHORTFLOW_CLAIM_TIMEOUT_MINUTES", 15.0)
    )
    max_update_retries: int = 3

    resend_api_key: str = Field(default_factory=lambda: _env("RESEND_API_KEY"))
    resend_from: str = Field(default_factory=lambda: _env("RESEND_FROM"))
    resend_base_url: str = "https://api.resend.com"
    request_timeout_seconds: float = 15.0

    # Sandbox mode redirects every outgoing message to a single inbox.
    sandbox: bool = Field(default_factory=lambda: _env_bool("COHORTFLOW_SANDBOX"))
    sandbox_recipient: str = Field(
        default_factory=lambda: _env("COHORTFLOW_SANDBOX_RECIPIENT", "delivered@resend.dev")
    )
    sandbox_from: str = Field(
        default_factory=lambda: _env("RESEND_FROM_SANDBOX", "Cohortflow <onboarding@resend.dev>")
    )

    def ensure_directories(self) -> None:
        self.database_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def database_url(self) -> str:
        return f"sqlite:///{self.database_path}"

    def load_yaml(self, path: Path) -> dict[str, Any]:
        if not path.exists():
            return {}
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            return {}
        return data

    def load_workflow_config(self) -> dict[str, Any]:
        return self.load_yaml(self.workflow_config_file)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
