"""AI-assisted compatibility scoring used to enrich workflow stage data.

The scorer is optional. Any failure (missing credentials, provider errors,
unparseable output) degrades to ``None`` so stage transitions never block
on it.
"""
from __future__ import annotations

import json
import logging
import os
import re
from typing import Any

from cohortflow.models import Participant

log = logging.getLogger(__name__)


class LLMCallError(Exception):
    """LLM call failed or returned unparseable output."""
    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


COMPATIBILITY_PROMPT = """\
You analyze the compatibility between a juror and the startups assigned to \
them for evaluation purposes.

Consider:
- Overlap between the juror's expertise and each startup's sector and technology
- Whether the juror's background lets them judge the business model credibly
- Obvious conflicts of interest (same organization, competitors)

Respond with ONLY valid JSON:
{
  "compatibility_score": <number 0-10, where 10 = perfect match, 0 = no match>,
  "brief_reasoning": "<1-2 concise sentences explaining the key factors>"
}
"""


class LLMClient:
    """Async LLM client supporting Anthropic and OpenAI-compatible APIs."""

    def __init__(
        self,
        provider: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        max_tokens: int = 1024,
        timeout: float | None = None,
        max_retries: int = 1,
    ):
        self.provider = provider or os.environ.get("LLM_PROVIDER", "anthropic")
        self.model = model or os.environ.get("LLM_MODEL", "")
        self.max_tokens = max_tokens
        self.timeout = timeout if timeout is not None else float(os.environ.get("LLM_TIMEOUT_SECONDS", "30"))
        self.max_retries = max_retries
        self._api_key = api_key
        self._base_url = base_url
        self._client: Any = None
        self._init_client()

    def _init_client(self) -> None:
        if self.provider == "anthropic":
            import anthropic
            self.model = self.model or "claude-haiku-4-5-20251001"
            self._client = anthropic.AsyncAnthropic(
                api_key=self._api_key or os.environ.get("ANTHROPIC_API_KEY"),
                timeout=self.timeout,
                max_retries=self.max_retries,
            )
        elif self.provider in ("openai", "openai_compatible"):
            import openai
            self.model = self.model or "gpt-4o-mini"
            kwargs: dict[str, Any] = {"timeout": self.timeout, "max_retries": self.max_retries}
            key = self._api_key or os.environ.get("OPENAI_API_KEY")
            if key:
                kwargs["api_key"] = key
            url = self._base_url or os.environ.get("OPENAI_BASE_URL")
            if url:
                kwargs["base_url"] = url
            self._client = openai.AsyncOpenAI(**kwargs)
        else:
            raise ValueError(f"Unknown LLM provider: {self.provider!r}")

    async def call(self, system: str, user: str) -> dict[str, Any]:
        """Send system+user message to the LLM, return parsed JSON."""
        try:
            if self.provider == "anthropic":
                response = await self._client.messages.create(
                    model=self.model,
                    max_tokens=self.max_tokens,
                    system=system,
                    messages=[{"role": "user", "content": user}],
                )
                text = response.content[0].text.strip()
                m = re.search(r'```(?:json)?\s*(\{.*\})\s*```', text, re.DOTALL)
                if m:
                    text = m.group(1)
            else:
                response = await self._client.chat.completions.create(
                    model=self.model,
                    max_tokens=self.max_tokens,
                    response_format={"type": "json_object"},
                    messages=[
                        {"role": "system", "content": system},
                        {"role": "user", "content": user},
                    ],
                )
                text = response.choices[0].message.content or "{}"
        except Exception as exc:
            raise LLMCallError(f"LLM API call failed: {exc}", retryable=True) from exc

        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise LLMCallError(f"LLM returned invalid JSON: {text[:200]}") from exc


def build_compatibility_dossier(participant: Participant, event_data: dict[str, Any]) -> str:
    sections = [
        f"JUROR: {participant.name}",
        f"ORGANIZATION: {participant.organization or 'unknown'}",
    ]
    for key in ("expertise", "sectors", "startup_names", "startup_sectors"):
        val = event_data.get(key)
        if val:
            if isinstance(val, (list, tuple)):
                val = ", ".join(str(v) for v in val)
            sections.append(f"{key.upper().replace('_', ' ')}: {val}")
    return "\n".join(sections)


def _clamp_score(val: Any) -> float | None:
    try:
        score = float(val)
    except (TypeError, ValueError):
        return None
    return round(max(0.0, min(10.0, score)), 1)


class CompatibilityScorer:
    """Populates ``compatibility_score``/``compatibility_reasoning`` for stage data."""

    def __init__(self, client: LLMClient | None = None):
        self._client = client

    def _get_client(self) -> LLMClient:
        if self._client is None:
            self._client = LLMClient()
        return self._client

    async def score(self, participant: Participant, event_data: dict[str, Any]) -> dict[str, Any]:
        try:
            raw = await self._get_client().call(
                COMPATIBILITY_PROMPT, build_compatibility_dossier(participant, event_data),
            )
        except Exception as exc:
            log.warning("Compatibility scoring unavailable for participant %s: %s", participant.id, exc)
            return {"compatibility_score": None}
        if not isinstance(raw, dict):
            log.warning("Compatibility scorer returned %s instead of an object", type(raw).__name__)
            return {"compatibility_score": None}
        score = _clamp_score(raw.get("compatibility_score"))
        if score is None:
            log.warning("Unparseable compatibility score %r", raw.get("compatibility_score"))
            return {"compatibility_score": None}
        return {
            "compatibility_score": score,
            "compatibility_reasoning": str(raw.get("brief_reasoning", "")),
        }
