from __future__ import annotations

import json
import logging
import re
from typing import Any

import requests

from weekplan.models import AIConfig

logger = logging.getLogger(__name__)

FENCED_JSON_PATTERN = re.compile(r"```(?:json)?\s*(\{.*\})\s*```", re.DOTALL)
NO_CHANGE = {"update_type": "none"}


def _extract_json_payload(content: str) -> str:
    """Pull the proposal object out of a chat reply, fenced or not."""
    text = content.strip()
    if text.startswith("{") and text.endswith("}"):
        return text
    fenced = FENCED_JSON_PATTERN.search(text)
    if fenced:
        return fenced.group(1)
    first, last = text.find("{"), text.rfind("}")
    if 0 <= first < last:
        return text[first : last + 1]
    raise ValueError("AI response does not contain valid JSON.")


class OpenAICompatibleClient:
    """Planning agent reached through any ``/chat/completions`` endpoint."""

    def __init__(self, config: AIConfig) -> None:
        self.config = config

    def is_configured(self) -> bool:
        return bool(self.config.base_url and self.config.api_key and self.config.model)

    @property
    def endpoint(self) -> str:
        base = self.config.base_url.rstrip("/")
        return base if base.endswith("/chat/completions") else f"{base}/chat/completions"

    def _post_chat(self, messages: list[dict[str, str]], **options: Any) -> requests.Response:
        return requests.post(
            self.endpoint,
            headers={"Authorization": f"Bearer {self.config.api_key}", "Content-Type": "application/json"},
            json={"model": self.config.model, "messages": messages, **options},
            timeout=self.config.timeout_seconds,
        )

    def generate_proposal(self, *, messages: list[dict[str, str]]) -> dict[str, Any]:
        """Ask the planning agent for a schedule proposal.

        Returns the raw proposal object; shape checks happen in
        :class:`weekplan.planner.ScheduleProposal`.
        """
        if not self.is_configured():
            logger.info("Planning agent not configured; proposing no change")
            return dict(NO_CHANGE)
        response = self._post_chat(messages, temperature=0.2, response_format={"type": "json_object"})
        response.raise_for_status()
        reply = response.json()["choices"][0]["message"]["content"]
        proposal = json.loads(_extract_json_payload(str(reply or "")))
        if not isinstance(proposal, dict):
            raise ValueError("AI response root must be an object.")
        proposal.setdefault("update_type", "none")
        logger.debug("Planning agent proposed update_type=%s", proposal["update_type"])
        return proposal

    def test_connectivity(self) -> tuple[bool, str]:
        if not self.is_configured():
            return False, "AI config incomplete: base_url/api_key/model required."
        try:
            response = self._post_chat([{"role": "user", "content": "Reply with: OK"}], temperature=0, max_tokens=8)
            if not response.ok:
                return False, f"HTTP {response.status_code}: {response.text[:300]}"
            choices = response.json().get("choices") or [{}]
            reply = str(choices[0].get("message", {}).get("content", "")).strip().replace("\n", " ")
        except (requests.RequestException, ValueError) as exc:
            return False, f"{type(exc).__name__}: {exc}"
        return True, f"Connected. Model response: {reply[:120]}"
