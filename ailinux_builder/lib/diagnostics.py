"""Advisory diagnostic collaborator.

Consulted only for unclassified failures, before the final retry. The answer
is a remediation *name* from a fixed registry, never a command; an unreachable
or confused backend degrades silently to "no suggestion".
"""

from __future__ import annotations

import json
import logging
import os
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "https://api.mistral.ai/v1/chat/completions"
DEFAULT_MODEL = "mistral-large-latest"


@dataclass(frozen=True)
class Suggestion:
    action: str
    rationale: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"action": self.action, "rationale": self.rationale}


@dataclass(frozen=True)
class DiagnosticRequest:
    descriptor: Dict[str, Any]
    error_text: str
    history: List[Dict[str, Any]] = field(default_factory=list)
    remediations: List[str] = field(default_factory=list)


class DiagnosticAdvisor(Protocol):
    def suggest(self, request: DiagnosticRequest) -> Optional[Suggestion]:
        ...


class NullAdvisor:
    """Used when no backend is configured."""

    def suggest(self, request: DiagnosticRequest) -> Optional[Suggestion]:
        return None


def _prompt(request: DiagnosticRequest) -> str:
    return (
        "You are helping debug a Linux live-image build running debootstrap, apt and grub "
        "inside a chroot.\n"
        f"Failed operation: {json.dumps(request.descriptor, sort_keys=True)}\n"
        f"Error output:\n{request.error_text[-4000:]}\n"
        f"Recent operations: {json.dumps(request.history[-10:], sort_keys=True)}\n"
        f"Choose exactly one remediation from {json.dumps(request.remediations)} or \"none\". "
        'Reply with JSON only: {"action": "<name>", "rationale": "<one sentence>"}'
    )


def parse_suggestion(content: str, allowed: Sequence[str]) -> Optional[Suggestion]:
    """Extract a Suggestion from the model's reply; None if unusable."""

    start, end = content.find("{"), content.rfind("}")
    if start < 0 or end <= start:
        return None
    try:
        data = json.loads(content[start : end + 1])
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    action = str(data.get("action") or "").strip()
    if not action or action == "none" or (allowed and action not in allowed):
        return None
    return Suggestion(action=action, rationale=str(data.get("rationale") or "").strip())


class HttpDiagnosticAdvisor:
    """Chat-completions backend (Mistral-compatible JSON API)."""

    def __init__(
        self,
        *,
        api_key: str,
        endpoint: str = DEFAULT_ENDPOINT,
        model: str = DEFAULT_MODEL,
        timeout_s: float = 20.0,
    ) -> None:
        self.api_key = api_key
        self.endpoint = endpoint
        self.model = model
        self.timeout_s = timeout_s

    def suggest(self, request: DiagnosticRequest) -> Optional[Suggestion]:
        body = {
            "model": self.model,
            "messages": [{"role": "user", "content": _prompt(request)}],
            "max_tokens": 300,
            "temperature": 0.2,
        }
        req = urllib.request.Request(
            self.endpoint,
            data=json.dumps(body).encode("utf-8"),
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self.api_key}",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_s) as resp:
                payload = json.loads(resp.read().decode("utf-8"))
            content = payload["choices"][0]["message"]["content"]
        except (urllib.error.URLError, OSError, ValueError, KeyError, IndexError, TypeError) as e:
            logger.debug("Diagnostic backend unavailable: %s", e)
            return None

        suggestion = parse_suggestion(str(content), request.remediations)
        if suggestion is None:
            logger.debug("Diagnostic backend returned no usable suggestion")
        return suggestion


def advisor_from_config(diag: Dict[str, Any]) -> DiagnosticAdvisor:
    """Build the configured advisor; NullAdvisor when disabled or no key is set."""

    if not diag.get("enabled", True):
        return NullAdvisor()
    key = os.environ.get(str(diag.get("api_key_env") or "MIXTRAL_API_KEY"), "")
    if not key:
        logger.info("No diagnostic API key set; advisory diagnostics disabled")
        return NullAdvisor()
    return HttpDiagnosticAdvisor(
        api_key=key,
        endpoint=str(diag.get("endpoint") or DEFAULT_ENDPOINT),
        model=str(diag.get("model") or DEFAULT_MODEL),
        timeout_s=float(diag.get("timeout_s") or 20.0),
    )
