from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any, Dict, List

logger = logging.getLogger(__name__)


def _detect_format(path: Path) -> str:
    ext = path.suffix.lower().lstrip(".")
    if ext in {"yaml", "yml"}:
        return "yaml"
    # Default to JSON for unknown extensions.
    return "json"


def _yaml():
    try:
        import yaml  # type: ignore
    except Exception as e:  # pragma: no cover
        raise RuntimeError("YAML checkpoint requested but PyYAML is not available; use a .json path") from e
    return yaml


def load_build_state(path: str) -> Dict[str, Any]:
    p = Path(path)
    if not p.exists():
        return {}
    text = p.read_text(encoding="utf-8")
    if _detect_format(p) == "yaml":
        data = _yaml().safe_load(text) or {}
    else:
        data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError(f"Build state must be an object/dict, got {type(data)}")
    return data


def save_build_state(path: str, state: Dict[str, Any]) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    if _detect_format(p) == "yaml":
        body = _yaml().safe_dump(state, sort_keys=False)
    else:
        body = json.dumps(state, indent=2, sort_keys=True) + "\n"
    # atomic replace
    tmp = p.with_name(p.name + ".tmp")
    tmp.write_text(body, encoding="utf-8")
    tmp.replace(p)


def ensure_build_defaults(state: Dict[str, Any]) -> Dict[str, Any]:
    state.setdefault("completed_phases", [])
    state.setdefault("ledger", [])
    state.setdefault("marks", {})
    state.setdefault("boot", {})
    state.setdefault("current_phase", None)
    return state


def mark_completed(state: Dict[str, Any], phase_id: str) -> None:
    completed = state.setdefault("completed_phases", [])
    if phase_id not in completed:
        completed.append(phase_id)


def is_completed(state: Dict[str, Any], phase_id: str) -> bool:
    return phase_id in (state.get("completed_phases") or [])


def write_checkpoint(path: str, state: Dict[str, Any], ledger: List[Dict[str, Any]]) -> None:
    """Persist completed phases plus the current resource ledger."""

    state["ledger"] = list(ledger)
    state["updated_at"] = time.strftime("%Y-%m-%dT%H:%M:%S%z")
    save_build_state(path, state)
    logger.debug("Checkpoint written: %s (%d handle(s))", path, len(ledger))
