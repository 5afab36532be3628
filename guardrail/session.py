"""
Configuration and run-state setup for the guardrail.

Loads configs/guard_config.yaml over DEFAULT_GUARD_CONFIG, creates the
History Store and initialises GuardState for one proposal.
"""

from __future__ import annotations

import copy
from typing import Optional

import yaml

from ground_truth.image_analyzer import ImageAnalysis

from .history import HistoryStore
from .state import GuardState, Phase, ToolCallProposal

DEFAULT_GUARD_CONFIG = {
    "retry": {
        "max_attempts": 3,
        "acceptance_threshold": 70,
        "tolerance_step": 10,
        "tolerance_widen_max": 50,
        "tolerance_narrow_min": 10,
        "amount_step": 0.2,
    },
    "history": {
        "path": None,           # JSON-lines file; None keeps history in memory
    },
    "concurrency": {
        "max_workers": 4,
        "timeout_s": None,      # request-level timeout for run_proposals
    },
}


def _deep_merge(base: dict, override: dict) -> dict:
    result = dict(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_guard_config(config_path: Optional[str] = "configs/guard_config.yaml") -> dict:
    """Load guard configuration from YAML (defaults only when config_path is None)."""
    if config_path is None:
        return copy.deepcopy(DEFAULT_GUARD_CONFIG)
    with open(config_path, "r", encoding="utf-8") as f:
        loaded = yaml.safe_load(f) or {}
    return _deep_merge(DEFAULT_GUARD_CONFIG, loaded)


def create_history(config: dict) -> HistoryStore:
    """HistoryStore backed by config['history']['path'] when set."""
    path = (config.get("history") or {}).get("path")
    return HistoryStore(path=path)


def create_guard_state(
    proposal: ToolCallProposal,
    image_bytes: bytes,
    analysis: ImageAnalysis,
    config: Optional[dict] = None,
) -> GuardState:
    """
    Initialise the state for one proposal.

    Args:
        proposal: Tool call to guard.
        image_bytes: Image the tool will run on (reused for every retry).
        analysis: Ground-truth analysis of image_bytes.
        config: Guard config (default: DEFAULT_GUARD_CONFIG).

    Returns:
        Initial GuardState dict.
    """
    state: GuardState = {
        "proposal": proposal,
        "original_image": image_bytes,
        "original_analysis": analysis,
        "attempt": 0,
        "current_parameters": copy.deepcopy(proposal.parameters),
        "phase": Phase.PROPOSED.value,
        "confidence": 0.0,
        "band": "critical",
        "execution_time_ms": 0.0,
        "attempts": [],
        "reasoning": "",
        "error_message": "",
        "error_kind": "",
        "guard_config": config if config is not None else copy.deepcopy(DEFAULT_GUARD_CONFIG),
    }
    return state
