"""
Lifecycle state machines for controls, risks, treatments, tests, runs and alerts.

Each graph maps a state to the set of states it may move to directly.
"""
from __future__ import annotations

from fastapi import HTTPException

CONTROL_TRANSITIONS: dict[str, set[str]] = {
    "draft": {"active", "deprecated"},
    "active": {"under_review", "deprecated"},
    "under_review": {"active", "deprecated"},
    "deprecated": {"draft"},
}

RISK_TRANSITIONS: dict[str, set[str]] = {
    "identified": {"open", "treating", "accepted", "archived"},
    "open": {"treating", "accepted", "closed", "archived"},
    "treating": {"monitoring", "open", "accepted", "archived"},
    "monitoring": {"treating", "closed", "archived"},
    "accepted": {"open", "treating", "archived"},
    "closed": {"open", "archived"},
    "archived": set(),
}

TREATMENT_TRANSITIONS: dict[str, set[str]] = {
    "planned": {"in_progress", "cancelled"},
    "in_progress": {"implemented", "cancelled"},
    "implemented": {"verified", "ineffective"},
    "verified": {"ineffective"},
    "ineffective": set(),
    "cancelled": set(),
}

TEST_TRANSITIONS: dict[str, set[str]] = {
    "draft": {"active"},
    "active": {"paused", "deprecated"},
    "paused": {"active", "deprecated"},
    "deprecated": set(),
}

RUN_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"running", "cancelled"},
    "running": {"completed", "failed", "cancelled"},
    "completed": set(),
    "failed": set(),
    "cancelled": set(),
}

ALERT_TRANSITIONS: dict[str, set[str]] = {
    "open": {"acknowledged", "in_progress", "suppressed", "closed"},
    "acknowledged": {"in_progress", "suppressed", "closed"},
    "in_progress": {"resolved", "suppressed", "closed"},
    "resolved": {"closed", "open"},
    "suppressed": {"open", "closed"},
    "closed": {"open"},
}

# treatments still counting as "work left to do" for the parent risk
OPEN_TREATMENT_STATUSES = ("planned", "in_progress", "implemented")
CANCELLABLE_TREATMENT_STATUSES = ("planned", "in_progress")
TERMINAL_TREATMENT_STATUSES = ("verified", "cancelled", "ineffective")


def can_transition(graph: dict[str, set[str]], current: str, target: str) -> bool:
    return target in graph.get(current, set())


def ensure_transition(graph: dict[str, set[str]], current: str, target: str) -> None:
    """Raise 422 UNPROCESSABLE naming both states when the move is not allowed."""
    if not can_transition(graph, current, target):
        raise HTTPException(422, f"Cannot transition from '{current}' to '{target}'")
