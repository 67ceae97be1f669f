"""Participant lifecycle engine.

Pure transition functions over ``LiveParticipant``. Each returns an updated
copy and never mutates its argument::

    running  --finish-->   finished  --complete-->       completed
    running  <--resume--   finished  <--undo_complete--  completed

Loop counters may be adjusted in any status and are clamped at zero.
"""

from __future__ import annotations

import secrets
import time
from typing import Callable, Iterable, Mapping, Optional

from tracker.models import (
    GUEST_RUNNER_ID,
    LiveParticipant,
    LoopKind,
    Participant,
    ParticipantStatus,
    TrackedEntrant,
)

GUEST_ID_PREFIX = "guest-"


class TransitionError(ValueError):
    """Raised when an operator action is not valid in the current status."""


# ---------------------------------------------------------------------------
# Entrants
# ---------------------------------------------------------------------------

def new_guest_id(
    existing: Iterable[str] = (),
    now_ns: Callable[[], int] = time.time_ns,
) -> str:
    """Generate a guest tracking id that is unique within the session.

    The id combines a nanosecond timestamp with random bits, so guests added
    within the same clock tick still differ. It is regenerated on the
    (unlikely) chance of a clash with ``existing``.
    """
    taken = set(existing)
    while True:
        candidate = f"{GUEST_ID_PREFIX}{now_ns()}-{secrets.token_hex(4)}"
        if candidate not in taken:
            return candidate


def guest_entrant(nickname: str, existing: Iterable[str] = ()) -> TrackedEntrant:
    """Build a guest entrant from a display nickname."""
    nickname = nickname.strip()
    if not nickname:
        raise ValueError("Guest nickname must not be empty")
    return TrackedEntrant(
        id=new_guest_id(existing),
        name="Guest",
        nickname=nickname,
        is_guest=True,
    )


def roster_entrant(participant: Participant) -> TrackedEntrant:
    return TrackedEntrant(
        id=participant.id,
        name=participant.display_name,
        photo=participant.photo,
    )


def enter(entrant: TrackedEntrant, now_ms: int) -> LiveParticipant:
    """Create the live state for an entrant joining the race at ``now_ms``."""
    return LiveParticipant(
        id=entrant.id,
        repo_id=GUEST_RUNNER_ID if entrant.is_guest else entrant.id,
        name=entrant.nickname or entrant.name,
        nickname=entrant.nickname,
        photo=entrant.photo,
        start_time=now_ms,
        status=ParticipantStatus.RUNNING,
    )


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------

def _require(p: LiveParticipant, status: ParticipantStatus, action: str) -> None:
    if p.status != status:
        raise TransitionError(
            f"Cannot {action} '{p.name}': status is {p.status.value}, "
            f"expected {status.value}"
        )


def adjust_loops(p: LiveParticipant, kind: LoopKind, delta: int) -> LiveParticipant:
    """Add ``delta`` loops of ``kind``; going below zero leaves the count at zero."""
    field = f"{kind.value}_loops"
    return p.model_copy(update={field: max(0, getattr(p, field) + int(delta))})


def finish(p: LiveParticipant, elapsed_ms: int) -> LiveParticipant:
    """running → finished, stamping the race elapsed time."""
    _require(p, ParticipantStatus.RUNNING, "finish")
    return p.model_copy(
        update={
            "status": ParticipantStatus.FINISHED,
            "finish_time": max(0, int(elapsed_ms)),
        }
    )


def complete(p: LiveParticipant) -> LiveParticipant:
    """finished → completed (data entry done)."""
    _require(p, ParticipantStatus.FINISHED, "complete")
    return p.model_copy(update={"status": ParticipantStatus.COMPLETED})


def undo_complete(p: LiveParticipant) -> LiveParticipant:
    """completed → finished."""
    _require(p, ParticipantStatus.COMPLETED, "reopen")
    return p.model_copy(update={"status": ParticipantStatus.FINISHED})


def resume(p: LiveParticipant) -> LiveParticipant:
    """finished → running, discarding the finish time."""
    _require(p, ParticipantStatus.FINISHED, "resume")
    return p.model_copy(
        update={"status": ParticipantStatus.RUNNING, "finish_time": None}
    )


def adjust_finish_time(p: LiveParticipant, delta_ms: int) -> LiveParticipant:
    """Nudge the finish time of a finished participant, clamped at zero."""
    _require(p, ParticipantStatus.FINISHED, "adjust the time of")
    current = p.finish_time or 0
    return p.model_copy(update={"finish_time": max(0, current + int(delta_ms))})


def set_promotion(
    p: LiveParticipant, convert: bool, name: Optional[str] = None
) -> LiveParticipant:
    """Mark a guest to be turned into a roster profile on publish."""
    if not p.is_guest:
        raise TransitionError(f"'{p.name}' is already a registered runner")
    override = (name or "").strip() or None
    return p.model_copy(
        update={
            "convert_to_runner": bool(convert),
            "runner_name_override": override if convert else None,
        }
    )


# ---------------------------------------------------------------------------
# Derived values
# ---------------------------------------------------------------------------

def distance_km(
    p: LiveParticipant, units_km: Mapping[str, float], approach_km: float
) -> float:
    """Total distance covered.

    The approach leg is added once as soon as any loop has been counted.
    """
    if p.total_loops == 0:
        return 0.0
    loops_km = (
        p.small_loops * units_km[LoopKind.SMALL.value]
        + p.medium_loops * units_km[LoopKind.MEDIUM.value]
        + p.long_loops * units_km[LoopKind.LONG.value]
    )
    return approach_km + loops_km


def elapsed_for(p: LiveParticipant, race_elapsed_ms: int) -> int:
    """Time to display for a participant: frozen once finished."""
    if p.status != ParticipantStatus.RUNNING and p.finish_time is not None:
        return p.finish_time
    return race_elapsed_ms


def all_completed(participants: Iterable[LiveParticipant]) -> bool:
    """True when there is at least one participant and every one is completed."""
    participants = list(participants)
    return bool(participants) and all(
        p.status == ParticipantStatus.COMPLETED for p in participants
    )


def seed_order(
    participants: Iterable[LiveParticipant], seed_times: Mapping[str, int]
) -> list[LiveParticipant]:
    """Initial display order.

    Participants with a previous finish time come first, fastest first. The
    rest follow alphabetically by display name.
    """
    def sort_key(p: LiveParticipant) -> tuple:
        seed = seed_times.get(p.repo_id) if not p.is_guest else None
        if seed is None:
            return (1, 0, p.name.casefold())
        return (0, seed, p.name.casefold())

    return sorted(participants, key=sort_key)
