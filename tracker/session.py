"""Race session aggregate.

Holds the global clock, the session phase and the ordered list of live
participants. Every operator action goes through a method here, which applies
the matching lifecycle transition. The aggregate knows nothing about HTTP or
storage. ``to_checkpoint`` / ``from_checkpoint`` convert to and from the
durable snapshot.
"""

from __future__ import annotations

import logging
from typing import Callable, Iterable, Mapping, Optional

from tracker import lifecycle
from tracker.models import (
    GUEST_RUNNER_ID,
    Checkpoint,
    LiveParticipant,
    LoopKind,
    Participant,
    ParticipantStatus,
    RepublishContext,
    SessionPhase,
    StagedRun,
    TrackedEntrant,
)
from tracker.race_clock import RaceClock, format_race_time, parse_race_time, wall_clock_ms

logger = logging.getLogger(__name__)


class SessionError(RuntimeError):
    """Raised when an action does not fit the current session phase."""


class RaceSession:
    """The single in-progress race."""

    def __init__(self, now_ms: Callable[[], int] = wall_clock_ms) -> None:
        self.now_ms = now_ms
        self.clock = RaceClock(now_ms)
        self.phase = SessionPhase.SETUP
        self.start_time: Optional[int] = None
        self.finish_time: Optional[int] = None
        self.participants: list[LiveParticipant] = []
        self.recovered = False
        self.republish: Optional[RepublishContext] = None

    # ---------- lookup ----------
    def get(self, participant_id: str) -> LiveParticipant:
        for p in self.participants:
            if p.id == participant_id:
                return p
        raise KeyError(participant_id)

    def _index(self, participant_id: str) -> int:
        for i, p in enumerate(self.participants):
            if p.id == participant_id:
                return i
        raise KeyError(participant_id)

    def _apply(self, participant_id: str, transition: Callable[[LiveParticipant], LiveParticipant]) -> LiveParticipant:
        idx = self._index(participant_id)
        updated = transition(self.participants[idx])
        self.participants[idx] = updated
        return updated

    def _require_phase(self, *phases: SessionPhase) -> None:
        if self.phase not in phases:
            allowed = ", ".join(ph.value for ph in phases)
            raise SessionError(
                f"Not allowed while session is {self.phase.value} (needs {allowed})"
            )

    @property
    def is_active(self) -> bool:
        """True when there is something worth checkpointing."""
        return self.phase in (SessionPhase.RUNNING, SessionPhase.REVIEW)

    # ---------- race lifecycle ----------
    def start(
        self,
        entrants: Iterable[TrackedEntrant],
        seed_times: Optional[Mapping[str, int]] = None,
    ) -> None:
        """Start the clock and enter every selected entrant as running.

        Args:
            entrants: Roster runners and guests selected for the race;
                repeated ids are entered once.
            seed_times: Previous finish times by runner id, used for the
                initial display order.

        Raises:
            SessionError: If not in setup or no entrant was given.
        """
        self._require_phase(SessionPhase.SETUP)
        now = self.now_ms()
        seen: set[str] = set()
        live: list[LiveParticipant] = []
        for entrant in entrants:
            if entrant.id in seen:
                continue
            seen.add(entrant.id)
            live.append(lifecycle.enter(entrant, now))
        if not live:
            raise SessionError("Select at least one runner to start a race")

        self.participants = lifecycle.seed_order(live, seed_times or {})
        self.start_time = now
        self.finish_time = None
        self.clock.start()
        self.phase = SessionPhase.RUNNING
        logger.info("Race started with %d participants", len(self.participants))

    def pause(self) -> None:
        """Freeze the race clock; participants keep their state."""
        self._require_phase(SessionPhase.RUNNING)
        self.clock.pause()
        logger.info("Clock paused at %s", format_race_time(self.clock.elapsed_ms()))

    def resume(self) -> None:
        """Restart the race clock from the frozen elapsed time."""
        self._require_phase(SessionPhase.RUNNING)
        self.clock.resume()
        logger.info("Clock resumed at %s", format_race_time(self.clock.elapsed_ms()))

    @property
    def can_end(self) -> bool:
        return self.phase == SessionPhase.RUNNING and lifecycle.all_completed(self.participants)

    def end(self) -> None:
        """Freeze the clock and move to review. Every participant must be completed."""
        self._require_phase(SessionPhase.RUNNING)
        if not lifecycle.all_completed(self.participants):
            pending = [p.name for p in self.participants if p.status != ParticipantStatus.COMPLETED]
            raise SessionError(
                "All runners must be completed before ending the race: " + ", ".join(pending)
                if pending
                else "No runners in this race"
            )
        self.clock.pause()
        self.finish_time = self.clock.elapsed_ms()
        self.phase = SessionPhase.REVIEW
        logger.info("Race ended at %s, entering review", format_race_time(self.finish_time))

    def back_to_tracking(self) -> None:
        """review → running; the clock carries on from where it stopped."""
        self._require_phase(SessionPhase.REVIEW)
        self.phase = SessionPhase.RUNNING
        self.finish_time = None
        self.clock.resume()
        logger.info("Back to tracking")

    # ---------- participants ----------
    def add_participant(self, entrant: TrackedEntrant) -> LiveParticipant:
        """Late addition while the race is running.

        Args:
            entrant: The runner or guest joining.

        Returns:
            The new live participant, starting now on the shared race clock.

        Raises:
            SessionError: If not running or the entrant is already in the race.
        """
        self._require_phase(SessionPhase.RUNNING)
        if any(p.id == entrant.id for p in self.participants):
            raise SessionError(f"'{entrant.nickname or entrant.name}' is already in this race")
        p = lifecycle.enter(entrant, self.now_ms())
        self.participants.append(p)
        logger.info("Late addition: %s at %s", p.name, format_race_time(self.clock.elapsed_ms()))
        return p

    def remove_participant(self, participant_id: str) -> LiveParticipant:
        """Take a participant out of the race.

        Args:
            participant_id: Tracking id of the participant.

        Returns:
            The removed participant.
        """
        self._require_phase(SessionPhase.RUNNING, SessionPhase.REVIEW)
        removed = self.participants.pop(self._index(participant_id))
        logger.info("Removed %s from the race", removed.name)
        return removed

    def adjust_loops(self, participant_id: str, kind: LoopKind, delta: int) -> LiveParticipant:
        """Change a loop counter; allowed while running and in review.

        Args:
            participant_id: Tracking id of the participant.
            kind: Loop category.
            delta: Loops to add, negative to remove (clamped at zero).
        """
        self._require_phase(SessionPhase.RUNNING, SessionPhase.REVIEW)
        return self._apply(participant_id, lambda p: lifecycle.adjust_loops(p, kind, delta))

    def finish(self, participant_id: str) -> LiveParticipant:
        """Stamp the current race elapsed time as the finish time.

        Args:
            participant_id: Tracking id of a running participant.

        Raises:
            TransitionError: If the participant is not running.
        """
        self._require_phase(SessionPhase.RUNNING)
        elapsed = self.clock.elapsed_ms()
        return self._apply(participant_id, lambda p: lifecycle.finish(p, elapsed))

    def complete(self, participant_id: str) -> LiveParticipant:
        self._require_phase(SessionPhase.RUNNING)
        return self._apply(participant_id, lifecycle.complete)

    def undo_complete(self, participant_id: str) -> LiveParticipant:
        self._require_phase(SessionPhase.RUNNING)
        return self._apply(participant_id, lifecycle.undo_complete)

    def resume_participant(self, participant_id: str) -> LiveParticipant:
        self._require_phase(SessionPhase.RUNNING)
        return self._apply(participant_id, lifecycle.resume)

    def adjust_finish_time(self, participant_id: str, delta_ms: int) -> LiveParticipant:
        """Nudge a finish time, clamped at zero.

        Args:
            participant_id: Tracking id of a finished participant.
            delta_ms: Milliseconds to add; negative moves the finish earlier.
        """
        self._require_phase(SessionPhase.RUNNING)
        return self._apply(participant_id, lambda p: lifecycle.adjust_finish_time(p, delta_ms))

    def set_promotion(self, participant_id: str, convert: bool, name: Optional[str] = None) -> LiveParticipant:
        """Mark a guest for conversion into a roster runner on publish.

        Args:
            participant_id: Tracking id of a guest.
            convert: Whether to create a profile.
            name: Optional full name for the new profile.
        """
        self._require_phase(SessionPhase.RUNNING, SessionPhase.REVIEW)
        return self._apply(participant_id, lambda p: lifecycle.set_promotion(p, convert, name))

    # ---------- checkpoint ----------
    def to_checkpoint(self) -> Checkpoint:
        return Checkpoint(
            start_time=self.start_time or 0,
            elapsed_time=self.clock.elapsed_ms(),
            saved_at=self.now_ms(),
            participants=list(self.participants),
            is_running=self.clock.running,
            phase=self.phase,
            finish_time=self.finish_time,
            republish=self.republish,
        )

    @classmethod
    def from_checkpoint(
        cls, checkpoint: Checkpoint, now_ms: Callable[[], int] = wall_clock_ms
    ) -> "RaceSession":
        """Rebuild a session from its checkpoint.

        The phase decides whether the clock runs. A review-phase checkpoint
        always restores a frozen clock, even if ``isRunning`` was left set.
        """
        session = cls(now_ms)
        session.phase = checkpoint.phase
        session.start_time = checkpoint.start_time
        session.finish_time = checkpoint.finish_time
        session.participants = list(checkpoint.participants)
        session.republish = checkpoint.republish
        keep_running = checkpoint.phase == SessionPhase.RUNNING and checkpoint.is_running
        elapsed = checkpoint.elapsed_time
        if checkpoint.phase == SessionPhase.REVIEW and checkpoint.finish_time is not None:
            elapsed = checkpoint.finish_time
        session.clock.restore(elapsed, checkpoint.saved_at, keep_running)
        session.recovered = True
        return session

    @classmethod
    def from_staged_run(
        cls,
        staged: StagedRun,
        roster: Mapping[str, Participant],
        now_ms: Callable[[], int] = wall_clock_ms,
    ) -> "RaceSession":
        """Load a published record back into review for editing and re-publishing."""
        session = cls(now_ms)
        now = now_ms()
        taken: list[str] = []
        for entry in staged.record.participants:
            try:
                finish_ms = parse_race_time(entry.time)
            except ValueError:
                logger.warning("Unreadable time %r for %s in %s", entry.time, entry.runner, staged.date)
                finish_ms = 0
            if entry.runner == GUEST_RUNNER_ID:
                entrant = lifecycle.guest_entrant(entry.guest_name or "Guest", taken)
            else:
                known = roster.get(entry.runner)
                entrant = (
                    lifecycle.roster_entrant(known)
                    if known is not None
                    else TrackedEntrant(id=entry.runner, name=entry.runner)
                )
            taken.append(entrant.id)
            p = lifecycle.enter(entrant, now).model_copy(
                update={
                    "small_loops": entry.small_loops,
                    "medium_loops": entry.medium_loops,
                    "long_loops": entry.long_loops,
                    "finish_time": finish_ms,
                    "status": ParticipantStatus.COMPLETED,
                }
            )
            session.participants.append(p)

        session.finish_time = max((p.finish_time or 0 for p in session.participants), default=0)
        session.start_time = now - session.finish_time
        session.clock.restore(session.finish_time, now, running=False)
        session.phase = SessionPhase.REVIEW
        session.republish = RepublishContext(
            date=staged.date,
            date_time=staged.record.date,
            main_photo=staged.record.main_photo,
            title=staged.record.title,
            body=staged.record.body,
        )
        return session

    # ---------- display ----------
    def snapshot(self, units_km: Mapping[str, float], approach_km: float) -> dict:
        """Render the live view: clock, participants with derived values, groups."""
        elapsed = self.clock.elapsed_ms()
        rows = []
        groups: dict[str, list[str]] = {s.value: [] for s in ParticipantStatus}
        for p in self.participants:
            shown_ms = lifecycle.elapsed_for(p, elapsed)
            row = p.model_dump(by_alias=True, mode="json")
            row["distanceKm"] = round(lifecycle.distance_km(p, units_km, approach_km), 2)
            row["elapsedMs"] = shown_ms
            row["elapsed"] = format_race_time(shown_ms)
            rows.append(row)
            groups[p.status.value].append(p.id)

        return {
            "phase": self.phase.value,
            "running": self.clock.running,
            "elapsed_ms": elapsed,
            "elapsed": format_race_time(elapsed),
            "start_time": self.start_time,
            "recovered": self.recovered,
            "can_end": self.can_end,
            "republish": (
                self.republish.model_dump(by_alias=True) if self.republish else None
            ),
            "participants": rows,
            "groups": groups,
        }
