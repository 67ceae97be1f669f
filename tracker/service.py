"""Operator-facing service: one race session plus its collaborators.

Every mutating operation changes the session and then writes the checkpoint,
so the stored checkpoint always matches the last accepted operator action.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Iterable, Optional

from tracker import lifecycle
from tracker.archive import RunArchive
from tracker.checkpoint import CheckpointStore
from tracker.config import TrackerSettings
from tracker.models import (
    LiveParticipant,
    LoopKind,
    Participant,
    SessionPhase,
    StagedRun,
    TrackedEntrant,
)
from tracker.publish import PublishProtocol, PublishResult
from tracker.race_clock import format_race_time, wall_clock_ms
from tracker.roster import RosterProvider
from tracker.session import RaceSession, SessionError
from tracker.store_client import ContentStoreClient, StoreNotFoundError

logger = logging.getLogger(__name__)


class TrackerService:
    """Runs the single active race for one operator."""

    def __init__(
        self,
        settings: TrackerSettings,
        store: ContentStoreClient,
        checkpoints: CheckpointStore,
        now_ms: Callable[[], int] = wall_clock_ms,
    ) -> None:
        self.settings = settings
        self.store = store
        self.checkpoints = checkpoints
        self.now_ms = now_ms
        self.roster = RosterProvider(store, settings.runners_dir, settings.runner_photos_dir)
        self.archive = RunArchive(store, settings.results_dir, settings.staged_runs_dir)
        self.publisher = PublishProtocol(
            store,
            race_photos_dir=settings.race_photos_dir,
            runners_dir=settings.runners_dir,
            staged_runs_dir=settings.staged_runs_dir,
        )
        self.session = RaceSession(now_ms)
        self.seed_times: dict[str, int] = {}
        self.last_publish: Optional[PublishResult] = None
        self._publishing = False

    # ---------- startup ----------
    def restore(self) -> bool:
        """Resume from the checkpoint, if there is a usable one.

        Returns:
            True if a session was recovered. The session stays flagged as
            recovered until the operator acknowledges it.
        """
        checkpoint = self.checkpoints.load()
        if checkpoint is None or checkpoint.phase == SessionPhase.SETUP:
            return False
        self.session = RaceSession.from_checkpoint(checkpoint, self.now_ms)
        logger.warning(
            "Recovered %s race with %d participants at %s",
            self.session.phase.value,
            len(self.session.participants),
            format_race_time(self.session.clock.elapsed_ms()),
        )
        return True

    async def refresh_roster(self) -> list[Participant]:
        await self.roster.list_participants()
        return self.roster.selectable()

    async def refresh_seed_times(self) -> dict[str, int]:
        self.seed_times = await self.archive.fetch_seed_times()
        return self.seed_times

    # ---------- view ----------
    def snapshot(self) -> dict:
        """Current session view for the operator screens.

        Returns:
            The session snapshot plus a ``publishing`` flag.
        """
        snap = self.session.snapshot(self.settings.loop_units_km, self.settings.approach_km)
        snap["publishing"] = self._publishing
        return snap

    @property
    def publishing(self) -> bool:
        return self._publishing

    def _ensure_idle(self) -> None:
        # A publish commits the participants it was handed; later edits would be lost.
        if self._publishing:
            raise SessionError("A publish is in progress")

    def _checkpoint(self) -> None:
        if self.session.is_active:
            self.checkpoints.save(self.session.to_checkpoint())

    def _fresh_session(self) -> None:
        self.checkpoints.clear()
        self.session = RaceSession(self.now_ms)

    def _entrant_for(self, participant_id: str) -> TrackedEntrant:
        runner = self.roster.get(participant_id)
        if runner is None:
            raise KeyError(participant_id)
        return lifecycle.roster_entrant(runner)

    # ---------- race ----------
    def start_race(self, participant_ids: Iterable[str], guests: Iterable[str] = ()) -> dict:
        """Start the clock with the selected runners and guests.

        Args:
            participant_ids: Roster ids chosen on the setup screen.
            guests: Nicknames of guests running today.

        Returns:
            The session snapshot.

        Raises:
            KeyError: If a roster id is unknown.
            ValueError: If a guest nickname is empty.
            SessionError: If a race is already under way or nobody was selected.
        """
        self._ensure_idle()
        entrants = [self._entrant_for(pid) for pid in participant_ids]
        taken = [e.id for e in entrants]
        for nickname in guests:
            guest = lifecycle.guest_entrant(nickname, taken)
            taken.append(guest.id)
            entrants.append(guest)
        self.session.start(entrants, self.seed_times)
        self._checkpoint()
        return self.snapshot()

    def pause(self) -> dict:
        """Freeze the race clock."""
        self._ensure_idle()
        self.session.pause()
        self._checkpoint()
        return self.snapshot()

    def resume(self) -> dict:
        """Restart the race clock from where it was paused."""
        self._ensure_idle()
        self.session.resume()
        self._checkpoint()
        return self.snapshot()

    def end_race(self) -> dict:
        """Stop the clock and move to review once every runner is completed."""
        self._ensure_idle()
        self.session.end()
        self._checkpoint()
        return self.snapshot()

    def back_to_tracking(self) -> dict:
        """Leave review and carry on tracking with the clock running."""
        self._ensure_idle()
        self.session.back_to_tracking()
        self._checkpoint()
        return self.snapshot()

    def cancel(self) -> dict:
        """Discard the race and its checkpoint and return to setup."""
        self._ensure_idle()
        logger.info("Race cancelled (phase was %s)", self.session.phase.value)
        self._fresh_session()
        return self.snapshot()

    def acknowledge_recovery(self) -> dict:
        self.session.recovered = False
        return self.snapshot()

    # ---------- participants ----------
    def add_participant(
        self, participant_id: Optional[str] = None, guest_nickname: Optional[str] = None
    ) -> LiveParticipant:
        """Add a late arrival to the running race.

        Args:
            participant_id: Roster id of the runner, or None for a guest.
            guest_nickname: Display name of a guest, used when no id is given.

        Returns:
            The new live participant.

        Raises:
            ValueError: If neither an id nor a nickname was given.
            KeyError: If the roster id is unknown.
        """
        self._ensure_idle()
        if participant_id:
            entrant = self._entrant_for(participant_id)
        elif guest_nickname and guest_nickname.strip():
            entrant = lifecycle.guest_entrant(
                guest_nickname, (p.id for p in self.session.participants)
            )
        else:
            raise ValueError("Give either a runner id or a guest nickname")
        p = self.session.add_participant(entrant)
        self._checkpoint()
        return p

    def remove_participant(self, participant_id: str) -> LiveParticipant:
        """Take a participant out of the race.

        Args:
            participant_id: Tracking id of the participant.
        """
        self._ensure_idle()
        p = self.session.remove_participant(participant_id)
        self._checkpoint()
        return p

    def adjust_loops(self, participant_id: str, kind: LoopKind, delta: int) -> LiveParticipant:
        """Add or remove loops of one distance category.

        Args:
            participant_id: Tracking id of the participant.
            kind: Loop category.
            delta: Loops to add (negative to remove); the count never drops below zero.
        """
        self._ensure_idle()
        p = self.session.adjust_loops(participant_id, kind, delta)
        self._checkpoint()
        return p

    def finish(self, participant_id: str) -> LiveParticipant:
        """Stamp the current race time as the participant's finish time.

        Args:
            participant_id: Tracking id of a running participant.
        """
        self._ensure_idle()
        p = self.session.finish(participant_id)
        self._checkpoint()
        return p

    def complete(self, participant_id: str) -> LiveParticipant:
        """Mark a finished participant's data entry as done.

        Args:
            participant_id: Tracking id of a finished participant.
        """
        self._ensure_idle()
        p = self.session.complete(participant_id)
        self._checkpoint()
        return p

    def undo_complete(self, participant_id: str) -> LiveParticipant:
        self._ensure_idle()
        p = self.session.undo_complete(participant_id)
        self._checkpoint()
        return p

    def resume_participant(self, participant_id: str) -> LiveParticipant:
        """Put a finished participant back on the course, dropping the finish time.

        Args:
            participant_id: Tracking id of a finished participant.
        """
        self._ensure_idle()
        p = self.session.resume_participant(participant_id)
        self._checkpoint()
        return p

    def adjust_finish_time(self, participant_id: str, steps: int) -> LiveParticipant:
        """Nudge a finish time by whole adjustment steps.

        Args:
            participant_id: Tracking id of a finished participant.
            steps: Number of ``finish_adjust_step_ms`` steps; negative is earlier.
        """
        self._ensure_idle()
        delta = int(steps) * self.settings.finish_adjust_step_ms
        p = self.session.adjust_finish_time(participant_id, delta)
        self._checkpoint()
        return p

    def set_promotion(self, participant_id: str, convert: bool, name: Optional[str] = None) -> LiveParticipant:
        """Choose whether a guest becomes a roster runner on publish.

        Args:
            participant_id: Tracking id of a guest.
            convert: True to create a runner profile when publishing.
            name: Optional full name for the new profile; defaults to the nickname.
        """
        self._ensure_idle()
        p = self.session.set_promotion(participant_id, convert, name)
        self._checkpoint()
        return p

    # ---------- publish ----------
    async def publish(
        self,
        photo: Optional[bytes] = None,
        title: Optional[str] = None,
        body: Optional[str] = None,
        race_date: Optional[datetime] = None,
    ) -> PublishResult:
        """Publish the reviewed race.

        On success the checkpoint is deleted and a fresh session begins. On
        any failure the session and checkpoint are left exactly as they were.
        While the publish is awaiting the store, every other session action
        is refused.

        Args:
            photo: JPEG bytes of the race photo (optional when re-publishing).
            title: Optional record title.
            body: Optional record body text.
            race_date: When the race took place; defaults to now.

        Returns:
            The commit details.

        Raises:
            SessionError: If not in review or a publish is already running.
            PublishValidationError: If the request is incomplete.
            PublishError: If the store rejected any step.
        """
        if self.session.phase != SessionPhase.REVIEW:
            raise SessionError("End the race before publishing")
        if self._publishing:
            raise SessionError("A publish is already in progress")

        self._publishing = True
        try:
            result = await self.publisher.publish(
                list(self.session.participants),
                race_date=race_date,
                photo=photo,
                title=title,
                body=body,
                republish=self.session.republish,
                known_ids=self.roster.ids(),
            )
        finally:
            self._publishing = False

        self.last_publish = result
        self._fresh_session()
        return result

    # ---------- staged runs ----------
    async def list_staged_runs(self) -> list[StagedRun]:
        return await self.archive.list_staged_runs()

    async def load_staged_run(self, date: str) -> dict:
        """Open a published record in review so it can be corrected and re-published.

        Args:
            date: Race date (``YYYY-MM-DD``) of the staged record.

        Returns:
            The session snapshot.

        Raises:
            SessionError: If a race is in progress or being published.
            KeyError: If there is no record for ``date``.
        """
        self._ensure_idle()
        if self.session.phase != SessionPhase.SETUP:
            raise SessionError("Finish or cancel the current race first")
        try:
            staged = await self.archive.get_staged_run(date)
        except StoreNotFoundError:
            raise KeyError(date) from None
        self.session = RaceSession.from_staged_run(staged, self.roster.as_mapping(), self.now_ms)
        self._checkpoint()
        logger.info("Loaded staged run %s for re-publishing", date)
        return self.snapshot()
