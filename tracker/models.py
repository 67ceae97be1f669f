"""Pydantic models for roster entries, live race state and published records.

These models define both the local checkpoint format and the JSON documents
written to the content store. Field names are snake_case in Python and
camelCase on the wire.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

GUEST_RUNNER_ID = "guest"


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class LoopKind(str, Enum):
    """Distance categories a participant can complete."""

    SMALL = "small"
    MEDIUM = "medium"
    LONG = "long"


class ParticipantStatus(str, Enum):
    """Lifecycle of a participant within one race."""

    RUNNING = "running"
    FINISHED = "finished"
    COMPLETED = "completed"


class SessionPhase(str, Enum):
    """Lifecycle of the race session as a whole."""

    SETUP = "setup"
    RUNNING = "running"
    REVIEW = "review"


class CamelModel(BaseModel):
    """Base model serialising to camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Roster
# ---------------------------------------------------------------------------

class StartingValues(CamelModel):
    """Historical stats carried over from before the tracker existed."""

    events_attended: Optional[int] = None
    total_km: Optional[float] = None
    avg_pace: Optional[str] = None


class Participant(CamelModel):
    """A registered runner, stored as ``content/runners/<id>.json``."""

    id: str
    name: str
    anonymous: bool = False
    photo: Optional[str] = None
    color_class: Optional[str] = None
    joined_date: Optional[str] = None
    starting_values: Optional[StartingValues] = None

    @property
    def display_name(self) -> str:
        return "Anonymous" if self.anonymous else self.name


class TrackedEntrant(CamelModel):
    """Someone selected for today's race: a roster runner or a guest."""

    id: str
    name: str
    nickname: Optional[str] = None
    photo: Optional[str] = None
    is_guest: bool = False


# ---------------------------------------------------------------------------
# Live race state
# ---------------------------------------------------------------------------

class LiveParticipant(CamelModel):
    """In-race state of one entrant.

    ``id`` is the unique tracking id; ``repo_id`` is the identity the result
    is published under (``guest`` for every unpromoted guest).
    """

    id: str
    repo_id: str
    name: str
    nickname: Optional[str] = None
    photo: Optional[str] = None
    small_loops: int = Field(default=0, ge=0)
    medium_loops: int = Field(default=0, ge=0)
    long_loops: int = Field(default=0, ge=0)
    start_time: int
    finish_time: Optional[int] = Field(default=None, ge=0)
    status: ParticipantStatus = ParticipantStatus.RUNNING
    convert_to_runner: bool = False
    runner_name_override: Optional[str] = None

    @property
    def is_guest(self) -> bool:
        return self.repo_id == GUEST_RUNNER_ID

    def loops(self, kind: LoopKind) -> int:
        return getattr(self, f"{kind.value}_loops")

    @property
    def total_loops(self) -> int:
        return self.small_loops + self.medium_loops + self.long_loops


class RepublishContext(CamelModel):
    """Carried by a session that was loaded back from a staged run."""

    date: str  # YYYY-MM-DD
    date_time: Optional[str] = None  # ISO timestamp of the staged record
    main_photo: Optional[str] = None
    title: Optional[str] = None
    body: Optional[str] = None


class Checkpoint(CamelModel):
    """Durable local snapshot of the in-progress session."""

    start_time: int
    elapsed_time: int = Field(ge=0)
    saved_at: int
    participants: list[LiveParticipant] = Field(default_factory=list)
    is_running: bool
    phase: SessionPhase
    finish_time: Optional[int] = None
    republish: Optional[RepublishContext] = None


# ---------------------------------------------------------------------------
# Published record
# ---------------------------------------------------------------------------

class PublishedParticipant(CamelModel):
    """One participant line in a published race record."""

    runner: str
    guest_name: Optional[str] = None
    small_loops: int = 0
    medium_loops: int = 0
    long_loops: int = 0
    time: str


class RaceRecord(CamelModel):
    """Per-day race document, ``content/staging/runs/<date>.json``."""

    date: str
    main_photo: str
    title: Optional[str] = None
    body: Optional[str] = None
    participants: list[PublishedParticipant] = Field(default_factory=list)

    def to_json_str(self) -> str:
        """Serialize for storage, omitting absent optional fields."""
        return self.model_dump_json(by_alias=True, exclude_none=True, indent=2)


class StagedRun(CamelModel):
    """A previously published record plus the date taken from its filename."""

    date: str
    record: RaceRecord


# ---------------------------------------------------------------------------
# Operator API request bodies
# ---------------------------------------------------------------------------

class StartRaceRequest(BaseModel):
    """Roster ids and guest nicknames selected on the setup screen."""

    participant_ids: list[str] = Field(default_factory=list)
    guests: list[str] = Field(default_factory=list)


class AddParticipantRequest(BaseModel):
    """Late addition: either a roster id or a guest nickname."""

    participant_id: Optional[str] = None
    guest_nickname: Optional[str] = None


class LoopAdjustRequest(BaseModel):
    kind: LoopKind
    delta: int = 1


class AdjustTimeRequest(BaseModel):
    """Nudge a finish time by a number of steps (negative = earlier)."""

    steps: int = 1


class PromotionRequest(BaseModel):
    convert: bool
    name: Optional[str] = None


class PublishRequest(BaseModel):
    """Publish the reviewed session.

    ``photo_base64`` may be omitted only when re-publishing a staged run.
    """

    date: Optional[str] = None  # YYYY-MM-DD, defaults to today
    title: Optional[str] = None
    body: Optional[str] = None
    photo_base64: Optional[str] = None
