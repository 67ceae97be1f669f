"""Publish protocol: commit a finished race as one atomic change.

The store's contents API writes one file per commit. To land the race photo,
the race record and any new runner profiles together, the protocol builds
the commit from git data API primitives instead:

    head commit → base tree → blobs → new tree → commit → move branch ref

Every step before the ref update only creates new, unreferenced objects.
The ref update is the single point where the change becomes visible, so a
failed publish leaves nothing behind and can be retried in full.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Optional, Sequence

from tracker import lifecycle
from tracker.models import (
    GUEST_RUNNER_ID,
    LiveParticipant,
    Participant,
    PublishedParticipant,
    RaceRecord,
    RepublishContext,
)
from tracker.race_clock import format_race_time
from tracker.roster import public_path
from tracker.store_client import ContentStoreClient, StoreError, TreeEntry

logger = logging.getLogger(__name__)

PUBLISH_FAILED_MESSAGE = "Publish failed, please retry"
DEFAULT_NEW_RUNNER_NAME = "New Runner"

_NON_SLUG = re.compile(r"[^a-z0-9]+")


class PublishValidationError(ValueError):
    """The publish request is incomplete or inconsistent; nothing was sent."""


class PublishError(RuntimeError):
    """A store call failed during publish. Safe to retry in full."""

    def __init__(self, message: str = PUBLISH_FAILED_MESSAGE) -> None:
        super().__init__(message)


def derive_profile_id(name: str) -> str:
    """Slug for a new runner profile.

    Lowercase, runs of non-alphanumerics collapsed to ``-``, and leading and
    trailing ``-`` removed: ``"  Dave (Sarah's friend)"`` → ``"dave-sarah-s-friend"``.
    """
    return _NON_SLUG.sub("-", name.lower()).strip("-")


def iso_timestamp(moment: datetime) -> str:
    """UTC ISO-8601 with millisecond precision and a ``Z`` suffix."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return (
        moment.astimezone(timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


@dataclass(frozen=True)
class Artifact:
    """One file to add or replace in the publish commit."""

    path: str
    content: bytes
    encoding: str  # "base64" | "utf-8"


@dataclass
class PublishPlan:
    """Everything needed for the commit, computed without touching the store."""

    date: str
    record_path: str
    record: RaceRecord
    message: str
    artifacts: list[Artifact] = field(default_factory=list)
    new_profiles: list[Participant] = field(default_factory=list)

    @property
    def paths(self) -> list[str]:
        return [a.path for a in self.artifacts]


@dataclass
class PublishResult:
    """Outcome of a successful publish."""

    date: str
    commit_sha: str
    parent_sha: str
    record_path: str
    paths: list[str]
    new_profiles: list[str]

    def as_dict(self) -> dict:
        return {
            "date": self.date,
            "commit_sha": self.commit_sha,
            "parent_sha": self.parent_sha,
            "record_path": self.record_path,
            "paths": list(self.paths),
            "new_profiles": list(self.new_profiles),
        }


class PublishProtocol:
    """Builds and commits race records against one content store."""

    def __init__(
        self,
        store: ContentStoreClient,
        race_photos_dir: str = "assets/images/races",
        runners_dir: str = "content/runners",
        staged_runs_dir: str = "content/staging/runs",
    ) -> None:
        self._store = store
        self._race_photos_dir = race_photos_dir.strip("/")
        self._runners_dir = runners_dir.strip("/")
        self._staged_runs_dir = staged_runs_dir.strip("/")

    # ---------- planning ----------
    def plan(
        self,
        participants: Sequence[LiveParticipant],
        race_date: Optional[datetime] = None,
        photo: Optional[bytes] = None,
        title: Optional[str] = None,
        body: Optional[str] = None,
        republish: Optional[RepublishContext] = None,
        known_ids: Iterable[str] = (),
    ) -> PublishPlan:
        """Build the artifact set and race record.

        Args:
            participants: The session's participants, in display order.
            race_date: When the race took place; defaults to now. Ignored
                when re-publishing.
            photo: JPEG bytes of the race photo. Required unless re-publishing
                a record that already has one.
            title: Optional record title.
            body: Optional record body text.
            republish: Context of the staged run being overwritten, if any.
            known_ids: Existing roster ids that a promoted guest must not reuse.

        Raises:
            PublishValidationError: If the request cannot be published.
        """
        if not lifecycle.all_completed(participants):
            raise PublishValidationError("Every runner must be completed before publishing")

        if republish is not None:
            date = republish.date
            date_time = republish.date_time or iso_timestamp(
                datetime.strptime(date, "%Y-%m-%d").replace(tzinfo=timezone.utc)
            )
        else:
            moment = race_date or datetime.now(timezone.utc)
            date = moment.date().isoformat()
            date_time = iso_timestamp(moment)

        artifacts: list[Artifact] = []

        # Photo
        if photo:
            photo_path = f"{self._race_photos_dir}/{date}.jpg"
            artifacts.append(Artifact(photo_path, photo, "base64"))
            main_photo = public_path(photo_path)
        elif republish is not None and republish.main_photo:
            main_photo = republish.main_photo
        else:
            raise PublishValidationError("A race photo is required")

        # Promoted guests
        taken = set(known_ids)
        promoted: dict[str, str] = {}  # tracking id → new profile id
        new_profiles: list[Participant] = []
        for p in participants:
            if not (p.is_guest and p.convert_to_runner):
                continue
            name = (p.runner_name_override or p.nickname or DEFAULT_NEW_RUNNER_NAME).strip()
            profile_id = derive_profile_id(name)
            if not profile_id:
                raise PublishValidationError(
                    f"Cannot derive a runner id from the name {name!r}"
                )
            if profile_id == GUEST_RUNNER_ID or profile_id in taken:
                raise PublishValidationError(
                    f"A runner with id '{profile_id}' already exists"
                )
            taken.add(profile_id)
            profile = Participant(id=profile_id, name=name, anonymous=False, joined_date=date)
            new_profiles.append(profile)
            promoted[p.id] = profile_id
            artifacts.append(
                Artifact(
                    f"{self._runners_dir}/{profile_id}.json",
                    profile.model_dump_json(by_alias=True, exclude_none=True, indent=2).encode("utf-8"),
                    "utf-8",
                )
            )

        # Race record
        record = RaceRecord(
            date=date_time,
            main_photo=main_photo,
            title=title or (republish.title if republish else None) or None,
            body=body or (republish.body if republish else None) or None,
            participants=[self._published_entry(p, promoted.get(p.id)) for p in participants],
        )
        record_path = f"{self._staged_runs_dir}/{date}.json"
        artifacts.append(Artifact(record_path, record.to_json_str().encode("utf-8"), "utf-8"))

        verb = "update" if republish is not None else "add"
        message = f"feat(runs): {verb} run data for {date}"
        if new_profiles:
            message += "\n\nNew runners: " + ", ".join(prof.id for prof in new_profiles)

        return PublishPlan(
            date=date,
            record_path=record_path,
            record=record,
            message=message,
            artifacts=artifacts,
            new_profiles=new_profiles,
        )

    @staticmethod
    def _published_entry(p: LiveParticipant, promoted_id: Optional[str]) -> PublishedParticipant:
        if promoted_id:
            runner = promoted_id
        elif p.is_guest:
            runner = GUEST_RUNNER_ID
        else:
            runner = p.repo_id
        return PublishedParticipant(
            runner=runner,
            guest_name=p.nickname if (p.is_guest and not promoted_id and p.nickname) else None,
            small_loops=p.small_loops,
            medium_loops=p.medium_loops,
            long_loops=p.long_loops,
            time=format_race_time(p.finish_time or 0),
        )

    # ---------- commit ----------
    async def _create_blobs(self, artifacts: Sequence[Artifact]) -> list[str]:
        """Upload every artifact concurrently.

        Blobs are independent of each other; the tree needs all of them. On
        the first failure the remaining uploads are cancelled and awaited so
        no task outlives the publish.
        """
        tasks = [
            asyncio.ensure_future(self._store.create_blob(a.content, a.encoding))
            for a in artifacts
        ]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def commit(self, plan: PublishPlan) -> PublishResult:
        """Write the plan as a single commit and advance the branch.

        Raises:
            PublishError: If any store call fails. The branch is only moved
                by the last call, so on failure the branch is unchanged.
        """
        try:
            head = await self._store.get_branch_head()
            base_tree = await self._store.get_commit_tree(head)

            blob_shas = await self._create_blobs(plan.artifacts)
            tree = await self._store.create_tree(
                base_tree,
                [TreeEntry(path=a.path, sha=sha) for a, sha in zip(plan.artifacts, blob_shas)],
            )
            commit = await self._store.create_commit(plan.message, tree, head)
            await self._store.update_branch_ref(commit)
        except StoreError as e:
            logger.error("Publish of %s failed: %s", plan.date, e)
            raise PublishError() from e

        logger.info(
            "Published %s as %s (%d files, %d new runners)",
            plan.date,
            commit[:7],
            len(plan.artifacts),
            len(plan.new_profiles),
        )
        return PublishResult(
            date=plan.date,
            commit_sha=commit,
            parent_sha=head,
            record_path=plan.record_path,
            paths=plan.paths,
            new_profiles=[prof.id for prof in plan.new_profiles],
        )

    async def publish(
        self,
        participants: Sequence[LiveParticipant],
        race_date: Optional[datetime] = None,
        photo: Optional[bytes] = None,
        title: Optional[str] = None,
        body: Optional[str] = None,
        republish: Optional[RepublishContext] = None,
        known_ids: Iterable[str] = (),
    ) -> PublishResult:
        """Validate, plan and commit in one call."""
        plan = self.plan(
            participants,
            race_date=race_date,
            photo=photo,
            title=title,
            body=body,
            republish=republish,
            known_ids=known_ids,
        )
        return await self.commit(plan)
