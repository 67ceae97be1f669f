"""Roster provider: registered runners stored in the content repository.

Each runner is one JSON file under the runners directory. Read failures
are logged and treated as an empty roster, so a flaky network never blocks
race setup.
"""

from __future__ import annotations

import json
import logging
from typing import Optional

from pydantic import ValidationError

from tracker.models import GUEST_RUNNER_ID, Participant
from tracker.store_client import ContentStoreClient, StoreError

logger = logging.getLogger(__name__)


class RosterProvider:
    """Cached roster backed by the content store.

    Provides O(1) lookup by runner id once loaded.
    """

    def __init__(
        self,
        store: ContentStoreClient,
        runners_dir: str = "content/runners",
        photos_dir: str = "assets/images/runners",
    ) -> None:
        self._store = store
        self._runners_dir = runners_dir.strip("/")
        self._photos_dir = photos_dir.strip("/")
        self._by_id: dict[str, Participant] = {}

    async def list_participants(self) -> list[Participant]:
        """Fetch every runner profile and refresh the cache.

        Returns:
            Runners sorted by name. On a store failure the cache is left as
            it was and an empty list is returned.
        """
        try:
            entries = await self._store.list_directory(self._runners_dir)
        except StoreError as e:
            logger.warning("Could not list runners in %s: %s", self._runners_dir, e)
            return []

        runners: dict[str, Participant] = {}
        for entry in entries:
            if entry.type != "file" or not entry.name.endswith(".json") or entry.name.startswith("_"):
                continue
            try:
                raw = json.loads(await self._store.read_text(entry.path))
                if isinstance(raw, dict):
                    raw.setdefault("id", entry.name[: -len(".json")])
                runner = Participant.model_validate(raw)
            except StoreError as e:
                logger.warning("Could not read runner file %s: %s", entry.path, e)
                continue
            except (ValueError, ValidationError) as e:
                logger.warning("Failed to parse runner file %s: %s", entry.path, e)
                continue
            runners[runner.id] = runner

        self._by_id = runners
        logger.info("Loaded %d runners into roster", len(self._by_id))
        return self.all_participants()

    def get(self, participant_id: str) -> Optional[Participant]:
        return self._by_id.get(participant_id)

    def selectable(self) -> list[Participant]:
        """Runners offered on the setup screen (the shared guest profile excluded)."""
        return [p for p in self.all_participants() if p.id != GUEST_RUNNER_ID]

    @property
    def count(self) -> int:
        return len(self._by_id)

    def ids(self) -> set[str]:
        return set(self._by_id)

    def as_mapping(self) -> dict[str, Participant]:
        return dict(self._by_id)

    def all_participants(self) -> list[Participant]:
        """Return all cached runners sorted by name."""
        return sorted(self._by_id.values(), key=lambda p: p.name.casefold())

    async def create_or_update_participant(
        self, participant: Participant, photo: Optional[bytes] = None
    ) -> Participant:
        """Write one runner profile, uploading its photo first if given.

        Each file is written with its own commit through the single-file
        contents API.

        Raises:
            StoreError: If either write fails.
        """
        if photo:
            photo_path = f"{self._photos_dir}/{participant.id}.jpg"
            sha = await self._store.get_file_sha(photo_path)
            await self._store.create_or_update_file(
                photo_path,
                photo,
                f"feat(images): add photo for runner {participant.name}",
                sha=sha,
            )
            participant = participant.model_copy(
                update={"photo": public_path(photo_path)}
            )

        path = f"{self._runners_dir}/{participant.id}.json"
        sha = await self._store.get_file_sha(path)
        verb = "Update" if sha else "Create"
        content = participant.model_dump_json(by_alias=True, exclude_none=True, indent=2)
        await self._store.create_or_update_file(
            path,
            content.encode("utf-8"),
            f'feat(content): {verb} runner "{participant.name}"',
            sha=sha,
        )
        self._by_id[participant.id] = participant
        logger.info("%sd runner profile %s", verb, participant.id)
        return participant


def public_path(repo_path: str) -> str:
    """Site-relative reference for an asset path: ``assets/x/y.jpg`` → ``/x/y.jpg``."""
    path = repo_path.strip("/")
    if path.startswith("assets/"):
        path = path[len("assets/"):]
    return "/" + path
