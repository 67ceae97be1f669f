"""Readers for previously published races.

Two sources live in the content repository:

* ``content/results/<date>.md``: final results pages with YAML front matter,
  used for seed times
* ``content/staging/runs/<date>.json``: records written by the tracker,
  which can be loaded back for re-publishing
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

import yaml
from pydantic import ValidationError

from tracker.models import GUEST_RUNNER_ID, RaceRecord, StagedRun
from tracker.race_clock import parse_race_time
from tracker.store_client import ContentStoreClient, StoreError, StoreNotFoundError

logger = logging.getLogger(__name__)

# Counters for observability
_counters: dict[str, int] = {
    "results_parsed": 0,
    "results_parse_errors": 0,
    "staged_runs_parsed": 0,
    "staged_run_parse_errors": 0,
}


def get_archive_counters() -> dict[str, int]:
    """Return a copy of archive diagnostic counters."""
    return dict(_counters)


# ---------------------------------------------------------------------------
# Results pages (markdown with front matter)
# ---------------------------------------------------------------------------

def parse_front_matter(text: str) -> dict[str, Any]:
    """Parse the YAML block between the leading ``---`` markers.

    Args:
        text: Full markdown document.

    Returns:
        The front matter mapping; empty if absent.

    Raises:
        yaml.YAMLError: If the block is not valid YAML.
    """
    lines = text.lstrip("\ufeff").splitlines()
    if not lines or lines[0].strip() != "---":
        return {}
    block: list[str] = []
    for line in lines[1:]:
        if line.strip() == "---":
            break
        block.append(line)
    data = yaml.safe_load("\n".join(block))
    return data if isinstance(data, dict) else {}


def _time_to_ms(value: Any) -> Optional[int]:
    # Unquoted "25:30" is read by YAML 1.1 as a base-60 integer (seconds).
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value * 1000
    if isinstance(value, str):
        try:
            return parse_race_time(value)
        except ValueError:
            return None
    return None


def seed_times_from_front_matter(front_matter: dict[str, Any]) -> dict[str, int]:
    """Map runner id → finish time (ms) from a results page.

    Guests and entries without a readable time are skipped.
    """
    times: dict[str, int] = {}
    for entry in front_matter.get("participants") or []:
        if not isinstance(entry, dict):
            continue
        runner = entry.get("runner")
        if not runner or runner == GUEST_RUNNER_ID:
            continue
        ms = _time_to_ms(entry.get("time"))
        if ms is not None:
            times[str(runner)] = ms
    return times


# ---------------------------------------------------------------------------
# Archive
# ---------------------------------------------------------------------------

class RunArchive:
    """Read access to published results and staged race records."""

    def __init__(
        self,
        store: ContentStoreClient,
        results_dir: str = "content/results",
        staged_runs_dir: str = "content/staging/runs",
    ) -> None:
        self._store = store
        self._results_dir = results_dir.strip("/")
        self._staged_runs_dir = staged_runs_dir.strip("/")

    def staged_run_path(self, date: str) -> str:
        return f"{self._staged_runs_dir}/{date}.json"

    async def fetch_seed_times(self) -> dict[str, int]:
        """Finish times from the most recent results page.

        Returns:
            Runner id → milliseconds. Empty on any failure.
        """
        try:
            entries = await self._store.list_directory(self._results_dir)
            pages = sorted(
                (e for e in entries if e.type == "file" and e.name.endswith(".md")),
                key=lambda e: e.name,
                reverse=True,
            )
            if not pages:
                return {}
            latest = pages[0]
            front_matter = parse_front_matter(await self._store.read_text(latest.path))
        except StoreError as e:
            logger.warning("Could not fetch seed times: %s", e)
            return {}
        except (yaml.YAMLError, UnicodeDecodeError) as e:
            _counters["results_parse_errors"] += 1
            logger.warning("Could not parse latest results page: %s", e)
            return {}

        _counters["results_parsed"] += 1
        times = seed_times_from_front_matter(front_matter)
        logger.info("Loaded %d seed times from %s", len(times), latest.name)
        return times

    async def list_staged_runs(self) -> list[StagedRun]:
        """All staged records, newest date first. Empty on any failure."""
        try:
            entries = await self._store.list_directory(self._staged_runs_dir)
        except StoreNotFoundError:
            return []
        except StoreError as e:
            logger.warning("Could not list staged runs: %s", e)
            return []

        runs: list[StagedRun] = []
        for entry in entries:
            if entry.type != "file" or not entry.name.endswith(".json"):
                continue
            date = entry.name[: -len(".json")]
            try:
                runs.append(await self.get_staged_run(date))
            except StoreError as e:
                logger.warning("Could not read staged run %s: %s", entry.path, e)
            except (ValueError, ValidationError) as e:
                _counters["staged_run_parse_errors"] += 1
                logger.warning("Failed to parse staged run file %s: %s", entry.path, e)

        runs.sort(key=lambda r: r.date, reverse=True)
        return runs

    async def get_staged_run(self, date: str) -> StagedRun:
        """Load one staged record.

        Raises:
            StoreNotFoundError: If no record exists for ``date``.
            StoreError: On other store failures.
            ValueError: If the file is not a valid record.
        """
        text = await self._store.read_text(self.staged_run_path(date))
        record = RaceRecord.model_validate(json.loads(text))
        _counters["staged_runs_parsed"] += 1
        return StagedRun(date=date, record=record)
