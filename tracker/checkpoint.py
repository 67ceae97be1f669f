"""Session persistence guard.

Writes the in-progress race to a single JSON file after every mutation and
reads it back on startup, so a reload or crash mid-race resumes where it
left off. The file has this shape::

    {"startTime": ..., "elapsedTime": ..., "savedAt": ..., "participants": [...],
     "isRunning": ..., "phase": ..., "finishTime": ...}

Only one tracker process should use a checkpoint file at a time. A second
process (or browser tab driving a second process) silently overwrites it:
last writer wins.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from tracker.models import Checkpoint

logger = logging.getLogger(__name__)


class CheckpointStore:
    """Single-slot JSON checkpoint on the local filesystem."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._saves = 0

    @property
    def path(self) -> Path:
        return self._path

    @property
    def exists(self) -> bool:
        return self._path.exists()

    @property
    def save_count(self) -> int:
        return self._saves

    def save(self, checkpoint: Checkpoint) -> None:
        """Atomically replace the checkpoint file.

        The JSON is written to a temporary file in the same directory and
        moved into place, so readers see either the old or the new file.
        """
        self._path.parent.mkdir(parents=True, exist_ok=True)
        data = checkpoint.model_dump_json(by_alias=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self._path.name}.", suffix=".tmp", dir=self._path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, self._path)
        except BaseException:
            with contextlib.suppress(OSError):
                os.unlink(tmp_name)
            raise
        self._saves += 1
        logger.debug(
            "Checkpoint saved: phase=%s, %d participants",
            checkpoint.phase.value,
            len(checkpoint.participants),
        )

    def load(self) -> Optional[Checkpoint]:
        """Read the checkpoint.

        Returns:
            The checkpoint, or None if there is none or it cannot be read.
            Corrupt or partially written files never raise. They are logged
            and ignored, and the next save overwrites them.
        """
        if not self._path.exists():
            return None
        try:
            with open(self._path, "r", encoding="utf-8") as fh:
                raw = json.load(fh)
            return Checkpoint.model_validate(raw)
        except (OSError, ValueError, RecursionError, ValidationError) as e:
            logger.warning("Ignoring unreadable checkpoint %s: %s", self._path, e)
            return None

    def clear(self) -> None:
        """Delete the checkpoint (race cancelled or published)."""
        with contextlib.suppress(OSError):
            self._path.unlink()
        logger.info("Checkpoint cleared: %s", self._path)

