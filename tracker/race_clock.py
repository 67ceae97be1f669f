"""Global race clock with pause/resume.

Elapsed time is always derived from a fixed origin (``now - origin``) while
running, or read from a frozen value while paused. It is never accumulated
tick by tick, so the refresh rate of any display has no effect on it and
the clock can be rebuilt from a checkpoint alone.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Optional


def wall_clock_ms() -> int:
    """Current Unix time in milliseconds."""
    return int(time.time() * 1000)


@dataclass
class ClockState:
    """Exportable clock state for checkpointing."""

    elapsed_ms: int
    running: bool


class RaceClock:
    """Elapsed-time source for a single race.

    Attributes:
        now_ms: Time source returning Unix milliseconds. Wall-clock time is
            used (not a monotonic counter) so that elapsed time keeps
            advancing across a process restart.
    """

    def __init__(self, now_ms: Callable[[], int] = wall_clock_ms) -> None:
        self.now_ms = now_ms
        self._origin: Optional[int] = None
        self._frozen_ms: int = 0

    @property
    def running(self) -> bool:
        return self._origin is not None

    def start(self) -> None:
        """Start from zero with the origin fixed at now."""
        self._origin = self.now_ms()
        self._frozen_ms = 0

    def pause(self) -> None:
        """Freeze elapsed time and discard the origin."""
        if self._origin is None:
            return
        self._frozen_ms = max(0, self.now_ms() - self._origin)
        self._origin = None

    def resume(self) -> None:
        """Pick a new origin so that ``now - origin`` equals the frozen value."""
        if self._origin is not None:
            return
        self._origin = self.now_ms() - self._frozen_ms

    def reset(self) -> None:
        self._origin = None
        self._frozen_ms = 0

    def elapsed_ms(self) -> int:
        """Elapsed race time in milliseconds."""
        if self._origin is None:
            return self._frozen_ms
        return max(0, self.now_ms() - self._origin)

    def state(self) -> ClockState:
        return ClockState(elapsed_ms=self.elapsed_ms(), running=self.running)

    def restore(self, elapsed_ms: int, saved_at_ms: int, running: bool) -> None:
        """Rebuild the clock from a checkpoint.

        Args:
            elapsed_ms: Elapsed time recorded in the checkpoint.
            saved_at_ms: Wall-clock time the checkpoint was written.
            running: Whether the clock was running at that moment. When
                True, the time since ``saved_at_ms`` is added on (never
                negative, in case the system clock went backwards).
        """
        elapsed_ms = max(0, int(elapsed_ms))
        if running:
            now = self.now_ms()
            gap_ms = max(0, now - int(saved_at_ms))
            self._origin = now - (elapsed_ms + gap_ms)
            self._frozen_ms = 0
        else:
            self._origin = None
            self._frozen_ms = elapsed_ms


def format_race_time(ms: Optional[int]) -> str:
    """Format elapsed milliseconds as ``MM:SS``, or ``H:MM:SS`` past one hour."""
    if ms is None:
        return ""
    total_s = max(0, int(ms)) // 1000
    hours = total_s // 3600
    minutes = (total_s % 3600) // 60
    seconds = total_s % 60
    if hours > 0:
        return f"{hours}:{minutes:02d}:{seconds:02d}"
    return f"{minutes:02d}:{seconds:02d}"


def parse_race_time(text: str) -> int:
    """Parse ``SS``, ``MM:SS`` or ``H:MM:SS`` into milliseconds.

    Raises:
        ValueError: If the text is not in one of those forms.
    """
    parts = str(text).strip().split(":")
    if not parts or any(not p.isdigit() for p in parts) or len(parts) > 3:
        raise ValueError(f"Invalid race time: {text!r}")
    seconds = 0
    for part in parts:
        seconds = seconds * 60 + int(part)
    return seconds * 1000
