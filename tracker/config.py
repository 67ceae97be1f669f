"""Tracker service configuration.

Uses pydantic-settings to load from environment variables with sensible defaults.
"""

from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings


class TrackerSettings(BaseSettings):
    """Configuration for the run tracker service."""

    # Content store (GitHub-compatible REST API)
    store_api_url: str = "https://api.github.com"
    store_owner: str = "ripixel"
    store_repo: str = "bingham-sunday-running-club-website"
    store_branch: str = "main"
    store_token: Optional[str] = None
    store_timeout_s: float = 15.0

    # Content layout inside the store
    runners_dir: str = "content/runners"
    runner_photos_dir: str = "assets/images/runners"
    race_photos_dir: str = "assets/images/races"
    staged_runs_dir: str = "content/staging/runs"
    results_dir: str = "content/results"

    # Operator HTTP / WebSocket
    host: str = "0.0.0.0"
    port: int = 8000

    # Local recovery checkpoint
    checkpoint_path: Path = Path(__file__).parent / "data" / "checkpoint.json"

    # Live feed refresh interval
    tick_interval_s: float = 0.1

    # Loop distances (km)
    small_loop_km: float = 0.8
    medium_loop_km: float = 1.0
    long_loop_km: float = 1.2
    approach_km: float = 0.4  # to/from the start, counted once if any loop run

    # Finish-time nudge applied by the +/- buttons
    finish_adjust_step_ms: int = 5000

    model_config = {"env_prefix": "TRACKER_"}

    @property
    def loop_units_km(self) -> dict[str, float]:
        """Per-category unit distances keyed by loop kind."""
        return {
            "small": self.small_loop_km,
            "medium": self.medium_loop_km,
            "long": self.long_loop_km,
        }


def get_settings() -> TrackerSettings:
    """Return a settings instance."""
    return TrackerSettings()
