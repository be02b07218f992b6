"""Engine settings loader from environment variables."""

from __future__ import annotations

from dataclasses import dataclass
import os


def _env_int(name: str, default: int) -> int:
    """Read an int env var with a default."""
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return int(value)


def _env_float(name: str, default: float) -> float:
    """Read a float env var with a default."""
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return float(value)


def _env_bool(name: str, default: bool) -> bool:
    """Read a boolean env var with a default."""
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.lower() in {"1", "true", "yes"}


def _app_env() -> str:
    """Return the application environment name."""
    return os.getenv("APP_ENV") or os.getenv("ENV") or "dev"


@dataclass(frozen=True)
class Settings:
    """Tunable constants for indexing, lyric alignment and MIDI alignment."""
    max_allowed_gap: int = 3
    lyric_similarity_threshold: float = 0.6
    lyric_lookahead: int = 20
    fermata_tempo_drop: float = 0.7
    section_pause_seconds: float = 0.25
    default_qpm: float = 120.0
    fetch_timeout_seconds: float = 10.0
    regenerate_on_mismatch: bool = True
    score_root: str = ""
    app_env: str = "dev"

    @classmethod
    def from_env(cls) -> "Settings":
        """Construct settings from environment variables."""
        max_allowed_gap = _env_int("HYMNSYNC_MAX_ALLOWED_GAP", 3)
        if max_allowed_gap < 0:
            raise ValueError("HYMNSYNC_MAX_ALLOWED_GAP must be >= 0.")
        threshold = _env_float("HYMNSYNC_LYRIC_SIMILARITY_THRESHOLD", 0.6)
        if not 0.0 <= threshold <= 1.0:
            raise ValueError("HYMNSYNC_LYRIC_SIMILARITY_THRESHOLD must be between 0 and 1.")
        return cls(
            max_allowed_gap=max_allowed_gap,
            lyric_similarity_threshold=threshold,
            lyric_lookahead=_env_int("HYMNSYNC_LYRIC_LOOKAHEAD", 20),
            fermata_tempo_drop=_env_float("HYMNSYNC_FERMATA_TEMPO_DROP", 0.7),
            section_pause_seconds=_env_float("HYMNSYNC_SECTION_PAUSE_SECONDS", 0.25),
            default_qpm=_env_float("HYMNSYNC_DEFAULT_QPM", 120.0),
            fetch_timeout_seconds=_env_float("HYMNSYNC_FETCH_TIMEOUT_SECONDS", 10.0),
            regenerate_on_mismatch=_env_bool("HYMNSYNC_REGENERATE_ON_MISMATCH", True),
            score_root=os.getenv("HYMNSYNC_SCORE_ROOT", ""),
            app_env=_app_env(),
        )
