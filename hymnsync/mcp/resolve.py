"""Locate score, MIDI and side files named by MCP tool arguments."""

from __future__ import annotations

from pathlib import Path
from typing import FrozenSet, Optional

from hymnsync.config import Settings

DEFAULT_SCORE_ROOT = Path(__file__).resolve().parents[2]

SCORE_SUFFIXES = frozenset({".mei", ".xml"})
MIDI_SUFFIXES = frozenset({".mid", ".midi"})
STRUCTURED_SUFFIXES = frozenset({".yaml", ".yml", ".json"})
LYRICS_SUFFIXES = frozenset({".txt"})


def score_root(settings: Settings) -> Path:
    if settings.score_root:
        return Path(settings.score_root).resolve()
    return DEFAULT_SCORE_ROOT


def resolve_input_path(
    path_value: str,
    root: Path,
    suffixes: Optional[FrozenSet[str]] = None,
) -> Path:
    """Resolve a relative path under ``root``, rejecting escapes and foreign file types."""
    if not path_value:
        raise ValueError("Path is required.")
    path = Path(path_value)
    if path.is_absolute():
        raise ValueError(f"Absolute paths are not allowed: {path_value}")
    resolved = (root / path).resolve()
    if root not in resolved.parents:
        raise ValueError(f"Path escapes score root: {path_value}")
    if suffixes is not None and resolved.suffix.lower() not in suffixes:
        raise ValueError(f"Unsupported file type {resolved.suffix or '<none>'} for {path_value}")
    if not resolved.is_file():
        raise FileNotFoundError(f"No such file under score root: {path_value}")
    return resolved


def resolve_optional_input(
    path_value: Optional[str],
    root: Path,
    suffixes: Optional[FrozenSet[str]] = None,
) -> Optional[Path]:
    if path_value is None:
        return None
    return resolve_input_path(path_value, root, suffixes)
