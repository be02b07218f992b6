"""Shared error types for MIDI-to-notation alignment."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass
class MidiAlignmentError(ValueError):
    """Raised when MIDI onsets match neither the written nor the expanded position count."""

    midi_type: str
    start_time_count: int
    audible_chord_positions: int
    audible_expanded_chord_positions: int
    source: Optional[str] = None
    detail: str = "chord_position_mismatch"

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "error_type": "MidiAlignmentError",
            "midi_type": self.midi_type,
            "start_time_count": int(self.start_time_count),
            "audible_chord_positions": int(self.audible_chord_positions),
            "audible_expanded_chord_positions": int(self.audible_expanded_chord_positions),
            "detail": self.detail,
        }
        if self.source is not None:
            payload["source"] = self.source
        return payload

    def __str__(self) -> str:
        return (
            f"{self.detail}: midi_type={self.midi_type} start_times={self.start_time_count} "
            f"audible={self.audible_chord_positions} "
            f"audible_expanded={self.audible_expanded_chord_positions}"
        )
