"""Unroll sections into expanded chord positions (playback order)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple

from hymnsync.api.positions import LyricEntry, PositionIndex
from hymnsync.api.structure import Section
from hymnsync.mcp.logging_utils import get_logger, summarize_payload

logger = get_logger(__name__)

SKIP_SYMBOL = "—"


@dataclass(frozen=True)
class ExpandedChordPosition:
    index: int
    chord_position: int
    section_id: str
    staff_numbers: Tuple[int, ...]
    lyric_labels: Tuple[str, ...]
    lyric_syllables: Tuple[str, ...]
    lyric_entry_indices: Tuple[int, ...]
    is_skip: bool
    is_audible: bool
    start_q: float
    end_q: float

    @property
    def duration_q(self) -> float:
        return self.end_q - self.start_q

    def to_dict(self) -> Dict[str, Any]:
        return {
            "expandedChordPosition": self.index,
            "chordPosition": self.chord_position,
            "sectionId": self.section_id,
            "staffNumbers": list(self.staff_numbers),
            "lyricLabels": list(self.lyric_labels),
            "lyricSyllables": list(self.lyric_syllables),
            "lyricIsSkipSymbol": self.is_skip,
            "startQ": self.start_q,
            "endQ": self.end_q,
        }


@dataclass(frozen=True)
class Expansion:
    positions: Tuple[ExpandedChordPosition, ...]
    audible_positions: Tuple[int, ...]
    occurrences: Tuple[Dict[str, Tuple[int, ...]], ...]
    section_bounds: Dict[str, Tuple[int, int]]
    lyric_section_ids: Dict[int, Tuple[str, ...]]
    chorus_lyrics: FrozenSet[int]

    @property
    def num_expanded(self) -> int:
        return len(self.positions)

    def occurrences_in(self, chord_position: int, section_id: str) -> Tuple[int, ...]:
        """Expanded indices of ``chord_position`` inside ``section_id``."""
        if chord_position < 0 or chord_position >= len(self.occurrences):
            return ()
        return self.occurrences[chord_position].get(section_id, ())

    def last_in_section(self, section_id: str) -> Optional[int]:
        bounds = self.section_bounds.get(section_id)
        return bounds[1] if bounds else None


@dataclass(frozen=True)
class Visibility:
    section_ids: Tuple[str, ...]
    chord_positions: FrozenSet[int]
    expanded_chord_positions: Tuple[int, ...]


def _lyrics_by_position(lyrics: Iterable[LyricEntry]) -> Dict[int, List[LyricEntry]]:
    by_position: Dict[int, List[LyricEntry]] = {}
    for entry in lyrics:
        if entry.chord_position is not None:
            by_position.setdefault(entry.chord_position, []).append(entry)
    return by_position


def expand_sections(index: PositionIndex, sections: Sequence[Section]) -> Expansion:
    """Walk sections, their ranges and each range's positions in order.

    Lyrics of an occurrence are the document lyrics at that position whose
    lyric line id is selected by the range.
    """
    total = index.num_chord_positions
    lyrics_by_cp = _lyrics_by_position(index.lyrics)
    positions: List[ExpandedChordPosition] = []
    audible: List[int] = []
    occurrences: List[Dict[str, List[int]]] = [{} for _ in range(total)]
    bounds: Dict[str, List[int]] = {}
    lyric_sections: Dict[int, List[str]] = {}
    chorus_lyrics = set()
    start_q = 0.0
    for section in sections:
        for cpr in section.chord_position_ranges:
            end = cpr.end if cpr.end is not None else total
            staff_numbers = cpr.staff_numbers if cpr.staff_numbers is not None else index.staff_numbers
            selected = set(cpr.lyric_line_ids or ())
            for cp in range(cpr.start, end):
                if cp < 0 or cp >= total:
                    logger.warning("expansion_position_out_of_range section_id=%s chord_position=%s", section.section_id, cp)
                    continue
                chord_position = index.chord_positions[cp]
                labels: List[str] = []
                syllables: List[str] = []
                entry_indices: List[int] = []
                if selected:
                    for entry in lyrics_by_cp.get(cp, ()):
                        if entry.lyric_line_id not in selected:
                            continue
                        entry_indices.append(entry.index)
                        sections_of_entry = lyric_sections.setdefault(entry.index, [])
                        if section.section_id not in sections_of_entry:
                            sections_of_entry.append(section.section_id)
                        if section.type == "chorus" or entry.has_chorus_label:
                            chorus_lyrics.add(entry.index)
                        labels.extend(entry.labels)
                        syllables.extend(entry.syllables)
                expanded = len(positions)
                positions.append(
                    ExpandedChordPosition(
                        index=expanded,
                        chord_position=cp,
                        section_id=section.section_id,
                        staff_numbers=tuple(staff_numbers),
                        lyric_labels=tuple(labels),
                        lyric_syllables=tuple(syllables),
                        lyric_entry_indices=tuple(entry_indices),
                        is_skip="".join(syllables) == SKIP_SYMBOL,
                        is_audible=chord_position.is_audible,
                        start_q=start_q,
                        end_q=start_q + chord_position.duration_q,
                    )
                )
                if chord_position.is_audible:
                    audible.append(expanded)
                occurrences[cp].setdefault(section.section_id, []).append(expanded)
                section_bounds = bounds.setdefault(section.section_id, [expanded, expanded])
                section_bounds[1] = expanded
                start_q += chord_position.duration_q

    expansion = Expansion(
        positions=tuple(positions),
        audible_positions=tuple(audible),
        occurrences=tuple({key: tuple(value) for key, value in by_section.items()} for by_section in occurrences),
        section_bounds={key: (value[0], value[1]) for key, value in bounds.items()},
        lyric_section_ids={key: tuple(value) for key, value in lyric_sections.items()},
        chorus_lyrics=frozenset(chorus_lyrics),
    )
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug(
            "expand_sections output=%s",
            summarize_payload(
                {
                    "chord_positions": total,
                    "expanded": expansion.num_expanded,
                    "audible_expanded": len(expansion.audible_positions),
                    "sections": list(expansion.section_bounds),
                }
            ),
        )
    return expansion


def visible_positions(
    expansion: Expansion,
    sections: Sequence[Section],
    hidden_section_ids: Optional[Iterable[str]] = None,
) -> Visibility:
    """Sections, chord positions and expanded positions left after hiding sections."""
    hidden = set(hidden_section_ids or ())
    kept = tuple(section.section_id for section in sections if section.section_id not in hidden)
    kept_set = set(kept)
    expanded = tuple(ecp.index for ecp in expansion.positions if ecp.section_id in kept_set)
    return Visibility(
        section_ids=kept,
        chord_positions=frozenset(expansion.positions[e].chord_position for e in expanded),
        expanded_chord_positions=expanded,
    )
