"""Section and lyric-stanza records shared by the detector, expansion and aligner."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from hymnsync.mcp.logging_utils import get_logger

logger = get_logger(__name__)

SECTION_TYPES = ("introduction", "verse", "chorus", "bridge", "interlude", "unknown")
SECTION_PLACEMENTS = ("inline", "below", "none")


@dataclass(frozen=True)
class PositionRange:
    """Chord positions ``[start, end)`` scoped to staves and lyric lines.

    ``end=None`` runs to the end of the score; ``staff_numbers=None`` means
    every staff; ``lyric_line_ids=None`` selects no lyrics.
    """

    start: int
    end: Optional[int] = None
    staff_numbers: Optional[Tuple[int, ...]] = None
    lyric_line_ids: Optional[Tuple[str, ...]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start": self.start,
            "end": self.end,
            "staffNumbers": list(self.staff_numbers) if self.staff_numbers is not None else None,
            "lyricLineIds": list(self.lyric_line_ids) if self.lyric_line_ids is not None else None,
        }


@dataclass(frozen=True)
class Section:
    section_id: str
    type: str
    name: str
    marker: Optional[str] = None
    placement: str = "inline"
    pause_after: bool = False
    chord_position_ranges: Tuple[PositionRange, ...] = ()
    annotated_lyrics: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sectionId": self.section_id,
            "type": self.type,
            "name": self.name,
            "marker": self.marker,
            "placement": self.placement,
            "pauseAfter": self.pause_after,
            "chordPositionRanges": [cpr.to_dict() for cpr in self.chord_position_ranges],
            "annotatedLyrics": self.annotated_lyrics,
        }


@dataclass
class LyricStanza:
    name: str
    type: str
    marker: Optional[str]
    annotated_lyrics: str = ""
    chord_position_ranges: List[PositionRange] = field(default_factory=list)
    expanded_chord_positions: Optional[Tuple[int, int]] = None


def _pick(raw: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in raw:
            return raw[key]
    return default


def _parse_range(raw: Dict[str, Any]) -> PositionRange:
    staff_numbers = _pick(raw, "staffNumbers", "staff_numbers")
    lyric_line_ids = _pick(raw, "lyricLineIds", "lyric_line_ids")
    end = raw.get("end")
    return PositionRange(
        start=int(raw.get("start", 0)),
        end=int(end) if end is not None else None,
        staff_numbers=tuple(int(n) for n in staff_numbers) if staff_numbers is not None else None,
        lyric_line_ids=tuple(str(i) for i in lyric_line_ids) if lyric_line_ids is not None else None,
    )


def parse_sections(raw_sections: Optional[Sequence[Dict[str, Any]]]) -> List[Section]:
    """Build Section records from an explicit (camelCase or snake_case) list."""
    sections: List[Section] = []
    for raw in raw_sections or []:
        section_id = _pick(raw, "sectionId", "section_id")
        if not section_id:
            logger.warning("sections_entry_missing_id entry=%s", raw)
            continue
        section_type = raw.get("type", "unknown")
        if section_type not in SECTION_TYPES:
            logger.warning("sections_entry_bad_type section_id=%s type=%s", section_id, section_type)
            section_type = "unknown"
        placement = raw.get("placement", "inline")
        if placement not in SECTION_PLACEMENTS:
            placement = "inline"
        marker = raw.get("marker")
        raw_ranges = _pick(raw, "chordPositionRanges", "chord_position_ranges", default=[]) or []
        ranges: List[PositionRange] = []
        for item in raw_ranges:
            try:
                ranges.append(_parse_range(item))
            except (AttributeError, TypeError, ValueError) as exc:
                logger.warning("sections_range_invalid section_id=%s range=%s error=%s", section_id, item, exc)
        if raw_ranges and not ranges:
            logger.warning("sections_entry_skipped section_id=%s reason=no_valid_ranges", section_id)
            continue
        sections.append(
            Section(
                section_id=str(section_id),
                type=section_type,
                name=str(raw.get("name") or section_type.capitalize()),
                marker=str(marker) if marker is not None else None,
                placement=placement,
                pause_after=bool(_pick(raw, "pauseAfter", "pause_after", default=False)),
                chord_position_ranges=tuple(ranges),
                annotated_lyrics=_pick(raw, "annotatedLyrics", "annotated_lyrics"),
            )
        )
    return sections
