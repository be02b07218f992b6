"""Align free-text lyric stanzas to the syllables embedded in the score.

Matching walks the syllables in playback order over a normalized copy of the
text: an exact hit inside the lookahead window wins, otherwise the window
offset with the best longest-common-substring ratio is taken when it clears the
similarity threshold.
"""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass, field, replace
from difflib import SequenceMatcher
from typing import Collection, Dict, List, Optional, Sequence, Tuple

from hymnsync.api.parts import PartAssignment
from hymnsync.api.positions import LyricEntry, PositionIndex
from hymnsync.api.structure import LyricStanza, PositionRange
from hymnsync.mcp.logging_utils import get_logger

logger = get_logger(__name__)

STANZA_HEADER = re.compile(r"\[.*?\]\n")
_TRAILING_HYPHENS = re.compile("[-\u2011\\s]+$")


@dataclass
class SyllableAnchor:
    label: Optional[str]
    text: Optional[str]
    chord_positions: List[int] = field(default_factory=list)
    expanded_chord_positions: List[int] = field(default_factory=list)
    lyric_line_ids: List[str] = field(default_factory=list)


def _is_combining(char: str) -> bool:
    return "\u0300" <= char <= "\u036f"


def _is_dropped(char: str) -> bool:
    category = unicodedata.category(char)
    return _is_combining(char) or category.startswith("P") or category.startswith("N")


def normalize_lyric(text: Optional[str]) -> Optional[str]:
    """Lowercase, strip accents, punctuation and digits, collapse whitespace."""
    if text is None:
        return None
    decomposed = unicodedata.normalize("NFD", text)
    kept = "".join(char for char in decomposed if not _is_dropped(char))
    return re.sub(r"\s+", " ", kept).strip().lower()


def similarity(first: str, second: str) -> float:
    """Longest-common-substring ratio ``2 * lcs / (len(a) + len(b))``."""
    total = len(first) + len(second)
    if total == 0:
        return 0.0
    matcher = SequenceMatcher(None, first, second, autojunk=False)
    longest = matcher.find_longest_match(0, len(first), 0, len(second)).size
    return (longest * 2) / total


def is_melody_lyric(entry: LyricEntry, index: PositionIndex, assignment: PartAssignment) -> bool:
    """True when the lyric hangs on the melody note or on a chord holding it."""
    if entry.owner_id in assignment.melody_owner_ids:
        return True
    owner = index.note(entry.owner_id)
    return owner is not None and owner.chord_id in assignment.melody_owner_ids


def is_secondary_lyric(entry: LyricEntry, index: PositionIndex, assignment: PartAssignment) -> bool:
    """True when neither the owning note nor the owning chord carries the melody."""
    if entry.owner_tag == "chord":
        return entry.owner_id not in assignment.melody_owner_ids
    owner = index.note(entry.owner_id)
    return owner is None or not assignment.note_is_melody[owner.index]


def melody_lyrics_by_position(index: PositionIndex, assignment: PartAssignment) -> Dict[int, List[LyricEntry]]:
    lyrics: Dict[int, List[LyricEntry]] = {}
    for entry in index.lyrics:
        if entry.chord_position is None or not entry.syllables:
            continue
        if is_melody_lyric(entry, index, assignment):
            lyrics.setdefault(entry.chord_position, []).append(entry)
    return lyrics


def _syllable_text(entry: LyricEntry) -> Optional[str]:
    pieces = [_TRAILING_HYPHENS.sub("", text).strip() for text in entry.syl_texts]
    return " ".join(piece for piece in pieces if piece).strip() or None


def extract_syllable_anchors(
    index: PositionIndex,
    assignment: PartAssignment,
    lyric_ranges: Sequence[Tuple[int, int]],
    single_line_positions: Collection[int],
    expanded_start: int = 0,
) -> List[SyllableAnchor]:
    """Walk ``lyric_ranges`` in playback order and collect one anchor per sung syllable.

    Positions without a syllable (melismas, rests) extend the previous anchor.
    """
    anchors = [SyllableAnchor(label=None, text="")]
    melody_lyrics = melody_lyrics_by_position(index, assignment)
    line_counters: Dict[int, int] = {}
    expanded = expanded_start
    for start, end in lyric_ranges:
        range_has_single_line = all(len(melody_lyrics.get(cp, ())) <= 1 for cp in range(start, end))
        for cp in range(start, end):
            line_counters[cp] = line_counters.get(cp, 0) + 1
            entries = melody_lyrics.get(cp, [])
            chosen: Optional[LyricEntry] = None
            if entries:
                if cp in single_line_positions or range_has_single_line:
                    chosen = entries[0]
                else:
                    chosen = next((entry for entry in entries if entry.line_number == line_counters[cp]), None)
            if chosen is not None:
                anchors.append(
                    SyllableAnchor(
                        label=chosen.labels[0] if chosen.labels else None,
                        text=_syllable_text(chosen),
                        chord_positions=[cp],
                        expanded_chord_positions=[expanded],
                        lyric_line_ids=[chosen.lyric_line_id],
                    )
                )
            else:
                anchors[-1].chord_positions.append(cp)
                anchors[-1].expanded_chord_positions.append(expanded)
            expanded += 1
    return anchors


def _consolidate(ranges: Sequence[PositionRange]) -> List[PositionRange]:
    merged: List[PositionRange] = []
    for cpr in ranges:
        if (
            merged
            and merged[-1].end == cpr.start
            and merged[-1].staff_numbers == cpr.staff_numbers
            and merged[-1].lyric_line_ids == cpr.lyric_line_ids
        ):
            merged[-1] = replace(merged[-1], end=cpr.end)
        else:
            merged.append(cpr)
    return merged


def _position_marker(anchor: SyllableAnchor) -> str:
    return (
        f'<span data-ch-chord-position="{" ".join(str(cp) for cp in anchor.chord_positions)}" '
        f'data-ch-expanded-chord-position="{" ".join(str(e) for e in anchor.expanded_chord_positions)}" '
        f'data-ch-lyric-line-id="{" ".join(anchor.lyric_line_ids)}"></span>'
    )


def align_syllables_to_lyrics(
    lyrics_text: Optional[str],
    anchors: Sequence[SyllableAnchor],
    staff_numbers: Sequence[int],
    *,
    similarity_threshold: float = 0.6,
    lookahead: int = 20,
) -> List[LyricStanza]:
    """Split ``lyrics_text`` into stanzas and anchor each stanza to chord-position ranges."""
    if not lyrics_text or not anchors:
        return []

    stanzas: List[LyricStanza] = []

    def _take_header(match: "re.Match[str]") -> str:
        name = match.group(0).strip().replace("[", "", 1).replace("]", "", 1)
        words = name.split(" ")
        stanzas.append(
            LyricStanza(
                name=name,
                type=words[0].lower(),
                marker=words[1] if len(words) > 1 else None,
            )
        )
        return ""

    text = STANZA_HEADER.sub(_take_header, lyrics_text)
    if not stanzas:
        logger.warning("lyrics_without_stanza_headers length=%s", len(lyrics_text))
        return []

    norm_chars: List[str] = []
    pos_map: List[int] = []
    for offset, char in enumerate(text):
        if _is_dropped(char):
            continue
        norm = "".join(c for c in unicodedata.normalize("NFD", char) if not _is_combining(c))
        if norm and not norm.isspace():
            for piece in norm.lower():
                norm_chars.append(piece)
                pos_map.append(offset)
        elif norm.isspace() and (not norm_chars or norm_chars[-1] != " "):
            norm_chars.append(" ")
            pos_map.append(offset)
    norm_text = "".join(norm_chars)

    pos = 0
    current = 0
    insertions: List[Tuple[int, str]] = []
    expanded_by_stanza: Dict[int, List[int]] = {}
    raw_ranges: Dict[int, List[PositionRange]] = {}
    staff_tuple = tuple(staff_numbers)
    for anchor in anchors:
        norm_syllable = normalize_lyric(anchor.text)
        if not norm_syllable:
            continue
        window_end = min(pos + lookahead, len(norm_text))
        match_pos = norm_text.find(norm_syllable, pos)
        matched = match_pos != -1 and match_pos < window_end
        if not matched:
            best_pos, best_score = pos, 0.0
            for candidate in range(pos, window_end):
                score = similarity(norm_syllable, norm_text[candidate : candidate + len(norm_syllable)])
                if score > best_score:
                    best_pos, best_score = candidate, score
            if best_score > similarity_threshold:
                match_pos = best_pos
                matched = True
        if not matched:
            logger.debug("lyric_syllable_unmatched text=%r pos=%s", anchor.text, pos)
            continue

        original_pos = pos_map[match_pos] if match_pos < len(pos_map) else len(text)
        between_start = pos_map[pos] if pos < len(pos_map) else len(text)
        current = min(current + text[between_start:original_pos].count("\n\n"), len(stanzas) - 1)
        insertions.append((original_pos, _position_marker(anchor)))

        ranges = raw_ranges.setdefault(current, [])
        previous_cp: Optional[int] = None
        for cp in anchor.chord_positions:
            if previous_cp is None or previous_cp + 1 != cp:
                ranges.append(
                    PositionRange(
                        start=cp,
                        end=cp + 1,
                        staff_numbers=staff_tuple,
                        lyric_line_ids=tuple(anchor.lyric_line_ids),
                    )
                )
            else:
                ranges[-1] = replace(ranges[-1], end=cp + 1)
            previous_cp = cp
        expanded_by_stanza.setdefault(current, []).extend(anchor.expanded_chord_positions)
        pos = match_pos + len(norm_syllable)

    for position, stanza in enumerate(stanzas):
        stanza.chord_position_ranges = _consolidate(raw_ranges.get(position, []))
        expanded = expanded_by_stanza.get(position)
        if expanded:
            stanza.expanded_chord_positions = (expanded[0], expanded[-1] + 1)

    for offset, marker in reversed(insertions):
        text = text[:offset] + marker + text[offset:]
    paragraphs = text.split("\n\n")
    for position, stanza in enumerate(stanzas):
        stanza.annotated_lyrics = paragraphs[position].strip() if position < len(paragraphs) else ""
    return stanzas
