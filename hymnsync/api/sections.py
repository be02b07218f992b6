"""Section and verse detection.

Explicit sections win. Otherwise a "simple" score (no repeats or jumps, one
terminal barline, numbered verses) is unrolled into alternating verse and
chorus sections; everything else falls back to lyric-stanza detection, and
finally to a single ``unknown`` section.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from typing import Any, Dict, FrozenSet, List, Optional, Sequence, Tuple

from hymnsync.api.lyric_alignment import (
    align_syllables_to_lyrics,
    extract_syllable_anchors,
    is_secondary_lyric,
    melody_lyrics_by_position,
)
from hymnsync.api.parts import PartAssignment
from hymnsync.api.positions import PositionIndex
from hymnsync.api.structure import LyricStanza, PositionRange, Section, parse_sections
from hymnsync.config import Settings
from hymnsync.mcp.logging_utils import get_logger, summarize_payload
from hymnsync.mei.document import ScoreDocument, element_id, measure_elements, strip_ref, text_content

logger = get_logger(__name__)

REPEAT_ELEMENTS = ("repeatMark", "coda", "segno", "ending")
REPEAT_LEFT_BARLINES = ("rptstart", "rptboth")
REPEAT_RIGHT_BARLINES = ("rptend", "rptboth")
JUMP_DIR_TYPES = ("coda", "tocoda", "segno", "dalsegno", "dacapo", "fine")

_VERSE_NUMBER = re.compile(r"^\s*(\d+)")


@dataclass(frozen=True)
class ScoreStructure:
    """Outcome of the simple/complex classification."""

    has_repeat_or_jump: bool
    verse_numbers: Tuple[int, ...]
    has_complex_sections: bool
    has_initial_chorus: bool = False
    expansion_type: Optional[str] = None
    expansion_ids: Tuple[str, ...] = ()
    container_types: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class SectionPlan:
    sections: Tuple[Section, ...]
    section_index_by_id: Dict[str, int]
    structure: ScoreStructure
    lyric_ranges: Tuple[Tuple[int, int], ...]
    single_line_positions: FrozenSet[int]
    single_line_ranges_by_staff: Dict[int, Tuple[Tuple[int, int], ...]]
    stanzas: Tuple[LyricStanza, ...] = ()

    def section(self, section_id: str) -> Optional[Section]:
        position = self.section_index_by_id.get(section_id)
        return self.sections[position] if position is not None else None

    @property
    def has_introduction(self) -> bool:
        return any(section.type == "introduction" for section in self.sections)


def has_repeat_or_jump(document: ScoreDocument) -> bool:
    for elem in document.root.iter():
        if elem.tag in REPEAT_ELEMENTS:
            return True
        if elem.tag == "measure" and (
            elem.get("left") in REPEAT_LEFT_BARLINES or elem.get("right") in REPEAT_RIGHT_BARLINES
        ):
            return True
        if elem.tag == "dir" and elem.get("type") in JUMP_DIR_TYPES:
            return True
    return False


def get_verse_numbers(document: ScoreDocument) -> List[int]:
    """Verse numbers from ``<verse><label>`` texts such as ``1.`` or ``(2)``.

    Labels must count up from 1 and agree with their verse line number;
    otherwise no verse numbers are reported. An unlabelled score has verse 1.
    """
    verse_numbers: List[int] = []
    counter = 1
    for verse in document.root.iter("verse"):
        for label in verse.iter("label"):
            match = _VERSE_NUMBER.match(re.sub(r"[().]", "", text_content(label).strip()))
            verse_number = int(match.group(1)) if match else None
            line_match = _VERSE_NUMBER.match(verse.get("n") or "")
            line_number = int(line_match.group(1)) if line_match else None
            if verse_number is None or verse_number != line_number or verse_number != counter:
                logger.debug("verse_number_mismatch label=%r line=%s expected=%s", text_content(label), line_number, counter)
                return []
            verse_numbers.append(verse_number)
            counter += 1
    return verse_numbers or [1]


def _container_measures(document: ScoreDocument, container_id: str) -> List[Any]:
    container = document.find(container_id)
    return list(container.iter("measure")) if container is not None else []


def classify_structure(
    document: ScoreDocument,
    verse_numbers: Sequence[int],
    has_intro_brackets: bool,
) -> ScoreStructure:
    """Decide whether the score can be unrolled from its barlines and expansion list."""
    root = document.root
    repeat_or_jump = has_repeat_or_jump(document)
    num_verses = len(verse_numbers)
    intro_measures = {
        id(measure)
        for section in root.iter("section")
        if section.get("type") == "introduction"
        for measure in section.iter("measure")
    }
    measures = [measure for measure in measure_elements(root) if id(measure) not in intro_measures]
    base = ScoreStructure(
        has_repeat_or_jump=repeat_or_jump,
        verse_numbers=tuple(verse_numbers),
        has_complex_sections=True,
    )
    if not measures:
        return base

    has_other_lines = any(verse.get("n") != "1" for verse in root.iter("verse"))
    reasons = []
    if repeat_or_jump:
        reasons.append("repeat_or_jump")
    if measures[-1].get("right") != "end":
        reasons.append("last_barline_not_end")
    if sum(1 for measure in measures if measure.get("right") == "end") > 1:
        reasons.append("multiple_end_barlines")
    if next(measures[0].iter("verse"), None) is None:
        reasons.append("first_measure_without_lyrics")
    if has_other_lines and num_verses == 0:
        reasons.append("unlabelled_lyric_lines")
    if num_verses == 0:
        reasons.append("no_verse_numbers")
    if reasons:
        logger.debug("structure_complex reasons=%s", reasons)
        return base

    expansion = next((elem for elem in root.iter("expansion") if elem.get("plist")), None)
    if expansion is None:
        return replace(base, has_complex_sections=False)

    plist = [strip_ref(ref) for ref in (expansion.get("plist") or "").split()]
    if any(document.find(ref) is None for ref in plist):
        logger.warning("expansion_unknown_reference plist=%s", plist)
        return replace(base, expansion_type="complex")

    container_types: Dict[str, str] = {}
    has_complex = False
    has_initial_chorus = False
    expansion_ids: List[str] = list(plist)
    if len(plist) == 1:
        expansion_type = "verse-chorus"
        expansion_ids = [plist[0]] * num_verses
        container_types[plist[0]] = "verse"
    elif len(plist) == 2 or (len(plist) == 3 and plist[0] == plist[2]):
        expansion_type = "chorus-verse-chorus"
        container_types[plist[0]] = "chorus"
        container_types[plist[1]] = "verse"
        first_measures = _container_measures(document, plist[0])
        second_measures = _container_measures(document, plist[1])
        if (
            first_measures
            and second_measures
            and first_measures[-1].get("right") == "end"
            and second_measures[-1].get("right") == "dbl"
        ):
            has_initial_chorus = True
            expansion_ids = [plist[0], plist[1]] * num_verses + [plist[0]]
    else:
        expansion_type = "complex"
        has_complex = True

    if len(plist) > 1 and not has_intro_brackets:
        first_section = document.find(plist[0])
        second_measures = _container_measures(document, plist[1])
        if (
            first_section is not None
            and next(first_section.iter("verse"), None) is None
            and second_measures
            and second_measures[0].get("left") == "rptstart"
        ):
            container_types[plist[0]] = "introduction"

    return ScoreStructure(
        has_repeat_or_jump=repeat_or_jump,
        verse_numbers=tuple(verse_numbers),
        has_complex_sections=has_complex,
        has_initial_chorus=has_initial_chorus,
        expansion_type=expansion_type,
        expansion_ids=tuple(expansion_ids),
        container_types=container_types,
    )


def mark_single_line_positions(
    index: PositionIndex,
    assignment: PartAssignment,
    lyric_ranges: Sequence[Tuple[int, int]],
    max_allowed_gap: int = 3,
) -> Tuple[FrozenSet[int], Dict[int, Tuple[Tuple[int, int], ...]]]:
    """Find runs of positions where the melody carries a single lyric line.

    Runs are measured in playback order over ``lyric_ranges``; a run longer than
    ``max_allowed_gap`` is kept and widened over neighbouring lyric-less
    positions. Returns the single-line chord positions and, per staff, the
    kept runs as expanded-position ranges.
    """
    lines_by_staff: Dict[int, Dict[int, set]] = {}
    for cp, entries in melody_lyrics_by_position(index, assignment).items():
        for entry in entries:
            lines_by_staff.setdefault(entry.staff_number, {}).setdefault(cp, set()).add(entry.line_number)

    expanded_to_cp: List[int] = []
    for start, end in lyric_ranges:
        expanded_to_cp.extend(range(start, end))

    single_line: set = set()
    ranges_by_staff: Dict[int, Tuple[Tuple[int, int], ...]] = {}
    for staff_number, lines_by_cp in sorted(lines_by_staff.items()):
        first_lyric: Optional[int] = None
        no_lyric = set()
        runs: List[List[Optional[int]]] = []
        for expanded, cp in enumerate(expanded_to_cp):
            lines = lines_by_cp.get(cp)
            if lines is None:
                no_lyric.add(expanded)
                continue
            if first_lyric is None:
                first_lyric = expanded
            if len(lines) > 1 or not runs:
                runs.append([None, None])
            if len(lines) == 1:
                if runs[-1][0] is None:
                    runs[-1][0] = expanded
                runs[-1][1] = expanded + 1

        kept: List[Tuple[int, int]] = []
        for run_start, run_end in runs:
            if run_start is None or run_end is None or run_end - run_start <= max_allowed_gap:
                continue
            if run_start == first_lyric:
                while run_start - 1 in no_lyric:
                    run_start -= 1
            while run_end in no_lyric:
                run_end += 1
            kept.append((run_start, run_end))
            single_line.update(expanded_to_cp[expanded] for expanded in range(run_start, run_end))
        ranges_by_staff[staff_number] = tuple(kept)
    return frozenset(single_line), ranges_by_staff


def _chorus_ranges(
    index: PositionIndex,
    assignment: PartAssignment,
    max_allowed_gap: int,
) -> Tuple[List[Tuple[int, int]], set]:
    lines_by_cp: Dict[int, List[int]] = {}
    for cp, entries in sorted(melody_lyrics_by_position(index, assignment).items()):
        lines_by_cp[cp] = [entry.line_number for entry in entries]

    runs: List[List[int]] = [[]]
    for cp, lines in lines_by_cp.items():
        if len(lines) == 1:
            runs[-1].append(cp)
        else:
            runs.append([])

    last_cp = index.num_chord_positions - 1
    chorus_ranges: List[Tuple[int, int]] = []
    chorus_lines: set = set()
    for run in runs:
        if len(run) <= max_allowed_gap:
            continue
        for cp in run:
            chorus_lines.update(lines_by_cp[cp])
        start = 0 if run[0] - max_allowed_gap <= 0 else run[0]
        last = last_cp if run[-1] + max_allowed_gap > last_cp else run[-1]
        chorus_ranges.append((start, last + 1))
    return chorus_ranges, chorus_lines


def _pause_after_last_position(index: PositionIndex) -> bool:
    """A short sung final note leaves room for a breath between verses."""
    last_position = index.chord_positions[-1]
    first_note = index.notes[min(last_position.note_indices)]
    if first_note.is_rest:
        return False
    owners = {first_note.element_id}
    if first_note.chord_id:
        owners.add(first_note.chord_id)
        owners.update(
            note.element_id for note in index.notes if note.chord_id == first_note.chord_id
        )
    if not any(entry.owner_id in owners for entry in index.lyrics):
        return False
    if first_note.dur is not None and first_note.dur.isdigit() and int(first_note.dur) < 4:
        return False
    return True


def generate_simple_sections(
    index: PositionIndex,
    assignment: PartAssignment,
    verse_numbers: Sequence[int],
    has_initial_chorus: bool,
    max_allowed_gap: int = 3,
    first_chord_position: int = 0,
) -> List[Section]:
    """Unroll a simple score into alternating verse and chorus sections.

    Positions before ``first_chord_position`` (an extracted introduction) are
    left out of every verse.
    """
    staff_numbers = tuple(index.staff_numbers)
    staves_with_lyrics = [
        staff for staff in staff_numbers if any(entry.staff_number == staff for entry in index.lyrics)
    ]
    total = index.num_chord_positions

    chorus_ranges: List[Tuple[int, int]] = []
    chorus_lines: set = set()
    if any(entry.line_number != 1 for entry in index.lyrics):
        chorus_ranges, chorus_lines = _chorus_ranges(index, assignment, max_allowed_gap)
    chorus_ranges = [
        (max(start, first_chord_position), end)
        for start, end in chorus_ranges
        if max(start, first_chord_position) < end
    ]
    chorus_positions = {cp for start, end in chorus_ranges for cp in range(start, end)}

    extra_lines: set = set()
    for entry in index.lyrics:
        if not is_secondary_lyric(entry, index, assignment):
            continue
        if entry.chord_position in chorus_positions:
            chorus_lines.add(entry.line_number)
        elif entry.line_number not in verse_numbers:
            extra_lines.add(entry.line_number)

    def line_ids(lines: Sequence[int]) -> Tuple[str, ...]:
        return tuple(f"{staff}.{line}" for staff in staves_with_lyrics for line in lines)

    pause_on_last_position = _pause_after_last_position(index)
    sections: List[Section] = []
    verse_counter = 0
    for verse_number in verse_numbers:
        verse_lines = [verse_number]
        if verse_number == 1:
            verse_lines.extend(sorted(extra_lines))
        ranges: List[PositionRange] = []
        next_cp = first_chord_position
        next_chorus = 0
        while next_cp < total:
            range_end = total
            lyric_line_ids = line_ids(verse_lines)
            if next_chorus < len(chorus_ranges):
                chorus_start, chorus_end = chorus_ranges[next_chorus]
                if chorus_start == next_cp:
                    range_end = chorus_end
                    lyric_line_ids = line_ids(sorted(chorus_lines))
                    next_chorus += 1
                else:
                    range_end = chorus_start
            ranges.append(
                PositionRange(
                    start=next_cp,
                    end=range_end,
                    staff_numbers=staff_numbers,
                    lyric_line_ids=lyric_line_ids,
                )
            )
            next_cp = range_end

        is_last_verse = verse_number == verse_numbers[-1]
        if has_initial_chorus and is_last_verse and len(ranges) > 1:
            ranges.append(ranges[-2])
        pause_after = pause_on_last_position and not is_last_verse

        for position, cpr in enumerate(ranges):
            last_range = position == len(ranges) - 1
            if cpr.start in chorus_positions:
                sections.append(
                    Section(
                        section_id=f"chorus-{verse_counter}",
                        type="chorus",
                        name="Chorus",
                        pause_after=pause_after if last_range else False,
                        chord_position_ranges=(cpr,),
                    )
                )
            else:
                verse_counter += 1
                sections.append(
                    Section(
                        section_id=f"verse-{verse_counter}",
                        type="verse",
                        name=f"Verse {verse_number}",
                        marker=str(verse_number),
                        pause_after=pause_after if last_range else False,
                        chord_position_ranges=(cpr,),
                    )
                )
    return sections


def _intro_section(ranges: Sequence[Tuple[int, int]], staff_numbers: Sequence[int], pause_after: bool) -> Optional[Section]:
    if not ranges:
        return None
    return Section(
        section_id="introduction",
        type="introduction",
        name="Introduction",
        pause_after=pause_after,
        chord_position_ranges=tuple(
            PositionRange(start=start, end=end, staff_numbers=tuple(staff_numbers), lyric_line_ids=())
            for start, end in ranges
        ),
    )


def intro_section_from_brackets(index: PositionIndex) -> Optional[Section]:
    ranges: List[List[int]] = []
    for event in index.intro_brackets():
        if event.chord_position is None:
            logger.warning("intro_bracket_unplaced element_id=%s", event.element_id)
            continue
        if event.intro_bracket == "start":
            ranges.append([event.chord_position, event.chord_position + 1])
        elif ranges:
            ranges[-1][1] = event.chord_position
        else:
            logger.warning("intro_bracket_end_without_start element_id=%s", event.element_id)
    return _intro_section([(start, end) for start, end in ranges], index.staff_numbers, True)


def intro_section_from_document(document: ScoreDocument, index: PositionIndex) -> Optional[Section]:
    """Introduction from ``<section type="introduction">`` containers already in the score."""
    ranges: List[Tuple[int, int]] = []
    for section in document.root.iter("section"):
        if section.get("type") != "introduction":
            continue
        positions = index.containers.get(element_id(section) or "")
        if positions:
            ranges.append((positions[0], positions[-1] + 1))
    return _intro_section(ranges, index.staff_numbers, True)


def _sections_from_stanzas(stanzas: Sequence[LyricStanza]) -> List[Section]:
    return [
        Section(
            section_id=f"section-{position}",
            type=stanza.type,
            name=stanza.name,
            marker=stanza.marker,
            placement="inline" if stanza.chord_position_ranges else "below",
            chord_position_ranges=tuple(stanza.chord_position_ranges),
            annotated_lyrics=stanza.annotated_lyrics,
        )
        for position, stanza in enumerate(stanzas)
    ]


def _default_section(lyric_ranges: Sequence[Tuple[int, int]], staff_numbers: Sequence[int]) -> Section:
    return Section(
        section_id="unknown",
        type="unknown",
        name="Unknown",
        chord_position_ranges=tuple(
            PositionRange(start=start, end=end, staff_numbers=tuple(staff_numbers), lyric_line_ids=None)
            for start, end in lyric_ranges
        ),
    )


def _lyric_ranges(
    index: PositionIndex,
    structure: ScoreStructure,
    sections: Sequence[Section],
) -> List[Tuple[int, int]]:
    total = index.num_chord_positions
    if sections:
        return [
            (cpr.start, cpr.end if cpr.end is not None else total)
            for section in sections
            for cpr in section.chord_position_ranges
        ]
    if structure.expansion_ids:
        ranges = []
        for container_id in structure.expansion_ids:
            positions = index.containers.get(container_id)
            if positions:
                ranges.append((positions[0], positions[-1] + 1))
        if ranges:
            return ranges
    return [(0, total)]


def detect_sections(
    document: ScoreDocument,
    index: PositionIndex,
    assignment: PartAssignment,
    *,
    sections: Optional[Sequence[Dict[str, Any]]] = None,
    lyrics_text: Optional[str] = None,
    settings: Optional[Settings] = None,
) -> SectionPlan:
    """Build the section list for a score, with lyric stanzas merged in."""
    settings = settings or Settings()
    verse_numbers = get_verse_numbers(document)
    structure = classify_structure(document, verse_numbers, bool(index.intro_brackets()))

    explicit = parse_sections(sections)
    intro: Optional[Section] = None
    others: List[Section] = []
    if explicit:
        if explicit[0].type == "introduction":
            intro, others = explicit[0], explicit[1:]
        else:
            others = explicit
    else:
        intro = intro_section_from_brackets(index)
        first_chord_position = 0
        if intro is None:
            intro = intro_section_from_document(document, index)
            if intro is not None:
                first_chord_position = intro.chord_position_ranges[-1].end
        if not structure.has_complex_sections:
            others = generate_simple_sections(
                index,
                assignment,
                verse_numbers,
                structure.has_initial_chorus,
                settings.max_allowed_gap,
                first_chord_position,
            )

    first_lyric_expanded = 0
    if intro is not None:
        first_lyric_expanded = sum(
            (cpr.end if cpr.end is not None else index.num_chord_positions) - cpr.start
            for cpr in intro.chord_position_ranges
        )

    lyric_ranges = _lyric_ranges(index, structure, others)
    single_line, single_line_by_staff = mark_single_line_positions(
        index, assignment, lyric_ranges, settings.max_allowed_gap
    )
    stanzas: List[LyricStanza] = []
    if lyrics_text:
        anchors = extract_syllable_anchors(index, assignment, lyric_ranges, single_line, first_lyric_expanded)
        stanzas = align_syllables_to_lyrics(
            lyrics_text,
            anchors,
            index.staff_numbers,
            similarity_threshold=settings.lyric_similarity_threshold,
            lookahead=settings.lyric_lookahead,
        )

    if not others:
        if stanzas:
            others = _sections_from_stanzas(stanzas)
            first_ranges = stanzas[0].chord_position_ranges
            first_lyric_cp = first_ranges[0].start if first_ranges else None
            if intro is None and first_lyric_cp:
                intro = _intro_section([(0, first_lyric_cp)], index.staff_numbers, False)
        else:
            others = [_default_section(lyric_ranges, index.staff_numbers)]

    below_counter = 0
    for position, stanza in enumerate(stanzas):
        if position < len(others):
            section = others[position]
            if section.type != stanza.type or section.annotated_lyrics:
                break
            others[position] = replace(section, annotated_lyrics=stanza.annotated_lyrics)
            continue
        others.append(
            Section(
                section_id=f"below-{below_counter}",
                type=stanza.type,
                name=stanza.name,
                marker=stanza.marker,
                placement="below",
                chord_position_ranges=tuple(stanza.chord_position_ranges),
                annotated_lyrics=stanza.annotated_lyrics,
            )
        )
        below_counter += 1

    ordered = ([intro] if intro is not None else []) + others
    plan = SectionPlan(
        sections=tuple(ordered),
        section_index_by_id={section.section_id: position for position, section in enumerate(ordered)},
        structure=structure,
        lyric_ranges=tuple(lyric_ranges),
        single_line_positions=single_line,
        single_line_ranges_by_staff=single_line_by_staff,
        stanzas=tuple(stanzas),
    )
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug(
            "detect_sections output=%s",
            summarize_payload(
                {
                    "sections": [section.section_id for section in plan.sections],
                    "complex": structure.has_complex_sections,
                    "verse_numbers": list(verse_numbers),
                    "stanzas": len(stanzas),
                }
            ),
        )
    return plan
