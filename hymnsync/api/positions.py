"""Chord-position indexing over the onset/offset timemap."""

from __future__ import annotations

import logging
from bisect import bisect_left
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from hymnsync.mcp.logging_utils import get_logger, summarize_payload
from hymnsync.mei.document import (
    Element,
    ScoreDocument,
    TimeSignature,
    element_id,
    iter_measures,
    resolve_pitches,
    strip_ref,
    text_content,
)

logger = get_logger(__name__)

INTRO_BRACKET_START = "⌜"
INTRO_BRACKET_END = "⌝"
_Q_EPSILON = 1e-6

MEASURE_TYPES = ("full", "partial-pickup", "partial-pickdown", "partial-start", "partial-end")


@dataclass(frozen=True)
class NoteOrRest:
    index: int
    element_id: str
    tag: str
    staff_number: int
    layer_number: int
    measure_id: Optional[str]
    chord_id: Optional[str]
    pitch: Optional[int]
    dur: Optional[str]
    tied_note_id: Optional[str]
    is_tied_note: bool
    is_rest: bool
    is_cue: bool
    is_grace: bool
    lyric_syllables: Tuple[str, ...]
    chord_position: Optional[int] = None
    start_q: Optional[float] = None
    end_q: Optional[float] = None

    @property
    def is_audible(self) -> bool:
        return not (self.is_rest or self.is_cue or self.is_tied_note)

    @property
    def duration_q(self) -> Optional[float]:
        if self.start_q is None or self.end_q is None:
            return None
        return self.end_q - self.start_q


@dataclass(frozen=True)
class Measure:
    index: int
    measure_id: Optional[str]
    number: Optional[str]
    time_signature: TimeSignature
    is_first: bool
    is_last: bool
    right_barline: str
    left_barline: Optional[str]
    system_number: int
    start_q: Optional[float]
    end_q: Optional[float]
    measure_type: str
    first_chord_position: Optional[int]

    @property
    def duration_q(self) -> Optional[float]:
        if self.start_q is None or self.end_q is None:
            return None
        return self.end_q - self.start_q


@dataclass(frozen=True)
class ChordPosition:
    chord_position: int
    start_q: float
    end_q: float
    measure_index: int
    note_indices: Tuple[int, ...]
    is_audible: bool
    is_downbeat: bool

    @property
    def duration_q(self) -> float:
        return self.end_q - self.start_q


@dataclass(frozen=True)
class LyricEntry:
    """One non-empty ``<verse>`` element."""

    index: int
    ordinal: int
    owner_id: Optional[str]
    owner_tag: str
    chord_position: Optional[int]
    staff_number: int
    line_number: int
    syl_texts: Tuple[str, ...]
    labels: Tuple[str, ...]
    has_chorus_label: bool

    @property
    def lyric_line_id(self) -> str:
        return f"{self.staff_number}.{self.line_number}"

    @property
    def syllables(self) -> Tuple[str, ...]:
        return tuple(text.strip() for text in self.syl_texts if text.strip())


@dataclass(frozen=True)
class ControlEvent:
    """A ``dir``, ``harm`` or ``fermata`` placed on a chord position."""

    ordinal: int
    tag: str
    element_id: Optional[str]
    measure_index: Optional[int]
    tstamp: Optional[float]
    qstamp: Optional[float]
    chord_position: Optional[int]
    text: str
    event_type: Optional[str]
    intro_bracket: Optional[str]


@dataclass(frozen=True)
class PositionIndex:
    notes: Tuple[NoteOrRest, ...]
    note_index_by_id: Dict[str, int]
    chord_positions: Tuple[ChordPosition, ...]
    audible_chord_positions: Tuple[int, ...]
    measures: Tuple[Measure, ...]
    measure_index_by_id: Dict[str, int]
    lyrics: Tuple[LyricEntry, ...]
    control_events: Tuple[ControlEvent, ...]
    containers: Dict[str, Tuple[int, ...]]
    chord_sizes: Dict[str, int]
    staff_numbers: Tuple[int, ...]
    has_lyrics: bool

    @property
    def num_chord_positions(self) -> int:
        return len(self.chord_positions)

    def note(self, note_id: Optional[str]) -> Optional[NoteOrRest]:
        if note_id is None or note_id not in self.note_index_by_id:
            return None
        return self.notes[self.note_index_by_id[note_id]]

    def measure_of(self, chord_position: int) -> Measure:
        return self.measures[self.chord_positions[chord_position].measure_index]

    def intro_brackets(self) -> List[ControlEvent]:
        return [event for event in self.control_events if event.intro_bracket]


def _layer_numbers(root: Element) -> Dict[Tuple[str, str], int]:
    """Renumber layers per staff from 1 when unusual layer numbers are present."""
    seen: Dict[str, List[str]] = {}
    suspicious = False
    for staff in root.iter("staff"):
        staff_n = staff.get("n", "1")
        for layer in staff.iter("layer"):
            layer_n = layer.get("n", "1")
            if layer_n not in ("1", "2"):
                suspicious = True
            bucket = seen.setdefault(staff_n, [])
            if layer_n not in bucket:
                bucket.append(layer_n)
    mapping: Dict[Tuple[str, str], int] = {}
    for staff_n, layer_ns in seen.items():
        ordered = sorted(layer_ns, key=lambda value: int(value) if value.isdigit() else 0)
        for position, layer_n in enumerate(ordered, start=1):
            if suspicious:
                mapping[(staff_n, layer_n)] = position
            else:
                mapping[(staff_n, layer_n)] = int(layer_n) if layer_n.isdigit() else position
    return mapping


def _as_int(value: Optional[str], default: int) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _measure_type(measure: Dict[str, Any]) -> str:
    duration = measure["end_q"] - measure["start_q"] if measure["end_q"] is not None and measure["start_q"] is not None else None
    count, unit = measure["time_signature"]
    complete = count * (4 / unit) if unit else 0
    if duration is None or abs(duration - complete) < _Q_EPSILON:
        return "full"
    if measure["is_first"]:
        return "partial-pickup"
    if measure["is_last"]:
        return "partial-pickdown"
    if measure["right_barline"] == "invis":
        return "partial-start"
    return "partial-end"


def index_positions(document: ScoreDocument) -> PositionIndex:
    """Assign chord positions, measure timing and lookup tables for ``document``."""
    root = document.root
    timemap = document.timemap
    if not timemap:
        raise ValueError("Timemap is empty; nothing to index.")

    layer_numbers = _layer_numbers(root)
    tied_notes: Dict[str, str] = {}
    for tie in root.iter("tie"):
        start_id = strip_ref(tie.get("startid"))
        end_id = strip_ref(tie.get("endid"))
        if start_id and end_id:
            tied_notes[start_id] = end_id
    tied_targets = set(tied_notes.values())
    pitches = resolve_pitches(root)

    drafts: List[Dict[str, Any]] = []
    note_index_by_id: Dict[str, int] = {}
    chord_sizes: Dict[str, int] = {}
    for elem in root.iter():
        if elem.tag not in ("note", "rest", "mRest"):
            continue
        elem_id = element_id(elem)
        if not elem_id:
            continue
        chord = document.closest(elem, "chord")
        staff = document.closest(elem, "staff")
        layer = document.closest(elem, "layer")
        measure = document.closest(elem, "measure")
        staff_n = staff.get("n", "1") if staff is not None else "1"
        layer_n = layer.get("n", "1") if layer is not None else "1"
        chord_id = element_id(chord) if chord is not None else None
        if chord_id:
            chord_sizes[chord_id] = sum(1 for _ in chord.iter("note"))
        lyric_source = chord if chord is not None else elem
        is_rest = elem.tag != "note"
        note_index_by_id[elem_id] = len(drafts)
        drafts.append(
            {
                "index": len(drafts),
                "element_id": elem_id,
                "tag": elem.tag,
                "staff_number": _as_int(staff_n, 1),
                "layer_number": layer_numbers.get((staff_n, layer_n), _as_int(layer_n, 1)),
                "measure_id": element_id(measure) if measure is not None else None,
                "chord_id": chord_id,
                "pitch": None if is_rest else pitches.get(elem_id),
                "dur": (chord.get("dur") if chord is not None else None) or elem.get("dur"),
                "tied_note_id": tied_notes.get(elem_id),
                "is_tied_note": elem_id in tied_targets,
                "is_rest": is_rest,
                "is_cue": elem.get("cue") == "true",
                "is_grace": elem.get("grace") is not None,
                "lyric_syllables": tuple(syl.text or "" for syl in lyric_source.iter("syl")),
                "chord_position": None,
                "start_q": None,
                "end_q": None,
            }
        )

    measure_drafts: List[Dict[str, Any]] = []
    measure_index_by_id: Dict[str, int] = {}
    measure_list = list(iter_measures(root))
    for position, (measure, time_signature, system_number) in enumerate(measure_list):
        measure_id = element_id(measure)
        if measure_id:
            measure_index_by_id[measure_id] = position
        measure_drafts.append(
            {
                "index": position,
                "measure_id": measure_id,
                "number": measure.get("n"),
                "time_signature": time_signature,
                "is_first": position == 0,
                "is_last": position == len(measure_list) - 1,
                "right_barline": measure.get("right") or "single",
                "left_barline": measure.get("left"),
                "system_number": system_number,
                "start_q": None,
                "end_q": None,
                "measure_type": "full",
                "first_chord_position": None,
            }
        )

    position_drafts: List[Dict[str, Any]] = []
    containers: Dict[str, List[int]] = {}
    current_measure: Optional[int] = None
    current_container: Optional[str] = None
    unknown_ids: List[str] = []
    for entry in timemap:
        qstamp = float(entry.get("qstamp", 0.0))
        on_ids = list(entry.get("on") or []) + list(entry.get("restsOn") or [])
        off_ids = list(entry.get("off") or []) + list(entry.get("restsOff") or [])
        measure_on = entry.get("measureOn")
        if measure_on is not None and measure_on in measure_index_by_id:
            measure_index = measure_index_by_id[measure_on]
            measure_drafts[measure_index]["start_q"] = qstamp
            if current_measure is not None:
                measure_drafts[current_measure]["end_q"] = qstamp
            current_measure = measure_index
            measure_elem = measure_list[measure_index][0]
            container = document.closest(measure_elem, "section", "ending")
            current_container = element_id(container) if container is not None else None
            if current_container is not None:
                containers.setdefault(current_container, [])
        members = []
        for on_id in on_ids:
            if on_id in note_index_by_id:
                members.append(note_index_by_id[on_id])
            else:
                unknown_ids.append(on_id)
        if members:
            chord_position = len(position_drafts)
            for member in members:
                drafts[member]["chord_position"] = chord_position
                drafts[member]["start_q"] = qstamp
            if position_drafts:
                position_drafts[-1]["end_q"] = qstamp
            measure_index = current_measure if current_measure is not None else 0
            if measure_drafts and measure_drafts[measure_index]["first_chord_position"] is None:
                measure_drafts[measure_index]["first_chord_position"] = chord_position
            position_drafts.append(
                {
                    "chord_position": chord_position,
                    "start_q": qstamp,
                    "end_q": qstamp,
                    "measure_index": measure_index,
                    "note_indices": members,
                }
            )
            if current_container is not None:
                containers[current_container].append(chord_position)
        for off_id in off_ids:
            if off_id in note_index_by_id:
                drafts[note_index_by_id[off_id]]["end_q"] = qstamp
    if not position_drafts:
        raise ValueError("Timemap has no onsets; nothing to index.")
    if unknown_ids:
        logger.warning("timemap_unknown_ids count=%s sample=%s", len(unknown_ids), unknown_ids[:5])

    last_q = float(timemap[-1].get("qstamp", 0.0))
    position_drafts[-1]["end_q"] = max(last_q, position_drafts[-1]["start_q"])
    if current_measure is not None:
        measure_drafts[current_measure]["end_q"] = last_q
    for draft in measure_drafts:
        draft["measure_type"] = _measure_type(draft)

    notes = tuple(NoteOrRest(**draft) for draft in drafts)

    def tied_duration(note: NoteOrRest) -> float:
        total = note.duration_q or 0.0
        if note.tied_note_id and note.tied_note_id in note_index_by_id:
            total += notes[note_index_by_id[note.tied_note_id]].duration_q or 0.0
        return total

    downbeats = set()
    for draft in measure_drafts:
        if draft["first_chord_position"] is not None and draft["measure_type"] not in ("partial-end", "partial-pickup"):
            downbeats.add(draft["first_chord_position"])

    chord_positions = []
    for draft in position_drafts:
        members = sorted(
            draft["note_indices"],
            key=lambda idx: (
                notes[idx].pitch if notes[idx].pitch is not None else -1,
                tied_duration(notes[idx]),
            ),
        )
        chord_positions.append(
            ChordPosition(
                chord_position=draft["chord_position"],
                start_q=draft["start_q"],
                end_q=draft["end_q"],
                measure_index=draft["measure_index"],
                note_indices=tuple(members),
                is_audible=any(notes[idx].is_audible for idx in members),
                is_downbeat=draft["chord_position"] in downbeats,
            )
        )
    measures = tuple(Measure(**draft) for draft in measure_drafts)

    lyrics = _index_lyrics(document, notes, note_index_by_id)
    control_events = _index_control_events(document, notes, note_index_by_id, chord_positions, measures, measure_index_by_id)

    staff_numbers: List[int] = []
    for staff_def in root.iter("staffDef"):
        number = _as_int(staff_def.get("n"), 0)
        if number and number not in staff_numbers:
            staff_numbers.append(number)
    if not staff_numbers:
        staff_numbers = sorted({note.staff_number for note in notes}) or [1]

    index = PositionIndex(
        notes=notes,
        note_index_by_id=note_index_by_id,
        chord_positions=tuple(chord_positions),
        audible_chord_positions=tuple(cp.chord_position for cp in chord_positions if cp.is_audible),
        measures=measures,
        measure_index_by_id=measure_index_by_id,
        lyrics=lyrics,
        control_events=control_events,
        containers={key: tuple(value) for key, value in containers.items()},
        chord_sizes=chord_sizes,
        staff_numbers=tuple(staff_numbers),
        has_lyrics=next(root.iter("verse"), None) is not None,
    )
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug(
            "index_positions output=%s",
            summarize_payload(
                {
                    "notes": len(index.notes),
                    "chord_positions": index.num_chord_positions,
                    "audible": len(index.audible_chord_positions),
                    "measures": len(index.measures),
                    "staff_numbers": list(index.staff_numbers),
                }
            ),
        )
    return index


def _owner_chord_position(
    owner: Element,
    notes: Sequence[NoteOrRest],
    note_index_by_id: Dict[str, int],
) -> Optional[int]:
    candidates = [owner] if owner.tag != "chord" else list(owner.iter("note"))
    for candidate in candidates:
        candidate_id = element_id(candidate)
        if candidate_id in note_index_by_id:
            chord_position = notes[note_index_by_id[candidate_id]].chord_position
            if chord_position is not None:
                return chord_position
    return None


def _index_lyrics(
    document: ScoreDocument,
    notes: Sequence[NoteOrRest],
    note_index_by_id: Dict[str, int],
) -> Tuple[LyricEntry, ...]:
    entries: List[LyricEntry] = []
    for ordinal, verse in enumerate(document.root.iter("verse")):
        if not text_content(verse).strip():
            continue
        owner = document.closest(verse, "note", "chord")
        staff = document.closest(verse, "staff")
        entries.append(
            LyricEntry(
                index=len(entries),
                ordinal=ordinal,
                owner_id=element_id(owner) if owner is not None else None,
                owner_tag=owner.tag if owner is not None else "",
                chord_position=_owner_chord_position(owner, notes, note_index_by_id) if owner is not None else None,
                staff_number=_as_int(staff.get("n") if staff is not None else None, 1),
                line_number=_as_int(verse.get("n"), 1),
                syl_texts=tuple(syl.text or "" for syl in verse.iter("syl")),
                labels=tuple(
                    text_content(label).strip() for label in verse.iter("label") if text_content(label).strip()
                ),
                has_chorus_label=verse.get("label") == "chorus",
            )
        )
    return tuple(entries)


def _index_control_events(
    document: ScoreDocument,
    notes: Sequence[NoteOrRest],
    note_index_by_id: Dict[str, int],
    chord_positions: Sequence[ChordPosition],
    measures: Sequence[Measure],
    measure_index_by_id: Dict[str, int],
) -> Tuple[ControlEvent, ...]:
    starts = [cp.start_q for cp in chord_positions] + [chord_positions[-1].end_q]
    events: List[ControlEvent] = []
    ordinal = 0
    current_measure: Optional[Measure] = None
    for elem in document.root.iter():
        if elem.tag == "measure":
            measure_id = element_id(elem)
            current_measure = measures[measure_index_by_id[measure_id]] if measure_id in measure_index_by_id else None
            continue
        if elem.tag not in ("dir", "harm", "fermata"):
            continue
        tstamp: Optional[float] = None
        try:
            tstamp = float(elem.get("tstamp")) if elem.get("tstamp") else None
        except ValueError:
            tstamp = None
        qstamp: Optional[float] = None
        chord_position: Optional[int] = None
        if tstamp and current_measure is not None and current_measure.start_q is not None:
            quarters_per_beat = 4 / current_measure.time_signature[1]
            qstamp = current_measure.start_q + (tstamp - 1) * quarters_per_beat
            if current_measure.end_q is not None:
                qstamp = min(current_measure.end_q, qstamp)
            chord_position = bisect_left(starts, qstamp - _Q_EPSILON)
        else:
            ref = document.find(strip_ref(elem.get("startid")))
            if ref is not None:
                chord_position = _owner_chord_position(ref, notes, note_index_by_id)
                if chord_position is not None:
                    qstamp = chord_positions[chord_position].start_q
        text = text_content(elem).strip()
        intro_bracket = None
        if text == INTRO_BRACKET_START:
            intro_bracket = "start"
        elif text == INTRO_BRACKET_END:
            intro_bracket = "end"
        events.append(
            ControlEvent(
                ordinal=ordinal,
                tag=elem.tag,
                element_id=element_id(elem),
                measure_index=current_measure.index if current_measure is not None else None,
                tstamp=tstamp,
                qstamp=qstamp,
                chord_position=chord_position,
                text=text,
                event_type=elem.get("type"),
                intro_bracket=intro_bracket,
            )
        )
        ordinal += 1
    return tuple(events)
