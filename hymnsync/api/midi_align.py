"""Align a MIDI-like note sequence to chord positions and expanded chord positions.

The sequence is either "complete" (one onset per audible expanded position, so
repeats and verses are played out) or "minimal" (one onset per audible written
position). Anything else is a reconciliation failure: external input is
replaced once by a sequence rendered from the score itself.
"""

from __future__ import annotations

import logging
import math
from bisect import bisect_right
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from hymnsync.api.alignment_errors import MidiAlignmentError
from hymnsync.api.expansion import Expansion
from hymnsync.api.parts import PartAssignment
from hymnsync.api.positions import NoteOrRest, PositionIndex
from hymnsync.api.structure import Section
from hymnsync.config import Settings
from hymnsync.mcp.logging_utils import get_logger, summarize_payload
from hymnsync.midi.reader import MidiNote, NoteSequence, TempoChange

logger = get_logger(__name__)

SIMPLE_COUNTS = (1, 2, 3, 4, 5, 7, 8, 10, 11, 13, 14, 15)
COMPOUND_COUNTS = (6, 9, 12, 15, 18, 21, 24)
QUARTERS_PER_UNIT = {1: 4.0, 2: 2.0, 4: 1.0, 8: 0.5, 16: 0.25}
_DOWNBEAT_TOLERANCE = 0.005
_Q_EPSILON = 1e-6


@dataclass(frozen=True)
class Fermata:
    chord_position: int
    duration_factor: float


def parse_fermatas(raw: Optional[Iterable[Any]]) -> List[Fermata]:
    fermatas: List[Fermata] = []
    for item in raw or []:
        if isinstance(item, Fermata):
            fermatas.append(item)
            continue
        chord_position = item.get("chordPosition", item.get("chord_position"))
        factor = item.get("durationFactor", item.get("duration_factor", 1.0))
        if chord_position is None:
            logger.warning("fermata_missing_chord_position entry=%s", item)
            continue
        fermatas.append(Fermata(chord_position=int(chord_position), duration_factor=float(factor)))
    return fermatas


@dataclass(frozen=True)
class PositionTiming:
    chord_position: int
    start_time: float
    end_time: float
    qpm: float
    notes_by_pitch: Dict[int, Tuple[MidiNote, ...]] = field(default_factory=dict)

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time


@dataclass(frozen=True)
class SynthesizedNote:
    expanded_chord_position: int
    pitch: int
    start_time: float
    end_time: float
    velocity: int
    channels: Tuple[int, ...]
    note_ids: Tuple[str, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "expandedChordPosition": self.expanded_chord_position,
            "pitch": self.pitch,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "velocity": self.velocity,
            "channels": list(self.channels),
            "noteIds": list(self.note_ids),
        }


@dataclass(frozen=True)
class ExpandedTiming:
    expanded_chord_position: int
    start_time: float
    end_time: float
    notes: Tuple[SynthesizedNote, ...] = ()


@dataclass(frozen=True)
class MetronomeBeat:
    start_q: float
    is_downbeat: bool
    beat_number: Optional[int]
    bpm: int
    start_time: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "startQ": self.start_q,
            "isDownbeat": self.is_downbeat,
            "beatNumber": self.beat_number,
            "bpm": self.bpm,
            "startTime": self.start_time,
        }


@dataclass(frozen=True)
class MidiAlignment:
    midi_type: str
    source: str
    positions: Tuple[PositionTiming, ...]
    expanded: Tuple[ExpandedTiming, ...]
    notes: Tuple[SynthesizedNote, ...]
    metronome: Tuple[MetronomeBeat, ...]
    total_time: float
    fermata_positions: Tuple[int, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "midiType": self.midi_type,
            "source": self.source,
            "totalTime": self.total_time,
            "chordPositions": [
                {
                    "chordPosition": timing.chord_position,
                    "startTime": timing.start_time,
                    "endTime": timing.end_time,
                    "qpm": timing.qpm,
                }
                for timing in self.positions
            ],
            "expandedChordPositions": [
                {
                    "expandedChordPosition": timing.expanded_chord_position,
                    "startTime": timing.start_time,
                    "endTime": timing.end_time,
                }
                for timing in self.expanded
            ],
            "notes": [note.to_dict() for note in self.notes],
            "metronomeBeats": [beat.to_dict() for beat in self.metronome],
        }


@dataclass
class _Bucketed:
    note: MidiNote
    end_time: float
    expanded_chord_position: Optional[int] = None


@dataclass
class _Timing:
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    qpm: Optional[float] = None
    notes_by_pitch: Dict[int, List[_Bucketed]] = field(default_factory=dict)

    @property
    def duration(self) -> float:
        if self.start_time is None or self.end_time is None:
            return 0.0
        return self.end_time - self.start_time


def convert_qpm_to_metronome_bpm(qpm: float, time_signature: Tuple[int, int]) -> float:
    """Metronome beats per minute for a quarter-note tempo under ``time_signature``."""
    count, unit = time_signature
    if unit in (1, 2, 4) and 1 <= count <= 5:
        return qpm / QUARTERS_PER_UNIT[unit]
    if unit in (8, 16) and count in SIMPLE_COUNTS:
        return qpm / QUARTERS_PER_UNIT[unit]
    if unit in (2, 4, 8, 16) and count in COMPOUND_COUNTS:
        return qpm / QUARTERS_PER_UNIT[unit] / 3
    return qpm


def seconds_for_quarters(duration_q: float, qpm: float) -> float:
    return duration_q / (qpm / 60.0)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def qpm_lookup(tempos: Sequence[TempoChange], default_qpm: float) -> Callable[[float], float]:
    """Tempo in effect at a time: the last change at or before it."""
    ordered = sorted(tempos, key=lambda tempo: tempo.time)
    times = np.array([tempo.time for tempo in ordered], dtype=float)
    qpms = np.array([tempo.qpm for tempo in ordered], dtype=float)

    def lookup(seconds: float) -> float:
        if times.size == 0:
            return default_qpm
        slot = int(np.searchsorted(times, seconds, side="right")) - 1
        return float(qpms[slot]) if slot >= 0 else default_qpm

    return lookup


def _timemap_clock(
    timemap: Sequence[Dict[str, Any]],
    default_qpm: float,
) -> Tuple[Callable[[float], float], Tuple[TempoChange, ...]]:
    qstamps: List[float] = []
    seconds: List[float] = []
    qpms: List[float] = []
    tempos: List[TempoChange] = []
    qpm = default_qpm
    for entry in timemap:
        if entry.get("tempo") is not None:
            qpm = float(entry["tempo"])
            tempos.append(TempoChange(time=float(entry.get("tstamp", 0.0)) / 1000.0, qpm=qpm))
        qstamps.append(float(entry.get("qstamp", 0.0)))
        seconds.append(float(entry.get("tstamp", 0.0)) / 1000.0)
        qpms.append(qpm)
    q_array = np.array(qstamps, dtype=float)

    def to_seconds(qstamp: float) -> float:
        if q_array.size == 0:
            return seconds_for_quarters(qstamp, default_qpm)
        slot = int(np.searchsorted(q_array, qstamp + _Q_EPSILON, side="right")) - 1
        if slot < 0:
            return seconds_for_quarters(qstamp, default_qpm)
        return seconds[slot] + seconds_for_quarters(qstamp - qstamps[slot], qpms[slot])

    if not tempos:
        tempos.append(TempoChange(time=0.0, qpm=default_qpm))
    return to_seconds, tuple(tempos)


def _tie_chain(note: NoteOrRest, index: PositionIndex) -> List[NoteOrRest]:
    """``note`` followed by every note it is tied into, in order."""
    chain = [note]
    visited = {note.element_id}
    current = note
    while current.tied_note_id and current.tied_note_id not in visited:
        tied = index.note(current.tied_note_id)
        if tied is None:
            break
        visited.add(tied.element_id)
        chain.append(tied)
        current = tied
    return chain


def _tied_end_q(note: NoteOrRest, index: PositionIndex) -> Optional[float]:
    end_q = note.end_q
    for tied in _tie_chain(note, index)[1:]:
        if tied.end_q is not None:
            end_q = tied.end_q
    return end_q


def render_minimal_sequence(
    index: PositionIndex,
    timemap: Optional[Sequence[Dict[str, Any]]] = None,
    default_qpm: float = 120.0,
) -> NoteSequence:
    """One play-through of the written score, tied notes merged, at the notated tempo."""
    to_seconds, tempos = _timemap_clock(timemap or (), default_qpm)
    notes: List[MidiNote] = []
    for cp in index.audible_chord_positions:
        chord_position = index.chord_positions[cp]
        start = to_seconds(chord_position.start_q)
        for note_index in chord_position.note_indices:
            note = index.notes[note_index]
            if not note.is_audible or note.pitch is None:
                continue
            end_q = _tied_end_q(note, index)
            end = to_seconds(end_q if end_q is not None else chord_position.end_q)
            notes.append(MidiNote(pitch=note.pitch, start_time=start, end_time=max(end, start)))
    score_end_q = max((chord_position.end_q for chord_position in index.chord_positions), default=0.0)
    total_time = max([to_seconds(score_end_q)] + [note.end_time for note in notes])
    return NoteSequence(notes=tuple(notes), tempos=tempos, total_time=total_time)


def clean_notes(notes: Iterable[MidiNote]) -> Tuple[List[MidiNote], List[float]]:
    """Drop exact duplicates and sort by (start, pitch, duration); also return distinct start times."""
    seen = set()
    cleaned: List[MidiNote] = []
    for note in notes:
        key = (note.start_time, note.end_time, note.pitch)
        if key in seen:
            continue
        seen.add(key)
        cleaned.append(note)
    cleaned.sort(key=lambda note: (note.start_time, note.pitch, note.duration))
    return cleaned, sorted({note.start_time for note in cleaned})


def classify_sequence(start_time_count: int, index: PositionIndex, expansion: Expansion) -> Optional[str]:
    if start_time_count == len(expansion.audible_positions):
        return "complete"
    if start_time_count == len(index.audible_chord_positions):
        return "minimal"
    return None


def _silent_run(index: PositionIndex, timings: Sequence[_Timing], chord_positions: Iterable[int]) -> List[int]:
    """Consecutive untimed, inaudible chord positions (rests, tied continuations) in walk order."""
    run: List[int] = []
    for cp in chord_positions:
        if timings[cp].start_time is not None or index.chord_positions[cp].is_audible:
            break
        run.append(cp)
    return run


def _backfill(
    index: PositionIndex,
    timings: Sequence[_Timing],
    run: Sequence[int],
    clock: float,
    qpm: Optional[float],
    floor: Optional[float],
) -> float:
    """Time ``run`` (latest position first) backward from ``clock`` at its notated length.

    Returns the new clock, which becomes the end of the preceding timed
    position. The run is left untimed when it does not fit after ``floor``.
    """
    if not run or not qpm:
        return clock
    lengths = [seconds_for_quarters(index.chord_positions[cp].duration_q, qpm) for cp in run]
    if floor is not None and clock - sum(lengths) < floor - _Q_EPSILON:
        logger.debug("silent_run_does_not_fit chord_positions=%s", list(run))
        return clock
    for cp, length in zip(run, lengths):
        timings[cp].qpm = qpm
        timings[cp].end_time = clock
        timings[cp].start_time = clock - length
        clock -= length
    return clock


def _bucket(
    index: PositionIndex,
    expansion: Expansion,
    notes: Sequence[MidiNote],
    start_times: Sequence[float],
    midi_type: str,
    qpm_at: Callable[[float], float],
    total_time: float,
) -> List[_Timing]:
    timings = [_Timing() for _ in range(index.num_chord_positions)]
    rank = {start_time: position for position, start_time in enumerate(start_times)}
    previous: Optional[int] = None
    for note in notes:
        position = rank[note.start_time]
        expanded: Optional[int] = None
        if midi_type == "minimal":
            cp = index.audible_chord_positions[position]
        else:
            expanded = expansion.audible_positions[position]
            cp = expansion.positions[expanded].chord_position
        timing = timings[cp]
        if cp != previous:
            timing.start_time = note.start_time
            timing.end_time = note.end_time
            timing.qpm = qpm_at(note.start_time)
            if previous is not None:
                previous_timing = timings[previous]
                run = _silent_run(index, timings, range(cp - 1, -1, -1))
                previous_timing.end_time = _backfill(
                    index, timings, run, note.start_time, previous_timing.qpm, previous_timing.start_time
                )
        timing.end_time = max(timing.end_time or note.end_time, note.end_time)
        timing.notes_by_pitch.setdefault(note.pitch, []).append(
            _Bucketed(note=note, end_time=note.end_time, expanded_chord_position=expanded)
        )
        previous = cp
    if previous is not None:
        last = timings[previous]
        trailing = _silent_run(index, timings, range(previous + 1, len(timings)))
        last.end_time = _backfill(index, timings, trailing[::-1], total_time, last.qpm, last.start_time)

    timed = [cp for cp, timing in enumerate(timings) if timing.start_time is not None]
    if not timed:
        return timings
    first = timed[0]
    clock = timings[first].start_time
    for cp in range(first - 1, -1, -1):
        length = seconds_for_quarters(index.chord_positions[cp].duration_q, timings[first].qpm)
        timings[cp].qpm = timings[first].qpm
        timings[cp].end_time = clock
        timings[cp].start_time = clock - length
        clock -= length
    for cp in range(first + 1, len(timings)):
        if timings[cp].start_time is not None:
            continue
        before = timings[cp - 1]
        timings[cp].qpm = before.qpm
        timings[cp].start_time = before.end_time
        timings[cp].end_time = before.end_time + seconds_for_quarters(index.chord_positions[cp].duration_q, before.qpm)
    return timings


def _apply_fermatas(timings: List[_Timing], fermatas: Sequence[Fermata], tempo_drop: float) -> List[int]:
    applied: List[int] = []
    for fermata in fermatas:
        cp = fermata.chord_position
        if fermata.duration_factor <= 1 or cp in applied:
            continue
        if cp < 0 or cp >= len(timings):
            logger.warning("fermata_out_of_range chord_position=%s", cp)
            continue
        applied.append(cp)
        timing = timings[cp]
        previous = cp - 1
        while previous >= 0 and previous in applied:
            previous -= 1
        if previous >= 0 and (timing.qpm or 0.0) < (timings[previous].qpm or 0.0) * tempo_drop:
            logger.debug("fermata_already_in_tempo chord_position=%s", cp)
            continue
        offset = timing.duration * fermata.duration_factor - timing.duration
        timing.end_time = (timing.end_time or 0.0) + offset
        for bucket in timing.notes_by_pitch.values():
            for bucketed in bucket:
                bucketed.end_time += offset
    return applied


def _synthesize(
    expanded_chord_position: int,
    reference: Sequence[_Bucketed],
    notes: Sequence[NoteOrRest],
    assignment: PartAssignment,
    start_time: float,
    duration: float,
) -> SynthesizedNote:
    velocity = _round_half_up(sum(ref.note.velocity for ref in reference) / len(reference))
    return SynthesizedNote(
        expanded_chord_position=expanded_chord_position,
        pitch=int(notes[0].pitch),
        start_time=start_time,
        end_time=start_time + duration,
        velocity=velocity,
        channels=tuple(assignment.channels(notes[0].index)),
        note_ids=tuple(note.element_id for note in notes),
    )


def _expand(
    index: PositionIndex,
    assignment: PartAssignment,
    sections: Sequence[Section],
    expansion: Expansion,
    timings: Sequence[_Timing],
    pause_seconds: float,
) -> List[ExpandedTiming]:
    sections_by_id = {section.section_id: section for section in sections}
    notes_by_expanded: List[List[SynthesizedNote]] = [[] for _ in expansion.positions]
    times: List[Tuple[float, float]] = []
    clock = 0.0
    for ecp in expansion.positions:
        timing = timings[ecp.chord_position]
        start = clock
        for note_index in index.chord_positions[ecp.chord_position].note_indices:
            note = index.notes[note_index]
            if note.staff_number not in ecp.staff_numbers or ecp.is_skip or not note.is_audible:
                continue
            bucket = timing.notes_by_pitch.get(note.pitch) if note.pitch is not None else None
            if not bucket:
                logger.warning("midi_note_unaligned note_id=%s chord_position=%s", note.element_id, ecp.chord_position)
                continue
            reference = [
                ref
                for ref in bucket
                if ref.expanded_chord_position is None or ref.expanded_chord_position == ecp.index
            ]
            if not reference:
                logger.warning("midi_note_unaligned note_id=%s expanded=%s", note.element_id, ecp.index)
                continue
            reference_duration = max(ref.end_time - ref.note.start_time for ref in reference)

            tied = index.note(note.tied_note_id) if note.tied_note_id else None
            if tied is None or tied.chord_position is None:
                notes_by_expanded[ecp.index].append(
                    _synthesize(ecp.index, reference, [note], assignment, clock, reference_duration)
                )
                continue
            occurrences = expansion.occurrences_in(tied.chord_position, ecp.section_id)
            if not occurrences:
                logger.debug("tie_leaves_section note_id=%s section_id=%s", note.element_id, ecp.section_id)
                continue
            tied_ecp = expansion.positions[occurrences[0]]
            if tied_ecp.lyric_syllables and not tied_ecp.is_skip:
                tied_timing = timings[tied.chord_position]
                notes_by_expanded[ecp.index].append(
                    _synthesize(ecp.index, reference, [note], assignment, clock, reference_duration - tied_timing.duration)
                )
                notes_by_expanded[tied_ecp.index].append(
                    _synthesize(
                        tied_ecp.index,
                        reference,
                        _tie_chain(tied, index),
                        assignment,
                        clock + timing.duration,
                        reference_duration - timing.duration,
                    )
                )
            else:
                notes_by_expanded[ecp.index].append(
                    _synthesize(ecp.index, reference, _tie_chain(note, index), assignment, clock, reference_duration)
                )

        section = sections_by_id.get(ecp.section_id)
        pause = 0.0
        if section is not None and section.pause_after and expansion.last_in_section(section.section_id) == ecp.index:
            pause = pause_seconds
        clock += timing.duration + pause
        times.append((start, clock))

    return [
        ExpandedTiming(
            expanded_chord_position=position,
            start_time=times[position][0],
            end_time=times[position][1],
            notes=tuple(notes_by_expanded[position]),
        )
        for position in range(len(times))
    ]


def derive_metronome(
    index: PositionIndex,
    expansion: Expansion,
    timings: Sequence[_Timing],
    expanded: Sequence[ExpandedTiming],
) -> List[MetronomeBeat]:
    """Walk the expanded score in beats and number them from each downbeat."""
    positions = expansion.positions
    if not positions:
        return []
    start_qs = [ecp.start_q for ecp in positions]
    q = positions[0].start_q
    total_q = positions[-1].end_q
    beats: List[MetronomeBeat] = []
    beat_number: Optional[int] = None
    while q < total_q - _Q_EPSILON:
        slot = max(0, bisect_right(start_qs, q + _Q_EPSILON) - 1)
        ecp = positions[slot]
        qpm = timings[ecp.chord_position].qpm or 0.0
        measure = index.measure_of(ecp.chord_position)
        bpm = convert_qpm_to_metronome_bpm(qpm, measure.time_signature)
        if qpm <= 0 or bpm <= 0:
            break
        step = qpm / bpm

        measure_length = measure.duration_q or 0.0
        if measure.measure_type == "partial-pickup" and measure_length > 0:
            remainder = math.fmod(measure_length, step)
            if min(remainder, step - remainder) > _Q_EPSILON:
                q += measure_length
                continue

        difference = q - ecp.start_q
        is_downbeat = False
        if difference < _DOWNBEAT_TOLERANCE:
            is_downbeat = index.chord_positions[ecp.chord_position].is_downbeat
            start_time = expanded[slot].start_time
            beat_q = ecp.start_q
        else:
            start_time = expanded[slot].start_time + seconds_for_quarters(difference, qpm)
            beat_q = q
        if is_downbeat:
            beat_number = 1
        beats.append(
            MetronomeBeat(
                start_q=beat_q,
                is_downbeat=is_downbeat,
                beat_number=beat_number,
                bpm=_round_half_up(bpm),
                start_time=start_time,
            )
        )
        q += step
        if beat_number:
            beat_number += 1

    if beats and beats[0].beat_number is None:
        missing = 0
        previous: Optional[int] = None
        for beat in beats:
            if beat.beat_number is None:
                missing += 1
            elif beat.beat_number == 1 and previous is not None and previous >= 1:
                break
            previous = beat.beat_number
        if previous is not None:
            for position in range(missing - 1, -1, -1):
                beats[position] = replace(beats[position], beat_number=previous)
                previous -= 1
    return beats


def align_midi(
    index: PositionIndex,
    assignment: PartAssignment,
    sections: Sequence[Section],
    expansion: Expansion,
    sequence: Optional[NoteSequence] = None,
    *,
    fermatas: Optional[Iterable[Any]] = None,
    timemap: Optional[Sequence[Dict[str, Any]]] = None,
    settings: Optional[Settings] = None,
) -> MidiAlignment:
    """Time every chord position and expanded chord position from ``sequence``.

    Without a sequence, one is rendered from the score. Raises
    MidiAlignmentError when no usable sequence can be reconciled.
    """
    settings = settings or Settings()
    source = "external"
    if sequence is None:
        sequence = render_minimal_sequence(index, timemap, settings.default_qpm)
        source = "engine"

    notes, start_times = clean_notes(sequence.notes)
    midi_type = classify_sequence(len(start_times), index, expansion)
    if midi_type is None:
        error = MidiAlignmentError(
            midi_type=source,
            start_time_count=len(start_times),
            audible_chord_positions=len(index.audible_chord_positions),
            audible_expanded_chord_positions=len(expansion.audible_positions),
            source=source,
        )
        if source == "engine" or not settings.regenerate_on_mismatch:
            logger.error("midi_alignment_failed %s", error)
            raise error
        logger.warning("midi_chord_position_mismatch %s; regenerating from score", error)
        sequence = render_minimal_sequence(index, timemap, settings.default_qpm)
        source = "engine"
        notes, start_times = clean_notes(sequence.notes)
        midi_type = classify_sequence(len(start_times), index, expansion)
        if midi_type is None:
            error = replace(error, midi_type=source, start_time_count=len(start_times), source=source)
            logger.error("midi_alignment_failed %s", error)
            raise error

    default_qpm = settings.default_qpm
    if timemap:
        default_qpm = next((float(entry["tempo"]) for entry in timemap if entry.get("tempo") is not None), default_qpm)
    qpm_at = qpm_lookup(sequence.tempos, default_qpm)
    timings = _bucket(index, expansion, notes, start_times, midi_type, qpm_at, sequence.end_time)
    applied = _apply_fermatas(timings, parse_fermatas(fermatas), settings.fermata_tempo_drop)
    expanded = _expand(index, assignment, sections, expansion, timings, settings.section_pause_seconds)
    metronome = derive_metronome(index, expansion, timings, expanded)

    alignment = MidiAlignment(
        midi_type=midi_type,
        source=source,
        positions=tuple(
            PositionTiming(
                chord_position=cp,
                start_time=timing.start_time or 0.0,
                end_time=timing.end_time or 0.0,
                qpm=timing.qpm or default_qpm,
                notes_by_pitch={
                    pitch: tuple(replace(ref.note, end_time=ref.end_time) for ref in bucket)
                    for pitch, bucket in timing.notes_by_pitch.items()
                },
            )
            for cp, timing in enumerate(timings)
        ),
        expanded=tuple(expanded),
        notes=tuple(note for timing in expanded for note in timing.notes),
        metronome=tuple(metronome),
        total_time=expanded[-1].end_time if expanded else 0.0,
        fermata_positions=tuple(applied),
    )
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug(
            "align_midi output=%s",
            summarize_payload(
                {
                    "midi_type": midi_type,
                    "source": source,
                    "notes": len(alignment.notes),
                    "beats": len(alignment.metronome),
                    "total_time": alignment.total_time,
                }
            ),
        )
    return alignment
