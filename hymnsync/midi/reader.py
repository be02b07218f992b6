"""Read MIDI files (or plain note lists) into a seconds-based note sequence."""

from __future__ import annotations

import io
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import mido

from hymnsync.mcp.logging_utils import get_logger

logger = get_logger(__name__)

DEFAULT_TEMPO_US = 500000


@dataclass(frozen=True)
class MidiNote:
    pitch: int
    start_time: float
    end_time: float
    velocity: int = 80
    channel: int = 0

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time


@dataclass(frozen=True)
class TempoChange:
    time: float
    qpm: float


@dataclass(frozen=True)
class NoteSequence:
    notes: Tuple[MidiNote, ...]
    tempos: Tuple[TempoChange, ...] = ()
    total_time: Optional[float] = None

    @property
    def end_time(self) -> float:
        if self.total_time is not None:
            return self.total_time
        return max((note.end_time for note in self.notes), default=0.0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "notes": [
                {
                    "pitch": note.pitch,
                    "startTime": note.start_time,
                    "endTime": note.end_time,
                    "velocity": note.velocity,
                    "channel": note.channel,
                }
                for note in self.notes
            ],
            "tempos": [{"time": tempo.time, "qpm": tempo.qpm} for tempo in self.tempos],
            "totalTime": self.end_time,
        }


def _tempo_map(midi: mido.MidiFile) -> List[Tuple[int, int]]:
    """Absolute-tick ``(tick, microseconds per quarter)`` changes, first at tick 0."""
    tempo_map: List[Tuple[int, int]] = [(0, DEFAULT_TEMPO_US)]
    for track in midi.tracks:
        abs_tick = 0
        for msg in track:
            abs_tick += int(msg.time)
            if msg.type == "set_tempo":
                tempo_map.append((abs_tick, int(msg.tempo)))
    tempo_map.sort(key=lambda item: item[0])
    # A set_tempo at tick 0 replaces the default.
    deduped: List[Tuple[int, int]] = []
    for tick, tempo in tempo_map:
        if deduped and deduped[-1][0] == tick:
            deduped[-1] = (tick, tempo)
        else:
            deduped.append((tick, tempo))
    return deduped


def read_midi(source: Union[str, Path, bytes]) -> NoteSequence:
    """Parse a MIDI file path or MIDI bytes into a NoteSequence."""
    if isinstance(source, (bytes, bytearray)):
        midi = mido.MidiFile(file=io.BytesIO(bytes(source)))
    else:
        midi = mido.MidiFile(str(source))
    ppq = int(getattr(midi, "ticks_per_beat", 480) or 480)
    tempo_map = _tempo_map(midi)

    def tick_to_seconds(tick: int) -> float:
        seconds = 0.0
        last_tick = 0
        current_tempo = tempo_map[0][1]
        for change_tick, tempo_us in tempo_map[1:]:
            if tick < change_tick:
                break
            seconds += mido.tick2second(change_tick - last_tick, ppq, current_tempo)
            last_tick = change_tick
            current_tempo = tempo_us
        seconds += mido.tick2second(tick - last_tick, ppq, current_tempo)
        return float(seconds)

    notes: List[MidiNote] = []
    for track in midi.tracks:
        abs_tick = 0
        active: Dict[Tuple[int, int], List[Tuple[int, int]]] = {}
        for msg in track:
            abs_tick += int(msg.time)
            if msg.type == "note_on" and int(msg.velocity) > 0:
                active.setdefault((int(msg.channel), int(msg.note)), []).append((abs_tick, int(msg.velocity)))
            elif msg.type == "note_off" or (msg.type == "note_on" and int(msg.velocity) == 0):
                key = (int(msg.channel), int(msg.note))
                if not active.get(key):
                    continue
                start_tick, velocity = active[key].pop(0)
                if abs_tick <= start_tick:
                    continue
                notes.append(
                    MidiNote(
                        pitch=key[1],
                        start_time=tick_to_seconds(start_tick),
                        end_time=tick_to_seconds(abs_tick),
                        velocity=velocity,
                        channel=key[0],
                    )
                )
        dangling = sum(len(starts) for starts in active.values())
        if dangling:
            logger.warning("midi_unterminated_notes count=%s", dangling)

    tempos = tuple(
        TempoChange(time=tick_to_seconds(tick), qpm=60_000_000.0 / tempo_us)
        for tick, tempo_us in tempo_map
        if tempo_us > 0
    )
    notes.sort(key=lambda note: (note.start_time, note.pitch))
    sequence = NoteSequence(notes=tuple(notes), tempos=tempos)
    logger.info("midi_read notes=%s tempos=%s total_time=%.3f", len(notes), len(tempos), sequence.end_time)
    return sequence


def _pick(raw: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in raw:
            return raw[key]
    return default


def parse_note_sequence(raw: Dict[str, Any]) -> NoteSequence:
    """Build a NoteSequence from ``{"notes": [...], "tempos": [...]}`` (camelCase or snake_case)."""
    notes: List[MidiNote] = []
    for item in raw.get("notes") or []:
        notes.append(
            MidiNote(
                pitch=int(item["pitch"]),
                start_time=float(_pick(item, "startTime", "start_time", default=0.0)),
                end_time=float(_pick(item, "endTime", "end_time", default=0.0)),
                velocity=int(item.get("velocity", 80)),
                channel=int(_pick(item, "channel", "instrument", default=0)),
            )
        )
    tempos: Sequence[Dict[str, Any]] = raw.get("tempos") or []
    total_time = _pick(raw, "totalTime", "total_time")
    return NoteSequence(
        notes=tuple(notes),
        tempos=tuple(TempoChange(time=float(t.get("time", 0.0)), qpm=float(t["qpm"])) for t in tempos),
        total_time=float(total_time) if total_time is not None else None,
    )
