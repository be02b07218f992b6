"""MIDI note sequences."""

from hymnsync.midi.reader import (
    MidiNote,
    NoteSequence,
    TempoChange,
    parse_note_sequence,
    read_midi,
)

__all__ = [
    "MidiNote",
    "NoteSequence",
    "TempoChange",
    "parse_note_sequence",
    "read_midi",
]
