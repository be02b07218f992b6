"""Chord-position indexing, score expansion and MIDI alignment for MEI scores."""

__version__ = "0.1.0"
