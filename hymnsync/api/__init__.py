"""
Score positioning API

This module exposes the engine stages and the end-to-end score loader.
"""

from hymnsync.api.positions import index_positions
from hymnsync.api.parts import assign_parts, resolve_parts
from hymnsync.api.sections import detect_sections
from hymnsync.api.expansion import expand_sections, visible_positions
from hymnsync.api.introduction import extract_piano_introduction
from hymnsync.api.midi_align import align_midi, convert_qpm_to_metronome_bpm
from hymnsync.api.alignment_errors import MidiAlignmentError
from hymnsync.api.annotate import annotate_document, render_display_document
from hymnsync.api.chord_sets import resolve_chord_sets
from hymnsync.api.keys import get_key_signature_info
from hymnsync.api.resources import fetch_resources
from hymnsync.api.score import ScoreData, load_score, load_score_from_urls

__all__ = [
    # Stages
    "index_positions",
    "resolve_parts",
    "assign_parts",
    "detect_sections",
    "expand_sections",
    "visible_positions",
    "extract_piano_introduction",
    "align_midi",
    "convert_qpm_to_metronome_bpm",
    "MidiAlignmentError",
    # Output
    "annotate_document",
    "render_display_document",
    # Lookups
    "resolve_chord_sets",
    "get_key_signature_info",
    # Convenience
    "fetch_resources",
    "load_score",
    "load_score_from_urls",
    "ScoreData",
]
