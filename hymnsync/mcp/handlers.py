from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional

from hymnsync.api import (
    align_midi,
    assign_parts,
    detect_sections,
    expand_sections,
    extract_piano_introduction,
    index_positions,
    load_score,
    resolve_parts,
)
from hymnsync.api.resources import load_structured_file
from hymnsync.config import Settings
from hymnsync.mcp.resolve import (
    LYRICS_SUFFIXES,
    MIDI_SUFFIXES,
    SCORE_SUFFIXES,
    STRUCTURED_SUFFIXES,
    resolve_input_path,
    resolve_optional_input,
    score_root,
)
from hymnsync.mei.document import ScoreDocument, load_document
from hymnsync.midi.reader import NoteSequence, parse_note_sequence, read_midi


def _score_path(params: Dict[str, Any], root: Path) -> Path:
    return resolve_input_path(params.get("file_path", ""), root, SCORE_SUFFIXES)


def _document(params: Dict[str, Any], root: Path) -> ScoreDocument:
    return load_document(_score_path(params, root))


def _structured(params: Dict[str, Any], key: str, root: Path) -> Any:
    """Inline value for ``key``, else the YAML/JSON file named by ``<key>_path``."""
    if params.get(key) is not None:
        return params[key]
    path = resolve_optional_input(params.get(f"{key}_path"), root, STRUCTURED_SUFFIXES)
    return load_structured_file(path) if path is not None else None


def _lyrics(params: Dict[str, Any], root: Path) -> Optional[str]:
    if params.get("lyrics_text"):
        return params["lyrics_text"]
    path = resolve_optional_input(params.get("lyrics_path"), root, LYRICS_SUFFIXES)
    return path.read_text(encoding="utf-8") if path is not None else None


def _sequence(params: Dict[str, Any], root: Path) -> Optional[NoteSequence]:
    if params.get("note_sequence") is not None:
        return parse_note_sequence(params["note_sequence"])
    path = resolve_optional_input(params.get("midi_path"), root, MIDI_SUFFIXES)
    return read_midi(path) if path is not None else None


def handle_load_score(params: Dict[str, Any], settings: Settings) -> Dict[str, Any]:
    root = score_root(settings)
    data = load_score(
        _score_path(params, root),
        midi=_sequence(params, root),
        lyrics_text=_lyrics(params, root),
        parts=_structured(params, "parts", root),
        parts_template=params.get("parts_template"),
        sections=_structured(params, "sections", root),
        chord_sets=_structured(params, "chord_sets", root),
        fermatas=params.get("fermatas"),
        expand_intro=params.get("expand_intro", False),
        settings=settings,
    )
    return data.to_dict(include_mei=params.get("include_mei", False))


def handle_resolve_parts(params: Dict[str, Any], settings: Settings) -> Dict[str, Any]:
    root = score_root(settings)
    index = index_positions(_document(params, root))
    parts = resolve_parts(
        index.staff_numbers,
        index.has_lyrics,
        parts=_structured(params, "parts", root),
        template=params.get("parts_template"),
    )
    assignment = assign_parts(index, parts)
    return {
        "parts": [part.to_dict() for part in parts],
        "staffNumbers": list(index.staff_numbers),
        "hasMelodyInfo": assignment.has_melody_info,
        "melodyNoteIds": [
            index.notes[note_index].element_id if note_index is not None else None
            for note_index in assignment.melody_notes
        ],
    }


def handle_extract_introduction(params: Dict[str, Any], settings: Settings) -> Dict[str, Any]:
    document = _document(params, score_root(settings))
    extracted = extract_piano_introduction(document)
    return {
        "extracted": extracted is not document,
        "mei": extracted.to_mei(),
    }


def handle_align_midi(params: Dict[str, Any], settings: Settings) -> Dict[str, Any]:
    root = score_root(settings)
    document = _document(params, root)
    index = index_positions(document)
    parts = resolve_parts(
        index.staff_numbers,
        index.has_lyrics,
        parts=_structured(params, "parts", root),
        template=params.get("parts_template"),
    )
    assignment = assign_parts(index, parts)
    plan = detect_sections(
        document,
        index,
        assignment,
        sections=_structured(params, "sections", root),
        lyrics_text=_lyrics(params, root),
        settings=settings,
    )
    expansion = expand_sections(index, plan.sections)
    alignment = align_midi(
        index,
        assignment,
        plan.sections,
        expansion,
        _sequence(params, root),
        fermatas=params.get("fermatas"),
        timemap=document.timemap,
        settings=settings,
    )
    return alignment.to_dict()


HANDLERS = {
    "load_score": handle_load_score,
    "resolve_parts": handle_resolve_parts,
    "extract_introduction": handle_extract_introduction,
    "align_midi": handle_align_midi,
}
