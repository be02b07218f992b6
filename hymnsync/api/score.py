"""End-to-end score loading: index, parts, sections, expansion and timing."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Sequence, Union

from hymnsync.api.alignment_errors import MidiAlignmentError
from hymnsync.api.annotate import annotate_document, render_display_document
from hymnsync.api.chord_sets import ChordSet, resolve_chord_sets
from hymnsync.api.expansion import Expansion, expand_sections
from hymnsync.api.introduction import extract_piano_introduction
from hymnsync.api.keys import KeySignatureInfo, get_key_signature_info
from hymnsync.api.midi_align import MidiAlignment, align_midi
from hymnsync.api.parts import PartAssignment, assign_parts, resolve_parts
from hymnsync.api.positions import PositionIndex, index_positions
from hymnsync.api.resources import fetch_resources
from hymnsync.api.sections import SectionPlan, detect_sections
from hymnsync.config import Settings
from hymnsync.mcp.logging_utils import get_logger, log_stage, summarize_payload
from hymnsync.mei.document import ScoreDocument, load_document
from hymnsync.midi.reader import NoteSequence, parse_note_sequence, read_midi

logger = get_logger(__name__)

ScoreSource = Union[str, Path, bytes, ScoreDocument]
MidiSource = Union[str, Path, bytes, NoteSequence, Dict[str, Any]]


@dataclass(frozen=True)
class ScoreData:
    document: ScoreDocument
    annotated: ScoreDocument
    index: PositionIndex
    assignment: PartAssignment
    plan: SectionPlan
    expansion: Expansion
    key_signature: KeySignatureInfo
    chord_sets: Dict[str, ChordSet]
    alignment: Optional[MidiAlignment] = None
    alignment_error: Optional[MidiAlignmentError] = None

    def display(
        self,
        *,
        expand_score: Optional[str] = None,
        show_melody_only: bool = False,
        hidden_section_ids: Optional[Iterable[str]] = None,
    ) -> ScoreDocument:
        return render_display_document(
            self.annotated,
            self.index,
            self.assignment,
            self.plan,
            self.expansion,
            expand_score=expand_score,
            show_melody_only=show_melody_only,
            hidden_section_ids=hidden_section_ids,
        )

    def to_dict(self, *, include_mei: bool = False) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "numChordPositions": self.index.num_chord_positions,
            "numExpandedChordPositions": self.expansion.num_expanded,
            "staffNumbers": list(self.index.staff_numbers),
            "hasLyrics": self.index.has_lyrics,
            "hasMelodyInfo": self.assignment.has_melody_info,
            "hasIntroduction": self.plan.has_introduction,
            "hasRepeatOrJump": self.plan.structure.has_repeat_or_jump,
            "verseNumbers": list(self.plan.structure.verse_numbers),
            "parts": [part.to_dict() for part in self.assignment.parts],
            "sections": [section.to_dict() for section in self.plan.sections],
            "expandedChordPositions": [ecp.to_dict() for ecp in self.expansion.positions],
            "keySignatureInfo": self.key_signature.to_dict(),
            "chordSets": [chord_set.to_dict() for chord_set in self.chord_sets.values()],
            "midi": self.alignment.to_dict() if self.alignment is not None else None,
            "alignmentError": self.alignment_error.to_payload() if self.alignment_error is not None else None,
        }
        if include_mei:
            payload["mei"] = self.annotated.to_mei()
        return payload


def _load_sequence(midi: Optional[MidiSource]) -> Optional[NoteSequence]:
    if midi is None or isinstance(midi, NoteSequence):
        return midi
    if isinstance(midi, dict):
        return parse_note_sequence(midi)
    return read_midi(midi)


def load_score(
    score: ScoreSource,
    *,
    midi: Optional[MidiSource] = None,
    lyrics_text: Optional[str] = None,
    parts: Optional[Sequence[Dict[str, Any]]] = None,
    parts_template: Optional[str] = None,
    sections: Optional[Sequence[Dict[str, Any]]] = None,
    chord_sets: Optional[Sequence[Dict[str, Any]]] = None,
    fermatas: Optional[Iterable[Any]] = None,
    expand_intro: bool = False,
    settings: Optional[Settings] = None,
) -> ScoreData:
    """Run every stage over one score.

    A reconciliation failure leaves ``alignment`` empty and records the error;
    the rest of the score data is still returned.
    """
    settings = settings or Settings.from_env()
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug(
            "load_score input=%s",
            summarize_payload(
                {
                    "score": score if isinstance(score, (str, Path)) else type(score).__name__,
                    "midi": type(midi).__name__ if midi is not None else None,
                    "has_lyrics_text": bool(lyrics_text),
                    "parts": parts,
                    "parts_template": parts_template,
                    "sections": sections,
                    "expand_intro": expand_intro,
                }
            ),
        )
    with log_stage("load"):
        document = score if isinstance(score, ScoreDocument) else load_document(score)
        if expand_intro:
            document = extract_piano_introduction(document)

    with log_stage("index"):
        index = index_positions(document)
        resolved_parts = resolve_parts(index.staff_numbers, index.has_lyrics, parts=parts, template=parts_template)
        assignment = assign_parts(index, resolved_parts)
    with log_stage("sections"):
        plan = detect_sections(
            document,
            index,
            assignment,
            sections=sections,
            lyrics_text=lyrics_text,
            settings=settings,
        )
        expansion = expand_sections(index, plan.sections)

    alignment: Optional[MidiAlignment] = None
    alignment_error: Optional[MidiAlignmentError] = None
    try:
        with log_stage("align"):
            alignment = align_midi(
                index,
                assignment,
                plan.sections,
                expansion,
                _load_sequence(midi),
                fermatas=fermatas,
                timemap=document.timemap,
                settings=settings,
            )
    except MidiAlignmentError as exc:
        alignment_error = exc
        logger.error("load_score_without_timing error=%s", exc.to_payload())

    data = ScoreData(
        document=document,
        annotated=annotate_document(document, index, assignment, plan, expansion),
        index=index,
        assignment=assignment,
        plan=plan,
        expansion=expansion,
        key_signature=get_key_signature_info(document),
        chord_sets=resolve_chord_sets(index, chord_sets),
        alignment=alignment,
        alignment_error=alignment_error,
    )
    logger.info(
        "load_score_done chord_positions=%s expanded=%s sections=%s midi_type=%s",
        index.num_chord_positions,
        expansion.num_expanded,
        len(plan.sections),
        alignment.midi_type if alignment is not None else None,
    )
    return data


async def load_score_from_urls(
    score_url: str,
    *,
    midi_url: Optional[str] = None,
    lyrics_url: Optional[str] = None,
    settings: Optional[Settings] = None,
    **options: Any,
) -> ScoreData:
    """Fetch resources concurrently, then run :func:`load_score` on them."""
    settings = settings or Settings.from_env()
    resources = await fetch_resources(score_url, midi_url, lyrics_url, settings=settings)
    lyrics_text = options.pop("lyrics_text", None) or resources.lyrics_text
    midi = options.pop("midi", None) or resources.midi_bytes
    return load_score(
        resources.score_content,
        midi=midi,
        lyrics_text=lyrics_text,
        settings=settings,
        **options,
    )
