"""Annotated MEI output and render-option display documents."""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Set

from hymnsync.api.expansion import Expansion, visible_positions
from hymnsync.api.introduction import extract_piano_introduction
from hymnsync.api.lyric_alignment import is_secondary_lyric
from hymnsync.api.parts import PartAssignment
from hymnsync.api.positions import PositionIndex
from hymnsync.api.sections import SectionPlan
from hymnsync.mcp.logging_utils import get_logger, summarize_payload
from hymnsync.mei.document import (
    XML_ID,
    Element,
    ScoreDocument,
    build_parent_map,
    closest,
)
from hymnsync.mei.timemap import build_timemap

logger = get_logger(__name__)

EXPAND_SCORE_OPTIONS = (None, "intro")
_CONTROL_TAGS = ("dir", "harm", "fermata")


def _join(values: Iterable[object]) -> str:
    return " ".join(str(value) for value in values)


def annotate_document(
    document: ScoreDocument,
    index: PositionIndex,
    assignment: PartAssignment,
    plan: SectionPlan,
    expansion: Expansion,
) -> ScoreDocument:
    """Copy of the document carrying the engine's results as ``ch-*`` attributes."""
    root = document.copy_root()
    ids: Dict[str, Element] = {elem.get(XML_ID): elem for elem in root.iter() if elem.get(XML_ID)}

    def expanded_of(chord_position: int) -> List[int]:
        found: List[int] = []
        for values in expansion.occurrences[chord_position].values():
            found.extend(values)
        return sorted(found)

    for note in index.notes:
        elem = ids.get(note.element_id)
        if elem is None or note.chord_position is None:
            continue
        cp = note.chord_position
        elem.set("ch-chord-position", str(cp))
        elem.set("ch-expanded-chord-position", _join(expanded_of(cp)))
        part_ids = assignment.note_part_ids[note.index]
        if part_ids:
            elem.set("ch-part-id", _join(part_ids))
        if assignment.note_is_melody[note.index]:
            elem.set("ch-melody", "")
        if cp in plan.single_line_positions:
            elem.set("ch-single-line", "")
        chord = ids.get(note.chord_id) if note.chord_id else None
        if chord is not None:
            chord.set("ch-chord-position", str(cp))
            chord.set("ch-expanded-chord-position", _join(expanded_of(cp)))
            if assignment.note_is_melody[note.index]:
                chord.set("ch-melody", "")

    verses = list(root.iter("verse"))
    for entry in index.lyrics:
        if entry.ordinal >= len(verses):
            continue
        verse = verses[entry.ordinal]
        verse.set("ch-lyric-line-id", entry.lyric_line_id)
        if is_secondary_lyric(entry, index, assignment):
            verse.set("ch-secondary", "")
        section_ids = expansion.lyric_section_ids.get(entry.index)
        if section_ids:
            verse.set("ch-section-id", _join(section_ids))
        if entry.index in expansion.chorus_lyrics:
            verse.set("ch-chorus", "")

    controls = [elem for elem in root.iter() if elem.tag in _CONTROL_TAGS]
    for event in index.control_events:
        if event.ordinal >= len(controls):
            continue
        elem = controls[event.ordinal]
        if event.chord_position is not None:
            elem.set("ch-chord-position", str(event.chord_position))
        if event.intro_bracket:
            elem.set("ch-intro-bracket", event.intro_bracket)

    for container_id, chord_positions in index.containers.items():
        elem = ids.get(container_id)
        if elem is None:
            continue
        expanded: List[int] = []
        for cp in chord_positions:
            expanded.extend(expanded_of(cp))
        elem.set("ch-expanded-chord-position", _join(sorted(expanded)))

    logger.info(
        "annotate_document notes=%s lyrics=%s controls=%s",
        len(index.notes),
        len(index.lyrics),
        len(index.control_events),
    )
    return ScoreDocument(root=root, timemap=document.timemap, source=document.source)


def _treble_staff_numbers(root: Element) -> List[str]:
    numbers: List[str] = []
    for staff_def in root.iter("staffDef"):
        is_treble = staff_def.get("clef.shape") == "G" or any(
            clef.get("shape") == "G" for clef in staff_def.iter("clef")
        )
        if is_treble and staff_def.get("n") and staff_def.get("n") not in numbers:
            numbers.append(staff_def.get("n"))
    return numbers


def _show_melody_only(root: Element, index: PositionIndex, assignment: PartAssignment) -> None:
    """Keep only melody notes, gathered into layer 1 of a single staff."""
    parents = build_parent_map(root)
    deleted: Set[str] = set()

    def detach(elem: Element) -> None:
        parent = parents.get(elem)
        if parent is not None and elem in list(parent):
            parent.remove(elem)
        if elem.get(XML_ID):
            deleted.add(elem.get(XML_ID))

    for elem in list(root.iter()):
        if (elem.tag in ("note", "rest") and elem.get("ch-melody") is None) or elem.tag == "mRest":
            detach(elem)

    ids: Dict[str, Element] = {elem.get(XML_ID): elem for elem in root.iter() if elem.get(XML_ID)}
    treble = set(_treble_staff_numbers(root))
    melody_staff: Optional[str] = None
    for staff in root.iter("staff"):
        if staff.get("n") in treble and any(elem.get("ch-melody") is not None for elem in staff.iter()):
            melody_staff = staff.get("n")
            break

    for cp, melody_note in enumerate(assignment.melody_notes):
        if melody_note is None:
            continue
        note = index.notes[melody_note]
        if melody_staff is None:
            melody_staff = str(note.staff_number)
        melody_elem = ids.get(note.chord_id) if note.chord_id else None
        if melody_elem is None:
            melody_elem = ids.get(note.element_id)
        if melody_elem is None:
            continue
        measure = closest(melody_elem, ("measure",), parents)
        if measure is None:
            continue
        melody_elem.attrib.pop("stem.dir", None)
        for holder in list(measure.iter()):
            if holder.tag not in ("note", "chord") or holder.get("ch-chord-position") != str(cp):
                continue
            if holder is melody_elem:
                continue
            for verse in list(holder.iter("verse")):
                parents[verse].remove(verse)
                melody_elem.append(verse)
                parents[verse] = melody_elem
        staff = next((s for s in measure.iter("staff") if s.get("n") == melody_staff), None)
        if staff is None:
            staff = Element("staff", {"n": melody_staff})
            measure.insert(0, staff)
            parents[staff] = measure
        layer = next((l for l in staff.iter("layer") if l.get("n", "1") == "1"), None)
        if layer is None:
            layer = Element("layer", {"n": "1"})
            staff.append(layer)
            parents[layer] = staff
        beam = closest(melody_elem, ("beam",), parents, include_self=False)
        moving = beam if beam is not None else melody_elem
        parents[moving].remove(moving)
        layer.append(moving)
        parents[moving] = layer

    for elem in list(root.iter()):
        if elem.tag in ("chord", "beam") and not any(child.tag in ("note", "rest") for child in elem.iter()):
            detach(elem)
    for elem in list(root.iter()):
        if (elem.tag == "layer" and elem.get("n", "1") != "1") or (elem.tag == "staff" and elem.get("n") != melody_staff):
            detach(elem)

    seen_slurs: Set[str] = set()
    parents = build_parent_map(root)
    for elem in list(root.iter()):
        if elem.get("startid") is None and elem.get("endid") is None:
            continue
        start_id = (elem.get("startid") or "").lstrip("#")
        end_id = (elem.get("endid") or "").lstrip("#")
        if start_id in deleted or end_id in deleted:
            parents[elem].remove(elem)
            continue
        if elem.tag == "slur":
            key = f"{start_id}_{end_id}"
            if key in seen_slurs:
                parents[elem].remove(elem)
                continue
            seen_slurs.add(key)
        elem.attrib.pop("curvedir", None)
    logger.debug("show_melody_only staff=%s removed=%s", melody_staff, len(deleted))


def _hide_sections(
    root: Element,
    plan: SectionPlan,
    expansion: Expansion,
    hidden_section_ids: Iterable[str],
) -> None:
    visibility = visible_positions(expansion, plan.sections, hidden_section_ids)
    kept_sections = set(visibility.section_ids)
    kept_expanded = set(visibility.expanded_chord_positions)
    parents = build_parent_map(root)
    new_line_numbers: Dict[str, int] = {}
    for verse in list(root.iter("verse")):
        section_ids = verse.get("ch-section-id")
        if section_ids is None:
            continue
        if not kept_sections.intersection(section_ids.split()):
            parents[verse].remove(verse)
            continue
        line_number = verse.get("n", "1")
        if line_number not in new_line_numbers:
            new_line_numbers[line_number] = len(new_line_numbers) + 1
        owner = closest(verse, ("note", "chord"), parents)
        chord_position = owner.get("ch-chord-position") if owner is not None else None
        if chord_position is not None and int(chord_position) in plan.single_line_positions:
            verse.set("n", "1")
        elif verse.get("ch-chorus") is None:
            verse.set("n", str(new_line_numbers[line_number]))
    for elem in list(root.iter()):
        if elem.tag not in ("section", "ending") or elem.get("ch-expanded-chord-position") is None:
            continue
        expanded = {int(value) for value in elem.get("ch-expanded-chord-position").split()}
        if expanded.isdisjoint(kept_expanded) and elem in parents and elem in list(parents[elem]):
            parents[elem].remove(elem)


def render_display_document(
    annotated: ScoreDocument,
    index: PositionIndex,
    assignment: PartAssignment,
    plan: SectionPlan,
    expansion: Expansion,
    *,
    expand_score: Optional[str] = None,
    show_melody_only: bool = False,
    hidden_section_ids: Optional[Iterable[str]] = None,
) -> ScoreDocument:
    """Apply render options to a copy of an annotated document."""
    if expand_score not in EXPAND_SCORE_OPTIONS:
        raise ValueError(f"Unsupported expand_score option: {expand_score!r}")
    hidden = [section_id for section_id in hidden_section_ids or () if section_id]
    root = annotated.copy_root()
    if show_melody_only and assignment.has_melody_info:
        _show_melody_only(root, index, assignment)
    if hidden:
        _hide_sections(root, plan, expansion, hidden)
    display = ScoreDocument(root=root, timemap=tuple(build_timemap(root)), source=annotated.source)
    if expand_score == "intro":
        display = extract_piano_introduction(display)
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug(
            "render_display_document options=%s",
            summarize_payload(
                {
                    "expand_score": expand_score,
                    "show_melody_only": show_melody_only,
                    "hidden_section_ids": hidden,
                }
            ),
        )
    return display
