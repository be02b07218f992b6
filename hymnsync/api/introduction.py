"""Build a leading piano-introduction section from intro-bracket ranges.

Offsets are measure-relative tstamps (1-based, in meter-unit beats). The
measures a range covers are cloned into a new ``<section type="introduction">``;
notes overlapping a range edge are clipped and their written duration is
re-derived from the kept length.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Set, Tuple

from hymnsync.api.positions import INTRO_BRACKET_END, INTRO_BRACKET_START
from hymnsync.mcp.logging_utils import get_logger
from hymnsync.mei.document import (
    XML_ID,
    Element,
    ScoreDocument,
    build_parent_map,
    closest,
    iter_measures,
    text_content,
)
from hymnsync.mei.timemap import build_timemap

logger = get_logger(__name__)

MUSICAL_ELEMENTS = ("note", "rest", "chord", "space")
CONTAINER_ELEMENTS = ("beam", "tuplet")
MEASURE_ATTRS = ("clef", "keySig", "meterSig", "staffDef")
NOTATION_ELEMENTS = ("tie", "slur", "dir", "harm", "dynam", "tempo", "pedal")
INTRO_REMOVED = ("verse", "dir", "tempo")
TUPLET_ATTRS = ("num", "numbase", "bracket.visible", "num.visible", "num.place", "bracket.place")
REFERENCE_ATTRS = ("startid", "endid", "plist")
VALID_DURS = (1, 2, 4, 8, 16, 32, 64)
_TOLERANCE = 0.01

BracketPoint = Tuple[str, Optional[float]]


@dataclass(frozen=True)
class BracketPair:
    """One extracted range: ``(measure n, tstamp)`` start and end points."""

    start: BracketPoint
    end: Optional[BracketPoint] = None


def calculate_duration(elem: Element, tstamp_unit: int = 4) -> float:
    """Length of ``elem`` in tstamp units (the meter's beat)."""
    try:
        dur = float(elem.get("dur") or "4")
    except ValueError:
        dur = 4.0
    dots = int(elem.get("dots") or "0") if (elem.get("dots") or "0").isdigit() else 0
    length = tstamp_unit / dur if dur else 0.0
    step = length
    for _ in range(dots):
        step /= 2
        length += step
    return length


def convert_tstamps_to_dur(tstamps: float, tstamp_unit: int = 4) -> Tuple[int, int]:
    """Closest written ``(dur, dots)`` for a length in tstamps, up to two dots."""
    with_one_dot = tstamps / 1.5
    with_two_dots = tstamps / 1.75
    for valid in VALID_DURS:
        plain = tstamp_unit / valid
        if abs(with_one_dot - plain) < _TOLERANCE:
            return valid, 1
        if abs(with_two_dots - plain) < _TOLERANCE:
            return valid, 2
    if tstamps <= 0:
        return VALID_DURS[-1], 0
    mei_dur = tstamp_unit / tstamps
    nearest = min(VALID_DURS, key=lambda valid: abs(mei_dur - valid))
    return nearest, 0


class _IdRemapper:
    """Suffix cloned ids with ``-intro``, avoiding ids already in the document."""

    def __init__(self, existing: Set[str]):
        self.existing = existing
        self.id_map: Dict[str, str] = {}

    def rename(self, elem: Element) -> None:
        old_id = elem.get(XML_ID)
        if not old_id:
            return
        new_id = f"{old_id}-intro"
        counter = 2
        while new_id in self.existing:
            new_id = f"{old_id}-intro-{counter}"
            counter += 1
        self.existing.add(new_id)
        self.id_map[old_id] = new_id
        elem.set(XML_ID, new_id)

    def fresh(self, base: str) -> str:
        new_id = base
        counter = 2
        while new_id in self.existing:
            new_id = f"{base}-{counter}"
            counter += 1
        self.existing.add(new_id)
        return new_id

    def rename_tree(self, elem: Element) -> None:
        for node in elem.iter():
            self.rename(node)

    def rewrite_references(self, elem: Element) -> None:
        for node in elem.iter():
            for attr in REFERENCE_ATTRS:
                value = node.get(attr)
                if not value:
                    continue
                updated = []
                for ref in value.split():
                    if ref.startswith("#") and ref[1:] in self.id_map:
                        updated.append(f"#{self.id_map[ref[1:]]}")
                    else:
                        updated.append(ref)
                node.set(attr, " ".join(updated))


def _clip(
    elem: Element,
    onset: float,
    elem_end: float,
    start: float,
    end: float,
    ratio: float,
    tstamp_unit: int,
    ids: _IdRemapper,
) -> Element:
    clone = copy.deepcopy(elem)
    if onset < start or elem_end > end:
        kept = (min(elem_end, end) - start) if onset < start else (end - onset)
        dur, dots = convert_tstamps_to_dur(kept / ratio, tstamp_unit)
        clone.set("dur", str(dur))
        if dots:
            clone.set("dots", str(dots))
        elif "dots" in clone.attrib:
            del clone.attrib["dots"]
    ids.rename_tree(clone)
    return clone


def copy_layer_range(
    layer: Element,
    start: Optional[float],
    end: Optional[float],
    tstamp_unit: int,
    ids: _IdRemapper,
) -> Optional[Element]:
    """Copy the part of ``layer`` sounding in ``[start, end)``; None when nothing is left."""
    range_start = start if start is not None else 1.0
    range_end = end if end is not None else float("inf")
    new_layer = Element("layer")
    new_layer.set("n", layer.get("n") or "1")

    def process(container: Element, onset: float, ratio: float) -> Tuple[List[Element], float]:
        children: List[Element] = []
        current = onset
        for child in container:
            if child.tag in CONTAINER_ELEMENTS:
                inner_ratio = ratio
                if child.tag == "tuplet" and child.get("num") and child.get("numbase"):
                    inner_ratio = ratio * float(child.get("numbase")) / float(child.get("num"))
                inner, current_end = process(child, current, inner_ratio)
                if inner:
                    new_container = Element(child.tag)
                    if child.get(XML_ID):
                        new_container.set(XML_ID, child.get(XML_ID))
                        ids.rename(new_container)
                    if child.tag == "tuplet":
                        for attr in TUPLET_ATTRS:
                            if child.get(attr) is not None:
                                new_container.set(attr, child.get(attr))
                    new_container.extend(inner)
                    children.append(new_container)
                current = current_end
            elif child.tag in MUSICAL_ELEMENTS:
                length = calculate_duration(child, tstamp_unit) * ratio
                elem_end = current + length
                if current < range_end and elem_end > range_start:
                    children.append(_clip(child, current, elem_end, range_start, range_end, ratio, tstamp_unit, ids))
                current = elem_end
            elif container is layer and range_start <= current < range_end:
                clone = copy.deepcopy(child)
                ids.rename_tree(clone)
                children.append(clone)
        return children, current

    children, _ = process(layer, 1.0, 1.0)
    if not children:
        return None
    new_layer.extend(children)
    return new_layer


def _first_layer_length(measure: Element, tstamp_unit: int) -> float:
    staff = next(measure.iter("staff"), None)
    layer = next(staff.iter("layer"), None) if staff is not None else None
    if layer is None:
        return 0.0

    def total(elem: Element, ratio: float) -> float:
        if elem.tag in MUSICAL_ELEMENTS:
            return calculate_duration(elem, tstamp_unit) * ratio
        if elem.tag in CONTAINER_ELEMENTS:
            inner_ratio = ratio
            if elem.tag == "tuplet" and elem.get("num") and elem.get("numbase"):
                inner_ratio = ratio * float(elem.get("numbase")) / float(elem.get("num"))
            return sum(total(child, inner_ratio) for child in elem)
        return 0.0

    return sum(total(child, 1.0) for child in layer)


def _measure_meter(measure: Element, inherited: Tuple[int, int]) -> Tuple[int, int]:
    meter_sig = next(measure.iter("meterSig"), None)
    if meter_sig is None:
        return inherited
    count = meter_sig.get("count") or ""
    unit = meter_sig.get("unit") or ""
    return (
        int(count) if count.isdigit() else inherited[0],
        int(unit) if unit.isdigit() else inherited[1],
    )


def _extract_range(
    measures: Sequence[Element],
    meters: Dict[int, Tuple[int, int]],
    pair: BracketPair,
    ids: _IdRemapper,
) -> List[Element]:
    numbers = [measure.get("n") for measure in measures]
    start_n, start_tstamp = pair.start
    end_n, end_tstamp = pair.end if pair.end is not None else (numbers[-1], None)
    if start_n not in numbers or end_n not in numbers:
        logger.warning("intro_range_unknown_measure start=%s end=%s", start_n, end_n)
        return []
    start_idx = numbers.index(start_n)
    end_idx = numbers.index(end_n)
    selected = measures[start_idx : end_idx + 1]

    extracted: List[Element] = []
    for position, measure in enumerate(selected):
        count, unit = _measure_meter(measure, meters[id(measure)])
        new_measure = Element("measure")
        new_measure.set("n", measure.get("n") or "")
        measure_start = start_tstamp if position == 0 else None
        measure_end = end_tstamp if position == len(selected) - 1 else None

        if position == 0:
            for child in measure:
                if child.tag in MEASURE_ATTRS:
                    new_measure.append(copy.deepcopy(child))

        staves: Dict[str, List[Element]] = {}
        for staff in measure.iter("staff"):
            staff_n = staff.get("n") or "1"
            layers = staves.setdefault(staff_n, [])
            for layer in staff.iter("layer"):
                copied = copy_layer_range(layer, measure_start, measure_end, unit, ids)
                if copied is not None:
                    layers.append(copied)
        for staff_n, layers in staves.items():
            new_staff = Element("staff")
            new_staff.set("n", staff_n)
            new_staff.extend(layers)
            new_measure.append(new_staff)

        for child in measure:
            if child.tag in NOTATION_ELEMENTS:
                clone = copy.deepcopy(child)
                ids.rename_tree(clone)
                ids.rewrite_references(clone)
                new_measure.append(clone)

        if abs(_first_layer_length(new_measure, unit) - count) > _TOLERANCE:
            new_measure.set("metcon", "false")
        extracted.append(new_measure)
    return extracted


def bracket_pairs_from_document(root: Element, *, remove: bool = False) -> List[BracketPair]:
    """Read intro-bracket directions (``⌜`` / ``⌝``) into bracket pairs."""
    parents = build_parent_map(root)
    pairs: List[BracketPair] = []
    found: List[Element] = []
    for elem in root.iter("dir"):
        text = text_content(elem).strip()
        if text not in (INTRO_BRACKET_START, INTRO_BRACKET_END):
            continue
        measure = closest(elem, ("measure",), parents)
        if measure is None:
            continue
        found.append(elem)
        try:
            tstamp: Optional[float] = float(elem.get("tstamp")) if elem.get("tstamp") else None
        except ValueError:
            tstamp = None
        point = (measure.get("n") or "", tstamp)
        if text == INTRO_BRACKET_START:
            pairs.append(BracketPair(start=point))
        elif pairs:
            pairs[-1] = BracketPair(start=pairs[-1].start, end=point)
        else:
            logger.warning("intro_bracket_end_without_start measure=%s", point[0])
    if remove:
        for elem in found:
            parents[elem].remove(elem)
    return pairs


def _remove_descendants(root: Element, tags: Sequence[str]) -> None:
    for parent in list(root.iter()):
        for child in list(parent):
            if child.tag in tags:
                parent.remove(child)


def extract_piano_introduction(
    document: ScoreDocument,
    bracket_pairs: Optional[Sequence[BracketPair]] = None,
) -> ScoreDocument:
    """Return a document with a new leading introduction section.

    The input document is returned unchanged when there are no bracket pairs
    or it already has an introduction section.
    """
    root = document.copy_root()
    document_pairs = bracket_pairs_from_document(root, remove=True)
    pairs = list(bracket_pairs) if bracket_pairs is not None else document_pairs
    has_intro = any(section.get("type") == "introduction" for section in root.iter("section"))
    if has_intro or not pairs:
        logger.info("intro_extraction_skipped has_intro=%s pairs=%s", has_intro, len(pairs))
        return document

    measure_info = list(iter_measures(root))
    original_measures = [measure for measure, _ts, _system in measure_info]
    meters = {id(measure): time_signature for measure, time_signature, _system in measure_info}
    ids = _IdRemapper({elem.get(XML_ID) for elem in root.iter() if elem.get(XML_ID)})

    ranges = [_extract_range(original_measures, meters, pair, ids) for pair in pairs]
    ranges = [extracted for extracted in ranges if extracted]
    if not ranges:
        return document

    intro_section = Element("section")
    intro_section.set("type", "introduction")
    intro_section.set(XML_ID, ids.fresh("introduction"))
    number = 1
    for range_position, extracted in enumerate(ranges):
        for position, measure in enumerate(extracted):
            measure.set("n", str(number))
            measure.set(XML_ID, ids.fresh(f"intro-measure-{number}"))
            number += 1
            if position == len(extracted) - 1 and range_position < len(ranges) - 1:
                following = ranges[range_position + 1][0]
                if measure.get("metcon") == "false" and following.get("metcon") == "false":
                    measure.set("right", "invis")
            intro_section.append(measure)

    parents = build_parent_map(root)
    score = next(root.iter("score"), None)
    score_def = next(score.iter("scoreDef"), None) if score is not None else None
    if score_def is not None:
        container = parents[score_def]
        container.insert(list(container).index(score_def) + 1, intro_section)
    elif score is not None:
        score.insert(0, intro_section)
    else:
        logger.warning("intro_extraction_no_score_element")
        return document

    _remove_descendants(intro_section, INTRO_REMOVED)
    intro_note_ids = {
        elem.get(XML_ID) for elem in intro_section.iter() if elem.tag in ("note", "chord") and elem.get(XML_ID)
    }
    for parent in list(intro_section.iter()):
        for child in list(parent):
            if child.tag not in ("slur", "tie"):
                continue
            start_id = (child.get("startid") or "").lstrip("#")
            end_id = (child.get("endid") or "").lstrip("#")
            if (start_id and start_id not in intro_note_ids) or (end_id and end_id not in intro_note_ids):
                parent.remove(child)

    intro_measures = list(intro_section.iter("measure"))
    first_main = original_measures[0]
    tempo = next(first_main.iter("tempo"), None)
    if tempo is not None:
        parents[tempo].remove(tempo)
        intro_measures[0].append(tempo)

    last_intro = intro_measures[-1]
    if (
        last_intro.get("metcon") == "false"
        and first_main.get("metcon") == "false"
        and not first_main.get("left")
    ):
        last_intro.set("right", "invis")

    for measure in original_measures:
        measure.set("n", str(number))
        number += 1

    logger.info(
        "intro_extraction_done ranges=%s measures=%s",
        len(ranges),
        len(intro_measures),
    )
    return ScoreDocument(root=root, timemap=tuple(build_timemap(root)), source=document.source)
