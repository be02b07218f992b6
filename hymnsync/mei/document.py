"""Read-only MEI document model shared by every engine stage."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from fractions import Fraction
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple, Union
from xml.etree import ElementTree

from music21 import duration as m21duration
from music21 import pitch as m21pitch


MEI_NS = "http://www.music-encoding.org/ns/mei"
XML_ID = "xml:id"
_XML_NS_ID = "{http://www.w3.org/XML/1998/namespace}id"

MEI_DURATION_TYPES = {
    "long": "longa",
    "breve": "breve",
    "1": "whole",
    "2": "half",
    "4": "quarter",
    "8": "eighth",
    "16": "16th",
    "32": "32nd",
    "64": "64th",
    "128": "128th",
}

_ACCIDENTALS = {"s": "#", "f": "-", "ss": "##", "x": "##", "ff": "--", "n": ""}
_SHARP_ORDER = "fcgdaeb"
_FLAT_ORDER = "beadgcf"

Element = ElementTree.Element
TimeSignature = Tuple[int, int]


def _local_tag(tag: Any) -> str:
    if not isinstance(tag, str):
        return ""
    if "}" in tag:
        return tag.rsplit("}", 1)[1]
    return tag


def _strip_namespaces(root: Element) -> None:
    """Rewrite tags to local names and expose xml:id under a literal key."""
    for elem in root.iter():
        elem.tag = _local_tag(elem.tag)
        for key in list(elem.attrib):
            if key == _XML_NS_ID:
                elem.attrib[XML_ID] = elem.attrib.pop(key)
            elif key.startswith("{"):
                elem.attrib[_local_tag(key)] = elem.attrib.pop(key)


def parse_mei(content: Union[str, bytes]) -> Element:
    """Parse MEI text into an element tree with local tag names."""
    try:
        root = ElementTree.fromstring(content)
    except ElementTree.ParseError as exc:
        raise ValueError(f"Invalid MEI: {exc}") from exc
    _strip_namespaces(root)
    root.attrib.pop("xmlns", None)
    if next(root.iter("measure"), None) is None:
        raise ValueError("MEI document has no measures.")
    return root


def serialize_mei(root: Element) -> str:
    """Serialize an element tree back to MEI text in the MEI namespace."""
    clone = copy.deepcopy(root)
    clone.set("xmlns", MEI_NS)
    return ElementTree.tostring(clone, encoding="unicode")


def element_id(elem: Element) -> Optional[str]:
    return elem.get(XML_ID)


def strip_ref(value: Optional[str]) -> Optional[str]:
    """Turn an MEI URI reference (``#id``) into a bare id."""
    if not value:
        return None
    value = value.strip()
    return value[1:] if value.startswith("#") else value


def text_content(elem: Element) -> str:
    return "".join(elem.itertext())


def build_parent_map(root: Element) -> Dict[Element, Element]:
    return {child: parent for parent in root.iter() for child in parent}


def closest(
    elem: Element,
    tags: Sequence[str],
    parents: Dict[Element, Element],
    *,
    include_self: bool = True,
) -> Optional[Element]:
    """Return the nearest ancestor (or the element itself) with one of ``tags``."""
    current: Optional[Element] = elem if include_self else parents.get(elem)
    while current is not None:
        if current.tag in tags:
            return current
        current = parents.get(current)
    return None


def as_fraction(value: Any) -> Fraction:
    return Fraction(value).limit_denominator(1 << 12)


def quarter_length(dur: Optional[str], dots: Union[str, int, None] = 0) -> Fraction:
    """Quarter-note length of an MEI ``dur``/``dots`` pair (quarter when missing)."""
    duration_type = MEI_DURATION_TYPES.get((dur or "4").strip(), "quarter")
    dot_count = int(dots or 0)
    return as_fraction(m21duration.Duration(type=duration_type, dots=dot_count).quarterLength)


def meter_quarter_length(time_signature: TimeSignature) -> Fraction:
    count, unit = time_signature
    if unit <= 0:
        return Fraction(0)
    return Fraction(count * 4, unit)


def iter_measures(root: Element) -> Iterator[Tuple[Element, TimeSignature, int]]:
    """Yield ``(measure, time_signature, system_number)`` in document order."""
    count, unit = 4, 4
    system_number = 0
    for elem in root.iter():
        tag = elem.tag
        if tag == "measure":
            yield elem, (count, unit), system_number
        elif tag == "sb":
            system_number += 1
        elif tag in ("scoreDef", "staffDef", "meterSig"):
            count_value = elem.get("count") or elem.get("meter.count")
            unit_value = elem.get("unit") or elem.get("meter.unit")
            if count_value and count_value.strip().isdigit():
                count = int(count_value)
            if unit_value and unit_value.strip().isdigit():
                unit = int(unit_value)


def _key_accidentals(sig: Optional[str]) -> Dict[str, str]:
    """Map pitch names to the accidental implied by an MEI key signature."""
    if not sig or sig in ("0", "mixed"):
        return {}
    amount, kind = sig[:-1], sig[-1]
    if not amount.isdigit() or kind not in ("s", "f"):
        return {}
    order = _SHARP_ORDER if kind == "s" else _FLAT_ORDER
    return {pname: kind for pname in order[: int(amount)]}


def _explicit_accidental(note: Element) -> Optional[str]:
    accid = note.get("accid.ges") or note.get("accid")
    if accid is not None:
        return accid
    for child in note:
        if child.tag == "accid":
            return child.get("accid.ges") or child.get("accid")
    return None


def resolve_pitches(root: Element) -> Dict[str, int]:
    """Sounding MIDI pitch per note id.

    Explicit ``pnum`` wins; otherwise the written accidental, then an earlier
    accidental on the same staff line within the measure, then the key signature.
    """
    pitches: Dict[str, int] = {}
    key_by_staff: Dict[str, Dict[str, str]] = {}
    default_key: Dict[str, str] = {}

    def walk(elem: Element, staff_n: Optional[str], measure_accids: Dict[Tuple[str, str, str], str]) -> None:
        nonlocal default_key
        for child in elem:
            tag = child.tag
            if tag == "scoreDef" and child.get("key.sig"):
                default_key = _key_accidentals(child.get("key.sig"))
                key_by_staff.clear()
            elif tag == "staffDef" and child.get("key.sig"):
                key_by_staff[child.get("n", "")] = _key_accidentals(child.get("key.sig"))
            elif tag == "keySig" and child.get("sig"):
                if staff_n is None:
                    default_key = _key_accidentals(child.get("sig"))
                    key_by_staff.clear()
                else:
                    key_by_staff[staff_n] = _key_accidentals(child.get("sig"))
            if tag == "measure":
                walk(child, staff_n, {})
                continue
            if tag == "staff":
                walk(child, child.get("n"), measure_accids)
                continue
            if tag == "note":
                note_id = element_id(child)
                midi = _note_midi(child, staff_n, measure_accids, key_by_staff.get(staff_n or "", default_key))
                if note_id and midi is not None:
                    pitches[note_id] = midi
            walk(child, staff_n, measure_accids)

    walk(root, None, {})
    return pitches


def _note_midi(
    note: Element,
    staff_n: Optional[str],
    measure_accids: Dict[Tuple[str, str, str], str],
    key: Dict[str, str],
) -> Optional[int]:
    pnum = note.get("pnum")
    if pnum and pnum.strip().isdigit():
        return int(pnum)
    pname = (note.get("pname") or "").lower()
    octave = note.get("oct")
    if not pname or octave is None or not octave.strip().lstrip("-").isdigit():
        return None
    slot = (staff_n or "", pname, octave)
    accid = _explicit_accidental(note)
    if accid is not None:
        measure_accids[slot] = accid
    else:
        accid = measure_accids.get(slot, key.get(pname, ""))
    name = f"{pname.upper()}{_ACCIDENTALS.get(accid, '')}{int(octave)}"
    return int(m21pitch.Pitch(name).midi)


@dataclass(frozen=True)
class ScoreDocument:
    """An MEI tree plus the onset/offset timemap produced for it.

    The tree is treated as immutable; stages that need to edit it work on
    ``copy_root()``.
    """

    root: Element
    timemap: Tuple[Dict[str, Any], ...]
    source: Optional[str] = None
    ids: Dict[str, Element] = field(default_factory=dict, compare=False, repr=False)
    parents: Dict[Element, Element] = field(default_factory=dict, compare=False, repr=False)

    def __post_init__(self) -> None:
        if not self.ids:
            object.__setattr__(
                self,
                "ids",
                {elem.get(XML_ID): elem for elem in self.root.iter() if elem.get(XML_ID)},
            )
        if not self.parents:
            object.__setattr__(self, "parents", build_parent_map(self.root))

    def copy_root(self) -> Element:
        return copy.deepcopy(self.root)

    def find(self, element_id_value: Optional[str]) -> Optional[Element]:
        if not element_id_value:
            return None
        return self.ids.get(element_id_value)

    def closest(self, elem: Element, *tags: str) -> Optional[Element]:
        return closest(elem, tags, self.parents)

    def to_mei(self) -> str:
        return serialize_mei(self.root)


def load_document(
    source: Union[str, Path, bytes],
    *,
    timemap: Optional[Sequence[Dict[str, Any]]] = None,
) -> ScoreDocument:
    """Load MEI from a path, bytes or text and attach its timemap.

    When no timemap from a rendering engine is given, one is derived from the
    notated durations.
    """
    from hymnsync.mei.timemap import build_timemap

    source_name: Optional[str] = None
    if isinstance(source, Path) or (
        isinstance(source, str) and not source.lstrip().startswith("<") and Path(source).exists()
    ):
        path = Path(source)
        source_name = str(path)
        content: Union[str, bytes] = path.read_bytes()
    else:
        content = source
    root = parse_mei(content)
    entries = list(timemap) if timemap is not None else build_timemap(root)
    return ScoreDocument(root=root, timemap=tuple(entries), source=source_name)


def measure_elements(root: Element) -> List[Element]:
    return list(root.iter("measure"))
