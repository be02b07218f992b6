"""Part resolution (explicit list, template string or default) and note-to-part assignment."""

from __future__ import annotations

import re
from bisect import bisect_right
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional, Sequence, Tuple, Union

from hymnsync.api.positions import PositionIndex
from hymnsync.mcp.logging_utils import get_logger

logger = get_logger(__name__)

Placement = Union[int, str]

TEMPLATE_ALIASES: Tuple[Tuple[str, str], ...] = (
    ("Melody", "MC"),
    ("Soprano", "S"),
    ("Alto", "A"),
    ("Tenor", "T"),
    ("Bass", "B"),
    ("Descant", "D"),
    ("Obbligato", "O"),
    ("Instrumental", "I"),
    ("Accompaniment", "C"),
    ("Solo", "MC"),
    ("Unison", "MC"),
    ("Two-Part", "P+P"),
    ("Duet", "PP"),
    ("SATB", "SA+TB"),
    ("SSAA", "SS+AA"),
    ("AATT", "AA+TT"),
    ("TTBB", "TT+BB"),
    ("#;", ";"),
)

PART_IDS = {
    "M": "melody",
    "S": "soprano",
    "A": "alto",
    "T": "tenor",
    "B": "bass",
    "P": "part",
    "D": "descant",
    "O": "obbligato",
    "I": "instrumental",
    "C": "accompaniment",
}
LIKELY_MELODY_CHARS = "MSP"
POLYPHONIC_CHARS = "IC"
VOCAL_CHARS = "MSATBPD"
PLACEMENTS = (1, 2, 3, 4, "full", "auto")

_TOKEN = re.compile(r"[MSATBPDOIC]\d?")
_BODY = re.compile(r"(?:[MSATBPDOIC]\d?)+(?:\+(?:[MSATBPDOIC]\d?)+)*")


class PartsTemplateError(ValueError):
    """Raised for a parts template that does not follow the template grammar."""


@dataclass(frozen=True)
class PartRef:
    is_melody: bool
    staff_numbers: Tuple[int, ...]
    lyric_line_ids: Optional[Tuple[str, ...]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "isMelody": self.is_melody,
            "staffNumbers": list(self.staff_numbers),
            "lyricLineIds": list(self.lyric_line_ids) if self.lyric_line_ids is not None else None,
        }


@dataclass(frozen=True)
class Part:
    part_id: str
    name: str
    is_vocal: bool
    placement: Placement
    chord_position_refs: Dict[int, PartRef] = field(default_factory=dict)

    def ref_at(self, chord_position: int) -> Optional[PartRef]:
        """Return the ref in effect at ``chord_position`` (changes-at semantics)."""
        keys = sorted(self.chord_position_refs)
        slot = bisect_right(keys, chord_position) - 1
        if slot < 0:
            return None
        return self.chord_position_refs[keys[slot]]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "partId": self.part_id,
            "name": self.name,
            "isVocal": self.is_vocal,
            "placement": self.placement,
            "chordPositionRefs": {
                str(cp): ref.to_dict() for cp, ref in sorted(self.chord_position_refs.items())
            },
        }


def _pick(raw: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in raw:
            return raw[key]
    return default


def parse_parts(raw_parts: Optional[Sequence[Dict[str, Any]]]) -> List[Part]:
    """Build Part records from an explicit (camelCase or snake_case) list."""
    parts: List[Part] = []
    for raw in raw_parts or []:
        part_id = _pick(raw, "partId", "part_id")
        if not part_id:
            logger.warning("parts_entry_missing_id entry=%s", raw)
            continue
        placement = _pick(raw, "placement", default="auto")
        if placement not in PLACEMENTS:
            logger.warning("parts_entry_bad_placement part_id=%s placement=%s", part_id, placement)
            placement = "auto"
        raw_refs = _pick(raw, "chordPositionRefs", "chord_position_refs", default={}) or {}
        refs: Dict[int, PartRef] = {}
        for cp, ref in raw_refs.items():
            try:
                lyric_line_ids = _pick(ref, "lyricLineIds", "lyric_line_ids")
                refs[int(cp)] = PartRef(
                    is_melody=bool(_pick(ref, "isMelody", "is_melody", default=False)),
                    staff_numbers=tuple(int(n) for n in _pick(ref, "staffNumbers", "staff_numbers", default=[]) or []),
                    lyric_line_ids=tuple(lyric_line_ids) if lyric_line_ids is not None else None,
                )
            except (TypeError, ValueError) as exc:
                logger.warning("parts_ref_invalid part_id=%s chord_position=%s error=%s", part_id, cp, exc)
        if raw_refs and not refs:
            logger.warning("parts_entry_skipped part_id=%s reason=no_valid_refs", part_id)
            continue
        parts.append(
            Part(
                part_id=str(part_id),
                name=str(_pick(raw, "name", default=part_id)),
                is_vocal=bool(_pick(raw, "isVocal", "is_vocal", default=False)),
                placement=placement,
                chord_position_refs=refs,
            )
        )
    return parts


def default_parts(staff_numbers: Sequence[int]) -> List[Part]:
    """Melody on staff 1 plus a full-score accompaniment."""
    return [
        Part(
            part_id="melody",
            name="Melody",
            is_vocal=True,
            placement="auto",
            chord_position_refs={0: PartRef(is_melody=True, staff_numbers=(1,))},
        ),
        Part(
            part_id="accompaniment",
            name="Accompaniment",
            is_vocal=False,
            placement="full",
            chord_position_refs={0: PartRef(is_melody=False, staff_numbers=tuple(staff_numbers))},
        ),
    ]


def normalize_template(template: str) -> str:
    normalized = re.sub(r"\s", "", template)
    for alias, replacement in TEMPLATE_ALIASES:
        normalized = normalized.replace(alias, replacement)
    return normalized


def _part_id(token: str, previous_tokens: Sequence[str], split_tokens: FrozenSet[str]) -> str:
    part_id = PART_IDS[token[0]]
    number: Optional[int] = None
    if len(token) > 1:
        number = int(token[1])
    elif token in split_tokens:
        number = sum(1 for previous in previous_tokens if previous == token) + 1
    return f"{part_id}-{number}" if number is not None else part_id


def _part_name(part_id: str) -> str:
    return " ".join(word[:1].upper() + word[1:] for word in part_id.split("-"))


def _parse_template_ranges(normalized: str) -> List[Tuple[int, str, Optional[str]]]:
    ranges: List[Tuple[int, str, Optional[str]]] = []
    for chunk in normalized.split(";"):
        if not chunk:
            continue
        chord_position = 0
        body = chunk
        if ":" in chunk:
            position_text, body = chunk.split(":", 1)
            if not position_text.isdigit():
                raise PartsTemplateError(f"Invalid chord position in parts template: {chunk!r}")
            chord_position = int(position_text)
        melody: Optional[str] = None
        if "#" in body:
            body, melody = body.split("#", 1)
            melody = melody or None
            if melody is not None and not _TOKEN.fullmatch(melody):
                raise PartsTemplateError(f"Invalid melody part in parts template: {chunk!r}")
        if not _BODY.fullmatch(body):
            raise PartsTemplateError(f"Invalid staff groups in parts template: {chunk!r}")
        ranges.append((chord_position, body, melody))
    if not ranges:
        raise PartsTemplateError("Parts template is empty.")
    return ranges


def build_parts_from_template(template: str, staff_numbers: Sequence[int], has_lyrics: bool) -> List[Part]:
    """Expand a compact template such as ``"0:SA+TB#S; 24:SA+TB#T"`` into Part records."""
    pad_char = "C" if has_lyrics else "I"
    padding_groups = [pad_char for _ in staff_numbers]
    ranges = _parse_template_ranges(normalize_template(template or "+".join(padding_groups)))

    split_tokens = set()
    for _cp, body, _melody in ranges:
        tokens = _TOKEN.findall(body)
        for token in tokens:
            if len(token) == 1 and token not in POLYPHONIC_CHARS and tokens.count(token) > 1:
                split_tokens.add(token)
    frozen_split = frozenset(split_tokens)

    drafts: Dict[str, Dict[str, Any]] = {}
    for chord_position, body, melody in ranges:
        tokens = _TOKEN.findall(body)
        if melody is None:
            melody = next((token for token in tokens if token[0] in LIKELY_MELODY_CHARS), tokens[0])
        melody_part_id = _part_id(melody, [], frozen_split)

        previous_tokens: List[str] = []
        groups = body.split("+") + padding_groups
        for staff_number, group in enumerate(groups, start=1):
            if staff_number > 1 and staff_number not in staff_numbers:
                break
            for token in _TOKEN.findall(group):
                part_id = _part_id(token, previous_tokens, frozen_split)
                previous_tokens.append(token)
                draft = drafts.setdefault(
                    part_id,
                    {
                        "name": _part_name(part_id),
                        "is_vocal": token[0] in VOCAL_CHARS,
                        "placement": "full" if token[0] in POLYPHONIC_CHARS else "auto",
                        "refs": {},
                    },
                )
                ref = draft["refs"].setdefault(
                    chord_position,
                    {"is_melody": part_id == melody_part_id, "staff_numbers": []},
                )
                if staff_number not in ref["staff_numbers"]:
                    ref["staff_numbers"].append(staff_number)

    parts = [
        Part(
            part_id=part_id,
            name=draft["name"],
            is_vocal=draft["is_vocal"],
            placement=draft["placement"],
            chord_position_refs={
                cp: PartRef(is_melody=ref["is_melody"], staff_numbers=tuple(ref["staff_numbers"]))
                for cp, ref in sorted(draft["refs"].items())
            },
        )
        for part_id, draft in drafts.items()
    ]
    parts.sort(key=lambda part: part.part_id == "accompaniment")
    return parts


def resolve_parts(
    staff_numbers: Sequence[int],
    has_lyrics: bool,
    *,
    parts: Optional[Sequence[Dict[str, Any]]] = None,
    template: Optional[str] = None,
) -> List[Part]:
    """Explicit parts win, then the template, then the default melody/accompaniment pair."""
    explicit = parse_parts(parts)
    if explicit:
        return explicit
    if template:
        try:
            return build_parts_from_template(template, staff_numbers, has_lyrics)
        except PartsTemplateError as exc:
            logger.warning("parts_template_invalid template=%r error=%s", template, exc)
    return default_parts(staff_numbers)


def staff_part_ids(
    staff_number: int,
    chord_position: int,
    parts: Sequence[Part],
) -> Tuple[List[List[str]], List[str]]:
    """Part ids per stacking slot on a staff (top first) and the melody part ids."""
    slots: Dict[int, List[str]] = {1: [], 2: [], 3: [], 4: []}
    full_part_ids: List[str] = []
    melody_part_ids: List[str] = []
    auto_slot = 1
    for part in parts:
        ref = part.ref_at(chord_position)
        if ref is None or staff_number not in ref.staff_numbers:
            continue
        if part.placement in (1, 2, 3, 4):
            slots[part.placement].append(part.part_id)
        elif part.placement == "full":
            full_part_ids.append(part.part_id)
        elif part.part_id in ("instrumental", "accompaniment"):
            full_part_ids.append(part.part_id)
        elif auto_slot <= 4:
            slots[auto_slot].append(part.part_id)
            auto_slot += 1
        if ref.is_melody:
            melody_part_ids.append(part.part_id)
    for full_part_id in full_part_ids:
        for slot in slots.values():
            slot.append(full_part_id)
    ordered = [slots[key] for key in (1, 2, 3, 4)]
    while len(ordered) > 1 and not ordered[-1]:
        ordered.pop()
    return ordered, melody_part_ids


def staff_groups(parts: Sequence[Part], staff_numbers: Sequence[int], chord_position: int = 0) -> List[List[str]]:
    """Non-full parts on each staff at ``chord_position``, in part order."""
    groups = []
    for staff_number in staff_numbers:
        group = []
        for part in parts:
            ref = part.ref_at(chord_position)
            if ref is not None and staff_number in ref.staff_numbers and part.placement != "full":
                group.append(part.part_id)
        groups.append(group)
    return groups


@dataclass(frozen=True)
class PartAssignment:
    parts: Tuple[Part, ...]
    part_index_by_id: Dict[str, int]
    note_part_ids: Tuple[Tuple[str, ...], ...]
    note_is_melody: Tuple[bool, ...]
    melody_notes: Tuple[Optional[int], ...]
    melody_owner_ids: FrozenSet[str]

    def channels(self, note_index: int) -> List[int]:
        channels: List[int] = []
        for part_id in self.note_part_ids[note_index]:
            channel = self.part_index_by_id.get(part_id, 0)
            if channel not in channels:
                channels.append(channel)
        return channels or [0]

    @property
    def has_melody_info(self) -> bool:
        return any(self.note_is_melody)


def assign_parts(index: PositionIndex, parts: Sequence[Part]) -> PartAssignment:
    """Assign every note to part ids and pick the melody note per chord position.

    Notes are visited highest first; odd layers take slots from the top of the
    staff, even layers from the bottom.
    """
    note_part_ids: List[Tuple[str, ...]] = [() for _ in index.notes]
    note_is_melody = [False] * len(index.notes)
    melody_notes: List[Optional[int]] = []
    slot_cache: Dict[Tuple[int, int], Tuple[List[List[str]], List[str]]] = {}
    for chord_position in index.chord_positions:
        cp = chord_position.chord_position
        chord_counters: Dict[str, int] = {}
        melody_note: Optional[int] = None
        for note_index in reversed(chord_position.note_indices):
            note = index.notes[note_index]
            position_in_chord: Optional[int] = None
            if note.chord_id:
                position_in_chord = chord_counters.get(note.chord_id, 0)
                chord_counters[note.chord_id] = position_in_chord + 1
            if note.layer_number % 2 != 0:
                slot_index = position_in_chord or 0
            elif note.chord_id:
                slot_index = (position_in_chord or 0) - index.chord_sizes.get(note.chord_id, 1)
            else:
                slot_index = -1
            key = (note.staff_number, cp)
            if key not in slot_cache:
                slot_cache[key] = staff_part_ids(note.staff_number, cp, parts)
            slots, melody_part_ids = slot_cache[key]
            part_ids = tuple(slots[slot_index]) if -len(slots) <= slot_index < len(slots) else ()
            note_part_ids[note_index] = part_ids
            if melody_note is None and melody_part_ids and any(pid in melody_part_ids for pid in part_ids):
                note_is_melody[note_index] = True
                melody_note = note_index
        melody_notes.append(melody_note)

    melody_owner_ids = set()
    for note_index, is_melody in enumerate(note_is_melody):
        if is_melody:
            note = index.notes[note_index]
            melody_owner_ids.add(note.element_id)
            if note.chord_id:
                melody_owner_ids.add(note.chord_id)
    return PartAssignment(
        parts=tuple(parts),
        part_index_by_id={part.part_id: position for position, part in enumerate(parts)},
        note_part_ids=tuple(note_part_ids),
        note_is_melody=tuple(note_is_melody),
        melody_notes=tuple(melody_notes),
        melody_owner_ids=frozenset(melody_owner_ids),
    )
