"""Chord symbol sets keyed by chord position."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from hymnsync.api.positions import PositionIndex
from hymnsync.mcp.logging_utils import get_logger

logger = get_logger(__name__)

DEFAULT_CHORD_SET_ID = "default"


@dataclass(frozen=True)
class ChordInfo:
    text: str
    prefix: Optional[str] = None
    svg_symbol_id: Optional[str] = None
    chord_position: Optional[int] = None
    measure_id: Optional[str] = None
    tstamp: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "prefix": self.prefix,
            "text": self.text,
            "svgSymbolId": self.svg_symbol_id,
            "chordPosition": self.chord_position,
            "measureId": self.measure_id,
            "tstamp": self.tstamp,
        }


@dataclass(frozen=True)
class ChordSet:
    chord_set_id: str
    name: str
    chord_position_refs: Dict[int, ChordInfo] = field(default_factory=dict)
    svg_symbols_url: Optional[str] = None
    chord_info_list: Tuple[ChordInfo, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chordSetId": self.chord_set_id,
            "name": self.name,
            "svgSymbolsUrl": self.svg_symbols_url,
            "chordPositionRefs": {str(cp): info.to_dict() for cp, info in sorted(self.chord_position_refs.items())},
            "chordInfoList": [info.to_dict() for info in self.chord_info_list],
        }


def normalize_chord_text(text: str) -> str:
    return text.strip().replace("♭", "b").replace("♯", "#")


def _pick(raw: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in raw:
            return raw[key]
    return default


def qstamp_to_tstamp(qstamp: float, measure_start_q: float, unit: int) -> float:
    """Beat position (1-based, in meter units) of a quarter-note offset."""
    return (qstamp - measure_start_q) * unit / 4 + 1


def _placed(info: ChordInfo, index: PositionIndex) -> Optional[ChordInfo]:
    """Attach measure id and tstamp for a chord info known only by chord position."""
    if info.chord_position is None or not 0 <= info.chord_position < index.num_chord_positions:
        return None
    position = index.chord_positions[info.chord_position]
    measure = index.measures[position.measure_index]
    measure_start = measure.start_q if measure.start_q is not None else position.start_q
    return ChordInfo(
        text=info.text,
        prefix=info.prefix,
        svg_symbol_id=info.svg_symbol_id,
        chord_position=info.chord_position,
        measure_id=measure.measure_id,
        tstamp=qstamp_to_tstamp(position.start_q, measure_start, measure.time_signature[1]),
    )


def default_chord_set(index: PositionIndex) -> Optional[ChordSet]:
    """Chord set read from the score's own ``<harm>`` elements, if any."""
    harms = [event for event in index.control_events if event.tag == "harm"]
    if not harms:
        return None
    refs: Dict[int, ChordInfo] = {}
    infos: List[ChordInfo] = []
    for event in harms:
        measure_id = index.measures[event.measure_index].measure_id if event.measure_index is not None else None
        info = ChordInfo(
            text=normalize_chord_text(event.text),
            chord_position=event.chord_position,
            measure_id=measure_id,
            tstamp=event.tstamp,
        )
        infos.append(info)
        if event.chord_position is not None:
            refs[event.chord_position] = info
    return ChordSet(
        chord_set_id=DEFAULT_CHORD_SET_ID,
        name="Default",
        chord_position_refs=refs,
        chord_info_list=tuple(infos),
    )


def parse_chord_sets(raw_sets: Optional[Sequence[Dict[str, Any]]], index: PositionIndex) -> List[ChordSet]:
    chord_sets: List[ChordSet] = []
    for raw in raw_sets or []:
        chord_set_id = _pick(raw, "chordSetId", "chord_set_id")
        if not chord_set_id:
            logger.warning("chord_set_missing_id entry_keys=%s", sorted(raw))
            continue
        refs: Dict[int, ChordInfo] = {}
        for key, value in (_pick(raw, "chordPositionRefs", "chord_position_refs", default={}) or {}).items():
            try:
                chord_position = int(key)
            except (TypeError, ValueError):
                logger.warning("chord_set_bad_position chord_set_id=%s key=%s", chord_set_id, key)
                continue
            refs[chord_position] = ChordInfo(
                text=normalize_chord_text(str(value.get("text") or "")),
                prefix=value.get("prefix"),
                svg_symbol_id=_pick(value, "svgSymbolId", "svg_symbol_id"),
                chord_position=chord_position,
            )
        placed: List[ChordInfo] = []
        for chord_position in sorted(refs):
            info = _placed(refs[chord_position], index)
            if info is None:
                logger.warning("chord_set_position_unresolved chord_set_id=%s chord_position=%s", chord_set_id, chord_position)
                del refs[chord_position]
                continue
            refs[chord_position] = info
            placed.append(info)
        chord_sets.append(
            ChordSet(
                chord_set_id=str(chord_set_id),
                name=str(raw.get("name") or chord_set_id),
                chord_position_refs=refs,
                svg_symbols_url=_pick(raw, "svgSymbolsUrl", "svg_symbols_url"),
                chord_info_list=tuple(placed),
            )
        )
    return chord_sets


def resolve_chord_sets(
    index: PositionIndex,
    raw_sets: Optional[Sequence[Dict[str, Any]]] = None,
) -> Dict[str, ChordSet]:
    """Explicit chord sets, preceded by the default set when the score has ``<harm>`` elements."""
    chord_sets = parse_chord_sets(raw_sets, index)
    default = default_chord_set(index)
    if default is not None:
        chord_sets.insert(0, default)
    logger.debug("chord_sets ids=%s", [chord_set.chord_set_id for chord_set in chord_sets])
    return {chord_set.chord_set_id: chord_set for chord_set in chord_sets}
