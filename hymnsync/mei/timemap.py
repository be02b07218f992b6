"""Derive an onset/offset timemap from notated MEI durations.

The entries mirror what a rendering engine reports: one entry per instant with
the ids that start or stop there, plus the measure that starts there.
"""

from __future__ import annotations

from fractions import Fraction
from typing import Any, Dict, List, Optional, Tuple

from hymnsync.mei.document import (
    Element,
    TimeSignature,
    element_id,
    iter_measures,
    meter_quarter_length,
    quarter_length,
)

_CONTAINERS = {"beam", "tuplet", "graceGrp", "ftrem", "bTrem", "fTrem"}
_SOUNDING = {"note", "chord"}
_SILENT = {"rest", "mRest"}
_SKIPPED = {"space", "mSpace"}


def _document_qpm(root: Element) -> Optional[float]:
    for score_def in root.iter("scoreDef"):
        value = score_def.get("midi.bpm")
        if value:
            try:
                return float(value)
            except ValueError:
                continue
    return None


def _measure_qpm(measure: Element) -> Optional[float]:
    for elem in measure.iter("tempo"):
        value = elem.get("midi.bpm")
        if value:
            try:
                return float(value)
            except ValueError:
                continue
    return None


class _Events:
    def __init__(self) -> None:
        self.by_time: Dict[Fraction, Dict[str, List[str]]] = {}
        self.measure_starts: Dict[Fraction, str] = {}

    def _slot(self, time: Fraction) -> Dict[str, List[str]]:
        return self.by_time.setdefault(time, {"on": [], "off": [], "restsOn": [], "restsOff": []})

    def add(self, elem_id: Optional[str], start: Fraction, end: Fraction, *, is_rest: bool) -> None:
        if not elem_id:
            return
        self._slot(start)["restsOn" if is_rest else "on"].append(elem_id)
        self._slot(end)["restsOff" if is_rest else "off"].append(elem_id)


def _walk_layer(
    container: Element,
    start: Fraction,
    ratio: Fraction,
    meter: TimeSignature,
    events: _Events,
) -> Fraction:
    """Add events for one layer (or nested container); return the end time."""
    time = start
    for child in container:
        tag = child.tag
        if tag in _CONTAINERS:
            child_ratio = ratio
            if tag == "tuplet" and child.get("num") and child.get("numbase"):
                child_ratio = ratio * Fraction(int(child.get("numbase")), int(child.get("num")))
            time = _walk_layer(child, time, child_ratio, meter, events)
            continue
        if tag in ("mRest", "mSpace", "multiRest"):
            length = meter_quarter_length(meter)
            if tag == "mRest":
                events.add(element_id(child), time, time + length, is_rest=True)
            time += length
            continue
        if tag not in _SOUNDING and tag not in _SILENT and tag not in _SKIPPED:
            continue
        if child.get("grace"):
            continue
        length = quarter_length(child.get("dur"), child.get("dots")) * ratio
        end = time + length
        if tag == "chord":
            for note in child.iter("note"):
                if note.get("dur"):
                    note_end = time + quarter_length(note.get("dur"), note.get("dots")) * ratio
                else:
                    note_end = end
                events.add(element_id(note), time, note_end, is_rest=False)
        elif tag == "note":
            events.add(element_id(child), time, end, is_rest=False)
        elif tag == "rest":
            events.add(element_id(child), time, end, is_rest=True)
        time = end
    return time


def build_timemap(root: Element) -> List[Dict[str, Any]]:
    """Build a timemap (``qstamp``/``tstamp``/``on``/``off``/``measureOn``) for ``root``."""
    events = _Events()
    measure_tempos: List[Tuple[Fraction, float]] = []
    time = Fraction(0)
    default_qpm = _document_qpm(root) or 120.0
    for measure, meter, _system in iter_measures(root):
        measure_start = time
        measure_id = element_id(measure)
        if measure_id:
            events.measure_starts[measure_start] = measure_id
        qpm = _measure_qpm(measure)
        if qpm is not None:
            measure_tempos.append((measure_start, qpm))
        measure_end = measure_start
        for staff in measure.iter("staff"):
            for layer in staff.iter("layer"):
                measure_end = max(measure_end, _walk_layer(layer, measure_start, Fraction(1), meter, events))
        if measure_end == measure_start:
            measure_end = measure_start + meter_quarter_length(meter)
        time = measure_end

    times = sorted(set(events.by_time) | set(events.measure_starts))
    entries: List[Dict[str, Any]] = []
    qpm = default_qpm
    tempo_index = 0
    previous_time = Fraction(0)
    milliseconds = 0.0
    for instant in times:
        milliseconds += float(instant - previous_time) * 60000.0 / qpm
        previous_time = instant
        entry: Dict[str, Any] = {"qstamp": float(instant), "tstamp": milliseconds}
        changed = not entries
        while tempo_index < len(measure_tempos) and measure_tempos[tempo_index][0] <= instant:
            if measure_tempos[tempo_index][1] != qpm:
                changed = True
            qpm = measure_tempos[tempo_index][1]
            tempo_index += 1
        if changed:
            entry["tempo"] = qpm
        slot = events.by_time.get(instant, {})
        for key in ("on", "off", "restsOn", "restsOff"):
            if slot.get(key):
                entry[key] = list(slot[key])
        if instant in events.measure_starts:
            entry["measureOn"] = events.measure_starts[instant]
        entries.append(entry)
    return entries
