"""Key signature metadata and the nearby-key transposition menu."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from hymnsync.mcp.logging_utils import get_logger
from hymnsync.mei.document import ScoreDocument

logger = get_logger(__name__)


@dataclass(frozen=True)
class KeySignature:
    key_signature_id: str
    mxl_fifths: int
    mei_sig: str
    mei_pname_accid: str
    midi_pitch: int
    tonality: str
    name: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "keySignatureId": self.key_signature_id,
            "mxlFifths": str(self.mxl_fifths),
            "meiSig": self.mei_sig,
            "meiPnameAccid": self.mei_pname_accid,
            "midiPitch": self.midi_pitch,
            "tonality": self.tonality,
            "name": self.name,
        }


def _key(key_id: str, fifths: int, sig: str, pname_accid: str, midi_pitch: int, name: str) -> KeySignature:
    tonality = "minor" if key_id.endswith("-minor") else "major"
    return KeySignature(key_id, fifths, sig, pname_accid, midi_pitch, tonality, name)


# Ordered by sounding pitch; the menu rotates this list around the score's key.
KEY_SIGNATURES: Dict[str, Tuple[KeySignature, ...]] = {
    "major": (
        _key("g-flat-major", -6, "6f", "gf", 54, "G♭ major"),
        _key("g-major", 1, "1s", "g", 55, "G major"),
        _key("a-flat-major", -4, "4f", "af", 56, "A♭ major"),
        _key("a-major", 3, "3s", "a", 57, "A major"),
        _key("b-flat-major", -2, "2f", "bf", 58, "B♭ major"),
        _key("b-major", 5, "5s", "b", 59, "B major"),
        _key("c-flat-major", -7, "7f", "cf", 59, "C♭ major"),
        _key("c-major", 0, "0", "c", 60, "C major"),
        _key("c-sharp-major", 7, "7s", "cs", 61, "C# major"),
        _key("d-flat-major", -5, "5f", "df", 61, "D♭ major"),
        _key("d-major", 2, "2s", "d", 62, "D major"),
        _key("e-flat-major", -3, "3f", "ef", 63, "E♭ major"),
        _key("e-major", 4, "4s", "e", 64, "E major"),
        _key("f-major", -1, "1f", "f", 65, "F major"),
        _key("f-sharp-major", 6, "6s", "fs", 66, "F# major"),
    ),
    "minor": (
        _key("g-minor", -2, "2f", "g", 55, "G minor"),
        _key("g-sharp-minor", 5, "5s", "gs", 56, "G# minor"),
        _key("g-flat-minor", -7, "7f", "gf", 56, "A♭ minor"),
        _key("a-minor", 0, "0", "a", 57, "A minor"),
        _key("a-sharp-minor", 7, "7s", "as", 58, "A# minor"),
        _key("b-flat-minor", -5, "5f", "bf", 58, "B♭ minor"),
        _key("b-minor", 2, "2s", "b", 59, "B minor"),
        _key("c-minor", -3, "3f", "c", 60, "C minor"),
        _key("c-sharp-minor", 4, "4s", "cs", 61, "C# minor"),
        _key("d-minor", -1, "1f", "d", 62, "D minor"),
        _key("d-sharp-minor", 6, "6s", "ds", 63, "D# minor"),
        _key("e-flat-minor", -6, "6f", "ef", 63, "E♭ minor"),
        _key("e-minor", 1, "1s", "e", 64, "E minor"),
        _key("f-minor", -4, "4f", "f", 65, "F minor"),
        _key("f-sharp-minor", 3, "3s", "fs", 66, "F# minor"),
    ),
}


@dataclass(frozen=True)
class NearbyKeySignature:
    key_signature: KeySignature
    midi_pitch_offset: int

    def to_dict(self) -> Dict[str, Any]:
        payload = self.key_signature.to_dict()
        payload["midiPitchOffset"] = self.midi_pitch_offset
        return payload


@dataclass(frozen=True)
class KeySignatureInfo:
    key_signature: KeySignature
    nearby: Tuple[NearbyKeySignature, ...]

    @property
    def key_signature_id(self) -> str:
        return self.key_signature.key_signature_id

    @property
    def tonality(self) -> str:
        return self.key_signature.tonality

    def transpose_option(self, key_signature_id: str) -> Optional[str]:
        """Renderer transposition for a menu entry: ``-``/``+`` plus the target pitch name."""
        midpoint = (len(self.nearby) - 1) // 2
        for position, entry in enumerate(self.nearby):
            if entry.key_signature.key_signature_id != key_signature_id:
                continue
            direction = "-" if position < midpoint else "+" if position > midpoint else ""
            return direction + entry.key_signature.mei_pname_accid
        return None

    def to_dict(self) -> Dict[str, Any]:
        payload = self.key_signature.to_dict()
        payload["nearbyKeySignatures"] = [entry.to_dict() for entry in self.nearby]
        return payload


def _first(document: ScoreDocument, tag: str):
    return next(document.root.iter(tag), None)


def _attr(primary, fallback, primary_name: str, fallback_name: str) -> Optional[str]:
    value = primary.get(primary_name) if primary is not None else None
    if value is None and fallback is not None:
        value = fallback.get(fallback_name)
    return value


def nearby_key_signatures(key_signature: KeySignature) -> Tuple[NearbyKeySignature, ...]:
    """Rotate the tonality's key list so ``key_signature`` sits in the middle.

    Keys before the middle are offered a transposition down, keys after it a
    transposition up, so offsets are folded by an octave where needed.
    """
    table = KEY_SIGNATURES[key_signature.tonality]
    midpoint = (len(table) - 1) // 2
    key_index = next(i for i, entry in enumerate(table) if entry.key_signature_id == key_signature.key_signature_id)
    rotated: List[KeySignature] = [table[(key_index - midpoint + i) % len(table)] for i in range(len(table))]
    nearby: List[NearbyKeySignature] = []
    for position, entry in enumerate(rotated):
        offset = entry.midi_pitch - key_signature.midi_pitch
        if position > midpoint and offset < 0:
            offset += 12
        elif position < midpoint and offset > 0:
            offset -= 12
        nearby.append(NearbyKeySignature(key_signature=entry, midi_pitch_offset=offset))
    return tuple(nearby)


def get_key_signature_info(document: ScoreDocument) -> KeySignatureInfo:
    """Key of the score from the first ``keySig`` (or ``scoreDef@key.*`` attributes)."""
    key_sig = _first(document, "keySig")
    score_def = _first(document, "scoreDef")
    sig = _attr(key_sig, score_def, "sig", "key.sig")
    pname = _attr(key_sig, score_def, "pname", "key.pname")
    accid = _attr(key_sig, score_def, "accid", "key.accid")
    pname_accid = (pname + (accid if accid in ("f", "s") else "")) if pname else None
    tonality = _attr(key_sig, score_def, "mode", "key.mode") or "major"
    if tonality not in KEY_SIGNATURES:
        logger.warning("key_signature_unknown_mode mode=%s", tonality)
        tonality = "major"
    table = KEY_SIGNATURES[tonality]
    match = next(
        (entry for entry in table if entry.mei_sig == sig or entry.mei_pname_accid == pname_accid),
        None,
    )
    if match is None:
        logger.warning("key_signature_unmatched sig=%s pname=%s accid=%s", sig, pname, accid)
        match = next(entry for entry in table if entry.mei_sig == "0")
    info = KeySignatureInfo(key_signature=match, nearby=nearby_key_signatures(match))
    logger.debug("key_signature key=%s tonality=%s", match.key_signature_id, match.tonality)
    return info
