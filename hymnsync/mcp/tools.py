from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List

from hymnsync.config import Settings
from hymnsync.mcp.handlers import HANDLERS


@dataclass(frozen=True)
class Tool:
    name: str
    description: str
    input_schema: Dict[str, Any]
    output_schema: Dict[str, Any]


_STRUCTURED_INPUTS: Dict[str, Any] = {
    "parts": {"type": ["array", "null"], "items": {"type": "object"}},
    "parts_path": {"type": ["string", "null"]},
    "parts_template": {"type": ["string", "null"]},
    "sections": {"type": ["array", "null"], "items": {"type": "object"}},
    "sections_path": {"type": ["string", "null"]},
    "lyrics_text": {"type": ["string", "null"]},
    "lyrics_path": {"type": ["string", "null"]},
}

_TIMING_INPUTS: Dict[str, Any] = {
    "midi_path": {"type": ["string", "null"]},
    "note_sequence": {"type": ["object", "null"]},
    "fermatas": {"type": ["array", "null"]},
}

TOOLS: List[Tool] = [
    Tool(
        name="load_score",
        description="Index an MEI score and return parts, sections, expansion and MIDI timing.",
        input_schema={
            "type": "object",
            "properties": {
                "file_path": {"type": "string"},
                **_STRUCTURED_INPUTS,
                **_TIMING_INPUTS,
                "chord_sets": {"type": ["array", "null"], "items": {"type": "object"}},
                "chord_sets_path": {"type": ["string", "null"]},
                "expand_intro": {"type": "boolean"},
                "include_mei": {"type": "boolean"},
            },
            "required": ["file_path"],
            "additionalProperties": False,
        },
        output_schema={
            "type": "object",
            "properties": {
                "numChordPositions": {"type": "integer"},
                "parts": {"type": "array"},
                "sections": {"type": "array"},
                "expandedChordPositions": {"type": "array"},
                "midi": {"type": ["object", "null"]},
                "alignmentError": {"type": ["object", "null"]},
            },
            "required": ["numChordPositions", "parts", "sections", "expandedChordPositions", "midi"],
            "additionalProperties": True,
        },
    ),
    Tool(
        name="resolve_parts",
        description="Resolve the part list of a score and pick the melody note per chord position.",
        input_schema={
            "type": "object",
            "properties": {
                "file_path": {"type": "string"},
                "parts": _STRUCTURED_INPUTS["parts"],
                "parts_path": _STRUCTURED_INPUTS["parts_path"],
                "parts_template": _STRUCTURED_INPUTS["parts_template"],
            },
            "required": ["file_path"],
            "additionalProperties": False,
        },
        output_schema={
            "type": "object",
            "properties": {
                "parts": {"type": "array"},
                "staffNumbers": {"type": "array", "items": {"type": "integer"}},
                "hasMelodyInfo": {"type": "boolean"},
                "melodyNoteIds": {"type": "array"},
            },
            "required": ["parts", "staffNumbers", "hasMelodyInfo", "melodyNoteIds"],
            "additionalProperties": False,
        },
    ),
    Tool(
        name="extract_introduction",
        description="Build a leading piano-introduction section from intro-bracket directions.",
        input_schema={
            "type": "object",
            "properties": {
                "file_path": {"type": "string"},
            },
            "required": ["file_path"],
            "additionalProperties": False,
        },
        output_schema={
            "type": "object",
            "properties": {
                "extracted": {"type": "boolean"},
                "mei": {"type": "string"},
            },
            "required": ["extracted", "mei"],
            "additionalProperties": False,
        },
    ),
    Tool(
        name="align_midi",
        description="Align a MIDI performance (or the score itself) to chord positions.",
        input_schema={
            "type": "object",
            "properties": {
                "file_path": {"type": "string"},
                **_STRUCTURED_INPUTS,
                **_TIMING_INPUTS,
            },
            "required": ["file_path"],
            "additionalProperties": False,
        },
        output_schema={
            "type": "object",
            "properties": {
                "midiType": {"type": "string"},
                "source": {"type": "string"},
                "totalTime": {"type": "number"},
                "chordPositions": {"type": "array"},
                "expandedChordPositions": {"type": "array"},
                "notes": {"type": "array"},
                "metronomeBeats": {"type": "array"},
            },
            "required": ["midiType", "source", "totalTime", "chordPositions", "expandedChordPositions"],
            "additionalProperties": False,
        },
    ),
]


def list_tools() -> List[Dict[str, Any]]:
    return [
        {
            "name": tool.name,
            "description": tool.description,
            "inputSchema": tool.input_schema,
            "outputSchema": tool.output_schema,
        }
        for tool in TOOLS
    ]


def call_tool(name: str, arguments: Dict[str, Any], settings: Settings) -> Any:
    if name not in HANDLERS:
        raise ValueError(f"Unknown tool: {name}")
    handler = HANDLERS[name]
    return handler(arguments, settings)
