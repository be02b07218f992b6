"""MEI document model."""

from hymnsync.mei.document import (
    MEI_NS,
    XML_ID,
    ScoreDocument,
    load_document,
    parse_mei,
    serialize_mei,
)
from hymnsync.mei.timemap import build_timemap

__all__ = [
    "MEI_NS",
    "XML_ID",
    "ScoreDocument",
    "build_timemap",
    "load_document",
    "parse_mei",
    "serialize_mei",
]
