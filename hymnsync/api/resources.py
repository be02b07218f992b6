"""Fetch score, MIDI and lyric resources before indexing starts."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Union

import httpx
import yaml

from hymnsync.config import Settings
from hymnsync.mcp.logging_utils import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ScoreResources:
    score_content: bytes
    midi_bytes: Optional[bytes] = None
    lyrics_text: Optional[str] = None


def is_url(location: str) -> bool:
    return location.startswith(("http://", "https://"))


async def _read(client: httpx.AsyncClient, location: Optional[str]) -> Optional[bytes]:
    if not location:
        return None
    if is_url(location):
        response = await client.get(location)
        response.raise_for_status()
        logger.info("resource_fetched url=%s bytes=%s", location, len(response.content))
        return response.content
    content = Path(location).read_bytes()
    logger.info("resource_read path=%s bytes=%s", location, len(content))
    return content


async def fetch_resources(
    score_url: str,
    midi_url: Optional[str] = None,
    lyrics_url: Optional[str] = None,
    *,
    settings: Optional[Settings] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> ScoreResources:
    """Fetch every resource concurrently; all complete before the caller indexes."""
    settings = settings or Settings()
    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient(timeout=settings.fetch_timeout_seconds, follow_redirects=True)
    try:
        score_content, midi_bytes, lyrics_bytes = await asyncio.gather(
            _read(client, score_url),
            _read(client, midi_url),
            _read(client, lyrics_url),
        )
    finally:
        if owns_client:
            await client.aclose()
    if score_content is None:
        raise ValueError("score_url is required.")
    return ScoreResources(
        score_content=score_content,
        midi_bytes=midi_bytes,
        lyrics_text=lyrics_bytes.decode("utf-8") if lyrics_bytes is not None else None,
    )


def load_structured_file(path: Union[str, Path]) -> Any:
    """Load explicit parts, sections or chord sets from a YAML or JSON file."""
    # JSON is a subset of YAML.
    return yaml.safe_load(Path(path).read_text(encoding="utf8"))
