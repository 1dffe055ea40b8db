"""Delivery mode selection and scratch-file handling for buffered clips."""

from __future__ import annotations

import asyncio
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import AsyncIterator, Optional

from .errors import ValidationError
from .models import DeliveryMode

logger = logging.getLogger(__name__)

# Clients that will not play a fragmented MP4 until the moov index is complete.
_NEEDS_INDEXED_CONTAINER_RE = re.compile(r"\b(iPhone|iPad|iPod)\b")


def select_delivery_mode(
    user_agent: Optional[str],
    requested: Optional[str] = None,
    *,
    force_buffered: bool = False,
) -> DeliveryMode:
    """Pick streamed or buffered delivery.

    Order: explicit request, global override, user-agent sniffing, then
    streamed as the default.
    """
    if requested:
        try:
            return DeliveryMode(requested.strip().lower())
        except ValueError:
            raise ValidationError(f"Bad params: mode must be one of {[m.value for m in DeliveryMode]}")
    if force_buffered:
        return DeliveryMode.BUFFER
    if user_agent and _NEEDS_INDEXED_CONTAINER_RE.search(user_agent):
        return DeliveryMode.BUFFER
    return DeliveryMode.STREAM


def create_scratch_file(scratch_dir: Optional[Path] = None, *, prefix: str = "clip_") -> Path:
    """Reserve a uniquely named, empty .mp4 file for the tool to overwrite."""
    if scratch_dir is not None:
        scratch_dir.mkdir(parents=True, exist_ok=True)
    fd, name = tempfile.mkstemp(prefix=prefix, suffix=".mp4", dir=str(scratch_dir) if scratch_dir else None)
    os.close(fd)
    return Path(name)


def remove_scratch(path: Optional[Path]) -> None:
    if path is None:
        return
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        logger.warning("Could not remove scratch file %s: %s", path, e)


async def iter_file_chunks(path: Path, chunk_size: int = 1024 * 1024) -> AsyncIterator[bytes]:
    with path.open("rb") as f:
        while True:
            data = await asyncio.to_thread(f.read, chunk_size)
            if not data:
                break
            yield data
