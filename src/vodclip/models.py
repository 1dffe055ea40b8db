"""Shared value types for the clip pipeline."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class DeliveryMode(str, Enum):
    """How the tool output reaches the caller."""
    STREAM = "stream"  # pipe:1 straight to the response, low time-to-first-byte
    BUFFER = "buffer"  # scratch file first, exact Content-Length, full moov index


class CodecProfile(str, Enum):
    """What the tool does to the encoded streams."""
    REMUX = "remux"          # stream copy, keyframe-aligned
    TRANSCODE = "transcode"  # libx264/aac re-encode, frame accurate


@dataclass(frozen=True)
class SnappedWindow:
    """A time range aligned to segment boundaries (seconds)."""

    start: float
    end: float

    @property
    def duration(self) -> float:
        return round(self.end - self.start, 6)

    def to_dict(self) -> dict[str, Any]:
        return {"start": self.start, "end": self.end, "duration": self.duration}


@dataclass(frozen=True)
class ClipRequest:
    asset_id: str
    requested_start: float
    requested_end: float

    @property
    def duration(self) -> float:
        return round(self.requested_end - self.requested_start, 3)
