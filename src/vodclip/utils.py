"""Small helpers shared across vodclip modules."""

from __future__ import annotations

import sys
from datetime import datetime, timezone
from typing import Any, Dict


def subprocess_flags() -> Dict[str, Any]:
    """Extra kwargs for spawning ffmpeg.

    On Windows the child gets CREATE_NO_WINDOW so a console does not flash up
    per clip; elsewhere nothing is needed.
    """
    if sys.platform == "win32":
        return {"creationflags": 0x08000000}
    return {}


def utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def truncate_text(text: str, limit: int) -> str:
    """Strip ``text`` and cut it to ``limit`` characters (``limit <= 0`` keeps all)."""
    text = (text or "").strip()
    if limit <= 0 or len(text) <= limit:
        return text
    return text[:limit]
