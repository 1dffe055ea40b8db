"""HLS media playlist analysis.

Parses ``#EXTINF`` durations into cumulative segment boundaries and snaps
arbitrary time ranges onto them, so a stream-copy cut starts and ends on a
segment edge.
"""

from __future__ import annotations

import bisect
import logging
import math
from dataclasses import dataclass, field
from functools import cached_property
from typing import Any, List, Optional, Sequence
from urllib.parse import quote

import httpx

from .errors import UpstreamError, UpstreamUnreachable
from .models import SnappedWindow
from .profile import UpstreamSettings

logger = logging.getLogger(__name__)

# Boundaries are rounded to this many decimals to keep float accumulation
# from producing near-duplicate edges.
_BOUNDARY_DECIMALS = 6


@dataclass
class Playlist:
    """Segment durations (seconds) parsed from a media playlist.

    Treat as read-only once built: ``boundaries`` is computed once and cached.
    """

    durations: List[float] = field(default_factory=list)
    target_duration: Optional[float] = None
    url: str = ""

    @property
    def segment_count(self) -> int:
        return len(self.durations)

    @cached_property
    def boundaries(self) -> List[float]:
        return cumulative_boundaries(self.durations)

    @property
    def total(self) -> float:
        return self.boundaries[-1]


def _parse_duration(token: str) -> float:
    try:
        value = float(token.strip())
    except ValueError:
        return 0.0
    if not math.isfinite(value) or value < 0:
        return 0.0
    return value


def parse_playlist(text: str, *, url: str = "") -> Playlist:
    """Parse a media playlist.

    Malformed ``#EXTINF`` durations count as zero instead of failing the parse.
    """
    durations: List[float] = []
    target_duration: Optional[float] = None
    for raw in text.splitlines():
        line = raw.strip()
        if line.startswith("#EXTINF:"):
            token = line[len("#EXTINF:"):].split(",", 1)[0]
            durations.append(_parse_duration(token))
        elif line.startswith("#EXT-X-TARGETDURATION:"):
            value = _parse_duration(line.split(":", 1)[1])
            target_duration = value or None
    return Playlist(durations=durations, target_duration=target_duration, url=url)


def cumulative_boundaries(durations: Sequence[float]) -> List[float]:
    """Return ``[0, d0, d0+d1, ...]``; one more element than ``durations``."""
    out = [0.0]
    acc = 0.0
    for d in durations:
        acc += max(0.0, float(d))
        out.append(round(acc, _BOUNDARY_DECIMALS))
    return out


def floor_boundary(boundaries: Sequence[float], t: float) -> float:
    """Largest boundary <= t (clamped to the first boundary)."""
    idx = bisect.bisect_right(boundaries, t) - 1
    return boundaries[max(0, idx)]


def ceil_boundary(boundaries: Sequence[float], t: float) -> float:
    """Smallest boundary >= t (clamped to the last boundary)."""
    idx = bisect.bisect_left(boundaries, t)
    return boundaries[min(len(boundaries) - 1, idx)]


def compute_snapped_window(boundaries: Sequence[float], req_start: float, req_end: float) -> SnappedWindow:
    """Snap ``[req_start, req_end]`` outward to segment boundaries.

    Out-of-range values are clamped into ``[0, total]`` rather than rejected.
    The result is never empty: if both ends land on the same boundary the end
    advances to the next distinct boundary (or, at the very end of the
    playlist, the start steps back to the previous one).
    """
    if not boundaries:
        raise ValueError("boundaries must not be empty")
    total = boundaries[-1]
    if total <= 0:
        raise ValueError("playlist has no duration")

    s = min(max(0.0, float(req_start)), total)
    e = min(max(0.0, float(req_end)), total)
    if e < s:
        s, e = e, s

    start = floor_boundary(boundaries, s)
    end = ceil_boundary(boundaries, e)

    if end <= start:
        nxt = bisect.bisect_right(boundaries, start)
        if nxt < len(boundaries):
            end = boundaries[nxt]
        else:
            prev = bisect.bisect_left(boundaries, start) - 1
            start = boundaries[max(0, prev)]

    return SnappedWindow(start=start, end=end)


class PlaylistFetcher:
    """Fetches the media playlist for an asset from the configured origin."""

    def __init__(self, settings: UpstreamSettings, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.settings = settings
        self._transport = transport

    def playlist_url(self, asset_id: str) -> str:
        return f"{self.settings.base_url}/videos/{quote(asset_id, safe='')}/{self.settings.playlist}"

    def request_headers(self) -> dict[str, str]:
        headers = {"User-Agent": self.settings.user_agent}
        if self.settings.referer:
            headers["Referer"] = self.settings.referer
        return headers

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.settings.timeout_seconds,
            headers=self.request_headers(),
            follow_redirects=True,
            transport=self._transport,
        )

    async def fetch_and_parse(self, asset_id: str) -> Playlist:
        url = self.playlist_url(asset_id)
        logger.debug("Fetching playlist %s", url)
        try:
            async with self.client() as client:
                response = await client.get(url)
        except httpx.RequestError as e:
            logger.warning("Playlist fetch failed for %s: %s", url, e)
            raise UpstreamUnreachable(f"upstream unreachable: {type(e).__name__}: {e}") from e

        if not response.is_success:
            logger.warning("Playlist fetch for %s returned HTTP %s", url, response.status_code)
            raise UpstreamError(response.status_code, url)

        playlist = parse_playlist(response.text, url=url)
        logger.debug("Parsed %d segments (%.3fs) from %s", playlist.segment_count, playlist.total, url)
        return playlist

    async def probe(self, asset_id: str) -> dict[str, Any]:
        """Debug helper: report what the origin answers for an asset's playlist."""
        url = self.playlist_url(asset_id)
        try:
            async with self.client() as client:
                response = await client.get(url)
        except httpx.RequestError as e:
            raise UpstreamUnreachable(f"upstream unreachable: {type(e).__name__}: {e}") from e
        return {
            "url": url,
            "status": response.status_code,
            "ok": response.is_success,
            "content_type": response.headers.get("content-type"),
            "sample": response.text[:300],
        }
