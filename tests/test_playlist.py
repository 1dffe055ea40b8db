import asyncio
import random

import httpx
import pytest

from vodclip.errors import UpstreamError, UpstreamUnreachable
from vodclip.playlist import (
    PlaylistFetcher,
    ceil_boundary,
    compute_snapped_window,
    cumulative_boundaries,
    floor_boundary,
    parse_playlist,
)
from vodclip.profile import UpstreamSettings

PLAYLIST_40S = """#EXTM3U
#EXT-X-VERSION:3
#EXT-X-TARGETDURATION:10
#EXT-X-MEDIA-SEQUENCE:0
#EXTINF:10.000,
seg_0.ts
#EXTINF:10.000,
seg_1.ts
#EXTINF:10.000,
seg_2.ts
#EXTINF:10.000,
seg_3.ts
#EXT-X-ENDLIST
"""


def test_parse_playlist_four_segments() -> None:
    pl = parse_playlist(PLAYLIST_40S)
    assert pl.durations == [10.0, 10.0, 10.0, 10.0]
    assert pl.target_duration == 10.0
    assert pl.boundaries == [0.0, 10.0, 20.0, 30.0, 40.0]
    assert pl.total == 40.0


def test_parse_playlist_malformed_durations_count_as_zero() -> None:
    text = "#EXTM3U\n#EXTINF:abc,\na.ts\n#EXTINF:nan,\nb.ts\n#EXTINF:inf,\nc.ts\n#EXTINF:-3,\nd.ts\n#EXTINF:4.5,title\ne.ts\n"
    pl = parse_playlist(text)
    assert pl.durations == [0.0, 0.0, 0.0, 0.0, 4.5]
    assert pl.boundaries == [0.0, 0.0, 0.0, 0.0, 0.0, 4.5]


def test_parse_empty_playlist() -> None:
    pl = parse_playlist("#EXTM3U\n")
    assert pl.segment_count == 0
    assert pl.boundaries == [0.0]
    assert pl.total == 0.0


def test_cumulative_boundaries_avoid_float_drift() -> None:
    b = cumulative_boundaries([0.1] * 30)
    assert b[-1] == 3.0
    assert b[10] == 1.0


def test_floor_and_ceil_boundary() -> None:
    b = [0.0, 10.0, 20.0, 30.0, 40.0]
    assert floor_boundary(b, 12) == 10.0
    assert ceil_boundary(b, 12) == 20.0
    assert floor_boundary(b, 20) == 20.0
    assert ceil_boundary(b, 20) == 20.0
    assert floor_boundary(b, 0) == 0.0
    assert ceil_boundary(b, 40) == 40.0


class TestSnappedWindow:
    B = [0.0, 10.0, 20.0, 30.0, 40.0]

    def test_scenario_12_22(self) -> None:
        w = compute_snapped_window(self.B, 12, 22)
        assert (w.start, w.end, w.duration) == (10.0, 30.0, 20.0)

    def test_end_clamps_to_total(self) -> None:
        w = compute_snapped_window(self.B, 5, 100)
        assert w.start == 0.0
        assert w.end == 40.0

    def test_negative_start_clamps_to_zero(self) -> None:
        w = compute_snapped_window(self.B, -5, 3)
        assert (w.start, w.end) == (0.0, 10.0)

    def test_inside_one_segment_covers_whole_segment(self) -> None:
        w = compute_snapped_window(self.B, 12.2, 12.7)
        assert (w.start, w.end) == (10.0, 20.0)

    def test_both_on_same_boundary_advances(self) -> None:
        w = compute_snapped_window(self.B, 20, 20)
        assert (w.start, w.end) == (20.0, 30.0)

    def test_at_very_end_steps_back(self) -> None:
        w = compute_snapped_window(self.B, 45, 50)
        assert (w.start, w.end) == (30.0, 40.0)

    def test_zero_length_segments_are_skipped(self) -> None:
        b = cumulative_boundaries([10.0, 0.0, 0.0, 10.0])
        w = compute_snapped_window(b, 10, 10)
        assert (w.start, w.end) == (10.0, 20.0)

    def test_empty_playlist_raises(self) -> None:
        with pytest.raises(ValueError):
            compute_snapped_window([0.0], 0, 5)


def test_boundary_properties_on_random_playlists() -> None:
    rng = random.Random(1234)
    for _ in range(200):
        durations = [rng.choice([0.0, rng.uniform(0.5, 12.0)]) for _ in range(rng.randint(1, 40))]
        durations.append(rng.uniform(0.5, 12.0))
        b = cumulative_boundaries(durations)
        assert b[0] == 0.0
        assert len(b) == len(durations) + 1
        assert all(x <= y for x, y in zip(b, b[1:]))

        total = b[-1]
        for _ in range(10):
            t = rng.uniform(0, total)
            lo, hi = floor_boundary(b, t), ceil_boundary(b, t)
            assert lo <= t <= hi
            assert lo in b and hi in b

            s = rng.uniform(-5, total + 5)
            e = s + rng.uniform(0.001, 30)
            w = compute_snapped_window(b, s, e)
            assert w.end > w.start
            assert w.start in b and w.end in b


def _fetcher(handler, **kw) -> PlaylistFetcher:
    settings = UpstreamSettings(base_url="https://origin.test", **kw)
    return PlaylistFetcher(settings, transport=httpx.MockTransport(handler))


def test_fetch_and_parse_builds_url_and_headers() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["ua"] = request.headers.get("user-agent")
        seen["referer"] = request.headers.get("referer")
        return httpx.Response(200, text=PLAYLIST_40S)

    fetcher = _fetcher(handler, user_agent="clip-test/1.0", referer="https://site.test/")
    pl = asyncio.run(fetcher.fetch_and_parse("abc 1"))

    assert seen["url"] == "https://origin.test/videos/abc%201/stream_0.m3u8"
    assert seen["ua"] == "clip-test/1.0"
    assert seen["referer"] == "https://site.test/"
    assert pl.url == seen["url"]
    assert pl.total == 40.0


def test_fetch_and_parse_non_success_status() -> None:
    fetcher = _fetcher(lambda request: httpx.Response(404, text="nope"))
    with pytest.raises(UpstreamError) as excinfo:
        asyncio.run(fetcher.fetch_and_parse("missing"))
    assert excinfo.value.status == 404
    assert excinfo.value.status_code == 502


def test_fetch_and_parse_unreachable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    fetcher = _fetcher(handler)
    with pytest.raises(UpstreamUnreachable):
        asyncio.run(fetcher.fetch_and_parse("abc"))


def test_probe_reports_sample() -> None:
    fetcher = _fetcher(lambda request: httpx.Response(200, text=PLAYLIST_40S, headers={"content-type": "application/vnd.apple.mpegurl"}))
    info = asyncio.run(fetcher.probe("abc"))
    assert info["ok"] is True
    assert info["status"] == 200
    assert info["content_type"] == "application/vnd.apple.mpegurl"
    assert info["sample"].startswith("#EXTM3U")


def test_boundaries_are_computed_once() -> None:
    pl = parse_playlist(PLAYLIST_40S)
    assert pl.boundaries is pl.boundaries
    assert pl.total == 40.0
