from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from .doctor import run_doctor
from .errors import ClipError
from .logging_config import get_logger, setup_logging
from .playlist import PlaylistFetcher, compute_snapped_window
from .profile import load_settings

log = get_logger("cli")


def _fmt_time(seconds: float) -> str:
    seconds = max(0.0, float(seconds))
    h = int(seconds // 3600)
    m = int((seconds % 3600) // 60)
    s = seconds % 60.0
    if h > 0:
        return f"{h:02d}:{m:02d}:{s:06.3f}"
    return f"{m:02d}:{s:06.3f}"


def cmd_serve(args: argparse.Namespace) -> None:
    from .server.app import create_app

    settings = load_settings(args.profile)
    if not settings.upstream.base_url:
        log.warning("upstream.base_url is not set; /clip will answer 500 until it is configured")

    app = create_app(settings=settings)

    import uvicorn

    uvicorn.run(app, host=args.host, port=args.port, log_config=None)


def cmd_snap(args: argparse.Namespace) -> None:
    settings = load_settings(args.profile)
    if not settings.upstream.base_url:
        print("error: upstream.base_url is not set (profile or VC_BASE_URL)", file=sys.stderr)
        raise SystemExit(2)
    fetcher = PlaylistFetcher(settings.upstream)
    try:
        playlist = asyncio.run(fetcher.fetch_and_parse(args.asset))
    except ClipError as e:
        print(f"error: {e}", file=sys.stderr)
        raise SystemExit(2)

    try:
        window = compute_snapped_window(playlist.boundaries, args.start, args.end)
    except ValueError as e:
        print(f"error: {e}", file=sys.stderr)
        raise SystemExit(2)

    if args.json:
        print(json.dumps({
            "url": playlist.url,
            "segments": playlist.segment_count,
            "total": playlist.total,
            "requested": {"start": args.start, "end": args.end},
            "snapped": window.to_dict(),
        }, indent=2))
        return

    print(f"Playlist: {playlist.url}")
    print(f"Segments: {playlist.segment_count}  Total: {_fmt_time(playlist.total)}")
    print(f"Requested: {_fmt_time(args.start)} -> {_fmt_time(args.end)}")
    print(f"Snapped:   {_fmt_time(window.start)} -> {_fmt_time(window.end)}  ({window.duration:.3f}s)")


def cmd_doctor(args: argparse.Namespace) -> None:
    report = run_doctor(load_settings(args.profile))
    print(json.dumps({"ok": report.ok, "checks": report.checks}, indent=2))
    if not report.ok:
        raise SystemExit(1)


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="vodclip", description="Clip extraction service for segmented VOD assets")
    parser.add_argument("--profile", type=Path, default=None, help="Path to a YAML profile")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable DEBUG logging")
    sub = parser.add_subparsers(dest="cmd", required=True)

    s = sub.add_parser("serve", help="Run the clip HTTP service.")
    s.add_argument("--host", type=str, default="0.0.0.0")
    s.add_argument("--port", type=int, default=8080)
    s.set_defaults(func=cmd_serve)

    n = sub.add_parser("snap", help="Fetch an asset's playlist and show the snapped window for a range.")
    n.add_argument("asset", type=str)
    n.add_argument("--start", type=float, required=True)
    n.add_argument("--end", type=float, required=True)
    n.add_argument("--json", action="store_true", help="Print JSON instead of a table")
    n.set_defaults(func=cmd_snap)

    d = sub.add_parser("doctor", help="Check ffmpeg and upstream configuration.")
    d.set_defaults(func=cmd_doctor)

    args = parser.parse_args(argv)
    setup_logging(level=logging.DEBUG if args.verbose else logging.INFO)
    args.func(args)


if __name__ == "__main__":
    main()
