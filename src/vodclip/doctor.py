from __future__ import annotations

import os
import subprocess
import tempfile
from dataclasses import dataclass
from typing import Dict

from .ffmpeg import find_tool
from .models import CodecProfile
from .profile import ClipperSettings
from .utils import subprocess_flags as _subprocess_flags


@dataclass(frozen=True)
class DoctorReport:
    ok: bool
    checks: Dict[str, Dict[str, object]]


def _run(cmd: list[str]) -> str:
    return subprocess.check_output(cmd, text=True, stderr=subprocess.STDOUT, **_subprocess_flags())


def _version(cmd: str) -> str:
    try:
        return _run([cmd, "-version"]).splitlines()[0].strip()
    except (OSError, subprocess.CalledProcessError) as e:
        return f"error: {type(e).__name__}: {e}"


def _has_encoder(cmd: str, name: str) -> bool:
    try:
        out = _run([cmd, "-hide_banner", "-encoders"])
    except (OSError, subprocess.CalledProcessError):
        return False
    return any(name in line.split() for line in out.splitlines())


def run_doctor(settings: ClipperSettings) -> DoctorReport:
    checks: Dict[str, Dict[str, object]] = {}

    ffmpeg_path = find_tool(settings.tool.ffmpeg)
    checks["ffmpeg"] = {
        "found": ffmpeg_path is not None,
        "path": ffmpeg_path,
        "version": _version(ffmpeg_path) if ffmpeg_path else None,
    }

    ok = ffmpeg_path is not None
    if ffmpeg_path and settings.codec_profile == CodecProfile.TRANSCODE:
        has_x264 = _has_encoder(ffmpeg_path, "libx264")
        checks["libx264"] = {"available": has_x264}
        if not has_x264:
            checks["libx264"]["note"] = "Transcoding needs an ffmpeg build with libx264, or set VC_COPY_CODECS=1"
        ok = ok and has_x264

    scratch = settings.delivery.scratch_dir or tempfile.gettempdir()
    writable = os.access(scratch, os.W_OK) if os.path.isdir(scratch) else os.access(os.path.dirname(os.path.abspath(scratch)), os.W_OK)
    checks["scratch_dir"] = {"path": str(scratch), "writable": writable}
    ok = ok and writable

    base_url = settings.upstream.base_url
    checks["upstream"] = {
        "configured": bool(base_url),
        "base_url": base_url or None,
        "playlist": settings.upstream.playlist,
    }
    if not base_url:
        checks["upstream"]["note"] = "Set upstream.base_url in the profile or VC_BASE_URL"
    ok = ok and bool(base_url)

    return DoctorReport(ok=ok, checks=checks)
