from __future__ import annotations

import copy
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import yaml

from .models import CodecProfile

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)


def default_profile() -> Dict[str, Any]:
    return {
        "upstream": {
            "base_url": "",
            "playlist": "stream_0.m3u8",
            "user_agent": DEFAULT_USER_AGENT,
            "referer": "",
            "timeout_seconds": 15.0,
            "rw_timeout_seconds": 15.0,
            "reconnect_delay_max": 5,
        },
        "clip": {
            "max_seconds": 30.0,
            "codec_profile": "transcode",  # "transcode" or "remux"
        },
        "transcode": {
            "max_width": 720,
            "crf": 23,
            "preset": "ultrafast",
            "fps": 30,
            "threads": 1,
        },
        "tool": {
            "ffmpeg": "ffmpeg",
            "watchdog_seconds": 20.0,  # streamed delivery only
            "diagnostic_limit": 1800,
            "chunk_size": 64 * 1024,
        },
        "delivery": {
            "force_buffered": False,
            "cancel_buffered_on_disconnect": False,
            "scratch_dir": None,  # None = system temp dir
        },
        "jobs": {
            "retention_seconds": 300.0,
            "subscriber_queue_size": 100,
        },
    }


def _as_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _codec_from_copy_flag(value: str) -> str:
    return CodecProfile.REMUX.value if _as_bool(value) else CodecProfile.TRANSCODE.value


# env var -> (section, key, caster)
_ENV_OVERRIDES: Dict[str, tuple[str, str, Callable[[str], Any]]] = {
    "VC_BASE_URL": ("upstream", "base_url", str),
    "VC_PLAYLIST": ("upstream", "playlist", str),
    "VC_USER_AGENT": ("upstream", "user_agent", str),
    "VC_REFERER": ("upstream", "referer", str),
    "VC_MAX_SECONDS": ("clip", "max_seconds", float),
    "VC_COPY_CODECS": ("clip", "codec_profile", _codec_from_copy_flag),
    "VC_MAX_WIDTH": ("transcode", "max_width", int),
    "VC_CRF": ("transcode", "crf", int),
    "VC_PRESET": ("transcode", "preset", str),
    "VC_FPS": ("transcode", "fps", int),
    "VC_THREADS": ("transcode", "threads", int),
    "VC_FFMPEG": ("tool", "ffmpeg", str),
    "VC_WATCHDOG_SECONDS": ("tool", "watchdog_seconds", float),
    "VC_FORCE_BUFFERED": ("delivery", "force_buffered", _as_bool),
    "VC_SCRATCH_DIR": ("delivery", "scratch_dir", str),
}


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _deep_merge(out[key], value)
        else:
            out[key] = value
    return out


def apply_env_overrides(profile: Dict[str, Any], environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    environ = os.environ if environ is None else environ
    out = copy.deepcopy(profile)
    for name, (section, key, caster) in _ENV_OVERRIDES.items():
        raw = environ.get(name)
        if raw is None or raw == "":
            continue
        try:
            value = caster(raw)
        except ValueError as e:
            raise ValueError(f"Invalid value for {name}: {raw!r}") from e
        out.setdefault(section, {})[key] = value
    return out


def load_profile(profile_path: Optional[Path]) -> Dict[str, Any]:
    if profile_path is None:
        return default_profile()

    profile_path = Path(profile_path)
    if not profile_path.exists():
        raise FileNotFoundError(f"Profile not found: {profile_path}")

    data = yaml.safe_load(profile_path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError("Profile YAML must be a mapping")
    return _deep_merge(default_profile(), data)


@dataclass(frozen=True)
class UpstreamSettings:
    base_url: str = ""
    playlist: str = "stream_0.m3u8"
    user_agent: str = DEFAULT_USER_AGENT
    referer: str = ""
    timeout_seconds: float = 15.0
    rw_timeout_seconds: float = 15.0
    reconnect_delay_max: int = 5


@dataclass(frozen=True)
class TranscodeSettings:
    max_width: int = 720
    crf: int = 23
    preset: str = "ultrafast"
    fps: int = 30
    threads: int = 1


@dataclass(frozen=True)
class ToolSettings:
    ffmpeg: str = "ffmpeg"
    watchdog_seconds: Optional[float] = 20.0
    diagnostic_limit: int = 1800
    chunk_size: int = 64 * 1024


@dataclass(frozen=True)
class DeliverySettings:
    force_buffered: bool = False
    cancel_buffered_on_disconnect: bool = False
    scratch_dir: Optional[Path] = None


@dataclass(frozen=True)
class JobSettings:
    retention_seconds: float = 300.0
    subscriber_queue_size: int = 100


@dataclass(frozen=True)
class ClipperSettings:
    upstream: UpstreamSettings = field(default_factory=UpstreamSettings)
    max_seconds: float = 30.0
    codec_profile: CodecProfile = CodecProfile.TRANSCODE
    transcode: TranscodeSettings = field(default_factory=TranscodeSettings)
    tool: ToolSettings = field(default_factory=ToolSettings)
    delivery: DeliverySettings = field(default_factory=DeliverySettings)
    jobs: JobSettings = field(default_factory=JobSettings)

    @classmethod
    def from_profile(cls, profile: Dict[str, Any]) -> "ClipperSettings":
        up = profile.get("upstream", {})
        clip = profile.get("clip", {})
        tc = profile.get("transcode", {})
        tool = profile.get("tool", {})
        dl = profile.get("delivery", {})
        jobs = profile.get("jobs", {})

        watchdog = tool.get("watchdog_seconds", 20.0)
        scratch_dir = dl.get("scratch_dir")

        return cls(
            upstream=UpstreamSettings(
                base_url=str(up.get("base_url") or "").rstrip("/"),
                playlist=str(up.get("playlist") or "stream_0.m3u8"),
                user_agent=str(up.get("user_agent") or DEFAULT_USER_AGENT),
                referer=str(up.get("referer") or ""),
                timeout_seconds=float(up.get("timeout_seconds", 15.0)),
                rw_timeout_seconds=float(up.get("rw_timeout_seconds", 15.0)),
                reconnect_delay_max=int(up.get("reconnect_delay_max", 5)),
            ),
            max_seconds=float(clip.get("max_seconds", 30.0)),
            codec_profile=CodecProfile(str(clip.get("codec_profile", "transcode"))),
            transcode=TranscodeSettings(
                max_width=int(tc.get("max_width", 720)),
                crf=int(tc.get("crf", 23)),
                preset=str(tc.get("preset", "ultrafast")),
                fps=int(tc.get("fps", 30)),
                threads=int(tc.get("threads", 1)),
            ),
            tool=ToolSettings(
                ffmpeg=str(tool.get("ffmpeg") or "ffmpeg"),
                watchdog_seconds=float(watchdog) if watchdog else None,
                diagnostic_limit=int(tool.get("diagnostic_limit", 1800)),
                chunk_size=int(tool.get("chunk_size", 64 * 1024)),
            ),
            delivery=DeliverySettings(
                force_buffered=bool(dl.get("force_buffered", False)),
                cancel_buffered_on_disconnect=bool(dl.get("cancel_buffered_on_disconnect", False)),
                scratch_dir=Path(scratch_dir) if scratch_dir else None,
            ),
            jobs=JobSettings(
                retention_seconds=float(jobs.get("retention_seconds", 300.0)),
                subscriber_queue_size=int(jobs.get("subscriber_queue_size", 100)),
            ),
        )


def load_settings(profile_path: Optional[Path] = None, environ: Optional[Dict[str, str]] = None) -> ClipperSettings:
    """Defaults, then the YAML profile, then VC_* environment variables."""
    return ClipperSettings.from_profile(apply_env_overrides(load_profile(profile_path), environ))
