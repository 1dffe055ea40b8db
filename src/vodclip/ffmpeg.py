from __future__ import annotations

import asyncio
import logging
import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from .errors import ToolSpawnError
from .models import CodecProfile, DeliveryMode, SnappedWindow
from .profile import DEFAULT_USER_AGENT, TranscodeSettings, UpstreamSettings
from .utils import subprocess_flags as _subprocess_flags
from .utils import truncate_text

logger = logging.getLogger(__name__)

PROTOCOL_WHITELIST = "file,crypto,data,http,https,tcp,tls"


def find_tool(cmd: str) -> Optional[str]:
    return shutil.which(cmd)


def _fmt_seconds(value: float) -> str:
    return f"{max(0.0, float(value)):.3f}"


@dataclass(frozen=True)
class NetworkOptions:
    """Transport resilience flags handed to ffmpeg's HTTP/HLS input."""

    user_agent: str = DEFAULT_USER_AGENT
    referer: str = ""
    rw_timeout_seconds: float = 15.0
    reconnect_delay_max: int = 5
    protocol_whitelist: str = PROTOCOL_WHITELIST

    @classmethod
    def from_settings(cls, settings: UpstreamSettings) -> "NetworkOptions":
        return cls(
            user_agent=settings.user_agent,
            referer=settings.referer,
            rw_timeout_seconds=settings.rw_timeout_seconds,
            reconnect_delay_max=settings.reconnect_delay_max,
        )

    def to_args(self) -> List[str]:
        args = [
            "-protocol_whitelist", self.protocol_whitelist,
            "-rw_timeout", str(int(self.rw_timeout_seconds * 1_000_000)),
            "-user_agent", self.user_agent,
            "-allowed_extensions", "ALL",
            "-http_persistent", "0",
            "-reconnect", "1",
            "-reconnect_streamed", "1",
            "-reconnect_on_http_error", "4xx,5xx",
            "-reconnect_delay_max", str(int(self.reconnect_delay_max)),
        ]
        if self.referer:
            args += ["-headers", f"Referer: {self.referer}\r\n"]
        return args


@dataclass(frozen=True)
class ClipOptions:
    """Everything that varies between clip invocations besides the window."""

    delivery_mode: DeliveryMode = DeliveryMode.STREAM
    codec_profile: CodecProfile = CodecProfile.TRANSCODE
    network: NetworkOptions = field(default_factory=NetworkOptions)
    transcode: TranscodeSettings = field(default_factory=TranscodeSettings)


@dataclass(frozen=True)
class ClipSpec:
    source_url: str
    window: SnappedWindow
    requested_start: float
    requested_end: float
    options: ClipOptions = field(default_factory=ClipOptions)
    output_path: Optional[Path] = None  # required for buffered delivery

    def _trim_range(self) -> Tuple[float, float]:
        """The requested range clamped into the window; the whole window if that leaves nothing."""
        lo, hi = self.window.start, self.window.end
        start = min(max(self.requested_start, lo), hi)
        end = min(max(self.requested_end, lo), hi)
        if round(end - start, 3) <= 0:
            return lo, hi
        return start, end

    @property
    def fine_offset(self) -> float:
        """Seconds between the snapped start and the (clamped) requested start."""
        start, _ = self._trim_range()
        return round(start - self.window.start, 3)

    @property
    def output_duration(self) -> float:
        if self.options.codec_profile == CodecProfile.REMUX:
            return self.window.duration
        start, end = self._trim_range()
        return round(end - start, 3)


def _remux_args() -> List[str]:
    return [
        "-c:v", "copy",
        "-c:a", "copy",
        "-bsf:a", "aac_adtstoasc",  # ADTS -> ASC for the MP4 container
    ]


def _transcode_args(tc: TranscodeSettings) -> List[str]:
    vf = ",".join([
        f"scale='min({tc.max_width},iw)':-2:force_original_aspect_ratio=decrease",
        "pad=ceil(iw/2)*2:ceil(ih/2)*2:(ow-iw)/2:(oh-ih)/2",
        "format=yuv420p",
    ])
    return [
        "-r", str(tc.fps),
        "-vf", vf,
        "-c:v", "libx264",
        "-preset", tc.preset,
        "-crf", str(tc.crf),
        "-profile:v", "high",
        "-level", "4.1",
        "-pix_fmt", "yuv420p",
        "-threads", str(tc.threads),
        "-fflags", "+genpts",
        "-max_muxing_queue_size", "1024",
        "-c:a", "aac",
        "-b:a", "128k",
        "-ac", "2",
    ]


def build_clip_command(spec: ClipSpec, *, ffmpeg: str = "ffmpeg") -> List[str]:
    """Build the ffmpeg argv for one clip.

    Remux seeks on the input only (fast, lands on the snapped boundary).
    Transcode seeks coarsely to the boundary on the input, then trims the
    remaining offset after opening the source for a frame-accurate cut.
    """
    opts = spec.options
    if opts.delivery_mode == DeliveryMode.BUFFER and spec.output_path is None:
        raise ValueError("buffered delivery requires output_path")

    cmd: List[str] = [ffmpeg, "-hide_banner", "-loglevel", "error", "-nostdin", "-y"]
    cmd += opts.network.to_args()

    cmd += ["-ss", _fmt_seconds(spec.window.start), "-i", spec.source_url]

    if opts.codec_profile == CodecProfile.TRANSCODE:
        if spec.fine_offset > 0.001:
            cmd += ["-ss", _fmt_seconds(spec.fine_offset)]
        cmd += ["-t", _fmt_seconds(spec.output_duration)]
        cmd += ["-map", "0:v?", "-map", "0:a?"]
        cmd += _transcode_args(opts.transcode)
    else:
        cmd += ["-t", _fmt_seconds(spec.window.duration)]
        cmd += ["-map", "0:v?", "-map", "0:a?"]
        cmd += _remux_args()

    # Progress goes to stderr next to error lines; stdout carries media.
    cmd += ["-progress", "pipe:2", "-nostats"]

    if opts.delivery_mode == DeliveryMode.STREAM:
        cmd += ["-movflags", "+frag_keyframe+empty_moov+faststart", "-f", "mp4", "pipe:1"]
    else:
        cmd += ["-movflags", "+faststart", "-f", "mp4", str(spec.output_path)]
    return cmd


@dataclass(frozen=True)
class ProgressUpdate:
    processed_ms: Optional[int] = None
    finished: bool = False


_PROGRESS_LINE_RE = re.compile(r"^([a-z][a-z0-9_]*)=(.*)$")


class ProgressParser:
    """Split ffmpeg stderr into ``-progress`` key=value updates and diagnostics.

    Input arrives in arbitrary chunks; partial lines are held until their
    newline shows up (or until ``flush``).
    """

    def __init__(self, diagnostic_limit: int = 1800) -> None:
        self.diagnostic_limit = diagnostic_limit
        self._buf = b""
        self._diag: List[str] = []
        self._diag_len = 0

    def feed(self, chunk: bytes) -> List[ProgressUpdate]:
        self._buf += chunk
        *lines, self._buf = self._buf.split(b"\n")
        out: List[ProgressUpdate] = []
        for raw in lines:
            update = self._handle_line(raw)
            if update is not None:
                out.append(update)
        return out

    def flush(self) -> List[ProgressUpdate]:
        raw, self._buf = self._buf, b""
        update = self._handle_line(raw)
        return [update] if update is not None else []

    def _handle_line(self, raw: bytes) -> Optional[ProgressUpdate]:
        line = raw.decode("utf-8", errors="replace").strip()
        if not line:
            return None

        m = _PROGRESS_LINE_RE.match(line)
        if m is None:
            self._add_diagnostic(line)
            return None

        key, value = m.group(1), m.group(2).strip()
        # out_time_ms is microseconds too (long-standing ffmpeg quirk).
        if key in ("out_time_us", "out_time_ms"):
            try:
                return ProgressUpdate(processed_ms=max(0, int(value)) // 1000)
            except ValueError:
                return None
        if key == "progress" and value == "end":
            return ProgressUpdate(finished=True)
        return None

    def _add_diagnostic(self, line: str) -> None:
        if self.diagnostic_limit > 0 and self._diag_len >= self.diagnostic_limit:
            return
        self._diag.append(line)
        self._diag_len += len(line) + 1

    @property
    def diagnostics(self) -> str:
        return truncate_text("\n".join(self._diag), self.diagnostic_limit)


class ClipProcess:
    """One ffmpeg child process for one clip job.

    ``kill`` may be called any number of times from the disconnect path and
    the watchdog; only the first call signals the process.
    """

    def __init__(
        self,
        cmd: List[str],
        *,
        on_progress: Optional[Callable[[ProgressUpdate], None]] = None,
        watchdog_seconds: Optional[float] = None,
        diagnostic_limit: int = 1800,
        chunk_size: int = 64 * 1024,
    ) -> None:
        self.cmd = list(cmd)
        self.on_progress = on_progress
        self.watchdog_seconds = watchdog_seconds
        self.chunk_size = chunk_size
        self.parser = ProgressParser(diagnostic_limit)

        self.proc: Optional[asyncio.subprocess.Process] = None
        self.bytes_out = 0
        self.stalled = False
        self.killed = False
        self.watchdog_fired = 0
        self._watchdog: Optional[asyncio.TimerHandle] = None
        self._stderr_task: Optional["asyncio.Task[None]"] = None

    @property
    def pid(self) -> Optional[int]:
        return self.proc.pid if self.proc is not None else None

    @property
    def returncode(self) -> Optional[int]:
        return self.proc.returncode if self.proc is not None else None

    @property
    def diagnostics(self) -> str:
        return self.parser.diagnostics

    async def start(self) -> None:
        if self.proc is not None:
            raise RuntimeError("process already started")
        try:
            self.proc = await asyncio.create_subprocess_exec(
                *self.cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **_subprocess_flags(),
            )
        except OSError as e:
            logger.error("Could not start %s: %s", self.cmd[0], e)
            raise ToolSpawnError(f"spawn error: {e}") from e

        logger.debug("Started %s (pid=%s)", self.cmd[0], self.proc.pid)
        self._stderr_task = asyncio.create_task(self._pump_stderr())
        if self.watchdog_seconds and self.watchdog_seconds > 0:
            loop = asyncio.get_running_loop()
            self._watchdog = loop.call_later(self.watchdog_seconds, self._on_watchdog)

    async def _pump_stderr(self) -> None:
        assert self.proc is not None and self.proc.stderr is not None
        while True:
            chunk = await self.proc.stderr.read(4096)
            if not chunk:
                break
            for update in self.parser.feed(chunk):
                self._emit(update)
        for update in self.parser.flush():
            self._emit(update)

    def _emit(self, update: ProgressUpdate) -> None:
        if self.on_progress is None:
            return
        try:
            self.on_progress(update)
        except Exception as e:
            logger.warning("Progress callback failed: %s: %s", type(e).__name__, e)

    async def read_chunk(self) -> bytes:
        """Read up to ``chunk_size`` bytes of media; ``b""`` at EOF."""
        assert self.proc is not None and self.proc.stdout is not None
        data = await self.proc.stdout.read(self.chunk_size)
        if data:
            if self.bytes_out == 0:
                self._disarm_watchdog()
            self.bytes_out += len(data)
        return data

    def _disarm_watchdog(self) -> None:
        if self._watchdog is not None:
            self._watchdog.cancel()
            self._watchdog = None

    def _on_watchdog(self) -> None:
        self._watchdog = None
        if self.bytes_out > 0 or self.watchdog_fired:
            return
        self.watchdog_fired += 1
        self.stalled = True
        logger.warning("Watchdog: no output within %.1fs, killing %s (pid=%s)", self.watchdog_seconds, self.cmd[0], self.pid)
        self.kill()

    def kill(self) -> None:
        self._disarm_watchdog()
        if self.proc is None or self.proc.returncode is not None:
            return
        try:
            self.proc.kill()
            self.killed = True
        except ProcessLookupError:
            pass

    async def wait(self) -> int:
        assert self.proc is not None
        rc = await self.proc.wait()
        if self._stderr_task is not None:
            await self._stderr_task
        self._disarm_watchdog()
        return rc

    def failure_message(self, returncode: Optional[int]) -> str:
        if self.stalled:
            return f"ffmpeg produced no output within {self.watchdog_seconds:g}s"
        diag = self.diagnostics
        if diag:
            return diag
        return f"ffmpeg exited. code={returncode}"
