"""Clip pipeline: playlist -> snapped window -> ffmpeg -> response body.

``ClipService`` owns every live ``ClipProcess``. A process is killed when
its job finishes, when the caller disconnects mid-stream, or when the
streamed-delivery watchdog trips.
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, Optional, Set

from fastapi import Request
from fastapi.responses import StreamingResponse
from starlette.types import Receive, Scope, Send

from .delivery import create_scratch_file, iter_file_chunks, remove_scratch, select_delivery_mode
from .errors import (
    ClientCanceled,
    ClipError,
    ConfigurationError,
    ToolRuntimeError,
    UpstreamFetchError,
    ValidationError,
)
from .ffmpeg import ClipOptions, ClipProcess, ClipSpec, NetworkOptions, ProgressUpdate, build_clip_command
from .jobs import ClipJob, JobManager, JobStatus
from .logging_config import bind_job
from .models import ClipRequest, DeliveryMode
from .playlist import Playlist, PlaylistFetcher, compute_snapped_window
from .profile import ClipperSettings
from .utils import truncate_text

logger = logging.getLogger(__name__)

_UNSAFE_FILENAME_RE = re.compile(r"[^A-Za-z0-9._-]+")

_TRUE_FLAGS = frozenset({"1", "true", "yes", "on"})
_FALSE_FLAGS = frozenset({"", "0", "false", "no", "off"})


def _parse_seconds(raw: Any) -> float:
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return math.nan
    return value


def parse_clip_request(asset_id: Optional[str], start: Any, end: Any, *, max_seconds: float) -> ClipRequest:
    """Validate raw query values; raises ValidationError before anything is fetched."""
    asset_id = (asset_id or "").strip()
    s = _parse_seconds(start)
    e = _parse_seconds(end)
    if not asset_id or not math.isfinite(s) or not math.isfinite(e) or e <= s:
        raise ValidationError("Bad params: asset/start/end")
    req = ClipRequest(asset_id=asset_id, requested_start=s, requested_end=e)
    if max_seconds > 0 and req.duration > max_seconds:
        raise ValidationError(f"Max clip length is {max_seconds:g}s")
    return req


def parse_flag(raw: Optional[str], *, name: str) -> bool:
    value = (raw or "").strip().lower()
    if value in _TRUE_FLAGS:
        return True
    if value in _FALSE_FLAGS:
        return False
    raise ValidationError(f"Bad params: {name} must be one of 1/0/true/false")


def clip_filename(req: ClipRequest) -> str:
    safe = _UNSAFE_FILENAME_RE.sub("_", req.asset_id).strip("_") or "asset"
    return f"clip_{safe}_{math.floor(req.requested_start)}-{math.floor(req.requested_end)}.mp4"


class ClipResponse(StreamingResponse):
    """StreamingResponse whose ``on_close`` always runs once the ASGI call ends.

    Starlette skips ``background`` when the client is gone before the body
    starts, and a body generator that never started runs no ``finally``.
    """

    def __init__(self, content: AsyncIterator[bytes], *, on_close: Callable[[], None], **kwargs: Any) -> None:
        super().__init__(content, **kwargs)
        self.on_close = on_close

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            self.on_close()


@dataclass(frozen=True)
class ClipPlan:
    request: ClipRequest
    playlist: Playlist
    spec: ClipSpec

    def to_dict(self, *, ffmpeg: str = "ffmpeg") -> Dict[str, Any]:
        opts = self.spec.options
        return {
            "source_url": self.spec.source_url,
            "segments": self.playlist.segment_count,
            "total_seconds": self.playlist.total,
            "requested": {"start": self.request.requested_start, "end": self.request.requested_end},
            "snapped": self.spec.window.to_dict(),
            "delivery_mode": opts.delivery_mode.value,
            "codec_profile": opts.codec_profile.value,
            "output_seconds": self.spec.output_duration,
            "command": build_clip_command(self._printable_spec(), ffmpeg=ffmpeg),
        }

    def _printable_spec(self) -> ClipSpec:
        if self.spec.options.delivery_mode == DeliveryMode.BUFFER and self.spec.output_path is None:
            return replace(self.spec, output_path=Path("<scratch>.mp4"))
        return self.spec


class ClipService:
    def __init__(
        self,
        settings: ClipperSettings,
        *,
        jobs: JobManager,
        fetcher: Optional[PlaylistFetcher] = None,
    ) -> None:
        self.settings = settings
        self.jobs = jobs
        self.fetcher = fetcher if fetcher is not None else PlaylistFetcher(settings.upstream)
        self._active: Dict[str, ClipProcess] = {}
        self._reapers: Set["asyncio.Task[int]"] = set()

    def options_for(self, mode: DeliveryMode) -> ClipOptions:
        return ClipOptions(
            delivery_mode=mode,
            codec_profile=self.settings.codec_profile,
            network=NetworkOptions.from_settings(self.settings.upstream),
            transcode=self.settings.transcode,
        )

    async def plan(
        self,
        asset_id: Optional[str],
        start: Any,
        end: Any,
        *,
        mode: Optional[str] = None,
        user_agent: Optional[str] = None,
        job: Optional[ClipJob] = None,
    ) -> ClipPlan:
        req = parse_clip_request(asset_id, start, end, max_seconds=self.settings.max_seconds)
        if job is not None:
            self.jobs.update(job, asset_id=req.asset_id, requested_start=req.requested_start, requested_end=req.requested_end)

        delivery_mode = select_delivery_mode(user_agent, mode, force_buffered=self.settings.delivery.force_buffered)
        if not self.settings.upstream.base_url:
            raise ConfigurationError("Server misconfigured: upstream base_url is not set")

        playlist = await self.fetcher.fetch_and_parse(req.asset_id)
        if playlist.total <= 0:
            raise UpstreamFetchError("upstream playlist has no segments")

        window = compute_snapped_window(playlist.boundaries, req.requested_start, req.requested_end)
        options = self.options_for(delivery_mode)
        spec = ClipSpec(
            source_url=playlist.url,
            window=window,
            requested_start=req.requested_start,
            requested_end=req.requested_end,
            options=options,
        )
        if job is not None:
            self.jobs.update(
                job,
                snapped=window,
                delivery_mode=delivery_mode.value,
                codec_profile=options.codec_profile.value,
            )
        logger.info(
            "Clip %s [%.3f, %.3f] -> snapped [%.3f, %.3f] (%s, %s)",
            req.asset_id, req.requested_start, req.requested_end, window.start, window.end,
            delivery_mode.value, options.codec_profile.value,
        )
        return ClipPlan(request=req, playlist=playlist, spec=spec)

    async def clip(
        self,
        asset_id: Optional[str],
        start: Any,
        end: Any,
        *,
        job_id: Optional[str] = None,
        mode: Optional[str] = None,
        user_agent: Optional[str] = None,
        request: Optional[Request] = None,
    ) -> StreamingResponse:
        job = self.jobs.create(job_id, asset_id=(asset_id or "").strip())
        bind_job(job.id)
        try:
            plan = await self.plan(asset_id, start, end, mode=mode, user_agent=user_agent, job=job)
            if plan.spec.options.delivery_mode == DeliveryMode.BUFFER:
                return await self._deliver_buffered(job, plan, request)
            return await self._deliver_streamed(job, plan)
        except ClientCanceled as e:
            self.jobs.set_status(job, JobStatus.CANCELED, error=str(e))
            raise
        except ClipError as e:
            self.jobs.set_status(job, JobStatus.ERROR, error=truncate_text(str(e), self.settings.tool.diagnostic_limit))
            raise
        except Exception as e:
            self.jobs.set_status(job, JobStatus.ERROR, error=f"{type(e).__name__}: {e}")
            raise

    def _headers(self, job: ClipJob, plan: ClipPlan) -> Dict[str, str]:
        req, window = plan.request, plan.spec.window
        return {
            "Cache-Control": "no-store",
            "Content-Disposition": f'attachment; filename="{clip_filename(req)}"',
            "X-Job-Id": job.id,
            "X-Delivery-Mode": plan.spec.options.delivery_mode.value,
            "X-Codec-Profile": plan.spec.options.codec_profile.value,
            "X-Requested-Start": f"{req.requested_start:.3f}",
            "X-Requested-End": f"{req.requested_end:.3f}",
            "X-Snapped-Start": f"{window.start:.3f}",
            "X-Snapped-End": f"{window.end:.3f}",
            "X-Snapped-Duration": f"{window.duration:.3f}",
        }

    def _progress_callback(self, job: ClipJob, duration_s: float) -> Callable[[ProgressUpdate], None]:
        def on_progress(update: ProgressUpdate) -> None:
            if update.processed_ms is not None:
                self.jobs.update_progress(job, update.processed_ms, duration_s)
            if update.finished:
                self.jobs.complete_progress(job)

        return on_progress

    async def _launch(self, job: ClipJob, spec: ClipSpec, *, watchdog: bool) -> ClipProcess:
        tool = self.settings.tool
        proc = ClipProcess(
            build_clip_command(spec, ffmpeg=tool.ffmpeg),
            on_progress=self._progress_callback(job, spec.output_duration),
            watchdog_seconds=tool.watchdog_seconds if watchdog else None,
            diagnostic_limit=tool.diagnostic_limit,
            chunk_size=tool.chunk_size,
        )
        await proc.start()
        self._active[job.id] = proc
        self.jobs.set_status(job, JobStatus.RUNNING)
        return proc

    def _release(self, job: ClipJob, proc: ClipProcess) -> None:
        proc.kill()
        if self._active.get(job.id) is proc:
            del self._active[job.id]
        if proc.proc is not None and proc.returncode is None:
            task = asyncio.ensure_future(proc.wait())
            self._reapers.add(task)
            task.add_done_callback(self._reapers.discard)

    async def _deliver_streamed(self, job: ClipJob, plan: ClipPlan) -> StreamingResponse:
        proc = await self._launch(job, plan.spec, watchdog=True)
        try:
            first = await proc.read_chunk()
        except BaseException:
            self._release(job, proc)
            raise

        if not first:
            rc = await proc.wait()
            self._release(job, proc)
            msg = proc.failure_message(rc)
            logger.warning("ffmpeg exited before any output (code=%s): %s", rc, msg)
            raise ToolRuntimeError(msg, returncode=rc, diagnostics=proc.diagnostics)

        return ClipResponse(
            self._stream_body(job, proc, first),
            on_close=lambda: self._close_streamed(job, proc),
            media_type="video/mp4",
            headers=self._headers(job, plan),
        )

    def _cancel_unfinished(self, job: ClipJob) -> None:
        if not job.terminal:
            logger.info("Response for job %s closed before the body finished", job.id)
            self.jobs.set_status(job, JobStatus.CANCELED, error="client disconnected")

    def _close_streamed(self, job: ClipJob, proc: ClipProcess) -> None:
        self._cancel_unfinished(job)
        self._release(job, proc)

    async def _stream_body(self, job: ClipJob, proc: ClipProcess, first: bytes) -> AsyncIterator[bytes]:
        try:
            chunk = first
            while chunk:
                yield chunk
                self.jobs.add_bytes(job, len(chunk))
                chunk = await proc.read_chunk()

            rc = await proc.wait()
            if rc == 0:
                self.jobs.set_status(job, JobStatus.DONE)
            else:
                # Headers are already committed; all we can do is end the body.
                msg = proc.failure_message(rc)
                logger.error("ffmpeg failed mid-stream for job %s (code=%s): %s", job.id, rc, msg)
                self.jobs.set_status(job, JobStatus.ERROR, error=msg)
        except (asyncio.CancelledError, GeneratorExit):
            logger.info("Client disconnected from job %s after %d bytes; killing ffmpeg", job.id, job.bytes_sent)
            proc.kill()
            self.jobs.set_status(job, JobStatus.CANCELED, error="client disconnected")
            raise
        except Exception as e:
            logger.error("Streaming job %s failed: %s: %s", job.id, type(e).__name__, e)
            self.jobs.set_status(job, JobStatus.ERROR, error=f"{type(e).__name__}: {e}")
            raise
        finally:
            self._release(job, proc)

    async def _wait_buffered(self, proc: ClipProcess, request: Optional[Request]) -> int:
        if request is None or not self.settings.delivery.cancel_buffered_on_disconnect:
            return await proc.wait()

        waiter = asyncio.ensure_future(proc.wait())
        while True:
            done, _ = await asyncio.wait({waiter}, timeout=0.5)
            if done:
                return waiter.result()
            if await request.is_disconnected():
                proc.kill()
                await waiter
                raise ClientCanceled("client disconnected")

    async def _deliver_buffered(self, job: ClipJob, plan: ClipPlan, request: Optional[Request]) -> StreamingResponse:
        path = create_scratch_file(self.settings.delivery.scratch_dir)
        spec = replace(plan.spec, output_path=path)
        handed_off = False
        proc: Optional[ClipProcess] = None
        try:
            proc = await self._launch(job, spec, watchdog=False)
            rc = await self._wait_buffered(proc, request)
            size = path.stat().st_size if path.exists() else 0
            if rc != 0 or size == 0:
                msg = proc.failure_message(rc) if rc != 0 else "ffmpeg produced an empty file"
                logger.warning("Buffered clip failed for job %s (code=%s): %s", job.id, rc, msg)
                raise ToolRuntimeError(msg, returncode=rc, diagnostics=proc.diagnostics)

            self.jobs.update(job, total_bytes=size)
            self.jobs.set_status(job, JobStatus.READY)

            headers = self._headers(job, plan)
            headers["Content-Length"] = str(size)
            handed_off = True
            return ClipResponse(
                self._file_body(job, path),
                on_close=lambda: self._close_buffered(job, path),
                media_type="video/mp4",
                headers=headers,
            )
        finally:
            if proc is not None:
                self._release(job, proc)
            if not handed_off:
                remove_scratch(path)

    async def _file_body(self, job: ClipJob, path: Path) -> AsyncIterator[bytes]:
        try:
            async for chunk in iter_file_chunks(path, self.settings.tool.chunk_size):
                yield chunk
                self.jobs.add_bytes(job, len(chunk))
            self.jobs.set_status(job, JobStatus.DONE)
        except (asyncio.CancelledError, GeneratorExit):
            self.jobs.set_status(job, JobStatus.CANCELED, error="client disconnected")
            raise
        except OSError as e:
            logger.error("Reading scratch file for job %s failed: %s", job.id, e)
            self.jobs.set_status(job, JobStatus.ERROR, error=f"write failure: {e}")
        finally:
            remove_scratch(path)

    def _close_buffered(self, job: ClipJob, path: Path) -> None:
        remove_scratch(path)
        self._cancel_unfinished(job)

    def shutdown(self) -> None:
        for job_id, proc in list(self._active.items()):
            logger.info("Shutting down: killing ffmpeg for job %s", job_id)
            proc.kill()
        self._active.clear()
