from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response, StreamingResponse

from ..bus import ProgressBus
from ..clipper import ClipService, parse_flag
from ..errors import ClientCanceled, ClipError
from ..jobs import JobManager
from ..playlist import PlaylistFetcher
from ..profile import ClipperSettings, load_settings
from ..utils import truncate_text

logger = logging.getLogger(__name__)

KEEPALIVE_SECONDS = 15.0


def create_app(
    *,
    settings: Optional[ClipperSettings] = None,
    profile_path: Optional[Path] = None,
    upstream_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    if settings is None:
        settings = load_settings(profile_path)

    jobs = JobManager(
        retention_seconds=settings.jobs.retention_seconds,
        bus=ProgressBus(queue_size=settings.jobs.subscriber_queue_size),
    )
    fetcher = PlaylistFetcher(settings.upstream, transport=upstream_transport)
    service = ClipService(settings, jobs=jobs, fetcher=fetcher)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        logger.info("Shutting down: %d job(s) in registry", len(jobs))
        service.shutdown()
        jobs.shutdown()

    app = FastAPI(title="vodclip", lifespan=lifespan)
    app.state.settings = settings
    app.state.jobs = jobs
    app.state.clip_service = service

    @app.exception_handler(ClipError)
    async def clip_error_handler(_: Request, exc: ClipError) -> Response:
        if isinstance(exc, ClientCanceled):
            return Response(status_code=exc.status_code)
        body = truncate_text(str(exc), settings.tool.diagnostic_limit) or "Server error"
        return PlainTextResponse(body, status_code=exc.status_code)

    @app.get("/health")
    def health() -> PlainTextResponse:
        return PlainTextResponse("OK")

    @app.get("/")
    def index() -> PlainTextResponse:
        return PlainTextResponse("vodclip is running.")

    @app.get("/probe")
    async def probe(asset: str = "") -> JSONResponse:
        asset = asset.strip()
        if not asset:
            raise HTTPException(status_code=400, detail="asset is required")
        return JSONResponse(await fetcher.probe(asset))

    @app.get("/clip")
    async def clip(
        request: Request,
        asset: Optional[str] = None,
        start: Optional[str] = None,
        end: Optional[str] = None,
        job: Optional[str] = None,
        mode: Optional[str] = None,
        debug: Optional[str] = None,
    ) -> Response:
        user_agent = request.headers.get("user-agent")
        if parse_flag(debug, name="debug"):
            plan = await service.plan(asset, start, end, mode=mode, user_agent=user_agent)
            return JSONResponse(plan.to_dict(ffmpeg=settings.tool.ffmpeg))
        return await service.clip(asset, start, end, job_id=job, mode=mode, user_agent=user_agent, request=request)

    @app.get("/api/jobs/{job_id}")
    def api_job(job_id: str) -> JSONResponse:
        job = jobs.get(job_id)
        if job is None:
            raise HTTPException(status_code=404, detail="job_not_found")
        return JSONResponse(job.to_dict())

    @app.get("/api/jobs/{job_id}/events")
    async def api_job_events(job_id: str) -> StreamingResponse:
        sub = jobs.subscribe(job_id)
        if sub is None:
            raise HTTPException(status_code=404, detail="job_not_found")

        async def event_stream() -> AsyncIterator[str]:
            try:
                while True:
                    try:
                        message = await sub.get(timeout=KEEPALIVE_SECONDS)
                    except asyncio.TimeoutError:
                        yield ": keep-alive\n\n"
                        continue
                    yield f"data: {message.data}\n\n"
                    if message.terminal:
                        break
            finally:
                jobs.unsubscribe(sub)

        return StreamingResponse(
            event_stream(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-store"},
        )

    return app
