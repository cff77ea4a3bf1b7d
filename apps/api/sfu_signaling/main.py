"""FastAPI application for the SFU signaling server."""
from __future__ import annotations

import asyncio
import logging
import os
import signal
from contextlib import asynccontextmanager, suppress
from typing import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse, Response

from .core.config import Settings, settings
from .routers import signaling as signaling_router
from .services.media_engine import LoopbackMediaEngine
from .services.signaling import FatalHook, SignalingRouter

logger = logging.getLogger(__name__)


def _terminate_process(reason: str) -> None:
    """No media can be routed once the engine is gone; ask the server to shut down."""

    logger.critical("Terminating after media engine failure: %s", reason)
    os.kill(os.getpid(), signal.SIGTERM)


async def _log_usage(signaling: SignalingRouter, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        logger.info("Signaling usage: %s", signaling.stats())


def build_signaling(config: Settings = settings, on_fatal: FatalHook | None = _terminate_process) -> SignalingRouter:
    engine = LoopbackMediaEngine(
        media_codecs=config.media_codecs,
        announced_ip=config.announced_ip,
        rtc_min_port=config.rtc_min_port,
        rtc_max_port=config.rtc_max_port,
        enable_udp=config.enable_udp,
        enable_tcp=config.enable_tcp,
        prefer_udp=config.prefer_udp,
        initial_available_outgoing_bitrate=config.initial_available_outgoing_bitrate,
    )
    return SignalingRouter(engine, on_fatal=on_fatal)


def create_app(signaling: SignalingRouter | None = None, config: Settings = settings) -> FastAPI:
    signaling = signaling or build_signaling(config)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        signaling.start()
        usage_task: asyncio.Task[None] | None = None
        if config.usage_log_interval > 0:
            usage_task = asyncio.create_task(_log_usage(signaling, config.usage_log_interval))
        logger.info("Signaling server ready (env=%s)", config.app_env)
        try:
            yield
        finally:
            if usage_task:
                usage_task.cancel()
                with suppress(asyncio.CancelledError):
                    await usage_task
            await signaling.close()

    app = FastAPI(title="SFU Signaling Server", version="0.1.0", lifespan=lifespan)
    app.state.signaling = signaling

    if config.cors_allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_allow_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.get("/api/health", tags=["meta"])
    async def health() -> dict[str, object]:
        """Liveness probe with room and peer counts."""

        engine_alive = signaling.accepting
        return {
            "status": "ok" if engine_alive else "degraded",
            "workers": 1 if engine_alive else 0,
            **signaling.stats(),
        }

    @app.head("/api/health", tags=["meta"])
    async def health_head() -> Response:
        """Allow HEAD for uptime monitors that only need the status code."""

        return Response(status_code=200)

    @app.get("/robots.txt", response_class=PlainTextResponse, include_in_schema=False)
    async def robots() -> PlainTextResponse:
        """Serve a minimal robots.txt to avoid 404 noise."""

        return PlainTextResponse("User-agent: *\nDisallow:")

    app.include_router(signaling_router.router)
    return app


app = create_app()
