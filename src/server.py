"""
Report relay HTTP listener.

Endpoints:
  POST /processreport    — Missive webhook; acknowledged immediately, the
                           pipeline runs afterwards and reports via logs
  GET  /health           — engine liveness and configuration presence
  POST /restart-browser  — operator action: close and relaunch the browser
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request

from src.browser.downloader import BrowserDownloader
from src.browser.engine import BrowserEngineManager
from src.config import Settings, get_settings
from src.errors import EngineUnavailableError, InvalidInboundEventError
from src.webhook.dispatch import RelayDispatcher, build_routing_rules
from src.webhook.inbound import parse_inbound_event
from src.webhook.missive import MissiveClient
from src.webhook.relay import ReportRelayPipeline
from src.webhook.runner import PipelineRunner

logger = logging.getLogger(__name__)

_SERVICE_NAME = "WexDownloader Server"
_VERSION = "3.0.0"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def build_runner(settings: Settings, engines: BrowserEngineManager) -> PipelineRunner:
    """Wire the pipeline components from settings."""
    resolver = MissiveClient(
        api_key=settings.missive_api_key,
        base_url=settings.missive_api_base_url,
        timeout=settings.api_timeout_seconds,
    )
    downloader = BrowserDownloader(
        max_retries=settings.max_retries,
        retry_delay=settings.retry_delay_seconds,
        navigation_timeout=settings.navigation_timeout_seconds,
        download_timeout=settings.download_timeout_seconds,
        reload_timeout=settings.reload_timeout_seconds,
    )
    dispatcher = RelayDispatcher(
        build_routing_rules(
            settings.routing_marker,
            settings.grand_total_webhook_url,
            settings.report_webhook_url,
        ),
        max_retries=settings.max_retries,
        retry_delay=settings.retry_delay_seconds,
        timeout=settings.relay_timeout_seconds,
    )
    return PipelineRunner(ReportRelayPipeline(resolver, engines, downloader, dispatcher))


def _log_banner(settings: Settings) -> None:
    logger.info("=" * 60)
    logger.info("%s v%s", _SERVICE_NAME, _VERSION)
    logger.info("=" * 60)
    logger.info("Configuration:")
    logger.info("  Port: %s", settings.port)
    logger.info("  Persistent Directory: %s", settings.persistent_dir)
    logger.info("  Browser Mode: %s", "Headless" if settings.headless else "Visible")
    logger.info("  Max Retries: %s", settings.max_retries)
    logger.info(
        "  Missive API: %s",
        "Configured" if settings.missive_api_key else "Not configured (WARNING)",
    )
    logger.info("Endpoints:")
    logger.info("  POST http://localhost:%s/processreport", settings.port)
    logger.info("  GET  http://localhost:%s/health", settings.port)
    logger.info("  POST http://localhost:%s/restart-browser", settings.port)
    logger.info("=" * 60)
    if not settings.missive_api_key:
        logger.warning(
            "MISSIVE_API_KEY is not set. The server will not be able to fetch message details."
        )


def create_app(
    settings: Optional[Settings] = None,
    *,
    engines: Optional[BrowserEngineManager] = None,
    runner: Optional[PipelineRunner] = None,
) -> FastAPI:
    """Build the FastAPI application.

    ``engines`` and ``runner`` may be injected (tests); otherwise they are
    built from ``settings``.
    """
    settings = settings or get_settings()
    engines = engines or BrowserEngineManager(settings.persistent_dir, headless=settings.headless)
    runner = runner or build_runner(settings, engines)
    started_at = time.monotonic()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        _log_banner(settings)
        engines.ensure_root()
        try:
            await engines.acquire_engine()
        except EngineUnavailableError as exc:
            # Not fatal: the engine is launched lazily on the first run.
            logger.error("Browser failed to start: %s", exc)
        yield
        logger.info("Shutting down gracefully...")
        await engines.shutdown()

    app = FastAPI(
        title="Report Relay",
        description="Resolves Missive report links, downloads them in a browser and relays the file",
        version=_VERSION,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.engines = engines
    app.state.runner = runner

    @app.post("/processreport")
    async def process_report(request: Request) -> dict[str, Any]:
        """Acknowledge a Missive webhook and schedule its pipeline run."""
        try:
            payload = await request.json()
        except ValueError:
            raise HTTPException(
                status_code=400,
                detail={"error": "Invalid request format", "details": "Body must be JSON"},
            )

        try:
            event = parse_inbound_event(payload)
        except InvalidInboundEventError as exc:
            raise HTTPException(
                status_code=400, detail={"error": exc.error, "details": exc.details},
            )

        logger.info("Message ID: %s", event.message_id)
        logger.info("Execution Mode: %s", event.execution_mode or "unknown")
        runner.submit(event)
        return {"status": "accepted", "messageId": event.message_id, "timestamp": _now()}

    @app.get("/health")
    async def health() -> dict[str, Any]:
        engine_status = engines.status()
        return {
            "status": "healthy",
            "port": settings.port,
            "browser": engine_status["browser"],
            "activeContexts": engine_status["activeContexts"],
            "pendingRuns": runner.pending,
            "config": {
                "headless": settings.headless,
                "maxRetries": settings.max_retries,
                "persistentDir": settings.persistent_dir,
                "missiveApiConfigured": bool(settings.missive_api_key),
                "grandTotalWebhookConfigured": bool(settings.grand_total_webhook_url),
                "reportWebhookConfigured": bool(settings.report_webhook_url),
            },
            "uptime": round(time.monotonic() - started_at, 3),
            "timestamp": _now(),
        }

    @app.post("/restart-browser")
    async def restart_browser() -> dict[str, Any]:
        try:
            await engines.recreate_engine()
        except EngineUnavailableError as exc:
            logger.error("Failed to restart browser: %s", exc)
            raise HTTPException(
                status_code=500,
                detail={"error": "Failed to restart browser", "details": str(exc)},
            )
        return {
            "success": True,
            "message": "Browser restarted successfully",
            "timestamp": _now(),
        }

    return app
