"""Report relay pipeline.

Orchestrates one run for an inbound Missive event using direct calls to
each stage component.

Pipeline stages:
1. Resolve the message through the Missive API
2. Extract the download URL from the message body
3. Download the file through an isolated browser context
4. Route by file name and relay as multipart upload
5. Release the context and working area (always)

A run never raises: every outcome, including unexpected exceptions, ends
in a ``PipelineResult`` that the caller logs.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import TYPE_CHECKING

from src.errors import DownloadFailedError, PipelineError, RelayFailedError
from src.webhook.missive import extract_download_url
from src.webhook.models import (
    DownloadedArtifact,
    InboundEvent,
    PipelineResult,
    PipelineState,
)

if TYPE_CHECKING:
    from src.browser.downloader import BrowserDownloader
    from src.browser.engine import BrowserEngineManager, ExecutionContext
    from src.webhook.dispatch import RelayDispatcher
    from src.webhook.missive import MissiveClient

logger = logging.getLogger(__name__)

_TERMINAL = frozenset({PipelineState.SUCCEEDED, PipelineState.FAILED})

_ALLOWED_TRANSITIONS: dict[PipelineState, frozenset[PipelineState]] = {
    PipelineState.RECEIVED: frozenset({PipelineState.RESOLVING, PipelineState.CLEANING_UP}),
    PipelineState.RESOLVING: frozenset({PipelineState.DOWNLOADING, PipelineState.CLEANING_UP}),
    PipelineState.DOWNLOADING: frozenset({PipelineState.RELAYING, PipelineState.CLEANING_UP}),
    PipelineState.RELAYING: frozenset({PipelineState.CLEANING_UP}),
    PipelineState.CLEANING_UP: _TERMINAL,
    PipelineState.SUCCEEDED: frozenset(),
    PipelineState.FAILED: frozenset(),
}


class PipelineRun:
    """One-directional state machine for a single run."""

    def __init__(self, message_id: str) -> None:
        self.message_id = message_id
        self.state = PipelineState.RECEIVED
        self.transitions: list[PipelineState] = [PipelineState.RECEIVED]

    def advance(self, new_state: PipelineState) -> None:
        if new_state not in _ALLOWED_TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Illegal pipeline transition {self.state.value} -> {new_state.value}"
            )
        logger.debug("[%s] %s -> %s", self.message_id, self.state.value, new_state.value)
        self.state = new_state
        self.transitions.append(new_state)


class ReportRelayPipeline:
    """Runs resolve → download → relay → cleanup for one inbound event."""

    def __init__(
        self,
        resolver: MissiveClient,
        engines: BrowserEngineManager,
        downloader: BrowserDownloader,
        dispatcher: RelayDispatcher,
    ) -> None:
        self._resolver = resolver
        self._engines = engines
        self._downloader = downloader
        self._dispatcher = dispatcher

    async def run(self, event: InboundEvent) -> PipelineResult:
        """Run the full pipeline for one inbound event."""
        run = PipelineRun(event.message_id)
        result = PipelineResult(message_id=event.message_id, state=run.state)
        execution: ExecutionContext | None = None
        working_area: Path | None = None
        artifact: DownloadedArtifact | None = None
        error: BaseException | None = None

        logger.info("[%s] New process report run", event.message_id)
        if event.webhook_url:
            logger.info(
                "[%s] Caller webhook URL %s ignored; destination is chosen by routing",
                event.message_id, event.webhook_url,
            )

        try:
            # Stage 1-2: resolve message and extract URL
            run.advance(PipelineState.RESOLVING)
            message = await self._resolver.resolve(event.message_id)
            url = extract_download_url(message)
            conversation_id = message.conversation_id or event.conversation_id

            # Stage 3: download through an isolated context
            run.advance(PipelineState.DOWNLOADING)
            engine = await self._engines.acquire_engine()
            working_area = self._engines.create_working_area()
            execution = await self._engines.open_context(engine, working_area)
            artifact = await self._downloader.download_with_retry(execution, url)
            result.file_name = artifact.file_name
            result.download_attempts = artifact.attempts

            # Stage 4: route and relay
            run.advance(PipelineState.RELAYING)
            data = await asyncio.to_thread(artifact.path.read_bytes)
            logger.info("[%s] File size: %.2f KB", event.message_id, len(data) / 1024)
            target = self._dispatcher.determine_target(artifact.file_name)
            result.target_label = target.label
            outcome = await self._dispatcher.relay_with_retry(
                data,
                artifact.file_name,
                target,
                {"conversationId": conversation_id, "messageId": event.message_id},
            )
            result.relay_status = outcome.status_code
            result.relay_attempts = outcome.attempts
        except PipelineError as exc:
            error = exc
            logger.error(
                "[%s] %s stage failed: %s", event.message_id, exc.stage, exc,
            )
        except Exception as exc:
            error = exc
            logger.exception("[%s] Unexpected error processing download", event.message_id)
        finally:
            # Stage 5: cleanup runs on every exit path
            run.advance(PipelineState.CLEANING_UP)
            try:
                await self._engines.release(execution, working_area, artifact)
            except Exception:
                logger.exception("[%s] Error during cleanup", event.message_id)

        if error is None:
            run.advance(PipelineState.SUCCEEDED)
        else:
            run.advance(PipelineState.FAILED)
            result.error = str(error)
            result.error_type = type(error).__name__
            if isinstance(error, DownloadFailedError):
                result.download_attempts = error.attempts
            elif isinstance(error, RelayFailedError):
                result.relay_attempts = error.attempts

        result.state = run.state
        result.transitions = list(run.transitions)
        return result
