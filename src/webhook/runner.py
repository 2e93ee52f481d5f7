"""Fire-and-forget execution of pipeline runs.

The listener acknowledges the inbound webhook before the pipeline starts.
Runs are scheduled as asyncio tasks; their outcome is reported only through
the log. Task references are held until completion so they are not garbage
collected mid-run.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from src.webhook.models import InboundEvent, PipelineResult

if TYPE_CHECKING:
    from src.webhook.relay import ReportRelayPipeline

logger = logging.getLogger(__name__)


class PipelineRunner:
    """Schedules pipeline runs and logs their results."""

    def __init__(self, pipeline: ReportRelayPipeline) -> None:
        self._pipeline = pipeline
        self._tasks: set[asyncio.Task[PipelineResult]] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(self, event: InboundEvent) -> asyncio.Task[PipelineResult]:
        """Start a run for ``event`` and return immediately."""
        task = asyncio.get_running_loop().create_task(
            self._pipeline.run(event), name=f"relay-{event.message_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        logger.info("Scheduled pipeline run for message: %s", event.message_id)
        return task

    def _on_done(self, task: asyncio.Task[PipelineResult]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("Pipeline run %s was cancelled", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Pipeline run %s crashed: %s", task.get_name(), exc, exc_info=exc,
            )
            return
        result = task.result()
        if result.ok:
            logger.info("Success: %s", result.to_dict())
        else:
            logger.error("Pipeline run failed: %s", result.to_dict())
