"""Browser-driven file download with bounded, fixed-backoff retry.

The report host starts the download from JavaScript, so a plain GET does not
work. Each attempt arms a download listener, navigates, and waits for the
download event. Failed attempts reload the page and try again on the same
context; retries are strictly sequential.
"""

from __future__ import annotations

import asyncio
import logging
import re

from playwright.async_api import Error as PlaywrightError

from src.browser.engine import ExecutionContext
from src.errors import DownloadFailedError
from src.webhook.models import AttemptCounter, DownloadedArtifact

logger = logging.getLogger(__name__)

_DEFAULT_MAX_RETRIES = 3
_DEFAULT_RETRY_DELAY_SECONDS = 2.0
_FALLBACK_FILE_NAME = "download.pdf"


def safe_file_name(suggested: str | None) -> str:
    """Make a browser-suggested file name safe to use as a local path."""
    name = re.sub(r"[^\w.\- ]", "_", suggested or "")
    name = re.sub(r"\s+", "_", name).strip("._-")
    return name or _FALLBACK_FILE_NAME


class BrowserDownloader:
    """Captures one download per call through an ``ExecutionContext``."""

    def __init__(
        self,
        max_retries: int = _DEFAULT_MAX_RETRIES,
        retry_delay: float = _DEFAULT_RETRY_DELAY_SECONDS,
        navigation_timeout: float = 30.0,
        download_timeout: float = 30.0,
        reload_timeout: float = 5.0,
    ) -> None:
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._navigation_timeout_ms = navigation_timeout * 1000
        self._download_timeout_ms = download_timeout * 1000
        self._reload_timeout_ms = reload_timeout * 1000

    async def download_with_retry(
        self, execution: ExecutionContext, url: str,
    ) -> DownloadedArtifact:
        """Download ``url`` into the context's working area.

        Raises:
            DownloadFailedError: all ``1 + max_retries`` attempts failed.
        """
        counter = AttemptCounter(self._max_retries)
        last_error: BaseException | None = None

        while counter.can_retry:
            attempt = counter.record()
            logger.info(
                "Download attempt %d/%d for URL: %s",
                attempt, counter.total_allowed, url,
            )
            try:
                artifact = await self._attempt(execution, url)
            except (PlaywrightError, OSError) as exc:
                last_error = exc
                if not counter.can_retry:
                    break
                logger.warning(
                    "Download attempt %d failed, retrying in %.1f seconds: %s",
                    attempt, self._retry_delay, exc,
                )
                await asyncio.sleep(self._retry_delay)
                await self._reload(execution)
                continue

            artifact.attempts = attempt
            logger.info("Downloaded file: %s", artifact.file_name)
            return artifact

        raise DownloadFailedError(counter.attempts, last_error) from last_error

    async def _attempt(self, execution: ExecutionContext, url: str) -> DownloadedArtifact:
        page = execution.page
        # The listener must be armed before navigation or the event is lost.
        async with page.expect_download(timeout=self._download_timeout_ms) as download_info:
            try:
                await page.goto(
                    url, wait_until="commit", timeout=self._navigation_timeout_ms,
                )
            except PlaywrightError as exc:
                # Direct downloads abort navigation; no page is expected.
                logger.info("Navigation did not complete (direct download expected): %s", exc)
        download = await download_info.value

        file_name = download.suggested_filename or _FALLBACK_FILE_NAME
        target = execution.working_area / safe_file_name(file_name)
        await download.save_as(target)
        return DownloadedArtifact(path=target, file_name=file_name)

    async def _reload(self, execution: ExecutionContext) -> None:
        try:
            await execution.page.reload(timeout=self._reload_timeout_ms)
        except PlaywrightError:
            logger.info("Page reload failed, continuing with retry")
