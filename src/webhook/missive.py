"""Missive message resolution and download URL extraction.

Fetches the message named by an inbound webhook from the Missive REST API
and pulls the report download link out of its HTML body.
"""

from __future__ import annotations

import html
import logging
import re
from typing import Any
from urllib.parse import quote

import httpx

from src.errors import NoDownloadURLError, NotConfiguredError, UpstreamUnavailableError
from src.webhook.models import ResolvedMessage

logger = logging.getLogger(__name__)

_DEFAULT_API_BASE = "https://public.missiveapp.com/v1"
_DEFAULT_TIMEOUT_SECONDS = 10.0

# Priority order matters: the first pattern with any match wins and later
# patterns are never consulted. Each pattern captures the URL in group 1.
# Trailing punctuation is stripped only from bare URLs; a quoted href is
# already delimited.
_URL_PATTERNS: tuple[tuple[str, re.Pattern[str], bool], ...] = (
    ("anchor_href", re.compile(r"""<a\b[^>]*?\bhref\s*=\s*["'](https?://[^"']+)["']""", re.IGNORECASE), False),
    ("download_at", re.compile(r"Download at:\s*(https?://[^\s\"'<>]+)", re.IGNORECASE), True),
    ("provider_path", re.compile(r"(https://manage\.fleetone\.com/[^\s\"'<>]*getJobFile[^\s\"'<>]*)", re.IGNORECASE), True),
    ("pdf_suffix", re.compile(r"(https?://[^\s\"'<>]+\.pdf[^\s\"'<>]*)", re.IGNORECASE), True),
)

_TRAILING_JUNK = re.compile(r"[\"'<>)\].,;]+$")


class MissiveClient:
    """Reads single messages from the Missive API."""

    def __init__(
        self,
        api_key: str | None,
        base_url: str = _DEFAULT_API_BASE,
        timeout: float = _DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    async def resolve(self, message_id: str) -> ResolvedMessage:
        """Fetch a message with its body and conversation.

        Raises:
            NotConfiguredError: no API key is configured; no request is made.
            UpstreamUnavailableError: transport error, timeout or non-2xx.
        """
        if not self._api_key:
            raise NotConfiguredError("MISSIVE_API_KEY is not configured")

        url = f"{self._base_url}/messages/{quote(message_id, safe='')}"
        params = {"includeBody": "true", "includeConversation": "true"}
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Accept": "application/json",
        }
        logger.info("Fetching message details from Missive API for message: %s", message_id)

        try:
            async with httpx.AsyncClient() as client:
                resp = await client.get(
                    url, params=params, headers=headers, timeout=self._timeout,
                )
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "Missive API returned %d for message %s: %s",
                exc.response.status_code, message_id, exc.response.text[:500],
            )
            raise UpstreamUnavailableError(
                f"Failed to fetch message from Missive: HTTP {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            logger.error("Failed to fetch from Missive API: %s", exc)
            raise UpstreamUnavailableError(
                f"Failed to fetch message from Missive: {exc}"
            ) from exc
        except ValueError as exc:
            raise UpstreamUnavailableError(
                f"Missive returned a non-JSON response: {exc}"
            ) from exc

        logger.info("Fetched message details from Missive for message: %s", message_id)
        return self._to_message(message_id, data)

    @staticmethod
    def _to_message(message_id: str, data: Any) -> ResolvedMessage:
        """Normalize the API payload.

        The single-message endpoint wraps the message under ``messages``;
        older payloads used ``message`` or returned it at the top level.
        """
        message: dict[str, Any] = {}
        if isinstance(data, dict):
            wrapped = data.get("messages") or data.get("message")
            if isinstance(wrapped, list):
                wrapped = wrapped[0] if wrapped else None
            message = wrapped if isinstance(wrapped, dict) else data

        conversation = message.get("conversation")
        if isinstance(conversation, dict):
            conversation_id = conversation.get("id")
        else:
            conversation_id = conversation

        return ResolvedMessage(
            message_id=str(message.get("id") or message_id),
            body=message.get("body") or "",
            conversation_id=str(conversation_id) if conversation_id else None,
            subject=message.get("subject"),
        )


def extract_download_url(message: ResolvedMessage) -> str:
    """Return the report download URL referenced by a message body.

    Raises:
        NoDownloadURLError: no pattern matched the body.
    """
    body = message.body or ""
    for name, pattern, strip_trailing in _URL_PATTERNS:
        match = pattern.search(body)
        if not match:
            continue
        url = html.unescape(match.group(1)).strip()
        if strip_trailing:
            url = _TRAILING_JUNK.sub("", url)
        if not url:
            break
        logger.info("Extracted download URL via %s: %s", name, url)
        return url

    raise NoDownloadURLError(
        f"No download URL found in body of message {message.message_id}"
    )
