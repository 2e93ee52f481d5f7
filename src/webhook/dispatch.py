"""Relay dispatcher: file name routing and multipart upload with retry.

Routing is an ordered list of rules evaluated first-match-wins, so new
report types are added as rules rather than branches.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable

import httpx

from src.errors import RelayFailedError, RoutingNotConfiguredError
from src.webhook.models import AttemptCounter, RelayOutcome, RelayTarget

logger = logging.getLogger(__name__)

_DEFAULT_MAX_RETRIES = 3
_DEFAULT_RETRY_DELAY_SECONDS = 2.0
_DEFAULT_TIMEOUT_SECONDS = 30.0
_CONTENT_TYPE = "application/pdf"

GRAND_TOTAL_LABEL = "grand_total"
REPORT_LABEL = "report"


@dataclass(frozen=True)
class RoutingRule:
    """Route file names matching ``predicate`` to ``endpoint``."""

    label: str
    endpoint: str | None
    predicate: Callable[[str], bool]


def build_routing_rules(
    marker: str,
    grand_total_url: str | None,
    report_url: str | None,
) -> list[RoutingRule]:
    """Default rules: marker in file name → grand total, else → report."""
    needle = marker.lower()
    return [
        RoutingRule(
            label=GRAND_TOTAL_LABEL,
            endpoint=grand_total_url,
            predicate=lambda name: needle in name.lower(),
        ),
        RoutingRule(label=REPORT_LABEL, endpoint=report_url, predicate=lambda name: True),
    ]


class RelayDispatcher:
    """Uploads a downloaded artifact to the routed destination webhook."""

    def __init__(
        self,
        rules: list[RoutingRule],
        max_retries: int = _DEFAULT_MAX_RETRIES,
        retry_delay: float = _DEFAULT_RETRY_DELAY_SECONDS,
        timeout: float = _DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self._rules = list(rules)
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._timeout = timeout

    @property
    def rules(self) -> list[RoutingRule]:
        return list(self._rules)

    def determine_target(self, file_name: str) -> RelayTarget:
        """Pick the relay target for a file name.

        Raises:
            RoutingNotConfiguredError: the matching rule has no endpoint,
                or no rule matches.
        """
        for rule in self._rules:
            if not rule.predicate(file_name):
                continue
            if not rule.endpoint:
                raise RoutingNotConfiguredError(
                    f"No webhook endpoint configured for '{rule.label}' reports"
                )
            logger.info("Routing %s to %s target", file_name, rule.label)
            return RelayTarget(label=rule.label, endpoint=rule.endpoint)
        raise RoutingNotConfiguredError(f"No routing rule matches {file_name!r}")

    async def relay_with_retry(
        self,
        data: bytes,
        file_name: str,
        target: RelayTarget,
        metadata: dict[str, Any],
    ) -> RelayOutcome:
        """POST the file and metadata as multipart form data.

        ``metadata`` carries ``messageId`` and optionally ``conversationId``;
        the routing label is sent as ``type``.

        Raises:
            RelayFailedError: all ``1 + max_retries`` attempts failed.
        """
        form = {"type": target.label}
        form.update({k: str(v) for k, v in metadata.items() if v is not None})

        counter = AttemptCounter(self._max_retries)
        last_error: BaseException | None = None

        # 307/308 redirects resend the same multipart body.
        async with httpx.AsyncClient(follow_redirects=True) as client:
            while counter.can_retry:
                attempt = counter.record()
                logger.info(
                    "Sending to webhook (attempt %d/%d)...", attempt, counter.total_allowed,
                )
                try:
                    resp = await client.post(
                        target.endpoint,
                        data=form,
                        files={"file": (file_name, data, _CONTENT_TYPE)},
                        timeout=self._timeout,
                    )
                    resp.raise_for_status()
                except httpx.HTTPError as exc:
                    last_error = exc
                    logger.warning("Webhook attempt %d failed: %s", attempt, exc)
                    if counter.can_retry:
                        await asyncio.sleep(self._retry_delay)
                    continue

                logger.info(
                    "File sent successfully to webhook (status: %d)", resp.status_code,
                )
                return RelayOutcome(
                    status_code=resp.status_code, attempts=attempt, target=target,
                )

        raise RelayFailedError(counter.attempts, last_error) from last_error
