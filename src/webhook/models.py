"""Data models for the report relay pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any


class PipelineState(str, Enum):
    """States of a single pipeline run."""

    RECEIVED = "received"
    RESOLVING = "resolving"
    DOWNLOADING = "downloading"
    RELAYING = "relaying"
    CLEANING_UP = "cleaning_up"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class InboundEvent:
    """Normalized inbound webhook event naming a Missive message."""

    message_id: str
    conversation_id: str | None = None
    webhook_url: str | None = None  # caller override; routing wins
    execution_mode: str | None = None


@dataclass(frozen=True)
class ResolvedMessage:
    """A Missive message as returned by the messages API."""

    message_id: str
    body: str
    conversation_id: str | None = None
    subject: str | None = None


@dataclass(frozen=True)
class RelayTarget:
    """Destination endpoint chosen by file name routing."""

    label: str
    endpoint: str


@dataclass
class DownloadedArtifact:
    """A file captured by the browser, stored inside the working area."""

    path: Path
    file_name: str
    attempts: int = 1


@dataclass
class RelayOutcome:
    """Result of a successful relay to the destination webhook."""

    status_code: int
    attempts: int
    target: RelayTarget


class AttemptCounter:
    """Request-scoped attempt counter capped at ``1 + max_retries``.

    A new counter is created for every leg of every run; counters are
    never shared between runs.
    """

    def __init__(self, max_retries: int) -> None:
        self.max_retries = max(0, max_retries)
        self.attempts = 0

    @property
    def total_allowed(self) -> int:
        return self.max_retries + 1

    @property
    def can_retry(self) -> bool:
        return self.attempts < self.total_allowed

    def record(self) -> int:
        """Record a new attempt and return its 1-based number."""
        if not self.can_retry:
            raise RuntimeError(
                f"Attempt budget exhausted ({self.attempts}/{self.total_allowed})"
            )
        self.attempts += 1
        return self.attempts


@dataclass
class PipelineResult:
    """Final report of one pipeline run. Only ever logged."""

    message_id: str
    state: PipelineState
    transitions: list[PipelineState] = field(default_factory=list)
    file_name: str | None = None
    target_label: str | None = None
    relay_status: int | None = None
    download_attempts: int = 0
    relay_attempts: int = 0
    error: str | None = None
    error_type: str | None = None

    @property
    def ok(self) -> bool:
        return self.state == PipelineState.SUCCEEDED

    def to_dict(self) -> dict[str, Any]:
        return {
            "messageId": self.message_id,
            "state": self.state.value,
            "transitions": [s.value for s in self.transitions],
            "fileName": self.file_name,
            "target": self.target_label,
            "webhookResponse": self.relay_status,
            "downloadAttempts": self.download_attempts,
            "relayAttempts": self.relay_attempts,
            "error": self.error,
            "errorType": self.error_type,
        }
