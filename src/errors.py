"""Error taxonomy for the report relay pipeline.

Every pipeline stage raises a subclass of ``PipelineError``. The orchestrator
catches them at the run boundary; nothing escalates past a single run.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for errors that terminate one pipeline run."""

    stage = "pipeline"
    retryable = False


class NotConfiguredError(PipelineError):
    """A required credential or endpoint is missing from configuration."""

    stage = "config"


class UpstreamUnavailableError(PipelineError):
    """The Missive API could not be reached or answered with an error."""

    stage = "resolve"


class NoDownloadURLError(PipelineError):
    """No download reference could be extracted from the message body."""

    stage = "resolve"


class EngineUnavailableError(PipelineError):
    """The browser engine could not be launched or could not open a context."""

    stage = "download"


class DownloadFailedError(PipelineError):
    """Every download attempt failed."""

    stage = "download"

    def __init__(self, attempts: int, last_error: BaseException | None) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Download failed after {attempts} attempts: {last_error}"
        )


class RoutingNotConfiguredError(NotConfiguredError):
    """The routed relay target has no endpoint configured."""

    stage = "route"


class RelayFailedError(PipelineError):
    """Every relay attempt failed."""

    stage = "relay"

    def __init__(self, attempts: int, last_error: BaseException | None) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Failed to send to webhook after {attempts} attempts: {last_error}"
        )


class InvalidInboundEventError(ValueError):
    """The inbound webhook payload does not name a message to process."""

    def __init__(self, error: str, details: str) -> None:
        self.error = error
        self.details = details
        super().__init__(f"{error}: {details}")
