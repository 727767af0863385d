"""
Error taxonomy for the pipeline.

- transient infrastructure: the whole run is retried once after a delay
- item level: a single record or chunk is logged and skipped
- session/auth: bounded re-authentication, then a queue-entry failure
- anything else: logged, the run ends
"""

from __future__ import annotations

from typing import Optional


class PipelineError(Exception):
    """Base class for errors raised by pipeline services."""


class TransientInfrastructureError(PipelineError):
    """Storage or network contention worth one delayed retry of the whole run."""


class ItemIngestError(PipelineError):
    """Storing one collected record failed; the batch goes on without it."""

    def __init__(self, fingerprint: Optional[str], message: str) -> None:
        super().__init__(message)
        self.fingerprint = fingerprint


class MalformedOutputError(PipelineError):
    """A collaborator returned output that does not match its schema."""

    def __init__(self, message: str, *, raw: Optional[str] = None) -> None:
        super().__init__(message)
        self.raw = raw


class SessionExpiredError(PipelineError):
    """The publish target no longer accepts the stored session."""


class AuthenticationError(PipelineError):
    """Logging in to the publish target failed."""


class PublishFailedError(PipelineError):
    """The publish action ran but could not confirm the post."""


class QueueTransitionError(PipelineError):
    def __init__(self, entry_id: int, status: str) -> None:
        super().__init__(f"post_queue entry {entry_id} is {status}; terminal states are final")
        self.entry_id = entry_id
        self.status = status
