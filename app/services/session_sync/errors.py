"""Failure taxonomy of the session synchronization engine.

Every failure carries a stable ``code`` that is safe to hand to a browser and
a ``reason`` that stays in server-side logs.
"""

from __future__ import annotations

from typing import Optional


class SyncError(Exception):
    code = "sync_failed"
    retryable = False

    def __init__(self, reason: str, *, detail: Optional[str] = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.detail = detail

    def __str__(self) -> str:
        if self.detail:
            return f"{self.code}: {self.reason} ({self.detail})"
        return f"{self.code}: {self.reason}"


class NoUpstreamSession(SyncError):
    """The browser is not signed in upstream. Expected, not an error."""

    code = "no_upstream_session"


class TransportError(SyncError):
    """Network failure, upstream 5xx or a response we cannot interpret."""

    code = "transport_error"
    retryable = True


class UpstreamTimeout(TransportError):
    # A cancelled call is final for the attempt
    retryable = False


class TransportNotConfigured(TransportError):
    retryable = False


class MalformedSyncPayload(TransportError):
    """A server-to-server body that is not a sessions envelope."""

    retryable = False


class UpstreamRejected(SyncError):
    code = "upstream_rejected"


class ResolutionError(SyncError):
    code = "resolution_error"


class PersistenceError(SyncError):
    code = "persistence_error"


class AccountConflictError(PersistenceError):
    """A unique constraint on users or account_links rejected a write."""


FALLBACK_USED = "fallback_used"
UNAUTHORIZED = "unauthorized"
