from app.services.session_sync.broadcaster import ChangeBroadcaster
from app.services.session_sync.errors import (
    FALLBACK_USED,
    AccountConflictError,
    NoUpstreamSession,
    PersistenceError,
    ResolutionError,
    SyncError,
    TransportError,
    UpstreamRejected,
    UpstreamTimeout,
)
from app.services.session_sync.fallback import FallbackSessionPath, FallbackSessionRegistry
from app.services.session_sync.issuer import CookieDirective, IssuedSession, SessionIssuer
from app.services.session_sync.linker import AccountLinker
from app.services.session_sync.orchestrator import (
    SyncOrchestrator,
    SyncOutcome,
    SyncRetryPolicy,
    SyncState,
)
from app.services.session_sync.resolver import Resolution, UserResolver
from app.services.session_sync.store import AuthStore, LocalUser, SessionRecord, UserProfile
from app.services.session_sync.transport import SecretKeyedTransport
from app.services.session_sync.validator import (
    InboundSyncRequest,
    SyncMode,
    UpstreamSessionValidator,
)

__all__ = [
    "FALLBACK_USED",
    "AccountConflictError",
    "AccountLinker",
    "AuthStore",
    "ChangeBroadcaster",
    "CookieDirective",
    "FallbackSessionPath",
    "FallbackSessionRegistry",
    "InboundSyncRequest",
    "IssuedSession",
    "LocalUser",
    "NoUpstreamSession",
    "PersistenceError",
    "Resolution",
    "ResolutionError",
    "SecretKeyedTransport",
    "SessionIssuer",
    "SessionRecord",
    "SyncError",
    "SyncMode",
    "SyncOrchestrator",
    "SyncOutcome",
    "SyncRetryPolicy",
    "SyncState",
    "TransportError",
    "UpstreamRejected",
    "UpstreamSessionValidator",
    "UpstreamTimeout",
    "UserProfile",
    "UserResolver",
]
