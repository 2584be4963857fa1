"""Session failures and the per-session result seen by the listener."""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional


class SpatchError(Exception):
    """Base exception for session failures."""
    reason = 'error'
    ok = False


class KeyExchangeFailed(SpatchError):
    """SSH key exchange with the client failed (no channel exists yet)."""
    reason = 'key_exchange_failed'


class AuthExhausted(SpatchError):
    """Password retry budget reached zero."""
    reason = 'auth_exhausted'


class ChannelSetupFailed(SpatchError):
    """Client never opened a session channel or requested a shell."""
    reason = 'channel_setup_failed'


class NoAuthorizedBackend(SpatchError):
    """Authenticated user holds no grant at all."""
    reason = 'no_authorized_backend'
    ok = True


class BackendConnectFailed(SpatchError):
    """Connecting, authenticating or opening a shell on the backend failed."""
    reason = 'backend_connect_failed'


class TrustViolation(BackendConnectFailed):
    """Backend host key changed, has another type, or cannot be verified."""
    reason = 'trust_violation'


class TrustDeclined(BackendConnectFailed):
    """User did not accept an unknown backend host key."""
    reason = 'trust_declined'
    ok = True


class TrustStoreError(BackendConnectFailed):
    """Accepted host key could not be written to the trust store."""
    reason = 'trust_store_error'


class IOFailure(SpatchError):
    """Read or write failure while relaying."""
    reason = 'io_failure'


@dataclass
class SessionResult:
    """Outcome of one client connection, used by the listener for logging."""

    ok: bool
    reason: str
    session_id: str
    username: Optional[str] = None
    backend: Optional[str] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    detail: Optional[str] = None

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.ended_at is None:
            return None
        return (self.ended_at - self.started_at).total_seconds()
