"""Caller sessions, authentication rate limiting and the audit trail.

A SessionStore is owned by the server runtime. Tokens are verified through a
caller-supplied coroutine (normally the repository's verify_token), so the
store itself never talks to the backend.
"""
import logging
from collections import deque
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional
from uuid import uuid4

from pydantic import BaseModel

from .config import Settings
from .errors import AuthenticationError
from .schemas import UserSession, ensure_aware, utcnow

logger = logging.getLogger("add-core.sessions")
audit_logger = logging.getLogger("add-core.audit")

# Audit entries kept in memory
AUDIT_LOG_LIMIT = 1000

TokenVerifier = Callable[[str], Awaitable[Optional[str]]]


class AuditEntry(BaseModel):
    """One authentication event."""

    timestamp: datetime
    operation: str
    success: bool
    user_record_name: Optional[str] = None
    message: Optional[str] = None


class SessionStore:
    """In-process session registry with a sliding-window rate limit on sign-ins."""

    def __init__(
        self,
        timeout: timedelta = timedelta(hours=24),
        rate_limit_window: timedelta = timedelta(minutes=15),
        rate_limit_max: int = 100,
        audit_logging: bool = True,
        sign_in_url: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.timeout = timeout
        self.rate_limit_window = rate_limit_window
        self.rate_limit_max = rate_limit_max
        self.audit_logging = audit_logging
        self.sign_in_url = sign_in_url
        self._clock = clock or utcnow
        self._sessions: dict[str, UserSession] = {}
        self._attempts: deque[datetime] = deque()
        self._audit: deque[AuditEntry] = deque(maxlen=AUDIT_LOG_LIMIT)

    @classmethod
    def from_settings(cls, settings: Settings, clock: Optional[Callable[[], datetime]] = None) -> "SessionStore":
        return cls(
            timeout=timedelta(milliseconds=settings.session_timeout_ms),
            rate_limit_window=timedelta(milliseconds=settings.rate_limit_window_ms),
            rate_limit_max=settings.rate_limit_max_requests,
            audit_logging=settings.audit_logging,
            sign_in_url=(
                "https://www.icloud.com/signin/?service=cloudkit"
                f"&referrer={settings.cloudkit_redirect_uri}&language=en-us"
            ),
            clock=clock,
        )

    def now(self) -> datetime:
        return ensure_aware(self._clock())

    # ========================================================================
    # Audit trail
    # ========================================================================

    def _audit_event(
        self,
        operation: str,
        success: bool,
        user_record_name: Optional[str] = None,
        message: Optional[str] = None,
    ) -> None:
        entry = AuditEntry(
            timestamp=self.now(),
            operation=operation,
            success=success,
            user_record_name=user_record_name,
            message=message,
        )
        self._audit.append(entry)
        if self.audit_logging:
            outcome = "ok" if success else "denied"
            audit_logger.info(f"{operation} {outcome} user={user_record_name or '-'}{f': {message}' if message else ''}")

    def audit_log(self, limit: int = 100) -> list[AuditEntry]:
        """Most recent audit entries, oldest first."""
        entries = list(self._audit)
        return entries[-limit:] if limit else []

    # ========================================================================
    # Rate limiting
    # ========================================================================

    def _check_rate_limit(self) -> bool:
        now = self.now()
        while self._attempts and now - self._attempts[0] >= self.rate_limit_window:
            self._attempts.popleft()
        if len(self._attempts) >= self.rate_limit_max:
            return False
        self._attempts.append(now)
        return True

    # ========================================================================
    # Sessions
    # ========================================================================

    async def authenticate(self, web_auth_token: Optional[str], verifier: TokenVerifier) -> UserSession:
        """
        Verify a web auth token and open a session.

        Args:
            web_auth_token: Token obtained from the iCloud sign-in flow
            verifier: Coroutine exchanging the token for a user record name

        Returns:
            The new session

        Raises:
            AuthenticationError: If rate limited, no token was given, or the token is rejected
        """
        if not self._check_rate_limit():
            self._audit_event("authenticate", False, message="rate limit exceeded")
            logger.warning("Authentication rate limit exceeded")
            raise AuthenticationError("Rate limit exceeded. Please try again later.")

        if not web_auth_token:
            self._audit_event("authenticate", False, message="no token")
            message = "User authentication required."
            if self.sign_in_url:
                message += f" Sign in with your Apple ID at {self.sign_in_url}, then"
            else:
                message += " Obtain a web auth token from iCloud sign-in, then"
            raise AuthenticationError(f"{message} pass the web auth token to authenticate_user.")

        user_record_name = await verifier(web_auth_token)
        if not user_record_name:
            self._audit_event("authenticate", False, message="invalid token")
            logger.warning("Rejected invalid or expired web auth token")
            raise AuthenticationError("Invalid or expired authentication token. Please authenticate again.")

        now = self.now()
        session = UserSession(
            session_id=f"session_{uuid4().hex}",
            user_record_name=user_record_name,
            web_auth_token=web_auth_token,
            created_at=now,
            expires_at=now + self.timeout,
        )
        self._sessions[session.session_id] = session
        self._audit_event("authenticate", True, user_record_name)
        logger.info(f"User authenticated: {user_record_name} (session: {session.session_id})")
        return session

    def validate(self, session_id: Optional[str]) -> Optional[UserSession]:
        """Return the live session, or None. Expired sessions are dropped."""
        if not session_id:
            return None
        session = self._sessions.get(session_id)
        if session is None:
            self._audit_event("validate_session", False, message="unknown session")
            return None
        if session.is_expired(self.now()):
            del self._sessions[session_id]
            self._audit_event("validate_session", False, session.user_record_name, "session expired")
            logger.info(f"Session expired: {session_id}")
            return None
        return session

    def refresh(self, session_id: str) -> UserSession:
        """
        Extend a live session by the full timeout.

        Raises:
            AuthenticationError: If the session does not exist or has expired
        """
        session = self.validate(session_id)
        if session is None:
            raise AuthenticationError("Session not found or expired. Please authenticate again.")
        refreshed = session.model_copy(update={"expires_at": self.now() + self.timeout})
        self._sessions[session_id] = refreshed
        self._audit_event("refresh_session", True, refreshed.user_record_name)
        return refreshed

    def revoke(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        self._audit_event("revoke_session", True, session.user_record_name)
        logger.info(f"Session revoked: {session_id} (user: {session.user_record_name})")
        return True

    def active_sessions(self) -> list[UserSession]:
        now = self.now()
        return [session for session in self._sessions.values() if not session.is_expired(now)]

    def session_by_user(self, user_record_name: str) -> Optional[UserSession]:
        for session in self.active_sessions():
            if session.user_record_name == user_record_name:
                return session
        return None

    def purge_expired(self) -> int:
        """Drop every expired session; returns how many were removed."""
        now = self.now()
        expired = [sid for sid, session in self._sessions.items() if session.is_expired(now)]
        for session_id in expired:
            del self._sessions[session_id]
        if expired:
            logger.info(f"Cleaned up {len(expired)} expired sessions")
        return len(expired)
