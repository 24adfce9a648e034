"""
Credential & session store: one live session per user.

The session table lives in process memory.  Every mutation goes through this
class and runs under a single lock without suspending, so a new login writes
its session and removes the older ones in one step.  Socket teardown for the
removed sessions is delegated to a :class:`SessionCloser` (the realtime
ConnectionRegistry in production), attached at startup.
"""

from __future__ import annotations

import secrets
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol

from vitachat.auth.errors import AUTH_FAILED_MESSAGE, INVALID_TOKEN_MESSAGE, AuthenticationError
from vitachat.auth.password import verify_password
from vitachat.auth.token import TokenClaims, TokenCodec
from vitachat.log import get_logger

logger = get_logger(__name__)

NEW_LOGIN_REASON = "Session invalidated by new login"
LOGOUT_REASON = "User logged out"
LOGOUT_ALL_REASON = "Logged out from all devices"


class SessionCloser(Protocol):
    """The part of the connection layer the session store is allowed to call."""

    def close_session(self, session_id: str, reason: str) -> None: ...

    def close_all_sessions_for_user(
        self,
        user_id: str,
        except_session_id: Optional[str] = None,
        reason: str = NEW_LOGIN_REASON,
    ) -> None: ...


class UserLookup(Protocol):
    def find_by_email(self, email: str) -> Optional[Dict[str, Any]]: ...


@dataclass
class Session:
    session_id: str
    user_id: str
    token: str
    created_at: float
    last_activity: float
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None

    def to_dict(self, include_token: bool = False) -> Dict[str, Any]:
        out = {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "created_at": self.created_at,
            "last_activity": self.last_activity,
            "user_agent": self.user_agent,
            "ip_address": self.ip_address,
        }
        if include_token:
            out["token"] = self.token
        return out


@dataclass
class CredentialCheck:
    user: Dict[str, Any]
    existing_sessions: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class AuthResult:
    user: Dict[str, Any]
    token: str
    session_id: str
    invalidated_sessions: List[str] = field(default_factory=list)


def new_session_id(user_id: str, now: float) -> str:
    return f"session_{user_id}_{int(now * 1000)}_{secrets.token_hex(5)}"


def _public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in user.items() if k != "password"}


class SessionStore:

    def __init__(
        self,
        users: Optional[UserLookup] = None,
        codec: Optional[TokenCodec] = None,
        closer: Optional[SessionCloser] = None,
        clock: Callable[[], float] = time.time,
    ):
        if users is None:
            from vitachat.stores.user_store import user_store
            users = user_store
        self._users = users
        self._codec = codec or TokenCodec.from_settings()
        self._closer = closer
        self._clock = clock
        self._sessions: Dict[str, Session] = {}
        self._lock = threading.RLock()

    def attach_closer(self, closer: Optional[SessionCloser]) -> None:
        self._closer = closer

    # ── credentials ──────────────────────────────────────────────────────────

    def _verified_user(self, email: str, password: str) -> Optional[Dict[str, Any]]:
        try:
            user = self._users.find_by_email(email)
        except Exception as e:
            logger.error("[auth] user lookup failed: %s", e)
            raise AuthenticationError(AUTH_FAILED_MESSAGE)
        if not user or not verify_password(password, user.get("password") or ""):
            return None
        return user

    def check_credentials(self, email: str, password: str) -> Optional[CredentialCheck]:
        """Verify credentials and report the user's live sessions without touching them."""
        user = self._verified_user(email, password)
        if user is None:
            return None
        return CredentialCheck(
            user=_public_user(user),
            existing_sessions=[s.to_dict() for s in self.get_user_sessions(user["id"])],
        )

    def authenticate_user(
        self,
        email: str,
        password: str,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Optional[AuthResult]:
        """Log in, replacing every other session of the same user. None on bad credentials."""
        user = self._verified_user(email, password)
        if user is None:
            return None

        user_id = user["id"]
        with self._lock:
            now = self._clock()
            session_id = new_session_id(user_id, now)
            token = self._codec.encode(user_id, user.get("email") or email, session_id)
            invalidated = self._remove_user_sessions(user_id, except_session_id=session_id)
            self._sessions[session_id] = Session(
                session_id=session_id,
                user_id=user_id,
                token=token,
                created_at=now,
                last_activity=now,
                user_agent=user_agent,
                ip_address=ip_address,
            )

        self._close_user_sockets(user_id, session_id, NEW_LOGIN_REASON)
        logger.info(
            "[auth] new session %s for user %s, invalidated %d previous session(s)",
            session_id, user_id, len(invalidated),
        )
        return AuthResult(
            user=_public_user(user),
            token=token,
            session_id=session_id,
            invalidated_sessions=invalidated,
        )

    # ── tokens ───────────────────────────────────────────────────────────────

    def verify_token(self, token: str) -> TokenClaims:
        """Decode *token* and require its session to still exist; refreshes last_activity."""
        claims = self._codec.decode(token)
        with self._lock:
            session = self._sessions.get(claims.session_id)
            if session is None or session.user_id != claims.user_id:
                raise AuthenticationError(INVALID_TOKEN_MESSAGE)
            session.last_activity = self._clock()
        return claims

    # ── session lifecycle ────────────────────────────────────────────────────

    def logout(self, session_id: str, skip_socket_close: bool = False) -> bool:
        """Remove one session. ``skip_socket_close`` is set when the socket itself triggered this."""
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        logger.info("[auth] user %s logged out from session %s", session.user_id, session_id)
        if not skip_socket_close and self._closer is not None:
            self._closer.close_session(session_id, LOGOUT_REASON)
        return True

    def invalidate_user_sessions(
        self,
        user_id: str,
        except_session_id: Optional[str] = None,
        reason: str = LOGOUT_ALL_REASON,
    ) -> List[str]:
        with self._lock:
            invalidated = self._remove_user_sessions(user_id, except_session_id)
        self._close_user_sockets(user_id, except_session_id, reason)
        logger.info("[auth] invalidated %d session(s) for user %s", len(invalidated), user_id)
        return invalidated

    def _remove_user_sessions(self, user_id: str, except_session_id: Optional[str]) -> List[str]:
        doomed = [
            sid for sid, s in self._sessions.items()
            if s.user_id == user_id and sid != except_session_id
        ]
        for sid in doomed:
            del self._sessions[sid]
        return doomed

    def _close_user_sockets(self, user_id: str, except_session_id: Optional[str], reason: str) -> None:
        if self._closer is None:
            return
        try:
            self._closer.close_all_sessions_for_user(user_id, except_session_id, reason)
        except Exception as e:
            logger.warning("[auth] socket close for user %s failed: %s", user_id, e)

    # ── introspection ────────────────────────────────────────────────────────

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(session_id)

    def is_session_valid(self, session_id: str) -> bool:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return False
            session.last_activity = self._clock()
            return True

    def get_user_sessions(self, user_id: str) -> List[Session]:
        with self._lock:
            return [s for s in self._sessions.values() if s.user_id == user_id]

    @property
    def active_sessions_count(self) -> int:
        with self._lock:
            return len(self._sessions)
