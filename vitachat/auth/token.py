"""JWT token codec.

Tokens are HS256-signed JWTs carrying ``userId``, ``email``, ``sessionId``,
``iat`` and ``exp``.  The codec only answers "is this structurally valid and
unexpired"; whether the embedded session is still alive is decided by
:class:`vitachat.auth.session_store.SessionStore`.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import jwt

from vitachat.auth.errors import INVALID_TOKEN_MESSAGE, AuthenticationError

ALGORITHM = "HS256"
_REQUIRED_CLAIMS = ("userId", "sessionId", "exp", "iat")


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    email: str
    session_id: str
    issued_at: int
    expires_at: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "email": self.email,
            "sessionId": self.session_id,
            "iat": self.issued_at,
            "exp": self.expires_at,
        }


class TokenCodec:
    """Issue and verify signed, time-limited session tokens."""

    def __init__(
        self,
        secret_key: str,
        expire_hours: float = 24.0,
        clock: Callable[[], float] = time.time,
    ):
        if not secret_key:
            raise ValueError("secret_key cannot be empty")
        self._secret = secret_key
        self.expire_hours = expire_hours
        self._clock = clock

    @classmethod
    def from_settings(cls) -> "TokenCodec":
        from config.settings import settings
        return cls(settings.auth.secret_key, settings.auth.token_expire_hours)

    def encode(
        self,
        user_id: str,
        email: str,
        session_id: str,
        expire_hours: Optional[float] = None,
    ) -> str:
        hours = self.expire_hours if expire_hours is None else expire_hours
        now = int(self._clock())
        payload = {
            "userId": user_id,
            "email": email,
            "sessionId": session_id,
            "iat": now,
            "exp": now + int(hours * 3600),
        }
        return jwt.encode(payload, self._secret, algorithm=ALGORITHM)

    def decode(self, token: str) -> TokenClaims:
        """Verify signature and expiry. Every failure raises the same generic error."""
        if not token:
            raise AuthenticationError(INVALID_TOKEN_MESSAGE)
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[ALGORITHM],
                options={"require": list(_REQUIRED_CLAIMS)},
            )
        except jwt.InvalidTokenError:
            raise AuthenticationError(INVALID_TOKEN_MESSAGE)

        user_id = payload.get("userId")
        session_id = payload.get("sessionId")
        if not isinstance(user_id, str) or not isinstance(session_id, str) or not user_id or not session_id:
            raise AuthenticationError(INVALID_TOKEN_MESSAGE)

        return TokenClaims(
            user_id=user_id,
            email=str(payload.get("email") or ""),
            session_id=session_id,
            issued_at=int(payload["iat"]),
            expires_at=int(payload["exp"]),
        )
