# coding=utf-8
from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence

from jose import ExpiredSignatureError, JWTError, jwt

logger = logging.getLogger(__name__)

KIND_USER = "user"
KIND_GUEST = "guest"
KIND_TEST = "test"


class AuthError(PermissionError):
    pass


@dataclass(frozen=True)
class Identity:
    user_id: str
    tier: str
    kind: str = KIND_USER

    @property
    def bypasses_accounting(self) -> bool:
        """Guests and test users skip usage limits and history persistence."""
        return self.kind in {KIND_GUEST, KIND_TEST}


def extract_bearer_token(header: Optional[str]) -> Optional[str]:
    raw = str(header or "").strip()
    if not raw:
        return None
    parts = raw.split(None, 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    token = parts[1].strip()
    return token or None


class TokenVerifier:
    """Verify access tokens signed with a shared secret."""

    def __init__(self, secret: str, algorithms: Sequence[str] = ("HS256",)) -> None:
        self.secret = str(secret or "")
        self.algorithms = list(algorithms)

    def verify(self, token: str) -> Dict[str, Any]:
        if not self.secret:
            raise AuthError("token verification is not configured")
        try:
            claims = jwt.decode(token, self.secret, algorithms=self.algorithms)
        except ExpiredSignatureError as e:
            raise AuthError("token expired") from e
        except JWTError as e:
            raise AuthError("invalid token") from e
        token_type = claims.get("type")
        if token_type is not None and token_type != "access":
            raise AuthError("invalid token type")
        user_id = claims.get("userId") or claims.get("sub")
        if not user_id:
            raise AuthError("invalid token payload")
        return claims

    def issue(self, user_id: str, subscription: str = "free", ttl_sec: int = 900) -> str:
        now = int(time.time())
        claims = {
            "userId": str(user_id),
            "subscription": str(subscription),
            "type": "access",
            "iat": now,
            "exp": now + int(ttl_sec),
        }
        return jwt.encode(claims, self.secret, algorithm=self.algorithms[0])


def resolve_identity(
    *,
    header: Optional[str],
    query_token: Optional[str],
    test_mode: bool,
    allow_test_mode: bool,
    verifier: Optional[TokenVerifier],
) -> Identity:
    """
    Resolve who is connecting.

    A bearer token (header first, then ``?token=``) must verify; no token at all
    yields a free-tier guest, or a premium test identity when test mode is both
    requested and allowed.
    """
    token = extract_bearer_token(header) or (str(query_token).strip() if query_token else None)

    if not token and test_mode and allow_test_mode:
        identity = Identity(user_id=f"test-user-{int(time.time() * 1000)}", tier="premium", kind=KIND_TEST)
        logger.info("websocket test mode connection identity=%s", identity.user_id)
        return identity

    if not token:
        identity = Identity(
            user_id=f"guest-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}",
            tier="free",
            kind=KIND_GUEST,
        )
        logger.info("websocket guest connection identity=%s", identity.user_id)
        return identity

    if verifier is None:
        raise AuthError("token verification is not configured")
    claims = verifier.verify(token)
    return Identity(
        user_id=str(claims.get("userId") or claims.get("sub")),
        tier=str(claims.get("subscription") or "free"),
        kind=KIND_USER,
    )
