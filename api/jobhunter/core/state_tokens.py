"""Signed OAuth ``state`` tokens.

A state token binds an authorization callback to the owner who started the
flow and to the location they should return to. The token is an HS256 JWT
with an ``exp`` claim; its ``jti`` nonce is registered in a TTL cache when
issued and popped on verification, so every token is single-use and
short-lived.
"""

from __future__ import annotations

import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass

import jwt
from cachetools import TTLCache

from jobhunter.core.errors import AuthExchangeError

STATE_ALGORITHM = "HS256"
MAX_PENDING_STATES = 10_000


@dataclass(slots=True, frozen=True)
class StatePayload:
    owner_id: str
    return_url: str
    nonce: str
    issued_at: int


class StateTokenSigner:
    def __init__(
        self,
        secret: str,
        ttl_seconds: int,
        *,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        if not secret:
            raise ValueError("state signing secret must be set")
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._secret = secret
        self.ttl_seconds = ttl_seconds
        self._pending: TTLCache = TTLCache(maxsize=MAX_PENDING_STATES, ttl=ttl_seconds, timer=timer)

    def issue(self, owner_id: str, return_url: str) -> str:
        nonce = secrets.token_urlsafe(16)
        now = int(time.time())
        claims = {
            "sub": owner_id,
            "return_url": return_url,
            "jti": nonce,
            "iat": now,
            "exp": now + self.ttl_seconds,
        }
        self._pending[nonce] = owner_id
        return jwt.encode(claims, self._secret, algorithm=STATE_ALGORITHM)

    def peek(self, token: str) -> StatePayload:
        """Verify the signature without checking expiry or consuming the nonce."""
        return self._decode(token, verify_exp=False)

    def consume(self, token: str) -> StatePayload:
        payload = self._decode(token, verify_exp=True)
        owner_id = self._pending.pop(payload.nonce, None)
        if owner_id is None:
            raise AuthExchangeError("state token expired or already used")
        if owner_id != payload.owner_id:
            raise AuthExchangeError("state token owner mismatch")
        return payload

    def _decode(self, token: str, *, verify_exp: bool) -> StatePayload:
        try:
            claims = jwt.decode(
                token or "",
                self._secret,
                algorithms=[STATE_ALGORITHM],
                options={"require": ["sub", "jti", "exp"], "verify_exp": verify_exp},
            )
        except jwt.ExpiredSignatureError as exc:
            raise AuthExchangeError("state token expired or already used") from exc
        except jwt.InvalidSignatureError as exc:
            raise AuthExchangeError("state token signature mismatch") from exc
        except jwt.InvalidTokenError as exc:
            raise AuthExchangeError("malformed state token") from exc

        owner_id = claims.get("sub")
        nonce = claims.get("jti")
        if not isinstance(owner_id, str) or not owner_id or not isinstance(nonce, str) or not nonce:
            raise AuthExchangeError("malformed state token")

        return_url = claims.get("return_url")
        issued_at = claims.get("iat")
        return StatePayload(
            owner_id=owner_id,
            return_url=return_url if isinstance(return_url, str) and return_url else "/",
            nonce=nonce,
            issued_at=issued_at if isinstance(issued_at, int) else 0,
        )
