from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any
from urllib.parse import urlencode

import httpx

from jobhunter.core.config import get_settings
from jobhunter.core.errors import AuthExchangeError, CredentialError, ProviderError
from jobhunter.core.http import client_session, response_detail

logger = logging.getLogger(__name__)

GMAIL_SEND_SCOPE = "https://www.googleapis.com/auth/gmail.send"
DEFAULT_TOKEN_LIFETIME_SECONDS = 3600


class RefreshRejectedError(CredentialError):
    """Raised when the token endpoint refuses a refresh token (revoked or expired upstream)."""


@dataclass(frozen=True, slots=True)
class TokenGrant:
    access_token: str
    refresh_token: str | None
    expires_at: datetime


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class GoogleOAuthClient:
    def __init__(
        self,
        *,
        client_id: str | None,
        client_secret: str | None,
        redirect_uri: str,
        auth_url: str = "https://accounts.google.com/o/oauth2/v2/auth",
        token_url: str = "https://oauth2.googleapis.com/token",
        timeout_seconds: float = 15.0,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.auth_url = auth_url
        self.token_url = token_url
        self.timeout_seconds = timeout_seconds
        self._client = client
        self._clock = clock

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def authorization_url(self, *, state: str, force_consent: bool) -> str:
        if not self.configured:
            raise CredentialError("delegated sending is not configured")
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": GMAIL_SEND_SCOPE,
            "access_type": "offline",
            "include_granted_scopes": "true",
            "state": state,
        }
        if force_consent:
            params["prompt"] = "consent"
        return f"{self.auth_url}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> TokenGrant:
        if not self.configured:
            raise AuthExchangeError("delegated sending is not configured")
        try:
            response = await self._post_token(
                {
                    "grant_type": "authorization_code",
                    "code": code,
                    "redirect_uri": self.redirect_uri,
                }
            )
        except httpx.HTTPError as exc:
            raise AuthExchangeError(f"token endpoint unreachable: {exc}") from exc

        if response.status_code != 200:
            raise AuthExchangeError(f"authorization code rejected: {response_detail(response)}")
        return self._grant_from_response(response, error_type=AuthExchangeError)

    async def refresh(self, refresh_token: str) -> TokenGrant:
        if not self.configured:
            raise CredentialError("delegated sending is not configured")
        try:
            response = await self._post_token(
                {
                    "grant_type": "refresh_token",
                    "refresh_token": refresh_token,
                }
            )
        except httpx.HTTPError as exc:
            raise ProviderError(f"token endpoint unreachable: {exc}") from exc

        if response.status_code in {400, 401}:
            raise RefreshRejectedError(f"refresh token rejected: {response_detail(response)}")
        if response.status_code != 200:
            raise ProviderError(f"token refresh failed {response.status_code}: {response_detail(response)}")
        return self._grant_from_response(response, error_type=ProviderError)

    async def _post_token(self, form: dict[str, str]) -> httpx.Response:
        data = {
            **form,
            "client_id": self.client_id or "",
            "client_secret": self.client_secret or "",
        }
        async with client_session(self._client, timeout=self.timeout_seconds) as client:
            return await client.post(self.token_url, data=data)

    def _grant_from_response(self, response: httpx.Response, *, error_type: type[Exception]) -> TokenGrant:
        try:
            payload: Any = response.json()
        except ValueError as exc:
            raise error_type("token endpoint returned a non-JSON body") from exc
        if not isinstance(payload, dict):
            raise error_type("token endpoint returned an unexpected payload")

        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise error_type("token endpoint response has no access token")

        refresh_token = payload.get("refresh_token")
        expires_in = payload.get("expires_in")
        if not isinstance(expires_in, (int, float)) or isinstance(expires_in, bool) or expires_in <= 0:
            expires_in = DEFAULT_TOKEN_LIFETIME_SECONDS

        return TokenGrant(
            access_token=access_token,
            refresh_token=refresh_token if isinstance(refresh_token, str) and refresh_token else None,
            expires_at=self._clock() + timedelta(seconds=expires_in),
        )


@lru_cache
def get_oauth_client() -> GoogleOAuthClient:
    settings = get_settings()
    if not settings.google_client_id:
        logger.warning("JH_GOOGLE_CLIENT_ID not set; delegated sending is disabled")
    return GoogleOAuthClient(
        client_id=settings.google_client_id,
        client_secret=settings.google_client_secret,
        redirect_uri=settings.google_redirect_uri,
        auth_url=settings.google_auth_url,
        token_url=settings.google_token_url,
        timeout_seconds=settings.mail_timeout_seconds,
    )
