from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache

from jobhunter.core.config import get_settings
from jobhunter.core.errors import AuthExchangeError, CredentialError
from jobhunter.core.state_tokens import StateTokenSigner
from jobhunter.core.urls import is_safe_return_url
from jobhunter.services.google_oauth import GoogleOAuthClient, RefreshRejectedError, get_oauth_client
from jobhunter.services.repository import CredentialRecord, Repository, get_repository

logger = logging.getLogger(__name__)

NOT_CONNECTED = "credential not connected"
REFRESH_SKEW = timedelta(seconds=60)


@dataclass(frozen=True, slots=True)
class AuthorizationStart:
    url: str
    force_consent: bool


@dataclass(frozen=True, slots=True)
class CredentialStatus:
    is_connected: bool
    needs_refresh: bool
    expires_at: datetime | None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CredentialService:
    """Delegated-send credential lifecycle: authorize, callback, status, refresh, unlink."""

    def __init__(
        self,
        *,
        repository: Repository,
        oauth: GoogleOAuthClient,
        signer: StateTokenSigner,
        allowed_origins: set[str],
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.repository = repository
        self.oauth = oauth
        self.signer = signer
        self.allowed_origins = allowed_origins
        self._clock = clock

    def safe_return_url(self, return_url: str | None) -> str:
        if return_url and is_safe_return_url(return_url, self.allowed_origins):
            return return_url
        return "/"

    async def authorize(self, owner_id: str, return_url: str | None = None) -> AuthorizationStart:
        existing = await self.repository.get_credential(owner_id)
        # consent is the only way to obtain a refresh token again
        force_consent = existing is None or not existing.refresh_token
        state = self.signer.issue(owner_id, self.safe_return_url(return_url))
        url = self.oauth.authorization_url(state=state, force_consent=force_consent)
        logger.info("credential authorization started owner_id=%s force_consent=%s", owner_id, force_consent)
        return AuthorizationStart(url=url, force_consent=force_consent)

    def recover_return_url(self, state: str | None) -> str:
        """Best-effort return location for a failed callback."""
        if not state:
            return "/"
        try:
            payload = self.signer.peek(state)
        except AuthExchangeError:
            return "/"
        return self.safe_return_url(payload.return_url)

    async def callback(self, *, code: str | None, state: str | None) -> tuple[CredentialRecord, str]:
        if not state:
            raise AuthExchangeError("missing state")
        payload = self.signer.consume(state)
        if not code:
            raise AuthExchangeError("missing authorization code")

        grant = await self.oauth.exchange_code(code)
        record = await self.repository.upsert_credential(
            owner_id=payload.owner_id,
            access_token=grant.access_token,
            refresh_token=grant.refresh_token,
            expires_at=grant.expires_at,
        )
        logger.info(
            "credential connected owner_id=%s refresh_token_supplied=%s",
            payload.owner_id,
            grant.refresh_token is not None,
        )
        return record, self.safe_return_url(payload.return_url)

    async def status(self, owner_id: str) -> CredentialStatus:
        record = await self.repository.get_credential(owner_id)
        if record is None:
            return CredentialStatus(is_connected=False, needs_refresh=False, expires_at=None)
        now = self._clock()
        return CredentialStatus(
            is_connected=record.is_active and record.expires_at > now,
            needs_refresh=record.is_active and record.expires_at <= now,
            expires_at=record.expires_at,
        )

    async def unlink(self, owner_id: str) -> bool:
        changed = await self.repository.deactivate_credential(owner_id)
        logger.info("credential unlinked owner_id=%s changed=%s", owner_id, changed)
        return changed

    async def ensure_fresh(self, owner_id: str) -> CredentialRecord:
        """Return an active, unexpired credential, refreshing it when needed."""
        record = await self.repository.get_credential(owner_id)
        if record is None or not record.is_active:
            raise CredentialError(NOT_CONNECTED)
        now = self._clock()
        if record.expires_at > now + REFRESH_SKEW:
            return record

        if not record.refresh_token:
            # nothing to refresh with; the token stays usable until it expires
            if record.expires_at > now:
                return record
            await self.repository.deactivate_credential(owner_id, expected_access_token=record.access_token)
            raise CredentialError(NOT_CONNECTED)

        try:
            grant = await self.oauth.refresh(record.refresh_token)
        except RefreshRejectedError:
            logger.warning("refresh token rejected; deactivating credential owner_id=%s", owner_id)
            await self.repository.deactivate_credential(owner_id, expected_access_token=record.access_token)
            raise CredentialError(NOT_CONNECTED) from None

        applied = await self.repository.replace_access_token(
            owner_id=owner_id,
            expected_access_token=record.access_token,
            access_token=grant.access_token,
            expires_at=grant.expires_at,
            refresh_token=grant.refresh_token,
        )
        if not applied:
            logger.info("credential refreshed concurrently owner_id=%s; using stored token", owner_id)

        latest = await self.repository.get_credential(owner_id)
        if latest is None or not latest.is_active:
            raise CredentialError(NOT_CONNECTED)
        return latest


@lru_cache
def get_state_signer() -> StateTokenSigner:
    settings = get_settings()
    return StateTokenSigner(settings.state_signing_secret, settings.oauth_state_ttl_seconds)


@lru_cache
def get_credential_service() -> CredentialService:
    settings = get_settings()
    return CredentialService(
        repository=get_repository(),
        oauth=get_oauth_client(),
        signer=get_state_signer(),
        allowed_origins=settings.return_origins(),
    )
