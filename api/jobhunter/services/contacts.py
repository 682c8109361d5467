from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Protocol

import httpx

from jobhunter.core.config import get_settings
from jobhunter.core.errors import ProviderError
from jobhunter.core.http import client_session, response_detail
from jobhunter.schemas.leads import JobLead, VerificationStatus

logger = logging.getLogger(__name__)

VALID_VERDICTS = frozenset({"valid", "deliverable", "verified"})
CATCH_ALL_VERDICTS = frozenset({"catch-all", "catch_all", "catchall", "accept_all", "accept-all", "risky"})


@dataclass(frozen=True, slots=True)
class ContactLookup:
    email: str | None
    verification_status: VerificationStatus


NO_CONTACT = ContactLookup(email=None, verification_status="none")


class ContactFinder(Protocol):
    async def find_contact(self, lead: JobLead) -> ContactLookup: ...


def map_verification_status(email: str | None, verdict: Any) -> VerificationStatus:
    if not email:
        return "none"
    lowered = verdict.strip().lower() if isinstance(verdict, str) else ""
    if lowered in VALID_VERDICTS:
        return "valid"
    if lowered in CATCH_ALL_VERDICTS:
        return "catch-all"
    return "error"


class NullContactFinder:
    """Used when no discovery service is configured; every lead gets no contact."""

    async def find_contact(self, lead: JobLead) -> ContactLookup:
        return NO_CONTACT


class HttpContactFinder:
    def __init__(
        self,
        *,
        url: str,
        api_key: str | None = None,
        timeout_seconds: float = 15.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.url = url
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self._client = client

    async def find_contact(self, lead: JobLead) -> ContactLookup:
        payload = {
            "companyName": lead.company_name,
            "jobTitle": lead.job_title,
            "posterName": lead.poster_name,
            "posterUrl": lead.poster_url,
            "sourceUrl": lead.source_url,
        }
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        try:
            async with client_session(self._client, timeout=self.timeout_seconds) as client:
                response = await client.post(self.url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise ProviderError(f"contact finder unreachable: {exc}") from exc

        if response.status_code == 404:
            return NO_CONTACT
        if response.status_code >= 400:
            raise ProviderError(f"contact finder error {response.status_code}: {response_detail(response)}")

        try:
            data = response.json()
        except ValueError as exc:
            raise ProviderError("contact finder returned a non-JSON body") from exc
        if not isinstance(data, dict):
            raise ProviderError("contact finder returned an unexpected payload")

        email = data.get("email")
        email = email.strip() if isinstance(email, str) and email.strip() else None
        verdict = data.get("verification_status", data.get("verificationStatus"))
        return ContactLookup(email=email, verification_status=map_verification_status(email, verdict))


@lru_cache
def get_contact_finder() -> ContactFinder:
    settings = get_settings()
    if not settings.contact_finder_url:
        logger.warning("JH_CONTACT_FINDER_URL not set; leads will not be enriched with contacts")
        return NullContactFinder()
    return HttpContactFinder(
        url=settings.contact_finder_url,
        api_key=settings.contact_finder_api_key,
        timeout_seconds=settings.provider_request_timeout_seconds,
    )
