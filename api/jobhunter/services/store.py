from __future__ import annotations

import asyncio
import copy
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from jobhunter.services.repository import (
    REQUEST_UPDATE_FIELDS,
    TERMINAL_REQUEST_STATUSES,
    ApplicationRecord,
    CredentialRecord,
    RepositoryConflictError,
    RepositoryNotFoundError,
    ResumeRecord,
    ScrapeRequestRecord,
    validate_request_transition,
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryRepository:
    """Process-local repository used when no database is configured.

    Every mutation runs under one lock, so compare-and-set writes behave the same
    way as the conditional updates issued against Postgres.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._requests: dict[str, ScrapeRequestRecord] = {}
        self._credentials: dict[str, CredentialRecord] = {}
        self._applications: list[ApplicationRecord] = []
        self._resumes: dict[str, ResumeRecord] = {}

    async def close(self) -> None:
        return None

    async def create_scrape_request(
        self,
        *,
        owner_id: str,
        source_query: str,
        resume_text: str | None,
    ) -> ScrapeRequestRecord:
        now = _now()
        record = ScrapeRequestRecord(
            id=str(uuid4()),
            owner_id=owner_id,
            source_query=source_query,
            status="pending",
            resume_text=resume_text,
            created_at=now,
            updated_at=now,
        )
        async with self._lock:
            self._requests[record.id] = record
            return copy.deepcopy(record)

    async def get_scrape_request(self, request_id: str) -> ScrapeRequestRecord:
        async with self._lock:
            record = self._requests.get(request_id)
            if record is None:
                raise RepositoryNotFoundError("scrape request not found")
            return copy.deepcopy(record)

    async def transition_scrape_request(
        self,
        request_id: str,
        *,
        expected_status: str,
        status: str,
        **fields: Any,
    ) -> bool:
        unknown = set(fields) - REQUEST_UPDATE_FIELDS
        if unknown:
            raise RepositoryConflictError(f"unsupported request fields: {sorted(unknown)}")
        if status != expected_status:
            validate_request_transition(from_status=expected_status, to_status=status)
        elif expected_status in TERMINAL_REQUEST_STATUSES:
            return False

        async with self._lock:
            record = self._requests.get(request_id)
            if record is None or record.status != expected_status:
                return False
            for name, value in fields.items():
                if value is not None:
                    setattr(record, name, copy.deepcopy(value))
            record.status = status
            record.updated_at = _now()
            if status in TERMINAL_REQUEST_STATUSES:
                record.completed_at = record.updated_at
            return True

    async def get_credential(self, owner_id: str) -> CredentialRecord | None:
        async with self._lock:
            record = self._credentials.get(owner_id)
            return copy.copy(record) if record else None

    async def upsert_credential(
        self,
        *,
        owner_id: str,
        access_token: str,
        refresh_token: str | None,
        expires_at: datetime,
    ) -> CredentialRecord:
        async with self._lock:
            now = _now()
            existing = self._credentials.get(owner_id)
            if existing is None:
                record = CredentialRecord(
                    owner_id=owner_id,
                    access_token=access_token,
                    refresh_token=refresh_token,
                    expires_at=expires_at,
                    is_active=True,
                    created_at=now,
                    updated_at=now,
                )
                self._credentials[owner_id] = record
            else:
                record = existing
                record.access_token = access_token
                record.refresh_token = refresh_token or existing.refresh_token
                record.expires_at = expires_at
                record.is_active = True
                record.updated_at = now
            return copy.copy(record)

    async def replace_access_token(
        self,
        *,
        owner_id: str,
        expected_access_token: str,
        access_token: str,
        expires_at: datetime,
        refresh_token: str | None = None,
    ) -> bool:
        async with self._lock:
            record = self._credentials.get(owner_id)
            if record is None or not record.is_active or record.access_token != expected_access_token:
                return False
            record.access_token = access_token
            record.expires_at = expires_at
            if refresh_token:
                record.refresh_token = refresh_token
            record.updated_at = _now()
            return True

    async def deactivate_credential(self, owner_id: str, *, expected_access_token: str | None = None) -> bool:
        async with self._lock:
            record = self._credentials.get(owner_id)
            if record is None:
                return False
            if expected_access_token is not None and record.access_token != expected_access_token:
                return False
            record.is_active = False
            record.updated_at = _now()
            return True

    async def record_application(
        self,
        *,
        owner_id: str,
        job_title: str,
        company_name: str,
        recipient: str,
        subject: str,
        body: str,
        channel: str,
    ) -> ApplicationRecord:
        record = ApplicationRecord(
            id=str(uuid4()),
            owner_id=owner_id,
            job_title=job_title,
            company_name=company_name,
            recipient=recipient,
            subject=subject,
            body=body,
            channel=channel,
            sent_at=_now(),
        )
        async with self._lock:
            self._applications.append(record)
        return copy.copy(record)

    async def list_applications(self, owner_id: str, *, limit: int = 100) -> list[ApplicationRecord]:
        async with self._lock:
            owned = [copy.copy(item) for item in reversed(self._applications) if item.owner_id == owner_id]
        owned.sort(key=lambda item: item.sent_at, reverse=True)
        return owned[:limit]

    async def save_resume(
        self,
        *,
        owner_id: str,
        file_name: str,
        mime_type: str,
        content: bytes,
        resume_text: str | None,
    ) -> ResumeRecord:
        record = ResumeRecord(
            owner_id=owner_id,
            file_name=file_name,
            mime_type=mime_type,
            content=content,
            resume_text=resume_text,
            uploaded_at=_now(),
        )
        async with self._lock:
            self._resumes[owner_id] = record
        return copy.copy(record)

    async def get_resume(self, owner_id: str) -> ResumeRecord | None:
        async with self._lock:
            record = self._resumes.get(owner_id)
            return copy.copy(record) if record else None
