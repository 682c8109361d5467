from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from functools import lru_cache
from typing import Any, Protocol

import asyncpg  # type: ignore[import-untyped]

from jobhunter.core.config import get_settings
from jobhunter.core.errors import PersistenceError

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


REQUEST_STATUS_ORDER = ("pending", "processing", "filtering", "enriching", "completed")
TERMINAL_REQUEST_STATUSES = frozenset({"completed", "failed", "aborted"})
ACTIVE_REQUEST_STATUSES = frozenset({"pending", "processing", "filtering", "enriching"})
REQUEST_UPDATE_FIELDS = frozenset(
    {
        "raw_results",
        "filtered_results",
        "enriched_results",
        "total_count",
        "quality_count",
        "error_message",
        "provider_run_id",
    }
)


@dataclass(slots=True)
class ScrapeRequestRecord:
    id: str
    owner_id: str
    source_query: str
    status: str
    created_at: datetime
    updated_at: datetime
    raw_results: list[dict[str, Any]] = field(default_factory=list)
    filtered_results: list[dict[str, Any]] = field(default_factory=list)
    enriched_results: list[dict[str, Any]] = field(default_factory=list)
    total_count: int = 0
    quality_count: int = 0
    error_message: str | None = None
    provider_run_id: str | None = None
    resume_text: str | None = None
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_REQUEST_STATUSES


@dataclass(slots=True)
class CredentialRecord:
    owner_id: str
    access_token: str
    refresh_token: str | None
    expires_at: datetime
    is_active: bool
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class ApplicationRecord:
    id: str
    owner_id: str
    job_title: str
    company_name: str
    recipient: str
    subject: str
    body: str
    channel: str
    sent_at: datetime


@dataclass(slots=True)
class ResumeRecord:
    owner_id: str
    file_name: str
    mime_type: str
    content: bytes
    resume_text: str | None
    uploaded_at: datetime


def validate_request_transition(*, from_status: str, to_status: str) -> None:
    """Reject any write that would move a request backwards or out of a terminal state."""
    if from_status in TERMINAL_REQUEST_STATUSES:
        raise RepositoryConflictError(f"request is terminal: {from_status} -> {to_status}")
    if to_status in {"failed", "aborted"}:
        return
    if to_status not in REQUEST_STATUS_ORDER:
        raise RepositoryConflictError(f"unknown request status: {to_status}")
    if REQUEST_STATUS_ORDER.index(to_status) < REQUEST_STATUS_ORDER.index(from_status):
        raise RepositoryConflictError(f"invalid request status transition: {from_status} -> {to_status}")


class Repository(Protocol):
    async def close(self) -> None: ...

    async def create_scrape_request(
        self,
        *,
        owner_id: str,
        source_query: str,
        resume_text: str | None,
    ) -> ScrapeRequestRecord: ...

    async def get_scrape_request(self, request_id: str) -> ScrapeRequestRecord: ...

    async def transition_scrape_request(
        self,
        request_id: str,
        *,
        expected_status: str,
        status: str,
        **fields: Any,
    ) -> bool: ...

    async def get_credential(self, owner_id: str) -> CredentialRecord | None: ...

    async def upsert_credential(
        self,
        *,
        owner_id: str,
        access_token: str,
        refresh_token: str | None,
        expires_at: datetime,
    ) -> CredentialRecord: ...

    async def replace_access_token(
        self,
        *,
        owner_id: str,
        expected_access_token: str,
        access_token: str,
        expires_at: datetime,
        refresh_token: str | None = None,
    ) -> bool: ...

    async def deactivate_credential(self, owner_id: str, *, expected_access_token: str | None = None) -> bool: ...

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
    ) -> ApplicationRecord: ...

    async def list_applications(self, owner_id: str, *, limit: int = 100) -> list[ApplicationRecord]: ...

    async def save_resume(
        self,
        *,
        owner_id: str,
        file_name: str,
        mime_type: str,
        content: bytes,
        resume_text: str | None,
    ) -> ResumeRecord: ...

    async def get_resume(self, owner_id: str) -> ResumeRecord | None: ...


_REQUEST_COLUMNS = """
  id::text as id,
  owner_id,
  source_query,
  status,
  raw_results,
  filtered_results,
  enriched_results,
  total_count,
  quality_count,
  error_message,
  provider_run_id,
  resume_text,
  created_at,
  updated_at,
  completed_at
"""

_CREDENTIAL_COLUMNS = """
  owner_id,
  access_token,
  refresh_token,
  expires_at,
  is_active,
  created_at,
  updated_at
"""

_APPLICATION_COLUMNS = """
  id::text as id,
  owner_id,
  job_title,
  company_name,
  recipient,
  subject,
  body,
  channel,
  sent_at
"""


class PostgresRepository:
    def __init__(self, database_url: str | None, min_pool_size: int, max_pool_size: int) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def create_scrape_request(
        self,
        *,
        owner_id: str,
        source_query: str,
        resume_text: str | None,
    ) -> ScrapeRequestRecord:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            insert into scrape_requests (owner_id, source_query, resume_text, status)
            values ($1, $2, $3, 'pending')
            returning {_REQUEST_COLUMNS}
            """,
            owner_id,
            source_query,
            resume_text,
        )
        return self._request_row_to_record(row)

    async def get_scrape_request(self, request_id: str) -> ScrapeRequestRecord:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"select {_REQUEST_COLUMNS} from scrape_requests where id = $1::uuid",
                request_id,
            )
        except asyncpg.DataError as exc:
            raise RepositoryNotFoundError("scrape request not found") from exc
        if not row:
            raise RepositoryNotFoundError("scrape request not found")
        return self._request_row_to_record(row)

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

        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            update scrape_requests
            set
              status = $3,
              raw_results = coalesce($4::jsonb, raw_results),
              filtered_results = coalesce($5::jsonb, filtered_results),
              enriched_results = coalesce($6::jsonb, enriched_results),
              total_count = coalesce($7::int, total_count),
              quality_count = coalesce($8::int, quality_count),
              error_message = coalesce($9, error_message),
              provider_run_id = coalesce($10, provider_run_id),
              updated_at = now(),
              completed_at = case when $3 in ('completed', 'failed', 'aborted') then now() else completed_at end
            where id = $1::uuid and status = $2
            returning id::text as id
            """,
            request_id,
            expected_status,
            status,
            _dump_json(fields.get("raw_results")),
            _dump_json(fields.get("filtered_results")),
            _dump_json(fields.get("enriched_results")),
            fields.get("total_count"),
            fields.get("quality_count"),
            fields.get("error_message"),
            fields.get("provider_run_id"),
        )
        return row is not None

    async def get_credential(self, owner_id: str) -> CredentialRecord | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"select {_CREDENTIAL_COLUMNS} from delegated_credentials where owner_id = $1",
            owner_id,
        )
        return self._credential_row_to_record(row) if row else None

    async def upsert_credential(
        self,
        *,
        owner_id: str,
        access_token: str,
        refresh_token: str | None,
        expires_at: datetime,
    ) -> CredentialRecord:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            insert into delegated_credentials (owner_id, access_token, refresh_token, expires_at, is_active)
            values ($1, $2, $3, $4, true)
            on conflict (owner_id) do update
            set
              access_token = excluded.access_token,
              refresh_token = coalesce(excluded.refresh_token, delegated_credentials.refresh_token),
              expires_at = excluded.expires_at,
              is_active = true,
              updated_at = now()
            returning {_CREDENTIAL_COLUMNS}
            """,
            owner_id,
            access_token,
            refresh_token,
            expires_at,
        )
        return self._credential_row_to_record(row)

    async def replace_access_token(
        self,
        *,
        owner_id: str,
        expected_access_token: str,
        access_token: str,
        expires_at: datetime,
        refresh_token: str | None = None,
    ) -> bool:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            update delegated_credentials
            set
              access_token = $3,
              expires_at = $4,
              refresh_token = coalesce($5, refresh_token),
              updated_at = now()
            where owner_id = $1 and access_token = $2 and is_active = true
            returning owner_id
            """,
            owner_id,
            expected_access_token,
            access_token,
            expires_at,
            refresh_token,
        )
        return row is not None

    async def deactivate_credential(self, owner_id: str, *, expected_access_token: str | None = None) -> bool:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            update delegated_credentials
            set is_active = false, updated_at = now()
            where owner_id = $1 and ($2::text is null or access_token = $2)
            returning owner_id
            """,
            owner_id,
            expected_access_token,
        )
        return row is not None

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
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            insert into email_applications (owner_id, job_title, company_name, recipient, subject, body, channel)
            values ($1, $2, $3, $4, $5, $6, $7)
            returning {_APPLICATION_COLUMNS}
            """,
            owner_id,
            job_title,
            company_name,
            recipient,
            subject,
            body,
            channel,
        )
        return ApplicationRecord(**dict(row))

    async def list_applications(self, owner_id: str, *, limit: int = 100) -> list[ApplicationRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_APPLICATION_COLUMNS}
            from email_applications
            where owner_id = $1
            order by sent_at desc
            limit $2
            """,
            owner_id,
            limit,
        )
        return [ApplicationRecord(**dict(row)) for row in rows]

    async def save_resume(
        self,
        *,
        owner_id: str,
        file_name: str,
        mime_type: str,
        content: bytes,
        resume_text: str | None,
    ) -> ResumeRecord:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            insert into resumes (owner_id, file_name, mime_type, content, resume_text)
            values ($1, $2, $3, $4, $5)
            on conflict (owner_id) do update
            set
              file_name = excluded.file_name,
              mime_type = excluded.mime_type,
              content = excluded.content,
              resume_text = excluded.resume_text,
              uploaded_at = now()
            returning owner_id, file_name, mime_type, content, resume_text, uploaded_at
            """,
            owner_id,
            file_name,
            mime_type,
            content,
            resume_text,
        )
        return ResumeRecord(**dict(row))

    async def get_resume(self, owner_id: str) -> ResumeRecord | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select owner_id, file_name, mime_type, content, resume_text, uploaded_at
            from resumes
            where owner_id = $1
            """,
            owner_id,
        )
        return ResumeRecord(**dict(row)) if row else None

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise PersistenceError("JH_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise PersistenceError("database unavailable") from exc

    @staticmethod
    def _request_row_to_record(row: asyncpg.Record) -> ScrapeRequestRecord:
        return ScrapeRequestRecord(
            id=row["id"],
            owner_id=row["owner_id"],
            source_query=row["source_query"],
            status=row["status"],
            raw_results=_load_json_list(row["raw_results"]),
            filtered_results=_load_json_list(row["filtered_results"]),
            enriched_results=_load_json_list(row["enriched_results"]),
            total_count=int(row["total_count"] or 0),
            quality_count=int(row["quality_count"] or 0),
            error_message=row["error_message"],
            provider_run_id=row["provider_run_id"],
            resume_text=row["resume_text"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            completed_at=row["completed_at"],
        )

    @staticmethod
    def _credential_row_to_record(row: asyncpg.Record) -> CredentialRecord:
        return CredentialRecord(
            owner_id=row["owner_id"],
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            expires_at=row["expires_at"],
            is_active=bool(row["is_active"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


def _dump_json(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value)


def _load_json_list(value: Any) -> list[dict[str, Any]]:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            return []
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


@lru_cache
def get_repository() -> Repository:
    settings = get_settings()
    if not settings.database_url:
        from jobhunter.services.store import InMemoryRepository

        logger.warning("JH_DATABASE_URL not set; using in-memory store (no persistence)")
        return InMemoryRepository()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
