"""Scrape request pipeline.

A request moves pending -> processing -> filtering -> enriching -> completed,
or to failed from any non-terminal status. An explicit abort moves it to
aborted. Every status write is a compare-and-set on the status the writer last
observed, so a run that lost a race to an abort (or to the wall-clock budget)
stops at its next write instead of overwriting the terminal state.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from opentelemetry import trace

from jobhunter.core.config import get_settings
from jobhunter.core.errors import JobHunterError, ProviderError, ValidationError
from jobhunter.core.urls import WORK_TYPE_CODES, build_search_url, normalize_url
from jobhunter.schemas.leads import EnrichedJobLead, JobLead
from jobhunter.schemas.scrape_requests import ScrapeRequestCreate
from jobhunter.services.contacts import ContactFinder, ContactLookup, get_contact_finder
from jobhunter.services.normalize import normalize_records
from jobhunter.services.repository import (
    Repository,
    RepositoryNotFoundError,
    ScrapeRequestRecord,
    get_repository,
)
from jobhunter.services.scraping import ScrapeProvider, get_scrape_provider

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

ABORT_MESSAGE = "aborted by user"
SHUTDOWN_MESSAGE = "service shutting down"
MAX_RESULT_LIMIT = 1000


class StageConflictError(Exception):
    """Raised when a stage write loses its compare-and-set."""


@dataclass(frozen=True, slots=True)
class SearchQuery:
    keyword: str
    location: str
    work_type: str
    limit: int

    @property
    def url(self) -> str:
        return build_search_url(self.keyword, self.location, self.work_type)


def validate_search(payload: ScrapeRequestCreate, *, default_limit: int) -> SearchQuery:
    keyword = payload.keyword.strip()
    location = payload.location.strip()
    work_type = payload.work_type.strip().lower()

    if not keyword:
        raise ValidationError("keyword is required")
    if not location:
        raise ValidationError("location is required")
    if work_type not in WORK_TYPE_CODES:
        raise ValidationError(f"workType must be one of: {', '.join(sorted(WORK_TYPE_CODES))}")

    limit = default_limit if payload.limit is None else payload.limit
    if limit < 1 or limit > MAX_RESULT_LIMIT:
        raise ValidationError(f"limit must be between 1 and {MAX_RESULT_LIMIT}")

    return SearchQuery(keyword=keyword, location=location, work_type=work_type, limit=limit)


def filter_leads(leads: list[JobLead], *, fallback_url: str | None = None) -> list[JobLead]:
    """Drop leads with no location and repeated source URLs (first occurrence wins).

    Leads whose URL is the search fallback carry no identity of their own and
    are never treated as duplicates.
    """
    fallback_key = normalize_url(fallback_url) if fallback_url else None
    seen_urls: set[str] = set()
    kept: list[JobLead] = []
    for lead in leads:
        if not lead.location.strip():
            continue
        url_key = normalize_url(lead.source_url)
        if url_key == fallback_key:
            kept.append(lead)
            continue
        if url_key in seen_urls:
            continue
        seen_urls.add(url_key)
        kept.append(lead)
    return kept


async def get_owned_request(repository: Repository, request_id: str, owner_id: str) -> ScrapeRequestRecord:
    record = await repository.get_scrape_request(request_id)
    if record.owner_id != owner_id:
        raise RepositoryNotFoundError("scrape request not found")
    return record


class PipelineRunner:
    def __init__(
        self,
        *,
        repository: Repository,
        provider: ScrapeProvider,
        contact_finder: ContactFinder,
        max_runtime_seconds: float = 900.0,
        lookup_concurrency: int = 5,
        default_limit: int = 100,
    ) -> None:
        self.repository = repository
        self.provider = provider
        self.contact_finder = contact_finder
        self.max_runtime_seconds = max_runtime_seconds
        self.lookup_concurrency = max(1, lookup_concurrency)
        self.default_limit = default_limit
        self._tasks: dict[str, asyncio.Task[None]] = {}
        # provider run ids known before they are persisted
        self._provider_runs: dict[str, str] = {}

    async def submit(self, *, owner_id: str, payload: ScrapeRequestCreate) -> ScrapeRequestRecord:
        query = validate_search(payload, default_limit=self.default_limit)
        record = await self.repository.create_scrape_request(
            owner_id=owner_id,
            source_query=query.url,
            resume_text=payload.resume_text,
        )
        logger.info("scrape request accepted request_id=%s owner_id=%s", record.id, owner_id)
        self.start(record.id, query)
        return record

    def start(self, request_id: str, query: SearchQuery) -> asyncio.Task[None]:
        task = asyncio.create_task(self.run(request_id, query), name=f"pipeline-{request_id}")
        self._tasks[request_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(request_id, None))
        return task

    def is_running(self, request_id: str) -> bool:
        task = self._tasks.get(request_id)
        return task is not None and not task.done()

    async def wait(self, request_id: str, *, timeout: float) -> None:
        task = self._tasks.get(request_id)
        if task is None or timeout <= 0:
            return
        await asyncio.wait({task}, timeout=timeout)

    async def abort(self, *, request_id: str, owner_id: str) -> ScrapeRequestRecord:
        record = await get_owned_request(self.repository, request_id, owner_id)
        applied = False
        while not record.is_terminal:
            applied = await self.repository.transition_scrape_request(
                request_id,
                expected_status=record.status,
                status="aborted",
                error_message=ABORT_MESSAGE,
            )
            record = await self.repository.get_scrape_request(request_id)
            if applied:
                break

        if not applied:
            logger.info("abort ignored request_id=%s status=%s", request_id, record.status)
            return record

        logger.info("scrape request aborted request_id=%s", request_id)
        run_id = record.provider_run_id or self._provider_runs.get(request_id)
        task = self._tasks.get(request_id)
        if task is not None and not task.done():
            task.cancel()
        if run_id:
            await self._abort_provider_run(run_id)
        return record

    async def shutdown(self) -> None:
        """Cancel in-flight runs and mark them failed so no request stays mid-stage."""
        pending = {request_id: task for request_id, task in self._tasks.items() if not task.done()}
        run_ids = dict(self._provider_runs)
        for task in pending.values():
            task.cancel()
        if pending:
            await asyncio.gather(*pending.values(), return_exceptions=True)

        for request_id in pending:
            record = await self._fail(request_id, SHUTDOWN_MESSAGE)
            if record is None or record.error_message != SHUTDOWN_MESSAGE:
                continue
            logger.warning("pipeline interrupted by shutdown request_id=%s", request_id)
            run_id = record.provider_run_id or run_ids.get(request_id)
            if run_id:
                await self._abort_provider_run(run_id)

    async def run(self, request_id: str, query: SearchQuery) -> None:
        with tracer.start_as_current_span("pipeline.run") as span:
            span.set_attribute("request.id", request_id)
            try:
                if self.max_runtime_seconds > 0:
                    await asyncio.wait_for(self._run_stages(request_id, query), timeout=self.max_runtime_seconds)
                else:
                    await self._run_stages(request_id, query)
            except StageConflictError:
                logger.info("pipeline stopped request_id=%s; status changed concurrently", request_id)
            except asyncio.TimeoutError:
                logger.warning("pipeline budget exceeded request_id=%s", request_id)
                record = await self._fail(
                    request_id,
                    f"pipeline exceeded {self.max_runtime_seconds:g} seconds",
                )
                run_id = self._provider_runs.get(request_id)
                if record is not None and record.provider_run_id:
                    run_id = record.provider_run_id
                if run_id:
                    await self._abort_provider_run(run_id)
            except asyncio.CancelledError:
                logger.info("pipeline cancelled request_id=%s", request_id)
                raise
            except JobHunterError as exc:
                logger.warning("pipeline failed request_id=%s: %s", request_id, exc)
                await self._fail(request_id, str(exc))
            except Exception as exc:
                logger.exception("pipeline crashed request_id=%s", request_id)
                await self._fail(request_id, f"internal error: {exc}")
            finally:
                self._provider_runs.pop(request_id, None)

    async def _run_stages(self, request_id: str, query: SearchQuery) -> None:
        await self._advance(request_id, "pending", "processing")

        with tracer.start_as_current_span("pipeline.stage") as span:
            span.set_attribute("pipeline.stage", "processing")
            run = await self.provider.start_run(query.url, limit=query.limit)
            self._provider_runs[request_id] = run.run_id
            await self._advance(request_id, "processing", "processing", provider_run_id=run.run_id)
            run = await self.provider.wait_for_run(run)
            raw_items = await self.provider.fetch_items(run)
            leads = normalize_records(raw_items, fallback_url=query.url)
        await self._advance(
            request_id,
            "processing",
            "filtering",
            raw_results=raw_items,
            total_count=len(raw_items),
        )

        with tracer.start_as_current_span("pipeline.stage") as span:
            span.set_attribute("pipeline.stage", "filtering")
            filtered = filter_leads(leads, fallback_url=query.url)
        await self._advance(
            request_id,
            "filtering",
            "enriching",
            filtered_results=[lead.to_record() for lead in filtered],
            quality_count=len(filtered),
        )

        with tracer.start_as_current_span("pipeline.stage") as span:
            span.set_attribute("pipeline.stage", "enriching")
            enriched = await self._enrich(request_id, filtered)
        await self._advance(
            request_id,
            "enriching",
            "completed",
            enriched_results=[lead.to_record() for lead in enriched],
        )
        logger.info(
            "pipeline completed request_id=%s total=%s quality=%s applicable=%s",
            request_id,
            len(raw_items),
            len(filtered),
            sum(1 for lead in enriched if lead.can_apply),
        )

    async def _advance(self, request_id: str, expected_status: str, status: str, **fields: Any) -> None:
        applied = await self.repository.transition_scrape_request(
            request_id,
            expected_status=expected_status,
            status=status,
            **fields,
        )
        if not applied:
            raise StageConflictError(f"{request_id}: expected {expected_status} before writing {status}")
        if status != expected_status:
            logger.info("pipeline stage request_id=%s status=%s", request_id, status)

    async def _enrich(self, request_id: str, leads: list[JobLead]) -> list[EnrichedJobLead]:
        semaphore = asyncio.Semaphore(self.lookup_concurrency)

        async def lookup(lead: JobLead) -> EnrichedJobLead:
            async with semaphore:
                try:
                    contact = await self.contact_finder.find_contact(lead)
                except ProviderError as exc:
                    logger.warning(
                        "contact lookup failed request_id=%s company=%s: %s",
                        request_id,
                        lead.company_name,
                        exc,
                    )
                    contact = ContactLookup(email=None, verification_status="error")
            return EnrichedJobLead.model_validate(
                {
                    **lead.model_dump(),
                    "contact_email": contact.email,
                    "email_verification_status": contact.verification_status,
                }
            )

        return list(await asyncio.gather(*(lookup(lead) for lead in leads)))

    async def _fail(self, request_id: str, message: str) -> ScrapeRequestRecord | None:
        try:
            record = await self.repository.get_scrape_request(request_id)
            while not record.is_terminal:
                applied = await self.repository.transition_scrape_request(
                    request_id,
                    expected_status=record.status,
                    status="failed",
                    error_message=message,
                )
                record = await self.repository.get_scrape_request(request_id)
                if applied:
                    break
            return record
        except Exception:
            logger.exception("failed to record pipeline failure request_id=%s", request_id)
            return None

    async def _abort_provider_run(self, run_id: str) -> None:
        try:
            await self.provider.abort_run(run_id)
        except Exception as exc:
            logger.warning("provider abort failed run_id=%s: %s", run_id, exc)


@lru_cache
def get_pipeline_runner() -> PipelineRunner:
    settings = get_settings()
    return PipelineRunner(
        repository=get_repository(),
        provider=get_scrape_provider(),
        contact_finder=get_contact_finder(),
        max_runtime_seconds=settings.pipeline_max_runtime_seconds,
        lookup_concurrency=settings.contact_lookup_concurrency,
        default_limit=settings.default_result_limit,
    )
