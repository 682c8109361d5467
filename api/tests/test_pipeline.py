from __future__ import annotations

import asyncio
from typing import Any

import pytest

from jobhunter.core.errors import ProviderError, ValidationError
from jobhunter.schemas.leads import JobLead
from jobhunter.schemas.scrape_requests import ScrapeRequestCreate
from jobhunter.services.contacts import ContactLookup
from jobhunter.services.pipeline import PipelineRunner, filter_leads, validate_search
from jobhunter.services.repository import REQUEST_STATUS_ORDER, RepositoryNotFoundError
from jobhunter.services.scraping import ProviderRun
from jobhunter.services.store import InMemoryRepository

RAW_ITEMS: list[dict[str, Any]] = [
    {
        "title": "Software Engineer",
        "companyName": "Acme",
        "location": "Bengaluru",
        "link": "https://www.linkedin.com/jobs/view/1?trk=feed",
    },
    {
        "position": "Backend Engineer",
        "employer": "Globex",
        "location": "Bengaluru",
        "url": "https://www.linkedin.com/jobs/view/2",
    },
    {
        "title": "Platform Engineer",
        "company": "Initech",
        "location": "Remote",
        "url": "https://www.linkedin.com/jobs/view/3",
    },
    # duplicate of the first listing once tracking params are dropped
    {
        "title": "Software Engineer (repost)",
        "company": "Acme",
        "location": "Bengaluru",
        "url": "https://www.linkedin.com/jobs/view/1/",
    },
    # no location after normalization
    {"title": "Mystery Role", "company": "Hooli", "url": "https://www.linkedin.com/jobs/view/5"},
]

CONTACTS = {
    "Acme": ContactLookup(email="hr@acme.test", verification_status="valid"),
    "Globex": ContactLookup(email="jobs@globex.test", verification_status="catch-all"),
}


class FakeProvider:
    name = "fake"

    def __init__(self, items: list[Any], *, fail_with: Exception | None = None, block: bool = False) -> None:
        self.items = items
        self.fail_with = fail_with
        self.block = block
        self.started: list[tuple[str, int]] = []
        self.aborted: list[str] = []

    async def start_run(self, query: str, *, limit: int) -> ProviderRun:
        self.started.append((query, limit))
        return ProviderRun(run_id="run-1", status="RUNNING", dataset_id="dataset-1")

    async def wait_for_run(self, run: ProviderRun) -> ProviderRun:
        if self.block:
            await asyncio.Event().wait()
        if self.fail_with is not None:
            raise self.fail_with
        return ProviderRun(run_id=run.run_id, status="SUCCEEDED", dataset_id=run.dataset_id)

    async def fetch_items(self, run: ProviderRun) -> list[Any]:
        return list(self.items)

    async def abort_run(self, run_id: str) -> None:
        self.aborted.append(run_id)


class FakeContactFinder:
    def __init__(self, contacts: dict[str, ContactLookup], *, failing: set[str] | None = None) -> None:
        self.contacts = contacts
        self.failing = failing or set()

    async def find_contact(self, lead: JobLead) -> ContactLookup:
        if lead.company_name in self.failing:
            raise ProviderError("lookup quota exhausted")
        return self.contacts.get(lead.company_name, ContactLookup(email=None, verification_status="none"))


class RecordingRepository(InMemoryRepository):
    """Records applied status writes; can hold the pipeline right after a chosen status."""

    def __init__(self, *, pause_after: str | None = None) -> None:
        super().__init__()
        self.applied: list[str] = []
        self.pause_after = pause_after
        self.paused = asyncio.Event()
        self.resume = asyncio.Event()

    async def transition_scrape_request(self, request_id: str, *, expected_status: str, status: str, **fields: Any) -> bool:
        applied = await super().transition_scrape_request(
            request_id,
            expected_status=expected_status,
            status=status,
            **fields,
        )
        if applied and status != expected_status:
            self.applied.append(status)
        if applied and status == self.pause_after:
            self.paused.set()
            await self.resume.wait()
        return applied


def _payload(**overrides: Any) -> ScrapeRequestCreate:
    values = {"keyword": "Software Engineer", "location": "Bengaluru", "work_type": "remote"}
    values.update(overrides)
    return ScrapeRequestCreate(**values)


def _runner(repository: InMemoryRepository, provider: FakeProvider, **kwargs: Any) -> PipelineRunner:
    return PipelineRunner(
        repository=repository,
        provider=provider,
        contact_finder=kwargs.pop("contact_finder", FakeContactFinder(CONTACTS)),
        **kwargs,
    )


def test_pipeline_completes_with_filtered_and_enriched_leads() -> None:
    async def run() -> tuple[Any, RecordingRepository, FakeProvider]:
        repository = RecordingRepository()
        provider = FakeProvider(RAW_ITEMS)
        runner = _runner(repository, provider, default_limit=50)
        record = await runner.submit(owner_id="owner-1", payload=_payload())
        await runner.wait(record.id, timeout=5)
        return await repository.get_scrape_request(record.id), repository, provider

    record, repository, provider = asyncio.run(run())

    assert repository.applied == ["processing", "filtering", "enriching", "completed"]
    assert record.status == "completed"
    assert record.provider_run_id == "run-1"
    assert record.total_count == 5
    assert record.quality_count == 3
    assert [lead["company_name"] for lead in record.filtered_results] == ["Acme", "Globex", "Initech"]
    assert provider.started[0][1] == 50
    assert "f_WT=2" in provider.started[0][0]

    enriched = {lead["company_name"]: lead for lead in record.enriched_results}
    assert enriched["Acme"]["email_verification_status"] == "valid"
    assert enriched["Globex"]["email_verification_status"] == "catch-all"
    assert enriched["Initech"]["contact_email"] is None
    assert enriched["Initech"]["email_verification_status"] == "none"


def test_contact_lookup_failure_marks_only_that_lead() -> None:
    async def run() -> Any:
        repository = InMemoryRepository()
        runner = _runner(
            repository,
            FakeProvider(RAW_ITEMS),
            contact_finder=FakeContactFinder(CONTACTS, failing={"Globex"}),
        )
        record = await runner.submit(owner_id="owner-1", payload=_payload())
        await runner.wait(record.id, timeout=5)
        return await repository.get_scrape_request(record.id)

    record = asyncio.run(run())
    assert record.status == "completed"
    enriched = {lead["company_name"]: lead for lead in record.enriched_results}
    assert enriched["Globex"]["email_verification_status"] == "error"
    assert enriched["Acme"]["email_verification_status"] == "valid"


def test_provider_error_fails_the_request() -> None:
    async def run() -> tuple[Any, RecordingRepository]:
        repository = RecordingRepository()
        provider = FakeProvider([], fail_with=ProviderError("scrape provider rejected the request: quota"))
        runner = _runner(repository, provider)
        record = await runner.submit(owner_id="owner-1", payload=_payload())
        await runner.wait(record.id, timeout=5)
        return await repository.get_scrape_request(record.id), repository

    record, repository = asyncio.run(run())
    assert repository.applied == ["processing", "failed"]
    assert record.status == "failed"
    assert record.error_message == "scrape provider rejected the request: quota"
    assert record.completed_at is not None


def test_malformed_provider_payload_fails_the_request() -> None:
    async def run() -> Any:
        repository = InMemoryRepository()
        runner = _runner(repository, FakeProvider([{"title": "ok"}, ["not", "a", "record"]]))
        record = await runner.submit(owner_id="owner-1", payload=_payload())
        await runner.wait(record.id, timeout=5)
        return await repository.get_scrape_request(record.id)

    record = asyncio.run(run())
    assert record.status == "failed"
    assert "malformed provider payload" in (record.error_message or "")


def test_wall_clock_budget_fails_stuck_run_and_aborts_provider() -> None:
    async def run() -> tuple[Any, FakeProvider]:
        repository = InMemoryRepository()
        provider = FakeProvider([], block=True)
        runner = _runner(repository, provider, max_runtime_seconds=0.05)
        record = await runner.submit(owner_id="owner-1", payload=_payload())
        await runner.wait(record.id, timeout=5)
        return await repository.get_scrape_request(record.id), provider

    record, provider = asyncio.run(run())
    assert record.status == "failed"
    assert record.error_message == "pipeline exceeded 0.05 seconds"
    assert provider.aborted == ["run-1"]


def test_abort_while_filtering_prevents_later_stages() -> None:
    async def run() -> tuple[Any, RecordingRepository, FakeProvider]:
        repository = RecordingRepository(pause_after="filtering")
        provider = FakeProvider(RAW_ITEMS)
        runner = _runner(repository, provider)
        record = await runner.submit(owner_id="owner-1", payload=_payload())

        await asyncio.wait_for(repository.paused.wait(), timeout=5)
        aborted = await runner.abort(request_id=record.id, owner_id="owner-1")
        assert aborted.status == "aborted"
        repository.resume.set()
        await runner.wait(record.id, timeout=5)
        return await repository.get_scrape_request(record.id), repository, provider

    record, repository, provider = asyncio.run(run())
    assert record.status == "aborted"
    assert record.error_message == "aborted by user"
    assert "enriching" not in repository.applied
    assert "completed" not in repository.applied
    assert provider.aborted == ["run-1"]


def test_abort_is_idempotent_and_never_resurrects_completed_requests() -> None:
    async def run() -> tuple[Any, Any, FakeProvider]:
        repository = InMemoryRepository()
        provider = FakeProvider(RAW_ITEMS)
        runner = _runner(repository, provider)

        completed = await runner.submit(owner_id="owner-1", payload=_payload())
        await runner.wait(completed.id, timeout=5)
        await runner.abort(request_id=completed.id, owner_id="owner-1")
        await runner.abort(request_id=completed.id, owner_id="owner-1")

        stuck_provider = FakeProvider([], block=True)
        stuck_runner = _runner(repository, stuck_provider)
        stuck = await stuck_runner.submit(owner_id="owner-1", payload=_payload())
        while not stuck_provider.started:
            await asyncio.sleep(0)
        await stuck_runner.abort(request_id=stuck.id, owner_id="owner-1")
        await stuck_runner.abort(request_id=stuck.id, owner_id="owner-1")
        await stuck_runner.wait(stuck.id, timeout=5)

        return (
            await repository.get_scrape_request(completed.id),
            await repository.get_scrape_request(stuck.id),
            stuck_provider,
        )

    completed, stuck, stuck_provider = asyncio.run(run())
    assert completed.status == "completed"
    assert completed.error_message is None
    assert stuck.status == "aborted"
    assert stuck_provider.aborted == ["run-1"]


def test_abort_of_foreign_request_is_not_found() -> None:
    async def run() -> None:
        repository = InMemoryRepository()
        runner = _runner(repository, FakeProvider(RAW_ITEMS))
        record = await runner.submit(owner_id="owner-1", payload=_payload())
        await runner.wait(record.id, timeout=5)
        with pytest.raises(RepositoryNotFoundError):
            await runner.abort(request_id=record.id, owner_id="owner-2")

    asyncio.run(run())


@pytest.mark.parametrize(
    "overrides",
    [
        {"keyword": "  "},
        {"location": ""},
        {"work_type": "freelance"},
        {"limit": 0},
    ],
)
def test_invalid_submissions_are_rejected(overrides: dict[str, Any]) -> None:
    with pytest.raises(ValidationError):
        validate_search(_payload(**overrides), default_limit=100)


def test_filter_leads_drops_missing_location_and_duplicate_urls() -> None:
    leads = [
        JobLead(job_title="A", company_name="X", location="Pune", description="", source_url="https://a.test/1"),
        JobLead(job_title="B", company_name="X", location=" ", description="", source_url="https://a.test/2"),
        JobLead(job_title="C", company_name="X", location="Pune", description="", source_url="https://A.test/1/"),
    ]
    assert [lead.job_title for lead in filter_leads(leads)] == ["A"]


def test_status_order_matches_pipeline_stages() -> None:
    assert REQUEST_STATUS_ORDER == ("pending", "processing", "filtering", "enriching", "completed")


def test_filter_leads_keeps_distinct_leads_sharing_the_search_fallback_url() -> None:
    search_url = "https://www.linkedin.com/jobs/search?keywords=x&location=y&f_WT=2"
    leads = [
        JobLead(job_title=title, company_name=title, location="Pune", description="", source_url=search_url)
        for title in ("A", "B", "C")
    ]
    leads.append(
        JobLead(job_title="D", company_name="D", location="Pune", description="", source_url="https://a.test/1")
    )
    leads.append(
        JobLead(job_title="E", company_name="E", location="Pune", description="", source_url="https://a.test/1/")
    )

    kept = filter_leads(leads, fallback_url=search_url)
    assert [lead.job_title for lead in kept] == ["A", "B", "C", "D"]


def test_leads_without_urls_survive_the_pipeline() -> None:
    items = [{"title": title, "company": f"{title} Corp", "location": "Remote"} for title in ("A", "B", "C")]

    async def run() -> Any:
        repository = InMemoryRepository()
        runner = _runner(repository, FakeProvider(items))
        record = await runner.submit(owner_id="owner-1", payload=_payload())
        await runner.wait(record.id, timeout=5)
        return await repository.get_scrape_request(record.id)

    record = asyncio.run(run())
    assert record.status == "completed"
    assert record.quality_count == 3
    assert [lead["job_title"] for lead in record.filtered_results] == ["A", "B", "C"]


class RunIdGateRepository(InMemoryRepository):
    """Holds the pipeline just before it persists the provider run id."""

    def __init__(self) -> None:
        super().__init__()
        self.paused = asyncio.Event()
        self.resume = asyncio.Event()

    async def transition_scrape_request(self, request_id: str, *, expected_status: str, status: str, **fields: Any) -> bool:
        if "provider_run_id" in fields:
            self.paused.set()
            await self.resume.wait()
        return await super().transition_scrape_request(
            request_id,
            expected_status=expected_status,
            status=status,
            **fields,
        )


def test_abort_before_run_id_is_stored_still_aborts_provider_run() -> None:
    async def run() -> tuple[Any, FakeProvider]:
        repository = RunIdGateRepository()
        provider = FakeProvider(RAW_ITEMS)
        runner = _runner(repository, provider)
        record = await runner.submit(owner_id="owner-1", payload=_payload())

        await asyncio.wait_for(repository.paused.wait(), timeout=5)
        await runner.abort(request_id=record.id, owner_id="owner-1")
        await runner.wait(record.id, timeout=5)
        return await repository.get_scrape_request(record.id), provider

    record, provider = asyncio.run(run())
    assert record.status == "aborted"
    assert record.provider_run_id is None
    assert provider.aborted == ["run-1"]


def test_shutdown_fails_in_flight_requests() -> None:
    async def run() -> tuple[Any, Any, FakeProvider]:
        repository = InMemoryRepository()
        provider = FakeProvider([], block=True)
        runner = _runner(repository, provider)

        finished = await runner.submit(owner_id="owner-1", payload=_payload())
        provider.block = False
        await runner.wait(finished.id, timeout=5)

        provider.block = True
        stuck = await runner.submit(owner_id="owner-1", payload=_payload())
        while len(provider.started) < 2:
            await asyncio.sleep(0)
        await runner.shutdown()
        assert not runner.is_running(stuck.id)

        return (
            await repository.get_scrape_request(finished.id),
            await repository.get_scrape_request(stuck.id),
            provider,
        )

    finished, stuck, provider = asyncio.run(run())
    assert finished.status == "completed"
    assert stuck.status == "failed"
    assert stuck.error_message == "service shutting down"
    assert stuck.completed_at is not None
    assert provider.aborted == ["run-1"]


class GatedProvider(FakeProvider):
    """Holds every run until ``release`` is set; run ids follow submission order."""

    def __init__(self, items: list[Any]) -> None:
        super().__init__(items)
        self.release = asyncio.Event()

    async def start_run(self, query: str, *, limit: int) -> ProviderRun:
        self.started.append((query, limit))
        number = len(self.started)
        return ProviderRun(run_id=f"run-{number}", status="RUNNING", dataset_id=f"dataset-{number}")

    async def wait_for_run(self, run: ProviderRun) -> ProviderRun:
        await self.release.wait()
        return ProviderRun(run_id=run.run_id, status="SUCCEEDED", dataset_id=run.dataset_id)


def test_submissions_from_one_owner_run_concurrently_and_independently() -> None:
    async def run() -> tuple[Any, Any, GatedProvider]:
        repository = InMemoryRepository()
        provider = GatedProvider(RAW_ITEMS)
        runner = _runner(repository, provider)

        first = await runner.submit(owner_id="owner-1", payload=_payload())
        second = await runner.submit(owner_id="owner-1", payload=_payload(keyword="Data Engineer", work_type="hybrid"))
        while len(provider.started) < 2:
            await asyncio.sleep(0)

        assert first.id != second.id
        assert runner.is_running(first.id) and runner.is_running(second.id)
        assert (await repository.get_scrape_request(first.id)).status == "processing"
        assert (await repository.get_scrape_request(second.id)).status == "processing"

        await runner.abort(request_id=first.id, owner_id="owner-1")
        provider.release.set()
        await runner.wait(second.id, timeout=5)

        return (
            await repository.get_scrape_request(first.id),
            await repository.get_scrape_request(second.id),
            provider,
        )

    first, second, provider = asyncio.run(run())
    assert first.status == "aborted"
    assert second.status == "completed"
    assert second.provider_run_id == "run-2"
    assert second.quality_count == 3
    assert "f_WT=3" in second.source_query
    assert provider.aborted == ["run-1"]
