from datetime import datetime
from typing import Any, Literal

from pydantic import Field

from jobhunter.schemas.common import ApiModel
from jobhunter.schemas.leads import EnrichedJobLead, JobLead

RequestStatus = Literal[
    "pending",
    "processing",
    "filtering",
    "enriching",
    "completed",
    "failed",
    "aborted",
]


class ScrapeRequestCreate(ApiModel):
    keyword: str = ""
    location: str = ""
    work_type: str = ""
    resume_text: str | None = None
    limit: int | None = None


class ScrapeRequestAccepted(ApiModel):
    request_id: str


class ScrapeRequestOut(ApiModel):
    id: str
    status: RequestStatus
    results: list[dict[str, Any]] = Field(default_factory=list)
    filtered_results: list[JobLead] = Field(default_factory=list)
    enriched_results: list[EnrichedJobLead] = Field(default_factory=list)
    total_count: int = 0
    quality_count: int = 0
    error_message: str | None = None
    created_at: datetime
    completed_at: datetime | None = None
