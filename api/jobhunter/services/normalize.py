from collections.abc import Mapping
from typing import Any

from jobhunter.core.errors import ProviderError
from jobhunter.schemas.leads import JobLead

UNKNOWN_POSITION = "Unknown Position"
UNKNOWN_COMPANY = "Unknown Company"

# Ordered candidate keys per lead field; the first non-empty value wins.
# Dotted keys address nested objects.
FIELD_CANDIDATES: dict[str, tuple[str, ...]] = {
    "job_title": ("title", "jobTitle", "position"),
    "company_name": ("company", "companyName", "employer", "company.name"),
    "location": ("location", "jobLocation", "place"),
    "description": ("description", "descriptionText", "jobDescription"),
    "source_url": ("url", "link", "jobUrl", "applyUrl"),
    "salary": ("salary", "salaryInfo", "compensation"),
    "posted_at": ("postedDate", "posted", "postedAt", "publishedAt"),
    "experience_level": ("experienceLevel", "experience", "seniorityLevel"),
    "work_type": ("workType", "type", "employmentType", "workplaceType"),
    "poster_name": (
        "jobPosterName",
        "postedByName",
        "recruiterName",
        "hrName",
        "contactName",
        "postedBy.name",
        "poster.name",
        "recruiter.name",
    ),
    "poster_title": (
        "jobPosterTitle",
        "postedByTitle",
        "recruiterTitle",
        "postedBy.title",
        "poster.title",
        "recruiter.title",
    ),
    "poster_url": (
        "jobPosterUrl",
        "postedByUrl",
        "recruiterUrl",
        "hrUrl",
        "contactUrl",
        "postedBy.url",
        "poster.url",
        "recruiter.profileUrl",
    ),
}

FIELD_DEFAULTS = {
    "job_title": UNKNOWN_POSITION,
    "company_name": UNKNOWN_COMPANY,
    "location": "",
    "description": "",
}


def _lookup(record: Mapping[str, Any], dotted_key: str) -> Any:
    value: Any = record
    for part in dotted_key.split("."):
        if not isinstance(value, Mapping):
            return None
        value = value.get(part)
    return value


def _coerce_text(value: Any) -> str | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None


def first_present(record: Mapping[str, Any], candidates: tuple[str, ...]) -> str | None:
    for key in candidates:
        text = _coerce_text(_lookup(record, key))
        if text is not None:
            return text
    return None


def normalize_record(record: Any, *, fallback_url: str) -> JobLead:
    """Map one raw provider record onto a fully-populated JobLead."""
    if not isinstance(record, Mapping):
        raise ProviderError(f"malformed provider payload: expected an object, got {type(record).__name__}")

    values: dict[str, str | None] = {}
    for field_name, candidates in FIELD_CANDIDATES.items():
        values[field_name] = first_present(record, candidates)
    for field_name, default in FIELD_DEFAULTS.items():
        if values[field_name] is None:
            values[field_name] = default
    if values["source_url"] is None:
        values["source_url"] = fallback_url

    return JobLead(**values)


def normalize_records(records: list[Any], *, fallback_url: str) -> list[JobLead]:
    return [normalize_record(record, fallback_url=fallback_url) for record in records]
