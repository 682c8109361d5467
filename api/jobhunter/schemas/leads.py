from typing import Any, Literal

from pydantic import computed_field

from jobhunter.schemas.common import ApiModel

VerificationStatus = Literal["valid", "catch-all", "error", "none"]

APPLICABLE_VERIFICATION_STATUSES = frozenset({"valid", "catch-all"})


def can_apply(contact_email: str | None, verification_status: str) -> bool:
    return contact_email is not None and verification_status in APPLICABLE_VERIFICATION_STATUSES


class JobLead(ApiModel):
    job_title: str
    company_name: str
    location: str
    description: str
    source_url: str
    salary: str | None = None
    posted_at: str | None = None
    experience_level: str | None = None
    work_type: str | None = None
    poster_name: str | None = None
    poster_title: str | None = None
    poster_url: str | None = None

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class EnrichedJobLead(JobLead):
    contact_email: str | None = None
    email_verification_status: VerificationStatus = "none"

    @computed_field(alias="canApply")  # type: ignore[prop-decorator]
    @property
    def can_apply(self) -> bool:
        return can_apply(self.contact_email, self.email_verification_status)

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude={"can_apply"})
