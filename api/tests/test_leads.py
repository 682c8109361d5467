import pytest

from jobhunter.schemas.leads import EnrichedJobLead, can_apply


@pytest.mark.parametrize(
    ("email", "status", "expected"),
    [
        ("hr@acme.test", "valid", True),
        ("hr@acme.test", "catch-all", True),
        ("hr@acme.test", "error", False),
        ("hr@acme.test", "none", False),
        (None, "valid", False),
        (None, "none", False),
    ],
)
def test_can_apply_rule(email: str | None, status: str, expected: bool) -> None:
    assert can_apply(email, status) is expected


def test_enriched_lead_serializes_can_apply_but_does_not_store_it() -> None:
    lead = EnrichedJobLead(
        job_title="SRE",
        company_name="Acme",
        location="Remote",
        description="",
        source_url="https://www.linkedin.com/jobs/view/1",
        contact_email="hr@acme.test",
        email_verification_status="catch-all",
    )

    wire = lead.model_dump(by_alias=True)
    assert wire["canApply"] is True
    assert wire["contactEmail"] == "hr@acme.test"
    assert "can_apply" not in lead.to_record()

    restored = EnrichedJobLead.model_validate({**lead.to_record(), "can_apply": False})
    assert restored.can_apply is True
