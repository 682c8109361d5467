from fastapi import APIRouter, Depends, HTTPException, Query, status

from jobhunter.core.security import get_user_principal
from jobhunter.schemas.common import SuccessOut
from jobhunter.schemas.scrape_requests import ScrapeRequestAccepted, ScrapeRequestCreate, ScrapeRequestOut
from jobhunter.services.pipeline import get_owned_request, get_pipeline_runner
from jobhunter.services.repository import RepositoryNotFoundError, ScrapeRequestRecord

router = APIRouter()


@router.post("", response_model=ScrapeRequestAccepted, status_code=status.HTTP_201_CREATED)
async def submit_scrape_request(
    payload: ScrapeRequestCreate,
    principal=Depends(get_user_principal),
    runner=Depends(get_pipeline_runner),
) -> ScrapeRequestAccepted:
    record = await runner.submit(owner_id=principal.owner_id, payload=payload)
    return ScrapeRequestAccepted(request_id=record.id)


@router.get("/{request_id}", response_model=ScrapeRequestOut)
async def get_scrape_request(
    request_id: str,
    principal=Depends(get_user_principal),
    runner=Depends(get_pipeline_runner),
    wait: float = Query(default=0.0, ge=0.0, le=30.0),
    applicable_only: bool = Query(default=False, alias="applicableOnly"),
) -> ScrapeRequestOut:
    try:
        record = await get_owned_request(runner.repository, request_id, principal.owner_id)
        if wait > 0 and not record.is_terminal and runner.is_running(request_id):
            await runner.wait(request_id, timeout=wait)
            record = await runner.repository.get_scrape_request(request_id)
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return _to_out(record, applicable_only=applicable_only)


@router.post("/{request_id}/abort", response_model=SuccessOut)
async def abort_scrape_request(
    request_id: str,
    principal=Depends(get_user_principal),
    runner=Depends(get_pipeline_runner),
) -> SuccessOut:
    try:
        await runner.abort(request_id=request_id, owner_id=principal.owner_id)
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return SuccessOut()


def _to_out(record: ScrapeRequestRecord, *, applicable_only: bool) -> ScrapeRequestOut:
    out = ScrapeRequestOut(
        id=record.id,
        status=record.status,
        results=record.raw_results,
        filtered_results=record.filtered_results,
        enriched_results=record.enriched_results,
        total_count=record.total_count,
        quality_count=record.quality_count,
        error_message=record.error_message,
        created_at=record.created_at,
        completed_at=record.completed_at,
    )
    if applicable_only:
        out.enriched_results = [lead for lead in out.enriched_results if lead.can_apply]
    return out
