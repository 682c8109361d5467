from fastapi import APIRouter, Depends, Query

from jobhunter.core.security import get_user_principal
from jobhunter.schemas.emails import ApplicationOut
from jobhunter.services.repository import get_repository

router = APIRouter()


@router.get("", response_model=list[ApplicationOut])
async def list_applications(
    principal=Depends(get_user_principal),
    repository=Depends(get_repository),
    limit: int = Query(default=100, ge=1, le=500),
) -> list[ApplicationOut]:
    records = await repository.list_applications(principal.owner_id, limit=limit)
    return [
        ApplicationOut(
            id=record.id,
            job_title=record.job_title,
            company_name=record.company_name,
            recipient=record.recipient,
            subject=record.subject,
            body=record.body,
            channel=record.channel,
            sent_at=record.sent_at,
        )
        for record in records
    ]
