from fastapi import APIRouter, Depends

from jobhunter.core.security import get_user_principal
from jobhunter.schemas.emails import SendEmailOut, SendEmailRequest
from jobhunter.services.dispatcher import get_dispatcher

router = APIRouter()


@router.post("/send", response_model=SendEmailOut)
async def send_email(
    payload: SendEmailRequest,
    principal=Depends(get_user_principal),
    dispatcher=Depends(get_dispatcher),
) -> SendEmailOut:
    record = await dispatcher.send(
        owner_id=principal.owner_id,
        to=str(payload.to),
        subject=payload.subject,
        body=payload.body,
        job_title=payload.job_title,
        company_name=payload.company_name,
        use_delegated=payload.use_delegated,
        attach_resume=payload.attach_resume,
        reply_to=principal.email,
    )
    return SendEmailOut(channel=record.channel)
