import base64
import binascii

from fastapi import APIRouter, Depends

from jobhunter.core.errors import ValidationError
from jobhunter.core.security import get_user_principal
from jobhunter.schemas.common import SuccessOut
from jobhunter.schemas.emails import ResumeUpload
from jobhunter.services.repository import get_repository

MAX_RESUME_BYTES = 10 * 1024 * 1024

router = APIRouter()


@router.put("", response_model=SuccessOut)
async def upload_resume(
    payload: ResumeUpload,
    principal=Depends(get_user_principal),
    repository=Depends(get_repository),
) -> SuccessOut:
    try:
        content = base64.b64decode(payload.content_base64, validate=True)
    except binascii.Error as exc:
        raise ValidationError("contentBase64 is not valid base64") from exc
    if not content:
        raise ValidationError("resume file is empty")
    if len(content) > MAX_RESUME_BYTES:
        raise ValidationError("resume file exceeds 10 MiB")
    if not payload.file_name.strip():
        raise ValidationError("fileName is required")

    await repository.save_resume(
        owner_id=principal.owner_id,
        file_name=payload.file_name.strip(),
        mime_type=payload.mime_type,
        content=content,
        resume_text=payload.resume_text,
    )
    return SuccessOut()
