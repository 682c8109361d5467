from datetime import datetime
from typing import Literal

from pydantic import EmailStr

from jobhunter.schemas.common import ApiModel

SendChannel = Literal["delegated", "transactional"]


class SendEmailRequest(ApiModel):
    to: EmailStr
    subject: str
    body: str
    job_title: str | None = None
    company_name: str | None = None
    use_delegated: bool | None = None
    attach_resume: bool = True


class SendEmailOut(ApiModel):
    success: bool = True
    channel: SendChannel


class ApplicationOut(ApiModel):
    id: str
    job_title: str
    company_name: str
    recipient: str
    subject: str
    body: str
    channel: SendChannel
    sent_at: datetime


class ResumeUpload(ApiModel):
    file_name: str
    mime_type: str = "application/octet-stream"
    content_base64: str
    resume_text: str | None = None
