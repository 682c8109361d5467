from __future__ import annotations

import logging
from functools import lru_cache

from opentelemetry import trace

from jobhunter.core.errors import CredentialError, ValidationError
from jobhunter.services.credentials import NOT_CONNECTED, CredentialService, get_credential_service
from jobhunter.services.mailer import (
    Attachment,
    GmailMailer,
    OutgoingEmail,
    SendGridMailer,
    get_gmail_mailer,
    get_transactional_mailer,
)
from jobhunter.services.normalize import UNKNOWN_COMPANY, UNKNOWN_POSITION
from jobhunter.services.repository import ApplicationRecord, CredentialRecord, Repository, get_repository

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class Dispatcher:
    """Sends application emails through the owner's delegated credential.

    Without a usable credential the transactional sender is used instead, unless
    the caller demanded delegated sending. Every successful send is appended to
    the application log.
    """

    def __init__(
        self,
        *,
        repository: Repository,
        credentials: CredentialService,
        delegated: GmailMailer,
        transactional: SendGridMailer,
    ) -> None:
        self.repository = repository
        self.credentials = credentials
        self.delegated = delegated
        self.transactional = transactional

    async def send(
        self,
        *,
        owner_id: str,
        to: str,
        subject: str,
        body: str,
        attachment: Attachment | None = None,
        job_title: str | None = None,
        company_name: str | None = None,
        use_delegated: bool | None = None,
        attach_resume: bool = True,
        reply_to: str | None = None,
    ) -> ApplicationRecord:
        if not subject.strip():
            raise ValidationError("subject is required")
        if not body.strip():
            raise ValidationError("body is required")

        with tracer.start_as_current_span("dispatcher.send") as span:
            if attachment is None and attach_resume:
                attachment = await self._stored_resume(owner_id)
            email = OutgoingEmail(to=to, subject=subject, body=body, attachment=attachment, reply_to=reply_to)

            credential = await self._delegated_credential(owner_id, use_delegated=use_delegated)
            if credential is not None:
                await self.delegated.send(credential.access_token, email)
                channel = self.delegated.channel
            else:
                if not self.transactional.configured:
                    raise CredentialError(NOT_CONNECTED)
                await self.transactional.send(email)
                channel = self.transactional.channel
            span.set_attribute("dispatcher.channel", channel)
            span.set_attribute("dispatcher.attachment", attachment is not None)

            record = await self.repository.record_application(
                owner_id=owner_id,
                job_title=job_title or UNKNOWN_POSITION,
                company_name=company_name or UNKNOWN_COMPANY,
                recipient=to,
                subject=subject,
                body=body,
                channel=channel,
            )
        logger.info(
            "application sent owner_id=%s channel=%s application_id=%s attachment=%s",
            owner_id,
            channel,
            record.id,
            attachment is not None,
        )
        return record

    async def _delegated_credential(self, owner_id: str, *, use_delegated: bool | None) -> CredentialRecord | None:
        if use_delegated is False:
            return None
        try:
            return await self.credentials.ensure_fresh(owner_id)
        except CredentialError:
            if use_delegated:
                raise
            logger.info("no delegated credential owner_id=%s; using transactional sender", owner_id)
            return None

    async def _stored_resume(self, owner_id: str) -> Attachment | None:
        resume = await self.repository.get_resume(owner_id)
        if resume is None or not resume.content:
            return None
        return Attachment(file_name=resume.file_name, mime_type=resume.mime_type, content=resume.content)


@lru_cache
def get_dispatcher() -> Dispatcher:
    return Dispatcher(
        repository=get_repository(),
        credentials=get_credential_service(),
        delegated=get_gmail_mailer(),
        transactional=get_transactional_mailer(),
    )
