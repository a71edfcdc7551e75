"""
Queue-backed transactional email.

Producers enqueue an EmailJob on the "email" queue; the email worker renders
the template and sends it through EmailService.send(). A send that exhausts
the delivery pipeline's own retries raises, which fails the job and hands it
back to the queue's retry budget.
"""
from __future__ import annotations

from typing import Any, Optional

import structlog
from pydantic import BaseModel

from channels.email_adapter import EmailService
from job_queue.models import Job, JobOptions
from job_queue.service import QueueService
from job_queue.worker import Worker, WorkerOptions
from models.schemas import (
    AccountLockedData,
    EmailJob,
    EmailType,
    EmailVerificationData,
    InvitationData,
    PasswordChangedData,
    PasswordResetData,
)

logger = structlog.get_logger().bind(module="email:jobs")

EMAIL_QUEUE = "email"
EMAIL_WORKER_CONCURRENCY = 5


class EmailJobs:
    """
    Usage:
        jobs = EmailJobs(queue_service, email_service)
        await jobs.init_worker()
        await jobs.queue_password_reset_email("ana@acme.io", "Ana", reset_url, 1)
    """

    def __init__(self, queues: QueueService, email: EmailService):
        self._queues = queues
        self._email = email
        self.queue = queues.queue(EMAIL_QUEUE, EmailJob)

    async def handle(self, job: Job[EmailJob]) -> dict[str, Any]:
        payload = job.data
        result = await self._email.send_template(
            payload.type, payload.to, payload.template_data(), org_name=payload.org_name
        )
        logger.info("email_job_completed", job_id=job.id, type=payload.type.value, to=payload.to)
        return result.to_dict()

    def _on_failed(self, job: Optional[Job[EmailJob]], error: BaseException):
        logger.error("email_job_failed",
                     job_id=job.id if job else None,
                     type=job.data.type.value if job and isinstance(job.data, EmailJob) else None,
                     error=str(error) or type(error).__name__)

    async def init_worker(self) -> Worker:
        return await self._queues.start_worker(
            EMAIL_QUEUE,
            self.handle,
            WorkerOptions(
                concurrency=EMAIL_WORKER_CONCURRENCY,
                on_failed=self._on_failed,
                payload_type=EmailJob,
            ),
        )

    async def enqueue(
        self,
        email_type: EmailType,
        to: str,
        data: BaseModel,
        org_name: Optional[str] = None,
        job_id: Optional[str] = None,
    ) -> Job[EmailJob]:
        payload = EmailJob(type=email_type, to=to, data=data.model_dump(), org_name=org_name)
        return await self.queue.add_job(payload, JobOptions(job_id=job_id) if job_id else None)

    # ── Public API ────────────────────────────────────────────

    async def queue_account_locked_email(
        self,
        to: str,
        first_name: str,
        lock_reason: str,
        support_email: str,
        unlock_at: Optional[str] = None,
        org_name: Optional[str] = None,
        job_id: Optional[str] = None,
    ) -> Job[EmailJob]:
        data = AccountLockedData(first_name=first_name, lock_reason=lock_reason,
                                 unlock_at=unlock_at, support_email=support_email)
        return await self.enqueue(EmailType.ACCOUNT_LOCKED, to, data, org_name, job_id)

    async def queue_password_reset_email(
        self,
        to: str,
        first_name: str,
        reset_url: str,
        expires_in_hours: int,
        org_name: Optional[str] = None,
        job_id: Optional[str] = None,
    ) -> Job[EmailJob]:
        data = PasswordResetData(first_name=first_name, reset_url=reset_url,
                                 expires_in_hours=expires_in_hours)
        return await self.enqueue(EmailType.PASSWORD_RESET, to, data, org_name, job_id)

    async def queue_password_changed_email(
        self,
        to: str,
        first_name: str,
        changed_at: str,
        ip_address: Optional[str] = None,
        org_name: Optional[str] = None,
        job_id: Optional[str] = None,
    ) -> Job[EmailJob]:
        data = PasswordChangedData(first_name=first_name, changed_at=changed_at, ip_address=ip_address)
        return await self.enqueue(EmailType.PASSWORD_CHANGED, to, data, org_name, job_id)

    async def queue_email_verification_email(
        self,
        to: str,
        first_name: str,
        verify_url: str,
        expires_in_hours: int,
        org_name: Optional[str] = None,
        job_id: Optional[str] = None,
    ) -> Job[EmailJob]:
        data = EmailVerificationData(first_name=first_name, verify_url=verify_url,
                                     expires_in_hours=expires_in_hours)
        return await self.enqueue(EmailType.EMAIL_VERIFICATION, to, data, org_name, job_id)

    async def queue_invitation_email(
        self,
        to: str,
        inviter_name: str,
        organization_name: str,
        invite_url: str,
        expires_in_days: int,
        role_name: str,
        job_id: Optional[str] = None,
    ) -> Job[EmailJob]:
        data = InvitationData(inviter_name=inviter_name, organization_name=organization_name,
                              invite_url=invite_url, expires_in_days=expires_in_days,
                              role_name=role_name)
        return await self.enqueue(EmailType.INVITATION, to, data, organization_name, job_id)
