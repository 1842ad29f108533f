"""
Distribution scheduler: outbound delivery jobs with retries, timeouts,
cancellation and rate limiting.

Job lifecycle:
    queued -> sending -> sent | failed
    sending -> queued   (rate limited, or recovered after a worker died)

Delivery rules:
- Targets are delivered in insertion order; targets already recorded in
  job.results are skipped, so a re-run after a crash resumes
- Cancellation and rate limits are checked before every attempt
- Each attempt is bounded by EMAIL_SEND_TIMEOUT_SECONDS
- Transient failures are retried with exponential backoff up to
  EMAIL_MAX_RETRIES total attempts; exhaustion is a permanent failure
- Permanent failures mark the member bounced
- Only successful deliveries touch the dedup ledger
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, List, Optional
import asyncio
import httpx
import logging

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import settings
from core.exceptions import (
    DeliveryError,
    DeliveryTimeoutError,
    InvalidTransitionError,
    JobCancelledError,
    JobNotFoundError,
    PermanentDeliveryError,
    RepositoryNotFoundError,
    SnowballDisabledError,
    TransientDeliveryError,
)
from models.base import DeliveryOutcome, JobStatus, MemberStatus, TERMINAL_JOB_STATUSES
from models.distribution_job import DistributionJob
from models.member import Member
from models.repository import Repository
from snowball.collaborators import EmailTransport
from snowball.dedup import DedupLedger
from snowball.events import EventPublisher, JobCompleted
from snowball.membership import MembershipStore
from snowball.rate_limit import RateLimiter

logger = logging.getLogger(__name__)

CANCELLED = "cancelled"


# ============================================================================
# Error classification and retry policy
# ============================================================================

def classify_delivery_error(exc: BaseException) -> DeliveryError:
    """
    Map a raw transport error to a transient or permanent delivery error.

    Transient: timeouts, network errors, HTTP 429 and 5xx.
    Permanent: every other HTTP 4xx (hard bounce).
    """
    if isinstance(exc, DeliveryError):
        return exc

    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
        return DeliveryTimeoutError("Delivery attempt timed out", original_exception=exc)

    if isinstance(exc, httpx.HTTPStatusError):
        status_code = exc.response.status_code
        context = {"status_code": status_code}
        if status_code == 429 or status_code >= 500:
            return TransientDeliveryError(f"Provider returned HTTP {status_code}", context=context, original_exception=exc)
        return PermanentDeliveryError(f"Provider rejected message with HTTP {status_code}", context=context, original_exception=exc)

    if isinstance(exc, (httpx.TransportError, ConnectionError, OSError)):
        return TransientDeliveryError("Network error during delivery", original_exception=exc)

    return TransientDeliveryError(f"Unexpected delivery error: {type(exc).__name__}", original_exception=exc)


@dataclass
class RetryPolicy:
    """max_attempts counts every attempt, the first one included"""
    max_attempts: int = 3
    initial_delay: float = 60.0
    multiplier: float = 2.0
    max_delay: float = 3600.0

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.EMAIL_MAX_RETRIES,
            initial_delay=settings.EMAIL_RETRY_INITIAL_DELAY_SECONDS,
            multiplier=settings.EMAIL_RETRY_BACKOFF_MULTIPLIER,
            max_delay=settings.EMAIL_RETRY_MAX_DELAY_SECONDS,
        )

    def delay_for(self, failed_attempts: int) -> float:
        """Delay after the n-th failed attempt: min(initial * multiplier^(n-1), max)"""
        return min(self.initial_delay * (self.multiplier ** (failed_attempts - 1)), self.max_delay)


# ============================================================================
# Cancellation helpers
# ============================================================================

async def cancel_jobs_for_repository(db: AsyncSession, repository_id: str, now: Optional[datetime] = None) -> int:
    """
    Fail queued jobs and flag sending jobs for a repository. Does not commit.

    Returns the number of jobs affected.
    """
    now = now or datetime.utcnow()
    queued = await db.execute(
        update(DistributionJob)
        .where(DistributionJob.repository_id == repository_id, DistributionJob.status == JobStatus.QUEUED)
        .values(status=JobStatus.FAILED, last_error=CANCELLED, cancel_requested=True, completed_at=now)
        .execution_options(synchronize_session=False)
    )
    sending = await db.execute(
        update(DistributionJob)
        .where(DistributionJob.repository_id == repository_id, DistributionJob.status == JobStatus.SENDING)
        .values(cancel_requested=True)
        .execution_options(synchronize_session=False)
    )
    return (queued.rowcount or 0) + (sending.rowcount or 0)


# ============================================================================
# Scheduler
# ============================================================================

class DistributionScheduler:
    """
    Creates and runs distribution jobs for one database session.

    Usage:
        scheduler = DistributionScheduler(session, transport, ledger, limiter)
        jobs = await scheduler.schedule(repository_id, subject="Hello", body="<p>...</p>")
        await scheduler.run_job(jobs[0].id)
    """

    def __init__(
        self,
        db_session: AsyncSession,
        transport: EmailTransport,
        ledger: DedupLedger,
        rate_limiter: RateLimiter,
        publisher: Optional[EventPublisher] = None,
        retry_policy: Optional[RetryPolicy] = None,
        send_timeout: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.db = db_session
        self.transport = transport
        self.ledger = ledger
        self.rate_limiter = rate_limiter
        self.publisher = publisher
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self.send_timeout = send_timeout if send_timeout is not None else settings.EMAIL_SEND_TIMEOUT_SECONDS
        self.sleep = sleep
        self.members = MembershipStore(db_session)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def schedule(
        self,
        repository_id: str,
        subject: str,
        body: str,
        member_ids: Optional[List[str]] = None,
        initiated_by_user_id: Optional[str] = None,
        scheduled_at: Optional[datetime] = None,
    ) -> List[DistributionJob]:
        """
        Split deliverable members into jobs of at most max_emails_per_upload
        targets. Bounced and opted-out members are never targeted.
        """
        repository = await self.db.get(Repository, repository_id)
        if repository is None:
            raise RepositoryNotFoundError("Repository not found", context={"repository_id": repository_id})
        if repository.archived_at is not None:
            raise SnowballDisabledError("Repository is archived", context={"repository_id": repository_id})

        members = await self.members.list_deliverable(repository_id, member_ids)
        if not members:
            logger.info(f"No deliverable members for repository {repository_id}, nothing scheduled")
            return []

        batch_size = repository.max_emails_per_upload
        scheduled_at = scheduled_at or datetime.utcnow()
        jobs = []
        for i in range(0, len(members), batch_size):
            batch = members[i:i + batch_size]
            job = DistributionJob(
                repository_id=repository_id,
                initiated_by_user_id=initiated_by_user_id,
                target_member_ids=[m.id for m in batch],
                results={},
                failures={},
                subject=subject,
                body=body,
                status=JobStatus.QUEUED,
                scheduled_at=scheduled_at,
                attempt_count=0,
            )
            self.db.add(job)
            jobs.append(job)

        await self.db.commit()
        logger.info(f"Scheduled {len(jobs)} distribution jobs for {len(members)} members of repository {repository_id}")
        return jobs

    async def get_job(self, job_id: str) -> DistributionJob:
        job = await self.db.get(DistributionJob, job_id)
        if job is None:
            raise JobNotFoundError("Distribution job not found", context={"job_id": job_id})
        return job

    async def due_job_ids(self, now: Optional[datetime] = None, limit: int = 100) -> List[str]:
        now = now or datetime.utcnow()
        result = await self.db.execute(
            select(DistributionJob.id)
            .where(DistributionJob.status == JobStatus.QUEUED, DistributionJob.scheduled_at <= now)
            .order_by(DistributionJob.scheduled_at, DistributionJob.created_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def claim(self, job_id: str) -> Optional[DistributionJob]:
        """queued -> sending by conditional update; None if another worker owns the job"""
        now = datetime.utcnow()
        result = await self.db.execute(
            update(DistributionJob)
            .where(DistributionJob.id == job_id, DistributionJob.status == JobStatus.QUEUED)
            .values(status=JobStatus.SENDING, started_at=now, updated_at=now)
            .returning(DistributionJob.id)
            .execution_options(synchronize_session=False)
        )
        claimed = result.scalar_one_or_none()
        await self.db.commit()
        if claimed is None:
            return None
        return await self.db.get(DistributionJob, job_id, populate_existing=True)

    async def run_job(self, job_id: str) -> DistributionJob:
        """
        Deliver a queued job.

        Returns the job in its resulting state: sent or failed when finished,
        queued when deferred by a rate limit, unchanged when not claimable.
        """
        job = await self.claim(job_id)
        if job is None:
            existing = await self.get_job(job_id)
            logger.info(f"Job {job_id} not claimable (status={existing.status.value}), skipping")
            return existing

        repository = await self.db.get(Repository, job.repository_id)
        if repository is None:
            raise RepositoryNotFoundError("Repository not found", context={"repository_id": job.repository_id})

        logger.info(f"Running distribution job {job.id}: {len(job.target_member_ids)} targets")

        results: Dict[str, str] = dict(job.results or {})
        member_rows = await self.db.execute(select(Member).where(Member.id.in_(job.target_member_ids)))
        members = {m.id: m for m in member_rows.scalars().all()}

        for member_id in job.target_member_ids:
            if member_id in results:
                continue

            member = members.get(member_id)
            if member is None or not member.can_receive:
                results[member_id] = DeliveryOutcome.SKIPPED.value
                await self._save_results(job, results)
                continue

            try:
                outcome = await self._deliver(job, repository, member)
            except JobCancelledError as e:
                await self._finish_cancelled(job, e)
                return job
            if outcome is None:
                # Deferred; job state already persisted
                return job
            results[member_id] = outcome.value
            await self._save_results(job, results)

        return await self._finish(job, results)

    async def _deliver(self, job: DistributionJob, repository: Repository, member: Member) -> Optional[DeliveryOutcome]:
        """
        Deliver to one member with retries. None when the job was deferred by a
        rate limit; raises JobCancelledError when cancellation was requested.

        Failed attempts are counted in job.failures, so a target resumed after
        a deferral keeps its earlier attempts toward max_attempts.
        """
        failed_attempts = int((job.failures or {}).get(member.id, 0))

        while True:
            if await self._cancel_requested(job):
                raise JobCancelledError("Job cancelled", context={"job_id": job.id, "member_id": member.id})

            if failed_attempts >= self.retry_policy.max_attempts:
                error = PermanentDeliveryError(
                    "Delivery retries exhausted",
                    context={"member_id": member.id, "attempts": failed_attempts},
                )
                return await self._bounce(job, member, error)

            decision = await self.rate_limiter.acquire(repository.id, job.initiated_by_user_id)
            if not decision.allowed:
                await self._defer(job, decision.retry_after_seconds, decision.limit_name)
                return None

            job.attempt_count = (job.attempt_count or 0) + 1
            try:
                await asyncio.wait_for(
                    self.transport.send(member.email, job.subject, job.body),
                    timeout=self.send_timeout,
                )
            except Exception as e:
                error = classify_delivery_error(e)
                failed_attempts += 1
                job.failures = {**(job.failures or {}), member.id: failed_attempts}
                job.last_error = error.message[:500]

                if isinstance(error, TransientDeliveryError) and failed_attempts < self.retry_policy.max_attempts:
                    delay = self.retry_policy.delay_for(failed_attempts)
                    await self.db.commit()
                    logger.warning(
                        f"Transient delivery failure for member {member.id} in job {job.id} "
                        f"(attempt {failed_attempts}/{self.retry_policy.max_attempts}), retrying in {delay:.0f}s",
                        extra={"error_context": error.to_dict()}
                    )
                    await self.sleep(delay)
                    continue

                if isinstance(error, TransientDeliveryError):
                    error = PermanentDeliveryError(
                        "Delivery retries exhausted",
                        context={"member_id": member.id, "attempts": failed_attempts},
                        original_exception=e
                    )
                return await self._bounce(job, member, error)

            now = datetime.utcnow()
            await self.members.mark_contacted(member.id, at=now, commit=False)
            await self.ledger.touch(repository.id, member.email, now, repository.dedup_window_hours)
            await self.db.commit()
            return DeliveryOutcome.SENT

    async def _bounce(self, job: DistributionJob, member: Member, error: DeliveryError) -> DeliveryOutcome:
        await self.members.update_status(member.id, MemberStatus.BOUNCED, commit=False)
        await self.db.commit()
        logger.error(
            f"Member {member.id} bounced in job {job.id}: {error.message}",
            extra={"error_context": error.to_dict()}
        )
        return DeliveryOutcome.BOUNCED

    async def _save_results(self, job: DistributionJob, results: Dict[str, str]) -> None:
        job.results = dict(results)
        job.updated_at = datetime.utcnow()
        await self.db.commit()

    async def _cancel_requested(self, job: DistributionJob) -> bool:
        result = await self.db.execute(
            select(DistributionJob.cancel_requested).where(DistributionJob.id == job.id)
        )
        return bool(result.scalar())

    async def _defer(self, job: DistributionJob, retry_after_seconds: float, limit_name: Optional[str]) -> None:
        job.status = JobStatus.QUEUED
        job.scheduled_at = datetime.utcnow() + timedelta(seconds=retry_after_seconds)
        job.last_error = f"rate limited: {limit_name}"
        await self.db.commit()
        logger.info(f"Job {job.id} deferred until {job.scheduled_at.isoformat()} ({limit_name})")

    async def _finish_cancelled(self, job: DistributionJob, error: JobCancelledError) -> None:
        job.status = JobStatus.FAILED
        job.last_error = CANCELLED
        job.completed_at = datetime.utcnow()
        await self.db.commit()
        logger.info(f"Job {job.id} cancelled before delivering to member {error.context.get('member_id')}")
        await self._publish_completed(job)

    async def _finish(self, job: DistributionJob, results: Dict[str, str]) -> DistributionJob:
        sent = sum(1 for v in results.values() if v == DeliveryOutcome.SENT.value)
        job.status = JobStatus.SENT if sent else JobStatus.FAILED
        if sent:
            job.last_error = None
        job.completed_at = datetime.utcnow()
        await self.db.commit()
        logger.info(f"Job {job.id} finished: {job.status.value} ({sent}/{len(job.target_member_ids)} delivered)")
        await self._publish_completed(job)
        return job

    async def _publish_completed(self, job: DistributionJob) -> None:
        if self.publisher is None:
            return
        values = list((job.results or {}).values())
        await self.publisher.publish(JobCompleted(
            repository_id=job.repository_id,
            job_id=job.id,
            status=job.status.value,
            sent=values.count(DeliveryOutcome.SENT.value),
            bounced=values.count(DeliveryOutcome.BOUNCED.value),
            skipped=values.count(DeliveryOutcome.SKIPPED.value),
            last_error=job.last_error,
        ))

    # ------------------------------------------------------------------
    # Cancellation and recovery
    # ------------------------------------------------------------------

    async def cancel_job(self, job_id: str) -> DistributionJob:
        """Queued jobs fail immediately; sending jobs stop before their next attempt"""
        job = await self.get_job(job_id)
        if job.status in TERMINAL_JOB_STATUSES:
            raise InvalidTransitionError(
                "Job already finished",
                context={"entity": "job", "job_id": job_id, "from_state": job.status.value, "to_state": CANCELLED}
            )

        job.cancel_requested = True
        if job.status == JobStatus.QUEUED:
            job.status = JobStatus.FAILED
            job.last_error = CANCELLED
            job.completed_at = datetime.utcnow()
        await self.db.commit()

        logger.info(f"Cancellation requested for job {job_id} (status={job.status.value})")
        if job.status == JobStatus.FAILED:
            await self._publish_completed(job)
        return job

    async def cancel_repository_jobs(self, repository_id: str) -> int:
        affected = await cancel_jobs_for_repository(self.db, repository_id)
        await self.db.commit()
        logger.info(f"Cancelled {affected} jobs for repository {repository_id}")
        return affected

    async def recover_stale_jobs(self, older_than: Optional[timedelta] = None, now: Optional[datetime] = None) -> int:
        """Return sending jobs with no progress since older_than to queued"""
        now = now or datetime.utcnow()
        older_than = older_than or timedelta(minutes=settings.DISTRIBUTION_STALE_JOB_MINUTES)
        cutoff = now - older_than

        result = await self.db.execute(
            update(DistributionJob)
            .where(DistributionJob.status == JobStatus.SENDING, DistributionJob.updated_at < cutoff)
            .values(status=JobStatus.QUEUED, scheduled_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        recovered = result.rowcount or 0
        if recovered:
            logger.warning(f"Recovered {recovered} stale sending jobs")
        return recovered
