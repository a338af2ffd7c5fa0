"""
SyncOrchestrator: runs one credential's sync from lock to sealed job log.

Flow for trigger(credential_id):
  1. Acquire the credential's advisory lock. If a live job holds it, return
     that job's id as a no-op (contended=True).
  2. Create SyncJobLog (RUNNING) and attach it to the lock.
  3. Decrypt the credential, pick the platform adapter, compute the cursor
     (latest successful occurred_at, but never older than the platform window).
  4. fetch_incremental, then normalize → upsert each record in order,
     counting total/success/failed/new/existing and flushing counters to
     the job row every FLUSH_EVERY items.
  5. Finalize SUCCESS / PARTIAL / FAILED, update the credential's usage and
     failure bookkeeping, and release the lock on every exit path.

No exception from a single credential escapes trigger() except
CredentialMissing for an unknown id; everything else lands on the job row.
"""
import asyncio
import logging
import time
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import httpx
from sqlmodel import Session, select

from activity_sync.adapters.base import FetchResult
from activity_sync.adapters.http import USER_AGENT, RetryPolicy
from activity_sync.adapters.registry import build_adapter
from activity_sync.config import get_settings
from activity_sync.errors import AdapterError, CredentialMissing, LockContentionError
from activity_sync.models.credential import Credential, Platform
from activity_sync.models.sync import JobStatus, SyncJobLog, TriggeredBy
from activity_sync.sync.job_logger import JobLogger
from activity_sync.sync.locks import LockTable
from activity_sync.sync.rate_limit import TokenBucket
from activity_sync.sync.store import RecordStore, UpsertOutcome
from activity_sync.vault.vault import CredentialVault, ValidationResult

logger = logging.getLogger(__name__)

FLUSH_EVERY = 25
MAX_ITEM_ERRORS = 20

# Days of history a first sync (or a sync after a long gap) looks back
PLATFORM_WINDOWS: Dict[Platform, int] = {
    Platform.STEAM: 14,
    Platform.BILIBILI: 30,
    Platform.DOUBAN: 365,
    Platform.JELLYFIN: 90,
}

# Consecutive failed jobs before a credential is auto-disabled
FAILURE_THRESHOLDS: Dict[Platform, int] = {
    Platform.DOUBAN: 5,  # cookie scraping fails transiently more often
    Platform.BILIBILI: 5,
}


@dataclass
class TriggerResult:
    job_id: Optional[int]
    status: JobStatus
    contended: bool = False
    message: Optional[str] = None


@dataclass
class JobCounters:
    total: int = 0
    success: int = 0
    failed: int = 0
    new: int = 0
    existing: int = 0
    latest_occurred_at: Optional[datetime] = None
    item_errors: List[Dict[str, Any]] = field(default_factory=list)

    def patch(self) -> Dict[str, int]:
        return {
            "items_total": self.total,
            "items_success": self.success,
            "items_failed": self.failed,
            "items_new": self.new,
            "items_existing": self.existing,
        }


def classify_outcome(counters: JobCounters, result: Optional[FetchResult]) -> JobStatus:
    """
    Terminal status for a job that ran to the end of its record stream.

      FAILED   the adapter failed outright before yielding anything
      PARTIAL  some items failed, or the adapter stopped early
      SUCCESS  otherwise
    """
    adapter_failed = result is not None and result.error is not None
    if adapter_failed and not result.partial and counters.total == 0:
        return JobStatus.FAILED
    if counters.failed > 0 or (result is not None and (result.partial or adapter_failed)):
        return JobStatus.PARTIAL
    return JobStatus.SUCCESS


def should_sync(credential: Credential, now: datetime) -> bool:
    """Whether an automatic tick should sync this credential now."""
    if not credential.auto_sync or not credential.is_valid:
        return False
    if credential.last_used_at is None:
        return True
    return now - credential.last_used_at >= credential.sync_frequency.interval


def error_details(exc: BaseException) -> Dict[str, Any]:
    details: Dict[str, Any] = {"type": type(exc).__name__}
    status_code = getattr(exc, "status_code", None)
    if status_code is not None:
        details["status_code"] = status_code
    details.update(getattr(exc, "details", None) or {})
    return details


def format_stack(exc: BaseException) -> str:
    return "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))


class SyncOrchestrator:
    """Ties vault, adapters, store, job log and locks together."""

    def __init__(
        self,
        engine,
        *,
        vault: Optional[CredentialVault] = None,
        adapter_factory: Callable[..., Any] = build_adapter,
        client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
        buckets: Optional[Dict[Platform, TokenBucket]] = None,
        policy: Optional[RetryPolicy] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
        max_workers: Optional[int] = None,
        lock_max_age: Optional[timedelta] = None,
    ):
        settings = get_settings()
        self.engine = engine
        self.vault = vault or CredentialVault()
        self.adapter_factory = adapter_factory
        self.client_factory = client_factory or self._default_client
        self.buckets: Dict[Platform, TokenBucket] = dict(buckets or {})
        self.policy = policy
        self.clock = clock
        self.max_workers = max_workers or settings.sync_max_workers
        self.jobs = JobLogger(engine)
        self.store = RecordStore(engine)
        self.locks = LockTable(
            engine,
            max_age=lock_max_age or timedelta(seconds=settings.sync_lock_max_age_seconds),
            clock=clock,
        )

    @staticmethod
    def _default_client() -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=get_settings().http_timeout_seconds,
            headers={"User-Agent": USER_AGENT},
        )

    def bucket_for(self, platform: Platform) -> TokenBucket:
        """The platform's shared bucket, created on first use."""
        if platform not in self.buckets:
            settings = get_settings()
            self.buckets[platform] = TokenBucket.per_minute(
                settings.rate_limit_per_minute, settings.rate_limit_burst,
            )
        return self.buckets[platform]

    def _adapter(self, platform: Platform, client: httpx.AsyncClient):
        return self.adapter_factory(
            platform, client, bucket=self.bucket_for(platform), policy=self.policy,
        )

    def _load_credential(self, credential_id: int) -> Credential:
        with Session(self.engine) as s:
            credential = s.get(Credential, credential_id)
        if credential is None:
            raise CredentialMissing(f"Credential {credential_id} not found")
        return credential

    # ── Manual / scheduled trigger ────────────────────────────────────────────

    async def trigger(
        self,
        credential_id: int,
        triggered_by: TriggeredBy = TriggeredBy.MANUAL,
    ) -> TriggerResult:
        """
        Sync one credential.

        Returns:
            TriggerResult with the job id and its terminal status, or with the
            already-running job's id and contended=True.

        Raises:
            CredentialMissing: if the credential id does not exist.
        """
        credential = self._load_credential(credential_id)
        try:
            token = self.locks.acquire(credential_id)
        except LockContentionError as exc:
            logger.info("Skipping credential %s: already syncing as job %s", credential_id, exc.job_id)
            return TriggerResult(job_id=exc.job_id, status=JobStatus.RUNNING, contended=True, message=str(exc))

        try:
            job = self.jobs.start(
                platform=credential.platform.value,
                credential_id=credential.id,
                triggered_by=triggered_by,
            )
            self.locks.attach(token, job.id)
            return await self._run(job, credential)
        finally:
            self.locks.release(token)

    async def _run(self, job: SyncJobLog, credential: Credential) -> TriggerResult:
        started = time.monotonic()
        counters = JobCounters()
        result: Optional[FetchResult] = None
        failure: Optional[BaseException] = None

        try:
            secret = self.vault.reveal(credential)
            since = self.cursor_for(credential)
            async with self.client_factory() as client:
                adapter = self._adapter(credential.platform, client)
                result = await adapter.fetch_incremental(secret, since)
                self._consume(job, adapter, result, counters)
        except Exception as exc:  # noqa: BLE001 - converted to a FAILED job row
            failure = exc
            logger.exception("Sync job %s for credential %s failed", job.id, credential.id)

        duration_ms = int((time.monotonic() - started) * 1000)
        if failure is not None:
            status = JobStatus.FAILED
            sealed = self._finish(
                job, counters, status, duration_ms,
                message=str(failure) or type(failure).__name__,
                error_stack=format_stack(failure),
                error_details=error_details(failure),
                result=result,
            )
        else:
            status = classify_outcome(counters, result)
            adapter_error = result.error if result else None
            sealed = self._finish(
                job, counters, status, duration_ms,
                message=self._summary(counters, adapter_error),
                error_stack=format_stack(adapter_error) if adapter_error else None,
                error_details=self._details(counters, adapter_error),
                result=result,
            )

        error = failure if failure is not None else (result.error if result else None)
        self._bookkeep(credential.id, status, error)
        return TriggerResult(job_id=sealed.id, status=sealed.status, message=sealed.message)

    def _consume(self, job: SyncJobLog, adapter, result: FetchResult, counters: JobCounters) -> None:
        """Normalize and upsert records in the order the adapter produced them."""
        for raw in result.records:
            counters.total += 1
            try:
                record = adapter.normalize(raw)
                outcome = self.store.upsert_canonical(record)
            except (KeyError, ValueError, TypeError) as exc:
                counters.failed += 1
                if len(counters.item_errors) < MAX_ITEM_ERRORS:
                    counters.item_errors.append({"error": f"{type(exc).__name__}: {exc}"})
                logger.warning("Job %s: skipping malformed %s record: %s", job.id, adapter.platform.value, exc)
                continue

            counters.success += 1
            if outcome == UpsertOutcome.NEW:
                counters.new += 1
            else:
                counters.existing += 1
            if record.occurred_at and (
                counters.latest_occurred_at is None or record.occurred_at > counters.latest_occurred_at
            ):
                counters.latest_occurred_at = record.occurred_at
            if counters.total % FLUSH_EVERY == 0:
                self.jobs.update_status(job.id, **counters.patch())

    def _finish(self, job, counters, status, duration_ms, *, message, error_stack, error_details, result):
        metrics = {
            "latest_occurred_at": (
                counters.latest_occurred_at.isoformat() if counters.latest_occurred_at else None
            ),
            "next_cursor": result.next_cursor if result else None,
            "partial": bool(result.partial) if result else False,
            "records_fetched": len(result.records) if result else 0,
        }
        return self.jobs.update_status(
            job.id,
            status=status,
            completed_at=self.clock(),
            duration=duration_ms,
            message=message,
            error_stack=error_stack,
            error_details=error_details,
            metrics=metrics,
            **counters.patch(),
        )

    @staticmethod
    def _summary(counters: JobCounters, adapter_error: Optional[AdapterError]) -> str:
        text = (
            f"Synced {counters.success}/{counters.total} items "
            f"({counters.new} new, {counters.existing} existing, {counters.failed} failed)"
        )
        if adapter_error is not None:
            text += f"; stopped early: {adapter_error}"
        return text

    @staticmethod
    def _details(counters: JobCounters, adapter_error: Optional[AdapterError]) -> Optional[Dict[str, Any]]:
        if adapter_error is None and not counters.item_errors:
            return None
        details: Dict[str, Any] = {}
        if adapter_error is not None:
            details.update(error_details(adapter_error))
        if counters.item_errors:
            details["item_errors"] = counters.item_errors
        return details

    def _bookkeep(self, credential_id: int, status: JobStatus, error: Optional[BaseException]) -> None:
        """Usage counters, failure streak, and auto-disable after repeated failure."""
        with Session(self.engine) as s:
            credential = s.get(Credential, credential_id)
            if credential is None:
                return
            now = self.clock()
            credential.usage_count += 1
            credential.last_used_at = now
            credential.updated_at = now
            if status == JobStatus.SUCCESS:
                credential.failure_count = 0
                credential.last_error = None
            elif status == JobStatus.FAILED:
                credential.failure_count += 1
                credential.last_error = str(error) if error else "Sync failed"
                threshold = FAILURE_THRESHOLDS.get(
                    credential.platform, get_settings().credential_failure_threshold,
                )
                if credential.is_valid and credential.failure_count >= threshold:
                    credential.is_valid = False
                    logger.warning(
                        "Credential %s (%s) disabled after %d consecutive failures",
                        credential.id, credential.platform.value, credential.failure_count,
                    )
            s.add(credential)
            s.commit()

    # ── Cursor ────────────────────────────────────────────────────────────────

    def cursor_for(self, credential: Credential) -> datetime:
        """Latest successful occurred_at, floored at now - platform window."""
        days = PLATFORM_WINDOWS.get(credential.platform, get_settings().sync_default_window_days)
        floor = self.clock() - timedelta(days=days)
        last = self.jobs.latest_successful(credential.id)
        raw = (last.metrics or {}).get("latest_occurred_at") if last else None
        if not raw:
            return floor
        return max(datetime.fromisoformat(raw), floor)

    # ── Validation ────────────────────────────────────────────────────────────

    async def validate_credential(self, credential_id: int) -> ValidationResult:
        """Format check plus one probe; persists is_valid / last_error."""
        credential = self._load_credential(credential_id)
        async with self.client_factory() as client:
            adapter = self._adapter(credential.platform, client)
            result = await self.vault.validate(credential, adapter)
        with Session(self.engine) as s:
            s.add(credential)
            s.commit()
        return result

    # ── Scheduling ────────────────────────────────────────────────────────────

    def due_credentials(self, now: Optional[datetime] = None) -> List[Credential]:
        now = now or self.clock()
        with Session(self.engine) as s:
            candidates = s.exec(
                select(Credential).where(Credential.auto_sync == True, Credential.is_valid == True)  # noqa: E712
            ).all()
        return [c for c in candidates if should_sync(c, now)]

    async def run_due(self, now: Optional[datetime] = None) -> List[TriggerResult]:
        """One scheduler tick: sync every due credential on a bounded worker pool."""
        due = self.due_credentials(now)
        if not due:
            logger.info("Auto-sync tick: nothing due")
            return []
        logger.info("Auto-sync tick: %d credential(s) due", len(due))
        semaphore = asyncio.Semaphore(self.max_workers)

        async def worker(credential: Credential) -> Optional[TriggerResult]:
            async with semaphore:
                try:
                    return await self.trigger(credential.id, TriggeredBy.AUTO)
                except Exception:  # noqa: BLE001 - one credential must not sink the tick
                    logger.exception("Auto-sync of credential %s crashed", credential.id)
                    return None

        results = await asyncio.gather(*(worker(c) for c in due))
        return [r for r in results if r is not None]
