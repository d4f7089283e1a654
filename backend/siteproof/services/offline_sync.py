"""
Offline Capture & Sync Service.
Lets inspectors capture ITP forms in dead zones (cuttings, basements, remote
sites) and pushes them to the hosted backend when connectivity returns.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Set

from ..core.config import settings
from ..core.exceptions import FieldViolation, NotFoundError, TransientSyncError, ValidationError
from ..models.base import utcnow
from ..models.form import CapturedForm, SyncStatus
from .form_validator import build_form
from .local_queue import LocalFormQueue
from .remote_gateway import RemoteFormGateway

logger = logging.getLogger(__name__)

SYNCED = "synced"
FAILED = "failed"
SKIPPED = "skipped"

# Re-sends allowed when the form is edited while its sync is in flight
MAX_SYNC_PASSES = 3


@dataclass
class SyncEvent:
    """Published after every sync status transition of a captured form."""
    local_id: str
    status: SyncStatus
    server_id: Optional[str] = None
    error: Optional[str] = None
    failure_kind: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)


SyncListener = Callable[[SyncEvent], None]


class OfflineSyncService:
    """
    Drains the local form queue into the remote gateway.

    Per record: pending -> in-flight -> synced | failed, and failed -> pending
    on the next sweep or an explicit retry. Only one sweep runs at a time.
    """

    def __init__(
        self,
        queue: LocalFormQueue,
        gateway: RemoteFormGateway,
        call_timeout: Optional[float] = None,
        concurrency: Optional[int] = None,
        online: Optional[bool] = None,
    ):
        self.queue = queue
        self.gateway = gateway
        self.call_timeout = call_timeout or settings.SYNC_CALL_TIMEOUT
        self.concurrency = max(1, concurrency or settings.SYNC_CONCURRENCY)
        self.online = settings.START_ONLINE if online is None else online
        self._sync_in_progress = False
        self._in_flight: Set[str] = set()
        self._auto_task: Optional[asyncio.Task] = None
        self._sweeps: Set[asyncio.Task] = set()
        self._listeners: List[SyncListener] = []

    @property
    def sync_in_progress(self) -> bool:
        return self._sync_in_progress

    @property
    def auto_sync_running(self) -> bool:
        return self._auto_task is not None and not self._auto_task.done()

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def subscribe(self, listener: SyncListener) -> SyncListener:
        self._listeners.append(listener)
        return listener

    def unsubscribe(self, listener: SyncListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _publish(self, form: CapturedForm) -> None:
        event = SyncEvent(
            local_id=form.local_id,
            status=form.sync_status,
            server_id=form.server_id,
            error=form.last_error if form.sync_status == SyncStatus.FAILED else None,
            failure_kind=form.failure_kind if form.sync_status == SyncStatus.FAILED else None,
        )
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Sync listener %r failed for %s", listener, form.local_id)

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    async def capture_form(
        self,
        form_type,
        header: Mapping,
        fields: Mapping,
        evidence: Optional[Iterable] = None,
    ) -> CapturedForm:
        """Validate and queue a new form; push it straight away when online."""
        form = build_form(form_type, header, fields, evidence)
        form.sync_status = SyncStatus.PENDING
        local_id = await self.queue.save(form)
        logger.info("Captured %s form %s", form.form_type.value, local_id)
        return await self._after_local_change(local_id)

    async def update_form(
        self,
        local_id: str,
        header: Optional[Mapping] = None,
        fields: Optional[Mapping] = None,
        evidence: Optional[Iterable] = None,
    ) -> CapturedForm:
        """Apply a local edit. The form goes back to pending so the edit is pushed."""
        existing = await self.queue.get(local_id)
        if existing is None:
            raise NotFoundError(local_id)

        merged_header = existing.model_dump(
            include={"project_id", "organization_id", "inspector_name",
                     "inspection_date", "inspection_status", "comments"}
        )
        merged_header.update(header or {})
        if fields is None:
            fields = existing.form_fields.model_dump(exclude={"form_type"})
        if evidence is None:
            evidence = existing.evidence_files

        form = build_form(existing.form_type, merged_header, fields, evidence)
        form = form.model_copy(update={
            "local_id": local_id,
            "server_id": existing.server_id,
            "created_at": existing.created_at,
            "sync_attempts": existing.sync_attempts,
            "sync_status": SyncStatus.PENDING,
        })
        await self.queue.save(form)
        return await self._after_local_change(local_id)

    async def _after_local_change(self, local_id: str) -> CapturedForm:
        form = await self.queue.get(local_id)
        self._publish(form)
        if self.online:
            await self.sync_one(form)
            form = await self.queue.get(local_id)
        return form

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def sync_one(self, form: CapturedForm) -> bool:
        """Push one form. Returns True when this call confirmed the remote write."""
        return await self._sync_one(form) == SYNCED

    async def _sync_one(self, form: CapturedForm) -> str:
        if form.local_id is None:
            form = await self.queue.get(await self.queue.save(form))
        local_id = form.local_id
        if local_id in self._in_flight:
            logger.debug("Form %s already in flight, skipping", local_id)
            return SKIPPED

        self._in_flight.add(local_id)
        try:
            for _ in range(MAX_SYNC_PASSES):
                outcome = await self._push_current(local_id)
                if outcome is not None:
                    return outcome
                logger.info("Form %s was edited while syncing, sending the newer version", local_id)
            logger.warning("Form %s kept changing during sync, left pending", local_id)
            return SKIPPED
        except NotFoundError:
            logger.warning("Form %s was deleted while syncing", local_id)
            return FAILED
        except Exception:
            logger.exception("Could not record sync outcome for form %s", local_id)
            return FAILED
        finally:
            self._in_flight.discard(local_id)

    async def _push_current(self, local_id: str) -> Optional[str]:
        """
        Send the stored version of a form. Returns None when the form was
        edited mid-flight, in which case nothing about it was marked done.
        """
        form = await self.queue.get(local_id)
        if form is None:
            raise NotFoundError(local_id)
        if form.sync_status == SyncStatus.SYNCED:
            return SKIPPED
        if form.sync_status != SyncStatus.PENDING:
            form = await self.queue.update_sync_status(local_id, SyncStatus.PENDING)
            self._publish(form)

        try:
            if form.pending_evidence:
                evidence = await self._call(self.gateway.upload_evidence(form))
                form = await self.queue.replace_evidence(local_id, evidence, expected_updated_at=form.updated_at)
                if form is None:
                    return None
            server_id = await self._call(self.gateway.submit(form))
        except NotFoundError:
            raise
        except Exception as exc:
            kind = getattr(exc, "kind", "unknown")
            logger.warning("Sync failed for form %s (%s): %s", local_id, kind, exc)
            failed = await self.queue.update_sync_status(
                local_id, SyncStatus.FAILED, error=str(exc), failure_kind=kind,
                expected_updated_at=form.updated_at,
            )
            if failed is None:
                return None
            self._publish(failed)
            return FAILED

        synced = await self.queue.update_sync_status(
            local_id, SyncStatus.SYNCED, server_id=server_id, expected_updated_at=form.updated_at
        )
        if synced is None:
            return None
        logger.info("Synced form %s as %s", local_id, server_id)
        self._publish(synced)
        return SYNCED

    async def _call(self, coro):
        try:
            return await asyncio.wait_for(coro, timeout=self.call_timeout)
        except asyncio.TimeoutError:
            raise TransientSyncError(f"Remote call timed out after {self.call_timeout}s")

    async def sync_all(self) -> Dict:
        """
        Sync every pending form and every failed form that is safe to retry.
        A second call while a sweep is running returns immediately.
        """
        results = {"synced": 0, "failed": 0, "total": 0, "skipped": True}
        if self._sync_in_progress:
            logger.debug("Sync sweep already running")
            return results
        if not self.online:
            logger.debug("Offline, sync sweep skipped")
            return results

        self._sync_in_progress = True
        try:
            forms = await self.queue.list_retryable()
            results.update(total=len(forms), skipped=False)

            if self.concurrency == 1:
                outcomes = [await self._sync_one(f) for f in forms]
            else:
                limit = asyncio.Semaphore(self.concurrency)

                async def bounded(f):
                    async with limit:
                        return await self._sync_one(f)

                # Every task finishes before the flag is released
                outcomes = await asyncio.gather(*(bounded(f) for f in forms), return_exceptions=True)
                for i, (f, outcome) in enumerate(zip(forms, outcomes)):
                    if isinstance(outcome, BaseException):
                        logger.error("Sync of form %s crashed: %r", f.local_id, outcome)
                        outcomes[i] = FAILED

            results["synced"] = outcomes.count(SYNCED)
            results["failed"] = outcomes.count(FAILED)
        finally:
            self._sync_in_progress = False

        if results["total"]:
            logger.info("Sync sweep finished: %(synced)d synced, %(failed)d failed of %(total)d", results)
        return results

    async def retry(self, local_id: str) -> CapturedForm:
        """Manual retry, including forms the server rejected."""
        form = await self.queue.get(local_id)
        if form is None:
            raise NotFoundError(local_id)
        await self.sync_one(form)
        return await self.queue.get(local_id)

    async def cleanup_synced(self, retention_days: Optional[int] = None) -> int:
        days = settings.SYNCED_RETENTION_DAYS if retention_days is None else retention_days
        if days < 0:
            raise ValidationError([FieldViolation("retention_days", "must not be negative")])
        return await self.queue.purge_synced(utcnow() - timedelta(days=days))

    async def status(self) -> Dict:
        return {
            "online": self.online,
            "auto_sync_running": self.auto_sync_running,
            "sync_in_progress": self._sync_in_progress,
            "counts": await self.queue.counts(),
        }

    # ------------------------------------------------------------------
    # Scheduling & connectivity
    # ------------------------------------------------------------------

    def start_auto_sync(self, interval_seconds: Optional[float] = None) -> None:
        """Sweep now, then every ``interval_seconds``. Needs a running event loop."""
        self.stop_auto_sync()
        interval = interval_seconds or settings.AUTO_SYNC_INTERVAL_SECONDS
        self._auto_task = asyncio.get_running_loop().create_task(self._auto_sync_loop(interval))
        logger.info("Automatic sync started (every %ss)", interval)

    def stop_auto_sync(self) -> None:
        # Cancels the timer only; a sweep already running finishes on its own
        if self._auto_task is not None:
            self._auto_task.cancel()
            self._auto_task = None
            logger.info("Automatic sync stopped")

    def set_online(self, online: bool) -> Optional[asyncio.Task]:
        """Connectivity signal. Going back online triggers a sweep while auto-sync runs."""
        was_online = self.online
        self.online = bool(online)
        if self.online != was_online:
            logger.info("Connectivity changed: %s", "online" if self.online else "offline")
        if self.online and not was_online and self.auto_sync_running:
            return self._spawn_sweep()
        return None

    async def _auto_sync_loop(self, interval: float) -> None:
        while True:
            # wait() leaves the sweep running if this loop is cancelled
            await asyncio.wait({self._spawn_sweep()})
            await asyncio.sleep(interval)

    def _spawn_sweep(self) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self.sync_all())
        self._sweeps.add(task)
        task.add_done_callback(self._sweep_done)
        return task

    def _sweep_done(self, task: asyncio.Task) -> None:
        self._sweeps.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Sync sweep failed: %s", task.exception())

    async def wait_for_sweeps(self) -> None:
        """Wait for background sweeps started by the scheduler or connectivity changes."""
        if self._sweeps:
            await asyncio.wait(set(self._sweeps))
