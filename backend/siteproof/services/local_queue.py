"""
Durable Local Queue.
Keeps captured forms on the device (SQLite) across restarts, independent of
network state. Keyed by ``local_id``; last writer wins per record.
"""
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy import delete, func, or_, select, update

from ..core.config import settings
from ..core.exceptions import FieldViolation, NotFoundError, ValidationError
from ..models.base import Base, generate_local_id, make_engine, make_session_factory, utcnow
from ..models.captured_form import CapturedFormRecord
from ..models.form import CapturedForm, EvidenceFile, SyncStatus

logger = logging.getLogger(__name__)

MAX_ID_ATTEMPTS = 5


def _to_form(record: CapturedFormRecord) -> CapturedForm:
    return CapturedForm(
        local_id=record.local_id,
        server_id=record.server_id,
        form_type=record.form_type,
        project_id=record.project_id,
        organization_id=record.organization_id,
        inspector_name=record.inspector_name,
        inspection_date=record.inspection_date,
        inspection_status=record.inspection_status,
        comments=record.comments,
        form_fields=record.form_fields,
        evidence_files=record.evidence_files or [],
        sync_status=record.sync_status,
        sync_attempts=record.sync_attempts or 0,
        last_error=record.last_error,
        failure_kind=record.failure_kind,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


def _dump_evidence(files: List[EvidenceFile]) -> List[dict]:
    return [f.model_dump(mode="json") for f in files]


class LocalFormQueue:
    """Async repository over the ``captured_forms`` table."""

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or settings.LOCAL_DB_URL
        self._engine = None
        self._sessions = None

    async def init(self) -> None:
        if self._engine is not None:
            return
        self._engine = make_engine(self.database_url)
        self._sessions = make_session_factory(self._engine)
        # NOTE: Alembic migrations manage upgrades of existing stores; create_all covers fresh devices
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.debug("Local form queue ready at %s", self.database_url)

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._sessions = None

    async def _session(self):
        if self._engine is None:
            await self.init()
        return self._sessions()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def save(self, form: CapturedForm) -> str:
        """Upsert a form and return the ``local_id`` used."""
        now = utcnow()
        async with await self._session() as session, session.begin():
            existing = None
            if form.local_id:
                local_id = form.local_id
                existing = await session.get(CapturedFormRecord, local_id)
            else:
                local_id = await self._new_local_id(session, form.form_type.value)

            if existing is not None:
                self._check_immutable(existing, form)
                record = existing
            else:
                record = CapturedFormRecord(local_id=local_id)
                session.add(record)

            # A save never clears an already confirmed server id
            record.server_id = form.server_id or record.server_id
            record.form_type = form.form_type.value
            record.project_id = form.project_id
            record.organization_id = form.organization_id
            record.inspector_name = form.inspector_name
            record.inspection_date = form.inspection_date
            record.inspection_status = form.inspection_status.value
            record.comments = form.comments
            record.form_fields = form.form_fields.model_dump(mode="json")
            record.evidence_files = _dump_evidence(form.evidence_files)
            record.sync_status = (form.sync_status or SyncStatus.PENDING).value
            record.sync_attempts = form.sync_attempts
            record.last_error = form.last_error
            record.failure_kind = form.failure_kind
            record.created_at = form.created_at or record.created_at or now
            # Every save yields a new version, even on a coarse clock
            if record.updated_at is not None and now <= record.updated_at:
                record.updated_at = record.updated_at + timedelta(microseconds=1)
            else:
                record.updated_at = now

        return local_id

    async def get(self, local_id: str) -> Optional[CapturedForm]:
        async with await self._session() as session:
            record = await session.get(CapturedFormRecord, local_id)
            return _to_form(record) if record is not None else None

    async def list(
        self,
        form_type: Optional[str] = None,
        project_id: Optional[str] = None,
        sync_status: Optional[str] = None,
    ) -> List[CapturedForm]:
        """All matching forms, oldest first. Filters combine with AND."""
        stmt = select(CapturedFormRecord)
        if form_type:
            stmt = stmt.where(CapturedFormRecord.form_type == getattr(form_type, "value", form_type))
        if project_id:
            stmt = stmt.where(CapturedFormRecord.project_id == project_id)
        if sync_status:
            stmt = stmt.where(CapturedFormRecord.sync_status == getattr(sync_status, "value", sync_status))
        return await self._fetch(stmt)

    async def list_unsynced(self) -> List[CapturedForm]:
        return await self.list(sync_status=SyncStatus.PENDING)

    async def list_retryable(self) -> List[CapturedForm]:
        """Pending forms plus failed ones whose failure was not a server rejection."""
        stmt = select(CapturedFormRecord).where(
            or_(
                CapturedFormRecord.sync_status == SyncStatus.PENDING.value,
                (CapturedFormRecord.sync_status == SyncStatus.FAILED.value)
                & or_(
                    CapturedFormRecord.failure_kind.is_(None),
                    CapturedFormRecord.failure_kind != "rejected",
                ),
            )
        )
        return await self._fetch(stmt)

    async def update_sync_status(
        self,
        local_id: str,
        status,
        server_id: Optional[str] = None,
        error: Optional[str] = None,
        failure_kind: Optional[str] = None,
        expected_updated_at: Optional[datetime] = None,
    ) -> Optional[CapturedForm]:
        """
        Record a sync transition.

        With ``expected_updated_at`` the transition only applies if the row is
        unchanged since that version; otherwise None is returned, the row keeps
        its status and only a confirmed ``server_id`` is stored.
        """
        status = SyncStatus(status)
        values = {"sync_status": status.value}
        if server_id:
            values["server_id"] = server_id
        if status == SyncStatus.FAILED:
            values["sync_attempts"] = func.coalesce(CapturedFormRecord.sync_attempts, 0) + 1
            values["last_error"] = error
            values["failure_kind"] = failure_kind
        elif status == SyncStatus.SYNCED:
            values["last_error"] = None
            values["failure_kind"] = None

        form = await self._apply(local_id, values, expected_updated_at)
        if form is None and server_id:
            await self._apply(local_id, {"server_id": server_id})
            logger.debug("Form %s changed while syncing; kept server id %s only", local_id, server_id)
        return form

    async def replace_evidence(
        self,
        local_id: str,
        files: List[EvidenceFile],
        expected_updated_at: Optional[datetime] = None,
    ) -> Optional[CapturedForm]:
        """Write uploaded evidence back. None if the row changed since ``expected_updated_at``."""
        return await self._apply(local_id, {"evidence_files": _dump_evidence(files)}, expected_updated_at)

    async def delete(self, local_id: str) -> None:
        async with await self._session() as session, session.begin():
            await session.execute(delete(CapturedFormRecord).where(CapturedFormRecord.local_id == local_id))

    async def purge_synced(self, older_than: datetime) -> int:
        """Remove synced forms last touched before ``older_than``."""
        async with await self._session() as session, session.begin():
            result = await session.execute(
                delete(CapturedFormRecord).where(
                    CapturedFormRecord.sync_status == SyncStatus.SYNCED.value,
                    CapturedFormRecord.updated_at < older_than,
                )
            )
            removed = result.rowcount or 0
        if removed:
            logger.info("Purged %d synced forms older than %s", removed, older_than.isoformat())
        return removed

    async def counts(self) -> Dict[str, int]:
        out = {s.value: 0 for s in SyncStatus}
        async with await self._session() as session:
            rows = await session.execute(
                select(CapturedFormRecord.sync_status, func.count()).group_by(CapturedFormRecord.sync_status)
            )
            for status, count in rows:
                out[status] = count
        return out

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _fetch(self, stmt) -> List[CapturedForm]:
        stmt = stmt.order_by(CapturedFormRecord.created_at, CapturedFormRecord.local_id)
        async with await self._session() as session:
            records = (await session.execute(stmt)).scalars().all()
            return [_to_form(r) for r in records]

    async def _apply(
        self,
        local_id: str,
        values: dict,
        expected_updated_at: Optional[datetime] = None,
    ) -> Optional[CapturedForm]:
        # Check and write happen in one statement
        stmt = update(CapturedFormRecord).where(CapturedFormRecord.local_id == local_id)
        if expected_updated_at is not None:
            stmt = stmt.where(CapturedFormRecord.updated_at == expected_updated_at)
        stmt = stmt.values(updated_at=utcnow(), **values).execution_options(synchronize_session=False)

        async with await self._session() as session, session.begin():
            result = await session.execute(stmt)
            record = await session.get(CapturedFormRecord, local_id)
            if record is None:
                raise NotFoundError(local_id)
            return _to_form(record) if result.rowcount else None

    async def _new_local_id(self, session, form_type: str) -> str:
        for _ in range(MAX_ID_ATTEMPTS):
            local_id = generate_local_id(form_type)
            if await session.get(CapturedFormRecord, local_id) is None:
                return local_id
        raise RuntimeError("Could not allocate a unique local id")

    @staticmethod
    def _check_immutable(record: CapturedFormRecord, form: CapturedForm) -> None:
        violations = []
        if record.form_type != form.form_type.value:
            violations.append(FieldViolation("form_type", "cannot change after creation"))
        if record.project_id != form.project_id:
            violations.append(FieldViolation("project_id", "cannot change after creation"))
        if violations:
            raise ValidationError(violations)
