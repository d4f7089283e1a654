from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from typing import Any, Dict, List, Optional
from pydantic import BaseModel
import logging

from ..models.form import CapturedForm, FormType, SyncStatus
from ..services.offline_sync import OfflineSyncService
from ..services.form_validator import FORM_SCHEMAS
from .deps import get_sync_service

logger = logging.getLogger(__name__)

router = APIRouter(tags=["forms"])


class CaptureRequest(BaseModel):
    form_type: str
    header: Dict[str, Any] = {}
    fields: Dict[str, Any] = {}
    evidence_files: List[Dict[str, Any]] = []


class UpdateRequest(BaseModel):
    header: Optional[Dict[str, Any]] = None
    fields: Optional[Dict[str, Any]] = None
    evidence_files: Optional[List[Dict[str, Any]]] = None


def form_out(form: CapturedForm) -> dict:
    """JSON view of a captured form; raw evidence bytes are not echoed back."""
    body = form.model_dump(mode="json", exclude={"evidence_files"})
    body["evidence_files"] = [
        {"name": f.name, "content_type": f.content_type, "url": f.url, "uploaded": f.is_uploaded}
        for f in form.evidence_files
    ]
    return body


@router.get("/form-types")
def list_form_types():
    """Supported inspection categories with their labels."""
    return [
        {"form_type": t.value, "label": s.label, "table": s.table}
        for t, s in FORM_SCHEMAS.items()
    ]


@router.post("/forms", status_code=status.HTTP_201_CREATED)
async def capture_form(
    payload: CaptureRequest,
    service: OfflineSyncService = Depends(get_sync_service),
):
    """
    Validate and queue a captured form.
    Invalid data is rejected with the full violation list and never queued.
    """
    form = await service.capture_form(
        payload.form_type, payload.header, payload.fields, payload.evidence_files
    )
    return form_out(form)


@router.get("/forms")
async def list_forms(
    form_type: Optional[FormType] = Query(None),
    project_id: Optional[str] = Query(None),
    sync_status: Optional[SyncStatus] = Query(None),
    service: OfflineSyncService = Depends(get_sync_service),
):
    forms = await service.queue.list(form_type=form_type, project_id=project_id, sync_status=sync_status)
    return [form_out(f) for f in forms]


@router.get("/forms/{local_id}")
async def get_form(local_id: str, service: OfflineSyncService = Depends(get_sync_service)):
    form = await service.queue.get(local_id)
    if form is None:
        raise HTTPException(status_code=404, detail="Form not found")
    return form_out(form)


@router.put("/forms/{local_id}")
async def update_form(
    local_id: str,
    payload: UpdateRequest,
    service: OfflineSyncService = Depends(get_sync_service),
):
    """Edit a queued form. Edits put the form back in the sync queue."""
    form = await service.update_form(
        local_id, header=payload.header, fields=payload.fields, evidence=payload.evidence_files
    )
    return form_out(form)


@router.delete("/forms/{local_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_form(local_id: str, service: OfflineSyncService = Depends(get_sync_service)):
    await service.queue.delete(local_id)
    logger.info("Deleted form %s", local_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/forms/{local_id}/retry")
async def retry_form(local_id: str, service: OfflineSyncService = Depends(get_sync_service)):
    """Manually retry one form, including forms the server rejected."""
    form = await service.retry(local_id)
    return form_out(form)
