"""
Remote Persistence Gateway.
Turns a validated captured form into writes against the hosted backend
(PostgREST-style REST tables plus object storage for evidence files).
Supports mock mode for development when the hosted backend is unavailable.
"""
import logging
import uuid
from typing import List, Optional
from urllib.parse import quote

import httpx

from ..core.config import settings
from ..core.exceptions import RejectedSyncError, TransientSyncError
from ..models.form import CapturedForm, EvidenceFile
from .form_validator import get_schema

logger = logging.getLogger(__name__)

BASE_TABLE = "itp_forms"
RETRYABLE_STATUS = {408, 425, 429}
MOCK_NAMESPACE = uuid.UUID("6f1c9a52-3d0e-4b8a-9a51-2f7d0c1e8b44")


def _mock_server_id(local_id: str) -> str:
    """Stable id per local record so repeated mock writes look like one row."""
    return str(uuid.uuid5(MOCK_NAMESPACE, local_id))


def _raise_for_status(resp: httpx.Response, what: str) -> None:
    if resp.is_success:
        return
    try:
        detail = resp.json().get("message") or resp.text
    except (ValueError, AttributeError):
        detail = resp.text
    message = f"{what} failed with HTTP {resp.status_code}: {detail}"
    if resp.status_code >= 500 or resp.status_code in RETRYABLE_STATUS:
        raise TransientSyncError(message)
    raise RejectedSyncError(message, status_code=resp.status_code)


class RemoteFormGateway:
    """HTTP client for the hosted ITP form tables."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        mock_mode: Optional[bool] = None,
        bucket: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.REMOTE_API_URL or "").rstrip("/")
        self.api_key = api_key if api_key is not None else settings.REMOTE_API_KEY
        self.timeout = timeout or settings.REMOTE_TIMEOUT
        self.mock_mode = settings.REMOTE_MOCK_MODE if mock_mode is None else mock_mode
        self.bucket = bucket or settings.EVIDENCE_BUCKET
        self._transport = transport

    @property
    def is_mock(self) -> bool:
        return self.mock_mode or not self.base_url

    def _headers(self) -> dict:
        headers = {}
        if self.api_key:
            headers["apikey"] = self.api_key
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            headers=self._headers(),
            transport=self._transport,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def upload_evidence(self, form: CapturedForm) -> List[EvidenceFile]:
        """Upload in-memory evidence files and return the list with URLs in their place."""
        if not form.pending_evidence:
            return list(form.evidence_files)

        uploaded = []
        try:
            async with self._client() as client:
                for f in form.evidence_files:
                    if f.is_uploaded:
                        uploaded.append(f)
                        continue
                    path = self._object_path(form, f)
                    if self.is_mock:
                        url = f"mock://{self.bucket}/{path}"
                    else:
                        resp = await client.post(
                            f"/storage/v1/object/{self.bucket}/{path}",
                            content=f.data,
                            headers={"Content-Type": f.content_type, "x-upsert": "true"},
                        )
                        _raise_for_status(resp, f"Upload of {f.name}")
                        url = f"{self.base_url}/storage/v1/object/public/{self.bucket}/{path}"
                    uploaded.append(EvidenceFile(name=f.name, content_type=f.content_type, url=url))
        except httpx.TransportError as exc:
            raise TransientSyncError(f"Evidence upload unavailable: {exc}") from exc
        return uploaded

    async def submit(self, form: CapturedForm) -> str:
        """
        Write the base form row, then the form-type detail row.
        Both writes upsert (on ``local_id`` / ``form_id``) so resending the same
        form never creates a second remote record. Returns the server id.
        """
        if self.is_mock:
            logger.debug("Using mock gateway response for %s", form.local_id)
            return _mock_server_id(form.local_id)

        schema = get_schema(form.form_type)
        try:
            async with self._client() as client:
                resp = await client.post(
                    f"/rest/v1/{BASE_TABLE}",
                    params={"on_conflict": "local_id"},
                    json=self._base_payload(form),
                    headers={"Prefer": "resolution=merge-duplicates,return=representation"},
                )
                _raise_for_status(resp, "Base form write")
                server_id = self._extract_id(resp)

                detail = form.form_fields.to_columns()
                detail["form_id"] = server_id
                resp = await client.post(
                    f"/rest/v1/{schema.table}",
                    params={"on_conflict": "form_id"},
                    json=detail,
                    headers={"Prefer": "resolution=merge-duplicates,return=minimal"},
                )
                _raise_for_status(resp, f"{schema.table} write")
        except httpx.TransportError as exc:
            raise TransientSyncError(f"Remote API unavailable: {exc}") from exc

        return server_id

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _object_path(form: CapturedForm, f: EvidenceFile) -> str:
        return "/".join(quote(p, safe="") for p in (form.project_id, form.local_id, f.name))

    @staticmethod
    def _base_payload(form: CapturedForm) -> dict:
        return {
            "form_type": form.form_type.value,
            "project_id": form.project_id,
            "inspector_name": form.inspector_name,
            "inspection_date": form.inspection_date.isoformat(),
            "inspection_status": form.inspection_status.value,
            "comments": form.comments,
            "evidence_files": [f.url for f in form.evidence_files if f.is_uploaded],
            "local_id": form.local_id,
            "organization_id": form.organization_id or settings.ORGANIZATION_ID,
        }

    @staticmethod
    def _extract_id(resp: httpx.Response) -> str:
        try:
            body = resp.json()
        except ValueError as exc:
            raise RejectedSyncError("Base form write returned no JSON body") from exc
        row = body[0] if isinstance(body, list) and body else body
        if not isinstance(row, dict) or not row.get("id"):
            raise RejectedSyncError("Base form write returned no id")
        return str(row["id"])
