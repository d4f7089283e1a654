import base64
from datetime import date, datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_serializer, field_validator, model_validator

from .form_fields import FormFields


class FormType(str, Enum):
    EARTHWORKS_PRECONSTRUCTION = "earthworks_preconstruction"
    EARTHWORKS_SUBGRADE = "earthworks_subgrade"
    ROAD_SERVICES = "road_services"
    BASECOURSE = "basecourse"
    ASPHALT_SEAL = "asphalt_seal"
    SIGNS_LINEMARKING = "signs_linemarking"
    DRAINAGE_PRECONSTRUCTION = "drainage_preconstruction"
    DRAINAGE_EXCAVATION = "drainage_excavation"
    DRAINAGE_BACKFILL = "drainage_backfill"
    DRAINAGE_PITS = "drainage_pits"
    SUBSOIL_DRAINAGE = "subsoil_drainage"
    CONCRETE_PREPLACEMENT = "concrete_preplacement"
    CONCRETE_PLACEMENT = "concrete_placement"
    CONCRETE_CURING = "concrete_curing"


class InspectionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class SyncStatus(str, Enum):
    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"


class EvidenceFile(BaseModel):
    """A photo or document attached to a form: raw bytes until uploaded, then a URL."""
    name: str = Field(min_length=1, max_length=255)
    content_type: str = "application/octet-stream"
    data: Optional[bytes] = None
    url: Optional[str] = None

    @field_validator("data", mode="before")
    @classmethod
    def _decode_base64(cls, value):
        # Stored and transported as base64 text
        if isinstance(value, str):
            return base64.b64decode(value)
        return value

    @field_serializer("data", when_used="json")
    def _encode_base64(self, value: Optional[bytes]) -> Optional[str]:
        if value is None:
            return None
        return base64.b64encode(value).decode("ascii")

    @model_validator(mode="after")
    def _exactly_one_source(self):
        if (self.data is None) == (self.url is None):
            raise ValueError("evidence file needs exactly one of data or url")
        return self

    @property
    def is_uploaded(self) -> bool:
        return self.url is not None


class CapturedForm(BaseModel):
    """A single inspection submission captured on a device."""
    local_id: Optional[str] = None
    server_id: Optional[str] = None
    form_type: FormType
    project_id: str = Field(min_length=1)
    organization_id: Optional[str] = None
    inspector_name: str = Field(min_length=1, max_length=200)
    inspection_date: date
    inspection_status: InspectionStatus = InspectionStatus.PENDING
    comments: Optional[str] = Field(default=None, max_length=2000)
    form_fields: FormFields
    evidence_files: List[EvidenceFile] = []

    sync_status: Optional[SyncStatus] = None
    sync_attempts: int = 0
    last_error: Optional[str] = None
    failure_kind: Optional[str] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _fields_match_form_type(self):
        if self.form_fields.form_type != self.form_type.value:
            raise ValueError(
                f"form_fields are for {self.form_fields.form_type!r}, not {self.form_type.value!r}"
            )
        return self

    @property
    def pending_evidence(self) -> List[EvidenceFile]:
        return [f for f in self.evidence_files if not f.is_uploaded]
