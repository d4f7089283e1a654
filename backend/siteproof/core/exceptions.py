"""
Error taxonomy for the offline capture & sync pipeline.

Local errors (validation, missing records) are raised to the caller.
Sync errors are raised by the remote gateway and converted into a
``failed`` sync status by the sync engine.
"""
from dataclasses import dataclass
from typing import List, Optional


class SiteProofError(Exception):
    """Base class for all domain errors."""


@dataclass(frozen=True)
class FieldViolation:
    field: str
    reason: str


class ValidationError(SiteProofError):
    """Captured data failed validation. Carries every violation found."""

    def __init__(self, violations: List[FieldViolation]):
        self.violations = list(violations)
        summary = "; ".join(f"{v.field}: {v.reason}" for v in self.violations)
        super().__init__(f"Form validation failed: {summary}")

    @property
    def field(self) -> Optional[str]:
        return self.violations[0].field if self.violations else None

    @property
    def reason(self) -> Optional[str]:
        return self.violations[0].reason if self.violations else None

    def to_list(self) -> List[dict]:
        return [{"field": v.field, "reason": v.reason} for v in self.violations]


class UnsupportedFormTypeError(SiteProofError):
    def __init__(self, form_type: str):
        self.form_type = form_type
        super().__init__(f"Unsupported form type: {form_type!r}")


class NotFoundError(SiteProofError):
    def __init__(self, local_id: str):
        self.local_id = local_id
        super().__init__(f"Captured form not found: {local_id}")


class SyncError(SiteProofError):
    """A remote write did not complete."""

    kind = "unknown"


class TransientSyncError(SyncError):
    """Network or availability failure. Safe to retry without user changes."""

    kind = "transient"


class RejectedSyncError(SyncError):
    """The server refused the data (validation or authorization)."""

    kind = "rejected"

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)
