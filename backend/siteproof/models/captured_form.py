from sqlalchemy import Column, String, Text, Integer, Date, JSON, Index
from .base import Base, TimestampMixin


class CapturedFormRecord(Base, TimestampMixin):
    """One inspection form captured on this device, queued for sync."""
    __tablename__ = "captured_forms"

    local_id = Column(String(200), primary_key=True)
    server_id = Column(String(100), nullable=True)  # Set once the remote write is confirmed

    form_type = Column(String(50), nullable=False, index=True)
    project_id = Column(String(100), nullable=False, index=True)
    organization_id = Column(String(100), nullable=True)

    inspector_name = Column(String(200), nullable=False)
    inspection_date = Column(Date, nullable=False)
    inspection_status = Column(String(20), nullable=False, default="pending")  # pending, approved, rejected
    comments = Column(Text, nullable=True)

    # Type-specific fields, JSON-dumped from the form type's schema
    form_fields = Column(JSON, nullable=False, default=dict)
    # [{name, content_type, data (base64) | url}]
    evidence_files = Column(JSON, nullable=False, default=list)

    sync_status = Column(String(20), nullable=False, default="pending", index=True)  # pending, synced, failed
    sync_attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    failure_kind = Column(String(20), nullable=True)  # transient, rejected

    __table_args__ = (
        Index("ix_captured_forms_sweep", "sync_status", "created_at"),
    )
