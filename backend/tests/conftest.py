"""Shared fixtures: throwaway SQLite queues and a scriptable fake gateway."""
import asyncio
from datetime import date, datetime, timezone

import pytest

from siteproof.models.form import CapturedForm, FormType
from siteproof.models.form_fields import EarthworksPreconstructionFields


@pytest.fixture()
def db_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'queue.db'}"


def make_header(**overrides):
    header = {
        "project_id": "proj-1",
        "organization_id": "org-1",
        "inspector_name": "Sam Inspector",
        "inspection_date": "2026-10-01",
        "inspection_status": "pending",
        "comments": "Initial walk-through",
    }
    header.update(overrides)
    return header


def preconstruction_fields(**overrides):
    fields = {
        "approved_plans_available": True,
        "erosion_control_implemented": False,
        "start_date_advised": "2026-09-28",
    }
    fields.update(overrides)
    return fields


def make_form(created_at=None, project_id="proj-1", **overrides) -> CapturedForm:
    data = dict(
        form_type=FormType.EARTHWORKS_PRECONSTRUCTION,
        project_id=project_id,
        organization_id="org-1",
        inspector_name="Sam Inspector",
        inspection_date=date(2026, 10, 1),
        form_fields=EarthworksPreconstructionFields(
            approved_plans_available=True,
            erosion_control_implemented=True,
        ),
        created_at=created_at,
    )
    data.update(overrides)
    return CapturedForm(**data)


def ts(minute: int) -> datetime:
    return datetime(2026, 10, 1, 8, minute, tzinfo=timezone.utc)


class FakeGateway:
    """
    Records every call. ``fail`` maps local_id -> exception to raise on submit;
    ``delay`` makes each submit wait so overlapping sweeps can be observed.
    """

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.fail = {}
        self.submitted = []
        self.sent = []
        self.uploaded = []

    async def upload_evidence(self, form):
        out = []
        for f in form.evidence_files:
            if f.is_uploaded:
                out.append(f)
            else:
                self.uploaded.append((form.local_id, f.name))
                out.append(f.model_copy(update={"data": None, "url": f"https://files.test/{f.name}"}))
        return out

    async def submit(self, form):
        self.submitted.append(form.local_id)
        self.sent.append(form)
        if self.delay:
            await asyncio.sleep(self.delay)
        exc = self.fail.get(form.local_id)
        if exc is not None:
            raise exc
        return f"srv-{form.local_id}"


@pytest.fixture()
def gateway():
    return FakeGateway()

