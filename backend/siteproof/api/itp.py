"""ITP inspection API: completion and status derived from a partial result set."""
from fastapi import APIRouter
from typing import Dict, List, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field

from ..services.derived_state import summarise_results

router = APIRouter(prefix="/itp", tags=["itp"])


class ItemResult(BaseModel):
    # Template-specific values (measurements, photo refs) ride along as extra keys
    model_config = ConfigDict(extra="allow")

    result: Optional[Literal["pass", "fail", "na"]] = None
    notes: Optional[str] = Field(default=None, max_length=2000)


class CompletionRequest(BaseModel):
    # Sections are keyed by item or plain lists; null marks an item not yet recorded
    data: Dict[str, Union[Dict[str, Optional[ItemResult]], List[Optional[ItemResult]]]] = {}
    is_submitting: bool = False
    previous_status: Optional[str] = None


class CompletionResponse(BaseModel):
    total_items: int
    completed_items: int
    completion_percentage: int
    status: str


def _dump(record: Optional[ItemResult]):
    return record.model_dump(exclude_none=True) if record is not None else None


@router.post("/completion", response_model=CompletionResponse)
def completion(payload: CompletionRequest):
    """Completion percentage and overall status for an ITP inspection."""
    results = {
        section: (
            {item: _dump(record) for item, record in items.items()}
            if isinstance(items, dict)
            else [_dump(record) for record in items]
        )
        for section, items in payload.data.items()
    }
    return summarise_results(results, payload.is_submitting, payload.previous_status)
