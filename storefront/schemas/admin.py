# storefront/schemas/admin.py

from typing import Literal
from pydantic import BaseModel, Field


class TaskInfo(BaseModel):
    """One task that can be triggered by hand."""
    task_name: str
    description: str


class TaskRunRequest(BaseModel):
    task_name: Literal[
        "all",
        "scan_expired_discount_codes",
        "notify_pending_leads",
        "recover_stalled_jobs",
    ]


class LeadNotifyRequest(BaseModel):
    # Empty list: every lead not notified yet
    lead_ids: list[int] = Field(default_factory=list)
    limit: int = Field(500, ge=1, le=5000)


class LeadNotifyResponse(BaseModel):
    pending: int
    queued: int
    deduplicated: int
