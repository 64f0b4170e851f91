"""Task and audit API schemas."""

from typing import List

from pydantic import BaseModel, Field

from gateway.models import AuditEntry, Task


class RejectRequest(BaseModel):
    reason: str = Field(min_length=1)


class TaskListResponse(BaseModel):
    items: List[Task]
    skip: int
    limit: int


class AuditListResponse(BaseModel):
    items: List[AuditEntry]
    count: int
