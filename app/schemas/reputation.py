"""Pydantic v2 schema for the reputation endpoint."""

import uuid

from pydantic import BaseModel


class ReputationResponse(BaseModel):
    user_id: uuid.UUID
    user_type: str
    total_tasks_completed: int
    total_tasks_accepted: int
    total_rejections: int
    total_disputes_filed: int
    total_disputes_lost: int
    total_cancellations: int
    total_tasks_posted: int
    jobs_completed: int
    success_rate: int | None
    agent_reliability: int | None
