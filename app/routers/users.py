"""Public user reputation endpoint."""

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.errors import UserNotFoundError
from app.schemas.reputation import ReputationResponse
from app.services.reputation import get_reputation_summary

router = APIRouter(prefix="/users", tags=["users"])


@router.get("/{user_id}/reputation", response_model=ReputationResponse)
async def get_reputation(
    user_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
) -> ReputationResponse:
    """Reputation counters plus derived success rate and agent reliability."""
    summary = await get_reputation_summary(db, user_id)
    if summary is None:
        raise UserNotFoundError()
    return ReputationResponse(**summary)
