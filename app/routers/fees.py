"""Fee schedule endpoint: public, no auth required."""

from fastapi import APIRouter

from app.services.fees import get_fee_schedule

router = APIRouter(tags=["fees"])


@router.get("/fees")
async def fee_schedule() -> dict:
    """Current fee schedule.

    The platform fee is charged once, at release, out of the escrowed amount.
    The worker's net lands in a clearing window before it can be withdrawn.
    """
    return get_fee_schedule()
