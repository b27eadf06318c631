"""Task lifecycle and dispute endpoints."""

import uuid

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.identity import get_current_user_id
from app.auth.rate_limit import check_rate_limit
from app.config import settings
from app.database import get_db
from app.models.task import PaymentMethod
from app.schemas.dispute import (
    DisputeCreate,
    DisputeResolutionResponse,
    DisputeResolve,
    DisputeResponse,
)
from app.schemas.task import ReleaseResponse, RevisionRequest, TaskAssign, TaskCreate, TaskResponse
from app.services import disputes as dispute_service
from app.services import tasks as task_service
from app.services.card_processor import CardProcessor, get_card_processor
from app.services.notifications import Notifier, get_notifier

router = APIRouter(prefix="/tasks", tags=["tasks"], dependencies=[Depends(check_rate_limit)])


@router.post("", response_model=TaskResponse, status_code=201)
async def create_task(
    data: TaskCreate,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
) -> TaskResponse:
    task = await task_service.create_task(
        db, user_id, data.title, data.budget, data.description, PaymentMethod(data.payment_method),
    )
    return TaskResponse.model_validate(task)


@router.get("/{task_id}", response_model=TaskResponse)
async def get_task(
    task_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
) -> TaskResponse:
    """Get task details. Only the agent and the assigned worker can view it."""
    task = await task_service.get_task(db, task_id)
    if user_id not in (task.agent_id, task.human_id):
        raise HTTPException(status_code=403, detail="Not a party to this task")
    return TaskResponse.model_validate(task)


@router.post("/{task_id}/assign", response_model=TaskResponse)
async def assign_task(
    task_id: uuid.UUID,
    data: TaskAssign,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    processor: CardProcessor = Depends(get_card_processor),
    notifier: Notifier = Depends(get_notifier),
) -> TaskResponse:
    """Agent assigns the task. Card tasks become an offer behind a card hold."""
    task = await task_service.assign_task(
        db, task_id, user_id, data.human_id, processor, data.deposit_tx_hash, notifier,
    )
    return TaskResponse.model_validate(task)


@router.post("/{task_id}/accept", response_model=TaskResponse)
async def accept_offer(
    task_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
) -> TaskResponse:
    task = await task_service.accept_offer(db, task_id, user_id, notifier)
    return TaskResponse.model_validate(task)


@router.post("/{task_id}/decline", response_model=TaskResponse)
async def decline_offer(
    task_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
) -> TaskResponse:
    task = await task_service.decline_offer(db, task_id, user_id, notifier)
    return TaskResponse.model_validate(task)


@router.post("/{task_id}/start", response_model=TaskResponse)
async def start_work(
    task_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    processor: CardProcessor = Depends(get_card_processor),
) -> TaskResponse:
    task = await task_service.start_work(db, task_id, user_id, processor)
    return TaskResponse.model_validate(task)


@router.post("/{task_id}/submit", response_model=TaskResponse)
async def submit_proof(
    task_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
) -> TaskResponse:
    task = await task_service.submit_proof(db, task_id, user_id, notifier)
    return TaskResponse.model_validate(task)


@router.post("/{task_id}/approve", response_model=ReleaseResponse)
async def approve_task(
    task_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
) -> ReleaseResponse:
    """Agent approves proof; payment enters the worker's 48h clearing window."""
    release = await task_service.approve_task(db, task_id, user_id, notifier)
    return ReleaseResponse.model_validate(release)


@router.post("/{task_id}/revision", response_model=TaskResponse)
async def request_revision(
    task_id: uuid.UUID,
    data: RevisionRequest | None = None,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
) -> TaskResponse:
    task = await task_service.request_revision(
        db, task_id, user_id, data.feedback if data else None, notifier,
    )
    return TaskResponse.model_validate(task)


@router.post("/{task_id}/cancel", response_model=TaskResponse)
async def cancel_task(
    task_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    processor: CardProcessor = Depends(get_card_processor),
    notifier: Notifier = Depends(get_notifier),
) -> TaskResponse:
    task = await task_service.cancel_task(db, task_id, user_id, processor, notifier=notifier)
    return TaskResponse.model_validate(task)


@router.post("/{task_id}/withdraw", response_model=TaskResponse)
async def withdraw_worker(
    task_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
) -> TaskResponse:
    """Assigned worker withdraws; the task reopens for other workers."""
    task = await task_service.withdraw_worker(db, task_id, user_id, notifier)
    return TaskResponse.model_validate(task)


@router.post("/{task_id}/dispute", response_model=DisputeResponse, status_code=201)
async def open_dispute(
    task_id: uuid.UUID,
    data: DisputeCreate,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
) -> DisputeResponse:
    dispute = await dispute_service.open_dispute(db, task_id, user_id, data.reason, notifier)
    return DisputeResponse.model_validate(dispute)


@router.post("/{task_id}/dispute/resolve", response_model=DisputeResolutionResponse)
async def resolve_dispute(
    task_id: uuid.UUID,
    data: DisputeResolve,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    processor: CardProcessor = Depends(get_card_processor),
    notifier: Notifier = Depends(get_notifier),
) -> DisputeResolutionResponse:
    """Platform support settles a dispute for the worker, the agent, or re-review."""
    if str(user_id) not in settings.dispute_admin_user_ids:
        raise HTTPException(status_code=403, detail="Only platform support can resolve disputes")
    resolution = await dispute_service.resolve_dispute(
        db, task_id, data.outcome, processor, notifier=notifier,
    )
    return DisputeResolutionResponse.model_validate(resolution)
