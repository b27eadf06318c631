"""In-app notification delivery.

Notifications are fire-and-forget: a failure to record one is logged and
never propagated to the settlement operation that triggered it. The database
notifier writes in its own session so it never joins (or breaks) the
caller's transaction.
"""

import logging
import uuid
from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.notification import Notification

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def __call__(
        self,
        user_id: uuid.UUID,
        type: str,
        title: str,
        message: str,
        link: str | None = None,
    ) -> None: ...


class DatabaseNotifier:
    """Stores notifications in the notifications table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def __call__(
        self,
        user_id: uuid.UUID,
        type: str,
        title: str,
        message: str,
        link: str | None = None,
    ) -> None:
        try:
            async with self._session_factory() as db:
                db.add(Notification(
                    notification_id=uuid.uuid4(),
                    user_id=user_id,
                    type=type,
                    title=title,
                    message=message,
                    link=link,
                ))
                await db.commit()
        except Exception:
            logger.exception("Failed to create %s notification for %s", type, user_id)
            return
        logger.info("Notification %s -> %s", type, user_id)


async def notify(
    notifier: Notifier | None,
    user_id: uuid.UUID | None,
    type: str,
    title: str,
    message: str,
    link: str | None = None,
) -> None:
    """Send through notifier if one is configured, swallowing delivery errors."""
    if notifier is None or user_id is None:
        return
    try:
        await notifier(user_id, type, title, message, link)
    except Exception:
        logger.exception("Notifier raised for %s -> %s", type, user_id)


def get_notifier() -> Notifier:
    from app.database import async_session_factory

    return DatabaseNotifier(async_session_factory)
