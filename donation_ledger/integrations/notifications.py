"""
Best-effort notification dispatch.

Notifications are fire-and-forget: they run in a detached task after the
confirmation commits, and a failure is logged but never propagated.
"""
import asyncio
from typing import Iterable, Optional, Protocol, Set

import structlog
from pydantic import BaseModel, ConfigDict
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from donation_ledger.database.connection import get_session_factory
from donation_ledger.database.models import Notification
from donation_ledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

# Strong references so detached tasks are not garbage collected mid-flight
_background_tasks: Set[asyncio.Task] = set()


class NotificationRequest(BaseModel):
    """A single notification to deliver."""

    model_config = ConfigDict(frozen=True)

    user_id: int
    title: str
    message: str
    type: str = "donation"


class NotificationDispatcher(Protocol):
    """Interface for notification delivery (in-app, email, push, ...)."""

    async def send(self, user_id: int, title: str, message: str, type: str) -> None:
        """Deliver one notification. May raise; callers treat it as best-effort."""
        ...


class DatabaseNotificationDispatcher:
    """Stores in-app notifications using its own session, outside the ledger unit."""

    def __init__(
        self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None
    ):
        self._session_factory = session_factory

    async def send(self, user_id: int, title: str, message: str, type: str) -> None:
        session_factory = self._session_factory or get_session_factory()
        async with session_factory() as db:
            db.add(
                Notification(
                    user_id=user_id,
                    title=title,
                    message=message,
                    type=type,
                    is_read=False,
                )
            )
            await db.commit()
        logger.info("notification_stored", user_id=user_id, type=type)


async def _deliver(
    dispatcher: NotificationDispatcher, requests: list[NotificationRequest]
) -> None:
    for request in requests:
        try:
            await dispatcher.send(request.user_id, request.title, request.message, request.type)
        except Exception as e:
            metrics.record_notification_failure()
            logger.error(
                "notification_dispatch_failed",
                user_id=request.user_id,
                type=request.type,
                error=str(e),
                error_type=type(e).__name__,
            )


def dispatch_detached(
    dispatcher: NotificationDispatcher, requests: Iterable[NotificationRequest]
) -> Optional[asyncio.Task]:
    """
    Schedule notifications without waiting for them.

    Args:
        dispatcher: Delivery backend
        requests: Notifications to deliver

    Returns:
        Optional[asyncio.Task]: The background task, or None if nothing to send
    """
    pending = list(requests)
    if not pending:
        return None

    task = asyncio.get_running_loop().create_task(_deliver(dispatcher, pending))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


async def drain_notifications(timeout: Optional[float] = None) -> None:
    """Wait for in-flight notification tasks (used on shutdown)."""
    loop = asyncio.get_running_loop()
    tasks = {task for task in _background_tasks if task.get_loop() is loop}
    if not tasks:
        return
    _, pending = await asyncio.wait(tasks, timeout=timeout)
    if pending:
        logger.warning("notifications_still_pending", count=len(pending))
