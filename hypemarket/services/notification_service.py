import asyncio
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Set
from uuid import UUID
from hypemarket.models.notification import Notification, NotificationEvent
from hypemarket.utils.logger import logger


class Notifier(ABC):
    """Fire-and-forget delivery of marketplace events to a user."""

    @abstractmethod
    def notify(self, user_id: UUID, event: NotificationEvent, payload: Optional[Dict[str, Any]] = None) -> None:
        ...


class NotificationService(Notifier):
    """Persists notifications from background tasks so callers never wait on delivery."""

    def __init__(self, session_factory=None):
        self._session_factory = session_factory
        self._tasks: Set[asyncio.Task] = set()

    def notify(self, user_id: UUID, event: NotificationEvent, payload: Optional[Dict[str, Any]] = None) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"No event loop, dropping notification {event} for user {user_id}")
            return

        task = loop.create_task(self._deliver(user_id, event, payload or {}))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _deliver(self, user_id: UUID, event: NotificationEvent, payload: Dict[str, Any]) -> None:
        try:
            session_factory = self._session_factory
            if session_factory is None:
                from hypemarket.database import AsyncSessionLocal
                session_factory = AsyncSessionLocal

            async with session_factory() as db:
                db.add(Notification(
                    user_id=user_id,
                    event=getattr(event, "value", event),
                    payload=_jsonable(payload),
                ))
                await db.commit()
            logger.debug(f"Notification {event} delivered to user {user_id}")
        except Exception as e:
            logger.error(f"Error delivering notification {event} to user {user_id}: {e}")

    async def drain(self) -> None:
        """Wait for in-flight deliveries, used on shutdown."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


def _jsonable(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {
        key: str(value) if isinstance(value, UUID) else getattr(value, "value", value)
        for key, value in payload.items()
    }


notification_service = NotificationService()
