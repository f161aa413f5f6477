from __future__ import annotations

import logging
from typing import Any, Callable, Protocol
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from agriqcert.domain.models import Notification
from agriqcert.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

NOTIFICATION_CERTIFICATE_ISSUED = "certificate_issued"
NOTIFICATION_CERTIFICATE_REVOKED = "certificate_revoked"


class NotificationPort(Protocol):
    async def notify(
        self,
        *,
        user_id: str,
        type: str,
        title: str,
        message: str,
        data: dict[str, Any] | None = None,
        priority: str = "normal",
    ) -> None:
        ...


class NullNotifier:
    async def notify(
        self,
        *,
        user_id: str,
        type: str,
        title: str,
        message: str,
        data: dict[str, Any] | None = None,
        priority: str = "normal",
    ) -> None:
        logger.debug("notification_dropped user_id=%s type=%s", user_id, type)


class DatabaseNotifier:
    """Writes notification rows for the farmer-facing inbox."""

    def __init__(self, session_factory: Callable[[], AsyncSession] | None = None) -> None:
        self._session_factory = session_factory or SessionLocal

    async def notify(
        self,
        *,
        user_id: str,
        type: str,
        title: str,
        message: str,
        data: dict[str, Any] | None = None,
        priority: str = "normal",
    ) -> None:
        async with self._session_factory() as session:
            try:
                session.add(
                    Notification(
                        id=uuid4().hex,
                        user_id=user_id,
                        type=type,
                        title=title,
                        message=message,
                        data_json=data or {},
                        priority=priority,
                        read=False,
                    )
                )
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                logger.warning("notification_write_failed user_id=%s type=%s", user_id, type, exc_info=exc)


async def notify_best_effort(notifier: NotificationPort, **kwargs: Any) -> None:
    # Notification failures never fail issuance or revocation.
    try:
        await notifier.notify(**kwargs)
    except Exception as exc:  # noqa: BLE001 - notifications are best-effort
        logger.warning(
            "notification_failed user_id=%s type=%s",
            kwargs.get("user_id"),
            kwargs.get("type"),
            exc_info=exc,
        )
