"""Notification sink for finished work.

Delivery is somebody else's problem: this sink records a bounded queue of
notifications and logs each one. Callers treat it as fire-and-forget.
"""

from __future__ import annotations

import uuid
from collections import deque
from typing import Literal, Protocol

import structlog

from homify.models.contracts import Notification

logger = structlog.get_logger()

ResultKind = Literal["empty", "styled"]


class NotificationSink(Protocol):
    async def notify_completion(self, style: str) -> None: ...

    async def notify_download_complete(self, kind: ResultKind) -> None: ...


class QueuedNotificationSink:
    def __init__(self, max_items: int = 50) -> None:
        self._queue: deque[Notification] = deque(maxlen=max_items)

    def _push(self, notification: Notification) -> None:
        self._queue.append(notification)
        logger.info(
            "notification_queued",
            notification_id=notification.id,
            type=notification.type,
            title=notification.title,
        )

    async def notify_completion(self, style: str) -> None:
        self._push(
            Notification(
                id=f"processing_{uuid.uuid4().hex[:12]}",
                type="processing_complete",
                title="Room Styling Complete!",
                body=f"Your {style} styled room is ready to view",
                data={"style": style},
            )
        )

    async def notify_download_complete(self, kind: ResultKind) -> None:
        self._push(
            Notification(
                id=f"download_{uuid.uuid4().hex[:12]}",
                type="download_complete",
                title="Download Complete!",
                body=f"Your {kind} room image is ready",
                data={"imageType": kind},
            )
        )

    def recent(self) -> list[Notification]:
        return list(reversed(self._queue))
