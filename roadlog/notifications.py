import asyncio
import json
import time
from typing import Protocol

from roadlog.logging_config import get_logger
from roadlog.variables import NOTIFY_STREAM

logger = get_logger("notifications", "notifications.log")


class NotificationSink(Protocol):
    async def show(self, notif_id: int, title: str, body: str) -> bool: ...


class LogNotificationSink:
    """Writes notifications to the log only."""

    async def show(self, notif_id: int, title: str, body: str) -> bool:
        logger.info(f"[notify] #{notif_id} {title} - {body}")
        return True


class RedisNotificationSink:
    """
    Queues notifications on a redis stream for the device to display.
    Fire-and-forget: returns False instead of raising.
    """

    def __init__(self, redis_client, stream: str = NOTIFY_STREAM):
        self._r = redis_client
        self._stream = stream

    async def show(self, notif_id: int, title: str, body: str) -> bool:
        payload = json.dumps({"id": notif_id, "title": title, "body": body}, ensure_ascii=False)
        try:
            await asyncio.get_running_loop().run_in_executor(
                None,
                lambda: self._r.xadd(self._stream, {"ts": time.time(), "data": payload}, maxlen=200, approximate=True),
            )
        except Exception as e:
            logger.warning(f"[notify] Failed to queue notification #{notif_id}: {e!r}")
            return False
        logger.info(f"[notify] Notification queued: {title} - {body}")
        return True
