from datetime import datetime, timezone
from enum import Enum
import json
import logging

import redis

from ..core.config import settings

logger = logging.getLogger(__name__)

class NotificationEvent(str, Enum):
    CREATED = "created"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    RESCHEDULED = "rescheduled"
    COMPLETED = "completed"
    NO_SHOW = "no-show"
    REMINDER = "reminder"

class NotificationDispatcher:
    """
    Queue appointment events for the notification worker.

    Dispatch is fire-and-forget: a Redis failure is logged and dropped so the
    scheduling operation that triggered it still succeeds.
    """

    def __init__(self, redis_client, queue_name: str = None):
        self.redis = redis_client
        self.queue_name = queue_name or settings.NOTIFICATION_QUEUE

    def dispatch(self, appointment_id: int, event: NotificationEvent) -> bool:
        payload = json.dumps({
            "appointment_id": appointment_id,
            "event": NotificationEvent(event).value,
            "created_at": datetime.now(timezone.utc).isoformat(),
        })
        try:
            self.redis.lpush(self.queue_name, payload)
        except redis.RedisError as exc:
            logger.warning(
                f"Failed to queue '{NotificationEvent(event).value}' notification "
                f"for appointment {appointment_id}: {exc}"
            )
            return False

        logger.info(f"Queued '{NotificationEvent(event).value}' notification for appointment {appointment_id}")
        return True
