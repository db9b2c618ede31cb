import json
import logging
from typing import Any, Dict, List

import redis

from eduquest.core.config import settings

logger = logging.getLogger(__name__)


class EventNotifier:
    """Fire-and-forget publisher for the achievement and daily-task subsystem.

    Events go out on a Redis pub/sub channel; the subscriber evaluates
    achievements asynchronously, so nothing is unlocked synchronously here.
    """

    def __init__(self, client: redis.Redis, channel: str = None):
        self.client = client
        self.channel = channel or settings.EVENTS_CHANNEL

    def publish(self, event_type: str, payload: Dict[str, Any]) -> bool:
        try:
            self.client.publish(self.channel, json.dumps({"type": event_type, **payload}, default=str))
            return True
        except redis.RedisError as e:
            logger.error(f"Event publish failed for {event_type}: {e}")
            return False

    def answer_submitted(self, student_id: str, question_id: int, is_correct: bool, levels_gained: int) -> Dict[str, List]:
        triggers = ["questions_answered", "daily_questions"]
        if is_correct:
            triggers += ["correct_answers", "correct_streak", "exp_earned", "gold_earned"]
        if levels_gained:
            triggers.append("level_reached")
        self.publish("answer_submitted", {
            "student_id": student_id, "question_id": question_id,
            "is_correct": is_correct, "triggers": triggers,
        })
        return {"unlocked_achievements": [], "completed_tasks": []}

    def stage_completed(self, student_id: str, stage_id: int, is_passed: bool, is_first_clear: bool) -> None:
        self.publish("stage_completed", {
            "student_id": student_id, "stage_id": stage_id,
            "is_passed": is_passed, "is_first_clear": is_first_clear,
        })
