from datetime import datetime
from typing import Tuple

import redis

from eduquest.core.config import settings

redis_client = redis.Redis.from_url(settings.REDIS_URL, decode_responses=True)


def get_redis() -> redis.Redis:
    return redis_client


def practice_key(student_id: str, now: datetime) -> str:
    day = now.strftime("%Y%m%d")
    return f"practice:{day}:{student_id}"


def rewarded_practice_count(r: redis.Redis, student_id: str, now: datetime) -> int:
    """How many quick-practice answers earned rewards today."""
    return int(r.get(practice_key(student_id, now)) or 0)


def claim_practice_reward(r: redis.Redis, student_id: str, now: datetime, limit: int) -> Tuple[bool, int]:
    """Reserve one rewarded quick-practice answer for today.

    The counter is incremented first and the decision made on the returned
    value, so concurrent answers cannot both take the last slot. An
    over-limit claim is handed back immediately.
    """
    key = practice_key(student_id, now)
    pipe = r.pipeline()
    pipe.incr(key, 1)
    pipe.expire(key, 86400)
    count, _ = pipe.execute()
    count = int(count)
    if count > limit:
        r.decr(key, 1)
        return False, count - 1
    return True, count


def release_practice_reward(r: redis.Redis, student_id: str, now: datetime) -> None:
    r.decr(practice_key(student_id, now), 1)
