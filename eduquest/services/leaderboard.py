"""
Leaderboards over the profile snapshot (period ``all``) or the attempt log
(daily, weekly, monthly).

Every board has a total sort key; the current user's rank is one plus the
number of students in the same population whose key is strictly greater.
Top entries use SQL ``RANK()`` over the same key, so tied students share a
rank in both places.
"""
import calendar
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy import and_, case, func, or_, select
from sqlalchemy.orm import Session

from eduquest.core.config import settings
from eduquest.core.database import utcnow
from eduquest.core.errors import ErrorCodes, NotFoundError, ValidationError
from eduquest.models.orm import Classroom, Item, QuestionAttempt, User, class_students

TYPES = ("exp", "level", "gold", "correctRate", "questionsAnswered")
PERIODS = ("daily", "weekly", "monthly", "all")


def _minus_one_month(now: datetime) -> datetime:
    year, month = (now.year, now.month - 1) if now.month > 1 else (now.year - 1, 12)
    day = min(now.day, calendar.monthrange(year, month)[1])
    return now.replace(year=year, month=month, day=day)


def window_start(period: str, now: datetime) -> Optional[datetime]:
    if period == "daily":
        return now.replace(hour=0, minute=0, second=0, microsecond=0)
    if period == "weekly":
        return now - timedelta(days=7)
    if period == "monthly":
        return _minus_one_month(now)
    return None


def _greater(cols: Sequence, values: Sequence):
    """SQL for ``tuple(cols) > tuple(values)`` in lexicographic order."""
    clauses = []
    for i, (col, value) in enumerate(zip(cols, values)):
        clauses.append(and_(*[c == v for c, v in zip(cols[:i], values[:i])], col > value))
    return or_(*clauses)


@dataclass
class Board:
    """A ranked population: ``rows`` is a selectable with ``student_id`` plus the stat columns."""
    rows: object
    key: Tuple[str, ...]


def _profile_board(students, lb_type: str) -> Board:
    field = {
        "exp": User.exp, "level": User.level, "gold": User.gold,
        "correctRate": User.correct_rate, "questionsAnswered": User.total_questions_answered,
    }[lb_type]
    stmt = select(
        User.id.label("student_id"),
        field.label("value"),
        User.level.label("tiebreak"),
    ).where(User.role == "student")
    if students is not None:
        stmt = stmt.where(User.id.in_(students))
    return Board(rows=stmt.subquery(), key=("value", "tiebreak"))


def _attempt_board(students, lb_type: str, since: datetime) -> Board:
    attempts = func.count(QuestionAttempt.id)
    correct = func.sum(case((QuestionAttempt.is_correct.is_(True), 1), else_=0))
    stmt = (
        select(
            QuestionAttempt.student_id.label("student_id"),
            func.coalesce(func.sum(QuestionAttempt.exp_gained), 0).label("exp"),
            func.coalesce(func.sum(QuestionAttempt.gold_gained), 0).label("gold"),
            attempts.label("attempts"),
            correct.label("correct"),
            case((attempts > 0, correct * 100.0 / attempts), else_=0.0).label("correct_rate"),
        )
        .join(User, User.id == QuestionAttempt.student_id)
        .where(QuestionAttempt.created_at >= since, QuestionAttempt.skipped.is_(False), User.role == "student")
        .group_by(QuestionAttempt.student_id)
    )
    if students is not None:
        stmt = stmt.where(QuestionAttempt.student_id.in_(students))
    agg = stmt.subquery()
    if lb_type == "correctRate":
        value, tiebreak = agg.c.correct_rate, agg.c.attempts
    elif lb_type == "level":
        # the attempt log has no level history; rank by current level among active students
        value, tiebreak = User.level, agg.c.exp
    else:
        value = {"exp": agg.c.exp, "gold": agg.c.gold, "questionsAnswered": agg.c.attempts}[lb_type]
        tiebreak = User.level
    rows = (
        select(
            agg.c.student_id, value.label("value"), tiebreak.label("tiebreak"),
            agg.c.exp, agg.c.gold, agg.c.attempts, agg.c.correct, agg.c.correct_rate,
        )
        .join(User, User.id == agg.c.student_id)
        .subquery()
    )
    return Board(rows=rows, key=("value", "tiebreak"))


def _class_students(db: Session, class_id: Optional[int]):
    if class_id is None:
        return None
    if db.get(Classroom, class_id) is None:
        raise NotFoundError("Class not found", ErrorCodes.CLASS_NOT_FOUND)
    return select(class_students.c.student_id).where(class_students.c.class_id == class_id)


def _rank(db: Session, board: Board, key_values: Sequence) -> int:
    cols = [board.rows.c[k] for k in board.key]
    ahead = db.scalar(select(func.count()).select_from(board.rows).where(_greater(cols, key_values)))
    return 1 + (ahead or 0)


def _titles(db: Session, users: List[User]) -> Dict[int, dict]:
    ids = {u.equipped_items.get("title") for u in users if u.equipped_items and u.equipped_items.get("title")}
    if not ids:
        return {}
    rows = db.scalars(select(Item).where(Item.id.in_(ids)))
    return {i.id: {"id": i.id, "name": i.name, "icon": i.icon, "rarity": i.rarity} for i in rows}


def _entry(rank: int, user: User, value, extra: dict, titles: Dict[int, dict]) -> dict:
    title_id = (user.equipped_items or {}).get("title")
    return {
        "rank": rank,
        "student_id": user.id,
        "display_name": user.display_name,
        "avatar_url": user.avatar_url,
        "level": user.level,
        "value": float(value) if isinstance(value, Decimal) else value,
        "title": titles.get(title_id) if title_id else None,
        **extra,
    }


def get_leaderboard(db: Session, current_user: User, lb_type: str = "exp", period: str = "all",
                    class_id: Optional[int] = None, limit: int = None) -> dict:
    if lb_type not in TYPES:
        raise ValidationError(f"Invalid leaderboard type: {lb_type}")
    if period not in PERIODS:
        raise ValidationError(f"Invalid leaderboard period: {period}")
    if limit is None:
        limit = settings.LEADERBOARD_DEFAULT_LIMIT
    if limit < 1 or limit > settings.LEADERBOARD_MAX_LIMIT:
        raise ValidationError(f"limit must be between 1 and {settings.LEADERBOARD_MAX_LIMIT}")

    now = utcnow()
    students = _class_students(db, class_id)
    since = window_start(period, now)
    board = _profile_board(students, lb_type) if since is None else _attempt_board(students, lb_type, since)
    rows = board.rows
    order = [rows.c[k].desc() for k in board.key] + [rows.c.student_id]
    # same rank rule as _rank: tied keys share a rank
    board_rank = func.rank().over(order_by=[rows.c[k].desc() for k in board.key]).label("board_rank")
    top = db.execute(
        select(rows, User, board_rank).join(User, User.id == rows.c.student_id).order_by(*order).limit(limit)
    ).all()

    users = [r.User for r in top]
    mine = db.execute(select(rows).where(rows.c.student_id == current_user.id)).first()
    titles = _titles(db, users + [current_user])

    def extra(r) -> dict:
        if since is None:
            return {}
        return {"exp": r.exp, "gold": r.gold, "attempts": r.attempts, "correct": r.correct,
                "correct_rate": round(float(r.correct_rate), 1)}

    leaderboard = []
    for r in top:
        leaderboard.append(_entry(r.board_rank, r.User, r.value, extra(r), titles))

    if mine is not None:
        rank = _rank(db, board, [mine._mapping[k] for k in board.key])
        me = _entry(rank, current_user, mine.value, extra(mine), titles)
    elif since is not None and _in_scope(db, current_user, class_id):
        # no attempts in the window: rank with zero stats
        key = _zero_key(lb_type, current_user)
        zero = {"exp": 0, "gold": 0, "attempts": 0, "correct": 0, "correct_rate": 0.0}
        me = _entry(_rank(db, board, key), current_user, key[0], zero, titles)
    else:
        me = _entry(None, current_user, None, {}, titles)
    return {"type": lb_type, "period": period, "class_id": class_id, "leaderboard": leaderboard, "current_user": me}


def _in_scope(db: Session, user: User, class_id: Optional[int]) -> bool:
    if user.role != "student":
        return False
    if class_id is None:
        return True
    stmt = select(func.count()).select_from(class_students).where(
        class_students.c.class_id == class_id, class_students.c.student_id == user.id)
    return bool(db.scalar(stmt))


def _zero_key(lb_type: str, user: User) -> List:
    if lb_type == "correctRate":
        return [0.0, 0]
    if lb_type == "level":
        return [user.level, 0]
    return [0, user.level]


def my_ranks(db: Session, user: User) -> dict:
    """The user's all-time rank on each profile metric, with the population size."""
    total = db.scalar(select(func.count()).select_from(User).where(User.role == "student")) or 0
    out = {"total_students": total}
    for lb_type, field in (("exp", "exp"), ("level", "level"), ("gold", "gold"), ("correctRate", "correct_rate")):
        board = _profile_board(None, lb_type)
        out[field] = {"rank": _rank(db, board, [getattr(user, field), user.level]), "value": getattr(user, field)}
    return out
