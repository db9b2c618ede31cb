from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Union

from eduquest.models.orm import Question, QuestionType

Answer = Union[str, bool, List[str]]


def normalize(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value).strip().lower()


def as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    return list(value) if isinstance(value, (list, tuple)) else [value]


def _first(value: Any) -> str:
    values = as_list(value)
    return normalize(values[0]) if values else ""


def _match_single(correct: Any, submitted: Any) -> bool:
    return bool(_first(submitted)) and _first(submitted) == _first(correct)


def _match_set(correct: Any, submitted: Any) -> bool:
    # order-independent, no extras, no omissions; no partial credit
    wanted = {normalize(v) for v in as_list(correct)}
    given = {normalize(v) for v in as_list(submitted)}
    return bool(given) and given == wanted


def _match_true_false(correct: Any, submitted: Any) -> bool:
    return _first(submitted) in ("true", "false") and _first(submitted) == _first(correct)


MATCHERS: Dict[str, Callable[[Any, Any], bool]] = {
    QuestionType.SINGLE_CHOICE.value: _match_single,
    QuestionType.MULTIPLE_CHOICE.value: _match_set,
    QuestionType.FILL_BLANK.value: _match_single,
    QuestionType.TRUE_FALSE.value: _match_true_false,
}


def check_answer(question: Question, submitted: Answer) -> bool:
    matcher = MATCHERS.get(question.type, _match_single)
    # an array-valued key on any type still means "all of these"
    if isinstance(question.answer_correct, list) and len(question.answer_correct) > 1:
        matcher = _match_set
    return matcher(question.answer_correct, submitted)


@dataclass
class Evaluation:
    is_correct: bool
    correct_answer: Any
    explanation: Optional[str]


def evaluate(question: Question, submitted: Answer) -> Evaluation:
    """Score an answer; the canonical answer and explanation are always returned."""
    return Evaluation(
        is_correct=check_answer(question, submitted),
        correct_answer=question.answer_correct,
        explanation=question.answer_explanation,
    )
