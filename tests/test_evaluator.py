import pytest

from eduquest.models.orm import Question
from eduquest.services.evaluator import check_answer, evaluate


def _q(qtype, correct, **kw):
    return Question(type=qtype, difficulty="easy", content_text="?", answer_correct=correct, **kw)


@pytest.mark.parametrize("submitted,expected", [
    (["C", "A"], True),
    (["a", " c "], True),
    (["A"], False),
    (["A", "C", "D"], False),
    ([], False),
])
def test_multiple_choice_requires_exact_set(submitted, expected):
    assert check_answer(_q("multiple_choice", ["A", "C"]), submitted) is expected


def test_single_choice_is_case_and_space_insensitive():
    q = _q("single_choice", "B")
    assert check_answer(q, " b ")
    assert not check_answer(q, "C")
    assert not check_answer(q, "")


def test_true_false_compares_literals():
    q = _q("true_false", "true")
    assert check_answer(q, "true")
    assert check_answer(q, True)
    assert check_answer(q, "TRUE")
    assert not check_answer(q, "false")
    assert not check_answer(q, "yes")


def test_fill_blank_accepts_single_item_list():
    q = _q("fill_blank", "paris")
    assert check_answer(q, "Paris")
    assert check_answer(q, ["Paris"])
    assert not check_answer(q, "London")


def test_list_answer_key_on_any_type_means_all_of_them():
    q = _q("fill_blank", ["red", "blue"])
    assert check_answer(q, ["blue", "red"])
    assert not check_answer(q, "red")


def test_evaluate_always_returns_answer_and_explanation():
    q = _q("single_choice", "B", answer_explanation="Because 2 + 2 is 4")
    result = evaluate(q, "A")
    assert result.is_correct is False
    assert result.correct_answer == "B"
    assert result.explanation == "Because 2 + 2 is 4"
