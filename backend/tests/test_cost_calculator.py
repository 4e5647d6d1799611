import pytest

from app.services.cost_calculator import get_worksheet_credit_cost, needs_diagrams


@pytest.mark.parametrize(
    "subject,topic,question_count,expected",
    [
        ("Geometry", "Triangles", 10, 2),
        ("Geometry", "Triangles", 20, 4),
        ("Math", "Algebra", 10, 1),
        ("math", "algebra", 20, 2),
    ],
)
def test_worksheet_cost(subject, topic, question_count, expected):
    assert get_worksheet_credit_cost(subject, topic, question_count) == expected


def test_threshold_is_strictly_above_fifteen():
    assert get_worksheet_credit_cost("History", "Romans", 15) == 1
    assert get_worksheet_credit_cost("History", "Romans", 16) == 2


def test_topic_keywords_match_substrings_case_insensitively():
    assert needs_diagrams("Algebra", "PYTHAGOREAN theorem")
    assert needs_diagrams("", "Ohm's law")
    assert not needs_diagrams("English", "Poetry")


def test_missing_inputs_are_treated_as_empty():
    assert get_worksheet_credit_cost(None, None) == 1
    assert get_worksheet_credit_cost() == 1


def test_cost_never_exceeds_four():
    assert get_worksheet_credit_cost("Physics", "Projectile motion", 100) == 4
