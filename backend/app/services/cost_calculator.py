"""
Worksheet Credit Cost

1 credit per worksheet, 2 when the subject or topic needs diagrams,
doubled again above 15 questions. Pure and deterministic: the UI shows
the same number before submission that the spend endpoint charges.
"""

from typing import Optional

BASE_COST = 1
DIAGRAM_COST = 2
LARGE_WORKSHEET_THRESHOLD = 15

DIAGRAM_SUBJECTS = (
    "geometry",
    "trigonometry",
    "physics",
    "science",
    "electronics",
    "electrical",
)

DIAGRAM_TOPICS = (
    "triangle", "circle", "angle", "polygon", "shape",
    "circuit", "resistor", "voltage", "current", "ohm",
    "force", "vector", "motion", "projectile",
    "sine", "cosine", "tangent", "pythagor",
    "area", "perimeter", "volume", "coordinate",
)


def needs_diagrams(subject: Optional[str], topic: Optional[str]) -> bool:
    """Case-insensitive substring match against the diagram keywords."""
    subject_lower = (subject or "").lower()
    topic_lower = (topic or "").lower()

    if any(keyword in subject_lower for keyword in DIAGRAM_SUBJECTS):
        return True
    return any(keyword in topic_lower for keyword in DIAGRAM_TOPICS)


def get_worksheet_credit_cost(
    subject: Optional[str] = "",
    topic: Optional[str] = "",
    question_count: int = 10,
) -> int:
    cost = DIAGRAM_COST if needs_diagrams(subject, topic) else BASE_COST

    if question_count > LARGE_WORKSHEET_THRESHOLD:
        cost *= 2

    return cost
