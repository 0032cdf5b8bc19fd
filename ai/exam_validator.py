# =============================================================================
# ai/exam_validator.py - CAPS Exam Validation
# =============================================================================
# Validates exam papers produced by the generate_caps_exam tool, and the
# interactive exam questions rendered by the clients.
#
# Exam papers are rejected when a question:
# - is too short to be self-contained (10 chars for Grade R-3, 20 otherwise)
# - points at a picture/diagram/table that isn't in the text
# - has no action verb telling the learner what to do
#
# Questions may mention visuals when they carry a `diagram` object, or when
# the text itself holds the data (e.g. "Jan: 120; Feb: 150; Mar: 180;").
# =============================================================================

from __future__ import annotations

import re
from typing import Any

from lib.utils import ApplicationError


class ExamValidationError(ApplicationError):
    """An exam payload failed validation. The message is shown to Claude."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message,
            code="EXAM_VALIDATION_ERROR",
            suggestion="Rewrite the question with text-only data and a clear action verb",
            details=details,
        )


# =============================================================================
# Patterns
# =============================================================================

FOUNDATION_PHASE = re.compile(r"\b(r|grade r|1|2|3|grade 1|grade 2|grade 3)\b", re.IGNORECASE)

_KEY_VALUE = re.compile(r"([a-z][a-z\- ]{1,20})\s*[:=]\s*\d+(\.\d+)?\s*(;|,|\n)")
_NUMERIC_SERIES = re.compile(r"\b\d+(\.\d+)?\b\s*(,|;|\n)\s*\b\d+(\.\d+)?\b")
_DASH_ROW = re.compile(r"([a-z][a-z\- ]{1,20})\s*[-:]\s*\d+(\.\d+)?\s*(;|,|\n)", re.IGNORECASE)

HARD_BAN_PHRASES = (
    "refer to the diagram", "see the diagram", "diagram below", "diagram above",
    "refer to the chart", "see the chart", "chart below", "chart above",
    "see the picture", "picture below", "image below", "image above",
    "figure below", "figure above",
    "as shown in the figure", "as shown in the diagram",
)

_GENERIC_VISUAL = re.compile(r"(diagram|picture|image|illustration|graph)", re.IGNORECASE)

FOUNDATION_VERBS = re.compile(
    r"\b(count|circle|match|choose|select|find|name|list|show|draw|color|colour|write|"
    r"identify|point|tick|cross|trace|cut|paste|measure|sort|group|build|make|complete|"
    r"fill|change|correct|rewrite)\b",
    re.IGNORECASE,
)

STANDARD_VERBS = re.compile(
    r"\b(calculate|compute|simplify|solve|list|identify|name|describe|explain|compare|"
    r"choose|select|find|determine|evaluate|analyze|analyse|write|state|give|show|"
    r"classify|match|order|arrange|label|prove|derive|expand|factorise|factorize|convert|"
    r"graph|plot|sketch|measure|estimate|construct|complete|continue|extend|fill|rewrite|"
    r"correct|edit|change|transform|translate|rephrase|paraphrase|summarize|summarise|"
    r"underline|highlight|justify|define|discuss|outline|illustrate)\b",
    re.IGNORECASE,
)

_MARKS = re.compile(r"\[(\d+)\]|\((\d+)\s*marks?\)", re.IGNORECASE)

DIAGRAM_TYPES = {"bar", "line", "pie", "mermaid", "svg", "image"}


# =============================================================================
# Text Checks
# =============================================================================

def is_foundation_phase(grade: Any) -> bool:
    """Grade R to 3. Accepts "R", "3", "Grade 2" and tool enums like "grade_1"."""
    grade_str = str(grade).lower().replace("_", " ")
    return FOUNDATION_PHASE.search(grade_str) is not None


def has_textual_dataset(text: str) -> bool:
    """True if the text carries its own data (key/value pairs, a number series, or dash rows)."""
    t = (text or "").lower()
    kv_matches = len(_KEY_VALUE.findall(t))
    return kv_matches >= 2 or bool(_NUMERIC_SERIES.search(t)) or bool(_DASH_ROW.search(t))


def is_visual_reference(text: str) -> bool:
    """True if the text depends on a picture or figure the learner won't see."""
    t = (text or "").lower()

    if any(phrase in t for phrase in HARD_BAN_PHRASES):
        return True

    # "table" is only acceptable when the table's data is in the text
    if "table" in t and not has_textual_dataset(t):
        return True

    if _GENERIC_VISUAL.search(t) and not has_textual_dataset(t):
        return True

    return False


def has_action_verb(text: str, foundation: bool) -> bool:
    pattern = FOUNDATION_VERBS if foundation else STANDARD_VERBS
    return pattern.search(text or "") is not None


def _has_diagram(question: dict[str, Any]) -> bool:
    diagram = question.get("diagram")
    return isinstance(diagram, dict) and bool(diagram.get("type")) and bool(diagram.get("data"))


def _sum_marks(sections: list[dict[str, Any]]) -> float:
    total = 0
    for section in sections:
        for question in section.get("questions") or []:
            try:
                total += float(question.get("marks") or 0)
            except (TypeError, ValueError):
                continue
    return int(total) if float(total).is_integer() else total


# =============================================================================
# Exam Paper Validation (generate_caps_exam)
# =============================================================================

def validate_caps_exam(payload: dict[str, Any]) -> dict[str, Any]:
    """
    Validate a generate_caps_exam tool input and return the exam.

    Args:
        payload: Tool input from Claude

    Returns:
        Exam dict: title, grade, subject, language, instructions,
        sections, totalMarks, hasMemo

    Raises:
        ExamValidationError: On the first problem found
    """
    title = payload.get("title")
    grade = payload.get("grade")
    subject = payload.get("subject")
    sections = payload.get("sections")

    missing = [name for name, value in (
        ("title", title), ("grade", grade), ("subject", subject), ("sections", sections),
    ) if not value]
    if missing:
        raise ExamValidationError(
            f"Missing required fields: {', '.join(missing)}",
            details={"missing": missing},
        )

    if not isinstance(sections, list) or len(sections) == 0:
        raise ExamValidationError("Exam must have at least one section with questions")

    total_marks = payload.get("totalMarks") or _sum_marks(sections)

    foundation = is_foundation_phase(grade)
    min_length = 10 if foundation else 20

    for section in sections:
        questions = section.get("questions") or []
        if not questions:
            raise ExamValidationError(f'Section "{section.get("title")}" has no questions')

        for question in questions:
            text = str(question.get("text") or "").strip()

            if len(text) < min_length:
                raise ExamValidationError(
                    f'Question "{text}" is too short. Questions must be complete with all data.'
                )

            if is_visual_reference(text) and not _has_diagram(question):
                raise ExamValidationError(
                    f'Question "{text[:80]}..." references visual content without providing a diagram. '
                    "Either include a diagram field OR use TEXT-ONLY data "
                    '(e.g., "Monthly sales: Jan 120; Feb 150; Mar 180;").'
                )

            if not has_action_verb(text, foundation):
                suggestion = (
                    "Count, Circle, Match, Choose, or Find"
                    if foundation
                    else "Calculate, Simplify, Solve, List, or Identify"
                )
                raise ExamValidationError(
                    f'Question "{text[:80]}..." missing clear action verb (e.g., {suggestion})'
                )

    return {
        "title": title,
        "grade": grade,
        "subject": subject,
        "language": payload.get("language") or "en-ZA",
        "instructions": payload.get("instructions") or [],
        "sections": sections,
        "totalMarks": total_marks,
        "hasMemo": False,
    }


# =============================================================================
# Interactive Question Validation
# =============================================================================

def _is_positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def validate_question(question: dict[str, Any]) -> tuple[list[str], list[str]]:
    """
    Validate one interactive exam question.

    Returns:
        (errors, warnings). Errors make the question unusable; warnings are
        advisory.
    """
    errors: list[str] = []
    warnings: list[str] = []

    if not _is_positive_int(question.get("number")):
        errors.append("Question number must be a positive integer")

    text = question.get("question")
    if not isinstance(text, str):
        errors.append("Question text must be a string")
        text = ""

    if not _is_positive_int(question.get("marks")):
        errors.append("Marks must be a positive integer")

    diagram = question.get("diagram")
    if diagram is not None:
        if not isinstance(diagram, dict) or diagram.get("type") not in DIAGRAM_TYPES:
            errors.append(f"Diagram type must be one of: {', '.join(sorted(DIAGRAM_TYPES))}")
        elif not diagram.get("data"):
            errors.append("Diagram data is required")

    stripped = text.strip()
    if stripped and len(stripped) < 20:
        warnings.append("Question text is very short")
    if stripped and stripped[-1] not in ".?!:":
        warnings.append("Question text should end with punctuation")

    return errors, warnings


def validate_exam_questions(
    questions: list[dict[str, Any]],
    expected_total: int | None = None,
) -> dict[str, Any]:
    """
    Validate a list of interactive questions.

    Returns:
        {"valid": bool, "errors": [...], "warnings": [...], "total_marks": int}
    """
    errors: list[str] = []
    warnings: list[str] = []
    total = 0

    for index, question in enumerate(questions, start=1):
        q_errors, q_warnings = validate_question(question)
        errors.extend(f"Question {index}: {e}" for e in q_errors)
        warnings.extend(f"Question {index}: {w}" for w in q_warnings)

        if question.get("number") != index:
            warnings.append(f"Question {index}: numbering is not sequential (got {question.get('number')})")

        if _is_positive_int(question.get("marks")):
            total += question["marks"]

    if expected_total is not None and total != expected_total:
        warnings.append(f"Total marks mismatch: questions add up to {total}, expected {expected_total}")

    return {
        "valid": not errors,
        "errors": errors,
        "warnings": warnings,
        "total_marks": total,
    }


def extract_marks(text: str) -> int | None:
    """Read marks from "[2]" or "(3 marks)" in question text."""
    match = _MARKS.search(text or "")
    if not match:
        return None
    return int(match.group(1) or match.group(2))
