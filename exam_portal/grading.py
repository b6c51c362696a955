from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .errors import ErrorCode, PortalError
from .schemas import AUTO_GRADED_TYPES, GradedAnswer

GRADE_THRESHOLDS = ((90, "A"), (80, "B"), (70, "C"), (60, "D"))


@dataclass
class GradingOutcome:
    total_marks: float
    earned_marks: float
    percentage: float
    graded_answers: List[GradedAnswer]

    @property
    def requires_manual_grading(self) -> bool:
        return any(a.requires_manual_grading for a in self.graded_answers)


def assign_grade(percentage: float) -> str:
    for threshold, grade in GRADE_THRESHOLDS:
        if percentage >= threshold:
            return grade
    return "F"


def percentage_of(earned: float, total: float) -> float:
    return (earned / total) * 100 if total > 0 else 0


def _normalise(value: Any) -> str:
    return str(value or "").strip().lower()


def _answer_for(answers: Mapping[Any, Optional[str]], idx: int) -> str:
    value = answers.get(str(idx), answers.get(idx))
    return "" if value is None else str(value)


def grade_submission(questions: List[Dict[str, Any]], answers: Mapping[Any, Optional[str]]) -> GradingOutcome:
    """Auto-grade multiple choice and true/false; everything else waits for an instructor."""
    total = 0.0
    earned = 0.0
    graded: List[GradedAnswer] = []

    for idx, question in enumerate(questions):
        student_answer = _answer_for(answers, idx)
        marks = float(question.get("marks") or 0)
        total += marks

        if question.get("questionType") in AUTO_GRADED_TYPES:
            is_correct = _normalise(student_answer) == _normalise(question.get("correctAnswer"))
            obtained = marks if is_correct else 0
            earned += obtained
            graded.append(GradedAnswer(
                question_index=idx,
                student_answer=student_answer,
                is_correct=is_correct,
                marks_obtained=obtained,
                max_marks=marks,
            ))
        else:
            graded.append(GradedAnswer(
                question_index=idx,
                student_answer=student_answer,
                max_marks=marks,
                requires_manual_grading=True,
            ))

    return GradingOutcome(
        total_marks=total,
        earned_marks=earned,
        percentage=percentage_of(earned, total),
        graded_answers=graded,
    )


def apply_manual_grades(
    graded_answers: List[Dict[str, Any]],
    grades: Mapping[int, Tuple[float, Optional[str]]],
    total_marks: float,
) -> Tuple[List[Dict[str, Any]], float, float, str, bool]:
    """Apply instructor marks and recompute from the full graded-answer sum.

    Returns ``(graded_answers, marks_obtained, percentage, grade, still_pending)``.
    """
    answers = [dict(a) for a in graded_answers]
    for idx, (marks, feedback) in grades.items():
        if idx < 0 or idx >= len(answers):
            raise PortalError(ErrorCode.INVALID_INPUT, f"No question at index {idx}")
        entry = answers[idx]
        max_marks = entry.get("max_marks") or 0
        if marks < 0 or marks > max_marks:
            raise PortalError(ErrorCode.INVALID_INPUT, f"Marks for question {idx} must be between 0 and {max_marks:g}")
        entry["marks_obtained"] = marks
        entry["feedback"] = feedback or ""
        entry["requires_manual_grading"] = False
        entry["is_correct"] = marks == max_marks and max_marks > 0

    obtained = sum(a.get("marks_obtained") or 0 for a in answers)
    percentage = percentage_of(obtained, total_marks)
    pending = any(a.get("requires_manual_grading") for a in answers)
    return answers, obtained, percentage, assign_grade(percentage), pending
