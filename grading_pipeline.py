"""Sequential grading of a whole exam instance into one ExamResult."""

from __future__ import annotations

import os
import time
from typing import Callable, Dict, List, Mapping, Optional

from exam_models import Exam, ExamResult, GradedFeedback, round_half_up
from grader import Grader

DEFAULT_GRADING_DELAY_SEC = float(os.getenv("GRADING_DELAY_SEC") or 1.5)


def section_totals_for(exam: Exam) -> Dict[str, Dict[str, float]]:
    """Per-section {score: 0, total: sum of marks}, in first-appearance order."""
    totals: Dict[str, Dict[str, float]] = {}
    for q in exam.questions:
        entry = totals.setdefault(q.section.label, {"score": 0, "total": 0})
        entry["total"] += q.marks
    return totals


def grade_all(
    instance: Exam,
    answers: Mapping[str, str],
    on_progress: Optional[Callable[[int], None]] = None,
    *,
    grader: Optional[Grader] = None,
    delay: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
    time_taken: int = 0,
) -> ExamResult:
    """
    Grade every question in authoring order, one at a time.
    Non-MCQ questions wait `delay` seconds before the scorer is called.
    Progress is reported as done / total * 100, halves rounded up, after each question.
    """
    grader = grader or Grader()
    wait = DEFAULT_GRADING_DELAY_SEC if delay is None else delay
    questions = instance.questions
    total_questions = len(questions)

    max_score = sum(q.marks for q in questions)
    sections = section_totals_for(instance)
    feedback: List[GradedFeedback] = []
    total_score: float = 0

    for done, q in enumerate(questions, start=1):
        user_answer = answers.get(q.id) or ""
        if not q.is_mcq and wait > 0:
            sleep(wait)
        # Grader.grade never raises
        graded = grader.grade(q, user_answer, instance.language)
        awarded = graded["score"]

        total_score += awarded
        sections[q.section.label]["score"] += awarded
        feedback.append(GradedFeedback(
            question=q,
            user_answer=user_answer,
            score=awarded,
            feedback=graded["feedback"],
        ))
        if on_progress:
            on_progress(round_half_up(done / total_questions * 100))

    return ExamResult(
        exam_id=instance.id,
        subject=instance.subject,
        year=instance.year,
        score=total_score,
        max_score=max_score,
        feedback=tuple(feedback),
        section_totals=sections,
        time_taken=time_taken,
    )


__all__ = ["grade_all", "section_totals_for", "DEFAULT_GRADING_DELAY_SEC"]
