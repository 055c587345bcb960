"""Domain models for exam templates, graded feedback and aggregate results."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class SectionType(str, Enum):
    MCQ = "Section A: Multiple Choice"
    SHORT_ANSWER = "Section B: Short Answers"
    CALCULATION = "Section C: Calculations"
    ESSAY = "Section D: Essay/Composition"
    READING = "Reading Comprehension"
    GRAMMAR = "Grammar"
    LITERATURE = "Literature"
    VOCABULARY = "Vocabulary"
    STRUCTURED = "Structured Questions"
    WRITING = "Writing"

    @property
    def label(self) -> str:
        return self.value

    @classmethod
    def parse(cls, raw: Any) -> "SectionType":
        """Accepts a member, its name ("SHORT_ANSWER", "short-answer") or its label."""
        if isinstance(raw, cls):
            return raw
        s = str(raw or "").strip()
        key = s.upper().replace("-", "_").replace(" ", "_")
        if key in cls.__members__:
            return cls.__members__[key]
        for member in cls:
            if member.value.lower() == s.lower():
                return member
        raise ValueError(f"unknown section '{s}'")


QUESTION_TYPES = ("mcq", "text")
LANGUAGES = ("english", "somali", "arabic")

# (minimum percentage, letter), checked top down
GRADE_THRESHOLDS: Tuple[Tuple[float, str], ...] = (
    (80.0, "A"),
    (70.0, "B"),
    (60.0, "C"),
    (50.0, "D"),
)


def normalize_answer(s: Optional[str]) -> str:
    return (s or "").strip().lower()


def round_half_up(x: float) -> int:
    """Nearest integer with .5 going up; the builtin round() sends halves to even."""
    return int(math.floor(x + 0.5))


def grade_letter(percentage: float) -> str:
    for threshold, letter in GRADE_THRESHOLDS:
        if percentage >= threshold:
            return letter
    return "F"


@dataclass(frozen=True)
class Question:
    id: str
    section: SectionType
    text: str
    type: str
    correct_answer: str
    marks: int
    explanation: str = ""
    options: Tuple[str, ...] = ()
    topic: Optional[str] = None
    diagram_url: Optional[Tuple[str, ...]] = None

    @property
    def is_mcq(self) -> bool:
        return self.type == "mcq"

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Question":
        qid = str(d.get("id") or "").strip()
        if not qid:
            raise ValueError("question id is required")
        q_type = str(d.get("type") or "").strip().lower()
        if q_type not in QUESTION_TYPES:
            raise ValueError(f"question {qid}: unknown type '{q_type}'")
        try:
            marks = int(d.get("marks") or 0)
        except (TypeError, ValueError):
            raise ValueError(f"question {qid}: marks must be an integer") from None
        if marks < 1:
            raise ValueError(f"question {qid}: marks must be >= 1")

        correct = str(d.get("correct_answer", d.get("correctAnswer")) or "")
        options: Tuple[str, ...] = ()
        if q_type == "mcq":
            options = tuple(str(o) for o in (d.get("options") or []))
            if not options:
                raise ValueError(f"question {qid}: mcq needs options")
            if normalize_answer(correct) not in {normalize_answer(o) for o in options}:
                raise ValueError(f"question {qid}: correct answer is not one of the options")

        diagram = d.get("diagram_url", d.get("diagramUrl"))
        if isinstance(diagram, str):
            diagram = (diagram,) if diagram.strip() else None
        elif isinstance(diagram, (list, tuple)):
            diagram = tuple(str(u) for u in diagram if str(u).strip()) or None
        else:
            diagram = None

        return cls(
            id=qid,
            section=SectionType.parse(d.get("section") or ("MCQ" if q_type == "mcq" else "SHORT_ANSWER")),
            text=str(d.get("text") or ""),
            type=q_type,
            correct_answer=correct,
            marks=marks,
            explanation=str(d.get("explanation") or ""),
            options=options,
            topic=(str(d["topic"]) if d.get("topic") else None),
            diagram_url=diagram,
        )

    def to_dict(self, include_key: bool = True) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "id": self.id,
            "section": self.section.name,
            "section_label": self.section.label,
            "text": self.text,
            "type": self.type,
            "marks": self.marks,
            "options": list(self.options),
            "topic": self.topic,
            "diagram_url": list(self.diagram_url or []),
        }
        if include_key:
            out["correct_answer"] = self.correct_answer
            out["explanation"] = self.explanation
        return out


@dataclass(frozen=True)
class Exam:
    id: str
    year: int
    subject: str
    subject_key: str
    duration_minutes: float
    questions: Tuple[Question, ...]
    language: str = "english"
    direction: str = "ltr"
    section_passages: Dict[str, str] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return f"{self.year}_{self.subject_key}"

    @property
    def max_score(self) -> int:
        return sum(q.marks for q in self.questions)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Exam":
        exam_id = str(d.get("id") or "").strip()
        if not exam_id:
            raise ValueError("exam id is required")
        try:
            year = int(d.get("year"))
            duration = float(d.get("duration_minutes", d.get("durationMinutes")))
        except (TypeError, ValueError):
            raise ValueError(f"exam {exam_id}: year and duration_minutes are required") from None
        if not math.isfinite(duration) or duration <= 0:
            raise ValueError(f"exam {exam_id}: duration must be > 0")
        subject_key = str(d.get("subject_key", d.get("subjectKey")) or "").strip().lower()
        if not subject_key:
            raise ValueError(f"exam {exam_id}: subject_key is required")
        language = str(d.get("language") or "english").strip().lower()
        if language not in LANGUAGES:
            raise ValueError(f"exam {exam_id}: unsupported language '{language}'")
        direction = str(d.get("direction") or ("rtl" if language == "arabic" else "ltr")).lower()
        if direction not in ("ltr", "rtl"):
            raise ValueError(f"exam {exam_id}: direction must be ltr or rtl")

        questions = tuple(Question.from_dict(q) for q in (d.get("questions") or []))
        seen = set()
        for q in questions:
            if q.id in seen:
                raise ValueError(f"exam {exam_id}: duplicate question id '{q.id}'")
            seen.add(q.id)

        passages: Dict[str, str] = {}
        for k, v in (d.get("section_passages", d.get("sectionPassages")) or {}).items():
            passages[SectionType.parse(k).name] = str(v)

        return cls(
            id=exam_id,
            year=year,
            subject=str(d.get("subject") or subject_key.title()),
            subject_key=subject_key,
            duration_minutes=duration,
            questions=questions,
            language=language,
            direction=direction,
            section_passages=passages,
        )

    def to_dict(self, include_key: bool = True) -> Dict[str, Any]:
        return {
            "id": self.id,
            "year": self.year,
            "subject": self.subject,
            "subject_key": self.subject_key,
            "duration_minutes": self.duration_minutes,
            "language": self.language,
            "direction": self.direction,
            "section_passages": dict(self.section_passages),
            "questions": [q.to_dict(include_key=include_key) for q in self.questions],
        }


@dataclass(frozen=True)
class GradedFeedback:
    question: Question
    user_answer: str
    score: float
    feedback: str

    @property
    def question_id(self) -> str:
        return self.question.id

    @property
    def is_correct(self) -> bool:
        return self.score == self.question.marks

    def to_dict(self) -> Dict[str, Any]:
        return {
            "question_id": self.question.id,
            "question": self.question.to_dict(),
            "user_answer": self.user_answer,
            "score": self.score,
            "marks": self.question.marks,
            "feedback": self.feedback,
            "is_correct": self.is_correct,
        }


@dataclass(frozen=True)
class ExamResult:
    exam_id: str
    subject: str
    year: int
    score: float
    max_score: int
    feedback: Tuple[GradedFeedback, ...]
    section_totals: Dict[str, Dict[str, float]]
    time_taken: int = 0

    @property
    def percentage(self) -> float:
        if not self.max_score:
            return 0.0
        return round_half_up(self.score) / self.max_score * 100

    @property
    def grade(self) -> str:
        return grade_letter(self.percentage)

    def to_record(self, date: Optional[datetime] = None) -> Dict[str, Any]:
        """Flat row handed to the persistence collaborator."""
        when = date or datetime.now(timezone.utc)
        return {
            "exam_id": self.exam_id,
            "subject": self.subject,
            "year": self.year,
            "score": self.score,
            "max_score": self.max_score,
            "grade": self.grade,
            "date": when.replace(microsecond=0).isoformat(),
            "time_taken": self.time_taken,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "exam_id": self.exam_id,
            "subject": self.subject,
            "year": self.year,
            "score": self.score,
            "max_score": self.max_score,
            "percentage": round(self.percentage, 2),
            "grade": self.grade,
            "time_taken": self.time_taken,
            "section_totals": {k: dict(v) for k, v in self.section_totals.items()},
            "feedback": [f.to_dict() for f in self.feedback],
        }


__all__ = [
    "SectionType", "Question", "Exam", "GradedFeedback", "ExamResult",
    "grade_letter", "normalize_answer", "round_half_up", "GRADE_THRESHOLDS",
]
