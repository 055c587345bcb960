"""Per-attempt exam instances with shuffled multiple-choice options."""

from __future__ import annotations

import dataclasses
import random
from typing import List, Optional, Sequence, TypeVar

from exam_models import Exam, Question

T = TypeVar("T")


def fisher_yates(items: Sequence[T], rng: Optional[random.Random] = None) -> List[T]:
    """Return a uniformly shuffled copy of items; the input is left untouched."""
    rnd = rng or random.Random()
    out = list(items)
    for i in range(len(out) - 1, 0, -1):
        j = rnd.randint(0, i)
        out[i], out[j] = out[j], out[i]
    return out


def _shuffled_question(q: Question, rng: Optional[random.Random]) -> Question:
    if not q.is_mcq or not q.options:
        return q
    # correct_answer is a value, so it stays valid whatever order the options end up in
    return dataclasses.replace(q, options=tuple(fisher_yates(q.options, rng)))


def build_instance(template: Exam, rng: Optional[random.Random] = None) -> Exam:
    """Fresh exam copy for one attempt. Question order is kept; MCQ options are shuffled."""
    rnd = rng or random.Random()
    questions = tuple(_shuffled_question(q, rnd) for q in template.questions)
    return dataclasses.replace(
        template,
        questions=questions,
        section_passages=dict(template.section_passages),
    )


__all__ = ["build_instance", "fisher_yates"]
