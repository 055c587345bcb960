import sys
from pathlib import Path

import pytest
import requests

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from exam_models import Question  # noqa: E402
from grader import Grader, clamp_score, estimate_score  # noqa: E402


def _mcq(marks=2):
    return Question.from_dict({"id": "m1", "type": "mcq", "marks": marks, "text": "Capital of France?",
                               "options": ["Paris", "Rome", "Madrid"], "correct_answer": "Paris",
                               "explanation": "Paris is the capital."})


def _text(marks=5, answer="Paris"):
    return Question.from_dict({"id": "t1", "type": "text", "marks": marks, "section": "SHORT_ANSWER",
                               "text": "What is the capital of France?", "correct_answer": answer})


class RecordingScorer:
    def __init__(self, result=None, exc=None):
        self.result = result
        self.exc = exc
        self.calls = []

    def __call__(self, question_text, model_answer, student_answer, max_marks):
        self.calls.append((question_text, model_answer, student_answer, max_marks))
        if self.exc is not None:
            raise self.exc
        return self.result


def _http_error(status):
    resp = requests.Response()
    resp.status_code = status
    return requests.HTTPError(f"{status} Client Error", response=resp)


@pytest.mark.parametrize("answer", ["Paris", " paris ", "PARIS"])
def test_mcq_match_ignores_case_and_whitespace(answer):
    scorer = RecordingScorer(exc=AssertionError("mcq must not call the scorer"))
    out = Grader(scorer, use_external=True).grade(_mcq(), answer)
    assert out["score"] == 2
    assert "Correct" in out["feedback"]
    assert scorer.calls == []


def test_mcq_wrong_or_missing_answer_scores_zero():
    g = Grader(RecordingScorer(result=99), use_external=True)
    assert g.grade(_mcq(), "Rome")["score"] == 0
    assert g.grade(_mcq(), None)["score"] == 0


def test_text_answer_uses_scorer_and_local_feedback():
    scorer = RecordingScorer(result={"score": 5})
    out = Grader(scorer, use_external=True).grade(_text(), "Paris")
    assert out["score"] == 5
    assert "Model Answer" in out["feedback"]
    assert scorer.calls == [("What is the capital of France?", "Paris", "Paris", 5)]


@pytest.mark.parametrize("raw, expected", [
    ({"score": 999}, 5),
    ({"score": -3}, 0),
    ("3", 3),
    ('{"score": 4}', 4),
    (2.3, 2.5),
    (4, 4),
])
def test_scorer_values_are_coerced_and_clamped(raw, expected):
    out = Grader(RecordingScorer(result=raw), use_external=True).grade(_text(), "Paris")
    assert out["score"] == expected


def test_empty_text_answer_scores_zero_without_calling_scorer():
    scorer = RecordingScorer(result=5)
    out = Grader(scorer, use_external=True).grade(_text(), "   ")
    assert out["score"] == 0
    assert "No answer provided." in out["feedback"]
    assert scorer.calls == []


def test_scorer_failure_falls_back_to_keyword_estimate():
    out = Grader(RecordingScorer(exc=requests.ConnectionError("down")), use_external=True).grade(_text(), "Paris")
    assert out["score"] == 5
    assert "Grading Unavailable" in out["feedback"]
    assert "fallback" in out["feedback"]


def test_quota_failure_is_reported_as_overload():
    out = Grader(RecordingScorer(exc=_http_error(429)), use_external=True).grade(_text(), "London")
    assert "System Overload" in out["feedback"]
    assert out["score"] == 0


def test_unparseable_scorer_reply_falls_back():
    out = Grader(RecordingScorer(result="great answer!"), use_external=True).grade(_text(), "Paris")
    assert out["score"] == 5
    assert "Grading Unavailable" in out["feedback"]


def test_disabled_external_grading_never_calls_scorer():
    scorer = RecordingScorer(result=0)
    out = Grader(scorer, use_external=False).grade(_text(), "Paris")
    assert out["score"] == 5
    assert scorer.calls == []


def test_feedback_uses_exam_language_labels():
    g = Grader(RecordingScorer(result=5), use_external=True)
    somali = g.grade(_text(), "Paris", language="somali")["feedback"]
    assert "Sax" in somali
    assert "Jawaabta Saxda ah" in somali
    arabic = g.grade(_text(), "Paris", language="arabic")["feedback"]
    assert "الإجابة النموذجية" in arabic


def test_partial_score_is_labelled_partial():
    out = Grader(RecordingScorer(result=2), use_external=True).grade(_text(), "Somewhere in Europe")
    assert out["score"] == 2
    assert "Partially correct" in out["feedback"]


MODEL = "photosynthesis converts sunlight into chemical energy"


@pytest.mark.parametrize("student, marks, expected", [
    (MODEL, 5, 5),
    ("I think " + MODEL + " in plants", 5, 5),
    ("energy chemical sunlight converts photosynthesis", 5, 5),
    ("sunlight energy chemical plants", 5, 3),
    ("plants grow when it rains a lot", 5, 1),
    ("no", 5, 0),
    ("", 5, 0),
])
def test_estimate_score_tiers(student, marks, expected):
    assert estimate_score(MODEL, student, marks) == expected


def test_clamp_score_bounds_and_halves():
    assert clamp_score(7.9, 5) == 5
    assert clamp_score(-0.1, 5) == 0
    assert clamp_score(1.26, 5) == 1.5
    assert isinstance(clamp_score(3.0, 5), int)
