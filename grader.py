# grader.py
# -----------------------------------------------------------------------------
# Single-answer grading.
# - MCQ: local, deterministic (case/whitespace-insensitive match)
# - Open-ended: external scorer (OpenAI chat, JSON mode) asked for a score only
# - Feedback is always assembled locally from explanation + model answer
# - Any scorer failure falls back to a keyword heuristic; grade() never raises
# -----------------------------------------------------------------------------

import os
import re
import json
import math
from typing import Any, Callable, Dict, Optional

import requests

from exam_models import Question, normalize_answer

# scorer(question_text, model_answer, student_answer, max_marks) -> raw score
Scorer = Callable[[str, str, str, int], Any]

OPENAI_URL = "https://api.openai.com/v1/chat/completions"

LABELS: Dict[str, Dict[str, str]] = {
    "english": {
        "correct": "Correct",
        "incorrect": "Incorrect",
        "partial": "Partially correct",
        "model_answer": "Model Answer",
        "explanation": "Explanation",
        "no_answer": "No answer provided.",
        "overload": "System Overload: the AI examiner is receiving too many requests. Score estimated based on keywords.",
        "unavailable": "Grading Unavailable: could not connect to the AI examiner. Score estimated based on keywords.",
        "fallback_note": "Automated grading fallback active.",
    },
    "somali": {
        "correct": "Sax",
        "incorrect": "Qalad",
        "partial": "Qayb ahaan sax",
        "model_answer": "Jawaabta Saxda ah",
        "explanation": "Sharaxaad",
        "no_answer": "Jawaab lama bixin.",
        "overload": "Culeys Jira: nidaamka sixitaanka ayaa mashquul ah. Dhibcaha waxaa lagu qiyaasay ereyada muhiimka ah.",
        "unavailable": "Cilad Jirta: lama xiriiri karo nidaamka sixitaanka. Dhibcaha waa qiyaas.",
        "fallback_note": "Sixitaanka beddelka ah ayaa shaqeynaya.",
    },
}
LABELS["arabic"] = dict(LABELS["english"], **{
    "correct": "صحيح",
    "incorrect": "خطأ",
    "model_answer": "الإجابة النموذجية",
    "explanation": "الشرح",
})

SYSTEM_PROMPT = (
    "You are a fair and lenient examiner. Grade on semantic understanding, not exact phrasing. "
    "If the student's answer conveys the meaning of the model answer, award full marks. "
    "Accept standard short forms and ignore minor spelling mistakes. "
    "For essays, grade logic, clarity and length. "
    "Return ONLY JSON {\"score\": number} with a score between 0 and the maximum marks (integer or .5)."
)


class GraderUnavailable(RuntimeError):
    """The external scorer could not be used (not configured, disabled, or failed)."""


def labels_for(language: Optional[str]) -> Dict[str, str]:
    return LABELS.get((language or "english").lower(), LABELS["english"])


def estimate_score(model_answer: str, student_answer: str, marks: int) -> int:
    """Keyword heuristic used when the external scorer is unavailable."""
    user = normalize_answer(student_answer)
    correct = normalize_answer(model_answer)
    if not user:
        return 0
    if correct and (user == correct or correct in user):
        return marks

    key_words = [w for w in correct.split() if len(w) > 3]
    user_words = user.split()
    if key_words:
        matched = sum(1 for w in key_words if any(w in uw for uw in user_words))
        ratio = matched / len(key_words)
        if ratio >= 0.7:
            return marks
        if ratio >= 0.4:
            return math.ceil(marks / 2)
    if len(user) > 10:
        return min(1, marks)
    return 0


def _coerce_score(raw: Any) -> float:
    if isinstance(raw, dict):
        raw = raw.get("score", raw.get("points"))
    if isinstance(raw, bool) or raw is None:
        raise ValueError(f"no numeric score in {raw!r}")
    if isinstance(raw, str):
        s = raw.strip()
        try:
            return _coerce_score(json.loads(s))
        except (ValueError, TypeError):
            pass
        m = re.fullmatch(r"[-+]?\d+(?:\.\d+)?", s)
        if not m:
            raise ValueError(f"unparseable score {raw!r}")
        raw = m.group(0)
    val = float(raw)
    if not math.isfinite(val):
        raise ValueError(f"non-finite score {raw!r}")
    return val


def clamp_score(value: float, marks: int) -> float:
    clamped = max(0.0, min(float(value), float(marks)))
    halves = round(clamped * 2) / 2
    return int(halves) if halves.is_integer() else halves


def _is_quota_error(exc: BaseException) -> bool:
    resp = getattr(exc, "response", None)
    if resp is not None and getattr(resp, "status_code", None) == 429:
        return True
    return "429" in str(exc)


def openai_scorer(api_key: str, model: str, timeout: float = 60.0) -> Scorer:
    """Build a scorer that asks the OpenAI chat API for a numeric score."""

    def _score(question_text: str, model_answer: str, student_answer: str, max_marks: int) -> Any:
        if not api_key:
            raise GraderUnavailable("OPENAI_API_KEY is not set (env_variables).")
        usr = f"""
QUESTION:
{question_text}

MODEL ANSWER:
{model_answer}

STUDENT ANSWER:
{student_answer}

MAX MARKS: {max_marks}
"""
        r = requests.post(
            OPENAI_URL,
            headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
            json={
                "model": model,
                "messages": [{"role": "system", "content": SYSTEM_PROMPT}, {"role": "user", "content": usr}],
                "temperature": 0.0,
                "max_tokens": 60,
                "response_format": {"type": "json_object"},
            },
            timeout=timeout,
        )
        r.raise_for_status()
        content = (r.json()["choices"][0]["message"]["content"] or "").strip()
        try:
            return json.loads(content)
        except ValueError:
            m = re.search(r"```(?:json)?\s*(\{.*?\})\s*```", content, re.DOTALL)
            return json.loads(m.group(1)) if m else content

    return _score


def _status_label(score: float, marks: int, labels: Dict[str, str]) -> str:
    if score >= marks:
        return f"✅ **{labels['correct']}**"
    if score <= 0:
        return f"❌ **{labels['incorrect']}**"
    return f"**{labels['partial']}** ({score}/{marks})"


def build_feedback(question: Question, score: float, language: Optional[str] = None,
                   notice: Optional[str] = None) -> str:
    labels = labels_for(language)
    parts = []
    if notice:
        parts.append(f"⚠️ {notice}")
    parts.append(_status_label(score, question.marks, labels))
    parts.append(f"**{labels['model_answer']}:**\n{question.correct_answer}")
    if question.explanation:
        parts.append(f"**{labels['explanation']}:**\n{question.explanation}")
    return "\n\n".join(parts)


class Grader:
    """Grades one answer at a time; see module header for the rules."""

    def __init__(self, scorer: Optional[Scorer] = None, *, use_external: Optional[bool] = None):
        if use_external is None:
            use_external = os.getenv("EXAMS_USE_GPT", "1").lower() in ("1", "true", "yes")
        if scorer is None:
            scorer = openai_scorer(
                (os.getenv("OPENAI_API_KEY") or "").strip(),
                (os.getenv("OPENAI_GRADER_MODEL") or "gpt-4o-mini").strip(),
                timeout=float(os.getenv("GRADER_TIMEOUT_SEC") or 60),
            )
        self.scorer = scorer
        self.use_external = use_external

    def grade(self, question: Question, student_answer: Optional[str],
              language: Optional[str] = None) -> Dict[str, Any]:
        answer = student_answer or ""
        if question.is_mcq:
            return self._grade_mcq(question, answer, language)
        try:
            return self._grade_text(question, answer, language)
        except Exception as e:
            return self._fallback(question, answer, language, e)

    def _grade_mcq(self, question: Question, answer: str, language: Optional[str]) -> Dict[str, Any]:
        ok = normalize_answer(answer) == normalize_answer(question.correct_answer)
        score = question.marks if ok else 0
        return {"score": score, "feedback": build_feedback(question, score, language)}

    def _grade_text(self, question: Question, answer: str, language: Optional[str]) -> Dict[str, Any]:
        if not answer.strip():
            labels = labels_for(language)
            return {"score": 0, "feedback": build_feedback(question, 0, language, notice=labels["no_answer"])}
        if not self.use_external:
            raise GraderUnavailable("EXAMS_USE_GPT disabled.")
        raw = self.scorer(question.text, question.correct_answer, answer, question.marks)
        score = clamp_score(_coerce_score(raw), question.marks)
        return {"score": score, "feedback": build_feedback(question, score, language)}

    def _fallback(self, question: Question, answer: str, language: Optional[str],
                  err: BaseException) -> Dict[str, Any]:
        print(f"[grader] {question.id}: scorer unavailable, using keyword estimate ({err})")
        try:
            labels = labels_for(language)
            score = estimate_score(question.correct_answer, answer, question.marks)
            notice = labels["overload"] if _is_quota_error(err) else labels["unavailable"]
            feedback = build_feedback(question, score, language, notice=notice)
            return {"score": score, "feedback": f"{feedback}\n\n_{labels['fallback_note']}_"}
        except Exception as e:
            print(f"[grader] {question.id}: fallback failed ({e})")
            return {"score": 0, "feedback": LABELS["english"]["unavailable"]}


__all__ = ["Grader", "GraderUnavailable", "estimate_score", "clamp_score", "build_feedback", "openai_scorer"]
