# results_store.py
# -----------------------------------------------------------------------------
# Exam result persistence (Postgres, public.exam_results) + admin CSV exports.
# SQL helpers are injected (fetch_all / execute from main.py) so tests can fake
# the database.
# -----------------------------------------------------------------------------

import csv
import io
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from exam_models import round_half_up

RESULT_CSV_HEADERS = ["Result ID", "Student Email", "Subject", "Year", "Score", "Max Score", "Grade", "Date", "Time Taken (s)"]
STUDENT_CSV_HEADERS = ["ID", "Email", "Full Name", "Attempts", "Last Exam"]


def _as_number(x) -> float:
    if x is None:
        return 0
    if isinstance(x, Decimal):
        x = float(x)
    try:
        v = float(x)
    except (TypeError, ValueError):
        return 0
    return int(v) if v.is_integer() else v


def _fmt_dt(v) -> str:
    if v is None:
        return ""
    if isinstance(v, datetime):
        return v.strftime("%Y-%m-%d %H:%M")
    return str(v)


def subject_stats(history: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Per subject: average = round(sum(score) / sum(max_score) * 100), attempts."""
    totals: Dict[str, Dict[str, float]] = {}
    for h in history:
        entry = totals.setdefault(h.get("subject") or "", {"score": 0, "max": 0, "count": 0})
        entry["score"] += _as_number(h.get("score"))
        entry["max"] += _as_number(h.get("max_score"))
        entry["count"] += 1
    out = []
    for subject, t in totals.items():
        average = round_half_up(t["score"] / t["max"] * 100) if t["max"] else 0
        out.append({"subject": subject, "average": average, "attempts": t["count"]})
    return out


def _to_csv(headers: List[str], rows: List[List[Any]]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(headers)
    writer.writerows(rows)
    return buf.getvalue()


def export_results_csv(rows: List[Dict[str, Any]]) -> str:
    return _to_csv(RESULT_CSV_HEADERS, [
        [
            r.get("id"),
            r.get("user_email") or "",
            r.get("subject"),
            r.get("year"),
            _as_number(r.get("score")),
            _as_number(r.get("max_score")),
            r.get("grade"),
            _fmt_dt(r.get("taken_at")),
            r.get("time_taken") or 0,
        ]
        for r in rows
    ])


def export_students_csv(rows: List[Dict[str, Any]]) -> str:
    return _to_csv(STUDENT_CSV_HEADERS, [
        [r.get("id"), r.get("email"), r.get("full_name") or "", r.get("attempts") or 0, _fmt_dt(r.get("last_taken"))]
        for r in rows
    ])


class ResultStore:
    """Thin repository over public.exam_results."""

    def __init__(self, fetch_all: Callable, execute: Callable):
        self._fetch_all = fetch_all
        self._execute = execute
        self._schema_ready = False

    def ensure_schema(self) -> None:
        if self._schema_ready:
            return
        self._execute("""
            CREATE TABLE IF NOT EXISTS public.exam_results (
                id          BIGSERIAL PRIMARY KEY,
                user_id     BIGINT,
                user_email  TEXT,
                exam_id     TEXT NOT NULL,
                subject     TEXT NOT NULL,
                year        INTEGER NOT NULL,
                score       NUMERIC NOT NULL,
                max_score   INTEGER NOT NULL,
                grade       TEXT NOT NULL,
                time_taken  INTEGER NOT NULL DEFAULT 0,
                taken_at    TIMESTAMPTZ NOT NULL DEFAULT now()
            );
        """)
        self._execute("""
            CREATE INDEX IF NOT EXISTS exam_results_user_idx
                ON public.exam_results (user_id, taken_at DESC);
        """)
        self._schema_ready = True

    def save_result(self, user_id: Optional[int], record: Dict[str, Any],
                    user_email: Optional[str] = None) -> None:
        """Insert one record as produced by ExamResult.to_record(). Errors propagate to the caller."""
        self.ensure_schema()
        self._execute("""
            INSERT INTO public.exam_results
                (user_id, user_email, exam_id, subject, year, score, max_score, grade, time_taken, taken_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, COALESCE(%s::timestamptz, now()));
        """, (
            user_id,
            user_email,
            record["exam_id"],
            record["subject"],
            int(record["year"]),
            record["score"],
            int(record["max_score"]),
            record["grade"],
            int(record.get("time_taken") or 0),
            record.get("date"),
        ))

    def get_history(self, user_id: int) -> List[Dict[str, Any]]:
        self.ensure_schema()
        rows = self._fetch_all("""
            SELECT id, exam_id, subject, year, score, max_score, grade, time_taken, taken_at
              FROM public.exam_results
             WHERE user_id = %s
             ORDER BY taken_at DESC, id DESC;
        """, (user_id,))
        history = []
        for r in rows or []:
            h = dict(r)
            h["score"] = _as_number(h.get("score"))
            h["max_score"] = int(_as_number(h.get("max_score")))
            history.append(h)
        return history

    def get_subject_stats(self, user_id: int) -> List[Dict[str, Any]]:
        return subject_stats(self.get_history(user_id))

    def all_results(self) -> List[Dict[str, Any]]:
        self.ensure_schema()
        return self._fetch_all("""
            SELECT r.id, COALESCE(r.user_email, u.email::text) AS user_email,
                   r.exam_id, r.subject, r.year, r.score, r.max_score, r.grade,
                   r.time_taken, r.taken_at
              FROM public.exam_results r
              LEFT JOIN public.users u ON u.id = r.user_id
             ORDER BY r.taken_at DESC, r.id DESC;
        """) or []

    def students(self) -> List[Dict[str, Any]]:
        self.ensure_schema()
        return self._fetch_all("""
            SELECT u.id, u.email::text AS email, u.full_name,
                   COUNT(r.id) AS attempts, MAX(r.taken_at) AS last_taken
              FROM public.users u
              LEFT JOIN public.exam_results r ON r.user_id = u.id
             GROUP BY u.id, u.email, u.full_name
             ORDER BY lower(u.email::text);
        """) or []


__all__ = ["ResultStore", "subject_stats", "export_results_csv", "export_students_csv"]
