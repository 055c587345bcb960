import os
from datetime import datetime
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from flask import Blueprint, render_template_string, g, redirect, request

# =============================== Env / BASE PATH ==============================
BASE_PATH = (os.getenv("BASE_PATH", "") or "").rstrip("/")


def _bp(path: str = "") -> str:
    p = path or "/"
    if not p.startswith("/"):
        p = "/" + p
    if BASE_PATH and (p == BASE_PATH or p.startswith(BASE_PATH + "/")):
        return p
    return (BASE_PATH + p) if BASE_PATH else p


def _fmt_dt_simple(v) -> Optional[str]:
    if v is None:
        return None
    if isinstance(v, datetime):
        return v.strftime("%Y-%m-%d %H:%M")
    s = str(v).replace("T", " ")
    if "." in s:
        s = s.split(".", 1)[0]
    if "+" in s:
        s = s.split("+", 1)[0]
    return s[:16].strip()


def _fmt_seconds(total: Any) -> str:
    try:
        total = int(total or 0)
    except (TypeError, ValueError):
        return "-"
    m, s = divmod(max(0, total), 60)
    return f"{m}m {s:02d}s"


DASHBOARD_TEMPLATE = """
<!doctype html><html lang="en"><head><meta charset="utf-8"/>
<title>My results</title>
<meta name="viewport" content="width=device-width,initial-scale=1"/>
<style>
  body{font-family:system-ui,-apple-system,Segoe UI,Roboto,sans-serif;margin:0;line-height:1.55;color:#111827}
  .wrap{max-width:960px;margin:0 auto;padding:24px}
  .card{border:1px solid #e5e7eb;border-radius:10px;padding:14px;margin:12px 0;background:#fff}
  table{border-collapse:collapse;width:100%}
  th,td{text-align:left;padding:6px 8px;border-bottom:1px solid #f3f4f6}
  .muted{color:#6b7280;font-size:13px}
</style></head>
<body><div class="wrap">
  <a href="{{ home_url }}">← All subjects</a>
  <h1>My results</h1>
  <div class="muted">{{ email }}</div>
  {% if unavailable %}
    <div class="card">Results are temporarily unavailable. Please try again shortly.</div>
  {% else %}
    <div class="card">
      <h2>By subject</h2>
      {% if stats %}
        <table><tr><th>Subject</th><th>Average</th><th>Attempts</th></tr>
        {% for s in stats %}<tr><td>{{ s.subject }}</td><td>{{ s.average }}%</td><td>{{ s.attempts }}</td></tr>{% endfor %}
        </table>
      {% else %}<div class="muted">No exams taken yet.</div>{% endif %}
    </div>
    <div class="card">
      <h2>History</h2>
      {% if history %}
        <table><tr><th>Date</th><th>Subject</th><th>Year</th><th>Score</th><th>Grade</th><th>Time</th></tr>
        {% for h in history %}
          <tr><td>{{ h.date }}</td><td>{{ h.subject }}</td><td>{{ h.year }}</td>
              <td>{{ h.score }} / {{ h.max_score }}</td><td>{{ h.grade }}</td><td>{{ h.time }}</td></tr>
        {% endfor %}
        </table>
      {% else %}<div class="muted">No exams taken yet.</div>{% endif %}
    </div>
  {% endif %}
</div></body></html>
"""


def create_dashboard_blueprint(deps: Dict[str, Any], name: str = "dashboard") -> Blueprint:
    """
    Student dashboard: exam history (newest first) and per-subject averages.
    deps:
      - get_history(user_id) -> list of result rows
      - get_subject_stats(user_id) -> [{subject, average, attempts}]
      - ensure_user_row(email) -> user id (optional; used when g.user_id is missing)
    """
    bp = Blueprint(name, __name__)
    get_history = deps["get_history"]
    get_subject_stats = deps["get_subject_stats"]
    ensure_user_row = deps.get("ensure_user_row")

    def _current_user_id(email: str) -> Optional[int]:
        user_id = getattr(g, "user_id", None)
        if user_id or not ensure_user_row:
            return user_id
        return ensure_user_row(email)

    def dashboard_view():
        email = getattr(g, "user_email", None)
        if not email:
            full = request.full_path if request.query_string else request.path
            return redirect(f"{_bp('/login')}?next={quote(full, safe='/:?&=')}")

        history: List[Dict[str, Any]] = []
        stats: List[Dict[str, Any]] = []
        unavailable = False
        try:
            user_id = _current_user_id(email)
            if user_id:
                rows = get_history(user_id)
                stats = get_subject_stats(user_id)
                for r in rows:
                    history.append({
                        "date": _fmt_dt_simple(r.get("taken_at") or r.get("date")),
                        "subject": r.get("subject"),
                        "year": r.get("year"),
                        "score": r.get("score"),
                        "max_score": r.get("max_score"),
                        "grade": r.get("grade"),
                        "time": _fmt_seconds(r.get("time_taken")),
                    })
        except Exception as e:
            print(f"[results] dashboard lookup failed for {email}: {e}")
            history, stats, unavailable = [], [], True

        return render_template_string(
            DASHBOARD_TEMPLATE,
            email=email,
            history=history,
            stats=stats,
            unavailable=unavailable,
            home_url=_bp("/"),
        )

    bp.add_url_rule("/dashboard", view_func=dashboard_view, methods=["GET"], endpoint="dashboard_view")
    if BASE_PATH:
        bp.add_url_rule(f"{BASE_PATH}/dashboard", view_func=dashboard_view, methods=["GET"], endpoint="dashboard_view_alias")

    return bp
