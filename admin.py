import os
import json
from typing import Any, Callable, Dict, List, Optional

from flask import (
    Blueprint, Response, render_template_string, jsonify, abort, request, g
)

from exam_models import Exam
from results_store import export_results_csv, export_students_csv

# =========================
# Admin gating / constants
# =========================
AUTH_REQUIRED = os.getenv("AUTH_REQUIRED", "1").lower() in ("1", "true", "yes")
_ADMIN_EMAILS_RAW = os.getenv("ADMIN_EMAILS", "")
ADMIN_EMAILS = {
    e.strip().lower()
    for part in _ADMIN_EMAILS_RAW.split(";")
    for e in part.split(",")
    if e.strip()
}

EXAM_TEMPLATES_DDL = """
    CREATE TABLE IF NOT EXISTS public.exam_templates (
        exam_key    TEXT PRIMARY KEY,
        body        JSONB NOT NULL,
        created_by  TEXT,
        updated_at  TIMESTAMPTZ NOT NULL DEFAULT now()
    );
"""


def load_exam_templates(fetch_all: Callable, execute: Callable, save_dynamic_exam: Callable) -> int:
    """Re-register admin-authored exams stored in public.exam_templates. Returns how many loaded."""
    execute(EXAM_TEMPLATES_DDL)
    loaded = 0
    for row in fetch_all("SELECT exam_key, body FROM public.exam_templates;") or []:
        body = row.get("body")
        if isinstance(body, str):
            body = json.loads(body)
        try:
            save_dynamic_exam(Exam.from_dict(body or {}))
            loaded += 1
        except ValueError as e:
            print(f"[catalog] stored exam {row.get('exam_key')} skipped: {e}")
    return loaded


ADMIN_TEMPLATE = """
<!doctype html><html lang="en"><head><meta charset="utf-8"/>
<title>Admin · Exams</title>
<meta name="viewport" content="width=device-width,initial-scale=1"/>
<style>
  body{font-family:system-ui,-apple-system,Segoe UI,Roboto,sans-serif;margin:0;line-height:1.55;color:#111827}
  .wrap{max-width:1000px;margin:0 auto;padding:24px}
  .card{border:1px solid #e5e7eb;border-radius:10px;padding:14px;margin:12px 0;background:#fff}
  table{border-collapse:collapse;width:100%}
  th,td{text-align:left;padding:6px 8px;border-bottom:1px solid #f3f4f6}
  textarea{width:100%;font-family:ui-monospace,monospace}
  .btn{display:inline-block;padding:8px 14px;border-radius:8px;background:#111827;color:#fff;border:0;cursor:pointer;text-decoration:none}
  .muted{color:#6b7280;font-size:13px}
</style></head>
<body><div class="wrap">
  <h1>Exam admin</h1>
  <div class="card">
    <a class="btn" href="{{ results_csv_url }}">Export results (CSV)</a>
    <a class="btn" href="{{ students_csv_url }}">Export students (CSV)</a>
  </div>
  <div class="card">
    <h2>Exams</h2>
    <table><tr><th>Key</th><th>Subject</th><th>Year</th><th>Questions</th><th>Marks</th><th>Minutes</th><th>Language</th></tr>
    {% for e in exams %}
      <tr><td>{{ e.key }}</td><td>{{ e.subject }}</td><td>{{ e.year }}</td><td>{{ e.questions|length }}</td>
          <td>{{ e.max_score }}</td><td>{{ e.duration_minutes }}</td><td>{{ e.language }}</td></tr>
    {% else %}
      <tr><td colspan="7" class="muted">No exams loaded.</td></tr>
    {% endfor %}
    </table>
  </div>
  <div class="card">
    <h2>Create or replace an exam</h2>
    <p class="muted">Paste the exam as JSON (id, year, subject_key, duration_minutes, questions[]).
      An exam with the same year and subject replaces the existing one.</p>
    <textarea id="body" rows="16"></textarea>
    <button class="btn" id="save">Save exam</button> <span id="msg" class="muted"></span>
  </div>
</div>
<script>
document.getElementById('save').addEventListener('click', async function(){
  const msg = document.getElementById('msg');
  let body;
  try { body = JSON.parse(document.getElementById('body').value); }
  catch(e){ msg.textContent = 'Invalid JSON: ' + e.message; return; }
  const r = await fetch({{ create_url|tojson }}, {method:'POST', headers:{'Content-Type':'application/json'}, body: JSON.stringify(body)});
  const j = await r.json();
  msg.textContent = j.ok ? ('Saved ' + j.key + (j.warning ? ' (' + j.warning + ')' : '')) : ('Error: ' + j.error);
  if (j.ok) setTimeout(function(){ window.location.reload(); }, 600);
});
</script>
</body></html>
"""


def create_admin_blueprint(
    url_prefix: str,
    deps: Dict[str, Any],
    name: str = "admin",
) -> Blueprint:
    """
    Admin console for exams and results.
    deps:
      - get_all_exams() -> list of Exam
      - save_dynamic_exam(exam)
      - all_results() -> result rows; students() -> user rows
      - execute(sql, params)            (stores authored exams in exam_templates)
      - fetch_one(sql, params)          (optional; role lookup in users)
    """
    get_all_exams = deps["get_all_exams"]
    save_dynamic_exam = deps["save_dynamic_exam"]
    all_results = deps["all_results"]
    list_students = deps["students"]
    execute = deps["execute"]
    fetch_one: Optional[Callable] = deps.get("fetch_one")

    # Mount at /<BASE_PATH>/admin (e.g. /exams-app/admin) or /admin if url_prefix=""
    mount_prefix = (url_prefix.rstrip("/") + "/admin") if url_prefix else "/admin"
    bp = Blueprint(name, __name__, url_prefix=mount_prefix)

    def _user_role(email: str) -> Optional[str]:
        if not fetch_one:
            return None
        try:
            row = fetch_one("SELECT role FROM users WHERE email=%s;", (email,))
        except Exception as e:
            print(f"[auth] role lookup failed for {email}: {e}")
            return None
        return (row or {}).get("role")

    def require_admin():
        email = (getattr(g, "user_email", None) or "").lower().strip()
        if not email:
            abort(403)
        if ADMIN_EMAILS and email in ADMIN_EMAILS:
            return
        if (_user_role(email) or "").lower() in ("admin", "instructor"):
            return
        abort(403)

    def _csv_response(body: str, filename: str) -> Response:
        return Response(
            body,
            mimetype="text/csv",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    # ---------- Diagnostics ----------
    @bp.get("/whoami")
    def admin_whoami():
        return jsonify({
            "auth_required": AUTH_REQUIRED,
            "current_user_email": getattr(g, "user_email", None),
            "admin_emails_enforced": bool(ADMIN_EMAILS),
        })

    # ---------- Exams ----------
    @bp.get("/")
    def admin_home():
        require_admin()
        exams: List[Exam] = sorted(get_all_exams(), key=lambda e: (e.subject_key, -e.year))
        return render_template_string(
            ADMIN_TEMPLATE,
            exams=exams,
            create_url=mount_prefix + "/exams",
            results_csv_url=mount_prefix + "/export/results.csv",
            students_csv_url=mount_prefix + "/export/students.csv",
        )

    @bp.post("/exams")
    def admin_create_exam():
        require_admin()
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            return jsonify({"ok": False, "error": "expected a JSON object"}), 400
        try:
            exam = Exam.from_dict(data)
        except ValueError as e:
            return jsonify({"ok": False, "error": str(e)}), 400
        if not exam.questions:
            return jsonify({"ok": False, "error": "an exam needs at least one question"}), 400

        save_dynamic_exam(exam)
        print(f"[catalog] exam {exam.key} saved by {getattr(g, 'user_email', None)}")

        warning = None
        try:
            execute(EXAM_TEMPLATES_DDL)
            execute("""
                INSERT INTO public.exam_templates (exam_key, body, created_by, updated_at)
                VALUES (%s, %s::jsonb, %s, now())
                ON CONFLICT (exam_key) DO UPDATE
                   SET body = EXCLUDED.body, created_by = EXCLUDED.created_by, updated_at = now();
            """, (exam.key, json.dumps(exam.to_dict(), ensure_ascii=False), getattr(g, "user_email", None)))
        except Exception as e:
            print(f"[DB] storing exam {exam.key} failed: {e}")
            warning = "saved for this server only; database unavailable"

        return jsonify({"ok": True, "key": exam.key, "questions": len(exam.questions), "warning": warning}), 201

    # ---------- Exports ----------
    @bp.get("/export/results.csv")
    def admin_export_results():
        require_admin()
        return _csv_response(export_results_csv(all_results()), "exam_results.csv")

    @bp.get("/export/students.csv")
    def admin_export_students():
        require_admin()
        return _csv_response(export_students_csv(list_students()), "students.csv")

    return bp
