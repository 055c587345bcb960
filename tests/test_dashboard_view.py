import sys
from pathlib import Path
from datetime import datetime, timezone
from decimal import Decimal

from flask import Flask, g
from psycopg.errors import UndefinedTable

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from dashboard import create_dashboard_blueprint  # noqa: E402


def _make_app(deps, email="student@example.com", user_id=5):
    app = Flask(__name__)
    app.testing = True
    app.register_blueprint(create_dashboard_blueprint(deps))

    @app.before_request
    def _set_user():
        g.user_email = email
        g.user_id = user_id

    return app


def test_dashboard_lists_history_and_subject_averages():
    calls = []

    def get_history(user_id):
        calls.append(user_id)
        return [{"subject": "Mathematics", "year": 2025, "score": Decimal("7.5"), "max_score": 10,
                 "grade": "A", "time_taken": 754, "taken_at": datetime(2025, 6, 1, 9, 5, tzinfo=timezone.utc)}]

    deps = {
        "get_history": get_history,
        "get_subject_stats": lambda _uid: [{"subject": "Mathematics", "average": 75, "attempts": 1}],
    }
    resp = _make_app(deps).test_client().get("/dashboard")
    body = resp.get_data(as_text=True)

    assert resp.status_code == 200
    assert calls == [5]
    assert "2025-06-01 09:05" in body
    assert "7.5 / 10" in body
    assert "75%" in body
    assert "12m 34s" in body


def test_dashboard_looks_up_user_row_when_id_missing():
    seen = []
    deps = {
        "get_history": lambda uid: seen.append(uid) or [],
        "get_subject_stats": lambda _uid: [],
        "ensure_user_row": lambda email: 11,
    }
    resp = _make_app(deps, user_id=None).test_client().get("/dashboard")
    assert resp.status_code == 200
    assert seen == [11]
    assert "No exams taken yet." in resp.get_data(as_text=True)


def test_dashboard_handles_results_table_missing(capsys):
    def boom(_uid):
        raise UndefinedTable('relation "public.exam_results" does not exist')

    deps = {"get_history": boom, "get_subject_stats": lambda _uid: []}
    resp = _make_app(deps).test_client().get("/dashboard")

    assert resp.status_code == 200
    assert "Results are temporarily unavailable." in resp.get_data(as_text=True)
    assert "[results] dashboard lookup failed" in capsys.readouterr().out


def test_dashboard_redirects_anonymous_users_to_login():
    deps = {"get_history": lambda _uid: [], "get_subject_stats": lambda _uid: []}
    resp = _make_app(deps, email=None).test_client().get("/dashboard")
    assert resp.status_code == 302
    assert resp.headers["Location"].endswith("/login?next=/dashboard")
