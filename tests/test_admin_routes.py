import json
import sys
from pathlib import Path

import pytest
from flask import Flask, g

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import admin  # noqa: E402
from admin import create_admin_blueprint, load_exam_templates  # noqa: E402
from exam_models import Exam  # noqa: E402


EXAM_BODY = {
    "id": "bio-2024", "year": 2024, "subject": "Biology", "subject_key": "biology", "duration_minutes": 45,
    "questions": [{"id": "b1", "type": "mcq", "marks": 2, "text": "Powerhouse of the cell?",
                   "options": ["Nucleus", "Mitochondria"], "correct_answer": "Mitochondria"}],
}


class FakeDB:
    def __init__(self, fail=False, role=None):
        self.fail = fail
        self.role = role
        self.executed = []

    def execute(self, sql, params=()):
        if self.fail:
            raise RuntimeError("pool init failed")
        self.executed.append((sql, params))

    def fetch_one(self, sql, params=()):
        return {"role": self.role} if self.role else None


@pytest.fixture
def saved_exams():
    return []


def _make_app(db, saved_exams, email="admin@example.com"):
    app = Flask(__name__)
    app.testing = True
    deps = {
        "get_all_exams": lambda: [Exam.from_dict(EXAM_BODY)],
        "save_dynamic_exam": saved_exams.append,
        "all_results": lambda: [{"id": 1, "user_email": "s@example.com", "subject": "Biology", "year": 2024,
                                 "score": 2, "max_score": 2, "grade": "A", "taken_at": None, "time_taken": 90}],
        "students": lambda: [{"id": 3, "email": "s@example.com", "full_name": "Sahra", "attempts": 1,
                              "last_taken": None}],
        "execute": db.execute,
        "fetch_one": db.fetch_one,
    }
    app.register_blueprint(create_admin_blueprint("", deps))

    @app.before_request
    def _set_user():
        g.user_email = email

    return app


@pytest.fixture(autouse=True)
def _admins(monkeypatch):
    monkeypatch.setattr(admin, "ADMIN_EMAILS", {"admin@example.com"})


def test_non_admin_is_forbidden(saved_exams):
    client = _make_app(FakeDB(), saved_exams, email="student@example.com").test_client()
    assert client.get("/admin/").status_code == 403
    assert client.post("/admin/exams", json=EXAM_BODY).status_code == 403
    assert client.get("/admin/export/results.csv").status_code == 403
    assert saved_exams == []


def test_instructor_role_grants_access(saved_exams):
    client = _make_app(FakeDB(role="instructor"), saved_exams, email="instructor@example.com").test_client()
    resp = client.get("/admin/")
    assert resp.status_code == 200
    assert "2024_biology" in resp.get_data(as_text=True)


def test_create_exam_registers_and_stores_it(saved_exams):
    db = FakeDB()
    resp = _make_app(db, saved_exams).test_client().post("/admin/exams", json=EXAM_BODY)

    assert resp.status_code == 201
    assert resp.get_json() == {"ok": True, "key": "2024_biology", "questions": 1, "warning": None}
    assert saved_exams[0].id == "bio-2024"
    sql, params = db.executed[-1]
    assert "INSERT INTO public.exam_templates" in sql
    assert params[0] == "2024_biology"
    assert json.loads(params[1])["questions"][0]["correct_answer"] == "Mitochondria"


def test_create_exam_rejects_invalid_bodies(saved_exams):
    client = _make_app(FakeDB(), saved_exams).test_client()
    bad_mcq = dict(EXAM_BODY, questions=[dict(EXAM_BODY["questions"][0], correct_answer="Ribosome")])

    assert client.post("/admin/exams", json=[1, 2]).status_code == 400
    assert client.post("/admin/exams", json=bad_mcq).status_code == 400
    assert client.post("/admin/exams", json=dict(EXAM_BODY, questions=[])).status_code == 400
    assert saved_exams == []


def test_create_exam_warns_when_database_is_down(saved_exams):
    resp = _make_app(FakeDB(fail=True), saved_exams).test_client().post("/admin/exams", json=EXAM_BODY)
    assert resp.status_code == 201
    assert resp.get_json()["warning"]
    assert len(saved_exams) == 1


def test_csv_exports(saved_exams):
    client = _make_app(FakeDB(), saved_exams).test_client()

    resp = client.get("/admin/export/results.csv")
    assert resp.status_code == 200
    assert resp.mimetype == "text/csv"
    assert 'filename="exam_results.csv"' in resp.headers["Content-Disposition"]
    assert resp.get_data(as_text=True).splitlines()[1] == "1,s@example.com,Biology,2024,2,2,A,,90"

    resp = client.get("/admin/export/students.csv")
    assert resp.get_data(as_text=True).splitlines()[0] == "ID,Email,Full Name,Attempts,Last Exam"


def test_stored_templates_are_reloaded():
    rows = [{"exam_key": "2024_biology", "body": json.dumps(EXAM_BODY)},
            {"exam_key": "broken", "body": {"id": "x"}}]
    executed, loaded = [], []
    count = load_exam_templates(lambda sql, params=(): rows, lambda sql, params=(): executed.append(sql),
                                loaded.append)
    assert count == 1
    assert loaded[0].key == "2024_biology"
    assert "exam_templates" in executed[0]
