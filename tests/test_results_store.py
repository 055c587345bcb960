import sys
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from results_store import ResultStore, export_results_csv, export_students_csv, subject_stats  # noqa: E402


class FakeDB:
    def __init__(self, rows=None):
        self.rows = rows or []
        self.executed = []
        self.fetch_all_sql = []

    def fetch_all(self, sql, params=()):
        self.fetch_all_sql.append((sql, params))
        return list(self.rows)

    def execute(self, sql, params=()):
        self.executed.append((sql, params))


RECORD = {
    "exam_id": "math-2025", "subject": "Mathematics", "year": 2025, "score": 7.5,
    "max_score": 10, "grade": "A", "date": "2025-06-01T10:00:00+00:00", "time_taken": 600,
}


def test_schema_is_created_once():
    db = FakeDB()
    store = ResultStore(db.fetch_all, db.execute)
    store.ensure_schema()
    store.ensure_schema()
    creates = [sql for sql, _ in db.executed if "CREATE TABLE" in sql]
    assert len(creates) == 1
    assert "public.exam_results" in creates[0]


def test_save_result_inserts_record_fields():
    db = FakeDB()
    store = ResultStore(db.fetch_all, db.execute)
    store.save_result(3, RECORD, user_email="s@example.com")

    sql, params = db.executed[-1]
    assert "INSERT INTO public.exam_results" in sql
    assert params == (3, "s@example.com", "math-2025", "Mathematics", 2025, 7.5, 10, "A", 600,
                      "2025-06-01T10:00:00+00:00")


def test_history_normalises_numeric_columns():
    taken = datetime(2025, 6, 1, tzinfo=timezone.utc)
    db = FakeDB([{"id": 1, "exam_id": "math-2025", "subject": "Mathematics", "year": 2025,
                  "score": Decimal("7.5"), "max_score": Decimal("10"), "grade": "A",
                  "time_taken": 600, "taken_at": taken}])
    store = ResultStore(db.fetch_all, db.execute)
    history = store.get_history(3)
    assert history[0]["score"] == 7.5
    assert history[0]["max_score"] == 10
    assert db.fetch_all_sql[-1][1] == (3,)
    assert "ORDER BY taken_at DESC" in db.fetch_all_sql[-1][0]


def test_subject_stats_average_and_attempts():
    history = [
        {"subject": "Mathematics", "score": 8, "max_score": 10},
        {"subject": "Physics", "score": Decimal("3"), "max_score": 4},
        {"subject": "Mathematics", "score": 5, "max_score": 10},
    ]
    assert subject_stats(history) == [
        {"subject": "Mathematics", "average": 65, "attempts": 2},
        {"subject": "Physics", "average": 75, "attempts": 1},
    ]


def test_store_subject_stats_reads_history():
    db = FakeDB([{"subject": "History", "score": 2, "max_score": 3}])
    store = ResultStore(db.fetch_all, db.execute)
    assert store.get_subject_stats(9) == [{"subject": "History", "average": 67, "attempts": 1}]


def test_results_csv_has_header_and_rows():
    rows = [{"id": 1, "user_email": "s@example.com", "subject": "Mathematics", "year": 2025,
             "score": Decimal("7.5"), "max_score": 10, "grade": "A",
             "taken_at": datetime(2025, 6, 1, 10, 30), "time_taken": 600}]
    lines = export_results_csv(rows).splitlines()
    assert lines[0].startswith("Result ID,Student Email,Subject,Year,Score")
    assert lines[1] == "1,s@example.com,Mathematics,2025,7.5,10,A,2025-06-01 10:30,600"


def test_students_csv_quotes_names_with_commas():
    rows = [{"id": 4, "email": "a@example.com", "full_name": "Ali, Omar", "attempts": 2, "last_taken": None}]
    lines = export_students_csv(rows).splitlines()
    assert lines[0] == "ID,Email,Full Name,Attempts,Last Exam"
    assert lines[1] == '4,a@example.com,"Ali, Omar",2,'


def test_subject_average_rounds_half_up():
    assert subject_stats([{"subject": "Physics", "score": 1, "max_score": 8}]) == [
        {"subject": "Physics", "average": 13, "attempts": 1},
    ]
