"""Exam template catalog: static templates from disk plus admin-authored ones."""

from __future__ import annotations

import json
import os
import threading
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

from exam_models import Exam

EXAMS_DIR = Path(os.getenv("EXAMS_DIR") or (Path(__file__).resolve().parent / "exams"))
INDEX_FILE = "index.json"

# Admin-created exams live in memory and shadow static ones with the same key
_DYNAMIC: Dict[str, Exam] = {}
_DYNAMIC_LOCK = threading.Lock()


def _safe_load_json(path: Path) -> Any:
    try:
        with path.open("r", encoding="utf-8") as fh:
            return json.load(fh)
    except Exception as exc:
        print(f"[catalog] failed to load '{path}': {exc}")
        return None


def _exams_dir(exams_dir: Optional[Path]) -> Path:
    return Path(exams_dir) if exams_dir else EXAMS_DIR


@lru_cache(maxsize=4)
def load_index(exams_dir: Optional[Path] = None) -> Dict[str, Any]:
    data = _safe_load_json(_exams_dir(exams_dir) / INDEX_FILE)
    if not isinstance(data, dict):
        return {"subjects": [], "exams": []}
    return data


def subject_registry(exams_dir: Optional[Path] = None) -> Dict[str, Dict[str, Any]]:
    out: Dict[str, Dict[str, Any]] = {}
    for s in load_index(exams_dir).get("subjects") or []:
        if isinstance(s, dict) and s.get("key"):
            key = str(s["key"]).strip().lower()
            out[key] = {
                "key": key,
                "label": str(s.get("label") or key.title()),
                "language": str(s.get("language") or "english"),
            }
    return out


@lru_cache(maxsize=4)
def load_static_exams(exams_dir: Optional[Path] = None) -> Dict[str, Exam]:
    """Load every exam file listed in the index, keyed by "{year}_{subject_key}"."""
    base = _exams_dir(exams_dir)
    registry = subject_registry(exams_dir)
    exams: Dict[str, Exam] = {}
    for entry in load_index(exams_dir).get("exams") or []:
        file_name = entry.get("file") if isinstance(entry, dict) else entry
        if not file_name:
            continue
        raw = _safe_load_json(base / str(file_name))
        if not isinstance(raw, dict):
            continue
        subject = registry.get(str(raw.get("subject_key") or "").strip().lower()) or {}
        raw.setdefault("subject", subject.get("label"))
        raw.setdefault("language", subject.get("language"))
        try:
            exam = Exam.from_dict(raw)
        except ValueError as exc:
            print(f"[catalog] skipping '{file_name}': {exc}")
            continue
        exams[exam.key] = exam
    return exams


def reload_catalog() -> None:
    load_index.cache_clear()
    load_static_exams.cache_clear()


def save_dynamic_exam(exam: Exam) -> None:
    with _DYNAMIC_LOCK:
        _DYNAMIC[exam.key] = exam


def clear_dynamic_exams() -> None:
    with _DYNAMIC_LOCK:
        _DYNAMIC.clear()


def get_all_exams(exams_dir: Optional[Path] = None) -> List[Exam]:
    with _DYNAMIC_LOCK:
        dynamic = list(_DYNAMIC.values())
    shadowed = {e.key for e in dynamic}
    static = [e for k, e in load_static_exams(exams_dir).items() if k not in shadowed]
    return dynamic + static


def get_exam(year: Optional[int], subject_key: Optional[str],
             exams_dir: Optional[Path] = None) -> Optional[Exam]:
    """None means "no exam available" and is not an error."""
    if not year or not subject_key:
        return None
    key = f"{int(year)}_{str(subject_key).strip().lower()}"
    with _DYNAMIC_LOCK:
        if key in _DYNAMIC:
            return _DYNAMIC[key]
    return load_static_exams(exams_dir).get(key)


def available_years(subject_key: str, exams_dir: Optional[Path] = None) -> List[int]:
    key = (subject_key or "").strip().lower()
    years = {e.year for e in get_all_exams(exams_dir) if e.subject_key == key}
    return sorted(years, reverse=True)


def subjects(exams_dir: Optional[Path] = None) -> List[Dict[str, Any]]:
    """Registered subjects plus any subject only known from an exam, each with its years."""
    registry = dict(subject_registry(exams_dir))
    for e in get_all_exams(exams_dir):
        registry.setdefault(e.subject_key, {"key": e.subject_key, "label": e.subject, "language": e.language})
    out = []
    for key, meta in registry.items():
        out.append(dict(meta, years=available_years(key, exams_dir)))
    return out


__all__ = [
    "get_exam", "get_all_exams", "available_years", "subjects", "subject_registry",
    "save_dynamic_exam", "clear_dynamic_exams", "reload_catalog", "load_static_exams",
]
