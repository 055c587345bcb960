"""Service for driving one timed exam attempt from start to graded result."""

from __future__ import annotations

import random
import threading
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

from exam_instance import build_instance
from exam_models import Exam, ExamResult, Question
from grader import Grader
from grading_pipeline import grade_all


class SessionState(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    CONFIRMING_SUBMIT = "confirming_submit"
    GRADING = "grading"
    COMPLETED = "completed"


# the countdown keeps running while the confirmation step is shown
TIMED_STATES = (SessionState.IN_PROGRESS, SessionState.CONFIRMING_SUBMIT)


class ExamUnavailable(LookupError):
    """No exam template exists for the requested year/subject."""


class ExamTimer:
    """Calls `callback` every `interval` seconds on a daemon thread until stopped."""

    def __init__(self, callback: Callable[[], Any], interval: float = 1.0, name: str = "exam-timer"):
        self._callback = callback
        self._interval = interval
        self._name = name
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        # no join: stop() is called under the session lock, and from inside the callback on timeout
        self._stop_event.set()

    @property
    def running(self) -> bool:
        return self._thread is not None and not self._stop_event.is_set()

    def _run(self) -> None:
        while not self._stop_event.wait(self._interval):
            try:
                self._callback()
            except Exception as e:
                print(f"[exam] timer callback failed: {e}", flush=True)


TimerFactory = Callable[[Callable[[], Any]], Any]


class ExamSession:
    """
    State machine for one student's attempt:
    not_started -> in_progress <-> confirming_submit -> grading -> completed.

    Transitions are guarded by state; calls that do not apply in the current
    state return False/None and change nothing.
    """

    def __init__(
        self,
        grader: Optional[Grader] = None,
        save_result: Optional[Callable[[Dict[str, Any]], Any]] = None,
        *,
        rng: Optional[random.Random] = None,
        timer_factory: Optional[TimerFactory] = None,
        grading_delay: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
        on_progress: Optional[Callable[[int], None]] = None,
    ) -> None:
        self._grader = grader or Grader()
        self._save_result = save_result
        self._rng = rng
        self._timer_factory = timer_factory or (lambda cb: ExamTimer(cb))
        self._grading_delay = grading_delay
        self._sleep = sleep
        self._on_progress = on_progress

        self._lock = threading.RLock()
        self._timer: Any = None
        self._attempt = 0
        self._state = SessionState.NOT_STARTED
        self._reset_attempt()

    # ------------------------------------------------------------------ state
    def _reset_attempt(self) -> None:
        self._template: Optional[Exam] = None
        self._instance: Optional[Exam] = None
        self._answers: Dict[str, str] = {}
        self._current_index = 0
        self._remaining = 0
        self._total_seconds = 0
        self._time_taken = 0
        self._progress = 0
        self._result: Optional[ExamResult] = None
        self._save_error: Optional[str] = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def instance(self) -> Optional[Exam]:
        return self._instance

    @property
    def answers(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._answers)

    @property
    def current_index(self) -> int:
        return self._current_index

    @property
    def remaining_seconds(self) -> int:
        return self._remaining

    @property
    def time_taken(self) -> int:
        return self._time_taken

    @property
    def progress(self) -> int:
        return self._progress

    @property
    def result(self) -> Optional[ExamResult]:
        return self._result

    @property
    def save_error(self) -> Optional[str]:
        return self._save_error

    @property
    def current_question(self) -> Optional[Question]:
        inst = self._instance
        if not inst or not inst.questions:
            return None
        return inst.questions[self._current_index]

    # ------------------------------------------------------------------ timer
    def _start_timer(self) -> None:
        attempt = self._attempt
        self._timer = self._timer_factory(lambda: self.tick(_attempt=attempt))
        if self._timer is not None:
            self._timer.start()

    def _stop_timer(self) -> None:
        timer, self._timer = self._timer, None
        if timer is not None:
            timer.stop()

    # ------------------------------------------------------------ transitions
    def start(self, template: Optional[Exam]) -> bool:
        if template is None:
            raise ExamUnavailable("exam unavailable")
        with self._lock:
            if self._state == SessionState.GRADING:
                return False
            self._stop_timer()
            self._reset_attempt()
            self._attempt += 1
            self._template = template
            self._instance = build_instance(template, self._rng)
            self._total_seconds = max(1, int(round(template.duration_minutes * 60)))
            self._remaining = self._total_seconds
            self._state = SessionState.IN_PROGRESS
            self._start_timer()
            return True

    def tick(self, _attempt: Optional[int] = None) -> bool:
        """
        One second elapsed. Reaching zero submits without confirmation.
        Timers pass the attempt they were started for; ticks from an older attempt are ignored.
        """
        with self._lock:
            if _attempt is not None and _attempt != self._attempt:
                return False
            if self._state not in TIMED_STATES:
                return False
            if self._remaining > 0:
                self._remaining -= 1
            if self._remaining > 0:
                return True
            job = self._begin_grading()
        print("[exam] time is up; submitting automatically", flush=True)
        self._finish_grading(job)
        return True

    def record_answer(self, question_id: str, value: Optional[str]) -> bool:
        with self._lock:
            if self._state != SessionState.IN_PROGRESS or not self._instance:
                return False
            qid = str(question_id)
            if not any(q.id == qid for q in self._instance.questions):
                return False
            self._answers[qid] = "" if value is None else str(value)
            return True

    def is_answered(self, question_id: str) -> bool:
        return bool((self._answers.get(str(question_id)) or "").strip())

    def can_advance(self) -> bool:
        q = self.current_question
        return q is not None and self.is_answered(q.id)

    def navigate(self, delta: int) -> int:
        with self._lock:
            if self._state != SessionState.IN_PROGRESS or not self._instance:
                return self._current_index
            if delta > 0 and not self.can_advance():
                return self._current_index
            last = max(0, len(self._instance.questions) - 1)
            self._current_index = min(max(self._current_index + int(delta), 0), last)
            return self._current_index

    def request_submit(self) -> bool:
        with self._lock:
            if self._state != SessionState.IN_PROGRESS or not self.can_advance():
                return False
            self._state = SessionState.CONFIRMING_SUBMIT
            return True

    def cancel_submit(self) -> bool:
        with self._lock:
            if self._state != SessionState.CONFIRMING_SUBMIT:
                return False
            self._state = SessionState.IN_PROGRESS
            return True

    def confirm_submit(self) -> Optional[ExamResult]:
        with self._lock:
            if self._state != SessionState.CONFIRMING_SUBMIT:
                return None
            job = self._begin_grading()
        return self._finish_grading(job)

    def exit(self) -> bool:
        """Abandon the attempt. Nothing is graded or saved."""
        with self._lock:
            if self._state != SessionState.IN_PROGRESS:
                return False
            self._stop_timer()
            self._reset_attempt()
            self._attempt += 1
            self._state = SessionState.NOT_STARTED
            return True

    # ---------------------------------------------------------------- grading
    def _begin_grading(self) -> Tuple[Exam, Dict[str, str], int]:
        self._state = SessionState.GRADING
        self._stop_timer()
        self._time_taken = self._total_seconds - self._remaining
        self._progress = 0
        return self._instance, dict(self._answers), self._time_taken

    def _report_progress(self, percent: int) -> None:
        with self._lock:
            self._progress = percent
        if self._on_progress:
            self._on_progress(percent)

    def _finish_grading(self, job: Tuple[Exam, Dict[str, str], int]) -> Optional[ExamResult]:
        instance, answers, time_taken = job
        try:
            result = grade_all(
                instance, answers, self._report_progress,
                grader=self._grader,
                delay=self._grading_delay,
                sleep=self._sleep,
                time_taken=time_taken,
            )
        except Exception as e:
            print(f"[exam] grading failed for {instance.id}: {e}", flush=True)
            with self._lock:
                self._reset_attempt()
                self._state = SessionState.NOT_STARTED
            raise

        with self._lock:
            self._result = result
            self._instance = None
            self._state = SessionState.COMPLETED

        if self._save_result is not None:
            try:
                self._save_result(result.to_record())
            except Exception as e:
                print(f"[exam] saving result for {instance.id} failed: {e}", flush=True)
                self._save_error = str(e)
        return result

    # --------------------------------------------------------------- snapshot
    def snapshot(self) -> Dict[str, Any]:
        """JSON-friendly view of the attempt; answer keys are never included."""
        with self._lock:
            inst = self._instance
            q = self.current_question
            data: Dict[str, Any] = {
                "state": self._state.value,
                "remaining_seconds": self._remaining,
                "current_index": self._current_index,
                "progress": self._progress,
                "answered": sum(1 for v in self._answers.values() if v.strip()),
                "can_advance": self.can_advance(),
            }
            if inst is not None:
                data["exam"] = {
                    "id": inst.id,
                    "year": inst.year,
                    "subject": inst.subject,
                    "direction": inst.direction,
                    "duration_minutes": inst.duration_minutes,
                    "question_count": len(inst.questions),
                }
            if q is not None:
                data["question"] = q.to_dict(include_key=False)
                data["question"]["passage"] = inst.section_passages.get(q.section.name)
                data["answer"] = self._answers.get(q.id, "")
            if self._result is not None:
                data["result"] = self._result.to_dict()
                data["time_taken"] = self._time_taken
            if self._save_error:
                data["save_error"] = self._save_error
            return data


__all__ = ["ExamSession", "ExamTimer", "ExamUnavailable", "SessionState"]
