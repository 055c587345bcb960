# exam.py
# -----------------------------------------------------------------------------
# Timed exam engine (blueprint) on top of ExamSession.
# - One active session per signed-in user, kept in process memory
# - Overview page per (year, subject); unknown exams render a 404 notice
# - JSON API: start / state / answer / navigate / submit / cancel / confirm /
#   exit / result, all answering {"ok": ...}
# - Confirmed grading runs in a background thread; clients poll /state for
#   progress until the state is "completed"
# - The countdown runs server side; reaching zero submits without confirmation
# -----------------------------------------------------------------------------

import threading
from typing import Any, Callable, Dict, Optional

from flask import Blueprint, request, jsonify, render_template_string, url_for, g
from markupsafe import Markup, escape

from exam_session import ExamSession, ExamUnavailable, SessionState
from grader import Grader


def _default_spawn(fn: Callable[[], Any]) -> threading.Thread:
    t = threading.Thread(target=fn, name="exam-grading", daemon=True)
    t.start()
    return t


def _plain_rich(text: Optional[str]) -> Markup:
    return Markup(str(escape(text or "")).replace("\n", "<br/>"))


# -----------------------------------------------------------------------------
# Blueprint factory
# -----------------------------------------------------------------------------
def create_exam_blueprint(base_path: str, deps: Dict[str, Any], name: str = "exam") -> Blueprint:
    """
    Factory that returns a Blueprint mounted at <base_path>/exams.
    Required deps: get_exam(year, subject_key) -> Exam | None
    Optional deps: grader, save_result(user_id, record, user_email=None),
                   spawn(fn), timer_factory(callback), grading_delay, render_rich
    """
    url_prefix = (base_path or "").rstrip("/") + "/exams"
    bp = Blueprint(name, __name__, url_prefix=url_prefix)

    # ---- deps ----------------------------------------------------------------
    get_exam: Callable = deps["get_exam"]
    grader: Grader = deps.get("grader") or Grader()
    save_result: Optional[Callable] = deps.get("save_result")
    spawn: Callable = deps.get("spawn") or _default_spawn
    timer_factory: Optional[Callable] = deps.get("timer_factory")
    grading_delay: Optional[float] = deps.get("grading_delay")
    render_rich: Callable = deps.get("render_rich") or _plain_rich

    _sessions: Dict[Any, ExamSession] = {}
    _sessions_lock = threading.Lock()

    # ---------------------------- identity / sessions --------------------------
    def _identity() -> Optional[Any]:
        return getattr(g, "user_id", None) or getattr(g, "user_email", None)

    def _unauthorized():
        return jsonify({"ok": False, "error": "unauthorized"}), 401

    def _session_for(key: Any, create: bool = False) -> Optional[ExamSession]:
        with _sessions_lock:
            sess = _sessions.get(key)
            if sess is None and create:
                user_id = getattr(g, "user_id", None)
                user_email = getattr(g, "user_email", None)

                def _persist(record: Dict[str, Any]):
                    if save_result is None:
                        return
                    save_result(user_id, record, user_email=user_email)

                sess = ExamSession(
                    grader=grader,
                    save_result=_persist,
                    timer_factory=timer_factory,
                    grading_delay=grading_delay,
                )
                _sessions[key] = sess
            return sess

    def _drop_session(key: Any, sess: ExamSession) -> None:
        with _sessions_lock:
            if _sessions.get(key) is sess:
                del _sessions[key]

    def _with_feedback_html(data: Dict[str, Any]) -> Dict[str, Any]:
        result = data.get("result")
        if result:
            for fb in result.get("feedback") or []:
                fb["feedback_html"] = str(render_rich(fb.get("feedback")))
        return data

    def _state_payload(sess: ExamSession) -> Dict[str, Any]:
        return dict(_with_feedback_html(sess.snapshot()), ok=True)

    def _conflict(sess: ExamSession, error: str):
        return jsonify({"ok": False, "error": error, "state": sess.state.value}), 409

    # --------------------------------- pages -----------------------------------
    def _render_exam_page(context: Dict[str, Any]):
        inline = """
<!doctype html><html lang="{{ 'ar' if exam and exam.language == 'arabic' else 'en' }}"
  dir="{{ exam.direction if exam else 'ltr' }}"><head><meta charset="utf-8"/>
<title>{{ (exam.subject ~ ' ' ~ exam.year) if exam else 'Exam' }} · Exam</title>
<meta name="viewport" content="width=device-width,initial-scale=1"/>
<style>
  :root{--ink:#111827;--muted:#6b7280;--line:#e5e7eb}
  body{font-family:system-ui,-apple-system,Segoe UI,Roboto,sans-serif;margin:0;line-height:1.55;color:var(--ink)}
  .wrap{max-width:860px;margin:0 auto;padding:24px}
  .card{border:1px solid var(--line);border-radius:10px;padding:14px;margin:12px 0;background:#fff}
  .btn{display:inline-block;padding:10px 16px;border-radius:8px;background:#111827;color:#fff;border:0;cursor:pointer}
  .btn.ghost{background:#fff;color:#111827;border:1px solid #111827}
  .btn[disabled]{opacity:.5;cursor:not-allowed}
  .muted{color:var(--muted);font-size:13px}
  .timer{font-variant-numeric:tabular-nums;font-weight:700}
  .opt{display:block;padding:8px 10px;border:1px solid var(--line);border-radius:8px;margin:6px 0}
  .bar{height:8px;background:#f3f4f6;border-radius:999px;overflow:hidden}
  .bar>div{height:100%;background:#111827;width:0}
  textarea{width:100%}
  .hidden{display:none}
</style>
</head>
<body><div class="wrap">
  <a href="{{ home_url }}">← All subjects</a>
  {% if error_msg %}
    <div class="card" style="color:#b91c1c">{{ error_msg }}</div>
  {% else %}
    <h1>{{ exam.subject }} · {{ exam.year }}</h1>
    <div class="muted">{{ exam.questions|length }} questions · {{ exam.max_score }} marks ·
      {{ exam.duration_minutes|round(1) }} min</div>

    <div id="intro" class="card">
      <p>Once started, the countdown cannot be paused. When it reaches zero the exam is submitted automatically.</p>
      <button class="btn" id="start-btn">Start exam</button>
    </div>

    <div id="taking" class="hidden">
      <div class="card">Time left: <span class="timer" id="timer">--:--</span>
        <span class="muted" id="pos"></span></div>
      <div class="card">
        <div class="muted" id="section"></div>
        <div id="passage" class="muted"></div>
        <div id="qtext" style="margin:6px 0 10px"></div>
        <div id="qbody"></div>
      </div>
      <button class="btn ghost" id="prev-btn">Previous</button>
      <button class="btn" id="next-btn">Next</button>
      <button class="btn" id="submit-btn">Submit</button>
      <button class="btn ghost" id="exit-btn">Exit</button>
      <div id="confirm" class="card hidden">
        Submit now? You will not be able to change your answers.
        <button class="btn" id="confirm-btn">Yes, submit</button>
        <button class="btn ghost" id="cancel-btn">Keep working</button>
      </div>
    </div>

    <div id="grading" class="card hidden">
      Grading… <span id="pct">0</span>%
      <div class="bar"><div id="bar"></div></div>
    </div>

    <div id="result" class="card hidden"></div>
  {% endif %}
</div>
{% if not error_msg %}
<script>
(function(){
  const URLS = {{ urls|tojson }};
  let snap = null, poll = null;

  async function call(url, body){
    const opts = body === undefined ? {} : {method:"POST",headers:{"Content-Type":"application/json"},body:JSON.stringify(body)};
    const r = await fetch(url, opts);
    return r.json();
  }
  function show(id, on){ document.getElementById(id).classList.toggle('hidden', !on); }
  function fmt(s){ const m=Math.floor(s/60), r=s%60; return String(m).padStart(2,'0')+':'+String(r).padStart(2,'0'); }

  function renderQuestion(s){
    const q = s.question; if(!q) return;
    document.getElementById('section').textContent = q.section_label;
    document.getElementById('passage').textContent = q.passage || '';
    document.getElementById('qtext').textContent = q.text;
    document.getElementById('pos').textContent = ' · Question '+(s.current_index+1)+' of '+s.exam.question_count;
    const body = document.getElementById('qbody'); body.innerHTML = '';
    if(q.type === 'mcq'){
      q.options.forEach(function(o){
        const l=document.createElement('label'); l.className='opt';
        const i=document.createElement('input'); i.type='radio'; i.name='opt'; i.value=o; i.checked=(s.answer===o);
        i.addEventListener('change', function(){ answer(q.id, o); });
        l.appendChild(i); l.appendChild(document.createTextNode(' '+o)); body.appendChild(l);
      });
    }else{
      const t=document.createElement('textarea'); t.rows=6; t.value=s.answer||'';
      t.addEventListener('change', function(){ answer(q.id, t.value); });
      body.appendChild(t);
    }
    document.getElementById('next-btn').disabled = !s.can_advance;
    document.getElementById('submit-btn').disabled = !s.can_advance;
  }

  function renderResult(r){
    const box=document.getElementById('result'); box.innerHTML='';
    const h=document.createElement('h2'); h.textContent=r.score+' / '+r.max_score+' · '+r.percentage+'% · Grade '+r.grade; box.appendChild(h);
    (r.feedback||[]).forEach(function(f,i){
      const d=document.createElement('div'); d.className='card';
      d.innerHTML='<div><strong>Q'+(i+1)+'</strong> '+f.score+' / '+f.marks+'</div>'+f.feedback_html;
      box.appendChild(d);
    });
  }

  function render(s){
    snap = s;
    show('intro', s.state==='not_started');
    show('taking', s.state==='in_progress' || s.state==='confirming_submit');
    show('confirm', s.state==='confirming_submit');
    show('grading', s.state==='grading');
    show('result', s.state==='completed');
    document.getElementById('timer').textContent = fmt(s.remaining_seconds||0);
    document.getElementById('pct').textContent = s.progress||0;
    document.getElementById('bar').style.width = (s.progress||0)+'%';
    if(s.question) renderQuestion(s);
    if(s.state==='completed'){ stopPolling(); loadResult(); }
  }

  async function loadResult(){ const j=await call(URLS.result); if(j.ok) renderResult(j.result); }
  async function refresh(){ const j=await call(URLS.state); if(j.ok) render(j); }
  function startPolling(){ if(!poll) poll=setInterval(refresh, 1000); }
  function stopPolling(){ if(poll){ clearInterval(poll); poll=null; } }

  async function answer(qid, value){
    const j=await call(URLS.answer,{question_id:qid, answer:value}); if(j.ok) render(j);
  }
  async function post(url, body){ const j=await call(url, body||{}); if(j.state!==undefined && j.ok!==false) render(j); return j; }

  document.getElementById('start-btn').addEventListener('click', async function(){ await post(URLS.start); startPolling(); });
  document.getElementById('prev-btn').addEventListener('click', function(){ post(URLS.navigate,{delta:-1}); });
  document.getElementById('next-btn').addEventListener('click', function(){ post(URLS.navigate,{delta:1}); });
  document.getElementById('submit-btn').addEventListener('click', function(){ post(URLS.submit); });
  document.getElementById('cancel-btn').addEventListener('click', function(){ post(URLS.cancel); });
  document.getElementById('confirm-btn').addEventListener('click', async function(){ await post(URLS.confirm); startPolling(); });
  document.getElementById('exit-btn').addEventListener('click', function(){ post(URLS.exit); stopPolling(); });

  refresh().then(function(){ if(snap && snap.state!=='not_started' && snap.state!=='completed') startPolling(); });
})();
</script>
{% endif %}
</body></html>
"""
        return render_template_string(inline, **context)

    @bp.get("/<int:year>/<subject_key>")
    def exam_overview(year: int, subject_key: str):
        exam = get_exam(year, subject_key)
        home_url = (base_path or "").rstrip("/") + "/"
        if exam is None:
            ctx = {"exam": None, "error_msg": f"No {subject_key} exam is available for {year}.", "home_url": home_url}
            return _render_exam_page(ctx), 404
        urls = {
            "start": url_for(f"{bp.name}.exam_start", year=year, subject_key=subject_key),
            "state": url_for(f"{bp.name}.session_state"),
            "answer": url_for(f"{bp.name}.session_answer"),
            "navigate": url_for(f"{bp.name}.session_navigate"),
            "submit": url_for(f"{bp.name}.session_submit"),
            "cancel": url_for(f"{bp.name}.session_cancel"),
            "confirm": url_for(f"{bp.name}.session_confirm"),
            "exit": url_for(f"{bp.name}.session_exit"),
            "result": url_for(f"{bp.name}.session_result"),
        }
        return _render_exam_page({"exam": exam, "error_msg": None, "urls": urls, "home_url": home_url})

    # ----------------------------------- API -----------------------------------
    @bp.post("/<int:year>/<subject_key>/start")
    def exam_start(year: int, subject_key: str):
        key = _identity()
        if not key:
            return _unauthorized()
        sess = _session_for(key, create=True)
        try:
            started = sess.start(get_exam(year, subject_key))
        except ExamUnavailable:
            return jsonify({"ok": False, "error": "exam unavailable"}), 404
        if not started:
            return _conflict(sess, "grading in progress")
        print(f"[exam] {key} started {year}_{subject_key}")
        return jsonify(_state_payload(sess))

    @bp.get("/session/state")
    def session_state():
        key = _identity()
        if not key:
            return _unauthorized()
        sess = _session_for(key)
        if sess is None:
            return jsonify({"ok": True, "state": SessionState.NOT_STARTED.value})
        return jsonify(_state_payload(sess))

    def _require_session():
        key = _identity()
        if not key:
            return None, _unauthorized()
        sess = _session_for(key)
        if sess is None:
            return None, (jsonify({"ok": False, "error": "no active exam"}), 409)
        return sess, None

    @bp.post("/session/answer")
    def session_answer():
        sess, err = _require_session()
        if err:
            return err
        data = request.get_json(silent=True) or {}
        qid = data.get("question_id")
        if not qid:
            return jsonify({"ok": False, "error": "question_id is required"}), 400
        if not sess.record_answer(str(qid), data.get("answer")):
            return _conflict(sess, "answer not accepted")
        return jsonify(_state_payload(sess))

    @bp.post("/session/navigate")
    def session_navigate():
        sess, err = _require_session()
        if err:
            return err
        data = request.get_json(silent=True) or {}
        try:
            delta = int(data.get("delta") or 0)
        except (TypeError, ValueError):
            return jsonify({"ok": False, "error": "delta must be an integer"}), 400
        sess.navigate(delta)
        return jsonify(_state_payload(sess))

    @bp.post("/session/submit")
    def session_submit():
        sess, err = _require_session()
        if err:
            return err
        if not sess.request_submit():
            return _conflict(sess, "answer the current question before submitting")
        return jsonify(_state_payload(sess))

    @bp.post("/session/cancel")
    def session_cancel():
        sess, err = _require_session()
        if err:
            return err
        if not sess.cancel_submit():
            return _conflict(sess, "nothing to cancel")
        return jsonify(_state_payload(sess))

    @bp.post("/session/confirm")
    def session_confirm():
        sess, err = _require_session()
        if err:
            return err
        if sess.state != SessionState.CONFIRMING_SUBMIT:
            return _conflict(sess, "submission was not requested")
        key = _identity()

        def _grade():
            try:
                sess.confirm_submit()
            except Exception as e:
                print(f"[exam] grading failed for {key}: {e}", flush=True)

        spawn(_grade)
        return jsonify(_state_payload(sess)), 202

    @bp.post("/session/exit")
    def session_exit():
        sess, err = _require_session()
        if err:
            return err
        if not sess.exit():
            return _conflict(sess, "exam is not in progress")
        _drop_session(_identity(), sess)
        return jsonify(_state_payload(sess))

    @bp.get("/session/result")
    def session_result():
        sess, err = _require_session()
        if err:
            return err
        if sess.result is None:
            return jsonify({"ok": False, "error": "no result yet", "state": sess.state.value}), 404
        data = _with_feedback_html({"result": sess.result.to_dict()})
        data.update(ok=True, save_error=sess.save_error)
        # a delivered result ends the attempt; the next start creates a fresh session
        _drop_session(_identity(), sess)
        return jsonify(data)

    return bp
