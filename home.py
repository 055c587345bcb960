# home.py
from typing import Any, Dict
from flask import render_template_string, url_for, g

HOME_TEMPLATE = """
<!doctype html><html lang="en"><head><meta charset="utf-8"/>
<title>{{ site_title }}</title>
<meta name="viewport" content="width=device-width,initial-scale=1"/>
<style>
  body{font-family:system-ui,-apple-system,Segoe UI,Roboto,sans-serif;margin:0;line-height:1.55;color:#111827}
  .wrap{max-width:960px;margin:0 auto;padding:24px}
  .grid{display:grid;grid-template-columns:repeat(auto-fill,minmax(220px,1fr));gap:12px}
  .card{border:1px solid #e5e7eb;border-radius:10px;padding:14px;background:#fff}
  .year{display:inline-block;margin:4px 6px 0 0;padding:4px 10px;border:1px solid #d1d5db;border-radius:999px;text-decoration:none;color:inherit}
  .muted{color:#6b7280;font-size:13px}
  nav a{margin-right:12px}
</style></head>
<body><div class="wrap">
  <nav>
    {% if current_user_email %}<a href="{{ dashboard_url }}">My results</a><a href="{{ bp('/logout') }}">Sign out</a>
    {% else %}<a href="{{ bp('/login') }}">Sign in</a>{% endif %}
  </nav>
  <h1>{{ site_title }}</h1>
  <p class="muted">Pick a subject and a past paper year to sit a timed practice exam.</p>
  {% if err %}<div class="card" style="color:#b91c1c">{{ err }}</div>{% endif %}
  <div class="grid">
    {% for s in subjects %}
      <div class="card">
        <strong>{{ s.label }}</strong>
        <div class="muted">{{ s.language|capitalize }}</div>
        {% if s.links %}
          {% for y in s.links %}<a class="year" href="{{ y.href }}">{{ y.year }}</a>{% endfor %}
        {% else %}
          <div class="muted">No papers yet.</div>
        {% endif %}
      </div>
    {% endfor %}
  </div>
</div></body></html>
"""


def register_home_routes(app, base_path: str, deps: Dict[str, Any]):
    """
    Registers:
      - GET "/" -> endpoint 'index' (subjects with their available years)
    Also creates a BASE_PATH alias without changing the endpoint name used by links.
    """
    SITE_TITLE = deps.get("SITE_TITLE") or "Past Paper Exams"
    list_subjects = deps["subjects"]
    exam_endpoint = deps.get("exam_endpoint") or "exam.exam_overview"
    dashboard_endpoint = deps.get("dashboard_endpoint") or "dashboard.dashboard_view"

    def _alias(rule: str, view_func, methods=None, endpoint_suffix="alias"):
        if not base_path:
            return
        alias_rule = f"{base_path}{rule if rule.startswith('/') else '/' + rule}"
        endpoint = f"{view_func.__name__}_{endpoint_suffix}"
        app.add_url_rule(alias_rule, endpoint=endpoint, view_func=view_func, methods=methods or ["GET"])

    def _safe_url(endpoint: str, **values) -> str:
        try:
            return url_for(endpoint, **values)
        except Exception as e:
            print(f"[index] url_for({endpoint}) failed: {e}")
            return "#"

    def index():
        err = None
        try:
            subjects = list_subjects()
        except Exception as e:
            print(f"[catalog] subject listing failed: {e}")
            subjects, err = [], "The exam catalog is temporarily unavailable."

        cards = []
        for s in subjects:
            links = [
                {"year": y, "href": _safe_url(exam_endpoint, year=y, subject_key=s["key"])}
                for y in s.get("years") or []
            ]
            cards.append(dict(s, links=links))

        return render_template_string(
            HOME_TEMPLATE,
            site_title=SITE_TITLE,
            subjects=cards,
            err=err,
            dashboard_url=_safe_url(dashboard_endpoint),
            current_user_email=getattr(g, "user_email", None),
            bp=lambda p="/": (base_path or "") + p,
        )

    app.add_url_rule("/", view_func=index, methods=["GET"], endpoint="index")
    _alias("/", index, ["GET"])
