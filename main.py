# main.py: exam practice app, login-ready, BASE_PATH-aware (psycopg3 + pooling)

import os
import re
from contextlib import contextmanager
from functools import lru_cache
from urllib.parse import urlparse, parse_qs, unquote, quote, urlsplit, urlunsplit
from typing import Optional

import bleach
import markdown
from flask import Flask, render_template_string, abort, request, redirect, g, session, flash
from markupsafe import Markup, escape

# Database (psycopg 3)
from psycopg_pool import ConnectionPool
from psycopg.rows import dict_row

# OAuth (Google via Authlib)
from authlib.integrations.flask_client import OAuth

# Blueprints / services
from admin import create_admin_blueprint, load_exam_templates
from dashboard import create_dashboard_blueprint
from exam import create_exam_blueprint
from home import register_home_routes
from grader import Grader
from results_store import ResultStore
import exam_catalog

# =============================================================================
# BASE_PATH & Flask app
# =============================================================================
BASE_PATH = (os.getenv("BASE_PATH", "") or "").rstrip("/")
STATIC_URL_PATH = (BASE_PATH + "/static") if BASE_PATH else "/static"

app = Flask(
    __name__,
    static_folder="static",
    static_url_path=STATIC_URL_PATH,
)
app.url_map.strict_slashes = False
app.secret_key = os.getenv("SECRET_KEY", "dev-secret")
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_SECURE=os.getenv("SESSION_COOKIE_SECURE", "1").lower() in {"1", "true", "yes"},
)

SITE_TITLE = os.getenv("SITE_TITLE", "Past Paper Exams")

# =============================================================================
# Auth mode
# =============================================================================
AUTH_REQUIRED = os.getenv("AUTH_REQUIRED", "1").lower() in {"1", "true", "yes"}

# =============================================================================
# OAuth (Google): supports base or full callback in OAUTH_REDIRECT_BASE
# =============================================================================
GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID")
GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET")
OAUTH_REDIRECT_BASE = (os.getenv("OAUTH_REDIRECT_BASE", "") or "").rstrip("/")

oauth: Optional[OAuth] = None
if GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET:
    oauth = OAuth(app)
    oauth.register(
        "google",
        client_id=GOOGLE_CLIENT_ID,
        client_secret=GOOGLE_CLIENT_SECRET,
        server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
        client_kwargs={"scope": "openid email profile"},
    )

def _require_oauth() -> OAuth:
    if oauth is None:
        abort(503, description="Google OAuth is not configured.")
    return oauth

def _bp(path: str = "") -> str:
    """Prefix a path with BASE_PATH (if set)."""
    p = path or "/"
    if not p.startswith("/"):
        p = "/" + p
    if BASE_PATH and (p == BASE_PATH or p.startswith(BASE_PATH + "/")):
        return p
    return (BASE_PATH + p) if BASE_PATH else p

def _oauth_callback_url() -> str:
    """
    Build the external callback URL:
    - If OAUTH_REDIRECT_BASE is a full callback, use it as-is.
    - Else treat it as a base and append '/auth/google/callback'.
    - If empty, derive from request.url_root + BASE_PATH.
    """
    base = OAUTH_REDIRECT_BASE or (request.url_root.rstrip("/") + (BASE_PATH or ""))
    if base.endswith("/auth/callback") or base.endswith("/auth/google/callback"):
        return base
    return base.rstrip("/") + "/auth/google/callback"

SIMPLE_LOGIN_PASSWORD = os.getenv("SIMPLE_LOGIN_PASSWORD", "")
SIMPLE_LOGIN_USER_EMAIL = os.getenv("SIMPLE_LOGIN_USER_EMAIL") or "student@example.com"
_enable_password_login_env = os.getenv("ENABLE_PASSWORD_LOGIN")
if _enable_password_login_env is not None:
    ENABLE_PASSWORD_LOGIN = _enable_password_login_env.lower() in {"1", "true", "yes"}
else:
    ENABLE_PASSWORD_LOGIN = not (GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET)
PASSWORD_LOGIN_ENABLED = ENABLE_PASSWORD_LOGIN or oauth is None

if AUTH_REQUIRED:
    if PASSWORD_LOGIN_ENABLED:
        if oauth is None:
            print("[auth] Google OAuth not configured; falling back to single-password login.", flush=True)
        else:
            print("[auth] Password login enabled; Google OAuth will be bypassed.", flush=True)
    elif oauth is not None:
        print("[auth] Google OAuth configured; password login disabled by default.", flush=True)

# =============================================================================
# DB configuration
# =============================================================================
DB_USER = os.getenv("DB_USER")
DB_PASS = os.getenv("DB_PASS") or os.getenv("DB_PASSWORD")  # support either name
DB_NAME = os.getenv("DB_NAME")

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_URL_LOCAL = os.getenv("DATABASE_URL_LOCAL")
DB_HOST_OVERRIDE = os.getenv("DB_HOST")
DB_PORT_OVERRIDE = os.getenv("DB_PORT")
FORCE_TCP = os.getenv("FORCE_TCP", "").lower() in {"1", "true", "yes"}

ALLOW_RAW_HTML = os.getenv("ALLOW_RAW_HTML", "0").lower() in {"1", "true", "yes"}
SANITIZE_HTML = os.getenv("SANITIZE_HTML", "1").lower() in {"1", "true", "yes"}

BLEACH_ALLOWED_TAGS = [
    "a","b","blockquote","code","em","i","li","ol","strong","ul",
    "p","h3","h4","pre","hr","br","span","div","img","table",
    "thead","tbody","tr","th","td","sub","sup",
]
BLEACH_ALLOWED_ATTRS = {
    "*": ["class","title"],
    "a": ["href","target","rel"],
    "img": ["src","alt","width","height","loading"],
}
BLEACH_ALLOWED_PROTOCOLS = ["http","https","mailto"]

def _log_choice(kwargs: dict, origin: str):
    host = kwargs.get("host", "localhost")
    if isinstance(host, str) and host.startswith("/"):
        print(f"[DB] {origin}: Unix socket -> {host}")
    else:
        print(f"[DB] {origin}: TCP -> {host}:{kwargs.get('port', 5432)}")

def _parse_database_url(url: str) -> dict:
    if not url:
        raise ValueError("Empty DATABASE_URL")
    # Normalize SA-style scheme to plain postgres for psycopg usage
    for pref in ("postgresql+psycopg://", "postgres+psycopg://", "postgresql+psycopg2://", "postgres+psycopg2://"):
        if url.startswith(pref):
            url = "postgresql://" + url.split("://", 1)[1]
            break

    p = urlparse(url)
    if p.scheme not in ("postgresql", "postgres"):
        raise ValueError(f"Unsupported scheme '{p.scheme}'")
    qs = parse_qs(p.query or "", keep_blank_values=True)
    host = qs["host"][0] if qs.get("host") else p.hostname
    dbname = (p.path or "").lstrip("/") or (qs["dbname"][0] if qs.get("dbname") else "")
    if not dbname:
        raise ValueError("DATABASE_URL missing dbname")
    kwargs = {
        "dbname": dbname,
        "user": unquote(p.username or ""),
        "password": unquote(p.password or ""),
        "connect_timeout": 10,
        "options": "-c search_path=public",
    }
    if host:
        kwargs["host"] = host
    if p.port and not (isinstance(host, str) and host.startswith("/")):
        kwargs["port"] = p.port
    if qs.get("sslmode"):
        kwargs["sslmode"] = qs["sslmode"][0]
    return kwargs

def _tcp_kwargs() -> dict:
    if not all([DB_NAME, DB_USER, DB_PASS]):
        raise RuntimeError("DB_NAME, DB_USER, DB_PASS must be set for TCP mode.")
    return {
        "host": DB_HOST_OVERRIDE or "127.0.0.1",
        "port": int(DB_PORT_OVERRIDE or "5432"),
        "dbname": DB_NAME,
        "user": DB_USER,
        "password": DB_PASS,
        "sslmode": "disable",
        "connect_timeout": 10,
        "options": "-c search_path=public",
    }

def _connection_kwargs() -> dict:
    if FORCE_TCP:
        kwargs = _tcp_kwargs(); _log_choice(kwargs, "FORCE_TCP"); return kwargs

    for name, url in (("DATABASE_URL_LOCAL", DATABASE_URL_LOCAL), ("DATABASE_URL", DATABASE_URL)):
        if not url:
            continue
        try:
            kwargs = _parse_database_url(url)
            _log_choice(kwargs, f"Using {name} (parsed)")
            return kwargs
        except ValueError as e:
            print(f"[DB] Ignoring {name}: {e}")

    kwargs = _tcp_kwargs(); _log_choice(kwargs, "Local dev"); return kwargs

# =============================================================================
# psycopg3 Connection Pool + helpers
# =============================================================================
_pg_pool: Optional[ConnectionPool] = None

def _to_conninfo(kwargs: dict) -> str:
    # Build libpq conninfo string from kwargs dict
    parts = []
    for k, v in kwargs.items():
        if v is None:
            continue
        s = str(v)
        if any(ch.isspace() for ch in s) or "'" in s or '"' in s:
            s = "'" + s.replace("'", r"\'") + "'"
        parts.append(f"{k}={s}")
    return " ".join(parts)

def init_pool():
    global _pg_pool
    if _pg_pool is not None:
        return
    conninfo = _to_conninfo(_connection_kwargs())
    _pg_pool = ConnectionPool(conninfo=conninfo, min_size=1, max_size=6, timeout=10)

@contextmanager
def get_conn():
    if _pg_pool is None:
        init_pool()
    with _pg_pool.connection() as conn:
        yield conn

def fetch_all(q, params=None):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
            return cur.fetchall()

def fetch_one(q, params=None):
    rows = fetch_all(q, params)
    return rows[0] if rows else None

def execute(q, params=None):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
        conn.commit()

def execute_returning(q, params=None):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
            rows = cur.fetchall()
        conn.commit()
        return rows

results = ResultStore(fetch_all, execute)

_db_ready = False

def ensure_db_ready():
    """Create tables on first use and re-register admin-authored exams."""
    global _db_ready
    if _db_ready:
        return
    execute("""
        CREATE TABLE IF NOT EXISTS public.users (
            id          BIGSERIAL PRIMARY KEY,
            email       TEXT UNIQUE NOT NULL,
            full_name   TEXT,
            role        TEXT NOT NULL DEFAULT 'student',
            created_at  TIMESTAMPTZ NOT NULL DEFAULT now()
        );
    """)
    results.ensure_schema()
    loaded = load_exam_templates(fetch_all, execute, exam_catalog.save_dynamic_exam)
    if loaded:
        print(f"[catalog] {loaded} authored exam(s) restored from the database")
    _db_ready = True

# =============================================================================
# Rendering helpers (Markdown/HTML): used for grader feedback
# =============================================================================
_HTML_PATTERN = re.compile(r"</?\w+[^>]*>")

def _sanitize_if_enabled(html: str) -> str:
    if not SANITIZE_HTML:
        return html
    return bleach.clean(
        html,
        tags=BLEACH_ALLOWED_TAGS,
        attributes=BLEACH_ALLOWED_ATTRS,
        protocols=BLEACH_ALLOWED_PROTOCOLS,
        strip=True,
    )

@lru_cache(maxsize=512)
def _render_rich_cached(text: str, allow_raw: bool, sanitize_flag: bool) -> str:
    if not text:
        return ""
    if not allow_raw and _HTML_PATTERN.search(text):
        text = str(escape(text))
    html = markdown.markdown(
        text,
        extensions=["fenced_code", "tables", "sane_lists", "nl2br"],
        output_format="html5",
    )
    return _sanitize_if_enabled(html)

def render_rich(text: Optional[str]) -> Markup:
    if text is None:
        return Markup("")
    text_str = text if isinstance(text, str) else str(text)
    return Markup(_render_rich_cached(text_str, ALLOW_RAW_HTML, SANITIZE_HTML))

app.jinja_env.filters["rich"] = render_rich

# =============================================================================
# Identity helpers
# =============================================================================
def _session_email() -> Optional[str]:
    u = session.get("user") or {}
    e = (u.get("email") or "").strip().lower()
    return e or None

def current_user_email() -> Optional[str]:
    return _session_email()

def ensure_user_row(email: str) -> int:
    row = fetch_one("SELECT id FROM users WHERE email = %s;", (email,))
    if row:
        return row["id"]
    display = email.split("@", 1)[0].replace(".", " ").title()
    rows = execute_returning("""
        INSERT INTO users (email, full_name, role)
        VALUES (%s, %s, 'student')
        ON CONFLICT (email) DO UPDATE SET full_name = EXCLUDED.full_name
        RETURNING id;
    """, (email, display))
    return rows[0]["id"]

# =============================================================================
# Jinja helpers
# =============================================================================
@app.context_processor
def inject_user_and_base():
    return {
        "current_user_email": getattr(g, "user_email", None),
        "base_path": BASE_PATH,
        "bp": _bp,
    }

# =============================================================================
# Routes (auth, health, identity)
# =============================================================================
@app.get("/healthz")
def healthz():
    try:
        row = fetch_one("SELECT 1 AS ok;")
        ok = bool(row and row.get("ok") == 1)
        return ("ok" if ok else "db-fail", 200 if ok else 500)
    except Exception as e:
        return (f"error: {e}", 500)

@app.get("/favicon.ico")
def favicon():
    return ("", 204)

def _sanitize_next(next_url: Optional[str]) -> str:
    if not next_url:
        return _bp("/")
    parts = urlsplit(next_url)
    if parts.scheme or parts.netloc:
        return _bp("/")
    path = parts.path or "/"
    blocked_prefixes = {_bp("/login"), _bp("/auth"), "/login", "/auth"}
    if any(path == p or path.startswith(p + "/") for p in blocked_prefixes):
        return _bp("/")
    safe = urlunsplit(("", "", path, parts.query, ""))
    return safe or _bp("/")

PASSWORD_LOGIN_TEMPLATE = """
<!doctype html><html lang="en"><meta charset="utf-8">
<title>Sign in</title>
<meta name="viewport" content="width=device-width, initial-scale=1">
<body style="font-family:system-ui,-apple-system,Segoe UI,Roboto,Ubuntu,Arial,sans-serif;margin:2rem;line-height:1.5">
  <h1>Sign in</h1>
  {% if error %}<p style="color:#b91c1c">{{ error }}</p>{% endif %}
  <form method="post">
    <input type="hidden" name="next" value="{{ next_url }}">
    <label>Password <input type="password" name="password" autofocus></label>
    <button type="submit">Continue</button>
  </form>
</body></html>
"""

# --- LOGIN (root) ---
@app.route("/login", methods=["GET", "POST"])
def login():
    if PASSWORD_LOGIN_ENABLED:
        if request.method == "POST":
            next_url = _sanitize_next(request.form.get("next") or session.get("login_next"))
        else:
            next_url = _sanitize_next(request.args.get("next") or session.get("login_next"))
        session["login_next"] = next_url

        error = None
        if request.method == "POST":
            password = (request.form.get("password") or "").strip()
            if SIMPLE_LOGIN_PASSWORD and password == SIMPLE_LOGIN_PASSWORD:
                session["user"] = {
                    "email": SIMPLE_LOGIN_USER_EMAIL.strip().lower(),
                    "name": "Student",
                    "picture": None,
                    "sub": "password-login",
                }
                return redirect(_sanitize_next(session.pop("login_next", None)))
            error = "Incorrect password. Please try again."

        return render_template_string(PASSWORD_LOGIN_TEMPLATE, next_url=next_url, error=error)

    provider = _require_oauth()
    session["login_next"] = _sanitize_next(request.args.get("next"))
    return provider.google.authorize_redirect(_oauth_callback_url())

# --- LOGOUT (root) ---
@app.get("/logout")
def logout():
    session.clear()
    flash("Signed out.", "success")
    return redirect(_bp("/"))

# --- CALLBACK (root: support both /auth/callback and /auth/google/callback) ---
@app.get("/auth/callback")
@app.get("/auth/google/callback")
def auth_callback():
    provider = _require_oauth()
    token = provider.google.authorize_access_token()

    # Authlib parses the ID token into token["userinfo"]; fall back to the userinfo endpoint
    claims = token.get("userinfo")
    if not claims:
        meta = provider.google.load_server_metadata() or {}
        userinfo_url = meta.get("userinfo_endpoint") or "https://openidconnect.googleapis.com/v1/userinfo"
        claims = provider.google.get(userinfo_url).json()

    email = (claims.get("email") or "").strip().lower()
    if not email:
        abort(400, description="Google authentication failed (no email).")

    session["user"] = {
        "email": email,
        "name": claims.get("name"),
        "picture": claims.get("picture"),
        "sub": claims.get("sub"),
    }
    try:
        ensure_user_row(email)
    except Exception as e:
        print(f"[auth] ensure_user_row failed for {email}: {e}")

    return redirect(_sanitize_next(session.pop("login_next", None)))

# --- Register the SAME routes under BASE_PATH aliases (e.g., /exams-app/login) ---
if BASE_PATH:
    app.add_url_rule(f"{BASE_PATH}/login", endpoint="login_bp", view_func=login, methods=["GET", "POST"])
    app.add_url_rule(f"{BASE_PATH}/logout", endpoint="logout_bp", view_func=logout, methods=["GET"])
    app.add_url_rule(f"{BASE_PATH}/auth/callback", endpoint="auth_callback_bp", view_func=auth_callback, methods=["GET"])
    app.add_url_rule(f"{BASE_PATH}/auth/google/callback", endpoint="auth_callback_google_bp", view_func=auth_callback, methods=["GET"])
    app.add_url_rule(f"{BASE_PATH}/healthz", endpoint="healthz_bp", view_func=healthz, methods=["GET"])

def _is_public_path(path: str) -> bool:
    if path.startswith(STATIC_URL_PATH):
        return True
    public_exact = set()
    for p in ("/", "/favicon.ico", "/healthz", "/login", "/logout",
              "/auth/callback", "/auth/google/callback", "/admin/whoami"):
        public_exact.update({p, _bp(p)})
    return path in public_exact

@app.before_request
def enforce_or_attach_identity():
    path = request.path
    email = current_user_email()
    if email:
        g.user_email = email
        try:
            ensure_db_ready()
            g.user_id = ensure_user_row(email)
        except Exception as e:
            print(f"[auth] ensure_user_row failed for {email}: {e}")
        return
    if _is_public_path(path):
        return
    if AUTH_REQUIRED:
        full = request.full_path if request.query_string else request.path
        next_url = _sanitize_next(full)
        return redirect(f"{_bp('/login')}?next={quote(next_url, safe='/:?&=')}")

# =============================================================================
# Register blueprints
# =============================================================================
def _save_result(user_id, record, user_email=None):
    results.save_result(user_id, record, user_email=user_email)
    print(f"[results] saved {record['exam_id']} for {user_email or user_id}: "
          f"{record['score']}/{record['max_score']} ({record['grade']})", flush=True)

register_home_routes(app, BASE_PATH, {
    "SITE_TITLE": SITE_TITLE,
    "subjects": exam_catalog.subjects,
})

app.register_blueprint(create_exam_blueprint(BASE_PATH, {
    "get_exam": exam_catalog.get_exam,
    "grader": Grader(),
    "save_result": _save_result,
    "render_rich": render_rich,
}))

app.register_blueprint(create_dashboard_blueprint({
    "get_history": results.get_history,
    "get_subject_stats": results.get_subject_stats,
    "ensure_user_row": ensure_user_row,
}))

app.register_blueprint(create_admin_blueprint(BASE_PATH, {
    "get_all_exams": exam_catalog.get_all_exams,
    "save_dynamic_exam": exam_catalog.save_dynamic_exam,
    "all_results": results.all_results,
    "students": results.students,
    "execute": execute,
    "fetch_one": fetch_one,
}))

# =============================================================================
# Local dev entry
# =============================================================================
if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    app.run(host="0.0.0.0", port=port, debug=True)
