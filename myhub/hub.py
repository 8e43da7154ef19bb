#!/usr/bin/env python3
"""
my-hub – a single-operator notes + media feed.
"""

import logging
import os
import secrets
from collections import defaultdict, deque
from contextlib import ExitStack
from datetime import timedelta
from functools import wraps
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from time import time
from typing import DefaultDict

import click
from flask import (
    Flask,
    Response,
    abort,
    g,
    redirect,
    render_template_string,
    request,
    send_from_directory,
    session,
    url_for,
)
from werkzeug.middleware.proxy_fix import ProxyFix

from myhub.feed import (
    AssetStore,
    NoteLog,
    Rejected,
    StorageError,
    build_feed,
    classify,
    ingest,
)

################################################################################
# Imports & constants
################################################################################
HUB_PREFIX = "/hub"
SESSION_DAYS = 7
UPLOAD_MAX_MB = int(os.environ.get("MY_HUB_MAX_UPLOAD_MB", "500"))
SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}
SITE_NAME = "my hub"

try:
    __version__ = version("my-hub")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"


################################################################################
# App + config
################################################################################
app = Flask(__name__)
app.url_map.strict_slashes = False
app.config.update(
    NOTES_FILE=os.environ.get("MY_HUB_DATA_FILE", "data.txt"),
    ASSETS_DIR=os.environ.get("MY_HUB_ASSETS_DIR", "assets"),
    ADMIN_USER=os.environ.get("MY_HUB_ADMIN_USER", ""),
    ADMIN_PASS=os.environ.get("MY_ADMIN_PASS", ""),
    MAX_CONTENT_LENGTH=UPLOAD_MAX_MB * 1024 * 1024,
    PERMANENT_SESSION_LIFETIME=timedelta(days=SESSION_DAYS),
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SECURE=os.environ.get("MY_HUB_COOKIE_SECURE") == "true",
)

_secret = os.environ.get("MY_HUB_SECRET_KEY", "")
if not _secret:
    app.logger.warning(
        "MY_HUB_SECRET_KEY not set – using a random key, sessions end on restart."
    )
    _secret = secrets.token_hex(32)
app.config["SECRET_KEY"] = _secret

app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)


def get_stores() -> tuple[NoteLog, AssetStore]:
    """Note log + asset store for the current app context, built once per request."""
    if "stores" not in g:
        g.stores = (
            NoteLog(app.config["NOTES_FILE"]),
            AssetStore(app.config["ASSETS_DIR"]),
        )
    return g.stores


################################################################################
# Access gate
################################################################################
def session_gate(req) -> bool:
    """Default gate: the cookie session of *req* carries the login flag."""
    return session.get("logged_in") is True


app.config["ACCESS_GATE"] = session_gate


def authorized() -> bool:
    return bool(app.config["ACCESS_GATE"](request))


def gated(view):
    """Send anyone the gate turns away to the login form."""

    @wraps(view)
    def wrapped(*args, **kwargs):
        if not authorized():
            return redirect(url_for("login"), code=303)
        return view(*args, **kwargs)

    return wrapped


def client_ip() -> str:
    """Return best-effort client IP after ProxyFix."""
    return (
        request.access_route[0] if request.access_route else request.remote_addr
    ) or "unknown"


def rate_limit(max_requests: int, window: int = 60, methods=("POST",)):
    hits: DefaultDict[str, deque] = defaultdict(deque)

    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            if request.method not in methods:
                return view(*args, **kwargs)

            now = time()
            dq = hits[client_ip()]
            while dq and now - dq[0] > window:
                dq.popleft()

            if len(dq) >= max_requests:
                retry_after = int(window - (now - dq[0]))
                return Response(
                    "Too many requests – try again later.",
                    status=429,
                    headers={"Retry-After": str(retry_after)},
                )

            dq.append(now)
            return view(*args, **kwargs)

        return wrapped

    return decorator


def check_credentials(username: str, password: str) -> bool:
    admin_user = app.config.get("ADMIN_USER") or ""
    admin_pass = app.config.get("ADMIN_PASS") or ""
    if not (username and password and admin_user and admin_pass):
        return False
    # compare both, always
    user_ok = secrets.compare_digest(username.encode(), admin_user.encode())
    pass_ok = secrets.compare_digest(password.encode(), admin_pass.encode())
    return user_ok and pass_ok


def _csrf_token() -> str:
    """One token per session (rotates on login)."""
    return session.get("csrf", "")


app.jinja_env.globals["csrf_token"] = _csrf_token
app.jinja_env.globals["version"] = __version__


@app.before_request
def csrf_protect():
    if request.method in SAFE_METHODS:
        return

    # no session yet ⇒ nothing to forge (covers the login POST)
    if not session.get("logged_in"):
        return

    token = session.get("csrf", "")
    sent = request.form.get("csrf") or request.headers.get("X-CSRFToken", "")
    if not token or not secrets.compare_digest(token, sent):
        abort(403)


@app.after_request
def sec_headers(resp):
    resp.headers.update(
        {
            "X-Frame-Options": "DENY",
            "X-Content-Type-Options": "nosniff",
            "Referrer-Policy": "strict-origin-when-cross-origin",
        }
    )
    return resp


################################################################################
# Templates
################################################################################
def wrap(body: str) -> str:
    """Glue prolog + page-specific body + epilog."""
    return TEMPL_PROLOG + body + TEMPL_EPILOG


TEMPL_PROLOG = """
<!doctype html>
<html lang="en">
<title>{{ title or 'my hub' }}</title>
<meta name="viewport" content="width=device-width, initial-scale=1">
<meta charset="utf-8">
<style>
body{font-family:-apple-system,BlinkMacSystemFont,"Segoe UI",Roboto,sans-serif;max-width:40em;margin:auto;padding:13px;color:#c9c9c9;background:#222;line-height:1.5}
a{color:#fff}img,video{max-width:100%;height:auto}
textarea,input{color:#c9c9c9;background:#4a4a4a;border:1px solid #4a4a4a;border-radius:4px;padding:6px 10px;margin-bottom:10px;box-sizing:border-box}
textarea{width:100%}
button{padding:5px 10px;background:#fff;color:#222;border:1px solid #fff;cursor:pointer}
.note{padding:.6rem 0;border-bottom:1px solid #333;white-space:pre-wrap;word-break:break-word}
.media{margin:1.5rem 0}.media figcaption{font-size:.75em;color:#888}
.error{color:#f9c0c0}
</style>
<header style="display:flex;justify-content:space-between;align-items:baseline">
  <h1 style="margin:.5rem 0"><a href="{{ url_for('index') }}" style="text-decoration:none">{{ title or 'my hub' }}</a></h1>
  {% if session.get('logged_in') %}<a href="{{ url_for('logout') }}">log out</a>{% endif %}
</header>
"""

TEMPL_EPILOG = """
<footer style="margin-top:3rem;font-size:.7em;color:#666">my-hub {{ version }}</footer>
</html>
"""

TEMPL_INDEX = wrap("""
{% block body %}
<form method="post" action="{{ url_for('upload') }}" enctype="multipart/form-data">
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  <textarea name="text" rows="3" placeholder="note, or the name of a file to link"></textarea>
  <input type="file" name="file" multiple accept=".jpg,.jpeg,.png,.svg,.mp4,.webm,.ogg,.mov">
  <button type="submit">Post</button>
</form>
<hr>
<section id="notes">
{% for it in feed.texts %}
  <div class="note">
  {%- if it.link_target -%}
    <a href="{{ it.link_target }}">{{ it.content }}</a>
  {%- else -%}
    {{ it.content }}
  {%- endif -%}
  </div>
{% endfor %}
</section>
<section id="media">
{% for it in feed.media %}
  <figure class="media">
  {% if it.kind == 'video' %}
    <video controls preload="metadata">
      <source src="{{ url_for('asset', filename=it.content) }}" type="{{ it.mime_type }}">
    </video>
  {% else %}
    <img src="{{ url_for('asset', filename=it.content) }}" alt="{{ it.content }}" loading="lazy">
  {% endif %}
    <figcaption>{{ it.content }}</figcaption>
  </figure>
{% endfor %}
</section>
{% if not feed.items %}<p style="color:#888">Nothing here yet.</p>{% endif %}
{% endblock %}
""")

TEMPL_LOGIN = wrap("""
{% block body %}
<hr>
{% if error %}<p class="error">{{ error }}</p>{% endif %}
<form method="post">
  <label for="username">Login</label>
  <input id="username" name="username" autocomplete="username" style="width:100%">
  <input id="password" name="password" type="password" autocomplete="current-password"
         placeholder="password" style="width:100%">
  <button type="submit">Sign&nbsp;in</button>
</form>
{% endblock %}
""")

TEMPL_404 = wrap("""
{% block body %}
  <hr>
  <h2>Page not found</h2>
  <p>The URL you asked for doesn’t exist. <a href="{{ url_for('index') }}">Back to the feed</a>.</p>
{% endblock %}
""")

TEMPL_500 = wrap("""
{% block body %}
  <hr>
  <h2>Internal Server Error</h2>
  <p>Something went wrong while reading or writing the hub’s files. Try again in a minute.</p>
{% endblock %}
""")


################################################################################
# Authentication
################################################################################
@app.route(f"{HUB_PREFIX}/login", methods=["GET", "POST"])
@rate_limit(max_requests=5, window=60)
def login():
    error = None
    if request.method == "POST":
        username = request.form.get("username", "")
        password = request.form.get("password", "")
        if check_credentials(username, password):
            session.clear()
            session.permanent = True
            session["logged_in"] = True
            session["csrf"] = secrets.token_hex(16)
            return redirect(url_for("index"), code=303)
        app.logger.info("Failed login from %s", client_ip())
        error = "Invalid credentials"

    return render_template_string(TEMPL_LOGIN, title=SITE_NAME, error=error)


@app.route(f"{HUB_PREFIX}/logout")
def logout():
    session.clear()
    return redirect(url_for("login"), code=303)


################################################################################
# Feed + uploads
################################################################################
@app.route("/")
def root():
    return redirect(url_for("index"))


@app.route(f"{HUB_PREFIX}/")
@gated
def index():
    notes, assets = get_stores()
    feed = build_feed(
        notes=notes,
        assets=assets,
        asset_path=lambda name: url_for("asset", filename=name),
    )
    return render_template_string(TEMPL_INDEX, title=SITE_NAME, feed=feed)


@app.route(f"{HUB_PREFIX}/upload", methods=["GET", "POST"])
@gated
def upload():
    if request.method != "POST":
        return redirect(url_for("index"), code=303)

    notes, assets = get_stores()
    files = [(f.filename or "", f.stream) for f in request.files.getlist("file")]
    report = ingest(request.form.get("text", ""), files, notes=notes, assets=assets)

    # skipped files stay silent towards the submitter
    for skip in report.skipped:
        app.logger.info("Upload %r dropped (%s)", skip.filename, skip.reason)
    return redirect(url_for("index"), code=303)


@app.route(f"{HUB_PREFIX}/assets/<filename>")
def asset(filename):
    if not authorized():
        abort(403)
    if filename.startswith("."):
        abort(404)  # temp files + dotfiles, never listed in the feed
    try:
        _, mime = classify(filename)
    except Rejected:
        abort(404)
    root = Path(app.config["ASSETS_DIR"]).resolve()
    return send_from_directory(root, filename, mimetype=mime)


@app.route("/robots.txt")
def robots():
    return Response("User-agent: *\nDisallow: /\n", mimetype="text/plain")


################################################################################
# Error pages
################################################################################
@app.errorhandler(404)
def not_found(exc):
    """Site-wide “Not Found” page."""
    return render_template_string(TEMPL_404, title=SITE_NAME), 404


@app.errorhandler(413)
def too_large(exc):
    return Response(f"Upload too large ({UPLOAD_MAX_MB} MiB max).", status=413)


@app.errorhandler(StorageError)
def storage_failed(exc):
    app.logger.error("Storage failure at %s", exc.stage, exc_info=exc)
    return render_template_string(TEMPL_500, title=SITE_NAME), 500


@app.errorhandler(500)
def internal_error(exc):
    return render_template_string(TEMPL_500, title=SITE_NAME), 500


################################################################################
# CLI
################################################################################
@app.cli.command("init")
def cli_init():
    """Create the asset directory and an empty note log."""
    notes, assets = get_stores()
    try:
        notes.ensure()
        assets.ensure()
    except StorageError as exc:
        raise click.ClickException(str(exc)) from exc

    click.secho("\n✅  Hub storage ready.", fg="green")
    click.echo(f"notes:  {notes.path}")
    click.echo(f"assets: {assets.root}")


@app.cli.command("note")
@click.argument("text")
def cli_note(text: str):
    """Append TEXT to the note log."""
    notes, assets = get_stores()
    try:
        report = ingest(text, (), notes=notes, assets=assets)
    except StorageError as exc:
        raise click.ClickException(str(exc)) from exc
    if not report.note_saved:
        raise click.ClickException("Nothing to save – the note is empty.")
    click.echo("saved")


@app.cli.command("upload")
@click.argument(
    "paths",
    nargs=-1,
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
def cli_upload(paths: tuple[Path, ...]):
    """Copy local media files into the asset store."""
    notes, assets = get_stores()
    with ExitStack() as stack:
        files = [(p.name, stack.enter_context(p.open("rb"))) for p in paths]
        try:
            report = ingest(None, files, notes=notes, assets=assets)
        except StorageError as exc:
            raise click.ClickException(str(exc)) from exc

    for name in report.stored:
        click.echo(f"stored   {name}")
    for skip in report.skipped:
        click.secho(f"skipped  {skip.filename} ({skip.reason})", fg="yellow")


@app.cli.command("feed")
def cli_feed():
    """Print the feed as the index page would order it."""
    notes, assets = get_stores()
    feed = build_feed(notes=notes, assets=assets)
    for it in feed.items:
        line = f"{it.kind:<5}  {it.content}"
        if it.link_target:
            line += f"  → {it.link_target}"
        click.echo(line)


################################################################################
# main
################################################################################
if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    app.run(port=3000, debug=True)
