#!/usr/bin/env python3
"""
A single-file link-in-bio page.
"""

import json
import os
import re
import secrets
import shutil
import sqlite3
import tempfile
import threading
import uuid
from collections import Counter, defaultdict, deque
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from functools import wraps
from importlib.metadata import PackageNotFoundError, version
from mimetypes import guess_extension
from pathlib import Path
from time import time
from typing import DefaultDict
from urllib.parse import urlparse

import boto3
import click
import markdown
from botocore.exceptions import BotoCoreError, ClientError
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
from markupsafe import Markup
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.security import check_password_hash as verify_password
from werkzeug.security import generate_password_hash as hash_password
from werkzeug.utils import secure_filename

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
ENV_FILE = ROOT / ".env"
SECRET_FILE = ROOT / ".secret_key"

DEFAULT_TAGLINE = "💖 Welcome to my page 💖"
DEFAULT_ADMIN_USER = "admin"
DEFAULT_ADMIN_PASS = "password123"
SESSION_LIFETIME = timedelta(hours=24)

R2_ENV_KEYS = (
    "R2_ACCOUNT_ID",
    "R2_ACCESS_KEY_ID",
    "R2_SECRET_ACCESS_KEY",
    "R2_BUCKET",
    "R2_PUBLIC_BASE",
    "R2_ENDPOINT",
)
R2_REQUIRED_KEYS = (
    "R2_ACCOUNT_ID",
    "R2_ACCESS_KEY_ID",
    "R2_SECRET_ACCESS_KEY",
    "R2_BUCKET",
)
UPLOAD_MAX_BYTES = 8 * 1024 * 1024  # cap uploads to 8 MiB
# accepted upload types → extension of the stored file
IMAGE_MIMES = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/webp": ".webp",
    "image/gif": ".gif",
    "image/svg+xml": ".svg",
}

# carousel timing, shared by the page script and the Carousel model
CAROUSEL_WINDOW = 3
CAROUSEL_INTERVAL_MS = 4000
CAROUSEL_FADE_MS = 1000
VIEW_MARKER = "viewCounted"

_EXT_RE = re.compile(r"\.[^/.]+$")
_MEDIA_NAME_RE = re.compile(r"[\w-]+")
_CLICK_ID_RE = re.compile(r"[\w.-]{1,128}")

try:
    __version__ = version("linkpage")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"


def _read_env_file() -> dict[str, str]:
    env = {}
    if not ENV_FILE.exists():
        return env
    for ln in ENV_FILE.read_text().splitlines():
        ln = ln.strip()
        if not ln or ln.startswith("#") or "=" not in ln:
            continue
        k, v = ln.split("=", 1)
        env[k.strip()] = v.strip()
    return env


def env(key: str, default: str = "") -> str:
    """Process environment first, then the .env file, then *default*."""
    val = os.environ.get(key) or _read_env_file().get(key)
    return val.strip() if val else default


def _secret_key() -> str:
    key = env("SESSION_SECRET")
    if key:
        return key
    if SECRET_FILE.exists():
        return SECRET_FILE.read_text().strip()
    key = secrets.token_hex(32)
    SECRET_FILE.write_text(key)
    return key


################################################################################
# App
################################################################################
app = Flask(__name__)
app.url_map.strict_slashes = False
app.config.update(
    SECRET_KEY=_secret_key(),
    SITE_STORE=env("SITE_STORE", "sqlite"),
    DATABASE=env("DATABASE", str(ROOT / "linkpage.sqlite3")),
    DATA_FILE=env("DATA_FILE", str(ROOT / "site.json")),
    UPLOAD_DIR=env("UPLOAD_DIR", str(ROOT / "uploads")),
    MEDIA_BACKEND=env("MEDIA_BACKEND", "auto"),
    MEDIA_FOLDER=env("MEDIA_FOLDER", "gallery"),
    ANALYTICS_LOG_DIR=env(
        "ANALYTICS_LOG_DIR", str(Path(tempfile.gettempdir()) / "linkpage-clicks")
    ),
    ADMIN_USER=env("ADMIN_USER", DEFAULT_ADMIN_USER),
    ADMIN_HASH=env("ADMIN_HASH")
    or hash_password(env("ADMIN_PASS", DEFAULT_ADMIN_PASS)),
    MAX_CONTENT_LENGTH=UPLOAD_MAX_BYTES + 64 * 1024,
    PERMANENT_SESSION_LIFETIME=SESSION_LIFETIME,
    SESSION_REFRESH_EACH_REQUEST=False,  # fixed expiry from login
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SECURE=env("SESSION_COOKIE_SECURE", "0") == "1",
)
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)


@app.template_filter("mdinline")
def md_inline_filter(text: str | None) -> Markup:
    """
    Render Markdown, and if the result is exactly one <p>…</p> block,
    unwrap it so we get pure inline HTML.
    """
    s = markdown.markdown(text or "").strip()
    if s.startswith("<p>") and s.endswith("</p>"):
        s = s[3:-4].strip()
    return Markup(s)


def utc_now() -> datetime:
    """Return an *aware* datetime in UTC."""
    return datetime.now(timezone.utc)


################################################################################
# Site record
################################################################################
class StoreError(Exception):
    """The site record could not be read or written."""


class ImageNotFound(LookupError):
    pass


def default_record() -> dict:
    return {"tagline": DEFAULT_TAGLINE, "views": 0, "links": [], "images": []}


def clean_links(raw) -> list[dict[str, str]]:
    """
    Validate an admin-supplied link list.

    Every entry needs a non-empty ``name`` and ``url``; ``icon`` and
    ``shortCaption`` are optional. Raises ValueError on anything else.
    """
    if not isinstance(raw, list):
        raise ValueError("links must be a list")
    links = []
    for i, item in enumerate(raw):
        if not isinstance(item, dict):
            raise ValueError(f"link #{i + 1} is not an object")
        fields = {}
        for k in ("name", "url", "icon", "shortCaption"):
            v = item.get(k, "")
            if v is None:
                v = ""
            if not isinstance(v, str):
                raise ValueError(f"link #{i + 1}: {k} must be a string")
            fields[k] = v.strip()
        if not fields["name"] or not fields["url"]:
            raise ValueError(f"link #{i + 1} needs a name and a url")
        links.append(fields)
    return links


def normalize_record(data) -> dict:
    """Coerce a loaded document into the SiteRecord shape."""
    if not isinstance(data, dict):
        raise StoreError("site record is not an object")
    record = default_record()
    if isinstance(data.get("tagline"), str):
        record["tagline"] = data["tagline"]
    try:
        record["views"] = max(0, int(data.get("views") or 0))
    except (TypeError, ValueError):
        raise StoreError("site record has a bad view count") from None
    try:
        record["links"] = clean_links(data.get("links") or [])
    except ValueError as exc:
        raise StoreError(f"site record has bad links: {exc}") from None
    record["images"] = [u for u in data.get("images") or [] if isinstance(u, str)]
    return record


class Admin:
    """Proof that the current request passed the login gate."""

    __slots__ = ("username",)

    def __init__(self, username: str):
        self.username = username

    def __repr__(self) -> str:
        return f"Admin({self.username!r})"


def _check_admin(admin) -> None:
    if not isinstance(admin, Admin):
        raise PermissionError("admin capability required")


class SiteStore:
    """
    Read/write access to the one site record.

    Subclasses provide ``read`` and ``save`` (whole-record); the mutating
    helpers below are built on top of them and serialised by ``_lock``.
    """

    _lock = threading.RLock()

    def read(self) -> dict:
        raise NotImplementedError

    def save(self, record: dict) -> None:
        raise NotImplementedError

    def _update(self, fn):
        with self._lock:
            record = self.read()
            result = fn(record)
            self.save(record)
        return result

    def views(self) -> int:
        return self.read()["views"]

    def write(self, admin: Admin, tagline: str, links: list[dict]) -> None:
        _check_admin(admin)
        links = clean_links(links)

        def apply(record):
            record["tagline"] = tagline
            record["links"] = links

        self._update(apply)

    def append_image(self, admin: Admin, url: str) -> None:
        _check_admin(admin)
        self._update(lambda record: record["images"].append(url))

    def remove_image(self, admin: Admin, url: str) -> None:
        _check_admin(admin)

        def apply(record):
            try:
                record["images"].remove(url)
            except ValueError:
                raise ImageNotFound(url) from None

        self._update(apply)

    def increment_views(self) -> int:
        def apply(record):
            record["views"] += 1
            return record["views"]

        return self._update(apply)


class JsonSiteStore(SiteStore):
    """The whole record in one JSON file, replaced atomically on save."""

    def __init__(self, path):
        self.path = Path(path)

    def read(self) -> dict:
        with self._lock:
            if not self.path.exists():
                record = default_record()
                self.save(record)
                return record
            try:
                data = json.loads(self.path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as exc:
                raise StoreError(f"cannot read {self.path}") from exc
        return normalize_record(data)

    def save(self, record: dict) -> None:
        tmp = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(
                dir=self.path.parent, prefix=".site-", suffix=".json"
            )
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(record, fh, ensure_ascii=False, indent=2)
            os.replace(tmp, self.path)
        except OSError as exc:
            if tmp:
                Path(tmp).unlink(missing_ok=True)
            raise StoreError(f"cannot write {self.path}") from exc


SCHEMA = """
CREATE TABLE IF NOT EXISTS site (
    id      INTEGER PRIMARY KEY CHECK (id = 1),
    tagline TEXT    NOT NULL,
    views   INTEGER NOT NULL DEFAULT 0
);
CREATE TABLE IF NOT EXISTS site_link (
    id      INTEGER PRIMARY KEY,
    ord     INTEGER NOT NULL,
    name    TEXT    NOT NULL,
    url     TEXT    NOT NULL,
    icon    TEXT    NOT NULL DEFAULT '',
    caption TEXT    NOT NULL DEFAULT ''
);
CREATE TABLE IF NOT EXISTS site_image (
    id         INTEGER PRIMARY KEY AUTOINCREMENT,
    url        TEXT NOT NULL,
    created_at TEXT NOT NULL
);
"""


class SqliteSiteStore(SiteStore):
    """
    The record as a row in ``site`` plus ordered rows in ``site_link`` and
    ``site_image``. Every mutation is one transaction.
    """

    def __init__(self, db: sqlite3.Connection):
        self.db = db

    @contextmanager
    def _tx(self):
        try:
            with self.db:
                self.db.execute(
                    "INSERT OR IGNORE INTO site (id, tagline, views) VALUES (1, ?, 0)",
                    (DEFAULT_TAGLINE,),
                )
                yield self.db
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc

    def read(self) -> dict:
        with self._tx() as db:
            row = db.execute("SELECT tagline, views FROM site WHERE id=1").fetchone()
            links = db.execute(
                "SELECT name, url, icon, caption FROM site_link ORDER BY ord, id"
            ).fetchall()
            images = db.execute("SELECT url FROM site_image ORDER BY id").fetchall()
        return {
            "tagline": row["tagline"],
            "views": row["views"],
            "links": [
                {
                    "name": ln["name"],
                    "url": ln["url"],
                    "icon": ln["icon"],
                    "shortCaption": ln["caption"],
                }
                for ln in links
            ],
            "images": [r["url"] for r in images],
        }

    def _replace_links(self, db, links: list[dict]) -> None:
        db.execute("DELETE FROM site_link")
        db.executemany(
            "INSERT INTO site_link (ord, name, url, icon, caption) VALUES (?,?,?,?,?)",
            [
                (i, ln["name"], ln["url"], ln["icon"], ln["shortCaption"])
                for i, ln in enumerate(links)
            ],
        )

    def save(self, record: dict) -> None:
        record = normalize_record(record)
        now = utc_now().isoformat(timespec="seconds")
        with self._tx() as db:
            db.execute(
                "UPDATE site SET tagline=?, views=? WHERE id=1",
                (record["tagline"], record["views"]),
            )
            self._replace_links(db, record["links"])
            db.execute("DELETE FROM site_image")
            db.executemany(
                "INSERT INTO site_image (url, created_at) VALUES (?,?)",
                [(u, now) for u in record["images"]],
            )

    def views(self) -> int:
        with self._tx() as db:
            return db.execute("SELECT views FROM site WHERE id=1").fetchone()["views"]

    def write(self, admin: Admin, tagline: str, links: list[dict]) -> None:
        _check_admin(admin)
        links = clean_links(links)
        with self._tx() as db:
            db.execute("UPDATE site SET tagline=? WHERE id=1", (tagline,))
            self._replace_links(db, links)

    def append_image(self, admin: Admin, url: str) -> None:
        _check_admin(admin)
        with self._tx() as db:
            db.execute(
                "INSERT INTO site_image (url, created_at) VALUES (?,?)",
                (url, utc_now().isoformat(timespec="seconds")),
            )

    def remove_image(self, admin: Admin, url: str) -> None:
        _check_admin(admin)
        with self._tx() as db:
            row = db.execute(
                "SELECT id FROM site_image WHERE url=? ORDER BY id LIMIT 1", (url,)
            ).fetchone()
            if row is None:
                raise ImageNotFound(url)
            db.execute("DELETE FROM site_image WHERE id=?", (row["id"],))

    def increment_views(self) -> int:
        with self._tx() as db:
            db.execute("UPDATE site SET views = views + 1 WHERE id=1")
            return db.execute("SELECT views FROM site WHERE id=1").fetchone()["views"]


###############################################################################
# Database helpers
###############################################################################
_SCHEMA_READY: set[str] = set()


def connect(path) -> sqlite3.Connection:
    db = sqlite3.connect(path)
    db.row_factory = sqlite3.Row
    return db


def ensure_schema(db: sqlite3.Connection) -> None:
    db.executescript(SCHEMA)
    db.commit()


def get_db():
    if "db" not in g:
        path = app.config["DATABASE"]
        try:
            g.db = connect(path)
            if path not in _SCHEMA_READY:
                ensure_schema(g.db)
                _SCHEMA_READY.add(path)
        except sqlite3.Error as exc:
            raise StoreError(f"cannot open {path}") from exc
    return g.db


@app.teardown_appcontext
def close_db(error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def init_db():
    db = get_db()
    ensure_schema(db)
    _SCHEMA_READY.add(app.config["DATABASE"])


def get_store() -> SiteStore:
    if "store" not in g:
        if app.config["SITE_STORE"] == "json":
            g.store = JsonSiteStore(app.config["DATA_FILE"])
        else:
            g.store = SqliteSiteStore(get_db())
    return g.store


###############################################################################
# Media storage
###############################################################################
class MediaError(Exception):
    """Upload to or delete from the media host failed."""


def public_id_from_url(url: str) -> str:
    """
    Storage identifier for a media URL: the last two path segments with
    the file extension dropped (``…/gallery/abc.jpg`` → ``gallery/abc``).
    """
    path = urlparse(url).path
    return _EXT_RE.sub("", "/".join(path.split("/")[-2:]))


def image_id(url: str) -> str:
    """Short id used for click analytics (file name without extension)."""
    return _EXT_RE.sub("", urlparse(url).path.rsplit("/", 1)[-1])


def r2_config() -> dict[str, str]:
    cfg = {k: env(k) for k in R2_ENV_KEYS}
    return {k: v for k, v in cfg.items() if v}


def r2_is_configured(cfg: dict[str, str] | None = None) -> bool:
    cfg = cfg or r2_config()
    return all(cfg.get(k) for k in R2_REQUIRED_KEYS)


def _r2_client(cfg: dict[str, str]):
    endpoint = (
        cfg.get("R2_ENDPOINT")
        or f"https://{cfg['R2_ACCOUNT_ID']}.r2.cloudflarestorage.com"
    )
    return boto3.client(
        "s3",
        endpoint_url=endpoint,
        region_name="auto",
        aws_access_key_id=cfg["R2_ACCESS_KEY_ID"],
        aws_secret_access_key=cfg["R2_SECRET_ACCESS_KEY"],
    )


def r2_object_url(cfg: dict[str, str], key: str) -> str:
    base = cfg.get("R2_PUBLIC_BASE")
    if base:
        base = base.rstrip("/")
        return f"{base}/{key.lstrip('/')}"
    return f"https://{cfg['R2_BUCKET']}.{cfg['R2_ACCOUNT_ID']}.r2.cloudflarestorage.com/{key.lstrip('/')}"


class R2MediaStore:
    """
    Images as objects in an S3-compatible bucket.

    Keys are ``<folder>/<hex>`` without an extension (the content type is
    stored on the object), so ``public_id_from_url`` maps a public URL
    straight back to its key.
    """

    def __init__(self, cfg: dict[str, str], *, folder: str, client=None):
        self.cfg = cfg
        self.folder = folder.strip("/")
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = _r2_client(self.cfg)
        return self._client

    def store(self, stream, mimetype: str, filename: str = "") -> str:
        key = f"{self.folder}/{uuid.uuid4().hex}"
        try:
            stream.seek(0)
            self.client.upload_fileobj(
                stream,
                self.cfg["R2_BUCKET"],
                key,
                ExtraArgs={"ContentType": mimetype},
            )
        except (BotoCoreError, ClientError) as exc:
            raise MediaError(f"upload of {key} failed") from exc
        return r2_object_url(self.cfg, key)

    def owns(self, key: str) -> bool:
        folder, _, name = key.partition("/")
        return folder == self.folder and bool(_MEDIA_NAME_RE.fullmatch(name))

    def remove(self, url: str) -> bool:
        """Delete the object behind *url*; False when the id looks foreign."""
        key = public_id_from_url(url)
        if not self.owns(key):
            app.logger.warning(
                "Not deleting %s: derived id %r is outside %s/", url, key, self.folder
            )
            return False
        try:
            self.client.delete_object(Bucket=self.cfg["R2_BUCKET"], Key=key)
        except (BotoCoreError, ClientError) as exc:
            raise MediaError(f"delete of {key} failed") from exc
        app.logger.info("Deleted media object %s", key)
        return True


class LocalMediaStore:
    """Images as files in UPLOAD_DIR, served from /uploads/<filename>."""

    def __init__(self, directory, *, base_url: str = "/uploads"):
        self.directory = Path(directory)
        self.base_url = base_url.rstrip("/")

    def url_for_file(self, filename: str) -> str:
        return f"{self.base_url}/{filename}"

    def store(self, stream, mimetype: str, filename: str = "") -> str:
        # the extension follows the checked mimetype, never the client's name
        ext = IMAGE_MIMES.get(mimetype) or guess_extension(mimetype or "") or ""
        name = f"{uuid.uuid4().hex}{ext}"
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            stream.seek(0)
            with (self.directory / name).open("wb") as fh:
                shutil.copyfileobj(stream, fh)
        except OSError as exc:
            raise MediaError(f"cannot write {name}") from exc
        return self.url_for_file(name)

    def remove_file(self, filename: str) -> bool:
        if not filename or secure_filename(filename) != filename:
            return False
        try:
            (self.directory / filename).unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise MediaError(f"cannot delete {filename}") from exc
        app.logger.info("Deleted upload %s", filename)
        return True

    def remove(self, url: str) -> bool:
        return self.remove_file(urlparse(url).path.rsplit("/", 1)[-1])


def local_media() -> LocalMediaStore:
    return LocalMediaStore(app.config["UPLOAD_DIR"])


def media_store():
    backend = app.config.get("MEDIA_BACKEND", "auto")
    cfg = r2_config()
    if backend == "r2" or (backend == "auto" and r2_is_configured(cfg)):
        return R2MediaStore(cfg, folder=app.config["MEDIA_FOLDER"])
    return local_media()


###############################################################################
# Carousel + view counter
###############################################################################
# Reference models of the page script. The app itself never calls them;
# TEMPL_INDEX and TEMPL_ADMIN run the same rules in the browser, fed by
# carousel_config() and VIEW_MARKER.
class Carousel:
    """
    A window of ``window_size`` images rotating through ``images``, as
    the public page's ``startCarousel`` script rotates them.

    ``tick`` fades out the oldest image and appends the one at
    ``(cursor + window_size) % len(images)``.
    """

    def __init__(self, images, window_size: int = CAROUSEL_WINDOW):
        self.images = list(images)
        self.window_size = window_size
        self.cursor = 0
        self.window = deque(self.images[:window_size])

    @property
    def empty(self) -> bool:
        return not self.images

    def candidate(self) -> str | None:
        if not self.images:
            return None
        return self.images[(self.cursor + self.window_size) % len(self.images)]

    def tick(self) -> tuple[str, str] | None:
        """Advance one step; returns ``(outgoing, incoming)``."""
        if not self.window:
            return None
        incoming = self.candidate()
        outgoing = self.window.popleft()
        self.window.append(incoming)
        self.cursor = (self.cursor + 1) % len(self.images)
        return outgoing, incoming


class ManualCarousel:
    """
    One active slide with prev/next controls. Manual navigation restarts
    the auto-advance timer, so a tick right after a click is a no-op.
    """

    def __init__(self, images, *, interval: float, now: float = 0.0):
        self.images = list(images)
        self.interval = interval
        self.index = 0
        self.last_advance = now

    @property
    def current(self) -> str | None:
        return self.images[self.index] if self.images else None

    def show(self, index: int, now: float) -> str | None:
        if self.images:
            self.index = index % len(self.images)
        self.last_advance = now
        return self.current

    def next(self, now: float) -> str | None:
        return self.show(self.index + 1, now)

    def prev(self, now: float) -> str | None:
        return self.show(self.index - 1, now)

    def tick(self, now: float) -> bool:
        if not self.images or now - self.last_advance < self.interval:
            return False
        self.show(self.index + 1, now)
        return True


def carousel_config() -> dict:
    return {
        "window": CAROUSEL_WINDOW,
        "interval": CAROUSEL_INTERVAL_MS,
        "fade": CAROUSEL_FADE_MS,
    }


class ViewCounterClient:
    """
    The page's view-once logic: the first load from a browser counts,
    later loads only read. ``fetch(url)`` returns the decoded JSON body,
    ``storage`` is anything dict-like standing in for localStorage.
    """

    def __init__(self, fetch, storage):
        self.fetch = fetch
        self.storage = storage
        self.displayed: int | None = None

    @property
    def counted(self) -> bool:
        return bool(self.storage.get(VIEW_MARKER))

    def load(self) -> int | None:
        counted = self.counted
        url = "/api/views" if counted else "/api/views?count=true"
        try:
            data = self.fetch(url)
            views = data["views"]
            if not isinstance(views, int):
                raise TypeError(f"bad view count {views!r}")
        except Exception as exc:
            app.logger.warning("Error fetching view count: %s", exc)
            return self.displayed
        self.displayed = views
        if not counted:
            self.storage[VIEW_MARKER] = "true"
        return views


###############################################################################
# Authentication
###############################################################################
def check_credentials(username: str, password: str) -> bool:
    """Both checks always run, so a bad username costs the same as a bad password."""
    pw_ok = verify_password(app.config["ADMIN_HASH"], password or "")
    user_ok = secrets.compare_digest(
        (username or "").encode(), app.config["ADMIN_USER"].encode()
    )
    return pw_ok and user_ok


def current_admin() -> Admin | None:
    if session.get("logged_in"):
        return Admin(app.config["ADMIN_USER"])
    return None


def require_admin() -> Admin:
    admin = current_admin()
    if admin is None:
        abort(redirect(url_for("login_page")))
    return admin


def rate_limit(max_requests: int, window: int = 60):
    hits: DefaultDict[str, deque] = defaultdict(deque)

    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            now = time()
            ip = client_ip()

            dq = hits[ip]
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


def client_ip() -> str:
    """Return best-effort client IP after ProxyFix."""
    return (
        request.access_route[0] if request.access_route else request.remote_addr
    ) or "unknown"


def _csrf_token() -> str:
    """One token per session (rotates when the cookie does)."""
    return session.get("csrf", "")


SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}
CSRF_EXEMPT = {"record_click"}


@app.before_request
def csrf_protect():
    if request.method in SAFE_METHODS or request.endpoint in CSRF_EXEMPT:
        return

    # no logged-in flag yet ⇒ allow (covers the login POST)
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


app.jinja_env.globals.update(
    csrf_token=_csrf_token,
    version=__version__,
    image_id=image_id,
)


###############################################################################
# Click analytics
###############################################################################
def append_click_event(event: dict) -> None:
    """Append one click event to today's JSON-lines log."""
    log_dir = Path(app.config["ANALYTICS_LOG_DIR"])
    ts = datetime.fromisoformat(event["ts"])
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        with (log_dir / f"clicks-{ts:%Y%m%d}.log").open("a", encoding="utf-8") as fh:
            fh.write(json.dumps(event, separators=(",", ":")) + "\n")
    except OSError:
        app.logger.exception("Could not record click on %s", event.get("id"))


def click_counts(days: int = 7) -> Counter:
    log_dir = Path(app.config["ANALYTICS_LOG_DIR"])
    cutoff = (utc_now() - timedelta(days=days - 1)).date()
    counts: Counter = Counter()
    for p in sorted(log_dir.glob("clicks-*.log")):
        try:
            day = datetime.strptime(p.stem.replace("clicks-", ""), "%Y%m%d").date()
        except ValueError:
            continue
        if day < cutoff:
            continue
        for ln in p.read_text(encoding="utf-8").splitlines():
            try:
                counts[json.loads(ln)["id"]] += 1
            except (ValueError, KeyError, TypeError):
                continue
    return counts


###############################################################################
# Templates
###############################################################################
def wrap(body: str) -> str:
    """Glue prolog + page-specific body + epilog."""
    return TEMPL_PROLOG + body + TEMPL_EPILOG


TEMPL_PROLOG = """
<!doctype html>
<html lang="en">
<title>{{ title or 'links' }}</title>
<meta name="viewport" content="width=device-width, initial-scale=1">
<meta charset="utf-8">
<style>
html{font-family:-apple-system,BlinkMacSystemFont,"Segoe UI",Roboto,"Helvetica Neue",Arial,sans-serif}
body{max-width:34em;margin:auto;padding:16px;color:#f4e9f2;background:#1d1420;line-height:1.5}
a{color:#ffb6e1}
h1{text-align:center;font-size:1.6em}
.links{list-style:none;padding:0}
.links li{margin:.6em 0}
.links a{display:flex;gap:.6em;align-items:center;padding:.7em 1em;border-radius:12px;background:#2e2033;text-decoration:none}
.links img{width:1.5em;height:1.5em}
.links small{color:#b9a6b8;margin-left:auto}
.views{text-align:center;color:#b9a6b8;font-size:.9em}
#floatingGallery{display:flex;gap:8px;justify-content:center;min-height:140px;overflow:hidden}
.floating-img{width:30%;height:140px;object-fit:cover;border-radius:10px;transition:opacity 1s ease}
.fade-out{opacity:0}
.fade-in{animation:fadein 1s ease}
@keyframes fadein{from{opacity:0}to{opacity:1}}
.empty{color:#fff;text-align:center}
input,textarea,button{font:inherit;margin:.2em 0;padding:.4em .6em;border-radius:6px;border:1px solid #5b4560;background:#2e2033;color:inherit}
button{cursor:pointer}
.error{color:#ff8a8a}
.row{display:flex;gap:.4em;flex-wrap:wrap}
.row input{flex:1 1 8em}
.thumbs{display:grid;grid-template-columns:repeat(auto-fill,minmax(110px,1fr));gap:8px}
.thumbs figure{margin:0}
.thumbs img{width:100%;height:90px;object-fit:cover;border-radius:6px}
</style>
<body>
"""

TEMPL_EPILOG = """
<footer style="text-align:center;color:#7d6a7c;font-size:.75em;margin-top:3em">linkpage {{ version }}</footer>
</body>
</html>
"""

TEMPL_INDEX = wrap("""
<h1>{{ record.tagline|mdinline }}</h1>

<ul class="links">
{% for ln in record.links %}
  <li><a href="{{ ln.url }}" rel="noopener" target="_blank">
    {% if ln.icon.startswith('http') or ln.icon.startswith('/') %}
      <img src="{{ ln.icon }}" alt="">
    {% elif ln.icon %}
      <span>{{ ln.icon }}</span>
    {% endif %}
    <span>{{ ln.name }}</span>
    {% if ln.shortCaption %}<small>{{ ln.shortCaption }}</small>{% endif %}
  </a></li>
{% endfor %}
</ul>

<div id="floatingGallery"></div>

<p class="views">👀 <span id="viewCount">…</span> views</p>

<script>
const CAROUSEL = {{ carousel|tojson }};
const VIEW_MARKER = {{ view_marker|tojson }};

const imageId = src => {
  const name = new URL(src, location.href).pathname.split("/").pop();
  return name.replace(/\\.[^/.]+$/, "");
};

async function updateViewCount() {
  const counted = localStorage.getItem(VIEW_MARKER);
  const url = counted ? "/api/views" : "/api/views?count=true";
  try {
    const res = await fetch(url);
    if (!res.ok) throw new Error(`HTTP ${res.status}`);
    const data = await res.json();
    if (typeof data.views !== "number") throw new Error("bad view count");
    const el = document.getElementById("viewCount");
    if (el) el.textContent = data.views;
    if (!counted) localStorage.setItem(VIEW_MARKER, "true");
  } catch (err) {
    console.error("Error fetching view count:", err);
  }
}

function startCarousel(gallery, images) {
  if (!images.length) {
    gallery.innerHTML = '<p class="empty">No images uploaded yet.</p>';
    return;
  }
  let cursor = 0;
  const add = (src, cls) => {
    const img = document.createElement("img");
    img.className = cls;
    img.src = src;
    img.dataset.id = imageId(src);
    gallery.appendChild(img);
  };
  images.slice(0, CAROUSEL.window).forEach(src => add(src, "floating-img"));

  setInterval(() => {
    const shown = gallery.querySelectorAll(".floating-img");
    if (!shown.length) return;
    const next = images[(cursor + CAROUSEL.window) % images.length];
    const oldest = shown[0];
    oldest.classList.add("fade-out");
    setTimeout(() => {
      oldest.remove();
      add(next, "floating-img fade-in");
      cursor = (cursor + 1) % images.length;
    }, CAROUSEL.fade);
  }, CAROUSEL.interval);
}

document.addEventListener("click", e => {
  if (e.target.tagName === "IMG" && e.target.dataset.id) {
    fetch(`/api/click/${encodeURIComponent(e.target.dataset.id)}`, {method: "POST"});
  }
});

document.addEventListener("DOMContentLoaded", () => {
  updateViewCount();
  fetch("/api/images")
    .then(res => res.json())
    .then(images => startCarousel(document.getElementById("floatingGallery"), images))
    .catch(err => console.error("Error loading gallery:", err));
});
</script>
""")

TEMPL_LOGIN = wrap("""
<h1>Admin</h1>
{% if error %}<p class="error">{{ error }}</p>{% endif %}
<form method="post" action="{{ url_for('login') }}">
  {% if csrf_token() %}
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  {% endif %}
  <label>Username <input name="username" autocomplete="username" required></label><br>
  <label>Password <input name="password" type="password" autocomplete="current-password" required></label><br>
  <button type="submit">Sign in</button>
</form>
""")

TEMPL_ADMIN = wrap("""
<h1>Edit page</h1>
<p style="text-align:right"><a href="{{ url_for('index') }}">view page</a> ·
   <a href="{{ url_for('logout') }}">log out</a></p>

<h2>Tagline &amp; links</h2>
<form id="site-form">
  <input id="tagline" name="tagline" style="width:100%" value="{{ record.tagline }}">
  <div id="link-rows"></div>
  <button type="button" id="add-link">+ link</button>
  <button type="submit">Save</button>
  <span id="save-status"></span>
</form>

<h2>Gallery</h2>
<form id="upload-form" enctype="multipart/form-data">
  <input type="file" name="image" accept="image/*" required>
  <button type="submit">Upload</button>
  <span id="upload-status"></span>
</form>

<div id="preview" style="text-align:center;margin:1em 0">
  <button type="button" id="prev">‹</button>
  <img id="preview-img" alt="" style="max-height:200px;vertical-align:middle">
  <button type="button" id="next">›</button>
</div>

<div class="thumbs">
{% for url in record.images %}
  <figure>
    <img src="{{ url }}" alt="">
    <figcaption>{{ clicks[image_id(url)] }} clicks</figcaption>
    <button type="button" class="delete" data-url="{{ url }}">delete</button>
  </figure>
{% endfor %}
</div>

<script>
const CSRF = {{ csrf_token()|tojson }};
const LINKS = {{ record.links|tojson }};
const IMAGES = {{ record.images|tojson }};
const INTERVAL = {{ carousel.interval|tojson }};

const rows = document.getElementById("link-rows");
function addRow(ln = {}) {
  const row = document.createElement("div");
  row.className = "row";
  for (const k of ["name", "url", "icon", "shortCaption"]) {
    const input = document.createElement("input");
    input.name = k;
    input.placeholder = k;
    input.value = ln[k] || "";
    row.appendChild(input);
  }
  const rm = document.createElement("button");
  rm.type = "button";
  rm.textContent = "×";
  rm.onclick = () => row.remove();
  row.appendChild(rm);
  rows.appendChild(row);
}
LINKS.forEach(addRow);
document.getElementById("add-link").onclick = () => addRow();

document.getElementById("site-form").onsubmit = async e => {
  e.preventDefault();
  const links = [...rows.querySelectorAll(".row")].map(row => Object.fromEntries(
    [...row.querySelectorAll("input")].map(i => [i.name, i.value])));
  const res = await fetch("/api/update-site-data", {
    method: "POST",
    headers: {"Content-Type": "application/json", "X-CSRFToken": CSRF},
    body: JSON.stringify({tagline: document.getElementById("tagline").value, links}),
  });
  const data = await res.json().catch(() => ({}));
  document.getElementById("save-status").textContent =
    data.success ? "saved" : (data.error || "save failed");
};

document.getElementById("upload-form").onsubmit = async e => {
  e.preventDefault();
  const body = new FormData(e.target);
  body.append("csrf", CSRF);
  const res = await fetch("/admin/upload", {method: "POST", body});
  const data = await res.json().catch(() => ({}));
  if (data.success) location.reload();
  else document.getElementById("upload-status").textContent = data.error || "upload failed";
};

document.querySelectorAll("button.delete").forEach(btn => {
  btn.onclick = async () => {
    if (!confirm("Delete this image?")) return;
    const res = await fetch("/api/delete", {
      method: "DELETE",
      headers: {"Content-Type": "application/json", "X-CSRFToken": CSRF},
      body: JSON.stringify({url: btn.dataset.url}),
    });
    if (res.ok) btn.closest("figure").remove();
    else alert("Delete failed");
  };
});

// single-slide preview; prev/next restart the auto-advance timer
(() => {
  const img = document.getElementById("preview-img");
  if (!IMAGES.length) {
    document.getElementById("preview").style.display = "none";
    return;
  }
  let index = 0;
  let timer = null;
  const show = i => {
    index = (i + IMAGES.length) % IMAGES.length;
    img.src = IMAGES[index];
    clearInterval(timer);
    timer = setInterval(() => show(index + 1), INTERVAL);
  };
  document.getElementById("prev").onclick = () => show(index - 1);
  document.getElementById("next").onclick = () => show(index + 1);
  show(0);
})();
</script>
""")

TEMPL_404 = wrap("""
<h2>Page not found</h2>
<p>The URL you asked for doesn’t exist.
   <a href="{{ url_for('index') }}">Back to the front page</a>.</p>
""")

TEMPL_500 = wrap("""
<h2>Internal Server Error</h2>
<p>Our fault, not yours. Please try again in a minute.</p>
""")


###############################################################################
# Public pages + API
###############################################################################
@app.route("/")
def index():
    record = get_store().read()
    return render_template_string(
        TEMPL_INDEX,
        title=record["tagline"],
        record=record,
        carousel=carousel_config(),
        view_marker=VIEW_MARKER,
    )


@app.route("/api/site-data")
def site_data():
    return get_store().read()


@app.route("/api/images")
def images():
    return get_store().read()["images"]


@app.route("/api/views")
def views():
    if request.args.get("count", "").lower() in {"true", "1"}:
        return {"views": get_store().increment_views()}
    return {"views": get_store().views()}


@app.route("/api/click/<img_id>", methods=["POST"])
def record_click(img_id):
    if not _CLICK_ID_RE.fullmatch(img_id):
        return {"error": "Bad image id"}, 400
    append_click_event(
        {
            "ts": utc_now().isoformat(),
            "id": img_id,
            "ip": client_ip(),
            "ua": (request.user_agent.string or "")[:200],
        }
    )
    return ("", 204)


@app.route("/api/check-auth")
def check_auth():
    if session.get("logged_in"):
        return {"loggedIn": True}
    return {"loggedIn": False}, 401


@app.route("/uploads/<path:filename>")
def uploaded_file(filename):
    return send_from_directory(app.config["UPLOAD_DIR"], filename)


@app.route("/robots.txt")
def robots():
    return Response(
        "User-agent: *\nDisallow: /admin\nDisallow: /api/\n", mimetype="text/plain"
    )


###############################################################################
# Admin
###############################################################################
@app.route("/admin/login.html", methods=["GET"])
@app.route("/admin/login", methods=["GET"])
def login_page():
    if session.get("logged_in"):
        return redirect(url_for("admin_page"))
    return render_template_string(TEMPL_LOGIN, title="Sign in", error=None)


@app.route("/admin/login", methods=["POST"])
@rate_limit(max_requests=5, window=60)
def login():
    username = request.form.get("username", "").strip()
    password = request.form.get("password", "")

    if check_credentials(username, password):
        session.clear()
        session.permanent = True
        session["logged_in"] = True
        session["csrf"] = secrets.token_hex(16)
        app.logger.info("Admin login from %s", client_ip())
        return redirect(url_for("admin_page"))

    app.logger.info("Failed admin login from %s", client_ip())
    return render_template_string(TEMPL_LOGIN, title="Sign in", error="Invalid login")


@app.route("/admin/logout")
def logout():
    # an emptied session makes Flask expire the cookie
    session.clear()
    return redirect(url_for("login_page"))


@app.route("/admin/upload.html")
@app.route("/admin")
def admin_page():
    require_admin()
    return render_template_string(
        TEMPL_ADMIN,
        title="Admin",
        record=get_store().read(),
        carousel=carousel_config(),
        clicks=click_counts(days=30),
    )


@app.route("/api/update-site-data", methods=["POST"])
def update_site_data():
    admin = require_admin()
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        return {"success": False, "error": "Expected a JSON object."}, 400

    tagline = payload.get("tagline")
    if not isinstance(tagline, str):
        return {"success": False, "error": "tagline must be a string"}, 400
    try:
        get_store().write(admin, tagline.strip(), payload.get("links", []))
    except ValueError as exc:
        return {"success": False, "error": str(exc)}, 400
    return {"success": True}


@app.route("/admin/upload", methods=["POST"])
def upload_image():
    admin = require_admin()

    f = request.files.get("image")
    if f is None:
        return {"success": False, "error": "No file received."}, 400
    if not f.filename:
        return {"success": False, "error": "No file selected."}, 400

    mime = (f.mimetype or "").lower()
    if mime not in IMAGE_MIMES:
        return {"success": False, "error": "Only image uploads are allowed."}, 415

    clen = request.content_length
    if clen and clen > UPLOAD_MAX_BYTES:
        return {"success": False, "error": "File too large (8 MiB max)."}, 413

    try:
        url = media_store().store(f.stream, mime, f.filename)
    except MediaError:
        app.logger.exception("Image upload failed")
        return {"success": False, "error": "Upload failed"}, 500

    get_store().append_image(admin, url)
    app.logger.info("Image uploaded: %s", url)
    return {"success": True, "url": url}


@app.route("/api/delete", methods=["DELETE"])
def delete_image():
    admin = require_admin()
    payload = request.get_json(silent=True) or {}
    url = payload.get("url") if isinstance(payload, dict) else None
    if not isinstance(url, str) or not url.strip():
        return {"error": "Image URL required"}, 400

    try:
        get_store().remove_image(admin, url)
    except ImageNotFound:
        return {"error": "Image not found"}, 404

    try:
        remote_deleted = media_store().remove(url)
    except MediaError:
        app.logger.exception("Delete of %s from media host failed", url)
        remote_deleted = False
    return {"success": True, "removedUrl": url, "remoteDeleted": remote_deleted}


@app.route("/api/delete/<filename>", methods=["DELETE"])
def delete_upload(filename):
    admin = require_admin()
    media = local_media()
    if secure_filename(filename) != filename:
        return {"error": "Bad file name"}, 400

    url = media.url_for_file(filename)
    try:
        get_store().remove_image(admin, url)
    except ImageNotFound:
        return {"error": "Image not found"}, 404

    try:
        removed = media.remove_file(filename)
    except MediaError:
        app.logger.exception("Delete of %s failed", filename)
        removed = False
    return {"success": True, "removedUrl": url, "remoteDeleted": removed}


###############################################################################
# Error pages
###############################################################################
def _wants_json() -> bool:
    return request.path.startswith("/api/")


@app.errorhandler(StoreError)
def store_failed(exc):
    app.logger.error("Site store failure: %s", exc, exc_info=exc)
    return {"error": "Storage failure"}, 500


@app.errorhandler(404)
def not_found(exc):
    if _wants_json():
        return {"error": "Not found"}, 404
    return render_template_string(TEMPL_404, title="Not found"), 404


@app.errorhandler(413)
def too_large(exc):
    """Bodies over MAX_CONTENT_LENGTH are refused while the form is parsed."""
    return {"success": False, "error": "File too large (8 MiB max)."}, 413


@app.errorhandler(500)
def internal_error(exc):
    if _wants_json():
        return {"error": "Internal Server Error"}, 500
    return render_template_string(TEMPL_500, title="Error"), 500


###############################################################################
# CLI
###############################################################################
@app.cli.command("init")
def cli_init():
    """Create the database schema and the default site record."""
    init_db()
    record = get_store().read()
    click.secho("\n✅  Site store ready.", fg="green")
    click.echo(f"Tagline: {record['tagline']}")
    click.echo(f"Views:   {record['views']}")


@app.cli.command("hash-password")
@click.password_option()
def cli_hash_password(password: str):
    """Print an ADMIN_HASH line for the given password."""
    click.echo(f"ADMIN_HASH={hash_password(password)}")


@app.cli.command("clicks")
@click.option("--days", default=7, show_default=True, help="How far back to look.")
@click.option("--top", default=10, show_default=True, help="Rows to show.")
def cli_clicks(days: int, top: int):
    """Show the most clicked gallery images."""
    counts = click_counts(days)
    if not counts:
        click.echo("No clicks recorded.")
        return
    for img, n in counts.most_common(top):
        click.echo(f"{n:6d}  {img}")


###############################################################################
# main
###############################################################################
if __name__ == "__main__":
    app.run(port=int(env("PORT", "3000")))
