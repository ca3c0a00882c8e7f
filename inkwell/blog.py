#!/usr/bin/env python3
"""
Inkwell – a single-tenant blog with human-readable post URLs and SEO metadata.
"""

import mimetypes
import os
import re
import secrets
import sqlite3
import threading
import unicodedata
import uuid
from collections import Counter, defaultdict, deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import IntEnum
from functools import partial, wraps
from html import escape as html_escape
from html import unescape
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from time import time
from typing import Callable, DefaultDict, NamedTuple
from urllib.parse import quote, urlsplit

import click
import markdown
from flask import (
    Flask,
    Response,
    abort,
    current_app,
    g,
    has_app_context,
    has_request_context,
    jsonify,
    redirect,
    render_template_string,
    request,
    send_from_directory,
    url_for,
)
from itsdangerous import BadSignature, SignatureExpired, TimestampSigner
from jinja2.utils import htmlsafe_json_dumps
from markupsafe import Markup, escape
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.security import check_password_hash, generate_password_hash
from werkzeug.utils import secure_filename

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
ENV_FILE = ROOT / ".env"
SECRET_FILE = ROOT / ".secret_key"
DB_FILE = ROOT / "blog.sqlite3"
UPLOAD_DIR = ROOT / "uploads"

POSTS_PER_PAGE = 8
SESSION_LIFETIME = 7 * 24 * 3600
UPLOAD_MAX_BYTES = 10 * 1024 * 1024
FILES_PAGE_DEFAULT = 20
FILES_PAGE_MAX = 100
ALT_TEXT_MAX = 255

SLUG_MAX_LEN = 100
SLUG_PLACEHOLDER = "untitled"
MAX_SLUG_ATTEMPTS = 100

DESCRIPTION_MAX = 160
KEYWORDS_MAX = 255
EXCERPT_MAX = 500
DEFAULT_DESCRIPTION = "Read this post"
EMPTY_EXCERPT = "No content available"

SESSION_COOKIE = "session"
SAFE_METHODS = {"GET", "HEAD", "OPTIONS"}
REDIRECT_CACHE = "public, max-age=31536000"
LEGACY_DATE_FMT = "%a %b %d %H:%M:%S %Y"
SITEMAP_NS = "http://www.sitemaps.org/schemas/sitemap/0.9"

ROBOTS_DISALLOW = (
    "/login",
    "/logout",
    "/create",
    "/update",
    "/delete",
    "/create-comment",
    "/delete-comment",
    "/upload-file",
    "/api/",
)

IMAGE_MIMES = {
    "image/jpeg",
    "image/png",
    "image/gif",
    "image/webp",
    "image/svg+xml",
    "image/avif",
}

MD_EXTENSIONS = [
    "pymdownx.extra",
    "pymdownx.superfences",
    "pymdownx.tilde",
    "pymdownx.magiclink",
]

FILE_REF_RE = re.compile(r"\[file:([^\]]+)\]")
IMG_SRC_RE = re.compile(r"""<img[^>]+src=["']([^"']+)["']""", re.I)
HTML_TAG_RE = re.compile(r"<[^>]+>")
SPACE_RE = re.compile(r"\s+")
INT_RE = re.compile(r"[+-]?\d+", re.ASCII)
# SQLite INTEGER is a signed 64-bit value
SQLITE_INT_MIN = -(2**63)
SQLITE_INT_MAX = 2**63 - 1

try:
    __version__ = version("inkwell")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"


################################################################################
# Errors
################################################################################
class BlogError(Exception):
    """Base for failures that map onto an HTTP status."""

    code = 500
    default_message = "Internal server error"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ClientInputError(BlogError):
    code = 400
    default_message = "Invalid input data"


class NotFound(BlogError):
    code = 404
    default_message = "Page not found"


class Unauthorized(BlogError):
    code = 401
    default_message = "Not Authorized"


class StorageError(BlogError):
    code = 500
    default_message = "Storage unavailable"


class ConfigError(ValueError):
    """Raised at startup for an unusable configuration value."""


################################################################################
# Configuration
################################################################################
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _read_env_file(path: Path = ENV_FILE) -> dict[str, str]:
    """KEY=value lines; blank lines and # comments are skipped."""
    if not path.exists():
        return {}
    values = {}
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, val = line.partition("=")
        values[key.strip()] = val.strip().strip('"').strip("'")
    return values


def _persisted_secret() -> str:
    if SECRET_FILE.exists():
        return SECRET_FILE.read_text().strip()
    key = secrets.token_hex(32)
    SECRET_FILE.write_text(key)
    return key


def _as_bool(raw: str | None, default: bool = False) -> bool:
    if raw is None or raw.strip() == "":
        return default
    val = raw.strip().lower()
    if val in {"1", "true", "yes", "on"}:
        return True
    if val in {"0", "false", "no", "off"}:
        return False
    raise ConfigError(f"expected a boolean, got {raw!r}")


def normalize_base_url(domain: str | None, *, production: bool = False) -> str:
    """
    Turn DOMAIN into an absolute base URL without a trailing slash.

    • bare host names get a scheme (https in production)
    • production upgrades http:// to https://
    • empty means “derive from the incoming request”
    """
    domain = (domain or "").strip().rstrip("/")
    if not domain:
        return ""
    if not domain.startswith(("http://", "https://")):
        return ("https://" if production else "http://") + domain
    if production and domain.startswith("http://"):
        return "https://" + domain[len("http://") :]
    return domain


@dataclass(frozen=True)
class BlogConfig:
    database: str = str(DB_FILE)
    secret_key: str = ""
    base_url: str = ""
    production: bool = False
    site_name: str = "Blog"
    author: str = "Blog Author"
    admin_password: str | None = None
    session_lifetime: int = SESSION_LIFETIME
    storage_timeout: float = 5.0
    posts_per_page: int = POSTS_PER_PAGE
    upload_dir: str = str(UPLOAD_DIR)
    upload_max_bytes: int = UPLOAD_MAX_BYTES
    login_rate_limit: int = 5
    csrf_protection: bool = True
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env: dict[str, str] | None = None) -> "BlogConfig":
        """Build from the process environment (plus .env) and validate."""
        if env is None:
            env = {**_read_env_file(), **os.environ}

        def number(key: str, default, cast=int):
            raw = env.get(key)
            if raw is None or raw.strip() == "":
                return default
            try:
                return cast(raw)
            except ValueError as exc:
                raise ConfigError(f"{key} must be a number, got {raw!r}") from exc

        def flag(key: str, default: bool) -> bool:
            try:
                return _as_bool(env.get(key), default)
            except ConfigError as exc:
                raise ConfigError(f"{key}: {exc}") from exc

        production = flag("PRODUCTION", False)
        return cls(
            database=env.get("DBURI") or str(DB_FILE),
            secret_key=env.get("SECRET_KEY") or _persisted_secret(),
            base_url=normalize_base_url(env.get("DOMAIN"), production=production),
            production=production,
            site_name=env.get("SITE_NAME") or cls.site_name,
            author=env.get("AUTHOR") or cls.author,
            admin_password=env.get("ADMIN_PASSWORD") or None,
            session_lifetime=number("SESSION_LIFETIME", SESSION_LIFETIME),
            storage_timeout=number("STORAGE_TIMEOUT", 5.0, float),
            posts_per_page=number("POSTS_PER_PAGE", POSTS_PER_PAGE),
            upload_dir=env.get("UPLOAD_DIR") or str(UPLOAD_DIR),
            upload_max_bytes=number("UPLOAD_MAX_BYTES", UPLOAD_MAX_BYTES),
            login_rate_limit=number("LOGIN_RATE_LIMIT", 5),
            csrf_protection=flag("CSRF_PROTECTION", True),
            log_level=env.get("LOG_LEVEL") or "INFO",
        ).validate()

    def validate(self) -> "BlogConfig":
        """Return a normalised copy or raise ConfigError."""
        if not self.secret_key:
            raise ConfigError("secret_key must not be empty")
        if not self.database:
            raise ConfigError("database must not be empty")
        for name in (
            "session_lifetime",
            "storage_timeout",
            "posts_per_page",
            "upload_max_bytes",
            "login_rate_limit",
        ):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive")
        base_url = self.base_url.rstrip("/")
        if base_url and not re.fullmatch(r"https?://[^/\s]+(/\S*)?", base_url):
            raise ConfigError(f"base_url must be an absolute http(s) URL: {base_url!r}")
        level = self.log_level.upper()
        if level not in LOG_LEVELS:
            raise ConfigError(f"log_level must be one of {', '.join(LOG_LEVELS)}")
        return replace(self, base_url=base_url, log_level=level)


################################################################################
# Roles & sessions
################################################################################
class Role(IntEnum):
    ANONYMOUS = 0
    USER = 1
    ADMIN = 2

    @classmethod
    def from_name(cls, name: str) -> "Role":
        try:
            return cls[name.strip().upper()]
        except KeyError as exc:
            raise ValueError(f"unknown role {name!r}") from exc


def authorize(required: Role, actual: Role) -> bool:
    """Roles are totally ordered: ANONYMOUS < USER < ADMIN."""
    return actual >= required


@dataclass(frozen=True)
class Session:
    token: str
    user: str
    role: Role
    issued_at: datetime
    expires_at: datetime
    csrf: str = field(default_factory=lambda: secrets.token_hex(16), repr=False)


class SessionStore:
    """
    In-process table of live sessions, keyed by an opaque random token.

    Expired entries are evicted lazily: a lookup past ``expires_at``
    removes the entry and reports the caller as anonymous.  Every
    mutation holds ``_lock``; reads never observe a half-written entry
    because a Session is immutable and published with a single dict store.
    """

    def __init__(self, lifetime: int = SESSION_LIFETIME, clock: Callable[[], datetime] | None = None):
        self.lifetime = timedelta(seconds=lifetime)
        self._clock = clock
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()

    def _now(self) -> datetime:
        return self._clock() if self._clock else utc_now()

    def __len__(self) -> int:
        return len(self._sessions)

    def issue(self, user: str, role: Role) -> Session:
        if role is Role.ANONYMOUS:
            raise ValueError("anonymous callers do not get sessions")
        now = self._now()
        with self._lock:
            self._purge_expired(now)
            token = secrets.token_urlsafe(32)
            while token in self._sessions:
                token = secrets.token_urlsafe(32)
            sess = Session(
                token=token,
                user=user,
                role=role,
                issued_at=now,
                expires_at=now + self.lifetime,
            )
            self._sessions[token] = sess
        return sess

    def login(self, name: str, password: str, *, db: sqlite3.Connection) -> Session:
        """Verify credentials and open a session; raises Unauthorized."""
        user, role = verify_credentials(db, name, password)
        return self.issue(user, role)

    def lookup(self, token: str | None) -> Session | None:
        if not token:
            return None
        sess = self._sessions.get(token)
        if sess is None:
            return None
        if self._now() >= sess.expires_at:
            with self._lock:
                if self._sessions.get(token) is sess:
                    del self._sessions[token]
            return None
        return sess

    def classify(self, token: str | None) -> Role:
        sess = self.lookup(token)
        return sess.role if sess else Role.ANONYMOUS

    def revoke(self, token: str | None) -> bool:
        if not token:
            return False
        with self._lock:
            return self._sessions.pop(token, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._sessions.clear()

    def _purge_expired(self, now: datetime) -> None:
        # caller holds the lock
        dead = [t for t, s in self._sessions.items() if now >= s.expires_at]
        for t in dead:
            del self._sessions[t]


################################################################################
# App
################################################################################
app = Flask(__name__)
app.url_map.strict_slashes = False
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)


class BlogState:
    """Per-app runtime: config, session store, cookie signer, slug lock."""

    def __init__(self, config: BlogConfig):
        self.config = config
        self.sessions = SessionStore(lifetime=config.session_lifetime)
        self.signer = TimestampSigner(config.secret_key, salt="inkwell-session")
        self.slug_lock = threading.Lock()
        self.schema_ready = False


def configure(flask_app: Flask, config: BlogConfig) -> BlogState:
    """Install *config* (validated) and a fresh session store on *flask_app*."""
    config = config.validate()
    flask_app.config.update(
        SECRET_KEY=config.secret_key,
        MAX_CONTENT_LENGTH=config.upload_max_bytes,
        # our own cookie is called "session"; keep Flask's out of its way
        SESSION_COOKIE_NAME="inkwell_flask",
    )
    flask_app.logger.setLevel(config.log_level)
    state = BlogState(config)
    flask_app.extensions["inkwell"] = state
    return state


def blog_state() -> BlogState:
    return current_app.extensions["inkwell"]


def cfg() -> BlogConfig:
    return blog_state().config


def site_url() -> str:
    """Absolute base URL without trailing slash."""
    base = cfg().base_url
    if base:
        return base
    if has_request_context():
        return request.url_root.rstrip("/")
    return "http://localhost"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def now_iso() -> str:
    return utc_now().isoformat(timespec="seconds")


def client_ip() -> str:
    """Return best-effort client IP after ProxyFix."""
    return (
        request.access_route[0] if request.access_route else request.remote_addr
    ) or "unknown"


def parse_int(raw: str | int | None, *, what: str, out_of_range: type[BlogError] = NotFound) -> int:
    """
    Parse a decimal id or number from a request.

    Garbage is a ClientInputError; a number SQLite cannot store raises
    *out_of_range* (an id that large can never match a row).
    """
    if isinstance(raw, int):
        value = raw
    else:
        raw = (raw or "").strip()
        if not INT_RE.fullmatch(raw):
            raise ClientInputError(f"Invalid {what}")
        value = int(raw)
    if not SQLITE_INT_MIN <= value <= SQLITE_INT_MAX:
        raise out_of_range(f"{what.capitalize()} out of range")
    return value


def parse_timestamp(raw: str | None) -> datetime | None:
    """ISO-8601 (what we write) or the ctime-style dates of imported rows."""
    raw = (raw or "").strip()
    if not raw:
        return None
    try:
        return datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        pass
    try:
        return datetime.strptime(raw, LEGACY_DATE_FMT)
    except ValueError:
        return None


def _field(row, key: str):
    """Optional column access for sqlite3.Row and plain dicts alike."""
    try:
        return row[key]
    except (KeyError, IndexError):
        return None


configure(app, BlogConfig.from_env())


################################################################################
# Database helpers
################################################################################
SCHEMA = """
CREATE TABLE IF NOT EXISTS user (
    id            INTEGER PRIMARY KEY,
    name          TEXT UNIQUE NOT NULL,
    password_hash TEXT NOT NULL,
    role          TEXT NOT NULL DEFAULT 'user'
                  CHECK (role IN ('user', 'admin'))
);
CREATE TABLE IF NOT EXISTS post (
    id               INTEGER PRIMARY KEY AUTOINCREMENT,
    title            TEXT NOT NULL,
    body             TEXT NOT NULL,
    slug             TEXT,
    created_at       TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS comment (
    id         INTEGER PRIMARY KEY AUTOINCREMENT,
    post_id    INTEGER NOT NULL REFERENCES post(id) ON DELETE CASCADE,
    author     TEXT NOT NULL,
    body       TEXT NOT NULL,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS file (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    uuid          TEXT UNIQUE NOT NULL,
    original_name TEXT NOT NULL,
    stored_name   TEXT NOT NULL,
    mime_type     TEXT NOT NULL,
    size          INTEGER NOT NULL,
    is_image      INTEGER NOT NULL DEFAULT 0,
    alt_text      TEXT,
    created_at    TEXT NOT NULL
);
"""

# Columns added after the first release; legacy databases get them on open.
POST_COLUMNS = {
    "meta_description": "TEXT",
    "keywords": "TEXT",
    "updated_at": "TEXT",
    "deleted_at": "TEXT",
}

INDEXES = """
CREATE UNIQUE INDEX IF NOT EXISTS idx_post_live_slug
    ON post(slug) WHERE deleted_at IS NULL;
CREATE INDEX IF NOT EXISTS idx_post_created ON post(created_at);
CREATE INDEX IF NOT EXISTS idx_comment_post ON comment(post_id);
CREATE INDEX IF NOT EXISTS idx_file_name ON file(original_name);
"""


def get_db() -> sqlite3.Connection:
    if "db" not in g:
        conf = cfg()
        g.db = sqlite3.connect(
            conf.database,
            timeout=conf.storage_timeout,
            uri=conf.database.startswith("file:"),
        )
        g.db.row_factory = sqlite3.Row
        g.db.execute("PRAGMA foreign_keys = ON;")
        state = blog_state()
        if not state.schema_ready:
            init_db()
            state.schema_ready = True
    return g.db


@app.teardown_appcontext
def close_db(_exc):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def ensure_post_columns(db: sqlite3.Connection) -> None:
    have = {row["name"] for row in db.execute("PRAGMA table_info(post)")}
    for name, decl in POST_COLUMNS.items():
        if name not in have:
            db.execute(f"ALTER TABLE post ADD COLUMN {name} {decl}")


def init_db() -> None:
    db = get_db()
    db.executescript(SCHEMA)
    ensure_post_columns(db)
    db.executescript(INDEXES)
    db.commit()

    admin_pw = cfg().admin_password
    if admin_pw and not db.execute("SELECT 1 FROM user WHERE role='admin'").fetchone():
        create_user(db, name="admin", password=admin_pw, role=Role.ADMIN)
        app.logger.info("seeded admin account from ADMIN_PASSWORD")


################################################################################
# Users & credentials
################################################################################
_DUMMY_HASH = generate_password_hash(secrets.token_hex(16))


def create_user(db: sqlite3.Connection, *, name: str, password: str, role: Role = Role.USER) -> int:
    name = (name or "").strip()
    if not name or not password:
        raise ClientInputError("User name and password are required")
    if role is Role.ANONYMOUS:
        raise ValueError("cannot store an anonymous user")
    cur = db.execute(
        "INSERT INTO user (name, password_hash, role) VALUES (?,?,?)",
        (name, generate_password_hash(password), role.name.lower()),
    )
    db.commit()
    return cur.lastrowid


def verify_credentials(db: sqlite3.Connection, name: str, password: str) -> tuple[str, Role]:
    """
    Return ``(name, role)`` for a correct login, else raise Unauthorized.

    Unknown names still pay for one hash check, so both failure
    paths take the same time and produce the same error.
    """
    row = db.execute(
        "SELECT name, password_hash, role FROM user WHERE name=?", (name,)
    ).fetchone()
    ok = check_password_hash(row["password_hash"] if row else _DUMMY_HASH, password or "")
    if row is None or not ok:
        raise Unauthorized("Invalid login credentials")
    return row["name"], Role.from_name(row["role"])


################################################################################
# Slugs
################################################################################
_SEPARATORS_RE = re.compile(r"[\s_]+")
_NON_SLUG_RE = re.compile(r"[^a-z0-9-]")
_HYPHENS_RE = re.compile(r"-{2,}")


def generate_slug(title: str | None) -> str:
    """
    Title → URL slug: lower-case ASCII letters, digits and single hyphens.

    Accents are folded (café → cafe); anything else outside [a-z0-9-]
    is dropped.  Never empty, never longer than SLUG_MAX_LEN.
    """
    text = unicodedata.normalize("NFKD", (title or "").lower())
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    text = _SEPARATORS_RE.sub("-", text)
    text = _NON_SLUG_RE.sub("", text)
    text = _HYPHENS_RE.sub("-", text).strip("-")
    if len(text) > SLUG_MAX_LEN:
        text = text[:SLUG_MAX_LEN].rstrip("-")
    return text or SLUG_PLACEHOLDER


def ensure_unique_slug(candidate: str, owner_id: int = 0, *, db: sqlite3.Connection) -> str:
    """
    First of ``candidate``, ``candidate-2``, ``candidate-3`` … not used by
    another live post.  The post ``owner_id`` may keep its own slug.
    """
    candidate = candidate or SLUG_PLACEHOLDER
    like = candidate.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_") + "-%"
    try:
        rows = db.execute(
            """SELECT slug FROM post
                WHERE deleted_at IS NULL AND id != ?
                  AND (slug = ? OR slug LIKE ? ESCAPE '\\')""",
            (owner_id, candidate, like),
        ).fetchall()
    except sqlite3.Error as exc:
        raise StorageError("Could not check slug availability") from exc

    taken = {r["slug"] for r in rows}
    if candidate not in taken:
        return candidate
    for n in range(2, MAX_SLUG_ATTEMPTS + 2):
        slug = f"{candidate}-{n}"
        if slug not in taken:
            return slug
    raise StorageError(f"No free slug for {candidate!r} after {MAX_SLUG_ATTEMPTS} attempts")


def _write_with_slug(db: sqlite3.Connection, title: str, owner_id: int, write):
    """
    Pick a free slug for *title* and run ``write(slug)`` in one step.

    The app-wide lock serialises writers in this process; the partial
    UNIQUE index catches writers in other processes, in which case the
    slug is recomputed and the write retried.
    """
    candidate = generate_slug(title)
    with blog_state().slug_lock:
        for _ in range(MAX_SLUG_ATTEMPTS):
            slug = ensure_unique_slug(candidate, owner_id, db=db)
            try:
                result = write(slug)
                db.commit()
                return slug, result
            except sqlite3.IntegrityError:
                db.rollback()
                app.logger.info("slug %s was claimed concurrently, retrying", slug)
    raise StorageError(f"Could not reserve a slug for {candidate!r}")


def insert_post(
    db: sqlite3.Connection,
    *,
    title: str,
    body: str,
    meta_description: str | None = None,
    keywords: str | None = None,
) -> tuple[int, str]:
    """Create a post; returns ``(id, slug)``."""
    now = now_iso()

    def write(slug: str) -> int:
        cur = db.execute(
            """INSERT INTO post
                   (title, body, slug, meta_description, keywords, created_at, updated_at)
               VALUES (?,?,?,?,?,?,?)""",
            (title, body, slug, meta_description, keywords, now, now),
        )
        return cur.lastrowid

    slug, post_id = _write_with_slug(db, title, 0, write)
    return post_id, slug


def update_post_row(
    db: sqlite3.Connection,
    post,
    *,
    title: str,
    body: str,
    meta_description: str | None = None,
    keywords: str | None = None,
) -> str:
    """Apply an edit; the slug is recomputed only when the title changes."""
    now = now_iso()
    if title == post["title"] and post["slug"]:
        db.execute(
            """UPDATE post SET body=?, meta_description=?, keywords=?, updated_at=?
                WHERE id=?""",
            (body, meta_description, keywords, now, post["id"]),
        )
        db.commit()
        return post["slug"]

    def write(slug: str) -> None:
        db.execute(
            """UPDATE post SET title=?, slug=?, body=?, meta_description=?,
                              keywords=?, updated_at=?
                WHERE id=?""",
            (title, slug, body, meta_description, keywords, now, post["id"]),
        )

    slug, _ = _write_with_slug(db, title, post["id"], write)
    return slug


def soft_delete_post(db: sqlite3.Connection, post_id: int) -> bool:
    cur = db.execute(
        "UPDATE post SET deleted_at=? WHERE id=? AND deleted_at IS NULL",
        (now_iso(), post_id),
    )
    db.commit()
    return cur.rowcount > 0


def backfill_slugs(db: sqlite3.Connection) -> int:
    """Give every live post without a slug one; returns the count."""
    rows = db.execute(
        """SELECT id, title FROM post
            WHERE deleted_at IS NULL AND (slug IS NULL OR slug = '')
            ORDER BY id"""
    ).fetchall()
    for row in rows:
        _write_with_slug(
            db,
            row["title"],
            row["id"],
            lambda slug, pid=row["id"]: db.execute(
                "UPDATE post SET slug=? WHERE id=?", (slug, pid)
            ),
        )
    return len(rows)


def backfill_seo(db: sqlite3.Connection) -> int:
    """Persist computed descriptions/keywords where none were supplied."""
    rows = db.execute(
        """SELECT * FROM post
            WHERE deleted_at IS NULL
              AND (meta_description IS NULL OR meta_description = ''
                   OR keywords IS NULL OR keywords = '')"""
    ).fetchall()
    for row in rows:
        desc = (row["meta_description"] or "").strip() or describe(row)
        kw = (row["keywords"] or "").strip() or extract_keywords(row["title"], row["body"])
        db.execute(
            "UPDATE post SET meta_description=?, keywords=? WHERE id=?",
            (desc, kw[:KEYWORDS_MAX], row["id"]),
        )
    db.commit()
    return len(rows)


################################################################################
# Content resolution
################################################################################
class Resolution(NamedTuple):
    post: sqlite3.Row
    canonical_url: str
    is_canonical: bool


class ContentResolver:
    """
    Slug or legacy numeric id → live post plus its canonical URL.

    Reads go straight to the post table, so a committed create/update/
    delete is visible to the very next lookup.
    """

    def __init__(self, db: sqlite3.Connection, base_url: str):
        self.db = db
        self.base_url = base_url.rstrip("/")

    @staticmethod
    def canonical_path(post) -> str:
        slug = _field(post, "slug")
        if slug:
            return "/p/" + quote(slug, safe="")
        return f"/post?id={post['id']}"

    def canonical_url(self, post) -> str:
        return self.base_url + self.canonical_path(post)

    def resolve_by_slug(self, slug: str | None) -> Resolution:
        slug = (slug or "").strip()
        if not slug:
            raise ClientInputError("Invalid post slug")
        row = self.db.execute(
            "SELECT * FROM post WHERE slug=? AND deleted_at IS NULL", (slug,)
        ).fetchone()
        if row is None:
            raise NotFound("Post not found")
        return Resolution(row, self.canonical_url(row), True)

    def resolve_by_id(self, post_id: str | int | None) -> Resolution:
        post_id = parse_int(post_id, what="post id")
        row = self.db.execute(
            "SELECT * FROM post WHERE id=? AND deleted_at IS NULL", (post_id,)
        ).fetchone()
        if row is None:
            raise NotFound("Post not found")
        # only slug-less legacy rows are served at their id URL
        return Resolution(row, self.canonical_url(row), not row["slug"])


def resolver() -> ContentResolver:
    return ContentResolver(get_db(), site_url())


################################################################################
# Files
################################################################################
def _latest_file(db: sqlite3.Connection, name: str, *, images_only: bool = False):
    sql = "SELECT * FROM file WHERE original_name=?"
    if images_only:
        sql += " AND is_image=1"
    return db.execute(sql + " ORDER BY id DESC LIMIT 1", (name.strip(),)).fetchone()


def lookup_image(name: str, *, db: sqlite3.Connection, base_url: str) -> tuple[str, str] | None:
    """``[file:name]`` → ``(absolute_url, alt_text)`` for an uploaded image."""
    row = _latest_file(db, name, images_only=True)
    if row is None:
        return None
    return f"{base_url}/files/{row['uuid']}", row["alt_text"] or ""


def render_file_refs(text: str | None, *, db: sqlite3.Connection) -> str:
    """Swap ``[file:name]`` for an <img> or a download link; unknown names stay."""

    def _swap(m: re.Match) -> str:
        row = _latest_file(db, m.group(1))
        if row is None:
            return m.group(0)
        href = f"/files/{row['uuid']}"
        if row["is_image"]:
            alt = html_escape(row["alt_text"] or row["original_name"])
            return f'<img src="{href}" alt="{alt}" loading="lazy">'
        return (
            f'<a href="{href}" rel="noopener">'
            f"{html_escape(row['original_name'])}</a>"
        )

    return FILE_REF_RE.sub(_swap, text or "")


def store_upload(storage, *, db: sqlite3.Connection, upload_dir: Path, alt_text: str | None = None) -> dict:
    original = Path(storage.filename or "").name.strip()
    if not original:
        raise ClientInputError("No file in request")
    ext = Path(secure_filename(original)).suffix.lower()
    file_uuid = str(uuid.uuid4())
    stored = file_uuid + ext

    upload_dir.mkdir(parents=True, exist_ok=True)
    dest = upload_dir / stored
    storage.save(dest)

    mime = storage.mimetype or ""
    if not mime or mime == "application/octet-stream":
        mime = mimetypes.guess_type(original)[0] or "application/octet-stream"
    is_image = mime in IMAGE_MIMES
    size = dest.stat().st_size

    db.execute(
        """INSERT INTO file
               (uuid, original_name, stored_name, mime_type, size, is_image, alt_text, created_at)
           VALUES (?,?,?,?,?,?,?,?)""",
        (file_uuid, original, stored, mime, size, int(is_image), alt_text, now_iso()),
    )
    db.commit()
    return {
        "uuid": file_uuid,
        "original_name": original,
        "mime_type": mime,
        "size": size,
        "is_image": is_image,
        "download_url": f"/files/{file_uuid}",
    }


################################################################################
# Markdown & plain text
################################################################################
def _markdown_renderer() -> markdown.Markdown:
    if has_app_context():
        rnd = g.get("_md")
        if rnd is None:
            rnd = g._md = markdown.Markdown(extensions=MD_EXTENSIONS)
    else:
        rnd = markdown.Markdown(extensions=MD_EXTENSIONS)
    rnd.reset()
    return rnd


def render_markdown(text: str | None) -> str:
    return _markdown_renderer().convert(text or "")


def plain_text(text: str | None) -> str:
    """Markdown/HTML body → one line of text, file references dropped."""
    text = FILE_REF_RE.sub(" ", text or "")
    html = render_markdown(text)
    return SPACE_RE.sub(" ", unescape(HTML_TAG_RE.sub("", html))).strip()


def truncate_text(text: str, limit: int) -> str:
    """Cut to *limit* characters, the last three being '...'."""
    if len(text) <= limit:
        return text
    return text[: limit - 3].rstrip() + "..."


def excerpt(body: str | None, limit: int = EXCERPT_MAX) -> str:
    return truncate_text(plain_text(body), limit) or EMPTY_EXCERPT


################################################################################
# SEO
################################################################################
_WORD_JUNK_RE = re.compile(r"[^a-z0-9]")


def clean_seo_text(raw: str | None, *, limit: int, what: str) -> str | None:
    """Tags stripped, whitespace collapsed; over-long input is rejected."""
    text = SPACE_RE.sub(" ", HTML_TAG_RE.sub("", raw or "")).strip()
    if len(text) > limit:
        raise ClientInputError(f"{what} must be at most {limit} characters")
    return text or None


def describe(post) -> str:
    explicit = (_field(post, "meta_description") or "").strip()
    if explicit:
        return explicit
    return truncate_text(plain_text(post["body"]), DESCRIPTION_MAX) or DEFAULT_DESCRIPTION


def extract_keywords(title: str | None, body: str | None, limit: int = 10) -> str:
    """
    Cheap keyword guess: title words (>3 chars) score 3, body words
    (>4 chars) score 1; words scoring at least 2 are ranked by score
    then alphabetically.
    """
    scores: Counter[str] = Counter()
    for raw in (title or "").lower().split():
        word = _WORD_JUNK_RE.sub("", raw)
        if len(word) > 3:
            scores[word] += 3
    for raw in plain_text(body).lower().split():
        word = _WORD_JUNK_RE.sub("", raw)
        if len(word) > 4:
            scores[word] += 1
    ranked = sorted((w for w, n in scores.items() if n >= 2), key=lambda w: (-scores[w], w))
    return ", ".join(ranked[:limit])


def first_image(body: str | None, image_lookup, base_url: str) -> tuple[str, str] | None:
    for m in FILE_REF_RE.finditer(body or ""):
        found = image_lookup(m.group(1)) if image_lookup else None
        if found:
            return found
    m = IMG_SRC_RE.search(body or "")
    if m:
        src = m.group(1)
        if src.startswith(("http://", "https://")):
            return src, ""
        if src.startswith("/"):
            return base_url + src, ""
    return None


@dataclass(frozen=True)
class SEOBlock:
    """Head metadata for one post, every value already escaped for HTML."""

    title: Markup
    description: Markup
    keywords: Markup | None
    canonical_url: str
    open_graph: tuple[tuple[str, Markup], ...]
    twitter: tuple[tuple[str, Markup], ...]
    json_ld: Markup

    @property
    def link_header(self) -> str:
        return f'<{self.canonical_url}>; rel="canonical"'


def build_seo(
    post,
    *,
    base_url: str,
    site_name: str,
    author: str,
    image_lookup: Callable[[str], tuple[str, str] | None] | None = None,
) -> SEOBlock:
    title = post["title"] or ""
    description = describe(post)
    canonical = base_url.rstrip("/") + ContentResolver.canonical_path(post)
    keywords = (_field(post, "keywords") or "").strip() or extract_keywords(title, post["body"])
    published = _field(post, "created_at") or None
    modified = _field(post, "updated_at") or None
    image = first_image(post["body"], image_lookup, base_url)
    image_alt = (image[1] or title) if image else None

    og = [
        ("og:type", "article"),
        ("og:title", title),
        ("og:description", description),
        ("og:url", canonical),
        ("og:site_name", site_name),
    ]
    if image:
        og += [("og:image", image[0]), ("og:image:alt", image_alt)]
    if published:
        og.append(("article:published_time", published))
    if modified:
        og.append(("article:modified_time", modified))
    og.append(("article:author", author))

    twitter = [
        ("twitter:card", "summary_large_image" if image else "summary"),
        ("twitter:title", title),
        ("twitter:description", description),
    ]
    if image:
        twitter += [("twitter:image", image[0]), ("twitter:image:alt", image_alt)]

    ld = {
        "@context": "https://schema.org",
        "@type": "BlogPosting",
        "headline": title,
        "description": description,
        "url": canonical,
        "mainEntityOfPage": {"@type": "WebPage", "@id": canonical},
        "author": {"@type": "Person", "name": author},
        "publisher": {"@type": "Organization", "name": site_name},
    }
    if base_url:
        ld["publisher"]["url"] = base_url
    if published:
        ld["datePublished"] = published
    if modified:
        ld["dateModified"] = modified
    if image:
        ld["image"] = image[0]

    return SEOBlock(
        title=escape(title),
        description=escape(description),
        keywords=escape(keywords) if keywords else None,
        canonical_url=canonical,
        open_graph=tuple((k, escape(v)) for k, v in og),
        twitter=tuple((k, escape(v)) for k, v in twitter),
        json_ld=htmlsafe_json_dumps(ld, indent=2),
    )


################################################################################
# Sitemap & robots
################################################################################
def _lastmod(post) -> str | None:
    # the first non-empty timestamp decides; a malformed one omits the tag
    for key in ("updated_at", "created_at"):
        raw = _field(post, key)
        if raw:
            parsed = parse_timestamp(raw)
            return parsed.strftime("%Y-%m-%d") if parsed else None
    return None


def build_sitemap(posts, *, base_url: str) -> str:
    base_url = base_url.rstrip("/")
    lines = [
        '<?xml version="1.0" encoding="UTF-8"?>',
        f'<urlset xmlns="{SITEMAP_NS}">',
        "  <url>",
        f"    <loc>{html_escape(base_url)}/</loc>",
        "    <changefreq>daily</changefreq>",
        "    <priority>1.0</priority>",
        "  </url>",
    ]
    for post in posts:
        if not _field(post, "slug"):
            continue
        lines += [
            "  <url>",
            f"    <loc>{html_escape(base_url + ContentResolver.canonical_path(post))}</loc>",
        ]
        lastmod = _lastmod(post)
        if lastmod:
            lines.append(f"    <lastmod>{lastmod}</lastmod>")
        lines += [
            "    <changefreq>weekly</changefreq>",
            "    <priority>0.8</priority>",
            "  </url>",
        ]
    lines.append("</urlset>")
    return "\n".join(lines) + "\n"


def build_robots(base_url: str) -> str:
    rules = ["User-agent: *", "Allow: /"]
    rules += [f"Disallow: {path}" for path in ROBOTS_DISALLOW]
    rules += ["", f"Sitemap: {base_url.rstrip('/')}/sitemap.xml"]
    return "\n".join(rules) + "\n"


################################################################################
# Template helpers
################################################################################
@app.template_filter("md")
def md_filter(text: str | None) -> Markup:
    return Markup(render_markdown(render_file_refs(text, db=get_db())))


@app.template_filter("excerpt")
def excerpt_filter(text: str | None) -> str:
    return excerpt(text)


@app.template_filter("ts")
def ts_filter(iso: str | None) -> str:
    dt = parse_timestamp(iso)
    if dt is None:
        return iso or ""
    return dt.strftime("%Y.%m.%d %H:%M")


def current_role() -> Role:
    return g.get("role", Role.ANONYMOUS)


def csrf_token() -> str:
    sess = g.get("session")
    return sess.csrf if sess else ""


app.jinja_env.globals.update(
    current_role=current_role,
    csrf_token=csrf_token,
    canonical_path=ContentResolver.canonical_path,
    site_name=lambda: cfg().site_name,
    Role=Role,
    version=__version__,
)


################################################################################
# Request lifecycle: session, gate, CSRF, logging
################################################################################
# endpoint → minimum role; anything not listed is public
ROUTE_ROLES: dict[str, Role] = {
    "create_post": Role.ADMIN,
    "update_post": Role.ADMIN,
    "delete_post": Role.ADMIN,
    "delete_comment": Role.ADMIN,
    "upload_file": Role.ADMIN,
    "list_files": Role.ADMIN,
    "update_alt_text": Role.ADMIN,
    "create_comment": Role.USER,
}


def session_token_from_cookie(raw: str | None) -> str | None:
    if not raw:
        return None
    state = blog_state()
    try:
        return state.signer.unsign(raw, max_age=state.config.session_lifetime).decode()
    except SignatureExpired:
        return None
    except BadSignature:
        return None


@app.before_request
def load_session():
    g.started_at = time()
    token = session_token_from_cookie(request.cookies.get(SESSION_COOKIE))
    g.session = blog_state().sessions.lookup(token)
    g.role = g.session.role if g.session else Role.ANONYMOUS


@app.before_request
def authorization_gate():
    required = ROUTE_ROLES.get(request.endpoint or "", Role.ANONYMOUS)
    if not authorize(required, current_role()):
        app.logger.info(
            "denied %s %s (%s < %s)",
            request.method,
            request.path,
            current_role().name,
            required.name,
        )
        raise Unauthorized()


def is_cross_site() -> bool:
    """True when the browser says the request came from another origin."""
    fetch_site = request.headers.get("Sec-Fetch-Site")
    if fetch_site:
        return fetch_site not in ("same-origin", "none")
    origin = request.headers.get("Origin") or request.headers.get("Referer")
    if not origin:
        return False
    return urlsplit(origin).netloc != request.host


@app.before_request
def csrf_protect():
    """
    A sent token must match the session's.  Requests without one pass
    only when nothing marks them as cross-site.
    """
    if request.method in SAFE_METHODS or not cfg().csrf_protection:
        return
    sess = g.get("session")
    if sess is None:
        return
    sent = request.form.get("csrf") or request.headers.get("X-CSRFToken", "")
    if not sent and not is_cross_site():
        return
    if not secrets.compare_digest(sess.csrf, sent):
        app.logger.warning("csrf check failed on %s from %s", request.path, client_ip())
        abort(403)


@app.after_request
def access_log(resp):
    if not request.path.startswith(("/files/", "/robots.txt")):
        started = g.get("started_at")
        took = int((time() - started) * 1000) if started else -1
        app.logger.info(
            "%s %s %s %dms %s",
            request.method,
            request.full_path.rstrip("?"),
            resp.status_code,
            took,
            client_ip(),
        )
    return resp


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


def rate_limit(max_requests: int | Callable[[], int], window: int = 60, methods=("POST",)):
    hits: DefaultDict[str, deque] = defaultdict(deque)
    lock = threading.Lock()

    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            if request.method not in methods:
                return view(*args, **kwargs)
            limit = max_requests() if callable(max_requests) else max_requests
            now = time()
            with lock:
                # drop every IP whose window has drained
                for ip in [ip for ip, q in hits.items() if not q or now - q[-1] > window]:
                    del hits[ip]
                dq = hits[client_ip()]
                while dq and now - dq[0] > window:
                    dq.popleft()
                if len(dq) >= limit:
                    retry_after = max(int(window - (now - dq[0])), 1)
                    resp = app.make_response(
                        _error_page(429, "Too many requests – try again later.")
                    )
                    resp.headers["Retry-After"] = str(retry_after)
                    return resp
                dq.append(now)
            return view(*args, **kwargs)

        wrapped.hits = hits
        return wrapped

    return decorator


################################################################################
# Templates
################################################################################
def wrap(body: str) -> str:
    """Glue prolog + page-specific body + epilog."""
    return TEMPL_PROLOG + body + TEMPL_EPILOG


TEMPL_PROLOG = """
<!doctype html>
<html lang="en">
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
{% if seo %}
<title>{{ seo.title }}</title>
<meta name="description" content="{{ seo.description }}">
{% if seo.keywords %}<meta name="keywords" content="{{ seo.keywords }}">{% endif %}
<link rel="canonical" href="{{ seo.canonical_url }}">
{% for prop, val in seo.open_graph %}
<meta property="{{ prop }}" content="{{ val }}">
{% endfor %}
{% for name, val in seo.twitter %}
<meta name="{{ name }}" content="{{ val }}">
{% endfor %}
<script type="application/ld+json">
{{ seo.json_ld }}
</script>
{% else %}
<title>{{ title or site_name() }}</title>
<meta name="description" content="{{ site_name() }}">
{% endif %}
<style>
html{font-size:62.5%;font-family:-apple-system,BlinkMacSystemFont,"Segoe UI",Roboto,"Helvetica Neue",Arial,sans-serif}body{font-size:1.8rem;line-height:1.618;max-width:38em;margin:auto;color:#c9c9c9;background-color:#222;padding:13px}h1,h2,h3{line-height:1.1;font-weight:700;margin-top:3rem;margin-bottom:1.5rem;overflow-wrap:break-word}a{color:#fff}a:hover{color:#c9c9c9}pre,code{background-color:#4a4a4a}pre{padding:1em;overflow-x:auto}img{max-width:100%;height:auto}textarea,input{color:#c9c9c9;padding:6px 10px;margin-bottom:10px;background-color:#4a4a4a;border:1px solid #4a4a4a;border-radius:4px;box-sizing:border-box;width:100%}button{padding:5px 10px;background:#fff;color:#222;border:1px solid #fff;cursor:pointer}.meta{color:#888;font-size:.8em}.comment{border-left:3px solid #4a4a4a;padding-left:1rem;margin-bottom:1.5rem}
</style>
<body>
<nav style="display:flex;justify-content:space-between;font-size:.9em;">
  <span><a href="{{ url_for('index') }}">{{ site_name() }}</a></span>
  <span>
  <a href="{{ url_for('about') }}">About</a>&nbsp;
  {% if current_role() >= Role.ADMIN %}
    <a href="{{ url_for('create_post') }}">New post</a>&nbsp;
  {% endif %}
  {% if current_role() >= Role.USER %}
    <a href="{{ url_for('logout') }}">Logout</a>
  {% else %}
    <a href="{{ url_for('login') }}">Login</a>
  {% endif %}
  </span>
</nav>
<main>
"""

TEMPL_EPILOG = """
</main>
<footer style="margin-top:2em;padding-top:1em;font-size:.8em;color:#888;border-top:1px solid #444;">
  {{ site_name() }} · inkwell v{{ version }}
</footer>
</body>
</html>
"""

TEMPL_PAGE = wrap("""
{% for p in posts %}
<article>
  <h2><a href="{{ canonical_path(p) }}">{{ p['title'] }}</a></h2>
  <p class="meta">{{ p['created_at']|ts }}</p>
  <p>{{ p['body']|excerpt }}</p>
</article>
{% else %}
<p>No posts yet.</p>
{% endfor %}
<nav style="display:flex;justify-content:space-between;">
  <span>{% if page > 0 %}<a href="{{ url_for('page', p=page - 1) }}">&larr; Newer</a>{% endif %}</span>
  <span>{% if has_next %}<a href="{{ url_for('page', p=page + 1) }}">Older &rarr;</a>{% endif %}</span>
</nav>
""")

TEMPL_POST = wrap("""
<article>
  <h1>{{ p['title'] }}</h1>
  <p class="meta">
    {{ p['created_at']|ts }}
    {% if current_role() >= Role.ADMIN %}
      · <a href="{{ url_for('update_post', id=p['id']) }}">Edit</a>
      · <a href="{{ url_for('delete_post', id=p['id']) }}">Delete</a>
    {% endif %}
  </p>
  <div class="e-content">{{ p['body']|md }}</div>
</article>
<hr>
<section id="comments">
  <h3>Comments ({{ comments|length }})</h3>
  {% for c in comments %}
  <div class="comment" id="c{{ c['id'] }}">
    <strong>{{ c['author'] }}</strong>
    <span class="meta">{{ c['created_at']|ts }}</span>
    {% if current_role() >= Role.ADMIN %}
      <a class="meta" href="{{ url_for('delete_comment', id=c['id']) }}">delete</a>
    {% endif %}
    <p>{{ c['body'] }}</p>
  </div>
  {% endfor %}
  {% if current_role() >= Role.USER %}
  <form method="post" action="{{ url_for('create_comment') }}">
    <input type="hidden" name="csrf" value="{{ csrf_token() }}">
    <input type="hidden" name="id" value="{{ p['id'] }}">
    <input name="name" placeholder="Name">
    <textarea name="comment" rows="4" placeholder="Comment" required></textarea>
    <button>Comment</button>
  </form>
  {% endif %}
</section>
""")

TEMPL_EDIT = wrap("""
<h2>{{ 'Edit post' if p else 'New post' }}</h2>
<form method="post">
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  {% if p %}<input type="hidden" name="id" value="{{ p['id'] }}">{% endif %}
  <input name="title" placeholder="Title" value="{{ p['title'] if p else '' }}" required>
  <textarea name="body" rows="16" placeholder="Markdown" required>{{ p['body'] if p else '' }}</textarea>
  <input name="meta_description" maxlength="160" placeholder="Meta description (optional)"
         value="{{ (p['meta_description'] or '') if p else '' }}">
  <input name="keywords" maxlength="255" placeholder="Keywords, comma separated (optional)"
         value="{{ (p['keywords'] or '') if p else '' }}">
  <button>{{ 'Save' if p else 'Publish' }}</button>
</form>
""")

TEMPL_DELETE = wrap("""
<h2>Delete “{{ p['title'] }}”?</h2>
<form method="post">
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  <input type="hidden" name="id" value="{{ p['id'] }}">
  <button>Delete</button>
  <a href="{{ canonical_path(p) }}">Cancel</a>
</form>
""")

TEMPL_LOGIN = wrap("""
<h2>Login</h2>
<form method="post">
  {% if csrf_token() %}
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  {% endif %}
  <input name="login" autocomplete="username" placeholder="Name" required>
  <input name="password" type="password" autocomplete="current-password" placeholder="Password" required>
  <button>Sign in</button>
</form>
""")

TEMPL_ABOUT = wrap("""
<h2>About</h2>
<p>{{ site_name() }} is written by {{ author }}.</p>
<p class="meta">{{ post_count }} post{{ '' if post_count == 1 else 's' }} so far ·
  <a href="{{ url_for('sitemap') }}">sitemap</a></p>
""")

TEMPL_ERROR = wrap("""
<h2 style="margin-top:0">{{ heading }}</h2>
<p>{{ message }}</p>
<p><a href="{{ url_for('index') }}">← Back to the front page</a></p>
""")

ERROR_HEADINGS = {
    400: "Bad request",
    401: "Not authorized",
    403: "Forbidden",
    404: "Page not found",
    429: "Slow down",
    500: "Internal Server Error",
}


################################################################################
# Views – reading
################################################################################
@app.route("/")
def index():
    return redirect(url_for("page", p=0))


@app.route("/page")
def page():
    n = max(
        parse_int(request.args.get("p", "0"), what="page number", out_of_range=ClientInputError),
        0,
    )
    conf = cfg()
    db = get_db()
    per_page = conf.posts_per_page
    if n * per_page > SQLITE_INT_MAX:
        raise ClientInputError("Page number out of range")
    posts = db.execute(
        """SELECT * FROM post WHERE deleted_at IS NULL
            ORDER BY id DESC LIMIT ? OFFSET ?""",
        (per_page, n * per_page),
    ).fetchall()
    total = db.execute("SELECT COUNT(*) FROM post WHERE deleted_at IS NULL").fetchone()[0]
    return render_template_string(
        TEMPL_PAGE,
        posts=posts,
        page=n,
        has_next=(n + 1) * per_page < total,
        title=conf.site_name,
    )


def _render_post(res: Resolution):
    db = get_db()
    conf = cfg()
    base = site_url()
    post = res.post
    seo = build_seo(
        post,
        base_url=base,
        site_name=conf.site_name,
        author=conf.author,
        image_lookup=partial(lookup_image, db=db, base_url=base),
    )
    comments = db.execute(
        "SELECT * FROM comment WHERE post_id=? ORDER BY id", (post["id"],)
    ).fetchall()
    html = render_template_string(TEMPL_POST, p=post, seo=seo, comments=comments)
    return html, 200, {"Link": seo.link_header}


@app.route("/p/", defaults={"slug": ""})
@app.route("/p/<slug>")
def post_by_slug(slug: str):
    return _render_post(resolver().resolve_by_slug(slug))


@app.route("/post")
def post_by_id():
    res = resolver().resolve_by_id(request.args.get("id", ""))
    if res.is_canonical:
        return _render_post(res)
    resp = redirect(ContentResolver.canonical_path(res.post), code=301)
    resp.headers["Link"] = f'<{res.canonical_url}>; rel="canonical"'
    resp.headers["Cache-Control"] = REDIRECT_CACHE
    return resp


@app.route("/about")
def about():
    conf = cfg()
    count = get_db().execute("SELECT COUNT(*) FROM post WHERE deleted_at IS NULL").fetchone()[0]
    return render_template_string(
        TEMPL_ABOUT, author=conf.author, post_count=count, title=f"About · {conf.site_name}"
    )


@app.route("/sitemap.xml")
def sitemap():
    rows = get_db().execute(
        """SELECT id, slug, created_at, updated_at FROM post
            WHERE deleted_at IS NULL AND slug IS NOT NULL AND slug != ''
            ORDER BY id DESC"""
    ).fetchall()
    return Response(
        build_sitemap(rows, base_url=site_url()),
        content_type="application/xml; charset=utf-8",
        headers={"Cache-Control": "public, max-age=3600"},
    )


@app.route("/robots.txt")
def robots():
    return Response(
        build_robots(site_url()),
        content_type="text/plain; charset=utf-8",
        headers={"Cache-Control": "public, max-age=86400"},
    )


@app.route("/files/<file_uuid>")
def serve_file(file_uuid: str):
    row = get_db().execute("SELECT * FROM file WHERE uuid=?", (file_uuid,)).fetchone()
    if row is None:
        raise NotFound("File not found")
    return send_from_directory(
        Path(cfg().upload_dir).resolve(),
        row["stored_name"],
        mimetype=row["mime_type"],
        as_attachment=not row["is_image"],
        download_name=row["original_name"],
        max_age=31536000,
    )


################################################################################
# Views – writing (admin)
################################################################################
def _post_form() -> tuple[str, str, str | None, str | None]:
    title = request.form.get("title", "").strip()
    body = request.form.get("body", "")
    if not title or not body.strip():
        raise ClientInputError("Title and body are required")
    meta = clean_seo_text(
        request.form.get("meta_description"), limit=DESCRIPTION_MAX, what="Meta description"
    )
    keywords = clean_seo_text(request.form.get("keywords"), limit=KEYWORDS_MAX, what="Keywords")
    return title, body, meta, keywords


def _resolve_target(params) -> Resolution:
    slug = (params.get("slug") or "").strip()
    if slug:
        return resolver().resolve_by_slug(slug)
    raw_id = (params.get("id") or "").strip()
    if raw_id:
        return resolver().resolve_by_id(raw_id)
    raise ClientInputError("Missing post identifier")


@app.route("/create", methods=["GET", "POST"])
def create_post():
    if request.method == "POST":
        title, body, meta, keywords = _post_form()
        post_id, slug = insert_post(
            get_db(), title=title, body=body, meta_description=meta, keywords=keywords
        )
        app.logger.info("created post %d at /p/%s", post_id, slug)
        return redirect("/p/" + quote(slug, safe=""))
    return render_template_string(TEMPL_EDIT, p=None, title="New post")


@app.route("/update", methods=["GET", "POST"])
def update_post():
    params = request.form if request.method == "POST" else request.args
    res = _resolve_target(params)
    if request.method == "POST":
        title, body, meta, keywords = _post_form()
        slug = update_post_row(
            get_db(), res.post, title=title, body=body, meta_description=meta, keywords=keywords
        )
        if slug != res.post["slug"]:
            app.logger.info("post %d moved from %s to %s", res.post["id"], res.post["slug"], slug)
        return redirect("/p/" + quote(slug, safe=""))
    return render_template_string(TEMPL_EDIT, p=res.post, title="Edit post")


@app.route("/delete", methods=["GET", "POST"])
def delete_post():
    params = request.form if request.method == "POST" else request.args
    res = _resolve_target(params)
    if request.method == "POST":
        soft_delete_post(get_db(), res.post["id"])
        app.logger.info("deleted post %d (%s)", res.post["id"], res.post["slug"])
        return redirect(url_for("index"))
    return render_template_string(TEMPL_DELETE, p=res.post, title="Delete post")


@app.route("/upload-file", methods=["POST"])
def upload_file():
    storage = request.files.get("file")
    if storage is None or not storage.filename:
        raise ClientInputError("No file in request")
    alt = (request.form.get("alt") or "").strip() or None
    record = store_upload(
        storage, db=get_db(), upload_dir=Path(cfg().upload_dir), alt_text=alt
    )
    app.logger.info("stored upload %s as %s", record["original_name"], record["uuid"])
    return jsonify(success=True, **record)


def _query_int(name: str, default: int, *, lo: int, hi: int) -> int:
    """Lenient paging parameter: anything unusable falls back to *default*."""
    raw = (request.args.get(name) or "").strip()
    if not INT_RE.fullmatch(raw):
        return default
    value = int(raw)
    return value if lo <= value <= hi else default


@app.route("/api/files")
def list_files():
    limit = _query_int("limit", FILES_PAGE_DEFAULT, lo=1, hi=FILES_PAGE_MAX)
    offset = _query_int("offset", 0, lo=0, hi=SQLITE_INT_MAX)
    rows = get_db().execute(
        """SELECT * FROM file ORDER BY created_at DESC, id DESC
            LIMIT ? OFFSET ?""",
        (limit, offset),
    ).fetchall()
    files = [
        {
            "uuid": r["uuid"],
            "original_name": r["original_name"],
            "size": r["size"],
            "mime_type": r["mime_type"],
            "is_image": bool(r["is_image"]),
            "alt_text": r["alt_text"] or "",
            "created_at": r["created_at"],
            "download_url": f"/files/{r['uuid']}",
        }
        for r in rows
    ]
    return jsonify(files=files, limit=limit, offset=offset)


@app.route("/api/files/alt-text", methods=["POST"])
def update_alt_text():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return {"error": "Invalid JSON"}, 400
    file_uuid = str(data.get("uuid") or "").strip()
    if not file_uuid:
        return {"error": "UUID is required"}, 400
    alt = data.get("alt_text")
    if alt is not None and not isinstance(alt, str):
        return {"error": "alt_text must be a string"}, 400
    try:
        alt = clean_seo_text(alt, limit=ALT_TEXT_MAX, what="Alt text")
    except ClientInputError as exc:
        return {"error": exc.message}, 400

    db = get_db()
    row = db.execute("SELECT is_image FROM file WHERE uuid=?", (file_uuid,)).fetchone()
    if row is None:
        return {"error": "File not found"}, 404
    if not row["is_image"]:
        return {"error": "Alt text can only be set for images"}, 400
    db.execute("UPDATE file SET alt_text=? WHERE uuid=?", (alt, file_uuid))
    db.commit()
    app.logger.info("alt text of %s set to %r", file_uuid, alt)
    return {"success": True, "message": "Alt text updated successfully"}


################################################################################
# Views – comments
################################################################################
@app.route("/create-comment", methods=["POST"])
def create_comment():
    res = resolver().resolve_by_id(request.form.get("id", ""))
    name = request.form.get("name", "").strip()
    text = request.form.get("comment", "").strip()
    if not name or not text:
        raise ClientInputError("Name and comment are required")
    db = get_db()
    db.execute(
        "INSERT INTO comment (post_id, author, body, created_at) VALUES (?,?,?,?)",
        (res.post["id"], name, text, now_iso()),
    )
    db.commit()
    return redirect(ContentResolver.canonical_path(res.post) + "#comments")


@app.route("/delete-comment", methods=["GET", "POST"])
def delete_comment():
    params = request.form if request.method == "POST" else request.args
    comment_id = parse_int(params.get("id", ""), what="comment id")
    db = get_db()
    row = db.execute(
        """SELECT c.post_id, p.slug, p.deleted_at
             FROM comment c JOIN post p ON p.id = c.post_id
            WHERE c.id=?""",
        (comment_id,),
    ).fetchone()
    if row is None:
        raise NotFound("Comment not found")
    db.execute("DELETE FROM comment WHERE id=?", (comment_id,))
    db.commit()
    if row["deleted_at"]:
        return redirect(url_for("index"))
    post = {"id": row["post_id"], "slug": row["slug"]}
    return redirect(ContentResolver.canonical_path(post) + "#comments")


################################################################################
# Views – sessions
################################################################################
@app.route("/login", methods=["GET", "POST"])
@rate_limit(lambda: cfg().login_rate_limit, window=60)
def login():
    if request.method == "POST":
        name = request.form.get("login", "").strip()
        password = request.form.get("password", "")
        if not name or not password:
            raise ClientInputError("Login and password are required")

        state = blog_state()
        try:
            sess = state.sessions.login(name, password, db=get_db())
        except Unauthorized:
            app.logger.warning("failed login for %r from %s", name, client_ip())
            raise
        if g.session is not None:
            state.sessions.revoke(g.session.token)

        resp = redirect(url_for("index"))
        resp.set_cookie(
            SESSION_COOKIE,
            state.signer.sign(sess.token).decode(),
            max_age=state.config.session_lifetime,
            path="/",
            httponly=True,
            secure=state.config.production,
            samesite="Lax",
        )
        app.logger.info("%s logged in as %s", sess.user, sess.role.name)
        return resp
    return render_template_string(TEMPL_LOGIN, title="Login")


@app.route("/logout")
def logout():
    if g.session is not None:
        blog_state().sessions.revoke(g.session.token)
    resp = redirect(url_for("index"))
    resp.delete_cookie(SESSION_COOKIE, path="/")
    return resp


################################################################################
# Error pages
################################################################################
def _error_page(code: int, message: str):
    return render_template_string(
        TEMPL_ERROR,
        heading=ERROR_HEADINGS.get(code, "Error"),
        message=message,
        title=cfg().site_name,
    ), code


def _storage_failure(exc: Exception):
    app.logger.error("storage failure on %s: %s", request.path, exc, exc_info=exc)
    return _error_page(500, "The blog could not reach its storage. Please try again later.")


@app.errorhandler(BlogError)
def blog_error(exc: BlogError):
    if isinstance(exc, StorageError):
        return _storage_failure(exc)
    return _error_page(exc.code, exc.message)


@app.errorhandler(sqlite3.Error)
def database_error(exc: sqlite3.Error):
    return _storage_failure(exc)


@app.errorhandler(403)
def forbidden(exc):
    return _error_page(403, "The form has expired. Reload the page and try again.")


@app.errorhandler(404)
def not_found(exc):
    """Site-wide “Not Found” page."""
    return _error_page(404, "There is nothing at this address.")


@app.errorhandler(500)
def internal_error(exc):
    return _error_page(500, "Please try again later.")


################################################################################
# CLI
################################################################################
@app.cli.command("init")
@click.option("--username", prompt=True, default="admin", help="Admin login name")
@click.password_option(help="Admin password")
def cli_init(username: str, password: str):
    """Create the schema and the admin account."""
    init_db()
    db = get_db()
    if db.execute("SELECT 1 FROM user WHERE name=?", (username.strip(),)).fetchone():
        raise click.ClickException(f"user {username!r} already exists")
    create_user(db, name=username, password=password, role=Role.ADMIN)
    click.secho(f"\n✅  Admin {username.strip()} created.", fg="green")


@app.cli.command("add-user")
@click.argument("name")
@click.option("--role", type=click.Choice(["user", "admin"]), default="user", show_default=True)
@click.password_option(help="Password for the new account")
def cli_add_user(name: str, role: str, password: str):
    """Add a commenter (or another admin)."""
    db = get_db()
    try:
        create_user(db, name=name, password=password, role=Role.from_name(role))
    except sqlite3.IntegrityError as exc:
        raise click.ClickException(f"user {name!r} already exists") from exc
    click.echo(f"Added {role} {name}.")


@app.cli.command("backfill-slugs")
def cli_backfill_slugs():
    """Assign slugs to posts imported without one."""
    n = backfill_slugs(get_db())
    click.echo(f"Assigned slugs to {n} post(s).")


@app.cli.command("backfill-seo")
def cli_backfill_seo():
    """Store computed meta descriptions and keywords for older posts."""
    n = backfill_seo(get_db())
    click.echo(f"Updated SEO fields on {n} post(s).")


if __name__ == "__main__":  # pragma: no cover
    app.run(debug=not cfg().production)
