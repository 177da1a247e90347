#!/usr/bin/env python3
"""
News site for the research centre: homepage feed, article pages, likes
and comments, email sign-in and a small admin area.
"""

import os
import re
import secrets
import smtplib
import sqlite3
import uuid
from collections import defaultdict, deque
from dataclasses import asdict, dataclass
from datetime import date, datetime, timezone
from email.message import EmailMessage
from functools import wraps
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from time import time
from typing import DefaultDict

import boto3
import click
import markdown
from botocore.exceptions import BotoCoreError, ClientError
from flask import (
    Flask,
    Response,
    abort,
    flash,
    g,
    jsonify,
    redirect,
    render_template_string,
    request,
    session,
    url_for,
)
from itsdangerous import BadSignature, SignatureExpired, TimestampSigner
from markupsafe import Markup
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.security import check_password_hash as verify_token
from werkzeug.security import generate_password_hash as hash_token
from werkzeug.utils import secure_filename

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
DB_FILE = ROOT / "news.sqlite3"

ENV_FILE = ROOT / ".env"
SECRET_FILE = ROOT / ".secret_key"
SECRET_KEY = (
    SECRET_FILE.read_text().strip() if SECRET_FILE.exists() else secrets.token_hex(32)
)
SECRET_FILE.write_text(SECRET_KEY)
TOKEN_LEN = 32
LOGIN_MAX_AGE = 15 * 60  # sign-in links are good for 15 minutes
signer = TimestampSigner(SECRET_KEY, salt="login-link")

SITE_NAME_DFLT = "TCOEFS News"
CATEGORIES = ("News", "Training", "Research", "Partnership")
DEFAULT_CATEGORY = "News"
READ_TIME_DFLT = "5 min read"
PAGE_DEFAULT = 12
LATEST_NEWS_LIMIT = 3
ARTICLE_ID_PREFIX = "news"
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

SITE_URL = os.environ.get("SITE_URL", "https://blog.tcoefs-unijos.org").rstrip("/")
MAIN_SITE_ORIGIN = os.environ.get("MAIN_SITE_ORIGIN", "https://tcoefs-unijos.org")
FALLBACK_CARD_IMAGE = "/news-collage.png"

IMAGE_ENV_KEYS = (
    "IMAGE_ENDPOINT",
    "IMAGE_REGION",
    "IMAGE_ACCESS_KEY_ID",
    "IMAGE_SECRET_ACCESS_KEY",
    "IMAGE_BUCKET",
    "IMAGE_PUBLIC_BASE",
)
IMAGE_REQUIRED_KEYS = (
    "IMAGE_ACCESS_KEY_ID",
    "IMAGE_SECRET_ACCESS_KEY",
    "IMAGE_BUCKET",
)
IMAGE_FOLDER = "tcoefs-news"
IMAGE_TYPES = ("card", "content")
UPLOAD_MAX_BYTES = 10 * 1024 * 1024  # 10 MiB
IMAGE_MIMES = {
    "image/png",
    "image/jpeg",
    "image/webp",
    "image/gif",
}

SMTP_ENV_KEYS = ("SMTP_HOST", "SMTP_PORT", "SMTP_USERNAME", "SMTP_PASSWORD", "SMTP_FROM")

try:
    __version__ = version("tcoefs")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"


################################################################################
# App + template filters
################################################################################
app = Flask(__name__)
app.url_map.strict_slashes = False
app.config.update(SECRET_KEY=SECRET_KEY, DATABASE=str(DB_FILE))
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SECURE=True,
    MAX_CONTENT_LENGTH=UPLOAD_MAX_BYTES + 1024 * 1024,
)
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)

MD_EXTENSIONS = ["extra", "sane_lists", "smarty", "toc"]


def render_markdown(text: str | None) -> str:
    return markdown.markdown(text or "", extensions=MD_EXTENSIONS)


@app.template_filter("md")
def md_filter(text: str | None) -> Markup:
    return Markup(render_markdown(text))


@app.template_filter("ago")
def ago_filter(iso: str | None) -> str:
    """Short relative time: “Just now”, “5m ago”, … then a plain date."""
    if not iso:
        return ""
    try:
        then = datetime.fromisoformat(iso)
    except ValueError:
        return iso
    if then.tzinfo is None:
        then = then.replace(tzinfo=timezone.utc)
    now = utc_now()
    secs = int((now - then).total_seconds())
    if secs < 60:
        return "Just now"
    if secs < 3600:
        return f"{secs // 60}m ago"
    if secs < 86400:
        return f"{secs // 3600}h ago"
    if secs < 7 * 86400:
        return f"{secs // 86400}d ago"
    if then.year == now.year:
        return f"{then:%b} {then.day}"
    return f"{then:%b} {then.day}, {then.year}"


###############################################################################
# Database helpers
###############################################################################
def get_db():
    if "db" not in g:
        g.db = sqlite3.connect(app.config["DATABASE"])
        g.db.execute("PRAGMA foreign_keys = ON;")
        g.db.row_factory = sqlite3.Row
    return g.db


@app.teardown_appcontext
def close_db(error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def init_db():
    db = get_db()
    db.executescript(
        f"""
        ------------------------------------------------------------
        -- 1.  Accounts (readers and admins)
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS user (
            id            INTEGER PRIMARY KEY AUTOINCREMENT,
            email         TEXT UNIQUE NOT NULL,
            display_name  TEXT NOT NULL,
            is_admin      INTEGER NOT NULL DEFAULT 0,
            token_hash    TEXT,
            created_at    TEXT NOT NULL
        );

        ------------------------------------------------------------
        -- 2.  Articles
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS article (
            id              TEXT PRIMARY KEY,            -- news1, news2, …
            title           TEXT NOT NULL,
            excerpt         TEXT NOT NULL,
            content         TEXT NOT NULL,
            category        TEXT NOT NULL,
            card_image_url  TEXT,
            date            TEXT,                        -- display date
            published_date  TEXT NOT NULL,               -- YYYY-MM-DD
            read_time       TEXT,
            featured        INTEGER NOT NULL DEFAULT 0,
            created_at      TEXT NOT NULL,
            updated_at      TEXT,
            created_by      INTEGER REFERENCES user(id) ON DELETE SET NULL,
            updated_by      INTEGER REFERENCES user(id) ON DELETE SET NULL
        );

        CREATE INDEX IF NOT EXISTS idx_article_published
            ON article(published_date DESC, created_at DESC);
        -- at most one featured article
        CREATE UNIQUE INDEX IF NOT EXISTS idx_article_one_featured
            ON article(featured) WHERE featured = 1;

        ------------------------------------------------------------
        -- 3.  Likes (one per reader and article)
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS post_like (
            user_id     INTEGER NOT NULL,
            article_id  TEXT NOT NULL,
            created_at  TEXT NOT NULL,
            PRIMARY KEY (user_id, article_id),
            FOREIGN KEY (user_id)    REFERENCES user(id)    ON DELETE CASCADE,
            FOREIGN KEY (article_id) REFERENCES article(id) ON DELETE CASCADE
        );

        CREATE INDEX IF NOT EXISTS idx_like_article ON post_like(article_id);

        ------------------------------------------------------------
        -- 4.  Comments
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS comment (
            id          INTEGER PRIMARY KEY AUTOINCREMENT,
            article_id  TEXT NOT NULL,
            user_id     INTEGER NOT NULL,
            user_name   TEXT NOT NULL,
            user_email  TEXT,
            text        TEXT NOT NULL,
            created_at  TEXT NOT NULL,
            FOREIGN KEY (user_id)    REFERENCES user(id)    ON DELETE CASCADE,
            FOREIGN KEY (article_id) REFERENCES article(id) ON DELETE CASCADE
        );

        CREATE INDEX IF NOT EXISTS idx_comment_article
            ON comment(article_id, created_at DESC);

        ------------------------------------------------------------
        -- 5.  Uploaded images
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS article_image (
            id           INTEGER PRIMARY KEY AUTOINCREMENT,
            article_id   TEXT,
            image_url    TEXT NOT NULL,
            image_type   TEXT NOT NULL,               -- card | content
            public_id    TEXT NOT NULL,
            uploaded_by  INTEGER REFERENCES user(id) ON DELETE SET NULL,
            created_at   TEXT NOT NULL,
            FOREIGN KEY (article_id) REFERENCES article(id) ON DELETE CASCADE
        );

        ------------------------------------------------------------
        -- 6.  Site-wide key/value settings
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS settings (
            key   TEXT PRIMARY KEY,
            value TEXT
        );
        INSERT OR IGNORE INTO settings (key, value)
            VALUES ('site_name', '{SITE_NAME_DFLT}'),
                   ('site_tagline', 'News from the Centre'),
                   ('page_size', '{PAGE_DEFAULT}');
        """
    )
    db.commit()


# -------------------------------------------------------------------------
# Time helpers
# -------------------------------------------------------------------------
def utc_now() -> datetime:
    """Return an *aware* datetime in UTC."""
    return datetime.now(timezone.utc)


def now_iso() -> str:
    return utc_now().isoformat(timespec="seconds")


def display_date(d: date) -> str:
    """2025-03-07 → “March 7, 2025”."""
    return f"{d:%B} {d.day}, {d.year}"


###############################################################################
# Accounts + sign-in links
###############################################################################
def default_display_name(email: str) -> str:
    return email.split("@", 1)[0] or "Anonymous"


def get_or_create_user(db, *, email: str, display_name: str | None = None):
    email = email.strip().lower()
    row = db.execute("SELECT * FROM user WHERE email=?", (email,)).fetchone()
    if row:
        return row
    db.execute(
        "INSERT INTO user (email, display_name, created_at) VALUES (?,?,?)",
        (email, (display_name or "").strip() or default_display_name(email), now_iso()),
    )
    db.commit()
    return db.execute("SELECT * FROM user WHERE email=?", (email,)).fetchone()


def issue_login_token(db, user_id: int) -> str:
    """Store a fresh one-time handle for *user_id* and return the signed token."""
    handle = secrets.token_urlsafe(TOKEN_LEN)
    db.execute(
        "UPDATE user SET token_hash=? WHERE id=?", (hash_token(handle), user_id)
    )
    db.commit()
    return signer.sign(f"{user_id}:{handle}").decode()


def validate_token(token: str, max_age: int = LOGIN_MAX_AGE):
    """Return the user row a still-valid token belongs to, else ``None``."""
    try:
        payload = signer.unsign(token, max_age=max_age).decode()
    except SignatureExpired:
        return None
    except BadSignature:
        return None

    uid, _, handle = payload.partition(":")
    try:
        uid_int = int(uid)
    except ValueError:
        return None
    row = get_db().execute("SELECT * FROM user WHERE id=?", (uid_int,)).fetchone()
    if row and row["token_hash"] and verify_token(row["token_hash"], handle):
        return row
    return None


def smtp_config() -> dict[str, str]:
    env_file = _read_env_file()
    cfg = {k: (os.environ.get(k) or env_file.get(k) or "").strip() for k in SMTP_ENV_KEYS}
    return {k: v for k, v in cfg.items() if v}


def send_login_email(to: str, link: str) -> bool:
    """Mail the sign-in link; without SMTP settings it only goes to the log."""
    cfg = smtp_config()
    if not cfg.get("SMTP_HOST"):
        app.logger.info("SMTP not configured; sign-in link for %s: %s", to, link)
        return False

    site = get_setting("site_name", SITE_NAME_DFLT)
    msg = EmailMessage()
    msg["Subject"] = f"Your sign-in link for {site}"
    msg["From"] = cfg.get("SMTP_FROM") or cfg.get("SMTP_USERNAME") or f"noreply@{request.host}"
    msg["To"] = to
    msg.set_content(
        f"Use this link to sign in to {site}:\n\n{link}\n\n"
        f"It expires in {LOGIN_MAX_AGE // 60} minutes and works once.\n"
    )
    try:
        with smtplib.SMTP(cfg["SMTP_HOST"], int(cfg.get("SMTP_PORT", 587)), timeout=10) as smtp:
            smtp.starttls()
            if cfg.get("SMTP_USERNAME"):
                smtp.login(cfg["SMTP_USERNAME"], cfg.get("SMTP_PASSWORD", ""))
            smtp.send_message(msg)
    except (smtplib.SMTPException, OSError):
        app.logger.exception("Sending sign-in email to %s failed", to)
        return False
    return True


###############################################################################
# CLI – create admin + sign-in link
###############################################################################
@app.cli.command("init")
@click.option("--email", prompt=True, help="Admin e-mail address")
@click.option("--name", default="", help="Display name (defaults to the e-mail user part)")
def cli_init(email: str, name: str):
    """Initialise DB *and* create (or promote) the first admin account."""
    init_db()  # no-op if already there
    db = get_db()
    user = get_or_create_user(db, email=email, display_name=name)
    db.execute("UPDATE user SET is_admin=1 WHERE id=?", (user["id"],))
    db.commit()
    token = issue_login_token(db, user["id"])

    click.secho("\n✅  Admin ready.", fg="green")
    click.echo(f"\nOne-time sign-in token:\n\n{token}\n")
    click.echo(f"Paste it into the form at /login within {LOGIN_MAX_AGE // 60} minutes.")


@app.cli.command("token")
@click.option("--email", prompt=True, help="Account e-mail address")
def cli_token(email: str):
    """Print a fresh one-time sign-in token for an existing account."""
    db = get_db()
    row = db.execute(
        "SELECT id FROM user WHERE email=?", (email.strip().lower(),)
    ).fetchone()
    if row is None:
        raise click.ClickException(f"No account for {email}")
    token = issue_login_token(db, row["id"])

    click.secho("\n🔑  Fresh sign-in token generated.\n", fg="yellow")
    click.echo(f"{token}\n")


@app.cli.command("promote")
@click.option("--email", prompt=True)
@click.option("--revoke", is_flag=True, help="Remove the admin role instead")
def cli_promote(email: str, revoke: bool):
    """Grant or revoke the admin role."""
    db = get_db()
    cur = db.execute(
        "UPDATE user SET is_admin=? WHERE email=?",
        (0 if revoke else 1, email.strip().lower()),
    )
    db.commit()
    if not cur.rowcount:
        raise click.ClickException(f"No account for {email}")
    click.echo(f"{email}: admin {'revoked' if revoke else 'granted'}")


###############################################################################
# Content helpers
###############################################################################
def get_setting(key, default=None):
    row = get_db().execute("SELECT value FROM settings WHERE key=?", (key,)).fetchone()
    return row["value"] if row else default


def set_setting(key, value):
    db = get_db()
    db.execute(
        "INSERT INTO settings (key,value) VALUES (?,?) "
        "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
        (key, value),
    )
    db.commit()


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


def image_config() -> dict[str, str]:
    env_file = _read_env_file()
    cfg = {k: (os.environ.get(k) or env_file.get(k) or "").strip() for k in IMAGE_ENV_KEYS}
    return {k: v for k, v in cfg.items() if v}


def image_store_is_configured(cfg: dict[str, str] | None = None) -> bool:
    cfg = cfg or image_config()
    return all(cfg.get(k) for k in IMAGE_REQUIRED_KEYS)


def _s3_client(cfg: dict[str, str]):
    return boto3.client(
        "s3",
        endpoint_url=cfg.get("IMAGE_ENDPOINT") or None,
        region_name=cfg.get("IMAGE_REGION") or "auto",
        aws_access_key_id=cfg["IMAGE_ACCESS_KEY_ID"],
        aws_secret_access_key=cfg["IMAGE_SECRET_ACCESS_KEY"],
    )


def image_object_url(cfg: dict[str, str], key: str) -> str:
    base = cfg.get("IMAGE_PUBLIC_BASE")
    if base:
        return f"{base.rstrip('/')}/{key.lstrip('/')}"
    endpoint = (cfg.get("IMAGE_ENDPOINT") or "https://s3.amazonaws.com").rstrip("/")
    return f"{endpoint}/{cfg['IMAGE_BUCKET']}/{key.lstrip('/')}"


def store_image(f, *, article_id: str | None, image_type: str, user_id) -> tuple[dict, int]:
    """
    Push one uploaded file to the image bucket and record it.

    Returns ``(payload, status)`` ready to hand back from a JSON view.
    """
    cfg = image_config()
    if not image_store_is_configured(cfg):
        return {"error": "Image uploads are not configured."}, 400
    if not f or not f.filename:
        return {"error": "No file selected."}, 400

    mime = (f.mimetype or "").lower()
    if mime not in IMAGE_MIMES:
        return {"error": "Only image uploads are allowed."}, 415

    if image_type not in IMAGE_TYPES:
        return {"error": f"Unknown image type: {image_type}"}, 400

    f.stream.seek(0, os.SEEK_END)
    size = f.stream.tell()
    f.stream.seek(0)
    if size > UPLOAD_MAX_BYTES:
        return {"error": "Image size must be less than 10MB."}, 413

    ext = Path(secure_filename(f.filename)).suffix.lower()
    key = f"{IMAGE_FOLDER}/{utc_now():%Y/%m}/{uuid.uuid4().hex}{ext}"
    try:
        client = _s3_client(cfg)
        client.upload_fileobj(
            f.stream,
            cfg["IMAGE_BUCKET"],
            key,
            ExtraArgs={"ContentType": mime},
        )
    except (BotoCoreError, ClientError):
        app.logger.exception("Image upload failed")
        return {"error": "Upload failed – check the image store credentials."}, 502

    url = image_object_url(cfg, key)
    db = get_db()
    db.execute(
        """INSERT INTO article_image
               (article_id, image_url, image_type, public_id, uploaded_by, created_at)
           VALUES (?,?,?,?,?,?)""",
        (article_id, url, image_type, key, user_id, now_iso()),
    )
    db.commit()
    return {"url": url, "public_id": key}, 201


def site_url(path: str) -> str:
    return path if not path.startswith("/") else f"{SITE_URL}{path}"


# Pagination helpers
def page_size() -> int:
    try:
        return max(int(get_setting("page_size", PAGE_DEFAULT)), 1)
    except (TypeError, ValueError):
        return PAGE_DEFAULT


def paginate(base_sql: str, params: tuple, *, page: int, per_page: int, db):
    total = db.execute(f"SELECT COUNT(*) FROM ({base_sql})", params).fetchone()[0]
    pages = (total + per_page - 1) // per_page
    rows = db.execute(
        f"{base_sql} LIMIT ? OFFSET ?", params + (per_page, (page - 1) * per_page)
    ).fetchall()
    return rows, pages


def page_arg() -> int:
    try:
        return max(int(request.args.get("page", 1)), 1)
    except ValueError:
        return 1


# ── viewer ──────────────────────────────────────────────────────────
def current_viewer():
    """The signed-in account row, or ``None``."""
    uid = session.get("user_id")
    if not uid:
        return None
    return get_db().execute("SELECT * FROM user WHERE id=?", (uid,)).fetchone()


def is_admin() -> bool:
    viewer = current_viewer()
    return bool(viewer and viewer["is_admin"])


def viewer_json(row) -> dict | None:
    if row is None:
        return None
    return {
        "id": row["id"],
        "display_name": row["display_name"],
        "email": row["email"],
        "is_admin": bool(row["is_admin"]),
    }


# ── articles ────────────────────────────────────────────────────────
ARTICLE_ORDER = "ORDER BY a.published_date DESC, a.created_at DESC"


def get_article(article_id: str, *, db):
    return db.execute("SELECT * FROM article WHERE id=?", (article_id,)).fetchone()


def featured_article(*, db):
    return db.execute(
        "SELECT * FROM article WHERE featured=1 LIMIT 1"
    ).fetchone()


def related_articles(article_id: str, *, db, limit: int = 4) -> list:
    """Newest other articles, for the block under an article."""
    return db.execute(
        f"SELECT a.* FROM article a WHERE a.id != ? {ARTICLE_ORDER} LIMIT ?",
        (article_id, limit),
    ).fetchall()


def next_article_id(*, db) -> str:
    """news1, news2, … – one past the highest number in use."""
    highest = 0
    for row in db.execute("SELECT id FROM article"):
        m = re.search(r"(\d+)$", row["id"])
        if m:
            highest = max(highest, int(m.group(1)))
    return f"{ARTICLE_ID_PREFIX}{highest + 1}"


def set_featured(article_id: str, *, db) -> None:
    """Make *article_id* the only featured article (one transaction)."""
    with db:
        db.execute(
            "UPDATE article SET featured=0 WHERE featured=1 AND id != ?", (article_id,)
        )
        db.execute("UPDATE article SET featured=1 WHERE id=?", (article_id,))


def unset_featured(article_id: str, *, db) -> None:
    with db:
        db.execute("UPDATE article SET featured=0 WHERE id=?", (article_id,))


def article_json(row) -> dict:
    return {
        "id": row["id"],
        "title": row["title"],
        "excerpt": row["excerpt"],
        "category": row["category"],
        "card_image_url": row["card_image_url"],
        "date": row["date"],
        "published_date": row["published_date"],
        "read_time": row["read_time"],
        "featured": bool(row["featured"]),
    }


# ── likes + comments ────────────────────────────────────────────────
def like_count(article_id: str, *, db) -> int:
    return db.execute(
        "SELECT COUNT(*) FROM post_like WHERE article_id=?", (article_id,)
    ).fetchone()[0]


def has_liked(user_id, article_id: str, *, db) -> bool:
    if not user_id:
        return False
    return bool(
        db.execute(
            "SELECT 1 FROM post_like WHERE user_id=? AND article_id=?",
            (user_id, article_id),
        ).fetchone()
    )


def toggle_like(user_id, article_id: str, *, db) -> bool:
    """Flip the reader's like; return the new state."""
    with db:
        cur = db.execute(
            "DELETE FROM post_like WHERE user_id=? AND article_id=?",
            (user_id, article_id),
        )
        if cur.rowcount:
            return False
        db.execute(
            "INSERT OR IGNORE INTO post_like (user_id, article_id, created_at) VALUES (?,?,?)",
            (user_id, article_id, now_iso()),
        )
    return True


def article_comments(article_id: str, *, db) -> list:
    return db.execute(
        "SELECT * FROM comment WHERE article_id=? ORDER BY created_at DESC, id DESC",
        (article_id,),
    ).fetchall()


def add_comment(viewer, article_id: str, text: str, *, db):
    db.execute(
        """INSERT INTO comment (article_id, user_id, user_name, user_email, text, created_at)
           VALUES (?,?,?,?,?,?)""",
        (
            article_id,
            viewer["id"],
            viewer["display_name"],
            viewer["email"],
            text,
            now_iso(),
        ),
    )
    cid = db.execute("SELECT last_insert_rowid()").fetchone()[0]
    db.commit()
    return db.execute("SELECT * FROM comment WHERE id=?", (cid,)).fetchone()


def delete_comment(comment_id: int, user_id, *, db) -> int:
    """
    Delete a comment on behalf of *user_id*.

    Returns 204 when removed, 404 when it does not exist, 403 when it
    belongs to somebody else.
    """
    row = db.execute("SELECT user_id FROM comment WHERE id=?", (comment_id,)).fetchone()
    if row is None:
        return 404
    if row["user_id"] != user_id:
        return 403
    db.execute("DELETE FROM comment WHERE id=? AND user_id=?", (comment_id, user_id))
    db.commit()
    return 204


def comment_json(row) -> dict:
    return {
        "id": row["id"],
        "article_id": row["article_id"],
        "user_id": row["user_id"],
        "user_name": row["user_name"],
        "text": row["text"],
        "created_at": row["created_at"],
    }


###############################################################################
# Article form
###############################################################################
@dataclass(frozen=True)
class FieldError:
    field: str
    message: str


@dataclass
class ArticleForm:
    """Everything the editor submits, with types, instead of a loose dict."""

    title: str = ""
    excerpt: str = ""
    content: str = ""
    category: str = DEFAULT_CATEGORY
    card_image_url: str = ""
    published_date: str = ""
    date: str = ""
    read_time: str = READ_TIME_DFLT
    featured: bool = False

    @classmethod
    def blank(cls) -> "ArticleForm":
        today = utc_now().date()
        return cls(published_date=today.isoformat(), date=display_date(today))

    @classmethod
    def from_form(cls, form) -> "ArticleForm":
        return cls(
            title=form.get("title", "").strip(),
            excerpt=form.get("excerpt", "").strip(),
            content=form.get("content", "").strip(),
            category=form.get("category", DEFAULT_CATEGORY).strip(),
            card_image_url=form.get("card_image_url", "").strip(),
            published_date=form.get("published_date", "").strip(),
            date=form.get("date", "").strip(),
            read_time=form.get("read_time", "").strip() or READ_TIME_DFLT,
            featured=form.get("featured") in ("1", "on", "true"),
        )

    @classmethod
    def from_row(cls, row) -> "ArticleForm":
        return cls(
            title=row["title"],
            excerpt=row["excerpt"],
            content=row["content"],
            category=row["category"],
            card_image_url=row["card_image_url"] or "",
            published_date=row["published_date"],
            date=row["date"] or "",
            read_time=row["read_time"] or READ_TIME_DFLT,
            featured=bool(row["featured"]),
        )

    def validate(self) -> list[FieldError]:
        errors = []
        if not self.title:
            errors.append(FieldError("title", "Title is required"))
        if not self.excerpt:
            errors.append(FieldError("excerpt", "Excerpt is required"))
        if not self.content:
            errors.append(FieldError("content", "Content is required"))
        if not self.card_image_url:
            errors.append(FieldError("card_image_url", "Card image is required"))
        if self.category not in CATEGORIES:
            errors.append(
                FieldError("category", f"Category must be one of {', '.join(CATEGORIES)}")
            )
        if not self.published_date:
            errors.append(FieldError("published_date", "Publish date is required"))
        else:
            try:
                if not ISO_DATE_RE.match(self.published_date):
                    raise ValueError
                date.fromisoformat(self.published_date)
            except ValueError:
                errors.append(
                    FieldError("published_date", "Publish date must be YYYY-MM-DD")
                )
        return errors

    def params(self) -> dict:
        """Column values; the display date follows the publish date if left blank."""
        values = asdict(self)
        values.pop("featured")
        if not values["date"]:
            values["date"] = display_date(date.fromisoformat(self.published_date))
        return values


def save_article(form: ArticleForm, *, article_id: str | None, user_id, db) -> str:
    """Insert or update from a *validated* form; return the article id."""
    values = form.params()
    now = now_iso()
    if article_id is None:
        article_id = next_article_id(db=db)
        db.execute(
            """INSERT INTO article
                   (id, title, excerpt, content, category, card_image_url, date,
                    published_date, read_time, created_at, updated_at,
                    created_by, updated_by)
               VALUES (:id, :title, :excerpt, :content, :category, :card_image_url,
                       :date, :published_date, :read_time, :now, :now, :uid, :uid)""",
            {**values, "id": article_id, "now": now, "uid": user_id},
        )
    else:
        db.execute(
            """UPDATE article
                  SET title=:title, excerpt=:excerpt, content=:content,
                      category=:category, card_image_url=:card_image_url,
                      date=:date, published_date=:published_date,
                      read_time=:read_time, updated_at=:now, updated_by=:uid
                WHERE id=:id""",
            {**values, "id": article_id, "now": now, "uid": user_id},
        )
    db.commit()

    if form.featured:
        set_featured(article_id, db=db)
    else:
        unset_featured(article_id, db=db)
    return article_id


def _csrf_token() -> str:
    """One token per session (rotates when the cookie does)."""
    return session.get("csrf", "")


# Expose helpers to templates
app.jinja_env.globals.update(
    get_setting=get_setting,
    csrf_token=_csrf_token,
    current_viewer=current_viewer,
    is_admin=is_admin,
    categories=CATEGORIES,
    image_uploads_enabled=image_store_is_configured,
    version=__version__,
)

###############################################################################
# Templates + Views
###############################################################################


def wrap(body: str) -> str:
    """Glue prolog + page-specific body + epilog."""
    return TEMPL_PROLOG + body + TEMPL_EPILOG


TEMPL_PROLOG = """
<!doctype html>
<html lang="en">
<title>{{ title or get_setting('site_name', 'TCOEFS News') }}</title>
<meta name="viewport" content="width=device-width, initial-scale=1">
<meta charset="utf-8">
<meta name="description" content="{{ get_setting('site_tagline', '') }}">
<style>
body{font-family:-apple-system,BlinkMacSystemFont,"Segoe UI",Roboto,Arial,sans-serif;max-width:46em;margin:auto;padding:1rem;line-height:1.6;color:#1f3a2e;background:#fbfdfc}
a{color:#2f6f4f}header nav a{margin-right:.8em}.muted{color:#6b7f75;font-size:.9em}
.card{border:1px solid #d9e8e0;border-radius:8px;padding:1rem;margin:1rem 0;background:#fff}
.card img{max-width:100%;border-radius:6px}.hero{border-width:2px}
.pill{display:inline-block;padding:.1em .7em;border-radius:1em;background:#e7f1ec;font-size:.8em;margin-right:.3em}
.flash{padding:.5rem 1rem;background:#fdf3e1;border:1px solid #f0d9a8;border-radius:6px}
.error{color:#b3261e}form.inline{display:inline}
textarea,input[type=text],input[type=email],input[type=date],select{width:100%;box-sizing:border-box;padding:.4rem;margin:.2rem 0 .8rem}
table{width:100%;border-collapse:collapse}td,th{padding:.4rem;border-bottom:1px solid #d9e8e0;text-align:left}
</style>
<header>
  <h1 style="margin-bottom:.2em"><a href="{{ url_for('index') }}" style="text-decoration:none">
      {{ get_setting('site_name', 'TCOEFS News') }}</a></h1>
  <nav>
    {% for c in categories %}
      <a href="{{ url_for('index', category=c) }}">{{ c }}</a>
    {% endfor %}
    {% set viewer = current_viewer() %}
    <span style="float:right">
    {% if viewer %}
      {% if viewer['is_admin'] %}<a href="{{ url_for('admin_dashboard') }}">Admin</a>{% endif %}
      <span class="muted">{{ viewer['display_name'] }}</span>
      <a href="{{ url_for('logout') }}">Sign out</a>
    {% else %}
      <a href="{{ url_for('login') }}">Sign in</a>
    {% endif %}
    </span>
  </nav>
</header>
{% with messages = get_flashed_messages() %}
  {% for m in messages %}<p class="flash">{{ m }}</p>{% endfor %}
{% endwith %}
<main>
"""

TEMPL_EPILOG = """
</main>
<footer class="muted" style="margin-top:3rem;border-top:1px solid #d9e8e0;padding-top:1rem">
  {{ get_setting('site_name', 'TCOEFS News') }} · v{{ version }}
</footer>
</html>
"""


###############################################################################
# Authentication
###############################################################################
def login_required() -> None:
    if current_viewer() is None:
        abort(401)


def admin_required() -> None:
    viewer = current_viewer()
    if viewer is None:
        abort(401)
    if not viewer["is_admin"]:
        abort(403)


def rate_limit(max_requests: int, window: int = 60):
    hits: DefaultDict[str, deque] = defaultdict(deque)

    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            if request.method != "POST":
                return view(*args, **kwargs)
            now = time()
            # left-most entry after ProxyFix = real client
            ip = (
                request.access_route[0] if request.access_route else request.remote_addr
            ) or "unknown"

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


def _sign_in(user) -> None:
    db = get_db()
    db.execute("UPDATE user SET token_hash=NULL WHERE id=?", (user["id"],))  # burn
    db.commit()
    session.clear()
    session.permanent = True
    session["user_id"] = user["id"]
    session["csrf"] = secrets.token_hex(16)


@app.route("/login", methods=["GET", "POST"])
@rate_limit(max_requests=5, window=60)
def login():
    token = (request.form.get("token") or request.args.get("token") or "").strip()
    if token:
        user = validate_token(token)
        if user is not None:
            _sign_in(user)
            return redirect(url_for("index"))
        flash("That sign-in link is invalid or has expired.")
        return render_template_string(TEMPL_LOGIN, sent_to=None), 200

    email = request.form.get("email", "").strip().lower()
    if request.method == "POST":
        if not EMAIL_RE.match(email):
            flash("Please enter a valid e-mail address.")
        else:
            db = get_db()
            user = get_or_create_user(db, email=email)
            link = url_for("login", token=issue_login_token(db, user["id"]), _external=True)
            send_login_email(email, link)
            return render_template_string(TEMPL_LOGIN, sent_to=email)

    return render_template_string(TEMPL_LOGIN, sent_to=None)


TEMPL_LOGIN = wrap("""
<h2>Sign in</h2>
{% if sent_to %}
  <p>We sent a sign-in link to <strong>{{ sent_to }}</strong>.
     Open it, or paste the token from the e-mail below.</p>
  <form method="post">
    <input type="text" name="token" placeholder="token" autocomplete="one-time-code">
    <button type="submit">Sign in</button>
  </form>
{% else %}
  <form method="post">
    <label for="email">E-mail</label>
    <input id="email" type="email" name="email" required>
    <button type="submit">Send sign-in link</button>
  </form>
  <details style="margin-top:1rem"><summary class="muted">Have a token?</summary>
    <form method="post">
      <input type="text" name="token" placeholder="token">
      <button type="submit">Sign in</button>
    </form>
  </details>
{% endif %}
""")


@app.route("/logout")
def logout():
    session.clear()
    return redirect(url_for("index"))


SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}


@app.before_request
def csrf_protect():
    # ➊ read-only verbs ⇒ always allowed
    if request.method in SAFE_METHODS:
        return

    # ➋ anonymous ⇒ allow (covers /login POST); protected views reject later
    if not session.get("user_id"):
        return

    # ➌ for signed-in readers we REQUIRE a valid token
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


###############################################################################
# JSON API
###############################################################################
def api_error(status: int, message: str):
    return jsonify(error=message), status


def _api_article(article_id: str):
    row = get_article(article_id, db=get_db())
    if row is None:
        abort(404)
    return row


@app.route("/api/session")
def api_session():
    return jsonify(viewer=viewer_json(current_viewer()), csrf=_csrf_token())


@app.route("/api/articles")
def api_articles():
    rows = get_db().execute(f"SELECT * FROM article a {ARTICLE_ORDER}").fetchall()
    return jsonify(articles=[article_json(r) for r in rows])


@app.route("/api/articles/<article_id>/likes")
def api_likes(article_id):
    _api_article(article_id)
    db = get_db()
    viewer = current_viewer()
    return jsonify(
        count=like_count(article_id, db=db),
        liked=has_liked(viewer["id"] if viewer else None, article_id, db=db),
    )


@app.route("/api/articles/<article_id>/like", methods=["POST"])
def api_toggle_like(article_id):
    viewer = current_viewer()
    if viewer is None:
        return api_error(401, "Must be signed in to like posts")
    _api_article(article_id)
    db = get_db()
    liked = toggle_like(viewer["id"], article_id, db=db)
    return jsonify(liked=liked, count=like_count(article_id, db=db))


@app.route("/api/articles/<article_id>/comments", methods=["GET", "POST"])
def api_comments(article_id):
    _api_article(article_id)
    db = get_db()
    if request.method == "GET":
        return jsonify(
            comments=[comment_json(r) for r in article_comments(article_id, db=db)]
        )

    viewer = current_viewer()
    if viewer is None:
        return api_error(401, "Must be signed in to comment")
    payload = request.get_json(silent=True) or {}
    text = str(payload.get("text") or request.form.get("text") or "").strip()
    if not text:
        return api_error(400, "Comment cannot be empty.")
    row = add_comment(viewer, article_id, text, db=db)
    return jsonify(comment_json(row)), 201


@app.route("/api/comments/<int:comment_id>", methods=["DELETE"])
def api_delete_comment(comment_id):
    viewer = current_viewer()
    if viewer is None:
        return api_error(401, "Must be signed in")
    status = delete_comment(comment_id, viewer["id"], db=get_db())
    if status == 404:
        return api_error(404, "Comment not found")
    if status == 403:
        return api_error(403, "You can only delete your own comments")
    return "", 204


@app.route("/api/articles/<article_id>/feature", methods=["POST", "DELETE"])
def api_feature(article_id):
    viewer = current_viewer()
    if viewer is None:
        return api_error(401, "Must be signed in")
    if not viewer["is_admin"]:
        return api_error(403, "Admins only")
    _api_article(article_id)
    db = get_db()
    if request.method == "POST":
        set_featured(article_id, db=db)
    else:
        unset_featured(article_id, db=db)
    return "", 204


@app.route("/api/latest-news", methods=["GET", "OPTIONS"])
def api_latest_news():
    """The three newest articles, for the centre's main website."""
    cors = {
        "Access-Control-Allow-Origin": MAIN_SITE_ORIGIN,
        "Access-Control-Allow-Methods": "GET, OPTIONS",
        "Access-Control-Allow-Headers": "Content-Type",
    }
    if request.method == "OPTIONS":
        return "", 200, cors

    try:
        rows = get_db().execute(
            f"SELECT * FROM article a {ARTICLE_ORDER} LIMIT ?", (LATEST_NEWS_LIMIT,)
        ).fetchall()
    except sqlite3.Error:
        app.logger.exception("Fetching latest news failed")
        return jsonify(success=False, error="Failed to fetch articles"), 500, cors

    articles = [
        {
            "id": r["id"],
            "title": r["title"],
            "excerpt": r["excerpt"],
            "category": r["category"],
            "date": r["date"],
            "image": site_url(r["card_image_url"] or FALLBACK_CARD_IMAGE),
            "readTime": r["read_time"],
            "url": f"{SITE_URL}/news/{r['id']}",
        }
        for r in rows
    ]
    return jsonify(success=True, count=len(articles), articles=articles), 200, cors


###############################################################################
# Index + Articles
###############################################################################
@app.route("/")
def index():
    db = get_db()
    q = request.args.get("q", "").strip()
    category = request.args.get("category", "").strip()
    if category and category not in CATEGORIES:
        category = ""

    hero = None if (q or category) else featured_article(db=db)
    where, params = ["1=1"], []
    if hero is not None:
        where.append("a.id != ?")
        params.append(hero["id"])
    if category:
        where.append("a.category = ?")
        params.append(category)
    if q:
        like = f"%{q}%"
        where.append("(a.title LIKE ? OR a.excerpt LIKE ? OR a.category LIKE ?)")
        params.extend([like, like, like])

    BASE_SQL = f"""
        SELECT a.*,
               (SELECT COUNT(*) FROM post_like l WHERE l.article_id = a.id) AS likes,
               (SELECT COUNT(*) FROM comment c WHERE c.article_id = a.id)   AS comments
          FROM article a
         WHERE {' AND '.join(where)}
         {ARTICLE_ORDER}
    """
    page = page_arg()
    articles, total_pages = paginate(
        BASE_SQL, tuple(params), page=page, per_page=page_size(), db=db
    )
    return render_template_string(
        TEMPL_INDEX,
        hero=hero,
        articles=articles,
        page=page,
        total_pages=total_pages,
        q=q,
        category=category,
    )


TEMPL_INDEX = wrap("""
<form method="get" action="{{ url_for('index') }}">
  <input type="text" name="q" value="{{ q }}" placeholder="Search articles…">
  {% if category %}<input type="hidden" name="category" value="{{ category }}">{% endif %}
</form>
{% if q or category %}
  <p class="muted">{{ articles|length }} result{{ '' if articles|length == 1 else 's' }}
     {% if q %}for “{{ q }}”{% endif %}{% if category %} in {{ category }}{% endif %}
     · <a href="{{ url_for('index') }}">clear</a></p>
{% endif %}

{% if hero %}
<a href="{{ url_for('article_detail', article_id=hero['id']) }}" style="text-decoration:none;color:inherit">
<article class="card hero">
  {% if hero['card_image_url'] %}<img src="{{ hero['card_image_url'] }}" alt="">{% endif %}
  <span class="pill">Featured</span><span class="pill">{{ hero['category'] }}</span>
  <h2>{{ hero['title'] }}</h2>
  <p>{{ hero['excerpt'] }}</p>
  <p class="muted">{{ hero['date'] }} · {{ hero['read_time'] }}</p>
</article></a>
{% endif %}

{% for a in articles %}
<article class="card">
  <span class="pill">{{ a['category'] }}</span>
  <h3 style="margin:.3em 0"><a href="{{ url_for('article_detail', article_id=a['id']) }}">{{ a['title'] }}</a></h3>
  <p>{{ a['excerpt'] }}</p>
  <p class="muted">{{ a['date'] }} · {{ a['read_time'] }} · ♥ {{ a['likes'] }} · 💬 {{ a['comments'] }}</p>
</article>
{% else %}
  <p class="muted">No articles yet.</p>
{% endfor %}

{% if total_pages > 1 %}
<nav class="muted">
  {% if page > 1 %}<a href="{{ url_for('index', page=page-1, q=q or None, category=category or None) }}">← newer</a>{% endif %}
  page {{ page }} / {{ total_pages }}
  {% if page < total_pages %}<a href="{{ url_for('index', page=page+1, q=q or None, category=category or None) }}">older →</a>{% endif %}
</nav>
{% endif %}
""")


@app.route("/news/<article_id>")
def article_detail(article_id):
    db = get_db()
    row = get_article(article_id, db=db)
    if row is None:
        abort(404)
    viewer = current_viewer()
    return render_template_string(
        TEMPL_ARTICLE,
        a=row,
        title=row["title"],
        likes=like_count(article_id, db=db),
        liked=has_liked(viewer["id"] if viewer else None, article_id, db=db),
        comments=article_comments(article_id, db=db),
        related=related_articles(article_id, db=db),
        permalink=url_for("article_detail", article_id=article_id, _external=True),
        viewer=viewer,
    )


TEMPL_ARTICLE = wrap("""
<article>
  <span class="pill">{{ a['category'] }}</span>
  {% if a['featured'] %}<span class="pill">Featured</span>{% endif %}
  <h2>{{ a['title'] }}</h2>
  <p class="muted">{{ a['date'] }} · {{ a['read_time'] }}</p>
  {% if a['card_image_url'] %}<img src="{{ a['card_image_url'] }}" alt="" style="max-width:100%">{% endif %}
  <div class="e-content">{{ a['content']|md }}</div>
</article>

<section style="margin:1.5rem 0">
  <form method="post" action="{{ url_for('article_like', article_id=a['id']) }}" class="inline">
    <input type="hidden" name="csrf" value="{{ csrf_token() }}">
    <button type="submit" aria-label="{{ 'Unlike post' if liked else 'Like post' }}">
      {{ '♥' if liked else '♡' }} {{ likes }}</button>
  </form>
  <label class="muted" for="permalink">Share</label>
  <input id="permalink" type="text" readonly value="{{ permalink }}" onclick="this.select()">
</section>

<section class="card">
  <h3>Comments ({{ comments|length }})</h3>
  {% if viewer %}
  <form method="post" action="{{ url_for('article_comment', article_id=a['id']) }}">
    <input type="hidden" name="csrf" value="{{ csrf_token() }}">
    <textarea name="text" rows="3" placeholder="Share your thoughts on this article..."></textarea>
    <button type="submit">Post comment</button>
  </form>
  {% else %}
  <p class="muted"><a href="{{ url_for('login') }}">Sign in</a> to leave a comment.</p>
  {% endif %}
  {% for c in comments %}
    <div style="border-top:1px solid #d9e8e0;padding:.6rem 0">
      <strong>{{ c['user_name'] }}</strong> <span class="muted">{{ c['created_at']|ago }}</span>
      {% if viewer and viewer['id'] == c['user_id'] %}
      <form method="post" class="inline"
            action="{{ url_for('article_comment_delete', article_id=a['id'], comment_id=c['id']) }}">
        <input type="hidden" name="csrf" value="{{ csrf_token() }}">
        <button type="submit" aria-label="Delete comment">🗑</button>
      </form>
      {% endif %}
      <p style="margin:.2rem 0">{{ c['text'] }}</p>
    </div>
  {% else %}
    <p class="muted">No comments yet. Be the first to share your thoughts!</p>
  {% endfor %}
</section>

{% if related %}
<section>
  <h3>Related articles</h3>
  {% for r in related %}
  <article class="card">
    <span class="pill">{{ r['category'] }}</span>
    <a href="{{ url_for('article_detail', article_id=r['id']) }}">{{ r['title'] }}</a>
    <span class="muted">{{ r['date'] }}</span>
  </article>
  {% endfor %}
</section>
{% endif %}
""")


@app.route("/news/<article_id>/like", methods=["POST"])
def article_like(article_id):
    viewer = current_viewer()
    if viewer is None:
        flash("Sign in to like posts")
        return redirect(url_for("login"))
    db = get_db()
    if get_article(article_id, db=db) is None:
        abort(404)
    toggle_like(viewer["id"], article_id, db=db)
    return redirect(url_for("article_detail", article_id=article_id))


@app.route("/news/<article_id>/comments", methods=["POST"])
def article_comment(article_id):
    viewer = current_viewer()
    if viewer is None:
        flash("Please sign in to leave a comment")
        return redirect(url_for("login"))
    db = get_db()
    if get_article(article_id, db=db) is None:
        abort(404)
    text = request.form.get("text", "").strip()
    if not text:
        flash("Comment cannot be empty.")
    else:
        add_comment(viewer, article_id, text, db=db)
    return redirect(url_for("article_detail", article_id=article_id))


@app.route("/news/<article_id>/comments/<int:comment_id>/delete", methods=["POST"])
def article_comment_delete(article_id, comment_id):
    login_required()
    status = delete_comment(comment_id, current_viewer()["id"], db=get_db())
    if status != 204:
        abort(status)
    return redirect(url_for("article_detail", article_id=article_id))


###############################################################################
# Admin
###############################################################################
@app.route("/admin")
def admin_dashboard():
    admin_required()
    db = get_db()
    q = request.args.get("q", "").strip()
    category = request.args.get("category", "All")

    where, params = ["1=1"], []
    if category in CATEGORIES:
        where.append("a.category = ?")
        params.append(category)
    if q:
        where.append("(a.title LIKE ? OR a.excerpt LIKE ?)")
        params.extend([f"%{q}%", f"%{q}%"])

    page = page_arg()
    articles, total_pages = paginate(
        f"SELECT a.* FROM article a WHERE {' AND '.join(where)} {ARTICLE_ORDER}",
        tuple(params),
        page=page,
        per_page=page_size(),
        db=db,
    )
    stats = {
        "articles": db.execute("SELECT COUNT(*) FROM article").fetchone()[0],
        "likes": db.execute("SELECT COUNT(*) FROM post_like").fetchone()[0],
        "comments": db.execute("SELECT COUNT(*) FROM comment").fetchone()[0],
        "featured": featured_article(db=db),
    }
    return render_template_string(
        TEMPL_ADMIN,
        title="Admin",
        articles=articles,
        stats=stats,
        q=q,
        category=category,
        page=page,
        total_pages=total_pages,
    )


TEMPL_ADMIN = wrap("""
<h2>Dashboard</h2>
<p class="muted">{{ stats.articles }} articles · {{ stats.likes }} likes · {{ stats.comments }} comments
  {% if stats.featured %}· featured: <a href="{{ url_for('article_detail', article_id=stats.featured['id']) }}">{{ stats.featured['title'] }}</a>{% endif %}</p>
<p><a href="{{ url_for('admin_article_new') }}">+ New article</a></p>
<form method="get">
  <input type="text" name="q" value="{{ q }}" placeholder="Search title or excerpt">
  <select name="category" onchange="this.form.submit()">
    {% for c in ('All',) + categories %}
      <option {% if c == category %}selected{% endif %}>{{ c }}</option>
    {% endfor %}
  </select>
</form>
<table>
  <tr><th>ID</th><th>Title</th><th>Category</th><th>Published</th><th></th></tr>
  {% for a in articles %}
  <tr>
    <td>{{ a['id'] }}</td>
    <td><a href="{{ url_for('article_detail', article_id=a['id']) }}">{{ a['title'] }}</a></td>
    <td>{{ a['category'] }}</td>
    <td>{{ a['published_date'] }}</td>
    <td style="white-space:nowrap">
      <form method="post" class="inline" action="{{ url_for('admin_article_feature', article_id=a['id']) }}">
        <input type="hidden" name="csrf" value="{{ csrf_token() }}">
        <button type="submit" title="{{ 'Unfeature article' if a['featured'] else 'Set as featured' }}">
          {{ '★ Featured' if a['featured'] else '☆ Feature' }}</button>
      </form>
      <a href="{{ url_for('admin_article_edit', article_id=a['id']) }}">Edit</a>
      <form method="post" class="inline" action="{{ url_for('admin_article_delete', article_id=a['id']) }}">
        <input type="hidden" name="csrf" value="{{ csrf_token() }}">
        <button type="submit" {% if a['featured'] %}disabled title="Cannot delete featured article"{% endif %}
                onclick="return confirm('Delete this article?')">Delete</button>
      </form>
    </td>
  </tr>
  {% else %}
  <tr><td colspan="5" class="muted">No articles found.</td></tr>
  {% endfor %}
</table>
{% if total_pages > 1 %}<p class="muted">page {{ page }} / {{ total_pages }}
  {% if page < total_pages %}<a href="{{ url_for('admin_dashboard', page=page+1, q=q or None, category=category) }}">next →</a>{% endif %}</p>{% endif %}
""")


def _editor(form: ArticleForm, *, article_id: str | None, errors=(), status=200):
    images = []
    if article_id:
        images = get_db().execute(
            "SELECT * FROM article_image WHERE article_id=? ORDER BY created_at DESC",
            (article_id,),
        ).fetchall()
    return (
        render_template_string(
            TEMPL_EDITOR,
            title="Edit article" if article_id else "New article",
            form=form,
            article_id=article_id,
            errors={e.field: e.message for e in errors},
            images=images,
        ),
        status,
    )


def _editor_submit(article_id: str | None):
    form = ArticleForm.from_form(request.form)
    viewer = current_viewer()
    upload = request.files.get("card_image")
    if upload and upload.filename:
        payload, status = store_image(
            upload, article_id=article_id, image_type="card", user_id=viewer["id"]
        )
        if status != 201:
            return _editor(
                form,
                article_id=article_id,
                errors=[FieldError("card_image_url", payload["error"])],
                status=400,
            )
        form.card_image_url = payload["url"]

    errors = form.validate()
    if errors:
        return _editor(form, article_id=article_id, errors=errors, status=400)

    db = get_db()
    saved_id = save_article(form, article_id=article_id, user_id=viewer["id"], db=db)
    if article_id is None and upload and upload.filename:
        db.execute(
            "UPDATE article_image SET article_id=? WHERE article_id IS NULL AND image_url=?",
            (saved_id, form.card_image_url),
        )
        db.commit()
    flash("Article saved.")
    return redirect(url_for("admin_article_edit", article_id=saved_id))


@app.route("/admin/articles/new", methods=["GET", "POST"])
def admin_article_new():
    admin_required()
    if request.method == "POST":
        return _editor_submit(None)
    return _editor(ArticleForm.blank(), article_id=None)


@app.route("/admin/articles/<article_id>/edit", methods=["GET", "POST"])
def admin_article_edit(article_id):
    admin_required()
    row = get_article(article_id, db=get_db())
    if row is None:
        abort(404)
    if request.method == "POST":
        return _editor_submit(article_id)
    return _editor(ArticleForm.from_row(row), article_id=article_id)


TEMPL_EDITOR = wrap("""
<h2>{{ title }}{% if article_id %} <span class="muted">{{ article_id }}</span>{% endif %}</h2>
<form method="post" enctype="multipart/form-data">
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  {% for name, label in [('title','Title'), ('excerpt','Excerpt')] %}
    <label for="{{ name }}">{{ label }}</label>
    <input id="{{ name }}" type="text" name="{{ name }}" value="{{ form[name] }}">
    {% if errors[name] %}<p class="error">{{ errors[name] }}</p>{% endif %}
  {% endfor %}
  <label for="content">Content (Markdown)</label>
  <textarea id="content" name="content" rows="16">{{ form.content }}</textarea>
  {% if errors['content'] %}<p class="error">{{ errors['content'] }}</p>{% endif %}

  <label for="category">Category</label>
  <select id="category" name="category">
    {% for c in categories %}<option {% if c == form.category %}selected{% endif %}>{{ c }}</option>{% endfor %}
  </select>
  {% if errors['category'] %}<p class="error">{{ errors['category'] }}</p>{% endif %}

  <label for="card_image_url">Card image</label>
  <input id="card_image_url" type="text" name="card_image_url" value="{{ form.card_image_url }}" placeholder="https://…">
  {% if image_uploads_enabled() %}<input type="file" name="card_image" accept="image/*">{% endif %}
  {% if errors['card_image_url'] %}<p class="error">{{ errors['card_image_url'] }}</p>{% endif %}

  <label for="published_date">Publish date</label>
  <input id="published_date" type="date" name="published_date" value="{{ form.published_date }}">
  {% if errors['published_date'] %}<p class="error">{{ errors['published_date'] }}</p>{% endif %}
  <label for="date">Display date</label>
  <input id="date" type="text" name="date" value="{{ form.date }}">
  <label for="read_time">Read time</label>
  <input id="read_time" type="text" name="read_time" value="{{ form.read_time }}">

  <label><input type="checkbox" name="featured" value="1" {% if form.featured %}checked{% endif %}>
    Set as featured article (will appear in homepage hero)</label>
  <p><button type="submit">Save</button> <a href="{{ url_for('admin_dashboard') }}">Back</a></p>
</form>
{% if images %}
<h3>Uploaded images</h3>
<ul>{% for im in images %}<li><a href="{{ im['image_url'] }}">{{ im['image_type'] }}</a>
  <span class="muted">{{ im['public_id'] }}</span>
  <form method="post" class="inline" action="{{ url_for('admin_image_delete', image_id=im['id']) }}">
    <input type="hidden" name="csrf" value="{{ csrf_token() }}">
    <button type="submit" aria-label="Delete image">Remove</button>
  </form></li>{% endfor %}</ul>
{% endif %}
""")


@app.route("/admin/articles/<article_id>/delete", methods=["POST"])
def admin_article_delete(article_id):
    admin_required()
    db = get_db()
    row = get_article(article_id, db=db)
    if row is None:
        abort(404)
    if row["featured"]:
        flash("Cannot delete featured article. Unfeature it first.")
        return redirect(url_for("admin_dashboard"))
    db.execute("DELETE FROM article WHERE id=?", (article_id,))
    db.commit()
    flash(f"Deleted {article_id}.")
    return redirect(url_for("admin_dashboard"))


@app.route("/admin/articles/<article_id>/feature", methods=["POST"])
def admin_article_feature(article_id):
    admin_required()
    db = get_db()
    row = get_article(article_id, db=db)
    if row is None:
        abort(404)
    if row["featured"]:
        unset_featured(article_id, db=db)
    else:
        set_featured(article_id, db=db)
    return redirect(url_for("admin_dashboard"))


@app.route("/upload-image", methods=["POST"])
def upload_image():
    admin_required()
    if "file" not in request.files:
        return {"error": "No file received."}, 400
    article_id = request.form.get("article_id") or None
    if article_id and get_article(article_id, db=get_db()) is None:
        return {"error": "Unknown article."}, 404
    return store_image(
        request.files["file"],
        article_id=article_id,
        image_type=request.form.get("image_type", "content"),
        user_id=current_viewer()["id"],
    )


@app.route("/admin/images/<int:image_id>/delete", methods=["POST"])
def admin_image_delete(image_id):
    admin_required()
    db = get_db()
    row = db.execute("SELECT * FROM article_image WHERE id=?", (image_id,)).fetchone()
    if row is None:
        abort(404)
    db.execute("DELETE FROM article_image WHERE id=?", (image_id,))
    db.commit()
    if row["article_id"]:
        return redirect(url_for("admin_article_edit", article_id=row["article_id"]))
    return redirect(url_for("admin_dashboard"))


###############################################################################
# Error pages
###############################################################################
def _wants_json() -> bool:
    return request.path.startswith("/api/") or request.path == "/upload-image"


@app.errorhandler(401)
def unauthorized(exc):
    if _wants_json():
        return api_error(401, "Must be signed in")
    flash("Please sign in first.")
    return redirect(url_for("login"))


@app.errorhandler(403)
def forbidden(exc):
    if _wants_json():
        return api_error(403, "Forbidden")
    return render_template_string(TEMPL_ERROR, heading="Not permitted",
                                  text="You don’t have access to this page."), 403


@app.errorhandler(404)
def not_found(exc):
    """Site-wide “Not Found” page."""
    if _wants_json():
        return api_error(404, "Not found")
    return render_template_string(TEMPL_ERROR, heading="Page not found",
                                  text="The URL you asked for doesn’t exist."), 404


@app.errorhandler(500)
def internal_error(exc):
    app.logger.error("Unhandled error on %s: %s", request.path, exc)
    if _wants_json():
        return api_error(500, "Internal server error")
    return render_template_string(TEMPL_ERROR, heading="Internal Server Error",
                                  text="Our fault, not yours. Please try again in a minute."), 500


TEMPL_ERROR = wrap("""
<h2>{{ heading }}</h2>
<p>{{ text }} <a href="{{ url_for('index') }}">Back to the front page</a></p>
""")


###############################################################################
# main
###############################################################################
if __name__ == "__main__":
    app.run(debug=True)
