"""
tests/conftest.py
"""
from __future__ import annotations

import asyncio
import datetime as _dt
import itertools
from pathlib import Path
from typing import Generator

import pytest
from flask.testing import FlaskClient
from pytest import MonkeyPatch

# The single-file app lives here:
from tcoefs.blog import app, get_db, get_or_create_user, init_db
from tcoefs.mutations import Comment, Err, ErrorKind, Ok

CSRF = "test-csrf-token"


@pytest.fixture(scope="session")
def _tmp_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    """One temp file for the whole test session (faster than per-test)."""
    db_file = tmp_path_factory.mktemp("data") / "test.sqlite3"
    return db_file


@pytest.fixture(scope="session", autouse=True)
def _configure_app(_tmp_db_path: Path) -> None:
    """
    Configure the Flask app *once* before the first test is collected.
    """
    app.config.update(
        TESTING=True,
        DATABASE=str(_tmp_db_path),
    )
    with app.app_context():
        init_db()


@pytest.fixture
def client() -> Generator[FlaskClient, None, None]:
    """
    Gives each test an isolated application context *and* test client.

    Yields:
        `flask.testing.FlaskClient`
    """
    with app.test_client() as client:
        with app.app_context():
            yield client


@pytest.fixture(autouse=True, scope="session")
def _increasing_clock():
    """
    Patch tcoefs.blog.utc_now for the whole test session so every call
    returns an ever-increasing timestamp.  Comments therefore sort
    deterministically without time.sleep().
    """
    from tcoefs import blog  # import here to avoid early import

    counter = itertools.count()         # 0, 1, 2, …

    base = _dt.datetime(2099, 1, 1, tzinfo=_dt.timezone.utc)
    def _fake_now():
        return base + _dt.timedelta(seconds=next(counter))

    mp = MonkeyPatch()
    mp.setattr(blog, "utc_now", _fake_now)

    yield                               # tests run here

    mp.undo()                           # clean up at session end


# ───────────────────────── shared helpers ─────────────────────────────
_uniq = itertools.count(1)


@pytest.fixture
def make_user():
    """Factory: ``make_user(admin=False)`` → user row with a unique e-mail."""

    def _make(*, admin: bool = False, name: str = ""):
        db = get_db()
        row = get_or_create_user(
            db, email=f"reader{next(_uniq)}@example.org", display_name=name
        )
        if admin:
            db.execute("UPDATE user SET is_admin=1 WHERE id=?", (row["id"],))
            db.commit()
            row = db.execute("SELECT * FROM user WHERE id=?", (row["id"],)).fetchone()
        return row

    return _make


@pytest.fixture
def make_article():
    """Factory inserting an article straight into the DB; returns its id."""
    from tcoefs.blog import ArticleForm, save_article

    def _make(**overrides):
        n = next(_uniq)
        form = ArticleForm(
            title=overrides.pop("title", f"Article {n}"),
            excerpt=overrides.pop("excerpt", f"Excerpt {n}"),
            content=overrides.pop("content", f"Body of article {n}."),
            category=overrides.pop("category", "News"),
            card_image_url=overrides.pop("card_image_url", f"/img/{n}.jpg"),
            published_date=overrides.pop("published_date", "2024-05-01"),
            featured=overrides.pop("featured", False),
        )
        return save_article(form, article_id=None, user_id=None, db=get_db())

    return _make


def login_as(client: FlaskClient, user) -> None:
    """Skip the e-mail round-trip: write the session cookie directly."""
    with client.session_transaction() as sess:
        sess["user_id"] = user["id"]
        sess["csrf"] = CSRF


# ───────────────────────── fake collaborator ──────────────────────────
class FakeCollaborator:
    """
    In-memory ``MutationClient`` for the optimistic controller tests.

    * ``fail_next[name] = Err(...)`` makes the next call of *name* fail.
    * ``gate`` (an ``asyncio.Event``), when set up, holds every mutation
      until the test releases it, so interleavings can be staged.
    """

    def __init__(self, *, likes=None, comments=None, featured=None):
        self.likes: dict[str, set[str]] = {k: set(v) for k, v in (likes or {}).items()}
        self.comments: dict[str, list[Comment]] = {
            k: list(v) for k, v in (comments or {}).items()
        }
        self.featured: dict[str, bool] = dict(featured or {})
        self.fail_next: dict[str, Err] = {}
        self.calls: list[tuple] = []
        self.gate: asyncio.Event | None = None
        self.exclusive = True
        self._ids = itertools.count(100)

    async def _enter(self, name, *args):
        self.calls.append((name, *args))
        if self.gate is not None and name not in {
            "fetch_like_state", "fetch_comments", "fetch_featured",
        }:
            await self.gate.wait()
        else:
            await asyncio.sleep(0)
        return self.fail_next.pop(name, None)

    def count(self, name: str) -> int:
        return sum(1 for c in self.calls if c[0] == name)

    # mutations
    async def toggle_like(self, viewer_id, entity_id):
        if not viewer_id:
            return Err(ErrorKind.VALIDATION, "Sign in to like articles.")
        if err := await self._enter("toggle_like", viewer_id, entity_id):
            return err
        fans = self.likes.setdefault(entity_id, set())
        if viewer_id in fans:
            fans.discard(viewer_id)
            return Ok({"liked": False})
        fans.add(viewer_id)
        return Ok({"liked": True})

    async def submit_comment(self, viewer_id, entity_id, text):
        if not viewer_id or not text.strip():
            return Err(ErrorKind.VALIDATION, "invalid")
        if err := await self._enter("submit_comment", viewer_id, entity_id, text):
            return err
        c = Comment(
            id=str(next(self._ids)),
            entity_id=entity_id,
            author_id=viewer_id,
            author_display_name="Server Name",
            text=text.strip(),
            created_at="2099-01-01T00:00:00+00:00",
        )
        self.comments.setdefault(entity_id, []).insert(0, c)
        return Ok(c)

    async def delete_comment(self, comment_id, viewer_id):
        if err := await self._enter("delete_comment", comment_id, viewer_id):
            return err
        for entity_id, rows in self.comments.items():
            for c in rows:
                if c.id == comment_id:
                    if c.author_id != viewer_id:
                        return Err(ErrorKind.AUTHORIZATION, "not yours")
                    rows.remove(c)
                    return Ok(None)
        return Err(ErrorKind.NOT_FOUND, "gone")

    async def set_featured(self, entity_id):
        if err := await self._enter("set_featured", entity_id):
            return err
        if self.exclusive:
            for k in self.featured:
                self.featured[k] = False
        self.featured[entity_id] = True
        return Ok(None)

    async def unset_featured(self, entity_id):
        if err := await self._enter("unset_featured", entity_id):
            return err
        self.featured[entity_id] = False
        return Ok(None)

    # reads
    async def fetch_like_state(self, viewer_id, entity_id):
        if err := await self._enter("fetch_like_state", viewer_id, entity_id):
            return err
        fans = self.likes.get(entity_id, set())
        return Ok({"liked": viewer_id in fans, "count": len(fans)})

    async def fetch_comments(self, entity_id):
        if err := await self._enter("fetch_comments", entity_id):
            return err
        return Ok(tuple(self.comments.get(entity_id, ())))

    async def fetch_featured(self):
        if err := await self._enter("fetch_featured"):
            return err
        return Ok(dict(self.featured))


@pytest.fixture
def collaborator() -> FakeCollaborator:
    return FakeCollaborator()
