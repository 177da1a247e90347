"""
tests/test_likes_comments.py – reader interactions through the JSON API
and the plain HTML forms.
"""
from __future__ import annotations

from conftest import CSRF, login_as

from tcoefs.blog import get_db, related_articles


def _post(client, path, **kw):
    return client.post(path, headers={"X-CSRFToken": CSRF}, **kw)


# ───────────────────────── likes ──────────────────────────────────────
def test_like_requires_sign_in(client, make_article):
    aid = make_article()
    rv = client.post(f"/api/articles/{aid}/like")
    assert rv.status_code == 401
    assert "signed in" in rv.get_json()["error"]


def test_like_toggle_round_trip(client, make_article, make_user):
    aid = make_article()
    login_as(client, make_user())

    rv = _post(client, f"/api/articles/{aid}/like")
    assert rv.status_code == 200
    assert rv.get_json() == {"liked": True, "count": 1}
    assert client.get(f"/api/articles/{aid}/likes").get_json() == {
        "count": 1,
        "liked": True,
    }

    rv = _post(client, f"/api/articles/{aid}/like")
    assert rv.get_json() == {"liked": False, "count": 0}


def test_like_counts_are_per_reader(client, make_article, make_user):
    aid = make_article()
    for _ in range(3):
        login_as(client, make_user())
        _post(client, f"/api/articles/{aid}/like")

    # anonymous readers see the count but never "liked"
    with client.session_transaction() as sess:
        sess.clear()
    assert client.get(f"/api/articles/{aid}/likes").get_json() == {
        "count": 3,
        "liked": False,
    }


def test_like_unknown_article(client, make_user):
    login_as(client, make_user())
    rv = _post(client, "/api/articles/news424242/like")
    assert rv.status_code == 404


def test_write_without_csrf_token_is_refused(client, make_article, make_user):
    aid = make_article()
    login_as(client, make_user())
    rv = client.post(f"/api/articles/{aid}/like")
    assert rv.status_code == 403
    assert rv.get_json() == {"error": "Forbidden"}


def test_html_like_button(client, make_article, make_user):
    aid = make_article()
    login_as(client, make_user())
    rv = client.post(f"/news/{aid}/like", data={"csrf": CSRF})
    assert rv.status_code == 302
    page = client.get(f"/news/{aid}").data
    assert b"Unlike post" in page


# ───────────────────────── comments ───────────────────────────────────
def test_comment_create_and_list_newest_first(client, make_article, make_user):
    aid = make_article()
    login_as(client, make_user(name="Ada"))

    first = _post(client, f"/api/articles/{aid}/comments", json={"text": "  first  "})
    assert first.status_code == 201
    body = first.get_json()
    assert body["text"] == "first"
    assert body["user_name"] == "Ada"
    assert body["article_id"] == aid

    _post(client, f"/api/articles/{aid}/comments", json={"text": "second"})

    listed = client.get(f"/api/articles/{aid}/comments").get_json()["comments"]
    assert [c["text"] for c in listed] == ["second", "first"]


def test_comment_validation(client, make_article, make_user):
    aid = make_article()
    assert client.post(
        f"/api/articles/{aid}/comments", json={"text": "hi"}
    ).status_code == 401

    login_as(client, make_user())
    rv = _post(client, f"/api/articles/{aid}/comments", json={"text": "   "})
    assert rv.status_code == 400
    assert rv.get_json()["error"] == "Comment cannot be empty."

    assert _post(
        client, "/api/articles/news424242/comments", json={"text": "x"}
    ).status_code == 404


def test_comment_display_name_falls_back_to_email(client, make_article, make_user):
    aid = make_article()
    reader = make_user()
    login_as(client, reader)
    body = _post(client, f"/api/articles/{aid}/comments", json={"text": "hey"}).get_json()
    assert body["user_name"] == reader["email"].split("@")[0]


def test_only_the_author_may_delete(client, make_article, make_user):
    aid = make_article()
    author, other = make_user(), make_user()

    login_as(client, author)
    cid = _post(client, f"/api/articles/{aid}/comments", json={"text": "mine"}).get_json()["id"]

    login_as(client, other)
    rv = client.delete(f"/api/comments/{cid}", headers={"X-CSRFToken": CSRF})
    assert rv.status_code == 403

    login_as(client, author)
    rv = client.delete(f"/api/comments/{cid}", headers={"X-CSRFToken": CSRF})
    assert rv.status_code == 204
    assert get_db().execute("SELECT 1 FROM comment WHERE id=?", (cid,)).fetchone() is None

    rv = client.delete(f"/api/comments/{cid}", headers={"X-CSRFToken": CSRF})
    assert rv.status_code == 404


def test_delete_requires_sign_in(client):
    assert client.delete("/api/comments/1").status_code == 401


def test_html_comment_form(client, make_article, make_user):
    aid = make_article()
    login_as(client, make_user())
    rv = client.post(
        f"/news/{aid}/comments",
        data={"csrf": CSRF, "text": "Great read!"},
        follow_redirects=True,
    )
    assert rv.status_code == 200
    assert b"Great read!" in rv.data
    assert b"Comments (1)" in rv.data


def test_html_comment_form_anonymous_redirects(client, make_article):
    aid = make_article()
    rv = client.post(f"/news/{aid}/comments", data={"text": "hi"})
    assert rv.status_code == 302
    assert "/login" in rv.headers["Location"]


def test_html_comment_delete(client, make_article, make_user):
    aid = make_article()
    login_as(client, make_user())
    cid = _post(client, f"/api/articles/{aid}/comments", json={"text": "oops"}).get_json()["id"]
    rv = client.post(f"/news/{aid}/comments/{cid}/delete", data={"csrf": CSRF})
    assert rv.status_code == 302
    assert b"oops" not in client.get(f"/news/{aid}").data


def test_article_page_renders_markdown(client, make_article):
    aid = make_article(title="Lab opening", content="Some **bold** news.")
    rv = client.get(f"/news/{aid}")
    assert rv.status_code == 200
    assert b"Lab opening" in rv.data
    assert b"<strong>bold</strong>" in rv.data
    assert b"Sign in</a> to leave a comment" in rv.data


def test_article_page_lists_up_to_four_related_articles(client, make_article):
    others = [
        make_article(title=f"Neighbour {i}", published_date=f"2099-06-0{i + 1}")
        for i in range(5)
    ]
    aid = make_article(title="Centre piece", published_date="2099-06-09")

    related = related_articles(aid, db=get_db())
    assert len(related) == 4
    assert aid not in {r["id"] for r in related}
    assert related[0]["id"] == others[-1]                # newest first

    page = client.get(f"/news/{aid}").data
    assert b"Related articles" in page
    assert b"Neighbour 4" in page
    assert b"Neighbour 0" not in page


def test_article_page_has_share_permalink(client, make_article):
    aid = make_article()
    page = client.get(f"/news/{aid}").data
    assert f'value="http://localhost/news/{aid}"'.encode() in page
