"""
tests/test_mutations.py – HttpMutationClient against a stubbed session.
"""
from __future__ import annotations

import asyncio
import json as _json

import pytest
import requests

from tcoefs.mutations import (
    Comment,
    ErrorKind,
    HttpMutationClient,
    Viewer,
    kind_for_status,
)


# ───────────────────────── helpers ────────────────────────────────────
class _FakeResp:
    def __init__(self, status=200, payload=None, *, body=None, reason="OK"):
        self.status_code = status
        self.reason = reason
        if body is None:
            body = b"" if payload is None else _json.dumps(payload).encode()
        self.content = body

    def json(self):
        return _json.loads(self.content)

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code}")


class _FakeSession:
    """Routes ``(METHOD, path)`` to canned responses and records calls."""

    def __init__(self, routes):
        self.routes = routes
        self.calls = []

    def request(self, method, url, json=None, headers=None, timeout=None):
        path = url.split("http://site", 1)[1]
        self.calls.append((method, path, json, headers or {}))
        resp = self.routes[(method, path)]
        if isinstance(resp, Exception):
            raise resp
        return resp

    def get(self, url, timeout=None):
        return self.request("GET", url, timeout=timeout)


def _client(routes) -> tuple[HttpMutationClient, _FakeSession]:
    routes.setdefault(("GET", "/api/session"), _FakeResp(200, {"viewer": None, "csrf": "tok"}))
    sess = _FakeSession(routes)
    return HttpMutationClient("http://site/", session=sess), sess


# ───────────────────────── tests ──────────────────────────────────────
@pytest.mark.parametrize(
    "status, kind",
    [
        (400, ErrorKind.VALIDATION),
        (422, ErrorKind.VALIDATION),
        (401, ErrorKind.AUTHORIZATION),
        (403, ErrorKind.AUTHORIZATION),
        (404, ErrorKind.NOT_FOUND),
        (409, ErrorKind.TRANSIENT),
        (500, ErrorKind.TRANSIENT),
        (503, ErrorKind.TRANSIENT),
    ],
)
def test_status_mapping(status, kind):
    assert kind_for_status(status) is kind


def test_toggle_like_without_viewer_never_hits_the_network():
    client, sess = _client({})
    result = asyncio.run(client.toggle_like(None, "news1"))
    assert not result.ok
    assert result.kind is ErrorKind.VALIDATION
    assert sess.calls == []


def test_toggle_like_sends_csrf_header():
    client, sess = _client(
        {("POST", "/api/articles/news1/like"): _FakeResp(200, {"liked": True, "count": 4})}
    )
    result = asyncio.run(client.toggle_like("7", "news1"))
    assert result.ok
    assert result.value == {"liked": True}
    method, path, _, headers = sess.calls[-1]
    assert (method, path) == ("POST", "/api/articles/news1/like")
    assert headers["X-CSRFToken"] == "tok"


def test_submit_comment_parses_record():
    record = {
        "id": 12,
        "article_id": "news1",
        "user_id": 7,
        "user_name": "Ada",
        "text": "hello",
        "created_at": "2024-01-01T00:00:00+00:00",
    }
    client, sess = _client(
        {("POST", "/api/articles/news1/comments"): _FakeResp(201, record)}
    )
    result = asyncio.run(client.submit_comment("7", "news1", "  hello "))
    assert result.ok
    assert result.value == Comment("12", "news1", "7", "Ada", "hello", record["created_at"])
    assert sess.calls[-1][2] == {"text": "hello"}


def test_submit_empty_comment_is_validation_error():
    client, sess = _client({})
    result = asyncio.run(client.submit_comment("7", "news1", "   "))
    assert result.kind is ErrorKind.VALIDATION
    assert sess.calls == []


def test_delete_comment_distinguishes_authorization_from_transient():
    client, _ = _client(
        {
            ("DELETE", "/api/comments/1"): _FakeResp(403, {"error": "not yours"}),
            ("DELETE", "/api/comments/2"): _FakeResp(502, body=b"<html>", reason="Bad Gateway"),
            ("DELETE", "/api/comments/3"): _FakeResp(204),
        }
    )
    forbidden = asyncio.run(client.delete_comment("1", "7"))
    assert (forbidden.kind, forbidden.message) == (ErrorKind.AUTHORIZATION, "not yours")

    flaky = asyncio.run(client.delete_comment("2", "7"))
    assert (flaky.kind, flaky.message) == (ErrorKind.TRANSIENT, "Bad Gateway")

    done = asyncio.run(client.delete_comment("3", "7"))
    assert done.ok and done.value is None


def test_network_error_is_transient():
    client, _ = _client(
        {("POST", "/api/articles/news1/feature"): requests.ConnectionError("down")}
    )
    result = asyncio.run(client.set_featured("news1"))
    assert result.kind is ErrorKind.TRANSIENT


@pytest.mark.parametrize("payload", [{"unexpected": 1}, [], "text", 3])
def test_malformed_body_is_transient(payload):
    client, _ = _client(
        {
            ("GET", "/api/articles/news1/likes"): _FakeResp(200, payload),
            ("GET", "/api/articles"): _FakeResp(200, payload),
        }
    )
    for call in (client.fetch_like_state("7", "news1"), client.fetch_featured()):
        result = asyncio.run(call)
        assert result.kind is ErrorKind.TRANSIENT


@pytest.mark.parametrize("payload", [[], {"viewer": "nobody"}])
def test_malformed_session_is_transient(payload):
    client, _ = _client({("GET", "/api/session"): _FakeResp(200, payload)})
    assert asyncio.run(client.fetch_viewer()).kind is ErrorKind.TRANSIENT


def test_fetches():
    client, _ = _client(
        {
            ("GET", "/api/articles/news1/likes"): _FakeResp(200, {"count": 3, "liked": True}),
            ("GET", "/api/articles"): _FakeResp(
                200,
                {"articles": [{"id": "news1", "featured": True}, {"id": "news2", "featured": False}]},
            ),
            ("GET", "/api/articles/news1/comments"): _FakeResp(200, {"comments": []}),
        }
    )
    assert asyncio.run(client.fetch_like_state("7", "news1")).value == {"liked": True, "count": 3}
    # anonymous readers never "like"
    assert asyncio.run(client.fetch_like_state(None, "news1")).value["liked"] is False
    assert asyncio.run(client.fetch_featured()).value == {"news1": True, "news2": False}
    assert asyncio.run(client.fetch_comments("news1")).value == ()


def test_fetch_viewer():
    client, _ = _client(
        {
            ("GET", "/api/session"): _FakeResp(
                200,
                {"viewer": {"id": 7, "display_name": "Ada", "email": "a@x", "is_admin": True},
                 "csrf": "tok"},
            )
        }
    )
    assert asyncio.run(client.fetch_viewer()).value == Viewer("7", "Ada", "a@x", True)


def test_csrf_token_is_picked_up_after_sign_in():
    client, sess = _client(
        {
            ("GET", "/api/session"): _FakeResp(200, {"viewer": None, "csrf": ""}),
            ("POST", "/api/articles/news1/like"): _FakeResp(401, {"error": "Must be signed in"}),
        }
    )
    assert asyncio.run(client.toggle_like("7", "news1")).kind is ErrorKind.AUTHORIZATION
    assert "X-CSRFToken" not in sess.calls[-1][3]

    # the reader signs in elsewhere; the session now carries a token
    sess.routes[("GET", "/api/session")] = _FakeResp(200, {"viewer": None, "csrf": "fresh"})
    sess.routes[("POST", "/api/articles/news1/like")] = _FakeResp(200, {"liked": True})
    assert asyncio.run(client.toggle_like("7", "news1")).ok
    assert sess.calls[-1][3]["X-CSRFToken"] == "fresh"


def test_rejected_csrf_token_is_fetched_again():
    client, sess = _client(
        {("POST", "/api/articles/news1/like"): _FakeResp(403, {"error": "Forbidden"})}
    )
    asyncio.run(client.toggle_like("7", "news1"))
    sess.routes[("GET", "/api/session")] = _FakeResp(200, {"viewer": None, "csrf": "rotated"})
    asyncio.run(client.toggle_like("7", "news1"))
    assert sess.calls[-1][3]["X-CSRFToken"] == "rotated"


def test_concurrent_calls_take_turns_on_the_session():
    import threading
    import time

    class _SlowSession(_FakeSession):
        def __init__(self, routes):
            super().__init__(routes)
            self.busy = threading.Lock()
            self.overlapped = False

        def request(self, *args, **kwargs):
            if not self.busy.acquire(blocking=False):
                self.overlapped = True
                return super().request(*args, **kwargs)
            try:
                time.sleep(0.01)
                return super().request(*args, **kwargs)
            finally:
                self.busy.release()

    sess = _SlowSession(
        {
            ("GET", "/api/session"): _FakeResp(200, {"viewer": None, "csrf": "tok"}),
            ("GET", "/api/articles"): _FakeResp(200, {"articles": [{"id": "news1", "featured": True}]}),
        }
    )
    client = HttpMutationClient("http://site/", session=sess)

    async def scenario():
        return await asyncio.gather(*(client.fetch_featured() for _ in range(4)))

    results = asyncio.run(scenario())
    assert all(r.ok for r in results)
    assert not sess.overlapped
