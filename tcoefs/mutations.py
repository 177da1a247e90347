"""
Mutation client: the only piece of the client library that talks to the
collaborator (the site's JSON API).

Every call resolves to an ``Ok`` or an ``Err`` and nothing raises, so the
optimistic controller can branch on ``result.ok`` without try/except.
"""
from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Generic, Protocol, TypeVar

import requests

log = logging.getLogger(__name__)

T = TypeVar("T")

SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}
DEFAULT_TIMEOUT = 10


class ErrorKind(str, Enum):
    VALIDATION = "validation"  # local, never reached the network
    AUTHORIZATION = "authorization"
    NOT_FOUND = "not_found"
    TRANSIENT = "transient"  # network / server trouble, retryable


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T = None

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    kind: ErrorKind
    message: str = ""

    @property
    def ok(self) -> bool:
        return False


Result = Ok | Err


@dataclass(frozen=True)
class Viewer:
    """The signed-in reader, passed explicitly instead of living in a global."""

    id: str
    display_name: str = ""
    email: str = ""
    is_admin: bool = False

    @classmethod
    def from_json(cls, data: dict) -> "Viewer":
        return cls(
            id=str(data["id"]),
            display_name=data.get("display_name") or "",
            email=data.get("email") or "",
            is_admin=bool(data.get("is_admin")),
        )


TEMP_ID_PREFIX = "tmp-"


@dataclass(frozen=True)
class Comment:
    id: str
    entity_id: str
    author_id: str
    author_display_name: str
    text: str
    created_at: str  # ISO-8601, UTC

    @property
    def is_temporary(self) -> bool:
        return self.id.startswith(TEMP_ID_PREFIX)

    @classmethod
    def from_json(cls, data: dict) -> "Comment":
        return cls(
            id=str(data["id"]),
            entity_id=str(data["article_id"]),
            author_id=str(data["user_id"]),
            author_display_name=data.get("user_name") or "Anonymous",
            text=data["text"],
            created_at=data["created_at"],
        )


def kind_for_status(status: int) -> ErrorKind:
    if status in (400, 422):
        return ErrorKind.VALIDATION
    if status in (401, 403):
        return ErrorKind.AUTHORIZATION
    if status == 404:
        return ErrorKind.NOT_FOUND
    return ErrorKind.TRANSIENT


class MutationClient(Protocol):
    """What the optimistic controller needs from a collaborator."""

    async def toggle_like(self, viewer_id: str | None, entity_id: str) -> Result: ...

    async def submit_comment(
        self, viewer_id: str | None, entity_id: str, text: str
    ) -> Result: ...

    async def delete_comment(self, comment_id: str, viewer_id: str | None) -> Result: ...

    async def set_featured(self, entity_id: str) -> Result: ...

    async def unset_featured(self, entity_id: str) -> Result: ...

    async def fetch_like_state(self, viewer_id: str | None, entity_id: str) -> Result: ...

    async def fetch_comments(self, entity_id: str) -> Result: ...

    async def fetch_featured(self) -> Result: ...


class HttpMutationClient:
    """
    ``MutationClient`` backed by the site's ``/api`` endpoints.

    *session* is a ``requests.Session`` that already carries the login
    cookie (see ``/login``). Blocking requests run in a worker thread so
    the caller's event loop keeps going while they are in flight. A
    ``Session`` is not thread-safe, so requests through one client are
    serialised by a lock.
    """

    def __init__(
        self,
        base_url: str,
        *,
        session: requests.Session | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout
        self._csrf: str | None = None
        self._lock = threading.Lock()

    # ── mutations ────────────────────────────────────────────────────
    async def toggle_like(self, viewer_id, entity_id):
        if not viewer_id:
            return Err(ErrorKind.VALIDATION, "Sign in to like articles.")
        return await self._call(
            "POST",
            f"/api/articles/{entity_id}/like",
            parse=lambda d: {"liked": bool(d["liked"])},
        )

    async def submit_comment(self, viewer_id, entity_id, text):
        if not viewer_id:
            return Err(ErrorKind.VALIDATION, "Sign in to leave a comment.")
        text = (text or "").strip()
        if not text:
            return Err(ErrorKind.VALIDATION, "Comment cannot be empty.")
        return await self._call(
            "POST",
            f"/api/articles/{entity_id}/comments",
            json={"text": text},
            parse=Comment.from_json,
        )

    async def delete_comment(self, comment_id, viewer_id):
        if not viewer_id:
            return Err(ErrorKind.VALIDATION, "Sign in to delete comments.")
        return await self._call("DELETE", f"/api/comments/{comment_id}")

    async def set_featured(self, entity_id):
        return await self._call("POST", f"/api/articles/{entity_id}/feature")

    async def unset_featured(self, entity_id):
        return await self._call("DELETE", f"/api/articles/{entity_id}/feature")

    # ── authoritative reads ──────────────────────────────────────────
    async def fetch_like_state(self, viewer_id, entity_id):
        return await self._call(
            "GET",
            f"/api/articles/{entity_id}/likes",
            parse=lambda d: {
                "liked": bool(d.get("liked")) if viewer_id else False,
                "count": int(d["count"]),
            },
        )

    async def fetch_comments(self, entity_id):
        return await self._call(
            "GET",
            f"/api/articles/{entity_id}/comments",
            parse=lambda d: tuple(Comment.from_json(c) for c in d["comments"]),
        )

    async def fetch_featured(self):
        return await self._call(
            "GET",
            "/api/articles",
            parse=lambda d: {str(a["id"]): bool(a["featured"]) for a in d["articles"]},
        )

    async def fetch_viewer(self):
        return await self._call(
            "GET",
            "/api/session",
            parse=lambda d: Viewer.from_json(d["viewer"]) if d.get("viewer") else None,
        )

    # ── plumbing ─────────────────────────────────────────────────────
    async def _call(
        self,
        method: str,
        path: str,
        *,
        json: dict | None = None,
        parse: Callable[[Any], Any] | None = None,
    ) -> Result:
        result = await asyncio.to_thread(self._request, method, path, json)
        if not result.ok or parse is None:
            return result
        try:
            return Ok(parse(result.value))
        except (AttributeError, KeyError, TypeError, ValueError):
            log.warning("Malformed response from %s %s: %r", method, path, result.value)
            return Err(ErrorKind.TRANSIENT, "Unexpected response from server.")

    def _request(self, method: str, path: str, json: dict | None = None) -> Result:
        with self._lock:
            return self._send(method, path, json)

    def _send(self, method: str, path: str, json: dict | None) -> Result:
        headers = {}
        if method not in SAFE_METHODS:
            token = self._csrf_token()
            if token:
                headers["X-CSRFToken"] = token
        try:
            resp = self.session.request(
                method,
                self.base_url + path,
                json=json,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            log.warning("%s %s failed: %s", method, path, exc)
            return Err(ErrorKind.TRANSIENT, "Network error – please try again.")

        if resp.status_code == 403:
            self._csrf = None  # rotated on sign-in; fetch again next time
        if resp.status_code >= 400:
            kind = kind_for_status(resp.status_code)
            log.info("%s %s → %s (%s)", method, path, resp.status_code, kind.value)
            return Err(kind, _error_message(resp))
        if resp.status_code == 204 or not resp.content:
            return Ok(None)
        try:
            return Ok(resp.json())
        except ValueError:
            log.warning("%s %s returned non-JSON body", method, path)
            return Err(ErrorKind.TRANSIENT, "Unexpected response from server.")

    def _csrf_token(self) -> str | None:
        """Fetch the per-session CSRF token the site expects on writes.

        Only a non-empty token is cached: anonymous sessions have none yet.
        """
        if not self._csrf:
            try:
                resp = self.session.get(
                    self.base_url + "/api/session", timeout=self.timeout
                )
                resp.raise_for_status()
                self._csrf = resp.json().get("csrf") or None
            except (requests.RequestException, AttributeError, ValueError) as exc:
                log.warning("Could not fetch CSRF token: %s", exc)
                return None
        return self._csrf


def _error_message(resp) -> str:
    try:
        payload = resp.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict) and payload.get("error"):
        return str(payload["error"])
    return resp.reason or f"HTTP {resp.status_code}"
