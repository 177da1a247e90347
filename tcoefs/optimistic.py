"""
Optimistic state for the article widgets (likes, comments, featured flag).

The controller applies a predicted change the moment the reader acts,
hands the real work to a ``MutationClient`` and, once that resolves,
either keeps the prediction, patches it, re-fetches, or rolls back.

Everything runs on one asyncio loop.  The only suspension points are the
awaits on the client, and at most one mutation per (entity, kind) pair is
in flight at a time; a repeat action while one is pending is ignored.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from .mutations import (
    TEMP_ID_PREFIX,
    Comment,
    Err,
    ErrorKind,
    MutationClient,
    Result,
    Viewer,
)

log = logging.getLogger(__name__)


class MutationKind(str, Enum):
    LIKE = "like"
    COMMENT = "comment"
    FEATURE = "feature"


# ── state ─────────────────────────────────────────────────────────────
@dataclass(frozen=True)
class LikeState:
    entity_id: str
    viewer_has_liked: bool = False
    like_count: int = 0


# ── actions ───────────────────────────────────────────────────────────
@dataclass(frozen=True)
class ToggleLike:
    entity_id: str


@dataclass(frozen=True)
class SubmitComment:
    entity_id: str
    viewer: Viewer
    text: str


@dataclass(frozen=True)
class SetFeatured:
    entity_id: str
    featured: bool


@dataclass(frozen=True)
class PendingMutation:
    kind: MutationKind
    entity_id: str
    predicted_state: Any
    rollback_state: Any
    temp_id: str | None = None


@dataclass(frozen=True)
class Reconciliation:
    """Outcome of ``reconcile``: the state to show and what to do next."""

    state: Any
    refetch: bool = False
    error: Err | None = None


@dataclass(frozen=True)
class Notice:
    kind: ErrorKind
    message: str
    entity_id: str
    mutation: MutationKind


@dataclass(frozen=True)
class InvariantViolation:
    """More than one article came back featured. Logged, never repaired here."""

    featured_ids: tuple[str, ...]

    def __str__(self) -> str:
        ids = ", ".join(self.featured_ids)
        return f"{len(self.featured_ids)} articles are featured at once: {ids}"


NOTICE_MESSAGES = {
    ErrorKind.AUTHORIZATION: "You are not permitted to do that.",
    ErrorKind.NOT_FOUND: "That item no longer exists.",
    ErrorKind.TRANSIENT: "Something went wrong – please try again.",
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ── pure core ─────────────────────────────────────────────────────────
def apply_predicted(current, action) -> tuple[Any, PendingMutation]:
    """Return ``(predicted_state, pending)`` for *action* applied to *current*."""
    if isinstance(action, ToggleLike):
        liked = not current.viewer_has_liked
        count = current.like_count + (1 if liked else -1)
        predicted = replace(current, viewer_has_liked=liked, like_count=max(count, 0))
        return predicted, PendingMutation(
            MutationKind.LIKE, action.entity_id, predicted, current
        )

    if isinstance(action, SubmitComment):
        temp = Comment(
            id=f"{TEMP_ID_PREFIX}{uuid.uuid4().hex}",
            entity_id=action.entity_id,
            author_id=action.viewer.id,
            author_display_name=action.viewer.display_name or "Anonymous",
            text=action.text.strip(),
            created_at=utc_now().isoformat(timespec="seconds"),
        )
        predicted = (temp, *current)
        return predicted, PendingMutation(
            MutationKind.COMMENT, action.entity_id, predicted, tuple(current), temp.id
        )

    if isinstance(action, SetFeatured):
        # Only the target moves; whichever article loses the flag as a
        # side effect is learned from the re-fetch.
        predicted = {**current, action.entity_id: action.featured}
        return predicted, PendingMutation(
            MutationKind.FEATURE, action.entity_id, predicted, dict(current)
        )

    raise TypeError(f"unsupported action: {action!r}")


class ReconciliationPolicy:
    """How much to trust a successful prediction, per mutation kind."""

    def on_success(
        self, pending: PendingMutation, value, *, refresh_requested: bool = False
    ) -> Reconciliation:
        if pending.kind is MutationKind.LIKE:
            return self._like(pending, value, refresh_requested)
        if pending.kind is MutationKind.COMMENT:
            return self._comment(pending, value)
        if pending.kind is MutationKind.FEATURE:
            # Exclusivity lives on the server; only a fresh read can tell
            # which other article lost the flag.
            return Reconciliation(pending.predicted_state, refetch=True)
        raise ValueError(f"unknown mutation kind: {pending.kind!r}")

    def _like(self, pending, value, refresh_requested) -> Reconciliation:
        diverged = (
            isinstance(value, dict)
            and "liked" in value
            and bool(value["liked"]) != pending.predicted_state.viewer_has_liked
        )
        if diverged:
            log.info("like state for %s diverged from prediction", pending.entity_id)
        return Reconciliation(
            pending.predicted_state, refetch=refresh_requested or diverged
        )

    def _comment(self, pending, value) -> Reconciliation:
        if not isinstance(value, Comment):
            return Reconciliation(pending.predicted_state)
        comments = list(pending.predicted_state)
        for idx, c in enumerate(comments):
            if c.id == pending.temp_id:
                comments[idx] = value
                break
        else:
            comments.insert(0, value)
        return Reconciliation(tuple(comments))


DEFAULT_POLICY = ReconciliationPolicy()


def reconcile(
    pending: PendingMutation,
    result: Result,
    *,
    policy: ReconciliationPolicy | None = None,
    refresh_requested: bool = False,
) -> Reconciliation:
    if not result.ok:
        return Reconciliation(pending.rollback_state, error=result)
    return (policy or DEFAULT_POLICY).on_success(
        pending, result.value, refresh_requested=refresh_requested
    )


def featured_violation(flags: dict[str, bool]) -> InvariantViolation | None:
    on = tuple(sorted(k for k, v in flags.items() if v))
    return InvariantViolation(on) if len(on) > 1 else None


# ── controller ────────────────────────────────────────────────────────
class OptimisticController:
    """
    Owns one view's belief about likes, comments and featured flags.

    Each public coroutine returns the client's ``Result`` (``Err`` with
    ``ErrorKind.VALIDATION`` when rejected locally), or ``None`` when the
    action was ignored because the same kind is already in flight for
    that entity.
    """

    def __init__(
        self,
        client: MutationClient,
        viewer: Viewer | None = None,
        *,
        policy: ReconciliationPolicy | None = None,
    ):
        self.client = client
        self.viewer = viewer
        self.policy = policy or DEFAULT_POLICY

        self.likes: dict[str, LikeState] = {}
        self.comments: dict[str, tuple[Comment, ...]] = {}
        self.featured: dict[str, bool] = {}
        self.notices: list[Notice] = []
        self.violations: list[InvariantViolation] = []
        self.closed = False

        self._inflight: dict[tuple[str, MutationKind], PendingMutation] = {}
        self._refresh_pending: set[str] = set()

    # ── notices ──────────────────────────────────────────────────────
    def has_error(self, entity_id: str, mutation: MutationKind) -> bool:
        return any(
            n.entity_id == entity_id and n.mutation is mutation for n in self.notices
        )

    def dismiss(self, notice: Notice) -> None:
        if notice in self.notices:
            self.notices.remove(notice)

    def close(self) -> None:
        """The view is gone; results that arrive later are dropped."""
        self.closed = True

    def is_pending(self, entity_id: str, mutation: MutationKind) -> bool:
        return (entity_id, mutation) in self._inflight

    def _notify(self, err: Err, entity_id: str, mutation: MutationKind) -> Notice:
        if err.kind is ErrorKind.VALIDATION:
            message = err.message
        else:
            message = NOTICE_MESSAGES.get(err.kind, err.message)
        notice = Notice(err.kind, message, entity_id, mutation)
        self.notices.append(notice)
        return notice

    def _reject(self, entity_id, mutation, message) -> Err:
        err = Err(ErrorKind.VALIDATION, message)
        self._notify(err, entity_id, mutation)
        return err

    def _dropped(self, what: str, entity_id: str) -> bool:
        if self.closed:
            log.debug("view closed, dropping late %s result for %s", what, entity_id)
        return self.closed

    # ── likes ────────────────────────────────────────────────────────
    async def load_likes(self, entity_id: str) -> Result | None:
        return await self.refresh_likes(entity_id)

    async def refresh_likes(self, entity_id: str) -> Result | None:
        """Re-read the authoritative count, deferred while a toggle is in flight."""
        if self.is_pending(entity_id, MutationKind.LIKE):
            self._refresh_pending.add(entity_id)
            return None
        viewer_id = self.viewer.id if self.viewer else None
        result = await self.client.fetch_like_state(viewer_id, entity_id)
        if self._dropped("like fetch", entity_id):
            return result
        if result.ok:
            self.likes[entity_id] = LikeState(
                entity_id,
                viewer_has_liked=bool(result.value["liked"]) and viewer_id is not None,
                like_count=max(int(result.value["count"]), 0),
            )
        else:
            self._notify(result, entity_id, MutationKind.LIKE)
        return result

    async def toggle_like(self, entity_id: str) -> Result | None:
        if self.viewer is None:
            return self._reject(entity_id, MutationKind.LIKE, "Sign in to like articles.")
        key = (entity_id, MutationKind.LIKE)
        if key in self._inflight:
            log.debug("like on %s already in flight, ignoring", entity_id)
            return None

        current = self.likes.get(entity_id, LikeState(entity_id))
        self.likes[entity_id], pending = apply_predicted(current, ToggleLike(entity_id))
        self._inflight[key] = pending
        try:
            result = await self.client.toggle_like(self.viewer.id, entity_id)
        finally:
            del self._inflight[key]
        if self._dropped("like", entity_id):
            return result

        refresh = entity_id in self._refresh_pending
        self._refresh_pending.discard(entity_id)
        outcome = reconcile(
            pending, result, policy=self.policy, refresh_requested=refresh
        )
        self.likes[entity_id] = outcome.state
        if outcome.error is not None:
            self._notify(outcome.error, entity_id, MutationKind.LIKE)
            if refresh:
                # the rollback snapshot may predate the first load
                await self.refresh_likes(entity_id)
        elif outcome.refetch:
            await self.refresh_likes(entity_id)
        return result

    # ── comments ─────────────────────────────────────────────────────
    async def load_comments(self, entity_id: str) -> Result | None:
        if self.is_pending(entity_id, MutationKind.COMMENT):
            return None
        result = await self.client.fetch_comments(entity_id)
        if self._dropped("comment fetch", entity_id):
            return result
        if result.ok:
            self.comments[entity_id] = tuple(
                sorted(result.value, key=lambda c: c.created_at, reverse=True)
            )
        else:
            self._notify(result, entity_id, MutationKind.COMMENT)
        return result

    async def submit_comment(self, entity_id: str, text: str) -> Result | None:
        if self.viewer is None:
            return self._reject(
                entity_id, MutationKind.COMMENT, "Sign in to leave a comment."
            )
        if not (text or "").strip():
            return self._reject(
                entity_id, MutationKind.COMMENT, "Comment cannot be empty."
            )
        key = (entity_id, MutationKind.COMMENT)
        if key in self._inflight:
            log.debug("comment on %s already in flight, ignoring", entity_id)
            return None

        current = self.comments.get(entity_id, ())
        action = SubmitComment(entity_id, self.viewer, text)
        self.comments[entity_id], pending = apply_predicted(current, action)
        self._inflight[key] = pending
        try:
            result = await self.client.submit_comment(
                self.viewer.id, entity_id, text.strip()
            )
        finally:
            del self._inflight[key]
        if self._dropped("comment", entity_id):
            return result

        outcome = reconcile(pending, result, policy=self.policy)
        self.comments[entity_id] = outcome.state
        if outcome.error is not None:
            self._notify(outcome.error, entity_id, MutationKind.COMMENT)
        return result

    async def delete_comment(self, entity_id: str, comment_id: str) -> Result | None:
        """Remove a comment once the server confirms; nothing is predicted."""
        if self.viewer is None:
            return self._reject(
                entity_id, MutationKind.COMMENT, "Sign in to delete comments."
            )
        # Shares the article's COMMENT slot so a submit's rollback snapshot
        # can never resurrect a comment deleted meanwhile.
        key = (entity_id, MutationKind.COMMENT)
        if key in self._inflight:
            log.debug("comment change on %s already in flight, ignoring", entity_id)
            return None

        current = self.comments.get(entity_id, ())
        self._inflight[key] = PendingMutation(
            MutationKind.COMMENT, entity_id, current, current
        )
        try:
            result = await self.client.delete_comment(comment_id, self.viewer.id)
        finally:
            del self._inflight[key]
        if self._dropped("comment delete", entity_id):
            return result

        if result.ok:
            self.comments[entity_id] = tuple(
                c for c in self.comments.get(entity_id, ()) if c.id != comment_id
            )
        else:
            self._notify(result, entity_id, MutationKind.COMMENT)
        return result

    # ── featured flag ────────────────────────────────────────────────
    async def load_featured(self) -> Result:
        result = await self.client.fetch_featured()
        if self._dropped("featured fetch", "*"):
            return result
        if result.ok:
            self.featured = dict(result.value)
            violation = featured_violation(self.featured)
            if violation is not None:
                log.warning("invariant violation: %s", violation)
                self.violations.append(violation)
        return result

    async def set_featured(self, entity_id: str) -> Result | None:
        return await self._feature(entity_id, True)

    async def unset_featured(self, entity_id: str) -> Result | None:
        return await self._feature(entity_id, False)

    async def _feature(self, entity_id: str, featured: bool) -> Result | None:
        key = (entity_id, MutationKind.FEATURE)
        if key in self._inflight:
            log.debug("feature change on %s already in flight, ignoring", entity_id)
            return None

        self.featured, pending = apply_predicted(
            self.featured, SetFeatured(entity_id, featured)
        )
        self._inflight[key] = pending
        try:
            if featured:
                result = await self.client.set_featured(entity_id)
            else:
                result = await self.client.unset_featured(entity_id)
        finally:
            del self._inflight[key]
        if self._dropped("feature", entity_id):
            return result

        outcome = reconcile(pending, result, policy=self.policy)
        if outcome.error is not None:
            # Other articles may have their own toggles in flight, so only
            # the target's slot goes back to its snapshot.
            previous = outcome.state.get(entity_id)
            if previous is None:
                self.featured.pop(entity_id, None)
            else:
                self.featured[entity_id] = previous
            self._notify(outcome.error, entity_id, MutationKind.FEATURE)
            return result

        if outcome.refetch:
            fetched = await self.load_featured()
            if not fetched.ok:
                log.warning("featured re-fetch failed: %s", fetched.message)
                self._notify(fetched, entity_id, MutationKind.FEATURE)
        return result
