"""
MIT License
Copyright (c) 2026 arpan404
See LICENSE file for full license text.

Profile watching and change notifications.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Mapping
from typing import Any

from .errors import StoreUnavailableError
from .freshness.cache import normalize_subject_key
from .store import BatchWrite, DocumentStore
from .types import Document

logger = logging.getLogger("ghpulse.watchers")

WATCHERS_COLLECTION = "profile-watchers"
NOTIFICATIONS_COLLECTION = "notifications"

SIGNIFICANT_FIELDS = ("followers", "public_repos", "bio")


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    return value if isinstance(value, int) else None


def has_significant_changes(before: Mapping[str, Any], after: Mapping[str, Any]) -> bool:
    """Whether follower count, repository count or bio changed."""
    return any(before.get(name) != after.get(name) for name in SIGNIFICANT_FIELDS)


def describe_change(username: str, before: Mapping[str, Any], after: Mapping[str, Any]) -> str:
    """Pick the notification message for one profile change."""
    followers_before = _as_int(before.get("followers"))
    followers_after = _as_int(after.get("followers"))
    if followers_before is not None and followers_after is not None:
        diff = followers_after - followers_before
        if diff > 0:
            return f"{username} gained {diff} new follower{'s' if diff > 1 else ''}"

    repos_before = _as_int(before.get("public_repos"))
    repos_after = _as_int(after.get("public_repos"))
    if repos_before is not None and repos_after is not None:
        diff = repos_after - repos_before
        if diff > 0:
            return f"{username} added {diff} new repositor{'ies' if diff > 1 else 'y'}"

    if before.get("bio") != after.get("bio"):
        return f"{username} updated their GitHub bio"
    return f"{username}'s GitHub profile has been updated"


class ProfileWatchNotifier:
    """
    Tracks which users watch which profiles and notifies them of changes.

    Watch documents are keyed ``{user_id}:{login}``; unwatching keeps the
    document with ``watching`` set to false.
    """

    def __init__(
        self,
        store: DocumentStore,
        *,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._store = store
        self._clock = clock or time.time

    @staticmethod
    def _watch_key(user_id: str, username: str) -> str:
        return f"{user_id}:{username}"

    @staticmethod
    def _validate_user(user_id: str) -> str:
        user = user_id.strip()
        if not user:
            raise ValueError("user_id must be a non-empty string")
        return user

    async def watch(self, user_id: str, username: str) -> Document:
        """Start watching ``username`` for ``user_id``."""
        user = self._validate_user(user_id)
        login = normalize_subject_key(username)
        doc: Document = {
            "userId": user,
            "username": login,
            "watching": True,
            "lastUpdated": self._clock(),
        }
        await self._store.set(WATCHERS_COLLECTION, self._watch_key(user, login), doc, merge=True)
        logger.info("User %s is now watching %s", user, login)
        return doc

    async def unwatch(self, user_id: str, username: str) -> None:
        user = self._validate_user(user_id)
        login = normalize_subject_key(username)
        await self._store.set(
            WATCHERS_COLLECTION,
            self._watch_key(user, login),
            {
                "userId": user,
                "username": login,
                "watching": False,
                "lastUpdated": self._clock(),
            },
            merge=True,
        )

    async def watchers(self, username: str) -> list[str]:
        """Return user ids actively watching ``username``, sorted."""
        login = normalize_subject_key(username)
        users = {
            doc["userId"]
            for _, doc in await self._store.list_documents(WATCHERS_COLLECTION)
            if doc.get("username") == login
            and doc.get("watching") is True
            and isinstance(doc.get("userId"), str)
        }
        return sorted(users)  # type: ignore[arg-type]

    async def notify_if_changed(
        self,
        username: str,
        before: Mapping[str, Any],
        after: Mapping[str, Any],
    ) -> int:
        """
        Notify every active watcher when a profile changed meaningfully.

        Notifications are written in one batch. Store failures are logged and
        reported as zero notifications sent.

        Returns:
            Number of notifications written.
        """
        login = normalize_subject_key(username)
        if not has_significant_changes(before, after):
            logger.debug("No significant changes for %s, skipping notifications", login)
            return 0

        try:
            users = await self.watchers(login)
            if not users:
                logger.debug("No watchers for %s", login)
                return 0

            message = describe_change(login, before, after)
            now = self._clock()
            changes: Document = {
                "followers": {
                    "before": before.get("followers"),
                    "after": after.get("followers"),
                },
                "repos": {
                    "before": before.get("public_repos"),
                    "after": after.get("public_repos"),
                },
                "bioChanged": before.get("bio") != after.get("bio"),
            }
            await self._store.batch_write(
                [
                    BatchWrite(
                        NOTIFICATIONS_COLLECTION,
                        uuid.uuid4().hex,
                        {
                            "userId": user,
                            "type": "profile_update",
                            "message": message,
                            "profileUsername": login,
                            "read": False,
                            "timestamp": now,
                            "changes": changes,
                        },
                    )
                    for user in users
                ]
            )
        except StoreUnavailableError as exc:
            logger.warning("Failed to notify watchers of %s: %s", login, exc)
            return 0

        logger.info("Sent notifications to %d watcher(s) for %s", len(users), login)
        return len(users)

    async def notifications_for(self, user_id: str, *, unread_only: bool = False) -> list[Document]:
        """List one user's notifications, newest first."""
        user = self._validate_user(user_id)
        rows = [
            dict(doc, id=key)
            for key, doc in await self._store.list_documents(NOTIFICATIONS_COLLECTION)
            if doc.get("userId") == user and not (unread_only and doc.get("read") is True)
        ]
        rows.sort(key=lambda doc: doc.get("timestamp") or 0.0, reverse=True)
        return rows
