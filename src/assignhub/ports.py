"""Outbound ports — notifications and chat history.

The marketplace core never talks to a notification service or a chat
backend directly. It calls these Protocols, and the host application
plugs in whatever implementation it runs on. The in-memory versions back
the tests and the CLI.

Notifications are fire-and-forget: the service logs and swallows sink
failures so they can never unwind a committed transaction.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Protocol, runtime_checkable


@runtime_checkable
class NotificationSink(Protocol):
    """Delivers a short message to one user."""

    def notify(self, user_id: str, message: str, link: Optional[str] = None) -> None:
        ...


@runtime_checkable
class ChatArchive(Protocol):
    """Per-assignment chat history, reached only to destroy it."""

    def purge(self, assignment_id: str) -> int:
        """Delete every message of the assignment. Returns the count removed."""
        ...


@dataclass(frozen=True)
class Notification:
    user_id: str
    message: str
    link: Optional[str]
    created_utc: datetime


class InMemoryNotificationSink:
    """Keeps every notification in a list, newest last."""

    def __init__(self) -> None:
        self.sent: list[Notification] = []

    def notify(self, user_id: str, message: str, link: Optional[str] = None) -> None:
        self.sent.append(
            Notification(user_id, message, link, datetime.now(timezone.utc))
        )

    def for_user(self, user_id: str) -> list[Notification]:
        return [n for n in self.sent if n.user_id == user_id]


@dataclass
class ChatMessage:
    sender_id: str
    text: str
    created_utc: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class InMemoryChatArchive:
    def __init__(self) -> None:
        self._messages: dict[str, list[ChatMessage]] = {}

    def post(self, assignment_id: str, sender_id: str, text: str) -> None:
        self._messages.setdefault(assignment_id, []).append(ChatMessage(sender_id, text))

    def messages(self, assignment_id: str) -> list[ChatMessage]:
        return list(self._messages.get(assignment_id, []))

    def purge(self, assignment_id: str) -> int:
        return len(self._messages.pop(assignment_id, []))
