"""
Inbound events and the per-event context handed to sync handlers.
"""
import enum
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .config import BridgeSettings


class EventKind(enum.Enum):
    # GitHub webhooks, valued "<event>.<action>"
    ISSUE_OPENED = "issues.opened"
    ISSUE_CLOSED = "issues.closed"
    ISSUE_REOPENED = "issues.reopened"
    ISSUE_EDITED = "issues.edited"
    ISSUE_LABELED = "issues.labeled"
    ISSUE_UNLABELED = "issues.unlabeled"
    ISSUE_MILESTONED = "issues.milestoned"
    ISSUE_DEMILESTONED = "issues.demilestoned"
    ISSUE_ASSIGNED = "issues.assigned"
    ISSUE_UNASSIGNED = "issues.unassigned"
    COMMENT_CREATED = "issue_comment.created"

    # Discord gateway
    MESSAGE_CREATED = "discord.message_created"
    THREAD_CREATED = "discord.thread_created"
    THREAD_UPDATED = "discord.thread_updated"

    @classmethod
    def from_webhook(cls, event: Optional[str], action: Optional[str]) -> Optional["EventKind"]:
        if not event or not action or event.startswith("discord"):
            return None
        try:
            return cls(f"{event}.{action}")
        except ValueError:
            return None

    @property
    def from_tracker(self) -> bool:
        return not self.value.startswith("discord.")


@dataclass
class BridgeEvent:
    """
    One inbound event with its repository identity resolved up front.

    GitHub events carry the webhook body as ``payload``. Discord events carry
    the gateway objects under ``message``, ``thread`` or ``before``/``after``.
    """

    kind: EventKind
    payload: Dict[str, Any] = field(default_factory=dict)
    installation_id: Optional[int] = None
    owner: Optional[str] = None
    repo: Optional[str] = None
    delivery_id: Optional[str] = None

    @classmethod
    def from_webhook(cls, event: str, payload: Dict[str, Any], delivery_id: Optional[str] = None) -> Optional["BridgeEvent"]:
        kind = EventKind.from_webhook(event, payload.get("action"))
        if kind is None:
            return None
        repository = payload.get("repository") or {}
        installation = payload.get("installation") or {}
        return cls(
            kind=kind,
            payload=payload,
            installation_id=installation.get("id"),
            owner=(repository.get("owner") or {}).get("login"),
            repo=repository.get("name"),
            delivery_id=delivery_id,
        )

    @classmethod
    def from_discord(cls, kind: EventKind, **objects: Any) -> "BridgeEvent":
        return cls(kind=kind, payload=dict(objects))

    @property
    def full_name(self) -> Optional[str]:
        return f"{self.owner}/{self.repo}" if self.owner and self.repo else None

    @property
    def issue_number(self) -> Optional[int]:
        issue = self.payload.get("issue")
        if isinstance(issue, dict):
            return issue.get("number")
        return None

    @property
    def thread_id(self) -> Optional[int]:
        message = self.payload.get("message")
        if message is not None:
            return getattr(message.channel, "id", None)
        thread = self.payload.get("thread") or self.payload.get("after")
        return getattr(thread, "id", None)


@dataclass
class EventContext:
    """Everything a handler needs for one event: no handler reads shared state."""

    event: BridgeEvent
    settings: BridgeSettings
    tracker: Any
    forum: Any
    tags: Any
    locator: Any
    owner: Optional[str] = None
    repo: Optional[str] = None

    @property
    def payload(self) -> Dict[str, Any]:
        return self.event.payload
