"""
Default configuration and per-event settings for the IssueBridge cog.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional

# Discord limits
MAX_FORUM_TAGS = 20
MAX_THREAD_TAGS = 5
MAX_THREAD_NAME = 100

SYNC_LABEL = "🔵-synced"
REPO_TAG_EMOJI = "🧭"
CLOSED_TAG_NAME = "closed"
CLOSED_TAG_EMOJI = "✅"
CLOSED_TAG_LEGACY_NAME = "✅closed"
BOT_LOGIN = "Discord-Github-Bridge"

# Default global configuration
DEFAULT_GLOBAL_CONFIG = {
    # Discord side
    "forum_channel_id": None,  # Forum channel that mirrors issues

    # GitHub side
    "default_owner": None,  # Fallback repository for chat-originated events
    "default_repo": None,
    "app_id": None,  # GitHub App id
    "private_key": None,  # GitHub App private key (PEM)
    "installation_id": None,  # Optional fixed installation id
    "github_token": None,  # Personal token, used when no App is configured
    "bot_login": BOT_LOGIN,  # Login the bridge comments as

    # Tag overrides
    "sync_label": SYNC_LABEL,
    "repo_tag_emoji": REPO_TAG_EMOJI,
    "closed_tag_name": CLOSED_TAG_NAME,
    "closed_tag_emoji": CLOSED_TAG_EMOJI,

    # Webhook receiver
    "webhook_enabled": False,
    "webhook_host": "0.0.0.0",
    "webhook_port": 8080,
    "webhook_path": "/github/webhooks",
    "webhook_secret": None,
}

# Custom Config group holding the issue -> thread cache
THREAD_CACHE_GROUP = "thread_cache"
THREAD_CACHE_SCOPE = "issues"


@dataclass(frozen=True)
class BridgeSettings:
    """Immutable snapshot of the cog configuration, taken once per event."""

    forum_channel_id: Optional[int] = None
    default_owner: Optional[str] = None
    default_repo: Optional[str] = None
    app_id: Optional[int] = None
    private_key: Optional[str] = None
    installation_id: Optional[int] = None
    github_token: Optional[str] = None
    bot_login: str = BOT_LOGIN
    sync_label: str = SYNC_LABEL
    repo_tag_emoji: str = REPO_TAG_EMOJI
    closed_tag_name: str = CLOSED_TAG_NAME
    closed_tag_emoji: str = CLOSED_TAG_EMOJI
    webhook_enabled: bool = False
    webhook_host: str = "0.0.0.0"
    webhook_port: int = 8080
    webhook_path: str = "/github/webhooks"
    webhook_secret: Optional[str] = None

    @classmethod
    def from_config(cls, data: Dict[str, Any]) -> "BridgeSettings":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        # Config stores None for unset overrides; keep the defaults instead
        for key in ("bot_login", "sync_label", "repo_tag_emoji", "closed_tag_name", "closed_tag_emoji"):
            if not known.get(key):
                known.pop(key, None)
        return cls(**known)

    @property
    def has_default_repo(self) -> bool:
        return bool(self.default_owner and self.default_repo)

    @property
    def has_app(self) -> bool:
        return bool(self.app_id and self.private_key)
