"""
Parsing of the "synced with issue" marker the bridge pins in every thread.

Two generations of the marker are in the wild:

    current: `Synced with issue #42` on [repo](https://github.com/owner/repo) · [follow on github](...)
    legacy:  `synced with issue #42` ... https://github.com/owner/repo/issues/42

New formats go at the end of ``MARKER_PARSERS``.
"""
import logging
import re
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Tuple

log = logging.getLogger("red.issue_bridge.markers")

CURRENT_MARKER_RE = re.compile(
    r"`Synced with issue #(\d+)`.*on \[.+?\]\(https://github\.com/([^/\s]+)/([^/)\s]+)"
)
LEGACY_MARKER_RE = re.compile(r"`synced with issue #(\d+)`", re.IGNORECASE)
ISSUE_URL_RE = re.compile(r"github\.com/([^/\s]+)/([^/\s]+)/issues/\d+")


@dataclass(frozen=True)
class SyncedIssueRef:
    number: int
    owner: Optional[str] = None
    repo: Optional[str] = None

    def __post_init__(self) -> None:
        if isinstance(self.number, bool) or not isinstance(self.number, int) or self.number <= 0:
            raise ValueError(f"issue number must be a positive integer, got {self.number!r}")
        if (self.owner is None) != (self.repo is None) or self.owner == "" or self.repo == "":
            raise ValueError(f"owner and repo must be given together, got {self.owner!r}/{self.repo!r}")

    @property
    def has_repo(self) -> bool:
        return self.owner is not None and self.repo is not None

    @property
    def full_name(self) -> Optional[str]:
        return f"{self.owner}/{self.repo}" if self.has_repo else None

    def matches(self, number: int, owner: Optional[str] = None, repo: Optional[str] = None) -> bool:
        """Whether this marker points at ``number`` in ``owner/repo``.

        A marker without repository information matches any repository.
        """
        if self.number != number:
            return False
        if not owner or not repo or not self.has_repo:
            return True
        return self.owner.lower() == owner.lower() and self.repo.lower() == repo.lower()


def _issue_number(raw: str) -> Optional[int]:
    number = int(raw)
    return number if number > 0 else None


def _parse_current(text: str) -> Optional[SyncedIssueRef]:
    m = CURRENT_MARKER_RE.search(text)
    if not m:
        return None
    number = _issue_number(m.group(1))
    if number is None:
        return None
    return SyncedIssueRef(number, m.group(2), m.group(3))


def _parse_legacy(text: str) -> Optional[SyncedIssueRef]:
    m = LEGACY_MARKER_RE.search(text)
    if not m:
        return None
    number = _issue_number(m.group(1))
    if number is None:
        return None
    url = ISSUE_URL_RE.search(text)
    if url:
        return SyncedIssueRef(number, url.group(1), url.group(2))
    return SyncedIssueRef(number)


MARKER_PARSERS: Tuple[Callable[[str], Optional[SyncedIssueRef]], ...] = (
    _parse_current,
    _parse_legacy,
)


def parse_sync_marker(text: object) -> Optional[SyncedIssueRef]:
    """Return the issue a marker message points at, or None if it is not a marker."""
    if not isinstance(text, str) or not text:
        return None
    for parser in MARKER_PARSERS:
        ref = parser(text)
        if ref is not None:
            return ref
    return None


def is_sync_marker(text: object) -> bool:
    return parse_sync_marker(text) is not None


def synced_issue_refs(messages: Iterable[object]) -> List[SyncedIssueRef]:
    """Parse every message (usually a thread's pins) and keep the markers."""
    refs: List[SyncedIssueRef] = []
    for message in messages:
        ref = parse_sync_marker(getattr(message, "content", None))
        if ref is not None and ref not in refs:
            refs.append(ref)
    log.debug("discord.pin.synced_issues count=%d issues=%s", len(refs), refs)
    return refs


def format_sync_marker(number: int, owner: str, repo: str, html_url: str) -> str:
    repo_url = f"https://github.com/{owner}/{repo}"
    return f"`Synced with issue #{number}` on [{repo}]({repo_url}) · [follow on github]({html_url})"
