"""
Async facade over PyGithub.

PyGithub is blocking, so every call is pushed to a worker thread. Results are
returned as the REST dictionaries GitHub sends (``raw_data``), the same shape
the webhook payloads use.
"""
import asyncio
import logging
import math
from typing import Any, Dict, Iterable, List, Optional

from github import Auth, Github, GithubException, GithubIntegration

from .config import BridgeSettings
from .errors import MissingIdentityError

log = logging.getLogger("red.issue_bridge.tracker")

PER_PAGE = 100
LABEL_COLOR = "ededed"


def is_not_found(exc: BaseException) -> bool:
    return isinstance(exc, GithubException) and exc.status == 404


class TrackerClient:
    """One authenticated GitHub session, scoped to a single event."""

    def __init__(self, gh: Github, *, installation_id: Optional[int] = None, integration: Optional[GithubIntegration] = None) -> None:
        self.gh = gh
        self.installation_id = installation_id
        self._integration = integration

    @classmethod
    def open(cls, settings: BridgeSettings, installation_id: Optional[int] = None) -> "TrackerClient":
        """Authenticate as the App installation, or with the personal token."""
        if installation_id and settings.has_app:
            app_auth = Auth.AppAuth(int(settings.app_id), settings.private_key)
            gh = Github(auth=app_auth.get_installation_auth(int(installation_id)), per_page=PER_PAGE)
            integration = GithubIntegration(auth=app_auth)
            log.debug("Opened GitHub session for installation %s", installation_id)
            return cls(gh, installation_id=int(installation_id), integration=integration)
        if settings.github_token:
            log.debug("Opened GitHub session with personal token")
            return cls(Github(auth=Auth.Token(settings.github_token), per_page=PER_PAGE))
        raise MissingIdentityError("No GitHub installation or token available")

    def close(self) -> None:
        self.gh.close()
        if self._integration is not None:
            self._integration.close()

    # ----------------------
    # Blocking-to-thread helpers
    # ----------------------
    async def _gh_list(self, fn_noargs) -> list:
        return await asyncio.to_thread(lambda: list(fn_noargs()))

    async def _gh_call(self, fn_noargs):
        return await asyncio.to_thread(fn_noargs)

    def _repo(self, owner: str, repo: str):
        return self.gh.get_repo(f"{owner}/{repo}", lazy=True)

    # ----------------------
    # Issues
    # ----------------------
    async def get_issue(self, owner: str, repo: str, number: int) -> Dict[str, Any]:
        issue = await self._gh_call(lambda: self._repo(owner, repo).get_issue(number))
        return issue.raw_data

    async def create_issue(self, owner: str, repo: str, *, title: str, body: str, labels: Iterable[str] = ()) -> Dict[str, Any]:
        labels = list(labels)
        issue = await self._gh_call(
            lambda: self._repo(owner, repo).create_issue(title=title, body=body, labels=labels)
        )
        return issue.raw_data

    async def set_issue_state(self, owner: str, repo: str, number: int, state: str) -> None:
        def edit():
            self._repo(owner, repo).get_issue(number).edit(state=state)

        await self._gh_call(edit)

    async def add_labels(self, owner: str, repo: str, number: int, labels: Iterable[str]) -> None:
        labels = list(labels)

        def add():
            self._repo(owner, repo).get_issue(number).add_to_labels(*labels)

        await self._gh_call(add)

    async def remove_label(self, owner: str, repo: str, number: int, name: str) -> None:
        """Raises ``GithubException`` (status 404) when the label is not on the issue."""
        def remove():
            self._repo(owner, repo).get_issue(number).remove_from_labels(name)

        await self._gh_call(remove)

    # ----------------------
    # Labels
    # ----------------------
    async def get_label(self, owner: str, repo: str, name: str) -> Dict[str, Any]:
        label = await self._gh_call(lambda: self._repo(owner, repo).get_label(name))
        return label.raw_data

    async def create_label(self, owner: str, repo: str, name: str) -> Dict[str, Any]:
        label = await self._gh_call(lambda: self._repo(owner, repo).create_label(name=name, color=LABEL_COLOR))
        return label.raw_data

    # ----------------------
    # Comments
    # ----------------------
    async def last_comment(self, owner: str, repo: str, number: int, total: int) -> Optional[Dict[str, Any]]:
        """Return the newest comment, reading only the last page of ``total`` comments."""
        if total <= 0:
            return None
        last_page = math.ceil(total / PER_PAGE) - 1

        def fetch():
            return self._repo(owner, repo).get_issue(number).get_comments().get_page(last_page)

        comments = await self._gh_call(fetch)
        return comments[-1].raw_data if comments else None

    async def create_comment(self, owner: str, repo: str, number: int, body: str) -> Dict[str, Any]:
        comment = await self._gh_call(lambda: self._repo(owner, repo).get_issue(number).create_comment(body))
        return comment.raw_data

    async def edit_comment(self, owner: str, repo: str, number: int, comment_id: int, body: str) -> None:
        def edit():
            self._repo(owner, repo).get_issue(number).get_comment(comment_id).edit(body)

        await self._gh_call(edit)

    # ----------------------
    # Repositories
    # ----------------------
    async def list_repositories(self) -> List[Dict[str, Any]]:
        """Repositories reachable with this session (the installation's, or the token user's)."""
        if self._integration is not None and self.installation_id:
            installation = await self._gh_call(lambda: self._integration.get_app_installation(self.installation_id))
            repos = await self._gh_list(installation.get_repos)
        else:
            repos = await self._gh_list(lambda: self.gh.get_user().get_repos())
        return [r.raw_data for r in repos]


async def find_installation_id(settings: BridgeSettings, owner: Optional[str], repo: Optional[str]) -> Optional[int]:
    """Look up the App installation that covers ``owner/repo``."""
    if settings.installation_id:
        return int(settings.installation_id)
    if not settings.has_app or not owner or not repo:
        return None

    def lookup() -> int:
        integration = GithubIntegration(auth=Auth.AppAuth(int(settings.app_id), settings.private_key))
        try:
            return integration.get_repo_installation(owner, repo).id
        finally:
            integration.close()

    try:
        return await asyncio.to_thread(lookup)
    except GithubException:
        log.exception("github.installation.lookup.error repo=%s/%s", owner, repo)
        return None
