"""
Translation between GitHub labels and Discord forum tags.

Three kinds of tags are structural and never travel as labels: the sync
marker, the repository selectors and the closed-state tag.
"""
import logging
from typing import Any, Collection, Iterable, List, Optional, Union

import discord
from github import GithubException

from .config import CLOSED_TAG_LEGACY_NAME, MAX_FORUM_TAGS, MAX_THREAD_TAGS, BridgeSettings
from .helpers import find_tag

log = logging.getLogger("red.issue_bridge.tags")


def emoji_name(tag: Optional[discord.ForumTag]) -> Optional[str]:
    if tag is None or tag.emoji is None:
        return None
    if isinstance(tag.emoji, str):
        return tag.emoji
    return tag.emoji.name


class TagManager:
    def __init__(self, settings: BridgeSettings) -> None:
        self.sync_label = settings.sync_label
        self.repo_emoji = settings.repo_tag_emoji
        self.closed_name = settings.closed_tag_name
        self.closed_emoji = settings.closed_tag_emoji

    # ----------------------
    # Classification
    # ----------------------
    def is_sync_tag(self, name: Optional[str]) -> bool:
        return name == self.sync_label

    def is_repo_selector(self, tag: Optional[discord.ForumTag]) -> bool:
        return emoji_name(tag) == self.repo_emoji

    def is_closed_name(self, name: Optional[str]) -> bool:
        if not name:
            return False
        lowered = name.lower()
        return lowered in (self.closed_name.lower(), CLOSED_TAG_LEGACY_NAME.lower())

    def is_closed_tag(self, tag: Optional[discord.ForumTag]) -> bool:
        if tag is None:
            return False
        return emoji_name(tag) == self.closed_emoji or self.is_closed_name(tag.name)

    def is_structural(self, tag: Union[discord.ForumTag, str, None], repo_names: Collection[str] = (), *, include_closed: bool = True) -> bool:
        """Whether a tag (or label name) belongs to the bridge rather than the users."""
        if tag is None:
            return True
        name = tag if isinstance(tag, str) else tag.name
        if not name or self.is_sync_tag(name):
            return True
        if not isinstance(tag, str) and self.is_repo_selector(tag):
            return True
        if name.lower() in {r.lower() for r in repo_names}:
            return True
        if include_closed:
            if isinstance(tag, str):
                return self.is_closed_name(name)
            return self.is_closed_tag(tag)
        return False

    def label_tag_names(self, labels: Iterable[Any], repo_names: Collection[str] = ()) -> List[str]:
        """Names of the user labels of an issue, structural ones dropped."""
        names: List[str] = []
        for label in labels:
            name = label.get("name") if isinstance(label, dict) else label
            if name and not self.is_structural(name, repo_names) and name not in names:
                names.append(name)
        return names

    def find_closed_tag(self, forum: Any) -> Optional[discord.ForumTag]:
        for tag in forum.available_tags:
            if self.is_closed_tag(tag):
                return tag
        return None

    def repo_selector_tags(self, forum: Any, repo: Optional[str] = None) -> List[discord.ForumTag]:
        tags = [t for t in forum.available_tags if self.is_repo_selector(t)]
        if repo:
            tags = [t for t in tags if t.name.lower() == repo.lower()]
        return tags

    # ----------------------
    # Forum tags
    # ----------------------
    async def ensure_tag(self, forum: Any, name: str, emoji: Optional[str] = None) -> Optional[discord.ForumTag]:
        """Find a forum tag by name (case-insensitive) or create it.

        Returns None when the forum is already at Discord's tag ceiling; callers
        skip the tag rather than fail.
        """
        existing = find_tag(forum.available_tags, name)
        if existing is not None:
            if emoji and emoji_name(existing) != emoji:
                log.info("discord.forum.tag.emoji.update forum=%s tag=%s emoji=%s", forum.id, name, emoji)
                # Discord only supports replacing the whole tag list
                updated_tags = []
                for tag in forum.available_tags:
                    replacement = discord.ForumTag(
                        name=tag.name,
                        emoji=emoji if tag.id == existing.id else tag.emoji,
                        moderated=tag.moderated,
                    )
                    replacement.id = tag.id
                    updated_tags.append(replacement)
                refreshed = await forum.edit(available_tags=updated_tags)
                return find_tag((refreshed or forum).available_tags, name)
            return existing

        if len(forum.available_tags) >= MAX_FORUM_TAGS:
            log.warning(
                "discord.forum.tag.limit forum=%s tag=%s limit=%d: not creating tag",
                forum.id, name, MAX_FORUM_TAGS,
            )
            return None

        log.info("discord.forum.tag.create forum=%s tag=%s emoji=%s", forum.id, name, emoji)
        return await forum.create_tag(name=name, emoji=emoji, moderated=False)

    async def ensure_closed_tag(self, forum: Any) -> Optional[discord.ForumTag]:
        existing = self.find_closed_tag(forum)
        if existing is None:
            return await self.ensure_tag(forum, self.closed_name, self.closed_emoji)
        legacy = existing.name.lower() == CLOSED_TAG_LEGACY_NAME.lower()
        if not legacy and emoji_name(existing) != self.closed_emoji:
            return await self.ensure_tag(forum, existing.name, self.closed_emoji)
        return existing

    # ----------------------
    # Thread tags
    # ----------------------
    async def add_tags(self, thread: Any, tags: Iterable[Optional[discord.ForumTag]], *, archived: Optional[bool] = None) -> int:
        """Apply several tags with a single edit. Tags past the ceiling are skipped.

        Pass ``archived=True`` to keep an archived thread archived through the edit.
        """
        current = list(thread.applied_tags or [])
        applied_ids = {t.id for t in current}
        added = 0
        for tag in tags:
            if tag is None or tag.id in applied_ids:
                continue
            if len(current) >= MAX_THREAD_TAGS:
                log.warning(
                    "discord.thread.tag.limit thread=%s tag=%s limit=%d: skipping tag",
                    thread.id, tag.name, MAX_THREAD_TAGS,
                )
                continue
            current.append(tag)
            applied_ids.add(tag.id)
            added += 1
        if added:
            log.debug("Applying tags %s to thread %s", [t.name for t in current], thread.id)
            if archived is None:
                await thread.edit(applied_tags=current)
            else:
                await thread.edit(applied_tags=current, archived=archived)
        return added

    async def add_tag(self, thread: Any, tag: discord.ForumTag) -> bool:
        return await self.add_tags(thread, [tag]) > 0

    async def remove_tag(self, thread: Any, tag: discord.ForumTag) -> bool:
        current = list(thread.applied_tags or [])
        remaining = [t for t in current if t.id != tag.id]
        if len(remaining) == len(current):
            return False
        log.debug("Removing tag %s from thread %s", tag.name, thread.id)
        await thread.edit(applied_tags=remaining)
        return True


async def ensure_label(tracker: Any, owner: str, repo: str, name: str) -> str:
    """Make sure ``name`` exists as a label in ``owner/repo``."""
    if not owner or not repo:
        raise ValueError("owner and repo are required to manage labels")
    try:
        await tracker.get_label(owner, repo, name)
    except GithubException as e:
        if e.status != 404:
            raise
        log.info("github.label.create repo=%s/%s label=%s", owner, repo, name)
        await tracker.create_label(owner, repo, name)
    return name
