"""
Finding the forum thread that mirrors a GitHub issue.

Cache first. On a miss every thread in the forum is a candidate: active
threads, then archived ones page by page. Candidates are narrowed by the
repository selector tag, ordered by title similarity, and confirmed by reading
their pinned sync marker.
"""
import asyncio
import logging
from typing import Any, List, Optional

import discord

from .cache import ThreadCache
from .helpers import normalize_title
from .markers import parse_sync_marker
from .tags import TagManager

log = logging.getLogger("red.issue_bridge.locator")

ARCHIVED_PAGE_SIZE = 100
PIN_FETCH_TIMEOUT = 20.0


class ThreadLocator:
    def __init__(self, bot: Any, cache: ThreadCache, tags: TagManager, *, pin_timeout: float = PIN_FETCH_TIMEOUT) -> None:
        self.bot = bot
        self.cache = cache
        self.tags = tags
        self.pin_timeout = pin_timeout

    async def find(
        self,
        forum: Any,
        issue_number: int,
        owner: Optional[str] = None,
        repo: Optional[str] = None,
        title_hint: Optional[str] = None,
    ) -> List[discord.Thread]:
        if owner and repo:
            cached = await self.resolve_cached(forum, issue_number, owner, repo)
            if cached is not None:
                return [cached]

        log.info("discord.thread.search.start forum=%s issue=%s repo=%s/%s", forum.id, issue_number, owner, repo)
        candidates = await self.collect_candidates(forum, issue_number)
        total = len(candidates)
        candidates = self._filter_by_repo_tag(forum, candidates, repo)
        candidates = self._order_by_title(candidates, title_hint)

        for thread in candidates:
            if await self._confirm(thread, issue_number, owner, repo):
                log.info(
                    "discord.thread.search.complete forum=%s issue=%s matches=1 total=%d",
                    forum.id, issue_number, total,
                )
                return [thread]

        log.info("discord.thread.search.complete forum=%s issue=%s matches=0 total=%d", forum.id, issue_number, total)
        return []

    # ----------------------
    # Step 1: cache
    # ----------------------
    async def resolve_cached(self, forum: Any, issue_number: int, owner: str, repo: str) -> Optional[discord.Thread]:
        entry = await self.cache.get(owner, repo, issue_number)
        if entry is None:
            return None
        try:
            thread = await self._fetch_thread(int(entry.thread_id))
        except (discord.HTTPException, ValueError) as e:
            log.warning(
                "discord.thread.cache.invalid forum=%s issue=%s repo=%s/%s thread=%s: %s",
                forum.id, issue_number, owner, repo, entry.thread_id, e,
            )
            await self.cache.delete(owner, repo, issue_number)
            return None

        if thread is None or getattr(thread, "parent_id", None) != forum.id:
            log.warning(
                "discord.thread.cache.invalid forum=%s issue=%s repo=%s/%s thread=%s: not in forum",
                forum.id, issue_number, owner, repo, entry.thread_id,
            )
            await self.cache.delete(owner, repo, issue_number)
            return None

        log.info(
            "discord.thread.cache.hit forum=%s issue=%s repo=%s/%s thread=%s",
            forum.id, issue_number, owner, repo, entry.thread_id,
        )
        return thread

    async def _fetch_thread(self, thread_id: int) -> Optional[Any]:
        channel = self.bot.get_channel(thread_id)
        if channel is None:
            channel = await self.bot.fetch_channel(thread_id)
        return channel

    # ----------------------
    # Step 2: enumerate
    # ----------------------
    async def collect_candidates(self, forum: Any, issue_number: int = 0) -> List[discord.Thread]:
        active = [t for t in await forum.guild.active_threads() if t.parent_id == forum.id]
        log.debug("discord.thread.search.active forum=%s issue=%s count=%d", forum.id, issue_number, len(active))

        threads = list(active)
        seen = {t.id for t in threads}
        before = None
        page = 0
        while True:
            try:
                archived = [
                    t async for t in forum.archived_threads(limit=ARCHIVED_PAGE_SIZE, before=before)
                ]
            except discord.HTTPException:
                log.exception(
                    "discord.thread.search.archived_error forum=%s issue=%s page=%d",
                    forum.id, issue_number, page + 1,
                )
                break
            page += 1
            has_more = len(archived) >= ARCHIVED_PAGE_SIZE
            log.debug(
                "discord.thread.search.archived_page forum=%s issue=%s page=%d count=%d has_more=%s",
                forum.id, issue_number, page, len(archived), has_more,
            )
            for thread in archived:
                if thread.id not in seen:
                    seen.add(thread.id)
                    threads.append(thread)
            if not archived or not has_more:
                break
            before = archived[-1].archive_timestamp
        return threads

    # ----------------------
    # Step 3 and 4: narrow and order
    # ----------------------
    def _filter_by_repo_tag(self, forum: Any, threads: List[Any], repo: Optional[str]) -> List[Any]:
        if not repo:
            return threads
        repo_tag_ids = {t.id for t in self.tags.repo_selector_tags(forum, repo)}
        if not repo_tag_ids:
            return threads
        tagged = [t for t in threads if any(tag.id in repo_tag_ids for tag in (t.applied_tags or []))]
        log.debug("discord.thread.search.candidates forum=%s tagged=%d total=%d", forum.id, len(tagged), len(threads))
        return tagged or threads

    @staticmethod
    def _order_by_title(threads: List[Any], title_hint: Optional[str]) -> List[Any]:
        hint = normalize_title(title_hint)
        if not hint:
            return threads

        def similar(thread: Any) -> bool:
            name = normalize_title(thread.name)
            return bool(name) and (name in hint or hint in name)

        # sorted() is stable, so threads keep their order within each group
        return sorted(threads, key=lambda t: 0 if similar(t) else 1)

    # ----------------------
    # Step 5: confirm
    # ----------------------
    async def _confirm(self, thread: Any, issue_number: int, owner: Optional[str], repo: Optional[str]) -> bool:
        try:
            pins = await asyncio.wait_for(thread.pins(), timeout=self.pin_timeout)
        except asyncio.TimeoutError:
            log.warning(
                "discord.thread.search.pin.timeout thread=%s issue=%s archived=%s timeout=%ss",
                thread.id, issue_number, getattr(thread, "archived", None), self.pin_timeout,
            )
            return False
        except discord.HTTPException:
            log.exception("discord.thread.search.pin.error thread=%s issue=%s", thread.id, issue_number)
            return False

        for message in pins:
            ref = parse_sync_marker(getattr(message, "content", None))
            if ref is None or not ref.matches(issue_number, owner, repo):
                continue
            log.info(
                "discord.thread.search.match thread=%s issue=%s repo=%s",
                thread.id, issue_number, ref.full_name,
            )
            cache_owner, cache_repo = (ref.owner, ref.repo) if ref.has_repo else (owner, repo)
            await self.cache.set(cache_owner, cache_repo, issue_number, thread_id=thread.id, title=thread.name)
            return True
        return False
