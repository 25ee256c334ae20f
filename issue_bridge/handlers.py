"""
Sync handlers, one coroutine per event kind.

GitHub -> Discord handlers take their repository from the webhook. Discord ->
GitHub handlers take it from the sync markers pinned in the thread, falling
back to the configured default repository.
"""
import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Tuple

import discord
from github import GithubException

from .cache import ThreadCache
from .config import MAX_THREAD_TAGS
from .errors import ConfigurationError
from .events import EventContext
from .helpers import (
    DISCORD_SAYS_MARKER,
    author_avatar_url,
    build_assignee_embed,
    build_comment_embed,
    build_milestone_embed,
    build_status_embed,
    build_sync_embed,
    extract_discord_username,
    find_tag,
    format_discord_author_comment,
    process_message_content,
    rewrite_issue_refs,
    thread_name,
)
from .markers import SyncedIssueRef, format_sync_marker, is_sync_marker, synced_issue_refs
from .tags import ensure_label

log = logging.getLogger("red.issue_bridge.handlers")

COMMENT_SETTLE_DELAY = 2.0
THREAD_SETTLE_DELAY = 0.5
REPO_MAP_TTL = 5 * 60


def has_sync_label(issue: Dict[str, Any], sync_label: str) -> bool:
    return any((label or {}).get("name") == sync_label for label in issue.get("labels") or [])


class SyncHandlers:
    def __init__(
        self,
        bot: Any,
        cache: ThreadCache,
        *,
        comment_settle: float = COMMENT_SETTLE_DELAY,
        thread_settle: float = THREAD_SETTLE_DELAY,
        repo_map_ttl: float = REPO_MAP_TTL,
    ) -> None:
        self.bot = bot
        self.cache = cache
        self.comment_settle = comment_settle
        self.thread_settle = thread_settle
        self.repo_map_ttl = repo_map_ttl
        # installation key -> (expires_at, {lower repo name: repo record})
        self._repo_maps: Dict[str, Tuple[float, Dict[str, Dict[str, Any]]]] = {}

    # ----------------------
    # Shared helpers
    # ----------------------
    async def _find_threads(self, ctx: EventContext, number: int, title_hint: Optional[str] = None) -> List[discord.Thread]:
        return await ctx.locator.find(ctx.forum, number, ctx.owner, ctx.repo, title_hint)

    @staticmethod
    def _ref_repo(ctx: EventContext, ref: SyncedIssueRef) -> Tuple[Optional[str], Optional[str]]:
        if ref.has_repo:
            return ref.owner, ref.repo
        return ctx.settings.default_owner, ctx.settings.default_repo

    @staticmethod
    async def _starter_message(thread: Any) -> Optional[discord.Message]:
        async for msg in thread.history(limit=1, oldest_first=True):
            return msg
        return None

    def is_bridge_comment(self, ctx: EventContext, comment: Dict[str, Any]) -> bool:
        """Comments the bridge wrote itself, or that were mirrored from Discord."""
        login = ((comment.get("user") or {}).get("login") or "").lower()
        bot_login = ctx.settings.bot_login.lower()
        if login in (bot_login, f"{bot_login}[bot]"):
            return True
        if DISCORD_SAYS_MARKER in (comment.get("body") or ""):
            return True
        app = comment.get("performed_via_github_app") or {}
        return bool(ctx.settings.app_id) and app.get("id") == int(ctx.settings.app_id)

    async def create_thread(self, ctx: EventContext, issue: Dict[str, Any]) -> discord.Thread:
        """Open the forum thread that mirrors ``issue`` and pin its sync marker."""
        number = issue["number"]
        repo_tag = await ctx.tags.ensure_tag(ctx.forum, ctx.repo, ctx.settings.repo_tag_emoji)
        applied = [repo_tag] if repo_tag is not None else []

        # one slot stays reserved for the repository tag
        label_names = ctx.tags.label_tag_names(issue.get("labels") or [], [ctx.repo])
        for name in label_names[: MAX_THREAD_TAGS - 1]:
            tag = await ctx.tags.ensure_tag(ctx.forum, name)
            if tag is not None and all(t.id != tag.id for t in applied):
                applied.append(tag)
        if len(label_names) > MAX_THREAD_TAGS - 1:
            log.warning(
                "discord.thread.tag.limit repo=%s/%s issue=%s labels=%d: extra labels not tagged",
                ctx.owner, ctx.repo, number, len(label_names),
            )

        user = issue.get("user") or {}
        embed = build_sync_embed(
            issue,
            author_name=user.get("login") or "GitHub",
            author_icon=user.get("avatar_url"),
            author_url=user.get("html_url"),
        )
        created = await ctx.forum.create_thread(
            name=thread_name(issue.get("title")),
            content=format_sync_marker(number, ctx.owner, ctx.repo, issue.get("html_url") or ""),
            embed=embed,
            applied_tags=applied,
        )
        thread, message = created.thread, created.message
        try:
            await message.pin()
        except discord.HTTPException:
            log.warning("discord.thread.pin.error thread=%s issue=%s", thread.id, number, exc_info=True)

        await self.cache.set(ctx.owner, ctx.repo, number, thread_id=thread.id, title=thread.name)
        log.info("discord.thread.synced repo=%s/%s issue=%s thread=%s", ctx.owner, ctx.repo, number, thread.id)
        return thread

    async def _notify(self, ctx: EventContext, embed: discord.Embed, what: str) -> None:
        issue = ctx.payload.get("issue") or {}
        number = issue.get("number")
        threads = await self._find_threads(ctx, number, issue.get("title"))
        if not threads:
            log.info("discord.thread.not_found repo=%s/%s issue=%s event=%s", ctx.owner, ctx.repo, number, what)
            return
        for thread in threads:
            # posting would unarchive the thread and reopen the issue
            if thread.archived:
                log.debug("Skipping %s notice for archived thread %s", what, thread.id)
                continue
            log.info("discord.thread.notice thread=%s issue=%s event=%s", thread.id, number, what)
            await thread.send(embed=embed)

    # ----------------------
    # GitHub -> Discord
    # ----------------------
    async def issue_opened(self, ctx: EventContext) -> None:
        number = ctx.payload["issue"]["number"]
        # redeliveries carry the original payload, so ask GitHub for the current labels
        issue = await ctx.tracker.get_issue(ctx.owner, ctx.repo, number)
        if has_sync_label(issue, ctx.settings.sync_label):
            log.info("github.issue.already_synced repo=%s/%s issue=%s", ctx.owner, ctx.repo, number)
            return

        await ctx.tracker.add_labels(ctx.owner, ctx.repo, number, [ctx.settings.sync_label])
        log.info("github.issue.label.add repo=%s/%s issue=%s label=%s", ctx.owner, ctx.repo, number, ctx.settings.sync_label)
        await self.create_thread(ctx, issue)

    async def comment_created(self, ctx: EventContext) -> None:
        issue = ctx.payload["issue"]
        comment = ctx.payload["comment"]
        number = issue["number"]

        if issue.get("pull_request"):
            log.debug("Ignoring comment %s on pull request #%s", comment.get("id"), number)
            return
        if self.is_bridge_comment(ctx, comment):
            log.debug("Ignoring bridge comment %s on #%s", comment.get("id"), number)
            return

        if not has_sync_label(issue, ctx.settings.sync_label):
            fresh = await ctx.tracker.get_issue(ctx.owner, ctx.repo, number)
            if not has_sync_label(fresh, ctx.settings.sync_label):
                await ctx.tracker.add_labels(ctx.owner, ctx.repo, number, [ctx.settings.sync_label])
                log.info("github.issue.label.add repo=%s/%s issue=%s label=%s", ctx.owner, ctx.repo, number, ctx.settings.sync_label)
                await self.create_thread(ctx, fresh)
                await asyncio.sleep(self.comment_settle)

        threads = await self._find_threads(ctx, number, issue.get("title"))
        if not threads:
            log.info("discord.thread.not_found repo=%s/%s issue=%s event=comment", ctx.owner, ctx.repo, number)
            return

        async def resolve(ref_number: int) -> Optional[str]:
            found = await ctx.locator.find(ctx.forum, ref_number, ctx.owner, ctx.repo)
            return found[0].jump_url if found else None

        body = await rewrite_issue_refs(comment.get("body") or "", resolve)
        embed = build_comment_embed(comment, body)
        for thread in threads:
            try:
                await thread.send(embed=embed)
            except discord.HTTPException:
                log.exception("discord.comment.error thread=%s issue=%s comment=%s", thread.id, number, comment.get("id"))
                continue
            log.info("discord.comment.synced thread=%s issue=%s comment=%s", thread.id, number, comment.get("id"))

    async def issue_closed(self, ctx: EventContext) -> None:
        await self._issue_state_changed(ctx, closed=True)

    async def issue_reopened(self, ctx: EventContext) -> None:
        await self._issue_state_changed(ctx, closed=False)

    async def _issue_state_changed(self, ctx: EventContext, *, closed: bool) -> None:
        issue = ctx.payload["issue"]
        number = issue["number"]
        threads = await self._find_threads(ctx, number, issue.get("title"))
        if not threads:
            log.info("discord.thread.not_found repo=%s/%s issue=%s event=%s", ctx.owner, ctx.repo, number, "closed" if closed else "reopened")
            return

        if closed:
            closed_tag = await ctx.tags.ensure_closed_tag(ctx.forum)
        else:
            closed_tag = ctx.tags.find_closed_tag(ctx.forum)
        embed = build_status_embed(issue, ctx.payload.get("sender") or {}, closed)

        for thread in threads:
            if closed and thread.archived:
                # a message would unarchive it, so only tag it and leave it archived
                log.info("discord.thread.state.quiet thread=%s issue=%s: thread is archived", thread.id, number)
                if closed_tag is not None:
                    await ctx.tags.add_tags(thread, [closed_tag], archived=True)
                continue
            # on reopen the notice also unarchives the thread
            await thread.send(embed=embed)
            if closed_tag is None:
                continue
            if closed:
                await ctx.tags.add_tag(thread, closed_tag)
            else:
                await ctx.tags.remove_tag(thread, closed_tag)
            log.info("discord.thread.state thread=%s issue=%s closed=%s", thread.id, number, closed)

    async def issue_edited(self, ctx: EventContext) -> None:
        issue = ctx.payload["issue"]
        changes = ctx.payload.get("changes") or {}
        if "title" not in changes:
            return
        number = issue["number"]
        new_name = thread_name(issue.get("title"))
        old_title = (changes.get("title") or {}).get("from")

        for thread in await self._find_threads(ctx, number, old_title):
            if thread.name != new_name:
                log.info("discord.thread.rename thread=%s issue=%s name=%r", thread.id, number, new_name)
                await thread.edit(name=new_name)
            await self.cache.set(ctx.owner, ctx.repo, number, thread_id=thread.id, title=new_name)

    async def issue_labeled(self, ctx: EventContext) -> None:
        await self._label_changed(ctx, added=True)

    async def issue_unlabeled(self, ctx: EventContext) -> None:
        await self._label_changed(ctx, added=False)

    async def _label_changed(self, ctx: EventContext, *, added: bool) -> None:
        issue = ctx.payload["issue"]
        name = (ctx.payload.get("label") or {}).get("name")
        number = issue["number"]
        if not name or ctx.tags.is_structural(name, [ctx.repo] if ctx.repo else ()):
            log.debug("Ignoring structural label %r on #%s", name, number)
            return

        threads = await self._find_threads(ctx, number, issue.get("title"))
        if not threads:
            log.info("discord.thread.not_found repo=%s/%s issue=%s label=%s", ctx.owner, ctx.repo, number, name)
            return

        if added:
            tag = await ctx.tags.ensure_tag(ctx.forum, name)
        else:
            tag = find_tag(ctx.forum.available_tags, name)
        if tag is None:
            return

        for thread in threads:
            if thread.archived:
                log.debug("Skipping tag %s on archived thread %s", name, thread.id)
                continue
            if added:
                await ctx.tags.add_tag(thread, tag)
            else:
                await ctx.tags.remove_tag(thread, tag)

    async def issue_milestoned(self, ctx: EventContext) -> None:
        await self._notify(ctx, build_milestone_embed(ctx.payload.get("milestone") or {}, True), "milestoned")

    async def issue_demilestoned(self, ctx: EventContext) -> None:
        await self._notify(ctx, build_milestone_embed(ctx.payload.get("milestone") or {}, False), "demilestoned")

    async def issue_assigned(self, ctx: EventContext) -> None:
        await self._notify(ctx, build_assignee_embed(ctx.payload.get("assignee") or {}, True), "assigned")

    async def issue_unassigned(self, ctx: EventContext) -> None:
        await self._notify(ctx, build_assignee_embed(ctx.payload.get("assignee") or {}, False), "unassigned")

    # ----------------------
    # Discord -> GitHub
    # ----------------------
    async def message_created(self, ctx: EventContext) -> None:
        message = ctx.payload["message"]
        thread = message.channel
        if message.author.bot:
            return
        starter = await self._starter_message(thread)
        if starter is None or starter.id == message.id:
            return

        refs = synced_issue_refs(await thread.pins())
        if not refs:
            return
        log.info("discord.message.received thread=%s message=%s author=%s", thread.id, message.id, message.author.name)

        await self._backfill_repo_tags(ctx, thread, refs)
        content = process_message_content(message)

        for ref in refs:
            owner, repo = self._ref_repo(ctx, ref)
            if not owner or not repo:
                log.warning("github.issue.repo.unknown thread=%s issue=%s: no default repository", thread.id, ref.number)
                continue
            issue = await ctx.tracker.get_issue(owner, repo, ref.number)
            last = await ctx.tracker.last_comment(owner, repo, ref.number, issue.get("comments") or 0)
            last_author = extract_discord_username(last.get("body")) if last else None

            if last and last_author == message.author.name:
                log.info(
                    "github.issue.comment.append repo=%s/%s issue=%s comment=%s author=%s",
                    owner, repo, ref.number, last["id"], message.author.name,
                )
                await ctx.tracker.edit_comment(owner, repo, ref.number, last["id"], f"{last['body']}\n{content}")
            else:
                log.info("github.issue.comment.create repo=%s/%s issue=%s author=%s", owner, repo, ref.number, message.author.name)
                await ctx.tracker.create_comment(
                    owner, repo, ref.number,
                    format_discord_author_comment(message.author, message.jump_url, content),
                )

    async def _backfill_repo_tags(self, ctx: EventContext, thread: Any, refs: List[SyncedIssueRef]) -> None:
        names: List[str] = []
        for ref in refs:
            if ref.has_repo and ref.repo.lower() not in (n.lower() for n in names):
                names.append(ref.repo)
        tags = [await ctx.tags.ensure_tag(ctx.forum, name, ctx.settings.repo_tag_emoji) for name in names]
        if await ctx.tags.add_tags(thread, tags):
            log.info("discord.thread.repo_tag.add thread=%s repos=%s", thread.id, names)

    async def thread_created(self, ctx: EventContext) -> None:
        thread = ctx.payload["thread"]
        # pins and tags lag behind the create event
        await asyncio.sleep(self.thread_settle)

        starter = await self._starter_message(thread)
        if starter is None:
            return
        if starter.author.bot or is_sync_marker(starter.content):
            log.debug("Thread %s was opened by the bridge, not mirroring it", thread.id)
            return

        owner, repo = await self.repo_for_thread(ctx, thread)
        if not owner or not repo:
            raise ConfigurationError(f"No repository for thread {thread.id}: tag it or set a default repository")

        sync_label = ctx.settings.sync_label
        label_names: List[str] = []
        for tag in thread.applied_tags or []:
            if not ctx.tags.is_structural(tag, [repo]) and tag.name not in label_names:
                label_names.append(tag.name)

        await ensure_label(ctx.tracker, owner, repo, sync_label)
        for name in label_names:
            await ensure_label(ctx.tracker, owner, repo, name)

        issue = await ctx.tracker.create_issue(
            owner, repo,
            title=thread.name,
            body=format_discord_author_comment(starter.author, starter.jump_url, process_message_content(starter)),
            labels=[sync_label, *label_names],
        )
        number = issue["number"]
        log.info("github.issue.created repo=%s/%s issue=%s thread=%s", owner, repo, number, thread.id)

        repo_tag = await ctx.tags.ensure_tag(ctx.forum, repo, ctx.settings.repo_tag_emoji)
        if repo_tag is not None and await ctx.tags.add_tag(thread, repo_tag):
            log.info("discord.thread.repo_tag.add thread=%s repo=%s", thread.id, repo)

        embed = build_sync_embed(
            issue,
            author_name=starter.author.name,
            author_icon=author_avatar_url(starter.author),
            body=starter.content,
        )
        sent = await thread.send(content=format_sync_marker(number, owner, repo, issue.get("html_url") or ""), embed=embed)
        await sent.pin()
        await self.cache.set(owner, repo, number, thread_id=thread.id, title=thread.name)
        log.info("discord.thread.synced repo=%s/%s issue=%s thread=%s", owner, repo, number, thread.id)

    async def thread_updated(self, ctx: EventContext) -> None:
        before, after = ctx.payload["before"], ctx.payload["after"]
        archived_changed = bool(before.archived) != bool(after.archived)
        before_ids = sorted(t.id for t in before.applied_tags or [])
        after_ids = sorted(t.id for t in after.applied_tags or [])
        tags_changed = before_ids != after_ids
        if not archived_changed and not tags_changed:
            return

        refs = synced_issue_refs(await after.pins())
        if not refs:
            return
        log.info("discord.thread.update thread=%s archived=%s tags_changed=%s", after.id, after.archived, tags_changed)

        if archived_changed:
            state = "closed" if after.archived else "open"
            for ref in refs:
                owner, repo = self._ref_repo(ctx, ref)
                if not owner or not repo:
                    log.warning("github.issue.repo.unknown thread=%s issue=%s: no default repository", after.id, ref.number)
                    continue
                log.info("github.issue.state.update repo=%s/%s issue=%s state=%s", owner, repo, ref.number, state)
                await ctx.tracker.set_issue_state(owner, repo, ref.number, state)

        if not tags_changed:
            return

        known = {t.id: t for t in ctx.forum.available_tags}
        for t in [*(before.applied_tags or []), *(after.applied_tags or [])]:
            known.setdefault(t.id, t)
        added = [known[i] for i in after_ids if i not in before_ids]
        removed = [known[i] for i in before_ids if i not in after_ids]

        repo_names = {ref.repo.lower() for ref in refs if ref.has_repo}
        if not repo_names and ctx.settings.default_repo:
            repo_names.add(ctx.settings.default_repo.lower())
        added = [t for t in added if not ctx.tags.is_structural(t, repo_names)]
        removed = [t for t in removed if not ctx.tags.is_structural(t, repo_names)]

        for ref in refs:
            owner, repo = self._ref_repo(ctx, ref)
            if not owner or not repo:
                log.warning("github.issue.repo.unknown thread=%s issue=%s: no default repository", after.id, ref.number)
                continue
            for tag in added:
                log.info("github.issue.label.add repo=%s/%s issue=%s label=%s", owner, repo, ref.number, tag.name)
                await ensure_label(ctx.tracker, owner, repo, tag.name)
                await ctx.tracker.add_labels(owner, repo, ref.number, [tag.name])
            for tag in removed:
                log.info("github.issue.label.remove repo=%s/%s issue=%s label=%s", owner, repo, ref.number, tag.name)
                try:
                    await ctx.tracker.remove_label(owner, repo, ref.number, tag.name)
                except GithubException as e:
                    if e.status != 404:
                        raise
                    log.debug("Label %s already absent from %s/%s#%s", tag.name, owner, repo, ref.number)

    # ----------------------
    # Installation repositories
    # ----------------------
    async def repo_for_thread(self, ctx: EventContext, thread: Any) -> Tuple[Optional[str], Optional[str]]:
        """Repository a new thread belongs to: its selector tag, else the default."""
        owner, repo, source, tag_name = ctx.settings.default_owner, ctx.settings.default_repo, "default", None
        selectors = [t for t in thread.applied_tags or [] if ctx.tags.is_repo_selector(t)]
        if selectors:
            repo_map = await self.installation_repo_map(ctx)
            for tag in selectors:
                record = repo_map.get(tag.name.lower())
                if record is None:
                    continue
                record_owner = (record.get("owner") or {}).get("login") or (record.get("full_name") or "").split("/")[0]
                if not record_owner:
                    continue
                owner, repo, source, tag_name = record_owner, record["name"], "tag", tag.name
                break
        log.info("discord.thread.repo.select thread=%s repo=%s/%s source=%s tag=%s", thread.id, owner, repo, source, tag_name)
        return owner, repo

    async def installation_repo_map(self, ctx: EventContext) -> Dict[str, Dict[str, Any]]:
        key = str(getattr(ctx.tracker, "installation_id", None) or "token")
        cached = self._repo_maps.get(key)
        now = time.monotonic()
        if cached is not None and cached[0] > now:
            return cached[1]

        try:
            repos = await ctx.tracker.list_repositories()
        except GithubException:
            log.exception("github.installation.repos.error installation=%s", key)
            return {}

        repo_map: Dict[str, Dict[str, Any]] = {}
        for record in repos:
            repo_map.setdefault((record.get("name") or "").lower(), record)
        self._repo_maps[key] = (now + self.repo_map_ttl, repo_map)
        log.info("github.installation.repos.refresh installation=%s count=%d", key, len(repos))
        return repo_map
