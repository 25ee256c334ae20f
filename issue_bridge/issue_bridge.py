from __future__ import annotations

from typing import Optional

import logging

import discord
from redbot.core import checks, commands, Config
from redbot.core.bot import Red
from redbot.core.utils import chat_formatting

from .cache import ThreadCache
from .config import DEFAULT_GLOBAL_CONFIG, THREAD_CACHE_GROUP, THREAD_CACHE_SCOPE, BridgeSettings
from .dispatcher import EventDispatcher
from .events import BridgeEvent, EventKind
from .handlers import SyncHandlers
from .webhook import WebhookServer


class IssueBridge(commands.Cog):
    """
    Mirror GitHub issues into a Discord forum channel, and back.

    - GitHub webhooks open, comment on, close, relabel and rename forum threads
    - Messages, new threads, tag edits and archiving in the forum flow back to GitHub
    - Threads are found again through the sync marker pinned in each of them
    """

    def __init__(self, bot: Red) -> None:
        self.bot = bot
        self.config = Config.get_conf(self, identifier=908039527271104515, force_registration=True)
        self.config.register_global(**DEFAULT_GLOBAL_CONFIG)

        # Issue -> thread cache, kept out of the global settings snapshot
        self.config.init_custom(THREAD_CACHE_GROUP, 1)
        self.config.register_custom(THREAD_CACHE_GROUP, entries={})
        self.log = logging.getLogger(f"red.{__name__}")

        self.cache: Optional[ThreadCache] = None
        self.handlers: Optional[SyncHandlers] = None
        self.dispatcher: Optional[EventDispatcher] = None
        self.webhook: Optional[WebhookServer] = None

    async def settings(self) -> BridgeSettings:
        return BridgeSettings.from_config(await self.config.all())

    # ----------------------
    # Lifecycle
    # ----------------------
    async def cog_load(self) -> None:
        settings = await self.settings()
        self.cache = ThreadCache(self.config.custom(THREAD_CACHE_GROUP, THREAD_CACHE_SCOPE))
        self.handlers = SyncHandlers(self.bot, self.cache)
        self.dispatcher = EventDispatcher(self.bot, self.handlers, self.settings)
        await self._restart_webhook(settings)

    async def cog_unload(self) -> None:
        if self.webhook is not None:
            await self.webhook.stop()
            self.webhook = None
        if self.cache is not None:
            await self.cache.close()
            self.log.debug("Thread cache flushed on unload")

    async def _restart_webhook(self, settings: BridgeSettings) -> None:
        if self.webhook is not None:
            await self.webhook.stop()
            self.webhook = None
        if not settings.webhook_enabled:
            return
        self.webhook = WebhookServer(
            self.dispatcher,
            host=settings.webhook_host,
            port=settings.webhook_port,
            path=settings.webhook_path,
            secret=settings.webhook_secret,
        )
        try:
            await self.webhook.start()
        except OSError:
            self.log.exception("server.start.error host=%s port=%s", settings.webhook_host, settings.webhook_port)
            self.webhook = None

    async def _delete_secret(self, ctx: commands.Context) -> None:
        try:
            await ctx.message.delete()
        except discord.HTTPException:
            self.log.debug("Could not delete message carrying a secret in channel %s", ctx.channel.id)

    # ----------------------
    # Configuration Commands
    # ----------------------
    @commands.group(name="ghbridgeset")
    @checks.is_owner()
    async def ghbridgeset(self, ctx: commands.Context) -> None:
        """Configure the GitHub issue bridge."""

    @ghbridgeset.command(name="forum")
    async def ghbridgeset_forum(self, ctx: commands.Context, channel: discord.ForumChannel) -> None:
        """Set the forum channel that mirrors GitHub issues."""
        await self.config.forum_channel_id.set(channel.id)
        self.log.debug("Forum set: %s (%s)", channel.name, channel.id)
        await ctx.send(f"✅ Issues forum set to {channel.mention}.")

    @ghbridgeset.command(name="repo")
    async def ghbridgeset_repo(self, ctx: commands.Context, owner: str, repo: str) -> None:
        """Set the default repository as OWNER REPO (space separated).

        Threads without a repository tag open their issue here.
        """
        await self.config.default_owner.set(owner)
        await self.config.default_repo.set(repo)
        self.log.debug("Default repo configured to %s/%s", owner, repo)
        await ctx.send(f"✅ Default repository set to `{owner}/{repo}`.")

    @ghbridgeset.command(name="app")
    async def ghbridgeset_app(self, ctx: commands.Context, app_id: int, *, private_key: Optional[str] = None) -> None:
        """Set the GitHub App id and private key.

        The key may be pasted after the id or attached as a `.pem` file.
        """
        if private_key is None and ctx.message.attachments:
            private_key = (await ctx.message.attachments[0].read()).decode("utf-8", errors="replace")
        if not private_key or "PRIVATE KEY" not in private_key:
            await ctx.send("❌ That does not look like a PEM private key.")
            return
        await self.config.app_id.set(app_id)
        await self.config.private_key.set(private_key.strip())
        await self._delete_secret(ctx)
        await ctx.send(f"✅ GitHub App `{app_id}` configured.")

    @ghbridgeset.command(name="installation")
    async def ghbridgeset_installation(self, ctx: commands.Context, installation_id: Optional[int] = None) -> None:
        """Pin the App installation id, or clear it to look it up per repository."""
        await self.config.installation_id.set(installation_id)
        if installation_id:
            await ctx.send(f"✅ Installation set to `{installation_id}`.")
        else:
            await ctx.send("✅ Installation will be looked up from webhooks and the default repository.")

    @ghbridgeset.command(name="token")
    async def ghbridgeset_token(self, ctx: commands.Context, token: Optional[str] = None) -> None:
        """Set a personal access token, used when no App installation is available."""
        await self.config.github_token.set(token)
        await self._delete_secret(ctx)
        await ctx.send("✅ GitHub token set." if token else "✅ GitHub token cleared.")

    @ghbridgeset.command(name="botlogin")
    async def ghbridgeset_botlogin(self, ctx: commands.Context, login: str) -> None:
        """Set the GitHub login whose comments are never mirrored back."""
        await self.config.bot_login.set(login)
        await ctx.send(f"✅ Bridge login set to `{login}`.")

    @ghbridgeset.command(name="tags")
    async def ghbridgeset_tags(
        self,
        ctx: commands.Context,
        repo_emoji: Optional[str] = None,
        closed_name: Optional[str] = None,
        closed_emoji: Optional[str] = None,
    ) -> None:
        """Override the repository tag emoji and the closed tag name/emoji.

        Run without arguments to restore the defaults.
        """
        await self.config.repo_tag_emoji.set(repo_emoji or DEFAULT_GLOBAL_CONFIG["repo_tag_emoji"])
        await self.config.closed_tag_name.set(closed_name or DEFAULT_GLOBAL_CONFIG["closed_tag_name"])
        await self.config.closed_tag_emoji.set(closed_emoji or DEFAULT_GLOBAL_CONFIG["closed_tag_emoji"])
        settings = await self.settings()
        await ctx.send(
            f"✅ Repository tags use {settings.repo_tag_emoji}, "
            f"closed tag is {settings.closed_tag_emoji} `{settings.closed_tag_name}`."
        )

    @ghbridgeset.command(name="webhook")
    async def ghbridgeset_webhook(
        self,
        ctx: commands.Context,
        enabled: bool,
        port: Optional[int] = None,
        secret: Optional[str] = None,
    ) -> None:
        """Enable or disable the webhook receiver, optionally with its port and secret."""
        await self.config.webhook_enabled.set(enabled)
        if port is not None:
            await self.config.webhook_port.set(port)
        if secret is not None:
            await self.config.webhook_secret.set(secret)
            await self._delete_secret(ctx)
        settings = await self.settings()
        await self._restart_webhook(settings)
        if not enabled:
            await ctx.send("✅ Webhook receiver stopped.")
        elif self.webhook is None:
            await ctx.send(f"❌ Could not listen on port {settings.webhook_port}, check the logs.")
        else:
            await ctx.send(
                f"✅ Listening on `{settings.webhook_host}:{settings.webhook_port}{settings.webhook_path}`."
            )

    @ghbridgeset.command(name="show")
    async def ghbridgeset_show(self, ctx: commands.Context) -> None:
        """Show the current bridge configuration."""
        settings = await self.settings()
        forum = f"<#{settings.forum_channel_id}>" if settings.forum_channel_id else "Not set"
        lines = [
            f"forum: {settings.forum_channel_id or 'Not set'}",
            f"default_repo: {settings.default_owner or 'Not set'}/{settings.default_repo or 'Not set'}",
            f"app: {settings.app_id or 'Not set'} (key {'set' if settings.private_key else 'not set'})",
            f"installation: {settings.installation_id or 'auto'}",
            f"token: {'Set' if settings.github_token else 'Not set'}",
            f"bot_login: {settings.bot_login}",
            f"sync_label: {settings.sync_label}",
            f"repo_tag_emoji: {settings.repo_tag_emoji}",
            f"closed_tag: {settings.closed_tag_emoji} {settings.closed_tag_name}",
            f"webhook: {'running' if self.webhook and self.webhook.running else 'stopped'} "
            f"({settings.webhook_host}:{settings.webhook_port}{settings.webhook_path}, "
            f"secret {'set' if settings.webhook_secret else 'not set'})",
            f"cached_threads: {len(self.cache) if self.cache is not None else 0}",
        ]
        await ctx.send(f"Forum: {forum}\n" + chat_formatting.box("\n".join(lines), "yaml"))

    @ghbridgeset.command(name="clearcache")
    async def ghbridgeset_clearcache(self, ctx: commands.Context) -> None:
        """Forget every cached issue -> thread mapping. Threads are found again by search."""
        if self.cache is None:
            return
        await self.cache.clear()
        await self.cache.flush()
        await ctx.send("✅ Thread cache cleared.")

    # ----------------------
    # Discord -> GitHub: listeners
    # ----------------------
    async def _in_forum(self, channel: object) -> bool:
        forum_id = await self.config.forum_channel_id()
        return bool(forum_id) and getattr(channel, "parent_id", None) == forum_id

    @commands.Cog.listener()
    async def on_message(self, message: discord.Message) -> None:
        if message.author.bot or not message.guild or self.dispatcher is None:
            return
        if not isinstance(message.channel, discord.Thread):
            return
        if not await self._in_forum(message.channel):
            return
        await self.dispatcher.dispatch(BridgeEvent.from_discord(EventKind.MESSAGE_CREATED, message=message))

    @commands.Cog.listener()
    async def on_thread_create(self, thread: discord.Thread) -> None:
        if self.dispatcher is None or not await self._in_forum(thread):
            return
        self.log.debug("on_thread_create: thread=%s parent=%s", thread.id, thread.parent_id)
        await self.dispatcher.dispatch(BridgeEvent.from_discord(EventKind.THREAD_CREATED, thread=thread))

    @commands.Cog.listener()
    async def on_thread_update(self, before: discord.Thread, after: discord.Thread) -> None:
        if self.dispatcher is None or not await self._in_forum(after):
            return
        await self.dispatcher.dispatch(BridgeEvent.from_discord(EventKind.THREAD_UPDATED, before=before, after=after))
