"""
Routing of inbound events to sync handlers.

Every event runs in its own session: the bot is ready, a GitHub client is
opened for the event's installation, and the client is closed again whatever
the handler does. Failures stop at this boundary and end up in the log.
"""
import contextlib
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

import discord

from .config import BridgeSettings
from .errors import ConfigurationError, MissingIdentityError
from .events import BridgeEvent, EventContext, EventKind
from .handlers import SyncHandlers
from .locator import ThreadLocator
from .tags import TagManager
from .tracker import TrackerClient, find_installation_id

log = logging.getLogger("red.issue_bridge.dispatcher")

Handler = Callable[[SyncHandlers, EventContext], Awaitable[None]]


class EventDispatcher:
    ROUTES: Dict[EventKind, Handler] = {
        EventKind.ISSUE_OPENED: SyncHandlers.issue_opened,
        EventKind.ISSUE_CLOSED: SyncHandlers.issue_closed,
        EventKind.ISSUE_REOPENED: SyncHandlers.issue_reopened,
        EventKind.ISSUE_EDITED: SyncHandlers.issue_edited,
        EventKind.ISSUE_LABELED: SyncHandlers.issue_labeled,
        EventKind.ISSUE_UNLABELED: SyncHandlers.issue_unlabeled,
        EventKind.ISSUE_MILESTONED: SyncHandlers.issue_milestoned,
        EventKind.ISSUE_DEMILESTONED: SyncHandlers.issue_demilestoned,
        EventKind.ISSUE_ASSIGNED: SyncHandlers.issue_assigned,
        EventKind.ISSUE_UNASSIGNED: SyncHandlers.issue_unassigned,
        EventKind.COMMENT_CREATED: SyncHandlers.comment_created,
        EventKind.MESSAGE_CREATED: SyncHandlers.message_created,
        EventKind.THREAD_CREATED: SyncHandlers.thread_created,
        EventKind.THREAD_UPDATED: SyncHandlers.thread_updated,
    }

    def __init__(
        self,
        bot: Any,
        handlers: SyncHandlers,
        settings_loader: Callable[[], Awaitable[BridgeSettings]],
        *,
        tracker_factory: Callable[[BridgeSettings, Optional[int]], Any] = TrackerClient.open,
        installation_lookup: Callable[..., Awaitable[Optional[int]]] = find_installation_id,
    ) -> None:
        self.bot = bot
        self.handlers = handlers
        self.settings_loader = settings_loader
        self.tracker_factory = tracker_factory
        self.installation_lookup = installation_lookup

    async def dispatch(self, event: BridgeEvent) -> None:
        route = self.ROUTES.get(event.kind)
        if route is None:
            log.debug("No handler for %s", event.kind)
            return
        try:
            settings = await self.settings_loader()
            async with self.session(event, settings) as ctx:
                await route(self.handlers, ctx)
        except (MissingIdentityError, ConfigurationError) as e:
            log.error(
                "bridge.event.dropped kind=%s repo=%s issue=%s thread=%s: %s",
                event.kind.value, event.full_name, event.issue_number, event.thread_id, e,
            )
        except Exception:
            log.exception(
                "bridge.event.error kind=%s repo=%s issue=%s thread=%s delivery=%s",
                event.kind.value, event.full_name, event.issue_number, event.thread_id, event.delivery_id,
            )

    @contextlib.asynccontextmanager
    async def session(self, event: BridgeEvent, settings: BridgeSettings) -> AsyncIterator[EventContext]:
        await self.bot.wait_until_ready()
        forum = await self.resolve_forum(settings)

        owner = event.owner or settings.default_owner
        repo = event.repo or settings.default_repo
        installation_id = event.installation_id or await self.installation_lookup(settings, owner, repo)
        if not installation_id and not settings.github_token:
            raise MissingIdentityError(f"No installation for {owner}/{repo} and no token configured")

        tracker = self.tracker_factory(settings, installation_id)
        log.debug("Session opened for %s (installation=%s)", event.kind.value, installation_id)
        try:
            tags = TagManager(settings)
            yield EventContext(
                event=event,
                settings=settings,
                tracker=tracker,
                forum=forum,
                tags=tags,
                locator=ThreadLocator(self.bot, self.handlers.cache, tags),
                owner=owner,
                repo=repo,
            )
        finally:
            tracker.close()
            log.debug("Session closed for %s", event.kind.value)

    async def resolve_forum(self, settings: BridgeSettings) -> Any:
        if not settings.forum_channel_id:
            raise ConfigurationError("No forum channel configured")
        channel_id = int(settings.forum_channel_id)
        channel = self.bot.get_channel(channel_id)
        if channel is None:
            try:
                channel = await self.bot.fetch_channel(channel_id)
            except discord.HTTPException as e:
                raise ConfigurationError(f"Forum channel {channel_id} is not reachable: {e}") from e
        if getattr(channel, "type", None) != discord.ChannelType.forum:
            raise ConfigurationError(f"Channel {channel_id} is not a forum channel")
        return channel
