"""Discord -> GitHub handlers: messages, new threads and thread updates."""
import pytest
from github import GithubException

from fakes import BOT_USER, FakeAuthor, FakeMessage, FakeThread, make_ctx, make_settings, make_tag

from issue_bridge.events import EventKind
from issue_bridge.handlers import SyncHandlers
from issue_bridge.markers import SyncedIssueRef, format_sync_marker, parse_sync_marker
from issue_bridge.tags import emoji_name

SYNC = "🔵-synced"


def marker(number, owner="owner", repo="repo"):
    return format_sync_marker(number, owner, repo, f"https://github.com/{owner}/{repo}/issues/{number}")


@pytest.fixture
def handlers(bot, cache):
    return SyncHandlers(bot, cache, comment_settle=0, thread_settle=0)


def synced_thread(forum, number=42, **kwargs):
    thread = forum.add_thread("Crash on startup", pins=[marker(number)], **kwargs)
    thread.messages.append(FakeMessage(marker(number), author=BOT_USER, channel=thread, message_id=thread.id))
    return thread


def post(thread, content, author=None):
    message = FakeMessage(content, author=author or FakeAuthor("alice"), channel=thread)
    thread.messages.append(message)
    return message


# ----------------------
# New messages
# ----------------------
@pytest.mark.asyncio
async def test_message_becomes_attributed_comment(bot, forum, tracker, cache, handlers):
    tracker.add_issue("owner", "repo", 42, "Crash", (SYNC,))
    thread = synced_thread(forum)
    message = post(thread, "It also happens on Linux")

    await handlers.message_created(make_ctx(bot, forum, tracker, cache, EventKind.MESSAGE_CREATED, {"message": message}))

    [call] = tracker.calls_to("create_comment")
    body = call[4]
    assert "**alice** on Discord says" in body
    assert message.jump_url in body
    assert body.endswith("\nIt also happens on Linux")


@pytest.mark.asyncio
async def test_consecutive_messages_from_same_author_are_merged(bot, forum, tracker, cache, handlers):
    tracker.add_issue("owner", "repo", 42, "Crash", (SYNC,))
    thread = synced_thread(forum)

    first = post(thread, "first")
    await handlers.message_created(make_ctx(bot, forum, tracker, cache, EventKind.MESSAGE_CREATED, {"message": first}))
    second = post(thread, "second")
    await handlers.message_created(make_ctx(bot, forum, tracker, cache, EventKind.MESSAGE_CREATED, {"message": second}))

    assert len(tracker.calls_to("create_comment")) == 1
    [edit] = tracker.calls_to("edit_comment")
    assert edit[5].endswith("first\nsecond")
    assert tracker.comments[("owner", "repo", 42)][0]["body"].endswith("first\nsecond")


@pytest.mark.asyncio
async def test_different_author_starts_new_comment(bot, forum, tracker, cache, handlers):
    tracker.add_issue("owner", "repo", 42, "Crash", (SYNC,))
    thread = synced_thread(forum)

    for author in ("alice", "bob"):
        message = post(thread, f"from {author}", FakeAuthor(author))
        await handlers.message_created(make_ctx(bot, forum, tracker, cache, EventKind.MESSAGE_CREATED, {"message": message}))

    assert len(tracker.calls_to("create_comment")) == 2
    assert tracker.calls_to("edit_comment") == []


@pytest.mark.asyncio
async def test_starter_and_bot_messages_are_not_mirrored(bot, forum, tracker, cache, handlers):
    thread = synced_thread(forum)
    bot_message = post(thread, "beep", BOT_USER)

    for message in (thread.messages[0], bot_message):
        await handlers.message_created(make_ctx(bot, forum, tracker, cache, EventKind.MESSAGE_CREATED, {"message": message}))

    assert tracker.calls == []


@pytest.mark.asyncio
async def test_unsynced_thread_message_is_ignored(bot, forum, tracker, cache, handlers):
    thread = forum.add_thread("Chat")
    post(thread, "starter")
    message = post(thread, "reply")

    await handlers.message_created(make_ctx(bot, forum, tracker, cache, EventKind.MESSAGE_CREATED, {"message": message}))

    assert tracker.calls == []


@pytest.mark.asyncio
async def test_message_backfills_repository_tag(bot, forum, tracker, cache, handlers):
    tracker.add_issue("owner", "repo", 42, "Crash", (SYNC,))
    thread = synced_thread(forum)
    message = post(thread, "hi")

    await handlers.message_created(make_ctx(bot, forum, tracker, cache, EventKind.MESSAGE_CREATED, {"message": message}))

    assert [(t.name, emoji_name(t)) for t in thread.applied_tags] == [("repo", "🧭")]


@pytest.mark.asyncio
async def test_message_is_mirrored_to_every_linked_issue(bot, forum, tracker, cache, handlers):
    tracker.add_issue("owner", "repo", 42, "Crash", (SYNC,))
    tracker.add_issue("acme", "widgets", 7, "Old", (SYNC,))
    thread = synced_thread(forum)
    thread.pinned.append(FakeMessage(marker(7, "acme", "widgets"), author=BOT_USER, channel=thread))
    message = post(thread, "both")

    await handlers.message_created(make_ctx(bot, forum, tracker, cache, EventKind.MESSAGE_CREATED, {"message": message}))

    assert [c[1:4] for c in tracker.calls_to("create_comment")] == [("owner", "repo", 42), ("acme", "widgets", 7)]
    assert {t.name for t in thread.applied_tags} == {"repo", "widgets"}


# ----------------------
# New threads
# ----------------------
@pytest.mark.asyncio
async def test_new_thread_opens_issue_and_pins_marker(bot, forum, tracker, cache, handlers):
    bug = make_tag("bug")
    forum.available_tags.append(bug)
    thread = forum.add_thread("Game freezes", applied_tags=[bug])
    post(thread, "It freezes after the intro")

    await handlers.thread_created(make_ctx(bot, forum, tracker, cache, EventKind.THREAD_CREATED, {"thread": thread}))

    assert [c[3] for c in tracker.calls_to("create_label")] == [SYNC, "bug"]
    [create] = tracker.calls_to("create_issue")
    assert create[1:4] == ("owner", "repo", "Game freezes")
    assert "**alice** on Discord says" in create[4]
    assert create[5] == [SYNC, "bug"]

    ref = parse_sync_marker(thread.sent[0].content)
    assert ref == SyncedIssueRef(100, "owner", "repo")
    assert thread.pinned == [thread.sent[0]]
    assert {t.name for t in thread.applied_tags} == {"bug", "repo"}
    assert (await cache.get("owner", "repo", 100)).thread_id == str(thread.id)


@pytest.mark.asyncio
async def test_bridge_created_thread_is_not_mirrored_back(bot, forum, tracker, cache, handlers):
    created = await forum.create_thread(name="Crash", content=marker(42))

    await handlers.thread_created(make_ctx(bot, forum, tracker, cache, EventKind.THREAD_CREATED, {"thread": created.thread}))

    assert tracker.calls == []


@pytest.mark.asyncio
async def test_repository_tag_picks_target_repository(bot, forum, tracker, cache, handlers):
    widgets = make_tag("Widgets", "🧭")
    forum.available_tags.append(widgets)
    tracker.repositories = [{"name": "widgets", "full_name": "acme/widgets", "owner": {"login": "acme"}}]

    for title in ("First", "Second"):
        thread = forum.add_thread(title, applied_tags=[widgets])
        post(thread, "body")
        await handlers.thread_created(make_ctx(bot, forum, tracker, cache, EventKind.THREAD_CREATED, {"thread": thread}))

    assert [c[1:3] for c in tracker.calls_to("create_issue")] == [("acme", "widgets"), ("acme", "widgets")]
    assert [c[5] for c in tracker.calls_to("create_issue")] == [[SYNC], [SYNC]]
    assert len(tracker.calls_to("list_repositories")) == 1


@pytest.mark.asyncio
async def test_unknown_repository_tag_falls_back_to_default(bot, forum, tracker, cache, handlers):
    gadgets = make_tag("gadgets", "🧭")
    forum.available_tags.append(gadgets)
    thread = forum.add_thread("Third", applied_tags=[gadgets])
    post(thread, "body")

    await handlers.thread_created(make_ctx(bot, forum, tracker, cache, EventKind.THREAD_CREATED, {"thread": thread}))

    [create] = tracker.calls_to("create_issue")
    assert create[1:3] == ("owner", "repo")


# ----------------------
# Thread updates
# ----------------------
def updated(forum, thread, **before_state):
    before = FakeThread(thread.name, forum, thread_id=thread.id, **before_state)
    return {"before": before, "after": thread}


@pytest.mark.asyncio
async def test_removed_tag_removes_label_but_not_repository_tag(bot, forum, tracker, cache, handlers):
    repo_tag, bug = make_tag("repo", "🧭"), make_tag("bug")
    forum.available_tags.extend([repo_tag, bug])
    tracker.add_issue("owner", "repo", 42, "Crash", (SYNC, "bug"))
    thread = synced_thread(forum, applied_tags=[repo_tag])

    payload = updated(forum, thread, applied_tags=[repo_tag, bug])
    await handlers.thread_updated(make_ctx(bot, forum, tracker, cache, EventKind.THREAD_UPDATED, payload))

    assert tracker.calls_to("remove_label") == [("remove_label", "owner", "repo", 42, "bug")]
    assert tracker.calls_to("add_labels") == []


@pytest.mark.asyncio
async def test_added_tag_adds_label(bot, forum, tracker, cache, handlers):
    bug = make_tag("bug")
    forum.available_tags.append(bug)
    tracker.add_issue("owner", "repo", 42, "Crash", (SYNC,))
    thread = synced_thread(forum, applied_tags=[bug])

    await handlers.thread_updated(make_ctx(bot, forum, tracker, cache, EventKind.THREAD_UPDATED, updated(forum, thread)))

    assert tracker.calls_to("create_label") == [("create_label", "owner", "repo", "bug")]
    assert tracker.calls_to("add_labels") == [("add_labels", "owner", "repo", 42, ["bug"])]


@pytest.mark.asyncio
async def test_removing_absent_label_is_not_an_error(bot, forum, tracker, cache, handlers):
    bug = make_tag("bug")
    forum.available_tags.append(bug)
    tracker.add_issue("owner", "repo", 42, "Crash", (SYNC,))
    thread = synced_thread(forum)

    await handlers.thread_updated(
        make_ctx(bot, forum, tracker, cache, EventKind.THREAD_UPDATED, updated(forum, thread, applied_tags=[bug]))
    )

    assert len(tracker.calls_to("remove_label")) == 1


@pytest.mark.asyncio
async def test_removing_label_surfaces_other_errors(bot, forum, tracker, cache, handlers):
    bug = make_tag("bug")
    forum.available_tags.append(bug)
    thread = synced_thread(forum)

    async def broken(*args):
        raise GithubException(502, {"message": "bad gateway"}, None)

    tracker.remove_label = broken

    with pytest.raises(GithubException):
        await handlers.thread_updated(
            make_ctx(bot, forum, tracker, cache, EventKind.THREAD_UPDATED, updated(forum, thread, applied_tags=[bug]))
        )


@pytest.mark.asyncio
async def test_closed_tag_is_not_a_label(bot, forum, tracker, cache, handlers):
    closed = make_tag("closed", "✅")
    forum.available_tags.append(closed)
    thread = synced_thread(forum, applied_tags=[closed])

    await handlers.thread_updated(make_ctx(bot, forum, tracker, cache, EventKind.THREAD_UPDATED, updated(forum, thread)))

    assert tracker.calls == []


@pytest.mark.asyncio
async def test_archiving_closes_and_unarchiving_reopens(bot, forum, tracker, cache, handlers):
    thread = synced_thread(forum, archived=True)

    await handlers.thread_updated(make_ctx(bot, forum, tracker, cache, EventKind.THREAD_UPDATED, updated(forum, thread)))
    thread.archived = False
    await handlers.thread_updated(
        make_ctx(bot, forum, tracker, cache, EventKind.THREAD_UPDATED, updated(forum, thread, archived=True))
    )

    assert [c[4] for c in tracker.calls_to("set_issue_state")] == ["closed", "open"]


@pytest.mark.asyncio
async def test_unrelated_update_reads_nothing(bot, forum, tracker, cache, handlers):
    thread = synced_thread(forum)

    await handlers.thread_updated(make_ctx(bot, forum, tracker, cache, EventKind.THREAD_UPDATED, updated(forum, thread)))

    assert thread.pins_calls == 0
    assert tracker.calls == []


@pytest.mark.asyncio
async def test_marker_without_repository_is_skipped_when_no_default(bot, forum, tracker, cache, handlers):
    thread = forum.add_thread("Crash", pins=["`synced with issue #5`", marker(42)], archived=True)
    settings = make_settings(default_owner=None, default_repo=None)

    await handlers.thread_updated(
        make_ctx(bot, forum, tracker, cache, EventKind.THREAD_UPDATED, updated(forum, thread), settings=settings)
    )

    assert tracker.calls_to("set_issue_state") == [("set_issue_state", "owner", "repo", 42, "closed")]
