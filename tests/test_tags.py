"""Tests for forum tag and GitHub label bookkeeping."""
import logging

import pytest
from github import GithubException

from fakes import FakeTracker, make_settings, make_tag

from issue_bridge.tags import TagManager, emoji_name, ensure_label


@pytest.fixture
def tags():
    return TagManager(make_settings())


@pytest.mark.asyncio
async def test_ensure_tag_reuses_existing_tag_ignoring_case(tags, forum):
    bug = make_tag("Bug")
    forum.available_tags.append(bug)

    assert await tags.ensure_tag(forum, "bug") is bug
    assert len(forum.available_tags) == 1


@pytest.mark.asyncio
async def test_ensure_tag_creates_missing_tag(tags, forum):
    tag = await tags.ensure_tag(forum, "widgets", "🧭")

    assert tag.name == "widgets"
    assert emoji_name(tag) == "🧭"
    assert forum.available_tags == [tag]


@pytest.mark.asyncio
async def test_ensure_tag_stops_at_forum_ceiling(tags, forum, caplog):
    forum.available_tags.extend(make_tag(f"t{i}") for i in range(20))

    with caplog.at_level(logging.WARNING, logger="red.issue_bridge.tags"):
        assert await tags.ensure_tag(forum, "one-more") is None

    assert len(forum.available_tags) == 20
    assert "discord.forum.tag.limit" in caplog.text


@pytest.mark.asyncio
async def test_ensure_tag_fixes_emoji_in_place(tags, forum):
    widgets = make_tag("widgets")
    bug = make_tag("bug")
    forum.available_tags.extend([widgets, bug])

    tag = await tags.ensure_tag(forum, "widgets", "🧭")

    assert tag.id == widgets.id
    assert emoji_name(tag) == "🧭"
    assert [t.id for t in forum.edits[0]["available_tags"]] == [widgets.id, bug.id]


@pytest.mark.asyncio
async def test_sixth_tag_is_skipped(tags, forum, caplog):
    applied = [make_tag(f"t{i}") for i in range(5)]
    thread = forum.add_thread("Full", applied_tags=applied)

    with caplog.at_level(logging.WARNING, logger="red.issue_bridge.tags"):
        assert await tags.add_tag(thread, make_tag("extra")) is False

    assert thread.applied_tags == applied
    assert thread.edits == []
    assert "discord.thread.tag.limit" in caplog.text


@pytest.mark.asyncio
async def test_add_tags_applies_what_fits_in_one_edit(tags, forum):
    thread = forum.add_thread("Almost full", applied_tags=[make_tag(f"t{i}") for i in range(4)])
    first, second = make_tag("first"), make_tag("second")

    assert await tags.add_tags(thread, [first, None, second]) == 1

    assert len(thread.edits) == 1
    assert thread.applied_tags[-1] is first


@pytest.mark.asyncio
async def test_remove_tag_only_edits_when_present(tags, forum):
    bug = make_tag("bug")
    thread = forum.add_thread("T", applied_tags=[bug])

    assert await tags.remove_tag(thread, make_tag("other")) is False
    assert await tags.remove_tag(thread, bug) is True
    assert thread.applied_tags == []
    assert len(thread.edits) == 1


def test_structural_tags(tags):
    assert tags.is_structural("🔵-synced")
    assert tags.is_structural(make_tag("widgets", "🧭"))
    assert tags.is_structural("Widgets", ["widgets"])
    assert tags.is_structural(make_tag("done", "✅"))
    assert tags.is_structural("closed")
    assert tags.is_structural("✅closed")
    assert not tags.is_structural("closed", include_closed=False)
    assert not tags.is_structural(make_tag("bug"))


def test_label_tag_names_drop_structural_labels(tags):
    labels = [{"name": "🔵-synced"}, {"name": "bug"}, {"name": "widgets"}, {"name": "bug"}, {"name": "closed"}]

    assert tags.label_tag_names(labels, ["widgets"]) == ["bug"]


@pytest.mark.asyncio
async def test_closed_tag_keeps_legacy_name(tags, forum):
    legacy = make_tag("✅closed")
    forum.available_tags.append(legacy)

    assert await tags.ensure_closed_tag(forum) is legacy
    assert forum.edits == []


@pytest.mark.asyncio
async def test_closed_tag_is_created_when_missing(tags, forum):
    tag = await tags.ensure_closed_tag(forum)

    assert tag.name == "closed"
    assert emoji_name(tag) == "✅"


@pytest.mark.asyncio
async def test_ensure_label_creates_on_404():
    tracker = FakeTracker()

    assert await ensure_label(tracker, "owner", "repo", "bug") == "bug"
    assert tracker.calls_to("create_label") == [("create_label", "owner", "repo", "bug")]

    await ensure_label(tracker, "owner", "repo", "bug")
    assert len(tracker.calls_to("create_label")) == 1


@pytest.mark.asyncio
async def test_ensure_label_reraises_other_errors():
    tracker = FakeTracker()

    async def broken(owner, repo, name):
        raise GithubException(500, {"message": "oops"}, None)

    tracker.get_label = broken

    with pytest.raises(GithubException):
        await ensure_label(tracker, "owner", "repo", "bug")
    assert tracker.calls_to("create_label") == []
