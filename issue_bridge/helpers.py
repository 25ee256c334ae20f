import re
import zlib
from typing import Any, Awaitable, Callable, Dict, List, Optional

import discord

from .config import MAX_THREAD_NAME

DISCORD_SAYS_MARKER = "** on Discord says]"
DISCORD_USERNAME_RE = re.compile(r"\*\*(.+?)\*\* on Discord says\]")
ISSUE_REF_RE = re.compile(r"(?<![\w&/])#(\d+)\b")
NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")

EMBED_DESCRIPTION_LIMIT = 4000


def clean_discord_text(text: Optional[str], limit: int = 5000) -> str:
    """Clean text for Discord by removing/replacing problematic characters."""
    if not text:
        return ""

    cleaned = text.replace("\x00", "").replace("\r\n", "\n").replace("\r", "\n")
    if len(cleaned) > limit:
        cleaned = cleaned[: limit - 3] + "..."

    cleaned = cleaned.replace("\x08", "").replace("\x0B", "").replace("\x0C", "")

    # max 3 consecutive newlines
    while "\n\n\n\n" in cleaned:
        cleaned = cleaned.replace("\n\n\n\n", "\n\n\n")

    return cleaned.strip()


def normalize_title(text: Optional[str]) -> str:
    if not text:
        return ""
    return NON_ALNUM_RE.sub(" ", text.lower()).strip()


def thread_name(title: Optional[str]) -> str:
    name = (title or "").strip() or "Untitled issue"
    return name[:MAX_THREAD_NAME]


def color_for(seed: str) -> discord.Color:
    """Stable per-author embed color."""
    return discord.Color(zlib.crc32(seed.encode("utf-8")) & 0xFFFFFF)


def tag_names(tags: List[discord.ForumTag]) -> List[str]:
    return [t.name for t in tags if t.name]


def find_tag(tags: List[discord.ForumTag], name: str) -> Optional[discord.ForumTag]:
    wanted = name.lower()
    for tag in tags:
        if tag.name.lower() == wanted:
            return tag
    return None


# ----------------------
# Discord -> GitHub
# ----------------------
def author_avatar_url(author: Any) -> str:
    avatar = getattr(author, "display_avatar", None)
    return getattr(avatar, "url", "") or ""


def format_discord_author_comment(author: Any, jump_url: str, content: str) -> str:
    """Header that attributes a GitHub comment to the Discord user who wrote it."""
    avatar = author_avatar_url(author)
    return f'[<img src="{avatar}" width="15" height="15"/> **{author.name}** on Discord says]({jump_url})\n{content}'


def extract_discord_username(comment_body: Optional[str]) -> Optional[str]:
    if not comment_body:
        return None
    m = DISCORD_USERNAME_RE.search(comment_body)
    return m.group(1) if m else None


def process_message_content(message: Any) -> str:
    """Rewrite mentions to readable markdown links and append attachments."""
    content = message.content or ""
    guild_id = getattr(message.guild, "id", None)
    mentions_channels = {c.id: c for c in getattr(message, "channel_mentions", [])}
    mentions_users = {u.id: u for u in getattr(message, "mentions", [])}
    mentions_roles = {r.id: r for r in getattr(message, "role_mentions", [])}

    def channel_link(m: re.Match) -> str:
        channel = mentions_channels.get(int(m.group(1)))
        if channel is None:
            return m.group(0)
        return f"[{channel.name}](https://discord.com/channels/{guild_id}/{channel.id})"

    def user_link(m: re.Match) -> str:
        user = mentions_users.get(int(m.group(1)))
        if user is None:
            return m.group(0)
        return f"[{user.name}]({message.jump_url})"

    def role_link(m: re.Match) -> str:
        role = mentions_roles.get(int(m.group(1)))
        if role is None:
            return m.group(0)
        return f"[{role.name}]({message.jump_url})"

    content = re.sub(r"<#(\d+)>", channel_link, content)
    content = re.sub(r"<@!?(\d+)>", user_link, content)
    content = re.sub(r"<@&(\d+)>", role_link, content)

    for attachment in getattr(message, "attachments", []):
        content += f"\n![{attachment.filename}]({attachment.url})"
    return content


# ----------------------
# GitHub -> Discord
# ----------------------
def build_sync_embed(issue: Dict[str, Any], *, author_name: str, author_icon: Optional[str] = None, author_url: Optional[str] = None, body: Optional[str] = None) -> discord.Embed:
    number = issue.get("number")
    title = clean_discord_text(issue.get("title"), 240)
    description = clean_discord_text(body if body is not None else issue.get("body"), EMBED_DESCRIPTION_LIMIT)
    embed = discord.Embed(
        title=f"#{number} {title}"[:256],
        url=issue.get("html_url") or None,
        description=description or None,
        color=color_for(author_name),
    )
    if author_icon and author_icon.startswith(("http://", "https://")):
        embed.set_author(name=author_name[:256], icon_url=author_icon, url=author_url or issue.get("html_url"))
    else:
        embed.set_author(name=author_name[:256], url=author_url or issue.get("html_url"))
    return embed


def build_comment_embed(comment: Dict[str, Any], body: Optional[str] = None) -> discord.Embed:
    user = comment.get("user") or {}
    login = user.get("login") or "GitHub"
    embed = discord.Embed(
        description=clean_discord_text(body if body is not None else comment.get("body"), EMBED_DESCRIPTION_LIMIT) or None,
        url=comment.get("html_url") or None,
        color=color_for(login),
    )
    avatar = user.get("avatar_url")
    if avatar:
        embed.set_author(name=login[:256], icon_url=avatar, url=user.get("html_url"))
    else:
        embed.set_author(name=login[:256], url=user.get("html_url"))
    return embed


def build_status_embed(issue: Dict[str, Any], sender: Dict[str, Any], closed: bool) -> discord.Embed:
    who = (sender or {}).get("login") or "someone"
    if closed:
        reason = issue.get("state_reason")
        verb = "closed as not planned" if reason == "not_planned" else "closed"
        color = discord.Color.purple()
    else:
        verb = "reopened"
        color = discord.Color.green()
    return discord.Embed(
        description=f"Issue **[#{issue.get('number')}]({issue.get('html_url')})** was {verb} by **{who}**",
        color=color,
    )


def build_milestone_embed(milestone: Dict[str, Any], added: bool) -> discord.Embed:
    verb = "Added to" if added else "Removed from"
    embed = discord.Embed(
        description=f"{verb} milestone **[{milestone.get('title')}]({milestone.get('html_url')})**",
        color=discord.Color(0x238636),
    )
    footer = milestone.get("description") or (
        f"{milestone.get('open_issues', 0)} open · {milestone.get('closed_issues', 0)} closed"
    )
    embed.set_footer(text=footer[:2048])
    return embed


def build_assignee_embed(assignee: Dict[str, Any], added: bool) -> discord.Embed:
    verb = "Assigned to" if added else "Unassigned from"
    embed = discord.Embed(
        description=f"{verb} **[{assignee.get('login')}]({assignee.get('html_url')})**",
        color=discord.Color(0x1F6FEB),
    )
    if assignee.get("avatar_url"):
        embed.set_thumbnail(url=assignee["avatar_url"])
    return embed


async def rewrite_issue_refs(content: str, resolve: Callable[[int], Awaitable[Optional[str]]]) -> str:
    """Turn ``#N`` references into links to the threads mirroring those issues.

    References ``resolve`` cannot map are left as plain text.
    """
    if not content:
        return content
    numbers = []
    for m in ISSUE_REF_RE.finditer(content):
        number = int(m.group(1))
        if number > 0 and number not in numbers:
            numbers.append(number)
    if not numbers:
        return content

    links: Dict[int, str] = {}
    for number in numbers:
        url = await resolve(number)
        if url:
            links[number] = url

    def replace(m: re.Match) -> str:
        url = links.get(int(m.group(1)))
        return f"[{m.group(0)}]({url})" if url else m.group(0)

    return ISSUE_REF_RE.sub(replace, content)
