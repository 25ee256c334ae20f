"""
Persisted issue -> thread mapping used to skip the forum search.

The map lives in a Red ``Config`` custom group (``get_raw``/``set_raw`` on the
``entries`` key). Anything with that pair of coroutines can stand in for it.
"""
import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

log = logging.getLogger("red.issue_bridge.cache")

SAVE_DELAY = 2.0
ENTRIES_KEY = "entries"


@dataclass(frozen=True)
class ThreadCacheEntry:
    thread_id: str
    title: str
    updated_at: int

    def to_dict(self) -> Dict[str, Any]:
        return {"threadId": self.thread_id, "title": self.title, "updatedAt": self.updated_at}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["ThreadCacheEntry"]:
        thread_id = data.get("threadId")
        if not thread_id:
            return None
        return cls(
            thread_id=str(thread_id),
            title=str(data.get("title") or ""),
            updated_at=int(data.get("updatedAt") or 0),
        )


class ThreadCache:
    """
    In-memory map of ``owner/repo#number`` to thread references, flushed to
    the config store on a debounce timer.

    Only one flush is ever pending: mutations that arrive while it is armed
    update the map and ride along with it.
    """

    def __init__(self, store: Any, *, save_delay: float = SAVE_DELAY) -> None:
        self.store = store
        self.save_delay = save_delay
        self._entries: Dict[str, ThreadCacheEntry] = {}
        self._loaded = False
        self._load_lock = asyncio.Lock()
        self._flush_task: Optional[asyncio.Task] = None

    @staticmethod
    def key(owner: str, repo: str, number: int) -> str:
        return f"{owner.lower()}/{repo.lower()}#{number}"

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def flush_pending(self) -> bool:
        return self._flush_task is not None and not self._flush_task.done()

    # ----------------------
    # Loading
    # ----------------------
    async def load(self) -> None:
        if self._loaded:
            return
        async with self._load_lock:
            if self._loaded:
                return
            try:
                stored = await self.store.get_raw(ENTRIES_KEY, default={})
            except Exception:
                log.exception("thread_cache.load.error: starting empty")
                stored = {}

            if not isinstance(stored, dict):
                log.error("thread_cache.load.error: stored value is a %s, starting empty", type(stored).__name__)
                stored = {}
            for key, value in stored.items():
                if isinstance(value, dict):
                    entry = ThreadCacheEntry.from_dict(value)
                    if entry:
                        self._entries.setdefault(key, entry)
            log.info("thread_cache.load count=%d", len(self._entries))
            self._loaded = True

    # ----------------------
    # Access
    # ----------------------
    async def get(self, owner: Optional[str], repo: Optional[str], number: Optional[int]) -> Optional[ThreadCacheEntry]:
        if not owner or not repo or not number:
            return None
        await self.load()
        return self._entries.get(self.key(owner, repo, number))

    async def set(self, owner: Optional[str], repo: Optional[str], number: Optional[int], *, thread_id: Union[int, str], title: str) -> None:
        if not owner or not repo or not number or not thread_id:
            return
        await self.load()
        self._entries[self.key(owner, repo, number)] = ThreadCacheEntry(
            thread_id=str(thread_id),
            title=title or "",
            updated_at=int(time.time() * 1000),
        )
        self._schedule_flush()

    async def delete(self, owner: Optional[str], repo: Optional[str], number: Optional[int]) -> None:
        if not owner or not repo or not number:
            return
        await self.load()
        if self._entries.pop(self.key(owner, repo, number), None) is not None:
            self._schedule_flush()

    async def clear(self) -> None:
        await self.load()
        self._entries.clear()
        self._schedule_flush()

    # ----------------------
    # Persistence
    # ----------------------
    def _schedule_flush(self) -> None:
        if self.flush_pending:
            return
        self._flush_task = asyncio.create_task(self._delayed_flush())

    async def _delayed_flush(self) -> None:
        await asyncio.sleep(self.save_delay)
        # Mutations from here on arm a new flush instead of being dropped
        self._flush_task = None
        try:
            await self._write()
        except Exception:
            log.exception("thread_cache.save.error count=%d", len(self._entries))

    async def _write(self) -> None:
        entries = {key: entry.to_dict() for key, entry in self._entries.items()}
        await self.store.set_raw(ENTRIES_KEY, value=entries)
        log.info("thread_cache.save count=%d", len(entries))

    async def flush(self) -> None:
        """Write immediately, dropping any pending debounced write."""
        task, self._flush_task = self._flush_task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if self._loaded:
            await self._write()

    async def close(self) -> None:
        """Final flush on shutdown so the last debounce window is not lost."""
        if self.flush_pending:
            await self.flush()
