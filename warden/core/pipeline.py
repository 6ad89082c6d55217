import asyncio
import enum
import logging
from collections import deque
from typing import Deque, Optional, Set

from warden.core.dedup import DedupCache
from warden.core.normalize import normalize
from warden.core.scheduler import DeletionScheduler
from warden.platform.base import ChatMessage, Platform, PlatformError
from warden.storage.audit import AuditLog

logger = logging.getLogger(__name__)


class Outcome(str, enum.Enum):
    IGNORED = "ignored"
    ALREADY_PROCESSED = "already_processed"
    DUPLICATE = "duplicate"
    ACCEPTED = "accepted"


class MessagePipeline:
    def __init__(
        self,
        channel_id: int,
        cache: DedupCache,
        platform: Platform,
        scheduler: Optional[DeletionScheduler] = None,
        *,
        dedup_enabled: bool = True,
        dedupe_empty: bool = True,
        audit_log: Optional[AuditLog] = None,
        recent_ids: int = 2000,
        persist_every: int = 1,
    ):
        self.channel_id = channel_id
        self.cache = cache
        self.platform = platform
        self.scheduler = scheduler
        self.dedup_enabled = dedup_enabled
        self.dedupe_empty = dedupe_empty
        self.audit_log = audit_log
        self.persist_every = max(1, persist_every)
        self._unsaved = 0
        self._recent: Deque[int] = deque(maxlen=recent_ids)
        self._recent_set: Set[int] = set()
        self._live = asyncio.Event()
        self._catch_up_lock = asyncio.Lock()

    @property
    def live(self) -> bool:
        return self._live.is_set()

    def open_gate(self) -> None:
        self._live.set()

    async def handle(self, message: ChatMessage) -> Outcome:
        if message.channel_id != self.channel_id:
            logger.debug(
                "忽略非监控频道消息 channel=%s message=%s",
                message.channel_id,
                message.id,
            )
            return Outcome.IGNORED
        await self._live.wait()
        try:
            return await self.process_message(message)
        except Exception:
            logger.exception("处理消息失败 message=%s", message.id)
            return Outcome.IGNORED

    async def process_message(
        self, message: ChatMessage, *, persist: bool = True
    ) -> Outcome:
        if not self._remember(message.id):
            return Outcome.ALREADY_PROCESSED

        key = normalize(message.content)
        if self.dedup_enabled and (key or self.dedupe_empty):
            if not await self.cache.try_insert(key):
                await self._delete_duplicate(message)
                return Outcome.DUPLICATE

        await self.cache.advance_high_water_mark(message.id)
        # 先排队再落盘：保存失败不能让到期删除丢失
        if self.scheduler is not None:
            await self.scheduler.enqueue(
                message.channel_id, message.id, message.created_at
            )
        if persist:
            self._unsaved += 1
            if self._unsaved >= self.persist_every:
                await self.flush()
        return Outcome.ACCEPTED

    async def flush(self) -> bool:
        try:
            await self.cache.persist()
        except OSError:
            logger.exception("保存去重状态失败，下次保存时重试")
            return False
        self._unsaved = 0
        return True

    def _remember(self, message_id: int) -> bool:
        if message_id in self._recent_set:
            return False
        if len(self._recent) == self._recent.maxlen:
            self._recent_set.discard(self._recent[0])
        self._recent.append(message_id)
        self._recent_set.add(message_id)
        return True

    async def _delete_duplicate(self, message: ChatMessage) -> None:
        try:
            await self.platform.delete_message(message.channel_id, message.id)
        except PlatformError as exc:
            logger.warning("删除重复消息失败 message=%s: %s", message.id, exc)
            self._audit(
                "duplicate_delete_failed",
                {"message": message.id, "author": message.author_id, "error": str(exc)},
            )
            return
        logger.info("已删除重复消息 message=%s author=%s", message.id, message.author_id)
        self._audit("duplicate_deleted", {"message": message.id, "author": message.author_id})

    def _audit(self, event: str, detail: dict) -> None:
        if self.audit_log is not None:
            self.audit_log.add(event, detail)

    async def catch_up(self, *, initial_limit: int = 100, page_size: int = 100) -> int:
        async def fetch_page(after: Optional[int], limit: int):
            return await self.platform.fetch_history(
                self.channel_id, after=after, limit=limit
            )

        async def process(message: ChatMessage) -> Outcome:
            return await self.process_message(message, persist=False)

        async with self._catch_up_lock:
            self._live.clear()
            try:
                return await self.cache.catch_up(
                    fetch_page,
                    process,
                    initial_limit=initial_limit,
                    page_size=page_size,
                )
            finally:
                self._live.set()
