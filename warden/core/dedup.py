import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Sequence

from warden.platform.base import ChatMessage, PlatformError
from warden.storage.state_store import DedupState, StateStore

logger = logging.getLogger(__name__)


FetchPage = Callable[[Optional[int], int], Awaitable[Sequence[ChatMessage]]]
ProcessMessage = Callable[[ChatMessage], Awaitable[Any]]


class DedupCache:
    def __init__(
        self,
        state: Optional[DedupState] = None,
        store: Optional[StateStore] = None,
    ):
        self.state = state or DedupState()
        self.store = store
        self.lock = asyncio.Lock()
        self._save_lock = asyncio.Lock()

    @property
    def size(self) -> int:
        return len(self.state.seen_keys)

    @property
    def high_water_mark(self) -> Optional[int]:
        return self.state.high_water_mark

    async def try_insert(self, key: str) -> bool:
        async with self.lock:
            if key in self.state.seen_keys:
                return False
            self.state.seen_keys.add(key)
            return True

    async def advance_high_water_mark(self, message_id: int) -> bool:
        async with self.lock:
            current = self.state.high_water_mark
            if current is not None and message_id <= current:
                return False
            self.state.high_water_mark = message_id
            return True

    async def snapshot(self) -> DedupState:
        async with self.lock:
            return self.state.copy()

    async def persist(self) -> None:
        if self.store is None:
            return
        # 落盘在线程里完成，不占用去重锁；快照在保存锁内获取，保证写入顺序
        async with self._save_lock:
            state = await self.snapshot()
            await asyncio.to_thread(self.store.save, state)

    async def catch_up(
        self,
        fetch_page: FetchPage,
        process: ProcessMessage,
        *,
        initial_limit: int = 100,
        page_size: int = 100,
    ) -> int:
        after = self.high_water_mark
        limit = page_size if after is not None else initial_limit
        logger.info("开始补扫历史 after=%s", after)

        processed = 0
        while True:
            try:
                page = await fetch_page(after, limit)
            except PlatformError as exc:
                logger.warning("补扫拉取历史失败，下次重连时继续: %s", exc)
                break
            if not page:
                break
            page = sorted(page, key=lambda m: m.id)
            for message in page:
                await process(message)
                processed += 1
            after = page[-1].id
            limit = page_size
            await self.advance_high_water_mark(after)
            try:
                await self.persist()
            except OSError:
                logger.exception("补扫保存状态失败，继续扫描")

        logger.info(
            "补扫完成 processed=%s keys=%s high_water_mark=%s",
            processed,
            self.size,
            self.high_water_mark,
        )
        return processed
