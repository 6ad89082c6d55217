from __future__ import annotations

import asyncio
from typing import List, Optional, Sequence

from warden.core.dedup import DedupCache
from warden.platform.base import ChatMessage, PlatformError
from warden.storage.state_store import DedupState, StateStore


def _msg(message_id: int, content: str = "x") -> ChatMessage:
    return ChatMessage(
        id=message_id,
        channel_id=42,
        author_id=7,
        content=content,
        created_at=1000.0 + message_id,
    )


class FakeHistory:
    def __init__(self, messages: Sequence[ChatMessage]) -> None:
        self.messages = sorted(messages, key=lambda m: m.id)
        self.calls: list[tuple[Optional[int], int]] = []

    async def fetch_page(self, after: Optional[int], limit: int) -> List[ChatMessage]:
        self.calls.append((after, limit))
        if after is None:
            page = self.messages[-limit:]
        else:
            page = [m for m in self.messages if m.id > after][:limit]
        # newest-first, like the platform
        return list(reversed(page))


class Recorder:
    def __init__(self, cache: DedupCache) -> None:
        self.cache = cache
        self.seen: list[int] = []

    async def __call__(self, message: ChatMessage) -> None:
        self.seen.append(message.id)
        await self.cache.try_insert(message.content)


def test_try_insert_reports_first_insert_only() -> None:
    cache = DedupCache()

    async def scenario() -> list[bool]:
        return [
            await cache.try_insert("hello world"),
            await cache.try_insert("hello world"),
            await cache.try_insert("other"),
            await cache.try_insert("hello world"),
        ]

    assert asyncio.run(scenario()) == [True, False, True, False]
    assert cache.size == 2


def test_concurrent_try_insert_has_single_winner() -> None:
    cache = DedupCache()

    async def scenario() -> list[bool]:
        return await asyncio.gather(*(cache.try_insert("same") for _ in range(50)))

    results = asyncio.run(scenario())
    assert results.count(True) == 1
    assert cache.size == 1


def test_high_water_mark_only_moves_forward() -> None:
    cache = DedupCache()

    async def scenario() -> list[bool]:
        return [
            await cache.advance_high_water_mark(10),
            await cache.advance_high_water_mark(5),
            await cache.advance_high_water_mark(10),
            await cache.advance_high_water_mark(11),
        ]

    assert asyncio.run(scenario()) == [True, False, False, True]
    assert cache.high_water_mark == 11


def test_catch_up_without_mark_fetches_recent_then_pages_forward() -> None:
    history = FakeHistory([_msg(i, f"m{i}") for i in range(1, 11)])
    cache = DedupCache()
    recorder = Recorder(cache)

    processed = asyncio.run(
        cache.catch_up(history.fetch_page, recorder, initial_limit=4, page_size=3)
    )

    assert processed == 4
    assert recorder.seen == [7, 8, 9, 10]
    assert history.calls == [(None, 4), (10, 3)]
    assert cache.high_water_mark == 10


def test_catch_up_resumes_after_mark_only() -> None:
    history = FakeHistory([_msg(i, f"m{i}") for i in range(1, 9)])
    cache = DedupCache(DedupState(seen_keys={"m1"}, high_water_mark=5))
    recorder = Recorder(cache)

    processed = asyncio.run(
        cache.catch_up(history.fetch_page, recorder, initial_limit=100, page_size=2)
    )

    assert processed == 3
    assert recorder.seen == [6, 7, 8]
    assert history.calls == [(5, 2), (7, 2), (8, 2)]
    assert cache.high_water_mark == 8


def test_catch_up_is_idempotent(tmp_path) -> None:
    history = FakeHistory([_msg(i, f"m{i % 3}") for i in range(1, 7)])
    store = StateStore(tmp_path / "state.json")
    cache = DedupCache(store=store)
    recorder = Recorder(cache)

    async def scenario():
        await cache.catch_up(history.fetch_page, recorder)
        first = await cache.snapshot()
        again = await cache.catch_up(history.fetch_page, recorder)
        second = await cache.snapshot()
        return first, again, second

    first, again, second = asyncio.run(scenario())

    assert again == 0
    assert first == second
    assert store.load() == second


def test_catch_up_stops_on_fetch_failure() -> None:
    cache = DedupCache(DedupState(high_water_mark=3))

    async def failing_fetch(after, limit):
        raise PlatformError("gateway unavailable")

    processed = asyncio.run(cache.catch_up(failing_fetch, Recorder(cache)))

    assert processed == 0
    assert cache.high_water_mark == 3


def test_persist_writes_current_state(tmp_path) -> None:
    store = StateStore(tmp_path / "state.json")
    cache = DedupCache(store=store)

    async def scenario() -> None:
        await cache.try_insert("a")
        await cache.advance_high_water_mark(99)
        await cache.persist()

    asyncio.run(scenario())

    assert store.load() == DedupState(seen_keys={"a"}, high_water_mark=99)
