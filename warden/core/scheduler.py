import asyncio
import enum
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Deque, List, Optional

from warden.config import FleetingConfig
from warden.platform.base import MessageGoneError, PlatformError, PlatformForbiddenError

logger = logging.getLogger(__name__)


Deleter = Callable[[int, int], Awaitable[None]]
TaskHook = Callable[["DeletionTask"], None]


class TaskState(str, enum.Enum):
    PENDING = "pending"
    DUE_SOON = "due_soon"
    DELETING = "deleting"
    DELETED = "deleted"
    RETRYING = "retrying"
    DEAD = "dead"


_PINNED_STATES = (TaskState.DELETING, TaskState.RETRYING)

@dataclass
class DeletionTask:
    channel_id: int
    message_id: int
    posted_at: float
    due_at: float
    attempt: int = 1
    retry_at: Optional[float] = None
    last_error: Optional[str] = None
    state: TaskState = TaskState.PENDING

    @property
    def ready_at(self) -> float:
        if self.retry_at is None:
            return self.due_at
        return max(self.due_at, self.retry_at)

    def to_dict(self) -> dict:
        return {
            "channel_id": self.channel_id,
            "message_id": self.message_id,
            "posted_at": self.posted_at,
            "due_at": self.due_at,
            "attempt": self.attempt,
            "state": self.state.value,
            "last_error": self.last_error,
        }


class DeletionScheduler:
    def __init__(
        self,
        deleter: Deleter,
        delay_seconds: float,
        *,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        retry_backoff_seconds: float = 1.0,
        retry_backoff_max_seconds: float = 60.0,
        max_attempts: Optional[int] = None,
        on_deleted: Optional[TaskHook] = None,
        on_dead_letter: Optional[TaskHook] = None,
    ):
        self.deleter = deleter
        self.delay_seconds = delay_seconds
        self.clock = clock
        self.sleep = sleep
        self.retry_backoff_seconds = retry_backoff_seconds
        self.retry_backoff_max_seconds = retry_backoff_max_seconds
        self.max_attempts = max_attempts
        self.on_deleted = on_deleted
        self.on_dead_letter = on_dead_letter
        self.queue: Deque[DeletionTask] = deque()
        self.dead_letters: List[DeletionTask] = []
        self.lock = asyncio.Lock()
        self._wakeup = asyncio.Event()
        self._worker: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._worker is not None

    def pending(self) -> List[DeletionTask]:
        return list(self.queue)

    async def enqueue(
        self, channel_id: int, message_id: int, posted_at: float
    ) -> DeletionTask:
        task = DeletionTask(
            channel_id=channel_id,
            message_id=message_id,
            posted_at=posted_at,
            due_at=posted_at + self.delay_seconds,
        )
        async with self.lock:
            if self._insert(task) == 0:
                self._wakeup.set()
            if self._worker is None:
                self._worker = asyncio.create_task(self._run())
        logger.debug("已排队延迟删除 message=%s due_at=%.3f", message_id, task.due_at)
        return task

    def _insert(self, task: DeletionTask) -> int:
        # 延迟固定时队列天然有序；补扫进来的旧消息按到期时间向前插入，
        # 但不越过正在删除或等待重试的任务
        index = len(self.queue)
        while index > 0:
            prev = self.queue[index - 1]
            if prev.due_at <= task.due_at or prev.state in _PINNED_STATES:
                break
            index -= 1
        self.queue.insert(index, task)
        return index

    async def requeue_dead_letters(self) -> int:
        async with self.lock:
            revived = self.dead_letters
            self.dead_letters = []
            for task in reversed(revived):
                task.attempt = 1
                task.retry_at = None
                task.state = TaskState.PENDING
                self.queue.appendleft(task)
            if revived:
                self._wakeup.set()
                if self._worker is None:
                    self._worker = asyncio.create_task(self._run())
        return len(revived)

    async def wait_idle(self) -> None:
        while self._worker is not None:
            await asyncio.shield(self._worker)

    async def stop(self) -> None:
        worker = self._worker
        if worker is None:
            return
        worker.cancel()
        try:
            await worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        if self.queue:
            logger.info("调度器已停止，%s 条待删除任务未持久化", len(self.queue))

    async def _run(self) -> None:
        try:
            await self._loop()
        except Exception:
            logger.exception("删除调度器异常退出，%s 条任务等待下次排队时重启", len(self.queue))
        finally:
            # 异常退出时释放槽位，下一次 enqueue 会重新启动 worker
            if self._worker is asyncio.current_task():
                self._worker = None

    async def _loop(self) -> None:
        while True:
            async with self.lock:
                if not self.queue:
                    self._worker = None
                    return
                task = self.queue[0]
                wait = task.ready_at - self.clock()
                if wait > 0:
                    if task.state == TaskState.PENDING:
                        task.state = TaskState.DUE_SOON
                    self._wakeup.clear()
            if wait > 0:
                await self._sleep_or_wake(wait)
                # 醒来后重新查看队首：可能有更早到期的任务，或时钟不准需要再睡
                continue
            await self._execute(task)

    async def _sleep_or_wake(self, seconds: float) -> None:
        sleeper = asyncio.ensure_future(self.sleep(seconds))
        waker = asyncio.ensure_future(self._wakeup.wait())
        try:
            await asyncio.wait({sleeper, waker}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for fut in (sleeper, waker):
                if not fut.done():
                    fut.cancel()

    async def _execute(self, task: DeletionTask) -> None:
        task.state = TaskState.DELETING
        try:
            await self.deleter(task.channel_id, task.message_id)
        except MessageGoneError:
            logger.info("消息已不存在，移除任务 message=%s", task.message_id)
            await self._finish(task)
        except PlatformForbiddenError as exc:
            logger.error(
                "没有删除权限 message=%s attempt=%s: %s",
                task.message_id,
                task.attempt,
                exc,
            )
            await self._retry(task, exc)
        except PlatformError as exc:
            logger.warning(
                "删除失败 message=%s attempt=%s: %s",
                task.message_id,
                task.attempt,
                exc,
            )
            await self._retry(task, exc)
        except Exception as exc:
            logger.exception("删除时出现未预期错误 message=%s", task.message_id)
            await self._retry(task, exc)
        else:
            logger.info("已删除到期消息 message=%s", task.message_id)
            await self._finish(task)
            self._notify(self.on_deleted, task)

    async def _finish(self, task: DeletionTask) -> None:
        async with self.lock:
            self.queue.remove(task)
        task.state = TaskState.DELETED

    def _backoff(self, attempt: int) -> float:
        delay = self.retry_backoff_seconds * (2 ** max(0, attempt - 2))
        return min(delay, self.retry_backoff_max_seconds)

    async def _retry(self, task: DeletionTask, exc: Exception) -> None:
        async with self.lock:
            task.attempt += 1
            task.last_error = str(exc) or exc.__class__.__name__
            if self.max_attempts is not None and task.attempt > self.max_attempts:
                self.queue.remove(task)
                task.state = TaskState.DEAD
                self.dead_letters.append(task)
                dead = True
            else:
                # 延迟早已过期，失败任务留在队首优先重试
                if self.queue[0] is not task:
                    self.queue.remove(task)
                    self.queue.appendleft(task)
                task.retry_at = self.clock() + self._backoff(task.attempt)
                task.state = TaskState.RETRYING
                dead = False
        if dead:
            logger.error(
                "删除重试次数耗尽，转入死信 message=%s attempts=%s",
                task.message_id,
                task.attempt - 1,
            )
            self._notify(self.on_dead_letter, task)

    def _notify(self, hook: Optional[TaskHook], task: DeletionTask) -> None:
        if hook is None:
            return
        try:
            hook(task)
        except Exception:
            logger.exception("任务回调失败 message=%s", task.message_id)


def build_scheduler(
    config: FleetingConfig, deleter: Deleter, **kwargs
) -> DeletionScheduler:
    return DeletionScheduler(
        deleter,
        config.delay_seconds,
        retry_backoff_seconds=config.retry_backoff_seconds,
        retry_backoff_max_seconds=config.retry_backoff_max_seconds,
        max_attempts=config.max_attempts,
        **kwargs,
    )
