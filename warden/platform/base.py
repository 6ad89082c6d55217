import abc
from dataclasses import dataclass
from typing import List, Optional


@dataclass(frozen=True)
class ChatMessage:
    id: int
    channel_id: int
    author_id: int
    content: str
    created_at: float


class PlatformError(Exception):
    pass


class MessageGoneError(PlatformError):
    pass


class PlatformForbiddenError(PlatformError):
    pass


class Platform(abc.ABC):
    @abc.abstractmethod
    async def fetch_history(
        self,
        channel_id: int,
        *,
        after: Optional[int] = None,
        limit: int = 100,
    ) -> List[ChatMessage]:
        """Return up to ``limit`` messages, newer than ``after`` when given.

        Ordering is whatever the platform returns; callers sort by id.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def delete_message(self, channel_id: int, message_id: int) -> None:
        raise NotImplementedError
