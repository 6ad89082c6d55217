import asyncio
import logging
from typing import List, Optional

import discord

from warden.platform.base import (
    ChatMessage,
    MessageGoneError,
    Platform,
    PlatformError,
    PlatformForbiddenError,
)

logger = logging.getLogger(__name__)


def to_chat_message(message: discord.Message) -> ChatMessage:
    return ChatMessage(
        id=message.id,
        channel_id=message.channel.id,
        author_id=message.author.id,
        content=message.content or "",
        created_at=message.created_at.timestamp(),
    )


class DiscordPlatform(Platform):
    def __init__(self, client: discord.Client, timeout_seconds: float = 30.0):
        self.client = client
        self.timeout_seconds = timeout_seconds

    async def _resolve_channel(self, channel_id: int):
        channel = self.client.get_channel(channel_id)
        if channel is None:
            logger.debug("频道不在缓存中，通过 API 获取 channel=%s", channel_id)
            channel = await self.client.fetch_channel(channel_id)
        if not isinstance(channel, discord.abc.Messageable):
            raise PlatformError(f"频道 {channel_id} 不支持读取消息")
        return channel

    async def fetch_history(
        self,
        channel_id: int,
        *,
        after: Optional[int] = None,
        limit: int = 100,
    ) -> List[ChatMessage]:
        async def _fetch() -> List[ChatMessage]:
            channel = await self._resolve_channel(channel_id)
            kwargs = {"limit": limit}
            if after is not None:
                kwargs["after"] = discord.Object(id=after)
                kwargs["oldest_first"] = True
            return [to_chat_message(m) async for m in channel.history(**kwargs)]

        try:
            return await asyncio.wait_for(_fetch(), timeout=self.timeout_seconds)
        except discord.Forbidden as exc:
            raise PlatformForbiddenError(f"无权读取频道历史: {exc}") from exc
        except discord.HTTPException as exc:
            raise PlatformError(f"拉取历史失败: {exc}") from exc
        except (asyncio.TimeoutError, OSError) as exc:
            raise PlatformError(f"拉取历史超时或网络错误: {exc!r}") from exc

    async def delete_message(self, channel_id: int, message_id: int) -> None:
        partial = self.client.get_partial_messageable(channel_id).get_partial_message(
            message_id
        )
        try:
            await asyncio.wait_for(partial.delete(), timeout=self.timeout_seconds)
        except discord.NotFound as exc:
            raise MessageGoneError(f"消息不存在: {message_id}") from exc
        except discord.Forbidden as exc:
            raise PlatformForbiddenError(f"无权删除消息 {message_id}: {exc}") from exc
        except discord.HTTPException as exc:
            raise PlatformError(f"删除消息失败 {message_id}: {exc}") from exc
        except (asyncio.TimeoutError, OSError) as exc:
            raise PlatformError(f"删除消息超时或网络错误 {message_id}: {exc!r}") from exc
