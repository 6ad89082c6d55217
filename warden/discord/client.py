import logging
from typing import Optional

import discord
from discord import app_commands
from discord.ext import commands

from warden.config import AppConfig
from warden.core.dedup import DedupCache
from warden.core.pipeline import MessagePipeline
from warden.core.scheduler import DeletionScheduler, DeletionTask, build_scheduler
from warden.platform.discord_platform import DiscordPlatform, to_chat_message
from warden.policy.permissions import describe_permissions, missing_permissions
from warden.storage.audit import AuditLog

logger = logging.getLogger(__name__)


class WardenBot(commands.Bot):
    def __init__(
        self,
        config: AppConfig,
        cache: DedupCache,
        audit_log: AuditLog,
    ):
        intents = discord.Intents.default()
        intents.message_content = True
        intents.messages = True
        intents.guilds = True
        super().__init__(command_prefix="!", intents=intents)
        self.config = config
        self.cache = cache
        self.audit_log = audit_log
        self.platform = DiscordPlatform(
            self, timeout_seconds=config.discord.request_timeout_seconds
        )
        self.scheduler: Optional[DeletionScheduler] = None
        if config.fleeting.enabled:
            self.scheduler = build_scheduler(
                config.fleeting,
                self.platform.delete_message,
                on_deleted=self._on_expired_deleted,
                on_dead_letter=self._on_dead_letter,
            )
        self.pipeline = MessagePipeline(
            config.channel_id,
            cache,
            self.platform,
            self.scheduler,
            dedup_enabled=config.dedup.enabled,
            dedupe_empty=config.dedup.dedupe_empty,
            audit_log=audit_log,
            persist_every=config.dedup.persist_every,
        )

        self.tree.add_command(self._cmd_status())
        self.tree.add_command(self._cmd_check())

    async def setup_hook(self) -> None:
        if self.config.discord.slash_command_guilds:
            for gid in self.config.discord.slash_command_guilds:
                await self.tree.sync(guild=discord.Object(id=gid))
        else:
            await self.tree.sync()
        logger.info("Slash commands synced")

    def _on_expired_deleted(self, task: DeletionTask) -> None:
        self.audit_log.add(
            "expired_deleted", {"message": task.message_id, "attempt": task.attempt}
        )

    def _on_dead_letter(self, task: DeletionTask) -> None:
        self.audit_log.add("dead_letter", task.to_dict())

    def status_text(self) -> str:
        pending = len(self.scheduler.pending()) if self.scheduler else 0
        dead = len(self.scheduler.dead_letters) if self.scheduler else 0
        return (
            f"监控频道 {self.config.channel_id}：已记录 {self.cache.size} 条内容，"
            f"high-water mark={self.cache.high_water_mark or '无'}，"
            f"待删除 {pending} 条，死信 {dead} 条"
        )

    def _cmd_status(self) -> app_commands.Command:
        @app_commands.command(name="warden_status", description="查看去重缓存与延迟删除队列状态")
        @app_commands.default_permissions(manage_messages=True)
        async def status_cmd(interaction: discord.Interaction):
            await interaction.response.send_message(self.status_text(), ephemeral=True)

        return status_cmd

    def _cmd_check(self) -> app_commands.Command:
        @app_commands.command(name="warden_check", description="检查机器人在监控频道的权限")
        @app_commands.default_permissions(manage_messages=True)
        async def check_cmd(interaction: discord.Interaction):
            await interaction.response.send_message(
                await self.check_permissions(), ephemeral=True
            )

        return check_cmd

    async def check_permissions(self) -> str:
        channel_id = self.config.channel_id
        try:
            channel = self.get_channel(channel_id) or await self.fetch_channel(channel_id)
        except discord.HTTPException as exc:
            return f"无法获取频道 {channel_id}：{exc}"
        if isinstance(channel, discord.abc.PrivateChannel):
            return f"频道 {channel_id} 是私信频道"
        if not isinstance(channel, discord.abc.GuildChannel):
            return f"频道 {channel_id} 不是服务器频道"
        me = channel.guild.me
        if me is None:
            return f"机器人不在频道 {channel_id} 所在的服务器中"
        missing = missing_permissions(channel.permissions_for(me))
        if missing:
            logger.error("权限不足 channel=%s missing=%s", channel_id, missing)
        return describe_permissions(channel_id, missing)

    async def on_ready(self) -> None:
        logger.info("Logged in as %s (%s)", self.user, self.user.id if self.user else "")
        await self.run_catch_up()

    async def run_catch_up(self) -> int:
        try:
            return await self.pipeline.catch_up(
                initial_limit=self.config.dedup.catch_up_initial_limit,
                page_size=self.config.dedup.catch_up_page_size,
            )
        except Exception:
            logger.exception("补扫失败")
            return 0

    async def on_message(self, message: discord.Message) -> None:
        if message.author == self.user:
            return
        await self.pipeline.handle(to_chat_message(message))

    async def shutdown(self) -> None:
        if self.scheduler is not None:
            await self.scheduler.stop()
        await self.pipeline.flush()
        await self.close()
