import asyncio
import logging
import os
from pathlib import Path

import uvicorn
from dotenv import load_dotenv

from warden.config import AppConfig, ConfigError, load_config
from warden.core.dedup import DedupCache
from warden.discord.client import WardenBot
from warden.storage.audit import AuditLog
from warden.storage.state_store import StateStore
from warden.web.admin_app import create_admin_app

logger = logging.getLogger(__name__)


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


async def run():
    load_dotenv()
    config: AppConfig = load_config(os.getenv("CONFIG_PATH"))
    setup_logging(config.app.logging_level)

    bot_token = os.getenv(config.discord.token_env)
    if not bot_token:
        raise ConfigError(f"未找到环境变量 {config.discord.token_env}，请先设置。")

    data_dir = Path(config.app.data_dir)
    data_dir.mkdir(parents=True, exist_ok=True)

    state_store = StateStore(data_dir / config.dedup.state_file)
    cache = DedupCache(state_store.load(), state_store)
    audit_log = AuditLog(data_dir / "audit.log")

    bot = WardenBot(config=config, cache=cache, audit_log=audit_log)
    logger.info(
        "监控频道 %s，去重=%s，延迟删除=%s (%.0fs)",
        config.channel_id,
        config.dedup.enabled,
        config.fleeting.enabled,
        config.fleeting.delay_seconds,
    )

    async def start_bot():
        await bot.start(bot_token)

    tasks = [start_bot()]
    if config.admin.enabled:
        admin_app = create_admin_app(
            config=config,
            cache=cache,
            scheduler=bot.scheduler,
            audit_log=audit_log,
            catch_up=bot.run_catch_up,
        )
        server = uvicorn.Server(
            uvicorn.Config(
                app=admin_app,
                host=config.admin.host,
                port=config.admin.port,
                log_level="info",
            )
        )

        async def start_admin():
            await server.serve()

        tasks.append(start_admin())

    try:
        await asyncio.gather(*tasks)
    except asyncio.CancelledError:
        pass
    finally:
        await bot.shutdown()


def main() -> None:
    asyncio.run(run())


if __name__ == "__main__":
    main()
