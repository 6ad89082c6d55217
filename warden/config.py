import os
from pathlib import Path
from typing import List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, validator


DEFAULT_CONFIG_PATH = Path("configs/config.yaml")


class ConfigError(RuntimeError):
    pass


class DiscordConfig(BaseModel):
    token_env: str = "AUTH_TOKEN"
    channel_id: Optional[int] = None
    slash_command_guilds: List[int] = Field(default_factory=list)
    request_timeout_seconds: float = 30.0

    @validator("channel_id")
    def validate_channel_id(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v <= 0:
            raise ValueError("channel_id 必须是正整数")
        return v


class DedupPolicyConfig(BaseModel):
    enabled: bool = True
    dedupe_empty: bool = True
    state_file: str = "dedup_state.json"
    catch_up_initial_limit: int = 100
    catch_up_page_size: int = 100
    persist_every: int = 1

    @validator("persist_every")
    def validate_persist_every(cls, v: int) -> int:
        if v < 1:
            raise ValueError("persist_every 至少为 1")
        return v

    @validator("catch_up_initial_limit", "catch_up_page_size")
    def validate_limits(cls, v: int) -> int:
        if not 1 <= v <= 100:
            raise ValueError("分页大小必须在 1~100 之间")
        return v


class FleetingConfig(BaseModel):
    enabled: bool = True
    delay_seconds: float = 3600.0
    retry_backoff_seconds: float = 1.0
    retry_backoff_max_seconds: float = 60.0
    max_attempts: Optional[int] = None

    @validator("delay_seconds", "retry_backoff_seconds", "retry_backoff_max_seconds")
    def validate_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("时间间隔不能为负数")
        return v

    @validator("max_attempts")
    def validate_max_attempts(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 1:
            raise ValueError("max_attempts 至少为 1")
        return v


class AdminConfig(BaseModel):
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 8000
    token_env: str = "ADMIN_TOKEN"


class AppMeta(BaseModel):
    name: str = "ChannelWarden"
    logging_level: str = "INFO"
    data_dir: str = "data"


class AppConfig(BaseModel):
    app: AppMeta = AppMeta()
    discord: DiscordConfig = DiscordConfig()
    dedup: DedupPolicyConfig = DedupPolicyConfig()
    fleeting: FleetingConfig = FleetingConfig()
    admin: AdminConfig = AdminConfig()

    @property
    def channel_id(self) -> int:
        if self.discord.channel_id is None:
            raise ConfigError("未配置监控频道，请设置环境变量 MONITORED_CHANNEL_ID")
        return self.discord.channel_id


def _env_number(name: str, cast):
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return None
    try:
        return cast(raw.strip())
    except ValueError:
        raise ConfigError(f"环境变量 {name}={raw!r} 不是合法数字") from None


def apply_env_overrides(data: dict) -> dict:
    channel_id = _env_number("MONITORED_CHANNEL_ID", int)
    if channel_id is not None:
        data.setdefault("discord", {})["channel_id"] = channel_id
    delay = _env_number("FIXED_DELAY_SECONDS", float)
    if delay is not None:
        data.setdefault("fleeting", {})["delay_seconds"] = delay
    log_level_override = os.getenv("LOG_LEVEL")
    if log_level_override:
        data.setdefault("app", {})["logging_level"] = log_level_override
    data_dir_override = os.getenv("DATA_DIR")
    if data_dir_override:
        data.setdefault("app", {})["data_dir"] = data_dir_override
    return data


def load_config(path: str | Path | None = None) -> AppConfig:
    if path is None:
        config_path = DEFAULT_CONFIG_PATH
        required = False
    else:
        config_path = Path(path)
        required = True

    data: dict = {}
    if config_path.exists():
        with config_path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ConfigError(f"配置文件格式错误: {config_path}")
    elif required:
        raise ConfigError(f"配置文件不存在: {config_path}")

    data = apply_env_overrides(data)
    try:
        config = AppConfig.parse_obj(data)
    except ValidationError as exc:
        raise ConfigError(f"配置校验失败: {exc}") from exc

    # 频道为必填项，缺失时启动即失败
    _ = config.channel_id
    return config
