from typing import List, Sequence

import discord


REQUIRED_PERMISSIONS = ("manage_messages", "read_message_history")

PERMISSION_LABELS = {
    "manage_messages": "MANAGE_MESSAGES",
    "read_message_history": "READ_MESSAGE_HISTORY",
}


def missing_permissions(
    permissions: discord.Permissions,
    required: Sequence[str] = REQUIRED_PERMISSIONS,
) -> List[str]:
    return [name for name in required if not getattr(permissions, name, False)]


def describe_permissions(channel_id: int, missing: Sequence[str]) -> str:
    if not missing:
        return f"频道 {channel_id} 的机器人权限检查通过。"
    labels = "、".join(PERMISSION_LABELS.get(name, name.upper()) for name in missing)
    return f"机器人在频道 {channel_id} 缺少权限：{labels}"
