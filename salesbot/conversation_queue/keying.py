"""Conversation key builders."""

from salesbot.bus.events import InboundMessage

GROUP_SUFFIX = "@g.us"
STATUS_BROADCAST = "status@broadcast"


def build_conversation_key(msg: InboundMessage) -> str:
    """Per-chat ordering key (serial order guarantee)."""
    return f"{msg.channel}:{msg.chat_id}"


def is_group_chat(chat_id: str) -> bool:
    return chat_id.endswith(GROUP_SUFFIX)


def is_status_broadcast(chat_id: str) -> bool:
    return chat_id == STATUS_BROADCAST
