import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence


@dataclass(frozen=True)
class Channel:
    id: str
    guild_id: str
    name: str = ""


@dataclass
class ChannelMessage:
    channel_id: str
    author_id: str
    author_name: str
    text: str
    author_is_agent: bool = False
    guild_id: Optional[str] = None
    message_id: Optional[str] = None
    timestamp: float = field(default_factory=lambda: time.time())

    def mentions(self, name: str, emoji: str | None = None) -> bool:
        """
        Case-insensitive check for an agent's name or symbolic tag anywhere in
        the message text.
        """
        content = (self.text or "").lower()
        if not content:
            return False
        if name and name.lower() in content:
            return True
        if emoji and emoji.lower() in content:
            return True
        return False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channel_id": self.channel_id,
            "author_id": self.author_id,
            "author_name": self.author_name,
            "author_is_agent": self.author_is_agent,
            "text_len": len(self.text or ""),
            "guild_id": self.guild_id,
            "message_id": self.message_id,
            "timestamp": self.timestamp,
        }


def bot_fraction(messages: Sequence[ChannelMessage]) -> float:
    if not messages:
        return 0.0
    return sum(1 for m in messages if m.author_is_agent) / len(messages)


def tail(messages: Sequence[ChannelMessage], limit: int) -> List[ChannelMessage]:
    if limit <= 0:
        return []
    return list(messages[-limit:])
