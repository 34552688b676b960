from typing import Any, Dict, List, Optional, Protocol

from .agents import Agent
from .messages import Channel, ChannelMessage


class ChatPlatform(Protocol):
    async def fetch_recent_messages(self, channel_id: str, limit: int) -> List[ChannelMessage]:
        """Most recent messages of a channel, oldest first."""
        ...

    async def send_as_agent(self, channel_id: str, agent: Agent, text: str) -> Any:
        ...

    async def list_active_channels(self, activity_window: float) -> List[Channel]:
        ...


class CompletionClient(Protocol):
    async def complete(
        self,
        messages: List[Dict[str, str]],
        model_hint: Optional[str] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        ...


class ResponseGenerator(Protocol):
    async def generate(self, channel: Channel, agent: Agent, messages: List[ChannelMessage]) -> Any:
        """Compose and send a reply; return the sent handle or None."""
        ...


class AgentRoster(Protocol):
    async def list_agents(self) -> List[Agent]:
        ...

    async def update_agent(self, agent: Agent) -> None:
        ...
