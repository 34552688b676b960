import logging
import random
from typing import Any, List

from .agents import Agent
from .llm import select_model
from .messages import Channel, ChannelMessage
from .platform import AgentRoster, ChatPlatform, CompletionClient

_MAX_REPLY_CHARS = 1800


class LLMResponder:
    """
    Default response generator: asks the completion service for a short
    in-character reply and posts it through the platform as the agent.
    """

    def __init__(
        self,
        platform: ChatPlatform,
        completion: CompletionClient,
        roster: AgentRoster | None = None,
        max_tokens: int = 256,
        rng: random.Random | None = None,
    ):
        self.platform = platform
        self.completion = completion
        self.roster = roster
        self.max_tokens = max_tokens
        self.rng = rng or random.Random()
        self.logger = logging.getLogger("chorus.responder")

    async def ensure_model(self, agent: Agent) -> str:
        if agent.model and isinstance(agent.model, str):
            return agent.model
        agent.model = select_model(self.rng)
        self.logger.info("Assigned model %s to %s", agent.model, agent.name)
        if self.roster is not None:
            try:
                await self.roster.update_agent(agent)
            except Exception as exc:
                self.logger.warning("Roster update failed for %s: %s", agent.id, exc)
        return agent.model

    def build_prompt(self, channel: Channel, agent: Agent, messages: List[ChannelMessage]) -> List[dict]:
        tag = f" {agent.emoji}" if agent.emoji else ""
        history = "\n".join(f"{m.author_name}: {m.text}" for m in messages)
        where = f"#{channel.name}" if channel.name else f"channel {channel.id}"
        return [
            {
                "role": "system",
                "content": f"You are {agent.name}{tag}. {agent.personality}\n{agent.description}".strip(),
            },
            {
                "role": "user",
                "content": (
                    f"Channel: {where}\n"
                    f"Recent messages:\n{history}\n\n"
                    f"You are {agent.name}. Respond to the chat in character and keep it interesting. "
                    "Keep it SHORT. No more than three sentences."
                ),
            },
        ]

    def clean(self, agent: Agent, text: str) -> str:
        reply = (text or "").strip()
        prefix = f"{agent.name}:"
        if reply.lower().startswith(prefix.lower()):
            reply = reply[len(prefix):].strip()
        return reply[:_MAX_REPLY_CHARS]

    async def generate(self, channel: Channel, agent: Agent, messages: List[ChannelMessage]) -> Any:
        if messages and (messages[-1].author_id == agent.id or messages[-1].author_name == agent.name):
            return None
        model = await self.ensure_model(agent)
        raw = await self.completion.complete(
            self.build_prompt(channel, agent, messages), model_hint=model, max_tokens=self.max_tokens
        )
        reply = self.clean(agent, raw)
        if not reply:
            self.logger.error("Empty response for %s", agent.name)
            return None
        return await self.platform.send_as_agent(channel.id, agent, reply)
