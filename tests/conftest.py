import asyncio
import random
from typing import Dict, List, Optional

import pytest

from chorus_core.agents import Agent
from chorus_core.config import RuntimeConfig
from chorus_core.decision import DecisionMaker
from chorus_core.messages import Channel, ChannelMessage
from chorus_core.orchestrator import ConversationOrchestrator


class Clock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakePlatform:
    def __init__(self, clock: Clock):
        self.clock = clock
        self.history: Dict[str, List[ChannelMessage]] = {}
        self.sent: List[tuple] = []
        self.active: Optional[List[Channel]] = []
        self.fetch_error: Optional[Exception] = None

    def post(self, channel_id, author_id, text, author_name=None, is_agent=False, guild_id="g1"):
        msg = ChannelMessage(
            channel_id=channel_id,
            author_id=author_id,
            author_name=author_name or author_id,
            text=text,
            author_is_agent=is_agent,
            guild_id=guild_id,
            timestamp=self.clock(),
        )
        self.history.setdefault(channel_id, []).append(msg)
        return msg

    async def fetch_recent_messages(self, channel_id, limit):
        if self.fetch_error is not None:
            raise self.fetch_error
        return list(self.history.get(channel_id, []))[-limit:]

    async def send_as_agent(self, channel_id, agent, text):
        self.sent.append((channel_id, agent.id, text))
        return {"id": len(self.sent)}

    async def list_active_channels(self, activity_window):
        if self.active is None:
            raise ConnectionError("channel listing unavailable")
        return list(self.active)


class FakeCompletion:
    def __init__(self, replies=None, error: Optional[Exception] = None, delay: float = 0.0):
        self.replies = list(replies or ["YES"])
        self.error = error
        self.delay = delay
        self.calls: List[dict] = []

    async def complete(self, messages, model_hint=None, max_tokens=None):
        self.calls.append({"messages": messages, "model": model_hint, "max_tokens": max_tokens})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if len(self.replies) > 1:
            return self.replies.pop(0)
        return self.replies[0]


class FakeResponder:
    def __init__(self, platform: FakePlatform):
        self.platform = platform
        self.calls: List[tuple] = []
        self.delay = 0.0
        self.gate: Optional[asyncio.Event] = None
        self.error: Optional[Exception] = None
        self.produce = True

    async def generate(self, channel, agent, messages):
        self.calls.append((channel.id, agent.id))
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if not self.produce:
            return None
        return await self.platform.send_as_agent(channel.id, agent, f"hello from {agent.name}")


def make_config(**overrides) -> RuntimeConfig:
    values = {"persist_state": False}
    values.update(overrides)
    return RuntimeConfig(**values)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def platform(clock):
    return FakePlatform(clock)


@pytest.fixture
def completion():
    return FakeCompletion()


@pytest.fixture
def responder(platform):
    return FakeResponder(platform)


@pytest.fixture
def agents():
    return [
        Agent(id="ada", name="Ada", emoji="🦉", personality="Curious and dry."),
        Agent(id="bix", name="Bix", emoji="🐙", personality="Loud and cheerful."),
    ]


@pytest.fixture
def build_orchestrator(platform, responder, completion, clock, agents):
    def build(**overrides) -> ConversationOrchestrator:
        config = make_config(**overrides)
        decisions = DecisionMaker(
            completion,
            cache_seconds=config.decision_cache_seconds,
            history_limit=config.decision_history_limit,
            bot_streak_limit=config.bot_streak_limit,
            model="decision-model",
            timeout_seconds=config.completion_timeout_seconds,
            error_backoff_seconds=config.decision_error_backoff_seconds,
            clock=clock,
        )
        orchestrator = ConversationOrchestrator(
            config, platform, responder, decisions, clock=clock, rng=random.Random(7)
        )
        orchestrator.set_agents(agents)
        return orchestrator

    return build
