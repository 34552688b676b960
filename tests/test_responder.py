import asyncio
import random

from chorus_core.agents import Agent, InMemoryRoster
from chorus_core.llm import MODEL_CATALOG
from chorus_core.messages import Channel, ChannelMessage
from chorus_core.responder import LLMResponder

from conftest import FakeCompletion

CHANNEL = Channel(id="c1", guild_id="g1", name="lounge")


def _msg(author, text, is_agent=False):
    return ChannelMessage(channel_id="c1", author_id=author, author_name=author, text=text, author_is_agent=is_agent)


def test_reply_is_cleaned_and_sent(platform):
    agent = Agent(id="ada", name="Ada", model="tiny-model")
    completion = FakeCompletion(["ada: Hello there, friends."])
    responder = LLMResponder(platform, completion)

    handle = asyncio.run(responder.generate(CHANNEL, agent, [_msg("u1", "morning all")]))

    assert handle == {"id": 1}
    assert platform.sent == [("c1", "ada", "Hello there, friends.")]
    call = completion.calls[0]
    assert call["model"] == "tiny-model"
    assert "#lounge" in call["messages"][1]["content"]
    assert "u1: morning all" in call["messages"][1]["content"]


def test_missing_model_is_selected_and_saved(platform):
    agent = Agent(id="bix", name="Bix")
    roster = InMemoryRoster([agent])
    responder = LLMResponder(platform, FakeCompletion(["sure"]), roster=roster, rng=random.Random(4))

    asyncio.run(responder.generate(CHANNEL, agent, [_msg("u1", "hey")]))

    catalog = {entry["model"] for entry in MODEL_CATALOG}
    assert agent.model in catalog
    assert roster.get("bix").model == agent.model


def test_no_reply_to_own_message_or_empty_completion(platform):
    agent = Agent(id="ada", name="Ada", model="tiny-model")
    completion = FakeCompletion(["   "])
    responder = LLMResponder(platform, completion)

    own = asyncio.run(responder.generate(CHANNEL, agent, [_msg("ada", "me again", is_agent=True)]))
    empty = asyncio.run(responder.generate(CHANNEL, agent, [_msg("u1", "hi")]))

    assert own is None
    assert empty is None
    assert len(completion.calls) == 1
    assert platform.sent == []


def test_clean_caps_length():
    responder = LLMResponder(platform=None, completion=None)
    agent = Agent(id="ada", name="Ada")
    assert len(responder.clean(agent, "x" * 5000)) == 1800
    assert responder.clean(agent, "  Ada:  hi ") == "hi"
