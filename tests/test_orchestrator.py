import asyncio
import json
import logging

from chorus_core.messages import Channel, ChannelMessage

CHANNEL = Channel(id="c1", guild_id="g1", name="lounge")


def _human(text, channel_id="c1", author="u1"):
    return ChannelMessage(channel_id=channel_id, author_id=author, author_name=author, text=text, guild_id="g1")


def test_concurrent_dispatch_for_same_key_runs_once(build_orchestrator, platform, responder, agents):
    orchestrator = build_orchestrator()
    platform.post("c1", "u1", "anyone here?")
    responder.delay = 0.01

    async def run():
        return await asyncio.gather(
            orchestrator.dispatch(CHANNEL, agents[0], force=True),
            orchestrator.dispatch(CHANNEL, agents[0], force=True),
        )

    results = asyncio.run(run())

    assert sorted(r.status for r in results) == ["in_flight", "sent"]
    assert len(responder.calls) == 1
    assert orchestrator.in_flight == set()


def test_different_keys_interleave(build_orchestrator, platform, responder, agents):
    orchestrator = build_orchestrator()
    platform.post("c1", "u1", "anyone here?")
    responder.delay = 0.01

    async def run():
        return await asyncio.gather(
            orchestrator.dispatch(CHANNEL, agents[0], force=True),
            orchestrator.dispatch(CHANNEL, agents[1], force=True),
        )

    results = asyncio.run(run())
    assert [r.status for r in results] == ["sent", "sent"]


def test_observe_message_tracks_mentions_and_membership(build_orchestrator, clock):
    orchestrator = build_orchestrator()

    mentioned = orchestrator.observe_message(_human("hey ADA what do you think?"), now=clock())

    assert mentioned == ["ada"]
    assert orchestrator.attention.level("c1", "ada") == 1.0
    assert orchestrator.attention.mention_of("c1", "ada").remaining_messages == 3
    assert orchestrator.membership.is_member("c1", "ada")
    assert orchestrator.activity.top_mentioned("c1", 3, clock()) == ["ada"]
    assert [c.id for c in orchestrator.activity.active_channels(clock())] == ["c1"]


def test_observe_message_bumps_unmentioned_members(build_orchestrator, clock):
    orchestrator = build_orchestrator()
    orchestrator.membership.add("c1", "bix", "g1", now=clock())

    orchestrator.observe_message(_human("ada?"), now=clock())

    assert orchestrator.attention.level("c1", "bix") == 0.1
    assert orchestrator.attention.level("c1", "ada") == 1.0


def test_agent_does_not_mention_itself(build_orchestrator, clock):
    orchestrator = build_orchestrator()
    message = ChannelMessage(
        channel_id="c1", author_id="ada", author_name="Ada", text="Ada here 🦉", author_is_agent=True, guild_id="g1"
    )
    assert orchestrator.observe_message(message, now=clock()) == []


def test_human_mention_forces_dispatch(build_orchestrator, platform, completion, agents):
    orchestrator = build_orchestrator()

    async def run():
        message = platform.post("c1", "u1", "Bix, tell me a joke")
        mentioned = await orchestrator.handle_message(message)
        await orchestrator.drain(1.0)
        return mentioned

    assert asyncio.run(run()) == ["bix"]
    assert platform.sent == [("c1", "bix", "hello from Bix")]
    assert completion.calls == []


def test_agent_mention_does_not_force_dispatch(build_orchestrator, platform, responder):
    orchestrator = build_orchestrator()

    async def run():
        message = platform.post("c1", "bix", "what say you, Ada?", author_name="Bix", is_agent=True)
        await orchestrator.handle_message(message)
        await orchestrator.drain(1.0)

    asyncio.run(run())
    assert responder.calls == []
    assert orchestrator.attention.level("c1", "ada") == 1.0


def test_cooldown_applies_even_when_forced(build_orchestrator, platform, agents, clock):
    orchestrator = build_orchestrator(human_cooldown_seconds=5.0)
    platform.post("c1", "u1", "hi")

    async def run():
        first = await orchestrator.dispatch(CHANNEL, agents[0], force=True)
        second = await orchestrator.dispatch(CHANNEL, agents[0], force=True)
        clock.advance(5)
        third = await orchestrator.dispatch(CHANNEL, agents[0], force=True)
        return first, second, third

    first, second, third = asyncio.run(run())
    assert first.status == "sent"
    assert second.status == "cooldown"
    assert third.status == "sent"


def test_successful_dispatch_updates_state(build_orchestrator, platform, agents, clock):
    orchestrator = build_orchestrator()
    platform.post("c1", "u1", "hi")

    result = asyncio.run(orchestrator.dispatch(CHANNEL, agents[1], force=True))

    assert result.sent
    assert orchestrator.attention.level("c1", "bix") == 0.2
    assert not orchestrator.cooldowns.can_respond("bix", "c1", clock(), triggered_by_bot=False)
    assert orchestrator.membership.is_member("c1", "bix")


def test_declined_decision_sends_nothing(build_orchestrator, platform, completion, agents):
    completion.replies = ["a still pond\nNO"]
    orchestrator = build_orchestrator()
    platform.post("c1", "u1", "nice weather today")

    result = asyncio.run(orchestrator.dispatch(CHANNEL, agents[1]))

    assert result.status == "declined"
    assert result.decision.reason == "a still pond"
    assert platform.sent == []


def test_bot_saturated_channel_is_damped(build_orchestrator, platform, completion, agents):
    orchestrator = build_orchestrator()
    platform.post("c1", "ada", "beep", author_name="Ada", is_agent=True)
    platform.post("c1", "zed", "boop", author_name="Zed", is_agent=True)

    result = asyncio.run(orchestrator.dispatch(CHANNEL, agents[1]))

    assert result.status == "saturated"
    assert completion.calls == []


def test_channel_rate_limit(build_orchestrator, platform, agents):
    orchestrator = build_orchestrator(channel_response_burst=1)
    platform.post("c1", "u1", "hello all")

    async def run():
        first = await orchestrator.dispatch(CHANNEL, agents[0], force=True)
        second = await orchestrator.dispatch(CHANNEL, agents[1], force=True)
        return first, second

    first, second = asyncio.run(run())
    assert first.status == "sent"
    assert second.status == "rate_limited"
    assert len(platform.sent) == 1


def test_responder_timeout_releases_key(build_orchestrator, platform, responder, agents):
    orchestrator = build_orchestrator(dispatch_timeout_seconds=0.01)
    platform.post("c1", "u1", "hi")
    responder.delay = 1.0

    result = asyncio.run(orchestrator.dispatch(CHANNEL, agents[0], force=True))

    assert result.status == "timeout"
    assert orchestrator.in_flight == set()
    assert orchestrator.cooldowns.entries == {}


def test_collaborator_failures_are_contained(build_orchestrator, platform, responder, agents):
    orchestrator = build_orchestrator()
    platform.fetch_error = ConnectionError("gone")
    assert asyncio.run(orchestrator.dispatch(CHANNEL, agents[0], force=True)).status == "failed"

    platform.fetch_error = None
    platform.post("c1", "u1", "hi")
    responder.error = RuntimeError("webhook exploded")
    assert asyncio.run(orchestrator.dispatch(CHANNEL, agents[0], force=True)).status == "failed"

    responder.error = None
    responder.produce = False
    result = asyncio.run(orchestrator.dispatch(CHANNEL, agents[0], force=True))
    assert result.status == "failed"
    assert result.detail == "no response produced"
    assert orchestrator.in_flight == set()


def test_tick_dispatches_to_channel_members(build_orchestrator, platform, completion):
    orchestrator = build_orchestrator()
    platform.active = [CHANNEL]
    platform.post("c1", "u1", "what is everyone up to")
    orchestrator.membership.add("c1", "ada", "g1")

    results = asyncio.run(orchestrator.tick())

    assert [(r.agent_id, r.status) for r in results] == [("ada", "sent")]
    assert len(completion.calls) == 1


def test_tick_decides_once_for_agent_in_two_channels(build_orchestrator, platform, completion):
    orchestrator = build_orchestrator()
    completion.delay = 0.01
    platform.active = [CHANNEL, Channel(id="c2", guild_id="g1", name="garden")]
    platform.post("c1", "u1", "what is everyone up to")
    platform.post("c2", "u2", "nice weather today")
    orchestrator.membership.add("c1", "ada", "g1")
    orchestrator.membership.add("c2", "ada", "g1")

    results = asyncio.run(orchestrator.tick())

    assert sorted((r.channel_id, r.agent_id, r.status) for r in results) == [
        ("c1", "ada", "sent"),
        ("c2", "ada", "sent"),
    ]
    assert len(completion.calls) == 1


def test_tick_falls_back_to_local_activity(build_orchestrator, platform, clock):
    orchestrator = build_orchestrator()
    platform.active = None
    message = platform.post("c1", "u1", "Ada, you there?")
    orchestrator.observe_message(message, now=clock())

    results = asyncio.run(orchestrator.tick())

    assert [(r.channel_id, r.agent_id, r.status) for r in results] == [("c1", "ada", "sent")]


def test_tick_without_channels_is_noop(build_orchestrator, responder):
    orchestrator = build_orchestrator()
    assert asyncio.run(orchestrator.tick()) == []
    assert responder.calls == []


def test_candidates_are_known_deduplicated_and_capped(build_orchestrator, clock):
    orchestrator = build_orchestrator(max_dispatch_per_channel=2)
    orchestrator.attention.set_max("c1", "ada", now=clock())
    orchestrator.activity.record_mention("c1", "ada", clock())
    orchestrator.activity.record_mention("c1", "ghost", clock())
    orchestrator.membership.add("c1", "ada", "g1")
    orchestrator.membership.add("c1", "bix", "g1")

    candidates = orchestrator.candidates_for("c1", clock())

    assert candidates[0] == "ada"
    assert sorted(candidates) == ["ada", "bix"]

    capped = build_orchestrator(max_dispatch_per_channel=1)
    capped.membership.add("c1", "ada", "g1")
    capped.membership.add("c1", "bix", "g1")
    assert len(capped.candidates_for("c1", clock())) == 1


def test_drain_abandons_stuck_dispatches(build_orchestrator, platform, responder):
    orchestrator = build_orchestrator()

    async def run():
        responder.gate = asyncio.Event()
        await orchestrator.handle_message(platform.post("c1", "u1", "Ada? Bix?"))
        await asyncio.sleep(0)
        return await orchestrator.drain(0.01)

    assert asyncio.run(run()) == 2
    assert orchestrator.in_flight == set()
    assert orchestrator.pending == 0


def test_dispatch_writes_audit_record(build_orchestrator, platform, agents, caplog):
    orchestrator = build_orchestrator()
    platform.post("c1", "u1", "hi")

    with caplog.at_level(logging.INFO, logger="chorus.audit"):
        asyncio.run(orchestrator.dispatch(CHANNEL, agents[0], force=True))

    records = [json.loads(r.getMessage()) for r in caplog.records if r.name == "chorus.audit"]
    assert len(records) == 1
    assert records[0]["agent_id"] == "ada"
    assert records[0]["forced"] is True
    assert records[0]["result"]["status"] == "sent"


def test_refresh_roster_keeps_cache_on_failure(build_orchestrator, agents):
    class BrokenRoster:
        async def list_agents(self):
            raise ConnectionError("roster offline")

        async def update_agent(self, agent):
            return None

    orchestrator = build_orchestrator()
    orchestrator.roster = BrokenRoster()
    assert asyncio.run(orchestrator.refresh_roster()) == 2
    assert sorted(orchestrator.agents) == ["ada", "bix"]
