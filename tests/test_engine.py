import asyncio
from pathlib import Path

from chorus_core.agents import InMemoryRoster
from chorus_core.engine import ChorusEngine
from chorus_core.messages import Channel

from conftest import make_config

JOBS = {
    "orchestrator_tick",
    "attention_decay",
    "background_rotation",
    "idle_watchdog",
    "state_sweep",
    "state_persist",
    "store_health",
}


def _config(tmp_path: Path, **overrides):
    values = {
        "persist_state": True,
        "state_path": tmp_path / "chorus.db",
        "audit_log_path": tmp_path / "audit.log",
    }
    values.update(overrides)
    return make_config(**values)


def test_engine_registers_every_job(tmp_path, platform, completion, agents):
    engine = ChorusEngine(_config(tmp_path), platform, completion, roster=InMemoryRoster(agents))
    assert set(engine.scheduler.jobs) == JOBS
    assert engine.orchestrator.attention is engine.attention
    assert engine.rotation.orchestrator is engine.orchestrator


def test_engine_persists_on_stop_and_restores_on_start(tmp_path, platform, completion, agents, clock):
    config = _config(tmp_path)

    async def first_run():
        engine = ChorusEngine(config, platform, completion, roster=InMemoryRoster(agents), clock=clock)
        await engine.start()
        engine.cooldowns.record("ada", "c1", clock(), triggered_by_bot=True)
        engine.attention.increase("c1", "bix", 0.4, clock())
        engine.membership.add("c1", "ada", "g1", clock())
        await engine.stop()

    async def second_run():
        engine = ChorusEngine(config, platform, completion, roster=InMemoryRoster(agents), clock=clock)
        await engine.start()
        state = (
            engine.cooldowns.can_respond("ada", "c1", clock(), triggered_by_bot=True),
            engine.attention.level("c1", "bix"),
            engine.membership.list_agents("c1"),
            sorted(engine.orchestrator.agents),
        )
        await engine.stop()
        return state

    asyncio.run(first_run())
    blocked, level, members, roster = asyncio.run(second_run())
    assert blocked is False
    assert level == 0.4
    assert members == ["ada"]
    assert roster == ["ada", "bix"]


def test_handle_message_touches_watchdog(tmp_path, platform, completion, agents, clock):
    engine = ChorusEngine(
        _config(tmp_path, persist_state=False), platform, completion, roster=InMemoryRoster(agents), clock=clock
    )

    async def run():
        await engine.orchestrator.refresh_roster()
        clock.advance(100)
        mentioned = await engine.handle_message(platform.post("c1", "u1", "hi ada"))
        await engine.orchestrator.drain(1.0)
        return mentioned

    assert asyncio.run(run()) == ["ada"]
    assert engine.watchdog.idle_for() == 0.0
    assert engine.store is None
    assert [(cid, aid) for cid, aid, _ in platform.sent] == [("c1", "ada")]


def test_sweep_and_decay_jobs(tmp_path, platform, completion, agents, clock):
    engine = ChorusEngine(
        _config(tmp_path, persist_state=False, active_window_seconds=60), platform, completion, clock=clock
    )
    engine.orchestrator.set_agents(agents)
    engine.activity.mark(Channel(id="c1", guild_id="g1"), clock())
    engine.attention.set_max("c1", "ada", now=clock())
    engine.cooldowns.record("ada", "c1", clock(), triggered_by_bot=False)

    clock.advance(700)
    counts = asyncio.run(engine._sweep())
    removed = asyncio.run(engine._decay())

    assert counts["mentions"] == 1
    assert counts["cooldowns"] == 1
    assert counts["channels"] == 1
    assert removed == 0
    assert engine.attention.level("c1", "ada") == 0.9
