import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from .activity import ChannelActivity
from .agents import Agent
from .attention import AttentionStore
from .audit import log_dispatch
from .config import RuntimeConfig
from .cooldown import CooldownLedger, RateLimiter
from .decision import Decision, DecisionMaker, passes_saturation_damper
from .membership import MembershipTracker
from .messages import Channel, ChannelMessage
from .platform import AgentRoster, ChatPlatform, ResponseGenerator

DISPATCH_STATUSES = {"sent", "in_flight", "cooldown", "saturated", "declined", "rate_limited", "failed", "timeout"}
_UNAUDITED = {"in_flight", "cooldown"}


@dataclass
class DispatchResult:
    channel_id: str
    agent_id: str
    status: str
    detail: str = ""
    forced: bool = False
    decision: Optional[Decision] = None

    def __post_init__(self) -> None:
        if self.status not in DISPATCH_STATUSES:
            raise ValueError(f"Unsupported dispatch status: {self.status}")

    @property
    def sent(self) -> bool:
        return self.status == "sent"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channel_id": self.channel_id,
            "agent_id": self.agent_id,
            "status": self.status,
            "detail": self.detail,
            "forced": self.forced,
            "decision": self.decision.to_dict() if self.decision else None,
        }


class ConversationOrchestrator:
    def __init__(
        self,
        config: RuntimeConfig,
        platform: ChatPlatform,
        responder: ResponseGenerator,
        decisions: DecisionMaker,
        roster: AgentRoster | None = None,
        attention: AttentionStore | None = None,
        membership: MembershipTracker | None = None,
        cooldowns: CooldownLedger | None = None,
        rate_limiter: RateLimiter | None = None,
        activity: ChannelActivity | None = None,
        audit_logger: logging.Logger | None = None,
        clock: Callable[[], float] | None = None,
        rng: random.Random | None = None,
    ):
        self.config = config
        self.platform = platform
        self.responder = responder
        self.decisions = decisions
        self.roster = roster
        self.rng = rng or random.Random()
        self.attention = attention or AttentionStore(
            decay_step=config.attention_decay_step,
            post_mention_messages=config.post_mention_messages,
            mention_ttl_seconds=config.mention_memory_ttl_seconds,
            rng=self.rng,
        )
        self.membership = membership or MembershipTracker(config.max_channels_per_agent)
        self.cooldowns = cooldowns or CooldownLedger(config.human_cooldown_seconds, config.bot_cooldown_seconds)
        self.rate_limiter = rate_limiter or RateLimiter(
            max_per_minute=config.channel_responses_per_minute, burst=config.channel_response_burst
        )
        self.activity = activity or ChannelActivity(window_seconds=config.active_window_seconds)
        self.audit_logger = audit_logger or logging.getLogger("chorus.audit")
        self.clock = clock or time.time
        self.agents: Dict[str, Agent] = {}
        self.in_flight: Set[Tuple[str, str]] = set()
        self._tasks: Set[asyncio.Task] = set()
        self.logger = logging.getLogger("chorus.orchestrator")

    # Roster

    def set_agents(self, agents: List[Agent]) -> None:
        self.agents = {a.id: a for a in agents if a.id and a.name and a.active}

    async def refresh_roster(self) -> int:
        if self.roster is None:
            return len(self.agents)
        try:
            agents = await self.roster.list_agents()
        except Exception as exc:
            self.logger.warning("Roster refresh failed; keeping %d cached agents: %s", len(self.agents), exc)
            return len(self.agents)
        before = len(agents)
        self.set_agents(agents)
        if len(self.agents) != before:
            self.logger.warning("%d agents were excluded due to missing id or name", before - len(self.agents))
        return len(self.agents)

    def agent_list(self) -> List[Agent]:
        return list(self.agents.values())

    # Inbound events

    def observe_message(self, message: ChannelMessage, now: float | None = None) -> List[str]:
        """
        Fold one inbound message into attention, activity and membership state.
        Returns the ids of agents the message mentions.
        """
        now = self.clock() if now is None else now
        channel_id = message.channel_id
        known = self.activity.get(channel_id)
        guild_id = message.guild_id or (known.guild_id if known else "")
        channel = known if known and known.guild_id == guild_id else Channel(id=channel_id, guild_id=guild_id)
        self.activity.mark(channel, now)

        # Count this message against earlier mentions before opening new ones.
        self.attention.track_message(channel_id)

        mentioned: List[str] = []
        author_name = (message.author_name or "").lower()
        for agent in self.agents.values():
            if agent.id == message.author_id or agent.name.lower() == author_name:
                continue
            if not message.mentions(agent.name, agent.emoji):
                continue
            self.attention.set_max(channel_id, agent.id, mentioned_by=message.author_id, now=now)
            self.activity.record_mention(channel_id, agent.id, now)
            if not self.membership.is_member(channel_id, agent.id):
                self.membership.add(channel_id, agent.id, guild_id, now)
            mentioned.append(agent.id)

        for agent_id in self.membership.list_agents(channel_id):
            if agent_id in mentioned or agent_id == message.author_id:
                continue
            self.attention.increase(channel_id, agent_id, self.config.activity_attention_boost, now)
            self.membership.touch(agent_id, guild_id, now)
        return mentioned

    async def handle_message(self, message: ChannelMessage) -> List[str]:
        mentioned = self.observe_message(message)
        if message.author_is_agent or not mentioned:
            return mentioned
        channel = self.activity.get(message.channel_id) or Channel(
            id=message.channel_id, guild_id=message.guild_id or ""
        )
        for agent_id in mentioned:
            agent = self.agents.get(agent_id)
            if agent is not None:
                self.spawn(self.dispatch(channel, agent, force=True), name=f"mention:{channel.id}:{agent_id}")
        return mentioned

    # Tick

    async def active_channels(self) -> List[Channel]:
        try:
            channels = await asyncio.wait_for(
                self.platform.list_active_channels(self.config.active_window_seconds),
                timeout=self.config.fetch_timeout_seconds,
            )
        except Exception as exc:
            self.logger.warning("Active channel listing failed; using local activity view: %s", exc)
            return self.activity.active_channels(self.clock())
        for channel in channels:
            self.activity.remember(channel)
        return list(channels)

    def candidates_for(self, channel_id: str, now: float | None = None) -> List[str]:
        now = self.clock() if now is None else now
        pools = (
            self.attention.mentioned_agents(channel_id, now)
            + self.activity.top_mentioned(channel_id, self.config.top_mentions_k, now)
            + self.membership.list_agents(channel_id)
        )
        seen: Set[str] = set()
        ordered: List[str] = []
        for agent_id in pools:
            if agent_id in seen or agent_id not in self.agents:
                continue
            seen.add(agent_id)
            ordered.append(agent_id)
        self.rng.shuffle(ordered)
        ordered.sort(key=lambda agent_id: self.attention.priority(channel_id, agent_id))
        return ordered[: max(0, self.config.max_dispatch_per_channel)]

    async def tick(self) -> List[DispatchResult]:
        channels = await self.active_channels()
        if not channels:
            return []
        batches = await asyncio.gather(
            *(self.process_channel(channel) for channel in channels), return_exceptions=True
        )
        results: List[DispatchResult] = []
        for channel, batch in zip(channels, batches):
            if isinstance(batch, BaseException):
                self.logger.warning("Processing channel %s failed: %s", channel.id, batch)
                continue
            results.extend(batch)
        return results

    async def process_channel(self, channel: Channel) -> List[DispatchResult]:
        candidates = self.candidates_for(channel.id)
        if not candidates:
            return []
        return list(await asyncio.gather(*(self.dispatch(channel, self.agents[aid]) for aid in candidates)))

    # Dispatch

    async def dispatch(self, channel: Channel, agent: Agent, force: bool = False) -> DispatchResult:
        key = (channel.id, agent.id)
        if key in self.in_flight:
            self.logger.debug("Skipping already processing response: %s-%s", channel.id, agent.id)
            return DispatchResult(channel.id, agent.id, "in_flight", forced=force)
        # No await between the membership test and this add.
        self.in_flight.add(key)
        try:
            result = await self._run_dispatch(channel, agent, force)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.logger.warning("Dispatch %s-%s crashed: %s", channel.id, agent.id, exc)
            result = DispatchResult(channel.id, agent.id, "failed", detail=str(exc), forced=force)
        finally:
            self.in_flight.discard(key)
        if result.status not in _UNAUDITED:
            try:
                log_dispatch(
                    self.audit_logger,
                    channel_id=channel.id,
                    agent_id=agent.id,
                    forced=force,
                    decision=result.decision.to_dict() if result.decision else None,
                    result=result.to_dict(),
                )
            except Exception as exc:
                self.logger.warning("Audit log failed: %s", exc)
        return result

    async def _run_dispatch(self, channel: Channel, agent: Agent, force: bool) -> DispatchResult:
        limit = max(
            self.config.response_history_limit,
            self.config.decision_history_limit,
            self.config.saturation_sample_size,
            self.config.bot_streak_limit,
        )
        try:
            messages = await asyncio.wait_for(
                self.platform.fetch_recent_messages(channel.id, limit),
                timeout=self.config.fetch_timeout_seconds,
            )
        except Exception as exc:
            self.logger.warning("Fetching messages for %s failed: %s", channel.id, exc)
            return DispatchResult(channel.id, agent.id, "failed", detail=f"fetch failed: {exc}", forced=force)

        now = self.clock()
        triggered_by_bot = bool(messages) and messages[-1].author_is_agent
        if not self.cooldowns.can_respond(agent.id, channel.id, now, triggered_by_bot):
            wait = self.cooldowns.remaining(agent.id, channel.id, now, triggered_by_bot)
            return DispatchResult(channel.id, agent.id, "cooldown", detail=f"{wait:.1f}s remaining", forced=force)

        decision: Optional[Decision] = None
        if not force:
            if triggered_by_bot and not passes_saturation_damper(
                messages, self.config.saturation_sample_size, self.rng
            ):
                return DispatchResult(channel.id, agent.id, "saturated", detail="bot-dominated channel")
            decision = await self.decisions.should_respond(agent, messages)
            if not decision.verdict:
                return DispatchResult(channel.id, agent.id, "declined", detail=decision.reason, decision=decision)

        if not self.rate_limiter.allow(channel.id, now):
            return DispatchResult(
                channel.id, agent.id, "rate_limited", detail="channel rate limit", forced=force, decision=decision
            )

        self.logger.info("%s decided to respond in %s (force=%s)", agent.name, channel.id, force)
        try:
            handle = await asyncio.wait_for(
                self.responder.generate(channel, agent, messages),
                timeout=self.config.dispatch_timeout_seconds,
            )
        except asyncio.TimeoutError:
            self.logger.warning("Response generation for %s in %s timed out", agent.name, channel.id)
            return DispatchResult(channel.id, agent.id, "timeout", forced=force, decision=decision)
        except Exception as exc:
            self.logger.warning("Response generation for %s in %s failed: %s", agent.name, channel.id, exc)
            return DispatchResult(channel.id, agent.id, "failed", detail=str(exc), forced=force, decision=decision)
        if handle is None:
            return DispatchResult(
                channel.id, agent.id, "failed", detail="no response produced", forced=force, decision=decision
            )

        done = self.clock()
        self.cooldowns.record(agent.id, channel.id, done, triggered_by_bot)
        self.attention.increase(channel.id, agent.id, self.config.response_attention_boost, done)
        if channel.guild_id and not self.membership.is_member(channel.id, agent.id):
            self.membership.add(channel.id, agent.id, channel.guild_id, done)
        else:
            self.membership.touch(agent.id, channel.guild_id, done)
        return DispatchResult(channel.id, agent.id, "sent", forced=force, decision=decision)

    # Background work

    def spawn(self, coro, name: str | None = None) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            self.logger.warning("Background dispatch %s failed: %s", task.get_name(), exc)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, grace_seconds: float) -> int:
        """
        Let spawned dispatches settle; cancel whatever is still running after
        the grace period. Returns the number of abandoned tasks.
        """
        tasks = set(self._tasks)
        if not tasks:
            return 0
        _, pending = await asyncio.wait(tasks, timeout=max(0.0, grace_seconds))
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            self.logger.warning("Abandoned %d in-flight dispatches at shutdown", len(pending))
        return len(pending)
