import asyncio
import concurrent.futures
import logging
import random
import time
from typing import Any, Callable, Dict, List, Optional

from .activity import ChannelActivity
from .attention import AttentionStore
from .config import RuntimeConfig
from .cooldown import CooldownLedger, RateLimiter
from .decision import DecisionMaker
from .membership import MembershipTracker
from .messages import ChannelMessage
from .orchestrator import ConversationOrchestrator
from .platform import AgentRoster, ChatPlatform, CompletionClient, ResponseGenerator
from .responder import LLMResponder
from .rotation import BackgroundRotationManager
from .scheduler import TickScheduler
from .store import StateStore, StoreHealthMonitor
from .watchdog import IdleWatchdog


class ChorusEngine:
    """
    Owns every piece of conversational state and the scheduler that drives it.
    Adapters feed inbound messages through handle_message; everything else
    happens on timers.
    """

    def __init__(
        self,
        config: RuntimeConfig,
        platform: ChatPlatform,
        completion: CompletionClient,
        roster: AgentRoster | None = None,
        responder: ResponseGenerator | None = None,
        store: StateStore | None = None,
        audit_logger: logging.Logger | None = None,
        clock: Callable[[], float] | None = None,
        rng: random.Random | None = None,
    ):
        self.config = config
        self.clock = clock or time.time
        self.rng = rng or random.Random()
        self.logger = logging.getLogger("chorus.engine")

        self.attention = AttentionStore(
            decay_step=config.attention_decay_step,
            post_mention_messages=config.post_mention_messages,
            mention_ttl_seconds=config.mention_memory_ttl_seconds,
            rng=self.rng,
        )
        self.membership = MembershipTracker(config.max_channels_per_agent)
        self.cooldowns = CooldownLedger(config.human_cooldown_seconds, config.bot_cooldown_seconds)
        self.rate_limiter = RateLimiter(
            max_per_minute=config.channel_responses_per_minute, burst=config.channel_response_burst
        )
        self.activity = ChannelActivity(window_seconds=config.active_window_seconds)
        self.decisions = DecisionMaker(
            completion,
            cache_seconds=config.decision_cache_seconds,
            history_limit=config.decision_history_limit,
            bot_streak_limit=config.bot_streak_limit,
            model=config.decision_model,
            timeout_seconds=config.completion_timeout_seconds,
            error_backoff_seconds=config.decision_error_backoff_seconds,
            clock=self.clock,
        )
        self.responder = responder or LLMResponder(platform, completion, roster=roster, rng=self.rng)
        self.orchestrator = ConversationOrchestrator(
            config,
            platform,
            self.responder,
            self.decisions,
            roster=roster,
            attention=self.attention,
            membership=self.membership,
            cooldowns=self.cooldowns,
            rate_limiter=self.rate_limiter,
            activity=self.activity,
            audit_logger=audit_logger,
            clock=self.clock,
            rng=self.rng,
        )
        self.rotation = BackgroundRotationManager(
            self.orchestrator,
            interval_seconds=config.rotation_interval_seconds,
            max_channels=config.rotation_max_channels,
            rng=self.rng,
            clock=self.clock,
        )
        self.watchdog = IdleWatchdog(
            self.orchestrator, threshold_seconds=config.idle_threshold_seconds, rng=self.rng, clock=self.clock
        )

        self._store_executor = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="chorus-store")
        if store is None and config.persist_state:
            store = StateStore(config)
        self.store = store
        self.health: Optional[StoreHealthMonitor] = None
        if self.store is not None:
            self.health = StoreHealthMonitor(
                self.store,
                attempts=config.store_retry_attempts,
                base_delay=config.store_retry_base_delay,
                executor=self._store_executor,
            )

        self.scheduler = TickScheduler()
        self.scheduler.every("orchestrator_tick", config.tick_interval_seconds, self.orchestrator.tick)
        self.scheduler.every("attention_decay", config.attention_decay_interval_seconds, self._decay)
        self.scheduler.every("background_rotation", config.rotation_interval_seconds, self.rotation.tick)
        self.scheduler.every("idle_watchdog", config.idle_check_interval_seconds, self.watchdog.tick)
        self.scheduler.every("state_sweep", config.sweep_interval_seconds, self._sweep)
        self.scheduler.every("state_persist", config.persist_interval_seconds, self._persist)
        self.scheduler.every("store_health", config.store_probe_interval_seconds, self._probe_store)

    async def handle_message(self, message: ChannelMessage) -> List[str]:
        self.watchdog.touch()
        return await self.orchestrator.handle_message(message)

    async def start(self) -> None:
        restored = await self._restore()
        agents = await self.orchestrator.refresh_roster()
        self.logger.info("Engine starting with %d agents (%s)", agents, restored)
        self.scheduler.start()

    async def stop(self) -> None:
        grace = self.config.shutdown_grace_seconds
        try:
            await self.scheduler.stop(grace)
            await self.orchestrator.drain(grace)
            await self._persist()
        finally:
            self._store_executor.shutdown(wait=False, cancel_futures=True)

    async def _decay(self) -> int:
        removed = self.attention.decay_tick(self.clock())
        if removed:
            self.logger.debug("Attention decay dropped %d entries", removed)
        return removed

    async def _sweep(self) -> Dict[str, int]:
        now = self.clock()
        counts = {
            "mentions": self.attention.sweep(now),
            "cooldowns": self.cooldowns.sweep(now, self.config.cooldown_retention_seconds()),
            "rate_limits": self.rate_limiter.sweep(now),
            "channels": self.activity.sweep(now),
            "decisions": self.decisions.sweep(now),
        }
        counts["rotation"] = self.rotation.sweep(list(self.activity.last_seen.keys()))
        if any(counts.values()):
            self.logger.debug("Swept stale state: %s", counts)
        return counts

    async def _run_blocking(self, fn: Callable[[], Any]) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._store_executor, fn)

    async def _persist(self) -> bool:
        if self.store is None or not self.store.connected:
            return False
        # Snapshots are taken on the loop so each table is internally consistent.
        cooldowns = self.cooldowns.snapshot()
        attention = self.attention.snapshot()
        memberships = self.membership.snapshot()
        store = self.store

        def write() -> bool:
            ok = store.save_cooldowns(cooldowns)
            ok = store.save_attention(attention) and ok
            return store.save_memberships(memberships) and ok

        try:
            return await self._run_blocking(write)
        except Exception as exc:
            self.logger.warning("State persist failed: %s", exc)
            return False

    async def _restore(self) -> Dict[str, int]:
        if self.store is None or not self.store.connected:
            return {}
        store = self.store
        try:
            cooldowns, attention, memberships = await self._run_blocking(
                lambda: (store.load_cooldowns(), store.load_attention(), store.load_memberships())
            )
        except Exception as exc:
            self.logger.warning("State restore failed; starting empty: %s", exc)
            return {}
        self.cooldowns.restore(cooldowns)
        self.attention.restore(attention)
        joined = self.membership.restore(memberships)
        return {"cooldowns": len(cooldowns), "attention": len(attention), "memberships": joined}

    async def _probe_store(self) -> bool:
        if self.health is None:
            return False
        return await self.health.probe()
