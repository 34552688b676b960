import logging
import random
import time
from typing import TYPE_CHECKING, Callable, Optional

if TYPE_CHECKING:
    from .orchestrator import ConversationOrchestrator, DispatchResult


class IdleWatchdog:
    def __init__(
        self,
        orchestrator: "ConversationOrchestrator",
        threshold_seconds: float = 30.0,
        rng: random.Random | None = None,
        clock: Callable[[], float] | None = None,
    ):
        self.orchestrator = orchestrator
        self.threshold_seconds = threshold_seconds
        self.rng = rng or random.Random()
        self.clock = clock or time.time
        self.last_message_at = self.clock()
        self.logger = logging.getLogger("chorus.watchdog")

    def touch(self, now: float | None = None) -> None:
        self.last_message_at = self.clock() if now is None else now

    def idle_for(self, now: float | None = None) -> float:
        now = self.clock() if now is None else now
        return max(0.0, now - self.last_message_at)

    async def tick(self) -> Optional["DispatchResult"]:
        """
        Break a global silence by forcing one random agent to speak in one
        random active channel.
        """
        if self.idle_for() < self.threshold_seconds:
            return None
        agents = self.orchestrator.agent_list()
        if not agents:
            return None
        channels = await self.orchestrator.active_channels()
        if not channels:
            return None
        channel = self.rng.choice(channels)
        agent = self.rng.choice(agents)
        self.logger.info("No messages for %.0fs; nudging %s in %s", self.idle_for(), agent.name, channel.id)
        self.touch()
        return await self.orchestrator.dispatch(channel, agent, force=True)
