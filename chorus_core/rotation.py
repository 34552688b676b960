import logging
import random
import time
from typing import TYPE_CHECKING, Callable, Dict, List, Optional

from .messages import Channel

if TYPE_CHECKING:
    from .orchestrator import ConversationOrchestrator, DispatchResult


class BackgroundRotationManager:
    """
    Slow background pass that lets a random agent drop into active channels
    that have not been rotated recently. Dispatches are not forced, so the
    decision model still gets a say.
    """

    def __init__(
        self,
        orchestrator: "ConversationOrchestrator",
        interval_seconds: float = 300.0,
        max_channels: int = 2,
        rng: random.Random | None = None,
        clock: Callable[[], float] | None = None,
    ):
        self.orchestrator = orchestrator
        self.interval_seconds = interval_seconds
        self.max_channels = max_channels
        self.rng = rng or random.Random()
        self.clock = clock or time.time
        self.last_update: Dict[str, float] = {}
        self.logger = logging.getLogger("chorus.rotation")

    def next_channels(self, channels: List[Channel], now: float | None = None) -> List[Channel]:
        now = self.clock() if now is None else now
        stale = [c for c in channels if now - self.last_update.get(c.id, 0.0) >= self.interval_seconds]
        stale.sort(key=lambda c: self.last_update.get(c.id, 0.0))
        return stale[: max(0, self.max_channels)]

    def mark_updated(self, channel_id: str, now: float | None = None) -> None:
        self.last_update[channel_id] = self.clock() if now is None else now

    async def tick(self) -> List["DispatchResult"]:
        agents = self.orchestrator.agent_list()
        if not agents:
            return []
        channels = self.next_channels(await self.orchestrator.active_channels())
        results: List["DispatchResult"] = []
        for channel in channels:
            agent = self.rng.choice(agents)
            result: Optional["DispatchResult"] = None
            try:
                result = await self.orchestrator.dispatch(channel, agent, force=False)
            except Exception as exc:
                self.logger.warning("Background rotation for %s failed: %s", channel.id, exc)
            finally:
                self.mark_updated(channel.id)
            if result is not None:
                self.logger.debug("Rotation %s in %s -> %s", agent.name, channel.id, result.status)
                results.append(result)
        return results

    def sweep(self, active_ids: List[str]) -> int:
        keep = set(active_ids)
        stale = [cid for cid in self.last_update if cid not in keep]
        for cid in stale:
            self.last_update.pop(cid, None)
        return len(stale)
