import time
from dataclasses import dataclass
from typing import Dict, List, Tuple

Key = Tuple[str, str]  # (agent_id, channel_id)


@dataclass
class CooldownEntry:
    last_response: float
    bot_triggered: bool


class CooldownLedger:
    """
    Last-response bookkeeping per (agent, channel). Bot-triggered replies are
    held to a much longer window than human-triggered ones so that agent to
    agent exchanges cannot feed on themselves.
    """

    def __init__(self, human_cooldown_seconds: float = 5.0, bot_cooldown_seconds: float = 300.0):
        self.human_cooldown_seconds = human_cooldown_seconds
        self.bot_cooldown_seconds = bot_cooldown_seconds
        self.entries: Dict[Key, CooldownEntry] = {}

    def window(self, triggered_by_bot: bool) -> float:
        return self.bot_cooldown_seconds if triggered_by_bot else self.human_cooldown_seconds

    def can_respond(self, agent_id: str, channel_id: str, now: float, triggered_by_bot: bool) -> bool:
        entry = self.entries.get((agent_id, channel_id))
        if entry is None:
            return True
        return now - entry.last_response >= self.window(triggered_by_bot)

    def remaining(self, agent_id: str, channel_id: str, now: float, triggered_by_bot: bool) -> float:
        entry = self.entries.get((agent_id, channel_id))
        if entry is None:
            return 0.0
        return max(0.0, self.window(triggered_by_bot) - (now - entry.last_response))

    def record(self, agent_id: str, channel_id: str, now: float, triggered_by_bot: bool) -> None:
        self.entries[(agent_id, channel_id)] = CooldownEntry(last_response=now, bot_triggered=triggered_by_bot)

    def sweep(self, now: float, retention_seconds: float | None = None) -> int:
        retention = retention_seconds
        if retention is None:
            retention = max(self.human_cooldown_seconds, self.bot_cooldown_seconds)
        stale = [key for key, entry in self.entries.items() if now - entry.last_response >= retention]
        for key in stale:
            self.entries.pop(key, None)
        return len(stale)

    def snapshot(self) -> List[Tuple[str, str, float, bool]]:
        return [(agent, chan, e.last_response, e.bot_triggered) for (agent, chan), e in self.entries.items()]

    def restore(self, rows: List[Tuple[str, str, float, bool]]) -> None:
        for agent_id, channel_id, last_response, bot_triggered in rows:
            self.entries[(str(agent_id), str(channel_id))] = CooldownEntry(
                last_response=float(last_response), bot_triggered=bool(bot_triggered)
            )


class RateLimiter:
    def __init__(self, max_per_minute: int = 4, burst: int = 2, burst_window: float = 5.0):
        self.max_per_minute = max_per_minute
        self.burst = burst
        self.burst_window = burst_window
        self.window = 60.0
        self.actions: Dict[str, list[float]] = {}

    def allow(self, key: str, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        if key not in self.actions:
            self.actions[key] = []
        self.actions[key] = [t for t in self.actions[key] if now - t < self.window]
        if len(self.actions[key]) >= self.max_per_minute:
            return False
        recent_burst = [t for t in self.actions[key] if now - t < self.burst_window]
        if len(recent_burst) >= self.burst:
            return False
        self.actions[key].append(now)
        return True

    def sweep(self, now: float | None = None) -> int:
        now = time.time() if now is None else now
        dropped = 0
        for key in list(self.actions.keys()):
            kept = [t for t in self.actions[key] if now - t < self.window]
            if kept:
                self.actions[key] = kept
            else:
                self.actions.pop(key, None)
                dropped += 1
        return dropped
