import logging
import math
import random
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

Key = Tuple[str, str]  # (channel_id, agent_id)

# Levels below this are treated as fully decayed; repeated float subtraction
# of the decay step otherwise leaves residue like 1e-17.
_EPSILON = 1e-9


def clamp01(val: float) -> float:
    try:
        val = float(val)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(val):
        return 0.0
    return max(0.0, min(1.0, val))


@dataclass
class AttentionEntry:
    level: float
    last_update: float


@dataclass
class MentionMemory:
    remaining_messages: int
    mentioned_by: str | None
    opened_at: float


class AttentionStore:
    def __init__(
        self,
        decay_step: float = 0.1,
        post_mention_messages: int = 3,
        mention_ttl_seconds: float = 600.0,
        rng: random.Random | None = None,
    ):
        self.decay_step = clamp01(decay_step)
        self.post_mention_messages = max(1, int(post_mention_messages))
        self.mention_ttl_seconds = mention_ttl_seconds
        self.rng = rng or random.Random()
        self.entries: Dict[Key, AttentionEntry] = {}
        self.mentions: Dict[Key, MentionMemory] = {}
        self.logger = logging.getLogger("chorus.attention")

    def level(self, channel_id: str, agent_id: str) -> float:
        entry = self.entries.get((channel_id, agent_id))
        return entry.level if entry else 0.0

    def increase(self, channel_id: str, agent_id: str, amount: float, now: float | None = None) -> float:
        key = (channel_id, agent_id)
        now = time.time() if now is None else now
        try:
            amount = float(amount)
        except (TypeError, ValueError):
            amount = 0.0
        if math.isnan(amount):
            amount = 0.0
        # Negative amounts lower the level.
        level = clamp01(self.level(channel_id, agent_id) + amount)
        if level <= _EPSILON:
            self.entries.pop(key, None)
            self.mentions.pop(key, None)
            return 0.0
        self.entries[key] = AttentionEntry(level=level, last_update=now)
        self.logger.debug("Attention for %s in %s now %.2f", agent_id, channel_id, level)
        return level

    def set_max(
        self, channel_id: str, agent_id: str, mentioned_by: str | None = None, now: float | None = None
    ) -> None:
        key = (channel_id, agent_id)
        now = time.time() if now is None else now
        self.entries[key] = AttentionEntry(level=1.0, last_update=now)
        # A fresh mention refreshes the post-mention budget.
        self.mentions[key] = MentionMemory(
            remaining_messages=self.post_mention_messages,
            mentioned_by=mentioned_by,
            opened_at=now,
        )

    def decay_tick(self, now: float | None = None) -> int:
        now = time.time() if now is None else now
        removed = 0
        for key, entry in list(self.entries.items()):
            new_level = clamp01(entry.level - self.decay_step)
            if new_level <= _EPSILON:
                self.entries.pop(key, None)
                self.mentions.pop(key, None)
                removed += 1
            else:
                entry.level = new_level
                entry.last_update = now
        return removed

    def track_message(self, channel_id: str) -> None:
        for key, memory in list(self.mentions.items()):
            if key[0] != channel_id:
                continue
            memory.remaining_messages -= 1
            if memory.remaining_messages <= 0:
                self.mentions.pop(key, None)

    def is_recently_mentioned(self, channel_id: str, agent_id: str, now: float | None = None) -> bool:
        key = (channel_id, agent_id)
        memory = self.mentions.get(key)
        if memory is None:
            return False
        now = time.time() if now is None else now
        if now - memory.opened_at >= self.mention_ttl_seconds:
            self.mentions.pop(key, None)
            return False
        return True

    def mentioned_agents(self, channel_id: str, now: float | None = None) -> List[str]:
        return [
            agent_id
            for (chan, agent_id) in list(self.mentions.keys())
            if chan == channel_id and self.is_recently_mentioned(chan, agent_id, now)
        ]

    def mention_of(self, channel_id: str, agent_id: str) -> Optional[MentionMemory]:
        return self.mentions.get((channel_id, agent_id))

    def force_respond(self, channel_id: str, agent_id: str) -> bool:
        return self.level(channel_id, agent_id) >= 1.0

    def consider_respond(self, channel_id: str, agent_id: str) -> bool:
        level = self.level(channel_id, agent_id)
        return 0.3 <= level <= 0.7

    def random_respond(self, channel_id: str, agent_id: str) -> bool:
        level = self.level(channel_id, agent_id)
        return 0.0 < level < 0.3 and self.rng.random() < level

    def priority(self, channel_id: str, agent_id: str) -> int:
        """
        Lower is more eager. Used to order candidates; never a verdict.
        """
        if self.force_respond(channel_id, agent_id):
            return 0
        if self.consider_respond(channel_id, agent_id):
            return 1
        if self.random_respond(channel_id, agent_id):
            return 2
        return 3

    def sweep(self, now: float | None = None) -> int:
        now = time.time() if now is None else now
        expired = [
            key for key, memory in self.mentions.items() if now - memory.opened_at >= self.mention_ttl_seconds
        ]
        for key in expired:
            self.mentions.pop(key, None)
        return len(expired)

    def snapshot(self) -> List[Tuple[str, str, float, float]]:
        return [(chan, agent, e.level, e.last_update) for (chan, agent), e in self.entries.items()]

    def restore(self, rows: List[Tuple[str, str, float, float]]) -> None:
        for channel_id, agent_id, level, last_update in rows:
            level = clamp01(level)
            if level <= _EPSILON:
                continue
            self.entries[(str(channel_id), str(agent_id))] = AttentionEntry(level=level, last_update=float(last_update))
