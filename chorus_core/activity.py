import time
from collections import Counter, deque
from typing import Deque, Dict, List, Optional, Tuple

from .messages import Channel


class ChannelActivity:
    """
    Recency of every channel we have seen traffic in, plus a sliding log of
    agent mentions per channel for top-K candidate selection.
    """

    def __init__(self, window_seconds: float = 300.0, mention_log_limit: int = 200):
        self.window_seconds = window_seconds
        self.mention_log_limit = mention_log_limit
        self.last_seen: Dict[str, float] = {}
        self.channels: Dict[str, Channel] = {}
        self.mention_log: Dict[str, Deque[Tuple[float, str]]] = {}

    def mark(self, channel: Channel, now: float | None = None) -> None:
        now = time.time() if now is None else now
        self.channels[channel.id] = channel
        self.last_seen[channel.id] = now

    def get(self, channel_id: str) -> Optional[Channel]:
        return self.channels.get(channel_id)

    def remember(self, channel: Channel) -> None:
        # Keeps names/guilds reported by the platform without touching recency.
        if channel.id in self.last_seen:
            self.channels[channel.id] = channel

    def active_channels(self, now: float | None = None, window_seconds: float | None = None) -> List[Channel]:
        now = time.time() if now is None else now
        window = self.window_seconds if window_seconds is None else window_seconds
        ordered = sorted(self.last_seen.items(), key=lambda item: item[1], reverse=True)
        return [self.channels[cid] for cid, ts in ordered if now - ts <= window and cid in self.channels]

    def record_mention(self, channel_id: str, agent_id: str, now: float | None = None) -> None:
        now = time.time() if now is None else now
        log = self.mention_log.setdefault(channel_id, deque(maxlen=self.mention_log_limit))
        log.append((now, agent_id))

    def top_mentioned(self, channel_id: str, k: int, now: float | None = None) -> List[str]:
        if k <= 0:
            return []
        now = time.time() if now is None else now
        log = self.mention_log.get(channel_id)
        if not log:
            return []
        counts = Counter(agent_id for ts, agent_id in log if now - ts <= self.window_seconds)
        return [agent_id for agent_id, _ in counts.most_common(k)]

    def sweep(self, now: float | None = None) -> int:
        now = time.time() if now is None else now
        dropped = 0
        for channel_id, ts in list(self.last_seen.items()):
            if now - ts > self.window_seconds:
                self.last_seen.pop(channel_id, None)
                self.channels.pop(channel_id, None)
                dropped += 1
        for channel_id, log in list(self.mention_log.items()):
            while log and now - log[0][0] > self.window_seconds:
                log.popleft()
            if not log:
                self.mention_log.pop(channel_id, None)
        return dropped
