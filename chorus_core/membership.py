import logging
import time
from typing import Dict, List, Optional, Set, Tuple


class MembershipTracker:
    """
    Tracks which agents are present in which channels and when each agent was
    last active in each community (guild). Membership only changes through
    add/remove; there is no eviction on inactivity.
    """

    def __init__(self, max_channels_per_agent: int = 3):
        self.max_channels_per_agent = max(1, int(max_channels_per_agent))
        self.agent_channels: Dict[str, Set[str]] = {}
        self.channel_agents: Dict[str, Set[str]] = {}
        self.community_activity: Dict[str, Dict[str, float]] = {}
        # agent -> channel -> community the channel belongs to
        self.channel_communities: Dict[str, Dict[str, str]] = {}
        self.logger = logging.getLogger("chorus.membership")

    def add(self, channel_id: str, agent_id: str, community_id: str, now: float | None = None) -> bool:
        if not agent_id or not channel_id:
            self.logger.error("Refusing membership without ids: channel=%r agent=%r", channel_id, agent_id)
            return False
        channels = self.agent_channels.get(agent_id, set())
        if channel_id not in channels and len(channels) >= self.max_channels_per_agent:
            self.logger.info(
                "Agent %s already holds %d channels; not joining %s", agent_id, len(channels), channel_id
            )
            return False
        now = time.time() if now is None else now
        self.agent_channels.setdefault(agent_id, set()).add(channel_id)
        self.channel_agents.setdefault(channel_id, set()).add(agent_id)
        if community_id:
            self.channel_communities.setdefault(agent_id, {})[channel_id] = community_id
            self.community_activity.setdefault(agent_id, {})[community_id] = now
        return True

    def touch(self, agent_id: str, community_id: str, now: float | None = None) -> None:
        if agent_id not in self.agent_channels or not community_id:
            return
        now = time.time() if now is None else now
        self.community_activity.setdefault(agent_id, {})[community_id] = now

    def remove(self, channel_id: str, agent_id: str) -> bool:
        removed = False
        channels = self.agent_channels.get(agent_id)
        if channels and channel_id in channels:
            channels.discard(channel_id)
            removed = True
            if not channels:
                self.agent_channels.pop(agent_id, None)
        communities = self.channel_communities.get(agent_id)
        if communities is not None:
            communities.pop(channel_id, None)
            if not communities:
                self.channel_communities.pop(agent_id, None)
        agents = self.channel_agents.get(channel_id)
        if agents and agent_id in agents:
            agents.discard(agent_id)
            removed = True
            if not agents:
                self.channel_agents.pop(channel_id, None)
        return removed

    def is_member(self, channel_id: str, agent_id: str) -> bool:
        return agent_id in self.channel_agents.get(channel_id, set())

    def can_join(self, agent_id: str) -> bool:
        return len(self.agent_channels.get(agent_id, set())) < self.max_channels_per_agent

    def list_agents(self, channel_id: str) -> List[str]:
        return sorted(self.channel_agents.get(channel_id, set()))

    def list_channels(self, agent_id: str) -> List[str]:
        return sorted(self.agent_channels.get(agent_id, set()))

    def active_communities(self, agent_id: str) -> List[str]:
        return list(self.community_activity.get(agent_id, {}).keys())

    def most_recent_community(self, agent_id: str) -> Optional[str]:
        activity = self.community_activity.get(agent_id)
        if not activity:
            return None
        return max(activity.items(), key=lambda item: item[1])[0]

    def community_of(self, agent_id: str, channel_id: str) -> Optional[str]:
        return self.channel_communities.get(agent_id, {}).get(channel_id)

    def snapshot(self) -> List[Tuple[str, str, str, float]]:
        """
        One row per membership, carrying the channel's own community and the
        agent's last activity there.
        """
        rows: List[Tuple[str, str, str, float]] = []
        for agent_id, channels in self.agent_channels.items():
            activity = self.community_activity.get(agent_id, {})
            for channel_id in channels:
                community_id = self.community_of(agent_id, channel_id) or ""
                rows.append((agent_id, channel_id, community_id, activity.get(community_id, 0.0)))
        return rows

    def restore(self, rows: List[Tuple[str, str, str, float]]) -> int:
        restored = 0
        for agent_id, channel_id, community_id, stamp in rows:
            agent_id, community_id, stamp = str(agent_id), str(community_id or ""), float(stamp or 0.0)
            previous = self.community_activity.get(agent_id, {}).get(community_id)
            if not self.add(str(channel_id), agent_id, community_id, now=stamp):
                continue
            restored += 1
            if community_id and previous is not None and previous > stamp:
                self.community_activity[agent_id][community_id] = previous
        return restored
