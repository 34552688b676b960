import json
import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

_logger = logging.getLogger("chorus.agents")


@dataclass
class Agent:
    id: str
    name: str
    emoji: str | None = None
    personality: str = ""
    description: str = ""
    image_url: str | None = None
    model: str | None = None
    active: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["Agent"]:
        agent_id = data.get("id") or data.get("_id")
        name = data.get("name")
        if not agent_id or not name:
            _logger.warning("Skipping agent with missing id or name: %s", json.dumps(data, default=str)[:300])
            return None
        return cls(
            id=str(agent_id),
            name=str(name),
            emoji=data.get("emoji") or None,
            personality=data.get("personality") or "",
            description=data.get("description") or "",
            image_url=data.get("image_url") or data.get("imageUrl") or None,
            model=data.get("model") or None,
            active=data.get("active", True) is not False,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class InMemoryRoster:
    """
    Roster held in process memory. Used directly by tests and as the base of
    the file-backed roster.
    """

    def __init__(self, agents: List[Agent] | None = None):
        self._agents: Dict[str, Agent] = {}
        for agent in agents or []:
            self._agents[agent.id] = agent

    async def list_agents(self) -> List[Agent]:
        return [a for a in self._agents.values() if a.active]

    async def update_agent(self, agent: Agent) -> None:
        self._agents[agent.id] = agent

    def get(self, agent_id: str) -> Optional[Agent]:
        return self._agents.get(agent_id)


class JsonRoster(InMemoryRoster):
    """
    Roster persisted as a JSON list of agent records. Model reselection made
    by the core is written back so it survives restarts.
    """

    def __init__(self, path: Path):
        self.path = path
        super().__init__(self._load())

    def _load(self) -> List[Agent]:
        if not self.path.exists():
            _logger.warning("Roster file %s not found; starting with no agents", self.path)
            return []
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            _logger.error("Roster file %s unreadable: %s", self.path, exc)
            return []
        if not isinstance(raw, list):
            _logger.error("Roster file %s must hold a JSON list", self.path)
            return []
        agents = []
        for item in raw:
            if not isinstance(item, dict):
                continue
            agent = Agent.from_dict(item)
            if agent is not None:
                agents.append(agent)
        return agents

    async def update_agent(self, agent: Agent) -> None:
        await super().update_agent(agent)
        try:
            payload = [a.to_dict() for a in self._agents.values()]
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        except OSError as exc:
            _logger.warning("Failed to persist roster update for %s: %s", agent.id, exc)
