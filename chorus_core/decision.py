import asyncio
import logging
import random
import re
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .agents import Agent
from .messages import ChannelMessage, bot_fraction, tail
from .platform import CompletionClient

_TOKEN_RE = re.compile(r"\b(YES|NO)\b", re.IGNORECASE)
_COUNT_WORDS = {2: "two", 3: "three", 4: "four", 5: "five", 6: "six"}


def _count_word(n: int) -> str:
    return _COUNT_WORDS.get(n, str(n))


@dataclass
class Decision:
    verdict: bool
    reason: str
    timestamp: float
    source: str = "model"  # heuristic | cache | model | error

    def to_dict(self):
        return {
            "verdict": "YES" if self.verdict else "NO",
            "reason": self.reason,
            "timestamp": self.timestamp,
            "source": self.source,
        }


def parse_verdict(text: str) -> Tuple[Optional[bool], str]:
    """
    Read the YES/NO token from the last non-empty line of a model reply. Any
    preceding lines are kept as the justification. Returns (None, raw) when
    no token is found.
    """
    lines = [line.strip() for line in (text or "").splitlines()]
    lines = [line for line in lines if line]
    if not lines:
        return None, ""
    tokens = _TOKEN_RE.findall(lines[-1])
    if not tokens:
        return None, "\n".join(lines)
    # An ambiguous line carrying both tokens resolves to NO.
    verdict = all(token.upper() == "YES" for token in tokens)
    reason = "\n".join(lines[:-1]).strip() or lines[-1]
    return verdict, reason


def passes_saturation_damper(
    messages: Sequence[ChannelMessage], sample_size: int = 8, rng: random.Random | None = None
) -> bool:
    """
    Probabilistic brake for bot-dominated channels: the higher the share of
    agent-authored messages in the recent sample, the less likely we go on.
    """
    rng = rng or random.Random()
    fraction = bot_fraction(tail(messages, sample_size))
    return rng.random() > fraction


def build_context(agent: Agent, messages: Sequence[ChannelMessage]) -> List[Dict[str, str]]:
    return [
        {
            "role": "assistant" if m.author_is_agent else "user",
            "content": f"{m.author_name}: {m.text}",
        }
        for m in messages
    ]


def decision_prompt(agent: Agent) -> str:
    return (
        f"As {agent.name}, reflect on the conversation above in a short haiku.\n"
        'Then, on a new line, answer with only "YES" if you should respond now, or "NO" to stay silent.'
    )


class DecisionMaker:
    def __init__(
        self,
        completion: CompletionClient,
        cache_seconds: float = 300.0,
        history_limit: int = 5,
        bot_streak_limit: int = 4,
        model: str | None = None,
        timeout_seconds: float = 20.0,
        error_backoff_seconds: float = 30.0,
        clock: Callable[[], float] | None = None,
    ):
        self.completion = completion
        self.cache_seconds = cache_seconds
        self.history_limit = history_limit
        self.bot_streak_limit = bot_streak_limit
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.error_backoff_seconds = min(error_backoff_seconds, cache_seconds)
        self._clock = clock or time.time
        self.cache: Dict[str, Decision] = {}
        # One adjudication per agent at a time; concurrent callers share it.
        self._pending: Dict[str, asyncio.Task] = {}
        self.calls = 0
        self.logger = logging.getLogger("chorus.decision")

    def _ttl(self, entry: Decision) -> float:
        return self.error_backoff_seconds if entry.source == "error" else self.cache_seconds

    def cached(self, agent_id: str, now: float | None = None) -> Optional[Decision]:
        now = self._clock() if now is None else now
        entry = self.cache.get(agent_id)
        if entry is None:
            return None
        if now - entry.timestamp >= self._ttl(entry):
            return None
        return entry

    async def should_respond(self, agent: Agent, messages: Sequence[ChannelMessage]) -> Decision:
        now = self._clock()
        if not messages:
            return Decision(False, "no recent messages", now, source="heuristic")
        last = messages[-1]

        if last.author_id == agent.id or (last.author_name or "").lower() == agent.name.lower():
            return Decision(False, "avoid replying to yourself", now, source="heuristic")

        streak = tail(messages, self.bot_streak_limit)
        if len(streak) >= self.bot_streak_limit and all(m.author_is_agent for m in streak):
            return Decision(
                False, f"last {_count_word(self.bot_streak_limit)} messages were from bots", now, source="heuristic"
            )

        if last.mentions(agent.name, agent.emoji):
            return Decision(True, "last message mentioned the agent", now, source="heuristic")

        cached = self.cached(agent.id, now)
        if cached is not None:
            return Decision(cached.verdict, cached.reason, cached.timestamp, source="cache")

        task = self._pending.get(agent.id)
        if task is None:
            task = asyncio.ensure_future(self._adjudicate_once(agent, tail(messages, self.history_limit), now))
            self._pending[agent.id] = task
        else:
            self.logger.debug("Joining pending decision for %s (%s)", agent.name, agent.id)
        # A cancelled caller must not cancel the adjudication other callers wait on.
        return await asyncio.shield(task)

    async def _adjudicate_once(self, agent: Agent, context: List[ChannelMessage], now: float) -> Decision:
        try:
            decision = await self._adjudicate(agent, context, now)
            self.cache[agent.id] = decision
            return decision
        finally:
            if self._pending.get(agent.id) is asyncio.current_task():
                self._pending.pop(agent.id, None)

    async def _adjudicate(self, agent: Agent, context: List[ChannelMessage], now: float) -> Decision:
        prompt = build_context(agent, context)
        prompt.append({"role": "user", "content": decision_prompt(agent)})
        self.calls += 1
        try:
            raw = await asyncio.wait_for(
                self.completion.complete(prompt, model_hint=self.model),
                timeout=self.timeout_seconds,
            )
        except Exception as exc:
            self.logger.warning("Decision call failed for %s (%s): %s", agent.name, agent.id, exc)
            return Decision(False, "error processing decision", now, source="error")

        verdict, reason = parse_verdict(raw)
        if verdict is None:
            self.logger.warning("Invalid decision format from %s (%s): %r", agent.name, agent.id, (raw or "")[:500])
            return Decision(False, "invalid decision format", now, source="model")
        self.logger.debug("%s thinks: %s -> %s", agent.name, reason, "YES" if verdict else "NO")
        return Decision(verdict, reason, now, source="model")

    def sweep(self, now: float | None = None) -> int:
        now = self._clock() if now is None else now
        stale = [agent_id for agent_id, entry in self.cache.items() if now - entry.timestamp >= self._ttl(entry)]
        for agent_id in stale:
            self.cache.pop(agent_id, None)
        return len(stale)
