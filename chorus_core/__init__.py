"""
Chorus core runtime package.

Attention, membership, cooldown and decision state for a roster of chat
agents sharing the same channels, plus the orchestrator and timers that turn
that state into replies. Chat platforms plug in through the adapter layer.
"""

from .config import RuntimeConfig
from .messages import Channel, ChannelMessage
from .agents import Agent, InMemoryRoster, JsonRoster
from .attention import AttentionStore
from .membership import MembershipTracker
from .cooldown import CooldownLedger, RateLimiter
from .activity import ChannelActivity
from .decision import Decision, DecisionMaker
from .llm import CompletionService, CompletionUnavailable
from .responder import LLMResponder
from .orchestrator import ConversationOrchestrator, DispatchResult
from .rotation import BackgroundRotationManager
from .watchdog import IdleWatchdog
from .scheduler import TickScheduler
from .store import StateStore, StoreHealthMonitor
from .engine import ChorusEngine

__all__ = [
    "RuntimeConfig",
    "Channel",
    "ChannelMessage",
    "Agent",
    "InMemoryRoster",
    "JsonRoster",
    "AttentionStore",
    "MembershipTracker",
    "CooldownLedger",
    "RateLimiter",
    "ChannelActivity",
    "Decision",
    "DecisionMaker",
    "CompletionService",
    "CompletionUnavailable",
    "LLMResponder",
    "ConversationOrchestrator",
    "DispatchResult",
    "BackgroundRotationManager",
    "IdleWatchdog",
    "TickScheduler",
    "StateStore",
    "StoreHealthMonitor",
    "ChorusEngine",
]
