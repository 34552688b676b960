import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, TypeVar

T = TypeVar("T")


def _parse_bool(val: str | None, default: bool) -> bool:
    if val is None:
        return default
    try:
        normalized = val.strip().lower()
        if not normalized:
            return default
        return normalized in {"1", "true", "yes", "on"}
    except Exception:
        return default


def _parse(val: str | None, caster: Callable[[str], T], default: T) -> T:
    if val is None:
        return default
    try:
        return caster(val)
    except Exception:
        return default


@dataclass(frozen=True)
class RuntimeConfig:
    # Attention
    attention_decay_step: float = 0.1
    attention_decay_interval_seconds: float = 60.0
    post_mention_messages: int = 3
    mention_memory_ttl_seconds: float = 600.0
    activity_attention_boost: float = 0.1
    response_attention_boost: float = 0.2
    # Membership
    max_channels_per_agent: int = 3
    # Cooldowns
    human_cooldown_seconds: float = 5.0
    bot_cooldown_seconds: float = 300.0
    channel_responses_per_minute: int = 4
    channel_response_burst: int = 2
    # Decisions
    decision_cache_seconds: float = 300.0
    decision_history_limit: int = 5
    decision_error_backoff_seconds: float = 30.0
    bot_streak_limit: int = 4
    saturation_sample_size: int = 8
    decision_model: str = "meta-llama/llama-3.2-1b-instruct"
    # Orchestration
    tick_interval_seconds: float = 10.0
    active_window_seconds: float = 300.0
    top_mentions_k: int = 3
    max_dispatch_per_channel: int = 2
    response_history_limit: int = 10
    dispatch_timeout_seconds: float = 45.0
    fetch_timeout_seconds: float = 5.0
    completion_timeout_seconds: float = 20.0
    shutdown_grace_seconds: float = 10.0
    # Background rotation / idle watchdog
    rotation_interval_seconds: float = 300.0
    rotation_max_channels: int = 2
    idle_check_interval_seconds: float = 5.0
    idle_threshold_seconds: float = 30.0
    # Housekeeping
    sweep_interval_seconds: float = 120.0
    persist_interval_seconds: float = 60.0
    persist_state: bool = True
    state_path: Path = Path("chorus_core/data/chorus.db")
    store_lock_timeout: float = 0.5
    store_probe_interval_seconds: float = 30.0
    store_retry_attempts: int = 3
    store_retry_base_delay: float = 5.0
    audit_log_path: Path = Path("chorus_core/data/audit.log")
    roster_path: Path = Path("chorus_core/data/agents.json")
    # Completion service
    llm_base_url: str = "https://openrouter.ai/api/v1"
    llm_default_model: str = "meta-llama/llama-3.2-3b-instruct"
    llm_http_timeout_seconds: float = 20.0
    llm_max_retries: int = 2

    @classmethod
    def from_env(cls) -> "RuntimeConfig":
        """
        Build a config instance with optional environment overrides. Secrets
        (tokens, API keys) are read where they are used, never stored here.
        """
        default = cls()
        return cls(
            attention_decay_step=_parse(os.getenv("CHORUS_ATTENTION_DECAY_STEP"), float, default.attention_decay_step),
            attention_decay_interval_seconds=_parse(
                os.getenv("CHORUS_ATTENTION_DECAY_INTERVAL"), float, default.attention_decay_interval_seconds
            ),
            post_mention_messages=_parse(os.getenv("CHORUS_POST_MENTION_MESSAGES"), int, default.post_mention_messages),
            mention_memory_ttl_seconds=_parse(
                os.getenv("CHORUS_MENTION_MEMORY_TTL"), float, default.mention_memory_ttl_seconds
            ),
            activity_attention_boost=_parse(
                os.getenv("CHORUS_ACTIVITY_ATTENTION_BOOST"), float, default.activity_attention_boost
            ),
            response_attention_boost=_parse(
                os.getenv("CHORUS_RESPONSE_ATTENTION_BOOST"), float, default.response_attention_boost
            ),
            max_channels_per_agent=_parse(
                os.getenv("CHORUS_MAX_CHANNELS_PER_AGENT"), int, default.max_channels_per_agent
            ),
            human_cooldown_seconds=_parse(os.getenv("CHORUS_HUMAN_COOLDOWN"), float, default.human_cooldown_seconds),
            bot_cooldown_seconds=_parse(os.getenv("CHORUS_BOT_COOLDOWN"), float, default.bot_cooldown_seconds),
            channel_responses_per_minute=_parse(
                os.getenv("CHORUS_CHANNEL_RESPONSES_PER_MINUTE"), int, default.channel_responses_per_minute
            ),
            channel_response_burst=_parse(
                os.getenv("CHORUS_CHANNEL_RESPONSE_BURST"), int, default.channel_response_burst
            ),
            decision_cache_seconds=_parse(
                os.getenv("CHORUS_DECISION_CACHE_SECONDS"), float, default.decision_cache_seconds
            ),
            decision_history_limit=_parse(
                os.getenv("CHORUS_DECISION_HISTORY_LIMIT"), int, default.decision_history_limit
            ),
            decision_error_backoff_seconds=_parse(
                os.getenv("CHORUS_DECISION_ERROR_BACKOFF"), float, default.decision_error_backoff_seconds
            ),
            bot_streak_limit=_parse(os.getenv("CHORUS_BOT_STREAK_LIMIT"), int, default.bot_streak_limit),
            saturation_sample_size=_parse(
                os.getenv("CHORUS_SATURATION_SAMPLE_SIZE"), int, default.saturation_sample_size
            ),
            decision_model=os.getenv("CHORUS_DECISION_MODEL", default.decision_model),
            tick_interval_seconds=_parse(os.getenv("CHORUS_TICK_INTERVAL"), float, default.tick_interval_seconds),
            active_window_seconds=_parse(os.getenv("CHORUS_ACTIVE_WINDOW"), float, default.active_window_seconds),
            top_mentions_k=_parse(os.getenv("CHORUS_TOP_MENTIONS_K"), int, default.top_mentions_k),
            max_dispatch_per_channel=_parse(
                os.getenv("CHORUS_MAX_DISPATCH_PER_CHANNEL"), int, default.max_dispatch_per_channel
            ),
            response_history_limit=_parse(
                os.getenv("CHORUS_RESPONSE_HISTORY_LIMIT"), int, default.response_history_limit
            ),
            dispatch_timeout_seconds=_parse(
                os.getenv("CHORUS_DISPATCH_TIMEOUT"), float, default.dispatch_timeout_seconds
            ),
            fetch_timeout_seconds=_parse(os.getenv("CHORUS_FETCH_TIMEOUT"), float, default.fetch_timeout_seconds),
            completion_timeout_seconds=_parse(
                os.getenv("CHORUS_COMPLETION_TIMEOUT"), float, default.completion_timeout_seconds
            ),
            shutdown_grace_seconds=_parse(
                os.getenv("CHORUS_SHUTDOWN_GRACE"), float, default.shutdown_grace_seconds
            ),
            rotation_interval_seconds=_parse(
                os.getenv("CHORUS_ROTATION_INTERVAL"), float, default.rotation_interval_seconds
            ),
            rotation_max_channels=_parse(
                os.getenv("CHORUS_ROTATION_MAX_CHANNELS"), int, default.rotation_max_channels
            ),
            idle_check_interval_seconds=_parse(
                os.getenv("CHORUS_IDLE_CHECK_INTERVAL"), float, default.idle_check_interval_seconds
            ),
            idle_threshold_seconds=_parse(os.getenv("CHORUS_IDLE_THRESHOLD"), float, default.idle_threshold_seconds),
            sweep_interval_seconds=_parse(os.getenv("CHORUS_SWEEP_INTERVAL"), float, default.sweep_interval_seconds),
            persist_interval_seconds=_parse(
                os.getenv("CHORUS_PERSIST_INTERVAL"), float, default.persist_interval_seconds
            ),
            persist_state=_parse_bool(os.getenv("CHORUS_PERSIST_STATE", ""), default.persist_state),
            state_path=Path(os.getenv("CHORUS_STATE_PATH", default.state_path)),
            store_lock_timeout=_parse(os.getenv("CHORUS_STORE_LOCK_TIMEOUT"), float, default.store_lock_timeout),
            store_probe_interval_seconds=_parse(
                os.getenv("CHORUS_STORE_PROBE_INTERVAL"), float, default.store_probe_interval_seconds
            ),
            store_retry_attempts=_parse(os.getenv("CHORUS_STORE_RETRY_ATTEMPTS"), int, default.store_retry_attempts),
            store_retry_base_delay=_parse(
                os.getenv("CHORUS_STORE_RETRY_BASE_DELAY"), float, default.store_retry_base_delay
            ),
            audit_log_path=Path(os.getenv("CHORUS_AUDIT_LOG_PATH", default.audit_log_path)),
            roster_path=Path(os.getenv("CHORUS_ROSTER_PATH", default.roster_path)),
            llm_base_url=os.getenv("CHORUS_LLM_BASE_URL", default.llm_base_url),
            llm_default_model=os.getenv("CHORUS_LLM_DEFAULT_MODEL", default.llm_default_model),
            llm_http_timeout_seconds=_parse(
                os.getenv("CHORUS_LLM_HTTP_TIMEOUT"), float, default.llm_http_timeout_seconds
            ),
            llm_max_retries=_parse(os.getenv("CHORUS_LLM_MAX_RETRIES"), int, default.llm_max_retries),
        )

    def ensure_paths(self) -> None:
        self.state_path.parent.mkdir(parents=True, exist_ok=True)
        self.audit_log_path.parent.mkdir(parents=True, exist_ok=True)

    def cooldown_retention_seconds(self) -> float:
        """
        Cooldown entries older than the longest window can never block a
        response again, so anything past this age is safe to drop.
        """
        return max(self.human_cooldown_seconds, self.bot_cooldown_seconds)
