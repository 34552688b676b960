import asyncio
import concurrent.futures
import logging
import sqlite3
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Tuple

from .config import RuntimeConfig
from .safety import CircuitBreaker, backoff_delays

CooldownRow = Tuple[str, str, float, bool]
AttentionRow = Tuple[str, str, float, float]
MembershipRow = Tuple[str, str, str, float]


class StateStore:
    """
    sqlite snapshot of the engine's in-memory maps so a restart does not
    forget cooldowns, attention and channel presence. Every write replaces
    the previous snapshot of its table. All methods block; the engine calls
    them from its maintenance executor.
    """

    def __init__(self, config: RuntimeConfig, allow_writes: bool = True):
        self.config = config
        self.config.ensure_paths()
        self.allow_writes = allow_writes
        self.connected = False
        self._breaker = CircuitBreaker("store", threshold=3, window_seconds=60.0, cooldown_seconds=120.0)
        self.logger = logging.getLogger("chorus.store")
        self._init_db()

    def _open_conn(self) -> sqlite3.Connection:
        return sqlite3.connect(self.config.state_path, timeout=self.config.store_lock_timeout)

    def _init_db(self) -> bool:
        try:
            conn = self._open_conn()
        except Exception as exc:
            self.logger.warning("State store unavailable at %s: %s", self.config.state_path, exc)
            self.connected = False
            return False
        try:
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS cooldowns (
                    agent_id TEXT NOT NULL,
                    channel_id TEXT NOT NULL,
                    last_response REAL NOT NULL,
                    bot_triggered INTEGER NOT NULL,
                    PRIMARY KEY (agent_id, channel_id)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS attention (
                    channel_id TEXT NOT NULL,
                    agent_id TEXT NOT NULL,
                    level REAL NOT NULL,
                    last_update REAL NOT NULL,
                    PRIMARY KEY (channel_id, agent_id)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS memberships (
                    agent_id TEXT NOT NULL,
                    channel_id TEXT NOT NULL,
                    community_id TEXT NOT NULL,
                    last_active REAL NOT NULL,
                    PRIMARY KEY (agent_id, channel_id)
                )
                """
            )
            conn.commit()
            self.connected = True
            return True
        except Exception as exc:
            self.logger.warning("State store init failed: %s", exc)
            self.connected = False
            return False
        finally:
            conn.close()

    def ping(self) -> bool:
        try:
            conn = self._open_conn()
        except Exception as exc:
            self.logger.warning("State store ping failed: %s", exc)
            self.connected = False
            return False
        try:
            conn.execute("SELECT 1").fetchone()
            conn.execute("SELECT COUNT(*) FROM cooldowns").fetchone()
            self.connected = True
        except Exception as exc:
            self.logger.warning("State store ping failed: %s", exc)
            self.connected = False
        finally:
            conn.close()
        return self.connected

    def reconnect(self) -> bool:
        return self._init_db()

    def _replace(self, table: str, columns: str, rows: Sequence[Tuple[Any, ...]]) -> bool:
        if not self.allow_writes or not self.connected:
            return False
        if not self._breaker.allow():
            return False
        placeholders = ", ".join("?" for _ in columns.split(","))
        conn: sqlite3.Connection | None = None
        try:
            conn = self._open_conn()
            conn.execute(f"DELETE FROM {table}")
            conn.executemany(f"INSERT INTO {table} ({columns}) VALUES ({placeholders})", rows)
            conn.commit()
            self._breaker.record_success()
            return True
        except sqlite3.OperationalError as exc:
            if "locked" in str(exc).lower():
                self.logger.warning("State write skipped (%s): %s", table, exc)
            else:
                self._breaker.record_failure(str(exc))
                self.connected = False
            return False
        except Exception as exc:
            self._breaker.record_failure(str(exc))
            self.connected = False
            return False
        finally:
            if conn is not None:
                conn.close()

    def _select(self, sql: str) -> List[Tuple[Any, ...]]:
        if not self.connected:
            return []
        try:
            conn = self._open_conn()
        except Exception as exc:
            self.logger.warning("State read failed: %s", exc)
            return []
        try:
            return list(conn.execute(sql).fetchall())
        except Exception as exc:
            self.logger.warning("State read failed: %s", exc)
            return []
        finally:
            conn.close()

    def save_cooldowns(self, rows: Sequence[CooldownRow]) -> bool:
        data = [(a, c, float(ts), 1 if bot else 0) for a, c, ts, bot in rows]
        return self._replace("cooldowns", "agent_id, channel_id, last_response, bot_triggered", data)

    def load_cooldowns(self) -> List[CooldownRow]:
        rows = self._select("SELECT agent_id, channel_id, last_response, bot_triggered FROM cooldowns")
        return [(r[0], r[1], float(r[2]), bool(r[3])) for r in rows]

    def save_attention(self, rows: Sequence[AttentionRow]) -> bool:
        return self._replace("attention", "channel_id, agent_id, level, last_update", list(rows))

    def load_attention(self) -> List[AttentionRow]:
        rows = self._select("SELECT channel_id, agent_id, level, last_update FROM attention")
        return [(r[0], r[1], float(r[2]), float(r[3])) for r in rows]

    def save_memberships(self, rows: Sequence[MembershipRow]) -> bool:
        return self._replace("memberships", "agent_id, channel_id, community_id, last_active", list(rows))

    def load_memberships(self) -> List[MembershipRow]:
        rows = self._select(
            "SELECT agent_id, channel_id, community_id, last_active FROM memberships ORDER BY last_active DESC"
        )
        return [(r[0], r[1], r[2] or "", float(r[3])) for r in rows]

    def breaker_status(self) -> tuple[bool, str]:
        if not self.connected:
            return True, "state store disconnected"
        return self._breaker.tripped, self._breaker.reason


class StoreHealthMonitor:
    """
    Periodic liveness probe for the state store. A failed probe triggers a
    bounded number of reconnect attempts with exponential backoff; if all of
    them fail the store stays disconnected and persistence is skipped until a
    later probe succeeds.
    """

    def __init__(
        self,
        store: StateStore,
        attempts: int = 3,
        base_delay: float = 5.0,
        executor: concurrent.futures.Executor | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ):
        self.store = store
        self.attempts = attempts
        self.base_delay = base_delay
        self.executor = executor
        self._sleep = sleep or asyncio.sleep
        self.reconnects = 0
        self.last_error: Optional[str] = None
        self.logger = logging.getLogger("chorus.store.health")

    async def _call(self, fn: Callable[[], bool]) -> bool:
        if self.executor is None:
            return fn()
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.executor, fn)

    async def probe(self) -> bool:
        if await self._call(self.store.ping):
            self.last_error = None
            return True
        self.logger.warning("State store probe failed; attempting reconnect")
        for attempt, delay in enumerate(backoff_delays(self.base_delay, self.attempts), start=1):
            await self._sleep(delay)
            if await self._call(self.store.reconnect):
                self.reconnects += 1
                self.last_error = None
                self.logger.info("State store reconnected after %d attempt(s)", attempt)
                return True
        self.last_error = f"reconnect failed after {self.attempts} attempts"
        self.logger.error("State store %s; continuing in memory", self.last_error)
        return False
