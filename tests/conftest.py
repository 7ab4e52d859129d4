"""Shared fixtures for the leveling test suite.

Everything runs against ``MemoryLevelStore``; ``FlakyLevelStore`` injects
``StorageError`` into chosen operations to exercise retries and fallbacks.
"""

import pytest

from caches import ProgressCache
from engine import EngineConfig, LevelingEngine
from errors import StorageError
from leaderboard import LeaderboardAggregator
from level_store import MemoryLevelStore
from record_store import RecordStore

XP_PER_LEVEL = 3_000
XP_PER_MESSAGE = 150


class FlakyLevelStore(MemoryLevelStore):
    """Memory store whose writes and reads fail a configurable number of times."""

    def __init__(
        self,
        *,
        failing_writes: int = 0,
        failing_ledger_writes: int = 0,
        failing_reads: bool = False,
        latency: float = 0.0,
    ) -> None:
        super().__init__(latency=latency)
        self.failing_writes = failing_writes
        self.failing_ledger_writes = failing_ledger_writes
        self.failing_reads = failing_reads
        self.write_attempts = 0
        self.ledger_write_attempts = 0

    async def write_progress(self, guild_id: int, user_id: int, xp: int, level: int) -> None:
        self.write_attempts += 1
        if self.failing_writes > 0:
            self.failing_writes -= 1
            raise StorageError("write_progress indisponivel")
        await super().write_progress(guild_id, user_id, xp, level)

    async def write_ledger_state(self, user_id: int, guild_id: int, total_xp: int, contribution: int) -> None:
        self.ledger_write_attempts += 1
        if self.failing_ledger_writes > 0:
            self.failing_ledger_writes -= 1
            raise StorageError("write_ledger_state indisponivel")
        await super().write_ledger_state(user_id, guild_id, total_xp, contribution)

    async def fetch_ledger(self) -> list[tuple[int, int]]:
        if self.failing_reads:
            raise StorageError("fetch_ledger indisponivel")
        return await super().fetch_ledger()

    async def fetch_guild_contributions(self, guild_id: int) -> list[tuple[int, int]]:
        if self.failing_reads:
            raise StorageError("fetch_guild_contributions indisponivel")
        return await super().fetch_guild_contributions(guild_id)


@pytest.fixture
def engine_config() -> EngineConfig:
    return EngineConfig(
        xp_per_level=XP_PER_LEVEL,
        xp_per_message=XP_PER_MESSAGE,
        max_attempts=3,
        backoff_seconds=0.0,
        max_backoff_seconds=0.0,
        role_sync_timeout=0.5,
    )


@pytest.fixture
def store() -> MemoryLevelStore:
    return MemoryLevelStore()


@pytest.fixture
def flaky_store_factory():
    return FlakyLevelStore


@pytest.fixture
def records(store: MemoryLevelStore) -> RecordStore:
    return RecordStore(store, ProgressCache())


@pytest.fixture
def aggregator(store: MemoryLevelStore) -> LeaderboardAggregator:
    return LeaderboardAggregator(store, xp_per_level=XP_PER_LEVEL)


@pytest.fixture
def engine(records, aggregator, engine_config) -> LevelingEngine:
    return LevelingEngine(records, aggregator, config=engine_config)


@pytest.fixture
def make_engine(engine_config):
    """Build an engine wired to an arbitrary backend."""

    def build(backend, *, role_sync=None, config: EngineConfig | None = None) -> LevelingEngine:
        return LevelingEngine(
            RecordStore(backend, ProgressCache()),
            LeaderboardAggregator(backend, xp_per_level=XP_PER_LEVEL),
            config=config or engine_config,
            role_sync=role_sync,
        )

    return build
