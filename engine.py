import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from errors import StorageError, ValidationError
from leaderboard import LeaderboardAggregator
from locks import KeyedLock
from progression import XP_PER_LEVEL, XP_PER_MESSAGE, ProgressResult, UserProgress, apply_delta
from record_store import RecordStore
from roles import RoleSyncRequest

LOGGER = logging.getLogger("estrela.engine")

RoleSync = Callable[[RoleSyncRequest], Awaitable[None]]


@dataclass(frozen=True)
class EngineConfig:
    xp_per_level: int = XP_PER_LEVEL
    xp_per_message: int = XP_PER_MESSAGE
    max_attempts: int = 3
    backoff_seconds: float = 0.2
    max_backoff_seconds: float = 2.0
    role_sync_timeout: float = 10.0

    def validate(self) -> None:
        if self.xp_per_level <= 0:
            raise ValueError("xp_per_level deve ser maior que zero.")
        if self.xp_per_message < 0:
            raise ValueError("xp_per_message nao pode ser negativo.")
        if self.max_attempts <= 0:
            raise ValueError("max_attempts deve ser maior que zero.")

    def backoff_for(self, attempt: int) -> float:
        return min(self.backoff_seconds * (2 ** (attempt - 1)), self.max_backoff_seconds)


def _require_id(value: object, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{name} invalido: {value!r}")
    return value


@dataclass(frozen=True)
class ProgressionEvent:
    guild_id: int
    user_id: int
    xp_delta: int = 0
    direct_set: bool = False
    explicit_level: int | None = None

    def __post_init__(self) -> None:
        _require_id(self.guild_id, "guild_id")
        _require_id(self.user_id, "user_id")
        if isinstance(self.xp_delta, bool) or not isinstance(self.xp_delta, int):
            raise ValidationError(f"xp_delta invalido: {self.xp_delta!r}")
        if self.explicit_level is not None and (
            isinstance(self.explicit_level, bool)
            or not isinstance(self.explicit_level, int)
            or self.explicit_level < 0
        ):
            raise ValidationError(f"explicit_level invalido: {self.explicit_level!r}")

    @classmethod
    def message(cls, guild_id: int, user_id: int, xp_delta: int = 0) -> "ProgressionEvent":
        return cls(guild_id=guild_id, user_id=user_id, xp_delta=xp_delta)

    @classmethod
    def admin_set(
        cls,
        guild_id: int,
        user_id: int,
        xp: int,
        level: int | None = None,
    ) -> "ProgressionEvent":
        return cls(
            guild_id=guild_id,
            user_id=user_id,
            xp_delta=xp,
            direct_set=True,
            explicit_level=level,
        )


@dataclass(frozen=True)
class ProgressUpdate:
    event: ProgressionEvent
    previous: UserProgress
    result: ProgressResult
    ledger_total: int | None

    @property
    def progress(self) -> UserProgress:
        return UserProgress(
            guild_id=self.event.guild_id,
            user_id=self.event.user_id,
            xp=self.result.xp,
            level=self.result.level,
        )

    @property
    def role_request(self) -> RoleSyncRequest:
        return RoleSyncRequest(
            guild_id=self.event.guild_id,
            user_id=self.event.user_id,
            level=self.result.level,
            leveled_up=self.result.leveled_up,
            leveled_down=self.result.leveled_down,
        )


class LevelingEngine:
    """Runs read -> apply_delta -> upsert -> ledger for each progression event.

    Events for the same (guild_id, user_id) are serialized; events for
    different keys run freely interleaved.
    """

    def __init__(
        self,
        records: RecordStore,
        aggregator: LeaderboardAggregator,
        *,
        config: EngineConfig | None = None,
        role_sync: RoleSync | None = None,
    ) -> None:
        self.records = records
        self.aggregator = aggregator
        self.config = config or EngineConfig()
        self.config.validate()
        self.role_sync = role_sync
        self._member_locks = KeyedLock()

    def _apply(self, event: ProgressionEvent, snapshot: UserProgress) -> ProgressResult:
        if event.direct_set:
            start = snapshot
            if event.explicit_level is not None:
                start = UserProgress(
                    guild_id=snapshot.guild_id,
                    user_id=snapshot.user_id,
                    xp=snapshot.xp,
                    level=event.explicit_level,
                )
            return apply_delta(
                start,
                event.xp_delta,
                direct_set=True,
                previous_level=snapshot.level,
                xp_per_level=self.config.xp_per_level,
                xp_per_message=self.config.xp_per_message,
            )
        return apply_delta(
            snapshot,
            event.xp_delta,
            xp_per_level=self.config.xp_per_level,
            xp_per_message=self.config.xp_per_message,
        )

    async def _write_record(self, event: ProgressionEvent) -> tuple[UserProgress, ProgressResult]:
        attempt = 1
        while True:
            try:
                snapshot = await self.records.get(event.guild_id, event.user_id)
                result = self._apply(event, snapshot)
                await self.records.upsert(
                    UserProgress(
                        guild_id=event.guild_id,
                        user_id=event.user_id,
                        xp=result.xp,
                        level=result.level,
                    )
                )
                return snapshot, result
            except StorageError:
                if attempt >= self.config.max_attempts:
                    raise
                delay = self.config.backoff_for(attempt)
                LOGGER.warning(
                    "Falha ao gravar XP (tentativa %s/%s). Nova tentativa em %.2fs. guild=%s usuario=%s",
                    attempt,
                    self.config.max_attempts,
                    delay,
                    event.guild_id,
                    event.user_id,
                )
                await asyncio.sleep(delay)
                attempt += 1

    async def _record_ledger(self, event: ProgressionEvent, result: ProgressResult) -> int | None:
        attempt = 1
        while True:
            try:
                return await self.aggregator.record_progression(
                    event.user_id,
                    event.guild_id,
                    result.level,
                    result.xp,
                )
            except StorageError as exc:
                if attempt >= self.config.max_attempts:
                    LOGGER.error(
                        "Ledger global nao atualizado. guild=%s usuario=%s",
                        event.guild_id,
                        event.user_id,
                        exc_info=(type(exc), exc, exc.__traceback__),
                    )
                    return None
                await asyncio.sleep(self.config.backoff_for(attempt))
                attempt += 1

    async def process(self, event: ProgressionEvent) -> ProgressUpdate | None:
        """Apply one progression event; returns ``None`` when storage gave up."""
        async with self._member_locks.hold((event.guild_id, event.user_id)):
            try:
                snapshot, result = await self._write_record(event)
            except StorageError as exc:
                LOGGER.error(
                    "Evento de XP descartado apos %s tentativas. guild=%s usuario=%s",
                    self.config.max_attempts,
                    event.guild_id,
                    event.user_id,
                    exc_info=(type(exc), exc, exc.__traceback__),
                )
                return None
            ledger_total = await self._record_ledger(event, result)

        update = ProgressUpdate(
            event=event,
            previous=snapshot,
            result=result,
            ledger_total=ledger_total,
        )
        if result.level_changed or event.direct_set:
            await self.sync_roles(update.role_request)
        return update

    async def sync_roles(self, request: RoleSyncRequest) -> None:
        if self.role_sync is None:
            return
        try:
            await asyncio.wait_for(self.role_sync(request), timeout=self.config.role_sync_timeout)
        except asyncio.TimeoutError:
            LOGGER.warning(
                "Timeout ao sincronizar cargos. guild=%s usuario=%s",
                request.guild_id,
                request.user_id,
            )
        except Exception as exc:
            LOGGER.error(
                "Falha ao sincronizar cargos. guild=%s usuario=%s",
                request.guild_id,
                request.user_id,
                exc_info=(type(exc), exc, exc.__traceback__),
            )
