import logging
from typing import Any

from caches import ProgressCache
from errors import NotFoundError
from progression import UserProgress, coerce_int

LOGGER = logging.getLogger("estrela.records")


class RecordStore:
    """Keyed persistence of per-guild progress with a read-through cache."""

    def __init__(self, backend: Any, cache: ProgressCache | None = None) -> None:
        self.backend = backend
        self.cache = cache if cache is not None else ProgressCache()

    async def get(self, guild_id: int, user_id: int, *, use_cache: bool = True) -> UserProgress:
        if use_cache:
            cached = self.cache.get(guild_id, user_id)
            if cached is not None:
                return cached

        row = await self.backend.fetch_progress(guild_id, user_id)
        if row is None:
            return UserProgress(guild_id=guild_id, user_id=user_id)

        progress = UserProgress(
            guild_id=guild_id,
            user_id=user_id,
            xp=max(0, coerce_int(row.get("xp"))),
            level=max(0, coerce_int(row.get("level"))),
        )
        self.cache.put(progress)
        return progress

    async def exists(self, guild_id: int, user_id: int) -> bool:
        if (guild_id, user_id) in self.cache:
            return True
        return await self.backend.fetch_progress(guild_id, user_id) is not None

    async def require(self, guild_id: int, user_id: int) -> UserProgress:
        """Like ``get`` but raises ``NotFoundError`` instead of returning a blank record."""
        if not await self.exists(guild_id, user_id):
            raise NotFoundError(f"Usuario {user_id} sem XP registrado na guild {guild_id}.")
        return await self.get(guild_id, user_id)

    async def upsert(self, progress: UserProgress) -> UserProgress:
        try:
            await self.backend.write_progress(
                progress.guild_id,
                progress.user_id,
                progress.xp,
                progress.level,
            )
        except BaseException:
            # The write may or may not have landed; the backend decides on the next read.
            self.cache.invalidate(progress.guild_id, progress.user_id)
            raise
        self.cache.put(progress)
        LOGGER.debug(
            "Nivel gravado. guild=%s usuario=%s level=%s xp=%s",
            progress.guild_id,
            progress.user_id,
            progress.level,
            progress.xp,
        )
        return progress

    async def list_guild(self, guild_id: int) -> list[UserProgress]:
        rows = await self.backend.fetch_guild_progress(guild_id)
        return [
            UserProgress(
                guild_id=guild_id,
                user_id=int(row["user_id"]),
                xp=max(0, coerce_int(row.get("xp"))),
                level=max(0, coerce_int(row.get("level"))),
            )
            for row in rows
        ]
