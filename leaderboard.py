import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, replace
from typing import Any

from errors import AggregationInconsistency, LeaderboardUnavailable, StorageError, ValidationError
from locks import KeyedLock
from progression import XP_PER_LEVEL, total_xp_for_level

LOGGER = logging.getLogger("estrela.leaderboard")

ProfileLookup = Callable[[int], Awaitable[dict[str, Any] | None]]


@dataclass(frozen=True)
class LeaderboardEntry:
    rank: int
    user_id: int
    xp: int
    username: str | None = None
    global_name: str | None = None
    avatar_url: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "rank": self.rank,
            "userId": str(self.user_id),
            "xp": self.xp,
            "username": self.username,
            "globalName": self.global_name,
            "avatarUrl": self.avatar_url,
        }


def rank_rows(rows: Iterable[tuple[int, int]]) -> list[LeaderboardEntry]:
    # sorted() is stable, so equal XP keeps the store's iteration order.
    ordered = sorted(rows, key=lambda row: row[1], reverse=True)
    return [
        LeaderboardEntry(rank=position, user_id=user_id, xp=xp)
        for position, (user_id, xp) in enumerate(ordered, start=1)
    ]


def rank_of(rows: Iterable[tuple[int, int]], user_id: int) -> int | None:
    """Rank of ``user_id`` in ``rank_rows(rows)`` without building the sorted view."""
    target_xp: int | None = None
    greater = 0
    earlier_ties: list[int] = []
    for row_user_id, xp in rows:
        if row_user_id == user_id and target_xp is None:
            target_xp = xp
            continue
        if target_xp is None:
            earlier_ties.append(xp)
        elif xp > target_xp:
            greater += 1

    if target_xp is None:
        return None
    # Rows seen before the target count if they are greater or equal.
    greater += sum(1 for xp in earlier_ties if xp >= target_xp)
    return greater + 1


class LeaderboardAggregator:
    """Owner of the global ledger and of every ranked view derived from it."""

    def __init__(self, backend: Any, *, xp_per_level: int = XP_PER_LEVEL) -> None:
        self.backend = backend
        self.xp_per_level = xp_per_level
        self._user_locks = KeyedLock()

    async def record_progression(self, user_id: int, guild_id: int, level: int, xp: int) -> int:
        """Replace the guild's contribution to the user's ledger total; returns the new total."""
        contribution = total_xp_for_level(level, xp, xp_per_level=self.xp_per_level)
        async with self._user_locks.hold(user_id):
            current_total, previous = await self.backend.fetch_ledger_state(user_id, guild_id)
            new_total = current_total - previous + contribution
            await self.backend.write_ledger_state(user_id, guild_id, new_total, contribution)

        LOGGER.debug(
            "Ledger atualizado. usuario=%s guild=%s contribuicao=%s->%s total=%s",
            user_id,
            guild_id,
            previous,
            contribution,
            new_total,
        )
        return new_total

    async def _read(self, reader: Callable[[], Awaitable[list[tuple[int, int]]]]) -> list[tuple[int, int]]:
        try:
            return await reader()
        except StorageError as exc:
            raise LeaderboardUnavailable("Ranking indisponivel no momento.") from exc

    async def _ledger_rows(self) -> list[tuple[int, int]]:
        return await self._read(self.backend.fetch_ledger)

    async def _guild_rows(self, guild_id: int) -> list[tuple[int, int]]:
        rows = await self._read(lambda: self.backend.fetch_guild_contributions(guild_id))
        return [(user_id, xp) for user_id, xp in rows if xp != 0]

    async def get_global_leaderboard(self, page: int = 1, page_size: int = 10) -> list[LeaderboardEntry]:
        if page < 1:
            raise ValidationError("page deve ser maior ou igual a 1.")
        if page_size < 1:
            raise ValidationError("page_size deve ser maior ou igual a 1.")

        ranked = rank_rows(await self._ledger_rows())
        start = (page - 1) * page_size
        return ranked[start:start + page_size]

    async def get_server_leaderboard(self, guild_id: int) -> list[LeaderboardEntry]:
        return rank_rows(await self._guild_rows(guild_id))

    async def get_global_rank(self, user_id: int) -> int | None:
        return rank_of(await self._ledger_rows(), user_id)

    async def get_server_rank(self, user_id: int, guild_id: int) -> int | None:
        return rank_of(await self._guild_rows(guild_id), user_id)

    async def get_total_xp(self) -> int:
        return sum(total for _, total in await self._ledger_rows())

    async def count_ranked_users(self) -> int:
        return len(await self._ledger_rows())

    async def verify_user_ledger(self, user_id: int) -> int:
        """Check that the ledger total equals the sum of the stored contributions."""
        async with self._user_locks.hold(user_id):
            ledger = dict(await self.backend.fetch_ledger())
            contributions = await self.backend.fetch_user_contributions(user_id)

        expected = sum(contributions.values())
        actual = ledger.get(user_id, 0)
        if actual != expected:
            raise AggregationInconsistency(
                f"Ledger do usuario {user_id} = {actual}, contribuicoes somam {expected}."
            )
        return actual


async def enrich(
    entries: list[LeaderboardEntry],
    lookup: ProfileLookup | None,
    *,
    timeout: float = 3.0,
) -> list[LeaderboardEntry]:
    """Decorate ranked entries with profile data; failures leave the fields empty."""
    if lookup is None or not entries:
        return list(entries)

    async def decorate(entry: LeaderboardEntry) -> LeaderboardEntry:
        try:
            profile = await asyncio.wait_for(lookup(entry.user_id), timeout=timeout)
        except asyncio.TimeoutError:
            LOGGER.warning("Timeout ao buscar perfil do usuario %s.", entry.user_id)
            return entry
        except Exception as exc:
            LOGGER.warning(
                "Falha ao buscar perfil do usuario %s.",
                entry.user_id,
                exc_info=(type(exc), exc, exc.__traceback__),
            )
            return entry

        if not profile:
            return entry
        return replace(
            entry,
            username=profile.get("username"),
            global_name=profile.get("global_name"),
            avatar_url=profile.get("avatar_url"),
        )

    return list(await asyncio.gather(*(decorate(entry) for entry in entries)))
