"""
Tests for ledger bookkeeping and ranked views.

Ledger consistency is checked after randomized, concurrently interleaved
progression sequences: the global total of every user must always equal
the sum of that user's per-guild contributions.
"""

import asyncio
import random

import pytest

from errors import AggregationInconsistency, LeaderboardUnavailable, ValidationError
from leaderboard import LeaderboardAggregator, LeaderboardEntry, enrich, rank_of, rank_rows
from level_store import MemoryLevelStore
from progression import total_xp_for_level


class TestRanking:
    def test_orders_by_xp_descending(self):
        ranked = rank_rows([(1, 10), (2, 30), (3, 20)])

        assert [(entry.rank, entry.user_id) for entry in ranked] == [(1, 2), (2, 3), (3, 1)]

    def test_ties_keep_iteration_order(self):
        ranked = rank_rows([(5, 100), (3, 100), (9, 100), (1, 200)])

        assert [entry.user_id for entry in ranked] == [1, 5, 3, 9]
        assert [entry.rank for entry in ranked] == [1, 2, 3, 4]

    def test_rank_of_unknown_user(self):
        assert rank_of([(1, 10)], 2) is None
        assert rank_of([], 2) is None

    @pytest.mark.parametrize("seed", range(5))
    def test_rank_of_agrees_with_rank_rows(self, seed):
        rng = random.Random(seed)
        rows = [(user_id, rng.randint(0, 20)) for user_id in rng.sample(range(1, 1_000), 60)]
        ranked = {entry.user_id: entry.rank for entry in rank_rows(rows)}

        for user_id, _ in rows:
            assert rank_of(rows, user_id) == ranked[user_id]

    def test_entry_as_dict(self):
        entry = LeaderboardEntry(rank=1, user_id=123456789012345678, xp=10, username="ana")

        assert entry.as_dict() == {
            "rank": 1,
            "userId": "123456789012345678",
            "xp": 10,
            "username": "ana",
            "globalName": None,
            "avatarUrl": None,
        }


@pytest.mark.asyncio
class TestLedger:
    async def test_contribution_is_replaced_not_accumulated(self, aggregator):
        await aggregator.record_progression(7, 1, 0, 100)
        total = await aggregator.record_progression(7, 1, 0, 400)

        assert total == total_xp_for_level(0, 400)

    async def test_total_spans_guilds(self, aggregator):
        await aggregator.record_progression(7, 1, 0, 100)
        total = await aggregator.record_progression(7, 2, 2, 50)

        assert total == total_xp_for_level(0, 100) + total_xp_for_level(2, 50)
        assert await aggregator.verify_user_ledger(7) == total

    @pytest.mark.parametrize("seed", range(6))
    async def test_ledger_matches_contributions_after_random_interleaving(self, seed):
        rng = random.Random(seed)
        store = MemoryLevelStore(latency=0.0005)
        aggregator = LeaderboardAggregator(store)
        users = [11, 12, 13]
        guilds = [1, 2, 3, 4]
        last_state: dict[tuple[int, int], tuple[int, int]] = {}

        events = []
        for _ in range(60):
            user_id = rng.choice(users)
            guild_id = rng.choice(guilds)
            level = rng.randint(0, 15)
            xp = rng.randint(0, 5_000)
            events.append((user_id, guild_id, level, xp))

        # Same (user, guild) pairs stay ordered; everything else interleaves.
        by_pair: dict[tuple[int, int], list[tuple[int, int]]] = {}
        for user_id, guild_id, level, xp in events:
            by_pair.setdefault((user_id, guild_id), []).append((level, xp))
            last_state[(user_id, guild_id)] = (level, xp)

        async def replay(pair: tuple[int, int], updates: list[tuple[int, int]]) -> None:
            user_id, guild_id = pair
            for level, xp in updates:
                await aggregator.record_progression(user_id, guild_id, level, xp)

        await asyncio.gather(*(replay(pair, updates) for pair, updates in by_pair.items()))

        ledger = dict(await store.fetch_ledger())
        for user_id in users:
            expected = sum(
                total_xp_for_level(level, xp)
                for (row_user, _), (level, xp) in last_state.items()
                if row_user == user_id
            )
            assert ledger.get(user_id, 0) == expected
            assert await aggregator.verify_user_ledger(user_id) == expected

    async def test_detects_inconsistent_ledger(self, store, aggregator):
        await aggregator.record_progression(7, 1, 0, 100)
        await store.write_ledger_state(7, 2, 999_999, 0)

        with pytest.raises(AggregationInconsistency):
            await aggregator.verify_user_ledger(7)


@pytest.mark.asyncio
class TestLeaderboards:
    async def _seed(self, aggregator) -> None:
        await aggregator.record_progression(1, 100, 0, 500)
        await aggregator.record_progression(2, 100, 1, 0)
        await aggregator.record_progression(3, 200, 0, 500)
        await aggregator.record_progression(4, 200, 3, 10)

    async def test_global_leaderboard_and_pagination(self, aggregator):
        await self._seed(aggregator)

        first = await aggregator.get_global_leaderboard(page=1, page_size=2)
        second = await aggregator.get_global_leaderboard(page=2, page_size=2)
        beyond = await aggregator.get_global_leaderboard(page=3, page_size=2)

        assert [(entry.rank, entry.user_id) for entry in first] == [(1, 4), (2, 2)]
        # Users 1 and 3 tie; user 1 was written first.
        assert [(entry.rank, entry.user_id) for entry in second] == [(3, 1), (4, 3)]
        assert beyond == []

    async def test_invalid_page_is_rejected(self, aggregator):
        with pytest.raises(ValidationError):
            await aggregator.get_global_leaderboard(page=0)
        with pytest.raises(ValidationError):
            await aggregator.get_global_leaderboard(page_size=0)

    async def test_ranks_are_deterministic(self, aggregator):
        await self._seed(aggregator)

        first = [await aggregator.get_global_rank(user_id) for user_id in (1, 2, 3, 4)]
        second = [await aggregator.get_global_rank(user_id) for user_id in (1, 2, 3, 4)]

        assert first == second == [3, 2, 4, 1]

    async def test_server_views_are_scoped(self, aggregator):
        await self._seed(aggregator)

        board = await aggregator.get_server_leaderboard(200)

        assert [entry.user_id for entry in board] == [4, 3]
        assert await aggregator.get_server_rank(3, 200) == 2
        assert await aggregator.get_server_rank(1, 200) is None

    async def test_server_view_skips_zero_contributions(self, store, aggregator):
        await aggregator.record_progression(1, 100, 0, 500)
        await store.write_ledger_state(2, 100, 0, 0)

        board = await aggregator.get_server_leaderboard(100)

        assert [entry.user_id for entry in board] == [1]

    async def test_unranked_user(self, aggregator):
        assert await aggregator.get_global_rank(42) is None

    async def test_totals(self, aggregator):
        await self._seed(aggregator)

        assert await aggregator.count_ranked_users() == 4
        assert await aggregator.get_total_xp() == 3_500 + 6_000 + 3_500 + 12_010

    async def test_storage_failure_is_unavailable(self, flaky_store_factory):
        aggregator = LeaderboardAggregator(flaky_store_factory(failing_reads=True))

        with pytest.raises(LeaderboardUnavailable):
            await aggregator.get_global_leaderboard()
        with pytest.raises(LeaderboardUnavailable):
            await aggregator.get_server_rank(1, 100)


@pytest.mark.asyncio
class TestEnrich:
    async def test_fills_profile_fields(self):
        entries = rank_rows([(1, 10), (2, 5)])

        async def lookup(user_id):
            return {"username": f"user{user_id}", "global_name": None, "avatar_url": "http://x"}

        enriched = await enrich(entries, lookup)

        assert [entry.username for entry in enriched] == ["user1", "user2"]
        assert [entry.rank for entry in enriched] == [1, 2]

    async def test_failures_leave_fields_empty(self):
        entries = rank_rows([(1, 10), (2, 5), (3, 1)])

        async def lookup(user_id):
            if user_id == 1:
                raise RuntimeError("discord fora do ar")
            if user_id == 2:
                await asyncio.sleep(1)
            return {"username": "ok"}

        enriched = await enrich(entries, lookup, timeout=0.05)

        assert [entry.username for entry in enriched] == [None, None, "ok"]
        assert [(entry.user_id, entry.xp) for entry in enriched] == [(1, 10), (2, 5), (3, 1)]

    async def test_without_lookup(self):
        entries = rank_rows([(1, 10)])

        assert await enrich(entries, None) == entries
