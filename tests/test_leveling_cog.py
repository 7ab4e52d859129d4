from types import SimpleNamespace

import pytest

from caches import MessageHistory
from cogs.leveling import LevelingCog


def _message(content: str, *, user_id: int = 7, channel_id: int = 100):
    return SimpleNamespace(
        content=content,
        author=SimpleNamespace(id=user_id),
        channel=SimpleNamespace(id=channel_id),
    )


@pytest.fixture
def cog() -> LevelingCog:
    return LevelingCog(SimpleNamespace(xp_cooldown_seconds=30.0), history=MessageHistory())


class TestLevelingCogHelpers:
    def test_repeated_messages_are_flagged(self, cog):
        flags = [cog._is_farming(_message("oi")) for _ in range(5)]

        assert flags == [False, False, False, True, True]

    def test_varied_messages_are_not_flagged(self, cog):
        flags = [cog._is_farming(_message(f"mensagem {index}")) for index in range(5)]

        assert not any(flags)

    def test_cooldown_blocks_second_award(self, cog):
        assert not cog._is_xp_rate_limited(1, 7)
        assert cog._is_xp_rate_limited(1, 7)
        assert not cog._is_xp_rate_limited(1, 8)
        assert not cog._is_xp_rate_limited(2, 7)

    def test_zero_cooldown_disables_rate_limit(self):
        cog = LevelingCog(SimpleNamespace(xp_cooldown_seconds=0))

        assert not cog._is_xp_rate_limited(1, 7)
        assert not cog._is_xp_rate_limited(1, 7)

    def test_truncates_by_grapheme(self, cog):
        flag = "\U0001F1E7\U0001F1F7"

        assert cog._truncate_graphemes(flag * 5, 3) == flag * 2 + "…"
        assert cog._truncate_graphemes("curto", 10) == "curto"

    def test_pick_display_name_skips_blank_values(self, cog):
        assert cog._pick_display_name(None, "  ", "Ana") == "Ana"
        assert cog._pick_display_name(None, fallback="Usuario 1") == "Usuario 1"

    def test_formatting(self, cog):
        assert cog._format_int(1234567) == "1.234.567"
        assert cog._progress_bar(50, 100, width=10) == "#####-----"
        assert cog._progress_bar(0, 0, width=4) == "----"
        assert cog._format_rank(None) == "Sem rank"
        assert cog._format_rank(3) == "#3"
