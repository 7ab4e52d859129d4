"""
Unit tests for the progression function.

Covers thresholds, level transitions in both directions, the floor clamp
and value coercion of raw stored data.
"""

import math
import random

import pytest

from progression import (
    ProgressResult,
    UserProgress,
    apply_delta,
    coerce_int,
    normalize,
    total_xp_for_level,
    xp_for_next_level,
)

XP_PER_LEVEL = 3_000
XP_PER_MESSAGE = 150


def _progress(xp: int = 0, level: int = 0) -> UserProgress:
    return UserProgress(guild_id=1, user_id=2, xp=xp, level=level)


def _is_normalized(result: ProgressResult, xp_per_level: int = XP_PER_LEVEL) -> bool:
    return result.level >= 0 and 0 <= result.xp < xp_for_next_level(result.level, xp_per_level=xp_per_level)


class TestThresholds:
    def test_threshold_for_level_zero(self):
        assert xp_for_next_level(0) == 3_000

    def test_threshold_grows_with_level(self):
        thresholds = [xp_for_next_level(level) for level in range(50)]
        assert thresholds == sorted(thresholds)
        assert len(set(thresholds)) == len(thresholds)

    def test_threshold_respects_custom_unit(self):
        assert xp_for_next_level(4, xp_per_level=100) == 500

    def test_total_xp_for_level(self):
        assert total_xp_for_level(0, 50) == 3_050
        assert total_xp_for_level(2, 10) == 9_010


class TestApplyDelta:
    def test_message_crossing_threshold_levels_up(self):
        result = apply_delta(_progress(xp=2_900, level=0), 0)

        assert result == ProgressResult(xp=50, level=1, leveled_up=True, leveled_down=False)

    def test_message_below_threshold_keeps_level(self):
        result = apply_delta(_progress(xp=100, level=0), 0)

        assert result.xp == 250
        assert result.level == 0
        assert not result.level_changed

    def test_twenty_messages_land_exactly_on_level_one(self):
        current: UserProgress | ProgressResult = _progress()
        level_ups = 0
        for _ in range(20):
            current = apply_delta(current, 0)
            level_ups += int(current.leveled_up)

        assert (current.xp, current.level) == (0, 1)
        assert level_ups == 1

    def test_large_delta_crosses_several_levels(self):
        # 3000 + 6000 + 9000 consumed, 500 left over at level 3.
        result = apply_delta(_progress(), 18_350)

        assert (result.xp, result.level) == (500, 3)
        assert result.leveled_up

    def test_negative_delta_levels_down(self):
        result = apply_delta(_progress(xp=100, level=2), -400)

        assert (result.xp, result.level) == (5_850, 1)
        assert result.leveled_down
        assert not result.leveled_up

    def test_direct_set_replaces_xp(self):
        result = apply_delta(_progress(xp=2_000, level=1), 700, direct_set=True)

        assert (result.xp, result.level) == (700, 1)
        assert not result.level_changed

    def test_direct_set_negative_at_level_zero_clamps(self):
        result = apply_delta(_progress(xp=100, level=0), -500, direct_set=True)

        assert (result.xp, result.level) == (0, 0)
        assert not result.leveled_down

    def test_direct_set_negative_borrows_from_lower_level(self):
        result = apply_delta(_progress(xp=0, level=3), -500, direct_set=True)

        assert (result.xp, result.level) == (8_500, 2)
        assert result.leveled_down

    def test_negative_level_is_floored(self):
        result = apply_delta(_progress(xp=10, level=-4), 0)

        assert result.level == 0
        assert result.xp == 160

    def test_previous_level_drives_transition_flags(self):
        result = apply_delta(_progress(xp=0, level=5), 0, direct_set=True, previous_level=2)

        assert result.level == 5
        assert result.leveled_up

        result = apply_delta(_progress(xp=0, level=1), 0, direct_set=True, previous_level=4)

        assert result.level == 1
        assert result.leveled_down

    @pytest.mark.parametrize("seed", range(5))
    def test_result_is_always_normalized(self, seed):
        rng = random.Random(seed)
        for _ in range(400):
            level = rng.randint(0, 40)
            xp = rng.randint(-50_000, 150_000)
            delta = rng.randint(-200_000, 200_000)
            direct_set = rng.random() < 0.3

            result = apply_delta(_progress(xp=xp, level=level), delta, direct_set=direct_set)

            assert _is_normalized(result), (xp, level, delta, direct_set, result)
            assert not (result.leveled_up and result.leveled_down)

    @pytest.mark.parametrize("seed", range(3))
    def test_level_tracks_cumulative_xp(self, seed):
        rng = random.Random(seed)
        current: UserProgress | ProgressResult = _progress()
        previous_level = 0
        for _ in range(300):
            delta = rng.randint(0, 2_000)
            current = apply_delta(current, delta)
            assert current.level >= previous_level
            previous_level = current.level

    def test_custom_rates(self):
        result = apply_delta(_progress(xp=90), 0, xp_per_level=100, xp_per_message=20)

        assert (result.xp, result.level) == (10, 1)


class TestNormalize:
    @pytest.mark.parametrize("seed", range(3))
    def test_normalized_record_is_a_fixed_point(self, seed):
        rng = random.Random(seed)
        for _ in range(200):
            level = rng.randint(0, 60)
            xp = rng.randrange(0, xp_for_next_level(level))

            result = normalize(_progress(xp=xp, level=level))

            assert (result.xp, result.level) == (xp, level)
            assert not result.level_changed

    def test_normalize_repairs_overflowing_record(self):
        result = normalize(_progress(xp=3_000, level=0))

        assert (result.xp, result.level) == (0, 1)

    def test_normalize_is_idempotent(self):
        once = normalize(_progress(xp=40_000, level=1))
        twice = normalize(_progress(xp=once.xp, level=once.level))

        assert (once.xp, once.level) == (twice.xp, twice.level)


class TestCoerceInt:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            (None, 0),
            (True, 0),
            (False, 0),
            (12, 12),
            (-3, -3),
            (3.9, 3),
            ("42", 42),
            ("  17 ", 17),
            ("12.8", 12),
            ("", 0),
            ("abc", 0),
            ("inf", 0),
            (math.nan, 0),
            (math.inf, 0),
        ],
    )
    def test_values(self, raw, expected):
        assert coerce_int(raw) == expected

    def test_custom_default(self):
        assert coerce_int("oops", default=7) == 7
