import math
from dataclasses import dataclass
from typing import Any

XP_PER_LEVEL = 3_000
XP_PER_MESSAGE = 150


@dataclass(frozen=True)
class UserProgress:
    guild_id: int
    user_id: int
    xp: int = 0
    level: int = 0


@dataclass(frozen=True)
class ProgressResult:
    xp: int
    level: int
    leveled_up: bool = False
    leveled_down: bool = False

    @property
    def level_changed(self) -> bool:
        return self.leveled_up or self.leveled_down


def coerce_int(value: Any, default: int = 0) -> int:
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            return default
        return int(value)

    text = str(value).strip()
    if not text:
        return default
    try:
        return int(text)
    except ValueError:
        pass
    try:
        parsed = float(text)
    except ValueError:
        return default
    if math.isnan(parsed) or math.isinf(parsed):
        return default
    return int(parsed)


def xp_for_next_level(level: int, *, xp_per_level: int = XP_PER_LEVEL) -> int:
    """XP needed to advance from ``level`` to ``level + 1``."""
    return (level + 1) * xp_per_level


def total_xp_for_level(level: int, xp: int, *, xp_per_level: int = XP_PER_LEVEL) -> int:
    """Cumulative XP of a record, as used by the ledger and every leaderboard."""
    return xp_for_next_level(level, xp_per_level=xp_per_level) + xp


def apply_delta(
    current: UserProgress | ProgressResult,
    delta: int,
    direct_set: bool = False,
    *,
    previous_level: int | None = None,
    xp_per_level: int = XP_PER_LEVEL,
    xp_per_message: int = XP_PER_MESSAGE,
) -> ProgressResult:
    """Apply an XP change and normalize the resulting level.

    ``direct_set`` replaces the XP within the level by ``delta`` (admin
    override). Otherwise the flat per-message XP plus ``delta`` is added.
    ``previous_level`` is the level of the untouched snapshot when the caller
    already adjusted ``current.level`` (``/setxp`` with an explicit level).
    """
    before = current.level if previous_level is None else previous_level
    level = max(0, current.level)

    if direct_set:
        xp = delta
    else:
        xp = current.xp + xp_per_message + delta

    threshold = xp_for_next_level(level, xp_per_level=xp_per_level)
    while xp >= threshold:
        xp -= threshold
        level += 1
        threshold = xp_for_next_level(level, xp_per_level=xp_per_level)

    while xp < 0 and level > 0:
        level -= 1
        xp += xp_for_next_level(level, xp_per_level=xp_per_level)

    if level == 0 and xp < 0:
        xp = 0

    return ProgressResult(
        xp=xp,
        level=level,
        leveled_up=level > before,
        leveled_down=level < before,
    )


def normalize(progress: UserProgress, *, xp_per_level: int = XP_PER_LEVEL) -> ProgressResult:
    return apply_delta(
        progress,
        progress.xp,
        direct_set=True,
        xp_per_level=xp_per_level,
    )
