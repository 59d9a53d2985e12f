"""Level computation.

Level n starts at 100 * (n - 1)^2 XP, i.e. level = floor(sqrt(xp / 100)) + 1.
This is the only place the formula lives.
"""

from __future__ import annotations

import math

XP_PER_LEVEL_UNIT = 100


def compute_level(total_xp: int) -> int:
    """Level for a total XP amount. Integer arithmetic keeps the floor exact."""
    return math.isqrt(max(0, total_xp) // XP_PER_LEVEL_UNIT) + 1


def level_start_xp(level: int) -> int:
    """Cumulative XP at which `level` begins."""
    return XP_PER_LEVEL_UNIT * (max(1, level) - 1) ** 2


def level_info(total_xp: int) -> dict:
    """Level plus progress towards the next one."""
    level = compute_level(total_xp)
    start = level_start_xp(level)
    end = level_start_xp(level + 1)
    return {
        "level": level,
        "xp_into_level": total_xp - start,
        "xp_for_level": end - start,
        "next_level": level + 1,
    }
