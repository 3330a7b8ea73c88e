from __future__ import annotations
from enum import IntEnum
from functools import lru_cache
from typing import Tuple

Offsets = Tuple[Tuple[int, int], ...]


class Connectivity(IntEnum):
    """
    Pixel adjacency rule.

    EIGHT : Chebyshev ball, max(|dx|, |dy|) <= r
    FOUR  : Manhattan-restricted ball, |dx| + |dy| <= r

    For r = 1 these are the usual 8- and 4-neighbourhoods.
    """
    FOUR = 4
    EIGHT = 8

    def offsets(self, radius: int) -> Offsets:
        """Grid offsets (dx, dy) within `radius`, including (0, 0)."""
        return _offsets(int(self), int(radius))

    def adjacent(self, dx: int, dy: int, radius: int) -> bool:
        dx, dy = abs(dx), abs(dy)
        if self is Connectivity.EIGHT:
            return max(dx, dy) <= radius
        return dx + dy <= radius


@lru_cache(maxsize=64)
def _offsets(kind: int, radius: int) -> Offsets:
    out = []
    for dx in range(-radius, radius + 1):
        for dy in range(-radius, radius + 1):
            if kind == Connectivity.FOUR and abs(dx) + abs(dy) > radius:
                continue
            out.append((dx, dy))
    return tuple(out)
