from __future__ import annotations
import numpy as np
from typing import List, Tuple
from ..physics.hits import Hit, Trigger

def synth_track_hits(
    n_tracks: int,
    hits_per_track: int = 8,
    track_gap_ticks: int = 10_000,
    hit_spacing_ticks: int = 2,
    noise_hits: int = 0,
    width: int = 256,
    rng: np.random.Generator | None = None,
) -> List[Hit]:
    """
    Generate a ToA-sorted stream of short straight tracks plus uniform noise.

    Each track walks one pixel per hit in a random 8-neighbour direction from a
    random start, so with spatial_radius >= 1 and time_window >= hit_spacing_ticks
    every track forms one cluster. Tracks start track_gap_ticks apart.
    """
    rng = rng or np.random.default_rng()
    rows: List[Tuple[int, int, int, int]] = []

    steps = [(dx, dy) for dx in (-1, 0, 1) for dy in (-1, 0, 1) if (dx, dy) != (0, 0)]
    margin = hits_per_track + 1
    for k in range(n_tracks):
        x = int(rng.integers(margin, width - margin))
        y = int(rng.integers(margin, width - margin))
        dx, dy = steps[int(rng.integers(len(steps)))]
        t0 = 1_000 + k * track_gap_ticks
        for j in range(hits_per_track):
            tot = int(rng.integers(1, 100))
            rows.append((x + j * dx, y + j * dy, t0 + j * hit_spacing_ticks, tot))

    t_end = 1_000 + max(1, n_tracks) * track_gap_ticks
    for _ in range(noise_hits):
        rows.append((
            int(rng.integers(0, width)),
            int(rng.integers(0, width)),
            int(rng.integers(0, t_end)),
            int(rng.integers(1, 100)),
        ))

    # stable: ties keep generation order
    rows.sort(key=lambda r: r[2])
    return [Hit(x=x, y=y, toa=t, tot=tot) for x, y, t, tot in rows]

def synth_triggers(
    n_triggers: int,
    start_ticks: int = 1_000,
    period_ticks: int = 10_000,
    jitter_ticks: int = 0,
    rng: np.random.Generator | None = None,
) -> List[Trigger]:
    """Strictly increasing triggers, one per period (optional jitter < period/2)."""
    rng = rng or np.random.default_rng()
    out: List[Trigger] = []
    for i in range(n_triggers):
        j = int(rng.integers(-jitter_ticks, jitter_ticks + 1)) if jitter_ticks else 0
        out.append(Trigger(id=i + 1, timestamp=max(0, start_ticks + i * period_ticks + j)))
    return out
