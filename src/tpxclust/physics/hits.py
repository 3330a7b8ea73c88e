from __future__ import annotations
from dataclasses import dataclass

# Timepix3 / SPIDR ToA clock period
TOA_CLOCK_TO_NS = 1.5625


@dataclass(frozen=True, slots=True)
class Hit:
    """
    Canonical pixel hit.

    x, y : pixel column / row
    toa  : global time of arrival [clock ticks]
    tot  : time over threshold (energy proxy)

    Two hits with identical fields are still distinct entities; identity is the
    position of the hit in its input stream, never its value.
    """
    x: int
    y: int
    toa: int
    tot: int = 0


@dataclass(frozen=True, slots=True)
class Trigger:
    """
    External trigger pulse.

    id        : sequence number (strictly increasing within a run)
    timestamp : time in the same clock domain as Hit.toa [clock ticks]
    """
    id: int
    timestamp: int
