from __future__ import annotations
from dataclasses import dataclass, field
from typing import List

from .hits import Hit, Trigger, TOA_CLOCK_TO_NS


@dataclass(slots=True)
class TriggerWindow:
    """
    Hits associated with one trigger.

    [t_start, t_end] is inclusive, in clock ticks. t_start is clamped at 0.
    hit_ids / hits are aligned and in stream order; which hits land here depends
    on the overlap policy of the extractor that built the window.
    """
    trigger: Trigger
    t_start: int
    t_end: int
    hit_ids: List[int] = field(default_factory=list)
    hits: List[Hit] = field(default_factory=list)

    def add(self, hit_id: int, hit: Hit) -> None:
        self.hit_ids.append(hit_id)
        self.hits.append(hit)

    def contains(self, toa: int) -> bool:
        return self.t_start <= toa <= self.t_end

    @property
    def size(self) -> int:
        return len(self.hit_ids)

    @property
    def duration_ns(self) -> float:
        return (self.t_end - self.t_start) * TOA_CLOCK_TO_NS

    @property
    def tot_sum(self) -> int:
        return sum(h.tot for h in self.hits)

    @property
    def is_empty(self) -> bool:
        return not self.hit_ids
