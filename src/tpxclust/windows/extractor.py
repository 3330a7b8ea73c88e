"""
tpxclust.windows.extractor

Assign hits to per-trigger time windows in a single sweep over two
time-ordered streams (hits, triggers): O(H + T) work.

Window bounds are monotone in trigger order (constant pre/post widths over
strictly increasing timestamps), so the windows that can still receive hits
form a FIFO:

- triggers are pulled from their stream once their window has opened
  (t_start <= current toa),
- windows are closed from the front once t_end < current toa and emitted,
- after that bookkeeping the open FIFO is exactly the set of windows
  containing the current hit, which is what the overlap policy needs.

Hits in front of every open and pending window are never stored.
"""
from __future__ import annotations
from collections import deque
from dataclasses import dataclass
from typing import Deque, Iterable, Iterator, List, Optional, Tuple

from ..config.schemas import WindowCfg
from ..errors import ConfigError, OrderingError
from ..physics.hits import Hit, Trigger
from ..physics.windows import TriggerWindow
from .policy import OverlapPolicy


@dataclass
class ExtractorStats:
    hits_in: int = 0
    hits_in_windows: int = 0  # hits inside at least one window
    contested: int = 0        # hits inside more than one window
    dropped: int = 0          # contested hits discarded (exclusive)
    assignments: int = 0      # (hit, window) pairs written
    windows_out: int = 0
    peak_open: int = 0


class _TriggerCursor:
    """Lazy, validated, one-ahead view of the trigger stream."""

    def __init__(self, triggers: Iterable[Trigger]) -> None:
        self._it = iter(triggers)
        self._next: Optional[Trigger] = None
        self._prev: Optional[Trigger] = None
        self._n = 0
        self._advance()

    def _advance(self) -> None:
        t = next(self._it, None)
        if t is not None and self._prev is not None:
            if t.timestamp <= self._prev.timestamp:
                raise OrderingError(
                    "triggers", self._n, self._prev.timestamp, t.timestamp,
                    field="timestamp", detail=f"trigger id {t.id}",
                )
            if t.id <= self._prev.id:
                raise OrderingError("triggers", self._n, self._prev.id, t.id, field="id")
        if t is not None:
            self._prev = t
            self._n += 1
        self._next = t

    def peek(self) -> Optional[Trigger]:
        return self._next

    def pop(self) -> Trigger:
        t = self._next
        if t is None:
            raise IndexError("trigger stream exhausted")
        self._advance()
        return t


class WindowExtractor:
    """
    Build one TriggerWindow per trigger, [timestamp - pre_window,
    timestamp + post_window], populated according to cfg.overlap_policy.

    Windows are yielded in trigger order as soon as they are complete.
    Both streams are validated while they are consumed; OrderingError aborts
    the pass.
    """

    def __init__(self, cfg: Optional[WindowCfg] = None) -> None:
        if cfg is None:
            cfg = WindowCfg()
        if not isinstance(cfg, WindowCfg):
            raise ConfigError(f"WindowExtractor expects WindowCfg, got {type(cfg).__name__}")
        self.cfg = cfg
        self.policy: OverlapPolicy = cfg.overlap_policy
        self.stats = ExtractorStats()

    def bounds(self, trigger: Trigger) -> Tuple[int, int]:
        start = trigger.timestamp - self.cfg.pre_window
        return (start if start > 0 else 0), trigger.timestamp + self.cfg.post_window

    def _open(self, trigger: Trigger) -> TriggerWindow:
        t_start, t_end = self.bounds(trigger)
        return TriggerWindow(trigger=trigger, t_start=t_start, t_end=t_end)

    # ------------------------------------------------------------------ API

    def iter_windows(
        self,
        hits: Iterable[Hit],
        triggers: Iterable[Trigger],
        ids: Optional[Iterable[int]] = None,
    ) -> Iterator[TriggerWindow]:
        if ids is None:
            pairs: Iterable[Tuple[int, Hit]] = enumerate(hits)
        else:
            pairs = zip(ids, hits, strict=True)
        return self.iter_indexed(pairs, triggers)

    def run(self, hits: Iterable[Hit], triggers: Iterable[Trigger]) -> List[TriggerWindow]:
        return list(self.iter_windows(hits, triggers))

    def iter_indexed(
        self,
        pairs: Iterable[Tuple[int, Hit]],
        triggers: Iterable[Trigger],
    ) -> Iterator[TriggerWindow]:
        stats = self.stats = ExtractorStats()
        policy = self.policy
        cursor = _TriggerCursor(triggers)
        open_: Deque[TriggerWindow] = deque()

        prev_toa: Optional[int] = None
        for n, (hit_id, hit) in enumerate(pairs):
            toa = hit.toa
            if prev_toa is not None and toa < prev_toa:
                raise OrderingError(
                    "hits", n, prev_toa, toa, field="toa", detail=f"hit id {hit_id}"
                )
            prev_toa = toa
            stats.hits_in += 1

            # open every window that has started by now
            nxt = cursor.peek()
            while nxt is not None and self.bounds(nxt)[0] <= toa:
                open_.append(self._open(cursor.pop()))
                nxt = cursor.peek()

            # close (and hand out) every window that has ended
            while open_ and open_[0].t_end < toa:
                stats.windows_out += 1
                yield open_.popleft()

            if not open_:
                continue
            if len(open_) > stats.peak_open:
                stats.peak_open = len(open_)

            stats.hits_in_windows += 1
            if len(open_) > 1:
                stats.contested += 1
            targets = policy.select(open_, toa)
            if not targets:
                stats.dropped += 1
            for w in targets:
                w.add(hit_id, hit)
            stats.assignments += len(targets)

        while open_:
            stats.windows_out += 1
            yield open_.popleft()
        # triggers after the last hit: empty windows
        while cursor.peek() is not None:
            stats.windows_out += 1
            yield self._open(cursor.pop())


def extract_windows(
    hits: Iterable[Hit],
    triggers: Iterable[Trigger],
    cfg: Optional[WindowCfg] = None,
    **kwargs,
) -> List[TriggerWindow]:
    """
    One-shot extraction. Either pass a WindowCfg or its fields as keywords:

        extract_windows(hits, triggers, pre_window=5, post_window=5,
                        overlap_policy="exclusive")
    """
    if cfg is None:
        cfg = WindowCfg(**kwargs)
    elif kwargs:
        raise ConfigError("pass either cfg or keyword overrides, not both")
    return WindowExtractor(cfg).run(hits, triggers)
