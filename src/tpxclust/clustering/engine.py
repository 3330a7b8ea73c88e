"""
tpxclust.clustering.engine

Spatio-temporal clustering of a time-ordered pixel hit stream.

Hits are processed in arrival order. Each hit is unioned with every *active*
hit (ToA within `time_window` of it) that satisfies the adjacency rule; the
candidates are found through a grid keyed by pixel (x, y), so the per-hit cost
scales with local hit density, not with the size of the active window.

Memory
------
The union-find lives in a slot arena (dense lists indexed by slot). A component
is closed as soon as its last active member leaves the time window: no later
hit can reach it any more, so its cluster is emitted and its slots go back to
the free list. Memory is therefore bounded by the hits of still-open
components, not by the run length.

Entry points
------------
- class ClusterEngine: iter_clusters() / iter_indexed() / run()
- function cluster_hits(): one-shot convenience
"""
from __future__ import annotations
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, Iterable, Iterator, List, Optional, Tuple

from ..config.schemas import ClusterCfg
from ..errors import ConfigError, OrderingError
from ..physics.clusters import Cluster
from ..physics.hits import Hit


@dataclass
class EngineStats:
    hits_in: int = 0
    clusters_out: int = 0
    peak_active: int = 0  # largest active window seen
    peak_arena: int = 0   # largest number of slots ever allocated


class _Arena:
    """
    Dense union-find over slots. A slot holds one hit until its component
    is closed, then it is recycled.
    """

    __slots__ = ("parent", "size", "active", "members", "hit", "hit_id", "free")

    def __init__(self) -> None:
        self.parent: List[int] = []
        self.size: List[int] = []
        self.active: List[int] = []  # per root: members still in the time window
        self.members: List[Optional[List[int]]] = []  # per root: member slots
        self.hit: List[Optional[Hit]] = []
        self.hit_id: List[int] = []
        self.free: List[int] = []

    def alloc(self, hit_id: int, hit: Hit) -> int:
        if self.free:
            s = self.free.pop()
            self.parent[s] = s
            self.size[s] = 1
            self.active[s] = 1
            self.members[s] = [s]
            self.hit[s] = hit
            self.hit_id[s] = hit_id
            return s
        s = len(self.parent)
        self.parent.append(s)
        self.size.append(1)
        self.active.append(1)
        self.members.append([s])
        self.hit.append(hit)
        self.hit_id.append(hit_id)
        return s

    def find(self, s: int) -> int:
        parent = self.parent
        root = s
        while parent[root] != root:
            root = parent[root]
        # path compression
        while parent[s] != root:
            parent[s], s = root, parent[s]
        return root

    def union(self, a: int, b: int) -> int:
        ra, rb = self.find(a), self.find(b)
        if ra == rb:
            return ra
        if self.size[ra] < self.size[rb]:
            ra, rb = rb, ra
        self.parent[rb] = ra
        self.size[ra] += self.size[rb]
        self.active[ra] += self.active[rb]
        self.members[ra].extend(self.members[rb])
        self.members[rb] = None
        return ra

    def release(self, root: int) -> Cluster:
        """Build the cluster rooted at `root` and recycle its slots."""
        slots = self.members[root]
        cluster = Cluster.from_members(
            [self.hit_id[s] for s in slots],
            [self.hit[s] for s in slots],
        )
        for s in slots:
            self.hit[s] = None
            self.members[s] = None
            self.free.append(s)
        return cluster


class ClusterEngine:
    """
    Partition a ToA-sorted hit stream into spatio-temporal clusters.

    Every input hit ends up in exactly one cluster. Output order is the order
    in which clusters close; clusters closing on the same hit are ordered by
    their first hit id. run() returns the clusters sorted by first hit id.

    Raises OrderingError as soon as a hit's toa is smaller than its
    predecessor's; the pass cannot continue past that point.
    """

    def __init__(self, cfg: Optional[ClusterCfg] = None) -> None:
        if cfg is None:
            cfg = ClusterCfg()
        if not isinstance(cfg, ClusterCfg):
            raise ConfigError(f"ClusterEngine expects ClusterCfg, got {type(cfg).__name__}")
        self.cfg = cfg
        self._offsets = cfg.connectivity.offsets(cfg.spatial_radius)
        self.stats = EngineStats()

    # ------------------------------------------------------------------ API

    def iter_clusters(
        self,
        hits: Iterable[Hit],
        ids: Optional[Iterable[int]] = None,
    ) -> Iterator[Cluster]:
        """
        Lazily cluster `hits`. Hit identities default to the stream position;
        pass `ids` (aligned with `hits`) to carry identities from elsewhere.
        """
        if ids is None:
            pairs: Iterable[Tuple[int, Hit]] = enumerate(hits)
        else:
            pairs = zip(ids, hits, strict=True)
        return self.iter_indexed(pairs)

    def run(self, hits: Iterable[Hit], ids: Optional[Iterable[int]] = None) -> List[Cluster]:
        clusters = list(self.iter_clusters(hits, ids))
        clusters.sort(key=lambda c: c.first_id)
        return clusters

    def iter_indexed(self, pairs: Iterable[Tuple[int, Hit]]) -> Iterator[Cluster]:
        """Core pass over (hit_id, hit) pairs."""
        tw = self.cfg.time_window
        offsets = self._offsets
        stats = self.stats = EngineStats()

        arena = _Arena()
        queue: Deque[int] = deque()               # active slots, ToA order
        grid: Dict[Tuple[int, int], Deque[int]] = {}  # (x, y) -> active slots, ToA order

        prev_toa: Optional[int] = None
        for n, (hit_id, hit) in enumerate(pairs):
            toa = hit.toa
            if prev_toa is not None and toa < prev_toa:
                raise OrderingError(
                    "hits", n, prev_toa, toa, field="toa", detail=f"hit id {hit_id}"
                )
            prev_toa = toa
            stats.hits_in += 1

            # evict hits that fell out of the time window, emit closed components
            if queue and toa - arena.hit[queue[0]].toa > tw:
                yield from self._evict(arena, queue, grid, cutoff=toa - tw)

            s = arena.alloc(hit_id, hit)
            x, y = hit.x, hit.y
            for dx, dy in offsets:
                cell = grid.get((x + dx, y + dy))
                if cell:
                    for t in cell:
                        arena.union(s, t)

            cell = grid.get((x, y))
            if cell is None:
                cell = grid[(x, y)] = deque()
            cell.append(s)
            queue.append(s)

            if len(queue) > stats.peak_active:
                stats.peak_active = len(queue)
            if len(arena.parent) > stats.peak_arena:
                stats.peak_arena = len(arena.parent)

        # end of stream: everything left closes
        yield from self._evict(arena, queue, grid, cutoff=None)

    # ------------------------------------------------------------ internals

    def _evict(
        self,
        arena: _Arena,
        queue: Deque[int],
        grid: Dict[Tuple[int, int], Deque[int]],
        cutoff: Optional[int],
    ) -> Iterator[Cluster]:
        """
        Drop active hits with toa < cutoff (all of them if cutoff is None) and
        yield the clusters whose last active member was dropped.
        """
        closed: List[int] = []
        while queue and (cutoff is None or arena.hit[queue[0]].toa < cutoff):
            s = queue.popleft()
            h = arena.hit[s]
            key = (h.x, h.y)
            cell = grid[key]
            cell.popleft()  # per-cell order is ToA order, so s is at the front
            if not cell:
                del grid[key]
            r = arena.find(s)
            arena.active[r] -= 1
            if arena.active[r] == 0:
                closed.append(r)

        if not closed:
            return
        out = [arena.release(r) for r in closed]
        out.sort(key=lambda c: c.first_id)
        self.stats.clusters_out += len(out)
        yield from out


def cluster_hits(
    hits: Iterable[Hit],
    cfg: Optional[ClusterCfg] = None,
    **kwargs,
) -> List[Cluster]:
    """
    One-shot clustering. Either pass a ClusterCfg or its fields as keywords:

        cluster_hits(hits, time_window=10, spatial_radius=1)
    """
    if cfg is None:
        cfg = ClusterCfg(**kwargs)
    elif kwargs:
        raise ConfigError("pass either cfg or keyword overrides, not both")
    return ClusterEngine(cfg).run(hits)
