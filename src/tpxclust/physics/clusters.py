# src/tpxclust/physics/clusters.py
from __future__ import annotations
from dataclasses import dataclass
from typing import Sequence, Tuple

from .hits import Hit, TOA_CLOCK_TO_NS


@dataclass(frozen=True, slots=True)
class Cluster:
    """
    A maximal set of hits connected by chained spatio-temporal adjacency.

    hit_ids are the positions of the member hits in the stream the engine was
    fed (or the identities supplied by the caller), ascending; hits is aligned
    with hit_ids. Use Cluster.from_members() rather than the constructor so the
    aggregates are always consistent with the members.
    """
    hit_ids: Tuple[int, ...]
    hits: Tuple[Hit, ...]
    centroid_x: float
    centroid_y: float
    tot_sum: int
    t_min: int
    t_max: int

    @classmethod
    def from_members(cls, hit_ids: Sequence[int], hits: Sequence[Hit]) -> "Cluster":
        """
        Build a cluster from aligned (id, hit) members.

        The centroid is ToT-weighted; when every member has tot == 0 it falls
        back to the plain mean of the pixel coordinates.
        """
        if len(hit_ids) == 0:
            raise ValueError("Cluster must have at least one member")
        if len(hit_ids) != len(hits):
            raise ValueError(
                f"Cluster members misaligned: {len(hit_ids)} ids vs {len(hits)} hits"
            )

        order = sorted(range(len(hit_ids)), key=lambda i: hit_ids[i])
        ids = tuple(hit_ids[i] for i in order)
        members = tuple(hits[i] for i in order)

        tot_sum = 0
        wx = wy = 0.0
        sx = sy = 0
        t_min = t_max = members[0].toa
        for h in members:
            tot_sum += h.tot
            wx += h.x * h.tot
            wy += h.y * h.tot
            sx += h.x
            sy += h.y
            if h.toa < t_min:
                t_min = h.toa
            if h.toa > t_max:
                t_max = h.toa

        if tot_sum > 0:
            cx, cy = wx / tot_sum, wy / tot_sum
        else:
            n = len(members)
            cx, cy = sx / n, sy / n

        return cls(
            hit_ids=ids,
            hits=members,
            centroid_x=float(cx),
            centroid_y=float(cy),
            tot_sum=int(tot_sum),
            t_min=int(t_min),
            t_max=int(t_max),
        )

    @property
    def size(self) -> int:
        return len(self.hit_ids)

    @property
    def duration(self) -> int:
        return self.t_max - self.t_min

    @property
    def duration_ns(self) -> float:
        return self.duration * TOA_CLOCK_TO_NS

    @property
    def first_id(self) -> int:
        return self.hit_ids[0]
