# src/tpxclust/clustering/cuts.py
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, Optional, Sequence, Tuple

from ..config.schemas import ClusterCfg
from ..physics.clusters import Cluster
from ..physics.hits import Hit


@dataclass
class CutDiagnostics:
    hits_in: int = 0
    hits_kept: int = 0
    clusters_in: int = 0
    clusters_kept: int = 0
    reasons: Dict[str, int] = field(default_factory=dict)

    def inc(self, reason: str) -> None:
        self.reasons[reason] = self.reasons.get(reason, 0) + 1


def filter_hits(
    pairs: Iterable[Tuple[int, Hit]],
    min_hit_tot: Optional[int],
    diag: Optional[CutDiagnostics] = None,
) -> Iterator[Tuple[int, Hit]]:
    """
    Drop hits with tot <= min_hit_tot before clustering. Identities are kept,
    so surviving hits still refer to their position in the input stream.
    """
    for hit_id, hit in pairs:
        if diag is not None:
            diag.hits_in += 1
        if min_hit_tot is not None and hit.tot <= min_hit_tot:
            if diag is not None:
                diag.inc("hit_tot_below_min")
            continue
        if diag is not None:
            diag.hits_kept += 1
        yield hit_id, hit


def passes(cluster: Cluster, cfg: ClusterCfg, diag: Optional[CutDiagnostics] = None) -> bool:
    if cluster.size < cfg.min_cluster_hits:
        if diag is not None:
            diag.inc("cluster_too_few_hits")
        return False
    if cluster.tot_sum < cfg.min_cluster_tot:
        if diag is not None:
            diag.inc("cluster_tot_below_min")
        return False
    return True


def select_clusters(
    clusters: Iterable[Cluster],
    cfg: ClusterCfg,
    diag: Optional[CutDiagnostics] = None,
) -> Iterator[Cluster]:
    """
    Apply min_cluster_hits / min_cluster_tot and stop after max_clusters.
    """
    kept = 0
    for c in clusters:
        if diag is not None:
            diag.clusters_in += 1
        if not passes(c, cfg, diag):
            continue
        kept += 1
        if diag is not None:
            diag.clusters_kept += 1
        yield c
        if cfg.max_clusters is not None and kept >= cfg.max_clusters:
            return


def window_passes(clusters: Sequence[Cluster], cfg: ClusterCfg, diag: Optional[CutDiagnostics] = None) -> bool:
    """Cluster-count cut on one trigger window (min/max_window_clusters)."""
    n = len(clusters)
    if n < cfg.min_window_clusters:
        if diag is not None:
            diag.inc("window_too_few_clusters")
        return False
    if cfg.max_window_clusters is not None and n > cfg.max_window_clusters:
        if diag is not None:
            diag.inc("window_too_many_clusters")
        return False
    return True
