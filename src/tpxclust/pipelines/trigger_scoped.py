from __future__ import annotations
import os
from collections import deque
from concurrent.futures import Future, ProcessPoolExecutor
from itertools import islice
from typing import Deque, Iterable, Iterator, List, Sequence, Tuple

from ..clustering.cuts import filter_hits, passes
from ..clustering.engine import ClusterEngine
from ..config.schemas import ClusterCfg
from ..physics.clusters import Cluster
from ..physics.windows import TriggerWindow

# ----------------- per-window work (shared with workers) -----------------

def cluster_window(window: TriggerWindow, cfg: ClusterCfg) -> List[Cluster]:
    """
    Cluster one window's hits with a fresh engine.

    Cluster hit ids are the window's hit ids (positions in the run's hit
    stream). cfg.min_hit_tot and the per-cluster cuts apply here;
    max_clusters is a run-level limit and is left to the caller.
    """
    engine = ClusterEngine(cfg)
    pairs = filter_hits(zip(window.hit_ids, window.hits), cfg.min_hit_tot)
    clusters = sorted(engine.iter_indexed(pairs), key=lambda c: c.first_id)
    return [c for c in clusters if passes(c, cfg)]

def _cluster_chunk(windows: Sequence[TriggerWindow], cfg: ClusterCfg) -> List[List[Cluster]]:
    """Worker: clusters for each window of the chunk, in order."""
    return [cluster_window(w, cfg) for w in windows]

def _auto_chunk_size(workers: int) -> int:
    # windows are small (tens to thousands of hits); amortise pickling over a few hundred
    return max(64, min(1024, 4096 // max(1, workers)))

def _batched(it: Iterable[TriggerWindow], n: int) -> Iterator[List[TriggerWindow]]:
    it = iter(it)
    while True:
        batch = list(islice(it, n))
        if not batch:
            return
        yield batch

# ----------------- public API -----------------

def iter_trigger_clusters(
    windows: Iterable[TriggerWindow],
    cfg: ClusterCfg,
    workers: int | str = 0,
    chunk_windows: int | str = "auto",
) -> Iterator[Tuple[TriggerWindow, List[Cluster]]]:
    """
    Yield (window, clusters) for every window, in input order.

    Each window is clustered independently, so a hit duplicated across
    windows (independent overlap policy) may end up in differently shaped
    clusters in each of them.

    workers == 0 runs in-process; otherwise windows are chunked over a
    process pool with a bounded number of chunks in flight, so the input
    stream is never fully materialised.
    """
    if workers == "auto":
        workers = max(1, os.cpu_count() or 1)
    elif isinstance(workers, int):
        workers = max(0, workers)
    else:
        raise ValueError("workers must be int or 'auto'")

    # Single-process path (also good for debugging)
    if workers == 0:
        for w in windows:
            yield w, cluster_window(w, cfg)
        return

    if chunk_windows == "auto" or chunk_windows == 0:
        chunk_windows = _auto_chunk_size(workers)
    else:
        chunk_windows = int(chunk_windows)

    max_in_flight = 2 * workers
    pending: Deque[Tuple[List[TriggerWindow], Future]] = deque()

    with ProcessPoolExecutor(max_workers=workers) as ex:
        for batch in _batched(windows, chunk_windows):
            pending.append((batch, ex.submit(_cluster_chunk, batch, cfg)))
            while len(pending) >= max_in_flight:
                done_batch, fut = pending.popleft()
                yield from zip(done_batch, fut.result())
        while pending:
            done_batch, fut = pending.popleft()
            yield from zip(done_batch, fut.result())
