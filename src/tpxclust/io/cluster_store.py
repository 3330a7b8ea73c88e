from __future__ import annotations
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple
import h5py
import numpy as np
import pandas as pd
from datetime import datetime, timezone
from pathlib import Path
from tpxclust.config.schemas import Config
from tpxclust.config.load import snapshot_config_toml, json_dumps
from tpxclust.io.adapters import HIT_DTYPE, HIT_RECORD_SIZE
from tpxclust.physics.clusters import Cluster
from tpxclust.physics.hits import Hit, TOA_CLOCK_TO_NS
from tpxclust.physics.windows import TriggerWindow

FORMAT_VERSION = "1.0"
SOFTWARE = "tpx-clust 0.1.0"

# flat per-hit columns shared by /clusters/hits and /windows/hits
_HIT_COLUMNS = {
    "hit_id": np.uint64,
    "x": np.uint16,
    "y": np.uint16,
    "toa": np.uint64,
    "tot": np.uint32,
}

_CLUSTER_COLUMNS = {
    "centroid_x": np.float64,
    "centroid_y": np.float64,
    "tot_sum": np.uint64,
    "t_min": np.uint64,
    "t_max": np.uint64,
    "size": np.uint32,
    "window_index": np.int64,  # row in /windows, -1 for whole-run clustering
}

_WINDOW_COLUMNS = {
    "trigger_id": np.int64,
    "timestamp": np.uint64,
    "t_start": np.uint64,
    "t_end": np.uint64,
    "size": np.uint32,
    "tot_sum": np.uint64,
}


def write_init(path: str, cfg_path: Optional[str], cfg: Config) -> h5py.File:
    f = h5py.File(path, "w")
    # Root attrs
    f.attrs["format_version"] = FORMAT_VERSION
    f.attrs["created_utc"] = datetime.now(timezone.utc).isoformat()
    f.attrs["software"] = SOFTWARE
    f.attrs["config_text"] = snapshot_config_toml(cfg_path) if cfg_path else ""
    f.attrs["config_json"] = json_dumps(cfg.model_dump(mode="json"))

    # /meta
    meta = f.create_group("meta")
    meta.attrs["mode"] = cfg.pipeline.mode
    meta.attrs["cluster.spatial_radius"] = cfg.cluster.spatial_radius
    meta.attrs["cluster.time_window"] = cfg.cluster.time_window
    meta.attrs["cluster.connectivity"] = int(cfg.cluster.connectivity)
    meta.attrs["windows.pre_window"] = cfg.windows.pre_window
    meta.attrs["windows.post_window"] = cfg.windows.post_window
    meta.attrs["windows.overlap_policy"] = cfg.windows.overlap_policy.value
    meta.attrs["toa_clock_to_ns"] = TOA_CLOCK_TO_NS
    return f


class _RaggedWriter:
    """
    Append-only CSR layout under one group:

      <group>/hit_ptr      (N+1,) int64   pointers into the flat hit columns
      <group>/hits/<col>   (M,)           flat per-hit columns
      <group>/<col>        (N,)           per-item columns

    Rows are buffered and flushed in blocks so arbitrarily long runs can be
    written with bounded memory.
    """

    def __init__(self, f: h5py.File, group: str, item_columns: Dict[str, Any], flush_every: int = 10_000):
        if group in f:
            del f[group]
        self.grp = f.create_group(group)
        self.g_hits = self.grp.create_group("hits")
        self.item_columns = item_columns
        self.flush_every = flush_every

        for name, dt in item_columns.items():
            self._create(self.grp, name, dt)
        for name, dt in _HIT_COLUMNS.items():
            self._create(self.g_hits, name, dt)
        ptr = self._create(self.grp, "hit_ptr", np.int64)
        ptr.resize((1,))
        ptr[0] = 0

        self.n_items = 0
        self.n_hits = 0
        self._items: Dict[str, List[Any]] = {k: [] for k in item_columns}
        self._hits: Dict[str, List[int]] = {k: [] for k in _HIT_COLUMNS}
        self._ptr: List[int] = []

    @staticmethod
    def _create(grp: h5py.Group, name: str, dt) -> h5py.Dataset:
        return grp.create_dataset(
            name, shape=(0,), maxshape=(None,), dtype=dt, chunks=True, compression="gzip"
        )

    @staticmethod
    def _extend(ds: h5py.Dataset, data: np.ndarray) -> None:
        n = ds.shape[0]
        ds.resize((n + data.shape[0],))
        ds[n:] = data

    def append(self, values: Dict[str, Any], hit_ids: Sequence[int], hits: Sequence[Hit]) -> None:
        for k in self.item_columns:
            self._items[k].append(values[k])
        buf = self._hits
        buf["hit_id"].extend(hit_ids)
        for h in hits:
            buf["x"].append(h.x)
            buf["y"].append(h.y)
            buf["toa"].append(h.toa)
            buf["tot"].append(h.tot)
        self.n_hits += len(hit_ids)
        self.n_items += 1
        self._ptr.append(self.n_hits)
        if len(self._ptr) >= self.flush_every:
            self.flush()

    def flush(self) -> None:
        if not self._ptr:
            return
        for k, dt in self.item_columns.items():
            self._extend(self.grp[k], np.asarray(self._items[k], dtype=dt))
            self._items[k].clear()
        for k, dt in _HIT_COLUMNS.items():
            self._extend(self.g_hits[k], np.asarray(self._hits[k], dtype=dt))
            self._hits[k].clear()
        self._extend(self.grp["hit_ptr"], np.asarray(self._ptr, dtype=np.int64))
        self._ptr.clear()

    def close(self) -> None:
        self.flush()
        self.grp.attrs["count"] = self.n_items
        self.grp.attrs["hit_count"] = self.n_hits


class ClusterWriter(_RaggedWriter):
    def __init__(self, f: h5py.File, group: str = "clusters", **kw):
        super().__init__(f, group, _CLUSTER_COLUMNS, **kw)

    def write(self, cluster: Cluster, window_index: int = -1) -> None:
        self.append(
            {
                "centroid_x": cluster.centroid_x,
                "centroid_y": cluster.centroid_y,
                "tot_sum": cluster.tot_sum,
                "t_min": cluster.t_min,
                "t_max": cluster.t_max,
                "size": cluster.size,
                "window_index": window_index,
            },
            cluster.hit_ids,
            cluster.hits,
        )


class WindowWriter(_RaggedWriter):
    def __init__(self, f: h5py.File, group: str = "windows", **kw):
        super().__init__(f, group, _WINDOW_COLUMNS, **kw)

    def write(self, window: TriggerWindow) -> int:
        """Append a window; returns its row index (for /clusters/window_index)."""
        self.append(
            {
                "trigger_id": window.trigger.id,
                "timestamp": window.trigger.timestamp,
                "t_start": window.t_start,
                "t_end": window.t_end,
                "size": window.size,
                "tot_sum": window.tot_sum,
            },
            window.hit_ids,
            window.hits,
        )
        return self.n_items - 1


def read_ragged(path: str | Path, group: str) -> Dict[str, np.ndarray]:
    """
    Load a ragged group written by ClusterWriter / WindowWriter.

    Returns a dict with the per-item columns, 'hit_ptr', and the per-hit
    columns prefixed 'hits/'.
    """
    with h5py.File(str(path), "r") as f:
        if group not in f:
            raise KeyError(f"/{group} not found in {path}")
        grp = f[group]
        out = {k: np.array(grp[k]) for k in grp.keys() if isinstance(grp[k], h5py.Dataset)}
        for k in grp["hits"].keys():
            out[f"hits/{k}"] = np.array(grp["hits"][k])
    return out


def iter_ragged_hit_ids(data: Dict[str, np.ndarray]) -> Iterator[np.ndarray]:
    ptr = data["hit_ptr"]
    ids = data["hits/hit_id"]
    for i in range(len(ptr) - 1):
        yield ids[ptr[i]:ptr[i + 1]]


# ---------------------------------------------------------------------------
# Legacy zero-terminated cluster files (+ CSV metadata)
# ---------------------------------------------------------------------------

_LEGACY_COLUMNS = ["event", "time", "duration", "hits", "sum_tot", "offset"]


class LegacyClusterWriter:
    """
    Write hit groups as legacy zero-terminated cluster files:

      <stem>.bin : per group, its hits as 16-byte records followed by one
                   all-zero record
      <stem>.csv : event,time,duration,hits,sum_tot,offset  (times in ns,
                   offset = byte offset of the group in <stem>.bin)

    With relative_toa, each group's ToA values are written relative to
    `origin` (cluster start or window start).
    """

    def __init__(self, stem: str | Path, relative_toa: bool = False, flush_every: int = 10_000):
        stem = Path(stem)
        self.bin_path = stem.with_suffix(".bin")
        self.csv_path = stem.with_suffix(".csv")
        self.relative_toa = relative_toa
        self.flush_every = flush_every
        self._f = open(self.bin_path, "wb")
        self._rows: List[Tuple] = []
        self._header_written = False
        self.offset = 0
        self.count = 0

    def write(self, event: int, hits: Sequence[Hit], origin: int, duration_ns: float) -> None:
        recs = np.zeros(len(hits) + 1, dtype=HIT_DTYPE)
        if hits:
            toa = np.array([h.toa for h in hits], dtype=np.int64)
            if self.relative_toa:
                toa = toa - int(origin)
            if np.any(toa < 0):
                raise ValueError(f"Attempting to write negative ToA (event {event}, origin {origin})")
            recs["col"][:-1] = [h.x for h in hits]
            recs["row"][:-1] = [h.y for h in hits]
            recs["toa"][:-1] = toa
            recs["tot"][:-1] = [h.tot for h in hits]
            # an all-zero record would read back as a group terminator
            body = recs[:-1]
            null = (body["col"] == 0) & (body["row"] == 0) & (body["toa"] == 0) & (body["tot"] == 0)
            if np.any(null):
                k = int(np.argmax(null))
                raise ValueError(
                    f"Attempting to write an all-zero hit record (event {event}, member {k}); "
                    f"it would be read back as a group terminator"
                )
        recs.tofile(self._f)

        self._rows.append((
            int(event),
            origin * TOA_CLOCK_TO_NS,
            float(duration_ns),
            len(hits),
            int(sum(h.tot for h in hits)),
            self.offset,
        ))
        self.offset += recs.size * HIT_RECORD_SIZE
        self.count += 1
        if len(self._rows) >= self.flush_every:
            self._flush_csv()

    def write_cluster(self, event: int, cluster: Cluster) -> None:
        self.write(event, cluster.hits, cluster.t_min, cluster.duration_ns)

    def write_window(self, window: TriggerWindow) -> None:
        self.write(window.trigger.id, window.hits, window.t_start, window.duration_ns)

    def _flush_csv(self) -> None:
        df = pd.DataFrame(self._rows, columns=_LEGACY_COLUMNS)
        df.to_csv(self.csv_path, mode="a" if self._header_written else "w",
                  header=not self._header_written, index=False)
        self._header_written = True
        self._rows.clear()

    def close(self) -> None:
        if self._rows or not self._header_written:
            self._flush_csv()
        self._f.close()

