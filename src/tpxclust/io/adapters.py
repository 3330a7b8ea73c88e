"""
tpxclust.io.adapters

Readers that turn decoded Timepix run data into canonical hit / trigger
streams (tpxclust.physics.hits.{Hit,Trigger}) for the clustering and window
engines.

Design goals
------------
- Keep I/O concerns isolated from the engines.
- Normalize units on ingest: times -> ToA clock ticks (1.5625 ns).
- Stream hits in fixed-size chunks; never load a whole run into RAM.
- Do not sort or repair: ordering is validated downstream by the engines.

Formats
-------
hits.bin     : little-endian 16-byte records (col:u16, row:u16, toa:u64, tot:u32)
triggers.csv : columns "event,time"; time in ns (default) or ticks
tables       : .csv / .parquet with hit columns x,y,toa,tot (common aliases accepted)
<name>.bin   : legacy trigger-event / cluster file, hits grouped by all-zero
               terminator records, with <name>.csv (event,time,duration,hits,sum_tot,offset)

Entry points
------------
- class TpxBinAdapter: run directory with hits.bin + triggers.csv
- class TableAdapter : tabular hits (+ optional trigger csv)
- class LegacyEventsAdapter: pre-extracted trigger windows from legacy event files
- function make_adapter(cfg): factory from the [io.adapter] TOML section

Config (example)
----------------
[io]
input_path = "runs/run042"

[io.adapter]
type = "tpx_bin"             # "tpx_bin" | "table" | "legacy_events"
hits_file = "hits.bin"
triggers_file = "triggers.csv"
trigger_time_units = "ns"    # "ns" | "ticks"
"""
from __future__ import annotations
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Literal, Optional

import numpy as np
import pandas as pd

from tpxclust.physics.hits import Hit, Trigger, TOA_CLOCK_TO_NS
from tpxclust.physics.windows import TriggerWindow

# ---------------------------------------------------------------------------
# Binary hit records
# ---------------------------------------------------------------------------

HIT_DTYPE = np.dtype([("col", "<u2"), ("row", "<u2"), ("toa", "<u8"), ("tot", "<u4")])
HIT_RECORD_SIZE = HIT_DTYPE.itemsize  # 16
CHUNK_RECORDS = 100_000  # 1.6 MB per read

TimeUnits = Literal["ns", "ticks"]


def hits_to_records(hits: Iterable[Hit]) -> np.ndarray:
    rows = [(h.x, h.y, h.toa, h.tot) for h in hits]
    return np.array(rows, dtype=HIT_DTYPE)


def count_hits_bin(path: str | Path) -> int:
    size = Path(path).stat().st_size
    if size % HIT_RECORD_SIZE != 0:
        raise ValueError(
            f"{path}: size {size} is not a multiple of the {HIT_RECORD_SIZE}-byte hit record"
        )
    return size // HIT_RECORD_SIZE


def iter_hits_bin(path: str | Path, chunk_records: int = CHUNK_RECORDS) -> Iterator[Hit]:
    """
    Stream hits from a hits.bin file.

    An all-zero record is the cluster terminator of the legacy cluster files and
    never a valid hit; finding one in a hit stream raises ValueError.
    """
    p = Path(path)
    n_total = count_hits_bin(p)
    n_read = 0
    with open(p, "rb") as f:
        while n_read < n_total:
            arr = np.fromfile(f, dtype=HIT_DTYPE, count=chunk_records)
            if arr.size == 0:
                break
            null = (arr["col"] == 0) & (arr["row"] == 0) & (arr["toa"] == 0) & (arr["tot"] == 0)
            if np.any(null):
                k = n_read + int(np.argmax(null))
                raise ValueError(f"{p}: unexpected null hit record at index {k}")
            # tolist() gives Python ints, keeping ToA arithmetic unsigned-safe
            for col, row, toa, tot in arr.tolist():
                yield Hit(x=col, y=row, toa=toa, tot=tot)
            n_read += arr.size


def write_hits_bin(path: str | Path, hits: Iterable[Hit]) -> int:
    """Write hits as 16-byte records; returns the number of hits written."""
    recs = hits_to_records(hits)
    with open(path, "wb") as f:
        recs.tofile(f)
    return int(recs.size)


# ---------------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------------

def _to_ticks(values: np.ndarray, units: TimeUnits) -> np.ndarray:
    if units == "ticks":
        return values.astype(np.uint64)
    if units == "ns":
        return np.floor(values.astype(np.float64) / TOA_CLOCK_TO_NS).astype(np.uint64)
    raise ValueError(f"Unknown time units: {units!r} (expected 'ns' or 'ticks')")


def read_triggers_csv(path: str | Path, time_units: TimeUnits = "ns") -> List[Trigger]:
    """
    Read a triggers.csv (columns: event,time). Rows are returned in file order;
    ordering is checked by the window extractor, not here.
    """
    df = pd.read_csv(path)
    missing = {"event", "time"} - set(df.columns)
    if missing:
        raise ValueError(f"{path}: missing trigger columns {sorted(missing)}")
    ticks = _to_ticks(df["time"].to_numpy(), time_units)
    return [Trigger(id=int(e), timestamp=int(t)) for e, t in zip(df["event"].tolist(), ticks.tolist())]


def write_triggers_csv(path: str | Path, triggers: Iterable[Trigger], time_units: TimeUnits = "ns") -> None:
    trig = list(triggers)
    ticks = np.array([t.timestamp for t in trig], dtype=np.float64)
    time = ticks * TOA_CLOCK_TO_NS if time_units == "ns" else ticks.astype(np.uint64)
    pd.DataFrame({"event": [t.id for t in trig], "time": time}).to_csv(path, index=False)


# ---------------------------------------------------------------------------
# Tabular hits
# ---------------------------------------------------------------------------

_CANON_KEYS = {
    # canonical_key: tuple of fallback source columns
    "x": ("x", "col", "column", "X"),
    "y": ("y", "row", "Y"),
    "toa": ("toa", "ToA", "TOA", "t"),
    "tot": ("tot", "ToT", "TOT"),
}

def _resolve_columns(columns: Iterable[str], path: Path) -> Dict[str, str]:
    cols = set(columns)
    out: Dict[str, str] = {}
    for canon, names in _CANON_KEYS.items():
        for k in names:
            if k in cols:
                out[canon] = k
                break
        else:
            if canon != "tot":
                raise ValueError(f"{path.name}: no column for '{canon}' (tried {names})")
    return out

def _iter_frame(df: pd.DataFrame, colmap: Dict[str, str]) -> Iterator[Hit]:
    x = df[colmap["x"]].to_numpy().astype(np.int64).tolist()
    y = df[colmap["y"]].to_numpy().astype(np.int64).tolist()
    toa = df[colmap["toa"]].to_numpy().astype(np.uint64).tolist()
    if "tot" in colmap:
        tot = df[colmap["tot"]].to_numpy().astype(np.int64).tolist()
    else:
        tot = [0] * len(x)
    for a, b, c, d in zip(x, y, toa, tot):
        yield Hit(x=a, y=b, toa=c, tot=d)

def iter_hits_table(path: str | Path, chunk_records: int = CHUNK_RECORDS) -> Iterator[Hit]:
    """Stream hits from a .csv (chunked) or .parquet table."""
    p = Path(path)
    suffix = p.suffix.lower()
    if suffix == ".csv":
        for df in pd.read_csv(p, chunksize=chunk_records):
            yield from _iter_frame(df, _resolve_columns(df.columns, p))
    elif suffix in {".parquet", ".pq"}:
        df = pd.read_parquet(p)
        yield from _iter_frame(df, _resolve_columns(df.columns, p))
    else:
        raise ValueError(f"Unrecognized hit table: {p.name} (expected .csv or .parquet)")


# ---------------------------------------------------------------------------
# Legacy event / cluster files
# ---------------------------------------------------------------------------

_LEGACY_META_COLUMNS = ("event", "time", "duration", "hits", "sum_tot", "offset")


def iter_legacy_clusters(path: str | Path, chunk_records: int = CHUNK_RECORDS) -> Iterator[List[Hit]]:
    """Stream a zero-terminated group file, one hit list per group."""
    p = Path(path)
    count_hits_bin(p)  # size check
    group: List[Hit] = []
    with open(p, "rb") as f:
        while True:
            arr = np.fromfile(f, dtype=HIT_DTYPE, count=chunk_records)
            if arr.size == 0:
                break
            for col, row, toa, tot in arr.tolist():
                if col == 0 and row == 0 and toa == 0 and tot == 0:
                    yield group
                    group = []
                else:
                    group.append(Hit(x=col, y=row, toa=toa, tot=tot))
    if group:
        raise ValueError(f"{p}: {len(group)} hits after the last group terminator")


def read_legacy_metadata(path: str | Path) -> pd.DataFrame:
    df = pd.read_csv(path)
    missing = set(_LEGACY_META_COLUMNS) - set(df.columns)
    if missing:
        raise ValueError(f"{path}: missing metadata columns {sorted(missing)}")
    return df


def iter_legacy_windows(stem: str | Path, relative_toa: bool = False) -> Iterator[TriggerWindow]:
    """
    Rebuild TriggerWindows from a legacy trigger-event file pair
    (<stem>.bin groups + <stem>.csv rows, matched by position).

    time / duration (ns) give the window bounds in ticks. The trigger
    timestamp is not stored in these files; the window start stands in for
    it. Hit ids are positions in the file's hit records, terminators
    excluded. With relative_toa the stored ToA values are shifted back by the
    window start.
    """
    stem = Path(stem)
    bin_path = stem.with_suffix(".bin")
    meta = read_legacy_metadata(stem.with_suffix(".csv"))
    groups = iter_legacy_clusters(bin_path)

    rows = zip(
        meta["event"].tolist(),
        meta["time"].tolist(),
        meta["duration"].tolist(),
        meta["hits"].tolist(),
    )
    hit_id = 0
    for n, (event, time_ns, duration_ns, n_hits) in enumerate(rows):
        hits = next(groups, None)
        if hits is None:
            raise ValueError(f"{bin_path}: {n} groups for {len(meta)} metadata rows")
        if len(hits) != n_hits:
            raise ValueError(
                f"{bin_path}: group {n} (event {event}) has {len(hits)} hits, metadata says {n_hits}"
            )
        t_start = int(round(time_ns / TOA_CLOCK_TO_NS))
        t_end = t_start + int(round(duration_ns / TOA_CLOCK_TO_NS))
        w = TriggerWindow(trigger=Trigger(id=int(event), timestamp=t_start), t_start=t_start, t_end=t_end)
        for h in hits:
            if relative_toa:
                h = Hit(x=h.x, y=h.y, toa=h.toa + t_start, tot=h.tot)
            w.add(hit_id, h)
            hit_id += 1
        yield w

    if next(groups, None) is not None:
        raise ValueError(f"{bin_path}: more groups than the {len(meta)} metadata rows")


# ---------------------------------------------------------------------------
# Base adapter API
# ---------------------------------------------------------------------------

class BaseAdapter:
    """
    Abstract adapter interface.

    Yields canonical hits / triggers in clock ticks. Adapters whose source
    already holds trigger windows set provides_windows and implement
    iter_windows() instead of the hit / trigger streams.
    """

    provides_windows = False

    def iter_hits(self, path: str) -> Iterator[Hit]:
        raise NotImplementedError

    def read_triggers(self, path: str) -> List[Trigger]:
        raise NotImplementedError

    def count_hits(self, path: str) -> Optional[int]:
        """Number of hits if cheaply known (for progress bars), else None."""
        return None

    def iter_windows(self, path: str) -> Iterator[TriggerWindow]:
        raise NotImplementedError


class TpxBinAdapter(BaseAdapter):
    """
    Run directory produced by the raw data parser:

        <run>/hits.bin
        <run>/triggers.csv

    `path` may also point directly at a hits file; triggers are then looked up
    next to it.
    """

    def __init__(
        self,
        hits_file: str = "hits.bin",
        triggers_file: str = "triggers.csv",
        trigger_time_units: TimeUnits = "ns",
    ) -> None:
        self.hits_file = hits_file
        self.triggers_file = triggers_file
        self.trigger_time_units = trigger_time_units

    def _run_dir(self, path: str) -> Path:
        p = Path(path)
        return p if p.is_dir() else p.parent

    def _hits_path(self, path: str) -> Path:
        p = Path(path)
        return p / self.hits_file if p.is_dir() else p

    def iter_hits(self, path: str) -> Iterator[Hit]:
        return iter_hits_bin(self._hits_path(path))

    def count_hits(self, path: str) -> Optional[int]:
        return count_hits_bin(self._hits_path(path))

    def read_triggers(self, path: str) -> List[Trigger]:
        return read_triggers_csv(self._run_dir(path) / self.triggers_file, self.trigger_time_units)


class TableAdapter(BaseAdapter):
    """
    Tabular hits (.csv / .parquet), e.g. exported from other Timepix tooling.
    Triggers come from an optional csv next to the table.
    """

    def __init__(
        self,
        triggers_file: Optional[str] = None,
        trigger_time_units: TimeUnits = "ticks",
    ) -> None:
        self.triggers_file = triggers_file
        self.trigger_time_units = trigger_time_units

    def iter_hits(self, path: str) -> Iterator[Hit]:
        return iter_hits_table(path)

    def read_triggers(self, path: str) -> List[Trigger]:
        if not self.triggers_file:
            raise ValueError("TableAdapter: no triggers_file configured in [io.adapter]")
        p = Path(self.triggers_file)
        if not p.is_absolute():
            p = Path(path).parent / p
        return read_triggers_csv(p, self.trigger_time_units)


class LegacyEventsAdapter(BaseAdapter):
    """
    Trigger windows already extracted into legacy event files:

        <run>/<events_file>.bin
        <run>/<events_file>.csv

    `path` may be the run directory or the .bin / .csv file itself. Set
    relative_toa when the files were written with ToA relative to the window
    start.
    """

    provides_windows = True

    def __init__(self, events_file: str = "trigger_events", relative_toa: bool = False) -> None:
        self.events_file = events_file
        self.relative_toa = relative_toa

    def _stem(self, path: str) -> Path:
        p = Path(path)
        return p / self.events_file if p.is_dir() else p.with_suffix("")

    def iter_windows(self, path: str) -> Iterator[TriggerWindow]:
        return iter_legacy_windows(self._stem(path), relative_toa=self.relative_toa)

    def iter_hits(self, path: str) -> Iterator[Hit]:
        raise ValueError(
            "LegacyEventsAdapter provides trigger windows, not a hit stream "
            "(use mode 'windows' or 'trigger_clusters')"
        )


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def make_adapter(cfg: Dict[str, Any]) -> BaseAdapter:
    """
    Create an adapter from a config dict (from TOML/CLI).

    Expected keys under [io.adapter]:
      type: "tpx_bin" | "table" | "legacy_events"
      hits_file: str                    (tpx_bin only)
      triggers_file: str
      trigger_time_units: "ns" | "ticks"
      events_file: str                  (legacy_events only, without extension)
      relative_toa: bool                (legacy_events only)
    """
    typ = (cfg.get("type") or "tpx_bin").lower()

    if typ == "tpx_bin":
        return TpxBinAdapter(
            hits_file=cfg.get("hits_file", "hits.bin"),
            triggers_file=cfg.get("triggers_file", "triggers.csv"),
            trigger_time_units=cfg.get("trigger_time_units", "ns"),
        )

    if typ == "table":
        return TableAdapter(
            triggers_file=cfg.get("triggers_file"),
            trigger_time_units=cfg.get("trigger_time_units", "ticks"),
        )

    if typ == "legacy_events":
        return LegacyEventsAdapter(
            events_file=cfg.get("events_file", "trigger_events"),
            relative_toa=bool(cfg.get("relative_toa", False)),
        )

    raise ValueError(f"Unknown adapter type: {typ}")


# ---------------------------------------------------------------------------
# Simple smoke tests (manual) - run: python -m tpxclust.io.adapters tpx_bin runs/run042
# ---------------------------------------------------------------------------

if __name__ == "__main__":  # pragma: no cover
    import sys
    if len(sys.argv) < 3:
        print("Usage: python -m tpxclust.io.adapters <tpx_bin|table> <path>")
        sys.exit(1)
    kind, path = sys.argv[1], sys.argv[2]
    ad = make_adapter({"type": kind})
    for j, h in zip(range(5), ad.iter_hits(path)):
        print(f"[{j:03d}] {h}")
