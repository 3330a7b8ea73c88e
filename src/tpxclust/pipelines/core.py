from __future__ import annotations

from dataclasses import dataclass, field
from itertools import islice
from pathlib import Path
from typing import Dict, Iterator, Optional, Tuple
import typer

from tqdm import tqdm

from tpxclust.clustering.cuts import CutDiagnostics, filter_hits, select_clusters, window_passes
from tpxclust.clustering.engine import ClusterEngine
from tpxclust.config.load import load_config, snapshot_config_toml, with_overrides
from tpxclust.config.schemas import Config
from tpxclust.io.adapters import BaseAdapter, make_adapter
from tpxclust.io.cluster_store import (
    ClusterWriter,
    LegacyClusterWriter,
    WindowWriter,
    write_init,
)
from tpxclust.physics.clusters import Cluster
from tpxclust.physics.hits import Hit
from tpxclust.physics.windows import TriggerWindow
from tpxclust.pipelines.trigger_scoped import iter_trigger_clusters
from tpxclust.vis.hdf import save_centroid_png
from tpxclust.windows.extractor import WindowExtractor


@dataclass
class RunSummary:
    mode: str
    output_path: Path
    hits_in: int = 0
    clusters_written: int = 0
    windows_written: int = 0
    stats: Dict[str, int] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Sources and sinks
# ---------------------------------------------------------------------------

def _iter_source_hits(cfg: Config, adapter: BaseAdapter) -> Iterator[Tuple[int, Hit]]:
    """
    (hit_id, hit) pairs from the configured input; hit_id is the position in
    the run's hit stream. Honors [run].max_hits and [run].progress.
    """
    path = str(cfg.io.input_path)
    pairs: Iterator[Tuple[int, Hit]] = enumerate(adapter.iter_hits(path))
    total = adapter.count_hits(path)
    if cfg.run.max_hits is not None:
        pairs = islice(pairs, cfg.run.max_hits)
        total = min(total, cfg.run.max_hits) if total is not None else cfg.run.max_hits
    if cfg.run.progress:
        pairs = tqdm(pairs, total=total, desc="hits", unit="hit", unit_scale=True, mininterval=1.0)
    return pairs


class _H5Sink:
    def __init__(self, out_path: Path, cfg_path: Optional[str], cfg: Config):
        self.f = write_init(str(out_path), cfg_path, cfg)
        try:
            self.clusters = ClusterWriter(self.f) if cfg.pipeline.mode != "windows" else None
            self.windows = WindowWriter(self.f) if cfg.pipeline.mode != "clusters" else None
        except Exception:
            self.f.close()
            raise

    def write_cluster(self, cluster: Cluster, event: int, window_index: int = -1) -> None:
        self.clusters.write(cluster, window_index=window_index)

    def write_window(self, window: TriggerWindow) -> int:
        return self.windows.write(window)

    def close(self) -> None:
        for w in (self.clusters, self.windows):
            if w is not None:
                w.close()
        self.f.close()


class _LegacySink:
    """<stem>.bin / <stem>.csv (+ <stem>.toml config snapshot) in the legacy cluster file layout."""

    def __init__(self, out_path: Path, cfg_path: Optional[str], cfg: Config):
        stem = out_path.with_suffix("")
        self.mode = cfg.pipeline.mode
        self.writer = LegacyClusterWriter(stem, relative_toa=cfg.run.relative_toa)
        if cfg_path:
            stem.with_suffix(".toml").write_text(snapshot_config_toml(cfg_path))
        self._n_windows = 0

    def write_cluster(self, cluster: Cluster, event: int, window_index: int = -1) -> None:
        self.writer.write_cluster(event, cluster)

    def write_window(self, window: TriggerWindow) -> int:
        # in trigger_clusters mode only the clusters go to the legacy file
        if self.mode == "windows":
            self.writer.write_window(window)
        self._n_windows += 1
        return self._n_windows - 1

    def close(self) -> None:
        self.writer.close()


def _make_sink(cfg: Config, cfg_path: Optional[str]):
    out_path = Path(cfg.io.output_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    if cfg.io.output_format == "legacy":
        return _LegacySink(out_path, cfg_path, cfg)
    return _H5Sink(out_path, cfg_path, cfg)


# ---------------------------------------------------------------------------
# Modes
# ---------------------------------------------------------------------------

def _run_clusters(cfg: Config, adapter: BaseAdapter, sink, summary: RunSummary) -> None:
    """Whole-run clustering."""
    diag = CutDiagnostics()
    engine = ClusterEngine(cfg.cluster)
    pairs = filter_hits(_iter_source_hits(cfg, adapter), cfg.cluster.min_hit_tot, diag)
    for cluster in select_clusters(engine.iter_indexed(pairs), cfg.cluster, diag):
        summary.clusters_written += 1
        sink.write_cluster(cluster, event=summary.clusters_written)

    summary.hits_in = diag.hits_in
    summary.stats.update(
        hits_clustered=engine.stats.hits_in,
        clusters_found=engine.stats.clusters_out,
        peak_active=engine.stats.peak_active,
        peak_arena=engine.stats.peak_arena,
        **diag.reasons,
    )
    if cfg.run.diagnostics_level >= 1:
        print(f"[cluster] {engine.stats.hits_in} hits -> {engine.stats.clusters_out} clusters, "
              f"{summary.clusters_written} written")
    if cfg.run.diagnostics_level >= 2:
        print(f"[cluster] peak active window={engine.stats.peak_active} "
              f"peak arena={engine.stats.peak_arena} cuts={diag.reasons}")


def _iter_windows(cfg: Config, adapter: BaseAdapter, extractor: WindowExtractor) -> Iterator[TriggerWindow]:
    path = str(cfg.io.input_path)
    if adapter.provides_windows:
        if cfg.run.diagnostics_level >= 1:
            print(f"[windows] reading pre-extracted trigger windows from {path}")
        windows: Iterator[TriggerWindow] = adapter.iter_windows(path)
        if cfg.windows.max_triggers is not None:
            windows = islice(windows, cfg.windows.max_triggers)
    else:
        triggers = adapter.read_triggers(path)
        if cfg.run.diagnostics_level >= 1:
            print(f"[windows] {len(triggers)} triggers, window=[-{cfg.windows.pre_window}, "
                  f"+{cfg.windows.post_window}] ticks, policy={cfg.windows.overlap_policy.value}")
        if cfg.windows.max_triggers is not None:
            triggers = triggers[: cfg.windows.max_triggers]
        windows = extractor.iter_indexed(_iter_source_hits(cfg, adapter), triggers)
    for w in windows:
        if w.size >= cfg.windows.min_window_hits:
            yield w


def _run_windows(cfg: Config, adapter: BaseAdapter, sink, summary: RunSummary) -> None:
    """Trigger window extraction only."""
    extractor = WindowExtractor(cfg.windows)
    for w in _iter_windows(cfg, adapter, extractor):
        sink.write_window(w)
        summary.windows_written += 1
    if not adapter.provides_windows:
        _record_extractor(cfg, extractor, summary)


def _run_trigger_clusters(cfg: Config, adapter: BaseAdapter, sink, summary: RunSummary) -> None:
    """Per-trigger clustering: each window is clustered on its own."""
    extractor = WindowExtractor(cfg.windows)
    diag = CutDiagnostics()
    max_clusters = cfg.cluster.max_clusters
    windows = _iter_windows(cfg, adapter, extractor)
    for window, clusters in iter_trigger_clusters(
        windows, cfg.cluster, workers=cfg.run.workers, chunk_windows=cfg.run.chunk_windows
    ):
        if not window_passes(clusters, cfg.cluster, diag):
            continue
        w_idx = sink.write_window(window)
        summary.windows_written += 1
        for c in clusters:
            sink.write_cluster(c, event=window.trigger.id, window_index=w_idx)
            summary.clusters_written += 1
            if max_clusters is not None and summary.clusters_written >= max_clusters:
                break
        if max_clusters is not None and summary.clusters_written >= max_clusters:
            if cfg.run.diagnostics_level >= 1:
                print(f"[cluster] Reached max_clusters={max_clusters}, stopping.")
            break
    if not adapter.provides_windows:
        _record_extractor(cfg, extractor, summary)
    summary.stats.update(**diag.reasons)
    if cfg.run.diagnostics_level >= 1:
        print(f"[cluster] {summary.clusters_written} clusters written from "
              f"{summary.windows_written} windows")
    if cfg.run.diagnostics_level >= 2 and diag.reasons:
        print(f"[cluster] window cuts={diag.reasons}")


def _record_extractor(cfg: Config, extractor: WindowExtractor, summary: RunSummary) -> None:
    st = extractor.stats
    summary.hits_in = st.hits_in
    summary.stats.update(
        hits_in_windows=st.hits_in_windows,
        contested=st.contested,
        dropped=st.dropped,
        assignments=st.assignments,
        windows_found=st.windows_out,
        peak_open=st.peak_open,
    )
    if cfg.run.diagnostics_level >= 1:
        print(f"[windows] {st.hits_in} hits, {st.hits_in_windows} inside windows, "
              f"{st.contested} contested, {st.dropped} dropped; "
              f"{summary.windows_written}/{st.windows_out} windows written")


_MODES = {
    "clusters": _run_clusters,
    "windows": _run_windows,
    "trigger_clusters": _run_trigger_clusters,
}


def run(cfg: Config, cfg_path: Optional[str] = None) -> RunSummary:
    """
    Run the configured mode end to end. Errors from the source or the engines
    (OrderingError, ValueError, OSError) propagate; the output written so far
    is closed but should be treated as incomplete.
    """
    mode = cfg.pipeline.mode
    out_path = Path(cfg.io.output_path)
    summary = RunSummary(mode=mode, output_path=out_path)
    adapter = make_adapter(cfg.io.adapter)

    sink = _make_sink(cfg, cfg_path)
    try:
        _MODES[mode](cfg, adapter, sink, summary)
    finally:
        sink.close()

    # Optional PNG export
    if cfg.vis.export_png_on_write and cfg.io.output_format == "hdf5" and mode != "windows":
        try:
            out_png = save_centroid_png(str(out_path), bins=cfg.vis.bins)
            if cfg.run.diagnostics_level >= 1:
                print(f"[pipeline] Wrote PNG {out_png}")
        except Exception as e:
            if cfg.run.diagnostics_level >= 1:
                print(f"[pipeline] PNG export failed: {e!r}")

    return summary


def run_pipeline(
    cfg_path: str,
    *,
    mode: Optional[str] = None,
    workers: Optional[int] = None,
    relative_toa: Optional[bool] = None,
    output_format: Optional[str] = None,
    progress: Optional[bool] = None,
) -> Path:
    """
    Orchestrate the full pipeline from a TOML config file.

    CLI flags override the corresponding TOML fields when not None.

    Returns
    -------
    Path to the written output (HDF5 file, or the legacy .bin/.csv stem).
    """
    cfg = load_config(cfg_path)

    # ---- apply CLI overrides on top of TOML ----
    cfg = with_overrides(cfg, "pipeline", mode=mode)
    cfg = with_overrides(cfg, "run", workers=workers, relative_toa=relative_toa, progress=progress)
    cfg = with_overrides(cfg, "io", output_format=output_format)

    diag_level = cfg.run.diagnostics_level
    if diag_level >= 1:
        print(f"[run] config = {cfg_path}")
        print(f"[run] mode={cfg.pipeline.mode} input={cfg.io.input_path} -> "
              f"output={cfg.io.output_path} ({cfg.io.output_format})")
    if diag_level >= 2:
        print(f"[run] cluster={cfg.cluster.model_dump()}")
        print(f"[run] windows={cfg.windows.model_dump()}")

    summary = run(cfg, cfg_path=cfg_path)
    if diag_level >= 1:
        print(f"[pipeline] Done: {summary.hits_in} hits, {summary.clusters_written} clusters, "
              f"{summary.windows_written} windows")
    return summary.output_path


# ---------------------------------------------------------------------------
# Unified CLI entry point
# ---------------------------------------------------------------------------

app = typer.Typer(help="Timepix hit clustering and trigger window extraction (tpxclust.pipelines.core)")


@app.command()
def main(
    cfg_path: str = typer.Argument(
        ...,
        help="Path to TOML config file",
    ),
    mode: Optional[str] = typer.Option(
        None,
        "--mode",
        help="Override [pipeline].mode: clusters | windows | trigger_clusters",
    ),
    workers: Optional[int] = typer.Option(
        None,
        "--workers",
        help="Override [run].workers for trigger-scoped clustering (0 = single process)",
    ),
    relative_toa: bool = typer.Option(
        False,
        "--relative-toa",
        help="Override [run].relative_toa = true (legacy output ToA relative to group start)",
    ),
    output_format: Optional[str] = typer.Option(
        None,
        "--format",
        help="Override [io].output_format: hdf5 | legacy",
    ),
    progress: Optional[bool] = typer.Option(
        None,
        "--progress / --no-progress",
        help="Show or hide progress bars; overrides [run].progress when set",
    ),
):
    """
    Run the tpx-clust pipeline for a single config.
    """
    out_path = run_pipeline(
        cfg_path,
        mode=mode,
        workers=workers,
        relative_toa=relative_toa if relative_toa else None,
        output_format=output_format,
        progress=progress,
    )
    typer.echo(str(out_path))


if __name__ == "__main__":
    app()
