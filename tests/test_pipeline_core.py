from pathlib import Path

import h5py
import numpy as np
import pandas as pd
import pytest
from typer.testing import CliRunner

from tpxclust.errors import OrderingError
from tpxclust.io.adapters import iter_legacy_clusters, write_hits_bin, write_triggers_csv
from tpxclust.io.cluster_store import iter_ragged_hit_ids, read_ragged
from tpxclust.physics.hits import Hit
from tpxclust.pipelines import core
from tpxclust.pipelines.core import app, run_pipeline
from tpxclust.sim.synth import synth_track_hits, synth_triggers

N_TRACKS = 12


def _make_run(tmp_path: Path, hits=None) -> Path:
    run_dir = tmp_path / "run"
    run_dir.mkdir()
    if hits is None:
        hits = synth_track_hits(N_TRACKS, hits_per_track=6, rng=np.random.default_rng(5))
    write_hits_bin(run_dir / "hits.bin", hits)
    write_triggers_csv(run_dir / "triggers.csv", synth_triggers(N_TRACKS))
    return run_dir


def _write_cfg(tmp_path: Path, run_dir: Path, output: str, mode: str, extra: str = "") -> Path:
    cfg = tmp_path / "cfg.toml"
    cfg.write_text(f"""
[run]
progress = false
diagnostics_level = 0

[io]
input_path = "{run_dir.as_posix()}"
output_path = "{(tmp_path / output).as_posix()}"

[windows]
pre_window = 0
post_window = 20

[pipeline]
mode = "{mode}"
{extra}
""")
    return cfg


def test_clusters_mode_hdf5(tmp_path):
    run_dir = _make_run(tmp_path)
    cfg = _write_cfg(tmp_path, run_dir, "out/clusters.h5", "clusters")
    out = run_pipeline(str(cfg))
    assert out == tmp_path / "out" / "clusters.h5"

    data = read_ragged(out, "clusters")
    assert len(data["size"]) == N_TRACKS
    assert (data["size"] == 6).all()
    assert (data["window_index"] == -1).all()
    ids = np.concatenate(list(iter_ragged_hit_ids(data)))
    np.testing.assert_array_equal(np.sort(ids), np.arange(N_TRACKS * 6))

    with h5py.File(out, "r") as f:
        assert "windows" not in f
        assert "mode = \"clusters\"" in f.attrs["config_text"]


def test_trigger_clusters_mode(tmp_path):
    run_dir = _make_run(tmp_path)
    cfg = _write_cfg(tmp_path, run_dir, "tc.h5", "trigger_clusters")
    out = run_pipeline(str(cfg), workers=0)

    windows = read_ragged(out, "windows")
    clusters = read_ragged(out, "clusters")
    np.testing.assert_array_equal(windows["trigger_id"], np.arange(1, N_TRACKS + 1))
    np.testing.assert_array_equal(clusters["window_index"], np.arange(N_TRACKS))
    for w_ids, c_ids in zip(iter_ragged_hit_ids(windows), iter_ragged_hit_ids(clusters)):
        np.testing.assert_array_equal(w_ids, c_ids)


def test_trigger_clusters_max_clusters(tmp_path):
    run_dir = _make_run(tmp_path)
    cfg = _write_cfg(tmp_path, run_dir, "tc.h5", "trigger_clusters", extra="\n[cluster]\nmax_clusters = 5\n")
    out = run_pipeline(str(cfg))
    assert len(read_ragged(out, "clusters")["size"]) == 5


def test_windows_mode_legacy(tmp_path):
    run_dir = _make_run(tmp_path)
    cfg = _write_cfg(tmp_path, run_dir, "legacy/windows.bin", "windows")
    run_pipeline(str(cfg), output_format="legacy", relative_toa=True)

    meta = pd.read_csv(tmp_path / "legacy" / "windows.csv")
    assert meta["event"].tolist() == list(range(1, N_TRACKS + 1))
    assert (meta["hits"] == 6).all()
    groups = list(iter_legacy_clusters(tmp_path / "legacy" / "windows.bin"))
    assert len(groups) == N_TRACKS
    # relative to window start; tracks start on their trigger
    assert all(g[0].toa == 0 for g in groups)
    assert (tmp_path / "legacy" / "windows.toml").exists()


def test_windows_mode_min_window_hits_and_max_triggers(tmp_path):
    run_dir = _make_run(tmp_path)
    extra = "\n[windows]\npre_window = 0\npost_window = 20\nmax_triggers = 4\nmin_window_hits = 1\n"
    cfg = tmp_path / "cfg.toml"
    cfg.write_text(f"""
[run]
progress = false
diagnostics_level = 0

[io]
input_path = "{run_dir.as_posix()}"
output_path = "{(tmp_path / 'w.h5').as_posix()}"
{extra}
[pipeline]
mode = "windows"
""")
    out = run_pipeline(str(cfg))
    windows = read_ragged(out, "windows")
    np.testing.assert_array_equal(windows["trigger_id"], [1, 2, 3, 4])


def test_unsorted_input_raises(tmp_path):
    hits = [Hit(1, 1, 100, 1), Hit(1, 1, 50, 1)]
    run_dir = _make_run(tmp_path, hits=hits)
    cfg = _write_cfg(tmp_path, run_dir, "bad.h5", "clusters")
    with pytest.raises(OrderingError):
        run_pipeline(str(cfg))


def test_cli_entry_point(tmp_path):
    run_dir = _make_run(tmp_path)
    cfg = _write_cfg(tmp_path, run_dir, "cli.h5", "windows")
    result = CliRunner().invoke(app, [str(cfg), "--mode", "clusters", "--no-progress"])
    assert result.exit_code == 0, result.output
    assert "cli.h5" in result.output
    assert len(read_ragged(tmp_path / "cli.h5", "clusters")["size"]) == N_TRACKS


def _hits_with_strays(stray_windows):
    """Synthetic tracks plus one isolated hit late in each listed window (1-based trigger ids)."""
    hits = synth_track_hits(N_TRACKS, hits_per_track=6, rng=np.random.default_rng(5))
    for trig in stray_windows:
        hits.append(Hit(255, 0, 1_000 + (trig - 1) * 10_000 + 15, 50))
    return sorted(hits, key=lambda h: h.toa)


@pytest.mark.parametrize(
    "bounds, expected",
    [
        ("min_window_clusters = 1\nmax_window_clusters = 1", [t for t in range(1, N_TRACKS + 1) if t not in (3, 7)]),
        ("min_window_clusters = 2", [3, 7]),
    ],
)
def test_trigger_clusters_window_cluster_count_cut(tmp_path, bounds, expected):
    run_dir = _make_run(tmp_path, hits=_hits_with_strays([3, 7]))
    cfg = _write_cfg(tmp_path, run_dir, "tc.h5", "trigger_clusters", extra=f"\n[cluster]\n{bounds}\n")
    out = run_pipeline(str(cfg), workers=0)

    windows = read_ragged(out, "windows")
    clusters = read_ragged(out, "clusters")
    np.testing.assert_array_equal(windows["trigger_id"], expected)
    # clusters of a rejected window are not written either
    assert len(clusters["size"]) == sum(2 if t in (3, 7) else 1 for t in expected)
    assert set(clusters["window_index"].tolist()) == set(range(len(expected)))


def test_trigger_clusters_from_legacy_event_files(tmp_path):
    run_dir = _make_run(tmp_path)
    cfg = _write_cfg(tmp_path, run_dir, "legacy/trigger_events.bin", "windows")
    run_pipeline(str(cfg), output_format="legacy", relative_toa=True)

    extra = '\n[io.adapter]\ntype = "legacy_events"\nevents_file = "trigger_events"\nrelative_toa = true\n'
    cfg = _write_cfg(tmp_path, tmp_path / "legacy", "from_legacy.h5", "trigger_clusters", extra=extra)
    out = run_pipeline(str(cfg), workers=0)

    windows = read_ragged(out, "windows")
    clusters = read_ragged(out, "clusters")
    np.testing.assert_array_equal(windows["trigger_id"], np.arange(1, N_TRACKS + 1))
    assert (clusters["size"] == 6).all()
    np.testing.assert_array_equal(clusters["window_index"], np.arange(N_TRACKS))
    # every hit of the run landed in a window, so file positions match stream positions
    ids = np.concatenate(list(iter_ragged_hit_ids(clusters)))
    np.testing.assert_array_equal(ids, np.arange(N_TRACKS * 6))
    with h5py.File(out, "r") as f:
        t_min = f["clusters/t_min"][:]
    np.testing.assert_array_equal(t_min, 1_000 + np.arange(N_TRACKS) * 10_000)


def test_legacy_events_adapter_rejects_clusters_mode(tmp_path):
    run_dir = _make_run(tmp_path)
    extra = '\n[io.adapter]\ntype = "legacy_events"\n'
    cfg = _write_cfg(tmp_path, run_dir, "bad.h5", "clusters", extra=extra)
    with pytest.raises(ValueError, match="trigger windows"):
        run_pipeline(str(cfg))


def test_hdf5_output_closed_when_writer_setup_fails(tmp_path, monkeypatch):
    opened = []
    real_write_init = core.write_init

    def capture(*args, **kw):
        f = real_write_init(*args, **kw)
        opened.append(f)
        return f

    def broken(*args, **kw):
        raise RuntimeError("writer setup failed")

    monkeypatch.setattr(core, "write_init", capture)
    monkeypatch.setattr(core, "ClusterWriter", broken)

    run_dir = _make_run(tmp_path)
    cfg = _write_cfg(tmp_path, run_dir, "broken.h5", "clusters")
    with pytest.raises(RuntimeError, match="writer setup failed"):
        run_pipeline(str(cfg))
    assert len(opened) == 1
    assert not opened[0]  # h5py objects are falsy once closed
    # file handle released: the output can be reopened for writing
    with h5py.File(tmp_path / "broken.h5", "w"):
        pass
