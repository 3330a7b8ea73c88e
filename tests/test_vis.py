from pathlib import Path

import pytest
from typer.testing import CliRunner

from tpxclust.cli.viz import app
from tpxclust.config.schemas import Config
from tpxclust.io.cluster_store import ClusterWriter, write_init
from tpxclust.physics.clusters import Cluster
from tpxclust.physics.hits import Hit
from tpxclust.vis.hdf import centroid_map, save_centroid_png


def _write_clusters(tmp_path: Path) -> Path:
    out = tmp_path / "c.h5"
    cfg = Config(io={"input_path": str(tmp_path), "output_path": str(out)})
    f = write_init(str(out), None, cfg)
    cw = ClusterWriter(f)
    cw.write(Cluster.from_members([0, 1], [Hit(10, 20, 0, 1), Hit(11, 20, 1, 1)]))
    cw.write(Cluster.from_members([2], [Hit(200, 5, 9, 4)]))
    cw.close()
    f.close()
    return out


def test_centroid_map(tmp_path):
    out = _write_clusters(tmp_path)
    img = centroid_map(str(out))
    assert img.shape == (256, 256)
    assert img.sum() == 2
    assert img[20, 10] == 1  # centroid (10.5, 20)
    assert img[5, 200] == 1


def test_centroid_map_missing_group(tmp_path):
    out = _write_clusters(tmp_path)
    with pytest.raises(KeyError):
        centroid_map(str(out), group="/windows")


def test_save_centroid_png(tmp_path):
    out = _write_clusters(tmp_path)
    png = save_centroid_png(str(out), bins=64)
    assert Path(png) == out.with_suffix(".png")
    assert Path(png).stat().st_size > 0


def test_h5_to_png_cli(tmp_path):
    out = _write_clusters(tmp_path)
    target = tmp_path / "map.png"
    result = CliRunner().invoke(app, [str(out), "-o", str(target)])
    assert result.exit_code == 0, result.output
    assert target.exists()
