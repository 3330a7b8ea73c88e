from __future__ import annotations

import typer
from typing import Optional

from tpxclust.vis.hdf import save_centroid_png

app = typer.Typer(help="tpx-clust visualization tools")

@app.command("h5-to-png")
def h5_to_png(
    h5_path: str = typer.Argument(..., help="Path to HDF5 file written with mode clusters or trigger_clusters"),
    group: str = typer.Option("/clusters", "--group", "-g", help="Cluster group path"),
    bins: int = typer.Option(256, "--bins", "-b", help="Histogram bins per axis"),
    out: Optional[str] = typer.Option(None, "--out", "-o", help="Output PNG path (defaults to file.png)"),
):
    """Render the cluster centroid map of an HDF5 output to a PNG."""
    out_png = save_centroid_png(h5_path, out_png=out, group=group, bins=bins)
    typer.echo(f"Wrote {out_png}")

if __name__ == "__main__":
    app()
