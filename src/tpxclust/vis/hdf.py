import h5py
import numpy as np
import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
from pathlib import Path

def centroid_map(h5_path: str, group: str = "/clusters", bins: int = 256) -> np.ndarray:
    """2D histogram (bins x bins, [y, x]) of cluster centroids over a 256 x 256 pixel matrix."""
    with h5py.File(str(h5_path), "r") as f:
        if group not in f:
            raise KeyError(f"{group} not found in {h5_path}")
        cx = np.array(f[group]["centroid_x"], dtype=np.float64)
        cy = np.array(f[group]["centroid_y"], dtype=np.float64)
    img, _, _ = np.histogram2d(cy, cx, bins=bins, range=[[0, 256], [0, 256]])
    return img

def save_centroid_png(h5_path: str, out_png: str | None = None, group: str = "/clusters", bins: int = 256):
    h5_path = str(h5_path)
    img = centroid_map(h5_path, group=group, bins=bins)

    if out_png is None:
        out_png = str(Path(h5_path).with_suffix(".png"))

    plt.figure()
    plt.imshow(img, origin="lower", extent=(0, 256, 0, 256))
    plt.colorbar(label="clusters")
    plt.xlabel("x [pixel]")
    plt.ylabel("y [pixel]")
    plt.title(Path(h5_path).name + " : " + group + " centroids")
    plt.tight_layout()
    plt.savefig(out_png, dpi=150)
    plt.close()
    return out_png
