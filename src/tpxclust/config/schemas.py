from __future__ import annotations
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from typing import Literal, Optional, Dict, Union, Any

from ..clustering.connectivity import Connectivity
from ..errors import ConfigError
from ..windows.policy import OverlapPolicy


class _Cfg(BaseModel):
    """
    Immutable config section. Any validation failure surfaces as ConfigError.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    def __init__(self, **data: Any) -> None:
        try:
            super().__init__(**data)
        except ValidationError as exc:
            raise ConfigError(f"Invalid {type(self).__name__}: {exc}") from exc


class RunCfg(_Cfg):
    """
    Global run controls.
    """

    # Performance / execution
    workers: Union[int, Literal["auto"]] = 0  # trigger-scoped clustering only
    chunk_windows: Union[int, Literal["auto"]] = "auto"
    progress: bool = True

    # Diagnostics
    diagnostics_level: int = 1  # 0=off, 1=minimal, 2=verbose

    # Output
    relative_toa: bool = False  # legacy output: ToA relative to cluster/window start

    # Limits
    max_hits: Optional[int] = None

    @field_validator("diagnostics_level")
    def _diag_range(cls, v: int) -> int:
        if v not in (0, 1, 2):
            raise ValueError("diagnostics_level must be 0, 1, or 2")
        return v

    @field_validator("workers", "chunk_windows")
    def _non_negative(cls, v):
        if isinstance(v, int) and v < 0:
            raise ValueError("must be >= 0 or 'auto'")
        return v

    @field_validator("max_hits")
    def _positive_limit(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v <= 0:
            raise ValueError("max_hits must be > 0 when set")
        return v


class IOCfg(_Cfg):
    """
    I/O paths and source description.

    TOML:

    [io]
    input_path    = "runs/run042"     # run directory or a single hits file
    output_path   = "runs/run042/clusters.h5"
    output_format = "hdf5"            # "hdf5" | "legacy"

    [io.adapter]
    type = "tpx_bin"                  # "tpx_bin" | "table"
    """

    input_path: str
    output_path: str
    output_format: Literal["hdf5", "legacy"] = "hdf5"

    # Adapter-specific sub-config, e.g. [io.adapter]
    adapter: Dict[str, Any] = Field(default_factory=dict)


class ClusterCfg(_Cfg):
    """
    Spatio-temporal clustering.

    spatial_radius : pixel distance threshold (Chebyshev for 8-, Manhattan for 4-connectivity)
    time_window    : max ToA gap [ticks] between a hit and any hit it connects to
    connectivity   : 4 | 8

    Selection cuts (applied around the engine, never inside it):
    min_hit_tot     : hits with tot <= min_hit_tot are not clustered (None = keep all)
    min_cluster_hits, min_cluster_tot : clusters below either are not written
    max_clusters    : stop after this many clusters were written

    Per-window cut (trigger-scoped clustering only):
    min_window_clusters, max_window_clusters : windows whose cluster count (after the
        cluster cuts) falls outside this range are not written, nor are their
        clusters. 1 and 1 keep single-cluster trigger events only.
    """

    spatial_radius: int = 1
    time_window: int = 3200  # 5 us at 1.5625 ns/tick
    connectivity: Connectivity = Connectivity.EIGHT

    min_hit_tot: Optional[int] = None
    min_cluster_hits: int = 1
    min_cluster_tot: int = 0
    max_clusters: Optional[int] = None

    min_window_clusters: int = 0
    max_window_clusters: Optional[int] = None

    @field_validator("spatial_radius")
    def _radius(cls, v: int) -> int:
        if v < 0:
            raise ValueError("spatial_radius must be >= 0")
        return v

    @field_validator("time_window")
    def _time_window(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("time_window must be > 0")
        return v

    @field_validator("min_cluster_hits")
    def _min_hits(cls, v: int) -> int:
        if v < 1:
            raise ValueError("min_cluster_hits must be >= 1")
        return v

    @field_validator("min_cluster_tot")
    def _min_tot(cls, v: int) -> int:
        if v < 0:
            raise ValueError("min_cluster_tot must be >= 0")
        return v

    @field_validator("min_window_clusters")
    def _min_window_clusters(cls, v: int) -> int:
        if v < 0:
            raise ValueError("min_window_clusters must be >= 0")
        return v

    @model_validator(mode="after")
    def _window_cluster_range(self) -> "ClusterCfg":
        if self.max_window_clusters is not None and self.max_window_clusters < self.min_window_clusters:
            raise ValueError("max_window_clusters must be >= min_window_clusters")
        return self

    @field_validator("max_clusters")
    def _max_clusters(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v <= 0:
            raise ValueError("max_clusters must be > 0 when set")
        return v


class WindowCfg(_Cfg):
    """
    Trigger window extraction.

    Window for a trigger at T is [T - pre_window, T + post_window] (ticks, inclusive).

    min_window_hits : windows with fewer hits are not written
    max_triggers    : stop after this many triggers
    """

    pre_window: int = 0
    post_window: int = 0
    overlap_policy: OverlapPolicy = OverlapPolicy.INDEPENDENT

    min_window_hits: int = 0
    max_triggers: Optional[int] = None

    @field_validator("pre_window", "post_window", "min_window_hits")
    def _non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must be >= 0")
        return v

    @field_validator("max_triggers")
    def _max_triggers(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v <= 0:
            raise ValueError("max_triggers must be > 0 when set")
        return v


class PipelineCfg(_Cfg):
    """
    Which product to build.

    mode = "clusters" | "windows" | "trigger_clusters"
    """

    mode: Literal["clusters", "windows", "trigger_clusters"] = "clusters"


class VisCfg(_Cfg):
    export_png_on_write: bool = False
    bins: int = 256  # centroid map resolution (Timepix: 256 x 256 pixels)

    @field_validator("bins")
    def _bins(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("bins must be > 0")
        return v


class Config(_Cfg):
    """
    Top-level TOML configuration.
    """

    run: RunCfg = Field(default_factory=RunCfg)
    io: IOCfg
    cluster: ClusterCfg = Field(default_factory=ClusterCfg)
    windows: WindowCfg = Field(default_factory=WindowCfg)
    pipeline: PipelineCfg = Field(default_factory=PipelineCfg)
    vis: VisCfg = Field(default_factory=VisCfg)
