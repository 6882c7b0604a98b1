from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

import numpy as np


class TpcRecoError(Exception):
    """Base class for reconstruction errors."""


class MissingCollaboratorError(TpcRecoError):
    """A required input service (geometry, hits, tracks, clusters, vertices) is absent."""


# ---------------------------------------------------------------------------
# Laser path
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class HitRecord:
    r"""
    One digitised TPC hit.

    Attributes
    ----------
    layer : int
        Readout layer id.
    side : int
        Readout side, ``0`` (south, :math:`z<0`) or ``1`` (north).
    phibin : int
        Pad index along :math:`\phi`.
    tbin : int
        Drift-time bin.
    adc : float
        Raw charge, pedestal not subtracted.
    subsystem : str
        Detector id the hit was read from; only ``"tpc"`` hits are used by the
        laser processor.
    """
    layer: int
    side: int
    phibin: int
    tbin: int
    adc: float
    subsystem: str = "tpc"


@dataclass(slots=True)
class TrackState:
    """Projected track position and momentum at a given pathlength."""
    pathlength: float
    position: np.ndarray   # (3,)
    momentum: np.ndarray   # (3,)


@dataclass(slots=True)
class LaserTrack:
    r"""
    Straight laser track :math:`\mathbf{p}(t) = \mathbf{o} + t\,\mathbf{d}`.

    ``direction`` is the un-normalised momentum vector. The laser processor
    appends one :class:`TrackState` per accepted layer to ``states``.
    """
    track_id: int
    origin: np.ndarray     # (3,)
    direction: np.ndarray  # (3,)
    charge: int = 0
    quality: float = 0.0
    states: List[TrackState] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Vertex path
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class Cluster:
    """
    Calibrated cluster in global coordinates.

    ``subsystem`` is one of ``"mvtx"``, ``"intt"``, ``"tpc"``, ``"tpot"``;
    ``"intt"`` clusters are strip measurements with poor z resolution.
    """
    key: int
    position: Tuple[float, float, float]
    errors: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    subsystem: str = "tpc"


@dataclass(slots=True)
class Track:
    r"""
    Fitted track as exported by the track fitter.

    Attributes
    ----------
    track_id : int
    position : ndarray, shape (3,)
        Reference point (point of closest approach to the beam line).
    momentum : ndarray, shape (3,)
        Momentum at ``position`` (GeV).
    charge : int
    quality : float
        :math:`\chi^2/\mathrm{ndf}` of the fit.
    vertex_id : int
        Id of the associated primary vertex.
    tpc_cluster_keys : list of int
        Keys of the clusters of the TPC seed.
    silicon_cluster_keys : list of int, optional
        Keys of the silicon seed clusters; ``None`` when the track has no
        silicon seed.
    covariance : ndarray, shape (6, 6), optional
        Position/momentum covariance; position block is ``[:3, :3]``.
    """
    track_id: int
    position: np.ndarray
    momentum: np.ndarray
    charge: int
    quality: float
    vertex_id: int
    tpc_cluster_keys: List[int] = field(default_factory=list)
    silicon_cluster_keys: Optional[List[int]] = None
    covariance: Optional[np.ndarray] = None

    @property
    def has_silicon_seed(self) -> bool:
        return self.silicon_cluster_keys is not None

    @property
    def pt(self) -> float:
        return float(np.hypot(self.momentum[0], self.momentum[1]))


@dataclass(frozen=True, slots=True)
class Vertex:
    vertex_id: int
    position: Tuple[float, float, float]
    track_ids: Tuple[int, ...] = ()


@dataclass(slots=True)
class TrackPairCandidate:
    r"""
    Accepted two-track decay vertex candidate.

    ``position1``/``position2`` and ``momentum1``/``momentum2`` are the track
    states projected to the intersection radius; ``pca1``/``pca2`` are the
    points of closest approach (PCA) of the straight rays through them.
    The invariant mass uses the configured daughter mass hypothesis for both
    tracks:

    .. math::

        m^2 = (E_1+E_2)^2 - \|\mathbf{p}_1+\mathbf{p}_2\|^2,\qquad
        E_i = \sqrt{\|\mathbf{p}_i\|^2 + m_d^2}.
    """
    track1_id: int
    track2_id: int
    pca1: np.ndarray
    pca2: np.ndarray
    momentum1: np.ndarray
    momentum2: np.ndarray
    pair_dca: float
    mass: float
    pt: float
    decay_length: float
    track1_silicon: bool
    track2_silicon: bool
    charge1: int = 0
    charge2: int = 0
    dca_xy1: float = 0.0
    dca_z1: float = 0.0
    dca_xy2: float = 0.0
    dca_z2: float = 0.0
    intersection_index: int = 0
    intersection_radius: float = 0.0
    vertex_position: np.ndarray = field(default_factory=lambda: np.zeros(3))
    position1: np.ndarray = field(default_factory=lambda: np.full(3, np.nan))
    position2: np.ndarray = field(default_factory=lambda: np.full(3, np.nan))

    @property
    def decay_vertex(self) -> np.ndarray:
        """Midpoint of the two PCAs."""
        return 0.5 * (np.asarray(self.pca1) + np.asarray(self.pca2))

    def as_row(self) -> Dict[str, float]:
        """Flat mapping suitable for a :class:`pandas.DataFrame` row."""
        dv = self.decay_vertex
        row: Dict[str, float] = {
            "track1_id": self.track1_id,
            "track2_id": self.track2_id,
            "charge1": self.charge1,
            "charge2": self.charge2,
            "silicon1": int(self.track1_silicon),
            "silicon2": int(self.track2_silicon),
            "dca_xy1": self.dca_xy1,
            "dca_z1": self.dca_z1,
            "dca_xy2": self.dca_xy2,
            "dca_z2": self.dca_z2,
            "intersection": self.intersection_index,
            "intersection_radius": self.intersection_radius,
            "pair_dca": self.pair_dca,
            "mass": self.mass,
            "pt": self.pt,
            "decay_length": self.decay_length,
        }
        for name, vec in (
            ("pca1", self.pca1), ("pca2", self.pca2),
            ("pos1", self.position1), ("pos2", self.position2),
            ("p1", self.momentum1), ("p2", self.momentum2),
            ("dv", dv), ("vtx", self.vertex_position),
        ):
            for axis, val in zip("xyz", vec):
                row[f"{name}_{axis}"] = float(val)
        return row


# ---------------------------------------------------------------------------
# Collaborator interfaces
# ---------------------------------------------------------------------------
class LayerGeometry(Protocol):
    radius: float
    thickness: float

    def get_phicenter(self, phibin: int) -> float: ...
    def get_zcenter(self, tbin: int) -> float: ...
    def get_max_drift_time(self) -> float: ...


class GeometryService(Protocol):
    drift_velocity: float

    def get_layer(self, layer: int) -> LayerGeometry: ...


class ClusterSource(Protocol):
    def get(self, key: int) -> Optional[Cluster]: ...


class VertexSource(Protocol):
    def get(self, vertex_id: int) -> Optional[Vertex]: ...


class MappingClusterSource:
    """Cluster lookup backed by a dict ``key -> Cluster``."""

    __slots__ = ("_clusters",)

    def __init__(self, clusters: Sequence[Cluster] = ()) -> None:
        self._clusters: Dict[int, Cluster] = {c.key: c for c in clusters}

    def add(self, cluster: Cluster) -> None:
        self._clusters[cluster.key] = cluster

    def get(self, key: int) -> Optional[Cluster]:
        return self._clusters.get(key)

    def __len__(self) -> int:
        return len(self._clusters)


class MappingVertexSource:
    """Vertex lookup backed by a dict ``vertex_id -> Vertex``."""

    __slots__ = ("_vertices",)

    def __init__(self, vertices: Sequence[Vertex] = ()) -> None:
        self._vertices: Dict[int, Vertex] = {v.vertex_id: v for v in vertices}

    def get(self, vertex_id: int) -> Optional[Vertex]:
        return self._vertices.get(vertex_id)

    def __len__(self) -> int:
        return len(self._vertices)
