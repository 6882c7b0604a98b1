r"""
Direct-laser residual reconstruction.

Straight laser tracks :math:`\mathbf{p}(t)=\mathbf{o}+t\,\mathbf{d}` cross the
TPC from known heads. For every track the processor

1. associates hits within ``max_dca`` of the line and bins them by layer,
2. forms a charge-weighted centroid per layer (rejecting hits from a second
   traverse of the same layer),
3. checks that the line crosses the layer and projects it to the layer centre,
4. corrects the centroid z for the laser transit time,
5. forms residuals :math:`\Delta(r\phi)` and :math:`\Delta z` and
6. adds their normal equations to the space-charge grid cell of the centroid.

With residual errors :math:`\sigma_{r\phi}, \sigma_z` and track angles
:math:`\alpha = -p_\phi/p_r`, :math:`\beta = -p_z/p_r`, each accepted layer
contributes

.. math::

    M = \begin{pmatrix}
        1/\sigma_{r\phi}^2 & 0 & \alpha/\sigma_{r\phi}^2 \\
        0 & 1/\sigma_z^2 & \beta/\sigma_z^2 \\
        \alpha/\sigma_{r\phi}^2 & \beta/\sigma_z^2 &
        \alpha^2/\sigma_{r\phi}^2 + \beta^2/\sigma_z^2
    \end{pmatrix},\qquad
    b = \begin{pmatrix}
        \Delta(r\phi)/\sigma_{r\phi}^2 \\
        \Delta z/\sigma_z^2 \\
        \alpha\,\Delta(r\phi)/\sigma_{r\phi}^2 + \beta\,\Delta z/\sigma_z^2
    \end{pmatrix}.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Dict, Iterable, List, NamedTuple, Optional, Set, Tuple

import numpy as np

from tpc_reco.config import LaserConfig
from tpc_reco.detector import locate_gem_module
from tpc_reco.geometry import delta_phi, line_circle_intersection, point_line_dca, wrap_phi
from tpc_reco.grid import SpaceChargeMatrixContainer
from tpc_reco.observers import ReconstructionObserver
from tpc_reco.records import (
    GeometryService,
    HitRecord,
    LaserTrack,
    MissingCollaboratorError,
    TrackState,
)

logger = logging.getLogger(__name__)

# light travel time (ns/cm)
NS_PER_CM = 1e9 / 3e10

# residual errors (cm)
CLUSTER_RPHI_ERROR = 0.015
CLUSTER_Z_ERROR = 0.075


class HitArrays(NamedTuple):
    """Global positions, pedestal-subtracted weights and layer ids of one event's hits."""
    positions: np.ndarray  # (N, 3)
    weights: np.ndarray    # (N,)
    layers: np.ndarray     # (N,)


@dataclass(slots=True)
class LaserRunStatistics:
    """Running hit/cluster counters; ``accepted <= matched <= total`` always holds."""
    total_hits: int = 0
    matched_hits: int = 0
    accepted_clusters: int = 0

    @property
    def accepted_fraction(self) -> float:
        return self.accepted_clusters / self.total_hits if self.total_hits else 0.0

    def merge(self, other: "LaserRunStatistics") -> None:
        self.total_hits += other.total_hits
        self.matched_hits += other.matched_hits
        self.accepted_clusters += other.accepted_clusters

    def is_consistent(self) -> bool:
        return 0 <= self.accepted_clusters <= self.matched_hits <= self.total_hits


@dataclass(slots=True)
class LayerResidual:
    """Residual of one accepted layer centroid with respect to the laser line."""
    track_id: int
    layer: int
    cell: int
    cluster: np.ndarray      # transit-corrected centroid (3,)
    projection: np.ndarray   # track at layer centre radius (3,)
    pathlength: float
    dca: float
    drp: float
    dz: float
    talpha: float
    tbeta: float
    weight: float
    in_window: bool

    @property
    def radius(self) -> float:
        return float(math.hypot(self.projection[0], self.projection[1]))

    @property
    def cluster_r(self) -> float:
        return float(math.hypot(self.cluster[0], self.cluster[1]))

    @property
    def cluster_phi(self) -> float:
        return float(math.atan2(self.cluster[1], self.cluster[0]))

    @property
    def dr(self) -> float:
        return self.cluster_r - self.radius


def hit_position(hit: HitRecord, geometry: GeometryService) -> np.ndarray:
    r"""
    Global position of a TPC hit.

    .. math::

        x = R\cos\phi_c,\quad y = R\sin\phi_c,\quad
        z = \pm v_d\,(T_{\max} - t_c),

    with the sign negative on side 0 (south).
    """
    layergeom = geometry.get_layer(hit.layer)
    radius = layergeom.radius
    phi = layergeom.get_phicenter(hit.phibin)
    v = geometry.drift_velocity
    z = layergeom.get_max_drift_time() * v - layergeom.get_zcenter(hit.tbin) * v
    if hit.side == 0:
        z = -z
    return np.array([radius * math.cos(phi), radius * math.sin(phi), z])


def hit_arrays(hits: Iterable[HitRecord], geometry: GeometryService, pedestal: float) -> HitArrays:
    """
    Convert an event's TPC hits once into flat arrays.

    Hits from other subsystems are ignored; hits on layers unknown to the
    geometry service are dropped with a warning.
    """
    pos: List[np.ndarray] = []
    wts: List[float] = []
    lay: List[int] = []
    unknown: Set[int] = set()
    for hit in hits:
        if hit.subsystem != "tpc":
            continue
        try:
            p = hit_position(hit, geometry)
        except KeyError:
            unknown.add(hit.layer)
            continue
        pos.append(p)
        wts.append(float(hit.adc) - pedestal)
        lay.append(int(hit.layer))
    if unknown:
        logger.warning("dropped hits on layers without geometry: %s", sorted(unknown))
    if not pos:
        return HitArrays(np.empty((0, 3)), np.empty(0), np.empty(0, dtype=np.int64))
    return HitArrays(np.vstack(pos), np.asarray(wts, dtype=np.float64), np.asarray(lay, dtype=np.int64))


def normal_equations(
    talpha: float, tbeta: float, drp: float, dz: float, erp: float, ez: float,
) -> Tuple[np.ndarray, np.ndarray]:
    """Normal-equation block and right-hand side of one residual (see module docstring)."""
    lhs = np.array([
        [1.0 / erp, 0.0, talpha / erp],
        [0.0, 1.0 / ez, tbeta / ez],
        [talpha / erp, tbeta / ez, talpha * talpha / erp + tbeta * tbeta / ez],
    ])
    rhs = np.array([drp / erp, dz / ez, talpha * drp / erp + tbeta * dz / ez])
    return lhs, rhs


def _first_crossing(t_up: float, t_dn: float) -> float:
    t = t_up
    if 0.0 < t_dn < t_up:
        t = t_dn
    return t


class DirectLaserReconstruction:
    r"""
    Accumulate laser residuals into a :class:`SpaceChargeMatrixContainer`.

    Parameters
    ----------
    geometry : GeometryService
        Layer lookup and drift velocity.
    config : LaserConfig, optional
        Cuts and grid dimensions.
    grid : SpaceChargeMatrixContainer, optional
        Target grid. A new one with the configured dimensions is created when
        omitted; pass one per worker when running in parallel and combine
        with :meth:`SpaceChargeMatrixContainer.merge`.
    observer : ReconstructionObserver, optional
        Diagnostics callbacks.

    Attributes
    ----------
    stats : LaserRunStatistics
        Counters over all events processed by this instance.
    """

    def __init__(
        self,
        geometry: Optional[GeometryService],
        config: Optional[LaserConfig] = None,
        grid: Optional[SpaceChargeMatrixContainer] = None,
        observer: Optional[ReconstructionObserver] = None,
    ) -> None:
        self.geometry = geometry
        self.config = config if config is not None else LaserConfig()
        if grid is None:
            grid = SpaceChargeMatrixContainer(self.config.phibins, self.config.rbins, self.config.zbins)
        self.grid = grid
        self.observer = observer if observer is not None else ReconstructionObserver()
        self.stats = LaserRunStatistics()

    def process_event(
        self,
        tracks: Optional[Iterable[LaserTrack]],
        hits: Optional[Iterable[HitRecord]],
    ) -> int:
        """
        Process all laser tracks of one event.

        Returns
        -------
        int
            Number of clusters accepted into the grid for this event.

        Raises
        ------
        MissingCollaboratorError
            If the geometry service, the track container or the hit container
            is missing.
        """
        if self.geometry is None:
            raise MissingCollaboratorError("TPC geometry service is not available")
        if tracks is None:
            raise MissingCollaboratorError("laser track container is not available")
        if hits is None:
            raise MissingCollaboratorError("TPC hit container is not available")

        arrays = hit_arrays(hits, self.geometry, self.config.pedestal)
        before = self.stats.accepted_clusters
        for track in tracks:
            self.process_track(track, arrays)
        accepted = self.stats.accepted_clusters - before
        logger.debug("event done: %d hits, %d clusters accepted", len(arrays.weights), accepted)
        return accepted

    def process_track(self, track: LaserTrack, hits: HitArrays) -> List[LayerResidual]:
        """
        Associate hits to one track and accumulate its layer residuals.

        Appends one :class:`TrackState` to ``track.states`` for every layer
        that passes the geometric checks. Returns the residuals that were
        accumulated into the grid.
        """
        cfg = self.config
        origin = np.asarray(track.origin, dtype=np.float64)
        direction = np.asarray(track.direction, dtype=np.float64)
        if not np.all(np.isfinite(origin)) or not np.all(np.isfinite(direction)) or not direction.any():
            logger.warning("track %d: invalid origin/direction, skipped", track.track_id)
            return []
        self.observer.on_track_started(track.track_id, origin, direction)

        n_hits = len(hits.weights)
        self.stats.total_hits += n_hits
        if n_hits == 0:
            self.observer.on_track_processed(track.track_id, 0, 0)
            return []

        dca, _ = point_line_dca(hits.positions, origin, direction)
        for i in range(n_hits):
            self.observer.on_hit(track.track_id, hits.positions[i], hits.positions[i] - origin, float(dca[i]))

        matched = np.flatnonzero(dca <= cfg.max_dca)
        self.stats.matched_hits += len(matched)

        by_layer: Dict[int, List[int]] = {}
        gem_modules: Set[int] = set()
        for i in matched:
            x, y, z = hits.positions[i]
            module = locate_gem_module(math.hypot(x, y), wrap_phi(math.atan2(y, x)), z)
            if module > 0:
                gem_modules.add(module)
            self.observer.on_hit_associated(track.track_id, hits.positions[i], module)
            by_layer.setdefault(int(hits.layers[i]), []).append(int(i))

        residuals: List[LayerResidual] = []
        for layer in sorted(by_layer):
            res = self._process_layer(track, origin, direction, layer, by_layer[layer], hits)
            if res is not None:
                residuals.append(res)

        self.observer.on_track_processed(track.track_id, len(gem_modules), len(by_layer))
        return residuals

    def _process_layer(
        self,
        track: LaserTrack,
        origin: np.ndarray,
        direction: np.ndarray,
        layer: int,
        indices: List[int],
        hits: HitArrays,
    ) -> Optional[LayerResidual]:
        cfg = self.config
        layergeom = self.geometry.get_layer(layer)
        radius = layergeom.radius
        inner = radius - layergeom.thickness / 2.0
        outer = radius + layergeom.thickness / 2.0

        # the track must cross the layer completely
        t_up, t_dn = line_circle_intersection(origin, direction, outer)
        if t_up <= 0 and t_dn <= 0:
            logger.debug("punt: layer %d outer radius %.3f tup %.3f tdn %.3f", layer, outer, t_up, t_dn)
            return None
        t_up, t_dn = line_circle_intersection(origin, direction, inner)
        if t_up <= 0 and t_dn <= 0:
            logger.debug("punt: layer %d inner radius %.3f tup %.3f tdn %.3f", layer, inner, t_up, t_dn)
            return None

        t = _first_crossing(*line_circle_intersection(origin, direction, radius))
        if t < 0:
            logger.debug("punt: layer %d center radius %.3f t %.3f", layer, radius, t)
            return None

        om = direction * t
        projection = origin + om

        idx = np.asarray(indices, dtype=np.int64)
        pos = hits.positions[idx]
        wts = hits.weights[idx]

        # drop hits from a second traverse of the layer
        keep = np.abs(pos[:, 2] - projection[2]) <= cfg.max_zrange
        if not keep.any():
            logger.debug("layer %d: no hit within %.2f cm of the projection", layer, cfg.max_zrange)
            return None
        pos = pos[keep]
        wts = wts[keep]

        zrange = float(pos[:, 2].max() - pos[:, 2].min())
        if zrange > cfg.max_zrange:
            logger.debug("layer %d: exceeded max zrange %.3f > %.3f", layer, zrange, cfg.max_zrange)
            return None

        wt = float(wts.sum())
        if not wt > 0.0:
            logger.debug("layer %d: non-positive total weight %.3f", layer, wt)
            return None
        centroid = (pos * wts[:, None]).sum(axis=0) / wt

        dca = float(np.linalg.norm(centroid - origin - om))
        pathlength = float(np.linalg.norm(om))

        # laser transit time, counted from the head
        transit_dz = pathlength * NS_PER_CM * self.geometry.drift_velocity
        if origin[2] > 0:
            centroid[2] += transit_dz
        else:
            centroid[2] -= transit_dz

        state = TrackState(pathlength, projection.copy(), direction.copy())
        track.states.append(state)

        cluster_r = math.hypot(centroid[0], centroid[1])
        cluster_phi = math.atan2(centroid[1], centroid[0])
        cluster_z = float(centroid[2])

        track_phi = math.atan2(projection[1], projection[0])
        track_z = float(projection[2])

        cosphi = math.cos(track_phi)
        sinphi = math.sin(track_phi)
        px, py, pz = (float(v) for v in state.momentum)
        track_pphi = -px * sinphi + py * cosphi
        track_pr = px * cosphi + py * sinphi
        if track_pr == 0.0:
            logger.warning("track %d layer %d: no radial momentum", track.track_id, layer)
            return None
        talpha = -track_pphi / track_pr
        tbeta = -pz / track_pr
        if not (math.isfinite(talpha) and math.isfinite(tbeta)):
            logger.warning("track %d layer %d: talpha/tbeta is nan", track.track_id, layer)
            return None

        drp = cluster_r * delta_phi(cluster_phi - track_phi)
        dz = cluster_z - track_z
        if not (math.isfinite(drp) and math.isfinite(dz)):
            logger.warning("track %d layer %d: residual is nan", track.track_id, layer)
            return None

        erp = CLUSTER_RPHI_ERROR ** 2
        ez = CLUSTER_Z_ERROR ** 2
        if not (math.isfinite(erp) and math.isfinite(ez)):
            logger.warning("track %d layer %d: residual error is nan", track.track_id, layer)
            return None

        cell = self.grid.cell_index(cluster_phi, cluster_r, cluster_z)
        if cell < 0:
            logger.debug(
                "invalid cell index r: %.3f phi: %.4f z: %.3f", cluster_r, cluster_phi, cluster_z
            )
            return None

        lhs, rhs = normal_equations(talpha, tbeta, drp, dz, erp, ez)
        self.grid.add_normal_equations(cell, lhs, rhs)
        self.stats.accepted_clusters += 1

        residual = LayerResidual(
            track_id=track.track_id,
            layer=layer,
            cell=cell,
            cluster=centroid,
            projection=projection,
            pathlength=pathlength,
            dca=dca,
            drp=drp,
            dz=dz,
            talpha=talpha,
            tbeta=tbeta,
            weight=wt,
            in_window=abs(drp) <= cfg.max_drphi and abs(dz) <= cfg.max_dz,
        )
        self.observer.on_layer_accumulated(track.track_id, residual)
        return residual

    def end_run(self) -> LaserRunStatistics:
        """Log run counters and grid occupancy; return the counters."""
        s = self.stats
        logger.info(
            "DirectLaserReconstruction: total hits %d, matched hits %d, accepted clusters %d, fraction %.4f",
            s.total_hits, s.matched_hits, s.accepted_clusters, s.accepted_fraction,
        )
        self.grid.identify()
        return s
