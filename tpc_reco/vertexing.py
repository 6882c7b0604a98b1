from __future__ import annotations

import logging
import math
from dataclasses import dataclass, fields
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from tpc_reco.config import VertexFinderConfig
from tpc_reco.geometry import DCA_SENTINEL, circle_circle_intersection, skew_line_closest_approach
from tpc_reco.helix import HelixFit, fit_track, impact_parameters, project_to_radius
from tpc_reco.observers import ReconstructionObserver
from tpc_reco.records import (
    ClusterSource,
    MissingCollaboratorError,
    Track,
    TrackPairCandidate,
    Vertex,
    VertexSource,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class VertexFinderStatistics:
    """How many tracks, pairs and intersections survived each stage."""
    tracks: int = 0
    tracks_passing: int = 0
    pairs_tested: int = 0
    pairs_fitted: int = 0
    intersections: int = 0
    projected: int = 0
    z_matched: int = 0
    dca_matched: int = 0
    candidates: int = 0

    def merge(self, other: "VertexFinderStatistics") -> None:
        for f in fields(self):
            setattr(self, f.name, getattr(self, f.name) + getattr(other, f.name))


def invariant_mass_pt(p1: np.ndarray, p2: np.ndarray, mass: float) -> Tuple[float, float]:
    r"""
    Invariant mass and transverse momentum of two daughters of equal mass.

    .. math::

        E_i = \sqrt{\|\mathbf{p}_i\|^2 + m^2},\qquad
        M = \sqrt{(E_1+E_2)^2 - \|\mathbf{p}_1+\mathbf{p}_2\|^2}.

    A slightly negative :math:`M^2` from rounding returns :math:`-\sqrt{-M^2}`.
    """
    p1 = np.asarray(p1, dtype=np.float64)
    p2 = np.asarray(p2, dtype=np.float64)
    e1 = math.sqrt(float(p1 @ p1) + mass * mass)
    e2 = math.sqrt(float(p2 @ p2) + mass * mass)
    psum = p1 + p2
    m2 = (e1 + e2) ** 2 - float(psum @ psum)
    m = math.sqrt(m2) if m2 >= 0.0 else -math.sqrt(-m2)
    return m, math.hypot(psum[0], psum[1])


class SecondaryVertexFinder:
    r"""
    Pairwise displaced-vertex search over opposite-charge track pairs.

    For each pair passing the single-track cuts, both tracks are fitted with a
    circle and a z-line, the circles are intersected in the transverse plane
    and, at each intersection within ``max_intersection_radius``, the tracks
    are projected to that radius. The projected rays are then brought to
    their 3D closest approach; a pair with small enough DCA and a decay
    length above ``min_path_cut`` becomes a :class:`TrackPairCandidate`.

    Parameters
    ----------
    clusters : ClusterSource
        Calibrated cluster lookup by key.
    vertices : VertexSource
        Primary vertex lookup by id.
    config : VertexFinderConfig, optional
    observer : ReconstructionObserver, optional
        Notified of each accepted candidate.

    Notes
    -----
    Single-track cuts, in order: the track's vertex exists and has tracks,
    silicon seed (if required), quality, TPC cluster count, transverse and
    longitudinal impact parameter. For the inner track the charge is checked
    right after the silicon requirement.
    """

    def __init__(
        self,
        clusters: Optional[ClusterSource],
        vertices: Optional[VertexSource],
        config: Optional[VertexFinderConfig] = None,
        observer: Optional[ReconstructionObserver] = None,
    ) -> None:
        self.clusters = clusters
        self.vertices = vertices
        self.config = config if config is not None else VertexFinderConfig()
        self.observer = observer if observer is not None else ReconstructionObserver()
        self.stats = VertexFinderStatistics()

    # ------------------------------------------------------------------
    # single-track selection
    # ------------------------------------------------------------------
    def _passes_track_cuts(self, track: Track) -> Optional[Tuple[float, float]]:
        cfg = self.config
        if cfg.require_silicon and not track.has_silicon_seed:
            return None
        if track.quality > cfg.quality_cut:
            return None
        if len(track.tpc_cluster_keys) < cfg.min_tpc_clusters:
            return None
        dca_xy, dca_z, _, _ = impact_parameters(track, self.vertices.get(track.vertex_id))
        if math.isnan(dca_xy) or math.isnan(dca_z):
            logger.debug("track %d: impact parameter is nan", track.track_id)
            return None
        if abs(dca_xy) < cfg.track_dcaxy_cut or abs(dca_z) < cfg.track_dcaz_cut:
            return None
        return dca_xy, dca_z

    def _vertex_for(self, track: Track) -> Optional[Vertex]:
        vertex = self.vertices.get(track.vertex_id)
        if vertex is None or len(vertex.track_ids) == 0:
            return None
        return vertex

    # ------------------------------------------------------------------
    # event loop
    # ------------------------------------------------------------------
    def process_event(self, tracks: Optional[Sequence[Track]]) -> List[TrackPairCandidate]:
        """
        Search all track pairs of one event.

        Raises
        ------
        MissingCollaboratorError
            If the cluster source, vertex source or track container is missing.
        """
        if self.clusters is None:
            raise MissingCollaboratorError("cluster source is not available")
        if self.vertices is None:
            raise MissingCollaboratorError("vertex source is not available")
        if tracks is None:
            raise MissingCollaboratorError("track container is not available")

        tracks = list(tracks)
        self.stats.tracks += len(tracks)
        logger.debug("track map size %d", len(tracks))

        # the same track is tested against many partners
        selected: Dict[int, Optional[Tuple[float, float]]] = {}
        fits: Dict[int, Optional[HelixFit]] = {}

        def _selected(tr: Track) -> Optional[Tuple[float, float]]:
            if tr.track_id not in selected:
                selected[tr.track_id] = self._passes_track_cuts(tr)
                if selected[tr.track_id] is not None:
                    self.stats.tracks_passing += 1
            return selected[tr.track_id]

        def _fit(tr: Track) -> Optional[HelixFit]:
            if tr.track_id not in fits:
                fits[tr.track_id] = fit_track(tr, self.clusters)
            return fits[tr.track_id]

        candidates: List[TrackPairCandidate] = []
        for i, tr1 in enumerate(tracks):
            vertex = self._vertex_for(tr1)
            if vertex is None:
                continue
            dca1 = _selected(tr1)
            if dca1 is None:
                continue

            for tr2 in tracks[i + 1:]:
                if self.config.require_silicon and not tr2.has_silicon_seed:
                    continue
                if tr2.charge == tr1.charge:
                    continue
                dca2 = _selected(tr2)
                if dca2 is None:
                    continue

                self.stats.pairs_tested += 1
                fit1 = _fit(tr1)
                if fit1 is None:
                    continue
                fit2 = _fit(tr2)
                if fit2 is None:
                    continue
                self.stats.pairs_fitted += 1

                candidates.extend(self._process_pair(tr1, tr2, fit1, fit2, dca1, dca2, vertex))

        logger.debug("found %d candidates", len(candidates))
        return candidates

    def _process_pair(
        self,
        tr1: Track,
        tr2: Track,
        fit1: HelixFit,
        fit2: HelixFit,
        dca1: Tuple[float, float],
        dca2: Tuple[float, float],
        vertex: Vertex,
    ) -> List[TrackPairCandidate]:
        cfg = self.config
        out: List[TrackPairCandidate] = []
        points = circle_circle_intersection(fit1.radius, fit1.x0, fit1.y0, fit2.radius, fit2.x0, fit2.y0)

        for k, (x, y) in enumerate(points):
            if x == 0.0 and y == 0.0:
                continue
            vradius = math.hypot(x, y)
            logger.debug("track intersection %d at (x,y) %.4f %.4f radius %.4f", k, x, y, vradius)
            if vradius > cfg.max_intersection_radius:
                continue
            self.stats.intersections += 1

            proj1 = project_to_radius(fit1, tr1, vradius)
            if proj1 is None:
                continue
            proj2 = project_to_radius(fit2, tr2, vradius)
            if proj2 is None:
                continue
            self.stats.projected += 1
            vpos1, vmom1 = proj1
            vpos2, vmom2 = proj2

            if abs(vpos1[2] - vpos2[2]) > cfg.projected_track_z_cut:
                continue
            self.stats.z_matched += 1

            pair_dca, pca1, pca2 = skew_line_closest_approach(vpos1, vmom1, vpos2, vmom2)
            logger.debug("pair_dca %.4f two_track_dcacut %.4f", pair_dca, cfg.two_track_dcacut)
            if pair_dca == DCA_SENTINEL or not math.isfinite(pair_dca):
                continue
            if abs(pair_dca) > cfg.two_track_dcacut:
                continue
            self.stats.dca_matched += 1

            mass, pt = invariant_mass_pt(vmom1, vmom2, cfg.daughter_mass)

            vtx = np.asarray(vertex.position, dtype=np.float64)
            path = 0.5 * (pca1 + pca2) - vtx
            decay_length = float(np.linalg.norm(path))
            if not decay_length > cfg.min_path_cut:
                continue

            logger.info(
                "Pair mass %.4f pair pT %.4f decay length %.4f (tracks %d, %d)",
                mass, pt, decay_length, tr1.track_id, tr2.track_id,
            )
            cand = TrackPairCandidate(
                track1_id=tr1.track_id,
                track2_id=tr2.track_id,
                pca1=pca1,
                pca2=pca2,
                momentum1=vmom1,
                momentum2=vmom2,
                pair_dca=pair_dca,
                mass=mass,
                pt=pt,
                decay_length=decay_length,
                track1_silicon=tr1.has_silicon_seed,
                track2_silicon=tr2.has_silicon_seed,
                charge1=tr1.charge,
                charge2=tr2.charge,
                dca_xy1=dca1[0],
                dca_z1=dca1[1],
                dca_xy2=dca2[0],
                dca_z2=dca2[1],
                intersection_index=k,
                intersection_radius=vradius,
                vertex_position=vtx,
                position1=vpos1,
                position2=vpos2,
            )
            self.stats.candidates += 1
            self.observer.on_pair_accepted(cand)
            out.append(cand)
        return out

    def end_run(self) -> VertexFinderStatistics:
        s = self.stats
        logger.info(
            "SecondaryVertexFinder: %d tracks (%d passing), %d pairs tested, %d fitted, "
            "%d intersections, %d z-matched, %d dca-matched, %d candidates",
            s.tracks, s.tracks_passing, s.pairs_tested, s.pairs_fitted,
            s.intersections, s.z_matched, s.dca_matched, s.candidates,
        )
        return s
