from __future__ import annotations

import math
from typing import TYPE_CHECKING, Dict, Sequence, Tuple

import numpy as np

from tpc_reco.grid import PHI_MAX, PHI_MIN, R_MAX, R_MIN, Z_MAX, Z_MIN

if TYPE_CHECKING:  # pragma: no cover
    from tpc_reco.laser import LayerResidual
    from tpc_reco.records import TrackPairCandidate


class ReconstructionObserver:
    """
    Callback interface for diagnostics.

    Every hook is a no-op; subclasses override the ones they need. The
    reconstruction code never depends on what an observer does.
    """

    # laser path
    def on_track_started(self, track_id: int, origin: np.ndarray, direction: np.ndarray) -> None:
        pass

    def on_hit(self, track_id: int, position: np.ndarray, offset: np.ndarray, dca: float) -> None:
        pass

    def on_hit_associated(self, track_id: int, position: np.ndarray, gem_module: int) -> None:
        pass

    def on_layer_accumulated(self, track_id: int, residual: "LayerResidual") -> None:
        pass

    def on_track_processed(self, track_id: int, n_gem_modules: int, n_layers: int) -> None:
        pass

    # vertex path
    def on_pair_accepted(self, candidate: "TrackPairCandidate") -> None:
        pass


class Histogram:
    r"""
    Fixed-binning N-dimensional histogram.

    Parameters
    ----------
    name : str
    title : str
        Axis description, ``';x label;y label'`` style.
    axes : sequence of (nbins, low, high)
    """

    __slots__ = ("name", "title", "edges", "counts")

    def __init__(self, name: str, title: str, axes: Sequence[Tuple[int, float, float]]) -> None:
        self.name = name
        self.title = title
        self.edges = tuple(np.linspace(lo, hi, n + 1) for n, lo, hi in axes)
        self.counts = np.zeros(tuple(n for n, _, _ in axes), dtype=np.float64)

    @property
    def ndim(self) -> int:
        return len(self.edges)

    def fill(self, *coords: float, weight: float = 1.0) -> None:
        """Add ``weight`` to the bin containing ``coords``; out-of-range values are dropped."""
        idx = []
        for c, e in zip(coords, self.edges):
            if not math.isfinite(c) or c < e[0] or c >= e[-1]:
                return
            idx.append(int(np.searchsorted(e, c, side="right")) - 1)
        self.counts[tuple(idx)] += weight

    @property
    def entries(self) -> float:
        return float(self.counts.sum())


_XYZ_AXES = [(40, -80, 80), (40, -80, 80), (55, -110, 110)]


class HistogramObserver(ReconstructionObserver):
    """
    Collects the standard laser and vertex-finder diagnostic histograms.

    Parameters
    ----------
    grid_dimensions : (phibins, rbins, zbins), optional
        Binning of the 3D ``entries`` histogram; matches the accumulation grid.
    max_tracks : int, optional
        Range of the per-laser histograms (GEM modules / layers hit).

    Notes
    -----
    A ``deltheta_delphi_<track id>`` histogram is booked on the first hit
    seen for each laser.
    """

    def __init__(self, grid_dimensions: Tuple[int, int, int] = (36, 16, 80), max_tracks: int = 8) -> None:
        phibins, rbins, zbins = grid_dimensions
        h = {}
        for hist in (
            Histogram("dca_layer", ";radius;DCA (cm)", [(78, 0, 78), (500, 0, 20)]),
            Histogram("deltarphi_layer_north", ";radius;r.dphi track-cluster (cm)", [(78, 0, 78), (2000, -5, 5)]),
            Histogram("deltarphi_layer_south", ";radius;r.dphi track-cluster (cm)", [(78, 0, 78), (2000, -5, 5)]),
            Histogram("deltaz_layer", ";radius;dz track-cluster (cm)", [(78, 0, 78), (2000, -20, 20)]),
            Histogram("deltar_r", ";radius;dr track-cluster (cm)", [(78, 0, 78), (2000, -3, 3)]),
            Histogram("dca_path", ";pathlength (cm);DCA (cm)", [(440, 0, 110), (100, 0, 20)]),
            Histogram("dz_z", ";z (cm);dz (cm)", [(440, -110, 110), (1000, -20, 20)]),
            Histogram("xy", ";x (cm);y (cm)", [(320, -80, 80), (320, -80, 80)]),
            Histogram("xy_pca", ";x (cm);y (cm)", [(320, -80, 80), (320, -80, 80)]),
            Histogram("zr", ";z (cm);r (cm)", [(440, -110, 110), (1000, 28, 80)]),
            Histogram("zr_pca", ";z (cm);r (cm)", [(440, -110, 110), (1000, 28, 80)]),
            Histogram("xz", ";x (cm);z (cm)", [(320, -80, 80), (440, -110, 110)]),
            Histogram("xz_pca", ";x (cm);z (cm)", [(320, -80, 80), (440, -110, 110)]),
            Histogram("origins", ";x (cm);y (cm);z (cm)", _XYZ_AXES),
            Histogram("hits", ";x (cm);y (cm);z (cm)", _XYZ_AXES),
            Histogram("assoc_hits", ";x (cm);y (cm);z (cm)", _XYZ_AXES),
            Histogram("clusters", ";x (cm);y (cm);z (cm)", _XYZ_AXES),
            Histogram("entries", ";phi;r (cm);z (cm)",
                      [(phibins, PHI_MIN, PHI_MAX), (rbins, R_MIN, R_MAX), (zbins, Z_MIN, Z_MAX)]),
            Histogram("deltheta_delphi", ";dtheta (deg);dphi (deg)", [(181, -10.5, 180.5), (361, -180.5, 180.5)]),
            Histogram("gems_hit", ";laser;GEM modules hit", [(max_tracks, 0, max_tracks)]),
            Histogram("layers_hit", ";laser;layers hit", [(max_tracks, 0, max_tracks)]),
            Histogram("recomass", ";pT (GeV);mass (GeV)", [(1000, 0, 5), (5000, 0, 5)]),
        ):
            h[hist.name] = hist
        self.histograms: Dict[str, Histogram] = h
        self.n_hits = 0
        self.n_associated = 0
        self.n_pairs = 0

    def __getitem__(self, name: str) -> Histogram:
        return self.histograms[name]

    def _per_laser(self, track_id: int) -> Histogram:
        name = f"deltheta_delphi_{track_id}"
        hist = self.histograms.get(name)
        if hist is None:
            hist = Histogram(name, ";dtheta (deg);dphi (deg)", [(181, -10.5, 180.5), (361, -180.5, 180.5)])
            self.histograms[name] = hist
        return hist

    def on_track_started(self, track_id: int, origin: np.ndarray, direction: np.ndarray) -> None:
        self.histograms["origins"].fill(origin[0], origin[1], origin[2])

    def on_hit(self, track_id: int, position: np.ndarray, offset: np.ndarray, dca: float) -> None:
        self.n_hits += 1
        self.histograms["hits"].fill(position[0], position[1], position[2])
        # direction of the hit seen from the laser head
        theta = math.degrees(math.atan2(math.hypot(offset[0], offset[1]), offset[2]))
        phi = math.degrees(math.atan2(offset[1], offset[0]))
        self.histograms["deltheta_delphi"].fill(theta, phi)
        self._per_laser(track_id).fill(theta, phi)

    def on_hit_associated(self, track_id: int, position: np.ndarray, gem_module: int) -> None:
        self.n_associated += 1
        self.histograms["assoc_hits"].fill(position[0], position[1], position[2])

    def on_layer_accumulated(self, track_id: int, residual: "LayerResidual") -> None:
        h = self.histograms
        c = residual.cluster
        p = residual.projection
        r = residual.radius
        h["dca_layer"].fill(r, residual.dca)
        if c[2] < 0:
            h["deltarphi_layer_south"].fill(r, residual.drp)
        elif c[2] > 0:
            h["deltarphi_layer_north"].fill(r, residual.drp)
        h["deltaz_layer"].fill(r, residual.dz)
        h["deltar_r"].fill(r, residual.dr)
        h["dca_path"].fill(residual.pathlength, residual.dca)
        h["dz_z"].fill(p[2], c[2] - p[2])
        h["xy"].fill(c[0], c[1])
        h["xy_pca"].fill(p[0], p[1])
        h["xz"].fill(c[0], c[2])
        h["xz_pca"].fill(p[0], p[2])
        h["clusters"].fill(c[0], c[1], c[2])
        h["zr"].fill(c[2], residual.cluster_r)
        h["zr_pca"].fill(p[2], r)
        h["entries"].fill(residual.cluster_phi % (2.0 * math.pi), residual.cluster_r, c[2])

    def on_track_processed(self, track_id: int, n_gem_modules: int, n_layers: int) -> None:
        self.histograms["gems_hit"].fill(track_id + 0.5, weight=n_gem_modules)
        self.histograms["layers_hit"].fill(track_id + 0.5, weight=n_layers)

    def on_pair_accepted(self, candidate: "TrackPairCandidate") -> None:
        self.n_pairs += 1
        self.histograms["recomass"].fill(candidate.pt, candidate.mass)
