r"""
Helix description of tracks in a solenoidal field.

A track is summarised by a circle in the transverse plane (centre
:math:`(X_0, Y_0)`, radius :math:`R`) and a straight line in the
:math:`(r, z)` plane, :math:`z = a\,r + b`. Both come from algebraic fits to
the track's cluster positions, so no field map or propagator is needed to
move the track to another radius.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np
from scipy import stats

from tpc_reco.geometry import circle_circle_intersection
from tpc_reco.records import Cluster, ClusterSource, Track, Vertex

logger = logging.getLogger(__name__)

# strip detector: z is not measured
STRIP_SUBSYSTEMS = ("intt",)

MIN_FIT_CLUSTERS = 3


@dataclass(slots=True)
class HelixFit:
    """Circle ``(radius, x0, y0)`` and line ``z = slope * r + intercept``."""
    radius: float
    x0: float
    y0: float
    slope: float
    intercept: float

    def as_tuple(self) -> Tuple[float, float, float, float, float]:
        return self.radius, self.x0, self.y0, self.slope, self.intercept


def circle_fit_by_taubin(points: np.ndarray) -> Tuple[float, float, float]:
    r"""
    Algebraic circle fit (Taubin, Newton-based variant by Chernov).

    After centring the points on their mean, with :math:`z_i = x_i^2 + y_i^2`
    and the moments :math:`M_{xx}, M_{yy}, M_{xy}, M_{xz}, M_{yz}, M_{zz}`,
    the characteristic polynomial

    .. math::

        P(\eta) = A_0 + A_1\eta + A_2\eta^2 + A_3\eta^3

    is solved for its smallest root by Newton iteration from :math:`\eta=0`.
    The centre then follows from

    .. math::

        X_c = \frac{M_{xz}(M_{yy}-\eta) - M_{yz}M_{xy}}{2\,\mathrm{DET}},\qquad
        Y_c = \frac{M_{yz}(M_{xx}-\eta) - M_{xz}M_{xy}}{2\,\mathrm{DET}},

    with :math:`\mathrm{DET} = \eta^2 - \eta M_z + \mathrm{Cov}_{xy}`, and
    :math:`R = \sqrt{X_c^2 + Y_c^2 + M_z}`.

    Parameters
    ----------
    points : array_like, shape (N, 2) or (N, 3)
        Only the first two columns are used.

    Returns
    -------
    (R, X0, Y0) : tuple of float
        May contain non-finite values for collinear input; callers check.
    """
    pts = np.asarray(points, dtype=np.float64)
    x = pts[:, 0]
    y = pts[:, 1]
    n = float(len(x))

    mean_x = x.mean()
    mean_y = y.mean()
    xi = x - mean_x
    yi = y - mean_y
    zi = xi * xi + yi * yi

    mxy = float((xi * yi).sum()) / n
    mxx = float((xi * xi).sum()) / n
    myy = float((yi * yi).sum()) / n
    mxz = float((xi * zi).sum()) / n
    myz = float((yi * zi).sum()) / n
    mzz = float((zi * zi).sum()) / n

    mz = mxx + myy
    cov_xy = mxx * myy - mxy * mxy
    var_z = mzz - mz * mz
    a3 = 4.0 * mz
    a2 = -3.0 * mz * mz - mzz
    a1 = var_z * mz + 4.0 * cov_xy * mz - mxz * mxz - myz * myz
    a0 = mxz * (mxz * myy - myz * mxy) + myz * (myz * mxx - mxz * mxy) - var_z * cov_xy
    a22 = a2 + a2
    a33 = a3 + a3 + a3

    # Newton from eta = 0
    xn = 0.0
    yn = a0
    for _ in range(99):
        dy = a1 + xn * (a22 + a33 * xn)
        if dy == 0.0:
            break
        xnew = xn - yn / dy
        if xnew == xn or not math.isfinite(xnew):
            break
        ynew = a0 + xnew * (a1 + xnew * (a2 + xnew * a3))
        if abs(ynew) >= abs(yn):
            break
        xn = xnew
        yn = ynew

    det = xn * xn - xn * mz + cov_xy
    with np.errstate(divide="ignore", invalid="ignore"):
        xc = np.float64(mxz * (myy - xn) - myz * mxy) / det / 2.0
        yc = np.float64(myz * (mxx - xn) - mxz * mxy) / det / 2.0
        radius = np.sqrt(xc * xc + yc * yc + mz)
    return float(radius), float(xc + mean_x), float(yc + mean_y)


def line_fit(points: np.ndarray) -> Optional[Tuple[float, float]]:
    r"""
    Least-squares line :math:`z = a\,r + b` with :math:`r = \sqrt{x^2+y^2}`.

    Returns ``None`` when the radii are all identical.
    """
    pts = np.asarray(points, dtype=np.float64)
    r = np.hypot(pts[:, 0], pts[:, 1])
    try:
        res = stats.linregress(r, pts[:, 2])
    except ValueError as e:
        logger.debug("line fit failed: %s", e)
        return None
    return float(res.slope), float(res.intercept)


def fit_clusters(clusters: Sequence[Cluster]) -> Optional[HelixFit]:
    """
    Circle fit over all clusters and z-line fit over the non-strip clusters.

    Returns ``None`` with fewer than three usable clusters for either fit or a
    non-finite result.
    """
    if len(clusters) < MIN_FIT_CLUSTERS:
        logger.debug("too few clusters for circle fit: %d", len(clusters))
        return None
    xyz = np.array([c.position for c in clusters], dtype=np.float64)
    radius, x0, y0 = circle_fit_by_taubin(xyz)
    if not (math.isfinite(radius) and math.isfinite(x0) and math.isfinite(y0)):
        logger.debug("circle fit did not converge")
        return None

    zpts = xyz[[c.subsystem not in STRIP_SUBSYSTEMS for c in clusters]]
    if len(zpts) < MIN_FIT_CLUSTERS:
        logger.debug("too few non-strip clusters for z fit: %d", len(zpts))
        return None
    line = line_fit(zpts)
    if line is None:
        return None
    return HelixFit(radius, x0, y0, line[0], line[1])


def fit_track(track: Track, clusters: ClusterSource) -> Optional[HelixFit]:
    """Look up the TPC seed clusters of ``track`` and fit them (see :func:`fit_clusters`)."""
    found = []
    for key in track.tpc_cluster_keys:
        cluster = clusters.get(key)
        if cluster is None:
            logger.warning("Failed to get cluster with key %s", key)
            continue
        found.append(cluster)
    return fit_clusters(found)


def project_to_radius(
    fit: HelixFit, track: Track, radius: float,
) -> Optional[Tuple[np.ndarray, np.ndarray]]:
    r"""
    Position and momentum of a track where it crosses the cylinder
    :math:`x^2 + y^2 = r^2`.

    The crossing is the intersection of the fitted track circle with the
    cylinder that lies ahead of the track's reference point along its
    transverse momentum, the nearer one if both do. When neither is ahead
    the nearest crossing is used. z follows the fitted line. The momentum keeps the track's :math:`p_T` and :math:`p_z` and is
    tangent to the circle, oriented by the sense of rotation at the reference
    point.

    Returns
    -------
    (position, momentum) or None
        ``None`` when the circle does not reach the radius.
    """
    points = circle_circle_intersection(fit.radius, fit.x0, fit.y0, radius, 0.0, 0.0)
    if not points:
        return None

    ref = np.asarray(track.position, dtype=np.float64)
    mom = np.asarray(track.momentum, dtype=np.float64)
    ahead = [p for p in points if (p[0] - ref[0]) * mom[0] + (p[1] - ref[1]) * mom[1] >= 0.0]
    px, py = min(ahead or points, key=lambda p: (p[0] - ref[0]) ** 2 + (p[1] - ref[1]) ** 2)

    # sense of rotation around the circle centre
    rx, ry = ref[0] - fit.x0, ref[1] - fit.y0
    turn = rx * mom[1] - ry * mom[0]
    sense = 1.0 if turn >= 0.0 else -1.0

    dx, dy = px - fit.x0, py - fit.y0
    norm = math.hypot(dx, dy)
    if norm == 0.0:
        return None
    tx, ty = -dy / norm * sense, dx / norm * sense

    pt = math.hypot(mom[0], mom[1])
    r = math.hypot(px, py)
    position = np.array([px, py, fit.slope * r + fit.intercept])
    momentum = np.array([pt * tx, pt * ty, mom[2]])
    return position, momentum


def impact_parameters(track: Track, vertex: Optional[Vertex]) -> Tuple[float, float, float, float]:
    r"""
    Transverse and longitudinal distance of closest approach to a vertex.

    The offset :math:`\mathbf{d} = \mathbf{x} - \mathbf{v}` is rotated by the
    azimuth of :math:`\mathbf{p}\times\hat z`,

    .. math::

        R = \begin{pmatrix} \cos\varphi & -\sin\varphi & 0 \\
                            \sin\varphi & \cos\varphi & 0 \\
                            0 & 0 & 1 \end{pmatrix},\qquad
        \mathbf{d}' = R\,\mathbf{d},\qquad \Sigma' = R\,\Sigma\,R^T,

    giving :math:`\mathrm{dca}_{xy} = d'_0`, :math:`\mathrm{dca}_z = d'_2` and
    their uncertainties :math:`\sqrt{\Sigma'_{00}}`, :math:`\sqrt{\Sigma'_{22}}`.

    Returns
    -------
    (dca_xy, dca_z, sigma_xy, sigma_z)
        All ``nan`` when the vertex is missing; the sigmas are ``nan`` when the
        track carries no covariance.
    """
    nan = float("nan")
    if vertex is None:
        logger.debug("Failed to find vertex for track %d", track.track_id)
        return nan, nan, nan, nan

    pos = np.asarray(track.position, dtype=np.float64) - np.asarray(vertex.position, dtype=np.float64)
    mom = np.asarray(track.momentum, dtype=np.float64)
    r = np.cross(mom, np.array([0.0, 0.0, 1.0]))
    phi = math.atan2(r[1], r[0])
    c, s = math.cos(phi), math.sin(phi)
    rot = np.array([[c, -s, 0.0], [s, c, 0.0], [0.0, 0.0, 1.0]])

    pos_r = rot @ pos
    sigma_xy = sigma_z = nan
    if track.covariance is not None:
        cov = np.asarray(track.covariance, dtype=np.float64)[:3, :3]
        rot_cov = rot @ cov @ rot.T
        sigma_xy = math.sqrt(max(rot_cov[0, 0], 0.0))
        sigma_z = math.sqrt(max(rot_cov[2, 2], 0.0))
    return float(pos_r[0]), float(pos_r[2]), sigma_xy, sigma_z
