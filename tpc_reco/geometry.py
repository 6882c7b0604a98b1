from __future__ import annotations

import math
from typing import List, Sequence, Tuple

import numpy as np
from numba import njit

__all__ = [
    "DCA_SENTINEL",
    "TANGENCY_TOLERANCE",
    "line_circle_intersection",
    "first_positive_intersection",
    "circle_circle_intersection",
    "skew_line_closest_approach",
    "delta_phi",
    "wrap_phi",
    "point_line_dca",
]

# returned by skew_line_closest_approach when the lines are parallel
DCA_SENTINEL = 999.0

# circles that miss each other by less than this (cm) are treated as touching
TANGENCY_TOLERANCE = 0.2

_EPS = 1e-12


def delta_phi(phi: float) -> float:
    r"""
    Wrap an azimuthal angle difference into :math:`[-\pi, \pi)`.

    Parameters
    ----------
    phi : float
        Angle difference in radians, assumed to lie within one turn of the
        target interval (the usual case for a difference of two ``atan2``).

    Returns
    -------
    float
        :math:`\phi - 2\pi` if :math:`\phi \ge \pi`, :math:`\phi + 2\pi` if
        :math:`\phi < -\pi`, otherwise :math:`\phi`.
    """
    if phi >= math.pi:
        return phi - 2.0 * math.pi
    if phi < -math.pi:
        return phi + 2.0 * math.pi
    return phi


def wrap_phi(phi: float) -> float:
    r"""
    Map an angle onto :math:`[0, 2\pi)`.

    Any finite input is accepted; the result is always a valid azimuthal bin
    coordinate.
    """
    two_pi = 2.0 * math.pi
    out = math.fmod(phi, two_pi)
    if out < 0.0:
        out += two_pi
    # fmod(-tiny) + 2pi can round up to exactly 2pi
    if out >= two_pi:
        out -= two_pi
    return out


def line_circle_intersection(
    origin: Sequence[float],
    direction: Sequence[float],
    radius: float,
) -> Tuple[float, float]:
    r"""
    Intersect a parametric line with a circle centred on the beam axis.

    The line :math:`\mathbf{p}(t) = \mathbf{o} + t\,\mathbf{d}` is projected
    onto the transverse plane and intersected with :math:`x^2+y^2=R^2`:

    .. math::

        A t^2 + B t + C = 0,\qquad
        A = d_x^2+d_y^2,\;
        B = 2(o_x d_x + o_y d_y),\;
        C = o_x^2 + o_y^2 - R^2.

    Parameters
    ----------
    origin : array_like, shape (3,) or (2,)
        Point on the line.
    direction : array_like, shape (3,) or (2,)
        Line direction (need not be normalised; ``t`` is in units of it).
    radius : float
        Circle radius.

    Returns
    -------
    (t_up, t_dn) : tuple of float
        Both roots :math:`(-B \pm \sqrt{\Delta})/2A`. ``(-1, -1)`` when the
        discriminant is negative or the line is parallel to the beam axis.

    Notes
    -----
    The caller chooses the entry point, normally the smallest non-negative
    root (see :func:`first_positive_intersection`).
    """
    ox, oy = float(origin[0]), float(origin[1])
    dx, dy = float(direction[0]), float(direction[1])

    a = dx * dx + dy * dy
    if a <= 0.0:
        return -1.0, -1.0
    b = 2.0 * ox * dx + 2.0 * oy * dy
    c = ox * ox + oy * oy - radius * radius
    disc = b * b - 4.0 * a * c
    if disc < 0.0:
        return -1.0, -1.0

    sq = math.sqrt(disc)
    return (-b + sq) / (2.0 * a), (-b - sq) / (2.0 * a)


def first_positive_intersection(ts: Tuple[float, float], strict: bool = False) -> float:
    r"""
    Select the first crossing along the line from a root pair.

    Parameters
    ----------
    ts : tuple of float
        Output of :func:`line_circle_intersection`.
    strict : bool, optional
        If ``True`` a root must be strictly positive to qualify; otherwise
        zero is accepted.

    Returns
    -------
    float
        The smallest qualifying root, or ``-1`` if neither qualifies.
    """
    ok = [t for t in ts if (t > 0.0 if strict else t >= 0.0)]
    return min(ok) if ok else -1.0


def circle_circle_intersection(
    r0: float, x0: float, y0: float,
    r1: float, x1: float, y1: float,
) -> List[Tuple[float, float]]:
    r"""
    Intersection points of two circles in the transverse plane.

    With centre distance :math:`d=\|\mathbf{c}_0-\mathbf{c}_1\|`, the radical
    line crosses the centre line at

    .. math::

        a = \frac{r_0^2 - r_1^2 + d^2}{2d},\qquad h=\sqrt{r_0^2-a^2},

    and the two solutions are offset by :math:`\pm h` perpendicular to it.

    Parameters
    ----------
    r0, x0, y0 : float
        Radius and centre of the first circle.
    r1, x1, y1 : float
        Radius and centre of the second circle.

    Returns
    -------
    list of (x, y)
        * two points, ordered ``(x2 + h dy/d, y2 - h dx/d)`` first, when the
          circles cross;
        * one point when the circles miss each other by less than
          :data:`TANGENCY_TOLERANCE` (or touch exactly): the midpoint of the
          two points of nearest approach on the centre line;
        * an empty list when one circle lies inside the other, when they are
          further apart than the tolerance, or when the centres coincide.

    Notes
    -----
    Conversion electrons produce nearly tangent circles; without the
    tolerance branch measurement fluctuations would lose them.
    """
    dx = x1 - x0
    dy = y1 - y0
    d = math.hypot(dx, dy)

    if d <= _EPS:
        return []
    if d < abs(r1 - r0):
        return []

    if d >= r0 + r1:
        if d - (r0 + r1) >= TANGENCY_TOLERANCE:
            return []
        ux, uy = dx / d, dy / d
        pca0 = (x0 + ux * r0, y0 + uy * r0)
        pca1 = (x1 - ux * r1, y1 - uy * r1)
        return [(0.5 * (pca0[0] + pca1[0]), 0.5 * (pca0[1] + pca1[1]))]

    a = (r0 * r0 - r1 * r1 + d * d) / (2.0 * d)
    h = math.sqrt(max(r0 * r0 - a * a, 0.0))

    x2 = x0 + a * dx / d
    y2 = y0 + a * dy / d

    return [
        (x2 + h * dy / d, y2 - h * dx / d),
        (x2 - h * dy / d, y2 + h * dx / d),
    ]


def skew_line_closest_approach(
    a1: Sequence[float],
    b1: Sequence[float],
    a2: Sequence[float],
    b2: Sequence[float],
) -> Tuple[float, np.ndarray, np.ndarray]:
    r"""
    Distance and points of closest approach of two lines in 3D.

    Lines are :math:`\mathbf{a}_1 + c\,\hat{\mathbf{b}}_1` and
    :math:`\mathbf{a}_2 + d\,\hat{\mathbf{b}}_2`. The signed distance is the
    projection of the joining vector on the common normal,

    .. math::

        \mathrm{dca} = \frac{(\hat{\mathbf{b}}_1\times\hat{\mathbf{b}}_2)
                              \cdot(\mathbf{a}_2-\mathbf{a}_1)}
                             {\|\hat{\mathbf{b}}_1\times\hat{\mathbf{b}}_2\|},

    and :math:`(c, d)` solve the orthogonality conditions
    :math:`(\mathbf{P}_2-\mathbf{P}_1)\cdot\hat{\mathbf{b}}_{1,2}=0`:

    .. math::

        c = \frac{D\,C - B\,E}{A C - B^2},\qquad
        d = \frac{B\,D - A\,E}{A C - B^2},

    with :math:`A=\hat b_1^2,\ B=\hat b_1\cdot\hat b_2,\ C=\hat b_2^2,\
    D=\mathbf{w}\cdot\hat b_1,\ E=\mathbf{w}\cdot\hat b_2,\
    \mathbf{w}=\mathbf{a}_2-\mathbf{a}_1`.

    Parameters
    ----------
    a1, b1 : array_like, shape (3,)
        Point and direction of the first line.
    a2, b2 : array_like, shape (3,)
        Point and direction of the second line.

    Returns
    -------
    dca : float
        Signed distance of closest approach, or :data:`DCA_SENTINEL` when a
        direction has zero length or the lines are parallel.
    pca1, pca2 : ndarray, shape (3,)
        Points of closest approach on each line (copies of ``a1``/``a2`` in
        the sentinel case).

    Notes
    -----
    Solving the full 2x2 system keeps perpendicular lines
    (:math:`B = 0`) well defined; its determinant equals
    :math:`\|\hat b_1\times\hat b_2\|^2`.
    """
    a1 = np.asarray(a1, dtype=np.float64)
    a2 = np.asarray(a2, dtype=np.float64)
    b1 = np.asarray(b1, dtype=np.float64)
    b2 = np.asarray(b2, dtype=np.float64)

    n1 = np.linalg.norm(b1)
    n2 = np.linalg.norm(b2)
    if n1 <= _EPS or n2 <= _EPS:
        return DCA_SENTINEL, a1.copy(), a2.copy()
    b1 = b1 / n1
    b2 = b2 / n2

    cross = np.cross(b1, b2)
    mag = float(np.linalg.norm(cross))
    if mag <= 1e-12:
        # same direction: same track or no unique solution
        return DCA_SENTINEL, a1.copy(), a2.copy()

    w = a2 - a1
    dca = float(cross.dot(w) / mag)

    A = b1.dot(b1)
    B = b1.dot(b2)
    C = b2.dot(b2)
    D = w.dot(b1)
    E = w.dot(b2)
    det = A * C - B * B

    c = (D * C - B * E) / det
    d = (B * D - A * E) / det

    return dca, a1 + c * b1, a2 + d * b2


@njit(cache=True)
def _point_line_dca_kernel(points, origin, direction):
    n = points.shape[0]
    dca = np.empty(n, dtype=np.float64)
    tpar = np.empty(n, dtype=np.float64)
    d2 = direction[0] * direction[0] + direction[1] * direction[1] + direction[2] * direction[2]
    for i in range(n):
        ox = points[i, 0] - origin[0]
        oy = points[i, 1] - origin[1]
        oz = points[i, 2] - origin[2]
        t = (direction[0] * ox + direction[1] * oy + direction[2] * oz) / d2
        rx = ox - t * direction[0]
        ry = oy - t * direction[1]
        rz = oz - t * direction[2]
        dca[i] = math.sqrt(rx * rx + ry * ry + rz * rz)
        tpar[i] = t
    return dca, tpar


def point_line_dca(
    points: np.ndarray,
    origin: Sequence[float],
    direction: Sequence[float],
) -> Tuple[np.ndarray, np.ndarray]:
    r"""
    Batched distance of points to a line.

    For each point :math:`\mathbf{q}_i` with :math:`\mathbf{v}_i=\mathbf{q}_i-\mathbf{o}`,

    .. math::

        t_i = \frac{\mathbf{d}\cdot\mathbf{v}_i}{\|\mathbf{d}\|^2},\qquad
        \mathrm{dca}_i = \|\mathbf{v}_i - t_i\,\mathbf{d}\|.

    Parameters
    ----------
    points : ndarray, shape (N, 3)
        Query points.
    origin : array_like, shape (3,)
        Point on the line.
    direction : array_like, shape (3,)
        Line direction; must be non-zero.

    Returns
    -------
    dca : ndarray, shape (N,)
        Euclidean distances.
    t : ndarray, shape (N,)
        Line parameters of the foot points.

    Raises
    ------
    ValueError
        If ``direction`` has zero length or ``points`` is not ``(N, 3)``.
    """
    pts = np.ascontiguousarray(points, dtype=np.float64)
    if pts.ndim != 2 or pts.shape[1] != 3:
        raise ValueError("points must have shape (N, 3).")
    o = np.ascontiguousarray(origin, dtype=np.float64)
    d = np.ascontiguousarray(direction, dtype=np.float64)
    if float(d.dot(d)) <= 0.0:
        raise ValueError("direction must be non-zero.")
    if pts.shape[0] == 0:
        return np.empty(0, dtype=np.float64), np.empty(0, dtype=np.float64)
    return _point_line_dca_kernel(pts, o, d)
