from __future__ import annotations

import logging
import math
from typing import Tuple

import numpy as np
import pandas as pd

from tpc_reco.geometry import wrap_phi

logger = logging.getLogger(__name__)

# fixed grid ranges (cm, rad)
PHI_MIN, PHI_MAX = 0.0, 2.0 * math.pi
R_MIN, R_MAX = 20.0, 78.0
Z_MIN, Z_MAX = -105.5, 105.5


class SpaceChargeMatrixContainer:
    r"""
    Per-cell normal-equation accumulator on a :math:`(\phi, r, z)` grid.

    Each cell :math:`c` holds a symmetric matrix :math:`M_c\in\mathbb{R}^{3\times3}`,
    a vector :math:`b_c\in\mathbb{R}^3` and an entry count :math:`n_c`. Residual
    contributions are only ever added, so the container is a pure sum and two
    containers with the same dimensions can be merged by addition:

    .. math::

        M_c = \sum_k M_c^{(k)},\qquad b_c = \sum_k b_c^{(k)}.

    Cells are flattened as

    .. math::

        c = (i_z\,N_r + i_r)\,N_\phi + i_\phi,

    over the fixed ranges :math:`\phi\in[0,2\pi)`, :math:`r\in[20,78)` cm and
    :math:`z\in[-105.5,105.5)` cm. Solving :math:`M_c x_c = b_c` is left to
    downstream consumers.

    Parameters
    ----------
    phibins, rbins, zbins : int, optional
        Initial grid dimensions (default ``36 x 16 x 80``).

    Attributes
    ----------
    lhs : ndarray, shape (n_cells, 3, 3)
    rhs : ndarray, shape (n_cells, 3)
    entries : ndarray, shape (n_cells,)
    """

    __slots__ = ("_phibins", "_rbins", "_zbins", "_lhs", "_rhs", "_entries")

    def __init__(self, phibins: int = 36, rbins: int = 16, zbins: int = 80) -> None:
        self._phibins = 0
        self._rbins = 0
        self._zbins = 0
        self.configure(phibins, rbins, zbins)

    def configure(self, phibins: int, rbins: int, zbins: int) -> None:
        """Set grid dimensions and clear all accumulated content."""
        for name, n in (("phibins", phibins), ("rbins", rbins), ("zbins", zbins)):
            if int(n) < 1:
                raise ValueError(f"{name} must be >= 1, got {n}")
        self._phibins = int(phibins)
        self._rbins = int(rbins)
        self._zbins = int(zbins)
        n = self.n_cells
        self._lhs = np.zeros((n, 3, 3), dtype=np.float64)
        self._rhs = np.zeros((n, 3), dtype=np.float64)
        self._entries = np.zeros(n, dtype=np.int64)

    # alias
    set_grid_dimensions = configure

    def get_grid_dimensions(self) -> Tuple[int, int, int]:
        return self._phibins, self._rbins, self._zbins

    @property
    def n_cells(self) -> int:
        return self._phibins * self._rbins * self._zbins

    @property
    def lhs(self) -> np.ndarray:
        v = self._lhs.view()
        v.flags.writeable = False
        return v

    @property
    def rhs(self) -> np.ndarray:
        v = self._rhs.view()
        v.flags.writeable = False
        return v

    @property
    def entries(self) -> np.ndarray:
        v = self._entries.view()
        v.flags.writeable = False
        return v

    # ------------------------------------------------------------------
    # indexing
    # ------------------------------------------------------------------
    def get_cell_index(self, iphi: int, ir: int, iz: int) -> int:
        """Flattened index from axis indices, ``-1`` if any is out of range."""
        if iphi < 0 or iphi >= self._phibins:
            return -1
        if ir < 0 or ir >= self._rbins:
            return -1
        if iz < 0 or iz >= self._zbins:
            return -1
        return (iz * self._rbins + ir) * self._phibins + iphi

    def cell_index(self, phi: float, r: float, z: float) -> int:
        r"""
        Map a global position to a flattened cell index.

        Parameters
        ----------
        phi : float
            Azimuth in radians; any value is wrapped onto :math:`[0, 2\pi)`.
        r, z : float
            Transverse radius and longitudinal coordinate (cm).

        Returns
        -------
        int
            Cell index, or ``-1`` when ``r`` or ``z`` is outside its
            half-open range or is not finite.
        """
        if not (math.isfinite(phi) and math.isfinite(r) and math.isfinite(z)):
            return -1
        if r < R_MIN or r >= R_MAX or z < Z_MIN or z >= Z_MAX:
            return -1

        phi = wrap_phi(phi)
        iphi = int(self._phibins * (phi - PHI_MIN) / (PHI_MAX - PHI_MIN))
        ir = int(self._rbins * (r - R_MIN) / (R_MAX - R_MIN))
        iz = int(self._zbins * (z - Z_MIN) / (Z_MAX - Z_MIN))

        # guard against rounding right at the upper edge
        iphi = min(iphi, self._phibins - 1)
        ir = min(ir, self._rbins - 1)
        iz = min(iz, self._zbins - 1)
        return self.get_cell_index(iphi, ir, iz)

    def _valid(self, cell: int) -> bool:
        if 0 <= cell < self.n_cells:
            return True
        logger.error("invalid cell index %s (n_cells=%d)", cell, self.n_cells)
        return False

    # ------------------------------------------------------------------
    # accumulation
    # ------------------------------------------------------------------
    def add_to_lhs(self, cell: int, row: int, col: int, value: float) -> None:
        if not self._valid(cell):
            return
        self._lhs[cell, row, col] += value

    def add_to_rhs(self, cell: int, row: int, value: float) -> None:
        if not self._valid(cell):
            return
        self._rhs[cell, row] += value

    def add_to_entries(self, cell: int, n: int = 1) -> None:
        if not self._valid(cell):
            return
        self._entries[cell] += n

    def add_normal_equations(self, cell: int, lhs: np.ndarray, rhs: np.ndarray) -> None:
        r"""
        Add a full :math:`3\times3` block and its right-hand side to one cell
        and count one entry.
        """
        if not self._valid(cell):
            return
        self._lhs[cell] += np.asarray(lhs, dtype=np.float64).reshape(3, 3)
        self._rhs[cell] += np.asarray(rhs, dtype=np.float64).reshape(3)
        self._entries[cell] += 1

    def merge(self, other: "SpaceChargeMatrixContainer") -> None:
        """
        Add another container's content to this one.

        Raises
        ------
        ValueError
            If the grid dimensions differ.
        """
        if other.get_grid_dimensions() != self.get_grid_dimensions():
            raise ValueError(
                f"cannot merge grids with dimensions {other.get_grid_dimensions()} "
                f"into {self.get_grid_dimensions()}"
            )
        self._lhs += other._lhs
        self._rhs += other._rhs
        self._entries += other._entries

    # ------------------------------------------------------------------
    # dumps
    # ------------------------------------------------------------------
    def to_frame(self) -> pd.DataFrame:
        """
        Non-empty cells as a flat table.

        Columns are ``cell, iphi, ir, iz, entries``, the nine ``lhs_<row><col>``
        entries and the three ``rhs_<row>`` entries.
        """
        cells = np.flatnonzero(self._entries)
        iphi = cells % self._phibins
        ir = (cells // self._phibins) % self._rbins
        iz = cells // (self._phibins * self._rbins)
        data = {
            "cell": cells,
            "iphi": iphi,
            "ir": ir,
            "iz": iz,
            "entries": self._entries[cells],
        }
        for i in range(3):
            for j in range(3):
                data[f"lhs_{i}{j}"] = self._lhs[cells, i, j]
        for i in range(3):
            data[f"rhs_{i}"] = self._rhs[cells, i]
        return pd.DataFrame(data)

    def identify(self) -> None:
        logger.info(
            "SpaceChargeMatrixContainer: grid %d x %d x %d (phi, r, z), %d/%d cells filled, %d entries",
            self._phibins, self._rbins, self._zbins,
            int(np.count_nonzero(self._entries)), self.n_cells, int(self._entries.sum()),
        )

    def __repr__(self) -> str:
        return (
            f"SpaceChargeMatrixContainer(phibins={self._phibins}, rbins={self._rbins}, "
            f"zbins={self._zbins})"
        )
