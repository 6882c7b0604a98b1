from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, Iterator, Mapping, Optional

import numpy as np

# sampling period of the TPC readout (ns)
ADC_CLOCK_PERIOD = 53.0

# default drift velocity (cm/ns)
DEFAULT_DRIFT_VELOCITY = 8.0e-3

# GEM module boundaries: 12 azimuthal sectors per side, 3 radial modules
GEM_ANGLE_EDGES = np.array([23.0 * math.pi / 12.0] + [(2 * k + 1) * math.pi / 12.0 for k in range(12)])
GEM_RADIUS_EDGES = np.array([30.0, 46.0, 62.0, 78.0])
N_GEM_MODULES = 72


@dataclass(slots=True)
class CylinderLayerGeometry:
    r"""
    Readout geometry of one TPC layer.

    Pads are evenly spaced in :math:`\phi` and drift-time bins evenly spaced in
    time:

    .. math::

        \phi_c(i) = \phi_{\min} + (i + \tfrac12)\,\Delta\phi,\qquad
        t_c(j) = t_{\min} + (j + \tfrac12)\,\Delta t.

    The maximum drift time is :math:`T_{\max} = 53\,\mathrm{ns}\cdot N_t/2`.
    """
    layer: int
    radius: float
    thickness: float
    n_phibins: int
    phi_min: float
    phi_step: float
    n_tbins: int
    t_min: float = 0.0
    t_step: float = ADC_CLOCK_PERIOD

    def get_phicenter(self, phibin: int) -> float:
        return self.phi_min + (phibin + 0.5) * self.phi_step

    def get_zcenter(self, tbin: int) -> float:
        """Drift time (ns) at the centre of time bin ``tbin``."""
        return self.t_min + (tbin + 0.5) * self.t_step

    def get_max_drift_time(self) -> float:
        return ADC_CLOCK_PERIOD * self.n_tbins / 2.0

    @property
    def inner_radius(self) -> float:
        return self.radius - 0.5 * self.thickness

    @property
    def outer_radius(self) -> float:
        return self.radius + 0.5 * self.thickness


class TpcGeometry:
    """
    In-memory geometry service: layer lookup plus the gas drift velocity.

    Parameters
    ----------
    layers : mapping or iterable of CylinderLayerGeometry
    drift_velocity : float, optional
        Electron drift velocity in cm/ns.
    """

    __slots__ = ("_layers", "drift_velocity")

    def __init__(self, layers, drift_velocity: float = DEFAULT_DRIFT_VELOCITY) -> None:
        if isinstance(layers, Mapping):
            layers = layers.values()
        self._layers: Dict[int, CylinderLayerGeometry] = {g.layer: g for g in layers}
        if not drift_velocity > 0.0:
            raise ValueError(f"drift_velocity must be positive, got {drift_velocity}")
        self.drift_velocity = float(drift_velocity)

    def get_layer(self, layer: int) -> CylinderLayerGeometry:
        try:
            return self._layers[layer]
        except KeyError:
            raise KeyError(f"Unknown TPC layer {layer}") from None

    def find_layer(self, layer: int) -> Optional[CylinderLayerGeometry]:
        return self._layers.get(layer)

    def __iter__(self) -> Iterator[CylinderLayerGeometry]:
        return iter(sorted(self._layers.values(), key=lambda g: g.layer))

    def __len__(self) -> int:
        return len(self._layers)

    def __contains__(self, layer: int) -> bool:
        return layer in self._layers


def default_tpc_geometry(drift_velocity: float = DEFAULT_DRIFT_VELOCITY) -> TpcGeometry:
    r"""
    Nominal three-module TPC: 48 layers (ids 7..54) of 1 cm between
    :math:`r=30` and :math:`r=78` cm, 16 layers per module with 1152, 1536 and
    2304 pads, and 498 time bins covering one half-length of drift.
    """
    layers = []
    pads = (1152, 1536, 2304)
    n_tbins = 498
    # bins cover one half-length of drift
    t_step = ADC_CLOCK_PERIOD / 2.0
    for i in range(48):
        nphi = pads[i // 16]
        layers.append(
            CylinderLayerGeometry(
                layer=7 + i,
                radius=30.5 + i,
                thickness=1.0,
                n_phibins=nphi,
                phi_min=-math.pi,
                phi_step=2.0 * math.pi / nphi,
                n_tbins=n_tbins,
                t_step=t_step,
            )
        )
    return TpcGeometry(layers, drift_velocity=drift_velocity)


def locate_gem_module(r: float, phi: float, z: float) -> int:
    r"""
    Label of the GEM readout module a point projects onto.

    Modules are numbered ``1..72``:

    .. math::

        \mathrm{id} = 36\,s + 3\,a + k,

    with side :math:`s=1` for :math:`z<0` (south), azimuthal sector
    :math:`a\in\{0..11\}` bounded by odd multiples of :math:`\pi/12`, and
    radial module :math:`k\in\{1,2,3\}` bounded by 30, 46, 62 and 78 cm.

    Parameters
    ----------
    r : float
        Transverse radius (cm).
    phi : float
        Azimuth, expected in :math:`[0, 2\pi)`.
    z : float
        Longitudinal position (cm).

    Returns
    -------
    int
        Module id, or ``0`` when ``r`` lies outside the readout.

    Notes
    -----
    Sector 0 straddles :math:`\phi = 0` and is the fallback for any angle not
    strictly inside one of the other sectors; radius boundaries are exclusive.
    """
    r_id = 0
    for k in range(3):
        if GEM_RADIUS_EDGES[k] < r < GEM_RADIUS_EDGES[k + 1]:
            r_id = k + 1
            break
    if r_id == 0:
        return 0

    angle_id = 0
    for a in range(12):
        if GEM_ANGLE_EDGES[a] < phi < GEM_ANGLE_EDGES[a + 1]:
            angle_id = a
            break

    side_id = 1 if z < 0 else 0
    return 36 * side_id + 3 * angle_id + r_id
