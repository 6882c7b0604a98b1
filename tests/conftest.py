import math
import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import numpy as np
import pytest

from tpc_reco.detector import CylinderLayerGeometry, TpcGeometry
from tpc_reco.records import Cluster, MappingClusterSource, MappingVertexSource, Track, Vertex

DRIFT_VELOCITY = 8.0e-3
N_TBINS = 360
# with t_min = -26.5 ns and 53 ns bins, time bin 180 sits at the maximum drift time (z = 0)
T_MIN = -26.5
ZERO_Z_TBIN = 180


def layer_at(layer: int, x: float, y: float, thickness: float = 1.0) -> CylinderLayerGeometry:
    """Layer whose phi bin 0 is centred on the point (x, y)."""
    step = 1e-3
    return CylinderLayerGeometry(
        layer=layer,
        radius=math.hypot(x, y),
        thickness=thickness,
        n_phibins=100,
        phi_min=math.atan2(y, x) - 0.5 * step,
        phi_step=step,
        n_tbins=N_TBINS,
        t_min=T_MIN,
        t_step=53.0,
    )


@pytest.fixture
def scenario_a_geometry():
    layers = [layer_at(7 + i, x, 0.1) for i, x in enumerate((30.0, 46.0, 62.0))]
    return TpcGeometry(layers, drift_velocity=DRIFT_VELOCITY)


def circle_points(cx, cy, radius, start, stop, n, z=0.0):
    ang = np.linspace(start, stop, n)
    return [(cx + radius * math.cos(a), cy + radius * math.sin(a), z) for a in ang]


def make_pair_event(z2: float, charge2: int = -1, n_clusters: int = 24, vertex_tracks=(1, 2),
                    quality: float = 1.0, silicon=None, vertex_id2: int = 0):
    """
    Two tracks crossing at (10, 0) in the transverse plane.

    Track 1 runs along +x on the circle centred at (10, 20) with radius 20;
    track 2 runs along +y on the circle centred at (20, 0) with radius 10 and
    sits ``z2`` above track 1, so their straight-line DCA at the crossing is
    ``z2``. The second intersection of the circles, (26, 8), lies at radius
    27.2.
    """
    clusters = []
    keys1, keys2 = [], []
    # track 1: arc around the bottom of its circle
    for k, p in enumerate(circle_points(10.0, 20.0, 20.0, -math.pi / 2 - 0.6, -math.pi / 2 + 0.6, n_clusters)):
        clusters.append(Cluster(key=1000 + k, position=p, subsystem="tpc"))
        keys1.append(1000 + k)
    # track 2: arc around the left of its circle
    for k, p in enumerate(circle_points(20.0, 0.0, 10.0, math.pi - 0.9, math.pi + 0.9, n_clusters, z=z2)):
        clusters.append(Cluster(key=2000 + k, position=p, subsystem="tpc"))
        keys2.append(2000 + k)

    tr1 = Track(
        track_id=1, position=np.array([10.0, 0.0, 0.0]), momentum=np.array([1.0, 0.0, 0.0]),
        charge=1, quality=quality, vertex_id=0, tpc_cluster_keys=keys1,
        silicon_cluster_keys=silicon,
    )
    tr2 = Track(
        track_id=2, position=np.array([10.0, 0.0, z2]), momentum=np.array([0.0, 1.0, 0.0]),
        charge=charge2, quality=quality, vertex_id=vertex_id2, tpc_cluster_keys=keys2,
        silicon_cluster_keys=silicon,
    )
    vertices = MappingVertexSource([Vertex(0, (0.0, 0.0, 0.0), tuple(vertex_tracks))])
    return [tr1, tr2], MappingClusterSource(clusters), vertices
