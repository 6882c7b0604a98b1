import math
import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import numpy as np
import pytest

from conftest import circle_points, make_pair_event
from tpc_reco.helix import (
    HelixFit,
    circle_fit_by_taubin,
    fit_clusters,
    fit_track,
    impact_parameters,
    line_fit,
    project_to_radius,
)
from tpc_reco.records import Cluster, Track, Vertex


def test_taubin_exact_circle():
    pts = np.array(circle_points(3.0, -2.0, 5.0, 0.0, math.pi, 20))
    radius, x0, y0 = circle_fit_by_taubin(pts)
    assert radius == pytest.approx(5.0, abs=1e-9)
    assert x0 == pytest.approx(3.0, abs=1e-9)
    assert y0 == pytest.approx(-2.0, abs=1e-9)


def test_taubin_short_noisy_arc():
    rng = np.random.default_rng(7)
    pts = np.array(circle_points(-40.0, 60.0, 80.0, -0.9, -0.3, 40))
    pts[:, :2] += rng.normal(0.0, 1e-3, size=(40, 2))
    radius, x0, y0 = circle_fit_by_taubin(pts)
    assert radius == pytest.approx(80.0, rel=1e-2)
    assert x0 == pytest.approx(-40.0, abs=1.0)
    assert y0 == pytest.approx(60.0, abs=1.0)


def test_line_fit():
    pts = np.array([[r, 0.0, 0.5 * r + 1.0] for r in (10.0, 20.0, 35.0, 50.0)])
    slope, intercept = line_fit(pts)
    assert slope == pytest.approx(0.5)
    assert intercept == pytest.approx(1.0)
    # all points at one radius: no line
    same_r = np.array([[10.0, 0.0, 1.0], [0.0, 10.0, 2.0], [-10.0, 0.0, 3.0]])
    assert line_fit(same_r) is None


def test_fit_clusters_needs_three_z_measurements():
    xyz = circle_points(0.0, 50.0, 50.0, -math.pi / 2 - 0.5, -math.pi / 2 + 0.5, 5)
    clusters = [Cluster(k, p, subsystem="intt" if k < 3 else "tpc") for k, p in enumerate(xyz)]
    assert fit_clusters(clusters) is None
    assert fit_clusters(clusters[:2]) is None

    clusters[2] = Cluster(2, xyz[2], subsystem="mvtx")
    fit = fit_clusters(clusters)
    assert fit is not None
    assert fit.radius == pytest.approx(50.0, abs=1e-6)
    assert fit.slope == pytest.approx(0.0, abs=1e-9)


def test_fit_track_skips_missing_clusters():
    tracks, clusters, _ = make_pair_event(0.05)
    tr = tracks[0]
    tr.tpc_cluster_keys = tr.tpc_cluster_keys + [123456]
    fit = fit_track(tr, clusters)
    assert fit is not None
    assert np.allclose(fit.as_tuple()[:3], (20.0, 10.0, 20.0), atol=1e-6)


def test_project_to_radius():
    tracks, clusters, _ = make_pair_event(0.3)
    fit1 = fit_track(tracks[0], clusters)
    pos, mom = project_to_radius(fit1, tracks[0], 10.0)
    assert np.allclose(pos, (10.0, 0.0, 0.0), atol=1e-6)
    assert np.allclose(mom, (1.0, 0.0, 0.0), atol=1e-6)

    fit2 = fit_track(tracks[1], clusters)
    pos, mom = project_to_radius(fit2, tracks[1], 10.0)
    assert np.allclose(pos, (10.0, 0.0, 0.3), atol=1e-4)
    assert np.allclose(mom, (0.0, 1.0, 0.0), atol=1e-4)


def test_project_follows_rotation_sense():
    fit = HelixFit(20.0, 10.0, 20.0, 0.0, 0.0)
    tr = Track(1, np.array([10.0, 0.0, 0.0]), np.array([-2.0, 0.0, 0.5]), -1, 1.0, 0)
    pos, mom = project_to_radius(fit, tr, 10.0)
    assert np.allclose(mom, (-2.0, 0.0, 0.5), atol=1e-9)


def test_project_prefers_crossing_ahead():
    # circle centred (10, 20), radius 20, meets r = 10 at (10, 0) and (-6, 8)
    fit = HelixFit(20.0, 10.0, 20.0, 0.0, 0.0)
    a = -2.3
    ref = np.array([10.0 + 20.0 * math.cos(a), 20.0 + 20.0 * math.sin(a), 0.0])
    ccw = np.array([-math.sin(a), math.cos(a), 0.0])

    # (-6, 8) is nearer but behind the track
    pos, mom = project_to_radius(fit, Track(1, ref, ccw, 1, 1.0, 0), 10.0)
    assert np.allclose(pos, (10.0, 0.0, 0.0), atol=1e-9)
    assert np.allclose(mom, (1.0, 0.0, 0.0), atol=1e-9)

    pos, mom = project_to_radius(fit, Track(1, ref, -ccw, -1, 1.0, 0), 10.0)
    assert np.allclose(pos, (-6.0, 8.0, 0.0), atol=1e-9)
    assert np.allclose(mom, (-0.6, 0.8, 0.0), atol=1e-9)


def test_project_falls_back_to_nearest_crossing():
    fit = HelixFit(20.0, 10.0, 20.0, 0.0, 0.0)
    tr = Track(1, np.array([30.0, -30.0, 0.0]), np.array([1.0, 0.0, 0.0]), 1, 1.0, 0)
    pos, _ = project_to_radius(fit, tr, 10.0)
    assert np.allclose(pos, (10.0, 0.0, 0.0), atol=1e-9)


def test_project_unreachable_radius():
    fit = HelixFit(20.0, 10.0, 20.0, 0.0, 0.0)
    tr = Track(1, np.array([10.0, 0.0, 0.0]), np.array([1.0, 0.0, 0.0]), 1, 1.0, 0)
    assert project_to_radius(fit, tr, 50.0) is None
    assert project_to_radius(fit, tr, 1.0) is None


def test_impact_parameters():
    tr = Track(1, np.array([0.0, 1.0, 2.0]), np.array([1.0, 0.0, 0.0]), 1, 1.0, 0,
               covariance=np.diag([4.0, 9.0, 16.0, 1.0, 1.0, 1.0]))
    dca_xy, dca_z, sxy, sz = impact_parameters(tr, Vertex(0, (0.0, 0.0, 0.0)))
    assert dca_xy == pytest.approx(1.0)
    assert dca_z == pytest.approx(2.0)
    assert sxy == pytest.approx(3.0)
    assert sz == pytest.approx(4.0)

    dca_xy, dca_z, _, _ = impact_parameters(tr, Vertex(0, (0.0, 0.5, 1.5)))
    assert dca_xy == pytest.approx(0.5)
    assert dca_z == pytest.approx(0.5)


def test_impact_parameters_without_vertex_or_covariance():
    tr = Track(1, np.array([0.0, 1.0, 2.0]), np.array([1.0, 0.0, 0.0]), 1, 1.0, 0)
    assert all(math.isnan(v) for v in impact_parameters(tr, None))
    dca_xy, dca_z, sxy, sz = impact_parameters(tr, Vertex(0, (0.0, 0.0, 0.0)))
    assert dca_xy == pytest.approx(1.0)
    assert math.isnan(sxy) and math.isnan(sz)
