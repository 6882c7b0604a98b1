import math
import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import numpy as np
import pytest

from conftest import make_pair_event
from tpc_reco.config import ELECTRON_MASS, PION_MASS, VertexFinderConfig
from tpc_reco.io import candidates_to_frame
from tpc_reco.observers import HistogramObserver
from tpc_reco.records import MissingCollaboratorError
from tpc_reco.vertexing import SecondaryVertexFinder, VertexFinderStatistics, invariant_mass_pt


def _config(**overrides):
    opts = dict(
        max_intersection_radius=15.0,
        two_track_dcacut=0.1,
        track_dcaxy_cut=0.0,
        track_dcaz_cut=0.0,
        require_silicon=False,
        projected_track_z_cut=1.0,
        min_path_cut=0.1,
    )
    opts.update(overrides)
    return VertexFinderConfig(**opts)


def _run(event, **overrides):
    tracks, clusters, vertices = event
    finder = SecondaryVertexFinder(clusters, vertices, _config(**overrides))
    return finder, finder.process_event(tracks)


def test_invariant_mass_pt():
    m, pt = invariant_mass_pt((1.0, 0.0, 0.0), (-1.0, 0.0, 0.0), 0.0)
    assert m == pytest.approx(2.0)
    assert pt == pytest.approx(0.0)
    m, pt = invariant_mass_pt((0.0, 0.0, 0.0), (0.0, 0.0, 0.0), PION_MASS)
    assert m == pytest.approx(2 * PION_MASS)
    m, pt = invariant_mass_pt((1.0, 0.0, 0.0), (0.0, 1.0, 0.0), PION_MASS)
    assert m == pytest.approx(math.sqrt(2.0 + 4 * PION_MASS ** 2))
    assert pt == pytest.approx(math.sqrt(2.0))


def test_crossing_pair_is_found():
    finder, candidates = _run(make_pair_event(0.05))
    assert len(candidates) == 1
    c = candidates[0]
    assert (c.track1_id, c.track2_id) == (1, 2)
    assert (c.charge1, c.charge2) == (1, -1)
    assert c.intersection_index == 0
    assert c.intersection_radius == pytest.approx(10.0, abs=1e-4)
    assert abs(c.pair_dca) == pytest.approx(0.05, abs=1e-4)
    assert c.mass == pytest.approx(math.sqrt(2.0 + 4 * PION_MASS ** 2), abs=1e-4)
    assert c.pt == pytest.approx(math.sqrt(2.0), abs=1e-4)
    assert c.decay_length == pytest.approx(math.hypot(10.0, 0.025), abs=1e-3)
    assert np.allclose(c.decay_vertex, (10.0, 0.0, 0.025), atol=1e-3)
    assert not c.track1_silicon and not c.track2_silicon
    assert c.dca_xy2 == pytest.approx(10.0)
    assert c.dca_z2 == pytest.approx(0.05)

    s = finder.end_run()
    assert s.tracks == 2
    assert s.tracks_passing == 2
    assert s.pairs_tested == 1
    assert s.pairs_fitted == 1
    # the second circle crossing (26, 8) is beyond the radius cut
    assert s.intersections == 1
    assert s.candidates == 1


def test_separated_pair_fails_dca_cut():
    finder, candidates = _run(make_pair_event(0.5))
    assert candidates == []
    assert finder.stats.z_matched == 1
    assert finder.stats.dca_matched == 0


def test_projected_z_cut():
    _, candidates = _run(make_pair_event(0.05), projected_track_z_cut=0.01)
    assert candidates == []


def test_min_path_cut():
    _, candidates = _run(make_pair_event(0.05), min_path_cut=20.0)
    assert candidates == []


def test_intersection_radius_cut():
    finder, candidates = _run(make_pair_event(0.05), max_intersection_radius=5.0)
    assert candidates == []
    assert finder.stats.intersections == 0


def test_electron_hypothesis():
    _, candidates = _run(make_pair_event(0.05), use_electrons=True)
    assert candidates[0].mass == pytest.approx(math.sqrt(2.0 + 4 * ELECTRON_MASS ** 2), abs=1e-4)


def test_same_charge_pair_is_skipped():
    finder, candidates = _run(make_pair_event(0.05, charge2=1))
    assert candidates == []
    assert finder.stats.pairs_tested == 0


def test_silicon_requirement():
    _, candidates = _run(make_pair_event(0.05), require_silicon=True)
    assert candidates == []
    _, candidates = _run(make_pair_event(0.05, silicon=[]), require_silicon=True)
    assert len(candidates) == 1
    assert candidates[0].track1_silicon and candidates[0].track2_silicon


def test_quality_and_cluster_count_cuts():
    _, candidates = _run(make_pair_event(0.05, quality=20.0))
    assert candidates == []
    _, candidates = _run(make_pair_event(0.05), min_tpc_clusters=25)
    assert candidates == []


def test_prompt_track_is_rejected():
    # track 1 points back to the vertex, so its transverse impact parameter is zero
    _, candidates = _run(make_pair_event(0.05), track_dcaxy_cut=0.02)
    assert candidates == []


def test_vertex_without_tracks_is_skipped():
    _, candidates = _run(make_pair_event(0.05, vertex_tracks=()))
    assert candidates == []


def test_track_with_unknown_vertex_is_rejected():
    finder, candidates = _run(make_pair_event(0.05, vertex_id2=99))
    assert candidates == []
    assert finder.stats.tracks_passing == 1


def test_too_few_clusters_cannot_be_fitted():
    finder, candidates = _run(make_pair_event(0.05, n_clusters=2), min_tpc_clusters=0)
    assert candidates == []
    assert finder.stats.pairs_tested == 1
    assert finder.stats.pairs_fitted == 0


def test_missing_collaborators_raise():
    tracks, clusters, vertices = make_pair_event(0.05)
    with pytest.raises(MissingCollaboratorError):
        SecondaryVertexFinder(None, vertices).process_event(tracks)
    with pytest.raises(MissingCollaboratorError):
        SecondaryVertexFinder(clusters, None).process_event(tracks)
    with pytest.raises(MissingCollaboratorError):
        SecondaryVertexFinder(clusters, vertices).process_event(None)


def test_observer_and_table():
    tracks, clusters, vertices = make_pair_event(0.05)
    obs = HistogramObserver()
    finder = SecondaryVertexFinder(clusters, vertices, _config(), observer=obs)
    candidates = finder.process_event(tracks)
    assert obs.n_pairs == 1
    assert obs["recomass"].entries == 1

    df = candidates_to_frame(candidates)
    assert len(df) == 1
    for col in ("track1_id", "track2_id", "mass", "pt", "pair_dca", "decay_length",
                "pca1_x", "pca2_z", "pos1_x", "pos2_z", "p1_x", "p2_y", "dv_x", "vtx_z"):
        assert col in df.columns
    assert df.loc[0, "dv_x"] == pytest.approx(10.0, abs=1e-3)

    # track states projected to the intersection radius
    c = candidates[0]
    assert np.allclose(c.position1, (10.0, 0.0, 0.0), atol=1e-4)
    assert np.allclose(c.position2, (10.0, 0.0, 0.05), atol=1e-4)
    assert np.allclose(c.momentum1, (1.0, 0.0, 0.0), atol=1e-4)
    assert np.allclose(c.momentum2, (0.0, 1.0, 0.0), atol=1e-4)
    row = df.loc[0]
    assert (row["pos1_x"], row["pos1_y"]) == pytest.approx((10.0, 0.0), abs=1e-4)
    assert row["pos2_z"] == pytest.approx(0.05, abs=1e-4)
    assert candidates_to_frame([]).empty


def test_statistics_merge():
    a = VertexFinderStatistics(tracks=2, candidates=1)
    b = VertexFinderStatistics(tracks=3, pairs_tested=4, candidates=2)
    a.merge(b)
    assert a.tracks == 5
    assert a.pairs_tested == 4
    assert a.candidates == 3


def test_repeated_events_accumulate_statistics():
    tracks, clusters, vertices = make_pair_event(0.05)
    finder = SecondaryVertexFinder(clusters, vertices, _config())
    finder.process_event(tracks)
    finder.process_event(tracks)
    assert finder.stats.candidates == 2
    assert finder.stats.tracks == 4
