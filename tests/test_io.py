import json
import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import numpy as np
import pandas as pd
import pytest

from conftest import ZERO_Z_TBIN
from tpc_reco.grid import SpaceChargeMatrixContainer
from tpc_reco.io import (
    hits_from_frame,
    load_geometry,
    load_grid,
    load_laser_event,
    load_vertex_event,
    save_grid,
)


def _write(path, doc):
    path.write_text(json.dumps(doc), encoding="utf-8")
    return path


def test_load_geometry_layers(tmp_path):
    doc = {
        "drift_velocity": 0.0075,
        "layers": [
            {"layer": 7, "radius": 30.5, "thickness": 1.0, "n_phibins": 1152,
             "phi_min": -3.14159, "phi_step": 0.005454, "n_tbins": 360, "t_min": -26.5},
        ],
    }
    geo = load_geometry(_write(tmp_path / "geom.json", doc))
    assert len(geo) == 1
    assert geo.drift_velocity == 0.0075
    assert geo.get_layer(7).t_min == -26.5
    assert geo.get_layer(7).t_step == 53.0


def test_load_geometry_falls_back_to_nominal(tmp_path):
    geo = load_geometry(_write(tmp_path / "geom.json", {"drift_velocity": 0.007}))
    assert len(geo) == 48
    assert geo.drift_velocity == 0.007


def test_hits_from_frame():
    df = pd.DataFrame({"layer": [7, 8], "side": [1, 0], "phibin": [3, 4], "tbin": [10, 11],
                       "adc": [100.0, 90.5], "subsystem": ["tpc", "mvtx"]})
    hits = hits_from_frame(df)
    assert [h.layer for h in hits] == [7, 8]
    assert hits[1].adc == 90.5
    assert hits[1].subsystem == "mvtx"
    assert hits_from_frame(df.drop(columns="subsystem"))[1].subsystem == "tpc"
    with pytest.raises(KeyError, match="adc"):
        hits_from_frame(df.drop(columns="adc"))


def test_load_laser_event_inline_hits(tmp_path):
    doc = {
        "tracks": [{"id": 4, "origin": [0, 0, 100], "direction": [1, 0, -0.5]}],
        "hits": [{"layer": 7, "side": 1, "phibin": 0, "tbin": ZERO_Z_TBIN, "adc": 120.0}],
    }
    tracks, hits = load_laser_event(_write(tmp_path / "evt.json", doc))
    assert len(tracks) == 1
    assert tracks[0].track_id == 4
    assert np.allclose(tracks[0].direction, (1.0, 0.0, -0.5))
    assert tracks[0].states == []
    assert len(hits) == 1 and hits[0].tbin == ZERO_Z_TBIN


def test_load_laser_event_csv_hits(tmp_path):
    pd.DataFrame({"layer": [7, 7, 8], "side": [1, 1, 1], "phibin": [0, 1, 0],
                  "tbin": [5, 5, 6], "adc": [80.0, 81.0, 82.0]}).to_csv(tmp_path / "hits.csv", index=False)
    doc = {"tracks": [{"origin": [0, 0, 0], "direction": [0, 1, 0]}], "hits": "hits.csv"}
    tracks, hits = load_laser_event(_write(tmp_path / "evt.json", doc))
    assert tracks[0].track_id == 0
    assert len(hits) == 3
    assert hits[2].layer == 8


def test_load_laser_event_requires_tracks(tmp_path):
    with pytest.raises(KeyError, match="tracks"):
        load_laser_event(_write(tmp_path / "evt.json", {"hits": []}))
    with pytest.raises(KeyError, match="origin"):
        load_laser_event(_write(tmp_path / "evt2.json", {"tracks": [{"direction": [1, 0, 0]}], "hits": []}))


def test_load_vertex_event(tmp_path):
    doc = {
        "clusters": [
            {"key": 11, "position": [1.0, 2.0, 3.0], "subsystem": "intt"},
            {"key": 12, "position": [4.0, 5.0, 6.0]},
        ],
        "vertices": [{"id": 0, "position": [0.0, 0.0, 0.1], "track_ids": [1, 2]}],
        "tracks": [
            {"id": 1, "position": [1, 0, 0], "momentum": [0, 1, 0], "charge": 1,
             "quality": 2.5, "vertex_id": 0, "tpc_cluster_keys": [11, 12],
             "silicon_cluster_keys": [5], "covariance": np.eye(6).tolist()},
            {"id": 2, "position": [0, 1, 0], "momentum": [1, 0, 0], "charge": -1},
        ],
    }
    event = load_vertex_event(_write(tmp_path / "evt.json", doc))
    assert len(event.tracks) == 2
    assert len(event.clusters) == 2
    assert event.clusters.get(11).subsystem == "intt"
    assert event.clusters.get(12).position == (4.0, 5.0, 6.0)
    assert event.vertices.get(0).track_ids == (1, 2)
    t1, t2 = event.tracks
    assert t1.has_silicon_seed and not t2.has_silicon_seed
    assert t1.covariance.shape == (6, 6)
    assert t2.covariance is None
    assert t1.tpc_cluster_keys == [11, 12]
    assert t2.quality == 0.0


def test_grid_npz_round_trip(tmp_path):
    g = SpaceChargeMatrixContainer(6, 4, 5)
    g.add_normal_equations(7, np.eye(3), [1.0, 2.0, 3.0])
    g.add_normal_equations(7, np.eye(3), [1.0, 2.0, 3.0])
    g.add_normal_equations(30, 2 * np.eye(3), [0.0, 0.0, 1.0])

    path = save_grid(g, tmp_path / "out" / "grid")
    assert path.suffix == ".npz"
    loaded = load_grid(path)
    assert loaded.get_grid_dimensions() == (6, 4, 5)
    assert np.array_equal(loaded.entries, g.entries)
    assert np.allclose(loaded.lhs, g.lhs)
    assert np.allclose(loaded.rhs, g.rhs)


def test_grid_csv(tmp_path):
    g = SpaceChargeMatrixContainer(6, 4, 5)
    g.add_normal_equations(7, np.eye(3), [1.0, 2.0, 3.0])
    path = save_grid(g, tmp_path / "grid.csv")
    df = pd.read_csv(path)
    pd.testing.assert_frame_equal(df, g.to_frame(), check_dtype=False)
