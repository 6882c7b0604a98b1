import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import pytest

from tpc_reco.config import (
    ELECTRON_MASS,
    PION_MASS,
    LaserConfig,
    RunConfig,
    VertexFinderConfig,
    load_config,
    load_run_config,
    save_config,
)


def test_defaults():
    cfg = RunConfig()
    assert cfg.laser.max_dca == 20.0
    assert cfg.laser.max_zrange == 10.0
    assert (cfg.laser.phibins, cfg.laser.rbins, cfg.laser.zbins) == (36, 16, 80)
    assert cfg.vertex.decay_mass == PION_MASS
    assert cfg.vertex.daughter_mass == PION_MASS
    assert cfg.vertex.require_silicon


def test_daughter_mass_for_conversions():
    assert VertexFinderConfig(use_electrons=True).daughter_mass == ELECTRON_MASS


def test_from_dict_overrides():
    cfg = RunConfig.from_dict({"laser": {"max_dca": 5.0, "zbins": 40}, "vertex": {"quality_cut": 3.0}})
    assert cfg.laser.max_dca == 5.0
    assert cfg.laser.zbins == 40
    assert cfg.laser.rbins == 16
    assert cfg.vertex.quality_cut == 3.0
    assert RunConfig.from_dict({}) == RunConfig()


def test_unknown_keys_are_rejected():
    with pytest.raises(ValueError, match="max_dcaa"):
        RunConfig.from_dict({"laser": {"max_dcaa": 1.0}})
    with pytest.raises(ValueError, match="tracking"):
        RunConfig.from_dict({"tracking": {}})


def test_invalid_values_are_rejected():
    with pytest.raises(ValueError):
        LaserConfig(max_dca=0.0)
    with pytest.raises(ValueError):
        LaserConfig(max_zrange=-1.0)
    with pytest.raises(ValueError):
        LaserConfig(phibins=0)
    with pytest.raises(ValueError):
        VertexFinderConfig(decay_mass=-0.1)
    with pytest.raises(ValueError):
        VertexFinderConfig(min_tpc_clusters=-1)


def test_save_and_load(tmp_path):
    cfg = RunConfig(laser=LaserConfig(max_dca=3.5), vertex=VertexFinderConfig(use_electrons=True))
    path = tmp_path / "run.json"
    save_config(cfg, path)
    assert load_config(path)["laser"]["max_dca"] == 3.5
    assert load_run_config(path) == cfg
    assert load_run_config(None) == RunConfig()


def test_load_config_reports_bad_json(tmp_path):
    path = tmp_path / "broken.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(ValueError, match="Failed to parse"):
        load_config(path)
    with pytest.raises(ValueError):
        load_config(tmp_path / "missing.json")
