from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Mapping, MutableMapping, Union

try:
    import orjson as _orjson
except Exception:  # pragma: no cover
    _orjson = None

logger = logging.getLogger(__name__)

ELECTRON_MASS = 0.000511
PION_MASS = 0.13957


def _checked_kwargs(cls, data: Mapping[str, Any]) -> dict:
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(f"Unknown {cls.__name__} option(s): {', '.join(unknown)}")
    return dict(data)


@dataclass(slots=True)
class LaserConfig:
    r"""
    Settings of the laser residual processor.

    Attributes
    ----------
    max_dca : float
        Maximum hit-to-track distance (cm) for association.
    max_drphi, max_dz : float
        Residual windows (cm); recorded with each residual, not applied as cuts.
    max_zrange : float
        Second-traverse rejection window (cm) on :math:`|z - z_\mathrm{proj}|`
        and on the z-span of the hits kept in a layer.
    pedestal : float
        ADC pedestal subtracted from every hit.
    phibins, rbins, zbins : int
        Accumulation grid dimensions.
    """
    max_dca: float = 20.0
    max_drphi: float = 2.0
    max_dz: float = 2.0
    max_zrange: float = 10.0
    pedestal: float = 74.4
    phibins: int = 36
    rbins: int = 16
    zbins: int = 80

    def __post_init__(self) -> None:
        if self.max_dca <= 0.0:
            raise ValueError(f"max_dca must be positive, got {self.max_dca}")
        if self.max_zrange <= 0.0:
            raise ValueError(f"max_zrange must be positive, got {self.max_zrange}")
        for name in ("phibins", "rbins", "zbins"):
            if int(getattr(self, name)) < 1:
                raise ValueError(f"{name} must be >= 1")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "LaserConfig":
        return cls(**_checked_kwargs(cls, data))


@dataclass(slots=True)
class VertexFinderConfig:
    """
    Cut values of the secondary-vertex pair finder.

    Distances in cm, masses in GeV. ``decay_mass`` is the daughter mass
    hypothesis; ``use_electrons`` replaces it with the electron mass (photon
    conversions).
    """
    quality_cut: float = 10.0
    min_tpc_clusters: int = 20
    track_dcaxy_cut: float = 0.02
    track_dcaz_cut: float = 0.02
    max_intersection_radius: float = 40.0
    projected_track_z_cut: float = 0.5
    two_track_dcacut: float = 0.5
    min_path_cut: float = 0.2
    decay_mass: float = PION_MASS
    use_electrons: bool = False
    require_silicon: bool = True

    def __post_init__(self) -> None:
        if self.decay_mass < 0.0:
            raise ValueError(f"decay_mass must be >= 0, got {self.decay_mass}")
        if self.min_tpc_clusters < 0:
            raise ValueError(f"min_tpc_clusters must be >= 0, got {self.min_tpc_clusters}")

    @property
    def daughter_mass(self) -> float:
        return ELECTRON_MASS if self.use_electrons else self.decay_mass

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "VertexFinderConfig":
        return cls(**_checked_kwargs(cls, data))


@dataclass(slots=True)
class RunConfig:
    """Top-level configuration: ``{"laser": {...}, "vertex": {...}}``."""
    laser: LaserConfig = field(default_factory=LaserConfig)
    vertex: VertexFinderConfig = field(default_factory=VertexFinderConfig)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RunConfig":
        unknown = sorted(set(data) - {"laser", "vertex"})
        if unknown:
            raise ValueError(f"Unknown config section(s): {', '.join(unknown)}")
        return cls(
            laser=LaserConfig.from_dict(data.get("laser", {})),
            vertex=VertexFinderConfig.from_dict(data.get("vertex", {})),
        )

    def to_dict(self) -> dict:
        return {"laser": asdict(self.laser), "vertex": asdict(self.vertex)}


def load_config(config_path: Union[str, Path]) -> MutableMapping[str, dict]:
    r"""
    Parse one of the JSON inputs: a run configuration, a geometry
    description or an event file.

    Event files carry every hit or cluster of an event, so they go through
    :mod:`orjson` when it is installed.

    Raises
    ------
    ValueError
        If the file cannot be read or is not valid JSON. The message names
        the file.
    """
    config_path = Path(config_path)
    try:
        if _orjson is not None:
            return _orjson.loads(config_path.read_bytes())
        with config_path.open("r", encoding="utf-8") as f:
            return json.load(f)
    except Exception as e:
        raise ValueError(f"Failed to parse {config_path}: {e}") from e


def load_run_config(config_path: Union[str, Path, None]) -> RunConfig:
    """Read and validate a :class:`RunConfig`; defaults when ``config_path`` is ``None``."""
    if config_path is None:
        return RunConfig()
    cfg = RunConfig.from_dict(load_config(config_path))
    logger.info("Loaded configuration from %s", config_path)
    return cfg


def save_config(cfg: RunConfig, config_path: Union[str, Path]) -> None:
    with Path(config_path).open("w", encoding="utf-8") as f:
        json.dump(cfg.to_dict(), f, indent=2)
