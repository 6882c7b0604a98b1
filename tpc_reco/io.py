from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Iterable, List, Mapping, NamedTuple, Tuple, Union

import numpy as np
import pandas as pd

from tpc_reco.config import load_config
from tpc_reco.detector import DEFAULT_DRIFT_VELOCITY, CylinderLayerGeometry, TpcGeometry, default_tpc_geometry
from tpc_reco.grid import SpaceChargeMatrixContainer
from tpc_reco.records import (
    Cluster,
    HitRecord,
    LaserTrack,
    MappingClusterSource,
    MappingVertexSource,
    Track,
    TrackPairCandidate,
    Vertex,
)

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

HIT_COLUMNS = ("layer", "side", "phibin", "tbin", "adc")


class VertexEvent(NamedTuple):
    tracks: List[Track]
    clusters: MappingClusterSource
    vertices: MappingVertexSource


def _require(block: Mapping[str, Any], key: str, what: str) -> Any:
    try:
        return block[key]
    except KeyError:
        raise KeyError(f"Missing '{key}' in {what}") from None


def _vec3(v: Any) -> np.ndarray:
    arr = np.asarray(v, dtype=np.float64)
    if arr.shape != (3,):
        raise ValueError(f"expected a 3-vector, got shape {arr.shape}")
    return arr


# ---------------------------------------------------------------------------
# geometry
# ---------------------------------------------------------------------------
def load_geometry(path: PathLike) -> TpcGeometry:
    """
    Read a geometry description.

    The file holds ``drift_velocity`` (cm/ns) and a ``layers`` list whose
    entries carry the :class:`CylinderLayerGeometry` fields. Without
    ``layers`` the nominal geometry is returned.
    """
    doc = load_config(path)
    v = float(doc.get("drift_velocity", DEFAULT_DRIFT_VELOCITY))
    layers = doc.get("layers")
    if not layers:
        logger.info("No layers in %s, using nominal TPC geometry", path)
        return default_tpc_geometry(drift_velocity=v)
    geoms = [CylinderLayerGeometry(**entry) for entry in layers]
    logger.info("Loaded %d TPC layers from %s", len(geoms), path)
    return TpcGeometry(geoms, drift_velocity=v)


# ---------------------------------------------------------------------------
# laser events
# ---------------------------------------------------------------------------
def hits_from_frame(df: pd.DataFrame) -> List[HitRecord]:
    """Build hits from a table with columns ``layer, side, phibin, tbin, adc`` (+ ``subsystem``)."""
    missing = [c for c in HIT_COLUMNS if c not in df.columns]
    if missing:
        raise KeyError(f"hit table is missing column(s): {', '.join(missing)}")
    subsystem = df["subsystem"].astype(str).to_numpy() if "subsystem" in df.columns else None
    hits = []
    for i, (layer, side, phibin, tbin, adc) in enumerate(
        df[list(HIT_COLUMNS)].itertuples(index=False, name=None)
    ):
        hits.append(HitRecord(
            layer=int(layer), side=int(side), phibin=int(phibin), tbin=int(tbin), adc=float(adc),
            subsystem=subsystem[i] if subsystem is not None else "tpc",
        ))
    return hits


def _laser_track(entry: Mapping[str, Any], idx: int) -> LaserTrack:
    what = f"laser track #{idx}"
    return LaserTrack(
        track_id=int(entry.get("id", idx)),
        origin=_vec3(_require(entry, "origin", what)),
        direction=_vec3(_require(entry, "direction", what)),
        charge=int(entry.get("charge", 0)),
        quality=float(entry.get("quality", 0.0)),
    )


def load_laser_event(path: PathLike) -> Tuple[List[LaserTrack], List[HitRecord]]:
    """
    Read one laser event: ``{"tracks": [...], "hits": [...]}``.

    ``hits`` is either a list of records or the path of a CSV table relative
    to the event file (see :func:`hits_from_frame`).
    """
    path = Path(path)
    doc = load_config(path)
    tracks = [_laser_track(t, i) for i, t in enumerate(_require(doc, "tracks", str(path)))]
    raw_hits = _require(doc, "hits", str(path))
    if isinstance(raw_hits, str):
        hits = hits_from_frame(pd.read_csv(path.parent / raw_hits))
    else:
        hits = hits_from_frame(pd.DataFrame(raw_hits)) if raw_hits else []
    logger.info("Loaded %d laser tracks and %d hits from %s", len(tracks), len(hits), path.name)
    return tracks, hits


# ---------------------------------------------------------------------------
# vertex events
# ---------------------------------------------------------------------------
def _cluster(entry: Mapping[str, Any]) -> Cluster:
    return Cluster(
        key=int(_require(entry, "key", "cluster")),
        position=tuple(float(v) for v in _vec3(_require(entry, "position", "cluster"))),
        errors=tuple(float(v) for v in entry.get("errors", (0.0, 0.0, 0.0))),
        subsystem=str(entry.get("subsystem", "tpc")),
    )


def _vertex(entry: Mapping[str, Any]) -> Vertex:
    return Vertex(
        vertex_id=int(_require(entry, "id", "vertex")),
        position=tuple(float(v) for v in _vec3(_require(entry, "position", "vertex"))),
        track_ids=tuple(int(t) for t in entry.get("track_ids", ())),
    )


def _track(entry: Mapping[str, Any]) -> Track:
    tid = int(_require(entry, "id", "track"))
    what = f"track {tid}"
    silicon = entry.get("silicon_cluster_keys")
    cov = entry.get("covariance")
    return Track(
        track_id=tid,
        position=_vec3(_require(entry, "position", what)),
        momentum=_vec3(_require(entry, "momentum", what)),
        charge=int(_require(entry, "charge", what)),
        quality=float(entry.get("quality", 0.0)),
        vertex_id=int(entry.get("vertex_id", 0)),
        tpc_cluster_keys=[int(k) for k in entry.get("tpc_cluster_keys", ())],
        silicon_cluster_keys=None if silicon is None else [int(k) for k in silicon],
        covariance=None if cov is None else np.asarray(cov, dtype=np.float64),
    )


def load_vertex_event(path: PathLike) -> VertexEvent:
    """Read ``{"tracks": [...], "clusters": [...], "vertices": [...]}``."""
    path = Path(path)
    doc = load_config(path)
    clusters = MappingClusterSource([_cluster(c) for c in doc.get("clusters", ())])
    vertices = MappingVertexSource([_vertex(v) for v in doc.get("vertices", ())])
    tracks = [_track(t) for t in _require(doc, "tracks", str(path))]
    logger.info(
        "Loaded %d tracks, %d clusters, %d vertices from %s",
        len(tracks), len(clusters), len(vertices), path.name,
    )
    return VertexEvent(tracks, clusters, vertices)


# ---------------------------------------------------------------------------
# outputs
# ---------------------------------------------------------------------------
def save_grid(grid: SpaceChargeMatrixContainer, path: PathLike) -> Path:
    """
    Write the accumulated grid.

    ``.csv`` writes the non-empty cells (:meth:`SpaceChargeMatrixContainer.to_frame`);
    anything else writes a compressed ``.npz`` with the dense arrays.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    if path.suffix == ".csv":
        grid.to_frame().to_csv(path, index=False)
    else:
        if path.suffix != ".npz":
            path = path.with_suffix(".npz")
        np.savez_compressed(
            path,
            dimensions=np.asarray(grid.get_grid_dimensions(), dtype=np.int64),
            lhs=grid.lhs,
            rhs=grid.rhs,
            entries=grid.entries,
        )
    logger.info("Wrote grid to %s", path)
    return path


def load_grid(path: PathLike) -> SpaceChargeMatrixContainer:
    """Read a grid written by :func:`save_grid` in ``.npz`` form."""
    with np.load(Path(path)) as data:
        phibins, rbins, zbins = (int(v) for v in data["dimensions"])
        grid = SpaceChargeMatrixContainer(phibins, rbins, zbins)
        cells = np.flatnonzero(data["entries"])
        for c in cells:
            grid.add_normal_equations(int(c), data["lhs"][c], data["rhs"][c])
            grid.add_to_entries(int(c), int(data["entries"][c]) - 1)
    return grid


def candidates_to_frame(candidates: Iterable[TrackPairCandidate]) -> pd.DataFrame:
    return pd.DataFrame([c.as_row() for c in candidates])
