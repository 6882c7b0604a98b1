__all__ = [
    "line_circle_intersection", "first_positive_intersection",
    "circle_circle_intersection", "skew_line_closest_approach",
    "delta_phi", "wrap_phi", "point_line_dca",
    "SpaceChargeMatrixContainer",
    "HitRecord", "LaserTrack", "TrackState", "Track", "Cluster", "Vertex",
    "TrackPairCandidate", "TpcRecoError", "MissingCollaboratorError",
    "CylinderLayerGeometry", "TpcGeometry", "default_tpc_geometry", "locate_gem_module",
    "DirectLaserReconstruction", "LaserRunStatistics",
    "HelixFit", "circle_fit_by_taubin", "fit_track", "project_to_radius", "impact_parameters",
    "SecondaryVertexFinder", "VertexFinderStatistics",
    "ReconstructionObserver", "HistogramObserver",
    "LaserConfig", "VertexFinderConfig", "RunConfig", "load_config",
]

# Geometry primitives
from .geometry import (
    line_circle_intersection,
    first_positive_intersection,
    circle_circle_intersection,
    skew_line_closest_approach,
    delta_phi,
    wrap_phi,
    point_line_dca,
)

# Accumulation grid
from .grid import SpaceChargeMatrixContainer

# Records & errors
from .records import (
    HitRecord,
    LaserTrack,
    TrackState,
    Track,
    Cluster,
    Vertex,
    TrackPairCandidate,
    TpcRecoError,
    MissingCollaboratorError,
)

# Detector description
from .detector import CylinderLayerGeometry, TpcGeometry, default_tpc_geometry, locate_gem_module

# Laser path
from .laser import DirectLaserReconstruction, LaserRunStatistics

# Vertex path
from .helix import HelixFit, circle_fit_by_taubin, fit_track, project_to_radius, impact_parameters
from .vertexing import SecondaryVertexFinder, VertexFinderStatistics

# Observers & configuration (plotting is imported lazily by the CLI)
from .observers import ReconstructionObserver, HistogramObserver
from .config import LaserConfig, VertexFinderConfig, RunConfig, load_config
