#!/usr/bin/env python3
r"""
TPC reconstruction runner (headless-safe, fast JSON I/O).

Two independent passes share the geometry primitives of :mod:`tpc_reco.geometry`:

``laser``
    Reads laser events (straight tracks + raw TPC hits), accumulates the
    residual normal equations into the :math:`(\phi, r, z)` space-charge grid
    and writes the grid for the external distortion solver.

``vertex``
    Reads fitted tracks, clusters and primary vertices, runs the pairwise
    secondary-vertex search and writes one row per candidate.

CLI overview
------------
See :func:`build_parser`. Typical usage:

.. code-block:: bash

   tpc-reco laser --geometry geom.json --event laser_*.json --grid-out grid.npz --plot plots/
   tpc-reco vertex --event event.json --config run.json --out pairs.csv -v
"""

from __future__ import annotations

import argparse
import logging
import os
import time
from glob import glob
from pathlib import Path
from typing import List, Optional, Sequence

import pandas as pd

import tpc_reco.io as tpc_io
from tpc_reco.config import load_run_config
from tpc_reco.detector import default_tpc_geometry
from tpc_reco.laser import DirectLaserReconstruction
from tpc_reco.observers import HistogramObserver
from tpc_reco.records import TpcRecoError
from tpc_reco.vertexing import SecondaryVertexFinder


def build_parser() -> argparse.ArgumentParser:
    r"""
    Construct the command-line interface.

    Returns
    -------
    argparse.ArgumentParser
        Parser with the ``laser`` and ``vertex`` sub-commands.

    Notes
    -----
    Options common to both sub-commands:

    - ``--event``: one or more event JSON files (globs are expanded).
    - ``--config``: JSON run configuration with ``laser``/``vertex`` blocks.
    - ``--plot DIR``: write diagnostic histograms as PNG files into ``DIR``.
    - ``--show``: also display the figures (needs an interactive backend).
    - ``-v``: debug logging.
    """
    p = argparse.ArgumentParser(description="TPC laser residual accumulation and secondary-vertex finding.")
    sub = p.add_subparsers(dest="command", required=True)

    def _common(sp: argparse.ArgumentParser) -> None:
        sp.add_argument("-e", "--event", type=str, nargs="+", required=True,
                        help="Event JSON file(s); glob patterns are expanded.")
        sp.add_argument("--config", type=str, default=None,
                        help="Path to JSON run configuration (default: built-in defaults).")
        sp.add_argument("--plot", type=str, default=None, metavar="DIR",
                        help="Write diagnostic plots to this directory.")
        sp.add_argument("--show", action="store_true", default=False,
                        help="Display plots interactively (default: False).")
        sp.add_argument("-v", "--verbose", action="store_true",
                        help="Enable verbose logging.")

    lp = sub.add_parser("laser", help="Accumulate laser residuals into the space-charge grid.")
    _common(lp)
    lp.add_argument("-g", "--geometry", type=str, default=None,
                    help="Geometry JSON (default: nominal 48-layer TPC).")
    lp.add_argument("--grid-out", type=str, default="grid.npz",
                    help="Output grid file, .npz (dense) or .csv (filled cells). Default: grid.npz")

    vp = sub.add_parser("vertex", help="Find secondary-vertex track pairs.")
    _common(vp)
    vp.add_argument("-o", "--out", type=str, default="pairs.csv",
                    help="Output CSV with one row per candidate (default: pairs.csv).")
    return p


def setup_logging(verbose: bool = False) -> None:
    """
    Root logging for the ``laser`` and ``vertex`` commands.

    ``-v`` turns on the per-layer and per-pair rejection messages of
    :mod:`tpc_reco.laser` and :mod:`tpc_reco.vertexing`. Numba's compiler
    chatter stays at ``WARNING`` either way.
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%H:%M:%S",
    )
    logging.getLogger("numba").setLevel(logging.WARNING)


def apply_plotting_guard(enable_plots: bool) -> None:
    """
    Switch Matplotlib to ``Agg`` unless ``--show`` was given.

    Calibration runs usually go to batch nodes and only write the diagnostic
    PNGs under ``--plot``; there ``plt.show()`` becomes a no-op. Call this
    before :mod:`tpc_reco.plotting` is imported.
    """
    if enable_plots:
        return
    os.environ.setdefault("MPLBACKEND", "Agg")
    import matplotlib
    matplotlib.use("Agg", force=True)
    import matplotlib.pyplot as _plt  # noqa: WPS433
    _plt.ioff()
    _plt.show = lambda *a, **k: None  # type: ignore[assignment]


def _resolve_event_paths(patterns: Sequence[str]) -> List[Path]:
    """Expand globs, keep literal paths, drop duplicates while keeping order."""
    out: List[Path] = []
    for s in patterns:
        if any(ch in s for ch in "*?[]"):
            out.extend(Path(x) for x in sorted(glob(s)))
        else:
            out.append(Path(s))
    unique: List[Path] = []
    for p in out:
        if p not in unique:
            unique.append(p)
    return unique


def run_laser(args: argparse.Namespace) -> int:
    r"""
    Laser pass: **geometry → events → residual accumulation → grid dump**.

    Returns
    -------
    int
        Process exit code.
    """
    cfg = load_run_config(args.config)
    geometry = tpc_io.load_geometry(args.geometry) if args.geometry else default_tpc_geometry()
    observer = HistogramObserver(grid_dimensions=(cfg.laser.phibins, cfg.laser.rbins, cfg.laser.zbins))
    reco = DirectLaserReconstruction(geometry, cfg.laser, observer=observer)

    t0 = time.perf_counter()
    for path in _resolve_event_paths(args.event):
        tracks, hits = tpc_io.load_laser_event(path)
        accepted = reco.process_event(tracks, hits)
        logging.info("%s: %d clusters accepted", path.name, accepted)
    stats = reco.end_run()
    logging.info("Laser pass finished in %.2fs", time.perf_counter() - t0)

    tpc_io.save_grid(reco.grid, args.grid_out)

    if args.plot or args.show:
        import tpc_reco.plotting as tpc_plot
        tpc_plot.plot_laser_diagnostics(observer, args.plot, show=args.show)
        tpc_plot.plot_counter_summary(
            {
                "total hits": stats.total_hits,
                "matched hits": stats.matched_hits,
                "accepted clusters": stats.accepted_clusters,
            },
            title="Laser summary", out_dir=args.plot, show=args.show,
        )
    return 0


def run_vertex(args: argparse.Namespace) -> int:
    r"""
    Vertex pass: **events → pair search → candidate table**.

    Returns
    -------
    int
        Process exit code.
    """
    cfg = load_run_config(args.config)
    observer = HistogramObserver()

    frames = []
    finder = None
    t0 = time.perf_counter()
    for ievt, path in enumerate(_resolve_event_paths(args.event)):
        event = tpc_io.load_vertex_event(path)
        if finder is None:
            finder = SecondaryVertexFinder(event.clusters, event.vertices, cfg.vertex, observer=observer)
        else:
            finder.clusters, finder.vertices = event.clusters, event.vertices
        candidates = finder.process_event(event.tracks)
        logging.info("%s: %d candidates", path.name, len(candidates))
        df = tpc_io.candidates_to_frame(candidates)
        if not df.empty:
            df.insert(0, "event", ievt)
            frames.append(df)
    if finder is None:
        logging.error("No events to process.")
        return 1
    stats = finder.end_run()
    logging.info("Vertex pass finished in %.2fs", time.perf_counter() - t0)

    out = Path(args.out)
    out.parent.mkdir(parents=True, exist_ok=True)
    table = pd.concat(frames, ignore_index=True) if frames else pd.DataFrame()
    table.to_csv(out, index=False)
    logging.info("Wrote %d candidates to %s", len(table), out)

    if args.plot or args.show:
        import tpc_reco.plotting as tpc_plot
        tpc_plot.plot_vertex_diagnostics(observer, args.plot, show=args.show)
        tpc_plot.plot_counter_summary(
            {
                "pairs tested": stats.pairs_tested,
                "pairs fitted": stats.pairs_fitted,
                "intersections": stats.intersections,
                "z matched": stats.z_matched,
                "dca matched": stats.dca_matched,
                "candidates": stats.candidates,
            },
            title="Vertex summary", out_dir=args.plot, show=args.show,
        )
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    r"""
    Entry point of the ``tpc-reco`` command.

    Parses the CLI, configures logging and the plotting backend, then
    dispatches to :func:`run_laser` or :func:`run_vertex`. Reconstruction
    errors (a missing input service) are logged and turned into exit code 2.
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)
    apply_plotting_guard(args.show)

    runner = run_laser if args.command == "laser" else run_vertex
    try:
        return runner(args)
    except TpcRecoError as e:
        logging.error("%s", e)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
