import logging
from pathlib import Path
from typing import List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import matplotlib.pyplot as plt
from matplotlib.colors import LogNorm

from tpc_reco.observers import Histogram, HistogramObserver

PathLike = Union[str, Path]

LASER_HISTOGRAMS: Tuple[str, ...] = (
    "dca_layer",
    "deltarphi_layer_north",
    "deltarphi_layer_south",
    "deltaz_layer",
    "deltar_r",
    "dca_path",
    "dz_z",
    "xy",
    "xy_pca",
    "zr",
    "zr_pca",
    "xz",
    "xz_pca",
    "deltheta_delphi",
)


def _show_and_close(fig, *, do_show: bool = True, save_path: Optional[Path] = None) -> None:
    r"""
    Save and/or show a Matplotlib figure, then always close it.

    Parameters
    ----------
    fig : matplotlib.figure.Figure
        Figure object to display and close.
    do_show : bool, optional
        If ``True`` (default) call ``plt.show()`` before closing.
    save_path : pathlib.Path, optional
        Written with :meth:`~matplotlib.figure.Figure.savefig` when given.

    Notes
    -----
    ``tight_layout`` and ``show`` failures are ignored so the helper can be
    used uniformly in batch jobs where ``plt.show()`` is patched to a no-op.
    """
    try:
        fig.tight_layout()
    except Exception:
        pass
    if save_path is not None:
        fig.savefig(save_path, dpi=120)
    if do_show:
        try:
            plt.show()
        except Exception:
            pass
    plt.close(fig)


def _labels(hist: Histogram) -> List[str]:
    parts = hist.title.split(";")
    return (parts[1:] + ["", "", ""])[:3]


def plot_histogram_1d(hist: Histogram, *, ax=None, log: bool = False) -> None:
    """Step plot of a 1D :class:`Histogram`."""
    if hist.ndim != 1:
        raise ValueError(f"{hist.name} is {hist.ndim}D")
    own = ax is None
    if own:
        fig, ax = plt.subplots(figsize=(6.4, 4.2))
    edges = hist.edges[0]
    ax.stairs(hist.counts, edges)
    xlabel, ylabel, _ = _labels(hist)
    ax.set_xlabel(xlabel)
    ax.set_ylabel(ylabel or "entries")
    ax.set_title(hist.name)
    if log:
        ax.set_yscale("log")
    if own:
        _show_and_close(fig)


def plot_histogram_2d(hist: Histogram, *, ax=None, log: bool = True) -> None:
    r"""
    Colour map of a 2D :class:`Histogram`.

    Empty bins are left blank. With ``log=True`` the colour scale is
    logarithmic, which suits residual distributions spanning several decades.
    """
    if hist.ndim != 2:
        raise ValueError(f"{hist.name} is {hist.ndim}D")
    own = ax is None
    if own:
        fig, ax = plt.subplots(figsize=(6.8, 5.0))
    counts = np.ma.masked_less_equal(hist.counts.T, 0.0)
    xe, ye = hist.edges
    norm = LogNorm() if (log and counts.count() > 0) else None
    mesh = ax.pcolormesh(xe, ye, counts, norm=norm, shading="flat")
    plt.colorbar(mesh, ax=ax, label="entries")
    xlabel, ylabel, _ = _labels(hist)
    ax.set_xlabel(xlabel)
    ax.set_ylabel(ylabel)
    ax.set_title(hist.name)
    if own:
        _show_and_close(fig)


def plot_entries_projection(hist: Histogram, *, axis: int = 2, ax=None) -> None:
    r"""
    Project the 3D :math:`(\phi, r, z)` entries histogram along ``axis`` and
    draw the remaining two axes.
    """
    if hist.ndim != 3:
        raise ValueError(f"{hist.name} is {hist.ndim}D")
    keep = [i for i in range(3) if i != axis]
    proj = Histogram(
        f"{hist.name}_proj{axis}",
        ";" + ";".join(_labels(hist)[i] for i in keep),
        [(len(hist.edges[i]) - 1, hist.edges[i][0], hist.edges[i][-1]) for i in keep],
    )
    proj.counts = hist.counts.sum(axis=axis)
    plot_histogram_2d(proj, ax=ax, log=False)


def _save(fig, out_dir: Optional[Path], name: str, show: bool) -> None:
    path = None
    if out_dir is not None:
        out_dir.mkdir(parents=True, exist_ok=True)
        path = out_dir / f"{name}.png"
    _show_and_close(fig, do_show=show, save_path=path)


def plot_laser_diagnostics(
    observer: HistogramObserver,
    out_dir: Optional[PathLike] = None,
    *,
    show: bool = False,
    names: Sequence[str] = LASER_HISTOGRAMS,
) -> None:
    """
    Render the laser residual histograms, one figure each, plus the
    per-laser GEM module / layer counts and the grid occupancy.
    """
    out = Path(out_dir) if out_dir is not None else None
    logging.info("Plotting %d laser diagnostic histograms...", len(names))
    for name in names:
        hist = observer[name]
        if hist.entries == 0:
            logging.debug("histogram %s is empty, skipped", name)
            continue
        fig, ax = plt.subplots(figsize=(6.8, 5.0))
        plot_histogram_2d(hist, ax=ax)
        _save(fig, out, name, show)

    fig, axes = plt.subplots(1, 2, figsize=(10.0, 4.0))
    plot_histogram_1d(observer["gems_hit"], ax=axes[0])
    plot_histogram_1d(observer["layers_hit"], ax=axes[1])
    _save(fig, out, "lasers", show)

    entries = observer["entries"]
    if entries.entries > 0:
        fig, ax = plt.subplots(figsize=(6.8, 5.0))
        plot_entries_projection(entries, axis=2, ax=ax)
        _save(fig, out, "entries_phi_r", show)


def plot_vertex_diagnostics(
    observer: HistogramObserver,
    out_dir: Optional[PathLike] = None,
    *,
    show: bool = False,
    mass_window: Tuple[float, float] = (0.0, 1.0),
) -> None:
    r"""
    Invariant mass versus :math:`p_T` of accepted pairs, and the mass
    projection inside ``mass_window``.
    """
    out = Path(out_dir) if out_dir is not None else None
    hist = observer["recomass"]
    if hist.entries == 0:
        logging.info("No accepted pairs, vertex plots skipped.")
        return
    fig, axes = plt.subplots(1, 2, figsize=(11.0, 4.4))
    plot_histogram_2d(hist, ax=axes[0])

    _, m_edges = hist.edges
    centers = 0.5 * (m_edges[:-1] + m_edges[1:])
    sel = (centers >= mass_window[0]) & (centers < mass_window[1])
    mass_counts = hist.counts.sum(axis=0)
    idx = np.flatnonzero(sel)
    if idx.size:
        lo, hi = int(idx[0]), int(idx[-1]) + 1
        axes[1].stairs(mass_counts[lo:hi], m_edges[lo:hi + 1])
    axes[1].set_xlabel("mass (GeV)")
    axes[1].set_ylabel("pairs")
    axes[1].set_title("invariant mass")
    _save(fig, out, "recomass", show)


def plot_counter_summary(
    counters: Mapping[str, float],
    *,
    title: str = "Run summary",
    out_dir: Optional[PathLike] = None,
    show: bool = False,
) -> None:
    r'''
    Horizontal bar chart of run counters (hits, matches, accepted clusters,
    pair-finder stages), in the order given.

    Non-finite or non-positive values are dropped.
    '''
    items = [(str(k), float(v)) for k, v in counters.items() if np.isfinite(v) and v > 0.0]
    if not items:
        return
    labels, vals = zip(*items)
    vals = np.asarray(vals, dtype=float)

    fig_h = max(3.0, 0.55 * len(labels) + 1.25)
    fig, ax = plt.subplots(figsize=(8.6, fig_h))
    bars = ax.barh(labels, vals, alpha=0.9)
    ax.invert_yaxis()
    ax.set_xscale("log")
    ax.set_title(title)
    ax.grid(True, axis="x", alpha=0.25)
    for b, v in zip(bars, vals):
        ax.text(b.get_width(), b.get_y() + b.get_height() / 2, f" {int(v)}",
                va="center", ha="left", fontsize=9)
    out = Path(out_dir) if out_dir is not None else None
    _save(fig, out, title.lower().replace(" ", "_"), show)
