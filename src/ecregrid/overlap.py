from __future__ import annotations

import logging
from typing import Callable, Iterator, List, NamedTuple, Optional, Protocol, Tuple, Union

import numpy as np

from .grid import EQ_RAD, GridSpec
from .sparse import SparseDimension

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]
ValidityFn = Callable[[np.ndarray], np.ndarray]


class OverlapBatch(NamedTuple):
    """A batch of overlap events between coarse and fine grid cells."""

    coarse_ids: np.ndarray
    fine_ids: np.ndarray
    area: np.ndarray


class OverlapEngine(Protocol):
    """Anything that can enumerate the overlaps between two grids."""

    coarse: GridSpec
    fine: GridSpec

    def overlap(
        self, eq_rad: float = EQ_RAD, fine_rows: Optional[np.ndarray] = None
    ) -> Iterator[OverlapBatch]:
        ...


def _interval_overlaps(
    edges_a: np.ndarray, edges_b: np.ndarray
) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """
    Intersect two monotone 1D partitions.

    Returns
    -------
    ia, ib : np.ndarray
        Interval indices into ``edges_a`` and ``edges_b``.
    lo, hi : np.ndarray
        Bounds of each intersection segment.
    """
    pts = np.union1d(edges_a, edges_b)
    lo = pts[:-1]
    hi = pts[1:]
    # Drop slivers produced by edges that differ only by rounding
    keep = (hi - lo) > 1e-10 * (pts[-1] - pts[0])
    lo = lo[keep]
    hi = hi[keep]

    mid = 0.5 * (lo + hi)
    ia = np.searchsorted(edges_a, mid, side="right") - 1
    ib = np.searchsorted(edges_b, mid, side="right") - 1
    inside = (
        (ia >= 0) & (ia < len(edges_a) - 1) & (ib >= 0) & (ib < len(edges_b) - 1)
    )
    return ia[inside], ib[inside], lo[inside], hi[inside]


class LonLatOverlapEngine:
    """
    Exact overlap areas between two regular longitude-latitude grids.

    On a sphere, the intersection of two lon-lat cells is itself a lon-lat
    cell, so its area factors into a longitude overlap times a difference of
    sines of latitude. Overlaps are produced one latitude-row pair at a time,
    south to north.

    Parameters
    ----------
    coarse : GridSpec
        The grid reported as ``coarse_ids``.
    fine : GridSpec
        The grid reported as ``fine_ids``.
    """

    def __init__(self, coarse: GridSpec, fine: GridSpec) -> None:
        self.coarse = coarse
        self.fine = fine

    def _lon_overlaps(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        ea = self.coarse.lon_edges()
        eb = self.fine.lon_edges()
        eb = eb - np.floor((eb[0] - ea[0]) / 360.0) * 360.0
        # Two periods of the fine grid cover the whole coarse range
        eb_ext = np.concatenate([eb[:-1] - 360.0, eb])

        ia, ib, lo, hi = _interval_overlaps(ea, eb_ext)
        ib = ib % self.fine.im

        # A fine cell straddling the seam shows up at both ends
        key = ia * self.fine.im + ib
        uniq, inverse = np.unique(key, return_inverse=True)
        length = np.bincount(inverse, weights=hi - lo)
        return uniq // self.fine.im, uniq % self.fine.im, np.deg2rad(length)

    def _lat_overlaps(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        ja, jb, lo, hi = _interval_overlaps(
            self.coarse.lat_edges(), self.fine.lat_edges()
        )
        dsin = np.sin(np.deg2rad(hi)) - np.sin(np.deg2rad(lo))
        keep = dsin > 0
        return ja[keep], jb[keep], dsin[keep]

    def overlap(
        self, eq_rad: float = EQ_RAD, fine_rows: Optional[np.ndarray] = None
    ) -> Iterator[OverlapBatch]:
        """
        Yield overlap events, one batch per intersecting pair of latitude rows.

        Parameters
        ----------
        eq_rad : float, default EQ_RAD
            Radius of the sphere.
        fine_rows : np.ndarray of bool, optional
            Fine-grid rows that can contribute; other rows are skipped.

        Yields
        ------
        OverlapBatch
            Coarse ids, fine ids and intersection areas.
        """
        lon_a, lon_b, dlon = self._lon_overlaps()
        lat_a, lat_b, dsin = self._lat_overlaps()
        r2 = eq_rad * eq_rad

        for ja, jb, ds in zip(lat_a.tolist(), lat_b.tolist(), dsin.tolist()):
            if fine_rows is not None and not fine_rows[jb]:
                continue
            yield OverlapBatch(
                ja * self.coarse.im + lon_a,
                jb * self.fine.im + lon_b,
                r2 * ds * dlon,
            )


def _create_esmf_grid(spec: GridSpec) -> object:
    """
    Create a periodic spherical ESMF Grid with centers and corners for ``spec``.

    Parameters
    ----------
    spec : GridSpec
        The grid to realize.

    Returns
    -------
    esmpy.Grid
        The created ESMF grid (index space ``(im, jm)``).
    """
    import esmpy

    lon_e = spec.lon_edges()
    lat_e = spec.lat_edges()

    grid = esmpy.Grid(
        np.array([spec.im, spec.jm]),
        staggerloc=[esmpy.StaggerLoc.CENTER, esmpy.StaggerLoc.CORNER],
        coord_sys=esmpy.CoordSys.SPH_DEG,
        num_peri_dims=1,
        periodic_dim=0,
        pole_dim=1,
    )

    lon_c, lat_c = np.meshgrid(
        0.5 * (lon_e[:-1] + lon_e[1:]), 0.5 * (lat_e[:-1] + lat_e[1:])
    )
    grid.get_coords(0, staggerloc=esmpy.StaggerLoc.CENTER)[...] = lon_c.T
    grid.get_coords(1, staggerloc=esmpy.StaggerLoc.CENTER)[...] = lat_c.T

    lon_b, lat_b = np.meshgrid(lon_e, lat_e)
    # Periodic grids do not repeat the seam corner
    grid.get_coords(0, staggerloc=esmpy.StaggerLoc.CORNER)[...] = lon_b.T[:-1, :]
    grid.get_coords(1, staggerloc=esmpy.StaggerLoc.CORNER)[...] = lat_b.T[:-1, :]
    return grid


class EsmfOverlapEngine:
    """
    Overlap areas from ESMF first-order conservative weights.

    ESMF weights normalized by destination area are converted back to
    intersection areas. ESMF treats cell sides as great circles, so areas
    differ slightly from :class:`LonLatOverlapEngine` away from the equator.

    Parameters
    ----------
    coarse : GridSpec
        Destination grid, reported as ``coarse_ids``.
    fine : GridSpec
        Source grid, reported as ``fine_ids``.
    """

    def __init__(self, coarse: GridSpec, fine: GridSpec) -> None:
        self.coarse = coarse
        self.fine = fine

    def overlap(
        self, eq_rad: float = EQ_RAD, fine_rows: Optional[np.ndarray] = None
    ) -> Iterator[OverlapBatch]:
        try:
            import esmpy
        except ImportError:
            raise ImportError(
                "esmpy is required for EsmfOverlapEngine. "
                "Install it with `conda install -c conda-forge esmpy`."
            )

        esmpy.Manager(debug=False)
        src_grid = _create_esmf_grid(self.fine)
        dst_grid = _create_esmf_grid(self.coarse)
        src_field = esmpy.Field(src_grid, name="fine")
        dst_field = esmpy.Field(dst_grid, name="coarse")
        area_field = esmpy.Field(dst_grid, name="area")

        regrid = esmpy.Regrid(
            src_field,
            dst_field,
            regrid_method=esmpy.RegridMethod.CONSERVE,
            norm_type=esmpy.NormType.DSTAREA,
            unmapped_action=esmpy.UnmappedAction.IGNORE,
            factors=True,
        )
        try:
            weights = regrid.get_weights_dict(deep_copy=True)
            area_field.get_area()
            dst_area = np.array(area_field.data).T.ravel()
        finally:
            regrid.destroy()
            area_field.destroy()
            src_field.destroy()
            dst_field.destroy()
            src_grid.destroy()
            dst_grid.destroy()

        coarse_ids = np.asarray(weights["row_dst"], dtype=np.int64) - 1
        fine_ids = np.asarray(weights["col_src"], dtype=np.int64) - 1
        area = np.asarray(weights["weights"]) * dst_area[coarse_ids] * eq_rad * eq_rad

        if fine_rows is not None:
            keep = np.asarray(fine_rows)[fine_ids // self.fine.im]
            coarse_ids, fine_ids, area = coarse_ids[keep], fine_ids[keep], area[keep]

        order = np.lexsort((coarse_ids, fine_ids))
        yield OverlapBatch(coarse_ids[order], fine_ids[order], area[order])


class ExchangeGrid:
    """
    Append-only record of positive overlaps between two grids.

    Entries are ``(coarse_id, fine_id, area)`` triples in sparse (grid-wide)
    ids, kept in the order they were added.
    """

    def __init__(self) -> None:
        self._coarse: List[np.ndarray] = []
        self._fine: List[np.ndarray] = []
        self._area: List[np.ndarray] = []
        self._n = 0

    def __len__(self) -> int:
        return self._n

    @property
    def dense_extent(self) -> int:
        return self._n

    def append(self, coarse_ids: np.ndarray, fine_ids: np.ndarray, area: np.ndarray) -> None:
        coarse_ids = np.asarray(coarse_ids, dtype=np.int64)
        fine_ids = np.asarray(fine_ids, dtype=np.int64)
        area = np.asarray(area, dtype=np.float64)
        if not (coarse_ids.shape == fine_ids.shape == area.shape):
            raise ValueError("Exchange grid entries must have matching shapes")
        self._coarse.append(coarse_ids)
        self._fine.append(fine_ids)
        self._area.append(area)
        self._n += area.size

    def _consolidate(self) -> None:
        if len(self._area) > 1:
            self._coarse = [np.concatenate(self._coarse)]
            self._fine = [np.concatenate(self._fine)]
            self._area = [np.concatenate(self._area)]

    @property
    def coarse_ids(self) -> np.ndarray:
        self._consolidate()
        return self._coarse[0] if self._coarse else np.empty(0, dtype=np.int64)

    @property
    def fine_ids(self) -> np.ndarray:
        self._consolidate()
        return self._fine[0] if self._fine else np.empty(0, dtype=np.int64)

    @property
    def area(self) -> np.ndarray:
        self._consolidate()
        return self._area[0] if self._area else np.empty(0, dtype=np.float64)


def log_progress(n_entries: int) -> None:
    """Default progress reporter."""
    logger.info("exgrid size=%d", n_entries)


def elevation_validity(elevmask: np.ndarray) -> ValidityFn:
    """Validity predicate: the fine cell has a (non-NaN) elevation."""
    flat = np.asarray(elevmask, dtype=np.float64).ravel()

    def valid(fine_ids: np.ndarray) -> np.ndarray:
        return ~np.isnan(flat[fine_ids])

    return valid


def membership_validity(dim: SparseDimension, limit: Optional[int] = None) -> ValidityFn:
    """
    Validity predicate: the fine cell is already in ``dim``.

    If ``limit`` is given, only the first ``limit`` dense indices count.
    """

    def valid(fine_ids: np.ndarray) -> np.ndarray:
        dense = dim.to_dense(fine_ids, missing=-1)
        if limit is None:
            return dense >= 0
        return (dense >= 0) & (dense < limit)

    return valid


def active_rows(elevmask: np.ndarray) -> np.ndarray:
    """Rows of a validity mask holding at least one non-NaN value."""
    return ~np.all(np.isnan(elevmask), axis=1)


class OverlapAccumulator:
    """
    Filter overlap events into an exchange grid and register touched cells.

    Parameters
    ----------
    exgrid : ExchangeGrid
        Receives the accepted entries.
    valid : callable
        Maps an array of fine ids to a boolean array; events whose fine cell
        is not valid are discarded.
    dim_coarse, dim_fine : SparseDimension
        Registries that accepted coarse and fine ids are added to.
    progress : callable or False, optional
        Called with the entry count each time it crosses a multiple of
        ``progress_interval``. Defaults to :func:`log_progress`; pass False
        to run silently.
    progress_interval : int, default 100000
        Entry-count interval between progress reports.
    """

    def __init__(
        self,
        exgrid: ExchangeGrid,
        valid: ValidityFn,
        dim_coarse: SparseDimension,
        dim_fine: SparseDimension,
        progress: Union[ProgressCallback, bool, None] = None,
        progress_interval: int = 100_000,
    ) -> None:
        if progress_interval <= 0:
            raise ValueError("progress_interval must be positive")
        self.exgrid = exgrid
        self.valid = valid
        self.dim_coarse = dim_coarse
        self.dim_fine = dim_fine
        if progress is None or progress is True:
            self.progress: Optional[ProgressCallback] = log_progress
        elif progress is False:
            self.progress = None
        else:
            self.progress = progress
        self.progress_interval = progress_interval

    def add(self, coarse_id: int, fine_id: int, area: float) -> None:
        """Consume a single overlap event."""
        self.add_batch(
            OverlapBatch(
                np.array([coarse_id], dtype=np.int64),
                np.array([fine_id], dtype=np.int64),
                np.array([area], dtype=np.float64),
            )
        )

    def add_batch(self, batch: OverlapBatch) -> None:
        """Consume a batch of overlap events."""
        coarse_ids = np.asarray(batch.coarse_ids, dtype=np.int64)
        fine_ids = np.asarray(batch.fine_ids, dtype=np.int64)
        area = np.asarray(batch.area, dtype=np.float64)

        keep = (area > 0) & self.valid(fine_ids)
        if not keep.any():
            return
        coarse_ids = coarse_ids[keep]
        fine_ids = fine_ids[keep]

        before = len(self.exgrid)
        self.exgrid.append(coarse_ids, fine_ids, area[keep])
        self.dim_coarse.add_dense_many(coarse_ids, return_dense=False)
        self.dim_fine.add_dense_many(fine_ids, return_dense=False)

        if self.progress is not None:
            step = self.progress_interval
            for k in range(before // step + 1, len(self.exgrid) // step + 1):
                self.progress(k * step)


def accumulate(
    engine: OverlapEngine,
    accumulator: OverlapAccumulator,
    eq_rad: float = EQ_RAD,
    fine_rows: Optional[np.ndarray] = None,
) -> ExchangeGrid:
    """
    Run an overlap engine to completion into an accumulator.

    Returns
    -------
    ExchangeGrid
        The accumulator's exchange grid.
    """
    for batch in engine.overlap(eq_rad, fine_rows=fine_rows):
        accumulator.add_batch(batch)
    return accumulator.exgrid
