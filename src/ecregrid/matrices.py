from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional, Tuple, Union

import numpy as np
from scipy.sparse import coo_matrix, csr_matrix

from .elevation import elevation_weights
from .grid import EQ_RAD, GridSpec
from .overlap import (
    ExchangeGrid,
    LonLatOverlapEngine,
    OverlapAccumulator,
    OverlapEngine,
    ProgressCallback,
    accumulate,
    membership_validity,
)
from .sparse import SparseDimension

if TYPE_CHECKING:
    from .elevation import Indexing
    from .regridder import IceRegridder

logger = logging.getLogger(__name__)

EngineFactory = Callable[[GridSpec, GridSpec], OverlapEngine]

# Operators a regridder can produce, in the order they are generated
MATRIX_NAMES = ("AvI", "EvI", "IvE", "IvA", "AvE")


@dataclass(frozen=True)
class RegridParams:
    """
    Options controlling how operators are built.

    Attributes
    ----------
    scale : bool
        If True, rows are normalized to sum to 1 (weighted averages).
        If False, operators are conservative area integrals.
    """

    scale: bool = True


def _invert(v: np.ndarray) -> np.ndarray:
    """Elementwise ``1/v``, with 0 where ``v`` is 0."""
    v = np.asarray(v, dtype=np.float64).ravel()
    out = np.zeros_like(v)
    np.divide(1.0, v, out=out, where=v != 0)
    return out


def _row_sums(m: csr_matrix) -> np.ndarray:
    return np.asarray(m.sum(axis=1)).ravel()


def _col_sums(m: csr_matrix) -> np.ndarray:
    return np.asarray(m.sum(axis=0)).ravel()


def _scale_rows(m: csr_matrix, v: np.ndarray) -> csr_matrix:
    """Return ``diag(v) @ m``."""
    m = csr_matrix(m, copy=True)
    m.data *= np.repeat(v, np.diff(m.indptr))
    return m


def split_name(name: str) -> Tuple[str, str]:
    """Split an operator name such as ``'I2vE'`` into ``('I2', 'E')``."""
    dest, sep, src = name.partition("v")
    if not sep or not dest or not src:
        raise ValueError(f"Invalid operator name '{name}'")
    return dest, src


class WeightedOperator:
    """
    A sparse linear map between two dense-index spaces, with weight vectors.

    Parameters
    ----------
    M : scipy.sparse matrix
        Matrix of shape ``(n_dest, n_src)``.
    wM : np.ndarray
        Weight of each destination row (area covered).
    Mw : np.ndarray
        Weight of each source column (area covered).
    conservative : bool
        True for area-integral operators, False for row-normalized ones.
    dims : tuple of SparseDimension
        Destination and source dimensions the dense indices refer to.
    dim_names : tuple of str
        Names of those dimensions (e.g. ``('dimA', 'dimI')``).
    """

    def __init__(
        self,
        M: csr_matrix,
        wM: np.ndarray,
        Mw: np.ndarray,
        conservative: bool,
        dims: Tuple[Optional[SparseDimension], Optional[SparseDimension]] = (None, None),
        dim_names: Tuple[str, str] = ("", ""),
    ) -> None:
        M = csr_matrix(M)
        M.eliminate_zeros()
        wM = np.asarray(wM, dtype=np.float64).ravel()
        Mw = np.asarray(Mw, dtype=np.float64).ravel()
        if wM.size != M.shape[0] or Mw.size != M.shape[1]:
            raise ValueError(
                f"Weight vectors ({wM.size}, {Mw.size}) do not match "
                f"matrix shape {M.shape}"
            )
        wM.setflags(write=False)
        Mw.setflags(write=False)
        self._M = M
        self._wM = wM
        self._Mw = Mw
        self.conservative = bool(conservative)
        self.dims = dims
        self.dim_names = dim_names

    @property
    def M(self) -> csr_matrix:
        return self._M

    @property
    def wM(self) -> np.ndarray:
        return self._wM

    @property
    def Mw(self) -> np.ndarray:
        return self._Mw

    @property
    def shape(self) -> Tuple[int, int]:
        return self._M.shape

    @property
    def nnz(self) -> int:
        return int(self._M.nnz)

    def __repr__(self) -> str:
        kind = "conservative" if self.conservative else "scaled"
        return (
            f"WeightedOperator({self.dim_names[0]} <- {self.dim_names[1]}, "
            f"shape={self.shape}, nnz={self.nnz}, {kind})"
        )

    def apply(self, x: np.ndarray) -> np.ndarray:
        """Apply the operator to a vector (or stack of column vectors) in source space."""
        return self._M @ np.asarray(x)

    def to_global(self) -> csr_matrix:
        """
        Re-index the matrix from dense indices into grid-wide sparse ids.

        Returns
        -------
        csr_matrix
            Matrix of shape ``(dest.sparse_extent, src.sparse_extent)``.
        """
        dest, src = self.dims
        if dest is None or src is None:
            raise RuntimeError("Operator has no dimensions attached.")
        if dest.sparse_extent is None or src.sparse_extent is None:
            raise RuntimeError("Dimensions must have a known sparse extent.")
        coo = self._M.tocoo()
        return coo_matrix(
            (coo.data, (dest.to_sparse(coo.row), src.to_sparse(coo.col))),
            shape=(dest.sparse_extent, src.sparse_extent),
        ).tocsr()


class RegridMatrices:
    """
    Build the directed operators between A, E and I for one ice sheet.

    All operators are derived from the ice sheet's exchange grid. Raw entries
    are exchange areas, split across elevation classes for E-sided operators.

    Parameters
    ----------
    ice : IceRegridder
        The ice sheet (exchange grid, validity mask, interpolation style).
    indexing : Indexing
        The E <-> (A, elevation class) bijection.
    hcdefs : np.ndarray
        Elevation class definitions.
    params : RegridParams
        Scale-vs-conservative policy.
    area_factor : np.ndarray, optional
        Per-A-cell factor (indexed by A sparse id) applied to A/E-side
        weights. Entries whose factor is 0 are dropped.
    elevmask : np.ndarray, optional
        Ice elevations on the full ice grid; defaults to the sheet's own.
    """

    def __init__(
        self,
        ice: "IceRegridder",
        indexing: "Indexing",
        hcdefs: np.ndarray,
        params: RegridParams = RegridParams(),
        area_factor: Optional[np.ndarray] = None,
        elevmask: Optional[np.ndarray] = None,
    ) -> None:
        self.ice = ice
        if elevmask is None:
            self.elevI = ice.elevI
        else:
            self.elevI = np.asarray(elevmask, dtype=np.float64).ravel()
        self.indexing = indexing
        self.hcdefs = np.asarray(hcdefs, dtype=np.float64)
        self.params = params
        self.area_factor = area_factor

    def _entries(self, name: str) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
        """Return ``(rows, cols, values, a_ids)`` in sparse ids for operator ``name``."""
        exgrid = self.ice.exgrid
        a = exgrid.coarse_ids
        i = exgrid.fine_ids
        area = exgrid.area

        if name == "AvI":
            return a, i, area, a
        if name == "IvA":
            return i, a, area, a

        ihc0, ihc1, w0, w1 = elevation_weights(
            self.elevI[i], self.hcdefs, self.ice.interp_style
        )
        a2 = np.concatenate([a, a])
        i2 = np.concatenate([i, i])
        e2 = np.concatenate(
            [self.indexing.tuple_to_index(a, ihc0), self.indexing.tuple_to_index(a, ihc1)]
        )
        v2 = np.concatenate([area * w0, area * w1])
        keep = v2 > 0
        a2, i2, e2, v2 = a2[keep], i2[keep], e2[keep], v2[keep]

        if name == "EvI":
            return e2, i2, v2, a2
        if name == "IvE":
            return i2, e2, v2, a2
        if name == "AvE":
            return a2, e2, v2, a2
        raise ValueError(f"Unknown operator '{name}'. Available: {', '.join(MATRIX_NAMES)}")

    def matrix(
        self, name: str, dims: Tuple[SparseDimension, SparseDimension]
    ) -> WeightedOperator:
        """
        Build one operator.

        Parameters
        ----------
        name : str
            One of ``AvI, EvI, IvE, IvA, AvE``.
        dims : tuple of SparseDimension
            Destination and source dimensions; cells are added on demand.

        Returns
        -------
        WeightedOperator
            The new operator.
        """
        dest_name, src_name = split_name(name)
        rows, cols, vals, a_ids = self._entries(name)

        factor = None
        if self.area_factor is not None:
            factor = np.asarray(self.area_factor)[a_ids]
            keep = factor > 0
            rows, cols, vals, factor = rows[keep], cols[keep], vals[keep], factor[keep]

        dest_dim, src_dim = dims
        r = dest_dim.add_dense_many(rows)
        c = src_dim.add_dense_many(cols)
        shape = (len(dest_dim), len(src_dim))

        raw = coo_matrix((vals, (r, c)), shape=shape).tocsr()
        wM = _row_sums(raw)
        Mw = _col_sums(raw)

        dest_ae = dest_name in ("A", "E")
        if factor is not None:
            if dest_ae:
                wM = np.bincount(r, weights=vals * factor, minlength=shape[0])
            if src_name in ("A", "E"):
                Mw = np.bincount(c, weights=vals * factor, minlength=shape[1])

        if self.params.scale:
            M = _scale_rows(raw, _invert(_row_sums(raw)))
        elif factor is not None and dest_ae:
            M = coo_matrix((vals * factor, (r, c)), shape=shape).tocsr()
        else:
            M = raw

        return WeightedOperator(
            M,
            wM,
            Mw,
            conservative=not self.params.scale,
            dims=(dest_dim, src_dim),
            dim_names=(f"dim{dest_name}", f"dim{src_name}"),
        )


def make_I2vX(
    IvX: WeightedOperator,
    spec_i: GridSpec,
    spec_i2: GridSpec,
    dim_i2: SparseDimension,
    dim_i: SparseDimension,
    params: RegridParams,
    eq_rad: float = EQ_RAD,
    engine: EngineFactory = LonLatOverlapEngine,
    progress: Union[ProgressCallback, bool, None] = None,
) -> WeightedOperator:
    """
    Replace the fine I axis of ``IvX`` by the coarser display grid I2.

    Only the small I2vI overlap operator is computed geometrically; the rest
    is sparse matrix algebra.

    Parameters
    ----------
    IvX : WeightedOperator
        Operator whose destination is the I grid (rows indexed by ``dim_i``).
    spec_i, spec_i2 : GridSpec
        Fine and display grids.
    dim_i2 : SparseDimension
        Display-grid dimension; cells are added on demand.
    dim_i : SparseDimension
        The I dimension ``IvX`` was built against; I cells outside it are ignored.
    params : RegridParams
        Scale-vs-conservative policy.
    eq_rad : float, default EQ_RAD
        Radius of the sphere.
    engine : callable, default LonLatOverlapEngine
        Factory ``engine(coarse, fine)`` for the overlap engine.
    progress : callable or bool, optional
        Progress reporter for the I2vI accumulation.

    Returns
    -------
    WeightedOperator
        The I2vX operator.
    """
    n_i = IvX.shape[0]

    exgrid = ExchangeGrid()
    acc = OverlapAccumulator(
        exgrid, membership_validity(dim_i, limit=n_i), dim_i2, dim_i, progress=progress
    )
    fine_rows = np.zeros(spec_i.jm, dtype=bool)
    fine_rows[dim_i.sparse_ids[:n_i] // spec_i.im] = True
    accumulate(engine(spec_i2, spec_i), acc, eq_rad, fine_rows=fine_rows)

    I2vI = coo_matrix(
        (
            exgrid.area,
            (dim_i2.to_dense(exgrid.coarse_ids), dim_i.to_dense(exgrid.fine_ids)),
        ),
        shape=(len(dim_i2), n_i),
    ).tocsr()

    sI2vI = _invert(_row_sums(I2vI))
    I2vIs = _invert(_col_sums(I2vI))

    wI2vX = I2vI @ (I2vIs * IvX.wM)
    if params.scale:
        M = _scale_rows(I2vI @ IvX.M, sI2vI)
    else:
        M = I2vI @ _scale_rows(IvX.M, _invert(IvX.wM))

    return WeightedOperator(
        M,
        wI2vX,
        IvX.Mw.copy(),
        conservative=IvX.conservative,
        dims=(dim_i2, IvX.dims[1]),
        dim_names=("dimI2", IvX.dim_names[1]),
    )
