from __future__ import annotations

import logging
import os
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

import numpy as np
import xarray as xr
from scipy.sparse import coo_matrix

from .grid import GridSpec
from .matrices import WeightedOperator
from .sparse import SparseDimension
from .utils import update_history

logger = logging.getLogger(__name__)

# Groups are only supported by the netCDF4 backend
ENGINE = "netcdf4"

DimensionInfo = Tuple[SparseDimension, Sequence[int], str]


class ChunkWriter:
    """
    Incrementally write the operators of one chunk to a NetCDF file.

    Everything is written to ``<path>.tmp``, which is renamed to ``path``
    only when the ``with`` block exits cleanly. If an exception escapes, the
    temporary file is removed so no partial artifact is left behind.

    Each operator goes into its own NetCDF group, and every write opens,
    appends to and closes the file, so memory held by an operator can be
    released right after it is written.

    Parameters
    ----------
    path : str
        Final artifact path.

    Examples
    --------
    >>> with ChunkWriter("global_ec-standard-00.nc") as w:  # doctest: +SKIP
    ...     w.write_metadata(regridder, spec_i2)
    ...     w.write_operator("AvI", op)
    """

    def __init__(self, path: str) -> None:
        self.path = str(path)
        self.tmp_path = self.path + ".tmp"
        self._created = False
        self._active = False

    def __enter__(self) -> "ChunkWriter":
        if os.path.exists(self.tmp_path):
            os.remove(self.tmp_path)
        self._created = False
        self._active = True
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        self._active = False
        if exc_type is not None:
            if os.path.exists(self.tmp_path):
                os.remove(self.tmp_path)
            logger.error("Discarding incomplete artifact %s", self.path)
            return
        if not self._created:
            self._write(xr.Dataset())
        os.replace(self.tmp_path, self.path)
        logger.info("Wrote %s", self.path)

    def _write(self, ds: xr.Dataset, group: Optional[str] = None) -> None:
        if not self._active:
            raise RuntimeError("ChunkWriter must be used as a context manager.")
        mode = "a" if self._created else "w"
        ds.to_netcdf(self.tmp_path, mode=mode, group=group, engine=ENGINE)
        self._created = True

    def write_metadata(
        self,
        regridder: Any,
        spec_i2: GridSpec,
        attrs: Optional[Mapping[str, Any]] = None,
    ) -> None:
        """
        Write the grids, elevation classes and E indexing of a regridder.

        Parameters
        ----------
        regridder : GCMRegridder or MismatchedRegridder
            The regridder the operators come from.
        spec_i2 : GridSpec
            The display grid.
        attrs : mapping, optional
            Extra global attributes (e.g. chunk bounds, run type).
        """
        logger.info("---- Saving metadata")
        spec_a = regridder.agrid_a.spec
        spec_i = regridder.ice_regridders[0].agrid_i.spec

        meta: Dict[str, Any] = {"label": regridder.label}
        meta.update(spec_a.to_attrs("hspecA_"))
        meta.update(spec_i.to_attrs("hspecI_"))
        meta.update(spec_i2.to_attrs("hspecI2_"))
        meta.update(regridder.indexing.to_attrs("indexingE_"))
        meta["interp_style"] = regridder.ice_regridders[0].interp_style.value
        meta["eq_rad"] = regridder.eq_rad
        if attrs:
            meta.update(attrs)

        ds = xr.Dataset(
            data_vars={
                "hcdefs": (["nhc"], regridder.hcdefs, {"units": "m"}),
            },
            attrs=meta,
        )
        update_history(ds, f"Elevation class operators for '{regridder.label}' grid")
        self._write(ds)

    def write_operator(self, name: str, op: WeightedOperator) -> None:
        """
        Write one operator as ESMF-style 1-based ``row``/``col``/``S`` triplets.

        The group also holds the ``wM`` and ``Mw`` weight vectors.
        """
        coo = op.M.tocoo()
        dest, src = op.dim_names
        ds = xr.Dataset(
            data_vars={
                "row": (["n_s"], coo.row.astype(np.int64) + 1),
                "col": (["n_s"], coo.col.astype(np.int64) + 1),
                "S": (["n_s"], coo.data),
                "wM": (["n_dst"], np.asarray(op.wM)),
                "Mw": (["n_src"], np.asarray(op.Mw)),
            },
            attrs={
                "n_dst": op.shape[0],
                "n_src": op.shape[1],
                "dim_dst": dest,
                "dim_src": src,
                "conservative": int(op.conservative),
            },
        )
        logger.debug("Writing %s: %r", name, op)
        self._write(ds, group=name)

    def write_dimensions(self, dims: Mapping[str, DimensionInfo]) -> None:
        """
        Write sparse dimension maps, one group per dimension.

        Parameters
        ----------
        dims : mapping
            ``{name: (dimension, full grid shape, description)}``.
        """
        logger.info("---- Storing Dimensions")
        for name, (dim, shape, description) in dims.items():
            ds = xr.Dataset(
                data_vars={"sparse_ids": (["dense"], dim.sparse_ids)},
                attrs={
                    "shape": list(int(s) for s in shape),
                    "description": description,
                    "sparse_extent": -1 if dim.sparse_extent is None else int(dim.sparse_extent),
                },
            )
            self._write(ds, group=name)


def load_dimension(path: str, name: str) -> SparseDimension:
    """
    Read a sparse dimension map written by :meth:`ChunkWriter.write_dimensions`.

    Parameters
    ----------
    path : str
        Artifact file.
    name : str
        Dimension group (e.g. 'dimA').

    Returns
    -------
    SparseDimension
        The dimension, with the same dense-index assignment.
    """
    with xr.open_dataset(path, group=name, engine=ENGINE) as ds:
        ids = ds["sparse_ids"].values.astype(np.int64)
        extent = int(ds.attrs.get("sparse_extent", -1))
    return SparseDimension.from_sparse_ids(ids, None if extent < 0 else extent)


def load_operator(path: str, name: str, with_dims: bool = True) -> WeightedOperator:
    """
    Read an operator written by :meth:`ChunkWriter.write_operator`.

    Parameters
    ----------
    path : str
        Artifact file.
    name : str
        Operator group (e.g. 'AvI').
    with_dims : bool, default True
        Also load the operator's two dimension maps.

    Returns
    -------
    WeightedOperator
        The operator.
    """
    with xr.open_dataset(path, group=name, engine=ENGINE) as ds:
        ds.load()
        rows = ds["row"].values.astype(np.int64) - 1
        cols = ds["col"].values.astype(np.int64) - 1
        data = ds["S"].values
        wM = ds["wM"].values
        Mw = ds["Mw"].values
        n_dst = int(ds.attrs["n_dst"])
        n_src = int(ds.attrs["n_src"])
        dim_names = (str(ds.attrs["dim_dst"]), str(ds.attrs["dim_src"]))
        conservative = bool(ds.attrs["conservative"])

    dims: Tuple[Optional[SparseDimension], Optional[SparseDimension]] = (None, None)
    if with_dims:
        dims = (load_dimension(path, dim_names[0]), load_dimension(path, dim_names[1]))

    M = coo_matrix((data, (rows, cols)), shape=(n_dst, n_src)).tocsr()
    return WeightedOperator(M, wM, Mw, conservative, dims=dims, dim_names=dim_names)
