from __future__ import annotations

import logging
from typing import NamedTuple

import numpy as np
import xarray as xr

from .errors import TopographyError
from .grid import GridSpec

logger = logging.getLogger(__name__)


class OceanFractions(NamedTuple):
    """Ocean cover on the ocean grid, both with shape ``(jm, im)``."""

    focean: np.ndarray
    foceanf: np.ndarray


def _read_field(ds: xr.Dataset, var: str, spec_o: GridSpec, path: str) -> np.ndarray:
    if var not in ds:
        raise TopographyError(f"Variable '{var}' not found in topography file {path}")
    arr = np.asarray(ds[var].values, dtype=np.float64).squeeze()
    if arr.shape != spec_o.shape:
        raise TopographyError(
            f"Variable '{var}' in {path} has shape {arr.shape}, "
            f"expected {spec_o.shape} for the ocean grid"
        )
    if np.isnan(arr).any():
        raise TopographyError(f"Variable '{var}' in {path} contains missing values")
    if arr.min() < 0.0 or arr.max() > 1.0:
        raise TopographyError(
            f"Variable '{var}' in {path} has values outside [0, 1]: "
            f"[{arr.min()}, {arr.max()}]"
        )
    return arr


def load_ocean_fractions(
    path: str,
    spec_o: GridSpec,
    focean_var: str = "FOCEAN",
    foceanf_var: str = "FOCEANF",
) -> OceanFractions:
    """
    Read the rounded and fractional ocean cover from a topography file.

    Parameters
    ----------
    path : str
        NetCDF topography file on the ocean grid.
    spec_o : GridSpec
        The ocean grid.
    focean_var : str, default 'FOCEAN'
        Rounded (0/1) ocean cover, as seen by the GCM.
    foceanf_var : str, default 'FOCEANF'
        Fractional ocean cover.

    Returns
    -------
    OceanFractions
        The two fields.

    Raises
    ------
    TopographyError
        If the file cannot be read or a field is missing or malformed.
    """
    logger.info("Reading ocean fractions from %s", path)
    try:
        ds = xr.open_dataset(path)
    except (OSError, ValueError) as e:
        raise TopographyError(f"Cannot open topography file {path}: {e}") from e

    with ds:
        focean = _read_field(ds, focean_var, spec_o, path)
        foceanf = _read_field(ds, foceanf_var, spec_o, path)

    if not np.isin(focean, (0.0, 1.0)).all():
        raise TopographyError(
            f"Variable '{focean_var}' in {path} must be 0 or 1 everywhere"
        )
    return OceanFractions(focean=focean, foceanf=foceanf)
