from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Dict, Optional, Tuple

import cf_xarray  # noqa: F401
import numpy as np
import xarray as xr

from .errors import ConfigurationError
from .utils import update_history

# Mean Earth radius [m], as used by ModelE.
EQ_RAD = 6371000.0


@dataclass(frozen=True)
class GridSpec:
    """
    A regular longitude-latitude grid.

    Cells are numbered row-major starting at the South Pole: the sparse id
    of cell ``(j, i)`` is ``j * im + i``.

    Attributes
    ----------
    im : int
        Number of longitude cells.
    jm : int
        Number of latitude cells.
    offi : float
        Longitude of the western edge of cell ``i=0``, in units of cells.
    dlat : float
        Latitude spacing in minutes. Defaults to ``180*60/jm``. When
        ``jm * dlat`` exceeds 180 degrees, the excess is split between the
        two polar rows, which are clipped at the poles.
    name : str
        Human-readable grid name.
    """

    im: int
    jm: int
    offi: float = 0.0
    dlat: Optional[float] = None
    name: str = field(default="", compare=False)

    def __post_init__(self) -> None:
        if self.im <= 0 or self.jm <= 0:
            raise ConfigurationError(
                f"Grid dimensions must be positive, got {self.im}x{self.jm}"
            )
        if self.dlat is None:
            object.__setattr__(self, "dlat", 180.0 * 60.0 / self.jm)
        if self.dlat <= 0:
            raise ConfigurationError(f"Latitude spacing must be positive: {self.dlat}")

    @property
    def shape(self) -> Tuple[int, int]:
        """Array shape ``(jm, im)`` of fields on this grid."""
        return (self.jm, self.im)

    @property
    def size(self) -> int:
        return self.im * self.jm

    def sparse_index(self, j: int, i: int) -> int:
        return j * self.im + i

    def lon_edges(self) -> np.ndarray:
        """Longitude cell edges in degrees (``im + 1`` values)."""
        dlon = 360.0 / self.im
        return (self.offi + np.arange(self.im + 1)) * dlon

    def lat_edges(self) -> np.ndarray:
        """Latitude cell edges in degrees (``jm + 1`` values), clipped to the poles."""
        dlat_deg = self.dlat / 60.0
        excess = self.jm - 180.0 / dlat_deg
        edges = -90.0 + (np.arange(self.jm + 1) - 0.5 * excess) * dlat_deg
        return np.clip(edges, -90.0, 90.0)

    def row_areas(self, eq_rad: float = EQ_RAD) -> np.ndarray:
        """Area of one cell in each latitude row (``jm`` values); cells in a row are equal."""
        dlon = np.deg2rad(360.0 / self.im)
        dsin = np.diff(np.sin(np.deg2rad(self.lat_edges())))
        return eq_rad * eq_rad * dlon * dsin

    def cell_areas(self, eq_rad: float = EQ_RAD) -> np.ndarray:
        """
        Exact spherical cell areas.

        Parameters
        ----------
        eq_rad : float, default EQ_RAD
            Radius of the sphere.

        Returns
        -------
        np.ndarray
            Areas with shape ``(jm, im)``.
        """
        return np.broadcast_to(
            self.row_areas(eq_rad)[:, np.newaxis], self.shape
        ).copy()

    def to_dataset(self) -> xr.Dataset:
        """
        Build a CF-compliant dataset describing the grid.

        Returns
        -------
        xr.Dataset
            Dataset with 'lat', 'lon' centers and (N, 2) 'lat_b', 'lon_b' bounds.
        """
        lat_e = self.lat_edges()
        lon_e = self.lon_edges()
        ds = xr.Dataset(
            coords={
                "lat": (
                    ["lat"],
                    0.5 * (lat_e[:-1] + lat_e[1:]),
                    {"units": "degrees_north", "standard_name": "latitude"},
                ),
                "lon": (
                    ["lon"],
                    0.5 * (lon_e[:-1] + lon_e[1:]),
                    {"units": "degrees_east", "standard_name": "longitude"},
                ),
            }
        )
        ds.coords["lat_b"] = (
            ["lat", "nv"],
            np.stack([lat_e[:-1], lat_e[1:]], axis=1),
            {"units": "degrees_north", "standard_name": "latitude_bounds"},
        )
        ds.coords["lon_b"] = (
            ["lon", "nv"],
            np.stack([lon_e[:-1], lon_e[1:]], axis=1),
            {"units": "degrees_east", "standard_name": "longitude_bounds"},
        )
        ds["lat"].attrs["bounds"] = "lat_b"
        ds["lon"].attrs["bounds"] = "lon_b"
        ds.attrs.update(self.to_attrs())
        ds.attrs["crs"] = "EPSG:4326"
        update_history(ds, f"Created {self.im}x{self.jm} grid '{self.name}' using ecregrid.")
        return ds

    def to_attrs(self, prefix: str = "") -> Dict[str, object]:
        """Grid parameters as flat NetCDF attributes."""
        return {
            f"{prefix}im": self.im,
            f"{prefix}jm": self.jm,
            f"{prefix}offi": self.offi,
            f"{prefix}dlat": self.dlat,
            f"{prefix}name": self.name,
        }

    @classmethod
    def from_attrs(cls, attrs: Dict[str, object], prefix: str = "") -> "GridSpec":
        return cls(
            im=int(attrs[f"{prefix}im"]),
            jm=int(attrs[f"{prefix}jm"]),
            offi=float(attrs[f"{prefix}offi"]),
            dlat=float(attrs[f"{prefix}dlat"]),
            name=str(attrs.get(f"{prefix}name", "")),
        )

    @classmethod
    def from_dataset(cls, ds: xr.Dataset, name: str = "") -> "GridSpec":
        """
        Infer a grid spec from the latitude/longitude coordinates of a dataset.

        Parameters
        ----------
        ds : xr.Dataset
            Dataset with 1D CF (or 'lat'/'lon' named) coordinates.
        name : str, optional
            Name for the resulting spec.

        Returns
        -------
        GridSpec
            The inferred grid.

        Raises
        ------
        ConfigurationError
            If no 1D latitude/longitude coordinates can be found.
        """
        try:
            lat = ds.cf["latitude"]
            lon = ds.cf["longitude"]
        except (KeyError, AttributeError):
            if "lat" in ds and "lon" in ds:
                lat = ds["lat"]
                lon = ds["lon"]
            else:
                raise ConfigurationError(
                    "Could not find latitude/longitude coordinates in dataset."
                )

        if lat.ndim != 1 or lon.ndim != 1:
            raise ConfigurationError(
                "Only regular longitude-latitude grids with 1D coordinates are supported."
            )

        im = lon.size
        jm = lat.size
        dlon = 360.0 / im
        try:
            lon_b = ds.cf.get_bounds("longitude")
            west = float(lon_b.values.reshape(im, -1)[0].min())
        except (KeyError, AttributeError, ValueError):
            west = float(lon.values[0]) - 0.5 * dlon

        if jm > 1:
            dlat = abs(float(lat.values[1] - lat.values[0])) * 60.0
        else:
            dlat = 180.0 * 60.0
        return cls(im=im, jm=jm, offi=west / dlon, dlat=dlat, name=name)


GRIDS: Dict[str, GridSpec] = {
    "g2mx2m": GridSpec(10800, 5400, 0.0, 2.0, name="g2mx2m"),
    "g1mx1m": GridSpec(21600, 10800, 0.0, 1.0, name="g1mx1m"),
    "g10mx10m": GridSpec(2160, 1080, 0.0, 10.0, name="g10mx10m"),
    "ghxh": GridSpec(720, 360, 0.0, 30.0, name="ghxh"),
    "g1x1": GridSpec(360, 180, 0.0, 60.0, name="g1x1"),
    "g1qx1": GridSpec(288, 180, 0.0, 60.0, name="g1qx1"),
    "g2hx2": GridSpec(144, 90, 0.0, 120.0, name="g2hx2"),
    "g5x4": GridSpec(72, 46, 0.0, 240.0, name="g5x4"),
}


def get_grid(name: str) -> GridSpec:
    """
    Look up a named grid.

    Raises
    ------
    ConfigurationError
        If the name is not registered.
    """
    try:
        return GRIDS[name]
    except KeyError:
        available = ", ".join(sorted(GRIDS))
        raise ConfigurationError(
            f"Unknown grid '{name}'. Available grids are: {available}"
        )


def make_atmosphere_spec(ocean: GridSpec) -> GridSpec:
    """
    Derive the atmosphere grid from the ocean grid.

    The atmosphere grid has half the resolution of the ocean grid in both
    directions.
    """
    if ocean.im % 2 or ocean.jm % 2:
        raise ConfigurationError(
            f"Ocean grid {ocean.im}x{ocean.jm} cannot be halved into an atmosphere grid"
        )
    return replace(
        ocean,
        im=ocean.im // 2,
        jm=ocean.jm // 2,
        offi=ocean.offi * 0.5,
        dlat=ocean.dlat * 2.0,
        name=f"{ocean.name}:A" if ocean.name else "",
    )


def check_exact_multiple(coarse: GridSpec, fine: GridSpec) -> Tuple[int, int]:
    """
    Check that ``fine`` subdivides every ``coarse`` cell into an integer block.

    Returns
    -------
    mult_j, mult_i : int
        Number of fine cells per coarse cell in latitude and longitude.

    Raises
    ------
    ConfigurationError
        If the resolutions are not exact integer multiples.
    """
    mult_i = fine.im // coarse.im
    mult_j = fine.jm // coarse.jm
    if (
        mult_i == 0
        or mult_j == 0
        or mult_i * coarse.im != fine.im
        or mult_j * coarse.jm != fine.jm
    ):
        raise ConfigurationError(
            f"Grid ({fine.im}x{fine.jm}) must be an even multiple of "
            f"({coarse.im}x{coarse.jm})"
        )
    return mult_j, mult_i
