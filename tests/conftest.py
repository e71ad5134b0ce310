import numpy as np
import pytest
import xarray as xr

from ecregrid import GridSpec
from ecregrid.grid import GRIDS


@pytest.fixture
def spec_a():
    """4x4 coarse grid (45 degree cells)."""
    return GridSpec(4, 4, name="a4")


@pytest.fixture
def spec_i():
    """8x8 fine grid, a 2x2 multiple of ``spec_a``."""
    return GridSpec(8, 8, name="i8")


@pytest.fixture
def elevmask_11(spec_i):
    """Ice at 500 m exactly under coarse cell (1, 1), NaN elsewhere."""
    mask = np.full(spec_i.shape, np.nan)
    mask[2:4, 2:4] = 500.0
    return mask


@pytest.fixture
def test_grids(monkeypatch):
    """Register small ocean, ice and display grids under test names."""
    grids = {
        "tO": GridSpec(4, 4, name="tO"),
        "tI": GridSpec(16, 16, name="tI"),
        "tI2": GridSpec(8, 8, name="tI2"),
    }
    for name, spec in grids.items():
        monkeypatch.setitem(GRIDS, name, spec)
    return grids


@pytest.fixture
def input_files(tmp_path, test_grids):
    """Ice and topography files with ice under ocean cell (1, 1)."""
    spec_i = test_grids["tI"]
    spec_o = test_grids["tO"]

    fgice = np.zeros(spec_i.shape, dtype=np.int16)
    elev = np.zeros(spec_i.shape, dtype=np.int16)
    fgice[4:8, 4:8] = 1
    elev[4:8, 4:8] = 500
    ice_path = tmp_path / "ice.nc"
    xr.Dataset(
        {
            "FGICE1m": (["lat", "lon"], fgice),
            "ZICETOP1m": (["lat", "lon"], elev),
        }
    ).to_netcdf(ice_path)

    topo_path = tmp_path / "topo.nc"
    xr.Dataset(
        {
            "FOCEAN": (["lat", "lon"], np.zeros(spec_o.shape)),
            "FOCEANF": (["lat", "lon"], np.zeros(spec_o.shape)),
        }
    ).to_netcdf(topo_path)
    return str(ice_path), str(topo_path)
