from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple

import numpy as np
import xarray as xr

from .elevation import make_hcdefs, parse_elevation_classes
from .errors import ConfigurationError, DataError
from .grid import EQ_RAD, GridSpec, check_exact_multiple, get_grid, make_atmosphere_spec
from .io import ChunkWriter
from .matrices import RegridParams, make_I2vX
from .partition import (
    DEFAULT_CHUNK_SIZE,
    ChunkDescriptor,
    coarse_ice_fraction,
    make_validity_mask,
    plan_chunks,
    write_build_script,
)
from .regridder import new_regridder_mismatched, new_regridder_standard
from .sparse import SparseDimension
from .topography import load_ocean_fractions
from .utils import locate_file

logger = logging.getLogger(__name__)

# Sections generated for every chunk, in order
RUNTYPES = ("mismatched", "standard")


@dataclass
class RunConfig:
    """
    Everything needed to plan or run elevation-class operator generation.

    Attributes
    ----------
    grid_o, grid_i, grid_i2 : str
        Names of the ocean, ice and display grids (see ``ecregrid.grid.GRIDS``).
    ice_file : str
        File holding the ice mask and ice elevation on the ice grid.
    topo_file : str
        Topography file with ocean fractions on the ocean grid.
    fgice_var : str, default 'FGICE1m'
        Ice mask variable in ``ice_file``.
    elev_var : str, default 'ZICETOP1m'
        Ice elevation variable in ``ice_file``.
    focean_var, foceanf_var : str
        Rounded and fractional ocean cover variables in ``topo_file``.
    elev_classes : str, default '-100,3700,200'
        Elevation classes as ``lowest,highest[,step]``.
    output : str, default 'global_ec'
        Output prefix.
    scale : bool, default True
        Produce scaled (row-normalized) operators instead of raw ones.
    eq_rad : float, default EQ_RAD
        Radius of the Earth.
    chunk_size : int, default DEFAULT_CHUNK_SIZE
        Ice-cell threshold for closing a chunk when planning.
    chunk : str, optional
        Chunk to run, as ``id,j0,i0,j1,i1``. If None, plan chunks instead.
    combiner : str, default 'combine_global_ec'
        Program that merges chunk artifacts.
    search_path_var : str, default 'MODELE_FILE_PATH'
        Environment variable with directories searched for input files.
    """

    grid_o: str
    grid_i: str
    grid_i2: str
    ice_file: str
    topo_file: str
    fgice_var: str = "FGICE1m"
    elev_var: str = "ZICETOP1m"
    focean_var: str = "FOCEAN"
    foceanf_var: str = "FOCEANF"
    elev_classes: str = "-100,3700,200"
    output: str = "global_ec"
    scale: bool = True
    eq_rad: float = EQ_RAD
    chunk_size: int = DEFAULT_CHUNK_SIZE
    chunk: Optional[str] = None
    combiner: str = "combine_global_ec"
    search_path_var: str = "MODELE_FILE_PATH"

    @property
    def spec_o(self) -> GridSpec:
        return get_grid(self.grid_o)

    @property
    def spec_i(self) -> GridSpec:
        return get_grid(self.grid_i)

    @property
    def spec_i2(self) -> GridSpec:
        return get_grid(self.grid_i2)

    @property
    def spec_a(self) -> GridSpec:
        return make_atmosphere_spec(self.spec_o)

    @property
    def hcdefs(self) -> np.ndarray:
        return make_hcdefs(*parse_elevation_classes(self.elev_classes))

    @property
    def chunk_descriptor(self) -> Optional[ChunkDescriptor]:
        if self.chunk is None:
            return None
        return ChunkDescriptor.parse(self.chunk)

    def validate(self) -> "RunConfig":
        """
        Check the whole configuration before any heavy work.

        Raises
        ------
        ConfigurationError
            On unknown grids, grids that do not nest, a malformed
            elevation-class list or chunk descriptor, or a bad chunk size.
        """
        spec_o, spec_i, _ = (get_grid(g) for g in (self.grid_o, self.grid_i, self.grid_i2))
        check_exact_multiple(spec_o, spec_i)
        check_exact_multiple(make_atmosphere_spec(spec_o), spec_i)
        make_hcdefs(*parse_elevation_classes(self.elev_classes))
        if self.chunk_size <= 0:
            raise ConfigurationError(f"Chunk size must be positive, got {self.chunk_size}")
        if self.eq_rad <= 0:
            raise ConfigurationError(f"Earth radius must be positive, got {self.eq_rad}")
        chunk = self.chunk_descriptor
        if chunk is not None:
            chunk.check_grid(spec_o)
        return self


def artifact_path(output: str, runtype: str, chunk: ChunkDescriptor) -> str:
    return f"{output}-{runtype}-{chunk.id:02d}.nc"


def _read_var(ds: xr.Dataset, var: str, spec: GridSpec, path: str) -> np.ndarray:
    if var not in ds:
        raise DataError(f"Variable '{var}' not found in {path}")
    # Stored dtype is kept; these are full fine-grid fields
    arr = np.asarray(ds[var].values).squeeze()
    if arr.shape != spec.shape:
        raise DataError(
            f"Variable '{var}' in {path} has shape {arr.shape}, expected {spec.shape}"
        )
    return arr


def read_ice_inputs(cfg: RunConfig) -> Tuple[np.ndarray, np.ndarray]:
    """
    Read the ice mask and ice elevation on the ice grid.

    Returns
    -------
    fgice_i : np.ndarray of bool
        Ice mask, False where missing.
    elev_i : np.ndarray
        Ice elevation [m], in the dtype it is stored with.
    """
    path = locate_file(cfg.ice_file, cfg.search_path_var)
    logger.info("Reading ice extent and elevation from %s", path)
    with xr.open_dataset(path) as ds:
        fgice_i = _read_var(ds, cfg.fgice_var, cfg.spec_i, path)
        elev_i = _read_var(ds, cfg.elev_var, cfg.spec_i, path)
    with np.errstate(invalid="ignore"):
        ice = np.greater(fgice_i, 0)
    del fgice_i
    return ice, elev_i


def _coarse_ice(cfg: RunConfig, fgice_i: np.ndarray) -> Tuple[np.ndarray, Tuple[int, int]]:
    spec_o = cfg.spec_o
    spec_i = cfg.spec_i
    mult = check_exact_multiple(spec_o, spec_i)
    return coarse_ice_fraction(fgice_i, spec_o, spec_i, cfg.eq_rad), mult


def plan(cfg: RunConfig, command: Sequence[str]) -> List[ChunkDescriptor]:
    """
    Partition the ocean grid into chunks and write a Makefile that runs them.

    Parameters
    ----------
    cfg : RunConfig
        Configuration; ``cfg.chunk`` is ignored.
    command : sequence of str
        Command line that re-runs this program, used in the Makefile.

    Returns
    -------
    list of ChunkDescriptor
        The planned chunks.
    """
    cfg.validate()
    fgice_i, _ = read_ice_inputs(cfg)
    fgice_o, mult = _coarse_ice(cfg, fgice_i)
    chunks = plan_chunks(fgice_o, fgice_i, mult, cfg.chunk_size)

    artifacts = [
        artifact_path(cfg.output, runtype, chunk)
        for chunk in chunks
        for runtype in RUNTYPES
    ]
    write_build_script(
        f"{cfg.output}.mk", cfg.output, command, chunks, artifacts, cfg.combiner
    )
    return chunks


def write_section(
    regridder: Any,
    runtype: str,
    cfg: RunConfig,
    elevmask: np.ndarray,
) -> str:
    """
    Generate and write every operator of one regridder for the current chunk.

    Operators are built one at a time in the order AvI, EvI, IvE (+I2vE),
    IvA (+I2vA), AvE; each is written and released before the next is
    built. The A, E, I and I2 dimension maps are written last.

    Parameters
    ----------
    regridder : GCMRegridder or MismatchedRegridder
        Source of the operators.
    runtype : str
        Section name, part of the artifact name.
    cfg : RunConfig
        Configuration; ``cfg.chunk`` must be set.
    elevmask : np.ndarray
        Ice elevations for this chunk on the ice grid.

    Returns
    -------
    str
        Path of the written artifact.
    """
    chunk = cfg.chunk_descriptor
    if chunk is None:
        raise ConfigurationError("A chunk is required to write a section")
    path = artifact_path(cfg.output, runtype, chunk)

    spec_a = regridder.agrid_a.spec
    spec_i = regridder.ice_regridders[0].agrid_i.spec
    spec_i2 = cfg.spec_i2
    params = RegridParams(scale=cfg.scale)
    rm = regridder.regrid_matrices(0, params, elevmask=elevmask)

    dim_a = SparseDimension(spec_a.size)
    dim_e = SparseDimension(regridder.indexing.extent)
    dim_i = SparseDimension(spec_i.size)
    dim_i2 = SparseDimension(spec_i2.size)

    with ChunkWriter(path) as writer:
        writer.write_metadata(
            regridder, spec_i2, attrs={"runtype": runtype, "chunk": str(chunk)}
        )

        logger.info("---- Generating AvI")
        op = rm.matrix("AvI", (dim_a, dim_i))
        writer.write_operator("AvI", op)
        del op

        logger.info("---- Generating EvI")
        op = rm.matrix("EvI", (dim_e, dim_i))
        writer.write_operator("EvI", op)
        del op

        for name, dim_x in (("IvE", dim_e), ("IvA", dim_a)):
            logger.info("---- Generating %s", name)
            op = rm.matrix(name, (dim_i, dim_x))
            writer.write_operator(name, op)
            display = make_I2vX(op, spec_i, spec_i2, dim_i2, dim_i, params, cfg.eq_rad)
            del op
            writer.write_operator("I2v" + name[-1], display)
            del display

        logger.info("---- Generating AvE")
        op = rm.matrix("AvE", (dim_a, dim_e))
        writer.write_operator("AvE", op)
        del op

        writer.write_dimensions(
            {
                "dimA": (dim_a, spec_a.shape, "GCM ('Atmosphere') Grid"),
                "dimE": (dim_e, (regridder.nhc,) + spec_a.shape, "Elevation Grid"),
                "dimI": (dim_i, spec_i.shape, "Fine-scale ('Ice') Grid"),
                "dimI2": (
                    dim_i2,
                    spec_i2.shape,
                    "Reduction of Fine-scale Grid, for easy plotting",
                ),
            }
        )
    return path


def run_chunk(cfg: RunConfig) -> List[str]:
    """
    Generate the operators for one chunk, for both the ocean and atmosphere grids.

    Returns
    -------
    list of str
        Paths of the written artifacts.
    """
    cfg.validate()
    chunk = cfg.chunk_descriptor
    if chunk is None:
        raise ConfigurationError("run_chunk requires a chunk descriptor")

    fgice_i, elev_i = read_ice_inputs(cfg)
    fgice_o, mult = _coarse_ice(cfg, fgice_i)
    elevmask = make_validity_mask(chunk, fgice_o, fgice_i, elev_i, mult)
    del fgice_i, elev_i
    if np.isnan(elevmask).all():
        logger.warning("Chunk %s holds no ice", chunk)

    hcdefs = cfg.hcdefs
    paths = []

    topo = load_ocean_fractions(
        locate_file(cfg.topo_file, cfg.search_path_var),
        cfg.spec_o,
        focean_var=cfg.focean_var,
        foceanf_var=cfg.foceanf_var,
    )
    regridder: Any = new_regridder_mismatched(
        cfg.spec_o, cfg.spec_i, elevmask, hcdefs, topo, eq_rad=cfg.eq_rad
    )
    paths.append(write_section(regridder, "mismatched", cfg, elevmask))
    del regridder, topo

    regridder = new_regridder_standard(
        cfg.spec_a, "Atmosphere", cfg.spec_i, elevmask, hcdefs, eq_rad=cfg.eq_rad
    )
    paths.append(write_section(regridder, "standard", cfg, elevmask))
    return paths
