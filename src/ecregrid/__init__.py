from .elevation import Indexing, InterpStyle, make_hcdefs, parse_elevation_classes
from .errors import ConfigurationError, DataError, EcRegridError, TopographyError
from .grid import GRIDS, GridSpec, get_grid, make_atmosphere_spec
from .io import ChunkWriter, load_dimension, load_operator
from .matrices import RegridMatrices, RegridParams, WeightedOperator, make_I2vX
from .overlap import EsmfOverlapEngine, ExchangeGrid, LonLatOverlapEngine, OverlapAccumulator
from .partition import ChunkDescriptor, make_validity_mask, plan_chunks
from .pipeline import RunConfig, plan, run_chunk
from .regridder import (
    GCMRegridder,
    MismatchedRegridder,
    new_regridder_mismatched,
    new_regridder_standard,
)
from .sparse import SparseDimension

__all__ = [
    "GridSpec",
    "GRIDS",
    "get_grid",
    "make_atmosphere_spec",
    "SparseDimension",
    "ExchangeGrid",
    "OverlapAccumulator",
    "LonLatOverlapEngine",
    "EsmfOverlapEngine",
    "Indexing",
    "InterpStyle",
    "make_hcdefs",
    "parse_elevation_classes",
    "GCMRegridder",
    "MismatchedRegridder",
    "new_regridder_standard",
    "new_regridder_mismatched",
    "RegridMatrices",
    "RegridParams",
    "WeightedOperator",
    "make_I2vX",
    "ChunkDescriptor",
    "plan_chunks",
    "make_validity_mask",
    "ChunkWriter",
    "load_dimension",
    "load_operator",
    "RunConfig",
    "plan",
    "run_chunk",
    "EcRegridError",
    "ConfigurationError",
    "DataError",
    "TopographyError",
]
