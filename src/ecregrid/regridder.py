from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import List, Optional, Union

import numpy as np

from .elevation import Indexing, InterpStyle
from .errors import ConfigurationError, DataError, TopographyError
from .grid import EQ_RAD, GridSpec, check_exact_multiple
from .matrices import EngineFactory, RegridMatrices, RegridParams
from .overlap import (
    ExchangeGrid,
    LonLatOverlapEngine,
    OverlapAccumulator,
    ProgressCallback,
    accumulate,
    active_rows,
    elevation_validity,
)
from .sparse import SparseDimension
from .topography import OceanFractions

logger = logging.getLogger(__name__)


@dataclass
class AbbrGrid:
    """
    A grid realized only on the cells of a dimension.

    Attributes
    ----------
    name : str
        Grid label.
    spec : GridSpec
        The full grid.
    dim : SparseDimension
        Cells that are realized.
    """

    name: str
    spec: GridSpec
    dim: SparseDimension

    @property
    def indices(self) -> np.ndarray:
        """Sparse ids of the realized cells, in dense order."""
        return self.dim.sparse_ids

    def cell_areas(self, eq_rad: float = EQ_RAD) -> np.ndarray:
        """Areas of the realized cells, in dense order."""
        return self.spec.cell_areas(eq_rad).ravel()[self.indices]


class IceRegridder:
    """
    One ice sheet: its exchange grid with the coarse grid and its elevations.

    Parameters
    ----------
    name : str
        Sheet name.
    agrid_i : AbbrGrid
        The realized ice grid.
    exgrid : ExchangeGrid
        Overlaps between the coarse grid and this sheet.
    elevmask : np.ndarray
        Ice elevation [m] on the full ice grid, NaN where there is no ice.
    interp_style : InterpStyle, default Z_INTERP
        How elevations map onto elevation classes.
    """

    def __init__(
        self,
        name: str,
        agrid_i: AbbrGrid,
        exgrid: ExchangeGrid,
        elevmask: np.ndarray,
        interp_style: InterpStyle = InterpStyle.Z_INTERP,
    ) -> None:
        self.name = name
        self.agrid_i = agrid_i
        self.exgrid = exgrid
        self.elevI = np.asarray(elevmask, dtype=np.float64).ravel()
        if self.elevI.size != agrid_i.spec.size:
            raise ValueError(
                f"Elevation mask has {self.elevI.size} cells, "
                f"ice grid has {agrid_i.spec.size}"
            )
        self.interp_style = interp_style

    def __repr__(self) -> str:
        return f"IceRegridder({self.name!r}, exgrid={len(self.exgrid)} entries)"

    @property
    def nI(self) -> int:
        return self.agrid_i.spec.size


class GCMRegridder:
    """
    Regridder between a GCM grid, its elevation classes, and ice sheets.

    Parameters
    ----------
    label : str
        Name of the GCM grid (e.g. 'Ocean', 'Atmosphere').
    agrid_a : AbbrGrid
        The realized GCM grid.
    hcdefs : np.ndarray
        Elevation class definitions [m].
    indexing : Indexing, optional
        E-grid indexing; defaults to the full A extent times the class count.
    eq_rad : float, default EQ_RAD
        Radius of the sphere.
    """

    def __init__(
        self,
        label: str,
        agrid_a: AbbrGrid,
        hcdefs: np.ndarray,
        indexing: Optional[Indexing] = None,
        eq_rad: float = EQ_RAD,
    ) -> None:
        self.label = label
        self.agrid_a = agrid_a
        self.hcdefs = np.asarray(hcdefs, dtype=np.float64)
        if self.hcdefs.size == 0:
            raise ConfigurationError("At least one elevation class is required")
        self.indexing = indexing or Indexing(agrid_a.spec.size, self.hcdefs.size)
        self.eq_rad = eq_rad
        self.ice_regridders: List[IceRegridder] = []

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}({self.label!r}, nA={len(self.agrid_a.dim)}, "
            f"nhc={self.nhc}, sheets={len(self.ice_regridders)})"
        )

    @property
    def nhc(self) -> int:
        return int(self.hcdefs.size)

    def add_sheet(self, sheet: IceRegridder) -> None:
        self.ice_regridders.append(sheet)

    def regrid_matrices(
        self,
        sheet: int = 0,
        params: RegridParams = RegridParams(),
        elevmask: Optional[np.ndarray] = None,
    ) -> RegridMatrices:
        """
        Operator factory for one ice sheet.

        Parameters
        ----------
        sheet : int, default 0
            Index of the ice sheet.
        params : RegridParams
            Scale-vs-conservative policy.
        elevmask : np.ndarray, optional
            Elevations to build E-sided operators from; defaults to the
            sheet's own.
        """
        return RegridMatrices(
            self.ice_regridders[sheet], self.indexing, self.hcdefs, params,
            elevmask=elevmask,
        )


class MismatchedRegridder:
    """
    Ocean regridder reconciled with the GCM's rounded ocean mask.

    The GCM treats each ocean cell as either all ocean or not ocean at all
    (``focean``), while the ice data implies a fractional ocean cover
    (``foceanf``). A/E-side weights are rescaled by
    ``(1 - focean) / (1 - foceanf)``; cells the GCM considers ocean are dropped.

    Parameters
    ----------
    gcm_o : GCMRegridder
        Standard regridder on the ocean grid.
    foceanf : np.ndarray
        Fractional ocean cover on the ocean grid.
    focean : np.ndarray
        Rounded (0/1) ocean cover on the ocean grid.
    hcdefs : np.ndarray, optional
        Elevation classes; must match those of ``gcm_o`` when given.

    Raises
    ------
    ConfigurationError
        If ``hcdefs`` differs from the wrapped regridder's.
    DataError
        If an ice-touched cell has a fractional ocean cover of 1 but is not
        ocean to the GCM.
    """

    def __init__(
        self,
        gcm_o: GCMRegridder,
        foceanf: np.ndarray,
        focean: np.ndarray,
        hcdefs: Optional[np.ndarray] = None,
    ) -> None:
        if hcdefs is not None and not np.array_equal(
            np.asarray(hcdefs, dtype=np.float64), gcm_o.hcdefs
        ):
            raise ConfigurationError(
                "Elevation classes of the mismatched regridder must match "
                "those of the ocean regridder"
            )
        spec_o = gcm_o.agrid_a.spec
        foceanf = np.asarray(foceanf, dtype=np.float64)
        focean = np.asarray(focean, dtype=np.float64)
        for name, arr in (("foceanf", foceanf), ("focean", focean)):
            if arr.size != spec_o.size:
                raise TopographyError(
                    f"{name} has {arr.size} cells, ocean grid has {spec_o.size}"
                )
        self.gcm_o = gcm_o
        self.foceanf = foceanf.reshape(spec_o.shape)
        self.focean = focean.reshape(spec_o.shape)
        self.land_factor = self._land_factor()

    def _land_factor(self) -> np.ndarray:
        spec_o = self.gcm_o.agrid_a.spec
        foceanf = self.foceanf.ravel()
        focean = self.focean.ravel()

        touched = self.gcm_o.agrid_a.indices
        bad = touched[(foceanf[touched] >= 1.0) & (focean[touched] < 1.0)]
        if bad.size:
            j, i = divmod(int(bad[0]), spec_o.im)
            raise DataError(
                f"Ocean cell (j={j}, i={i}) overlaps ice but has FOCEANF=1 "
                f"while FOCEAN={focean[bad[0]]}; {bad.size} such cells in total"
            )

        factor = np.zeros(spec_o.size, dtype=np.float64)
        land = foceanf < 1.0
        factor[land] = (1.0 - focean[land]) / (1.0 - foceanf[land])
        n_dropped = int(np.count_nonzero(factor[touched] == 0))
        if n_dropped:
            logger.info(
                "Dropping %d ice-touched ocean cells the GCM treats as all ocean",
                n_dropped,
            )
        return factor

    def __repr__(self) -> str:
        return f"MismatchedRegridder({self.gcm_o!r})"

    @property
    def label(self) -> str:
        return self.gcm_o.label

    @property
    def agrid_a(self) -> AbbrGrid:
        return self.gcm_o.agrid_a

    @property
    def hcdefs(self) -> np.ndarray:
        return self.gcm_o.hcdefs

    @property
    def indexing(self) -> Indexing:
        return self.gcm_o.indexing

    @property
    def nhc(self) -> int:
        return self.gcm_o.nhc

    @property
    def eq_rad(self) -> float:
        return self.gcm_o.eq_rad

    @property
    def ice_regridders(self) -> List[IceRegridder]:
        return self.gcm_o.ice_regridders

    def regrid_matrices(
        self,
        sheet: int = 0,
        params: RegridParams = RegridParams(),
        elevmask: Optional[np.ndarray] = None,
    ) -> RegridMatrices:
        return RegridMatrices(
            self.ice_regridders[sheet],
            self.indexing,
            self.hcdefs,
            params,
            area_factor=self.land_factor,
            elevmask=elevmask,
        )


def new_regridder_standard(
    spec_a: GridSpec,
    label: str,
    spec_i: GridSpec,
    elevmask: np.ndarray,
    hcdefs: np.ndarray,
    eq_rad: float = EQ_RAD,
    interp_style: InterpStyle = InterpStyle.Z_INTERP,
    engine: EngineFactory = LonLatOverlapEngine,
    progress: Union[ProgressCallback, bool, None] = None,
) -> GCMRegridder:
    """
    Build a regridder between a GCM grid and one ice sheet.

    Parameters
    ----------
    spec_a : GridSpec
        The GCM grid.
    label : str
        Name for the GCM grid.
    spec_i : GridSpec
        The ice grid; must be an exact multiple of ``spec_a``.
    elevmask : np.ndarray
        Ice elevation on ``spec_i`` (shape ``(jm, im)``), NaN outside the
        cells to regrid.
    hcdefs : np.ndarray
        Elevation class definitions [m].
    eq_rad : float, default EQ_RAD
        Radius of the sphere.
    interp_style : InterpStyle, default Z_INTERP
        Elevation-class interpolation for the ice sheet.
    engine : callable, default LonLatOverlapEngine
        Factory ``engine(coarse, fine)`` for the overlap engine.
    progress : callable or bool, optional
        Progress reporter for the overlap accumulation.

    Returns
    -------
    GCMRegridder
        Regridder with a single ice sheet.
    """
    check_exact_multiple(spec_a, spec_i)
    elevmask = np.asarray(elevmask, dtype=np.float64)
    if elevmask.shape != spec_i.shape:
        raise ConfigurationError(
            f"Elevation mask shape {elevmask.shape} does not match "
            f"ice grid shape {spec_i.shape}"
        )

    logger.info("---- Computing overlaps (%s)", label)
    exgrid = ExchangeGrid()
    dim_a = SparseDimension(spec_a.size)
    dim_i = SparseDimension(spec_i.size)
    acc = OverlapAccumulator(
        exgrid, elevation_validity(elevmask), dim_a, dim_i, progress=progress
    )
    accumulate(engine(spec_a, spec_i), acc, eq_rad, fine_rows=active_rows(elevmask))
    if len(exgrid) == 0:
        warnings.warn(
            f"No ice cells overlap grid '{label}'; regridder is empty", UserWarning
        )
    logger.info(
        "---- Creating %s regridder: %d A cells, %d I cells, %d overlaps",
        label,
        len(dim_a),
        len(dim_i),
        len(exgrid),
    )

    hcdefs = np.asarray(hcdefs, dtype=np.float64)
    gcm = GCMRegridder(
        label,
        AbbrGrid(label, spec_a, dim_a),
        hcdefs,
        Indexing(spec_a.size, hcdefs.size),
        eq_rad,
    )
    gcm.add_sheet(
        IceRegridder("globalI", AbbrGrid("Ice", spec_i, dim_i), exgrid, elevmask, interp_style)
    )
    return gcm


def new_regridder_mismatched(
    spec_o: GridSpec,
    spec_i: GridSpec,
    elevmask: np.ndarray,
    hcdefs: np.ndarray,
    topo: OceanFractions,
    eq_rad: float = EQ_RAD,
    engine: EngineFactory = LonLatOverlapEngine,
    progress: Union[ProgressCallback, bool, None] = None,
) -> MismatchedRegridder:
    """
    Build an ocean-grid regridder reconciled with the GCM's ocean mask.

    Parameters
    ----------
    spec_o : GridSpec
        The ocean grid.
    spec_i : GridSpec
        The ice grid.
    elevmask : np.ndarray
        Ice elevation on ``spec_i``, NaN outside the cells to regrid.
    hcdefs : np.ndarray
        Elevation class definitions [m].
    topo : OceanFractions
        Fractional and rounded ocean cover on ``spec_o``.

    Returns
    -------
    MismatchedRegridder
        The wrapped regridder.
    """
    gcm_o = new_regridder_standard(
        spec_o, "Ocean", spec_i, elevmask, hcdefs, eq_rad=eq_rad, engine=engine,
        progress=progress,
    )
    return MismatchedRegridder(gcm_o, topo.foceanf, topo.focean, hcdefs=hcdefs)
