from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Tuple, Union

import numpy as np

from .errors import ConfigurationError


class InterpStyle(enum.Enum):
    """How an ice cell's elevation is distributed over elevation classes."""

    Z_INTERP = "z_interp"
    ELEV_CLASS_INTERP = "elev_class_interp"


def parse_elevation_classes(text: str) -> Tuple[float, float, float]:
    """
    Parse an elevation-class argument of the form ``lowest,highest[,step]``.

    Parameters
    ----------
    text : str
        Comma-separated elevations in meters. The step defaults to 1.

    Returns
    -------
    tuple of float
        ``(lowest, highest, step)``.

    Raises
    ------
    ConfigurationError
        If the argument does not hold two or three numbers.
    """
    parts = [p.strip() for p in str(text).split(",")]
    if len(parts) < 2 or len(parts) > 3:
        raise ConfigurationError(
            f"--elev-classes '{text}' must have just two or three values"
        )
    try:
        values = [float(p) for p in parts]
    except ValueError:
        raise ConfigurationError(f"--elev-classes '{text}' must be numeric")
    step = values[2] if len(values) == 3 else 1.0
    return values[0], values[1], step


def make_hcdefs(lowest: float, highest: float, step: float) -> np.ndarray:
    """
    Elevations of the elevation classes: ``lowest, lowest+step, ...`` up to ``highest``.

    Raises
    ------
    ConfigurationError
        If ``step`` is not positive or ``highest < lowest``.
    """
    if not step > 0:
        raise ConfigurationError(f"Elevation class step must be positive, got {step}")
    if highest < lowest:
        raise ConfigurationError(
            f"Highest elevation class ({highest}) is below the lowest ({lowest})"
        )
    n = int(np.floor((highest - lowest) / step + 1e-9)) + 1
    return lowest + step * np.arange(n, dtype=np.float64)


@dataclass(frozen=True)
class Indexing:
    """
    Bijection between elevation-grid ids and ``(A id, elevation class)`` pairs.

    The A id varies fastest: ``iE = ihc * n_a + iA``.
    """

    n_a: int
    n_hc: int

    @property
    def extent(self) -> int:
        return self.n_a * self.n_hc

    def tuple_to_index(
        self, ia: Union[int, np.ndarray], ihc: Union[int, np.ndarray]
    ) -> Union[int, np.ndarray]:
        return ihc * self.n_a + ia

    def index_to_tuple(
        self, ie: Union[int, np.ndarray]
    ) -> Tuple[Union[int, np.ndarray], Union[int, np.ndarray]]:
        return ie % self.n_a, ie // self.n_a

    def to_attrs(self, prefix: str = "indexingE_") -> dict:
        return {
            f"{prefix}extent": [self.n_a, self.n_hc],
            f"{prefix}names": "A HC",
            f"{prefix}order": "HC A",
        }


def elevation_weights(
    elev: np.ndarray,
    hcdefs: np.ndarray,
    style: InterpStyle = InterpStyle.Z_INTERP,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """
    Distribute each elevation over (at most) two elevation classes.

    Parameters
    ----------
    elev : np.ndarray
        Elevations [m] of ice cells.
    hcdefs : np.ndarray
        Ascending elevation class definitions [m].
    style : InterpStyle, default Z_INTERP
        ``Z_INTERP`` interpolates linearly between the two bracketing
        classes (clamped at the ends); ``ELEV_CLASS_INTERP`` puts all
        weight on the nearest class.

    Returns
    -------
    ihc0, ihc1 : np.ndarray
        Class indices.
    w0, w1 : np.ndarray
        Weights, ``w0 + w1 == 1``.
    """
    elev = np.asarray(elev, dtype=np.float64)
    hcdefs = np.asarray(hcdefs, dtype=np.float64)
    nhc = hcdefs.size

    if nhc == 1:
        zeros = np.zeros(elev.shape, dtype=np.int64)
        return zeros, zeros, np.ones(elev.shape), np.zeros(elev.shape)

    if style is InterpStyle.ELEV_CLASS_INTERP:
        midpoints = 0.5 * (hcdefs[:-1] + hcdefs[1:])
        ihc = np.searchsorted(midpoints, elev, side="right").astype(np.int64)
        return ihc, ihc, np.ones(elev.shape), np.zeros(elev.shape)

    ihc0 = np.clip(np.searchsorted(hcdefs, elev, side="right") - 1, 0, nhc - 2)
    ihc0 = ihc0.astype(np.int64)
    frac = (elev - hcdefs[ihc0]) / (hcdefs[ihc0 + 1] - hcdefs[ihc0])
    frac = np.clip(frac, 0.0, 1.0)
    return ihc0, ihc0 + 1, 1.0 - frac, frac
