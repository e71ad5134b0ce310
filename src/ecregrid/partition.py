from __future__ import annotations

import logging
import shlex
from dataclasses import dataclass
from typing import List, Sequence, Tuple

import numpy as np

from .errors import ConfigurationError
from .grid import EQ_RAD, GridSpec, check_exact_multiple

logger = logging.getLogger(__name__)

# Ice cells per chunk before a chunk is closed; not a hard limit
DEFAULT_CHUNK_SIZE = 4_000_000


@dataclass(frozen=True)
class ChunkDescriptor:
    """
    A contiguous run of coarse cells in row-major scan order.

    Attributes
    ----------
    id : int
        Chunk number.
    start : tuple of int
        ``(row, col)`` of the first cell in the chunk.
    end : tuple of int
        ``(row, col)`` of the position just after the last cell. The final
        chunk of a grid ends at ``(jm, 0)``.
    """

    id: int
    start: Tuple[int, int]
    end: Tuple[int, int]

    def __str__(self) -> str:
        return f"{self.id},{self.start[0]},{self.start[1]},{self.end[0]},{self.end[1]}"

    @classmethod
    def parse(cls, text: str) -> "ChunkDescriptor":
        """
        Parse the ``id,j0,i0,j1,i1`` form produced by :meth:`__str__`.

        Raises
        ------
        ConfigurationError
            If the text does not hold five non-negative integers, or the
            chunk ends before it starts.
        """
        parts = [p.strip() for p in str(text).split(",")]
        if len(parts) != 5:
            raise ConfigurationError(f"--runchunk '{text}' must have 5 values")
        try:
            values = [int(p) for p in parts]
        except ValueError:
            raise ConfigurationError(f"--runchunk '{text}' must hold integers")
        if min(values) < 0:
            raise ConfigurationError(f"--runchunk '{text}' must be non-negative")
        chunk = cls(values[0], (values[1], values[2]), (values[3], values[4]))
        if chunk.end < chunk.start:
            raise ConfigurationError(f"--runchunk '{text}' ends before it starts")
        return chunk

    def flat_range(self, im: int) -> Tuple[int, int]:
        """Half-open range of row-major coarse cell ids covered, for a grid ``im`` wide."""
        return (
            self.start[0] * im + self.start[1],
            self.end[0] * im + self.end[1],
        )

    def check_grid(self, spec_o: GridSpec) -> None:
        """Raise ConfigurationError if the chunk does not fit in ``spec_o``."""
        lo, hi = self.flat_range(spec_o.im)
        if self.start[1] >= spec_o.im or self.end[1] >= spec_o.im or hi > spec_o.size:
            raise ConfigurationError(
                f"Chunk {self} does not fit in grid {spec_o.im}x{spec_o.jm}"
            )


def _block_view(arr: np.ndarray, mult: Tuple[int, int]) -> np.ndarray:
    """View a fine-grid array as ``(jm, mult_j, im, mult_i)`` blocks of coarse cells."""
    mult_j, mult_i = mult
    jm = arr.shape[0] // mult_j
    im = arr.shape[1] // mult_i
    return arr.reshape(jm, mult_j, im, mult_i)


def coarse_ice_fraction(
    fgice_i: np.ndarray, spec_o: GridSpec, spec_i: GridSpec, eq_rad: float = EQ_RAD
) -> np.ndarray:
    """
    Area-weighted fraction of each coarse cell covered by fine-grid ice.

    The fine mask is summed one sub-row of each coarse block at a time, in
    its stored dtype. Fine cells in a latitude row share one area, so the
    area weights are applied after the longitude sums.

    Parameters
    ----------
    fgice_i : np.ndarray
        Ice mask or fraction (bool, integer or float) on ``spec_i``.
    spec_o, spec_i : GridSpec
        Coarse and fine grids; ``spec_i`` must be an exact multiple of ``spec_o``.

    Returns
    -------
    np.ndarray
        Ice fraction with shape ``spec_o.shape``.
    """
    mult_j, mult_i = check_exact_multiple(spec_o, spec_i)
    blocks = _block_view(np.asarray(fgice_i), (mult_j, mult_i))
    row_area = spec_i.row_areas(eq_rad).reshape(spec_o.jm, mult_j)

    num = np.zeros(spec_o.shape, dtype=np.float64)
    for k in range(mult_j):
        num += row_area[:, k, np.newaxis] * blocks[:, k].sum(axis=2, dtype=np.float64)
    den = row_area.sum(axis=1) * mult_i

    out = np.zeros_like(num)
    np.divide(num, den[:, np.newaxis], out=out, where=den[:, np.newaxis] > 0)
    return out


def _ice_counts(fgice_o: np.ndarray, fgice_i: np.ndarray, mult: Tuple[int, int]) -> np.ndarray:
    """Number of flagged fine cells under each coarse cell with nonzero ice."""
    blocks = _block_view(np.asarray(fgice_i), mult)
    counts = np.zeros(blocks.shape[::2], dtype=np.int64)
    for k in range(mult[0]):
        counts += np.count_nonzero(blocks[:, k], axis=2)
    counts[np.asarray(fgice_o) == 0] = 0
    return counts


def plan_chunks(
    fgice_o: np.ndarray,
    fgice_i: np.ndarray,
    mult: Tuple[int, int],
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> List[ChunkDescriptor]:
    """
    Partition the coarse grid into chunks holding about ``chunk_size`` ice cells each.

    Coarse cells are scanned in row-major order. A chunk is closed right
    after the cell that brings its ice-cell count to ``chunk_size`` or more.
    The last chunk covers whatever remains.

    Parameters
    ----------
    fgice_o : np.ndarray
        Coarse-grid ice indicator, shape ``(jm, im)``.
    fgice_i : np.ndarray
        Fine-grid ice mask.
    mult : tuple of int
        Fine cells per coarse cell ``(mult_j, mult_i)``.
    chunk_size : int, default DEFAULT_CHUNK_SIZE
        Ice-cell threshold for closing a chunk.

    Returns
    -------
    list of ChunkDescriptor
        Chunks covering the whole coarse grid exactly once.
    """
    if chunk_size <= 0:
        raise ConfigurationError(f"Chunk size must be positive, got {chunk_size}")
    fgice_o = np.asarray(fgice_o)
    jm, im = fgice_o.shape
    if fgice_i.shape != (jm * mult[0], im * mult[1]):
        raise ConfigurationError(
            f"Fine mask shape {fgice_i.shape} is not {mult} times coarse shape {fgice_o.shape}"
        )
    counts = _ice_counts(fgice_o, fgice_i, mult).ravel()
    total = counts.size

    def position(flat: int) -> Tuple[int, int]:
        return divmod(flat, im)

    chunks: List[ChunkDescriptor] = []
    start = 0
    nice = 0
    for ij in np.flatnonzero(counts).tolist():
        nice += int(counts[ij])
        if nice >= chunk_size:
            chunk = ChunkDescriptor(len(chunks), position(start), position(ij + 1))
            logger.info("Chunk %d, nice=%d (%s)", chunk.id, nice, chunk)
            chunks.append(chunk)
            start = ij + 1
            nice = 0
    if start < total or not chunks:
        chunk = ChunkDescriptor(len(chunks), position(start), position(total))
        logger.info("Chunk %d, nice=%d (%s)", chunk.id, nice, chunk)
        chunks.append(chunk)
    return chunks


def make_validity_mask(
    chunk: ChunkDescriptor,
    fgice_o: np.ndarray,
    fgice_i: np.ndarray,
    elev_i: np.ndarray,
    mult: Tuple[int, int],
) -> np.ndarray:
    """
    Elevation mask for the ice under one chunk of the coarse grid.

    Parameters
    ----------
    chunk : ChunkDescriptor
        Coarse cells to cover.
    fgice_o : np.ndarray
        Coarse-grid ice indicator.
    fgice_i : np.ndarray
        Fine-grid ice mask.
    elev_i : np.ndarray
        Fine-grid elevation.
    mult : tuple of int
        Fine cells per coarse cell ``(mult_j, mult_i)``.

    Returns
    -------
    np.ndarray
        Array shaped like ``elev_i``: the elevation where a fine cell is ice
        and lies under an iced coarse cell of the chunk, NaN elsewhere.
    """
    fgice_o = np.asarray(fgice_o)
    jm, im = fgice_o.shape
    lo, hi = chunk.flat_range(im)
    logger.info("BEGIN O%s END O%s", chunk.start, chunk.end)

    in_chunk = np.zeros(jm * im, dtype=bool)
    in_chunk[lo:hi] = True
    selected = in_chunk.reshape(jm, im) & (fgice_o != 0)

    # Only the coarse rows the chunk touches need fine-grid work
    j0 = chunk.start[0]
    j1 = min(jm, chunk.end[0] + (1 if chunk.end[1] else 0))
    mult_j, mult_i = mult
    rows = slice(j0 * mult_j, max(j0, j1) * mult_j)

    fine_sel = np.repeat(np.repeat(selected[j0:j1], mult_j, axis=0), mult_i, axis=1)
    fine_sel &= np.asarray(fgice_i)[rows] != 0

    mask = np.full(np.shape(elev_i), np.nan, dtype=np.float64)
    np.copyto(mask[rows], np.asarray(elev_i)[rows], where=fine_sel)
    return mask


def _make_escape(text: str) -> str:
    """Protect ``$`` from make variable expansion."""
    return text.replace("$", "$$")


def chunk_target(output: str, chunk: ChunkDescriptor) -> str:
    return f"{output}-{chunk.id:02d}"


def write_build_script(
    path: str,
    output: str,
    command: Sequence[str],
    chunks: Sequence[ChunkDescriptor],
    artifacts: Sequence[str],
    combiner: str = "combine_global_ec",
) -> None:
    """
    Write a Makefile that runs every chunk, one at a time, then combines them.

    Parameters
    ----------
    path : str
        Makefile to write.
    output : str
        Output prefix; also the name of the aggregate target.
    command : sequence of str
        Command line that re-runs this program (without ``--runchunk``).
    chunks : sequence of ChunkDescriptor
        Chunks to run.
    artifacts : sequence of str
        Files produced by all chunks, passed to the combiner.
    combiner : str, default 'combine_global_ec'
        Program that merges the chunk artifacts.
    """
    cmd = _make_escape(" ".join(shlex.quote(str(c)) for c in command))
    names = [chunk_target(output, c) for c in chunks]
    targets = [_make_escape(n) for n in names]
    quoted = " ".join(_make_escape(shlex.quote(a)) for a in artifacts)
    mkfile = _make_escape(path)

    lines = [
        # Chunks can each use a lot of memory
        ".NOTPARALLEL:",
        "",
        f"{_make_escape(output)} : {mkfile} {' '.join(targets)}",
        f"\t{combiner} {quoted}",
        "",
    ]
    for chunk, name, target in zip(chunks, names, targets):
        lines.append(f"{target} : {mkfile}")
        stamp = _make_escape(shlex.quote(name))
        lines.append(f"\t{cmd} --runchunk {chunk} && touch {stamp}")
        lines.append("")

    with open(path, "w") as f:
        f.write("\n".join(lines))
    logger.info("Done writing chunk-generating makefile. Run with: make -f %s", path)
