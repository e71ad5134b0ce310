import tracemalloc

import numpy as np
import pytest

from ecregrid import ChunkDescriptor, ConfigurationError, GridSpec, make_validity_mask, plan_chunks
from ecregrid.grid import check_exact_multiple
from ecregrid.partition import DEFAULT_CHUNK_SIZE, coarse_ice_fraction, write_build_script

MULT = (2, 2)


def _ice_under(*cells, jm=4, im=4):
    """Fine ice mask (2x2 multiple) with ice under the given coarse cells."""
    fgice_i = np.zeros((jm * 2, im * 2))
    for j, i in cells:
        fgice_i[2 * j : 2 * j + 2, 2 * i : 2 * i + 2] = 1
    return fgice_i


def _fgice_o(fgice_i, jm=4, im=4):
    return coarse_ice_fraction(fgice_i, GridSpec(im, jm), GridSpec(im * 2, jm * 2))


def test_chunk_descriptor_text_form():
    chunk = ChunkDescriptor.parse("3,1,2,4,0")
    assert chunk == ChunkDescriptor(3, (1, 2), (4, 0))
    assert str(chunk) == "3,1,2,4,0"
    assert chunk.flat_range(4) == (6, 16)


@pytest.mark.parametrize("text", ["1,2,3", "a,0,0,1,1", "0,0,0,1,-1", "0,2,0,1,0"])
def test_chunk_descriptor_malformed(text):
    with pytest.raises(ConfigurationError, match="--runchunk"):
        ChunkDescriptor.parse(text)


def test_chunk_must_fit_grid():
    with pytest.raises(ConfigurationError):
        ChunkDescriptor.parse("0,0,0,5,0").check_grid(GridSpec(4, 4))
    ChunkDescriptor.parse("0,0,0,4,0").check_grid(GridSpec(4, 4))


def test_coarse_ice_fraction():
    fgice_i = _ice_under((1, 1))
    fgice_i[0, 0] = 1
    fgice_o = _fgice_o(fgice_i)
    assert fgice_o[1, 1] == pytest.approx(1.0)
    assert 0 < fgice_o[0, 0] < 1
    assert np.count_nonzero(fgice_o) == 2


def test_single_chunk_when_under_threshold():
    fgice_i = _ice_under((1, 1))
    chunks = plan_chunks(_fgice_o(fgice_i), fgice_i, MULT, chunk_size=100)
    assert chunks == [ChunkDescriptor(0, (0, 0), (4, 0))]


def test_threshold_boundary_closes_after_cell():
    """A chunk closes right after the cell that reaches the threshold."""
    fgice_i = _ice_under((1, 1), (2, 3))
    chunks = plan_chunks(_fgice_o(fgice_i), fgice_i, MULT, chunk_size=4)
    assert chunks == [
        ChunkDescriptor(0, (0, 0), (1, 2)),
        ChunkDescriptor(1, (1, 2), (3, 0)),
        ChunkDescriptor(2, (3, 0), (4, 0)),
    ]


def test_last_cell_closes_grid():
    """No empty trailing chunk when the threshold is hit on the last cell."""
    fgice_i = _ice_under((3, 3))
    chunks = plan_chunks(_fgice_o(fgice_i), fgice_i, MULT, chunk_size=4)
    assert chunks == [ChunkDescriptor(0, (0, 0), (4, 0))]


def test_no_ice_gives_one_chunk():
    fgice_i = np.zeros((8, 8))
    chunks = plan_chunks(np.zeros((4, 4)), fgice_i, MULT)
    assert len(chunks) == 1
    assert chunks[0].flat_range(4) == (0, 16)


def test_chunks_partition_scan_order():
    """Chunks cover every coarse cell exactly once, in order."""
    rng = np.random.default_rng(0)
    jm, im = 6, 10
    fgice_i = (rng.random((jm * 2, im * 2)) > 0.5).astype(float)
    fgice_o = _fgice_o(fgice_i, jm=jm, im=im)
    chunks = plan_chunks(fgice_o, fgice_i, MULT, chunk_size=15)

    assert len(chunks) > 1
    assert [c.id for c in chunks] == list(range(len(chunks)))
    covered = np.concatenate([np.arange(*c.flat_range(im)) for c in chunks])
    np.testing.assert_array_equal(covered, np.arange(jm * im))

    # Every closed chunk reached the threshold
    counts = (fgice_i.reshape(jm, 2, im, 2).sum(axis=(1, 3))).ravel()
    for c in chunks[:-1]:
        assert counts[slice(*c.flat_range(im))].sum() >= 15


def test_plan_rejects_bad_inputs():
    with pytest.raises(ConfigurationError):
        plan_chunks(np.zeros((4, 4)), np.zeros((8, 8)), MULT, chunk_size=0)
    with pytest.raises(ConfigurationError):
        plan_chunks(np.zeros((4, 4)), np.zeros((8, 6)), MULT)
    assert DEFAULT_CHUNK_SIZE == 4_000_000


def test_validity_mask_covers_only_chunk():
    fgice_i = _ice_under((1, 1), (2, 3))
    fgice_i[2, 2] = 0
    elev_i = np.arange(64, dtype=float).reshape(8, 8)
    fgice_o = _fgice_o(fgice_i)

    mask = make_validity_mask(ChunkDescriptor(0, (0, 0), (1, 2)), fgice_o, fgice_i, elev_i, MULT)
    assert mask.shape == (8, 8)
    valid = ~np.isnan(mask)
    assert valid.sum() == 3
    assert not valid[2, 2]
    np.testing.assert_array_equal(mask[valid], elev_i[valid])
    assert valid[2:4, 2:4].sum() == 3

    rest = make_validity_mask(ChunkDescriptor(1, (1, 2), (4, 0)), fgice_o, fgice_i, elev_i, MULT)
    np.testing.assert_array_equal(np.flatnonzero(~np.isnan(rest)), [38, 39, 46, 47])


def test_build_script(tmp_path):
    chunks = [ChunkDescriptor(0, (0, 0), (1, 2)), ChunkDescriptor(1, (1, 2), (4, 0))]
    path = str(tmp_path / "out.mk")
    write_build_script(
        path,
        "out",
        ["prog", "g1qx1", "--elev-classes", "0,100"],
        chunks,
        ["out-a-00.nc", "out-a-01.nc"],
        combiner="combine",
    )
    with open(path) as f:
        text = f.read()

    lines = text.splitlines()
    assert lines[0] == ".NOTPARALLEL:"
    assert f"out : {path} out-00 out-01" in lines
    assert "\tcombine out-a-00.nc out-a-01.nc" in lines
    assert f"out-01 : {path}" in lines
    assert "\tprog g1qx1 --elev-classes 0,100 --runchunk 1,1,2,4,0 && touch out-01" in lines


def _peak_bytes(func, *args):
    tracemalloc.start()
    try:
        result = func(*args)
        _, peak = tracemalloc.get_traced_memory()
    finally:
        tracemalloc.stop()
    return result, peak


def test_pre_chunk_memory_is_bounded_by_fine_grid():
    """Coarsening and masking never make float64 copies of the fine-grid inputs."""
    spec_o, spec_i = GridSpec(64, 32), GridSpec(2048, 1024)
    mult = check_exact_multiple(spec_o, spec_i)
    fgice_i = np.ones(spec_i.shape, dtype=bool)
    elev_i = np.full(spec_i.shape, 1200, dtype=np.int16)
    n_fine = spec_i.size

    fgice_o, peak = _peak_bytes(coarse_ice_fraction, fgice_i, spec_o, spec_i)
    np.testing.assert_allclose(fgice_o, 1.0)
    assert peak < n_fine

    # The mask itself is float64; everything else stays far below that
    everything = ChunkDescriptor(0, (0, 0), (spec_o.jm, 0))
    mask, peak = _peak_bytes(make_validity_mask, everything, fgice_o, fgice_i, elev_i, mult)
    assert np.all(mask == 1200.0)
    assert peak < 11 * n_fine


def test_validity_mask_accepts_stored_dtypes():
    fgice_i = _ice_under((1, 1)).astype(np.int16)
    elev_i = np.full((8, 8), 300, dtype=np.int16)
    mask = make_validity_mask(
        ChunkDescriptor(0, (1, 0), (2, 0)), _fgice_o(fgice_i), fgice_i, elev_i, MULT
    )
    assert mask.dtype == np.float64
    np.testing.assert_array_equal(mask[2:4, 2:4], 300.0)
    assert np.isnan(mask).sum() == 60


def test_build_script_escapes_make_variables(tmp_path):
    chunks = [ChunkDescriptor(0, (0, 0), (4, 0))]
    path = str(tmp_path / "out.mk")
    write_build_script(
        path, "out", ["prog", "$HOME/ice.nc"], chunks, ["a$b-00.nc"], combiner="combine"
    )
    with open(path) as f:
        lines = f.read().splitlines()

    assert "\tcombine 'a$$b-00.nc'" in lines
    assert "\tprog '$$HOME/ice.nc' --runchunk 0,0,0,4,0 && touch out-00" in lines
    assert not any("$" in line.replace("$$", "") for line in lines)
