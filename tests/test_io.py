import os

import numpy as np
import pytest
import xarray as xr

from ecregrid import (
    ChunkWriter,
    GridSpec,
    RegridParams,
    SparseDimension,
    load_dimension,
    load_operator,
    new_regridder_standard,
)

HCDEFS = np.array([0.0, 1000.0])


@pytest.fixture
def gcm(spec_a, spec_i, elevmask_11):
    return new_regridder_standard(spec_a, "A", spec_i, elevmask_11, HCDEFS, progress=False)


def test_operator_round_trip(tmp_path, gcm, spec_a, spec_i):
    """Operators and dimension maps reload with identical contents."""
    path = str(tmp_path / "chunk.nc")
    dim_e = SparseDimension(gcm.indexing.extent)
    dim_i = SparseDimension(spec_i.size)
    op = gcm.regrid_matrices(0, RegridParams(scale=False)).matrix("EvI", (dim_e, dim_i))

    with ChunkWriter(path) as w:
        w.write_metadata(gcm, GridSpec(4, 4), attrs={"runtype": "standard"})
        w.write_operator("EvI", op)
        w.write_dimensions(
            {
                "dimE": (dim_e, (2,) + spec_a.shape, "Elevation Grid"),
                "dimI": (dim_i, spec_i.shape, "Fine-scale ('Ice') Grid"),
            }
        )
    assert os.path.exists(path)
    assert not os.path.exists(path + ".tmp")

    loaded = load_operator(path, "EvI")
    assert loaded.shape == op.shape
    assert loaded.conservative
    assert loaded.dim_names == ("dimE", "dimI")
    np.testing.assert_array_equal(loaded.M.indptr, op.M.indptr)
    np.testing.assert_array_equal(loaded.M.indices, op.M.indices)
    np.testing.assert_allclose(loaded.M.data, op.M.data)
    np.testing.assert_allclose(loaded.wM, op.wM)
    np.testing.assert_allclose(loaded.Mw, op.Mw)
    np.testing.assert_array_equal(loaded.dims[0].sparse_ids, dim_e.sparse_ids)
    np.testing.assert_array_equal(loaded.dims[1].sparse_ids, dim_i.sparse_ids)
    assert loaded.dims[1].sparse_extent == spec_i.size

    dim = load_dimension(path, "dimI")
    np.testing.assert_array_equal(dim.sparse_ids, dim_i.sparse_ids)

    with xr.open_dataset(path, group="dimE") as ds:
        assert list(ds.attrs["shape"]) == [2, 4, 4]
        assert ds.attrs["description"] == "Elevation Grid"

    with xr.open_dataset(path) as ds:
        np.testing.assert_allclose(ds["hcdefs"], HCDEFS)
        assert ds.attrs["runtype"] == "standard"
        assert ds.attrs["hspecA_im"] == 4
        assert "history" in ds.attrs


def test_esmf_style_indices(tmp_path, gcm, spec_i):
    path = str(tmp_path / "chunk.nc")
    op = gcm.regrid_matrices().matrix("AvI", (SparseDimension(16), SparseDimension(spec_i.size)))
    with ChunkWriter(path) as w:
        w.write_operator("AvI", op)

    with xr.open_dataset(path, group="AvI") as ds:
        assert ds["row"].min() == 1
        assert ds["col"].max() == op.shape[1]
        assert ds.attrs["n_dst"] == 1
        assert ds.attrs["conservative"] == 0


def test_failed_chunk_leaves_no_artifact(tmp_path, gcm, spec_i):
    """An error while writing discards the partial file."""
    path = str(tmp_path / "chunk.nc")
    op = gcm.regrid_matrices().matrix("AvI", (SparseDimension(16), SparseDimension(spec_i.size)))

    with pytest.raises(RuntimeError, match="boom"):
        with ChunkWriter(path) as w:
            w.write_operator("AvI", op)
            assert os.path.exists(w.tmp_path)
            raise RuntimeError("boom")

    assert not os.path.exists(path)
    assert not os.path.exists(path + ".tmp")


def test_writer_requires_context(tmp_path, gcm):
    with pytest.raises(RuntimeError):
        ChunkWriter(str(tmp_path / "x.nc")).write_metadata(gcm, GridSpec(4, 4))
