import os

import numpy as np
import pytest
import xarray as xr

from ecregrid import ConfigurationError, DataError, RunConfig, load_dimension, load_operator, plan, run_chunk
from ecregrid.cli import _strip_runchunk, build_parser, main
from ecregrid.pipeline import artifact_path, read_ice_inputs
from ecregrid.utils import locate_file


@pytest.fixture
def cfg(tmp_path, input_files):
    ice_file, topo_file = input_files
    return RunConfig(
        grid_o="tO",
        grid_i="tI",
        grid_i2="tI2",
        ice_file=ice_file,
        topo_file=topo_file,
        elev_classes="0,1000,500",
        output=str(tmp_path / "out"),
        chunk_size=10,
    )


def test_validate(cfg):
    assert cfg.validate() is cfg
    assert cfg.spec_a.shape == (2, 2)
    np.testing.assert_array_equal(cfg.hcdefs, [0.0, 500.0, 1000.0])

    cfg.elev_classes = "5"
    with pytest.raises(ConfigurationError):
        cfg.validate()


def test_validate_grid_mismatch(cfg):
    cfg.grid_o = "g5x4"
    with pytest.raises(ConfigurationError, match="even multiple"):
        cfg.validate()


def test_read_ice_inputs(cfg):
    fgice_i, elev_i = read_ice_inputs(cfg)
    assert fgice_i.shape == (16, 16)
    assert fgice_i.sum() == 16
    assert elev_i[4, 4] == 500.0


def test_locate_file_search_path(tmp_path, monkeypatch, input_files):
    monkeypatch.setenv("MODELE_FILE_PATH", os.pathsep.join(["/nonexistent", str(tmp_path)]))
    assert locate_file("ice.nc") == os.path.join(str(tmp_path), "ice.nc")
    with pytest.raises(ConfigurationError):
        locate_file("nothere.nc")


def test_plan_writes_build_script(cfg):
    chunks = plan(cfg, ["ecregrid", "tO", "tI", "tI2"])
    assert [str(c) for c in chunks] == ["0,0,0,1,2", "1,1,2,4,0"]

    with open(cfg.output + ".mk") as f:
        text = f.read()
    assert ".NOTPARALLEL:" in text
    assert "--runchunk 0,0,0,1,2" in text
    assert artifact_path(cfg.output, "mismatched", chunks[1]) in text
    assert artifact_path(cfg.output, "standard", chunks[0]) in text


def test_run_chunk_end_to_end(cfg):
    """One chunk produces both sections with every operator and dimension."""
    cfg.chunk = "0,0,0,1,2"
    paths = run_chunk(cfg)
    assert [os.path.basename(p) for p in paths] == [
        "out-mismatched-00.nc",
        "out-standard-00.nc",
    ]

    for path in paths:
        avi = load_operator(path, "AvI")
        assert avi.shape == (1, 16)
        np.testing.assert_allclose(np.asarray(avi.M.sum(axis=1)).ravel(), 1.0)

        i2ve = load_operator(path, "I2vE")
        assert i2ve.shape[0] == 4
        np.testing.assert_allclose(np.asarray(i2ve.M.sum(axis=1)).ravel(), 1.0)

        for name in ("EvI", "IvE", "IvA", "I2vA", "AvE"):
            assert load_operator(path, name, with_dims=False).nnz > 0

        assert len(load_dimension(path, "dimI")) == 16

    std = paths[1]
    np.testing.assert_array_equal(load_dimension(std, "dimA").sparse_ids, [0])
    # Elevation 500 falls exactly on class 1
    np.testing.assert_array_equal(load_dimension(std, "dimE").sparse_ids, [4])
    with xr.open_dataset(std, group="dimE") as ds:
        assert list(ds.attrs["shape"]) == [3, 2, 2]
    with xr.open_dataset(std) as ds:
        assert ds.attrs["label"] == "Atmosphere"
        assert ds.attrs["chunk"] == "0,0,0,1,2"

    mm = paths[0]
    np.testing.assert_array_equal(load_dimension(mm, "dimA").sparse_ids, [5])


def test_raw_operators(cfg):
    cfg.chunk = "0,0,0,1,2"
    cfg.scale = False
    path = run_chunk(cfg)[1]
    avi = load_operator(path, "AvI")
    assert avi.conservative
    np.testing.assert_allclose(np.asarray(avi.M.sum(axis=1)).ravel(), avi.wM)


def test_cli_plan_and_run(tmp_path, input_files):
    ice_file, topo_file = input_files
    out = str(tmp_path / "cli")
    args = ["tO", "tI", "tI2", ice_file, topo_file, "-o", out, "-E", "0,1000,500",
            "--chunk-size", "10"]

    assert main(args) == 0
    with open(out + ".mk") as f:
        text = f.read()
    assert "-m ecregrid tO tI tI2" in text
    assert "--runchunk 1,1,2,4,0" in text

    assert main(args + ["--runchunk", "0,0,0,1,2"]) == 0
    assert os.path.exists(out + "-standard-00.nc")
    assert os.path.exists(out + "-mismatched-00.nc")


def test_cli_reports_configuration_errors(tmp_path, input_files):
    ice_file, topo_file = input_files
    base = ["tO", "tI", "tI2", ice_file, topo_file, "-o", str(tmp_path / "x")]
    assert main(base + ["-E", "5"]) == 1
    assert main(base + ["--runchunk", "1,2"]) == 1
    assert main(["g5x4", "tI", "tI2", ice_file, topo_file]) == 1
    assert not os.path.exists(str(tmp_path / "x.mk"))


def test_chunk_without_ice_writes_empty_operators(cfg):
    """A chunk holding no ice still produces complete, loadable artifacts."""
    cfg.chunk = "1,1,2,4,0"
    with pytest.warns(UserWarning, match="No ice cells overlap"):
        paths = run_chunk(cfg)

    assert [os.path.basename(p) for p in paths] == [
        "out-mismatched-01.nc",
        "out-standard-01.nc",
    ]
    for path in paths:
        for name in ("AvI", "EvI", "IvE", "I2vE", "IvA", "I2vA", "AvE"):
            op = load_operator(path, name)
            assert op.nnz == 0
            assert op.shape == (0, 0)
        assert len(load_dimension(path, "dimI")) == 0


def _write_topo(path, spec_o, foceanf):
    xr.Dataset(
        {
            "FOCEAN": (["lat", "lon"], np.zeros(spec_o.shape)),
            "FOCEANF": (["lat", "lon"], foceanf),
        }
    ).to_netcdf(path)


def test_topography_error_aborts_chunk(cfg, test_grids, tmp_path):
    """An ice-covered cell that is all ocean in the fine data fails the chunk."""
    foceanf = np.zeros(test_grids["tO"].shape)
    foceanf[1, 1] = 1.0
    topo = str(tmp_path / "bad_topo.nc")
    _write_topo(topo, test_grids["tO"], foceanf)
    cfg.topo_file = topo
    cfg.chunk = "0,0,0,1,2"

    with pytest.raises(DataError, match=r"j=1, i=1"):
        run_chunk(cfg)
    assert not any(name.startswith("out-") for name in os.listdir(str(tmp_path)))

    args = ["tO", "tI", "tI2", cfg.ice_file, topo, "-o", cfg.output, "-E", "0,1000,500",
            "--runchunk", "0,0,0,1,2"]
    assert main(args) == 1
    assert not any(name.startswith("out-") for name in os.listdir(str(tmp_path)))


def test_failure_while_writing_discards_section(cfg, monkeypatch, tmp_path):
    """An error in the middle of a section leaves neither the artifact nor its temporary file."""

    def fail(*args, **kwargs):
        raise DataError("display grid failure")

    monkeypatch.setattr("ecregrid.pipeline.make_I2vX", fail)
    cfg.chunk = "0,0,0,1,2"
    with pytest.raises(DataError, match="display grid failure"):
        run_chunk(cfg)

    assert not os.path.exists(cfg.output + "-mismatched-00.nc")
    assert not os.path.exists(cfg.output + "-mismatched-00.nc.tmp")
    assert not os.path.exists(cfg.output + "-standard-00.nc")


def test_ice_inputs_keep_stored_dtype(cfg):
    fgice_i, elev_i = read_ice_inputs(cfg)
    assert fgice_i.dtype == bool
    assert elev_i.dtype == np.int16


@pytest.mark.parametrize(
    "argv",
    [
        ["tO", "--runchunk", "0,0,0,1,2", "tI"],
        ["tO", "--runchunk=0,0,0,1,2", "tI"],
        ["tO", "-c", "0,0,0,1,2", "tI"],
        ["tO", "-c0,0,0,1,2", "tI"],
    ],
)
def test_strip_runchunk_forms(argv):
    assert _strip_runchunk(argv) == ["tO", "tI"]


def test_cli_rejects_abbreviated_options():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["tO", "tI", "tI2", "ice.nc", "topo.nc", "--run", "0,0,0,1,2"])
