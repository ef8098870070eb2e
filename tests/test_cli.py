import pytest

from py_pmdset.cli import build_parser, main

FAST = ["--niter", "1", "--ops-per-file", "4", "--seed", "7"]


def test_defaults():
    args = build_parser().parse_args([])
    assert args.workers is None
    assert args.seed is None
    assert (args.niter, args.ops_per_file) == (10, 25)
    assert args.backend == "zarr"
    assert not args.keep


def test_memory_backend(capsys):
    assert main(["--backend", "memory", "--workers", "3", "--configs", "0,6,15", *FAST]) == 0
    out = capsys.readouterr().out
    assert out.startswith("Seed: 7  Workers: 3\n")
    assert out.count("PASSED") == 3
    assert "finished with no errors" in out


def test_zarr_single_worker(tmp_path, capsys):
    path = tmp_path / "cli.zarr"
    assert main(["--workers", "1", "--path", str(path), "--configs", "1,12", *FAST]) == 0
    assert not path.exists()
    assert "finished with no errors" in capsys.readouterr().out


def test_keep_leaves_the_container(tmp_path):
    path = tmp_path / "kept.zarr"
    assert main(["--workers", "1", "--path", str(path), "--configs", "0", "--keep", *FAST]) == 0
    assert path.exists()


@pytest.mark.parametrize(
    "argv",
    [
        ["--configs", "99"],
        ["--configs", "a-b"],
        ["--workers", "0"],
        ["--niter", "-1"],
        ["--backend", "hdf5"],
        ["--workers", "3"],
    ],
)
def test_bad_arguments(argv, capsys):
    with pytest.raises(SystemExit) as exc_info:
        main(argv)
    assert exc_info.value.code == 2
    assert "error" in capsys.readouterr().err



def test_memory_backend_defaults_to_two_workers(capsys):
    assert main(["--backend", "memory", "--configs", "4", *FAST]) == 0
    assert capsys.readouterr().out.startswith("Seed: 7  Workers: 2\n")
