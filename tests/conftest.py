import pytest

from py_pmdset import MemoryStorage


@pytest.fixture
def memory_storage() -> MemoryStorage:
    return MemoryStorage()


def pytest_addoption(parser):
    parser.addoption(
        "--mpi",
        action="store_true",
        default=False,
        help="run tests that need mpi4py and an MPI runtime",
    )


def pytest_configure(config):
    config.addinivalue_line("markers", "mpi: tests that run workers over MPI")


def pytest_collection_modifyitems(config, items):
    if config.getoption("--mpi"):
        return  # opted in, keep the MPI tests
    skip = pytest.mark.skip(reason="needs --mpi to run")
    for item in items:
        if "mpi" in item.keywords:
            item.add_marker(skip)
