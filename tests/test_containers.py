import numpy as np
import pytest
from testing_utils import FailingContainer

from py_pmdset import (
    Dataset,
    InMemoryContainer,
    Region,
    Selection,
    SoloGroup,
    SpaceSelection,
    StorageError,
    ThreadGroup,
    Transfer,
    TransferMode,
    ZarrContainer,
)

BUFFER_SHAPE = (8, 8)


def make_transfer(dataset, buffer, selection, shape_same=True):
    file_space = SpaceSelection(dataset.extent)
    mem_space = SpaceSelection(buffer.shape)
    selection.register(file_space, mem_space, shape_same)
    return Transfer(dataset, file_space, mem_space, buffer)


def whole(dataset):
    return Selection("regions", regions=[Region((0,) * len(dataset.extent), dataset.extent)])


def source_values():
    return (np.arange(64, dtype=np.uint32) + 1000).reshape(BUFFER_SHAPE)


@pytest.fixture(params=["memory", "zarr"])
def container(request, tmp_path, memory_storage):
    group = SoloGroup()
    if request.param == "memory":
        c = InMemoryContainer(memory_storage, group)
    else:
        c = ZarrContainer(tmp_path / "test.zarr", group)
    c.create()
    yield c
    c.delete()


@pytest.mark.parametrize("shape_same", [True, False])
def test_write_then_read(container, shape_same: bool):
    dataset = container.create_dataset("dset0", (6, 5), None)
    base = source_values()
    buffer = base if shape_same else base[..., np.newaxis]

    regions = Selection("regions", regions=[Region((0, 0), (2, 3)), Region((4, 3), (2, 2))])
    points = Selection("points", points=[(5, 0), (3, 4)])
    container.write(make_transfer(dataset, buffer, regions, shape_same), TransferMode.INDEPENDENT)
    container.write(make_transfer(dataset, buffer, points, shape_same), TransferMode.INDEPENDENT)

    expected = np.zeros((6, 5), dtype=np.uint32)
    expected[0:2, 0:3] = base[0:2, 0:3]
    expected[4:6, 3:5] = base[4:6, 3:5]
    expected[5, 0] = base[5, 0]
    expected[3, 4] = base[3, 4]

    out = np.zeros(BUFFER_SHAPE, dtype=np.uint32)
    out_view = out if shape_same else out[..., np.newaxis]
    container.read(make_transfer(dataset, out_view, whole(dataset), shape_same), TransferMode.INDEPENDENT)
    assert np.array_equal(out[:6, :5], expected)
    # Nothing outside the selection is touched
    assert not out[6:, :].any() and not out[:, 5:].any()

    picked = np.zeros(BUFFER_SHAPE, dtype=np.uint32)
    picked_view = picked if shape_same else picked[..., np.newaxis]
    container.read(make_transfer(dataset, picked_view, points, shape_same), TransferMode.INDEPENDENT)
    assert picked[5, 0] == base[5, 0]
    assert picked[3, 4] == base[3, 4]
    assert np.count_nonzero(picked) == 2


def test_data_survives_close_and_reopen(container):
    dataset = container.create_dataset("dset0", (4, 4), None)
    base = source_values()
    container.write(make_transfer(dataset, base, whole(dataset)), TransferMode.INDEPENDENT)

    container.close_dataset(dataset)
    container.close()
    container.open()
    container.open_dataset(dataset)

    out = np.zeros(BUFFER_SHAPE, dtype=np.uint32)
    container.read(make_transfer(dataset, out, whole(dataset)), TransferMode.INDEPENDENT)
    assert np.array_equal(out[:4, :4], base[:4, :4])


def test_chunked_dataset_across_chunk_boundaries(container):
    dataset = container.create_dataset("dset1", (7, 4), (3, 2))
    assert dataset.chunks == (3, 2)
    if isinstance(container, ZarrContainer):
        assert dataset.handle.chunks == (3, 2)

    base = source_values()
    region = Selection("regions", regions=[Region((1, 1), (5, 3))])
    container.write(make_transfer(dataset, base, region), TransferMode.INDEPENDENT)

    out = np.zeros(BUFFER_SHAPE, dtype=np.uint32)
    container.read(make_transfer(dataset, out, whole(dataset)), TransferMode.INDEPENDENT)
    expected = np.zeros((7, 4), dtype=np.uint32)
    expected[1:6, 1:4] = base[1:6, 1:4]
    assert np.array_equal(out[:7, :4], expected)


def test_batched_calls_match_single_calls(container):
    datasets = [container.create_dataset(f"dset{i}", (5, 4), (2, 2)) for i in range(3)]
    base = np.stack([source_values() + np.uint32(100 * i) for i in range(3)])
    selections = [
        Selection("regions", regions=[Region((0, 0), (2, 2)), Region((3, 1), (2, 3))]),
        Selection("points", points=[(4, 3), (0, 0), (2, 1)]),
        Selection("regions", regions=[Region((1, 1), (1, 1))]),
    ]
    container.write_multi(
        [make_transfer(d, base[k], selections[k]) for k, d in enumerate(datasets)],
        TransferMode.INDEPENDENT,
    )

    batched = np.zeros((3, *BUFFER_SHAPE), dtype=np.uint32)
    container.read_multi(
        [make_transfer(d, batched[k], whole(d)) for k, d in enumerate(datasets)],
        TransferMode.INDEPENDENT,
    )
    single = np.zeros((3, *BUFFER_SHAPE), dtype=np.uint32)
    for k, d in enumerate(datasets):
        container.read(make_transfer(d, single[k], whole(d)), TransferMode.INDEPENDENT)
    assert np.array_equal(batched, single)

    for k, selection in enumerate(selections):
        for cell in selection.cells():
            assert batched[k][cell] == base[k][cell]
        assert np.count_nonzero(batched[k]) == len(set(selection.cells()))


def test_transfer_validation(container):
    dataset = container.create_dataset("dset0", (4, 4), None)
    base = source_values()

    # Memory space built for a different buffer shape
    file_space = SpaceSelection((4, 4))
    mem_space = SpaceSelection((8, 8, 1))
    Selection("regions", regions=[Region((0, 0), (2, 2))]).register(file_space, mem_space, False)
    with pytest.raises(StorageError, match="does not match buffer"):
        container.write(Transfer(dataset, file_space, mem_space, base), TransferMode.INDEPENDENT)

    # Regions that cover different numbers of cells
    file_space = SpaceSelection((4, 4))
    mem_space = SpaceSelection(BUFFER_SHAPE)
    file_space.select_region(Region((0, 0), (2, 2)))
    mem_space.select_region(Region((0, 0), (1, 2)))
    with pytest.raises(StorageError, match="different element counts"):
        container.write(Transfer(dataset, file_space, mem_space, base), TransferMode.INDEPENDENT)

    container.close_dataset(dataset)
    with pytest.raises(StorageError, match="not open"):
        container.read(make_transfer(dataset, base, whole(dataset)), TransferMode.INDEPENDENT)
    with pytest.raises(StorageError):
        container.close_dataset(dataset)


def test_lifecycle_errors(container):
    container.close()
    with pytest.raises(StorageError):
        container.close()
    with pytest.raises(StorageError):
        container.create_dataset("dset0", (2, 2), None)
    container.open()
    with pytest.raises(StorageError):
        container.open_dataset(Dataset("missing", (2, 2)))


def test_open_without_container(tmp_path, memory_storage):
    for container in (
        InMemoryContainer(memory_storage, SoloGroup()),
        ZarrContainer(tmp_path / "missing.zarr", SoloGroup()),
    ):
        with pytest.raises(StorageError):
            container.open()


def test_zarr_delete_removes_everything(tmp_path):
    container = ZarrContainer(tmp_path / "gone.zarr", SoloGroup())
    container.create()
    container.create_dataset("dset0", (3, 3), None)
    assert container.path.exists() and container.lock_path.exists()
    container.close()
    container.delete()
    assert not container.path.exists()
    assert not container.lock_path.exists()


def test_storage_failures_are_wrapped(memory_storage):
    container = FailingContainer(memory_storage, SoloGroup())
    container.create()
    dataset = container.create_dataset("dset0", (4, 4), None)
    with pytest.raises(StorageError, match="write failed") as exc_info:
        container.write(make_transfer(dataset, source_values(), whole(dataset)), TransferMode.COLLECTIVE)
    assert isinstance(exc_info.value.__cause__, OSError)


def _disjoint_rows(group, make_container, mode):
    container = make_container(group)
    container.create()
    dataset = container.create_dataset("dset0", (4, 6), None)
    base = source_values() + np.uint32(1000 * group.rank)
    mine = Selection("regions", regions=[Region((group.rank, 0), (1, 6))])
    for _ in range(3):
        container.write(make_transfer(dataset, base, mine), mode)
    group.barrier()

    out = np.zeros(BUFFER_SHAPE, dtype=np.uint32)
    container.read(make_transfer(dataset, out, whole(dataset)), mode)
    container.close_dataset(dataset)
    container.close()
    return out[:4, :6].copy()


@pytest.mark.parametrize("mode", list(TransferMode))
@pytest.mark.parametrize("backend", ["memory", "zarr"])
def test_concurrent_writers_to_one_chunk(tmp_path, memory_storage, mode, backend):
    # Every worker writes its own row of a single chunk, so each write rewrites the others' rows
    if backend == "memory":
        def make_container(group):
            return InMemoryContainer(memory_storage, group)
    else:
        def make_container(group):
            return ZarrContainer(tmp_path / "shared.zarr", group)

    size = 4
    results = ThreadGroup.run(size, _disjoint_rows, make_container, mode)

    expected = np.zeros((4, 6), dtype=np.uint32)
    for rank in range(size):
        expected[rank] = source_values()[rank, :6] + np.uint32(1000 * rank)
    for out in results:
        assert np.array_equal(out, expected)


@pytest.mark.asyncio
async def test_async_batched_transfers(tmp_path):
    container = ZarrContainer(tmp_path / "async.zarr", SoloGroup())
    container.create()
    datasets = [container.create_dataset(f"dset{i}", (5, 4), (2, 2)) for i in range(3)]
    base = source_values()
    selections = [
        Selection("regions", regions=[Region((0, 0), (5, 4))]),
        Selection("points", points=[(1, 1), (4, 3)]),
        Selection("points", points=[]),
    ]

    await container.awrite_multi(
        [make_transfer(d, base, selections[k]) for k, d in enumerate(datasets)]
    )
    out = np.zeros((3, *BUFFER_SHAPE), dtype=np.uint32)
    await container.aread_multi(
        [make_transfer(d, out[k], whole(d)) for k, d in enumerate(datasets)]
    )

    assert np.array_equal(out[0][:5, :4], base[:5, :4])
    assert out[1][1, 1] == base[1, 1] and out[1][4, 3] == base[4, 3]
    assert np.count_nonzero(out[1]) == 2
    assert not out[2].any()

    picked = np.zeros(BUFFER_SHAPE, dtype=np.uint32)
    await container.aread_multi([make_transfer(datasets[1], picked, selections[1])])
    assert np.count_nonzero(picked) == 2
    container.delete()
