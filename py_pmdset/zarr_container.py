import asyncio
import fcntl
import shutil
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable

import numpy as np
import zarr
import zarr.storage

from .container import Container, Dataset, StorageError, Transfer
from .group import ProcessGroup
from .oracle import CELL_DTYPE
from .selection import Coord


class ZarrContainer(Container):
    """
    Datasets are Zarr v3 arrays in one group on local disk, shared by every worker.

    #### Layout
    A dataset created with `chunks` is stored in chunks of that shape. Without `chunks` the whole array is a single chunk, which plays the part of a contiguous layout. Arrays are `uint32` with fill value 0, so unwritten cells read back as zero.

    #### Single and batched calls
    `write` and `read` go through the synchronous `zarr.Array` API. `write_multi` and `read_multi` run `awrite_multi` / `aread_multi`, which issue the per-dataset transfers concurrently with `asyncio.gather` over `zarr.AsyncArray` handles.

    #### Concurrency
    Zarr itself has no cross-process locking and a write into part of a chunk is a read-modify-write of the whole chunk file. Independent transfers therefore hold an `fcntl.flock` on a lock file next to the container (exclusive for writes, shared for reads). Collective transfers rely on the turn-taking of `Container`.

    #### Durability
    `close` drops every handle; `open` builds a fresh `LocalStore` and re-reads all metadata, so nothing cached by an earlier handle survives a close/reopen.
    """

    def __init__(self, path: str | Path, group: ProcessGroup) -> None:
        super().__init__(group)
        self.path: Path = Path(path)
        self.lock_path: Path = self.path.with_name(self.path.name + ".lock")
        self.store: zarr.storage.LocalStore | None = None
        self.root: zarr.Group | None = None

    def _call(self, what: str, action: Callable[[], Any]) -> Any:
        try:
            return action()
        except StorageError:
            raise
        except Exception as exc:
            raise StorageError(f"{what} failed: {exc}") from exc

    def _root_first(self, what: str, root_action: Callable[[], Any], others: Callable[[], Any]) -> None:
        """Run `root_action` on rank 0, then `others` on every other rank once rank 0 is done."""
        failure: StorageError | None = None
        if self.group.rank == 0:
            try:
                self._call(what, root_action)
            except StorageError as exc:
                failure = exc
        self.group.barrier()
        if failure is not None:
            raise failure
        if self.group.rank != 0:
            self._call(what, others)

    # Lifecycle

    def create(self) -> None:
        def make() -> None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.store = zarr.storage.LocalStore(self.path)
            self.root = zarr.open_group(store=self.store, mode="w")
            self.lock_path.touch()

        self._root_first(f"create {self.path}", make, self.open)

    def open(self) -> None:
        def reopen() -> None:
            self.store = zarr.storage.LocalStore(self.path)
            self.root = zarr.open_group(store=self.store, mode="r+")

        self._call(f"open {self.path}", reopen)

    def close(self) -> None:
        if self.store is None:
            raise StorageError(f"Container {self.path} is not open")
        store = self.store
        self.root = None
        self.store = None
        self._call(f"close {self.path}", store.close)

    def delete(self) -> None:
        def remove() -> None:
            if self.path.exists():
                shutil.rmtree(self.path)
            self.lock_path.unlink(missing_ok=True)

        self._call(f"delete {self.path}", remove)

    def create_dataset(self, name: str, extent: Coord, chunks: Coord | None) -> Dataset:
        dataset = Dataset(name, extent, chunks)

        def make() -> None:
            if self.root is None:
                raise StorageError(f"Container {self.path} is not open")
            dataset.handle = self.root.create_array(
                name,
                shape=dataset.extent,
                chunks=dataset.chunks if dataset.chunks is not None else dataset.extent,
                dtype=CELL_DTYPE,
                fill_value=0,
                overwrite=True,
            )

        self._root_first(f"create dataset {name}", make, lambda: self.open_dataset(dataset))
        return dataset

    def open_dataset(self, dataset: Dataset) -> None:
        if self.store is None:
            raise StorageError(f"Container {self.path} is not open")
        store = self.store
        dataset.handle = self._call(
            f"open dataset {dataset.name}",
            lambda: zarr.open_array(store=store, path=dataset.name, mode="r+"),
        )

    def close_dataset(self, dataset: Dataset) -> None:
        if dataset.handle is None:
            raise StorageError(f"Dataset {dataset.name!r} is not open")
        dataset.handle = None

    # Data movement

    @contextmanager
    def _locked(self, exclusive: bool) -> Iterator[None]:
        with open(self.lock_path, "a+b") as lock:
            fcntl.flock(lock.fileno(), fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH)
            try:
                yield
            finally:
                fcntl.flock(lock.fileno(), fcntl.LOCK_UN)

    def _write_one(self, transfer: Transfer) -> None:
        array: zarr.Array = transfer.dataset.handle
        for file_key, mem_key, shape in transfer.region_pairs():
            array[file_key] = transfer.buffer[mem_key].reshape(shape)
        if transfer.file_space.points:
            array.set_coordinate_selection(
                transfer.file_space.point_index(),
                transfer.buffer[transfer.mem_space.point_index()],
            )

    def _read_one(self, transfer: Transfer) -> None:
        array: zarr.Array = transfer.dataset.handle
        for file_key, mem_key, _ in transfer.region_pairs():
            target = transfer.buffer[mem_key]
            transfer.buffer[mem_key] = np.asarray(array[file_key]).reshape(target.shape)
        if transfer.file_space.points:
            transfer.buffer[transfer.mem_space.point_index()] = np.asarray(
                array.get_coordinate_selection(transfer.file_space.point_index())
            )

    def _write_many(self, transfers: list[Transfer]) -> None:
        asyncio.run(self.awrite_multi(transfers))

    def _read_many(self, transfers: list[Transfer]) -> None:
        asyncio.run(self.aread_multi(transfers))

    async def awrite_multi(self, transfers: list[Transfer]) -> None:
        """
        Write every transfer concurrently, one task per dataset.

        This is the raw batched call: it does no locking and no group coordination. `write_multi` wraps it with both.
        """
        await asyncio.gather(*[self._awrite_one(t) for t in transfers])

    async def aread_multi(self, transfers: list[Transfer]) -> None:
        """Read every transfer concurrently, one task per dataset. See `awrite_multi`."""
        await asyncio.gather(*[self._aread_one(t) for t in transfers])

    # Within one dataset the steps run one after another, chunks touched by two steps are rewritten in order
    async def _awrite_one(self, transfer: Transfer) -> None:
        array = transfer.dataset.handle.async_array
        for file_key, mem_key, shape in transfer.region_pairs():
            await array.setitem(file_key, transfer.buffer[mem_key].reshape(shape))
        values = transfer.buffer[transfer.mem_space.point_index()]
        for point, value in zip(transfer.file_space.points, values):
            await array.setitem(point, value)

    async def _aread_one(self, transfer: Transfer) -> None:
        array = transfer.dataset.handle.async_array
        for file_key, mem_key, _ in transfer.region_pairs():
            target = transfer.buffer[mem_key]
            data = await array.getitem(file_key)
            transfer.buffer[mem_key] = np.asarray(data).reshape(target.shape)
        for point, target in zip(transfer.file_space.points, transfer.mem_space.points):
            transfer.buffer[target] = np.asarray(await array.getitem(point))
