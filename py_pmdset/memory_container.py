import threading
from contextlib import AbstractContextManager

import numpy as np

from .container import Container, Dataset, StorageError, Transfer
from .group import ProcessGroup
from .oracle import CELL_DTYPE
from .selection import Coord


class MemoryStorage:
    """The shared state behind `InMemoryContainer`: named numpy arrays plus a lock. Share one instance between all workers of a `ThreadGroup`."""

    def __init__(self) -> None:
        self.arrays: dict[str, np.ndarray] = {}
        self.exists: bool = False
        self.lock = threading.Lock()


class InMemoryContainer(Container):
    """
    Used mostly for faster testing. Datasets are numpy arrays in a `MemoryStorage` shared by threads, so this only works with workers that live in one process.

    Independent transfers serialise on the storage lock; a shared lock for readers is not needed since numpy reads of whole slabs are quick.
    """

    def __init__(self, storage: MemoryStorage, group: ProcessGroup) -> None:
        super().__init__(group)
        self.storage: MemoryStorage = storage
        self.is_open: bool = False

    def create(self) -> None:
        if self.group.rank == 0:
            self.storage.arrays = {}
            self.storage.exists = True
        self.group.barrier()
        self.is_open = True

    def open(self) -> None:
        if not self.storage.exists:
            raise StorageError("No container to open")
        self.is_open = True

    def close(self) -> None:
        if not self.is_open:
            raise StorageError("Container is not open")
        self.is_open = False

    def delete(self) -> None:
        self.storage.arrays = {}
        self.storage.exists = False

    def create_dataset(self, name: str, extent: Coord, chunks: Coord | None) -> Dataset:
        if self.group.rank == 0:
            self.storage.arrays[name] = np.zeros(extent, dtype=CELL_DTYPE)
        self.group.barrier()
        dataset = Dataset(name, extent, chunks)
        self.open_dataset(dataset)
        return dataset

    def open_dataset(self, dataset: Dataset) -> None:
        if not self.is_open:
            raise StorageError("Container is not open")
        try:
            dataset.handle = self.storage.arrays[dataset.name]
        except KeyError as exc:
            raise StorageError(f"No dataset named {dataset.name!r}") from exc

    def close_dataset(self, dataset: Dataset) -> None:
        if dataset.handle is None:
            raise StorageError(f"Dataset {dataset.name!r} is not open")
        dataset.handle = None

    def _locked(self, exclusive: bool) -> AbstractContextManager[object]:
        return self.storage.lock

    def _write_one(self, transfer: Transfer) -> None:
        array: np.ndarray = transfer.dataset.handle
        for file_key, mem_key, shape in transfer.region_pairs():
            array[file_key] = transfer.buffer[mem_key].reshape(shape)
        if transfer.file_space.points:
            array[transfer.file_space.point_index()] = transfer.buffer[
                transfer.mem_space.point_index()
            ]

    def _read_one(self, transfer: Transfer) -> None:
        array: np.ndarray = transfer.dataset.handle
        for file_key, mem_key, _ in transfer.region_pairs():
            target = transfer.buffer[mem_key]
            transfer.buffer[mem_key] = array[file_key].reshape(target.shape)
        if transfer.file_space.points:
            transfer.buffer[transfer.mem_space.point_index()] = array[
                transfer.file_space.point_index()
            ]
