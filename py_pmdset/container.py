from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from enum import Enum
from typing import Any, Callable

import numpy as np

from .group import ProcessGroup
from .selection import Coord, SpaceSelection


class StorageError(Exception):
    """A call into the storage boundary failed."""


class TransferMode(Enum):
    INDEPENDENT = "independent"
    """Each worker's call stands alone."""
    COLLECTIVE = "collective"
    """Every worker in the group takes part in each call."""


class Dataset:
    """
    One named N-dimensional array in the shared container.

    `handle` is whatever the container uses to reach the array; it is `None` while the dataset is closed.
    """

    def __init__(self, name: str, extent: Coord, chunks: Coord | None = None) -> None:
        self.name: str = name
        self.extent: Coord = tuple(extent)
        self.chunks: Coord | None = tuple(chunks) if chunks is not None else None
        self.handle: Any = None

    @property
    def is_open(self) -> bool:
        return self.handle is not None

    def __repr__(self) -> str:
        return f"Dataset({self.name!r}, extent={self.extent}, chunks={self.chunks})"


class Transfer:
    """One (dataset, dataset selection, memory selection, buffer) entry of a read or write."""

    def __init__(
        self,
        dataset: Dataset,
        file_space: SpaceSelection,
        mem_space: SpaceSelection,
        buffer: np.ndarray,
    ) -> None:
        self.dataset: Dataset = dataset
        self.file_space: SpaceSelection = file_space
        self.mem_space: SpaceSelection = mem_space
        self.buffer: np.ndarray = buffer

    def validate(self) -> None:
        """Check that the two selections describe the same elements in the same order."""
        if not self.dataset.is_open:
            raise StorageError(f"Dataset {self.dataset.name!r} is not open")
        if self.mem_space.shape != self.buffer.shape:
            raise StorageError(
                f"Memory space {self.mem_space.shape} does not match buffer {self.buffer.shape}"
            )
        if len(self.file_space.regions) != len(self.mem_space.regions) or len(
            self.file_space.points
        ) != len(self.mem_space.points):
            raise StorageError("Dataset and memory selections do not match")
        for f, m in zip(self.file_space.regions, self.mem_space.regions):
            if int(np.prod(f.count)) != int(np.prod(m.count)):
                raise StorageError(
                    f"Dataset region {f} and memory region {m} select different element counts"
                )

    def region_pairs(self) -> list[tuple[tuple[slice, ...], tuple[slice, ...], Coord]]:
        """(dataset key, memory key, dataset region shape) for every selected region."""
        return [
            (f.slices(), m.slices(), f.shape)
            for f, m in zip(self.file_space.regions, self.mem_space.regions)
        ]


class Container(ABC):
    """
    The shared, durable home of the datasets under test.

    Subclasses provide dataset lifecycle and the raw data movement. This base class supplies the group-wide coordination that makes concurrent transfers well defined:

    - independent transfers run inside `_locked(exclusive)`, an exclusive lock for writes and a shared one for reads;
    - collective writes are applied one rank at a time in rank order, each turn delimited by barriers, and collective reads end with a barrier.

    A worker whose part of a collective transfer fails still attends every barrier and raises afterwards, so the rest of the group is never left waiting.
    """

    def __init__(self, group: ProcessGroup) -> None:
        self.group: ProcessGroup = group

    # Lifecycle

    @abstractmethod
    def create(self) -> None:
        """Create (or truncate) the container. Collective."""

    @abstractmethod
    def open(self) -> None:
        """Open an existing container."""

    @abstractmethod
    def close(self) -> None:
        """Close the container. Data written before `close` is durable."""

    @abstractmethod
    def delete(self) -> None:
        """Remove the container from storage."""

    @abstractmethod
    def create_dataset(self, name: str, extent: Coord, chunks: Coord | None) -> Dataset:
        """Create a zero-filled dataset and return it open. Collective."""

    @abstractmethod
    def open_dataset(self, dataset: Dataset) -> None:
        """"""

    @abstractmethod
    def close_dataset(self, dataset: Dataset) -> None:
        """"""

    # Data movement

    @abstractmethod
    def _locked(self, exclusive: bool) -> AbstractContextManager[Any]:
        """Hold the container-wide lock used by independent transfers."""

    @abstractmethod
    def _write_one(self, transfer: Transfer) -> None:
        """"""

    @abstractmethod
    def _read_one(self, transfer: Transfer) -> None:
        """"""

    def _write_many(self, transfers: list[Transfer]) -> None:
        for transfer in transfers:
            self._write_one(transfer)

    def _read_many(self, transfers: list[Transfer]) -> None:
        for transfer in transfers:
            self._read_one(transfer)

    def write(self, transfer: Transfer, mode: TransferMode) -> None:
        self._transfer(lambda: self._write_one(transfer), [transfer], True, mode)

    def read(self, transfer: Transfer, mode: TransferMode) -> None:
        self._transfer(lambda: self._read_one(transfer), [transfer], False, mode)

    def write_multi(self, transfers: list[Transfer], mode: TransferMode) -> None:
        """Write several datasets in one call."""
        self._transfer(lambda: self._write_many(transfers), transfers, True, mode)

    def read_multi(self, transfers: list[Transfer], mode: TransferMode) -> None:
        """Read several datasets in one call."""
        self._transfer(lambda: self._read_many(transfers), transfers, False, mode)

    def _transfer(
        self,
        action: Callable[[], None],
        transfers: list[Transfer],
        is_write: bool,
        mode: TransferMode,
    ) -> None:
        def run() -> None:
            try:
                for transfer in transfers:
                    transfer.validate()
                action()
            except StorageError:
                raise
            except Exception as exc:
                kind = "write" if is_write else "read"
                raise StorageError(f"{kind} failed: {exc}") from exc

        if mode is TransferMode.INDEPENDENT:
            with self._locked(exclusive=is_write):
                run()
            return

        failure: StorageError | None = None
        if is_write:
            for turn in range(self.group.size):
                self.group.barrier()
                if turn == self.group.rank:
                    try:
                        run()
                    except StorageError as exc:
                        failure = exc
        else:
            try:
                run()
            except StorageError as exc:
                failure = exc
        self.group.barrier()
        if failure is not None:
            raise failure
