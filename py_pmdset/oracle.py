from typing import Literal

import numpy as np

from .selection import Coord, Selection

BufferName = Literal["write_buf", "expected_file", "expected_read", "read_buf"]

CELL_DTYPE = np.uint32


class OracleBuffer:
    """
    One worker's model of what shared storage should contain.

    All four buffers have shape `(max_dsets, *max_extent)`, one slab per dataset, and are owned here:

    - `write_buf`: the values this worker writes. Cell values are unique per (worker, dataset, cell) and advance by `increment` after each write, so no two writes ever produce the same value for a cell.
    - `expected_file`: the predicted content of every dataset cell.
    - `expected_read`: the prediction restricted to cells this worker has read.
    - `read_buf`: where reads land.

    The oracle is never sent anywhere. Every worker rebuilds the same predictions independently because every worker sees every other worker's selections through the shared random sequence.
    """

    def __init__(self, max_dsets: int, max_extent: Coord, rank: int, size: int) -> None:
        self.max_dsets: int = max_dsets
        self.max_extent: Coord = tuple(max_extent)
        self.rank: int = rank
        self.size: int = size

        self.cells_per_dataset: int = int(np.prod(self.max_extent))
        self.cells_per_worker: int = max_dsets * self.cells_per_dataset
        self.increment: int = self.cells_per_worker * size
        """Added to every write buffer cell after each write operation."""

        shape = (max_dsets, *self.max_extent)
        self.write_buf: np.ndarray = np.zeros(shape, dtype=CELL_DTYPE)
        self.expected_file: np.ndarray = np.zeros(shape, dtype=CELL_DTYPE)
        self.expected_read: np.ndarray = np.zeros(shape, dtype=CELL_DTYPE)
        self.read_buf: np.ndarray = np.zeros(shape, dtype=CELL_DTYPE)
        self.reset()

    def initial_write_buf(self) -> np.ndarray:
        base = self.rank * self.cells_per_worker
        values = np.arange(base, base + self.cells_per_worker, dtype=np.int64)
        return values.reshape(self.write_buf.shape).astype(CELL_DTYPE)

    def reset(self) -> None:
        """Start a new file lifetime: storage is all zeros again."""
        self.read_buf[...] = 0
        self.expected_read[...] = 0
        self.expected_file[...] = 0
        self.write_buf[...] = self.initial_write_buf()

    def rank_data_diff(self, acting_rank: int) -> int:
        return self.cells_per_worker * (acting_rank - self.rank)

    def expected_value(self, dset: int, cell: Coord, acting_rank: int) -> int:
        """What `acting_rank` writes into `cell` of dataset `dset` in the current write."""
        value = int(self.write_buf[(dset, *cell)]) + self.rank_data_diff(acting_rank)
        return value % (1 << 32)

    def apply_write(self, dset: int, selection: Selection, acting_rank: int) -> None:
        """Predict the content of every cell `acting_rank` writes in this operation."""
        diff = self.rank_data_diff(acting_rank)
        slab_w = self.write_buf[dset]
        slab_f = self.expected_file[dset]
        if selection.kind == "regions":
            for region in selection.regions:
                key = region.slices()
                slab_f[key] = (slab_w[key].astype(np.int64) + diff).astype(CELL_DTYPE)
        else:
            for point in selection.points:
                slab_f[point] = self.expected_value(dset, point, acting_rank)

    def capture_read(self, dset: int, selection: Selection) -> None:
        """Copy the prediction for the cells this worker reads into `expected_read`."""
        slab_f = self.expected_file[dset]
        slab_r = self.expected_read[dset]
        if selection.kind == "regions":
            for region in selection.regions:
                key = region.slices()
                slab_r[key] = slab_f[key]
        else:
            for point in selection.points:
                slab_r[point] = slab_f[point]

    def advance(self) -> None:
        self.write_buf += CELL_DTYPE(self.increment % (1 << 32))

    def mismatches(self) -> int:
        """Number of cells where what was read differs from what was expected."""
        return int(np.count_nonzero(self.read_buf != self.expected_read))

    def memory_buffer(self, name: BufferName, dset: int, shape_same: bool) -> np.ndarray:
        """
        A writable view of one dataset's slab of buffer `name`, as the memory side of a transfer.

        Without `shape_same` the view has an extra trailing axis of length 1.
        """
        slab = getattr(self, name)[dset]
        if shape_same:
            return slab
        return slab[..., np.newaxis]
