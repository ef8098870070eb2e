from typing import Callable

from .container import Container, Dataset, StorageError, Transfer, TransferMode
from .context import Flags, ScenarioContext
from .oracle import OracleBuffer
from .selection import Selection, SpaceSelection, UsageMask, generate_selection


class OperationRecord:
    """The selections every rank made in one operation, kept when a driver runs with `record=True`."""

    def __init__(self, lifetime: int, index: int, is_read: bool) -> None:
        self.lifetime: int = lifetime
        self.index: int = index
        self.is_read: bool = is_read
        self.extents: list[tuple[int, ...]] = []
        self.selections: list[list[Selection]] = []
        """`selections[dset][rank]`"""


class ScenarioDriver:
    """
    Runs randomized file lifetimes for one configuration.

    A lifetime creates the container and a random number of randomly sized datasets, then performs `ops_per_file` operations, each a read or a write of every dataset by every worker:

    1. Draw read or write, then wait for the whole group.
    2. If the previous operation was a write, close every dataset and the container, wait, reopen, wait. Reads are only guaranteed to see earlier writes after a full close/reopen.
    3. For each dataset and each rank in rank order, draw that rank's selection and fold it into the oracle. Only this worker's own selection is handed to the storage boundary.
    4. Transfer, in one batched call (`Flags.MDSET`) or a single call. After a read the whole read buffer must equal the expected-read buffer; after a write the write buffer advances.

    Boundary failures and mismatches are counted on the context and the run continues. Nothing that happens at the boundary changes the sequence of random draws.
    """

    def __init__(
        self,
        context: ScenarioContext,
        container: Container,
        flags: Flags,
        record: bool = False,
    ) -> None:
        self.context: ScenarioContext = context
        self.container: Container = container
        self.flags: Flags = flags

        limits = context.limits
        self.max_dsets: int = limits.max_dsets if flags & Flags.MDSET else 1
        self.shape_same: bool = bool(flags & Flags.SHAPESAME)
        self.mode: TransferMode = (
            TransferMode.COLLECTIVE if flags & Flags.COLLECTIVE else TransferMode.INDEPENDENT
        )
        self.names: list[str] = limits.dataset_names()[: self.max_dsets]
        self.oracle: OracleBuffer = OracleBuffer(
            self.max_dsets, limits.max_extent, context.rank, context.size
        )

        self.datasets: list[Dataset] = []
        self.file_spaces: list[SpaceSelection] = []
        self.mem_spaces: list[SpaceSelection] = []

        self.record: bool = record
        self.operations: list[OperationRecord] = []

    def _guard(self, where: str, action: Callable[[], object]) -> bool:
        try:
            action()
        except StorageError as exc:
            self.context.fail(where, str(exc))
            return False
        return True

    def run(self, niter: int | None = None) -> None:
        """Run `niter` file lifetimes (default `limits.niter`)."""
        limits = self.context.limits
        niter = limits.niter if niter is None else niter
        mem_shape = limits.max_extent if self.shape_same else limits.max_extent + (1,)
        self.mem_spaces = [SpaceSelection(mem_shape) for _ in range(self.max_dsets)]
        try:
            for lifetime in range(niter):
                self.run_lifetime(lifetime)
        finally:
            self.mem_spaces = []

    def run_lifetime(self, lifetime: int = 0) -> None:
        clock = self.context.clock
        limits = self.context.limits

        if self.flags & Flags.MDSET:
            ndsets = clock.draw("ndsets", self.max_dsets) + 1
        else:
            ndsets = 1

        self._guard("create container", self.container.create)

        self.datasets = []
        self.file_spaces = []
        for name in self.names[:ndsets]:
            extent = tuple(
                clock.draw(f"dset_extent[{axis}]", n) + 1
                for axis, n in enumerate(limits.max_extent)
            )
            chunks = None
            if self.flags & Flags.CHUNK:
                chunks = tuple(
                    clock.draw(f"chunk[{axis}]", n) + 1
                    for axis, n in enumerate(limits.max_chunk)
                )
            dataset = Dataset(name, extent, chunks)
            try:
                dataset = self.container.create_dataset(name, extent, chunks)
            except StorageError as exc:
                self.context.fail(f"create dataset {name}", str(exc))
            self.datasets.append(dataset)
            self.file_spaces.append(SpaceSelection(extent))

        self.oracle.reset()

        # No reopen before the first operation
        last_read = True
        for index in range(limits.ops_per_file):
            last_read = self.run_operation(lifetime, index, last_read)

        self._close_all("lifetime end")
        # Rank 0 truncates the container at the start of the next lifetime
        self.context.group.barrier()

    def _close_all(self, when: str) -> None:
        for dataset in self.datasets:
            if dataset.is_open:
                self._guard(
                    f"close dataset {dataset.name} ({when})",
                    lambda d=dataset: self.container.close_dataset(d),
                )
        self._guard(f"close container ({when})", self.container.close)

    def reopen(self) -> None:
        """Close everything, wait for the group, reopen everything, wait again."""
        group = self.context.group
        self._close_all("before reopen")
        group.barrier()
        if self._guard("reopen container", self.container.open):
            for dataset in self.datasets:
                self._guard(
                    f"reopen dataset {dataset.name}",
                    lambda d=dataset: self.container.open_dataset(d),
                )
        group.barrier()

    def run_operation(self, lifetime: int, index: int, last_read: bool) -> bool:
        """Perform one operation and return whether it was a read."""
        context = self.context
        clock = context.clock
        limits = context.limits

        do_read = clock.coin("do_read")
        context.group.barrier()
        if not last_read:
            self.reopen()

        record = OperationRecord(lifetime, index, do_read) if self.record else None

        for k, dataset in enumerate(self.datasets):
            file_space = self.file_spaces[k]
            mem_space = self.mem_spaces[k]
            file_space.select_none()
            mem_space.select_none()
            usage = None if do_read else UsageMask(limits.max_extent)
            chosen: list[Selection] = []

            for rank in range(context.size):
                selection = generate_selection(
                    clock, dataset.extent, usage, not do_read, limits
                ).selection
                if usage is not None:
                    usage.claim(selection)
                if rank == context.rank:
                    selection.register(file_space, mem_space, self.shape_same)
                if do_read:
                    if rank == context.rank:
                        self.oracle.capture_read(k, selection)
                else:
                    self.oracle.apply_write(k, selection, rank)
                chosen.append(selection)

            if record is not None:
                record.extents.append(dataset.extent)
                record.selections.append(chosen)

        if record is not None:
            self.operations.append(record)

        self._transfer(do_read)
        return do_read

    def _transfer(self, do_read: bool) -> None:
        buffer_name = "read_buf" if do_read else "write_buf"
        transfers = [
            Transfer(
                dataset,
                self.file_spaces[k],
                self.mem_spaces[k],
                self.oracle.memory_buffer(buffer_name, k, self.shape_same),
            )
            for k, dataset in enumerate(self.datasets)
        ]
        container = self.container

        if do_read:
            if self.flags & Flags.MDSET:
                self._guard("read_multi", lambda: container.read_multi(transfers, self.mode))
            else:
                self._guard("read", lambda: container.read(transfers[0], self.mode))
            bad = self.oracle.mismatches()
            if bad:
                self.context.fail(
                    "verify read", f"{bad} cells differ from the expected data"
                )
        else:
            if self.flags & Flags.MDSET:
                self._guard("write_multi", lambda: container.write_multi(transfers, self.mode))
            else:
                self._guard("write", lambda: container.write(transfers[0], self.mode))
            self.oracle.advance()
