import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, MutableSequence

DEFAULT_BARRIER_TIMEOUT: float = 300.0


class GroupError(Exception):
    """A group primitive (barrier, broadcast, reduction) failed."""


class ProcessGroup(ABC):
    """
    The cooperating workers of one harness run.

    A group knows its own `rank` and its `size`, and offers the three primitives the harness needs: a barrier, a broadcast (used once, for the shared seed) and a max-reduction (used once, for the error count). Payloads are plain integers.

    Selections are never exchanged through the group. Workers agree on who selects what because they replay the same random sequence.
    """

    rank: int
    size: int

    @abstractmethod
    def barrier(self) -> None:
        """Block until every worker in the group has reached this point."""

    @abstractmethod
    def broadcast(self, value: int | None, root: int = 0) -> int:
        """Return the `value` passed by the `root` worker on every worker."""

    @abstractmethod
    def allreduce_max(self, value: int) -> int:
        """Return the maximum of `value` over all workers, on every worker."""


class SoloGroup(ProcessGroup):
    """A group of one. All primitives are no-ops."""

    def __init__(self) -> None:
        self.rank = 0
        self.size = 1

    def barrier(self) -> None:
        return

    def broadcast(self, value: int | None, root: int = 0) -> int:
        if value is None:
            raise GroupError("Nothing to broadcast from the root worker")
        return value

    def allreduce_max(self, value: int) -> int:
        return value


class SharedSlotGroup(ProcessGroup):
    """
    Group primitives built from a barrier and `size + 1` shared integer slots.

    Slot `i < size` belongs to rank `i` during reductions, the last slot carries broadcasts. Every primitive is bracketed by barriers so slots are never read while another worker may still write them.
    """

    def __init__(
        self,
        rank: int,
        size: int,
        barrier: Any,
        slots: MutableSequence[int],
        timeout: float = DEFAULT_BARRIER_TIMEOUT,
    ) -> None:
        if size < 1:
            raise ValueError("Group size must be a positive integer")
        if not 0 <= rank < size:
            raise ValueError(f"Rank {rank} is outside a group of size {size}")
        self.rank = rank
        self.size = size
        self._barrier = barrier
        self._slots = slots
        self.timeout: float = timeout

    def barrier(self) -> None:
        try:
            self._barrier.wait(self.timeout)
        except threading.BrokenBarrierError as exc:
            raise GroupError(f"Barrier broken on rank {self.rank}") from exc

    def broadcast(self, value: int | None, root: int = 0) -> int:
        if self.rank == root:
            if value is None:
                raise GroupError("Nothing to broadcast from the root worker")
            self._slots[self.size] = value
        self.barrier()
        result = int(self._slots[self.size])
        self.barrier()
        return result

    def allreduce_max(self, value: int) -> int:
        self._slots[self.rank] = value
        self.barrier()
        result = max(int(self._slots[i]) for i in range(self.size))
        self.barrier()
        return result


class ThreadGroup(SharedSlotGroup):
    """Workers are threads of the current process. Used by tests and by the in-memory backend."""

    @classmethod
    def run(
        cls, size: int, target: Callable[..., Any], *args: Any, timeout: float = 60.0
    ) -> list[Any]:
        """
        Run `target(group, *args)` on `size` threads, one per rank, and return the results in rank order.

        If any worker raises, the barrier is aborted so the other workers are released, and the exception raised first is re-raised here once all threads are joined. Workers released by the abort fail afterwards with `GroupError`.
        """
        barrier = threading.Barrier(size)
        slots: list[int] = [0] * (size + 1)
        results: list[Any] = [None] * size
        failures: list[BaseException] = []
        lock = threading.Lock()

        def work(rank: int) -> None:
            group = cls(rank, size, barrier, slots, timeout)
            try:
                results[rank] = target(group, *args)
            except BaseException as exc:
                with lock:
                    failures.append(exc)
                barrier.abort()

        threads = [
            threading.Thread(target=work, args=(rank,), name=f"pmdset-rank{rank}")
            for rank in range(size)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        if failures:
            raise failures[0]
        return results
