from mpi4py import MPI

from .group import GroupError, ProcessGroup


class MpiGroup(ProcessGroup):
    """
    Workers are the processes of an MPI communicator, `MPI.COMM_WORLD` unless another is given.

    Launch the harness under MPI to get more than one worker, e.g. ``mpiexec -n 4 pmdset``. Started without a launcher the world holds just this process.
    """

    def __init__(self, comm: MPI.Comm | None = None) -> None:
        self.comm: MPI.Comm = comm if comm is not None else MPI.COMM_WORLD
        self.rank = self.comm.Get_rank()
        self.size = self.comm.Get_size()

    def barrier(self) -> None:
        try:
            self.comm.Barrier()
        except MPI.Exception as exc:
            raise GroupError(f"Barrier failed on rank {self.rank}: {exc}") from exc

    def broadcast(self, value: int | None, root: int = 0) -> int:
        # The root always takes part, even without a value, so no rank is left waiting
        try:
            result = self.comm.bcast(value if self.rank == root else None, root=root)
        except MPI.Exception as exc:
            raise GroupError(f"Broadcast failed on rank {self.rank}: {exc}") from exc
        if result is None:
            raise GroupError("Nothing to broadcast from the root worker")
        return int(result)

    def allreduce_max(self, value: int) -> int:
        try:
            return int(self.comm.allreduce(value, op=MPI.MAX))
        except MPI.Exception as exc:
            raise GroupError(f"Max reduction failed on rank {self.rank}: {exc}") from exc
