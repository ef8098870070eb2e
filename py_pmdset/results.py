from .container import Container, StorageError
from .context import ScenarioContext
from .group import GroupError

RULE = "==================================="


class ResultAggregator:
    """Turns every worker's error count into one verdict for the group."""

    def __init__(self, context: ScenarioContext) -> None:
        self.context: ScenarioContext = context
        self.total: int | None = None

    def finish(self, container: Container | None = None) -> int:
        """
        Wait for the group, let rank 0 delete `container` (if given), reduce the error counts and report.

        Returns the exit status: 0 when no worker saw an error, 1 otherwise. If the group can no longer synchronise, this worker's own count stands in for the group's and the run is reported as failed.
        """
        context = self.context
        try:
            context.group.barrier()
            if container is not None and context.rank == 0:
                try:
                    container.delete()
                except StorageError as exc:
                    context.fail("delete container", str(exc))
            self.total = context.group.allreduce_max(context.errors)
        except GroupError as exc:
            context.fail("final reduction", str(exc))
            self.total = context.errors

        if context.rank == 0:
            print(RULE)
            if self.total:
                print(f"***Parallel multi dataset tests detected {self.total} errors***")
            else:
                print("Parallel multi dataset tests finished with no errors")
            print(RULE, flush=True)

        return int(self.total != 0)
