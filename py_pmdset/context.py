import sys
from enum import IntFlag

from .group import ProcessGroup
from .limits import Limits
from .seed_clock import SeedClock


class Flags(IntFlag):
    """One configuration of the harness. Every combination of the four flags is a configuration."""

    CHUNK = 0x01
    """Chunked layout, otherwise contiguous."""
    SHAPESAME = 0x02
    """Memory buffers have the same rank as the datasets, otherwise one extra axis."""
    MDSET = 0x04
    """Up to `max_dsets` datasets moved with batched calls, otherwise one dataset and single calls."""
    COLLECTIVE = 0x08
    """Collective transfers, otherwise independent."""

    ALL = CHUNK | SHAPESAME | MDSET | COLLECTIVE


class ScenarioContext:
    """
    Everything one worker carries through a harness run: its place in the group, the shared seed clock, the limits and the error count.

    The context is created when the worker joins the group and is passed explicitly to every component; nothing lives in module state.
    """

    def __init__(
        self, group: ProcessGroup, clock: SeedClock, limits: Limits | None = None
    ) -> None:
        self.group: ProcessGroup = group
        self.clock: SeedClock = clock
        self.limits: Limits = limits if limits is not None else Limits()
        self.errors: int = 0

    @property
    def rank(self) -> int:
        return self.group.rank

    @property
    def size(self) -> int:
        return self.group.size

    @property
    def seed(self) -> int:
        return self.clock.seed

    def fail(self, where: str, detail: str = "") -> None:
        """Count one error and report it with the seed that reproduces it."""
        self.errors += 1
        message = f" FAILED\n    rank {self.rank} at {where}"
        if detail:
            message += f": {detail}"
        print(f"{message}\n    seed = {self.seed}", file=sys.stderr, flush=True)
