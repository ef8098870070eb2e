import random
import time

from .group import ProcessGroup

DRAW_BITS: int = 31


class SeedClock:
    """
    The shared source of every random decision in a harness run.

    Every worker owns one `SeedClock` built from the same seed. Because all workers consume draws in the same order, they reach identical decisions about which worker selects which cells without ever exchanging selections. A worker that draws one value more or fewer than the others silently desynchronises the whole group, so all randomness must go through `draw` and `coin`.

    Each draw is a named decision point. With `record=True` the clock keeps the `(name, value)` pairs in `log`, which makes a run's decision sequence inspectable and comparable between workers.
    """

    def __init__(self, seed: int, record: bool = False) -> None:
        self.seed: int = seed
        self._rng = random.Random(seed)
        self.draws: int = 0
        """Number of values consumed so far."""
        self.log: list[tuple[str, int]] | None = [] if record else None

    @classmethod
    def share(
        cls, group: ProcessGroup, seed: int | None = None, record: bool = False
    ) -> "SeedClock":
        """
        Agree on one seed across `group` and build this worker's clock from it.

        Rank 0 uses `seed` if given, otherwise the current time. Other ranks ignore their `seed` argument and take rank 0's value. A failure of the broadcast raises `GroupError`, which is fatal to the run.
        """
        if group.rank == 0 and seed is None:
            seed = int(time.time()) & 0xFFFFFFFF
        shared = group.broadcast(seed if group.rank == 0 else None, root=0)
        return cls(shared, record=record)

    def draw(self, name: str, bound: int) -> int:
        """Consume exactly one value and return it reduced modulo `bound`."""
        if bound < 1:
            raise ValueError(f"Decision {name!r} needs a positive bound, got {bound}")
        value = self._rng.getrandbits(DRAW_BITS) % bound
        self.draws += 1
        if self.log is not None:
            self.log.append((name, value))
        return value

    def coin(self, name: str) -> bool:
        return self.draw(name, 2) == 1
