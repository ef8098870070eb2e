from collections.abc import Iterable, Iterator

from .container import Container
from .context import Flags, ScenarioContext
from .driver import ScenarioDriver
from .group import GroupError


def all_configurations() -> Iterator[Flags]:
    """Every flag combination, in ascending bitmask order."""
    for bits in range(Flags.ALL + 1):
        yield Flags(bits)


def parse_configurations(text: str) -> list[Flags]:
    """
    Parse a comma separated list of combination indices and inclusive ranges, e.g. ``"0,3,8-15"``.

    The result is sorted and free of duplicates, so the run order stays the ascending bitmask order.
    """
    chosen: set[int] = set()
    for token in text.split(","):
        token = token.strip()
        if not token:
            continue
        try:
            if "-" in token:
                low, high = (int(part) for part in token.split("-", 1))
                chosen.update(range(min(low, high), max(low, high) + 1))
            else:
                chosen.add(int(token))
        except ValueError as exc:
            raise ValueError(f"Invalid configuration index {token!r}") from exc
    for bits in chosen:
        if not 0 <= bits <= Flags.ALL:
            raise ValueError(f"Configuration index {bits} is outside 0-{int(Flags.ALL)}")
    return [Flags(bits) for bits in sorted(chosen)]


def banner(flags: Flags) -> str:
    return "\n".join(
        [
            "",
            "Configuration:",
            f"  Layout:     {'Chunked' if flags & Flags.CHUNK else 'Contiguous'}",
            f"  Shape same: {'Yes' if flags & Flags.SHAPESAME else 'No'}",
            f"  I/O type:   {'Multi' if flags & Flags.MDSET else 'Single'}",
            f"  Transfer:   {'Collective' if flags & Flags.COLLECTIVE else 'Independent'}",
        ]
    )


class ConfigurationMatrix:
    """
    Runs the scenario once per flag combination, each for `niter` file lifetimes.

    All combinations share one seed clock, so a failure is reproduced by the seed plus the set of combinations that ran (see `parse_configurations`).
    """

    def __init__(
        self,
        context: ScenarioContext,
        container: Container,
        configurations: Iterable[Flags] | None = None,
        niter: int | None = None,
    ) -> None:
        self.context: ScenarioContext = context
        self.container: Container = container
        self.configurations: list[Flags] = (
            list(configurations) if configurations is not None else list(all_configurations())
        )
        self.niter: int | None = niter
        self.verdicts: dict[Flags, bool] = {}
        """Whether this worker saw no errors, per configuration."""

    def run(self) -> int:
        """Run every configuration and return this worker's total error count."""
        main = self.context.rank == 0
        for flags in self.configurations:
            if main:
                print(banner(flags), flush=True)
                print("Testing random I/O", end="", flush=True)
            before = self.context.errors
            try:
                ScenarioDriver(self.context, self.container, flags).run(self.niter)
            except GroupError as exc:
                self.context.fail(f"configuration {int(flags)}", str(exc))
            ok = self.context.errors == before
            self.verdicts[flags] = ok
            if main:
                print(" PASSED" if ok else " FAILED", flush=True)
        return self.context.errors
