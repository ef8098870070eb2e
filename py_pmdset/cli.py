import argparse
import sys

from .context import ScenarioContext
from .group import ProcessGroup, SoloGroup, ThreadGroup
from .limits import Limits
from .matrix import ConfigurationMatrix, parse_configurations
from .memory_container import InMemoryContainer, MemoryStorage
from .results import ResultAggregator
from .seed_clock import SeedClock
from .zarr_container import ZarrContainer

DEFAULT_PATH = "pmulti_dset.zarr"


def run_worker(
    group: ProcessGroup, args: argparse.Namespace, storage: MemoryStorage | None = None
) -> int:
    """
    Everything one worker does in a harness run. Returns the run's exit status.

    With `storage` the worker uses the in-memory container (all workers must then be threads of one process), otherwise the Zarr container at `args.path`.
    """
    limits = Limits(ops_per_file=args.ops_per_file, niter=args.niter)
    clock = SeedClock.share(group, args.seed)
    if group.rank == 0:
        print(f"Seed: {clock.seed}  Workers: {group.size}", flush=True)
    context = ScenarioContext(group, clock, limits)

    if storage is not None:
        container = InMemoryContainer(storage, group)
    else:
        container = ZarrContainer(args.path, group)

    ConfigurationMatrix(context, container, args.configurations, limits.niter).run()
    return ResultAggregator(context).finish(None if args.keep else container)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pmdset",
        description="Randomized parallel read/write consistency test for single and multi dataset I/O.",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Worker threads for the memory backend (default 2). With the zarr backend only 1 is accepted, which runs a single process without MPI; start more workers with mpiexec.",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Shared random seed. Defaults to the current time on rank 0.",
    )
    parser.add_argument(
        "--niter", type=int, default=10, help="File lifetimes per configuration."
    )
    parser.add_argument(
        "--ops-per-file", type=int, default=25, help="Operations per file lifetime."
    )
    parser.add_argument(
        "--configs",
        type=str,
        default=None,
        help="Configuration indices to run, e.g. '0,3,8-15'. Defaults to all 16.",
    )
    parser.add_argument(
        "--backend",
        choices=["zarr", "memory"],
        default="zarr",
        help="'zarr' runs one worker per MPI process (mpiexec -n N pmdset) sharing a Zarr container on disk; 'memory' runs worker threads against in-memory arrays.",
    )
    parser.add_argument(
        "--path",
        type=str,
        default=DEFAULT_PATH,
        help="Location of the Zarr container.",
    )
    parser.add_argument(
        "--keep",
        action="store_true",
        help="Do not delete the container at the end of the run.",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.workers is not None and args.workers < 1:
        parser.error("--workers must be a positive integer")
    try:
        args.configurations = (
            parse_configurations(args.configs) if args.configs is not None else None
        )
        # Fail early on bad limits rather than inside every worker
        Limits(ops_per_file=args.ops_per_file, niter=args.niter)
    except ValueError as e:
        parser.error(str(e))

    if args.backend == "memory":
        statuses = ThreadGroup.run(args.workers or 2, run_worker, args, MemoryStorage())
    elif args.workers == 1:
        statuses = [run_worker(SoloGroup(), args)]
    elif args.workers is not None:
        parser.error("--workers > 1 needs the memory backend; start zarr workers with mpiexec -n N")
    else:
        # Every MPI process is one worker and exits with the group's status
        from .mpi_group import MpiGroup

        statuses = [run_worker(MpiGroup(), args)]
    return int(any(statuses))


def pmdset_cli() -> None:
    sys.exit(main())


if __name__ == "__main__":
    pmdset_cli()  # pragma: no cover
