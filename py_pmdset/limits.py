import math


class Limits:
    """
    Bounds on everything the harness draws at random.

    The defaults reproduce the classic two-axis parallel multi-dataset test. `max_extent` fixes the number of axes; the other per-axis tuples must have the same length.
    """

    def __init__(
        self,
        *,
        max_dsets: int = 5,
        max_extent: tuple[int, ...] = (15, 10),
        max_chunk: tuple[int, ...] = (8, 6),
        max_region: tuple[int, ...] = (4, 2),
        max_regions: int = 2,
        max_points: int = 6,
        max_retries: int = 10,
        ops_per_file: int = 25,
        niter: int = 10,
    ) -> None:
        self.max_dsets: int = max_dsets
        self.max_extent: tuple[int, ...] = tuple(max_extent)
        self.max_chunk: tuple[int, ...] = tuple(max_chunk)
        self.max_region: tuple[int, ...] = tuple(max_region)
        self.max_regions: int = max_regions
        self.max_points: int = max_points
        self.max_retries: int = max_retries
        self.ops_per_file: int = ops_per_file
        """Operations per file lifetime."""
        self.niter: int = niter
        """File lifetimes per configuration."""

        ndim = len(self.max_extent)
        if ndim == 0:
            raise ValueError("max_extent needs at least one axis")
        if len(self.max_chunk) != ndim or len(self.max_region) != ndim:
            raise ValueError(
                "max_extent, max_chunk and max_region must have the same number of axes"
            )
        for name in ("max_extent", "max_chunk", "max_region"):
            if not all(v > 0 for v in getattr(self, name)):
                raise ValueError(f"All {name} dimensions must be positive")
        for name in ("max_dsets", "max_regions", "max_points", "max_retries"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be a positive integer")
        if ops_per_file < 0 or niter < 0:
            raise ValueError("ops_per_file and niter must be non-negative")

    @property
    def ndim(self) -> int:
        return len(self.max_extent)

    @property
    def cells_per_dataset(self) -> int:
        return math.prod(self.max_extent)

    def dataset_names(self) -> list[str]:
        return [f"dset{i}" for i in range(self.max_dsets)]
