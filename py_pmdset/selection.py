import itertools
from collections.abc import Iterator
from typing import Literal

import numpy as np

from .limits import Limits
from .seed_clock import SeedClock

Coord = tuple[int, ...]
Kind = Literal["regions", "points"]


class Region:
    """An axis aligned box of cells, given by its `start` corner and its `count` of cells along each axis."""

    def __init__(self, start: Coord, count: Coord) -> None:
        if len(start) != len(count):
            raise ValueError("start and count must have the same number of axes")
        self.start: Coord = tuple(start)
        self.count: Coord = tuple(count)

    @property
    def ndim(self) -> int:
        return len(self.start)

    @property
    def shape(self) -> Coord:
        return self.count

    def slices(self) -> tuple[slice, ...]:
        return tuple(slice(s, s + c) for s, c in zip(self.start, self.count))

    def cells(self) -> Iterator[Coord]:
        return itertools.product(
            *(range(s, s + c) for s, c in zip(self.start, self.count))
        )

    def extended(self) -> "Region":
        """The same box with an extra trailing axis of length 1."""
        return Region(self.start + (0,), self.count + (1,))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Region):
            return False
        return self.start == other.start and self.count == other.count

    def __repr__(self) -> str:
        return f"Region(start={self.start}, count={self.count})"


class Selection:
    """
    The cells one worker selects in one dataset for one operation.

    A selection is either a list of `regions` or a list of `points`, never both. It may be empty when every candidate overlapped another worker's write.
    """

    def __init__(
        self,
        kind: Kind,
        regions: list[Region] | None = None,
        points: list[Coord] | None = None,
    ) -> None:
        self.kind: Kind = kind
        self.regions: list[Region] = list(regions or [])
        self.points: list[Coord] = list(points or [])
        if kind == "regions" and self.points:
            raise ValueError("A region selection cannot hold points")
        if kind == "points" and self.regions:
            raise ValueError("A point selection cannot hold regions")

    def __len__(self) -> int:
        if self.kind == "regions":
            return len(self.regions)
        return len(self.points)

    def is_empty(self) -> bool:
        return len(self) == 0

    def cells(self) -> Iterator[Coord]:
        """Every selected cell, in selection order. Cells of overlapping regions of the same worker repeat."""
        if self.kind == "regions":
            for region in self.regions:
                yield from region.cells()
        else:
            yield from self.points

    def register(
        self,
        file_space: "SpaceSelection",
        mem_space: "SpaceSelection",
        shape_same: bool,
    ) -> None:
        """
        Add this selection to the acting worker's dataset-space and memory-space selections.

        When `shape_same` is false the memory space has one more axis than the dataset, so every region gains a trailing `start 0, count 1` and every point a trailing `0`. This keeps the storage layer off its equal-rank fast path.
        """
        if self.kind == "regions":
            for region in self.regions:
                file_space.select_region(region)
                mem_space.select_region(region if shape_same else region.extended())
        elif self.points:
            file_space.select_points(self.points)
            if shape_same:
                mem_space.select_points(self.points)
            else:
                mem_space.select_points([p + (0,) for p in self.points])

    def __repr__(self) -> str:
        items = self.regions if self.kind == "regions" else self.points
        return f"Selection({self.kind!r}, {items!r})"


class SelectionResult:
    """What `generate_selection` accepted, out of how many items it was asked for."""

    def __init__(self, selection: Selection, requested: int, exhausted: bool) -> None:
        self.selection: Selection = selection
        self.requested: int = requested
        self.exhausted: bool = exhausted
        """True when the overlap retries ran out and the selection was truncated."""


class UsageMask:
    """The cells claimed by some worker's write in the current operation on one dataset."""

    def __init__(self, shape: Coord) -> None:
        self.cells: np.ndarray = np.zeros(shape, dtype=bool)

    def overlaps_region(self, region: Region) -> bool:
        return bool(self.cells[region.slices()].any())

    def overlaps_point(self, point: Coord) -> bool:
        return bool(self.cells[point])

    def claim(self, selection: Selection) -> None:
        if selection.kind == "regions":
            for region in selection.regions:
                self.cells[region.slices()] = True
        else:
            for point in selection.points:
                self.cells[point] = True


class SpaceSelection:
    """
    A selection on an index space, as handed to the storage boundary.

    Regions are OR-ed in, points are appended. The acting worker builds one for the dataset space and one for the memory buffer; the two are matched region for region and point for point when data is transferred.
    """

    def __init__(self, shape: Coord) -> None:
        self.shape: Coord = tuple(shape)
        self.regions: list[Region] = []
        self.points: list[Coord] = []

    @property
    def ndim(self) -> int:
        return len(self.shape)

    def select_none(self) -> None:
        self.regions = []
        self.points = []

    def select_region(self, region: Region) -> None:
        self._check(region.start, region.count)
        self.regions.append(region)

    def select_points(self, points: list[Coord]) -> None:
        for point in points:
            self._check(point, (1,) * len(point))
        self.points.extend(tuple(p) for p in points)

    def npoints(self) -> int:
        """Number of selected elements, counting overlapping regions once per region."""
        total = sum(int(np.prod(r.count)) for r in self.regions)
        return total + len(self.points)

    def is_empty(self) -> bool:
        return not self.regions and not self.points

    def point_index(self) -> tuple[np.ndarray, ...]:
        """The selected points as one integer array per axis, in append order."""
        if not self.points:
            return tuple(np.zeros(0, dtype=np.intp) for _ in range(self.ndim))
        coords = np.asarray(self.points, dtype=np.intp)
        return tuple(coords[:, axis] for axis in range(self.ndim))

    def _check(self, start: Coord, count: Coord) -> None:
        if len(start) != self.ndim:
            raise ValueError(
                f"Selection with {len(start)} axes does not fit a space with {self.ndim} axes"
            )
        for s, c, n in zip(start, count, self.shape):
            if s < 0 or c < 1 or s + c > n:
                raise IndexError(
                    f"Selection start={start} count={count} is outside a space of shape {self.shape}"
                )


def _draw_region(
    clock: SeedClock, extent: Coord, max_region: Coord
) -> Region:
    count = tuple(
        clock.draw(f"region_count[{axis}]", min(max_region[axis], extent[axis])) + 1
        for axis in range(len(extent))
    )
    start = tuple(
        0
        if count[axis] == extent[axis]
        else clock.draw(f"region_start[{axis}]", extent[axis] - count[axis] + 1)
        for axis in range(len(extent))
    )
    return Region(start, count)


def _draw_point(clock: SeedClock, extent: Coord) -> Coord:
    return tuple(
        clock.draw(f"point[{axis}]", extent[axis]) for axis in range(len(extent))
    )


def generate_selection(
    clock: SeedClock,
    extent: Coord,
    usage: UsageMask | None,
    is_write: bool,
    limits: Limits,
) -> SelectionResult:
    """
    Draw one worker's selection on a dataset of shape `extent`.

    A coin decides between regions and points, then the item count is drawn, then each item. On writes each candidate is checked against `usage`; an overlapping candidate is redrawn up to `limits.max_retries` times, after which the selection is cut back to the items accepted so far and no more are drawn. The caller claims the accepted cells in `usage` afterwards, so one worker's regions may overlap each other but never another worker's.

    Nothing here touches the storage boundary; the result is the same on every worker.
    """
    check = is_write and usage is not None

    if clock.coin("geometry"):
        requested = clock.draw("nregions", limits.max_regions) + 1
        regions: list[Region] = []
        for _ in range(requested):
            for _ in range(limits.max_retries):
                region = _draw_region(clock, extent, limits.max_region)
                if not (check and usage.overlaps_region(region)):
                    break
            else:
                return SelectionResult(Selection("regions", regions=regions), requested, True)
            regions.append(region)
        return SelectionResult(Selection("regions", regions=regions), requested, False)

    requested = clock.draw("npoints", limits.max_points) + 1
    points: list[Coord] = []
    for _ in range(requested):
        for _ in range(limits.max_retries):
            point = _draw_point(clock, extent)
            if not (check and usage.overlaps_point(point)):
                break
        else:
            return SelectionResult(Selection("points", points=points), requested, True)
        points.append(point)
    return SelectionResult(Selection("points", points=points), requested, False)
