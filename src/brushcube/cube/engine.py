"""
Aggregation engine: exact counts, histograms, heatmaps and cumulative cubes.

This module handles all numerical computations including:
- The backend contract shared by the in-process and pooled SQL backends
- The cumulative cube Cube[i] = Agg(view | filters, active < boundary(i))
- The in-process columnar backend (one scan + prefix sum per cube)
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass
from typing import Dict, List, Optional, Union

import numpy as np
import pandas as pd

from brushcube.cube.filters import FilterContext
from brushcube.cube.schema import ConfigError, Dimension
from brushcube.cube.view import View, ViewKind

logger = logging.getLogger(__name__)

Aggregate = Union[int, np.ndarray]


def as_aggregate(view: View, values: np.ndarray) -> Aggregate:
    """Shape a raw count array as the view's aggregate (int for scalars)."""
    if view.kind is ViewKind.SCALAR:
        return int(values)
    return values


def active_index(values: np.ndarray, boundaries: np.ndarray) -> np.ndarray:
    """
    Sweep index of each value: the number of boundaries b_i (i < resolution)
    with b_i <= v.

    A row with index k is counted in every slice i >= k, so slice i holds
    exactly the rows with v < b_i. NaN sorts last and maps to resolution.
    """
    return np.searchsorted(boundaries[:-1], values, side="right").astype(np.int64)


@dataclass(frozen=True)
class Cube:
    """
    Cumulative aggregate of a passive view swept over an active dimension.

    Attributes:
        view: The passive view
        active_dimension: The dimension whose boundaries index the slices
        resolution: Number of sweep steps; there are resolution + 1 slices
        slices: Read-only int64 array of shape (resolution + 1,) + view.shape
        generation: Epoch generation the cube was built for
    """
    view: View
    active_dimension: Dimension
    resolution: int
    slices: np.ndarray
    generation: int = 0

    def __post_init__(self):
        expected = (self.resolution + 1,) + self.view.shape
        if self.slices.shape != expected:
            raise ValueError(
                f"Cube for {self.view.name} has shape {self.slices.shape}, expected {expected}"
            )
        self.slices.setflags(write=False)

    def slice(self, i: int) -> Aggregate:
        return as_aggregate(self.view, self.slices[i])

    @property
    def total(self) -> Aggregate:
        """Slice `resolution`: the filter context with the active dimension unconstrained."""
        return self.slice(self.resolution)

    def diff(self, lo_index: int, hi_index: int) -> Aggregate:
        return as_aggregate(self.view, self.slices[hi_index] - self.slices[lo_index])

    @property
    def boundaries(self) -> np.ndarray:
        return self.active_dimension.boundaries(self.resolution)

    @property
    def nbytes(self) -> int:
        return int(self.slices.nbytes)

    def same_contents(self, other: "Cube") -> bool:
        return (
            self.view.name == other.view.name
            and self.active_dimension.name == other.active_dimension.name
            and self.resolution == other.resolution
            and np.array_equal(self.slices, other.slices)
        )


class BackendStats:
    """Thread-safe call counters per backend operation."""

    def __init__(self):
        self._lock = threading.Lock()
        self.calls: Counter = Counter()
        self.bytes_received = 0

    def record(self, operation: str, nbytes: int = 0):
        with self._lock:
            self.calls[operation] += 1
            self.bytes_received += nbytes

    def total(self) -> int:
        with self._lock:
            return sum(self.calls.values())

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self.calls)

    def reset(self):
        with self._lock:
            self.calls.clear()
            self.bytes_received = 0


class AggregationBackend(ABC):
    """
    Abstract base class for aggregation backends.

    Implementations compute exact aggregates over a dataset that is already
    loaded or connected. All filters are half-open intervals [lo, hi).
    """

    def __init__(self, dimensions: List[Dimension]):
        self.dimensions: Dict[str, Dimension] = {d.name: d for d in dimensions}
        self.stats = BackendStats()

    @abstractmethod
    def count(self, filters: FilterContext) -> int:
        """Number of rows satisfying all brushes in the context."""
        pass

    @abstractmethod
    def histogram(self, dimension: Dimension, filters: FilterContext) -> np.ndarray:
        """Per-bin counts of one dimension under the context."""
        pass

    @abstractmethod
    def heatmap(self, dim_x: Dimension, dim_y: Dimension,
                filters: FilterContext) -> np.ndarray:
        """Per-cell counts, shape (bins_x, bins_y), under the context."""
        pass

    @abstractmethod
    def cumulative_cube(self, active_dimension: Dimension, view: View,
                        filters: FilterContext, resolution: int) -> Cube:
        """Aggregate of `view` swept across resolution + 1 boundaries of the active dimension."""
        pass

    def aggregate(self, view: View, filters: FilterContext) -> Aggregate:
        """Aggregate of a view under a filter context."""
        if view.kind is ViewKind.SCALAR:
            return self.count(filters)
        if view.kind is ViewKind.UNIVARIATE:
            return self.histogram(view.dimension, filters)
        if view.kind is ViewKind.BIVARIATE:
            return self.heatmap(view.x, view.y, filters)
        raise TypeError(f"Unknown view kind {view.kind}")

    def _check_cube_request(self, active_dimension: Dimension, filters: FilterContext,
                            resolution: int):
        if resolution <= 0:
            raise ValueError(f"Cube resolution must be positive, got {resolution}")
        if filters.constrains(active_dimension.name):
            raise ValueError(
                f"Filter context must not constrain the active dimension {active_dimension.name}"
            )

    def close(self):
        """Release backend resources."""
        pass


class ColumnarBackend(AggregationBackend):
    """
    In-process backend over a resident pandas DataFrame.

    Each dimension column is copied once into a read-only float64 array, so
    concurrent scans need no locking. A cube is built with one scan into a
    raw count table indexed by [sweep index][passive bin(s)] followed by a
    prefix sum along the sweep axis.
    """

    def __init__(self, df: pd.DataFrame, dimensions: List[Dimension]):
        super().__init__(dimensions)
        missing = [d.name for d in dimensions if d.name not in df.columns]
        if missing:
            raise ConfigError(f"DataFrame has no columns for dimensions {missing}")
        self.size = len(df)
        self._columns: Dict[str, np.ndarray] = {}
        for dim in dimensions:
            column = df[dim.name].to_numpy(dtype=np.float64, na_value=np.nan, copy=True)
            column.setflags(write=False)
            self._columns[dim.name] = column
        logger.info(f"Columnar backend ready: {self.size:,} rows, {len(dimensions)} dimensions")

    def _column(self, name: str, mask: Optional[np.ndarray]) -> np.ndarray:
        column = self._columns[name]
        return column if mask is None else column[mask]

    def _mask(self, filters: FilterContext) -> Optional[np.ndarray]:
        return filters.mask(self._columns, self.size)

    def count(self, filters: FilterContext) -> int:
        self.stats.record("count")
        mask = self._mask(filters)
        return self.size if mask is None else int(np.count_nonzero(mask))

    def histogram(self, dimension: Dimension, filters: FilterContext) -> np.ndarray:
        self.stats.record("histogram")
        bins = dimension.bin_config
        idx = bins.index(self._column(dimension.name, self._mask(filters)))
        return np.bincount(idx[idx >= 0], minlength=bins.count).astype(np.int64)

    def heatmap(self, dim_x: Dimension, dim_y: Dimension,
                filters: FilterContext) -> np.ndarray:
        self.stats.record("heatmap")
        mask = self._mask(filters)
        ix = dim_x.bin_config.index(self._column(dim_x.name, mask))
        iy = dim_y.bin_config.index(self._column(dim_y.name, mask))
        nx, ny = dim_x.bin_config.count, dim_y.bin_config.count
        valid = (ix >= 0) & (iy >= 0)
        flat = ix[valid] * ny + iy[valid]
        return np.bincount(flat, minlength=nx * ny).astype(np.int64).reshape(nx, ny)

    def cumulative_cube(self, active_dimension: Dimension, view: View,
                        filters: FilterContext, resolution: int) -> Cube:
        self._check_cube_request(active_dimension, filters, resolution)
        self.stats.record("cumulative_cube")
        start = time.perf_counter()

        mask = self._mask(filters)
        sweep = active_index(self._column(active_dimension.name, mask),
                             active_dimension.boundaries(resolution))
        steps = resolution + 1

        # pass 1: raw counts per [sweep index][passive cell]
        if view.kind is ViewKind.SCALAR:
            raw = np.bincount(sweep, minlength=steps)
        elif view.kind is ViewKind.UNIVARIATE:
            bins = view.dimension.bin_config
            idx = bins.index(self._column(view.dimension.name, mask))
            valid = idx >= 0
            flat = sweep[valid] * bins.count + idx[valid]
            raw = np.bincount(flat, minlength=steps * bins.count).reshape(steps, bins.count)
        elif view.kind is ViewKind.BIVARIATE:
            nx, ny = view.x.bin_config.count, view.y.bin_config.count
            ix = view.x.bin_config.index(self._column(view.x.name, mask))
            iy = view.y.bin_config.index(self._column(view.y.name, mask))
            valid = (ix >= 0) & (iy >= 0)
            flat = (sweep[valid] * nx + ix[valid]) * ny + iy[valid]
            raw = np.bincount(flat, minlength=steps * nx * ny).reshape(steps, nx, ny)
        else:
            raise TypeError(f"Unknown view kind {view.kind}")

        # pass 2: prefix sum along the sweep axis
        slices = np.cumsum(raw.astype(np.int64), axis=0)
        logger.debug(
            f"Cube {view.name} over {active_dimension.name} @ {resolution}: "
            f"{slices.nbytes / 1024:.1f} KiB in {(time.perf_counter() - start) * 1000:.1f} ms"
        )
        return Cube(view=view, active_dimension=active_dimension,
                    resolution=resolution, slices=slices)
