"""
Cube Store: owns cube lifetime, the current epoch, and query-by-diff.

An epoch is the pair (active view, filter context) plus a generation
number. Every activation or filter change starts a new generation and drops
all stored cubes; a build installs its cubes only if its generation is
still the current one, so the last activation wins. Brush queries snap the
brush to the nearest cube boundaries and return Cube[j] - Cube[i].
"""

import logging
import math
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np

from brushcube.cube.builder import CubeBuilder, CubeBuildError
from brushcube.cube.engine import Aggregate, AggregationBackend, Cube
from brushcube.cube.filters import FilterContext, Interval
from brushcube.cube.schema import ConfigError, Dimension
from brushcube.cube.view import View, passive_views

logger = logging.getLogger(__name__)


class StaleResultError(RuntimeError):
    """A cube diff produced negative counts. Never leaves the store."""


class CubeState(Enum):
    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"


class SnapPolicy(Enum):
    """How brush ends map to cube boundary indices."""
    NEAREST = "nearest"
    OUTWARD = "outward"

    @classmethod
    def parse(cls, value) -> "SnapPolicy":
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError as e:
            raise ConfigError(f"Unknown snapping policy {value!r}") from e


def snap_interval(interval: Interval, extent: Tuple[float, float], resolution: int,
                  policy: SnapPolicy = SnapPolicy.NEAREST) -> Tuple[int, int]:
    """
    Map a brush to a pair of boundary indices in [0, resolution].

    NEAREST rounds each end to the closest boundary (ties to even); OUTWARD
    floors the low end and ceils the high end. Ends beyond the extent clamp.
    """
    lo, hi = extent

    def position(value: float) -> float:
        return min(max((value - lo) / (hi - lo) * resolution, 0.0), float(resolution))

    a, b = position(interval.lo), position(interval.hi)
    if policy is SnapPolicy.OUTWARD:
        i, j = math.floor(a), math.ceil(b)
    else:
        i, j = int(round(a)), int(round(b))
    return min(i, j), max(i, j)


@dataclass(frozen=True)
class Epoch:
    """Validity scope of the stored cubes."""
    generation: int
    active: Optional[str] = None
    filters: FilterContext = field(default_factory=FilterContext)


class BaselineQuerier:
    """
    Direct backend queries with the brush folded into the filter context.

    No snapping and no preloading: used when caching is off, and as the
    fallback while cubes are pending or after a build failure.
    """

    def __init__(self, backend: AggregationBackend):
        self.backend = backend

    def query(self, view: View, filters: FilterContext,
              active_dimension: Optional[Dimension] = None,
              brush: Optional[Interval] = None) -> Aggregate:
        if brush is not None and active_dimension is not None:
            filters = filters.with_interval(active_dimension.name, brush)
        return self.backend.aggregate(view, filters)


class CubeStore:
    """
    Holds the ready cubes of the current epoch.

    Args:
        backend: Backend used for baseline fallback queries
        builder: Builder producing the cubes of an epoch
        views: All configured views
        resolution: Default sweep resolution (an active view's width overrides it)
        snapping: Snap policy for brush ends
        preload: Build on activation; otherwise on the first brush query of the epoch
        degrade_on_failure: Answer views whose build failed from the backend directly
        build_workers: Concurrent builds (superseded builds still finish)
        on_ready: Called with the epoch after its cubes are installed
    """

    def __init__(self, backend: AggregationBackend, builder: CubeBuilder, views: List[View],
                 resolution: int = 500, snapping: SnapPolicy = SnapPolicy.NEAREST,
                 preload: bool = True, degrade_on_failure: bool = True,
                 build_workers: int = 2,
                 on_ready: Optional[Callable[[Epoch], None]] = None):
        if resolution <= 0:
            raise ConfigError(f"Cube resolution must be positive, got {resolution}")
        self.backend = backend
        self.builder = builder
        self.views: Dict[str, View] = {v.name: v for v in views}
        self.resolution = resolution
        self.snapping = SnapPolicy.parse(snapping)
        self.preload = preload
        self.degrade_on_failure = degrade_on_failure
        self.on_ready = on_ready
        self.baseline = BaselineQuerier(backend)

        self._lock = threading.RLock()
        self._epoch = Epoch(generation=0)
        self._cubes: Dict[str, Cube] = {}
        self._states: Dict[str, CubeState] = {}
        self._failures: Dict[str, BaseException] = {}
        self._pending: Optional[Future] = None
        self._lazy_generation: Optional[int] = None
        self._executor = ThreadPoolExecutor(max_workers=build_workers,
                                            thread_name_prefix="cube-store")

    # -- state ------------------------------------------------------------

    @property
    def epoch(self) -> Epoch:
        with self._lock:
            return self._epoch

    @property
    def active_view(self) -> Optional[View]:
        epoch = self.epoch
        return self.views.get(epoch.active) if epoch.active else None

    def resolution_for(self, view: View) -> int:
        return getattr(view, "width", None) or self.resolution

    def cube(self, view_name: str) -> Optional[Cube]:
        with self._lock:
            return self._cubes.get(view_name)

    def state(self, view_name: str) -> Optional[CubeState]:
        with self._lock:
            return self._states.get(view_name)

    def failure(self, view_name: str) -> Optional[BaseException]:
        with self._lock:
            return self._failures.get(view_name)

    def boundaries(self) -> Optional[np.ndarray]:
        view = self.active_view
        if view is None:
            return None
        return view.dimension.boundaries(self.resolution_for(view))

    # -- invalidation -------------------------------------------------------

    def activate(self, view: View, filters: FilterContext) -> Epoch:
        """
        Start a new epoch for `view` under `filters`.

        All stored cubes are dropped at once; queries fall back to the
        backend until the new build is installed.
        """
        if not view.brushable:
            raise ValueError(f"View {view.name} cannot be active")
        constrained = [d for d in view.dimension_names if filters.constrains(d)]
        if constrained:
            raise ValueError(f"Filter context must not constrain active dimensions {constrained}")

        with self._lock:
            epoch = Epoch(self._epoch.generation + 1, view.name, filters)
            self._epoch = epoch
            self._cubes = {}
            self._failures = {}
            self._states = {v.name: CubeState.PENDING
                            for v in passive_views(list(self.views.values()), view)}
            logger.info(f"Epoch {epoch.generation}: active={view.name} ({filters.describe()})")
            if self.preload:
                self._pending = self._executor.submit(self._run_build, epoch)
            else:
                self._pending = None
        return epoch

    def invalidate_on_filter_change(self, filters: FilterContext) -> Epoch:
        """Start a new epoch with the same active view and a new filter context."""
        with self._lock:
            current = self._epoch
            if filters == current.filters:
                return current
            view = self.active_view
            if view is None:
                self._epoch = Epoch(current.generation + 1, None, filters)
                return self._epoch
            return self.activate(view, filters)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the current epoch's build has finished."""
        with self._lock:
            pending = self._pending
        if pending is None:
            return True
        wait([pending], timeout=timeout)
        return pending.done()

    def _is_current(self, epoch: Epoch) -> bool:
        with self._lock:
            return self._epoch.generation == epoch.generation

    def _run_build(self, epoch: Epoch) -> bool:
        if not self._is_current(epoch):
            logger.debug(f"Skipping superseded build for epoch {epoch.generation}")
            return False
        active = self.views[epoch.active]
        passive = passive_views(list(self.views.values()), active)
        try:
            cubes = self.builder.build(active, active.dimension, passive, epoch.filters,
                                       self.resolution_for(active), epoch.generation)
            failures: Dict[str, BaseException] = {}
        except CubeBuildError as e:
            cubes, failures = e.cubes, e.failures
        installed = self._install(epoch, cubes, failures)
        if installed and self.on_ready is not None:
            self.on_ready(epoch)
        return installed

    def _install(self, epoch: Epoch, cubes: Dict[str, Cube],
                 failures: Dict[str, BaseException]) -> bool:
        with self._lock:
            if self._epoch.generation != epoch.generation:
                logger.info(
                    f"Discarding cubes of epoch {epoch.generation} "
                    f"(current is {self._epoch.generation})"
                )
                return False
            self._cubes = {**self._cubes, **cubes}
            self._failures = {**self._failures, **failures}
            states = dict(self._states)
            states.update({name: CubeState.READY for name in cubes})
            states.update({name: CubeState.FAILED for name in failures})
            self._states = states
        for name, error in failures.items():
            logger.warning(f"Cube for {name} unavailable in epoch {epoch.generation}: {error}")
        return True

    def _discard(self, view_name: str, cube: Cube):
        with self._lock:
            if self._cubes.get(view_name) is cube:
                self._cubes = {k: v for k, v in self._cubes.items() if k != view_name}
                self._states = {**self._states, view_name: CubeState.PENDING}
        logger.warning(f"Discarded stale cube for {view_name} (epoch {cube.generation})")

    # -- queries ------------------------------------------------------------

    def query(self, view: View, brush: Optional[Interval] = None) -> Aggregate:
        """
        Aggregate of a passive view for the active view's brush.

        Without a brush this is Cube[resolution]. With one it is the snapped
        diff Cube[j] - Cube[i]. Views without a ready cube are answered by
        the backend directly.
        """
        lazy_attempted = False
        while True:
            with self._lock:
                epoch = self._epoch
                cube = self._cubes.get(view.name)
                failure = self._failures.get(view.name)
                needs_build = (
                    not self.preload
                    and epoch.active is not None
                    and self._lazy_generation != epoch.generation
                )
                if cube is None and needs_build and not lazy_attempted:
                    self._lazy_generation = epoch.generation

            if cube is None:
                if needs_build and not lazy_attempted:
                    lazy_attempted = True
                    self._run_build(epoch)
                    continue
                if failure is not None and not self.degrade_on_failure:
                    raise failure
                return self._fallback(view, epoch, brush)

            try:
                return self._diff(cube, brush)
            except StaleResultError as e:
                logger.warning(str(e))
                self._discard(view.name, cube)

    def _diff(self, cube: Cube, brush: Optional[Interval]) -> Aggregate:
        if brush is None:
            return cube.total
        i, j = snap_interval(brush, cube.active_dimension.extent, cube.resolution, self.snapping)
        result = cube.diff(i, j)
        if np.any(np.asarray(result) < 0):
            raise StaleResultError(
                f"Negative counts in cube diff for {cube.view.name} at ({i}, {j})"
            )
        logger.debug(f"{cube.view.name}: [{brush.lo:g}, {brush.hi:g}) -> slices ({i}, {j})")
        return result

    def _fallback(self, view: View, epoch: Epoch, brush: Optional[Interval]) -> Aggregate:
        active = self.views.get(epoch.active) if epoch.active else None
        if active is None or active.name == view.name:
            return self.baseline.query(view, epoch.filters)
        return self.baseline.query(view, epoch.filters, active.dimension, brush)

    def close(self):
        self._executor.shutdown(wait=True, cancel_futures=True)
