"""
Verification and benchmark metrics for the cube cache.

- Cube checks: boundary correctness and monotonicity of a built cube
- Exact diffs: the backend aggregate a snapped brush must reproduce
- Brush traces: backend calls and update latency over a sequence of moves
- Mode comparison: cached vs baseline on the same (snapped) trace
"""

import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from brushcube.config import EngineConfig
from brushcube.cube.engine import Aggregate, AggregationBackend, Cube
from brushcube.cube.filters import FilterContext, Interval
from brushcube.cube.schema import Schema
from brushcube.cube.store import SnapPolicy, snap_interval
from brushcube.nav.controller import InteractionController
from brushcube.nav.render import RecordingRenderer

logger = logging.getLogger(__name__)


@dataclass
class CubeCheck:
    """Result of checking a cube against its backend."""
    view: str
    boundary_ok: bool
    monotone_ok: bool

    @property
    def ok(self) -> bool:
        return self.boundary_ok and self.monotone_ok


def verify_cube(backend: AggregationBackend, cube: Cube, filters: FilterContext) -> CubeCheck:
    """Check Cube[resolution] against the backend and slice monotonicity."""
    expected = backend.aggregate(cube.view, filters)
    boundary_ok = bool(np.array_equal(np.asarray(cube.total), np.asarray(expected)))
    monotone_ok = bool(np.all(np.diff(cube.slices, axis=0) >= 0))
    if not (boundary_ok and monotone_ok):
        logger.warning(f"Cube check failed for {cube.view.name}: "
                       f"boundary={boundary_ok} monotone={monotone_ok}")
    return CubeCheck(view=cube.view.name, boundary_ok=boundary_ok, monotone_ok=monotone_ok)


def slice_interval(cube: Cube, lo_index: int, hi_index: int) -> Interval:
    """
    The active-dimension interval covered by Cube[hi] - Cube[lo].

    The top slice is unconstrained, so a diff ending there is open above.
    """
    boundaries = cube.boundaries
    open_above = hi_index == cube.resolution and lo_index < hi_index
    hi = float("inf") if open_above else float(boundaries[hi_index])
    return Interval(float(boundaries[lo_index]), hi)


def exact_diff(backend: AggregationBackend, cube: Cube, filters: FilterContext,
               lo_index: int, hi_index: int) -> Aggregate:
    """Backend aggregate that Cube[hi] - Cube[lo] must equal exactly."""
    interval = slice_interval(cube, lo_index, hi_index)
    return backend.aggregate(cube.view, filters.with_interval(cube.active_dimension.name, interval))


@dataclass
class BenchmarkResult:
    """Backend usage and update latency of one brush trace."""
    mode: str
    view: str
    moves: int
    build_ms: float
    calls: Dict[str, int] = field(default_factory=dict)
    latencies_ms: List[float] = field(default_factory=list, repr=False)
    frames: List[Dict[str, Any]] = field(default_factory=list, repr=False)

    @property
    def total_calls(self) -> int:
        return sum(self.calls.values())

    @property
    def mean_latency_ms(self) -> float:
        return float(np.mean(self.latencies_ms)) if self.latencies_ms else 0.0

    @property
    def max_latency_ms(self) -> float:
        return float(np.max(self.latencies_ms)) if self.latencies_ms else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode,
            "view": self.view,
            "moves": self.moves,
            "build_ms": self.build_ms,
            "calls": dict(self.calls),
            "total_calls": self.total_calls,
            "mean_latency_ms": self.mean_latency_ms,
            "max_latency_ms": self.max_latency_ms,
        }


def run_brush_trace(controller: InteractionController, view_name: str,
                    intervals: Sequence[Interval], record: bool = False) -> BenchmarkResult:
    """
    Activate a view and move its brush through `intervals`, one frame per move.

    Backend calls are counted from the moment of activation, the cube build
    included.
    """
    view = controller.views[view_name]
    stats = controller.backend.stats
    before = stats.snapshot()

    start = time.perf_counter()
    controller.hover(view_name)
    controller.wait()
    build_ms = (time.perf_counter() - start) * 1000
    controller.frame()

    latencies: List[float] = []
    frames: List[Dict[str, Any]] = []
    renderer = controller.renderer
    for interval in intervals:
        controller.brush_changed(view.dimension.name, interval)
        t0 = time.perf_counter()
        controller.frame()
        latencies.append((time.perf_counter() - t0) * 1000)
        if record and isinstance(renderer, RecordingRenderer):
            frames.append(dict(renderer.latest))

    after = stats.snapshot()
    calls = {op: after.get(op, 0) - before.get(op, 0) for op in after}
    result = BenchmarkResult(
        mode="cached" if controller.caching else "baseline",
        view=view_name,
        moves=len(intervals),
        build_ms=build_ms,
        calls={op: n for op, n in calls.items() if n},
        latencies_ms=latencies,
        frames=frames,
    )
    logger.info(
        f"{result.mode} trace on {view_name}: {result.moves} moves, "
        f"{result.total_calls} backend calls, mean update {result.mean_latency_ms:.2f} ms"
    )
    return result


@dataclass
class ModeComparison:
    """Cached and baseline traces over the same snapped brush positions."""
    cached: BenchmarkResult
    baseline: BenchmarkResult
    identical: bool
    mismatches: List[int] = field(default_factory=list)

    @property
    def call_reduction(self) -> float:
        if self.cached.total_calls == 0:
            return float("inf")
        return self.baseline.total_calls / self.cached.total_calls

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cached": self.cached.to_dict(),
            "baseline": self.baseline.to_dict(),
            "identical": self.identical,
            "mismatches": list(self.mismatches),
            "call_reduction": self.call_reduction,
        }


def snapped_intervals(intervals: Sequence[Interval], extent, resolution: int,
                      policy: SnapPolicy = SnapPolicy.NEAREST) -> List[Interval]:
    """The data-domain intervals the cube actually answers for each brush."""
    boundaries = np.linspace(extent[0], extent[1], resolution + 1)
    out = []
    for interval in intervals:
        i, j = snap_interval(interval, extent, resolution, policy)
        top = float("inf") if i < j == resolution else float(boundaries[j])
        out.append(Interval(float(boundaries[i]), top))
    return out


def compare_modes(schema: Schema, backend: AggregationBackend, view_name: str,
                  intervals: Sequence[Interval],
                  config: Optional[EngineConfig] = None) -> ModeComparison:
    """
    Run a brush trace cached and in baseline mode.

    The baseline trace uses the snapped intervals, so every rendered
    aggregate must agree exactly.
    """
    config = config or EngineConfig()
    view = schema.get_view(view_name)
    resolution = view.width or config.resolution

    cached_config = EngineConfig(**{**config.to_dict(), "caching": True})
    baseline_config = EngineConfig(**{**config.to_dict(), "caching": False})

    cached_ctl = InteractionController(schema, backend, RecordingRenderer(), cached_config)
    try:
        cached = run_brush_trace(cached_ctl, view_name, intervals, record=True)
    finally:
        cached_ctl.close()

    exact = snapped_intervals(intervals, view.dimension.extent, resolution,
                              cached_config.snap_policy)
    baseline_ctl = InteractionController(schema, backend, RecordingRenderer(), baseline_config)
    try:
        baseline = run_brush_trace(baseline_ctl, view_name, exact, record=True)
    finally:
        baseline_ctl.close()

    mismatches = [
        move for move, (a, b) in enumerate(zip(cached.frames, baseline.frames))
        if a != b
    ]
    return ModeComparison(cached=cached, baseline=baseline,
                          identical=not mismatches, mismatches=mismatches)
