"""
Evaluation module: cube verification and cached vs baseline benchmarks.
"""

from brushcube.eval.metrics import (
    CubeCheck, verify_cube, exact_diff, BenchmarkResult, run_brush_trace,
    ModeComparison, compare_modes,
)

__all__ = [
    "CubeCheck", "verify_cube", "exact_diff", "BenchmarkResult", "run_brush_trace",
    "ModeComparison", "compare_modes",
]
