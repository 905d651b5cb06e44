"""
brushcube: Incremental cross-filter aggregation over linked views

Brushing one view re-aggregates every other view from cumulative cubes
(prefix sums over the active dimension) instead of rescanning the data.
"""

__version__ = "0.1.0"

from brushcube.cube.schema import ConfigError, Dimension, Schema
from brushcube.cube.view import ScalarView, UnivariateView, BivariateView
from brushcube.cube.filters import Interval, FilterContext
from brushcube.cube.engine import AggregationBackend, ColumnarBackend, Cube
from brushcube.cube.store import CubeStore
from brushcube.config import EngineConfig, load_setup
from brushcube.nav.controller import InteractionController

__all__ = [
    "ConfigError",
    "Dimension",
    "Schema",
    "ScalarView",
    "UnivariateView",
    "BivariateView",
    "Interval",
    "FilterContext",
    "AggregationBackend",
    "ColumnarBackend",
    "Cube",
    "CubeStore",
    "EngineConfig",
    "load_setup",
    "InteractionController",
]
