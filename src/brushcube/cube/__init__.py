"""
Cube module: schema, backends, cube building and the cube cache.
"""

from brushcube.cube.schema import ConfigError, BinConfig, Dimension, Schema, bin_config
from brushcube.cube.view import (
    View, ViewKind, ScalarView, UnivariateView, BivariateView, view_from_dict
)
from brushcube.cube.filters import Interval, FilterContext
from brushcube.cube.engine import AggregationBackend, ColumnarBackend, Cube, BackendStats
from brushcube.cube.sql import ConnectionPool, PooledSQLBackend
from brushcube.cube.builder import CubeBuilder, CubeBuildError
from brushcube.cube.store import (
    CubeStore, CubeState, Epoch, SnapPolicy, StaleResultError, BaselineQuerier, snap_interval
)

__all__ = [
    "ConfigError", "BinConfig", "Dimension", "Schema", "bin_config",
    "View", "ViewKind", "ScalarView", "UnivariateView", "BivariateView", "view_from_dict",
    "Interval", "FilterContext",
    "AggregationBackend", "ColumnarBackend", "Cube", "BackendStats",
    "ConnectionPool", "PooledSQLBackend",
    "CubeBuilder", "CubeBuildError",
    "CubeStore", "CubeState", "Epoch", "SnapPolicy", "StaleResultError",
    "BaselineQuerier", "snap_interval",
]
