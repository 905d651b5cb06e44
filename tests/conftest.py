"""
Shared fixtures: a small flights-like dataset and its schema.
"""

import os
import sys

import numpy as np
import pandas as pd
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from brushcube.cube.schema import Schema
from brushcube.cube.engine import ColumnarBackend


FLIGHTS_SETUP = {
    "dimensions": [
        {"name": "ARR_DELAY", "extent": [-10, 100], "bins": 25, "format": "d"},
        {"name": "DEP_DELAY", "extent": [-10, 100], "bins": 25, "format": "d"},
        {"name": "DISTANCE", "extent": [50, 2000], "bins": 25, "format": "d"},
    ],
    "views": [
        {"type": "scalar", "name": "COUNT", "title": "Flights selected"},
        {"type": "univariate", "name": "ARR_DELAY", "title": "Arrival Delay",
         "dimension": "ARR_DELAY"},
        {"type": "univariate", "name": "DISTANCE", "title": "Distance",
         "dimension": "DISTANCE"},
        {"type": "univariate", "name": "DEP_DELAY", "title": "Departure Delay",
         "dimension": "DEP_DELAY"},
        {"type": "bivariate", "name": "DELAYS", "title": "Delay Matrix",
         "dimensions": ["DEP_DELAY", "ARR_DELAY"]},
    ],
}


def make_flights(rows: int = 4000, seed: int = 7) -> pd.DataFrame:
    """Whole-minute delays and whole-mile distances, some outside the extents."""
    rng = np.random.default_rng(seed)
    dep_delay = np.round(rng.gamma(1.5, 15.0, size=rows) - 20.0)
    arr_delay = np.round(dep_delay + rng.normal(-2.0, 10.0, size=rows))
    distance = np.round(rng.uniform(0, 2400, size=rows))
    return pd.DataFrame({
        "ARR_DELAY": arr_delay,
        "DEP_DELAY": dep_delay,
        "DISTANCE": distance,
    })


@pytest.fixture
def flights_df():
    return make_flights()


@pytest.fixture
def schema():
    return Schema.from_dict(FLIGHTS_SETUP)


@pytest.fixture
def backend(flights_df, schema):
    return ColumnarBackend(flights_df, schema.dimensions)
