"""
Flights crossfilter setup.

Views:
- COUNT: flights selected
- ARR_DELAY, DEP_DELAY: delays in minutes
- DISTANCE: distance in miles
- AIR_TIME: airtime in minutes
- ARR_TIME, DEP_TIME: hour of day
- DEP_DELAY_ARR_DELAY: delay matrix
"""

import numpy as np
import pandas as pd

from brushcube.cube.schema import Schema
from brushcube.config import EngineConfig


FLIGHTS_CONFIG = {
    "dimensions": [
        {"name": "ARR_DELAY", "title": "Arrival Delay", "extent": [-10, 100], "bins": 25, "format": "d"},
        {"name": "DEP_DELAY", "title": "Departure Delay", "extent": [-10, 100], "bins": 25, "format": "d"},
        {"name": "DISTANCE", "title": "Distance", "extent": [50, 2000], "bins": 25, "format": "d"},
        {"name": "AIR_TIME", "title": "Airtime", "extent": [0, 500], "bins": 25, "format": "d"},
        {"name": "ARR_TIME", "title": "Arrival Time", "extent": [0, 24], "bins": 24, "format": ".1f"},
        {"name": "DEP_TIME", "title": "Departure Time", "extent": [0, 24], "bins": 24, "format": ".1f"},
    ],
    "views": [
        {"type": "scalar", "name": "COUNT", "title": "Flights selected"},
        {"type": "univariate", "name": "ARR_DELAY", "title": "Arrival Delay in Minutes",
         "dimension": "ARR_DELAY"},
        {"type": "univariate", "name": "DISTANCE", "title": "Distance in Miles",
         "dimension": "DISTANCE"},
        {"type": "univariate", "name": "DEP_DELAY", "title": "Departure Delay in Minutes",
         "dimension": "DEP_DELAY"},
        {"type": "univariate", "name": "AIR_TIME", "title": "Airtime in Minutes",
         "dimension": "AIR_TIME"},
        {"type": "univariate", "name": "ARR_TIME", "title": "Arrival Time",
         "dimension": "ARR_TIME"},
        {"type": "univariate", "name": "DEP_TIME", "title": "Departure Time",
         "dimension": "DEP_TIME"},
        {"type": "bivariate", "name": "DEP_DELAY_ARR_DELAY",
         "title": "Arrival and Departure Delay in Minutes",
         "dimensions": ["DEP_DELAY", "ARR_DELAY"]},
    ],
    "engine": {
        "caching": True,
        "preload": True,
        "resolution": 500,
        "snapping": "nearest",
        "max_connections": 4,
        "prepared_statements": False,
        "compression": True,
    },
}


def create_flights_schema() -> Schema:
    return Schema.from_dict(FLIGHTS_CONFIG)


def create_flights_engine_config() -> EngineConfig:
    return EngineConfig.from_dict(FLIGHTS_CONFIG["engine"])


def create_flights_data(rows: int = 100_000, seed: int = 42) -> pd.DataFrame:
    """
    Synthetic flights with correlated delays and distance/airtime.

    Delays are whole minutes, like the real on-time performance data.
    """
    rng = np.random.default_rng(seed)
    dep_delay = np.round(rng.gamma(shape=1.5, scale=12.0, size=rows) - 12.0)
    arr_delay = np.round(dep_delay + rng.normal(-3.0, 8.0, size=rows))
    distance = np.round(rng.lognormal(mean=6.6, sigma=0.6, size=rows))
    air_time = np.round(distance / 7.5 + rng.normal(20.0, 8.0, size=rows))
    dep_time = np.mod(rng.normal(13.5, 4.5, size=rows), 24.0)
    arr_time = np.mod(dep_time + air_time / 60.0 + rng.normal(0.3, 0.2, size=rows), 24.0)
    return pd.DataFrame({
        "ARR_DELAY": arr_delay,
        "DEP_DELAY": dep_delay,
        "DISTANCE": distance,
        "AIR_TIME": air_time,
        "ARR_TIME": arr_time,
        "DEP_TIME": dep_time,
    })
