"""
Unit tests for dimensions, views, filters and configuration.
"""

import json
import math

import numpy as np
import pytest

from brushcube.config import EngineConfig, load_setup
from brushcube.cube.filters import FilterContext, Interval
from brushcube.cube.schema import ConfigError, Dimension, Schema, bin_config
from brushcube.cube.view import ViewKind

from conftest import FLIGHTS_SETUP


class TestDimension:
    def test_exact_bins(self):
        dim = Dimension("DISTANCE", (50, 2000), 25)
        bins = dim.bin_config
        assert bins.start == 50
        assert bins.stop == 2000
        assert bins.count == 25
        assert bins.step == pytest.approx(78.0)

    def test_nice_bins(self):
        bins = bin_config((50, 2000), 25, nice=True)
        assert bins.step == 100
        assert bins.start == 0
        assert bins.stop == 2000
        assert bins.count == 20

    @pytest.mark.parametrize("extent,bins", [
        ((0, 10), 0),
        ((0, 10), -3),
        ((10, 10), 5),
        ((20, 10), 5),
        ((0, math.inf), 5),
        ((math.nan, 1), 5),
    ])
    def test_invalid_dimension(self, extent, bins):
        with pytest.raises(ConfigError):
            Dimension("X", extent, bins)

    def test_bin_index(self):
        bins = Dimension("ARR_DELAY", (-10, 100), 25).bin_config
        values = np.array([-10.0, -10.1, 99.9, 101.0, np.nan, 0.0])
        np.testing.assert_array_equal(bins.index(values), [0, -1, 24, -1, -1, 2])

    def test_bin_keys(self):
        bins = Dimension("ARR_DELAY", (-10, 100), 25).bin_config
        assert bins.key(0) == -10
        assert bins.keys()[-1] == pytest.approx(95.6)

    def test_boundaries(self):
        dim = Dimension("ARR_DELAY", (-10, 100), 25)
        boundaries = dim.boundaries(500)
        assert len(boundaries) == 501
        assert boundaries[0] == -10
        assert boundaries[-1] == 100

    def test_format_value(self):
        assert Dimension("D", (0, 10), 5, format="d").format_value(3.6) == "4"
        assert Dimension("D", (0, 10), 5, format=".1f").format_value(3.64) == "3.6"


class TestSchema:
    def test_from_dict(self, schema):
        assert schema.dimension_names == ["ARR_DELAY", "DEP_DELAY", "DISTANCE"]
        assert schema.get_view("COUNT").kind is ViewKind.SCALAR
        assert schema.get_view("DISTANCE").shape == (25,)
        assert schema.get_view("DELAYS").shape == (25, 25)
        assert schema.get_view("NonExistent") is None

    def test_round_trip(self, schema):
        again = Schema.from_dict(schema.to_dict())
        assert again.to_dict() == schema.to_dict()

    def test_brushable(self, schema):
        assert schema.get_view("ARR_DELAY").brushable
        assert not schema.get_view("COUNT").brushable
        assert not schema.get_view("DELAYS").brushable

    def test_unknown_dimension(self):
        data = {
            "dimensions": [{"name": "A", "extent": [0, 1], "bins": 4}],
            "views": [{"type": "univariate", "name": "B", "dimension": "B"}],
        }
        with pytest.raises(ConfigError):
            Schema.from_dict(data)

    def test_unknown_view_type(self):
        data = {
            "dimensions": [{"name": "A", "extent": [0, 1], "bins": 4}],
            "views": [{"type": "3D", "name": "A"}],
        }
        with pytest.raises(ConfigError):
            Schema.from_dict(data)

    def test_bivariate_needs_two_dimensions(self):
        data = {
            "dimensions": [{"name": "A", "extent": [0, 1], "bins": 4}],
            "views": [{"type": "bivariate", "name": "AA", "dimensions": ["A"]}],
        }
        with pytest.raises(ConfigError):
            Schema.from_dict(data)

    def test_duplicate_views(self):
        data = dict(FLIGHTS_SETUP)
        data["views"] = FLIGHTS_SETUP["views"] + [FLIGHTS_SETUP["views"][0]]
        with pytest.raises(ConfigError):
            Schema.from_dict(data)


class TestFilters:
    def test_interval_of_orders_ends(self):
        assert Interval.of(50, 10) == Interval(10, 50)

    def test_interval_rejects_bad_bounds(self):
        with pytest.raises(ValueError):
            Interval(5, 1)
        with pytest.raises(ValueError):
            Interval(math.nan, 1)

    def test_interval_is_half_open(self):
        values = np.array([9.999, 10.0, 49.999, 50.0])
        np.testing.assert_array_equal(Interval(10, 50).contains(values),
                                      [False, True, True, False])
        np.testing.assert_array_equal(Interval(10, math.inf).contains(values),
                                      [False, True, True, True])

    def test_context_equality_ignores_order(self):
        a = FilterContext.from_mapping({"A": Interval(0, 1), "B": Interval(2, 3)})
        b = FilterContext.from_mapping({"B": Interval(2, 3), "A": Interval(0, 1)})
        assert a == b
        assert hash(a) == hash(b)
        assert a.without("A") == FilterContext.from_mapping({"B": Interval(2, 3)})
        assert a.constrains("B")
        assert not a.without("B").constrains("B")

    def test_to_sql_inline(self):
        filters = FilterContext.from_mapping({"ARR_DELAY": Interval(10, 50)})
        assert filters.to_sql() == [
            "\"ARR_DELAY\" >= '10.0'::DOUBLE AND \"ARR_DELAY\" < '50.0'::DOUBLE"
        ]

    def test_to_sql_parameters(self):
        filters = FilterContext.from_mapping({"ARR_DELAY": Interval(10, math.inf)})
        params = []
        assert filters.to_sql(params) == ['"ARR_DELAY" >= ?']
        assert params == [10.0]


class TestEngineConfig:
    def test_defaults(self):
        config = EngineConfig()
        assert config.caching
        assert config.resolution == 500
        assert config.snapping == "nearest"

    def test_unknown_option(self):
        with pytest.raises(ConfigError):
            EngineConfig.from_dict({"cache": True})

    @pytest.mark.parametrize("options", [
        {"resolution": 0},
        {"max_connections": -1},
        {"snapping": "floor"},
        {"build_retries": -1},
    ])
    def test_invalid_options(self, options):
        with pytest.raises(ConfigError):
            EngineConfig.from_dict(options)

    def test_load_setup_from_file(self, tmp_path):
        path = tmp_path / "setup.json"
        data = dict(FLIGHTS_SETUP, engine={"resolution": 200, "snapping": "outward"})
        path.write_text(json.dumps(data))
        schema, config = load_setup(path)
        assert len(schema.views) == 5
        assert config.resolution == 200
        assert config.snapping == "outward"

    def test_load_setup_missing_file(self, tmp_path):
        with pytest.raises(ConfigError):
            load_setup(tmp_path / "missing.json")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
