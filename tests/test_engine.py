"""
Unit tests for the columnar backend and cumulative cubes.
"""

import math

import numpy as np
import pytest

from brushcube.cube.engine import ColumnarBackend, active_index
from brushcube.cube.filters import FilterContext, Interval
from brushcube.eval.metrics import exact_diff, verify_cube


def expected_histogram(df, dim, mask=None):
    bins = dim.bin_config
    values = df[dim.name] if mask is None else df.loc[mask, dim.name]
    idx = np.floor((values.to_numpy() - bins.start) / bins.step)
    idx = idx[(idx >= 0) & (idx < bins.count)].astype(np.int64)
    return np.bincount(idx, minlength=bins.count)


@pytest.fixture
def distance_filter():
    return FilterContext.from_mapping({"DISTANCE": Interval(500, 1500)})


class TestAggregates:
    def test_count(self, backend, flights_df, distance_filter):
        assert backend.count(FilterContext()) == len(flights_df)
        expected = ((flights_df.DISTANCE >= 500) & (flights_df.DISTANCE < 1500)).sum()
        assert backend.count(distance_filter) == expected

    def test_histogram(self, backend, flights_df, schema, distance_filter):
        dim = schema.get_dimension("ARR_DELAY")
        np.testing.assert_array_equal(backend.histogram(dim, FilterContext()),
                                      expected_histogram(flights_df, dim))
        mask = (flights_df.DISTANCE >= 500) & (flights_df.DISTANCE < 1500)
        np.testing.assert_array_equal(backend.histogram(dim, distance_filter),
                                      expected_histogram(flights_df, dim, mask))

    def test_heatmap_marginals(self, backend, schema):
        dep = schema.get_dimension("DEP_DELAY")
        arr = schema.get_dimension("ARR_DELAY")
        heat = backend.heatmap(dep, arr, FilterContext())
        assert heat.shape == (25, 25)
        # cells need both coordinates in range, so marginals are bounded by histograms
        assert np.all(heat.sum(axis=1) <= backend.histogram(dep, FilterContext()))
        assert np.all(heat.sum(axis=0) <= backend.histogram(arr, FilterContext()))

    def test_aggregate_dispatch(self, backend, schema):
        assert isinstance(backend.aggregate(schema.get_view("COUNT"), FilterContext()), int)
        assert backend.aggregate(schema.get_view("DELAYS"), FilterContext()).shape == (25, 25)

    def test_stats(self, backend, schema):
        backend.count(FilterContext())
        backend.histogram(schema.get_dimension("DISTANCE"), FilterContext())
        backend.histogram(schema.get_dimension("DISTANCE"), FilterContext())
        assert backend.stats.snapshot() == {"count": 1, "histogram": 2}
        assert backend.stats.total() == 3
        backend.stats.reset()
        assert backend.stats.total() == 0


class TestActiveIndex:
    def test_sweep_index(self):
        boundaries = np.linspace(0, 10, 11)
        values = np.array([-1.0, 0.0, 0.5, 9.99, 10.0, 50.0, np.nan])
        np.testing.assert_array_equal(active_index(values, boundaries),
                                      [0, 1, 1, 10, 10, 10, 10])


class TestCumulativeCube:
    @pytest.mark.parametrize("view_name", ["COUNT", "DISTANCE", "DEP_DELAY", "DELAYS"])
    def test_boundary_and_monotone(self, backend, schema, distance_filter, view_name):
        view = schema.get_view(view_name)
        filters = FilterContext() if view_name == "DISTANCE" else distance_filter
        cube = backend.cumulative_cube(schema.get_dimension("ARR_DELAY"), view, filters, 500)
        assert cube.slices.shape == (501,) + view.shape
        check = verify_cube(backend, cube, filters)
        assert check.boundary_ok
        assert check.monotone_ok

    @pytest.mark.parametrize("lo_index,hi_index", [
        (0, 500), (91, 273), (0, 1), (250, 500), (499, 500), (120, 121), (7, 7),
    ])
    def test_diff_is_exact(self, backend, schema, distance_filter, lo_index, hi_index):
        active = schema.get_dimension("ARR_DELAY")
        for view_name in ("COUNT", "DEP_DELAY", "DELAYS"):
            cube = backend.cumulative_cube(active, schema.get_view(view_name),
                                           distance_filter, 500)
            expected = exact_diff(backend, cube, distance_filter, lo_index, hi_index)
            np.testing.assert_array_equal(cube.diff(lo_index, hi_index), expected)

    def test_first_slice_holds_rows_below_extent(self, backend, schema, flights_df):
        active = schema.get_dimension("ARR_DELAY")
        cube = backend.cumulative_cube(active, schema.get_view("COUNT"), FilterContext(), 500)
        assert cube.slice(0) == int((flights_df.ARR_DELAY < -10).sum())
        below = FilterContext.from_mapping({"ARR_DELAY": Interval(-math.inf, -10)})
        assert cube.slice(0) == backend.count(below)

    def test_top_slice_is_unconstrained(self, flights_df, schema):
        df = flights_df.copy()
        df.loc[:9, "ARR_DELAY"] = np.nan
        backend = ColumnarBackend(df, schema.dimensions)
        active = schema.get_dimension("ARR_DELAY")
        cube = backend.cumulative_cube(active, schema.get_view("COUNT"), FilterContext(), 100)
        assert cube.total == len(df)
        last = active.boundaries(100)[-2]
        assert cube.slice(99) == int((df.ARR_DELAY < last).sum())

    def test_idempotent(self, backend, schema, distance_filter):
        active = schema.get_dimension("ARR_DELAY")
        view = schema.get_view("DELAYS")
        a = backend.cumulative_cube(active, view, distance_filter, 200)
        b = backend.cumulative_cube(active, view, distance_filter, 200)
        assert a.same_contents(b)

    def test_slices_are_read_only(self, backend, schema):
        cube = backend.cumulative_cube(schema.get_dimension("ARR_DELAY"),
                                       schema.get_view("DISTANCE"), FilterContext(), 50)
        with pytest.raises(ValueError):
            cube.slices[0, 0] = 1

    def test_scalar_slices_are_ints(self, backend, schema):
        cube = backend.cumulative_cube(schema.get_dimension("ARR_DELAY"),
                                       schema.get_view("COUNT"), FilterContext(), 50)
        assert isinstance(cube.total, int)
        assert isinstance(cube.diff(10, 20), int)

    def test_rejects_filter_on_active_dimension(self, backend, schema):
        filters = FilterContext.from_mapping({"ARR_DELAY": Interval(0, 10)})
        with pytest.raises(ValueError):
            backend.cumulative_cube(schema.get_dimension("ARR_DELAY"),
                                    schema.get_view("COUNT"), filters, 100)

    def test_rejects_bad_resolution(self, backend, schema):
        with pytest.raises(ValueError):
            backend.cumulative_cube(schema.get_dimension("ARR_DELAY"),
                                    schema.get_view("COUNT"), FilterContext(), 0)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
