"""
Unit tests for the interaction controller, scheduler and rendering contract.
"""

import numpy as np
import pytest

from brushcube.config import EngineConfig
from brushcube.cube.engine import ColumnarBackend
from brushcube.cube.filters import FilterContext, Interval
from brushcube.nav.controller import InteractionController
from brushcube.nav.render import RecordingRenderer, to_records
from brushcube.nav.scheduler import FrameScheduler


class DistanceDownBackend(ColumnarBackend):
    """Every DISTANCE histogram fails as if the connection dropped."""

    def histogram(self, dimension, filters):
        if dimension.name == "DISTANCE":
            raise ConnectionError("connection refused")
        return super().histogram(dimension, filters)


@pytest.fixture
def make_controller(schema, backend):
    created = []

    def factory(backend_override=None, **options):
        controller = InteractionController(schema, backend_override or backend,
                                           RecordingRenderer(), EngineConfig(**options))
        created.append(controller)
        return controller

    yield factory
    for controller in created:
        controller.close()


def snapped(dimension, lo_index, hi_index, resolution=500):
    boundaries = dimension.boundaries(resolution)
    return Interval(float(boundaries[lo_index]), float(boundaries[hi_index]))


class TestFrameScheduler:
    def test_coalesces_requests(self):
        scheduler = FrameScheduler()
        calls = []
        callback = lambda: calls.append(1)
        assert scheduler.request(callback)
        assert not scheduler.request(callback)
        assert scheduler.pending == 1
        assert scheduler.tick() == 1
        assert calls == [1]
        assert scheduler.tick() == 0
        assert scheduler.frames == 2

    def test_runs_in_request_order(self):
        scheduler = FrameScheduler()
        calls = []
        scheduler.request(lambda: calls.append("a"))
        scheduler.request(lambda: calls.append("b"))
        scheduler.tick()
        assert calls == ["a", "b"]


class TestRecords:
    def test_scalar(self, schema):
        assert to_records(schema.get_view("COUNT"), np.int64(42)) == 42

    def test_univariate(self, schema):
        counts = np.arange(25)
        records = to_records(schema.get_view("ARR_DELAY"), counts)
        assert len(records) == 25
        assert records[0] == {"key": -10.0, "value": 0}
        assert records[5]["key"] == pytest.approx(12.0)
        assert records[5]["value"] == 5

    def test_bivariate(self, schema):
        heat = np.zeros((25, 25), dtype=np.int64)
        heat[1, 2] = 7
        records = to_records(schema.get_view("DELAYS"), heat)
        assert len(records) == 625
        cell = next(r for r in records if r["value"] == 7)
        assert cell["keyX"] == pytest.approx(-5.6)
        assert cell["keyY"] == pytest.approx(-1.2)


class TestInteraction:
    def test_initialize_renders_all_views(self, make_controller, schema, flights_df):
        controller = make_controller()
        controller.initialize()
        renderer = controller.renderer
        assert sorted(renderer.latest) == sorted(schema.view_names)
        assert renderer.values("COUNT") == len(flights_df)
        assert controller.active_view is None

    def test_start_on_load(self, make_controller):
        controller = make_controller(start_on_load=True)
        controller.initialize()
        assert controller.active_view == "ARR_DELAY"
        assert controller.store.epoch.generation == 1

    def test_hover(self, make_controller):
        controller = make_controller()
        assert not controller.hover("COUNT")
        assert not controller.hover("DELAYS")
        assert controller.active_view is None
        assert controller.hover("ARR_DELAY")
        assert not controller.hover("ARR_DELAY")
        assert controller.hover("DISTANCE")
        assert controller.store.epoch.generation == 2
        with pytest.raises(ValueError):
            controller.hover("NOPE")

    def test_active_brush_queries_cubes(self, make_controller, backend, schema):
        controller = make_controller()
        controller.hover("ARR_DELAY")
        controller.wait()
        controller.frame()
        backend.stats.reset()

        assert controller.brush_changed("ARR_DELAY", (50, 10)) is None
        assert controller.brushes["ARR_DELAY"] == Interval(10, 50)
        controller.frame()

        active = schema.get_dimension("ARR_DELAY")
        brushed = FilterContext.from_mapping({"ARR_DELAY": snapped(active, 91, 273)})
        expected = backend.histogram(schema.get_dimension("DISTANCE"), brushed)
        assert controller.renderer.values("DISTANCE") == expected.tolist()
        assert controller.renderer.values("COUNT") == backend.count(brushed)
        assert backend.stats.snapshot() == {"histogram": 1, "count": 1}

    def test_updates_are_coalesced(self, make_controller):
        controller = make_controller()
        controller.hover("ARR_DELAY")
        controller.wait()
        controller.frame()
        updates = controller.updates

        for lo in (0, 5, 10, 15):
            controller.brush_changed("ARR_DELAY", (lo, lo + 20))
        assert controller.scheduler.pending == 1
        controller.frame()
        assert controller.updates == updates + 1

    def test_update_without_changes_is_skipped(self, make_controller):
        controller = make_controller()
        assert controller.update() == 0
        assert controller.skipped_updates == 1

    def test_passive_brush_starts_new_epoch(self, make_controller, backend, schema):
        controller = make_controller()
        controller.hover("ARR_DELAY")
        controller.wait()
        controller.brush_changed("ARR_DELAY", (10, 50))

        epoch = controller.brush_changed("DISTANCE", (300, 900))
        assert epoch.generation == 2
        assert epoch.filters == FilterContext.from_mapping({"DISTANCE": Interval(300, 900)})
        assert controller.filter_context() == epoch.filters
        controller.wait()
        controller.frame()

        filters = epoch.filters
        # the active view is redrawn under the new filters
        assert controller.renderer.values("ARR_DELAY") == \
            backend.histogram(schema.get_dimension("ARR_DELAY"), filters).tolist()
        brushed = filters.with_interval(
            "ARR_DELAY", snapped(schema.get_dimension("ARR_DELAY"), 91, 273))
        assert controller.renderer.values("DEP_DELAY") == \
            backend.histogram(schema.get_dimension("DEP_DELAY"), brushed).tolist()

    def test_clearing_the_brush(self, make_controller, backend, schema):
        controller = make_controller()
        controller.hover("ARR_DELAY")
        controller.wait()
        controller.brush_changed("ARR_DELAY", (10, 50))
        controller.frame()
        controller.brush_changed("ARR_DELAY", None)
        controller.frame()
        assert controller.active_brush() is None
        assert controller.renderer.values("DISTANCE") == \
            backend.histogram(schema.get_dimension("DISTANCE"), FilterContext()).tolist()

    def test_unknown_dimension(self, make_controller):
        controller = make_controller()
        with pytest.raises(ValueError):
            controller.brush_changed("NOPE", (0, 1))


class TestModes:
    def test_baseline_is_exact(self, make_controller, backend, schema):
        controller = make_controller(caching=False)
        assert not controller.caching
        controller.hover("ARR_DELAY")
        controller.brush_changed("ARR_DELAY", (10, 50))
        controller.frame()
        brushed = FilterContext.from_mapping({"ARR_DELAY": Interval(10, 50)})
        assert controller.renderer.values("DISTANCE") == \
            backend.histogram(schema.get_dimension("DISTANCE"), brushed).tolist()

    def test_backend_calls_per_mode(self, make_controller, backend):
        moves = [(lo, lo + 30) for lo in range(-10, 60, 10)]

        cached = make_controller()
        cached.hover("ARR_DELAY")
        cached.wait()
        cached.frame()
        assert backend.stats.snapshot() == {"cumulative_cube": 4}
        backend.stats.reset()
        for move in moves:
            cached.brush_changed("ARR_DELAY", move)
            cached.frame()
        assert backend.stats.total() == 0

        baseline = make_controller(caching=False)
        baseline.hover("ARR_DELAY")
        for move in moves:
            baseline.brush_changed("ARR_DELAY", move)
            baseline.frame()
        assert backend.stats.total() == 4 * len(moves)

    def test_failed_view_is_reported(self, make_controller, flights_df, schema):
        backend = DistanceDownBackend(flights_df, schema.dimensions)
        controller = make_controller(backend_override=backend, caching=False)
        controller.initialize()
        renderer = controller.renderer
        assert isinstance(renderer.errors["DISTANCE"], ConnectionError)
        assert "DISTANCE" not in renderer.latest
        assert len(renderer.latest) == 4


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
