"""
Interaction Controller: the active-view / brush state machine.

State is <active_view, brushes>. Hovering a brushable view makes it active
and starts a new cube epoch; moving its brush only re-queries the cubes;
brushing any other dimension changes the filter context and invalidates
them. Updates are coalesced to one per scheduler tick.
"""

import logging
from typing import Callable, Dict, Optional, Sequence, Tuple, Union

from brushcube.config import EngineConfig
from brushcube.cube.builder import RETRYABLE, CubeBuilder
from brushcube.cube.engine import Aggregate, AggregationBackend
from brushcube.cube.filters import FilterContext, Interval
from brushcube.cube.schema import Schema
from brushcube.cube.store import BaselineQuerier, CubeStore, Epoch
from brushcube.cube.view import View, passive_views
from brushcube.nav.render import Renderer, to_records
from brushcube.nav.scheduler import FrameScheduler

logger = logging.getLogger(__name__)

BrushValue = Union[Interval, Tuple[float, float], Sequence[float], None]


class InteractionController:
    """
    Drives cube builds and view updates from hover and brush events.

    Args:
        schema: Configured dimensions and views
        backend: Aggregation backend over the dataset
        renderer: The drawing layer receiving view updates
        config: Engine options; `caching=False` runs the baseline mode
        scheduler: Frame scheduler; a private one is created if omitted
    """

    def __init__(self, schema: Schema, backend: AggregationBackend, renderer: Renderer,
                 config: Optional[EngineConfig] = None,
                 scheduler: Optional[FrameScheduler] = None):
        self.schema = schema
        self.backend = backend
        self.renderer = renderer
        self.config = config or EngineConfig()
        self.scheduler = scheduler or FrameScheduler()
        self.views: Dict[str, View] = {v.name: v for v in schema.views}

        self.active_view: Optional[str] = None
        self.brushes: Dict[str, Interval] = {}
        self.updates = 0
        self.skipped_updates = 0
        self._needs_update = False
        self._active_stale = False

        self.baseline = BaselineQuerier(backend)
        self.builder: Optional[CubeBuilder] = None
        self.store: Optional[CubeStore] = None
        if self.config.caching:
            self.builder = CubeBuilder(backend, max_workers=self.config.build_workers,
                                       retries=self.config.build_retries)
            self.store = CubeStore(
                backend, self.builder, schema.views,
                resolution=self.config.resolution,
                snapping=self.config.snap_policy,
                preload=self.config.preload,
                degrade_on_failure=self.config.degrade_on_failure,
                on_ready=self._cubes_ready,
            )

    # -- state ------------------------------------------------------------

    @property
    def caching(self) -> bool:
        return self.store is not None

    def _active(self) -> Optional[View]:
        return self.views.get(self.active_view) if self.active_view else None

    def _view(self, name: str) -> View:
        if name not in self.views:
            raise ValueError(f"Unknown view {name}")
        return self.views[name]

    def filter_context(self) -> FilterContext:
        """All brushes except those on the active view's dimensions."""
        active = self._active()
        excluded = set(active.dimension_names) if active else set()
        return FilterContext.from_mapping(
            {name: iv for name, iv in self.brushes.items() if name not in excluded}
        )

    def active_brush(self) -> Optional[Interval]:
        active = self._active()
        return self.brushes.get(active.dimension.name) if active else None

    # -- events -------------------------------------------------------------

    def initialize(self):
        """Render every view unfiltered, then optionally activate the first brushable view."""
        filters = self.filter_context()
        for view in self.schema.views:
            self._render(view, lambda v=view: self.backend.aggregate(v, filters))
        if self.config.start_on_load:
            first = next((v for v in self.schema.views if v.brushable), None)
            if first is not None:
                self.hover(first.name)

    def hover(self, view_name: str) -> bool:
        """Make a view active. Returns False if nothing changed."""
        view = self._view(view_name)
        if not view.brushable:
            logger.debug(f"Ignoring hover on {view_name}: not brushable")
            return False
        if view_name == self.active_view:
            return False

        if self.active_view is not None:
            logger.info(f"Deactivating {self.active_view}")
        logger.info(f"Active view {self.active_view} => {view_name}")
        self.active_view = view_name
        if self.store is not None:
            self.store.activate(view, self.filter_context())
        return True

    def brush_changed(self, dimension: str, interval: BrushValue) -> Optional[Epoch]:
        """
        Set or clear the brush on a dimension.

        A brush on the active view only changes the next query. Any other
        brush changes the filter context and starts a new epoch.
        """
        if self.schema.get_dimension(dimension) is None:
            raise ValueError(f"Unknown dimension {dimension}")
        if interval is None:
            self.brushes.pop(dimension, None)
        elif isinstance(interval, Interval):
            self.brushes[dimension] = interval
        else:
            lo, hi = interval
            self.brushes[dimension] = Interval.of(lo, hi)

        epoch = None
        active = self._active()
        if active is None or dimension not in active.dimension_names:
            self._active_stale = True
            if self.store is not None:
                epoch = self.store.invalidate_on_filter_change(self.filter_context())
        self._request_update()
        return epoch

    def _cubes_ready(self, epoch: Epoch):
        self._request_update()

    def _request_update(self):
        self._needs_update = True
        self.scheduler.request(self.update)

    # -- updates ------------------------------------------------------------

    def update(self) -> int:
        """Query and render every passive view. Returns the number of views rendered."""
        if not self._needs_update:
            self.skipped_updates += 1
            logger.debug("Skipped update")
            return 0
        self._needs_update = False
        self.updates += 1

        active = self._active()
        filters = self.filter_context()
        if active is None:
            targets = list(self.schema.views)
        else:
            targets = passive_views(list(self.schema.views), active)
            if self._active_stale:
                self._render(active, lambda: self.backend.aggregate(active, filters))
        self._active_stale = False

        brush = self.active_brush()
        rendered = 0
        for view in targets:
            rendered += self._render(view, lambda v=view: self._query(v, active, filters, brush))
        return rendered

    def _query(self, view: View, active: Optional[View], filters: FilterContext,
               brush: Optional[Interval]) -> Aggregate:
        if self.store is not None and active is not None:
            return self.store.query(view, brush)
        if active is None:
            return self.backend.aggregate(view, filters)
        return self.baseline.query(view, filters, active.dimension, brush)

    def _render(self, view: View, compute: Callable[[], Aggregate]) -> int:
        try:
            aggregate = compute()
        except RETRYABLE as e:
            logger.warning(f"Update of {view.name} failed: {e}")
            self.renderer.render_error(view, e)
            return 0
        self.renderer.render(view, to_records(view, aggregate))
        return 1

    def frame(self) -> int:
        """Advance the scheduler by one tick."""
        return self.scheduler.tick()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Wait for the current cube build (no-op in baseline mode)."""
        return self.store.wait(timeout) if self.store is not None else True

    def close(self):
        if self.store is not None:
            self.store.close()
        if self.builder is not None:
            self.builder.close()
