"""
Rendering contract: what the engine hands to the drawing layer.

Each update carries a scalar, a list of {key, value} records (1D) or a list
of {keyX, keyY, value} records (2D). Keys are data-domain bin boundaries.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Union

import numpy as np

from brushcube.cube.engine import Aggregate
from brushcube.cube.view import View, ViewKind

logger = logging.getLogger(__name__)

Records = Union[int, List[Dict[str, Any]]]


def to_records(view: View, aggregate: Aggregate) -> Records:
    """Convert an aggregate into the records expected by the renderer."""
    if view.kind is ViewKind.SCALAR:
        return int(aggregate)
    if view.kind is ViewKind.UNIVARIATE:
        bins = view.dimension.bin_config
        return [
            {"key": bins.key(x), "value": int(value)}
            for x, value in enumerate(np.asarray(aggregate))
        ]
    if view.kind is ViewKind.BIVARIATE:
        bins_x, bins_y = view.x.bin_config, view.y.bin_config
        heat = np.asarray(aggregate)
        return [
            {"keyX": bins_x.key(x), "keyY": bins_y.key(y), "value": int(heat[x, y])}
            for x in range(heat.shape[0])
            for y in range(heat.shape[1])
        ]
    raise TypeError(f"Unknown view kind {view.kind}")


class Renderer(ABC):
    """The external drawing layer."""

    @abstractmethod
    def render(self, view: View, records: Records):
        """Replace the contents of a view."""
        pass

    @abstractmethod
    def render_error(self, view: View, error: BaseException):
        """Report a failed update for a view."""
        pass


class RecordingRenderer(Renderer):
    """Keeps the latest records per view. For tests and benchmarks."""

    def __init__(self):
        self.latest: Dict[str, Records] = {}
        self.errors: Dict[str, BaseException] = {}
        self.render_count = 0

    def render(self, view: View, records: Records):
        self.render_count += 1
        self.latest[view.name] = records
        self.errors.pop(view.name, None)

    def render_error(self, view: View, error: BaseException):
        self.errors[view.name] = error

    def values(self, view_name: str) -> Union[int, List[int]]:
        """Just the values of the latest update of a view."""
        records = self.latest[view_name]
        if isinstance(records, int):
            return records
        return [r["value"] for r in records]


class LoggingRenderer(Renderer):
    """Logs a one-line summary of every update."""

    def render(self, view: View, records: Records):
        if isinstance(records, int):
            logger.info(f"{view.title}: {records:,}")
            return
        total = sum(r["value"] for r in records)
        peak = max(records, key=lambda r: r["value"]) if records else None
        if peak is None or view.kind is not ViewKind.UNIVARIATE:
            logger.info(f"{view.title}: {total:,} rows in {len(records)} cells")
            return
        key = view.dimension.format_value(peak["key"])
        logger.info(f"{view.title}: {total:,} rows, peak {peak['value']:,} at {key}")

    def render_error(self, view: View, error: BaseException):
        logger.error(f"{view.title}: update failed: {error}")
