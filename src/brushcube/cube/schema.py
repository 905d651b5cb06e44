"""
Schema definitions: dimensions, their bin configuration, and the view set.

A dimension D = <name, [min, max], bins> is a continuous attribute with a
fixed extent. Its bin configuration is derived once at setup and never
changes during a session.
"""

import math
from dataclasses import dataclass, field
from typing import List, Dict, Optional, Any, Tuple

import numpy as np


class ConfigError(ValueError):
    """Invalid dimension, view or engine definition. Fatal at startup."""


@dataclass(frozen=True)
class BinConfig:
    """
    Binning of a dimension's extent.

    Attributes:
        start: Lower boundary of the first bin
        stop: Upper boundary of the last bin
        step: Bin width
        count: Number of bins
    """
    start: float
    stop: float
    step: float
    count: int

    def key(self, i: int) -> float:
        """Data-domain key (lower boundary) of bin i."""
        return self.start + i * self.step

    def keys(self) -> List[float]:
        return [self.key(i) for i in range(self.count)]

    def index(self, values: np.ndarray) -> np.ndarray:
        """
        Bin index of each value as floor((v - start) / step).

        Values outside [0, count) (and NaN) are returned as -1.
        """
        with np.errstate(invalid="ignore"):
            idx = np.floor((values - self.start) / self.step)
        valid = (idx >= 0) & (idx < self.count)
        out = np.full(values.shape, -1, dtype=np.int64)
        out[valid] = idx[valid].astype(np.int64)
        return out


def bin_config(extent: Tuple[float, float], maxbins: int, nice: bool = False) -> BinConfig:
    """
    Derive a bin configuration for an extent.

    Without `nice` the extent is split into exactly `maxbins` bins. With
    `nice` the step is a power of ten times 1, 2 or 5 giving at most
    `maxbins` bins, and the boundaries are widened to multiples of the step.
    """
    lo, hi = float(extent[0]), float(extent[1])
    if not nice:
        return BinConfig(start=lo, stop=hi, step=(hi - lo) / maxbins, count=maxbins)

    span = hi - lo
    level = math.ceil(math.log10(maxbins))
    step = 10.0 ** (round(math.log10(span)) - level)
    while math.ceil(span / step) > maxbins:
        step *= 10
    for div in (5, 2):
        candidate = step / div
        if span / candidate <= maxbins:
            step = candidate

    start = math.floor(lo / step) * step
    stop = math.ceil(hi / step) * step
    count = int(round((stop - start) / step))
    while start + count * step < hi:
        count += 1
    return BinConfig(start=start, stop=start + count * step, step=step, count=count)


@dataclass(frozen=True)
class Dimension:
    """
    A named continuous attribute used for aggregation.

    Attributes:
        name: Column name in the dataset (e.g., 'ARR_DELAY')
        extent: Continuous extent (min, max)
        bins: Requested number of bins
        format: Python format spec used to print keys (e.g., 'd', '.1f')
        nice: Widen the extent to a human-friendly step
        title: Display title, defaults to the name
    """
    name: str
    extent: Tuple[float, float]
    bins: int
    format: str = ".1f"
    nice: bool = False
    title: Optional[str] = None
    bin_config: BinConfig = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        if not self.name:
            raise ConfigError("Dimension name must not be empty")
        if len(self.extent) != 2:
            raise ConfigError(f"Dimension {self.name}: extent must be [min, max]")
        lo, hi = (float(v) for v in self.extent)
        if not (math.isfinite(lo) and math.isfinite(hi)):
            raise ConfigError(f"Dimension {self.name}: extent must be finite, got {self.extent}")
        if lo >= hi:
            raise ConfigError(f"Dimension {self.name}: min must be < max, got {self.extent}")
        if not isinstance(self.bins, int) or isinstance(self.bins, bool) or self.bins <= 0:
            raise ConfigError(f"Dimension {self.name}: bins must be a positive integer, got {self.bins!r}")
        object.__setattr__(self, "extent", (lo, hi))
        object.__setattr__(self, "bin_config", bin_config((lo, hi), self.bins, self.nice))

    @property
    def label(self) -> str:
        return self.title or self.name

    def boundaries(self, resolution: int) -> np.ndarray:
        """The resolution + 1 equally spaced sweep boundaries over the extent."""
        return np.linspace(self.extent[0], self.extent[1], resolution + 1)

    def format_value(self, value: float) -> str:
        if self.format.endswith("d"):
            return format(int(round(value)), self.format)
        return format(value, self.format)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "name": self.name,
            "extent": list(self.extent),
            "bins": self.bins,
            "format": self.format,
        }
        if self.nice:
            data["nice"] = True
        if self.title:
            data["title"] = self.title
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Dimension":
        try:
            return cls(
                name=data["name"],
                extent=tuple(data["extent"]),
                bins=data["bins"],
                format=data.get("format", ".1f"),
                nice=data.get("nice", False),
                title=data.get("title"),
            )
        except KeyError as e:
            raise ConfigError(f"Dimension definition missing key {e}: {data}") from e


@dataclass
class Schema:
    """
    The configured dimensions and views of a session.

    Attributes:
        dimensions: All dimensions, by declaration order
        views: All views, by declaration order
    """
    dimensions: List[Dimension]
    views: List["View"]

    def __post_init__(self):
        names = [d.name for d in self.dimensions]
        if len(set(names)) != len(names):
            raise ConfigError(f"Duplicate dimension names: {names}")
        view_names = [v.name for v in self.views]
        if len(set(view_names)) != len(view_names):
            raise ConfigError(f"Duplicate view names: {view_names}")
        known = set(names)
        for view in self.views:
            for dim_name in view.dimension_names:
                if dim_name not in known:
                    raise ConfigError(f"View {view.name} uses unknown dimension {dim_name}")

    def get_dimension(self, name: str) -> Optional[Dimension]:
        """Get dimension by name."""
        for dim in self.dimensions:
            if dim.name == name:
                return dim
        return None

    def get_view(self, name: str) -> Optional["View"]:
        """Get view by name."""
        for view in self.views:
            if view.name == name:
                return view
        return None

    @property
    def dimension_names(self) -> List[str]:
        return [d.name for d in self.dimensions]

    @property
    def view_names(self) -> List[str]:
        return [v.name for v in self.views]

    def to_dict(self) -> Dict[str, Any]:
        """Serialize schema to dictionary."""
        return {
            "dimensions": [d.to_dict() for d in self.dimensions],
            "views": [v.to_dict() for v in self.views],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Schema":
        """Deserialize schema from dictionary."""
        from brushcube.cube.view import view_from_dict

        dimensions = [Dimension.from_dict(d) for d in data.get("dimensions", [])]
        by_name = {d.name: d for d in dimensions}
        views = [view_from_dict(v, by_name) for v in data.get("views", [])]
        return cls(dimensions=dimensions, views=views)
