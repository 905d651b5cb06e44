"""
View definitions: the closed variant V ∈ {Scalar, Univariate, Bivariate}.

A view presents one aggregate over zero, one or two dimensions. The shape of
that aggregate is part of the variant:
- Scalar: a single row count, shape ()
- Univariate: per-bin counts over one dimension, shape (bins,)
- Bivariate: per-cell counts over two dimensions, shape (bins_x, bins_y)
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Any, Tuple
from enum import Enum

from brushcube.cube.schema import ConfigError, Dimension


class ViewKind(Enum):
    """Aggregate shape of a view."""
    SCALAR = "scalar"
    UNIVARIATE = "univariate"
    BIVARIATE = "bivariate"


@dataclass(frozen=True)
class View:
    """Base class of the view variant. Views hold no cache state."""
    name: str
    title: str

    @property
    def kind(self) -> ViewKind:
        raise NotImplementedError

    @property
    def dimensions(self) -> Tuple[Dimension, ...]:
        return ()

    @property
    def dimension_names(self) -> Tuple[str, ...]:
        return tuple(d.name for d in self.dimensions)

    @property
    def shape(self) -> Tuple[int, ...]:
        return tuple(d.bin_config.count for d in self.dimensions)

    @property
    def brushable(self) -> bool:
        """Only univariate views carry a brush and can become active."""
        return False

    def describe(self) -> str:
        if not self.dimensions:
            return f"{self.title} (count)"
        return f"{self.title} over {' x '.join(self.dimension_names)}"

    def to_dict(self) -> Dict[str, Any]:
        raise NotImplementedError


@dataclass(frozen=True)
class ScalarView(View):
    """A single count of the selected rows."""

    @property
    def kind(self) -> ViewKind:
        return ViewKind.SCALAR

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.kind.value, "name": self.name, "title": self.title}


@dataclass(frozen=True)
class UnivariateView(View):
    """
    A histogram over one dimension.

    Attributes:
        dimension: The binned dimension
        width: Pixel width; used as cube resolution when this view is active
    """
    dimension: Dimension = None
    width: Optional[int] = None

    def __post_init__(self):
        if self.dimension is None:
            raise ConfigError(f"Univariate view {self.name} needs a dimension")
        if self.width is not None and self.width <= 0:
            raise ConfigError(f"View {self.name}: width must be positive, got {self.width}")

    @property
    def kind(self) -> ViewKind:
        return ViewKind.UNIVARIATE

    @property
    def dimensions(self) -> Tuple[Dimension, ...]:
        return (self.dimension,)

    @property
    def brushable(self) -> bool:
        return True

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "type": self.kind.value,
            "name": self.name,
            "title": self.title,
            "dimension": self.dimension.name,
        }
        if self.width is not None:
            data["width"] = self.width
        return data


@dataclass(frozen=True)
class BivariateView(View):
    """A heatmap over two dimensions (x, y)."""
    x: Dimension = None
    y: Dimension = None

    def __post_init__(self):
        if self.x is None or self.y is None:
            raise ConfigError(f"Bivariate view {self.name} needs two dimensions")
        if self.x.name == self.y.name:
            raise ConfigError(f"Bivariate view {self.name} needs two distinct dimensions")

    @property
    def kind(self) -> ViewKind:
        return ViewKind.BIVARIATE

    @property
    def dimensions(self) -> Tuple[Dimension, ...]:
        return (self.x, self.y)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.kind.value,
            "name": self.name,
            "title": self.title,
            "dimensions": [self.x.name, self.y.name],
        }


def view_from_dict(data: Dict[str, Any], dimensions: Dict[str, Dimension]) -> View:
    """Build a view from its configuration entry, resolving dimension names."""

    def lookup(name: str) -> Dimension:
        if name not in dimensions:
            raise ConfigError(f"View {data.get('name')} uses unknown dimension {name}")
        return dimensions[name]

    try:
        kind = ViewKind(data["type"])
        name = data["name"]
    except KeyError as e:
        raise ConfigError(f"View definition missing key {e}: {data}") from e
    except ValueError as e:
        raise ConfigError(f"Unknown view type {data.get('type')!r}") from e
    title = data.get("title", name)

    if kind is ViewKind.SCALAR:
        return ScalarView(name=name, title=title)
    if kind is ViewKind.UNIVARIATE:
        if "dimension" not in data:
            raise ConfigError(f"Univariate view {name} needs a dimension")
        return UnivariateView(name=name, title=title, dimension=lookup(data["dimension"]),
                              width=data.get("width"))
    names = data.get("dimensions") or []
    if len(names) != 2:
        raise ConfigError(f"Bivariate view {name} needs exactly two dimensions, got {names}")
    return BivariateView(name=name, title=title, x=lookup(names[0]), y=lookup(names[1]))


def passive_views(views: List[View], active: View) -> List[View]:
    """All views except the active one."""
    return [v for v in views if v.name != active.name]
