"""
Brush intervals and the filter context.

A brush restricts one dimension to a half-open interval [lo, hi). The
filter context is the conjunction of all brushes except the active view's
own; it is immutable and hashable so it can be snapshotted into an epoch.
"""

import math
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

import numpy as np


def quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def sql_number(value: float, params: Optional[List]) -> str:
    """
    Render a number for SQL.

    With a parameter list the value is bound as '?'; otherwise it is inlined
    as a DOUBLE literal parsed from its exact repr.
    """
    value = float(value)
    if params is not None:
        params.append(value)
        return "?"
    return f"'{value!r}'::DOUBLE"


@dataclass(frozen=True)
class Interval:
    """A half-open interval [lo, hi) in data-domain units."""
    lo: float
    hi: float

    def __post_init__(self):
        if math.isnan(self.lo) or math.isnan(self.hi):
            raise ValueError(f"Interval bounds must not be NaN: [{self.lo}, {self.hi})")
        if self.lo > self.hi:
            raise ValueError(f"Interval lo must be <= hi: [{self.lo}, {self.hi})")

    @classmethod
    def of(cls, a: float, b: float) -> "Interval":
        """Build an interval from two ends in any order."""
        a, b = float(a), float(b)
        return cls(min(a, b), max(a, b))

    @property
    def width(self) -> float:
        return self.hi - self.lo

    def contains(self, values: np.ndarray) -> np.ndarray:
        with np.errstate(invalid="ignore"):
            if math.isinf(self.hi):
                return values >= self.lo
            return (values >= self.lo) & (values < self.hi)

    def to_sql(self, column: str, params: Optional[List] = None) -> str:
        col = quote_identifier(column)
        clause = f"{col} >= {sql_number(self.lo, params)}"
        if not math.isinf(self.hi):
            clause += f" AND {col} < {sql_number(self.hi, params)}"
        return clause

    def as_list(self) -> List[float]:
        return [self.lo, self.hi]


@dataclass(frozen=True)
class FilterContext:
    """
    Conjunction of brushes, keyed by dimension name.

    Stored as a sorted tuple of (dimension, interval) pairs so that equal
    contexts compare and hash equal.
    """
    items: Tuple[Tuple[str, Interval], ...] = ()

    @classmethod
    def from_mapping(cls, brushes: Mapping[str, Interval]) -> "FilterContext":
        return cls(tuple(sorted(brushes.items(), key=lambda kv: kv[0])))

    @classmethod
    def empty(cls) -> "FilterContext":
        return cls()

    def as_dict(self) -> Dict[str, Interval]:
        return dict(self.items)

    @property
    def dimension_names(self) -> List[str]:
        return [name for name, _ in self.items]

    def get(self, name: str) -> Optional[Interval]:
        for dim_name, interval in self.items:
            if dim_name == name:
                return interval
        return None

    def constrains(self, name: str) -> bool:
        return self.get(name) is not None

    def with_interval(self, name: str, interval: Interval) -> "FilterContext":
        brushes = self.as_dict()
        brushes[name] = interval
        return FilterContext.from_mapping(brushes)

    def without(self, *names: str) -> "FilterContext":
        return FilterContext(tuple(kv for kv in self.items if kv[0] not in names))

    def mask(self, columns: Mapping[str, np.ndarray], size: int) -> Optional[np.ndarray]:
        """Boolean row mask over resident columns, or None when unfiltered."""
        if not self.items:
            return None
        mask = np.ones(size, dtype=bool)
        for name, interval in self.items:
            if name not in columns:
                raise KeyError(f"Filter on unknown dimension {name}")
            mask &= interval.contains(columns[name])
        return mask

    def to_sql(self, params: Optional[List] = None) -> List[str]:
        """WHERE clause fragments, one per brushed dimension."""
        return [interval.to_sql(name, params) for name, interval in self.items]

    def describe(self) -> str:
        if not self.items:
            return "unfiltered"
        return ", ".join(f"{name} in [{iv.lo:g}, {iv.hi:g})" for name, iv in self.items)

    def __len__(self) -> int:
        return len(self.items)

    def __iter__(self) -> Iterable[Tuple[str, Interval]]:
        return iter(self.items)
