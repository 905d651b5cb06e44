"""
Engine configuration and setup loading.
"""

import json
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Tuple, Union

from brushcube.cube.schema import ConfigError, Schema
from brushcube.cube.store import SnapPolicy


@dataclass
class EngineConfig:
    """
    Engine-level options.

    Attributes:
        caching: Serve brush queries from cubes; False is the baseline mode
        preload: Build cubes on activation instead of on the first brush query
        start_on_load: Activate the first brushable view on initialize()
        resolution: Default cube resolution (pixel width of a histogram)
        snapping: 'nearest' or 'outward'
        max_connections: Pool size of the SQL backend
        prepared_statements: Bind query values as parameters
        compression: Compress SQL results on the wire
        build_workers: Concurrent cube requests per build
        build_retries: Retries per failed cube request
        degrade_on_failure: Query the backend directly for views whose build failed
    """
    caching: bool = True
    preload: bool = True
    start_on_load: bool = False
    resolution: int = 500
    snapping: str = "nearest"
    max_connections: int = 4
    prepared_statements: bool = False
    compression: bool = False
    build_workers: int = 4
    build_retries: int = 1
    degrade_on_failure: bool = True

    def __post_init__(self):
        for name in ("resolution", "max_connections", "build_workers"):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                raise ConfigError(f"{name} must be a positive integer, got {value!r}")
        if not isinstance(self.build_retries, int) or self.build_retries < 0:
            raise ConfigError(f"build_retries must be >= 0, got {self.build_retries!r}")
        self.snapping = SnapPolicy.parse(self.snapping).value

    @property
    def snap_policy(self) -> SnapPolicy:
        return SnapPolicy(self.snapping)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EngineConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown engine options: {unknown}")
        return cls(**data)


def load_setup(source: Union[str, Path, Dict[str, Any]]) -> Tuple[Schema, EngineConfig]:
    """
    Load dimensions, views and engine options.

    Args:
        source: A configuration dict or the path of a JSON file

    Returns:
        (schema, engine config)
    """
    if isinstance(source, dict):
        data = source
    else:
        try:
            with open(source, "r") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Cannot read configuration {source}: {e}") from e
    schema = Schema.from_dict(data)
    if not schema.views:
        raise ConfigError("Configuration declares no views")
    return schema, EngineConfig.from_dict(data.get("engine", {}))
