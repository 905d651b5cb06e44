#!/usr/bin/env python3
"""
Example: brushing the flights views, cached vs baseline.

This script demonstrates how to:
1. Set up the flights schema and a backend (in-process or DuckDB)
2. Verify the cubes of an activation against the backend
3. Sweep a brush across the active view in both modes
4. Report backend calls, update latency and agreement
"""

import argparse
import json
import logging
import os
import sys
from pathlib import Path

import numpy as np

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))
sys.path.insert(0, str(Path(__file__).parent.parent))

from brushcube.config import load_setup
from brushcube.cube.engine import ColumnarBackend
from brushcube.cube.filters import Interval
from brushcube.cube.sql import PooledSQLBackend
from brushcube.eval.metrics import compare_modes, verify_cube
from brushcube.nav.controller import InteractionController
from brushcube.nav.render import LoggingRenderer
from configs.flights import FLIGHTS_CONFIG, create_flights_data

logger = logging.getLogger("flights_demo")


def brush_sweep(extent, moves: int, width: float):
    """A brush of fixed width dragged from the left to the right of the extent."""
    lo, hi = extent
    starts = np.linspace(lo, hi - width, moves)
    return [Interval(float(s), float(s + width)) for s in starts]


def main():
    parser = argparse.ArgumentParser(description="Crossfilter flights demo")
    parser.add_argument("--rows", type=int, default=200_000, help="Synthetic rows")
    parser.add_argument("--backend", choices=["columnar", "duckdb"], default="columnar")
    parser.add_argument("--config", type=str, default=None, help="JSON setup file")
    parser.add_argument("--view", type=str, default="ARR_DELAY", help="View to brush")
    parser.add_argument("--moves", type=int, default=60, help="Brush moves per mode")
    parser.add_argument("--output", type=str, default=None, help="Write results JSON here")
    parser.add_argument("--log-level", type=str, default="INFO")
    args = parser.parse_args()

    logging.basicConfig(level=args.log_level.upper(),
                        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    schema, config = load_setup(args.config or FLIGHTS_CONFIG)
    df = create_flights_data(args.rows)
    if args.backend == "duckdb":
        backend = PooledSQLBackend.from_dataframe(
            df, schema.dimensions, table="flights",
            max_connections=config.max_connections,
            prepared_statements=config.prepared_statements,
            compression=config.compression,
        )
    else:
        backend = ColumnarBackend(df, schema.dimensions)

    try:
        # Show one activation with the logging renderer
        controller = InteractionController(schema, backend, LoggingRenderer(), config)
        controller.initialize()
        controller.hover(args.view)
        controller.wait()
        for name in schema.view_names if controller.caching else []:
            cube = controller.store.cube(name)
            if cube is not None:
                check = verify_cube(backend, cube, controller.filter_context())
                print(f"  {name:<22} boundary={check.boundary_ok} monotone={check.monotone_ok} "
                      f"({cube.nbytes / 1024:.0f} KiB)")
        controller.brush_changed(schema.get_view(args.view).dimension.name, (10, 50))
        controller.frame()
        controller.close()

        view = schema.get_view(args.view)
        width = (view.dimension.extent[1] - view.dimension.extent[0]) / 4
        comparison = compare_modes(schema, backend, args.view,
                                   brush_sweep(view.dimension.extent, args.moves, width), config)
    finally:
        backend.close()

    cached, baseline = comparison.cached, comparison.baseline
    print("\n" + "=" * 60)
    print(f"Brush trace on {args.view}: {args.moves} moves, {args.rows:,} rows ({args.backend})")
    print("=" * 60)
    print(f"{'mode':<10} {'calls':>8} {'build ms':>10} {'mean ms':>10} {'max ms':>10}")
    for result in (cached, baseline):
        print(f"{result.mode:<10} {result.total_calls:>8} {result.build_ms:>10.1f} "
              f"{result.mean_latency_ms:>10.2f} {result.max_latency_ms:>10.2f}")
    print(f"\nCall reduction: {comparison.call_reduction:.1f}x")
    print(f"Results identical up to snapping: {comparison.identical}")

    if args.output:
        os.makedirs(os.path.dirname(args.output) or ".", exist_ok=True)
        with open(args.output, "w") as f:
            json.dump(comparison.to_dict(), f, indent=2)
        print(f"Saved results to {args.output}")


if __name__ == "__main__":
    main()
