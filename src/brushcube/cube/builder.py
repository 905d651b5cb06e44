"""
Cube Builder: turns backend calls into one cumulative cube per passive view.
"""

import dataclasses
import logging
import time
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Dict, List

from brushcube.cube.engine import AggregationBackend, Cube
from brushcube.cube.filters import FilterContext
from brushcube.cube.schema import Dimension
from brushcube.cube.view import View

logger = logging.getLogger(__name__)

RETRYABLE = (ConnectionError, TimeoutError)


class CubeBuildError(RuntimeError):
    """
    One or more cube requests of a build failed.

    Attributes:
        cubes: Cubes of the requests that succeeded, by view name
        failures: The exception of each failed request, by view name
    """

    def __init__(self, cubes: Dict[str, Cube], failures: Dict[str, BaseException]):
        self.cubes = cubes
        self.failures = failures
        detail = ", ".join(f"{name}: {err}" for name, err in failures.items())
        super().__init__(f"Cube build failed for {len(failures)} view(s): {detail}")


class CubeBuilder:
    """
    Issues one `cumulative_cube` request per passive view, concurrently.

    Each request is retried `retries` times on ConnectionError/TimeoutError
    before it counts as failed.
    """

    def __init__(self, backend: AggregationBackend, max_workers: int = 4, retries: int = 1):
        self.backend = backend
        self.retries = retries
        self._executor = ThreadPoolExecutor(max_workers=max_workers,
                                            thread_name_prefix="cube-build")

    def _request(self, active_dimension: Dimension, view: View,
                 filters: FilterContext, resolution: int) -> Cube:
        for attempt in range(self.retries + 1):
            try:
                return self.backend.cumulative_cube(active_dimension, view, filters, resolution)
            except RETRYABLE as e:
                if attempt == self.retries:
                    raise
                logger.warning(f"Cube request for {view.name} failed (attempt {attempt + 1}): {e}")

    def build(self, active_view: View, active_dimension: Dimension,
              passive_views: List[View], filters: FilterContext,
              resolution: int, generation: int = 0) -> Dict[str, Cube]:
        """
        Build the cubes of one epoch.

        Returns once every request has completed. Raises CubeBuildError if
        any request failed; the error still carries the cubes that succeeded.
        """
        start = time.perf_counter()
        futures = {
            view.name: self._executor.submit(self._request, active_dimension, view,
                                             filters, resolution)
            for view in passive_views
        }
        wait(futures.values())

        cubes: Dict[str, Cube] = {}
        failures: Dict[str, BaseException] = {}
        for name, future in futures.items():
            error = future.exception()
            if error is not None:
                failures[name] = error
            else:
                cubes[name] = dataclasses.replace(future.result(), generation=generation)

        elapsed = (time.perf_counter() - start) * 1000
        logger.info(
            f"Built {len(cubes)}/{len(futures)} cubes for {active_view.name} "
            f"@ {resolution} ({filters.describe()}) in {elapsed:.1f} ms"
        )
        if failures:
            raise CubeBuildError(cubes, failures)
        return cubes

    def close(self):
        self._executor.shutdown(wait=True)
