from typing import Optional, TYPE_CHECKING
import logging
import time

import numpy as np
import gtsam

if TYPE_CHECKING:
    from tagslam_common.kpi_logging import KPILogger

logger = logging.getLogger("tagslam.optimize")

ABSOLUTE_ERROR_TOL = 1e-10
RELATIVE_ERROR_TOL = 0.0


class OptimizationRunner:
    """Levenberg-Marquardt batch solve over the whole graph.

    Every call re-solves all accumulated factors from the current values;
    there is no incremental state between calls. The result is accepted
    whether or not LM converged within the iteration cap, callers judge it
    by ``error`` and ``iterations``.
    """

    def __init__(self, max_iterations: int = 100, kpi: Optional["KPILogger"] = None):
        self.max_iterations = max_iterations
        self.kpi = kpi
        self.error = 0.0
        self.iterations = 0
        self._batch_id = 0

    def params(self) -> gtsam.LevenbergMarquardtParams:
        params = gtsam.LevenbergMarquardtParams()
        params.setMaxIterations(self.max_iterations)
        params.setAbsoluteErrorTol(ABSOLUTE_ERROR_TOL)
        params.setRelativeErrorTol(RELATIVE_ERROR_TOL)
        return params

    def run(self, graph: gtsam.NonlinearFactorGraph, initial: gtsam.Values,
            num_reprojection_factors: int = 0) -> gtsam.Values:
        """Solve and return the optimized values.

        The recorded error is normalized by the number of reprojection
        factors, or left raw if there are none.
        """
        self._batch_id += 1
        if self.kpi:
            self.kpi.optimization_start(self._batch_id, graph.size(), initial.size())
        start = time.perf_counter()
        opt = gtsam.LevenbergMarquardtOptimizer(graph, initial, self.params())
        result = opt.optimize()
        duration = time.perf_counter() - start
        scale = 1.0 / num_reprojection_factors if num_reprojection_factors > 0 else 1.0
        self.error = opt.error() * scale
        self.iterations = opt.iterations()
        logger.info("optimizer error: %.6g after %d iterations (%.3fs)",
                    self.error, self.iterations, duration)
        if self.kpi:
            self.kpi.optimization_end(self._batch_id, duration,
                                      updated_keys=result.size(),
                                      error=self.error, iterations=self.iterations)
        return result


class CovarianceEstimator:
    """Lazily computed marginal covariances of the solved graph.

    The cached gtsam.Marginals belong to one graph revision. Any later
    mutation makes them stale and ``covariance`` returns None until
    ``compute`` is called again.
    """

    def __init__(self, kpi: Optional["KPILogger"] = None):
        self.kpi = kpi
        self._marginals: Optional[gtsam.Marginals] = None
        self._revision: Optional[int] = None

    def compute(self, graph: gtsam.NonlinearFactorGraph, values: gtsam.Values,
                revision: int) -> None:
        start = time.perf_counter()
        self._marginals = gtsam.Marginals(graph, values)
        self._revision = revision
        duration = time.perf_counter() - start
        logger.debug("marginals computed for revision %d in %.3fs", revision, duration)
        if self.kpi:
            self.kpi.marginals(revision, duration, key_count=values.size())

    def is_fresh(self, revision: int) -> bool:
        return self._marginals is not None and self._revision == revision

    def covariance(self, key: int, revision: int) -> Optional[np.ndarray]:
        if not self.is_fresh(revision):
            return None
        try:
            return np.asarray(self._marginals.marginalCovariance(key), dtype=float)
        except (RuntimeError, IndexError) as e:
            # key not part of the marginalized graph
            logger.debug("no marginal for key %d: %s", key, e)
            return None
