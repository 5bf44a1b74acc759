import numpy as np
import pytest
import gtsam

from tagslam.errors import ConfigurationError
from tagslam.graph import GraphState
from tagslam.models import PoseEstimate, Tag
from tagslam.optimize import OptimizationRunner
from tagslam.robust import isotropic, make_spd, prior_noise, robustify
from tagslam_common.kpi_logging import KPILogger, events_named


def _solved(scene, kpi=None):
    graph = GraphState(kpi=kpi)
    graph.add_tags(scene.body, [scene.tag])
    scene.camera.pose_estimate = PoseEstimate.of(scene.T_w_c)
    graph.observed_tags(scene.camera, scene.body, [scene.tag], 0)
    graph.optimize()
    return graph


def test_runner_without_reprojection_factors_reports_raw_error():
    key = gtsam.symbol('x', 0)
    graph = gtsam.NonlinearFactorGraph()
    graph.add(gtsam.PriorFactorPose3(key, gtsam.Pose3(), gtsam.noiseModel.Isotropic.Sigma(6, 1.0)))
    initial = gtsam.Values()
    initial.insert(key, gtsam.Pose3(gtsam.Rot3(), gtsam.Point3(1.0, 0.0, 0.0)))
    runner = OptimizationRunner(max_iterations=1)
    result = runner.run(graph, initial)
    assert runner.iterations <= 1
    assert runner.error < 0.5
    assert result.atPose3(key).translation()[0] < 1.0


def test_marginals_attach_fresh_covariance(scene):
    graph = _solved(scene)
    assert graph.get_body_pose(scene.body, 0).covariance is None
    graph.compute_marginals()
    cov = graph.get_body_pose(scene.body, 0).covariance
    assert cov is not None
    assert cov.shape == (6, 6)
    assert np.all(np.linalg.eigvalsh(cov) > 0.0)


def test_marginals_go_stale_on_mutation(scene):
    graph = _solved(scene)
    graph.compute_marginals()
    assert graph.covariance.is_fresh(graph.revision)
    graph.add_tags(scene.body, [Tag(id=9, size=0.1, pose_estimate=PoseEstimate.of(gtsam.Pose3()))])
    assert graph.get_body_pose(scene.body, 0).covariance is None


def test_marginals_go_stale_after_optimize(scene):
    graph = _solved(scene)
    graph.compute_marginals()
    graph.optimize()
    assert graph.get_body_pose(scene.body, 0).covariance is None


def test_optimize_emits_kpi_events(scene, tmp_path):
    path = tmp_path / "kpi.jsonl"
    kpi = KPILogger(log_path=str(path), emit_to_logger=False)
    graph = _solved(scene, kpi=kpi)
    graph.compute_marginals()
    kpi.close()
    ends = events_named(str(path), "optimization_end")
    assert len(ends) == 1
    assert ends[0]["error"] < 1e-6
    assert kpi.counts["optimization_start"] == 1
    assert kpi.counts["marginals"] == 1


def test_make_spd_jitters_zero_covariance():
    cov = make_spd(np.zeros((6, 6)))
    np.linalg.cholesky(cov)
    assert np.allclose(cov, cov.T)


def test_isotropic_rejects_nonpositive_sigma():
    with pytest.raises(ConfigurationError):
        isotropic(2, 0.0)


def test_robustify_wraps_pixel_noise():
    base = isotropic(2, 1.0)
    assert robustify(base, None) is base
    assert isinstance(robustify(base, "Huber"), gtsam.noiseModel.Robust)
    assert isinstance(robustify(base, "cauchy", 2.0), gtsam.noiseModel.Robust)
    with pytest.raises(ConfigurationError):
        robustify(base, "tukey")


def test_prior_noise_requires_6x6():
    with pytest.raises(ConfigurationError):
        prior_noise(None, "body")
    with pytest.raises(ConfigurationError):
        prior_noise(np.eye(3), "body")
    assert prior_noise(np.zeros((6, 6))).dim() == 6
