import numpy as np
import pytest
import gtsam

from tagslam.camera_models import RadialTangential
from tagslam.factors import (distance_error, make_distance_factor,
                             make_projected_length_factor, make_reprojection_factor,
                             make_resection_factor, projected_length_error,
                             reprojection_error)
from tagslam.keys import body_key, camera_key, tag_key
from tagslam.robust import isotropic

MODEL = RadialTangential(500.0, 500.0, 320.0, 240.0, k1=-0.1, k2=0.01, p1=0.001, p2=0.0005)
T_W_C = gtsam.Pose3(gtsam.Rot3.Ry(0.1), gtsam.Point3(0.0, 0.1, -1.5))
T_W_B = gtsam.Pose3(gtsam.Rot3.Rz(0.3), gtsam.Point3(0.2, 0.0, 0.1))
T_B_O = gtsam.Pose3(gtsam.Rot3.Rx(0.2), gtsam.Point3(-0.1, 0.05, 0.0))
X_O = np.array([0.05, 0.05, 0.0])


def _fd(f, poses, which, eps=1e-6):
    cols = []
    for j in range(6):
        xi = np.zeros(6)
        xi[j] = eps
        plus, minus = list(poses), list(poses)
        plus[which] = poses[which].compose(gtsam.Pose3.Expmap(xi))
        minus[which] = poses[which].compose(gtsam.Pose3.Expmap(-xi))
        cols.append((f(*plus) - f(*minus)) / (2 * eps))
    return np.column_stack(cols)


def test_reprojection_jacobians():
    measured = np.array([300.0, 250.0])
    poses = [T_W_C, T_W_B, T_B_O]

    def f(*p):
        return reprojection_error(MODEL, X_O, measured, *p)[0]

    _, H = reprojection_error(MODEL, X_O, measured, *poses)
    for i in range(3):
        assert np.allclose(H[i], _fd(f, poses, i), atol=1e-3)


def test_distance_jacobians():
    T_w_b2 = gtsam.Pose3(gtsam.Rot3(), gtsam.Point3(1.0, 0.0, 0.0))
    poses = [T_W_B, T_B_O, T_w_b2, T_B_O]
    X_o2 = np.array([-0.05, 0.05, 0.0])

    def f(*p):
        return distance_error(X_O, X_o2, 0.9, *p)[0]

    _, H = distance_error(X_O, X_o2, 0.9, *poses)
    for i in range(4):
        assert np.allclose(H[i], _fd(f, poses, i), atol=1e-6)


def test_projected_length_jacobians():
    n = np.array([0.0, 0.0, 1.0])
    poses = [T_W_B, T_B_O]

    def f(*p):
        return projected_length_error(X_O, n, 0.2, *p)[0]

    e, H = projected_length_error(X_O, n, 0.2, *poses)
    assert e[0] == pytest.approx(T_W_B.transformFrom(T_B_O.transformFrom(X_O))[2] - 0.2)
    for i in range(2):
        assert np.allclose(H[i], _fd(f, poses, i), atol=1e-6)


def _values():
    values = gtsam.Values()
    values.insert(camera_key(0, 0), T_W_C)
    values.insert(body_key(0, 0), T_W_B)
    values.insert(tag_key(3), T_B_O)
    return values


def test_reprojection_factor_zero_at_truth():
    values = _values()
    uv, _ = reprojection_error(MODEL, X_O, np.zeros(2), T_W_C, T_W_B, T_B_O)
    factor = make_reprojection_factor(camera_key(0, 0), body_key(0, 0), tag_key(3),
                                      MODEL, X_O, uv, isotropic(2, 1.0))
    assert factor.error(values) == pytest.approx(0.0, abs=1e-12)
    assert len(factor.linearize(values).keys()) == 3


def test_reprojection_factor_behind_camera_is_penalized():
    values = gtsam.Values()
    values.insert(camera_key(0, 0), gtsam.Pose3(gtsam.Rot3(), gtsam.Point3(0.0, 0.0, 5.0)))
    values.insert(body_key(0, 0), gtsam.Pose3())
    values.insert(tag_key(3), gtsam.Pose3())
    factor = make_reprojection_factor(camera_key(0, 0), body_key(0, 0), tag_key(3),
                                      MODEL, X_O, np.array([320.0, 240.0]), isotropic(2, 1.0))
    # 0.5 * |(2 fx, 2 fx)|^2
    assert factor.error(values) == pytest.approx(4.0 * MODEL.fx ** 2)


def test_distance_factor_merges_repeated_keys():
    values = _values()
    X_o2 = np.array([-0.05, -0.05, 0.0])
    k_b, k_t = body_key(0, 0), tag_key(3)
    factor = make_distance_factor(k_b, k_t, X_O, k_b, k_t, X_o2,
                                  0.1 * np.sqrt(2.0), isotropic(1, 1.0))
    assert list(factor.keys()) == [k_b, k_t]
    assert factor.error(values) == pytest.approx(0.0, abs=1e-12)
    assert len(factor.linearize(values).keys()) == 2


def test_projected_length_factor_error():
    values = _values()
    n = np.array([1.0, 0.0, 0.0])
    X_w = T_W_B.transformFrom(T_B_O.transformFrom(X_O))
    factor = make_projected_length_factor(body_key(0, 0), tag_key(3), X_O, n,
                                          X_w[0] + 0.2, isotropic(1, 0.1))
    # whitened residual 0.2 / 0.1 = 2
    assert factor.error(values) == pytest.approx(2.0)


def test_resection_factor_recovers_pose():
    truth = gtsam.Pose3(gtsam.Rot3.Rz(0.05), gtsam.Point3(0.0, 0.0, -1.0))
    corners = np.array([[-0.1, -0.1, 0.0], [0.1, -0.1, 0.0], [0.1, 0.1, 0.0], [-0.1, 0.1, 0.0]])
    key = gtsam.symbol('x', 0)
    graph = gtsam.NonlinearFactorGraph()
    for X in corners:
        uv, _ = reprojection_error(MODEL, X, np.zeros(2), truth, gtsam.Pose3(), gtsam.Pose3())
        graph.add(make_resection_factor(key, MODEL, X, uv, isotropic(2, 1.0)))
    initial = gtsam.Values()
    initial.insert(key, truth.compose(gtsam.Pose3(gtsam.Rot3.Rx(0.03), gtsam.Point3(0.02, 0.0, 0.05))))
    result = gtsam.LevenbergMarquardtOptimizer(graph, initial).optimize()
    assert result.atPose3(key).equals(truth, 1e-4)
